"""
Astrometric Calibration for Registered CoMP Images
==================================================

Description:
------------
Defines the helioprojective World Coordinate System of a registered image and
writes it, with the solar ephemeris, into the Level 1 header.

Workflow:
---------
1. **Reference Positioning:**
   - Registered images are solar north up with the occulter (Sun centre) at the
     frame centre, which is the reference pixel.

2. **WCS Setup:**
   - Plate scale from the instrument configuration (arcsec/pixel).
   - CRPIX, CRVAL, CDELT, CUNIT and CTYPE in helioprojective coordinates.

3. **Header:**
   - WCS keywords plus ``SOLAR_P0``, ``SOLAR_B0`` and ``RSUN``.

"""


import logging

from astropy.wcs import WCS

from .geometry import geometry_to_header


def solar_wcs(config):
    """
    Helioprojective WCS of a registered ``nx`` x ``nx`` image.

    Parameters
    ----------
    config : InstrumentConfig
        Provides ``nx`` and ``plate_scale``.

    Returns
    -------
    astropy.wcs.WCS
    """
    xc, yc = config.center
    w = WCS(naxis=2)
    w.wcs.crpix = [xc + 1, yc + 1]
    w.wcs.cdelt = [config.plate_scale, config.plate_scale]
    w.wcs.crval = [0.0, 0.0]
    w.wcs.cunit = ['arcsec', 'arcsec']
    w.wcs.ctype = ['HPLN-TAN', 'HPLT-TAN']
    return w


def level1_header(header, ephemeris, config, geometry=None):
    """
    Add WCS and ephemeris keywords to a copy of an exposure header.

    Parameters
    ----------
    header : astropy.io.fits.Header
        Raw exposure header.
    ephemeris : Ephemeris
        Solar ephemeris of the exposure.
    config : InstrumentConfig
        Instrument constants.
    geometry : ImageGeometry, optional
        Fitted circles, recorded with their per-beam keywords.

    Returns
    -------
    astropy.io.fits.Header
    """
    header = header.copy()
    header.update(solar_wcs(config).to_header())
    header['SOLAR_P0'] = (ephemeris.p_angle, 'solar P angle [deg]')
    header['SOLAR_B0'] = (ephemeris.b0, 'solar B0 angle [deg]')
    header['RSUN'] = (ephemeris.semi_diameter, 'solar radius [arcsec]')
    if geometry is not None:
        geometry_to_header(geometry, header)
    logging.debug(f"Level 1 header for P={ephemeris.p_angle:.3f} deg")
    return header
