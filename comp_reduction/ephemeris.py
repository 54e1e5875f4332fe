"""
Solar Ephemeris for CoMP Exposures
==================================

Description:
------------
Computes the solar position angle, semi-diameter and sub-observer latitude for
an exposure. Header times are local Hawaii time and are converted to UTC with
the fixed site offset before the ephemeris is evaluated.

"""


import logging
from dataclasses import dataclass

import astropy.units as u
from astropy.time import Time, TimeDelta
from sunpy.coordinates import sun

from .errors import MissingMetadata
from .metadata import header_value


@dataclass(frozen=True)
class Ephemeris:
    p_angle: float
    semi_diameter: float
    b0: float


def observation_time(header, utc_offset=10.0):
    """
    UTC time of an exposure.

    Parameters
    ----------
    header : astropy.io.fits.Header or dict
        Must provide ``DATE-OBS`` and ``TIME-OBS`` in local site time.
    utc_offset : float
        Hours to add to local time to obtain UTC.

    Returns
    -------
    astropy.time.Time
    """
    date = header_value(header, 'DATE-OBS', str).strip()
    clock = header_value(header, 'TIME-OBS', str).strip()
    # some headers carry the full timestamp in DATE-OBS
    date = date.split('T')[0]
    try:
        local = Time(f"{date}T{clock}", format='isot', scale='utc')
    except ValueError:
        raise MissingMetadata(f"Malformed observation time: {date} {clock}") from None
    return local + TimeDelta(utc_offset * u.hour)


def solar_ephemeris(header, utc_offset=10.0):
    """
    Solar P angle, semi-diameter and B0 at the time of an exposure.

    Returns
    -------
    Ephemeris
        ``p_angle`` and ``b0`` in degrees, ``semi_diameter`` in arcseconds.
    """
    time = observation_time(header, utc_offset)
    ephem = Ephemeris(p_angle=float(sun.P(time).to_value(u.deg)),
                      semi_diameter=float(sun.angular_radius(time).to_value(u.arcsec)),
                      b0=float(sun.B0(time).to_value(u.deg)))
    logging.debug(f"Ephemeris at {time.isot}: {ephem}")
    return ephem
