"""
Reference Spectra and Filter Profiles
=====================================

Description:
------------
Solar and telluric reference spectra on a uniform fine wavelength grid around a
line centre, and the transmission profiles of the CoMP birefringent filter for
the on-band and the complementary (off-band) beams.

"""


import logging
from dataclasses import dataclass

import numpy as np
from astropy.table import Table


@dataclass(frozen=True, eq=False)
class CalibrationSpectrum:
    """
    Solar intensity and telluric transmission on a common uniform grid.

    Attributes
    ----------
    wavelength : numpy.ndarray
        Uniform grid in nm.
    solar : numpy.ndarray
        Normalised solar intensity.
    telluric : numpy.ndarray
        Telluric transmission, one in the continuum.
    """

    wavelength: np.ndarray
    solar: np.ndarray
    telluric: np.ndarray

    @classmethod
    def resample(cls, wavelength, solar, telluric, line_center, half_width=1.5, step=0.001):
        """Interpolate reference data onto a uniform grid around ``line_center``."""
        order = np.argsort(wavelength)
        wavelength = np.asarray(wavelength, dtype=float)[order]
        grid = np.arange(line_center - half_width, line_center + half_width + step / 2, step)
        return cls(wavelength=grid,
                   solar=np.interp(grid, wavelength, np.asarray(solar, dtype=float)[order]),
                   telluric=np.interp(grid, wavelength, np.asarray(telluric, dtype=float)[order]))

    def shifted(self, offset, h2o_factor=1.0, telluric_offset=None):
        """
        Combined solar x telluric spectrum for trial fit parameters.

        Parameters
        ----------
        offset : float
            Wavelength shift of the solar spectrum in nm.
        h2o_factor : float
            Scale of the telluric absorption depth, clipped at zero so that
            absorption never turns into emission. The scaled transmission is
            also clipped at zero.
        telluric_offset : float, optional
            Independent shift of the telluric spectrum, ``offset`` by default.

        Returns
        -------
        numpy.ndarray
            Spectrum on ``self.wavelength``.
        """
        if telluric_offset is None:
            telluric_offset = offset
        solar = np.interp(self.wavelength - offset, self.wavelength, self.solar)
        telluric = np.interp(self.wavelength - telluric_offset, self.wavelength, self.telluric)
        h2o_factor = max(h2o_factor, 0.0)
        telluric = np.clip(1.0 - h2o_factor * (1.0 - telluric), 0.0, None)
        return solar * telluric


def load_reference_spectrum(filename, line_center, half_width=1.5, step=0.001):
    """
    Read a reference spectrum table and resample it around a line.

    Parameters
    ----------
    filename : str
        Table readable by ``astropy.table.Table`` with ``WAVELENGTH`` (nm),
        ``SOLAR`` and ``TELLURIC`` columns.
    line_center : float
        Line centre in nm.

    Returns
    -------
    CalibrationSpectrum
    """
    table = Table.read(filename)
    spectrum = CalibrationSpectrum.resample(np.asarray(table['WAVELENGTH']),
                                            np.asarray(table['SOLAR']),
                                            np.asarray(table['TELLURIC']),
                                            line_center, half_width, step)
    logging.info(f"Loaded reference spectrum {filename} around {line_center} nm "
                 f"({len(spectrum.wavelength)} samples).")
    return spectrum


def lyot_transmission(wavelength, center, fwhm, n_stages=4, complementary=False):
    """
    Transmission of a Lyot filter tuned to ``center``.

    Each stage is a cos^2 fringe; free spectral ranges double from the narrowest
    stage, whose range is twice the filter FWHM. The complementary beam sees the
    narrowest stage as sin^2 and so transmits the two wings of the passband.
    """
    delta = np.asarray(wavelength, dtype=float) - center
    fsr = 2.0 * fwhm
    phase = np.pi * delta / fsr
    transmission = np.sin(phase) ** 2 if complementary else np.cos(phase) ** 2
    for stage in range(1, n_stages):
        transmission = transmission * np.cos(phase / 2 ** stage) ** 2
    return transmission


def filter_profiles(wavelength, center, fwhm=0.13, n_stages=4):
    """
    On-band and off-band profiles tuned to ``center``, each summing to one.

    Returns
    -------
    on, off : numpy.ndarray
        Profiles on the ``wavelength`` grid.
    """
    on = lyot_transmission(wavelength, center, fwhm, n_stages)
    off = lyot_transmission(wavelength, center, fwhm, n_stages, complementary=True)
    return on / on.sum(), off / off.sum()
