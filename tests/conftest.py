import numpy as np
import pytest

from comp_reduction.parameters import InstrumentConfig
from comp_reduction.spectra import CalibrationSpectrum


@pytest.fixture
def small_config():
    # 160 pixel detector with two 96 pixel beams
    return InstrumentConfig(raw_nx=160, nx=96, k1=1.0, k2=1.0,
                            occulter_offset=0.0, field_offset=0.0,
                            occulter_guess=20.0, field_guess=36.0,
                            nominal_center=(47.5, 47.5))


def annulus(shape, occulter, field, level=1.0):
    """Anti-aliased annulus between an occulter and a field circle, (x, y, r) each."""
    yy, xx = np.indices(shape, dtype=float)
    image = np.ones(shape) * level
    if occulter is not None:
        d = np.hypot(xx - occulter[0], yy - occulter[1])
        image *= np.clip(d - occulter[2] + 0.5, 0, 1)
    if field is not None:
        d = np.hypot(xx - field[0], yy - field[1])
        image *= np.clip(field[2] - d + 0.5, 0, 1)
    return image


@pytest.fixture
def make_annulus():
    return annulus


def reference_spectrum(line_center):
    wavelength = np.arange(line_center - 2.0, line_center + 2.0, 0.0005)
    solar = 1 - 0.35 * np.exp(-0.5 * ((wavelength - line_center - 0.05) / 0.04) ** 2)
    solar -= 0.15 * np.exp(-0.5 * ((wavelength - line_center + 0.25) / 0.05) ** 2)
    telluric = 1 - 0.5 * np.exp(-0.5 * ((wavelength - line_center + 0.12) / 0.02) ** 2)
    return CalibrationSpectrum.resample(wavelength, solar, telluric, line_center,
                                        half_width=1.5, step=0.001)


@pytest.fixture
def make_spectrum():
    return reference_spectrum
