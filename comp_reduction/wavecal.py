"""
Wavelength Calibration from Flat-Field Scans
============================================

Description:
------------
Fits the 11-point wavelength scans of a day's flat fields against solar and
telluric reference spectra seen through the CoMP filter. The fit gives the
wavelength offset of the filter tuning, the water-vapour absorption scale and the
continuum scales of the on-band and background channels, per flat sequence and
per beam. The fitted spectrum is later divided out of the flats.

Workflow:
---------
1. **Discover:**
   - Groups the flat exposures by timestamp.
   - Keeps groups of exactly 22 exposures within 2 nm of the line centre, 11 for
     each beam state.

2. **Fit:**
   - Median intensity inside the field of the on-band beam (observation) and of
     the complementary beam (background) at each wavelength.
   - Divides both channels by a quadratic continuum through line-specific points.
   - Minimises the squared residuals against the filtered reference spectrum with
     Powell's method over offset, H2O factor and the two continuum scales
     (optionally an independent telluric offset).

3. **Aggregate:**
   - Collects the fits into arrays indexed by sequence and beam, with the
     sequence timestamps. An empty day gives empty arrays.

"""


import logging
from dataclasses import dataclass

import numpy as np
from astropy.time import Time
from scipy.optimize import minimize

from .metadata import header_value
from .parameters import config
from .reduction import read_extensions
from .spectra import filter_profiles

BEAMS = (1, -1)


@dataclass(frozen=True, eq=False)
class FlatSequence:
    """Flat exposures sharing one timestamp, 11 wavelengths for each beam state."""

    time: str
    wavelengths: np.ndarray
    beams: np.ndarray
    exposures: np.ndarray
    data: np.ndarray


@dataclass(frozen=True, eq=False)
class WavelengthFit:
    offset: float
    h2o_factor: float
    continuum_scale_on: float
    continuum_scale_off: float
    chi_square: float
    wavelengths: np.ndarray
    correction: np.ndarray
    telluric_offset: float = None


@dataclass(frozen=True, eq=False)
class WavelengthCalibration:
    """
    Fits of one day and one line, indexed ``[sequence, beam]``.

    Beam index 0 holds the ``BEAM = +1`` exposures, index 1 the ``BEAM = -1`` ones.
    """

    line_center: float
    times: np.ndarray
    wavelengths: np.ndarray
    offset: np.ndarray
    h2o_factor: np.ndarray
    continuum_scale_on: np.ndarray
    continuum_scale_off: np.ndarray
    chi_square: np.ndarray
    telluric_offset: np.ndarray
    correction: np.ndarray

    def __len__(self):
        return len(self.times)


def line_parameters(line_center, params=None):
    """Line table entry of ``config['wavecal']['lines']`` closest to ``line_center``."""
    params = config['wavecal'] if params is None else params
    for center, table in params['lines'].items():
        if abs(center - line_center) < 0.05:
            return table
    raise KeyError(f"No wavelength calibration parameters for line {line_center}")


def read_flat_file(filename):
    """
    Read every image extension of a day's flat file.

    Returns
    -------
    headers : list of astropy.io.fits.Header
    data : list of numpy.ndarray
    """
    headers, data = read_extensions(filename)
    logging.info(f"Loaded {len(data)} flat exposures from {filename}.")
    return headers, data


def exposure_timestamp(header):
    date = header_value(header, 'DATE-OBS', str).split('T')[0]
    return f"{date}T{header_value(header, 'TIME-OBS', str).strip()}"


def discover_flat_sequences(headers, data, line_center, group_size=22, tolerance=2.0):
    """
    Find the complete wavelength scans of a line in a day's flats.

    Parameters
    ----------
    headers : list of astropy.io.fits.Header
        One header per flat exposure with ``DATE-OBS``, ``TIME-OBS``, ``WAVELENG``,
        ``BEAM`` and ``EXPOSURE``.
    data : list of numpy.ndarray
        Raw flat frames.
    line_center : float
        Line centre in nm.
    group_size : int, optional
        Required number of exposures sharing a timestamp.
    tolerance : float, optional
        Maximum distance in nm between the mean wavelength and the line centre.

    Returns
    -------
    sequences : list of FlatSequence
        In order of first appearance; empty when nothing qualifies.
    """
    groups = {}
    for index, header in enumerate(headers):
        groups.setdefault(exposure_timestamp(header), []).append(index)

    sequences = []
    for time, indices in groups.items():
        wavelengths = np.array([header_value(headers[i], 'WAVELENG') for i in indices])
        if len(indices) != group_size or abs(wavelengths.mean() - line_center) > tolerance:
            logging.debug(f"Skipping flat group {time}: {len(indices)} exposures, "
                          f"mean wavelength {wavelengths.mean():.2f} nm")
            continue
        beams = np.array([header_value(headers[i], 'BEAM', int) for i in indices])
        counts = [int(np.sum(beams == beam)) for beam in BEAMS]
        if any(count != group_size // len(BEAMS) for count in counts):
            logging.info(f"Skipping flat group {time}: {counts} exposures per beam state, "
                         f"expected {group_size // len(BEAMS)} each")
            continue
        sequences.append(FlatSequence(
            time=time,
            wavelengths=wavelengths,
            beams=beams,
            exposures=np.array([header_value(headers[i], 'EXPOSURE') for i in indices]),
            data=np.array([data[i] for i in indices], dtype=float)))

    if not sequences:
        logging.info(f"No complete {group_size}-exposure flat sequence for {line_center} nm.")
    else:
        logging.info(f"Found {len(sequences)} flat sequences for {line_center} nm.")
    return sequences


def beam_intensities(sequence, masks, beam):
    """
    Median on-band and background intensities of one beam state.

    Parameters
    ----------
    sequence : FlatSequence
        Flat scan.
    masks : tuple of numpy.ndarray
        Field masks of detector sub-apertures 1 and 2.
    beam : int
        ``+1`` (on-band in sub-aperture 1) or ``-1`` (on-band in sub-aperture 2).

    Returns
    -------
    wavelengths, observation, background : numpy.ndarray
        Sorted by wavelength.
    """
    primary, complementary = (masks[0], masks[1]) if beam > 0 else (masks[1], masks[0])
    select = np.where(sequence.beams == beam)[0]
    wavelengths = sequence.wavelengths[select]
    observation = np.array([np.median(sequence.data[i][primary]) for i in select])
    background = np.array([np.median(sequence.data[i][complementary]) for i in select])
    order = np.argsort(wavelengths)
    return wavelengths[order], observation[order], background[order]


def normalize_continuum(wavelengths, intensity, indices):
    """Divide by a quadratic fitted through the points ``indices`` of the sorted scan."""
    order = np.argsort(wavelengths)
    wavelengths = np.asarray(wavelengths, dtype=float)[order]
    intensity = np.asarray(intensity, dtype=float)[order]
    x = wavelengths - wavelengths.mean()
    indices = list(indices)
    coeffs = np.polyfit(x[indices], intensity[indices], 2)
    return intensity / np.polyval(coeffs, x)


def instrument_profiles(spectrum, wavelengths, fwhm=0.13, n_stages=4):
    """On-band and off-band filter profiles for each tuning, shape (n, n_grid)."""
    on, off = zip(*(filter_profiles(spectrum.wavelength, w, fwhm, n_stages) for w in wavelengths))
    return np.array(on), np.array(off)


def spectrum_model(params, spectrum, profiles_on, profiles_off):
    """
    Predicted on-band and off-band intensities.

    Parameters
    ----------
    params : sequence of float
        ``(offset, h2o_factor, scale_on, scale_off)`` with an optional fifth
        telluric offset.
    spectrum : CalibrationSpectrum
        Reference spectra.
    profiles_on, profiles_off : numpy.ndarray
        Filter profiles from ``instrument_profiles``.

    Returns
    -------
    on, off : numpy.ndarray
    """
    offset, h2o_factor, scale_on, scale_off = params[:4]
    telluric_offset = params[4] if len(params) > 4 else None
    combined = spectrum.shifted(offset, h2o_factor, telluric_offset)
    return scale_on * (profiles_on @ combined), scale_off * (profiles_off @ combined)


def make_objective(observation, background, spectrum, profiles_on, profiles_off):
    """Summed squared residual of both channels as a function of the fit parameters."""
    observation = np.asarray(observation, dtype=float)
    background = np.asarray(background, dtype=float)

    def objective(params):
        on, off = spectrum_model(params, spectrum, profiles_on, profiles_off)
        return np.sum((on - observation) ** 2) + np.sum((off - background) ** 2)

    return objective


def fit_spectrum(wavelengths, observation, background, spectrum, initial,
                 fwhm=0.13, n_stages=4, fit_telluric_offset=False, tolerance=1e-8):
    """
    Fit the filtered reference spectrum to one beam's scan.

    Parameters
    ----------
    wavelengths : numpy.ndarray
        Tuning wavelengths in nm.
    observation, background : numpy.ndarray
        Continuum-normalised on-band and background intensities.
    spectrum : CalibrationSpectrum
        Reference spectra around the line.
    initial : sequence of float
        ``(offset, h2o_factor, scale_on, scale_off)`` starting point.
    fit_telluric_offset : bool, optional
        Fit an independent telluric offset, starting from the initial offset.
    tolerance : float, optional
        Fractional Powell tolerance on parameters and objective.

    Returns
    -------
    WavelengthFit
        The chi-square is the minimised residual; convergence is not checked.
    """
    wavelengths = np.asarray(wavelengths, dtype=float)
    profiles_on, profiles_off = instrument_profiles(spectrum, wavelengths, fwhm, n_stages)
    objective = make_objective(observation, background, spectrum, profiles_on, profiles_off)

    x0 = list(initial[:4])
    if fit_telluric_offset:
        x0.append(initial[0])
    result = minimize(objective, np.array(x0, dtype=float), method='Powell',
                      options={'xtol': tolerance, 'ftol': tolerance})
    params = result.x
    telluric_offset = float(params[4]) if fit_telluric_offset else None
    combined = spectrum.shifted(params[0], params[1], telluric_offset)

    return WavelengthFit(offset=float(params[0]),
                         h2o_factor=float(params[1]),
                         continuum_scale_on=float(params[2]),
                         continuum_scale_off=float(params[3]),
                         chi_square=float(result.fun),
                         wavelengths=wavelengths,
                         correction=profiles_on @ combined,
                         telluric_offset=telluric_offset)


def fit_sequence(sequence, masks, spectrum, line_center, params=None, fit_telluric_offset=False):
    """
    Fit both beam states of a flat sequence.

    Returns
    -------
    fits : list of WavelengthFit
        For ``BEAM = +1`` and ``BEAM = -1``.
    """
    params = config['wavecal'] if params is None else params
    line = line_parameters(line_center, params)
    results = []
    for beam in BEAMS:
        wavelengths, observation, background = beam_intensities(sequence, masks, beam)
        observation = normalize_continuum(wavelengths, observation, line['obs_continuum'])
        background = normalize_continuum(wavelengths, background, line['bkg_continuum'])
        fit = fit_spectrum(wavelengths, observation, background, spectrum, line['initial'],
                           fwhm=params['filter_fwhm'], n_stages=params['filter_stages'],
                           fit_telluric_offset=fit_telluric_offset,
                           tolerance=params['tolerance'])
        logging.info(f"Flat {sequence.time}, {line_center} nm, beam {beam:+d}: "
                     f"offset={fit.offset:.4f} nm, h2o={fit.h2o_factor:.3f}, "
                     f"chisq={fit.chi_square:.3g}")
        results.append(fit)
    return results


def aggregate(line_center, times, fits_per_sequence, n_wavelengths=11):
    """
    Collect per-sequence, per-beam fits into arrays.

    Parameters
    ----------
    times : list of str
        Sequence timestamps.
    fits_per_sequence : list of list of WavelengthFit
        Two fits per sequence.

    Returns
    -------
    WavelengthCalibration
    """
    n = len(times)

    def field(name, default=np.nan):
        values = [[default if getattr(f, name) is None else getattr(f, name) for f in fits]
                  for fits in fits_per_sequence]
        return np.array(values, dtype=float).reshape(n, len(BEAMS))

    if n:
        wavelengths = np.array([fits[0].wavelengths for fits in fits_per_sequence])
        correction = np.array([[f.correction for f in fits] for fits in fits_per_sequence])
    else:
        wavelengths = np.zeros((0, n_wavelengths))
        correction = np.zeros((0, len(BEAMS), n_wavelengths))

    return WavelengthCalibration(line_center=line_center,
                                 times=np.array(times, dtype=str),
                                 wavelengths=wavelengths,
                                 offset=field('offset'),
                                 h2o_factor=field('h2o_factor'),
                                 continuum_scale_on=field('continuum_scale_on'),
                                 continuum_scale_off=field('continuum_scale_off'),
                                 chi_square=field('chi_square'),
                                 telluric_offset=field('telluric_offset'),
                                 correction=correction)


def calibrate_day(headers, data, masks, spectrum, line_center, params=None,
                  fit_telluric_offset=False):
    """
    Wavelength calibration of one day's flats for one line.

    Parameters
    ----------
    headers, data : list
        Flat exposures as returned by ``read_flat_file``.
    masks : tuple of numpy.ndarray
        Field masks of both sub-apertures in raw coordinates.
    spectrum : CalibrationSpectrum
        Reference spectra around the line.
    line_center : float
        1074.7 or 1079.8 nm.

    Returns
    -------
    WavelengthCalibration
        Empty arrays if the day has no complete scan.
    """
    params = config['wavecal'] if params is None else params
    sequences = discover_flat_sequences(headers, data, line_center,
                                        group_size=params['group_size'],
                                        tolerance=params['wavelength_tolerance'])
    fits_per_sequence = []
    for index, sequence in enumerate(sequences):
        logging.info(f"Fitting flat sequence {index} ({sequence.time}) for {line_center} nm.")
        fits_per_sequence.append(fit_sequence(sequence, masks, spectrum, line_center, params,
                                              fit_telluric_offset))
    return aggregate(line_center, [s.time for s in sequences], fits_per_sequence,
                     params['group_size'] // len(BEAMS))


def flat_correction_factor(calibration, time, wavelength, beam, threshold=None):
    """
    Continuum correction for one flat exposure.

    Uses the sequence nearest in time. Returns 1.0 when there is no sequence or
    when its fit has a chi-square above ``threshold``, which defaults to
    ``config['wavecal']['chisq_threshold']``.
    """
    if threshold is None:
        threshold = config['wavecal']['chisq_threshold']
    if len(calibration) == 0:
        logging.info(f"No wavelength calibration for {calibration.line_center} nm, "
                     f"no correction at {time}.")
        return 1.0
    delta = np.abs((Time(list(calibration.times)) - Time(time)).sec)
    index = int(np.argmin(delta))
    b = BEAMS.index(1 if beam > 0 else -1)
    chisq = calibration.chi_square[index, b]
    if not chisq <= threshold:
        logging.warning(f"Flat {calibration.times[index]}, {calibration.line_center} nm, "
                        f"beam {beam:+d}: chisq {chisq:.3g} above {threshold}, no correction.")
        return 1.0
    j = int(np.argmin(np.abs(calibration.wavelengths[index] - wavelength)))
    return float(calibration.correction[index, b, j])


def correction_to_header(header, factor, calibration=None, index=None, beam=1):
    """Record a flat continuum correction and its fit parameters in a header."""
    header['CONTCORR'] = (factor, 'flat continuum correction factor')
    if calibration is not None and index is not None:
        b = BEAMS.index(1 if beam > 0 else -1)
        header['WAVOFF'] = (calibration.offset[index, b], 'wavelength offset [nm]')
        header['H2OFACT'] = (calibration.h2o_factor[index, b], 'water vapour factor')
        header['WCCHISQ'] = (calibration.chi_square[index, b], 'wavelength fit chi-square')
    return header
