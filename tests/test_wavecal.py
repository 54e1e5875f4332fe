import numpy as np
import pytest
from astropy.io import fits

from comp_reduction.parameters import config
from comp_reduction.wavecal import WavelengthFit, aggregate, calibrate_day, \
    correction_to_header, discover_flat_sequences, fit_spectrum, flat_correction_factor, \
    instrument_profiles, line_parameters, normalize_continuum, spectrum_model

TRUTH = (0.012, 1.3, 0.97, 1.04)


def scan(line_center):
    return line_center + np.linspace(-0.25, 0.25, 11)


def synthetic_channels(spectrum, wavelengths, params):
    profiles_on, profiles_off = instrument_profiles(spectrum, wavelengths)
    return spectrum_model(params, spectrum, profiles_on, profiles_off)


def flat_headers(time, line_center, n_per_beam=11):
    headers = []
    for beam in (1, -1):
        for wavelength in scan(line_center)[:n_per_beam]:
            headers.append({'DATE-OBS': '2015-08-01', 'TIME-OBS': time,
                            'WAVELENG': wavelength, 'BEAM': beam, 'EXPOSURE': 250.0})
    return headers


@pytest.mark.parametrize('line_center', [1074.7, 1079.8])
def test_fit_recovers_parameters(make_spectrum, line_center):
    spectrum = make_spectrum(line_center)
    wavelengths = scan(line_center)
    observation, background = synthetic_channels(spectrum, wavelengths, TRUTH)

    fit = fit_spectrum(wavelengths, observation, background, spectrum,
                       line_parameters(line_center)['initial'])

    assert abs(fit.offset - TRUTH[0]) < 1e-3
    assert abs(fit.h2o_factor - TRUTH[1]) < 0.02
    assert abs(fit.continuum_scale_on - TRUTH[2]) < 2e-3
    assert abs(fit.continuum_scale_off - TRUTH[3]) < 2e-3
    assert fit.chi_square < 1e-6
    assert fit.telluric_offset is None
    assert fit.correction.shape == (11,)


def test_fit_with_independent_telluric_offset(make_spectrum):
    spectrum = make_spectrum(1074.7)
    wavelengths = scan(1074.7)
    truth = TRUTH + (-0.01,)
    observation, background = synthetic_channels(spectrum, wavelengths, truth)

    fit = fit_spectrum(wavelengths, observation, background, spectrum,
                       (0.0, 0.5, 1.0, 1.0), fit_telluric_offset=True)

    assert abs(fit.offset - truth[0]) < 2e-3
    assert abs(fit.telluric_offset - truth[4]) < 2e-3
    assert fit.chi_square < 1e-5


def test_line_parameters():
    assert line_parameters(1074.7)['obs_continuum'] == (0, 1, 9, 10)
    assert line_parameters(1079.79)['bkg_continuum'] == (0, 4, 5, 6, 10)
    with pytest.raises(KeyError):
        line_parameters(1083.0)


def test_discover_keeps_complete_groups_near_the_line():
    headers = (flat_headers('08:00:00', 1074.7)
               + flat_headers('09:00:00', 1074.7, n_per_beam=5)
               + flat_headers('10:00:00', 1079.8))
    data = [np.full((4, 4), i, dtype=float) for i in range(len(headers))]

    sequences = discover_flat_sequences(headers, data, 1074.7)

    assert len(sequences) == 1
    assert sequences[0].time == '2015-08-01T08:00:00'
    assert sequences[0].data.shape == (22, 4, 4)
    assert np.sum(sequences[0].beams == 1) == 11
    assert len(discover_flat_sequences(headers, data, 1079.8)) == 1


def test_empty_day():
    calibration = aggregate(1074.7, [], [])
    assert len(calibration) == 0
    assert calibration.offset.shape == (0, 2)
    assert calibration.correction.shape == (0, 2, 11)
    assert flat_correction_factor(calibration, '2015-08-01T08:00:00', 1074.7, 1) == 1.0

    calibration = calibrate_day(flat_headers('09:00:00', 1074.7, n_per_beam=5),
                                [np.ones((4, 4))] * 10, None, None, 1074.7)
    assert len(calibration) == 0


def test_normalize_continuum():
    wavelengths = scan(1074.7)
    x = wavelengths - wavelengths.mean()
    continuum = 100.0 + 20.0 * x - 50.0 * x ** 2
    line = np.ones(11)
    line[4:7] = 0.8
    normalized = normalize_continuum(wavelengths[::-1], (continuum * line)[::-1], (0, 1, 9, 10))
    np.testing.assert_allclose(normalized, line, atol=1e-10)


def test_calibrate_day(make_spectrum):
    line_center = 1074.7
    spectrum = make_spectrum(line_center)
    wavelengths = scan(line_center)
    on, off = synthetic_channels(spectrum, wavelengths, TRUTH)

    left = np.zeros((16, 16), dtype=bool)
    left[:, :8] = True
    masks = (left, ~left)
    headers = flat_headers('08:00:00', line_center)
    data = []
    for header in headers:
        j = int(np.argmin(np.abs(wavelengths - header['WAVELENG'])))
        frame = np.empty((16, 16))
        primary, complementary = masks if header['BEAM'] > 0 else masks[::-1]
        frame[primary] = 1000.0 * on[j]
        frame[complementary] = 800.0 * off[j]
        data.append(frame)

    calibration = calibrate_day(headers, data, masks, spectrum, line_center)

    assert len(calibration) == 1
    assert calibration.offset.shape == (1, 2)
    assert calibration.correction.shape == (1, 2, 11)
    assert np.all(np.isfinite(calibration.chi_square))
    assert np.all(np.isnan(calibration.telluric_offset))
    np.testing.assert_allclose(calibration.offset[0, 0], calibration.offset[0, 1], atol=1e-6)

    time = '2015-08-01T08:30:00'
    assert flat_correction_factor(calibration, time, wavelengths[5], 1, threshold=-1.0) == 1.0
    factor = flat_correction_factor(calibration, time, wavelengths[5], -1, threshold=np.inf)
    assert factor == calibration.correction[0, 1, 5]

    header = correction_to_header(fits.Header(), factor, calibration, 0, beam=-1)
    assert header['CONTCORR'] == factor
    assert header['WAVOFF'] == calibration.offset[0, 1]
    assert 'H2OFACT' in header and 'WCCHISQ' in header


def test_default_threshold():
    assert config['wavecal']['chisq_threshold'] == 0.01


def test_discover_requires_both_beam_states():
    headers = flat_headers('08:00:00', 1074.7)
    for header in headers:
        header['BEAM'] = 1
    data = [np.ones((4, 4))] * len(headers)

    assert discover_flat_sequences(headers, data, 1074.7) == []
    assert len(calibrate_day(headers, data, None, None, 1074.7)) == 0


def test_flat_correction_threshold_from_config(monkeypatch):
    wavelengths = scan(1074.7)
    fit = WavelengthFit(offset=0.0, h2o_factor=1.0, continuum_scale_on=1.0,
                        continuum_scale_off=1.0, chi_square=0.5, wavelengths=wavelengths,
                        correction=np.full(11, 0.9))
    calibration = aggregate(1074.7, ['2015-08-01T08:00:00'], [[fit, fit]])
    time = '2015-08-01T08:10:00'

    assert flat_correction_factor(calibration, time, wavelengths[3], 1) == 1.0
    monkeypatch.setitem(config['wavecal'], 'chisq_threshold', 1.0)
    assert flat_correction_factor(calibration, time, wavelengths[3], 1) == 0.9
