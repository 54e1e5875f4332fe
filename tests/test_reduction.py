import logging

import numpy as np
from astropy.io import fits

from comp_reduction.preprocessing import create_bad_pixel_mask, make_master_flat, match_dark, \
    save_calibration, sort_darks
from comp_reduction.reduction import apply_flat_field_correction, load_object_files, \
    read_extensions, subtract_dark


def write_mef(filename, frames, exposures, primary=None):
    hdus = [fits.PrimaryHDU(header=primary)]
    for frame, exposure in zip(frames, exposures):
        header = fits.Header()
        header['EXPOSURE'] = exposure
        hdus.append(fits.ImageHDU(data=frame, header=header))
    fits.HDUList(hdus).writeto(filename)


def test_sort_darks(tmp_path):
    filename = str(tmp_path / 'dark.fts')
    write_mef(filename, [np.full((4, 4), v) for v in (1.0, 3.0, 10.0)], [250.0, 250.0, 80.0])
    times, darks = sort_darks(filename)
    np.testing.assert_array_equal(times, [80.0, 250.0])
    np.testing.assert_allclose(darks[0], 10.0)
    np.testing.assert_allclose(darks[1], 2.0)


def test_match_dark(caplog):
    times = np.array([80.0, 250.0])
    darks = np.array([np.full((2, 2), 1.0), np.full((2, 2), 5.0)])
    np.testing.assert_allclose(match_dark(250.0, times, darks), 5.0)
    with caplog.at_level(logging.WARNING):
        np.testing.assert_allclose(match_dark(100.0, times, darks), 1.0)
    assert 'No exact match' in caplog.text
    assert match_dark(100.0, np.array([]), np.array([])) == 0.0


def test_master_flat_and_bad_pixels(tmp_path):
    rng = np.random.default_rng(4)
    headers = [{'EXPOSURE': 250.0}] * 3
    flats = [1000.0 + rng.normal(0, 5, (32, 32)) + 10.0 for _ in range(3)]
    darks = np.array([np.full((32, 32), 10.0)])
    master = make_master_flat(headers, flats, np.array([250.0]), darks)
    np.testing.assert_allclose(master.mean(), 1000.0, atol=2.0)

    master[10, 12] = 5000.0
    mask = create_bad_pixel_mask(master)
    assert mask.dtype == bool
    assert mask[10, 12]
    assert mask.sum() < 0.02 * mask.size

    save_calibration(str(tmp_path), master, mask)
    assert (tmp_path / 'master_flat.fits').exists()
    np.testing.assert_array_equal(np.load(tmp_path / 'mask.npy'), mask)


def test_read_extensions_inherits_timestamp(tmp_path):
    primary = fits.Header()
    primary['DATE-OBS'] = '2015-08-01'
    primary['TIME-OBS'] = '08:00:00'
    write_mef(str(tmp_path / 'a.fts'), [np.ones((4, 4)), np.zeros((4, 4))], [250.0, 80.0], primary)
    headers, data = read_extensions(str(tmp_path / 'a.fts'))
    assert len(data) == 2
    assert headers[1]['TIME-OBS'] == '08:00:00'
    assert headers[1]['EXPOSURE'] == 80.0

    write_mef(str(tmp_path / 'b.fts'), [np.ones((4, 4))], [250.0], primary)
    files, data, headers = load_object_files(str(tmp_path))
    assert len(data) == 3
    assert files[-1].endswith('b.fts')


def test_dark_and_flat_correction():
    data = [np.full((8, 8), 110.0)]
    corrected = subtract_dark(data, [{'EXPOSURE': 250.0}], np.array([250.0]),
                              np.array([np.full((8, 8), 10.0)]))
    np.testing.assert_allclose(corrected[0], 100.0)

    flat = np.full((8, 8), 2.0)
    flat[0, 0] = 0.0
    mask = np.zeros((8, 8), dtype=bool)
    mask[4, 4] = True
    corrected[0][4, 4] = 1e6
    reduced = apply_flat_field_correction(corrected, flat, mask)[0]
    assert reduced[0, 0] == 0.0
    assert reduced[4, 4] == 50.0
    assert reduced[2, 5] == 50.0
