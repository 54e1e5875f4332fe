import numpy as np

from comp_reduction.main import save_wavecal
from comp_reduction.wavecal import WavelengthFit, aggregate


def test_save_wavecal(tmp_path):
    wavelengths = 1074.7 + np.linspace(-0.25, 0.25, 11)
    fit = WavelengthFit(offset=0.01, h2o_factor=1.2, continuum_scale_on=1.0,
                        continuum_scale_off=1.0, chi_square=1e-4, wavelengths=wavelengths,
                        correction=np.ones(11), telluric_offset=-0.005)
    calibration = aggregate(1074.7, ['2015-08-01T08:00:00'], [[fit, fit]])

    save_wavecal(str(tmp_path), calibration)

    with np.load(tmp_path / 'wavecal_1074.7.npz') as saved:
        np.testing.assert_allclose(saved['telluric_offset'], [[-0.005, -0.005]])
        np.testing.assert_allclose(saved['offset'], [[0.01, 0.01]])
        assert saved['correction'].shape == (1, 2, 11)
        assert saved['times'][0] == '2015-08-01T08:00:00'
