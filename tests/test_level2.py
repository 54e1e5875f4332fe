import numpy as np

from comp_reduction.level2 import azimuth


def test_azimuth():
    q = np.array([1.0, 0.0, -1.0, 0.0])
    u = np.array([0.0, 1.0, 0.0, -1.0])
    np.testing.assert_allclose(azimuth(q, u), [0.0, 45.0, 90.0, 135.0])


def test_azimuth_mask():
    q = np.ones((2, 2))
    u = np.ones((2, 2))
    result = azimuth(q, u, mask=np.array([[1, 0], [0.5, 0]]))
    np.testing.assert_allclose(result[0, 0], 22.5)
    assert np.isnan(result[0, 1]) and np.isnan(result[1, 1])
    assert result[1, 0] == 22.5
