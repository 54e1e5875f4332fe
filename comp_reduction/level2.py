"""Level 2 quantities derived from registered Stokes images."""

import numpy as np


def azimuth(q, u, mask=None):
    """
    Linear polarisation azimuth in degrees, in [0, 180).

    Parameters
    ----------
    q, u : numpy.ndarray
        Stokes Q and U images.
    mask : numpy.ndarray, optional
        Weight or boolean mask; pixels where it is zero are set to NaN.
    """
    result = 0.5 * np.rad2deg(np.arctan2(u, q)) % 180.0
    if mask is not None:
        result = np.where(np.asarray(mask) > 0, result, np.nan)
    return result
