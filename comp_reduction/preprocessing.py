"""
Preprocessing Script for CoMP Data Reduction
============================================

Description:
------------
This script handles the preprocessing stage of the pipeline. It reads the
day's darks and flats and builds the master flat and bad-pixel mask used to fit
the image geometry and to correct the science frames.

Workflow:
---------
1. **Dark Frame Processing:**
   - Reads every dark extension and groups the frames by exposure time.
   - Averages the frames of each exposure time.

2. **Master Flat Creation:**
   - Subtracts the matching dark from each flat exposure.
   - Takes the median of the dark-corrected flats.

3. **Bad Pixel Mask:**
   - Flags pixels outside percentile thresholds of the illuminated area.
   - Flags pixels deviating from a median-filtered flat by more than 5 sigma.

4. **Output:**
   - Saves the master flat and mask in both FITS and NPY formats.

"""


import os
import logging

import numpy as np
from astropy.io import fits
from scipy.ndimage import median_filter

from .metadata import header_value


def sort_darks(dark_file):
    """
    Load dark frames and average them per exposure time.

    Parameters
    ----------
    dark_file : str
        Multi-extension FITS file with one dark exposure per extension.

    Returns
    -------
    times : numpy.ndarray
        Sorted distinct exposure times (``EXPOSURE`` keyword, ms).
    darks : numpy.ndarray
        Mean dark frame of each exposure time.
    """
    frames = {}
    with fits.open(dark_file) as hdul:
        for hdu in hdul[1:]:
            if hdu.data is None:
                continue
            time = header_value(hdu.header, 'EXPOSURE')
            frames.setdefault(time, []).append(np.asarray(hdu.data, dtype=float))
    times = np.array(sorted(frames))
    darks = np.array([np.mean(frames[t], axis=0) for t in times])
    logging.info(f"Loaded {sum(len(v) for v in frames.values())} dark frames with times: {times}")
    return times, darks


def match_dark(exposure, times_darks, darks):
    """
    Dark frame for an exposure time.

    Uses an exact match if available, otherwise the dark with the lowest exposure
    time, with a warning.
    """
    if len(times_darks) == 0:
        logging.warning(f"No darks available for exposure time {exposure}, using no dark subtraction")
        return 0.0
    matches = np.where(times_darks == exposure)[0]
    if len(matches):
        return darks[matches[0]]
    logging.warning(f"No exact match for exposure time {exposure}. "
                    f"Using offset dark with lowest exposure time.")
    return darks[np.argmin(times_darks)]


def make_master_flat(headers, flats, times_darks, darks):
    """
    Median dark-corrected flat.

    Parameters
    ----------
    headers : list of astropy.io.fits.Header
        Flat headers with ``EXPOSURE``.
    flats : list of numpy.ndarray
        Raw flat frames.
    times_darks, darks : numpy.ndarray
        Output of ``sort_darks``.

    Returns
    -------
    master_flat : numpy.ndarray
    """
    corrected = [np.asarray(flat, dtype=float) - match_dark(header_value(h, 'EXPOSURE'), times_darks, darks)
                 for h, flat in zip(headers, flats)]
    master_flat = np.median(corrected, axis=0)
    logging.info(f"Master flat created from {len(corrected)} flat exposures.")
    return master_flat


def create_bad_pixel_mask(master_flat, lower=0.001, upper=0.999, size=5, nsigma=5.0):
    """
    Flag hot, cold and isolated deviant pixels of a master flat.

    Parameters
    ----------
    master_flat : numpy.ndarray
        Dark-corrected flat.
    lower, upper : float, optional
        Percentile fractions of the illuminated pixels outside which pixels are bad.
    size : int, optional
        Median filter size.
    nsigma : float, optional
        Residual threshold against the median-filtered flat, in standard deviations.

    Returns
    -------
    mask : numpy.ndarray
        Boolean array, ``True`` for bad pixels.
    """
    logging.info("Creating bad pixel mask")
    illuminated = master_flat > 0.5 * np.median(master_flat[master_flat > 0]) \
        if np.any(master_flat > 0) else np.ones(master_flat.shape, dtype=bool)

    lower_thresh = np.percentile(master_flat[illuminated], lower * 100)
    upper_thresh = np.percentile(master_flat[illuminated], upper * 100)
    mask = illuminated & ((master_flat < lower_thresh) | (master_flat > upper_thresh))
    logging.info(f"Lower threshold: {lower_thresh}, Upper threshold: {upper_thresh}")

    diff = master_flat - median_filter(master_flat, (size, size))
    std_diff = np.std(diff[illuminated])
    mask |= illuminated & (np.abs(diff) > nsigma * std_diff)
    logging.info(f"Number of masked pixels: {np.sum(mask)}, Unmasked pixels: {np.size(mask) - np.sum(mask)}")
    return mask


def save_calibration(output_dir, master_flat, mask, overwrite=True):
    """
    Save the master flat and the bad pixel mask in FITS and NPY formats.

    Output
    ------
    - 'master_flat.fits', 'master_flat.npy'
    - 'mask.fits', 'mask.npy'
    """
    os.makedirs(output_dir, exist_ok=True)
    fits.writeto(os.path.join(output_dir, 'master_flat.fits'), master_flat, overwrite=overwrite)
    np.save(os.path.join(output_dir, 'master_flat.npy'), master_flat)
    fits.writeto(os.path.join(output_dir, 'mask.fits'), mask.astype(int), overwrite=overwrite)
    np.save(os.path.join(output_dir, 'mask.npy'), mask)
    logging.info("Master flat and mask saved successfully.")
