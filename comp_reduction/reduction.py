"""
Reduction Script for CoMP Raw Frames
====================================

Description:
------------
This script performs the detector-level reduction of raw CoMP frames. It
subtracts darks and divides by the master flat, preparing the frames for beam
registration.

Workflow:
---------
1. **Load Raw Files:**
   - Reads every exposure extension of the raw files, completing each
     extension header with the observation date and time of the primary header.

2. **Dark Frame Handling:**
   - Matches dark frames to exposures by exposure time.
   - Uses the shortest dark when an exact exposure time is unavailable.

3. **Flat-Field Correction:**
   - Divides by the master flat where it is non-zero.
   - Replaces bad pixels with the local median.

"""


import os
import glob
import logging

import numpy as np
from astropy.io import fits
from scipy.ndimage import median_filter

from .metadata import header_value
from .preprocessing import match_dark

INHERITED_KEYWORDS = ('DATE-OBS', 'TIME-OBS')


def read_extensions(filename):
    """
    Read every image extension of a multi-extension FITS file.

    Returns
    -------
    headers : list of astropy.io.fits.Header
        Extension headers, with ``DATE-OBS``/``TIME-OBS`` copied from the primary
        header when absent.
    data : list of numpy.ndarray
    """
    headers, data = [], []
    with fits.open(filename) as hdul:
        primary = hdul[0].header
        for hdu in hdul[1:]:
            if hdu.data is None:
                continue
            header = hdu.header.copy()
            for key in INHERITED_KEYWORDS:
                if key not in header and key in primary:
                    header[key] = primary[key]
            headers.append(header)
            data.append(np.asarray(hdu.data, dtype=float))
    return headers, data


def load_object_files(rep_object):
    """
    Load the raw exposures of every file in a directory.

    Parameters
    ----------
    rep_object : str
        Directory with raw ``*.fts`` files.

    Returns
    -------
    files : list of str
        Path of the file each exposure came from.
    data : list of numpy.ndarray
    headers : list of astropy.io.fits.Header
    """
    files, data, headers = [], [], []
    for filename in sorted(glob.glob(os.path.join(rep_object, '*.fts'))):
        file_headers, file_data = read_extensions(filename)
        files.extend([filename] * len(file_data))
        data.extend(file_data)
        headers.extend(file_headers)
    logging.info(f"Loaded {len(data)} exposures from {len(set(files))} raw files.")
    return files, data, headers


def subtract_dark(data, headers, times_darks, darks):
    """
    Subtract the dark matching each exposure time.

    Parameters
    ----------
    data : list of numpy.ndarray
        Raw frames.
    headers : list of astropy.io.fits.Header
        Headers with the ``EXPOSURE`` keyword.
    times_darks, darks : numpy.ndarray
        Exposure times and mean dark frames.

    Returns
    -------
    corrected_data : list of numpy.ndarray
    """
    corrected_data = []
    for i, img in enumerate(data):
        exp_time = header_value(headers[i], 'EXPOSURE')
        logging.info(f"Image {i + 1} exposure time: {exp_time}")
        corrected_data.append(np.asarray(img, dtype=float) - match_dark(exp_time, times_darks, darks))
    return corrected_data


def apply_flat_field_correction(data, master_flat, mask=None, size=5):
    """
    Divide frames by the master flat and repair bad pixels.

    Parameters
    ----------
    data : list of numpy.ndarray
        Dark-corrected frames.
    master_flat : numpy.ndarray
        Master flat; pixels where it is zero are set to zero.
    mask : numpy.ndarray, optional
        Bad pixel mask (``True`` for bad pixels).
    size : int, optional
        Median filter size used to replace bad pixels.

    Returns
    -------
    reduced_data : list of numpy.ndarray
    """
    reduced_data = []
    for i, img in enumerate(data):
        corrected = np.divide(img, master_flat, out=np.zeros_like(img, dtype=float),
                              where=(master_flat != 0))
        if mask is not None and np.any(mask):
            corrected = np.where(mask, median_filter(corrected, (size, size)), corrected)
        reduced_data.append(corrected)
        logging.info(f"Image {i + 1} corrected with flat-field.")
    return reduced_data
