"""
Main Pipeline Script for CoMP Data Reduction
============================================

Description:
------------
This script orchestrates the Level 1 reduction of one CoMP observing day:
detector corrections, geometry calibration, beam registration and the
wavelength calibration of the flats.

Workflow:
---------
1. **Preprocessing:**
   - Loads darks and flats, builds the master flat and bad pixel mask.

2. **Geometry:**
   - Fits occulter and field-stop circles of both beams on the master flat.

3. **Reduction and Registration:**
   - Dark and flat corrects the raw frames.
   - Registers both beams solar north up on the occulter centre.
   - Writes Level 1 FITS files with WCS and geometry keywords.

4. **Wavelength Calibration:**
   - Fits the flat scans of the 1074.7 and 1079.8 nm lines.

Output:
-------
- Registered beam stacks, Level 1 files and the masks in the output directory.
- Wavelength calibration tables ('wavecal_<line>.npz').

"""


import os
import logging

import numpy as np
from astropy.io import fits

from .astrometric_calibration import level1_header
from .ephemeris import solar_ephemeris
from .geometry import find_image_geometry, geometry_to_header
from .masks import build_mask, raw_beam_masks
from .parameters import InstrumentConfig, config, setup_logging
from .preprocessing import create_bad_pixel_mask, make_master_flat, save_calibration, sort_darks
from .reduction import apply_flat_field_correction, load_object_files, subtract_dark
from .registration import extract_and_register, save_registered_images
from .spectra import load_reference_spectrum
from .wavecal import calibrate_day, read_flat_file


def save_level1(output_dir, filename, beam1, beam2, headers, overwrite=True):
    """Write the registered beams of one raw file as a multi-extension Level 1 file."""
    output_file = os.path.join(output_dir, os.path.basename(filename).replace('.fts', '.l1.fts'))
    hdus = [fits.PrimaryHDU()]
    for b1, b2, header in zip(beam1, beam2, headers):
        hdus.append(fits.ImageHDU(np.array([b1, b2], dtype=np.float32), header=header))
    fits.HDUList(hdus).writeto(output_file, overwrite=overwrite)
    logging.info(f"Saved Level 1 file: {output_file}")
    return output_file


def save_wavecal(output_dir, calibration):
    output_file = os.path.join(output_dir, f'wavecal_{calibration.line_center:.1f}.npz')
    np.savez(output_file, times=calibration.times, wavelengths=calibration.wavelengths,
             offset=calibration.offset, h2o_factor=calibration.h2o_factor,
             continuum_scale_on=calibration.continuum_scale_on,
             continuum_scale_off=calibration.continuum_scale_off,
             chi_square=calibration.chi_square, telluric_offset=calibration.telluric_offset,
             correction=calibration.correction)
    logging.info(f"Saved wavelength calibration: {output_file}")


def main(params=None):
    """
    Reduce one observing day.

    Parameters
    ----------
    params : dict, optional
        Configuration dictionary, defaults to ``parameters.config``.
    """
    params = config if params is None else params
    setup_logging(params)
    instrument = InstrumentConfig.from_dict(params['instrument'])
    paths, overwrite = params['paths'], params['output']['overwrite']
    os.makedirs(paths['output_dir'], exist_ok=True)
    logging.info("Pipeline started.")

    # Preprocessing
    logging.info("Starting preprocessing...")
    times_darks, darks = sort_darks(paths['dark_file'])
    flat_headers, flats = read_flat_file(paths['flat_file'])
    master_flat = make_master_flat(flat_headers, flats, times_darks, darks)
    bad_pixels = create_bad_pixel_mask(master_flat)
    save_calibration(paths['output_dir'], master_flat, bad_pixels, overwrite)
    logging.info("Preprocessing completed.")

    # Geometry
    logging.info("Starting geometry calibration...")
    geometry = find_image_geometry(master_flat, instrument)
    mask = build_mask(geometry_to_header(geometry, fits.Header()), instrument,
                      params['mask']['occ_fac'], params['mask']['fld_fac'],
                      divergence=params['mask']['divergence_warning'])
    fits.writeto(os.path.join(paths['output_dir'], 'level1_mask.fits'), mask, overwrite=overwrite)
    logging.info("Geometry calibration completed.")

    # Reduction and registration
    logging.info("Starting reduction...")
    files, data, headers = load_object_files(paths['raw_dir'])
    data = subtract_dark(data, headers, times_darks, darks)
    data = apply_flat_field_correction(data, master_flat, bad_pixels)
    beam1, beam2 = extract_and_register(np.array(data), headers, geometry, instrument)
    save_registered_images(paths['output_dir'], beam1, beam2, overwrite)
    for filename in sorted(set(files)):
        select = [i for i, f in enumerate(files) if f == filename]
        l1_headers = [level1_header(headers[i], solar_ephemeris(headers[i], instrument.utc_offset),
                                    instrument, geometry) for i in select]
        save_level1(paths['output_dir'], filename, beam1[select], beam2[select], l1_headers, overwrite)
    logging.info("Reduction completed.")

    # Wavelength calibration
    logging.info("Starting wavelength calibration...")
    beam_masks = raw_beam_masks(geometry, instrument)
    dark_flats = subtract_dark(flats, flat_headers, times_darks, darks)
    wavecal = params['wavecal']
    for line_center in wavecal['lines']:
        reference_file = os.path.join(paths['reference_dir'], f'reference_{line_center:.1f}.fits')
        spectrum = load_reference_spectrum(reference_file, line_center,
                                           wavecal['grid_half_width'], wavecal['grid_step'])
        calibration = calibrate_day(flat_headers, dark_flats, beam_masks, spectrum, line_center, wavecal)
        save_wavecal(paths['output_dir'], calibration)
    logging.info("Wavelength calibration completed.")
    logging.info("Pipeline finished successfully.")


if __name__ == '__main__':
    main()
