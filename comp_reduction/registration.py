"""
Beam Extraction and Registration for CoMP Frames
================================================

Description:
------------
Splits raw dual-beam frames into their two sub-images and puts each one on a
common solar-north-up grid centred on the occulter, so the beams of every
exposure can be combined pixel by pixel.

Workflow:
---------
1. **Ephemeris:**
   - Solar P angle from the exposure time (local time + site UTC offset).

2. **Distortion Correction:**
   - Remaps each beam through its skew matrix ``[[1, 0], [0, k]]`` (k1 or k2).

3. **Rotation:**
   - Rotates by ``P + 180`` degrees clockwise, raw frames being stored south up.

4. **Translation:**
   - Moves the fitted occulter centre of the beam to the frame centre.

All remapping uses cubic convolution with ``CUBIC = -0.5``; samples falling
outside the input are set to ``MISSING = 0.0``.

"""


import os
import logging

import numpy as np
from astropy.io import fits

from .ephemeris import solar_ephemeris

# Keys cubic convolution parameter and fill value for out-of-bounds samples
CUBIC = -0.5
MISSING = 0.0
EDGE_TOLERANCE = 1e-6


def _keys_weights(t, a):
    """Cubic convolution weights of the four neighbours at offsets -1, 0, 1, 2."""
    s = np.stack([1 + t, t, 1 - t, 2 - t])
    inner = (a + 2) * s ** 3 - (a + 3) * s ** 2 + 1
    outer = a * s ** 3 - 5 * a * s ** 2 + 8 * a * s - 4 * a
    return np.where(s <= 1, inner, np.where(s < 2, outer, 0.0))


def cubic_remap(image, x, y, cubic=CUBIC, missing=MISSING):
    """
    Interpolate an image at arbitrary pixel coordinates.

    Parameters
    ----------
    image : numpy.ndarray
        2D input image, indexed ``image[y, x]``.
    x, y : numpy.ndarray
        Sample coordinates, any matching shape.
    cubic : float, optional
        Cubic convolution kernel parameter.
    missing : float, optional
        Value for samples outside the image.

    Returns
    -------
    numpy.ndarray
        Interpolated values with the shape of ``x``.
    """
    image = np.asarray(image, dtype=float)
    ny, nx = image.shape
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    valid = ((x >= -EDGE_TOLERANCE) & (x <= nx - 1 + EDGE_TOLERANCE)
             & (y >= -EDGE_TOLERANCE) & (y <= ny - 1 + EDGE_TOLERANCE))
    xs = np.where(valid, np.clip(x, 0, nx - 1), 0.0)
    ys = np.where(valid, np.clip(y, 0, ny - 1), 0.0)

    x0 = np.floor(xs)
    y0 = np.floor(ys)
    wx = _keys_weights(xs - x0, cubic)
    wy = _keys_weights(ys - y0, cubic)
    x0 = x0.astype(int)
    y0 = y0.astype(int)

    result = np.zeros(x.shape)
    for j in range(4):
        yi = np.clip(y0 + j - 1, 0, ny - 1)
        for i in range(4):
            xi = np.clip(x0 + i - 1, 0, nx - 1)
            result += wy[j] * wx[i] * image[yi, xi]
    result[~valid] = missing
    return result


def _center(image):
    ny, nx = image.shape
    return (nx - 1) / 2.0, (ny - 1) / 2.0


def extract_beam(frame, beam, config):
    """
    Cut one beam out of a raw dual-beam frame.

    Beam 1 is the upper-left ``nx`` square of the detector, beam 2 the lower-right one.
    """
    n, raw = config.nx, config.raw_nx
    if beam == 1:
        return frame[raw - n:raw, 0:n]
    if beam == 2:
        return frame[0:n, raw - n:raw]
    raise ValueError(f"Beam must be 1 or 2, got {beam}")


def distortion_matrix(k):
    """Skew matrix taking corrected (x, y) offsets to raw offsets."""
    return np.array([[1.0, 0.0], [0.0, k]])


def rotation_matrix(angle):
    """Matrix taking output offsets to input offsets for a clockwise rotation."""
    theta = np.deg2rad(angle)
    return np.array([[np.cos(theta), -np.sin(theta)],
                     [np.sin(theta), np.cos(theta)]])


def _affine_remap(image, matrix):
    xc, yc = _center(image)
    yy, xx = np.indices(image.shape, dtype=float)
    dx, dy = xx - xc, yy - yc
    xs = matrix[0, 0] * dx + matrix[0, 1] * dy + xc
    ys = matrix[1, 0] * dx + matrix[1, 1] * dy + yc
    return cubic_remap(image, xs, ys)


def apply_distortion(sub_image, k):
    """Remove the beam's optical distortion about the sub-image centre."""
    return _affine_remap(sub_image, distortion_matrix(k))


def rotate_image(image, angle):
    """Rotate an image clockwise by ``angle`` degrees about its centre."""
    return _affine_remap(image, rotation_matrix(angle))


def rotate_point(x, y, angle, center):
    """Position of the input point (x, y) after ``rotate_image(image, angle)``."""
    xc, yc = center
    inverse = rotation_matrix(angle).T
    px = inverse[0, 0] * (x - xc) + inverse[0, 1] * (y - yc) + xc
    py = inverse[1, 0] * (x - xc) + inverse[1, 1] * (y - yc) + yc
    return px, py


def translate_image(image, dx, dy):
    """Shift image content by (dx, dy) pixels, filling uncovered pixels with zero."""
    yy, xx = np.indices(image.shape, dtype=float)
    return cubic_remap(image, xx - dx, yy - dy)


def register_beam(frame, beam, circle, p_angle, config):
    """
    Distortion-correct, rotate and centre one beam of a raw frame.

    Parameters
    ----------
    frame : numpy.ndarray
        Raw dual-beam frame.
    beam : int
        1 or 2.
    circle : Circle
        Occulter circle of the beam in distortion-corrected sub-image coordinates.
    p_angle : float
        Solar P angle in degrees.
    config : InstrumentConfig
        Instrument constants.

    Returns
    -------
    numpy.ndarray
        ``nx`` x ``nx`` image, solar north up, occulter at the frame centre.
    """
    corrected = apply_distortion(extract_beam(frame, beam, config), config.distortion(beam))
    angle = p_angle + 180.0
    rotated = rotate_image(corrected, angle)
    center = _center(corrected)
    ox, oy = rotate_point(circle.x, circle.y, angle, center)
    return translate_image(rotated, center[0] - ox, center[1] - oy)


def extract_and_register(raw_stack, headers, geometry, config, ephemeris=solar_ephemeris):
    """
    Register both beams of every exposure in a stack of raw frames.

    Parameters
    ----------
    raw_stack : numpy.ndarray
        Raw frames, shape (n, raw_nx, raw_nx) or a single 2D frame.
    headers : list of astropy.io.fits.Header
        One header per exposure, with the observation date and time.
    geometry : ImageGeometry
        Fitted occulter circles of both beams.
    config : InstrumentConfig
        Instrument constants.
    ephemeris : callable, optional
        ``ephemeris(header, utc_offset)`` returning an object with ``p_angle``.

    Returns
    -------
    beam1, beam2 : numpy.ndarray
        Registered stacks, shape (n, nx, nx).

    Raises
    ------
    MissingMetadata
        If an exposure has no usable timestamp; nothing is returned for the stack.
    """
    raw_stack = np.asarray(raw_stack, dtype=float)
    if raw_stack.ndim == 2:
        raw_stack = raw_stack[None]
    if len(headers) != len(raw_stack):
        raise ValueError(f"{len(raw_stack)} frames but {len(headers)} headers")

    beam1, beam2 = [], []
    for i, (frame, header) in enumerate(zip(raw_stack, headers)):
        p_angle = ephemeris(header, config.utc_offset).p_angle
        beam1.append(register_beam(frame, 1, geometry.occulter1, p_angle, config))
        beam2.append(register_beam(frame, 2, geometry.occulter2, p_angle, config))
        logging.info(f"Exposure {i + 1} registered with P angle {p_angle:.3f} deg.")
    return np.array(beam1), np.array(beam2)


def save_registered_images(output_dir, beam1, beam2, overwrite=True):
    """
    Save the registered beam stacks as FITS and NPY files.

    Output
    ------
    - 'registered_beam1.fits', 'registered_beam2.fits'
    - 'registered_beam1.npy', 'registered_beam2.npy'
    """
    os.makedirs(output_dir, exist_ok=True)
    for name, data in (('registered_beam1', beam1), ('registered_beam2', beam2)):
        output_file_fits = os.path.join(output_dir, f'{name}.fits')
        fits.writeto(output_file_fits, np.asarray(data, dtype=np.float32), overwrite=overwrite)
        logging.info(f"Saved registered stack in FITS format: {output_file_fits}")
        output_file_npy = os.path.join(output_dir, f'{name}.npy')
        np.save(output_file_npy, data)
        logging.info(f"Saved registered stack in NPY format: {output_file_npy}")
