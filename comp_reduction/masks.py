"""
Mask Builder for CoMP Level 1 Images
====================================

Description:
------------
Builds the weight mask of an occulter-centred image from the image geometry.
The mask is the product of independent sub-masks; no other combination is used.

Workflow:
---------
1. **Geometry Source:**
   - Legacy headers carry two per-beam estimates of each circle, which are averaged.
   - Modern headers (``FRADIUS`` present) carry single values plus the post angle,
     the overlap angle and the solar P angle.

2. **Sub-Masks:**
   - Disk mask removes the occulter, scaled by ``occ_fac`` plus a fixed offset.
   - Field mask keeps the field stop, scaled by ``fld_fac`` plus a fixed offset.
   - Post mask removes the wedge hidden by the occulter support post.
   - Overlap mask removes the wedge where the two beams overlap.

3. **Combination:**
   - Legacy: disk x field.
   - Modern: disk x field x post x overlap.

Angles are position angles, counter-clockwise from the image +y axis. The image is
assumed to be centred on the occulter already.

"""


import logging
from dataclasses import dataclass

import numpy as np

from .geometry import Circle
from .metadata import header_value


@dataclass(frozen=True)
class LegacyGeometry:
    occulter: Circle
    field: Circle


@dataclass(frozen=True)
class ModernGeometry:
    occulter: Circle
    field: Circle
    post_angle: float
    overlap_angle: float
    p_angle: float


def _mean_keyword(header, key, divergence):
    first = header_value(header, f'{key}1')
    second = header_value(header, f'{key}2')
    if abs(first - second) > divergence:
        logging.warning(f"{key}1={first:.2f} and {key}2={second:.2f} differ by more than "
                        f"{divergence} pixels, using their mean")
    return 0.5 * (first + second)


def parse_geometry_source(header, divergence=2.0):
    """
    Read the mask geometry from a Level 1 header.

    Parameters
    ----------
    header : astropy.io.fits.Header or dict
        Level 1 header.
    divergence : float, optional
        Difference in pixels between the two legacy estimates above which a
        warning is logged.

    Returns
    -------
    LegacyGeometry or ModernGeometry
        Modern when the header has the ``FRADIUS`` keyword.
    """
    if 'FRADIUS' in header:
        occulter = Circle(header_value(header, 'OXCNTER'), header_value(header, 'OYCNTER'),
                          header_value(header, 'ORADIUS'))
        field = Circle(header_value(header, 'FXCNTER'), header_value(header, 'FYCNTER'),
                       header_value(header, 'FRADIUS'))
        return ModernGeometry(occulter=occulter, field=field,
                              post_angle=header_value(header, 'POSTPANG'),
                              overlap_angle=header_value(header, 'OVRLPANG'),
                              p_angle=header_value(header, 'SOLAR_P0'))

    occulter = Circle(*(_mean_keyword(header, key, divergence)
                        for key in ('OXCNTER', 'OYCNTER', 'ORADIUS')))
    field = Circle(*(_mean_keyword(header, key, divergence)
                     for key in ('FXCNTER', 'FYCNTER', 'FRADIUS')))
    return LegacyGeometry(occulter=occulter, field=field)


def _offsets(shape, x0, y0):
    yy, xx = np.indices(shape, dtype=float)
    return xx - x0, yy - y0


def _position_angle(dx, dy):
    return np.rad2deg(np.arctan2(-dx, dy)) % 360.0


def disk_mask(shape, center, radius):
    """Zero within ``radius`` of ``center``, one elsewhere."""
    dx, dy = _offsets(shape, *center)
    return (np.hypot(dx, dy) >= radius).astype(float)


def field_mask(shape, center, radius):
    """One within ``radius`` of ``center``, zero elsewhere."""
    dx, dy = _offsets(shape, *center)
    return (np.hypot(dx, dy) <= radius).astype(float)


def wedge_mask(shape, center, angle, half_width, inner_radius=0.0):
    """Zero inside the wedge of ``half_width`` degrees around position angle ``angle``."""
    dx, dy = _offsets(shape, *center)
    separation = np.abs((_position_angle(dx, dy) - angle + 180.0) % 360.0 - 180.0)
    inside = (separation < half_width) & (np.hypot(dx, dy) > inner_radius)
    return np.where(inside, 0.0, 1.0)


def post_mask(shape, center, post_angle, p_angle, config):
    """Wedge hidden by the occulter post, in the solar-north-up frame."""
    angle = post_angle + 180.0 - p_angle - config.post_rotation
    return wedge_mask(shape, center, angle, config.post_half_width, config.post_inner_radius)


def overlap_mask(shape, field_center, overlap_angle, p_angle, config):
    """Wedge where the two beams overlap, seen from the field centre."""
    angle = overlap_angle + p_angle
    return wedge_mask(shape, field_center, angle, config.overlap_half_width,
                      config.overlap_inner_radius)


def build_mask(source, config, occ_fac=1.0, fld_fac=1.0, shape=None, divergence=2.0):
    """
    Weight mask for an occulter-centred image.

    Parameters
    ----------
    source : LegacyGeometry, ModernGeometry or astropy.io.fits.Header
        Geometry of the image; headers are parsed with ``parse_geometry_source``.
    config : InstrumentConfig
        Instrument constants (offsets, post rotation, wedge widths).
    occ_fac, fld_fac : float, optional
        Scale factors of the occulter and field radii.
    shape : tuple, optional
        Mask shape, ``(nx, nx)`` by default.
    divergence : float, optional
        Legacy keyword divergence, in pixels, above which a warning is logged.

    Returns
    -------
    mask : numpy.ndarray
        Float mask with values in [0, 1].
    """
    if not isinstance(source, (LegacyGeometry, ModernGeometry)):
        source = parse_geometry_source(source, divergence)
    shape = (config.nx, config.nx) if shape is None else shape
    ny, nx = shape
    center = ((nx - 1) / 2.0, (ny - 1) / 2.0)
    occulter, field = source.occulter, source.field
    field_center = (center[0] + field.x - occulter.x, center[1] + field.y - occulter.y)

    mask = disk_mask(shape, center, occulter.radius * occ_fac + config.occulter_offset)
    mask *= field_mask(shape, field_center, field.radius * fld_fac + config.field_offset)

    if isinstance(source, ModernGeometry):
        mask *= post_mask(shape, center, source.post_angle, source.p_angle, config)
        mask *= overlap_mask(shape, field_center, source.overlap_angle, source.p_angle, config)
    return mask


def raw_beam_masks(geometry, config):
    """
    Boolean annulus masks of both beams in raw detector coordinates.

    Parameters
    ----------
    geometry : ImageGeometry
        Circles in distortion-corrected sub-image coordinates.
    config : InstrumentConfig
        Instrument constants.

    Returns
    -------
    mask1, mask2 : numpy.ndarray
        ``True`` between the occulter and the field stop of each beam.
    """
    yy, xx = np.indices((config.raw_nx, config.raw_nx), dtype=float)
    origins = {1: (0, config.raw_nx - config.nx), 2: (config.raw_nx - config.nx, 0)}
    c = (config.nx - 1) / 2.0
    masks = []
    for beam in (1, 2):
        x0, y0 = origins[beam]
        # raw pixels to corrected sub-image coordinates: raw y offsets are k times larger
        x = xx - x0
        y = c + (yy - y0 - c) / config.distortion(beam)
        occ, fld = geometry.occulter(beam), geometry.field(beam)
        outside = np.hypot(x - occ.x, y - occ.y) >= occ.radius + config.occulter_offset
        inside = np.hypot(x - fld.x, y - fld.y) <= fld.radius + config.field_offset
        masks.append(outside & inside)
    return masks[0], masks[1]
