"""
Geometry Finder for CoMP Flat Fields
====================================

Description:
------------
Locates the occulter and field-stop circles in each beam of a flat-field frame.
The circles fix the image geometry used by the mask builder and by the beam
registration for a whole observing day.

Workflow:
---------
1. **Initial Centre:**
   - Centroid of the illuminated annulus (pixels above the mid intensity).

2. **Edge Search:**
   - Samples radial profiles between half and one and a half times the radius guess.
   - Picks the strongest rising edge (occulter) or falling edge (field stop) per ray.

3. **Circle Fit:**
   - Algebraic least-squares circle through the edge points, one clipping pass.
   - Repeated from the new centre to remove the bias of the initial centroid.

4. **Sanity Checks:**
   - Radii more than 10% away from the guess are clamped to the guess.
   - Degenerate searches raise ``GeometryFitDegenerate`` for the caller to replace.

"""


import logging
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import center_of_mass, map_coordinates

from .errors import GeometryFitDegenerate
from .registration import apply_distortion, extract_beam

N_ANGLES = 360
RADIAL_STEP = 0.5
RADIUS_TOLERANCE = 0.1
# minimum edge strength: a fraction of the image range per pixel, and a
# multiple of the robust scatter of the radial derivative
EDGE_FRACTION = 0.05
EDGE_SIGMA = 5.0
MIN_EDGES = N_ANGLES // 4


@dataclass(frozen=True)
class Circle:
    x: float
    y: float
    radius: float


@dataclass(frozen=True)
class ImageGeometry:
    """Occulter and field-stop circles of both beams, in sub-image pixels."""

    occulter1: Circle
    occulter2: Circle
    field1: Circle
    field2: Circle

    def occulter(self, beam):
        return self.occulter1 if beam == 1 else self.occulter2

    def field(self, beam):
        return self.field1 if beam == 1 else self.field2

    def field_offset(self, beam):
        """(dx, dy) from the occulter centre to the field centre of a beam."""
        occ, fld = self.occulter(beam), self.field(beam)
        return fld.x - occ.x, fld.y - occ.y

    @property
    def beam_offset(self):
        """(dx, dy) from the beam 1 occulter centre to the beam 2 occulter centre."""
        return self.occulter2.x - self.occulter1.x, self.occulter2.y - self.occulter1.y


def _initial_center(image):
    threshold = 0.5 * (np.min(image) + np.max(image))
    bright = image > threshold
    if not np.any(bright):
        ny, nx = image.shape
        return (nx - 1) / 2.0, (ny - 1) / 2.0
    yc, xc = center_of_mass(bright)
    return xc, yc


def _edge_points(image, xc, yc, radius_guess, neg_pol):
    """Edge positions along rays from (xc, yc), one per ray at most."""
    ny, nx = image.shape
    threshold = EDGE_FRACTION * np.ptp(image)
    if threshold <= 0:
        return np.array([]), np.array([])
    radii = np.arange(0.5 * radius_guess, 1.5 * radius_guess, RADIAL_STEP)
    theta = np.arange(N_ANGLES) * 2 * np.pi / N_ANGLES
    x = xc + radii[None, :] * np.cos(theta)[:, None]
    y = yc + radii[None, :] * np.sin(theta)[:, None]
    inside = (x >= 0) & (x <= nx - 1) & (y >= 0) & (y <= ny - 1)

    profiles = map_coordinates(image, [y.ravel(), x.ravel()], order=1, mode='nearest')
    profiles = profiles.reshape(x.shape)
    derivative = np.gradient(profiles, RADIAL_STEP, axis=1)
    if neg_pol:
        derivative = -derivative
    derivative[~inside] = 0.0
    samples = derivative[inside]
    if samples.size:
        scatter = 1.4826 * np.median(np.abs(samples - np.median(samples)))
        threshold = max(threshold, EDGE_SIGMA * scatter)

    peak = np.argmax(derivative, axis=1)
    rows = np.arange(N_ANGLES)
    good = (derivative[rows, peak] > threshold) & (peak > 0) & (peak < len(radii) - 1)

    # parabolic refinement of the derivative peak
    r_edge = radii[peak].astype(float)
    left = derivative[rows[good], peak[good] - 1]
    mid = derivative[rows[good], peak[good]]
    right = derivative[rows[good], peak[good] + 1]
    denom = left - 2 * mid + right
    frac = np.where(denom != 0, 0.5 * (left - right) / np.where(denom != 0, denom, 1), 0.0)
    r_edge[good] += np.clip(frac, -0.5, 0.5) * RADIAL_STEP

    xe = xc + r_edge[good] * np.cos(theta[good])
    ye = yc + r_edge[good] * np.sin(theta[good])
    return xe, ye


def _fit_circle(x, y):
    """Algebraic circle fit, or None when the points do not define a circle."""
    if len(x) < 3:
        return None
    a = np.column_stack([x, y, np.ones_like(x)])
    b = -(x ** 2 + y ** 2)
    (d, e, f), *_ = np.linalg.lstsq(a, b, rcond=None)
    xc, yc = -d / 2, -e / 2
    r2 = xc ** 2 + yc ** 2 - f
    if not np.all(np.isfinite([xc, yc, r2])) or r2 <= 0:
        return None
    return np.array([xc, yc, np.sqrt(r2)])


def _clipped_fit(x, y):
    fit = _fit_circle(x, y)
    if fit is None:
        return None
    resid = np.abs(np.hypot(x - fit[0], y - fit[1]) - fit[2])
    keep = resid < max(3 * np.std(resid), 1.0)
    if keep.sum() >= 3 and not keep.all():
        fit = _fit_circle(x[keep], y[keep])
    return fit


def find_circle(image, radius_guess, neg_pol=False, n_iter=3):
    """
    Fit the occulter or field-stop edge of a single-beam image.

    Parameters
    ----------
    image : numpy.ndarray
        2D flat or sky image of one beam.
    radius_guess : float
        Expected radius in pixels; the search covers 0.5 to 1.5 times this value.
    neg_pol : bool, optional
        Search for a bright-to-dark edge going outward (field stop) instead of a
        dark-to-bright one (occulter).
    n_iter : int, optional
        Number of search/fit passes.

    Returns
    -------
    circle : Circle
        Fitted centre and radius. A radius more than 10% away from the guess is
        replaced by the guess, keeping the fitted centre.

    Raises
    ------
    GeometryFitDegenerate
        If fewer than ``MIN_EDGES`` rays cross a significant edge, no circle can be
        fitted, or its centre falls outside the image.
    """
    image = np.nan_to_num(np.asarray(image, dtype=float))
    ny, nx = image.shape
    xc, yc = _initial_center(image)

    fit = None
    for _ in range(n_iter):
        xe, ye = _edge_points(image, xc, yc, radius_guess, neg_pol)
        if len(xe) < MIN_EDGES:
            logging.warning(f"Only {len(xe)} edge points found for radius guess {radius_guess}")
            fit = None
            break
        fit = _clipped_fit(xe, ye)
        if fit is None:
            break
        xc, yc = fit[0], fit[1]

    if fit is None or np.size(fit) != 3 or not (0 <= fit[0] <= nx - 1 and 0 <= fit[1] <= ny - 1):
        logging.warning(f"Circle search degenerate for radius guess {radius_guess} "
                        f"(neg_pol={neg_pol}): {fit}")
        raise GeometryFitDegenerate(f"No circle found near radius {radius_guess}")

    x, y, radius = (float(v) for v in fit)
    if abs(radius - radius_guess) > RADIUS_TOLERANCE * radius_guess:
        logging.warning(f"Fitted radius {radius:.2f} differs from guess {radius_guess:.2f} "
                        f"by more than {RADIUS_TOLERANCE:.0%}, using the guess "
                        f"(centre {x:.2f}, {y:.2f})")
        radius = float(radius_guess)
    logging.info(f"Circle fit (neg_pol={neg_pol}): x={x:.2f}, y={y:.2f}, r={radius:.2f}")
    return Circle(x, y, radius)


def _fit_or_fallback(image, radius_guess, neg_pol, fallback, label):
    try:
        return find_circle(image, radius_guess, neg_pol=neg_pol)
    except GeometryFitDegenerate:
        logging.warning(f"Using nominal {label}: {fallback}")
        return fallback


def find_image_geometry(flat, config):
    """
    Fit occulter and field circles of both beams of a raw dual-beam flat.

    Parameters
    ----------
    flat : numpy.ndarray
        Raw (``raw_nx`` x ``raw_nx``) dark-corrected flat frame.
    config : InstrumentConfig
        Instrument constants.

    Returns
    -------
    geometry : ImageGeometry
        Circles in distortion-corrected sub-image coordinates.
    """
    xn, yn = config.nominal_center
    circles = {}
    for beam in (1, 2):
        sub = apply_distortion(extract_beam(flat, beam, config), config.distortion(beam))
        circles[f'occulter{beam}'] = _fit_or_fallback(
            sub, config.occulter_guess, False,
            Circle(xn, yn, config.occulter_guess), f'occulter beam {beam}')
        circles[f'field{beam}'] = _fit_or_fallback(
            sub, config.field_guess, True,
            Circle(xn, yn, config.field_guess), f'field beam {beam}')
    geometry = ImageGeometry(**circles)
    logging.info(f"Image geometry: {geometry}")
    return geometry


def geometry_to_header(geometry, header):
    """Record the fitted circles of both beams in a FITS header."""
    for beam in (1, 2):
        occ, fld = geometry.occulter(beam), geometry.field(beam)
        header[f'OXCNTER{beam}'] = (occ.x, f'occulter x centre, beam {beam} [pixels]')
        header[f'OYCNTER{beam}'] = (occ.y, f'occulter y centre, beam {beam} [pixels]')
        header[f'ORADIUS{beam}'] = (occ.radius, f'occulter radius, beam {beam} [pixels]')
        header[f'FXCNTER{beam}'] = (fld.x, f'field x centre, beam {beam} [pixels]')
        header[f'FYCNTER{beam}'] = (fld.y, f'field y centre, beam {beam} [pixels]')
        header[f'FRADIUS{beam}'] = (fld.radius, f'field radius, beam {beam} [pixels]')
    return header
