# Configuration File for the CoMP Reduction Pipeline

import os
import logging
from dataclasses import dataclass

config = {
    # Directory Paths
    'paths': {
        'raw_dir': '../data/CoMP/raw/',
        'output_dir': '../results/CoMP/',
        'flat_file': '../data/CoMP/raw/flat.fts',
        'dark_file': '../data/CoMP/raw/dark.fts',
        'reference_dir': '../data/CoMP/reference/',
        'log_file': '../logs/process.log'
    },

    # Instrument Geometry
    'instrument': {
        'raw_nx': 1024,
        'nx': 620,
        'k1': 0.99353,
        'k2': 1.00973,
        'occulter_offset': 5.0,
        'field_offset': -4.0,
        'post_rotation': 0.0,
        'post_half_width': 35.0,
        'post_inner_radius': 0.0,
        'overlap_half_width': 10.0,
        'overlap_inner_radius': 0.0,
        'occulter_guess': 226.0,
        'field_guess': 297.0,
        'nominal_center': (309.5, 309.5),
        'utc_offset': 10.0,
        'plate_scale': 4.35
    },

    # Mask Parameters
    'mask': {
        'occ_fac': 1.0,
        'fld_fac': 1.0,
        'divergence_warning': 2.0
    },

    # Wavelength Calibration
    'wavecal': {
        'group_size': 22,
        'wavelength_tolerance': 2.0,
        'tolerance': 1e-8,
        'chisq_threshold': 0.01,
        'filter_fwhm': 0.13,
        'filter_stages': 4,
        'grid_step': 0.001,
        'grid_half_width': 1.5,
        'lines': {
            1074.7: {
                'obs_continuum': (0, 1, 9, 10),
                'bkg_continuum': (0, 1, 2, 8, 9, 10),
                'initial': (0.0, 0.5, 1.0, 1.0)
            },
            1079.8: {
                'obs_continuum': (0, 1, 2, 10),
                'bkg_continuum': (0, 4, 5, 6, 10),
                'initial': (0.0, 0.5, 1.0, 1.0)
            }
        }
    },

    # Output Options
    'output': {
        'overwrite': True
    },

    # Debugging and Logging
    'logging': {
        'debug': False,
        'log_level': 'INFO'
    }
}


@dataclass(frozen=True)
class InstrumentConfig:
    """
    Instrument constants for one pipeline run.

    Built once from ``config['instrument']`` and passed explicitly to the geometry,
    mask, registration and calibration steps. Never modified after construction.
    """

    raw_nx: int = 1024
    nx: int = 620
    k1: float = 0.99353
    k2: float = 1.00973
    occulter_offset: float = 5.0
    field_offset: float = -4.0
    post_rotation: float = 0.0
    post_half_width: float = 35.0
    post_inner_radius: float = 0.0
    overlap_half_width: float = 10.0
    overlap_inner_radius: float = 0.0
    occulter_guess: float = 226.0
    field_guess: float = 297.0
    nominal_center: tuple = (309.5, 309.5)
    utc_offset: float = 10.0
    plate_scale: float = 4.35

    @classmethod
    def from_dict(cls, params):
        """Build the record from a dictionary like ``config['instrument']``."""
        known = set(cls.__dataclass_fields__)
        unknown = set(params) - known
        if unknown:
            raise ValueError(f"Unknown instrument parameters: {sorted(unknown)}")
        values = dict(params)
        if 'nominal_center' in values:
            values['nominal_center'] = tuple(float(v) for v in values['nominal_center'])
        return cls(**values)

    @property
    def center(self):
        """Centre of the working frame in (x, y) pixel coordinates."""
        return (self.nx - 1) / 2.0, (self.nx - 1) / 2.0

    def distortion(self, beam):
        """Distortion coefficient of beam 1 or 2."""
        if beam == 1:
            return self.k1
        if beam == 2:
            return self.k2
        raise ValueError(f"Beam must be 1 or 2, got {beam}")


def setup_logging(params=None):
    """
    Configure the root logger from the ``paths`` and ``logging`` sections.

    Parameters
    ----------
    params : dict, optional
        Configuration dictionary, defaults to the module-level ``config``.
        ``logging.debug`` set to True forces the DEBUG level.
    """
    params = config if params is None else params
    log_file = os.path.join(params['paths']['log_file'])
    os.makedirs(os.path.dirname(log_file), exist_ok=True)
    level = getattr(logging, params['logging']['log_level'].upper(), logging.INFO)
    if params['logging'].get('debug', False):
        level = logging.DEBUG
    logging.basicConfig(filename=log_file, level=level)
