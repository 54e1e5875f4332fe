"""Geometry, registration and wavelength calibration for CoMP Level 1 data."""

__version__ = '0.1.0'
