import dataclasses
import logging

import pytest

from comp_reduction.parameters import InstrumentConfig, config, setup_logging


def test_instrument_config_from_dict():
    instrument = InstrumentConfig.from_dict(config['instrument'])
    assert instrument == InstrumentConfig()
    assert instrument.center == (309.5, 309.5)
    assert instrument.distortion(2) == 1.00973
    with pytest.raises(ValueError):
        instrument.distortion(0)


def test_instrument_config_rejects_unknown_keys():
    with pytest.raises(ValueError):
        InstrumentConfig.from_dict({'nx': 620, 'pixel_size': 1.0})


def test_instrument_config_is_frozen():
    instrument = InstrumentConfig.from_dict({'nominal_center': [10, 11]})
    assert instrument.nominal_center == (10.0, 11.0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        instrument.nx = 100


def test_setup_logging(tmp_path, monkeypatch):
    calls = {}
    monkeypatch.setattr(logging, 'basicConfig', lambda **kwargs: calls.update(kwargs))
    params = {'paths': {'log_file': str(tmp_path / 'logs' / 'process.log')},
              'logging': {'log_level': 'debug'}}
    setup_logging(params)
    assert (tmp_path / 'logs').is_dir()
    assert calls['level'] == logging.DEBUG
    assert calls['filename'].endswith('process.log')


def test_setup_logging_debug_flag(tmp_path, monkeypatch):
    calls = {}
    monkeypatch.setattr(logging, 'basicConfig', lambda **kwargs: calls.update(kwargs))
    params = {'paths': {'log_file': str(tmp_path / 'process.log')},
              'logging': {'log_level': 'WARNING', 'debug': True}}
    setup_logging(params)
    assert calls['level'] == logging.DEBUG
    assert config['logging']['debug'] is False
