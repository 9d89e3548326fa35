"""
Shared fixtures for the sanctions corpus tests
"""

import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager


@pytest.fixture
def make_config(tmp_path):
    """Factory building a ConfigManager whose data directory lives in tmp_path"""
    def _make(**sections):
        raw = {
            'storage': {
                'data_directory': str(tmp_path / 'data'),
                'serving_directory': str(tmp_path / 'public'),
            },
            'logging': {'file': None},
        }
        for section, values in sections.items():
            raw.setdefault(section, {}).update(values)

        config_file = tmp_path / 'config.yaml'
        config_file.write_text(yaml.safe_dump(raw))
        ConfigManager.reset_instance()
        return ConfigManager(str(config_file))

    yield _make
    ConfigManager.reset_instance()


@pytest.fixture
def config(make_config):
    """Configuration with defaults and a temporary data directory"""
    return make_config()


@pytest.fixture
def data_dir(config):
    path = config.data_dir
    path.mkdir(parents=True, exist_ok=True)
    return path
