"""
Unit tests for configuration management
"""

import logging

import pytest

from config_manager import (
    ConfigManager, ConfigurationError, get_config, setup_logging,
    FeedConfig, StorageConfig, SOURCE_IDS
)


class TestConfigManager:
    """Tests for configuration loading and validation"""

    def test_default_config_values(self, tmp_path):
        """Missing config file falls back to defaults"""
        ConfigManager.reset_instance()
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        assert config.storage.chunk_size_limit_bytes == int(1.5 * 1024 * 1024)
        assert config.storage.version_size_limit_bytes == 100 * 1024 * 1024
        assert config.storage.max_versions == 2
        assert config.search.default_limit == 10
        assert config.search.default_sort == "lastUpdated"
        assert config.search.default_order == "desc"
        assert config.cache.ttl_seconds == 3600
        assert set(config.sources.feeds) == set(SOURCE_IDS)
        assert all(feed.timeout_seconds == 120 for feed in config.sources.feeds.values())

    def test_bundled_config_loads(self):
        """The shipped config.yaml is valid"""
        ConfigManager.reset_instance()
        config = ConfigManager(config_path=None)

        assert config.sources.feeds['UN'].url.startswith("https://")
        assert config.storage.data_directory == "data"
        ConfigManager.reset_instance()

    def test_config_loads_from_yaml(self, tmp_path):
        """Values from YAML override defaults"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("""
sources:
  timeout_seconds: 60
  eu:
    enabled: false
storage:
  data_directory: "/srv/corpus"
  chunk_size_limit_bytes: 2000
search:
  default_limit: 25
  max_limit: 50
cache:
  ttl_seconds: 10
""")
        ConfigManager.reset_instance()
        config = ConfigManager(str(config_file))

        assert config.sources.feeds['UN'].timeout_seconds == 60
        assert config.sources.feeds['EU'].enabled is False
        assert config.storage.data_directory == "/srv/corpus"
        assert config.storage.chunk_size_limit_bytes == 2000
        assert config.search.default_limit == 25
        assert config.cache.ttl_seconds == 10
        assert str(config.data_dir) == "/srv/corpus"

    def test_invalid_yaml_raises(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("storage: [unclosed")

        with pytest.raises(ConfigurationError):
            ConfigManager(str(config_file))

    def test_out_of_range_values_raise(self, tmp_path):
        """Validation collects every bad value into one error"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("""
storage:
  max_versions: 0
search:
  default_order: sideways
""")
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager(str(config_file))

        message = str(exc_info.value)
        assert "max_versions" in message
        assert "default_order" in message

    def test_retention_above_two_rejected(self, tmp_path):
        """At most the latest and previous snapshots may be retained"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("storage:\n  max_versions: 3\n")
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager(str(config_file))

        assert "max_versions" in str(exc_info.value)

    def test_singleton(self, tmp_path):
        ConfigManager.reset_instance()
        first = get_config(str(tmp_path / "missing.yaml"))
        second = get_config()
        assert first is second
        ConfigManager.reset_instance()

    def test_to_dict(self, config):
        exported = config.to_dict()
        assert set(exported) == {'sources', 'storage', 'search', 'cache', 'logging'}
        assert set(exported['sources']) == {'un', 'eu', 'us'}


class TestDataclasses:
    """Tests for configuration dataclasses"""

    def test_feed_config_defaults(self):
        feed = FeedConfig(url="https://example.org/list.xml")
        assert feed.enabled is True
        assert feed.timeout_seconds == 120

    def test_storage_config_defaults(self):
        storage = StorageConfig()
        assert storage.serving_directory == "public/data"


class TestSetupLogging:
    """Tests for logging setup"""

    def test_file_handler_created(self, make_config, tmp_path):
        log_file = tmp_path / "logs" / "corpus.log"
        config = make_config(logging={'file': str(log_file), 'level': 'DEBUG', 'console': False})

        setup_logging(config)
        logging.getLogger("test").debug("hello")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert log_file.parent.exists()
        for handler in root.handlers:
            handler.flush()
        assert "hello" in log_file.read_text()

        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        root.setLevel(logging.WARNING)
