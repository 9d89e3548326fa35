"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

SOURCE_IDS = ('UN', 'EU', 'US')


@dataclass
class FeedConfig:
    """Remote feed settings for one sanctions source"""
    url: str
    enabled: bool = True
    timeout_seconds: int = 120


def _default_sources() -> Dict[str, FeedConfig]:
    return {
        'UN': FeedConfig(url="https://scsanctions.un.org/resources/xml/en/consolidated.xml"),
        'EU': FeedConfig(url="https://webgate.ec.europa.eu/fsd/fsf/public/files/xmlFullSanctionsList_1_1/content"),
        'US': FeedConfig(url="https://www.treasury.gov/ofac/downloads/sdn.xml"),
    }


@dataclass
class SourcesConfig:
    """Data source configuration"""
    feeds: Dict[str, FeedConfig] = field(default_factory=_default_sources)
    user_agent: str = "sanctions-corpus/1.0"


@dataclass
class StorageConfig:
    """Corpus file layout and size policies"""
    data_directory: str = "data"
    serving_directory: str = "public/data"
    chunk_size_limit_bytes: int = int(1.5 * 1024 * 1024)
    version_size_limit_bytes: int = 100 * 1024 * 1024
    max_versions: int = 2


@dataclass
class SearchConfig:
    """Search engine settings"""
    default_limit: int = 10
    max_limit: int = 100
    integrated_size_limit_bytes: int = 100 * 1024 * 1024
    min_records_before_skip: int = 1
    default_sort: str = "lastUpdated"
    default_order: str = "desc"


@dataclass
class CacheConfig:
    """Detail lookup cache"""
    enabled: bool = True
    ttl_seconds: int = 3600
    max_entries: int = 10000


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = "logs/corpus.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.sources: SourcesConfig = SourcesConfig()
        self.storage: StorageConfig = StorageConfig()
        self.search: SearchConfig = SearchConfig()
        self.cache: CacheConfig = CacheConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        self._parse_sources()
        self._parse_storage()
        self._parse_search()
        self._parse_cache()
        self._parse_logging()
        self._validate()

    def _parse_sources(self) -> None:
        """Parse data source configuration"""
        cfg = self._raw_config.get('sources', {})
        defaults = _default_sources()
        feeds = {}
        for source_id in SOURCE_IDS:
            feed_cfg = cfg.get(source_id.lower(), cfg.get(source_id, {})) or {}
            default = defaults[source_id]
            feeds[source_id] = FeedConfig(
                url=feed_cfg.get('url', default.url),
                enabled=feed_cfg.get('enabled', default.enabled),
                timeout_seconds=feed_cfg.get('timeout_seconds',
                                             cfg.get('timeout_seconds', default.timeout_seconds))
            )
        self.sources = SourcesConfig(
            feeds=feeds,
            user_agent=cfg.get('user_agent', self.sources.user_agent)
        )

    def _parse_storage(self) -> None:
        """Parse storage configuration"""
        cfg = self._raw_config.get('storage', {})
        self.storage = StorageConfig(
            data_directory=cfg.get('data_directory', 'data'),
            serving_directory=cfg.get('serving_directory', 'public/data'),
            chunk_size_limit_bytes=int(cfg.get('chunk_size_limit_bytes',
                                               self.storage.chunk_size_limit_bytes)),
            version_size_limit_bytes=int(cfg.get('version_size_limit_bytes',
                                                 self.storage.version_size_limit_bytes)),
            max_versions=cfg.get('max_versions', 2)
        )

    def _parse_search(self) -> None:
        """Parse search configuration"""
        cfg = self._raw_config.get('search', {})
        self.search = SearchConfig(
            default_limit=cfg.get('default_limit', 10),
            max_limit=cfg.get('max_limit', 100),
            integrated_size_limit_bytes=int(cfg.get('integrated_size_limit_bytes',
                                                    self.search.integrated_size_limit_bytes)),
            min_records_before_skip=cfg.get('min_records_before_skip', 1),
            default_sort=cfg.get('default_sort', 'lastUpdated'),
            default_order=cfg.get('default_order', 'desc')
        )

    def _parse_cache(self) -> None:
        """Parse cache configuration"""
        cfg = self._raw_config.get('cache', {})
        self.cache = CacheConfig(
            enabled=cfg.get('enabled', True),
            ttl_seconds=cfg.get('ttl_seconds', 3600),
            max_entries=cfg.get('max_entries', 10000)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', self.logging.file),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If a value is out of range
        """
        errors = []

        if self.storage.chunk_size_limit_bytes <= 0:
            errors.append("storage.chunk_size_limit_bytes must be positive")
        if self.storage.version_size_limit_bytes <= 0:
            errors.append("storage.version_size_limit_bytes must be positive")
        if not 1 <= self.storage.max_versions <= 2:
            errors.append("storage.max_versions must be 1 or 2")

        if self.search.default_limit < 1:
            errors.append("search.default_limit must be at least 1")
        if self.search.max_limit < self.search.default_limit:
            errors.append("search.max_limit must not be smaller than search.default_limit")
        if self.search.default_order not in ('asc', 'desc'):
            errors.append(f"search.default_order must be 'asc' or 'desc', got {self.search.default_order!r}")

        if self.cache.ttl_seconds < 0:
            errors.append("cache.ttl_seconds must not be negative")

        for source_id, feed in self.sources.feeds.items():
            if feed.enabled and not feed.url:
                errors.append(f"sources.{source_id.lower()}.url is required when enabled")
            if feed.timeout_seconds <= 0:
                errors.append(f"sources.{source_id.lower()}.timeout_seconds must be positive")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"logging.level is not a valid level: {self.logging.level}")

        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))

    @property
    def data_dir(self) -> Path:
        return Path(self.storage.data_directory)

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'sources': {
                source_id.lower(): {
                    'url': feed.url,
                    'enabled': feed.enabled,
                    'timeout_seconds': feed.timeout_seconds
                } for source_id, feed in self.sources.feeds.items()
            },
            'storage': {
                'data_directory': self.storage.data_directory,
                'serving_directory': self.storage.serving_directory,
                'chunk_size_limit_bytes': self.storage.chunk_size_limit_bytes,
                'version_size_limit_bytes': self.storage.version_size_limit_bytes,
                'max_versions': self.storage.max_versions
            },
            'search': {
                'default_limit': self.search.default_limit,
                'max_limit': self.search.max_limit,
                'integrated_size_limit_bytes': self.search.integrated_size_limit_bytes,
                'min_records_before_skip': self.search.min_records_before_skip
            },
            'cache': {
                'enabled': self.cache.enabled,
                'ttl_seconds': self.cache.ttl_seconds
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            }
        }


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def setup_logging(config: Optional[ConfigManager] = None) -> None:
    """Configure root logging from the logging section

    Args:
        config: Configuration manager instance
    """
    config = config or get_config()
    log_cfg = config.logging

    handlers = []
    if log_cfg.console:
        handlers.append(logging.StreamHandler())
    if log_cfg.file:
        log_path = Path(log_cfg.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, log_cfg.level.upper(), logging.INFO),
        format=log_cfg.format,
        handlers=handlers or None,
        force=True
    )
