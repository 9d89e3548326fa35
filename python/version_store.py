"""
Version Store

Persists dated snapshots of the merged corpus under
``data/versions/{YYYY-MM-DD}/sanctions.json``, publishes the version
manifest ``data/version.json`` and prunes old snapshots.

Retention: the latest and the immediately-previous version are kept; the
previous one is dropped as well when its directory is larger than the
configured size limit (100 MB by default). Pruning is recursive and
irreversible.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from config_manager import get_config, ConfigManager
from corpus_merge import extract_records, source_counts
from errors import NotFoundError, ParseError, StorageError, ValidationError
from json_store import directory_size, read_json, write_json_atomic
from record_utils import today, utc_now_iso

logger = logging.getLogger(__name__)

VERSIONS_DIRNAME = 'versions'
MANIFEST_FILE = 'version.json'
SNAPSHOT_FILE = 'sanctions.json'
VERSION_NAME_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class VersionStore:
    """Dated corpus snapshots with a size-aware retention policy"""

    def __init__(self, config: Optional[ConfigManager] = None, data_dir: Optional[Union[str, Path]] = None):
        """Initialize version store

        Args:
            config: Configuration manager instance
            data_dir: Override for the data directory
        """
        self.config = config or get_config()
        self.data_dir = Path(data_dir) if data_dir else self.config.data_dir
        self.size_limit = self.config.storage.version_size_limit_bytes
        self.max_versions = self.config.storage.max_versions

    @property
    def versions_dir(self) -> Path:
        return self.data_dir / VERSIONS_DIRNAME

    @property
    def manifest_path(self) -> Path:
        return self.data_dir / MANIFEST_FILE

    def commit_version(self, records: List[Dict[str, Any]], version: Optional[str] = None) -> Dict[str, Any]:
        """Write a snapshot and the manifest

        A second commit on the same day overwrites that day's snapshot.

        Args:
            records: Merged corpus
            version: Version name, defaults to today's date

        Returns:
            The manifest that was written
        """
        version = version or today()
        if not VERSION_NAME_PATTERN.match(version):
            raise ValidationError(f"Invalid version name: {version}", field='version')

        snapshot = self.versions_dir / version / SNAPSHOT_FILE
        if snapshot.exists():
            logger.info(f"Overwriting existing snapshot for {version}")
        write_json_atomic(snapshot, records)

        manifest = {
            'current': version,
            'lastUpdated': utc_now_iso(),
            'recordCount': len(records),
            'sources': source_counts(records),
        }
        write_json_atomic(self.manifest_path, manifest, indent=2)
        logger.info(f"✓ Committed version {version} with {len(records)} records")
        return manifest

    def list_versions(self) -> List[str]:
        """Version names, newest first"""
        if not self.versions_dir.exists():
            return []
        names = [p.name for p in self.versions_dir.iterdir()
                 if p.is_dir() and VERSION_NAME_PATTERN.match(p.name)]
        return sorted(names, reverse=True)

    def read_manifest(self) -> Optional[Dict[str, Any]]:
        """Current manifest, or None when no version has been committed"""
        if not self.manifest_path.exists():
            return None
        try:
            manifest = read_json(self.manifest_path)
        except (ParseError, StorageError) as e:
            logger.error(f"✗ Unreadable version manifest: {e}")
            return None
        return manifest if isinstance(manifest, dict) else None

    def load_version(self, name: str) -> List[Dict[str, Any]]:
        """Records of one snapshot

        Raises:
            NotFoundError: If the version does not exist
        """
        snapshot = self.versions_dir / name / SNAPSHOT_FILE
        if not VERSION_NAME_PATTERN.match(name or '') or not snapshot.exists():
            raise NotFoundError(f"Version not found: {name}")
        return extract_records(read_json(snapshot), label=f"{name}/{SNAPSHOT_FILE}")

    def prune_old_versions(self) -> List[str]:
        """Delete snapshots beyond the retention policy

        Returns:
            Names of the deleted versions
        """
        versions = self.list_versions()
        keep = versions[:self.max_versions]

        if len(keep) >= 2:
            previous = keep[1]
            size = directory_size(self.versions_dir / previous)
            if size > self.size_limit:
                size_mb = size / 1024 / 1024
                logger.info(f"Previous version {previous} is {size_mb:.1f} MB, keeping only the latest")
                keep = keep[:1]

        removed = []
        for name in versions:
            if name in keep:
                continue
            try:
                shutil.rmtree(self.versions_dir / name)
            except OSError as e:
                logger.error(f"✗ Failed to delete version {name}: {e}")
                continue
            removed.append(name)
            logger.info(f"Deleted old version {name}")

        if removed:
            logger.info(f"✓ Pruned {len(removed)} versions, kept {', '.join(keep)}")
        return removed
