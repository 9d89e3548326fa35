"""
Ingestion pipeline for the sanctions corpus

Runs the batch steps in order, each of which can also be invoked on its
own for a partial re-run:

    collect    download raw XML of every enabled feed into data/temp/
    convert    raw XML (or a live fetch) -> data/{source}_sanctions.json
    integrate  per-source files -> integrated_sanctions.json + sanctions.json
    split      integrated corpus -> data/chunks/*.json + chunks/index.json
    dedupe     last-write-wins dedupe of the corpus files
    version    dated snapshot + data/version.json
    prune      retention policy over data/versions/
    sync       copy serving files to the serving directory
    cleanup    remove data/temp/

A failing step is logged and recorded in data/diagnostic_info.json; the
remaining steps still run.

Usage:
    python pipeline.py all
    python pipeline.py convert --source UN --input un.xml
"""

import argparse
import logging
import shutil
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from config_manager import get_config, setup_logging, ConfigManager, SOURCE_IDS
from corpus_merge import CHUNKS_DIRNAME, FLAT_FILE, INTEGRATED_FILE, CorpusMerger, integrate
from errors import FetchError, ParseError, SanctionsCorpusError
from json_store import write_json_atomic
from record_utils import utc_now_iso
from source_adapters import SourceAdapter, get_source_config
from version_store import MANIFEST_FILE, VersionStore

logger = logging.getLogger(__name__)

STEPS = ('collect', 'convert', 'integrate', 'split', 'dedupe', 'version', 'prune', 'sync', 'cleanup')
TEMP_DIRNAME = 'temp'
DIAGNOSTIC_FILE = 'diagnostic_info.json'
COLLECTION_RESULT_FILE = 'collection_result.json'


class IngestionPipeline:
    """Sequential batch pipeline from remote feeds to versioned corpus files"""

    def __init__(self, config: Optional[ConfigManager] = None,
                 data_dir: Optional[Union[str, Path]] = None,
                 serving_dir: Optional[Union[str, Path]] = None,
                 sources: Optional[List[str]] = None):
        """Initialize pipeline

        Args:
            config: Configuration manager instance
            data_dir: Override for the data directory
            serving_dir: Override for the sync target directory
            sources: Restrict collect/convert to these sources
        """
        self.config = config or get_config()
        self.data_dir = Path(data_dir) if data_dir else self.config.data_dir
        self.serving_dir = Path(serving_dir) if serving_dir else Path(self.config.storage.serving_directory)
        self.sources = [get_source_config(s).source for s in sources] if sources else list(SOURCE_IDS)

        self.adapter = SourceAdapter(self.config, self.data_dir)
        self.merger = CorpusMerger(self.config, self.data_dir)
        self.versions = VersionStore(self.config, self.data_dir)

        self._diagnostic: Dict[str, Any] = {}

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / TEMP_DIRNAME

    def raw_file(self, source: str) -> Path:
        return self.temp_dir / f"{source.lower()}_raw.xml"

    def collect(self) -> Dict[str, Any]:
        """Download raw XML for every enabled source; failures are recorded, not raised"""
        results = []
        for source in self.sources:
            if not self.config.sources.feeds[source].enabled:
                logger.info(f"Skipping disabled source {source}")
                continue
            try:
                path = self.adapter.download(source, self.temp_dir)
                results.append({'source': source, 'success': True, 'size': path.stat().st_size})
            except FetchError as e:
                logger.error(f"✗ {source} collection failed: {e}")
                results.append({'source': source, 'success': False, 'error': str(e)})

        result = {'timestamp': utc_now_iso(), 'results': results}
        write_json_atomic(self.data_dir / COLLECTION_RESULT_FILE, result, indent=2)
        succeeded = sum(1 for r in results if r['success'])
        logger.info(f"✓ Collected {succeeded}/{len(results)} sources")
        return result

    def convert(self, input_path: Optional[Union[str, Path]] = None) -> Dict[str, int]:
        """Convert raw XML to per-source record files

        Uses the collected raw file when present and fetches live otherwise.
        A source that fails keeps its previous per-source file.

        Args:
            input_path: Explicit XML file (only with a single source)
        """
        if input_path and len(self.sources) != 1:
            raise SanctionsCorpusError("--input requires exactly one --source")

        counts = {}
        for source in self.sources:
            raw = Path(input_path) if input_path else self.raw_file(source)
            try:
                if raw.exists():
                    records = self.adapter.parse_file(source, raw)
                elif input_path:
                    raise ParseError(f"Input file not found: {raw}", source=source)
                else:
                    records = self.adapter.fetch_and_parse(source)
            except (FetchError, ParseError) as e:
                logger.error(f"✗ {source} conversion failed, contributing 0 records: {e}")
                counts[source] = 0
                continue
            self.adapter.write_source_file(source, records)
            counts[source] = len(records)
        return counts

    def integrate(self) -> int:
        records = integrate(self.merger.load_all_sources())
        self.merger.write_integrated(records)
        return len(records)

    def split(self) -> Dict[str, Any]:
        return self.merger.write_chunks(self.merger.load_integrated()).to_dict()

    def dedupe(self) -> Dict[str, int]:
        """Dedupe every corpus file that exists"""
        removed = {}
        candidates = [INTEGRATED_FILE, FLAT_FILE] + [f"{s.lower()}_sanctions.json" for s in SOURCE_IDS]
        for name in candidates:
            path = self.data_dir / name
            if path.exists():
                removed[name] = self.merger.remove_duplicates(path)
        return removed

    def version(self) -> Dict[str, Any]:
        return self.versions.commit_version(self.merger.load_integrated())

    def prune(self) -> List[str]:
        return self.versions.prune_old_versions()

    def sync(self) -> List[str]:
        """Copy serving files into the serving directory

        When the data directory holds none of them, empty default files are
        created so the serving side always finds a valid corpus shape.
        """
        self.serving_dir.mkdir(parents=True, exist_ok=True)
        names = ([f"{s.lower()}_sanctions.json" for s in SOURCE_IDS]
                 + [INTEGRATED_FILE, FLAT_FILE, MANIFEST_FILE, DIAGNOSTIC_FILE])
        existing = [n for n in names if (self.data_dir / n).exists()]

        if not existing:
            logger.warning(f"⚠ No data files in {self.data_dir}, writing empty defaults")
            empty = {'data': [], 'meta': {'version': '1.0.0', 'lastUpdated': utc_now_iso(), 'count': 0}}
            for name in [f"{s.lower()}_sanctions.json" for s in SOURCE_IDS] + [INTEGRATED_FILE]:
                write_json_atomic(self.serving_dir / name, empty, indent=2)
            write_json_atomic(self.serving_dir / FLAT_FILE, [])
            return []

        copied = []
        for name in existing:
            shutil.copy2(self.data_dir / name, self.serving_dir / name)
            copied.append(name)

        chunks = self.data_dir / CHUNKS_DIRNAME
        if chunks.exists():
            target = self.serving_dir / CHUNKS_DIRNAME
            if target.exists():
                shutil.rmtree(target)
            shutil.copytree(chunks, target)
            copied.append(CHUNKS_DIRNAME)

        logger.info(f"✓ Synced {len(copied)} items to {self.serving_dir}")
        return copied

    def cleanup(self) -> bool:
        """Remove the temporary raw XML directory"""
        if not self.temp_dir.exists():
            return False
        shutil.rmtree(self.temp_dir)
        logger.info(f"Removed {self.temp_dir}")
        return True

    def _write_diagnostic(self) -> None:
        write_json_atomic(self.data_dir / DIAGNOSTIC_FILE, self._diagnostic, indent=2)

    def run(self, steps: Optional[List[str]] = None, **step_kwargs: Any) -> Dict[str, Any]:
        """Run steps in order, continuing past failures

        Args:
            steps: Step names, defaults to every step
            step_kwargs: Extra keyword arguments for the convert step

        Returns:
            Diagnostic manifest (also written to data/diagnostic_info.json)
        """
        steps = list(steps or STEPS)
        unknown = [s for s in steps if s not in STEPS]
        if unknown:
            raise SanctionsCorpusError(f"Unknown pipeline steps: {', '.join(unknown)}")

        started = time.time()
        self._diagnostic = {
            'status': 'running',
            'error': None,
            'startedAt': utc_now_iso(),
            'finishedAt': None,
            'durationSeconds': None,
            'steps': [],
            'sources': {},
        }

        errors = []
        for index, name in enumerate(steps, 1):
            logger.info(f"[{index}/{len(steps)}] {name} started")
            step_started = time.time()
            entry: Dict[str, Any] = {'name': name, 'status': 'success', 'durationSeconds': None, 'error': None}
            step: Callable[..., Any] = getattr(self, name)

            try:
                result = step(**step_kwargs) if name == 'convert' else step()
                if name == 'convert':
                    self._diagnostic['sources'] = result
                entry['result'] = result
                logger.info(f"✓ {name} finished")
            except (SanctionsCorpusError, OSError, ValueError) as e:
                entry['status'] = 'error'
                entry['error'] = str(e)
                errors.append(f"{name}: {e}")
                logger.error(f"✗ {name} failed: {e}")

            entry['durationSeconds'] = round(time.time() - step_started, 3)
            self._diagnostic['steps'].append(entry)
            self._write_diagnostic()

        self._diagnostic.update({
            'status': 'error' if errors else 'success',
            'error': '; '.join(errors) or None,
            'finishedAt': utc_now_iso(),
            'durationSeconds': round(time.time() - started, 3),
        })
        self._write_diagnostic()
        return self._diagnostic


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sanctions corpus ingestion pipeline")
    parser.add_argument("step", choices=STEPS + ('all',), help="Pipeline step to run")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--data-dir", help="Override the data directory")
    parser.add_argument("--serving-dir", help="Override the sync target directory")
    parser.add_argument("--source", action="append", help="Limit collect/convert to a source (repeatable)")
    parser.add_argument("--input", help="XML file to convert (requires a single --source)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args(argv)

    config = get_config(args.config)
    setup_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("=" * 50)
    logger.info(f"Sanctions corpus pipeline: {args.step}")
    logger.info("=" * 50)

    pipeline = IngestionPipeline(config, data_dir=args.data_dir, serving_dir=args.serving_dir,
                                 sources=args.source)
    steps = list(STEPS) if args.step == 'all' else [args.step]
    kwargs = {'input_path': args.input} if args.input else {}
    diagnostic = pipeline.run(steps, **kwargs)

    logger.info(f"Pipeline finished with status {diagnostic['status']} "
                f"in {diagnostic['durationSeconds']}s")
    return 0 if diagnostic['status'] == 'success' else 1


if __name__ == "__main__":
    sys.exit(main())
