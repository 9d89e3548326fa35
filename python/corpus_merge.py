"""
Merge & Dedupe Engine

Combines the per-source record sets into one corpus, deduplicates by id,
and partitions the result into size-bounded chunk files.

Dedupe policy is last-write-wins: sources are concatenated in priority
order (UN, EU, US) and a later record with an already-seen id replaces the
earlier one wholesale. The surviving record keeps the position of the
first occurrence of its id.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from config_manager import get_config, ConfigManager, SOURCE_IDS
from errors import ParseError, StorageError, ValidationError
from json_store import read_json, serialized_size, write_json_atomic
from record_utils import utc_now_iso, today

logger = logging.getLogger(__name__)

LIST_FIELDS = ('countries', 'programs', 'aliases', 'identifiers', 'addresses')

# Bytes reserved in every chunk file for the {"meta":...,"data":[]} envelope
CHUNK_ENVELOPE_BYTES = 256

CHUNKS_DIRNAME = 'chunks'
CHUNK_INDEX_FILE = 'index.json'
INTEGRATED_FILE = 'integrated_sanctions.json'
FLAT_FILE = 'sanctions.json'


@dataclass
class Chunk:
    """One size-bounded slice of the corpus"""
    source: str
    index: int
    records: List[Dict[str, Any]] = field(default_factory=list)
    size_bytes: int = 0

    @property
    def filename(self) -> str:
        return f"{self.source.lower()}_chunk_{self.index}.json"


@dataclass
class SplitResult:
    """Chunks plus the ids of records too large for any chunk"""
    chunks: List[Chunk] = field(default_factory=list)
    oversized: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chunks': [{'file': c.filename, 'entryCount': len(c.records), 'sizeBytes': c.size_bytes}
                       for c in self.chunks],
            'oversized': list(self.oversized),
        }


def synthetic_id(record: Dict[str, Any], source: str) -> str:
    """Deterministic id for a record that has none: ``{source}-{sha1[:10]}``"""
    digest = hashlib.sha1(
        json.dumps(record, sort_keys=True, ensure_ascii=False, default=str).encode('utf-8')
    ).hexdigest()
    return f"{source}-{digest[:10]}"


def ensure_list_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce the list-valued fields of a record to lists (never null)"""
    for name in LIST_FIELDS:
        value = record.get(name)
        if value is None or value == '':
            record[name] = []
        elif not isinstance(value, list):
            record[name] = [value]
    return record


def dedupe_records(records: Iterable[Dict[str, Any]],
                   default_source: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
    """Last-write-wins dedupe by id

    Records without an id receive a synthetic id (logged). Non-dict entries
    are dropped with a warning.

    Args:
        records: Records in input order
        default_source: Source prefix used for synthetic ids

    Returns:
        Tuple of (deduplicated records, number of replaced duplicates)
    """
    merged: Dict[str, Dict[str, Any]] = {}
    replaced = 0

    for record in records:
        if not isinstance(record, dict):
            logger.warning(f"Skipping non-object record: {type(record).__name__}")
            continue

        record_id = record.get('id') or record.get('_id')
        if not record_id:
            source = record.get('source') or default_source or 'UNKNOWN'
            record_id = synthetic_id(record, source)
            record = dict(record, id=record_id)
            logger.warning(f"Record without id assigned synthetic id {record_id}")
        elif 'id' not in record:
            record = dict(record, id=record_id)

        if record_id in merged:
            replaced += 1
        # dict assignment keeps the key's original insertion position
        merged[record_id] = record

    return list(merged.values()), replaced


def _ordered_sources(source_record_sets: Mapping[str, Any]) -> List[str]:
    known = [s for s in SOURCE_IDS if s in source_record_sets]
    return known + [s for s in source_record_sets if s not in SOURCE_IDS]


def integrate(source_record_sets: Mapping[str, Optional[List[Dict[str, Any]]]]) -> List[Dict[str, Any]]:
    """Merge per-source record sets into one deduplicated corpus

    Args:
        source_record_sets: Mapping of source id to its records; a missing or
            None set contributes zero records

    Returns:
        Merged corpus, each record tagged with ``integratedId`` and
        ``originalSource``
    """
    tagged = []
    counter = 0

    for source in _ordered_sources(source_record_sets):
        records = source_record_sets.get(source) or []
        if source not in SOURCE_IDS:
            logger.warning(f"⚠ Ignoring records for unknown source {source!r}")
            continue

        for record in records:
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object {source} record")
                continue
            counter += 1
            record = ensure_list_fields(dict(record))
            if record.get('source') not in SOURCE_IDS:
                record['source'] = source
            if not record.get('id'):
                record['id'] = synthetic_id(record, source)
                logger.warning(f"{source} record without id assigned synthetic id {record['id']}")
            record['integratedId'] = counter
            record['originalSource'] = source
            tagged.append(record)

    merged, replaced = dedupe_records(tagged)
    logger.info(f"✓ Integrated {len(tagged)} records into {len(merged)} "
                f"({replaced} duplicate ids replaced)")
    return merged


def split_into_chunks(records: List[Dict[str, Any]], limit_bytes: int) -> SplitResult:
    """Partition records into chunks no larger than ``limit_bytes``

    Records are grouped by source, then accumulated in order; a new chunk
    starts when the next record would push the serialized chunk file past
    the ceiling. A record that cannot fit even in an empty chunk is logged
    and left out of chunking.

    Args:
        records: Corpus records
        limit_bytes: Maximum byte size of one chunk file

    Returns:
        SplitResult with chunks in source order and oversized record ids
    """
    budget = max(limit_bytes - CHUNK_ENVELOPE_BYTES, 1)
    result = SplitResult()

    groups: Dict[str, List[Dict[str, Any]]] = {}
    for record in records:
        groups.setdefault(record.get('source') or 'UNKNOWN', []).append(record)

    for source in _ordered_sources(groups):
        current: Optional[Chunk] = None
        for record in groups[source]:
            size = serialized_size(record)
            if size + 2 > budget:
                logger.warning(f"⚠ Record {record.get('id')} is {size} bytes, larger than the "
                               f"{limit_bytes} byte chunk limit; excluded from chunks")
                result.oversized.append(record.get('id'))
                continue

            # 2 bytes for the list brackets, 1 per separating comma
            added = size + (1 if current and current.records else 0)
            if current is None or current.size_bytes + added > budget:
                current = Chunk(source=source, index=sum(1 for c in result.chunks if c.source == source),
                                size_bytes=2)
                result.chunks.append(current)
                added = size
            current.records.append(record)
            current.size_bytes += added

    return result


def build_chunk_index(split: SplitResult) -> Dict[str, Any]:
    """``{chunks: {id: [file, ...]}, meta: {created, totalEntries}}``"""
    index: Dict[str, List[str]] = {}
    total = 0
    for chunk in split.chunks:
        for record in chunk.records:
            files = index.setdefault(str(record.get('id')), [])
            if chunk.filename not in files:
                files.append(chunk.filename)
            total += 1
    return {'chunks': index, 'meta': {'created': utc_now_iso(), 'totalEntries': total}}


def extract_records(payload: Any, label: str = 'file') -> List[Dict[str, Any]]:
    """Records from any accepted corpus file shape

    Accepts ``{data: [...]}``, ``{entries: [...]}`` and bare lists.

    Raises:
        ParseError: If the payload has none of these shapes
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ('data', 'entries'):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise ParseError(f"Unrecognized corpus shape in {label}")


def source_counts(records: List[Dict[str, Any]]) -> Dict[str, int]:
    counts = {s: 0 for s in SOURCE_IDS}
    for record in records:
        source = record.get('source')
        if source in counts:
            counts[source] += 1
    return counts


class CorpusMerger:
    """Reads per-source files and persists the merged corpus"""

    def __init__(self, config: Optional[ConfigManager] = None, data_dir: Optional[Union[str, Path]] = None):
        """Initialize merger

        Args:
            config: Configuration manager instance
            data_dir: Override for the data directory
        """
        self.config = config or get_config()
        self.data_dir = Path(data_dir) if data_dir else self.config.data_dir
        self.chunk_limit = self.config.storage.chunk_size_limit_bytes

    @property
    def chunks_dir(self) -> Path:
        return self.data_dir / CHUNKS_DIRNAME

    def load_source_file(self, source: str) -> List[Dict[str, Any]]:
        """Read ``data/{source}_sanctions.json``

        A missing or unparsable file is logged and yields zero records.
        """
        path = self.data_dir / f"{source.lower()}_sanctions.json"
        if not path.exists():
            logger.warning(f"⚠ {source} source file not found: {path}")
            return []

        try:
            records = extract_records(read_json(path), label=path.name)
        except (ParseError, StorageError) as e:
            logger.error(f"✗ {source} source file unusable, contributing 0 records: {e}")
            return []

        logger.info(f"Loaded {len(records)} {source} records from {path.name}")
        return records

    def load_all_sources(self) -> Dict[str, List[Dict[str, Any]]]:
        return {source: self.load_source_file(source) for source in SOURCE_IDS}

    def clear_chunks(self) -> int:
        """Delete chunk files and the chunk index from a previous split"""
        removed = 0
        if not self.chunks_dir.exists():
            return removed
        for path in list(self.chunks_dir.glob('*_chunk_*.json')) + [self.chunks_dir / CHUNK_INDEX_FILE]:
            if path.exists():
                path.unlink()
                removed += 1
        if removed:
            logger.info(f"Removed {removed} old chunk files")
        return removed

    def write_chunks(self, records: List[Dict[str, Any]]) -> SplitResult:
        """Split records and write chunk files plus ``chunks/index.json``"""
        split = split_into_chunks(records, self.chunk_limit)
        self.clear_chunks()

        totals: Dict[str, int] = {}
        for chunk in split.chunks:
            totals[chunk.source] = totals.get(chunk.source, 0) + 1

        for chunk in split.chunks:
            payload = {
                'meta': {
                    'source': chunk.source,
                    'chunkIndex': chunk.index,
                    'totalChunks': totals[chunk.source],
                    'entryCount': len(chunk.records),
                },
                'data': chunk.records,
            }
            write_json_atomic(self.chunks_dir / chunk.filename, payload)

        write_json_atomic(self.chunks_dir / CHUNK_INDEX_FILE, build_chunk_index(split), indent=2)
        logger.info(f"✓ Wrote {len(split.chunks)} chunks ({len(split.oversized)} oversized records excluded)")
        return split

    def write_integrated(self, records: List[Dict[str, Any]]) -> Path:
        """Write the integrated corpus and the flat ``sanctions.json`` copy"""
        payload = {
            'meta': {
                'version': today(),
                'lastUpdated': utc_now_iso(),
                'recordCount': len(records),
                'sources': source_counts(records),
            },
            'data': records,
        }
        path = write_json_atomic(self.data_dir / INTEGRATED_FILE, payload)
        write_json_atomic(self.data_dir / FLAT_FILE, records)
        logger.info(f"✓ Wrote integrated corpus with {len(records)} records")
        return path

    def load_integrated(self) -> List[Dict[str, Any]]:
        """Read the integrated corpus written by :meth:`write_integrated`"""
        for name in (INTEGRATED_FILE, FLAT_FILE):
            path = self.data_dir / name
            if path.exists():
                return extract_records(read_json(path), label=name)
        raise StorageError(f"No integrated corpus in {self.data_dir}")

    def run(self) -> Tuple[List[Dict[str, Any]], SplitResult]:
        """Integrate all per-source files and persist corpus and chunks"""
        records = integrate(self.load_all_sources())
        self.write_integrated(records)
        split = self.write_chunks(records)
        return records, split

    def remove_duplicates(self, path: Union[str, Path]) -> int:
        """Rewrite a corpus file with last-write-wins dedupe, keeping its shape

        Returns:
            Number of duplicate records removed

        Raises:
            ParseError: If the file is not a recognizable corpus file
            ValidationError: If the path does not exist
        """
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"File not found: {path}", field='path')

        payload = read_json(path)
        records = extract_records(payload, label=path.name)
        deduped, removed = dedupe_records(records)

        if removed == 0 and len(deduped) == len(records):
            logger.info(f"No duplicates in {path.name}")
            return 0

        if isinstance(payload, dict):
            key = 'data' if isinstance(payload.get('data'), list) else 'entries'
            payload = dict(payload, **{key: deduped})
            meta = payload.get('meta')
            if isinstance(meta, dict):
                for count_key in ('count', 'recordCount', 'entryCount'):
                    if count_key in meta:
                        meta[count_key] = len(deduped)
        else:
            payload = deduped

        write_json_atomic(path, payload)
        logger.info(f"✓ Removed {removed} duplicates from {path.name} ({len(deduped)} remain)")
        return removed
