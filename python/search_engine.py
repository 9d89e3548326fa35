"""
Search Engine for the sanctions corpus

Every query re-reads the corpus files (chunks first, the integrated file
only as a supplement) and runs free-text matching, faceted filters,
sorting and pagination in memory. There is no shared mutable index; the
only state kept between requests is the optional detail RecordCache owned
by the engine instance.

Free-text matching is substring containment over lowercase field blobs:
- numeric queries match the identifier blob or the all-fields blob
- date queries (YYYY-MM-DD or MM/DD/YYYY) match the date blob
- general queries match when ANY synonym-expanded term appears in the
  all-fields blob OR ALL literal terms do
"""

import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from config_manager import get_config, ConfigManager
from corpus_merge import CHUNK_INDEX_FILE, CHUNKS_DIRNAME, FLAT_FILE, INTEGRATED_FILE, extract_records
from errors import NotFoundError, ParseError, StorageError, ValidationError
from json_store import read_json
from record_utils import (
    RECORD_DATE_FIELDS,
    best_update_date,
    collect_countries,
    format_date,
    format_date_text,
    generate_summary,
    infer_entity_type,
    unify_identifiers,
)
from version_store import VersionStore
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Term -> related terms. Expansion is symmetric: any member of a group
# expands to the whole group.
SYNONYMS: Dict[str, List[str]] = {
    'company': ['corporation', 'enterprise', 'firm', 'business', 'organization'],
    'person': ['individual', 'people', 'human'],
    'vessel': ['ship', 'boat', 'tanker', 'carrier'],
    'aircraft': ['airplane', 'plane', 'jet', 'helicopter'],
    'bank': ['financial', 'finance', 'banking'],
    'military': ['army', 'defense', 'armed'],
    'government': ['state', 'ministry', 'official'],
    'oil': ['petroleum', 'gas', 'energy', 'crude'],
}

NUMERIC_QUERY = re.compile(r'^\d+$')
ISO_DATE_QUERY = re.compile(r'^\d{4}-\d{2}-\d{2}$')
US_DATE_QUERY = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})$')

SORT_FIELDS = ('name', 'type', 'source', 'country', 'lastUpdated')
CHUNK_FILE_PATTERN = re.compile(r'^(?P<source>[a-z]+)_chunk_(?P<index>\d+)\.json$')


def _build_synonym_groups(table: Dict[str, List[str]]) -> Dict[str, Set[str]]:
    groups: Dict[str, Set[str]] = {}
    for key, related in table.items():
        group = {key, *related}
        for term in group:
            groups.setdefault(term, set()).update(group)
    return groups


SYNONYM_GROUPS = _build_synonym_groups(SYNONYMS)


class RecordCache:
    """Short-lived cache of raw records keyed by id

    Entries expire ``ttl_seconds`` after insertion and are only removed by
    expiry, an explicit :meth:`invalidate` (forced refresh) or eviction of
    the oldest entry when ``max_entries`` is reached.
    """

    def __init__(self, ttl_seconds: int = 3600, max_entries: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            self._entries[key] = (self._clock(), value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Filters:
    """Facet filters; every filter is optional and they combine with AND"""
    type: Optional[str] = None
    country: Optional[str] = None
    program: Optional[str] = None
    source: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None

    def is_empty(self) -> bool:
        return not any([self.type, self.country, self.program, self.source, self.date_from, self.date_to])


@dataclass
class SortSpec:
    field: str = 'lastUpdated'
    order: str = 'desc'


@dataclass
class Pagination:
    page: int = 1
    limit: int = 10


# Query handling

def normalize_query(query: Optional[str]) -> str:
    return (query or '').strip().lower()


def classify_query(query: str) -> str:
    """Query shape: ``numeric``, ``date`` or ``general``"""
    if NUMERIC_QUERY.match(query):
        return 'numeric'
    if ISO_DATE_QUERY.match(query) or US_DATE_QUERY.match(query):
        return 'date'
    return 'general'


def tokenize(query: str) -> List[str]:
    return [t for t in query.split() if t]


def expand_terms(terms: Iterable[str]) -> List[str]:
    """Original terms followed by their synonyms, deduplicated, order kept"""
    expanded = []
    seen = set()
    for term in terms:
        for candidate in [term] + sorted(SYNONYM_GROUPS.get(term, set()) - {term}):
            if candidate not in seen:
                seen.add(candidate)
                expanded.append(candidate)
    return expanded


def date_query_forms(query: str) -> List[str]:
    """A date query plus its ISO form when given as MM/DD/YYYY"""
    forms = [query]
    match = US_DATE_QUERY.match(query)
    if match:
        month, day, year = match.groups()
        forms.append(f"{year}-{int(month):02d}-{int(day):02d}")
    return forms


def _flatten(value: Any) -> Iterable[str]:
    if value is None or isinstance(value, bool):
        return
    if isinstance(value, str):
        if value:
            yield value
    elif isinstance(value, (int, float)):
        yield str(value)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _flatten(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _flatten(item)


def _blob(values: Iterable[Any]) -> str:
    parts = []
    for value in values:
        parts.extend(_flatten(value))
    return ' '.join(parts).lower()


def _alias_names(record: Dict[str, Any]) -> List[Any]:
    names = []
    for field_name in ('aliases', 'name_aliases', 'also_known_as'):
        value = record.get(field_name) or []
        for alias in value if isinstance(value, list) else [value]:
            names.append(alias.get('name') if isinstance(alias, dict) else alias)
    return names


def field_blobs(record: Dict[str, Any]) -> Dict[str, str]:
    """Lowercase search strings for the five field groups plus ``all``"""
    details = record.get('details') if isinstance(record.get('details'), dict) else {}

    blobs = {
        'name': _blob([
            record.get('name'), record.get('nameOriginal'), record.get('firstName'),
            record.get('lastName'), record.get('title'), record.get('description'),
            details.get('title'), _alias_names(record),
        ]),
        'numeric': _blob([
            record.get('id'), record.get('_id'), record.get('referenceNumber'),
            details.get('referenceNumber'), details.get('euReferenceNumber'), details.get('unitedNationId'),
            [i['value'] for i in unify_identifiers(record)],
        ]),
        'location': _blob([
            record.get('countries'), record.get('country'), record.get('nationality'),
            record.get('address'), record.get('addresses'),
            details.get('placeOfBirth'), details.get('nationality'), details.get('country'),
        ]),
        'date': _blob([
            record.get(f) for f in RECORD_DATE_FIELDS + ('birthDate', 'lastUpdate')
        ] + [details.get('dateOfBirth'), details.get('lastUpdated')]),
        'other': _blob([
            record.get('remarks'), record.get('reason'), record.get('programs'), record.get('program'),
            record.get('type'), record.get('subtype'), record.get('source'), record.get('sourceDescription'),
            details.get('remarks'), details.get('reason'), details.get('designation'),
        ]),
    }
    blobs['all'] = ' '.join(blobs[k] for k in ('name', 'numeric', 'location', 'date', 'other'))
    return blobs


def matches_query(record: Dict[str, Any], query: str) -> bool:
    """Whether a record matches a normalized (lowercase, trimmed) query"""
    if not query:
        return True

    blobs = field_blobs(record)
    mode = classify_query(query)

    if mode == 'numeric':
        return query in blobs['numeric'] or query in blobs['all']
    if mode == 'date':
        return any(form in blobs['date'] for form in date_query_forms(query))

    terms = tokenize(query)
    expanded = expand_terms(terms)
    return any(t in blobs['all'] for t in expanded) or all(t in blobs['all'] for t in terms)


# Filters, sorting, pagination

def _record_type(record: Dict[str, Any]) -> str:
    details = record.get('details') if isinstance(record.get('details'), dict) else {}
    explicit = record.get('type') or record.get('entityType') or details.get('type')
    return str(explicit) if explicit else infer_entity_type(record)


def _filter_countries(record: Dict[str, Any]) -> List[str]:
    values = list(record.get('countries') or [])
    for key in ('nationality', 'country'):
        if record.get(key):
            values.append(record[key])
    address = record.get('address')
    if isinstance(address, dict) and address.get('country'):
        values.append(address['country'])
    for addr in record.get('addresses') or []:
        if isinstance(addr, dict) and addr.get('country'):
            values.append(addr['country'])
    return [v.lower() for v in values if isinstance(v, str)]


def _contains(values: Iterable[Any], needle: str) -> bool:
    needle = needle.lower()
    return any(isinstance(v, str) and needle in v.lower() for v in values)


def _in_date_range(record: Dict[str, Any], date_from: Optional[str], date_to: Optional[str]) -> bool:
    value = best_update_date(record)
    if not value:
        return True
    normalized = format_date(value)
    if not isinstance(normalized, str) or not ISO_DATE_QUERY.match(normalized):
        return True
    if date_from and normalized < date_from:
        return False
    if date_to and normalized > date_to:
        return False
    return True


def _normalize_bound(value: Optional[str], name: str) -> Optional[str]:
    if not value:
        return None
    normalized = format_date(value)
    if not isinstance(normalized, str) or not ISO_DATE_QUERY.match(normalized):
        raise ValidationError(f"Invalid date for {name}: {value}", field=name)
    return normalized


def apply_filters(records: List[Dict[str, Any]], filters: Optional[Filters]) -> List[Dict[str, Any]]:
    """Apply every set facet filter (substring, case-insensitive)

    Raises:
        ValidationError: If a date bound cannot be parsed
    """
    if filters is None or filters.is_empty():
        return records

    date_from = _normalize_bound(filters.date_from, 'dateFrom')
    date_to = _normalize_bound(filters.date_to, 'dateTo')
    result = []

    for record in records:
        if filters.type and not _contains([_record_type(record)], filters.type):
            continue
        if filters.country and not _contains(_filter_countries(record), filters.country):
            continue
        if filters.program and not _contains(
                list(record.get('programs') or []) + list(record.get('programsOriginal') or [])
                + [record.get('program')], filters.program):
            continue
        if filters.source and not _contains(
                [record.get('source'), record.get('sourceDescription'), record.get('sourceUrl')],
                filters.source):
            continue
        if (date_from or date_to) and not _in_date_range(record, date_from, date_to):
            continue
        result.append(record)

    return result


def _sort_key(field: str) -> Callable[[Dict[str, Any]], str]:
    if field == 'lastUpdated':
        def key(record):
            value = format_date(best_update_date(record))
            return str(value or '')
    elif field == 'country':
        def key(record):
            countries = record.get('countries') or []
            return str((countries[0] if countries else None) or record.get('nationality') or '').casefold()
    else:
        def key(record):
            return str(record.get(field) or '').casefold()
    return key


def sort_records(records: List[Dict[str, Any]], sort: Optional[SortSpec]) -> List[Dict[str, Any]]:
    """Stable sort on the normalized key of the requested field

    Unknown fields fall back to ``lastUpdated``.
    """
    sort = sort or SortSpec()
    field = sort.field if sort.field in SORT_FIELDS else 'lastUpdated'
    if field != sort.field:
        logger.warning(f"Unknown sort field {sort.field!r}, using lastUpdated")
    descending = (sort.order or 'desc').lower() != 'asc'
    return sorted(records, key=_sort_key(field), reverse=descending)


def paginate(records: List[Dict[str, Any]], pagination: Pagination) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    """Slice one page; ``total`` counts post-filter, pre-pagination records"""
    total = len(records)
    skip = (pagination.page - 1) * pagination.limit
    meta = {
        'page': pagination.page,
        'limit': pagination.limit,
        'total': total,
        'pages': math.ceil(total / pagination.limit) if pagination.limit else 0,
    }
    return records[skip:skip + pagination.limit], meta


# Response shaping

def to_list_item(record: Dict[str, Any]) -> Dict[str, Any]:
    """List-view projection of a record"""
    details = record.get('details') if isinstance(record.get('details'), dict) else {}
    listing = record.get('listingDate')
    return {
        'id': record.get('id') or record.get('_id'),
        'name': record.get('name') or record.get('nameOriginal') or '(no name)',
        'type': record.get('type') or record.get('entityType') or details.get('type') or 'unknown',
        'source': record.get('source') or record.get('sourceDescription') or 'unknown',
        'lastUpdated': format_date_text(best_update_date(record)),
        'listingDate': format_date_text(listing) if listing else None,
        'summary': generate_summary(record),
    }


def to_detail(record: Dict[str, Any]) -> Dict[str, Any]:
    """Full record with normalized dates, unified identifiers and ``_summary``"""
    detail = dict(record)
    for field_name in RECORD_DATE_FIELDS:
        if detail.get(field_name):
            detail[field_name] = format_date(detail[field_name])

    if isinstance(detail.get('details'), dict):
        details = dict(detail['details'])
        for field_name in RECORD_DATE_FIELDS:
            if details.get(field_name):
                details[field_name] = format_date(details[field_name])
        detail['details'] = details

    detail['identifiers'] = unify_identifiers(record)
    detail['_summary'] = generate_summary(record)
    return detail


def _record_key(record: Dict[str, Any]) -> Optional[str]:
    key = record.get('id') or record.get('_id')
    return str(key) if key is not None else None


# Engine

class SearchEngine:
    """Loads the corpus per request and answers list and detail queries"""

    def __init__(self, config: Optional[ConfigManager] = None, data_dir: Optional[Union[str, Path]] = None,
                 cache: Optional[RecordCache] = None):
        """Initialize search engine

        Args:
            config: Configuration manager instance
            data_dir: Override for the data directory
            cache: Detail record cache; built from the cache section when
                omitted and caching is enabled
        """
        self.config = config or get_config()
        self.data_dir = Path(data_dir) if data_dir else self.config.data_dir
        self.settings = self.config.search
        if cache is None and self.config.cache.enabled:
            cache = RecordCache(self.config.cache.ttl_seconds, self.config.cache.max_entries)
        self.cache = cache

    @property
    def chunks_dir(self) -> Path:
        return self.data_dir / CHUNKS_DIRNAME

    def chunk_files(self) -> List[Path]:
        """Chunk files ordered by source then chunk index"""
        if not self.chunks_dir.exists():
            return []
        files = []
        for path in self.chunks_dir.iterdir():
            match = CHUNK_FILE_PATTERN.match(path.name)
            if match:
                files.append((match.group('source'), int(match.group('index')), path))
        return [path for _source, _index, path in sorted(files)]

    def integrated_file(self) -> Optional[Path]:
        for name in (INTEGRATED_FILE, FLAT_FILE):
            path = self.data_dir / name
            if path.exists():
                return path
        return None

    def _read_chunk(self, path: Path) -> List[Dict[str, Any]]:
        try:
            return extract_records(read_json(path), label=path.name)
        except (ParseError, StorageError) as e:
            logger.error(f"✗ Skipping unreadable chunk {path.name}: {e}")
            return []

    def _expected_count(self) -> Optional[int]:
        manifest = VersionStore(self.config, self.data_dir).read_manifest()
        if not manifest:
            return None
        count = manifest.get('recordCount')
        return count if isinstance(count, int) else None

    def load_corpus(self) -> List[Dict[str, Any]]:
        """Load every record, chunks first

        The integrated file is read only when chunks are absent or hold
        fewer records than the manifest's ``recordCount``; it is skipped
        when larger than ``integrated_size_limit_bytes`` and the chunks
        already produced ``min_records_before_skip`` records. Records from
        the integrated file only supplement ids not seen in chunks.

        Raises:
            NotFoundError: If no corpus file yields any record
            ParseError: If the integrated file is the only source and is corrupt
        """
        records: List[Dict[str, Any]] = []
        seen: Set[str] = set()

        def add(items: List[Dict[str, Any]]) -> int:
            added = 0
            for record in items:
                if not isinstance(record, dict):
                    continue
                key = _record_key(record)
                if key is not None:
                    if key in seen:
                        continue
                    seen.add(key)
                records.append(record)
                added += 1
            return added

        chunk_files = self.chunk_files()
        for path in chunk_files:
            add(self._read_chunk(path))

        expected = self._expected_count()
        sufficient = bool(chunk_files) and expected is not None and len(records) >= expected

        integrated = self.integrated_file()
        if not sufficient and integrated is not None:
            size = integrated.stat().st_size
            if size > self.settings.integrated_size_limit_bytes and len(records) >= self.settings.min_records_before_skip:
                logger.info(f"Skipping large integrated file {integrated.name} "
                            f"({size / 1024 / 1024:.1f} MB), {len(records)} records already loaded")
            else:
                try:
                    added = add(extract_records(read_json(integrated), label=integrated.name))
                    logger.debug(f"Integrated file supplemented {added} records")
                except (ParseError, StorageError) as e:
                    if not records:
                        raise
                    logger.error(f"✗ Integrated file unusable, serving chunk records only: {e}")

        if not records:
            logger.error(f"✗ No sanctions data found in {self.data_dir} (expected chunks/ or {FLAT_FILE})")
            raise NotFoundError("No sanctions data available")
        return records

    def resolve_pagination(self, page: Any = None, limit: Any = None) -> Pagination:
        """Coerce raw page/limit values: page >= 1, 1 <= limit <= max_limit"""
        try:
            page_num = int(page) if page is not None else 1
        except (TypeError, ValueError):
            page_num = 1
        try:
            limit_num = int(limit) if limit is not None else self.settings.default_limit
        except (TypeError, ValueError):
            limit_num = self.settings.default_limit
        if limit_num < 1:
            limit_num = self.settings.default_limit
        return Pagination(page=max(page_num, 1), limit=min(limit_num, self.settings.max_limit))

    def search(self, query: Optional[str] = '', filters: Optional[Filters] = None,
               sort: Optional[SortSpec] = None, page: Optional[Pagination] = None) -> Dict[str, Any]:
        """Run a list query

        Args:
            query: Free-text query
            filters: Facet filters
            sort: Sort field and order
            page: Page number and size

        Returns:
            ``{results: [...], pagination: {page, limit, total, pages}}``

        Raises:
            NotFoundError: If no corpus is available
            ValidationError: If a filter value is invalid
        """
        started = time.perf_counter()
        normalized = normalize_query(query)
        page = page or Pagination(limit=self.settings.default_limit)
        sort = sort or SortSpec(self.settings.default_sort, self.settings.default_order)

        records = self.load_corpus()
        matched = [r for r in records if matches_query(r, normalized)] if normalized else records
        matched = apply_filters(matched, filters)
        ordered = sort_records(matched, sort)
        page_items, pagination = paginate(ordered, page)

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"Search '{sanitize_for_logging(normalized)}' "
                    f"({classify_query(normalized) if normalized else 'all'}): "
                    f"{pagination['total']} of {len(records)} records match ({elapsed_ms:.1f}ms)")

        return {
            'results': [to_list_item(r) for r in page_items],
            'pagination': pagination,
        }

    def _find_in_files(self, record_id: str, paths: Iterable[Path]) -> Optional[Dict[str, Any]]:
        for path in paths:
            for record in self._read_chunk(path):
                if isinstance(record, dict) and _record_key(record) == record_id:
                    return record
        return None

    def _indexed_files(self, record_id: str) -> List[Path]:
        index_path = self.chunks_dir / CHUNK_INDEX_FILE
        if not index_path.exists():
            return []
        try:
            index = read_json(index_path)
        except (ParseError, StorageError) as e:
            logger.warning(f"Chunk index unusable: {e}")
            return []
        if not isinstance(index, dict) or not isinstance(index.get('chunks'), dict):
            return []
        files = index['chunks'].get(record_id) or []
        return [self.chunks_dir / name for name in files if (self.chunks_dir / name).exists()]

    def find_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Raw record lookup: indexed chunks, then all chunks, then the integrated file"""
        indexed = self._indexed_files(record_id)
        record = self._find_in_files(record_id, indexed)
        if record is not None:
            return record

        remaining = [p for p in self.chunk_files() if p not in indexed]
        record = self._find_in_files(record_id, remaining)
        if record is not None:
            return record

        integrated = self.integrated_file()
        if integrated is not None:
            for candidate in extract_records(read_json(integrated), label=integrated.name):
                if isinstance(candidate, dict) and _record_key(candidate) == record_id:
                    return candidate
        return None

    def get_record(self, record_id: Optional[str], refresh: bool = False) -> Dict[str, Any]:
        """Detail lookup

        Args:
            record_id: Record id
            refresh: Bypass and replace the cached entry

        Returns:
            Full record with normalized dates, unified identifiers and ``_summary``

        Raises:
            ValidationError: If the id is blank
            NotFoundError: If no record has this id
        """
        record_id = (record_id or '').strip()
        if not record_id:
            raise ValidationError("Record id is required", field='id')

        record = None
        if self.cache is not None:
            if refresh:
                self.cache.invalidate(record_id)
            else:
                record = self.cache.get(record_id)

        if record is None:
            record = self.find_record(record_id)
            if record is None:
                raise NotFoundError(f"Sanctions record not found: {record_id}")
            if self.cache is not None:
                self.cache.set(record_id, record)
        else:
            logger.debug(f"Cache hit for {sanitize_for_logging(record_id)}")

        return to_detail(record)

    def stats(self) -> Dict[str, Any]:
        """Record counts by source, type and country plus manifest details"""
        records = self.load_corpus()
        by_source: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        by_country: Dict[str, int] = {}
        for record in records:
            source = str(record.get('source') or 'unknown')
            by_source[source] = by_source.get(source, 0) + 1
            record_type = _record_type(record)
            by_type[record_type] = by_type.get(record_type, 0) + 1
            for country in collect_countries(record) or ['UNKNOWN']:
                by_country[country] = by_country.get(country, 0) + 1

        manifest = VersionStore(self.config, self.data_dir).read_manifest() or {}
        return {
            'total': len(records),
            'bySource': by_source,
            'byType': by_type,
            'byCountry': by_country,
            'version': manifest.get('current'),
            'lastUpdated': manifest.get('lastUpdated'),
            'generatedAt': datetime.now().isoformat(),
        }
