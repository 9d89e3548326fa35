"""
Record helpers shared by ingestion and search

- Date normalization (timestamps, ISO strings, common free-form formats)
- Entity type inference (explicit code, name keywords, person fields)
- Ordered field accessors for countries, aliases, identifiers and dates
- Per-response summary generation
- Levenshtein-based string similarity
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

logger = logging.getLogger(__name__)

ISO_DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')

# Free-form formats tried after ISO parsing fails, in order
DATE_FORMATS = (
    '%Y-%m-%d %H:%M:%S',
    '%Y/%m/%d',
    '%m/%d/%Y',
    '%d.%m.%Y',
    '%d %B %Y',
    '%d %b %Y',
    '%B %d, %Y',
    '%b %d, %Y',
    '%a, %d %b %Y %H:%M:%S %Z',
    '%Y%m%d',
)

ENTITY_TYPES = ('individual', 'entity', 'vessel', 'aircraft', 'unknown')

COMPANY_KEYWORDS = frozenset([
    'LLC', 'LTD', 'LIMITED', 'INC', 'CORPORATION', 'CORP', 'CO', 'COMPANY',
    'GROUP', 'BANK', 'PLC', 'JSC', 'GMBH',
])
VESSEL_KEYWORDS = frozenset(['VESSEL', 'SHIP', 'TANKER', 'CARRIER'])
PERSON_FIELDS = ('firstName', 'lastName', 'dateOfBirth', 'birthDate')

# Explicit type codes by source vocabulary
EXPLICIT_TYPE_CODES = {
    'individual': 'individual',
    'person': 'individual',
    'p': 'individual',
    'entity': 'entity',
    'organization': 'entity',
    'organisation': 'entity',
    'enterprise': 'entity',
    'e': 'entity',
    'vessel': 'vessel',
    'v': 'vessel',
    'aircraft': 'aircraft',
    'a': 'aircraft',
}

LAST_UPDATED_FIELDS = ('updatedDate', 'dateUpdated', 'lastUpdated', 'publicationDate', 'listingDate')
RECORD_DATE_FIELDS = ('startDate', 'endDate', 'listingDate', 'publicationDate', 'lastUpdated')


def format_date(value: Any) -> Any:
    """Normalize a date value to ``YYYY-MM-DD``

    Accepts Unix timestamps (10 digits = seconds, 13 digits = milliseconds,
    as int or numeric string), ISO strings and a handful of free-form
    formats. Unparsable input is logged and returned unchanged; this
    function never raises.

    Args:
        value: Date value in any supported representation

    Returns:
        Normalized date string, None for empty input, or the original value
    """
    if value is None or value == '':
        return None

    try:
        if isinstance(value, bool):
            logger.warning(f"Invalid date value: {value!r}")
            return value

        if isinstance(value, datetime):
            return value.strftime('%Y-%m-%d')

        if isinstance(value, (int, float)):
            digits = str(int(value))
            converted = _from_timestamp(digits)
            if converted:
                return converted
            text = digits
        else:
            text = str(value).strip()

        if ISO_DATE_PATTERN.match(text):
            datetime.strptime(text, '%Y-%m-%d')
            return text

        if text.isdigit():
            converted = _from_timestamp(text)
            if converted:
                return converted

        iso_text = text[:-1] + '+00:00' if text.endswith('Z') else text
        try:
            parsed = datetime.fromisoformat(iso_text)
            return parsed.strftime('%Y-%m-%d')
        except ValueError:
            pass

        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).strftime('%Y-%m-%d')
            except ValueError:
                continue

        logger.warning(f"Invalid date format: {text}")
        return value
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(f"Date conversion failed for {value!r}: {e}")
        return value


def _from_timestamp(digits: str) -> Optional[str]:
    if len(digits) == 13:
        seconds = int(digits) / 1000
    elif len(digits) == 10:
        seconds = int(digits)
    else:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime('%Y-%m-%d')


def format_date_text(value: Any) -> Optional[str]:
    """``format_date`` for response payloads: always a string or None"""
    normalized = format_date(value)
    if normalized is None:
        return None
    return normalized if isinstance(normalized, str) else str(normalized)


def today() -> str:
    """Today's date as ``YYYY-MM-DD`` (local time, matching version names)"""
    return datetime.now().strftime('%Y-%m-%d')


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _name_tokens(name: str) -> List[str]:
    return [t for t in re.split(r'[^A-Z0-9]+', name.upper()) if t]


def infer_entity_type(record: Dict[str, Any], explicit: Optional[str] = None) -> str:
    """Infer the entity type of a record

    Precedence: explicit type code, name keywords (company suffixes then
    vessel words), person-only fields, ``unknown``. Keywords are matched as
    whole words, so a person named "Bank" is still classified as an entity.

    Args:
        record: Record dictionary (normalized or raw)
        explicit: Explicit type or classification code from the source

    Returns:
        One of ENTITY_TYPES
    """
    for candidate in (explicit, record.get('type'), record.get('entityType')):
        if candidate:
            mapped = EXPLICIT_TYPE_CODES.get(str(candidate).strip().lower())
            if mapped:
                return mapped

    name = record.get('name') or record.get('firstName') or record.get('lastName') or ''
    if isinstance(name, str) and name:
        tokens = set(_name_tokens(name))
        if tokens & COMPANY_KEYWORDS:
            return 'entity'
        if tokens & VESSEL_KEYWORDS:
            return 'vessel'

    details = record.get('details') or {}
    if any(record.get(f) or details.get(f) for f in PERSON_FIELDS):
        return 'individual'

    return 'unknown'


def _details(record: Dict[str, Any]) -> Dict[str, Any]:
    details = record.get('details')
    return details if isinstance(details, dict) else {}


def _as_list(value: Any) -> List[Any]:
    if value is None or value == '':
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _address_countries(record: Dict[str, Any]) -> List[Any]:
    values = []
    address = record.get('address')
    if isinstance(address, dict):
        values.append(address.get('country'))
    for addr in _as_list(record.get('addresses')):
        if isinstance(addr, dict):
            values.append(addr.get('country'))
    return values


# Country accessors, tried in this order; every hit is kept (set semantics)
COUNTRY_ACCESSORS: Sequence[Callable[[Dict[str, Any]], List[Any]]] = (
    lambda r: _as_list(r.get('country')),
    lambda r: _as_list(r.get('countries')),
    lambda r: _as_list(r.get('nationality')),
    lambda r: _as_list(_details(r).get('country')),
    lambda r: _as_list(_details(r).get('nationality')),
    _address_countries,
    lambda r: _as_list(_details(r).get('placeOfBirth')),
)


def dedupe_preserving_order(values: Iterable[Any]) -> List[Any]:
    seen = set()
    result = []
    for value in values:
        if value is None or value == '':
            continue
        key = value.strip() if isinstance(value, str) else value
        if key in seen:
            continue
        seen.add(key)
        result.append(key)
    return result


def collect_countries(record: Dict[str, Any]) -> List[str]:
    """Deduplicated countries from every country-bearing field"""
    values = []
    for accessor in COUNTRY_ACCESSORS:
        values.extend(v for v in accessor(record) if isinstance(v, str))
    return dedupe_preserving_order(values)


ALIAS_FIELDS = ('aliases', 'name_aliases', 'also_known_as')


def collect_aliases(record: Dict[str, Any]) -> List[Dict[str, str]]:
    """Merge alias-bearing fields into ``[{name}]`` deduplicated by name"""
    names = []
    for field_name in ALIAS_FIELDS:
        for alias in _as_list(record.get(field_name)):
            if isinstance(alias, dict):
                alias = alias.get('name') or alias.get('wholeName')
            if isinstance(alias, str) and alias.strip():
                names.append(alias.strip())
    return [{'name': name} for name in dedupe_preserving_order(names)]


def _identifier(id_type: Any, value: Any, description: Any = None) -> Optional[Dict[str, str]]:
    if value is None or str(value).strip() == '':
        return None
    identifier = {'type': str(id_type).strip() if id_type else 'Unknown', 'value': str(value).strip()}
    if description:
        identifier['description'] = str(description).strip()
    return identifier


def normalize_identifier(raw: Any) -> Optional[Dict[str, str]]:
    """Convert a source-specific identifier entry to ``{type, value}``"""
    if isinstance(raw, dict):
        return _identifier(
            raw.get('type') or raw.get('idType') or raw.get('doc_type'),
            raw.get('value') or raw.get('number') or raw.get('idNumber') or raw.get('doc_number'),
            raw.get('description')
        )
    if isinstance(raw, str):
        return _identifier('Unknown', raw)
    return None


def unify_identifiers(record: Dict[str, Any]) -> List[Dict[str, str]]:
    """One identifier list from every identifier-bearing field, deduplicated by (type, value)"""
    candidates = []
    for field_name in ('identifiers', 'identity_documents', 'documents'):
        for raw in _as_list(record.get(field_name)):
            candidates.append(normalize_identifier(raw))
    for raw in _as_list(_details(record).get('identifiers')):
        candidates.append(normalize_identifier(raw))
    if record.get('passportNumber'):
        candidates.append(_identifier('Passport', record['passportNumber']))
    if record.get('nationalId'):
        candidates.append(_identifier('National ID', record['nationalId']))

    seen = set()
    unified = []
    for identifier in candidates:
        if not identifier:
            continue
        key = (identifier['type'].lower(), identifier['value'])
        if key in seen:
            continue
        seen.add(key)
        unified.append(identifier)
    return unified


def best_update_date(record: Dict[str, Any]) -> Optional[Any]:
    """Best-available "last updated" value used by date filters and sorting"""
    details = _details(record)
    return (record.get('lastUpdated') or record.get('lastUpdate') or details.get('lastUpdated')
            or record.get('publicationDate') or record.get('listingDate'))


def get_sanction_type(entry: Dict[str, Any]) -> str:
    if entry.get('sanctionType'):
        return entry['sanctionType']
    # Normalized records use 'type' for the entity type
    if entry.get('type') and str(entry['type']).lower() not in ENTITY_TYPES:
        return entry['type']
    if entry.get('source') in ('UN', 'EU', 'US'):
        return f"{entry['source']} Sanctions"

    entry_id = entry.get('id') or entry.get('_id') or ''
    if isinstance(entry_id, str):
        if entry_id.startswith('UN'):
            return 'UN Sanctions'
        if entry_id.startswith('EU'):
            return 'EU Sanctions'
        if entry_id.startswith('OFAC') or entry_id.startswith('US'):
            return 'US Sanctions'
    return 'Sanctions'


def get_entity_type(entry: Dict[str, Any]) -> str:
    for field_name in ('entityType', 'entity_type', 'partyType', 'party_type'):
        if entry.get(field_name):
            return entry[field_name]
    details = _details(entry)
    if details.get('entityType'):
        return details['entityType']
    return infer_entity_type(entry)


def get_last_update_date(entry: Dict[str, Any]) -> Optional[Any]:
    details = _details(entry)
    for source in (entry, details):
        for field_name in LAST_UPDATED_FIELDS:
            if source.get(field_name):
                return format_date_text(source[field_name])
    return None


def get_programs(entry: Dict[str, Any]) -> List[str]:
    programs = entry.get('programs')
    if isinstance(programs, list):
        return [p for p in programs if p]
    if isinstance(entry.get('program'), str) and entry['program']:
        return [entry['program']]
    return []


def get_source(entry: Dict[str, Any]) -> str:
    if entry.get('source'):
        return entry['source']
    entry_id = entry.get('id') or entry.get('_id') or ''
    if isinstance(entry_id, str):
        for prefix, source in (('UN', 'UN'), ('EU', 'EU'), ('OFAC', 'US'), ('US', 'US')):
            if entry_id.upper().startswith(prefix):
                return source
    return 'unknown'


def get_key_identifiers(entry: Dict[str, Any]) -> Dict[str, Any]:
    identifiers: Dict[str, Any] = {'id': entry.get('id') or entry.get('_id')}

    if entry.get('name'):
        identifiers['name'] = entry['name']
    if entry.get('firstName') and entry.get('lastName'):
        identifiers['fullName'] = f"{entry['firstName']} {entry['lastName']}".strip()
    if entry.get('passportNumber'):
        identifiers['passport'] = entry['passportNumber']
    if entry.get('nationalId'):
        identifiers['nationalId'] = entry['nationalId']

    details = _details(entry)
    birth = details.get('dateOfBirth') or entry.get('birthDate')
    if birth:
        identifiers['dateOfBirth'] = format_date_text(birth)
    if details.get('placeOfBirth'):
        identifiers['placeOfBirth'] = details['placeOfBirth']

    return identifiers


def generate_summary(entry: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Build the per-response ``_summary`` block (never persisted)

    Args:
        entry: Record dictionary

    Returns:
        Summary dictionary, or None when the entry is empty or malformed
    """
    if not entry:
        return None

    try:
        return {
            'type': get_sanction_type(entry),
            'entity': get_entity_type(entry),
            'countries': collect_countries(entry),
            'dateUpdated': get_last_update_date(entry),
            'programs': get_programs(entry),
            'source': get_source(entry),
            'identifiers': get_key_identifiers(entry),
        }
    except (AttributeError, TypeError) as e:
        logger.warning(f"Summary generation failed for {entry.get('id')}: {e}")
        return None


def calculate_string_similarity(str1: Any, str2: Any) -> float:
    """Similarity between two strings in [0, 1]

    Case-insensitive. Identical strings score 1; when one string contains
    the other the score is the length ratio scaled by 0.9; otherwise it is
    ``1 - levenshtein / max_length``.
    """
    if not isinstance(str1, str) or not isinstance(str2, str):
        return 0.0

    s1 = str1.lower()
    s2 = str2.lower()

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    if s1 in s2 or s2 in s1:
        shorter, longer = sorted((s1, s2), key=len)
        return len(shorter) / len(longer) * 0.9

    distance = Levenshtein.distance(s1, s2)
    return 1 - distance / max(len(s1), len(s2))
