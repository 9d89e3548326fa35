"""
Source adapters for the UN, EU and US sanctions feeds

Each feed is described by a declarative SourceConfig (XPath expressions for
id, name, aliases, type, countries, dates, addresses, programs and
documents) consumed by one generic RecordTransformer. Paths are written
without namespace prefixes and matched on local names, so namespace
changes in a feed do not break extraction.

A failing feed raises FetchError or ParseError; callers treat that as
"zero records for this source". A failing entity is logged and skipped.
"""

import logging
import random
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import requests

from config_manager import get_config, ConfigManager, SOURCE_IDS
from errors import FetchError, ParseError, ValidationError
from json_store import write_json_atomic
from record_utils import dedupe_preserving_order, format_date, infer_entity_type, today, utc_now_iso
from xml_utils import namespace_agnostic, select_value, select_values, tolerant_parse, tolerant_parse_file

logger = logging.getLogger(__name__)

NO_NAME = '(no name)'


@dataclass
class SanctionRecord:
    """Normalized sanctions record"""
    id: str
    source: str  # 'UN', 'EU' or 'US'
    name: str = NO_NAME
    name_original: Optional[str] = None
    entity_type: str = 'unknown'  # 'individual', 'entity', 'vessel', 'aircraft', 'unknown'
    subtype: Optional[str] = None

    countries: List[str] = field(default_factory=list)
    aliases: List[Dict[str, str]] = field(default_factory=list)
    programs: List[str] = field(default_factory=list)
    identifiers: List[Dict[str, str]] = field(default_factory=list)
    addresses: List[Dict[str, str]] = field(default_factory=list)

    # Dates (YYYY-MM-DD)
    listing_date: Optional[str] = None
    last_updated: Optional[str] = None
    birth_date: Optional[str] = None

    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to its JSON dictionary form"""
        return {
            'id': self.id,
            'source': self.source,
            'name': self.name,
            'nameOriginal': self.name_original,
            'type': self.entity_type,
            'subtype': self.subtype,
            'countries': list(self.countries),
            'aliases': [dict(a) for a in self.aliases],
            'programs': list(self.programs),
            'identifiers': [dict(i) for i in self.identifiers],
            'addresses': [dict(a) for a in self.addresses],
            'listingDate': self.listing_date,
            'lastUpdated': self.last_updated,
            'birthDate': self.birth_date,
            'details': dict(self.details),
        }


@dataclass(frozen=True)
class SourceConfig:
    """Source-to-canonical field map for one feed

    Every path is an XPath expression relative to the entity node, except
    ``entity_path`` and ``published_date_path`` which are evaluated on the
    document root. ``name_part_paths`` and ``alias_part_paths`` are joined
    with spaces when a name is split over several elements.
    """
    source: str
    entity_path: str
    id_path: str
    name_part_paths: Tuple[str, ...]
    name_fallback_path: Optional[str] = None
    name_original_path: Optional[str] = None
    alias_path: Optional[str] = None
    alias_part_paths: Tuple[str, ...] = ()
    type_path: Optional[str] = None
    subtype_path: Optional[str] = None
    country_path: Optional[str] = None
    birthdate_path: Optional[str] = None
    address_path: Optional[str] = None
    address_fields: Dict[str, str] = field(default_factory=dict)
    program_path: Optional[str] = None
    document_path: Optional[str] = None
    document_type_path: Optional[str] = None
    document_value_path: Optional[str] = None
    document_description_path: Optional[str] = None
    listing_date_path: Optional[str] = None
    last_updated_path: Optional[str] = None
    published_date_path: Optional[str] = None
    detail_paths: Dict[str, str] = field(default_factory=dict)


UN_CONFIG = SourceConfig(
    source='UN',
    entity_path='//CONSOLIDATED_LIST/INDIVIDUALS/INDIVIDUAL | //CONSOLIDATED_LIST/ENTITIES/ENTITY',
    id_path='./DATAID | ./@DATAID',
    name_part_paths=('./FIRST_NAME', './SECOND_NAME', './THIRD_NAME', './FOURTH_NAME'),
    name_fallback_path='./NAME_ORIGINAL_SCRIPT',
    name_original_path='./NAME_ORIGINAL_SCRIPT',
    alias_path='./INDIVIDUAL_ALIAS/ALIAS_NAME | ./ENTITY_ALIAS/ALIAS_NAME',
    type_path='local-name(.)',
    country_path='./NATIONALITY/VALUE | ./INDIVIDUAL_ADDRESS/COUNTRY | ./ENTITY_ADDRESS/COUNTRY',
    birthdate_path='./INDIVIDUAL_DATE_OF_BIRTH/DATE | ./INDIVIDUAL_DATE_OF_BIRTH/YEAR',
    address_path='./INDIVIDUAL_ADDRESS | ./ENTITY_ADDRESS',
    address_fields={
        'street': './STREET',
        'city': './CITY',
        'stateProvince': './STATE_PROVINCE',
        'country': './COUNTRY',
        'note': './NOTE',
    },
    program_path='./UN_LIST_TYPE',
    document_path='./INDIVIDUAL_DOCUMENT',
    document_type_path='./TYPE_OF_DOCUMENT',
    document_value_path='./NUMBER',
    document_description_path='./NOTE',
    listing_date_path='./LISTED_ON',
    last_updated_path='./LAST_DAY_UPDATED/VALUE',
    published_date_path='/CONSOLIDATED_LIST/@dateGenerated',
    detail_paths={
        'referenceNumber': './REFERENCE_NUMBER',
        'title': './TITLE/VALUE',
        'designation': './DESIGNATION/VALUE',
        'gender': './GENDER',
        'placeOfBirth': './INDIVIDUAL_PLACE_OF_BIRTH/COUNTRY',
        'remarks': './COMMENTS1',
    },
)

EU_CONFIG = SourceConfig(
    source='EU',
    entity_path='//sanctionEntity',
    id_path='./@logicalId | ./@euReferenceNumber',
    name_part_paths=("./nameAlias[@isPrimary='true']/@wholeName",),
    name_fallback_path='./nameAlias/@wholeName',
    alias_path='./nameAlias/@wholeName',
    type_path='./subjectType/@classificationCode',
    subtype_path='./subjectType/@code',
    country_path='./citizenship/@countryDescription | ./address/@countryDescription',
    birthdate_path='./birthdate/@birthdate',
    address_path='./address',
    address_fields={
        'street': './@street',
        'city': './@city',
        'zipCode': './@zipCode',
        'country': './@countryDescription',
    },
    program_path='./regulation/@programme',
    document_path='./identification',
    document_type_path='./@identificationTypeCode',
    document_value_path='./@number',
    document_description_path='./@identificationTypeDescription',
    listing_date_path='./regulation/@publicationDate',
    published_date_path='/export/@generationDate',
    detail_paths={
        'euReferenceNumber': './@euReferenceNumber',
        'unitedNationId': './@unitedNationId',
        'gender': './nameAlias/@gender',
        'placeOfBirth': './birthdate/@countryDescription',
        'remarks': './remark',
    },
)

US_CONFIG = SourceConfig(
    source='US',
    entity_path='//sdnEntry',
    id_path='./uid',
    name_part_paths=('./firstName', './lastName'),
    alias_path='./akaList/aka',
    alias_part_paths=('./firstName', './lastName'),
    type_path='./sdnType',
    subtype_path='./sdnType',
    country_path=('./nationalityList/nationality/country | ./citizenshipList/citizenship/country'
                  ' | ./addressList/address/country'),
    birthdate_path='./dateOfBirthList/dateOfBirthItem/dateOfBirth',
    address_path='./addressList/address',
    address_fields={
        'street': './address1',
        'city': './city',
        'stateProvince': './stateOrProvince',
        'postalCode': './postalCode',
        'country': './country',
    },
    program_path='./programList/program',
    document_path='./idList/id',
    document_type_path='./idType',
    document_value_path='./idNumber',
    document_description_path='./idCountry',
    published_date_path='//publshInformation/Publish_Date',
    detail_paths={
        'title': './title',
        'placeOfBirth': './placeOfBirthList/placeOfBirthItem/placeOfBirth',
        'callSign': './vesselInfo/callSign',
        'vesselFlag': './vesselInfo/vesselFlag',
        'remarks': './remarks',
    },
)

SOURCE_CONFIGS: Dict[str, SourceConfig] = {
    'UN': UN_CONFIG,
    'EU': EU_CONFIG,
    'US': US_CONFIG,
}


def synthesize_id(source: str) -> str:
    """Fallback id for an entity without one: ``{SOURCE}-{9 random chars}``"""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{source}-{suffix}"


def get_source_config(source_id: str) -> SourceConfig:
    """Look up the field map for a source id (case-insensitive)

    Raises:
        ValidationError: If the source is not one of UN, EU, US
    """
    key = (source_id or '').upper()
    if key not in SOURCE_CONFIGS:
        raise ValidationError(f"Unknown source: {source_id!r}", field='source')
    return SOURCE_CONFIGS[key]


class RecordTransformer:
    """Turns entity nodes into SanctionRecords using a SourceConfig"""

    def __init__(self, mapping: SourceConfig):
        self.mapping = mapping
        self._compiled: Dict[str, str] = {}

    def _xp(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        if path not in self._compiled:
            self._compiled[path] = namespace_agnostic(path)
        return self._compiled[path]

    def _value(self, elem: Any, path: Optional[str]) -> Optional[str]:
        return select_value(elem, self._xp(path))

    def _values(self, elem: Any, path: Optional[str]) -> List[str]:
        return select_values(elem, self._xp(path))

    def _nodes(self, elem: Any, path: Optional[str]) -> List[Any]:
        if not path:
            return []
        return elem.xpath(self._xp(path))

    def _joined(self, elem: Any, part_paths: Tuple[str, ...]) -> Optional[str]:
        parts = [self._value(elem, p) for p in part_paths]
        name = ' '.join(p for p in parts if p)
        return name or None

    def published_date(self, root: Any) -> Optional[str]:
        """Document-level publication date, normalized"""
        value = self._value(root, self.mapping.published_date_path)
        return format_date(value) if value else None

    def entities(self, root: Any) -> List[Any]:
        return self._nodes(root, self.mapping.entity_path)

    def transform(self, elem: Any, published: Optional[str] = None) -> SanctionRecord:
        """Extract one record from an entity node

        Args:
            elem: Entity element
            published: Document publication date used when the entity has
                no update date of its own

        Returns:
            Normalized record
        """
        cfg = self.mapping

        raw_id = self._value(elem, cfg.id_path)
        if raw_id:
            record_id = f"{cfg.source}-{raw_id}"
        else:
            record_id = synthesize_id(cfg.source)
            logger.warning(f"{cfg.source} entity without id, assigned {record_id}")

        name = self._joined(elem, cfg.name_part_paths) or self._value(elem, cfg.name_fallback_path) or NO_NAME
        birth = self._value(elem, cfg.birthdate_path)
        birth_date = format_date(birth) if birth else None

        explicit_type = self._value(elem, cfg.type_path)
        entity_type = infer_entity_type({'name': name, 'birthDate': birth_date}, explicit=explicit_type)

        listing = self._value(elem, cfg.listing_date_path)
        updates = [format_date(v) for v in self._values(elem, cfg.last_updated_path)]
        updates = [u for u in updates if isinstance(u, str)]
        last_updated = max(updates) if updates else published

        details = {}
        for key, path in cfg.detail_paths.items():
            values = dedupe_preserving_order(self._values(elem, path))
            if values:
                details[key] = '; '.join(values)

        return SanctionRecord(
            id=record_id,
            source=cfg.source,
            name=name,
            name_original=self._value(elem, cfg.name_original_path),
            entity_type=entity_type,
            subtype=self._value(elem, cfg.subtype_path),
            countries=dedupe_preserving_order(self._values(elem, cfg.country_path)),
            aliases=self._aliases(elem, name),
            programs=dedupe_preserving_order(self._values(elem, cfg.program_path)),
            identifiers=self._identifiers(elem),
            addresses=self._addresses(elem),
            listing_date=format_date(listing) if listing else None,
            last_updated=last_updated,
            birth_date=birth_date,
            details=details,
        )

    def _aliases(self, elem: Any, name: str) -> List[Dict[str, str]]:
        cfg = self.mapping
        if cfg.alias_part_paths:
            names = [self._joined(node, cfg.alias_part_paths) for node in self._nodes(elem, cfg.alias_path)]
        else:
            names = self._values(elem, cfg.alias_path)
        return [{'name': n} for n in dedupe_preserving_order(names) if n != name]

    def _identifiers(self, elem: Any) -> List[Dict[str, str]]:
        cfg = self.mapping
        identifiers = []
        seen = set()
        for doc in self._nodes(elem, cfg.document_path):
            value = self._value(doc, cfg.document_value_path)
            if not value:
                continue
            id_type = self._value(doc, cfg.document_type_path) or 'Unknown'
            if (id_type, value) in seen:
                continue
            seen.add((id_type, value))
            identifier = {'type': id_type, 'value': value}
            description = self._value(doc, cfg.document_description_path)
            if description:
                identifier['description'] = description
            identifiers.append(identifier)
        return identifiers

    def _addresses(self, elem: Any) -> List[Dict[str, str]]:
        addresses = []
        for node in self._nodes(elem, self.mapping.address_path):
            address = {}
            for key, path in self.mapping.address_fields.items():
                value = self._value(node, path)
                if value:
                    address[key] = value
            if address:
                addresses.append(address)
        return addresses

    def transform_all(self, root: Any) -> List[Dict[str, Any]]:
        """Transform every entity below ``root``, skipping entities that fail"""
        published = self.published_date(root)
        records = []
        skipped = 0

        for index, elem in enumerate(self.entities(root)):
            try:
                records.append(self.transform(elem, published).to_dict())
            except Exception as e:
                skipped += 1
                logger.warning(f"Error transforming {self.mapping.source} entity #{index}: {e}")

        if skipped:
            logger.warning(f"⚠ Skipped {skipped} malformed {self.mapping.source} entities")
        return records


class SourceAdapter:
    """Fetches and converts the configured sanctions feeds"""

    def __init__(self, config: Optional[ConfigManager] = None, data_dir: Optional[Union[str, Path]] = None):
        """Initialize adapter

        Args:
            config: Configuration manager instance
            data_dir: Override for the data directory
        """
        self.config = config or get_config()
        self.data_dir = Path(data_dir) if data_dir else self.config.data_dir

    def fetch_xml(self, source_id: str) -> bytes:
        """Download the raw XML of one feed

        Raises:
            FetchError: On network errors, timeouts, non-200 responses or a
                disabled feed
        """
        mapping = get_source_config(source_id)
        feed = self.config.sources.feeds[mapping.source]
        if not feed.enabled:
            raise FetchError(f"Source {mapping.source} is disabled", source=mapping.source)

        logger.info(f"Downloading {mapping.source} list from {feed.url}")
        try:
            response = requests.get(
                feed.url,
                timeout=feed.timeout_seconds,
                headers={'User-Agent': self.config.sources.user_agent}
            )
        except requests.Timeout as e:
            raise FetchError(f"Timed out after {feed.timeout_seconds}s fetching {mapping.source}: {e}",
                             source=mapping.source)
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch {mapping.source}: {e}", source=mapping.source)

        if response.status_code != 200:
            raise FetchError(f"HTTP {response.status_code} from {mapping.source} feed", source=mapping.source)

        size_mb = len(response.content) / 1024 / 1024
        logger.info(f"✓ Downloaded {mapping.source} list ({size_mb:.1f} MB)")
        return response.content

    def parse_xml(self, source_id: str, content: Union[bytes, str]) -> List[Dict[str, Any]]:
        """Convert raw XML of one feed into normalized records

        Raises:
            ParseError: If the document cannot be recovered
        """
        mapping = get_source_config(source_id)
        root = tolerant_parse(content, label=mapping.source)
        return self._transform(mapping, root)

    def parse_file(self, source_id: str, xml_path: Union[str, Path]) -> List[Dict[str, Any]]:
        """Convert an already-downloaded XML file into normalized records"""
        mapping = get_source_config(source_id)
        root = tolerant_parse_file(Path(xml_path), label=mapping.source)
        return self._transform(mapping, root)

    def _transform(self, mapping: SourceConfig, root: Any) -> List[Dict[str, Any]]:
        records = RecordTransformer(mapping).transform_all(root)
        if not records:
            logger.warning(f"⚠ No {mapping.source} entities found")
        else:
            logger.info(f"✓ Parsed {len(records)} {mapping.source} entities")
        return records

    def fetch_and_parse(self, source_id: str) -> List[Dict[str, Any]]:
        """Fetch one feed and return its normalized records

        Raises:
            FetchError: If the feed cannot be downloaded
            ParseError: If the XML is malformed beyond recovery
        """
        return self.parse_xml(source_id, self.fetch_xml(source_id))

    def download(self, source_id: str, dest_dir: Union[str, Path]) -> Path:
        """Download one feed to ``{dest_dir}/{source}_raw.xml``"""
        mapping = get_source_config(source_id)
        content = self.fetch_xml(mapping.source)
        dest = Path(dest_dir) / f"{mapping.source.lower()}_raw.xml"
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        return dest

    def source_file(self, source_id: str) -> Path:
        return self.data_dir / f"{get_source_config(source_id).source.lower()}_sanctions.json"

    def write_source_file(self, source_id: str, records: List[Dict[str, Any]]) -> Path:
        """Write ``data/{source}_sanctions.json`` with its metadata block"""
        mapping = get_source_config(source_id)
        payload = {
            'data': records,
            'meta': {
                'source': mapping.source,
                'count': len(records),
                'lastUpdated': utc_now_iso(),
                'version': today(),
            }
        }
        path = write_json_atomic(self.source_file(mapping.source), payload, indent=2)
        logger.info(f"✓ Wrote {len(records)} {mapping.source} records to {path}")
        return path

    def convert_all(self, sources: Optional[List[str]] = None) -> Dict[str, int]:
        """Fetch, parse and persist every enabled feed

        A failing feed contributes zero records and does not stop the
        others; its previous per-source file is left in place.

        Returns:
            Record count per source
        """
        counts = {}
        for source_id in sources or SOURCE_IDS:
            try:
                records = self.fetch_and_parse(source_id)
            except (FetchError, ParseError) as e:
                logger.error(f"✗ {source_id}: {e}")
                counts[source_id] = 0
                continue
            self.write_source_file(source_id, records)
            counts[source_id] = len(records)
        return counts


def fetch_and_parse(source_id: str, config: Optional[ConfigManager] = None) -> List[Dict[str, Any]]:
    """Convenience wrapper around :meth:`SourceAdapter.fetch_and_parse`"""
    return SourceAdapter(config).fetch_and_parse(source_id)
