"""
Unit tests for the UN, EU and US source adapters
Tests field mapping, defaults, fetch failures and per-source file output
"""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from errors import FetchError, ParseError, ValidationError
from source_adapters import (
    NO_NAME,
    SourceAdapter,
    fetch_and_parse,
    get_source_config,
)


UN_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<CONSOLIDATED_LIST dateGenerated="2021-03-01T00:00:00.000Z">
  <INDIVIDUALS>
    <INDIVIDUAL>
      <DATAID>6908555</DATAID>
      <FIRST_NAME>JOHN</FIRST_NAME>
      <SECOND_NAME>DOE</SECOND_NAME>
      <UN_LIST_TYPE>DPRK</UN_LIST_TYPE>
      <REFERENCE_NUMBER>KPi.066</REFERENCE_NUMBER>
      <LISTED_ON>2017-06-02</LISTED_ON>
      <NATIONALITY><VALUE>Korea</VALUE></NATIONALITY>
      <INDIVIDUAL_ALIAS><QUALITY>Good</QUALITY><ALIAS_NAME>Johnny Doe</ALIAS_NAME></INDIVIDUAL_ALIAS>
      <INDIVIDUAL_DATE_OF_BIRTH><DATE>1970-05-04</DATE></INDIVIDUAL_DATE_OF_BIRTH>
      <INDIVIDUAL_DOCUMENT><TYPE_OF_DOCUMENT>Passport</TYPE_OF_DOCUMENT><NUMBER>P123</NUMBER></INDIVIDUAL_DOCUMENT>
      <LAST_DAY_UPDATED><VALUE>2019-01-01</VALUE><VALUE>2020-06-15</VALUE></LAST_DAY_UPDATED>
    </INDIVIDUAL>
  </INDIVIDUALS>
  <ENTITIES>
    <ENTITY>
      <DATAID>110</DATAID>
      <FIRST_NAME>KOREA MINING DEVELOPMENT TRADING CORPORATION</FIRST_NAME>
      <UN_LIST_TYPE>DPRK</UN_LIST_TYPE>
      <LISTED_ON>2009-04-24</LISTED_ON>
      <ENTITY_ADDRESS><CITY>Pyongyang</CITY><COUNTRY>Korea</COUNTRY></ENTITY_ADDRESS>
    </ENTITY>
  </ENTITIES>
</CONSOLIDATED_LIST>
"""

EU_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<export xmlns="http://eu.europa.ec/fpi/fsd/export" generationDate="2021-03-01T10:00:00.000+01:00">
  <sanctionEntity logicalId="13" euReferenceNumber="EU.27.28">
    <regulation programme="IRQ" publicationDate="2003-07-08"/>
    <subjectType code="person" classificationCode="P"/>
    <nameAlias wholeName="Saddam Hussein Al-Tikriti" isPrimary="true" gender="M"/>
    <nameAlias wholeName="Abu Ali" isPrimary="false"/>
    <citizenship countryDescription="IRAQ"/>
    <birthdate birthdate="1937-04-28" countryDescription="IRAQ"/>
    <identification identificationTypeCode="passport" identificationTypeDescription="National passport" number="A1234"/>
  </sanctionEntity>
  <sanctionEntity logicalId="14">
    <subjectType code="enterprise" classificationCode="E"/>
    <nameAlias wholeName="Example Shipping Co" isPrimary="true"/>
    <address city="Tehran" street="Main St 1" countryDescription="IRAN"/>
  </sanctionEntity>
</export>
"""

US_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<sdnList xmlns="https://www.treasury.gov/ofac/downloads/sdn.xsd">
  <publshInformation>
    <Publish_Date>03/01/2021</Publish_Date>
    <Record_Count>2</Record_Count>
  </publshInformation>
  <sdnEntry>
    <uid>36</uid>
    <lastName>AEROCARIBBEAN AIRLINES</lastName>
    <sdnType>Entity</sdnType>
    <programList><program>CUBA</program></programList>
    <akaList>
      <aka><uid>12</uid><type>a.k.a.</type><category>strong</category><lastName>AERO-CARIBBEAN</lastName></aka>
    </akaList>
    <addressList><address><uid>25</uid><city>Havana</city><country>Cuba</country></address></addressList>
  </sdnEntry>
  <sdnEntry>
    <uid>2674</uid>
    <firstName>Abu</firstName>
    <lastName>ZAYD</lastName>
    <sdnType>Individual</sdnType>
    <programList><program>SDGT</program></programList>
    <idList><id><uid>1</uid><idType>Passport</idType><idNumber>X99</idNumber><idCountry>Egypt</idCountry></id></idList>
    <dateOfBirthList><dateOfBirthItem><uid>5</uid><dateOfBirth>15 Mar 1965</dateOfBirth></dateOfBirthItem></dateOfBirthList>
  </sdnEntry>
</sdnList>
"""

FEEDS = {'UN': UN_XML, 'EU': EU_XML, 'US': US_XML}

LIST_FIELDS = ('countries', 'aliases', 'programs', 'identifiers', 'addresses')


@pytest.fixture
def adapter(config, data_dir):
    return SourceAdapter(config=config, data_dir=data_dir)


def _by_id(records):
    return {r['id']: r for r in records}


# ============================================
# FIELD MAPPING
# ============================================

class TestUNMapping:
    """Tests for the UN consolidated list mapping"""

    def test_individual(self, adapter):
        records = _by_id(adapter.parse_xml('UN', UN_XML))
        person = records['UN-6908555']

        assert person['source'] == 'UN'
        assert person['name'] == 'JOHN DOE'
        assert person['type'] == 'individual'
        assert person['programs'] == ['DPRK']
        assert person['countries'] == ['Korea']
        assert person['aliases'] == [{'name': 'Johnny Doe'}]
        assert person['identifiers'] == [{'type': 'Passport', 'value': 'P123'}]
        assert person['listingDate'] == '2017-06-02'
        assert person['lastUpdated'] == '2020-06-15'
        assert person['birthDate'] == '1970-05-04'
        assert person['details']['referenceNumber'] == 'KPi.066'

    def test_entity_uses_publication_date(self, adapter):
        records = _by_id(adapter.parse_xml('UN', UN_XML))
        entity = records['UN-110']

        assert entity['type'] == 'entity'
        assert entity['lastUpdated'] == '2021-03-01'
        assert entity['addresses'] == [{'city': 'Pyongyang', 'country': 'Korea'}]
        assert entity['countries'] == ['Korea']

    def test_list_fields_are_always_lists(self, adapter):
        for source_id, xml in FEEDS.items():
            for record in adapter.parse_xml(source_id, xml):
                for field_name in LIST_FIELDS:
                    assert isinstance(record[field_name], list), (source_id, field_name)


class TestEUMapping:
    """Tests for the namespaced EU financial sanctions file"""

    def test_person(self, adapter):
        records = _by_id(adapter.parse_xml('EU', EU_XML))
        person = records['EU-13']

        assert person['name'] == 'Saddam Hussein Al-Tikriti'
        assert person['type'] == 'individual'
        assert person['subtype'] == 'person'
        assert person['aliases'] == [{'name': 'Abu Ali'}]
        assert person['countries'] == ['IRAQ']
        assert person['programs'] == ['IRQ']
        assert person['identifiers'] == [
            {'type': 'passport', 'value': 'A1234', 'description': 'National passport'}
        ]
        assert person['listingDate'] == '2003-07-08'
        assert person['lastUpdated'] == '2021-03-01'
        assert person['birthDate'] == '1937-04-28'
        assert person['details']['gender'] == 'M'
        assert person['details']['euReferenceNumber'] == 'EU.27.28'

    def test_enterprise(self, adapter):
        records = _by_id(adapter.parse_xml('EU', EU_XML))
        company = records['EU-14']

        assert company['type'] == 'entity'
        assert company['addresses'] == [{'street': 'Main St 1', 'city': 'Tehran', 'country': 'IRAN'}]


class TestUSMapping:
    """Tests for the namespaced OFAC SDN file"""

    def test_entity(self, adapter):
        records = _by_id(adapter.parse_xml('US', US_XML))
        airline = records['US-36']

        assert airline['name'] == 'AEROCARIBBEAN AIRLINES'
        assert airline['type'] == 'entity'
        assert airline['aliases'] == [{'name': 'AERO-CARIBBEAN'}]
        assert airline['countries'] == ['Cuba']
        assert airline['programs'] == ['CUBA']
        assert airline['lastUpdated'] == '2021-03-01'

    def test_individual(self, adapter):
        records = _by_id(adapter.parse_xml('US', US_XML))
        person = records['US-2674']

        assert person['name'] == 'Abu ZAYD'
        assert person['type'] == 'individual'
        assert person['birthDate'] == '1965-03-15'
        assert person['identifiers'] == [{'type': 'Passport', 'value': 'X99', 'description': 'Egypt'}]


# ============================================
# DEFAULTS AND FAILURES
# ============================================

class TestDefaultsAndFailures:
    """Tests for default values and error handling"""

    def test_missing_id_is_synthesized(self, adapter):
        xml = b"<CONSOLIDATED_LIST><INDIVIDUALS><INDIVIDUAL/></INDIVIDUALS></CONSOLIDATED_LIST>"
        records = adapter.parse_xml('UN', xml)

        assert len(records) == 1
        assert records[0]['id'].startswith('UN-')
        assert len(records[0]['id']) == len('UN-') + 9
        assert records[0]['name'] == NO_NAME

    def test_malformed_xml_raises_parse_error(self, adapter):
        with pytest.raises(ParseError):
            adapter.parse_xml('UN', b"")
        with pytest.raises(ParseError):
            adapter.parse_xml('UN', b"this is not xml")

    def test_truncated_xml_is_recovered(self, adapter):
        xml = (b"<CONSOLIDATED_LIST><INDIVIDUALS><INDIVIDUAL><DATAID>1</DATAID>"
               b"<FIRST_NAME>A</FIRST_NAME></INDIVIDUAL><INDIVIDUAL><DATAID>2")
        records = adapter.parse_xml('UN', xml)

        assert records[0]['id'] == 'UN-1'

    def test_failing_entity_is_skipped(self, adapter):
        def flaky(record, explicit=None):
            if record['name'] == 'JOHN DOE':
                raise ValueError("broken entity")
            return 'entity'

        with patch('source_adapters.infer_entity_type', side_effect=flaky):
            records = adapter.parse_xml('UN', UN_XML)

        assert [r['id'] for r in records] == ['UN-110']

    def test_unknown_source(self):
        with pytest.raises(ValidationError):
            get_source_config('xx')
        assert get_source_config('un').source == 'UN'


# ============================================
# FETCHING
# ============================================

class TestFetch:
    """Tests for HTTP fetching with a mocked requests.get"""

    @patch('source_adapters.requests.get')
    def test_fetch_and_parse(self, mock_get, config):
        mock_get.return_value = Mock(status_code=200, content=US_XML)

        records = fetch_and_parse('US', config)

        assert len(records) == 2
        args, kwargs = mock_get.call_args
        assert args[0] == config.sources.feeds['US'].url
        assert kwargs['timeout'] == 120
        assert 'User-Agent' in kwargs['headers']

    @patch('source_adapters.requests.get')
    def test_non_200_raises_fetch_error(self, mock_get, adapter):
        mock_get.return_value = Mock(status_code=500, content=b"")

        with pytest.raises(FetchError) as exc_info:
            adapter.fetch_xml('UN')
        assert exc_info.value.source == 'UN'

    @patch('source_adapters.requests.get')
    def test_timeout_raises_fetch_error(self, mock_get, adapter):
        mock_get.side_effect = requests.Timeout("read timed out")

        with pytest.raises(FetchError):
            adapter.fetch_and_parse('EU')

    @patch('source_adapters.requests.get')
    def test_connection_error_raises_fetch_error(self, mock_get, adapter):
        mock_get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(FetchError):
            adapter.fetch_xml('US')

    @patch('source_adapters.requests.get')
    def test_disabled_feed(self, mock_get, make_config):
        config = make_config(sources={'eu': {'enabled': False}})
        adapter = SourceAdapter(config=config)

        with pytest.raises(FetchError):
            adapter.fetch_xml('EU')
        mock_get.assert_not_called()

    @patch('source_adapters.requests.get')
    def test_download_writes_raw_file(self, mock_get, adapter, tmp_path):
        mock_get.return_value = Mock(status_code=200, content=UN_XML)

        path = adapter.download('UN', tmp_path / 'raw')

        assert path.name == 'un_raw.xml'
        assert path.read_bytes() == UN_XML
        assert len(adapter.parse_file('UN', path)) == 2


# ============================================
# PER-SOURCE FILES
# ============================================

class TestSourceFiles:
    """Tests for data/{source}_sanctions.json output"""

    def test_write_source_file_shape(self, adapter, data_dir):
        records = adapter.parse_xml('EU', EU_XML)
        path = adapter.write_source_file('EU', records)

        assert path == data_dir / 'eu_sanctions.json'
        payload = json.loads(path.read_text())
        assert len(payload['data']) == 2
        assert payload['meta']['source'] == 'EU'
        assert payload['meta']['count'] == 2
        assert set(payload['meta']) == {'source', 'count', 'lastUpdated', 'version'}

    def test_convert_all_continues_past_failing_source(self, adapter, data_dir):
        """A down feed yields zero records and keeps its previous file"""
        old_eu = data_dir / 'eu_sanctions.json'
        old_eu.write_text('{"data": [], "meta": {"source": "EU", "count": 0}}')

        def fake_fetch(source_id):
            if source_id == 'EU':
                raise FetchError("EU feed down", source='EU')
            return FEEDS[source_id]

        with patch.object(SourceAdapter, 'fetch_xml', side_effect=fake_fetch):
            counts = adapter.convert_all()

        assert counts == {'UN': 2, 'EU': 0, 'US': 2}
        assert (data_dir / 'un_sanctions.json').exists()
        assert (data_dir / 'us_sanctions.json').exists()
        assert old_eu.read_text() == '{"data": [], "meta": {"source": "EU", "count": 0}}'
