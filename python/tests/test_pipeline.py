"""
Integration tests for the ingestion pipeline
Tests step sequencing, graceful degradation and the diagnostic manifest
"""

import json
from unittest.mock import patch

import pytest

from errors import FetchError, SanctionsCorpusError
from pipeline import IngestionPipeline, STEPS, main
from source_adapters import SourceAdapter


UN_XML = b"""<CONSOLIDATED_LIST dateGenerated="2024-01-01T00:00:00.000Z">
  <INDIVIDUALS>
    <INDIVIDUAL><DATAID>1</DATAID><FIRST_NAME>ALPHA</FIRST_NAME><UN_LIST_TYPE>DPRK</UN_LIST_TYPE></INDIVIDUAL>
    <INDIVIDUAL><DATAID>2</DATAID><FIRST_NAME>BRAVO</FIRST_NAME><UN_LIST_TYPE>DPRK</UN_LIST_TYPE></INDIVIDUAL>
  </INDIVIDUALS>
</CONSOLIDATED_LIST>
"""

US_XML = b"""<sdnList xmlns="https://www.treasury.gov/ofac/downloads/sdn.xsd">
  <publshInformation><Publish_Date>01/02/2024</Publish_Date></publshInformation>
  <sdnEntry><uid>7</uid><lastName>CHARLIE SHIPPING LTD</lastName><sdnType>Entity</sdnType></sdnEntry>
</sdnList>
"""


def fake_fetch(source_id):
    if source_id == 'EU':
        raise FetchError("EU feed down", source='EU')
    return {'UN': UN_XML, 'US': US_XML}[source_id]


@pytest.fixture
def pipeline(config, data_dir):
    return IngestionPipeline(config=config)


def read(path):
    return json.loads(path.read_text())


class TestFullRun:
    """Tests for running every step"""

    @patch.object(SourceAdapter, 'fetch_xml', side_effect=fake_fetch)
    def test_all_steps_with_one_feed_down(self, mock_fetch, pipeline, data_dir, tmp_path):
        diagnostic = pipeline.run()

        assert diagnostic['status'] == 'success'
        assert diagnostic['error'] is None
        assert [s['name'] for s in diagnostic['steps']] == list(STEPS)
        assert diagnostic['sources'] == {'UN': 2, 'EU': 0, 'US': 1}

        collection = read(data_dir / 'collection_result.json')
        assert {r['source']: r['success'] for r in collection['results']} == {'UN': True, 'EU': False, 'US': True}

        integrated = read(data_dir / 'integrated_sanctions.json')
        assert sorted(r['id'] for r in integrated['data']) == ['UN-1', 'UN-2', 'US-7']

        manifest = read(data_dir / 'version.json')
        assert manifest['recordCount'] == 3
        assert manifest['sources'] == {'UN': 2, 'EU': 0, 'US': 1}
        assert (data_dir / 'versions' / manifest['current'] / 'sanctions.json').exists()

        serving = tmp_path / 'public'
        assert (serving / 'sanctions.json').exists()
        assert (serving / 'chunks' / 'index.json').exists()
        assert not (data_dir / 'temp').exists()

        on_disk = read(data_dir / 'diagnostic_info.json')
        assert on_disk['status'] == 'success'
        assert on_disk['finishedAt'] is not None

    def test_failing_step_marks_error_and_continues(self, pipeline, data_dir):
        diagnostic = pipeline.run(['split', 'prune'])

        assert diagnostic['status'] == 'error'
        assert diagnostic['error'].startswith('split:')
        assert [s['status'] for s in diagnostic['steps']] == ['error', 'success']
        assert read(data_dir / 'diagnostic_info.json')['status'] == 'error'

    def test_unknown_step(self, pipeline):
        with pytest.raises(SanctionsCorpusError):
            pipeline.run(['explode'])


class TestSteps:
    """Tests for individual steps"""

    def test_convert_from_input_file(self, config, data_dir, tmp_path):
        xml_path = tmp_path / 'un.xml'
        xml_path.write_bytes(UN_XML)
        pipeline = IngestionPipeline(config=config, sources=['un'])

        diagnostic = pipeline.run(['convert'], input_path=xml_path)

        assert diagnostic['sources'] == {'UN': 2}
        assert read(data_dir / 'un_sanctions.json')['meta']['count'] == 2

    def test_input_requires_single_source(self, config, data_dir, tmp_path):
        pipeline = IngestionPipeline(config=config, sources=['UN', 'EU'])
        with pytest.raises(SanctionsCorpusError):
            pipeline.convert(input_path=tmp_path / 'un.xml')

    @patch.object(SourceAdapter, 'fetch_xml', side_effect=FetchError("down", source='UN'))
    def test_convert_failure_keeps_previous_file(self, mock_fetch, config, data_dir):
        previous = data_dir / 'un_sanctions.json'
        previous.write_text('{"data": [{"id": "UN-old"}]}')
        pipeline = IngestionPipeline(config=config, sources=['UN'])

        assert pipeline.convert() == {'UN': 0}
        assert previous.read_text() == '{"data": [{"id": "UN-old"}]}'

    def test_sync_writes_defaults_without_data(self, pipeline, tmp_path):
        assert pipeline.sync() == []

        serving = tmp_path / 'public'
        for name in ('un_sanctions.json', 'eu_sanctions.json', 'us_sanctions.json', 'integrated_sanctions.json'):
            assert read(serving / name)['data'] == []
        assert read(serving / 'sanctions.json') == []

    def test_sync_replaces_chunks(self, pipeline, data_dir, tmp_path):
        (data_dir / 'sanctions.json').write_text('[]')
        (data_dir / 'chunks').mkdir()
        (data_dir / 'chunks' / 'un_chunk_0.json').write_text('{"data": []}')
        stale = tmp_path / 'public' / 'chunks' / 'eu_chunk_3.json'
        stale.parent.mkdir(parents=True)
        stale.write_text('{}')

        copied = pipeline.sync()

        assert copied == ['sanctions.json', 'chunks']
        assert (tmp_path / 'public' / 'chunks' / 'un_chunk_0.json').exists()
        assert not stale.exists()

    def test_dedupe_step(self, pipeline, data_dir):
        (data_dir / 'sanctions.json').write_text('[{"id": "a"}, {"id": "a", "v": 1}]')
        assert pipeline.dedupe() == {'sanctions.json': 1}

    def test_cleanup_without_temp(self, pipeline):
        assert pipeline.cleanup() is False

    def test_unknown_source_rejected(self, config):
        with pytest.raises(SanctionsCorpusError):
            IngestionPipeline(config=config, sources=['XX'])


class TestMain:
    """Tests for the command line entry point"""

    @pytest.fixture
    def config_path(self, config, data_dir, tmp_path):
        return str(tmp_path / 'config.yaml')

    @patch('pipeline.setup_logging')
    def test_successful_step_exits_zero(self, mock_logging, config_path, data_dir):
        assert main(['integrate', '--config', config_path]) == 0
        assert (data_dir / 'integrated_sanctions.json').exists()
        mock_logging.assert_called_once()

    @patch('pipeline.setup_logging')
    def test_failed_step_exits_one(self, mock_logging, config_path):
        assert main(['split', '--config', config_path]) == 1

    def test_invalid_step(self, config_path):
        with pytest.raises(SystemExit):
            main(['explode', '--config', config_path])
