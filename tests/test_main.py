import json
import os

import pytest
from click.testing import CliRunner

from botmeter.config import LLM_SETTINGS
from botmeter.main import cli, parse_datetime_string
from botmeter.models import AggregationResult

from conftest import GPTBOT_UA


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, db_path, *args):
    return runner.invoke(cli, ['--db', db_path, *args])


ANALYZE_ARGS = ['analyze', '--site-id', 'shop', '--provider', 'vercel',
                '--start', '2025-09-01', '--end', '2025-09-08', '--no-sherlock']


class TestParseDatetime:

    @pytest.mark.parametrize("value", ["2025-09-01", "2025-09-01 10:30:00", "2025/09/01", "2025-09-01T10:30:00Z"])
    def test_supported_formats(self, value):
        parsed = parse_datetime_string(value)
        assert (parsed.year, parsed.month, parsed.day) == (2025, 9, 1)
        assert parsed.utcoffset().total_seconds() == 0

    def test_unparseable(self):
        assert parse_datetime_string("next tuesday") is None


class TestCommands:

    def test_aggregate_writes_artifact(self, runner, db_path, normalized_file, tmp_path):
        output = str(tmp_path / "aggregates.json")

        result = invoke(runner, db_path, 'aggregate', normalized_file, '-o', output)

        assert result.exit_code == 0, result.output
        with open(output) as f:
            aggregation = AggregationResult.from_dict(json.load(f))
        assert aggregation.totals.total_requests == 7

    def test_classify_user_agent(self, runner, db_path, tmp_path):
        output = str(tmp_path / "verdicts.json")

        result = invoke(runner, db_path, 'classify', '--ua', GPTBOT_UA, '--no-cache', '-o', output)

        assert result.exit_code == 0, result.output
        with open(output) as f:
            verdicts = json.load(f)
        assert verdicts[GPTBOT_UA]['bot_type'] == 'ai_training'
        assert not os.path.exists(db_path)

    def test_classify_needs_input(self, runner, db_path):
        assert invoke(runner, db_path, 'classify').exit_code == 2

    def test_classify_unknown_only(self, runner, db_path, normalized_file, tmp_path):
        output = str(tmp_path / "verdicts.json")

        result = invoke(runner, db_path, 'classify', normalized_file, '--unknown-only', '-o', output)

        assert result.exit_code == 0, result.output
        with open(output) as f:
            verdicts = json.load(f)
        assert GPTBOT_UA not in verdicts
        assert len(verdicts) == 2

    def test_cache_stats_and_clear(self, runner, db_path):
        invoke(runner, db_path, 'classify', '--ua', GPTBOT_UA)

        stats = invoke(runner, db_path, 'cache')
        assert stats.exit_code == 0, stats.output
        assert "Entries: 1" in stats.output

        cleared = invoke(runner, db_path, 'cache', '--clear')
        assert "Removed 1 cached classifications" in cleared.output

    def test_anomalies(self, runner, db_path, normalized_file, tmp_path):
        output = str(tmp_path / "anomalies.json")

        result = invoke(runner, db_path, 'anomalies', normalized_file, '-o', output)

        assert result.exit_code == 0, result.output
        assert "No anomalies detected" in result.output
        with open(output) as f:
            assert json.load(f)['anomalies'] == []

    def test_cost(self, runner, db_path):
        result = invoke(runner, db_path, 'cost', '--provider', 'vercel', '--bytes', 'bot=100000000000',
                        '--window-days', '30')

        assert result.exit_code == 0, result.output
        assert "$15.00" in result.output

    def test_cost_rejects_bad_bytes(self, runner, db_path):
        result = invoke(runner, db_path, 'cost', '--provider', 'vercel', '--bytes', 'bot=lots')
        assert result.exit_code == 2

    def test_sherlock_needs_api_key(self, runner, db_path, normalized_file, monkeypatch):
        monkeypatch.setitem(LLM_SETTINGS, 'api_key', '')

        result = invoke(runner, db_path, 'sherlock', normalized_file)

        assert result.exit_code == 1
        assert "OPENAI_API_KEY" in result.output


class TestAnalyzeCommand:

    def test_analyze_then_report(self, runner, db_path, normalized_file):
        result = invoke(runner, db_path, *ANALYZE_ARGS, '--logs', normalized_file)

        assert result.exit_code == 0, result.output
        assert "BOT TRAFFIC REPORT" in result.output

        stored = invoke(runner, db_path, 'report', '--site-id', 'shop', '--json')
        assert stored.exit_code == 0, stored.output
        report = json.loads(stored.output)
        assert report['site_id'] == 'shop'
        assert report['window'] == {'start': '2025-09-01T00:00:00Z', 'end': '2025-09-08T00:00:00Z', 'days': 7}
        assert report['metrics']['total_requests'] == 7

    def test_report_not_found(self, runner, db_path):
        assert invoke(runner, db_path, 'report', '--site-id', 'nobody').exit_code == 1

    def test_no_store(self, runner, db_path, normalized_file):
        invoke(runner, db_path, *ANALYZE_ARGS, '--logs', normalized_file, '--no-store')
        assert invoke(runner, db_path, 'report', '--site-id', 'shop').exit_code == 1

    def test_bad_start_date(self, runner, db_path, normalized_file):
        result = invoke(runner, db_path, 'analyze', '--site-id', 'shop', '--provider', 'vercel',
                        '--start', 'yesterday', '--end', '2025-09-08', '--logs', normalized_file)
        assert result.exit_code == 2

    def test_no_input_is_fatal(self, runner, db_path, tmp_path):
        result = invoke(runner, db_path, *ANALYZE_ARGS, '--aggregates', str(tmp_path / "missing.json"))

        assert result.exit_code == 1
        assert "DataLoadError" in result.output

    def test_ingest_then_analyze_from_db(self, runner, db_path, normalized_file):
        ingested = invoke(runner, db_path, 'ingest', normalized_file, '--site-id', 'shop')
        assert ingested.exit_code == 0, ingested.output
        assert "Stored 7 entries for shop" in ingested.output

        result = invoke(runner, db_path, *ANALYZE_ARGS, '--from-db')
        assert result.exit_code == 0, result.output

        report = json.loads(invoke(runner, db_path, 'report', '--site-id', 'shop', '--json').output)
        assert report['metrics']['total_requests'] == 7

    def test_exports(self, runner, db_path, normalized_file, tmp_path):
        export_dir = tmp_path / "exports"

        result = invoke(runner, db_path, *ANALYZE_ARGS, '--logs', normalized_file, '--no-store',
                        '-o', str(export_dir), '--export-json', '--export-csv')

        assert result.exit_code == 0, result.output
        names = sorted(p.name for p in export_dir.iterdir())
        assert [n.split('_')[0] for n in names] == ['anomalies', 'costs', 'report']
