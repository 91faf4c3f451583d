import gzip
import json
from datetime import datetime, timezone

import pytest

from botmeter.exceptions import DataLoadError
from botmeter.log_reader import NormalizedLogFile, iter_log_files, write_normalized_file
from botmeter.parser import LogParser

from conftest import make_entry

COMBINED_LINE = ('203.0.113.9 - - [01/Sep/2025:14:00:05 +0200] "GET /index.html HTTP/1.1" 200 5120 '
                 '"https://example.com/" "Mozilla/5.0 (compatible; Googlebot/2.1)"')


class TestLogParser:

    def test_parses_combined_line(self):
        entry = LogParser().parse_log_line(COMBINED_LINE)

        assert entry.ip == "203.0.113.9"
        assert entry.timestamp == datetime(2025, 9, 1, 12, 0, 5, tzinfo=timezone.utc)
        assert entry.method == "GET"
        assert entry.path == "/index.html"
        assert entry.status_code == 200
        assert entry.bytes_transferred == 5120
        assert entry.referer == "https://example.com/"
        assert "Googlebot" in entry.user_agent

    def test_dash_bytes_become_zero(self):
        line = '203.0.113.9 - - [01/Sep/2025:14:00:05 +0000] "HEAD / HTTP/1.1" 304 -'
        entry = LogParser().parse_log_line(line)

        assert entry.bytes_transferred == 0
        assert entry.user_agent is None

    def test_parses_nginx_json_with_request_field(self):
        raw = {
            'time': '2025-09-01T12:00:00+00:00',
            'remote_addr': '198.51.100.7, 10.0.0.1',
            'request': 'POST /graphql HTTP/1.1',
            'status': '201',
            'body_bytes_sent': '512',
            'user_agent': 'curl/8.0',
            'referer': '-',
        }
        entry = LogParser().parse_log_line(json.dumps(raw))

        assert entry.ip == "198.51.100.7"
        assert entry.method == "POST"
        assert entry.path == "/graphql"
        assert entry.status_code == 201
        assert entry.bytes_transferred == 512
        assert entry.referer is None

    def test_epoch_milliseconds_timestamp(self):
        entry = LogParser().normalize_log({'ts': 1756728000000, 'path': '/'})
        assert entry.timestamp == datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc)

    def test_record_without_timestamp_is_skipped(self):
        parser = LogParser()
        assert parser.normalize_log({'path': '/', 'status': 200}) is None
        assert parser.parse_log_line('not a log line') is None
        assert parser.parse_log_line('{broken json') is None
        assert parser.skipped == 3

    def test_out_of_range_epoch_is_skipped(self):
        parser = LogParser()

        assert parser.normalize_log({'timestamp': 1756728000000000000, 'path': '/'}) is None
        assert parser.normalize_log({'timestamp': float('inf'), 'path': '/'}) is None
        assert parser.skipped == 2

    def test_overflowing_numbers_are_dropped(self):
        entry = LogParser().normalize_log(json.loads(
            '{"timestamp": "2025-09-01T12:00:00Z", "status": 1e400, "bytes": 1e400}'))

        assert entry.status_code is None
        assert entry.bytes_transferred == 0

    def test_opaque_ip_is_kept(self):
        entry = LogParser().normalize_log({'timestamp': '2025-09-01T12:00:00Z', 'ip': 'hash-abc123'})
        assert entry.ip == "hash-abc123"


class TestNormalizedLogFile:

    def test_reads_document_with_metadata(self, normalized_file, entries):
        log_file = NormalizedLogFile(normalized_file)

        loaded = list(log_file)
        assert len(loaded) == len(entries)
        assert loaded[0] == entries[0]
        assert log_file.time_range == {'start': '2025-09-01T12:00:00Z', 'end': '2025-09-01T12:02:10Z'}
        # Documents can be iterated more than once
        assert len(list(log_file.iter_entries())) == len(entries)

    def test_reads_gzipped_jsonl(self, tmp_path, entries):
        path = tmp_path / "access.jsonl.gz"
        with gzip.open(path, 'wt', encoding='utf-8') as f:
            for entry in entries:
                f.write(json.dumps(entry.to_dict()) + "\n")

        log_file = NormalizedLogFile(str(path))
        assert [e.path for e in log_file] == [e.path for e in entries]
        assert log_file.time_range is None

    def test_reads_json_list(self, tmp_path, entries):
        path = tmp_path / "entries.json"
        path.write_text(json.dumps([e.to_dict() for e in entries[:2]], indent=2))

        assert len(list(NormalizedLogFile(str(path)))) == 2

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(DataLoadError, match="not found"):
            NormalizedLogFile(str(tmp_path / "nope.json"))

    def test_invalid_document_raises(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('[{"timestamp": ')

        with pytest.raises(DataLoadError, match="Invalid JSON"):
            NormalizedLogFile(str(path))

    def test_mixed_raw_files(self, tmp_path):
        combined = tmp_path / "access.log"
        combined.write_text(COMBINED_LINE + "\n\n" + COMBINED_LINE + "\n")

        assert len(list(iter_log_files([str(combined)]))) == 2


class TestWriteNormalizedFile:

    def test_metadata_covers_time_range(self, tmp_path):
        path = tmp_path / "out.json"
        entries = [make_entry(5), make_entry(0), make_entry(2)]

        metadata = write_normalized_file(str(path), entries, provider='netlify')

        assert metadata['totalEntries'] == 3
        assert metadata['timeRange'] == {'start': '2025-09-01T12:00:00Z', 'end': '2025-09-01T12:05:00Z'}
        assert metadata['provider'] == 'netlify'
        document = json.loads(path.read_text())
        assert document['metadata'] == metadata
        assert len(document['entries']) == 3
