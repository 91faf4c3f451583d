import asyncio
from datetime import datetime, timezone

import pytest

from botmeter.aggregators import (
    ByteBreakdownAggregator, aggregate_entries, aggregate_entries_async, path_to_group,
    status_class, truncate_to_minute,
)
from botmeter.models import AggregationResult, Classification, MinuteCounter, Provenance

from conftest import BASE_TIME, CHROME_UA, GPTBOT_UA, MYSTERY_UA, make_entry


class TestHelpers:

    @pytest.mark.parametrize("path,group", [
        ("/static/app.JS", "static"),
        ("/img/logo.png?v=3", "static"),
        ("/robots.txt", "static"),
        ("/favicon.ico", "static"),
        ("/fonts/inter.woff2#x", "static"),
        ("/", "dynamic"),
        ("/api/orders", "dynamic"),
        ("/.env", "dynamic"),
        ("/archive.", "dynamic"),
        ("/download.exe", "dynamic"),
        (None, "dynamic"),
    ])
    def test_path_to_group(self, path, group):
        assert path_to_group(path) == group

    def test_status_class(self):
        assert status_class(204) == "2xx"
        assert status_class(404) == "4xx"
        assert status_class(None) == "0xx"

    def test_truncate_to_minute(self):
        ts = datetime(2025, 9, 1, 12, 0, 59, 999000, tzinfo=timezone.utc)
        assert truncate_to_minute(ts) == int(BASE_TIME.timestamp() * 1000)


class TestAggregator:

    def test_rollups_sum_to_total_entries(self, entries):
        result = aggregate_entries(entries)

        assert result.totals.total_requests == len(entries)
        assert sum(c.count for c in result.by_status.values()) == len(entries)
        assert sum(c.count for c in result.by_path_group.values()) == len(entries)
        assert result.totals.total_bytes == sum(e.bytes_transferred for e in entries)

    def test_unique_user_agents_skip_blank_and_duplicates(self, entries):
        result = aggregate_entries(entries + [make_entry(3, ua="   ")])

        assert sorted(result.unique_user_agents) == sorted([CHROME_UA, GPTBOT_UA, MYSTERY_UA])

    def test_missing_ip_is_unknown(self, entries):
        result = aggregate_entries(entries)

        assert "unknown" in result.by_ip_minute
        assert result.by_status["5xx"].count == 1

    def test_minute_buckets(self):
        result = aggregate_entries([make_entry(0, 5, size=10), make_entry(0, 50, size=20), make_entry(1, size=5)])

        minutes = result.by_ip_minute["1.2.3.4"]
        first = truncate_to_minute(BASE_TIME)
        assert minutes[first] == MinuteCounter(requests=2, bytes=30)
        assert minutes[first + 60_000] == MinuteCounter(requests=1, bytes=5)

    def test_ip_status_totals(self, entries):
        result = aggregate_entries(entries)

        gptbot_ip = result.by_ip_status["20.0.0.1"]
        assert (gptbot_ip.total, gptbot_ip.fourxx, gptbot_ip.fivexx, gptbot_ip.not_found) == (2, 1, 0, 1)

    def test_time_range(self, entries):
        result = aggregate_entries(reversed(entries))

        assert result.totals.start_time == BASE_TIME
        assert result.totals.end_time == entries[-1].timestamp

    def test_reaggregation_is_equal(self, entries):
        assert aggregate_entries(entries) == aggregate_entries(list(reversed(entries)))

    def test_async_matches_sync(self, entries):
        async def stream():
            for entry in entries:
                yield entry

        assert asyncio.run(aggregate_entries_async(stream())) == aggregate_entries(entries)

    def test_artifact_round_trip(self, entries):
        result = aggregate_entries(entries)
        assert AggregationResult.from_dict(result.to_dict()) == result

    def test_artifact_requires_object(self):
        with pytest.raises(ValueError):
            AggregationResult.from_dict(["not", "an", "object"])


class TestByteBreakdown:

    def test_audience_content_and_status(self, entries):
        classifications = {
            GPTBOT_UA: Classification(is_bot=True, confidence=0.99, bot_type='ai_training',
                                      source=Provenance.SIGNATURE),
            CHROME_UA: Classification(is_bot=False, confidence=0.4),
        }
        breakdown = ByteBreakdownAggregator(classifications).add_entries(entries)

        assert breakdown.audience == {'bot': 12300, 'human': 73000}
        assert breakdown.content == {'static': 60300, 'dynamic': 25000}
        assert breakdown.status_bytes() == {'2xx': 85000, '4xx': 300, '5xx': 0}
        assert breakdown.total_bytes == sum(breakdown.audience.values())
