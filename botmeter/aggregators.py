"""Data aggregation module: per-IP minute series, status and path rollups."""

from collections import defaultdict
from datetime import datetime
from typing import AsyncIterable, Dict, Iterable, Optional

from .config import STATIC_EXTENSIONS, STATIC_PATHS
from .models import (
    AggregationResult, AggregationTotals, Classification, IPStatusTotals,
    LogEntry, MinuteCounter, RollupCounter,
)

MINUTE_MS = 60_000


def truncate_to_minute(timestamp: datetime) -> int:
    """Return the minute bucket key (epoch milliseconds floored to 60 s)."""
    epoch_ms = int(timestamp.timestamp() * 1000)
    return epoch_ms - (epoch_ms % MINUTE_MS)


def path_to_group(path: Optional[str]) -> str:
    """Classify a request path as 'static' or 'dynamic'."""
    if not path:
        return 'dynamic'
    clean = path.split('?', 1)[0].split('#', 1)[0]
    if clean in STATIC_PATHS:
        return 'static'
    last_segment = clean.rsplit('/', 1)[-1]
    dot = last_segment.rfind('.')
    if 0 < dot < len(last_segment) - 1:
        if last_segment[dot + 1:].lower() in STATIC_EXTENSIONS:
            return 'static'
    return 'dynamic'


def status_class(status_code: Optional[int]) -> str:
    """Return the status class key, e.g. '2xx'; '0xx' when unknown."""
    if not status_code:
        return '0xx'
    return f"{str(status_code)[0]}xx"


class Aggregator:
    """Accumulates log entries one at a time into an AggregationResult."""

    def __init__(self):
        self.user_agents: Dict[str, None] = {}
        self.by_ip_minute: Dict[str, Dict[int, MinuteCounter]] = defaultdict(lambda: defaultdict(MinuteCounter))
        self.by_status: Dict[str, RollupCounter] = defaultdict(RollupCounter)
        self.by_path_group: Dict[str, RollupCounter] = {'static': RollupCounter(), 'dynamic': RollupCounter()}
        self.by_ip_status: Dict[str, IPStatusTotals] = defaultdict(IPStatusTotals)
        self.totals = AggregationTotals()

    def add_entry(self, entry: LogEntry) -> None:
        """Add a log entry to every rollup."""
        ip = entry.ip or 'unknown'
        size = entry.bytes_transferred or 0

        ua = (entry.user_agent or '').strip()
        if ua:
            self.user_agents.setdefault(ua, None)

        bucket = self.by_ip_minute[ip][truncate_to_minute(entry.timestamp)]
        bucket.requests += 1
        bucket.bytes += size

        status = self.by_status[status_class(entry.status_code)]
        status.count += 1
        status.bytes += size

        group = self.by_path_group[path_to_group(entry.path)]
        group.count += 1
        group.bytes += size

        ip_status = self.by_ip_status[ip]
        ip_status.total += 1
        code = entry.status_code or 0
        if 400 <= code < 500:
            ip_status.fourxx += 1
        elif 500 <= code < 600:
            ip_status.fivexx += 1
        if code == 404:
            ip_status.not_found += 1

        self.totals.total_requests += 1
        self.totals.total_bytes += size
        if self.totals.start_time is None or entry.timestamp < self.totals.start_time:
            self.totals.start_time = entry.timestamp
        if self.totals.end_time is None or entry.timestamp > self.totals.end_time:
            self.totals.end_time = entry.timestamp

    def result(self) -> AggregationResult:
        return AggregationResult(
            unique_user_agents=list(self.user_agents),
            by_ip_minute={ip: dict(minutes) for ip, minutes in self.by_ip_minute.items()},
            by_status=dict(self.by_status),
            by_path_group={k: RollupCounter(v.count, v.bytes) for k, v in self.by_path_group.items()},
            totals=AggregationTotals(
                total_bytes=self.totals.total_bytes,
                total_requests=self.totals.total_requests,
                start_time=self.totals.start_time,
                end_time=self.totals.end_time,
            ),
            by_ip_status=dict(self.by_ip_status),
        )


def aggregate_entries(entries: Iterable[LogEntry]) -> AggregationResult:
    """Aggregate an entry stream in a single pass."""
    aggregator = Aggregator()
    for entry in entries:
        aggregator.add_entry(entry)
    return aggregator.result()


async def aggregate_entries_async(entries: AsyncIterable[LogEntry]) -> AggregationResult:
    """Aggregate an async entry stream without buffering the entries."""
    aggregator = Aggregator()
    async for entry in entries:
        aggregator.add_entry(entry)
    return aggregator.result()


class ByteBreakdownAggregator:
    """Second pass over raw entries: bytes by audience, content and status class.

    Entries whose user agent has no verdict, or a human verdict, count as human.
    """

    def __init__(self, classifications: Dict[str, Classification]):
        self.classifications = classifications
        self.total_bytes = 0
        self.audience = {'bot': 0, 'human': 0}
        self.content = {'static': 0, 'dynamic': 0}
        self.status: Dict[str, int] = defaultdict(int)

    def add_entry(self, entry: LogEntry) -> None:
        size = entry.bytes_transferred or 0
        self.total_bytes += size

        verdict = self.classifications.get((entry.user_agent or '').strip())
        self.audience['bot' if verdict is not None and verdict.is_bot else 'human'] += size
        self.content[path_to_group(entry.path)] += size
        self.status[status_class(entry.status_code)] += size

    def add_entries(self, entries: Iterable[LogEntry]) -> 'ByteBreakdownAggregator':
        for entry in entries:
            self.add_entry(entry)
        return self

    def status_bytes(self) -> Dict[str, int]:
        return dict(sorted(self.status.items()))
