"""Per-IP anomaly detection over minute-bucketed request series."""

import logging
import math
import statistics
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .config import ANOMALY_THRESHOLDS
from .exceptions import AnomalyToolError
from .models import AnomalyRecord, AnomalyType, IPStatusTotals, MinuteCounter

logger = logging.getLogger(__name__)

TRIM_FRACTION = 0.1
SAMPLE_COUNT = 5


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def trimmed_mean(values: List[float], trim_fraction: float = TRIM_FRACTION) -> float:
    """Mean after dropping floor(n * trim_fraction) values from each end."""
    if not values:
        return 0.0
    ordered = sorted(values)
    k = int(math.floor(len(ordered) * trim_fraction))
    trimmed = ordered[k:len(ordered) - k]
    if not trimmed:
        return statistics.mean(ordered)
    return statistics.mean(trimmed)


@dataclass
class SeriesStats:
    """Summary statistics of one per-minute request series."""

    count: int
    total: float
    mean: float
    std: float
    maximum: float
    median: float
    trimmed_mean: float
    baseline: int
    z_score: float
    burst_ratio: float

    @property
    def cv(self) -> float:
        return self.std / self.mean if self.mean > 0 else 0.0


def series_stats(values: List[float]) -> SeriesStats:
    """Compute mean, population std, z-score of the peak and burst ratio.

    std is 0 for fewer than two points, and a zero std forces the z-score to 0.
    """
    if not values:
        return SeriesStats(0, 0, 0.0, 0.0, 0, 0.0, 0.0, 1, 0.0, 0.0)
    mean = statistics.mean(values)
    std = statistics.pstdev(values) if len(values) >= 2 else 0.0
    maximum = max(values)
    median = statistics.median(values)
    trimmed = trimmed_mean(values)
    baseline = max(1, _round_half_up((median + trimmed + mean) / 3))
    return SeriesStats(
        count=len(values),
        total=sum(values),
        mean=mean,
        std=std,
        maximum=maximum,
        median=median,
        trimmed_mean=trimmed,
        baseline=baseline,
        z_score=(maximum - mean) / std if std > 0 else 0.0,
        burst_ratio=maximum / baseline,
    )


def _counter_values(counter: Any) -> MinuteCounter:
    if isinstance(counter, MinuteCounter):
        return counter
    if isinstance(counter, Mapping):
        return MinuteCounter(requests=int(counter.get('requests', 0) or 0),
                             bytes=int(counter.get('bytes', 0) or 0))
    raise AnomalyToolError(f"Unsupported minute bucket value: {counter!r}")


def _status_values(record: Any) -> IPStatusTotals:
    if isinstance(record, IPStatusTotals):
        return record
    if isinstance(record, Mapping):
        return IPStatusTotals(
            total=int(record.get('total', 0) or 0),
            fourxx=int(record.get('fourxx', 0) or 0),
            fivexx=int(record.get('fivexx', 0) or 0),
            not_found=int(record.get('notFound404', record.get('not_found', 0)) or 0),
        )
    raise AnomalyToolError(f"Unsupported status record: {record!r}")


@dataclass
class AnomalyReport:
    anomalies: List[AnomalyRecord] = field(default_factory=list)
    ips_analyzed: int = 0

    @property
    def summary(self) -> Dict[str, int]:
        return {'ips_analyzed': self.ips_analyzed, 'total_anomalies': len(self.anomalies)}

    def anomalous_ips(self) -> Dict[str, List[str]]:
        """Map each anomalous IP to its distinct anomaly types, in detection order."""
        by_ip: Dict[str, List[str]] = {}
        for record in self.anomalies:
            types = by_ip.setdefault(record.ip, [])
            if record.type.value not in types:
                types.append(record.type.value)
        return by_ip

    def to_dict(self) -> Dict[str, Any]:
        return {'summary': self.summary, 'anomalies': [a.to_dict() for a in self.anomalies]}


class AnomalyDetector:
    """Detects suspicious per-IP traffic: spikes, bursts, heavy bytes, scraping, error rates."""

    def __init__(self, ignore_ips: Optional[Iterable[str]] = None, **thresholds):
        unknown = set(thresholds) - set(ANOMALY_THRESHOLDS)
        if unknown:
            raise AnomalyToolError(f"Unknown anomaly thresholds: {', '.join(sorted(unknown))}")
        self.params = dict(ANOMALY_THRESHOLDS)
        self.params.update({k: v for k, v in thresholds.items() if v is not None})
        self.ignore_ips = set(ignore_ips or [])

    def detect(self, by_ip_minute: Mapping[str, Mapping[Any, Any]],
               ip_status: Optional[Mapping[str, Any]] = None) -> AnomalyReport:
        """Run every check over every non-ignored IP."""
        if not isinstance(by_ip_minute, Mapping):
            raise AnomalyToolError("byIPMinute must be a mapping of IP to minute buckets")

        report = AnomalyReport()
        for ip, minutes in by_ip_minute.items():
            if ip in self.ignore_ips or not minutes:
                continue
            try:
                series = sorted(
                    ((int(float(minute)), _counter_values(counter)) for minute, counter in minutes.items()),
                    key=lambda item: item[0],
                )
            except (TypeError, ValueError) as e:
                raise AnomalyToolError(f"Malformed minute series for {ip}: {e}", context={'ip': ip}) from e

            report.ips_analyzed += 1
            report.anomalies.extend(self._check_series(ip, series))

            if ip_status and ip in ip_status:
                report.anomalies.extend(self._check_status(ip, _status_values(ip_status[ip])))

        logger.debug("Anomaly detection: %d IPs analyzed, %d anomalies",
                     report.ips_analyzed, len(report.anomalies))
        return report

    def _check_series(self, ip: str, series: List[tuple]) -> List[AnomalyRecord]:
        p = self.params
        requests = [counter.requests for _, counter in series]
        total_bytes = sum(counter.bytes for _, counter in series)
        stats = series_stats(requests)
        minutes_observed = stats.count
        total_requests = int(stats.total)

        samples = [
            {'minute': minute, 'requests': counter.requests, 'bytes': counter.bytes}
            for minute, counter in sorted(series, key=lambda item: item[1].requests, reverse=True)[:SAMPLE_COUNT]
        ]
        peak_minute = samples[0]['minute']

        found = []
        if (minutes_observed >= p['min_minutes'] and stats.maximum >= p['min_max_requests']
                and stats.z_score >= p['z_score_threshold']):
            found.append(AnomalyRecord(AnomalyType.HIGH_REQUEST_RATE, ip, {
                'requests': stats.maximum,
                'z_score': round(stats.z_score, 2),
                'mean': round(stats.mean, 2),
                'std': round(stats.std, 2),
                'minutes_observed': minutes_observed,
                'sample_minute': peak_minute,
            }, samples))

        if (minutes_observed >= p['min_minutes'] and stats.maximum >= p['burst_min_requests']
                and stats.burst_ratio >= p['burst_multiplier']):
            found.append(AnomalyRecord(AnomalyType.BURST_SPIKE, ip, {
                'requests': stats.maximum,
                'baseline': stats.baseline,
                'ratio': round(stats.burst_ratio, 2),
                'minutes_observed': minutes_observed,
                'sample_minute': peak_minute,
            }, samples))

        if total_requests > 0 and total_bytes > 0:
            avg_bytes = total_bytes / total_requests
            if (avg_bytes >= p['bytes_per_request_heavy']
                    and total_requests >= max(1, p['min_total_requests'] // 2)):
                found.append(AnomalyRecord(AnomalyType.BYTES_HEAVY, ip, {
                    'avg_bytes_per_request': _round_half_up(avg_bytes),
                    'total_bytes': total_bytes,
                    'total_requests': total_requests,
                    'minutes_observed': minutes_observed,
                }, samples))

        if (minutes_observed >= max(p['min_minutes'] * 2, 6) and stats.mean >= p['steady_mean_min']
                and stats.cv <= p['steady_cv_max'] and total_requests >= p['min_total_requests']):
            found.append(AnomalyRecord(AnomalyType.STEADY_SCRAPE, ip, {
                'mean_requests_per_minute': round(stats.mean, 2),
                'coefficient_of_variation': round(stats.cv, 3),
                'minutes_observed': minutes_observed,
                'total_requests': total_requests,
            }, samples))

        return found

    def _check_status(self, ip: str, status: IPStatusTotals) -> List[AnomalyRecord]:
        p = self.params
        if not status.total or status.total < p['min_total_requests']:
            return []
        if max(status.fourxx + status.fivexx, status.not_found) > status.total:
            logger.warning("Skipping inconsistent status record for %s (counts exceed total %d)",
                           ip, status.total)
            return []

        found = []
        rate_4xx = status.fourxx / status.total
        rate_5xx = status.fivexx / status.total
        rate_404 = status.not_found / status.total
        if rate_4xx >= p['high_4xx_rate']:
            found.append(AnomalyRecord(AnomalyType.HIGH_4XX_RATE, ip, {
                'total': status.total, 'fourxx': status.fourxx, 'rate': round(rate_4xx, 3)}))
        if rate_5xx >= p['high_5xx_rate']:
            found.append(AnomalyRecord(AnomalyType.HIGH_5XX_RATE, ip, {
                'total': status.total, 'fivexx': status.fivexx, 'rate': round(rate_5xx, 3)}))
        if rate_404 >= p['high_404_rate']:
            found.append(AnomalyRecord(AnomalyType.HIGH_404_RATE, ip, {
                'total': status.total, 'not_found_404': status.not_found, 'rate': round(rate_404, 3)}))
        return found
