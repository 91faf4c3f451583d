"""Data model shared by the aggregation, classification and cost pipeline."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def ensure_datetime(value: Any) -> Optional[datetime]:
    """Return a UTC-aware datetime for a datetime, ISO string or epoch value."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds are common in exported JSON
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace('+00:00', 'Z') if value else None


@dataclass(frozen=True)
class LogEntry:
    """One observed request."""

    timestamp: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    bytes_transferred: int = 0
    referer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the normalized log field names."""
        return {
            'timestamp': iso_or_none(self.timestamp),
            'ip_address': self.ip,
            'user_agent': self.user_agent,
            'method': self.method,
            'path': self.path,
            'status_code': self.status_code,
            'bytes_transferred': self.bytes_transferred,
            'referer': self.referer,
        }


# Aggregation ---------------------------------------------------------------

@dataclass
class MinuteCounter:
    requests: int = 0
    bytes: int = 0


@dataclass
class RollupCounter:
    count: int = 0
    bytes: int = 0


@dataclass
class IPStatusTotals:
    total: int = 0
    fourxx: int = 0
    fivexx: int = 0
    not_found: int = 0


@dataclass
class AggregationTotals:
    total_bytes: int = 0
    total_requests: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass(eq=False)
class AggregationResult:
    """Compacted view of a log-entry stream.

    Equality ignores the order of ``unique_user_agents``; every other field is
    compared as a mapping.
    """

    unique_user_agents: List[str]
    by_ip_minute: Dict[str, Dict[int, MinuteCounter]]
    by_status: Dict[str, RollupCounter]
    by_path_group: Dict[str, RollupCounter]
    totals: AggregationTotals
    by_ip_status: Dict[str, IPStatusTotals] = field(default_factory=dict)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AggregationResult):
            return NotImplemented
        return (
            set(self.unique_user_agents) == set(other.unique_user_agents)
            and len(self.unique_user_agents) == len(other.unique_user_agents)
            and self.by_ip_minute == other.by_ip_minute
            and self.by_status == other.by_status
            and self.by_path_group == other.by_path_group
            and self.totals == other.totals
            and self.by_ip_status == other.by_ip_status
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the aggregates artifact format."""
        return {
            'uniqueUserAgents': list(self.unique_user_agents),
            'byIPMinute': {
                ip: {str(minute): {'requests': c.requests, 'bytes': c.bytes} for minute, c in minutes.items()}
                for ip, minutes in self.by_ip_minute.items()
            },
            'byStatus': {k: {'count': v.count, 'bytes': v.bytes} for k, v in self.by_status.items()},
            'byPathGroup': {k: {'count': v.count, 'bytes': v.bytes} for k, v in self.by_path_group.items()},
            'totals': {
                'totalBytes': self.totals.total_bytes,
                'totalRequests': self.totals.total_requests,
                'startTime': iso_or_none(self.totals.start_time),
                'endTime': iso_or_none(self.totals.end_time),
            },
            'byIPStatus': {
                ip: {'total': s.total, 'fourxx': s.fourxx, 'fivexx': s.fivexx, 'notFound404': s.not_found}
                for ip, s in self.by_ip_status.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AggregationResult':
        """Load an aggregates artifact (precomputed elsewhere or by to_dict)."""
        if not isinstance(data, dict):
            raise ValueError("Aggregates artifact must be a JSON object")

        by_ip_minute = {}
        for ip, minutes in (data.get('byIPMinute') or {}).items():
            by_ip_minute[ip] = {
                int(float(minute)): MinuteCounter(
                    requests=int(v.get('requests', 0) or 0), bytes=int(v.get('bytes', 0) or 0)
                )
                for minute, v in (minutes or {}).items()
            }

        def rollups(raw):
            return {
                k: RollupCounter(count=int(v.get('count', 0) or 0), bytes=int(v.get('bytes', 0) or 0))
                for k, v in (raw or {}).items()
            }

        by_path_group = {'static': RollupCounter(), 'dynamic': RollupCounter()}
        by_path_group.update(rollups(data.get('byPathGroup')))

        raw_totals = data.get('totals') or {}
        totals = AggregationTotals(
            total_bytes=int(raw_totals.get('totalBytes', 0) or 0),
            total_requests=int(raw_totals.get('totalRequests', 0) or 0),
            start_time=ensure_datetime(raw_totals.get('startTime')),
            end_time=ensure_datetime(raw_totals.get('endTime')),
        )

        by_ip_status = {
            ip: IPStatusTotals(
                total=int(s.get('total', 0) or 0),
                fourxx=int(s.get('fourxx', 0) or 0),
                fivexx=int(s.get('fivexx', 0) or 0),
                not_found=int(s.get('notFound404', 0) or 0),
            )
            for ip, s in (data.get('byIPStatus') or {}).items()
        }

        return cls(
            unique_user_agents=[ua for ua in dict.fromkeys(data.get('uniqueUserAgents') or []) if ua],
            by_ip_minute=by_ip_minute,
            by_status=rollups(data.get('byStatus')),
            by_path_group=by_path_group,
            totals=totals,
            by_ip_status=by_ip_status,
        )


# Classification ------------------------------------------------------------

class Provenance(str, Enum):
    """Which resolution tier produced a classification."""

    HEURISTIC = 'heuristic'
    SIGNATURE = 'signature'
    CACHE = 'cache'
    EXTERNAL = 'external'
    DEFAULT = 'default'


class Resolution(str, Enum):
    RESOLVED = 'resolved'
    UNRESOLVED = 'unresolved'
    DEFERRED = 'deferred'


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class Classification:
    """Verdict for one user-agent string."""

    is_bot: bool
    confidence: float
    bot_type: Optional[str] = None
    bot_name: Optional[str] = None
    source: Provenance = Provenance.DEFAULT
    reasoning: Optional[str] = None

    def with_source(self, source: Provenance) -> 'Classification':
        return replace(self, source=source)

    def without_reasoning(self) -> 'Classification':
        return replace(self, reasoning=None)

    def to_dict(self, include_reasoning: bool = False) -> Dict[str, Any]:
        data = {
            'is_bot': self.is_bot,
            'bot_type': self.bot_type,
            'bot_name': self.bot_name,
            'confidence': self.confidence,
            'source': self.source.value,
        }
        if include_reasoning and self.reasoning:
            data['reasoning'] = self.reasoning
        return data

    @classmethod
    def from_verdict(cls, data: Any, source: Provenance = Provenance.EXTERNAL) -> 'Classification':
        """Build from an external verdict dict (camelCase or snake_case keys).

        Raises ValueError when the verdict is malformed.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Verdict must be an object, got {type(data).__name__}")
        is_bot = data.get('isBot', data.get('is_bot'))
        if not isinstance(is_bot, bool):
            raise ValueError("Verdict is missing a boolean isBot")
        confidence = data.get('confidence')
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ValueError("Verdict is missing a numeric confidence")
        reasoning = data.get('reasoning')
        return cls(
            is_bot=is_bot,
            confidence=_clamp01(confidence),
            bot_type=data.get('botType', data.get('bot_type')) or None,
            bot_name=data.get('botName', data.get('bot_name')) or None,
            source=source,
            reasoning=str(reasoning) if reasoning else None,
        )


def resolution_of(classification: Optional[Classification], threshold: float) -> Resolution:
    """Three-state view of a base verdict, used to route UAs to disambiguation."""
    if classification is None:
        return Resolution.UNRESOLVED
    if classification.source == Provenance.DEFAULT or classification.confidence < threshold:
        return Resolution.DEFERRED
    return Resolution.RESOLVED


def merge_classifications(
    base: Dict[str, Classification], refined: Dict[str, Classification]
) -> Dict[str, Classification]:
    """Refined verdicts override base verdicts for the same UA."""
    merged = dict(base)
    merged.update(refined)
    return merged


# Anomalies -----------------------------------------------------------------

class AnomalyType(str, Enum):
    HIGH_REQUEST_RATE = 'HIGH_REQUEST_RATE'
    BURST_SPIKE = 'BURST_SPIKE'
    BYTES_HEAVY = 'BYTES_HEAVY'
    STEADY_SCRAPE = 'STEADY_SCRAPE'
    HIGH_4XX_RATE = 'HIGH_4XX_RATE'
    HIGH_5XX_RATE = 'HIGH_5XX_RATE'
    HIGH_404_RATE = 'HIGH_404_RATE'


@dataclass
class AnomalyRecord:
    type: AnomalyType
    ip: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    samples: List[Dict[str, int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {'type': self.type.value, 'ip': self.ip}
        data.update(self.evidence)
        if self.samples:
            data['samples'] = [dict(s) for s in self.samples]
        return data


# Costs ---------------------------------------------------------------------

@dataclass
class CostItem:
    category: str
    bytes: int
    monthly_bytes: int
    monthly_cost: float


@dataclass
class CostResult:
    currency: str
    total_cost: float
    items: List[CostItem]
    notes: List[str] = field(default_factory=list)
    rate_per_gb: float = 0.0
    free_allowance_bytes: int = 0

    def cost_of(self, category: str) -> float:
        return sum(item.monthly_cost for item in self.items if item.category == category)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'currency': self.currency,
            'total_cost': self.total_cost,
            'rate_per_gb': self.rate_per_gb,
            'free_allowance_bytes': self.free_allowance_bytes,
            'breakdown': [
                {
                    'category': item.category,
                    'bytes': item.bytes,
                    'monthly_bytes': item.monthly_bytes,
                    'monthly_cost': item.monthly_cost,
                }
                for item in self.items
            ],
            'notes': list(self.notes),
        }


# Orchestration -------------------------------------------------------------

class OutcomeStatus(str, Enum):
    SUCCESS = 'success'
    DEGRADED = 'degraded'
    FATAL = 'fatal'


@dataclass
class StageOutcome:
    """Result class of one pipeline stage."""

    stage: str
    status: OutcomeStatus = OutcomeStatus.SUCCESS
    note: Optional[str] = None

    @classmethod
    def success(cls, stage: str) -> 'StageOutcome':
        return cls(stage=stage)

    @classmethod
    def degraded(cls, stage: str, note: str) -> 'StageOutcome':
        return cls(stage=stage, status=OutcomeStatus.DEGRADED, note=note)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {'stage': self.stage, 'status': self.status.value, 'note': self.note}


@dataclass
class AnalysisReport:
    report_id: str
    site_id: str
    provider: str
    window_start: str
    window_end: str
    window_days: float
    org_id: Optional[str] = None
    versions: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    classifications: Dict[str, Any] = field(default_factory=dict)
    anomalies: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    stages: List[StageOutcome] = field(default_factory=list)
    created_at: str = ''

    @property
    def degraded_stages(self) -> List[StageOutcome]:
        return [s for s in self.stages if s.status != OutcomeStatus.SUCCESS]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'report_id': self.report_id,
            'org_id': self.org_id,
            'site_id': self.site_id,
            'provider': self.provider,
            'window': {'start': self.window_start, 'end': self.window_end, 'days': self.window_days},
            'versions': self.versions,
            'metrics': self.metrics,
            'classifications': self.classifications,
            'anomalies': self.anomalies,
            'notes': list(self.notes),
            'stages': [s.to_dict() for s in self.stages],
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisReport':
        window = data.get('window') or {}
        return cls(
            report_id=data['report_id'],
            site_id=data['site_id'],
            provider=data.get('provider', ''),
            window_start=window.get('start', ''),
            window_end=window.get('end', ''),
            window_days=window.get('days', 0),
            org_id=data.get('org_id'),
            versions=data.get('versions') or {},
            metrics=data.get('metrics') or {},
            classifications=data.get('classifications') or {},
            anomalies=data.get('anomalies') or [],
            notes=data.get('notes') or [],
            stages=[
                StageOutcome(stage=s['stage'], status=OutcomeStatus(s['status']), note=s.get('note'))
                for s in data.get('stages') or []
            ],
            created_at=data.get('created_at', ''),
        )
