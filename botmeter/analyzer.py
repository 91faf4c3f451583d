"""End-to-end analysis: load, aggregate, classify, disambiguate, detect, cost, persist."""

import hashlib
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from .aggregators import ByteBreakdownAggregator, aggregate_entries
from .anomaly_detection import AnomalyDetector
from .bots import UAClassifier
from .cache import ClassificationCache
from .config import ANALYZER_SETTINGS, SHERLOCK_SETTINGS
from .exceptions import (
    AnomalyToolError, BotmeterError, CostComputeError, DataLoadError, PersistenceError,
)
from .llm import BulkLLMClassifier, ChatCompletionsBackend, ClassificationBackend, ExaWebSearch
from .log_reader import NormalizedLogFile
from .models import (
    AggregationResult, AnalysisReport, AnomalyRecord, Classification, CostResult, LogEntry,
    Provenance, Resolution, StageOutcome, ensure_datetime, iso_or_none, merge_classifications,
    resolution_of,
)
from .pricing import CostInput, PricingOptions, compute_bandwidth_costs, load_price_table
from .sherlock import Sherlock
from .storage import EntryStore, ReportStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass
class DataRef:
    """Where the analysis input comes from, tried in this order."""

    aggregates_path: Optional[str] = None
    db_window: bool = False
    normalized_path: Optional[str] = None
    unique_user_agents: Optional[List[str]] = None


@dataclass
class AnalyzeOptions:
    use_sherlock: bool = True
    use_web_search: bool = False
    use_bulk: bool = False
    window_days: Optional[float] = None
    price_table_path: Optional[str] = None
    pricing: PricingOptions = field(default_factory=PricingOptions)
    sherlock_batch: Optional[int] = None
    max_web: Optional[int] = None


@dataclass
class AnalyzeRequest:
    site_id: str
    provider: str
    window_start: str
    window_end: str
    org_id: Optional[str] = None
    data_ref: DataRef = field(default_factory=DataRef)
    options: AnalyzeOptions = field(default_factory=AnalyzeOptions)


def make_report_id(site_id: str, provider: str, window_start: str, window_end: str,
                   pricing_version: str) -> str:
    """Stable id: re-running the same analysis yields the same id."""
    key = '|'.join([site_id, provider, window_start, window_end, pricing_version])
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:32]


def days_between(start: Any, end: Any) -> Optional[int]:
    start_dt, end_dt = ensure_datetime(start), ensure_datetime(end)
    if start_dt is None or end_dt is None or end_dt <= start_dt:
        return None
    return max(1, math.ceil((end_dt - start_dt).total_seconds() / SECONDS_PER_DAY))


def resolve_window_days(explicit: Optional[float], request: AnalyzeRequest,
                        metadata_range: Optional[Dict[str, Any]] = None) -> float:
    """Explicit value, then the request window, then input metadata, then the default."""
    if explicit and explicit > 0:
        return explicit
    days = days_between(request.window_start, request.window_end)
    if days is None and metadata_range:
        days = days_between(metadata_range.get('start'), metadata_range.get('end'))
    return days or ANALYZER_SETTINGS['default_window_days']


def summarize_classifications(user_agents: List[str], merged: Dict[str, Classification],
                              refined: Dict[str, Classification]) -> Dict[str, Any]:
    bots = sum(1 for ua in user_agents if ua in merged and merged[ua].is_bot)
    unknown = sum(1 for ua in user_agents if ua not in merged or merged[ua].source == Provenance.DEFAULT)
    by_source: Dict[str, int] = {}
    for ua in user_agents:
        if ua in merged:
            source = merged[ua].source.value
            by_source[source] = by_source.get(source, 0) + 1
    examples = [
        dict(user_agent=ua, **merged[ua].to_dict(include_reasoning=True))
        for ua in user_agents[:ANALYZER_SETTINGS['example_classifications']] if ua in merged
    ]
    return {
        'sample_size': len(user_agents),
        'bots': bots,
        'humans': len(user_agents) - bots,
        'unknown': unknown,
        'refined': len(refined),
        'by_source': by_source,
        'examples': examples,
    }


class Analyzer:
    """Runs one analysis per request with injected cache, stores and backend.

    Every stage after input loading is isolated: a failure adds a note and a
    degraded StageOutcome and the run continues. Only DataLoadError propagates.
    """

    def __init__(self, cache: Optional[ClassificationCache] = None,
                 report_store: Optional[ReportStore] = None,
                 entry_store: Optional[EntryStore] = None,
                 backend: Optional[ClassificationBackend] = None,
                 detector: Optional[AnomalyDetector] = None,
                 signatures_path: Optional[str] = None):
        self.cache = cache
        self.report_store = report_store
        self.entry_store = entry_store
        self.backend = backend
        self.detector = detector or AnomalyDetector()
        self.signatures_path = signatures_path

    def _backend_for(self, options: AnalyzeOptions) -> ClassificationBackend:
        if self.backend is not None:
            return self.backend
        tools = [ExaWebSearch()] if options.use_web_search else []
        return ChatCompletionsBackend(tools=[t for t in tools if t.is_configured()])

    # Input ----------------------------------------------------------------

    def _load_aggregates(self, path: str, notes: List[str]) -> Optional[AggregationResult]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return AggregationResult.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Aggregates file %s unusable: %s", path, e)
            notes.append(f"Aggregates file {path} unusable, falling back: {e}")
            return None

    def _entry_source(self, request: AnalyzeRequest, notes: List[str]):
        """Return (callable yielding entries, metadata time range) or (None, None)."""
        ref = request.data_ref
        if ref.db_window and self.entry_store is not None:
            start = ensure_datetime(request.window_start)
            end = ensure_datetime(request.window_end)
            if start is None or end is None:
                notes.append("Entry store query skipped: request window is not a valid time range")
            else:
                try:
                    found = self.entry_store.count(request.site_id, start, end)
                except DataLoadError as e:
                    logger.warning("Entry store unavailable: %s", e)
                    notes.append(f"Entry store unavailable: {e}")
                    found = 0
                if found:
                    logger.debug("Using %d stored entries for %s", found, request.site_id)
                    return (lambda: self.entry_store.query_window(request.site_id, start, end)), None

        if ref.normalized_path:
            try:
                log_file = NormalizedLogFile(ref.normalized_path)
            except DataLoadError as e:
                logger.warning("%s", e)
                notes.append(f"Normalized log unusable: {e}")
            else:
                return log_file.iter_entries, log_file.time_range
        return None, None

    # Stages ---------------------------------------------------------------

    def _classify(self, user_agents: List[str], options: AnalyzeOptions, backend: ClassificationBackend,
                  notes: List[str], stages: List[StageOutcome]):
        classifier = UAClassifier(
            cache=self.cache,
            signatures_path=self.signatures_path,
            bulk_classifier=BulkLLMClassifier(backend) if options.use_bulk and backend.is_configured() else None,
            use_bulk=options.use_bulk,
        )
        try:
            run = classifier.classify(user_agents)
        except BotmeterError as e:
            logger.warning("Classification failed: %s", e)
            notes.append(f"Classification failed, all user agents left unresolved: {e}")
            stages.append(StageOutcome.degraded('classification', str(e)))
            return {}, classifier.signatures_version
        notes.extend(run.notes)
        stages.append(run.outcome)
        return run.classifications, classifier.signatures_version

    def _disambiguate(self, deferred: List[str], entries: Optional[Callable[[], Iterator[LogEntry]]],
                      anomalies: List[AnomalyRecord], options: AnalyzeOptions,
                      backend: ClassificationBackend, notes: List[str],
                      stages: List[StageOutcome]) -> Dict[str, Classification]:
        if not options.use_sherlock or not deferred:
            return {}
        if not backend.is_configured():
            notes.append(f"Sherlock skipped for {len(deferred)} user agents: no classification backend configured")
            stages.append(StageOutcome.degraded('sherlock', 'backend not configured'))
            return {}
        if entries is None:
            notes.append(f"Sherlock skipped for {len(deferred)} user agents: raw entries unavailable")
            stages.append(StageOutcome.degraded('sherlock', 'raw entries unavailable'))
            return {}

        sherlock = Sherlock(backend, cache=self.cache, detector=self.detector,
                            use_web_search=options.use_web_search, max_batch=options.sherlock_batch,
                            max_web=options.max_web)
        try:
            result = sherlock.run(deferred, entries(), anomalies=anomalies)
        except BotmeterError as e:
            logger.warning("Sherlock failed: %s", e)
            notes.append(f"Sherlock failed, base classifications kept: {e}")
            stages.append(StageOutcome.degraded('sherlock', str(e)))
            return {}
        notes.extend(result.notes)
        stages.extend(result.outcomes)
        logger.info("Sherlock resolved %d of %d deferred user agents", len(result.verdicts), len(deferred))
        return result.verdicts

    def _detect_anomalies(self, aggregation: AggregationResult, notes: List[str],
                          stages: List[StageOutcome]) -> List[AnomalyRecord]:
        try:
            report = self.detector.detect(aggregation.by_ip_minute, aggregation.by_ip_status)
        except AnomalyToolError as e:
            logger.warning("Anomaly detection failed: %s", e)
            notes.append(f"Anomaly detection failed: {e}")
            stages.append(StageOutcome.degraded('anomalies', str(e)))
            return []
        stages.append(StageOutcome.success('anomalies'))
        return report.anomalies

    def _breakdown(self, aggregation: AggregationResult, merged: Dict[str, Classification],
                   entries: Optional[Callable[[], Iterator[LogEntry]]], notes: List[str],
                   stages: List[StageOutcome]) -> Dict[str, Optional[Dict[str, int]]]:
        if entries is not None:
            try:
                breakdown = ByteBreakdownAggregator(merged).add_entries(entries())
            except DataLoadError as e:
                logger.warning("Byte breakdown pass failed: %s", e)
                notes.append(f"Byte breakdown pass failed, using aggregates: {e}")
                stages.append(StageOutcome.degraded('breakdown', str(e)))
            else:
                stages.append(StageOutcome.success('breakdown'))
                return {
                    'audience': dict(breakdown.audience),
                    'content': dict(breakdown.content),
                    'status': breakdown.status_bytes(),
                }
        else:
            notes.append("Bot/human byte split unavailable: only aggregates were provided")
            stages.append(StageOutcome.degraded('breakdown', 'raw entries unavailable'))

        return {
            'audience': None,
            'content': {k: v.bytes for k, v in aggregation.by_path_group.items()},
            'status': {k: v.bytes for k, v in sorted(aggregation.by_status.items())},
        }

    def _costs(self, request: AnalyzeRequest, breakdown: Dict[str, Optional[Dict[str, int]]],
               window_days: float, notes: List[str], stages: List[StageOutcome]):
        """Return (costs per dimension, price table version)."""
        options = request.options
        try:
            table = load_price_table(options.price_table_path)
        except CostComputeError as e:
            logger.warning("%s", e)
            notes.append(f"Cost calculation skipped: {e}")
            stages.append(StageOutcome.degraded('cost', str(e)))
            return {}, 'unknown'

        version = str(table.get('version') or 'unknown')
        costs: Dict[str, CostResult] = {}
        try:
            for dimension, buckets in breakdown.items():
                if buckets is None:
                    continue
                costs[dimension] = compute_bandwidth_costs(
                    CostInput(provider=request.provider, breakdown=list(buckets.items()),
                              window_days=window_days, options=options.pricing),
                    table,
                )
        except CostComputeError as e:
            logger.warning("Cost calculation failed: %s", e)
            notes.append(f"Cost calculation failed: {e}")
            stages.append(StageOutcome.degraded('cost', str(e)))
            return costs, version

        headline = costs.get('audience') or costs.get('content')
        if headline is not None:
            for note in headline.notes:
                if note not in notes:
                    notes.append(note)
        stages.append(StageOutcome.success('cost'))
        return costs, version

    # Entry point ----------------------------------------------------------

    def analyze(self, request: AnalyzeRequest) -> AnalysisReport:
        """Produce one AnalysisReport. Raises DataLoadError when no input is usable."""
        notes: List[str] = []
        stages: List[StageOutcome] = []
        options = request.options
        ref = request.data_ref

        aggregation = self._load_aggregates(ref.aggregates_path, notes) if ref.aggregates_path else None
        entries, metadata_range = self._entry_source(request, notes)
        if aggregation is None:
            if entries is None:
                raise DataLoadError("No usable input: provide an aggregates file, stored entries "
                                    "for the window, or a normalized log file",
                                    context={'site_id': request.site_id})
            aggregation = aggregate_entries(entries())
        stages.append(StageOutcome.success('input'))
        if metadata_range is None and aggregation.totals.start_time and aggregation.totals.end_time:
            metadata_range = {'start': aggregation.totals.start_time, 'end': aggregation.totals.end_time}
        logger.info("Analyzing %s: %d requests, %d user agents", request.site_id,
                    aggregation.totals.total_requests, len(aggregation.unique_user_agents))

        user_agents = list(dict.fromkeys(ua for ua in (ref.unique_user_agents or aggregation.unique_user_agents)
                                         if ua and ua.strip()))
        backend = self._backend_for(options)
        base, signatures_version = self._classify(user_agents, options, backend, notes, stages)

        anomalies = self._detect_anomalies(aggregation, notes, stages)

        threshold = SHERLOCK_SETTINGS['defer_threshold']
        deferred = [ua for ua in user_agents if resolution_of(base.get(ua), threshold) != Resolution.RESOLVED]
        refined = self._disambiguate(deferred, entries, anomalies, options, backend, notes, stages)
        merged = merge_classifications(base, refined)

        breakdown = self._breakdown(aggregation, merged, entries, notes, stages)
        window_days = resolve_window_days(options.window_days, request, metadata_range)
        costs, pricing_version = self._costs(request, breakdown, window_days, notes, stages)
        headline = costs.get('audience') or costs.get('content')

        report = AnalysisReport(
            report_id=make_report_id(request.site_id, request.provider, request.window_start,
                                     request.window_end, pricing_version),
            site_id=request.site_id,
            org_id=request.org_id,
            provider=request.provider,
            window_start=request.window_start,
            window_end=request.window_end,
            window_days=window_days,
            versions={
                'signatures': signatures_version,
                'pricing': pricing_version,
                'sherlock': ANALYZER_SETTINGS['sherlock_version'],
                'tools': dict(ANALYZER_SETTINGS['tool_versions']),
            },
            metrics={
                'total_requests': aggregation.totals.total_requests,
                'total_bytes': aggregation.totals.total_bytes,
                'time_range': {
                    'start': iso_or_none(aggregation.totals.start_time),
                    'end': iso_or_none(aggregation.totals.end_time),
                },
                'bytes': breakdown,
                'cost': headline.to_dict() if headline else None,
                'costs': {dimension: cost.to_dict() for dimension, cost in costs.items()},
                'deferred': len(deferred),
                'anomalous_ips': len({a.ip for a in anomalies}),
            },
            classifications=summarize_classifications(user_agents, merged, refined),
            anomalies=[a.to_dict() for a in anomalies[:ANALYZER_SETTINGS['max_anomalies_in_report']]],
            notes=notes,
            stages=stages,
            created_at=iso_or_none(datetime.now(timezone.utc)),
        )

        if self.report_store is not None:
            try:
                self.report_store.upsert(report)
                stages.append(StageOutcome.success('persist'))
            except PersistenceError as e:
                logger.warning("Report not persisted: %s", e)
                notes.append(f"Report not persisted: {e}")
                stages.append(StageOutcome.degraded('persist', str(e)))

        if report.degraded_stages:
            logger.warning("Analysis %s finished with %d degraded stage(s)",
                           report.report_id, len(report.degraded_stages))
        return report


def analyze(request: AnalyzeRequest, **collaborators) -> AnalysisReport:
    """Convenience wrapper: ``Analyzer(**collaborators).analyze(request)``."""
    return Analyzer(**collaborators).analyze(request)
