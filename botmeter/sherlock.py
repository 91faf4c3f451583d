"""Two-stage disambiguation of user agents the deterministic classifier could not resolve.

Stage 1 sends behavioral feature vectors to the classification backend without
tools. Stage 2 (optional) re-asks about a capped shortlist with web search and
anomaly lookup tools enabled. Failures are isolated per batch.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Set

from user_agents import parse as parse_user_agent

from .aggregators import truncate_to_minute
from .anomaly_detection import AnomalyDetector, series_stats
from .cache import ClassificationCache
from .config import SHERLOCK_SETTINGS
from .exceptions import AnomalyToolError, BotmeterError, ExternalToolError
from .llm import AnomalyLookupTool, ClassificationBackend
from .models import (
    AnomalyRecord, Classification, IPStatusTotals, LogEntry, MinuteCounter,
    Provenance, Resolution, StageOutcome, iso_or_none,
)

logger = logging.getLogger(__name__)

FAST_PASS_INSTRUCTIONS = (
    "Classify these User-Agents based ONLY on the provided behavioral features. DO NOT call any tools.\n"
    "Return JSON keyed by UA with: { isBot, botType?, botName?, confidence, reasoning, needs_web?: boolean }.\n"
    "Mark needs_web true if additional web evidence would substantially improve confidence."
)

WEB_PASS_INSTRUCTIONS = (
    "Refine classification for these User-Agents. Prefer deterministic signals; call tools only if needed.\n"
    "Return JSON keyed by UA with: { isBot, botType?, botName?, confidence, reasoning }."
)


def _clamp(value: int, bounds) -> int:
    low, high = bounds
    return min(max(value, low), high)


@lru_cache(maxsize=4096)
def describe_user_agent(user_agent: str) -> Dict[str, Any]:
    """Browser, OS and device families as parsed by the user-agents library."""
    parsed = parse_user_agent(user_agent)
    return {
        'browser': parsed.browser.family,
        'os': parsed.os.family,
        'device': parsed.device.family,
        'parserFlagsBot': parsed.is_bot,
    }


@dataclass
class UAFeatures:
    """Behavioral evidence for one user agent."""

    total_requests: int = 0
    total_bytes: int = 0
    unique_ips: int = 0
    minutes_observed: int = 0
    req_per_min_mean: float = 0.0
    req_per_min_std: float = 0.0
    req_per_min_max: int = 0
    burst_z: float = 0.0
    fourxx_rate: float = 0.0
    time_start: Optional[str] = None
    time_end: Optional[str] = None
    has_anomaly: bool = False
    anomaly_types: List[str] = field(default_factory=list)
    ips: Set[str] = field(default_factory=set)
    parsed: Dict[str, Any] = field(default_factory=dict)

    @property
    def suspicion(self) -> int:
        """0-100 weighted score of burstiness, error rate, throughput and IP diversity."""
        score = 0
        if self.burst_z >= 3:
            score += 30
        elif self.burst_z >= 2:
            score += 15
        if self.fourxx_rate >= 0.6:
            score += 40
        elif self.fourxx_rate >= 0.3:
            score += 20
        if self.req_per_min_mean >= 5:
            score += 20
        if self.req_per_min_max >= 20:
            score += 10
        if self.unique_ips >= 5:
            score += 10
        return max(0, min(100, score))

    def to_prompt(self) -> Dict[str, Any]:
        return {
            'totalRequests': self.total_requests,
            'totalBytes': self.total_bytes,
            'uniqueIPs': self.unique_ips,
            'minutesObserved': self.minutes_observed,
            'reqPerMinMean': self.req_per_min_mean,
            'reqPerMinStd': self.req_per_min_std,
            'reqPerMinMax': self.req_per_min_max,
            'burstZ': self.burst_z,
            'fourxxRate': self.fourxx_rate,
            'hasAnomaly': self.has_anomaly,
            'anomalyTypes': self.anomaly_types[:SHERLOCK_SETTINGS['max_anomaly_types']] or None,
            'timeStart': self.time_start,
            'timeEnd': self.time_end,
            'suspicion': self.suspicion,
            'uaParse': self.parsed or None,
        }


@dataclass
class FeatureSet:
    """Per-UA features plus the per-IP series restricted to the target UAs."""

    features: Dict[str, UAFeatures]
    by_ip_minute: Dict[str, Dict[int, MinuteCounter]]
    ip_status: Dict[str, IPStatusTotals]


def extract_features(entries: Iterable[LogEntry], user_agents: List[str]) -> FeatureSet:
    """Compute behavioral features from the entries whose UA is in user_agents."""
    targets = set(user_agents)
    per_ua_minutes: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))
    per_ua_fourxx: Dict[str, int] = defaultdict(int)
    per_ua_bytes: Dict[str, int] = defaultdict(int)
    per_ua_requests: Dict[str, int] = defaultdict(int)
    per_ua_ips: Dict[str, Set[str]] = defaultdict(set)
    per_ua_span: Dict[str, List[datetime]] = {}
    by_ip_minute: Dict[str, Dict[int, MinuteCounter]] = defaultdict(lambda: defaultdict(MinuteCounter))
    ip_status: Dict[str, IPStatusTotals] = defaultdict(IPStatusTotals)

    for entry in entries:
        ua = (entry.user_agent or '').strip()
        if not ua or ua not in targets:
            continue
        minute = truncate_to_minute(entry.timestamp)
        ip = entry.ip or 'unknown'
        size = entry.bytes_transferred or 0
        code = entry.status_code or 0

        per_ua_minutes[ua][minute] += 1
        per_ua_requests[ua] += 1
        per_ua_bytes[ua] += size
        per_ua_ips[ua].add(ip)
        if 400 <= code < 500:
            per_ua_fourxx[ua] += 1
        span = per_ua_span.setdefault(ua, [entry.timestamp, entry.timestamp])
        span[0] = min(span[0], entry.timestamp)
        span[1] = max(span[1], entry.timestamp)

        bucket = by_ip_minute[ip][minute]
        bucket.requests += 1
        bucket.bytes += size
        status = ip_status[ip]
        status.total += 1
        if 400 <= code < 500:
            status.fourxx += 1
        elif 500 <= code < 600:
            status.fivexx += 1
        if code == 404:
            status.not_found += 1

    features = {}
    for ua in user_agents:
        stats = series_stats(list(per_ua_minutes[ua].values()) if ua in per_ua_minutes else [])
        total = per_ua_requests.get(ua, 0)
        span = per_ua_span.get(ua)
        features[ua] = UAFeatures(
            total_requests=total,
            total_bytes=per_ua_bytes.get(ua, 0),
            unique_ips=len(per_ua_ips.get(ua, ())),
            minutes_observed=stats.count,
            req_per_min_mean=round(stats.mean, 2),
            req_per_min_std=round(stats.std, 2),
            req_per_min_max=int(stats.maximum),
            burst_z=round(stats.z_score, 2),
            fourxx_rate=round(per_ua_fourxx.get(ua, 0) / total, 2) if total else 0.0,
            time_start=iso_or_none(span[0]) if span else None,
            time_end=iso_or_none(span[1]) if span else None,
            ips=set(per_ua_ips.get(ua, ())),
            parsed=describe_user_agent(ua),
        )

    return FeatureSet(
        features=features,
        by_ip_minute={ip: dict(minutes) for ip, minutes in by_ip_minute.items()},
        ip_status=dict(ip_status),
    )


def attach_anomalies(features: Dict[str, UAFeatures], anomalies: Iterable[AnomalyRecord]) -> int:
    """Flag UAs whose IPs overlap anomalous IPs. Returns the number of flagged UAs."""
    types_by_ip: Dict[str, List[str]] = {}
    for record in anomalies:
        types = types_by_ip.setdefault(record.ip, [])
        if record.type.value not in types:
            types.append(record.type.value)

    flagged = 0
    for feature in features.values():
        matched: List[str] = []
        for ip in sorted(feature.ips & set(types_by_ip)):
            for anomaly_type in types_by_ip[ip]:
                if anomaly_type not in matched:
                    matched.append(anomaly_type)
        if matched:
            feature.has_anomaly = True
            feature.anomaly_types = matched
            flagged += 1
    return flagged


@dataclass
class SherlockResult:
    """Final verdicts and per-UA resolution state of one disambiguation run."""

    verdicts: Dict[str, Classification] = field(default_factory=dict)
    states: Dict[str, Resolution] = field(default_factory=dict)
    features: Dict[str, UAFeatures] = field(default_factory=dict)
    web_candidates: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    outcomes: List[StageOutcome] = field(default_factory=list)

    @property
    def unresolved(self) -> List[str]:
        return [ua for ua, state in self.states.items() if state == Resolution.UNRESOLVED]

    @property
    def deferred(self) -> List[str]:
        return [ua for ua, state in self.states.items() if state == Resolution.DEFERRED]


class Sherlock:
    """Disambiguation stage for unknown or low-confidence user agents."""

    def __init__(self, backend: ClassificationBackend, cache: Optional[ClassificationCache] = None,
                 detector: Optional[AnomalyDetector] = None, use_web_search: bool = False,
                 max_batch: Optional[int] = None, web_batch: Optional[int] = None,
                 max_web: Optional[int] = None):
        self.backend = backend
        self.cache = cache
        self.detector = detector or AnomalyDetector()
        self.use_web_search = use_web_search
        self.fast_batch_size = _clamp(max_batch or SHERLOCK_SETTINGS['fast_batch_size'],
                                      SHERLOCK_SETTINGS['fast_batch_bounds'])
        self.web_batch_size = _clamp(web_batch or SHERLOCK_SETTINGS['web_batch_size'],
                                     SHERLOCK_SETTINGS['web_batch_bounds'])
        self.max_web = max_web if max_web is not None else SHERLOCK_SETTINGS['max_web_candidates']

    def run(self, user_agents: Iterable[str], entries: Iterable[LogEntry],
            anomalies: Optional[List[AnomalyRecord]] = None) -> SherlockResult:
        """Resolve user_agents using behavioral evidence from entries.

        anomalies, when given, are the run's precomputed anomaly records;
        otherwise the detector runs over the target-UA-restricted series.
        """
        targets = list(dict.fromkeys(ua.strip() for ua in user_agents if ua and ua.strip()))
        result = SherlockResult(states={ua: Resolution.UNRESOLVED for ua in targets})
        if not targets:
            return result

        feature_set = extract_features(entries, targets)
        result.features = feature_set.features

        if anomalies is None:
            try:
                anomalies = self.detector.detect(feature_set.by_ip_minute, feature_set.ip_status).anomalies
                result.outcomes.append(StageOutcome.success('sherlock_anomalies'))
            except AnomalyToolError as e:
                logger.warning("Sherlock anomaly pre-scan failed: %s", e)
                result.notes.append(f"Sherlock anomaly pre-scan failed: {e}")
                result.outcomes.append(StageOutcome.degraded('sherlock_anomalies', str(e)))
                anomalies = []
        flagged = attach_anomalies(result.features, anomalies)
        logger.debug("Sherlock anomaly cross-reference: %d anomalies, %d UAs flagged", len(anomalies), flagged)

        # Stage 1: fast pass without tools
        first_pass, needs_web = self._fast_pass(targets, result)

        # Stage 2: web-enabled refinement of a capped shortlist
        result.web_candidates = self.select_for_web(first_pass, needs_web, result.features)
        refined: Dict[str, Classification] = {}
        if result.web_candidates and self.use_web_search:
            refined = self._web_pass(result.web_candidates, result, anomalies)
        logger.debug("Sherlock shortlist for web: %d/%d (web search %s)",
                     len(result.web_candidates), len(targets), 'on' if self.use_web_search else 'off')

        for ua in targets:
            verdict = refined.get(ua) or first_pass.get(ua)
            if verdict is None:
                continue
            result.verdicts[ua] = verdict
            # Asked for web evidence that never arrived: keep the first-pass verdict as provisional
            if ua in needs_web and ua not in refined:
                result.states[ua] = Resolution.DEFERRED
            else:
                result.states[ua] = Resolution.RESOLVED

        if self.cache is not None and result.verdicts:
            try:
                self.cache.upsert_many({ua: v.without_reasoning() for ua, v in result.verdicts.items()})
            except BotmeterError as e:
                logger.warning("Sherlock cache write failed: %s", e)
                result.notes.append(f"Sherlock cache write failed: {e}")
        return result

    def _items(self, batch: List[str], features: Dict[str, UAFeatures]) -> List[Dict[str, Any]]:
        return [{'ua': ua, 'features': features[ua].to_prompt()} for ua in batch]

    def _parse_batch(self, batch: List[str], response: Dict[str, Any]) -> Dict[str, Classification]:
        if not isinstance(response, dict):
            raise ExternalToolError("Classification backend did not return a JSON object",
                                    context={'response': str(response)[:500]})
        parsed = {}
        for ua in batch:
            raw = response.get(ua)
            if raw is None:
                continue
            try:
                parsed[ua] = Classification.from_verdict(raw, source=Provenance.EXTERNAL)
            except ValueError as e:
                logger.debug("Discarding malformed verdict for %r: %s", ua, e)
        return parsed

    def _fast_pass(self, targets: List[str], result: SherlockResult):
        verdicts: Dict[str, Classification] = {}
        needs_web: Set[str] = set()
        failed = 0
        for i in range(0, len(targets), self.fast_batch_size):
            batch = targets[i:i + self.fast_batch_size]
            logger.debug("Sherlock fast pass: %d/%d size=%d", i, len(targets), len(batch))
            try:
                response = self.backend.classify_batch(
                    self._items(batch, result.features), allow_tools=False, instructions=FAST_PASS_INSTRUCTIONS)
                batch_verdicts = self._parse_batch(batch, response)
            except ExternalToolError as e:
                failed += 1
                logger.warning("Sherlock fast pass batch failed: %s", e)
                result.notes.append(f"Sherlock fast pass failed for {len(batch)} user agents: {e}")
                continue
            verdicts.update(batch_verdicts)
            for ua in batch_verdicts:
                raw = response.get(ua)
                if isinstance(raw, dict) and raw.get('needs_web') is True:
                    needs_web.add(ua)

        if failed:
            result.outcomes.append(StageOutcome.degraded('sherlock_fast', f"{failed} batch(es) failed"))
        else:
            result.outcomes.append(StageOutcome.success('sherlock_fast'))
        return verdicts, needs_web

    def select_for_web(self, first_pass: Dict[str, Classification], needs_web: Set[str],
                       features: Dict[str, UAFeatures]) -> List[str]:
        """UAs that asked for web evidence, are below the confidence bar, or overlap an anomaly."""
        threshold = SHERLOCK_SETTINGS['web_confidence_threshold']
        selected = [
            ua for ua, verdict in first_pass.items()
            if ua in needs_web or verdict.confidence < threshold
            or (ua in features and features[ua].has_anomaly)
        ]
        return selected[:self.max_web]

    def _web_pass(self, candidates: List[str], result: SherlockResult,
                  anomalies: List[AnomalyRecord]) -> Dict[str, Classification]:
        lookup = AnomalyLookupTool(anomalies)
        refined: Dict[str, Classification] = {}
        failed = 0
        for i in range(0, len(candidates), self.web_batch_size):
            batch = candidates[i:i + self.web_batch_size]
            logger.debug("Sherlock web pass: %d/%d size=%d", i, len(candidates), len(batch))
            try:
                response = self.backend.classify_batch(
                    self._items(batch, result.features), allow_tools=True,
                    instructions=WEB_PASS_INSTRUCTIONS, extra_tools=[lookup])
                refined.update(self._parse_batch(batch, response))
            except ExternalToolError as e:
                failed += 1
                logger.warning("Sherlock web pass batch failed: %s", e)
                result.notes.append(f"Sherlock web refinement failed for {len(batch)} user agents: {e}")

        if failed:
            result.outcomes.append(StageOutcome.degraded('sherlock_web', f"{failed} batch(es) failed"))
        else:
            result.outcomes.append(StageOutcome.success('sherlock_web'))
        return refined
