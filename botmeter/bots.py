"""User-agent classification: cache, heuristics, signatures, external fallback."""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern

from .cache import ClassificationCache
from .config import CLASSIFIER_SETTINGS
from .exceptions import BotmeterError, ClassificationError, ExternalToolError
from .models import Classification, Provenance, StageOutcome

logger = logging.getLogger(__name__)

# Well-known crawler and tool tokens (lowercase substrings), checked in order.
# The bare substring "bot" is not a token; generic matches come from the
# signature source.
QUICK_BOT_TOKENS = {
    'googlebot': {'type': 'search_engine', 'name': 'Googlebot'},
    'bingbot': {'type': 'search_engine', 'name': 'Bingbot'},
    'duckduckbot': {'type': 'search_engine', 'name': 'DuckDuckBot'},
    'baiduspider': {'type': 'search_engine', 'name': 'Baiduspider'},
    'yandex': {'type': 'search_engine', 'name': 'YandexBot'},
    'slurp': {'type': 'search_engine', 'name': 'Yahoo Slurp'},
    'ahrefs': {'type': 'seo', 'name': 'AhrefsBot'},
    'semrush': {'type': 'seo', 'name': 'SemrushBot'},
    'mj12bot': {'type': 'seo', 'name': 'MJ12bot'},
    'dotbot': {'type': 'seo', 'name': 'DotBot'},
    'screaming frog': {'type': 'seo', 'name': 'Screaming Frog'},
    'facebookexternalhit': {'type': 'social_media', 'name': 'facebookexternalhit'},
    'twitterbot': {'type': 'social_media', 'name': 'Twitterbot'},
    'whatsapp': {'type': 'social_media', 'name': 'WhatsApp'},
    'telegrambot': {'type': 'social_media', 'name': 'TelegramBot'},
    'python-requests': {'type': 'script', 'name': 'python-requests'},
    'curl/': {'type': 'script', 'name': 'curl'},
    'wget': {'type': 'script', 'name': 'Wget'},
    'okhttp': {'type': 'script', 'name': 'OkHttp'},
    'libwww-perl': {'type': 'script', 'name': 'libwww-perl'},
    'java/': {'type': 'script', 'name': 'Java'},
    'phantomjs': {'type': 'headless', 'name': 'PhantomJS'},
    'headlesschrome': {'type': 'headless', 'name': 'HeadlessChrome'},
    'gtmetrix': {'type': 'monitoring', 'name': 'GTmetrix'},
    'uptime': {'type': 'monitoring', 'name': None},
    'monitor': {'type': 'monitoring', 'name': None},
    'wordpress.com': {'type': 'platform', 'name': 'WordPress.com'},
    'jetpack': {'type': 'platform', 'name': 'Jetpack'},
}

HEADLESS_PATTERN = re.compile(
    r'headless|phantom|puppeteer|playwright|selenium|webdriver|lighthouse|pagespeed|'
    r'node-fetch|axios|httpclient|go-http-client|aiohttp',
    re.IGNORECASE,
)

# Used when the signature source is missing or unreadable
DEFAULT_SIGNATURES = [
    {'name': 'Googlebot', 'pattern': 'Googlebot', 'category': 'search_engine', 'confidence': 0.99},
    {'name': 'Bingbot', 'pattern': 'bingbot', 'category': 'search_engine', 'confidence': 0.99},
    {'name': 'GPTBot', 'pattern': 'GPTBot', 'category': 'ai_training', 'confidence': 0.99},
    {'name': 'AhrefsBot', 'pattern': 'AhrefsBot', 'category': 'seo', 'confidence': 0.9},
    {'name': 'curl', 'pattern': 'curl', 'category': 'script', 'confidence': 0.9, 'isRegex': False},
    {'name': 'python-requests', 'pattern': 'python-requests', 'category': 'script', 'confidence': 0.9},
]


@dataclass
class Signature:
    pattern: Pattern
    name: str
    category: str
    confidence: float


def compile_signatures(raw_signatures: Iterable[Dict[str, Any]]) -> List[Signature]:
    """Compile signature records, skipping entries with an invalid pattern."""
    compiled = []
    for sig in raw_signatures:
        if not isinstance(sig, dict) or not sig.get('pattern'):
            continue
        source = sig['pattern'] if sig.get('isRegex') else re.escape(sig['pattern'])
        try:
            pattern = re.compile(source, re.IGNORECASE)
        except re.error:
            logger.debug("Skipping invalid signature pattern %r", sig['pattern'])
            continue
        confidence = sig.get('confidence')
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = CLASSIFIER_SETTINGS['signature_confidence']
        compiled.append(Signature(
            pattern=pattern,
            name=sig.get('name') or sig['pattern'],
            category=sig.get('category') or 'unknown',
            confidence=max(0.0, min(1.0, float(confidence))),
        ))
    return compiled


def load_signatures(signatures_path: Optional[str] = None) -> List[Signature]:
    """Load and compile the signature source. Raises ClassificationError."""
    path = Path(signatures_path or CLASSIFIER_SETTINGS['signatures_path'])
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ClassificationError(f"Could not load signatures from {path}: {e}",
                                  context={'path': str(path)}) from e
    if not isinstance(raw, list):
        raise ClassificationError(f"Signature source {path} must be a JSON list",
                                  context={'path': str(path)})
    return compile_signatures(raw)


def classify_with_heuristics(user_agent: str, signatures: List[Signature]) -> Optional[Classification]:
    """Deterministic tiers: empty UA, quick tokens, signatures, headless patterns."""
    clean = (user_agent or '').strip()
    if not clean:
        return Classification(
            is_bot=True, bot_type='unknown', bot_name='empty_ua',
            confidence=CLASSIFIER_SETTINGS['empty_ua_confidence'], source=Provenance.HEURISTIC,
        )

    lower = clean.lower()
    for token, info in QUICK_BOT_TOKENS.items():
        if token in lower:
            return Classification(
                is_bot=True, bot_type=info['type'], bot_name=info['name'],
                confidence=CLASSIFIER_SETTINGS['quick_confidence'], source=Provenance.HEURISTIC,
            )

    for sig in signatures:
        if sig.pattern.search(clean):
            return Classification(
                is_bot=True, bot_type=sig.category, bot_name=sig.name,
                confidence=sig.confidence, source=Provenance.SIGNATURE,
            )

    if HEADLESS_PATTERN.search(clean):
        return Classification(
            is_bot=True, bot_type='headless',
            confidence=CLASSIFIER_SETTINGS['headless_confidence'], source=Provenance.HEURISTIC,
        )

    return None


def default_classification() -> Classification:
    return Classification(is_bot=False, confidence=CLASSIFIER_SETTINGS['default_confidence'],
                          source=Provenance.DEFAULT)


@dataclass
class ClassificationRun:
    """Verdicts for one classification call plus what degraded along the way."""

    classifications: Dict[str, Classification]
    notes: List[str] = field(default_factory=list)
    outcome: StageOutcome = field(default_factory=lambda: StageOutcome.success('classification'))

    def counts(self) -> Dict[str, int]:
        bots = sum(1 for c in self.classifications.values() if c.is_bot)
        return {'total': len(self.classifications), 'bots': bots,
                'humans': len(self.classifications) - bots}


class UAClassifier:
    """Resolves user agents: cache, heuristics, signatures, bulk external, default."""

    def __init__(self, cache: Optional[ClassificationCache] = None, signatures_path: Optional[str] = None,
                 bulk_classifier=None, use_bulk: bool = False, bulk_batch_size: Optional[int] = None):
        self.cache = cache
        self.signatures_path = signatures_path or CLASSIFIER_SETTINGS['signatures_path']
        self.bulk_classifier = bulk_classifier
        self.use_bulk = use_bulk
        low, high = CLASSIFIER_SETTINGS['bulk_batch_bounds']
        size = bulk_batch_size or CLASSIFIER_SETTINGS['bulk_batch_size']
        self.bulk_batch_size = min(max(size, low), high)
        self._signatures: Optional[List[Signature]] = None
        self._signature_note: Optional[str] = None

    @property
    def signatures_version(self) -> str:
        if self._signature_note:
            return 'builtin'
        return Path(self.signatures_path).name

    def _load_signatures(self) -> List[Signature]:
        if self._signatures is None:
            try:
                self._signatures = load_signatures(self.signatures_path)
            except ClassificationError as e:
                logger.warning("%s; using built-in signatures", e)
                self._signature_note = f"Signature source unavailable, built-in signatures used: {e}"
                self._signatures = compile_signatures(DEFAULT_SIGNATURES)
        return self._signatures

    def classify(self, user_agents: Iterable[str]) -> ClassificationRun:
        """Classify every user agent; each input key receives exactly one verdict."""
        unique = list(dict.fromkeys((ua or '').strip() for ua in user_agents))
        result: Dict[str, Classification] = {}
        notes: List[str] = []

        # 1) Cache lookup
        lookup = [ua for ua in unique if ua]
        if self.cache is not None and lookup:
            try:
                result.update(self.cache.get_many(lookup))
            except ClassificationError as e:
                logger.warning("Cache lookup failed: %s", e)
                notes.append(f"Classification cache unavailable, continuing uncached: {e}")

        # 2) Heuristics and signatures
        signatures = self._load_signatures()
        if self._signature_note:
            notes.append(self._signature_note)
        unknown: List[str] = []
        for ua in unique:
            if ua in result:
                continue
            verdict = classify_with_heuristics(ua, signatures)
            if verdict is not None:
                result[ua] = verdict
            else:
                unknown.append(ua)

        # 3) Optional bulk external classifier
        if unknown and self.use_bulk and self.bulk_classifier is not None:
            result.update(self._classify_bulk(unknown, notes))

        # 4) Default for anything still unresolved
        for ua in unknown:
            if ua not in result:
                result[ua] = default_classification()

        # 5) Write back new knowledge
        if self.cache is not None:
            fresh = {
                ua: c for ua, c in result.items()
                if ua and c.source not in (Provenance.CACHE, Provenance.DEFAULT)
            }
            try:
                self.cache.upsert_many(fresh)
            except BotmeterError as e:
                logger.warning("Cache write-back failed: %s", e)
                notes.append(f"Classification cache write-back failed: {e}")

        outcome = (StageOutcome.degraded('classification', '; '.join(notes)) if notes
                   else StageOutcome.success('classification'))
        return ClassificationRun(classifications=result, notes=notes, outcome=outcome)

    def _classify_bulk(self, unknown: List[str], notes: List[str]) -> Dict[str, Classification]:
        resolved: Dict[str, Classification] = {}
        for i in range(0, len(unknown), self.bulk_batch_size):
            batch = unknown[i:i + self.bulk_batch_size]
            logger.debug("Bulk classifying batch %d (%d user agents)", i // self.bulk_batch_size + 1, len(batch))
            try:
                response = self.bulk_classifier.classify_batch(batch)
                if not isinstance(response, dict):
                    raise ExternalToolError("Bulk classifier returned a non-object payload")
            except ExternalToolError as e:
                logger.warning("Bulk classification batch failed: %s", e)
                notes.append(f"Bulk classification batch of {len(batch)} failed: {e}")
                continue
            for ua in batch:
                verdict = response.get(ua)
                if verdict is None:
                    continue
                try:
                    resolved[ua] = (verdict.with_source(Provenance.EXTERNAL)
                                    if isinstance(verdict, Classification)
                                    else Classification.from_verdict(verdict))
                except ValueError as e:
                    logger.debug("Malformed bulk verdict for %r: %s", ua, e)
        return resolved
