import json
from datetime import datetime, timedelta, timezone

import pytest

from botmeter.llm import ClassificationBackend
from botmeter.models import LogEntry

BASE_TIME = datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc)

CHROME_UA = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
             "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36")
GPTBOT_UA = "Mozilla/5.0 AppleWebKit/537.36 (KHTML, like Gecko; compatible; GPTBot/1.1; +https://openai.com/gptbot)"
MYSTERY_UA = "Mozilla/5.0 (X11; Linux x86_64) Gecko/20100101 Frobnicator/2.3"


def make_entry(minutes=0, seconds=0, ip="1.2.3.4", ua=CHROME_UA, path="/", status=200,
               size=1000, method="GET"):
    return LogEntry(
        timestamp=BASE_TIME + timedelta(minutes=minutes, seconds=seconds),
        ip=ip,
        user_agent=ua,
        method=method,
        path=path,
        status_code=status,
        bytes_transferred=size,
    )


class FakeBackend(ClassificationBackend):
    """Scripted backend: responses is a list of dicts or exceptions, consumed per call."""

    def __init__(self, responses=None, verdict=None, configured=True):
        self.responses = list(responses or [])
        self.verdict = verdict
        self.configured = configured
        self.calls = []

    def is_configured(self):
        return self.configured

    def classify_batch(self, items, allow_tools=False, instructions='', extra_tools=None):
        self.calls.append({'items': items, 'allow_tools': allow_tools, 'extra_tools': extra_tools})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return {item['ua']: dict(self.verdict) for item in items} if self.verdict else {}


@pytest.fixture
def entries():
    """Two humans, one GPTBot and one unknown agent across three minutes."""
    return [
        make_entry(0, ip="10.0.0.1", path="/", size=5000),
        make_entry(0, 30, ip="10.0.0.1", path="/static/app.js", size=20000),
        make_entry(1, ip="10.0.0.2", path="/products?page=2", size=8000),
        make_entry(1, ip="20.0.0.1", ua=GPTBOT_UA, path="/blog/post", size=12000),
        make_entry(2, ip="20.0.0.1", ua=GPTBOT_UA, path="/robots.txt", status=404, size=300),
        make_entry(2, ip="30.0.0.1", ua=MYSTERY_UA, path="/images/logo.png", size=40000),
        make_entry(2, 10, ip=None, ua=None, path="/health", status=503, size=0),
    ]


@pytest.fixture
def normalized_file(tmp_path, entries):
    path = tmp_path / "normalized.json"
    path.write_text(json.dumps({
        'metadata': {
            'sourceFormat': 'JSONL',
            'totalEntries': len(entries),
            'timeRange': {'start': '2025-09-01T12:00:00Z', 'end': '2025-09-01T12:02:10Z'},
            'provider': 'vercel',
        },
        'entries': [e.to_dict() for e in entries],
    }))
    return str(path)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "botmeter.db")
