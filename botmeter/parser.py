"""Access log parsing and normalization module."""

import ipaddress
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from .models import LogEntry, ensure_datetime

logger = logging.getLogger(__name__)

# Apache/Nginx combined log format
COMBINED_LOG_PATTERN = re.compile(
    r'^(?P<ip>\S+) \S+ \S+ \[(?P<time>[^\]]+)\] "(?P<method>\S+) (?P<path>\S+)(?: \S+)?" '
    r'(?P<status>\d{3}) (?P<bytes>\d+|-)(?: "(?P<referer>[^"]*)" "(?P<user_agent>[^"]*)")?'
)

# Alternate key names seen across providers for the same field
FIELD_ALIASES = {
    'timestamp': ('timestamp', 'time', 'ts', '@timestamp', 'date'),
    'ip': ('ip_address', 'ip', 'remote_addr', 'client_ip', 'clientIp'),
    'user_agent': ('user_agent', 'userAgent', 'ua', 'http_user_agent'),
    'method': ('method', 'verb', 'request_method'),
    'path': ('path', 'url', 'uri', 'request_uri'),
    'status_code': ('status_code', 'status', 'response_code', 'statusCode'),
    'bytes_transferred': ('bytes_transferred', 'body_bytes_sent', 'bytes_sent', 'bytes', 'size', 'response_size'),
    'referer': ('referer', 'referrer', 'http_referer'),
}


class LogParser:
    """Parses raw access log lines and normalizes them into LogEntry records."""

    def __init__(self):
        self.skipped = 0

    def parse_log_line(self, line: str) -> Optional[LogEntry]:
        """Parse a JSON or combined-format log line. Returns None for unusable lines."""
        line = line.strip()
        if not line:
            return None
        if line.startswith('{'):
            try:
                raw_log = json.loads(line)
            except json.JSONDecodeError:
                self.skipped += 1
                return None
            return self.normalize_log(raw_log)
        return self.parse_combined_line(line)

    def parse_combined_line(self, line: str) -> Optional[LogEntry]:
        """Parse an Apache/Nginx combined log line."""
        match = COMBINED_LOG_PATTERN.match(line)
        if not match:
            self.skipped += 1
            return None

        timestamp = self._parse_timestamp(match.group('time'))
        if timestamp is None:
            self.skipped += 1
            return None

        size = match.group('bytes')
        return LogEntry(
            timestamp=timestamp,
            ip=self._parse_ip(match.group('ip')),
            user_agent=self._clean(match.group('user_agent')),
            method=match.group('method'),
            path=match.group('path'),
            status_code=int(match.group('status')),
            bytes_transferred=int(size) if size and size != '-' else 0,
            referer=self._clean(match.group('referer')),
        )

    def normalize_log(self, raw_log: Dict[str, Any]) -> Optional[LogEntry]:
        """Normalize a JSON log record (Nginx JSON or already-normalized)."""
        if not isinstance(raw_log, dict):
            self.skipped += 1
            return None

        timestamp = self._parse_timestamp(self._pick(raw_log, 'timestamp'))
        if timestamp is None:
            logger.debug("Skipping log record without a usable timestamp")
            self.skipped += 1
            return None

        method = self._pick(raw_log, 'method')
        path = self._pick(raw_log, 'path')
        # Nginx JSON logs carry "POST /graphql HTTP/1.1" in 'request'
        if (not method or not path) and raw_log.get('request'):
            req_method, req_path = self._parse_request_string(raw_log['request'])
            method = method or req_method
            path = path or req_path

        return LogEntry(
            timestamp=timestamp,
            ip=self._parse_ip(self._pick(raw_log, 'ip')),
            user_agent=self._clean(self._pick(raw_log, 'user_agent')),
            method=method or None,
            path=path or None,
            status_code=self._to_int(self._pick(raw_log, 'status_code')),
            bytes_transferred=self._to_int(self._pick(raw_log, 'bytes_transferred')) or 0,
            referer=self._clean(self._pick(raw_log, 'referer')),
        )

    def _pick(self, raw_log: Dict[str, Any], field: str) -> Any:
        for key in FIELD_ALIASES[field]:
            value = raw_log.get(key)
            if value not in (None, ''):
                return value
        return None

    def _parse_request_string(self, request_str: str) -> Tuple[Optional[str], Optional[str]]:
        """Parse HTTP request string like 'POST /graphql HTTP/1.1'."""
        parts = str(request_str).split(' ')
        if len(parts) >= 2:
            return parts[0], parts[1]
        return None, None

    def _parse_timestamp(self, value: Any) -> Optional[datetime]:
        """Parse timestamp from ISO, Apache/Nginx or epoch formats."""
        if value in (None, ''):
            return None
        if isinstance(value, str):
            value = value.strip()
            try:
                return datetime.strptime(value, '%d/%b/%Y:%H:%M:%S %z').astimezone(timezone.utc)
            except ValueError:
                pass
            if re.fullmatch(r'\d+(\.\d+)?', value):
                value = float(value)
        return ensure_datetime(value)

    def _parse_ip(self, value: Any) -> Optional[str]:
        """Parse IP address, taking the first hop of an X-Forwarded-For list."""
        if not value or value == '-':
            return None
        ip_str = str(value)
        if ',' in ip_str:
            ip_str = ip_str.split(',')[0].strip()
        try:
            return str(ipaddress.ip_address(ip_str))
        except ValueError:
            # Keep opaque identifiers (hashed IPs, hostnames) as-is
            return ip_str

    def _clean(self, value: Any) -> Optional[str]:
        if value is None or value == '-':
            return None
        return str(value)

    def _to_int(self, value: Any) -> Optional[int]:
        if value is None or value == '-':
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None

