"""SQLite persistence for analysis reports and normalized log entries."""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, Optional

from .cache import SQLiteDatabase
from .config import STORAGE_SETTINGS
from .exceptions import DataLoadError, PersistenceError
from .models import AnalysisReport, LogEntry, ensure_datetime

logger = logging.getLogger(__name__)

# Fixed width so lexical order matches time order
TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_ts(value) -> str:
    return ensure_datetime(value).strftime(TS_FORMAT)


class ReportStore(SQLiteDatabase):
    """Report sink. One row per (site, window); re-analysis overwrites it."""

    schema = """
        CREATE TABLE IF NOT EXISTS analysis_reports (
            report_id TEXT PRIMARY KEY,
            org_id TEXT,
            site_id TEXT NOT NULL,
            window_start TEXT NOT NULL,
            window_end TEXT NOT NULL,
            provider TEXT NOT NULL,
            report_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(site_id, window_start, window_end)
        );
        CREATE INDEX IF NOT EXISTS idx_reports_site_end ON analysis_reports(site_id, window_end);
    """

    def upsert(self, report: AnalysisReport) -> str:
        """Insert or replace the report for its (site, window). Returns the report id."""
        try:
            conn = self._get_connection()
            conn.execute("""
                INSERT INTO analysis_reports
                    (report_id, org_id, site_id, window_start, window_end, provider, report_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(site_id, window_start, window_end) DO UPDATE SET
                    report_id = excluded.report_id,
                    org_id = excluded.org_id,
                    provider = excluded.provider,
                    report_json = excluded.report_json,
                    created_at = excluded.created_at
            """, (
                report.report_id, report.org_id, report.site_id, report.window_start,
                report.window_end, report.provider, json.dumps(report.to_dict(), default=str),
                report.created_at,
            ))
            conn.commit()
        except sqlite3.Error as e:
            if self._connection is not None:
                self._connection.rollback()
            raise PersistenceError(f"Report upsert failed: {e}",
                                   context={'report_id': report.report_id, 'db_path': self.db_path}) from e
        logger.debug("Stored report %s for %s", report.report_id, report.site_id)
        return report.report_id

    def _fetch_one(self, query: str, params: tuple) -> Optional[AnalysisReport]:
        try:
            row = self._get_connection().execute(query, params).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Report lookup failed: {e}", context={'db_path': self.db_path}) from e
        if row is None:
            return None
        return AnalysisReport.from_dict(json.loads(row['report_json']))

    def get_by_id(self, report_id: str) -> Optional[AnalysisReport]:
        return self._fetch_one("SELECT report_json FROM analysis_reports WHERE report_id = ?", (report_id,))

    def get_latest(self, site_id: str) -> Optional[AnalysisReport]:
        """Most recent window analysed for the site."""
        return self._fetch_one("""
            SELECT report_json FROM analysis_reports
            WHERE site_id = ?
            ORDER BY window_end DESC, created_at DESC
            LIMIT 1
        """, (site_id,))


class EntryStore(SQLiteDatabase):
    """Normalized log entries persisted per site, queried by time window."""

    schema = """
        CREATE TABLE IF NOT EXISTS normalized_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            site_id TEXT NOT NULL,
            org_id TEXT,
            ts TEXT NOT NULL,
            ip TEXT,
            ua TEXT,
            method TEXT,
            path TEXT,
            status INTEGER,
            bytes INTEGER NOT NULL DEFAULT 0,
            referer TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_entries_site_ts ON normalized_entries(site_id, ts);
    """

    def __init__(self, db_path: Optional[str] = None, batch_size: Optional[int] = None):
        super().__init__(db_path)
        self.batch_size = batch_size or STORAGE_SETTINGS['batch_size']

    def insert_entries(self, site_id: str, entries: Iterable[LogEntry], org_id: Optional[str] = None) -> int:
        """Insert entries in batches. Returns the number inserted."""
        inserted = 0
        batch = []
        try:
            conn = self._get_connection()
            for entry in entries:
                batch.append((
                    site_id, org_id, format_ts(entry.timestamp), entry.ip, entry.user_agent,
                    entry.method, entry.path, entry.status_code, entry.bytes_transferred or 0, entry.referer,
                ))
                if len(batch) >= self.batch_size:
                    inserted += self._insert_batch(conn, batch)
                    batch = []
            if batch:
                inserted += self._insert_batch(conn, batch)
        except sqlite3.Error as e:
            if self._connection is not None:
                self._connection.rollback()
            raise PersistenceError(f"Entry insert failed after {inserted} rows: {e}",
                                   context={'site_id': site_id, 'db_path': self.db_path}) from e
        logger.debug("Inserted %d entries for %s", inserted, site_id)
        return inserted

    def _insert_batch(self, conn: sqlite3.Connection, batch: list) -> int:
        conn.executemany("""
            INSERT INTO normalized_entries (site_id, org_id, ts, ip, ua, method, path, status, bytes, referer)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, batch)
        conn.commit()
        return len(batch)

    def count(self, site_id: str, start: datetime, end: datetime) -> int:
        try:
            row = self._get_connection().execute(
                "SELECT COUNT(*) AS n FROM normalized_entries WHERE site_id = ? AND ts >= ? AND ts <= ?",
                (site_id, format_ts(start), format_ts(end)),
            ).fetchone()
        except sqlite3.Error as e:
            raise DataLoadError(f"Entry store query failed: {e}", context={'db_path': self.db_path}) from e
        return row['n']

    def query_window(self, site_id: str, start: datetime, end: datetime) -> Iterator[LogEntry]:
        """Yield the site's entries with start <= ts <= end, oldest first."""
        try:
            cursor = self._get_connection().execute("""
                SELECT ts, ip, ua, method, path, status, bytes, referer
                FROM normalized_entries
                WHERE site_id = ? AND ts >= ? AND ts <= ?
                ORDER BY ts
            """, (site_id, format_ts(start), format_ts(end)))
            for row in cursor:
                yield LogEntry(
                    timestamp=ensure_datetime(row['ts']),
                    ip=row['ip'],
                    user_agent=row['ua'],
                    method=row['method'],
                    path=row['path'],
                    status_code=row['status'],
                    bytes_transferred=row['bytes'] or 0,
                    referer=row['referer'],
                )
        except sqlite3.Error as e:
            raise DataLoadError(f"Entry store query failed: {e}", context={'db_path': self.db_path}) from e


def report_summary(report: AnalysisReport) -> Dict[str, Any]:
    """Flat summary used by the CLI listings."""
    metrics = report.metrics or {}
    return {
        'report_id': report.report_id,
        'site_id': report.site_id,
        'provider': report.provider,
        'window': f"{report.window_start} .. {report.window_end}",
        'total_bytes': metrics.get('total_bytes', 0),
        'total_cost': (metrics.get('cost') or {}).get('total_cost'),
        'notes': len(report.notes),
    }
