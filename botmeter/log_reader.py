"""Log reading module: plain, gzip, JSON document and JSON-lines inputs."""

import asyncio
import gzip
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional

from .exceptions import DataLoadError
from .models import LogEntry, iso_or_none
from .parser import LogParser

logger = logging.getLogger(__name__)


def open_log_file(file_path: Path):
    """Open a log file for text reading, supporting gzip files."""
    if file_path.suffix == '.gz':
        return gzip.open(file_path, 'rt', encoding='utf-8', errors='ignore')
    return open(file_path, 'r', encoding='utf-8', errors='ignore')


class LogTailer:
    """Reads a log file from the beginning and yields its lines."""

    def __init__(self, file_path: str):
        self.file_path = Path(file_path)
        self.file_handle = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self):
        if not self.file_path.exists():
            raise FileNotFoundError(f"Log file not found: {self.file_path}")
        self.file_handle = open_log_file(self.file_path)

    def close(self):
        """Close the file handle."""
        if self.file_handle:
            self.file_handle.close()
            self.file_handle = None

    def tail(self) -> Iterator[str]:
        """Generator that yields the non-empty lines of the log file."""
        if not self.file_handle:
            raise RuntimeError("File not opened. Use context manager or call open() first.")
        for line in self.file_handle:
            line = line.rstrip('\n\r')
            if line.strip():
                yield line


class NormalizedLogFile:
    """A normalized log file that can be iterated more than once.

    Accepts a ``{"metadata": ..., "entries": [...]}`` document, a bare JSON
    list of entries, or JSON-lines (optionally gzip-compressed). Documents are
    loaded into memory once; JSON-lines files are re-read on each pass.
    """

    def __init__(self, file_path: str, parser: Optional[LogParser] = None):
        self.file_path = Path(file_path)
        self.parser = parser or LogParser()
        self.metadata: Dict[str, Any] = {}
        self._entries: Optional[List[LogEntry]] = None
        self._load()

    def _load(self):
        if not self.file_path.exists():
            raise DataLoadError(f"Normalized log file not found: {self.file_path}",
                                context={'path': str(self.file_path)})

        with open_log_file(self.file_path) as handle:
            head = handle.read(1)
            while head and head.isspace():
                head = handle.read(1)
            if head == '[':
                document = self._read_document(head + handle.read())
            elif head == '{':
                first_line = head + handle.readline()
                try:
                    record = json.loads(first_line)
                except json.JSONDecodeError:
                    # Pretty-printed document spanning several lines
                    document = self._read_document(first_line + handle.read())
                else:
                    document = record if 'entries' in record else None
            else:
                document = None

        if document is None:
            return
        if isinstance(document, list):
            raw_entries = document
        else:
            self.metadata = document.get('metadata') or {}
            raw_entries = document.get('entries') or []
        self._entries = [e for e in (self.parser.normalize_log(r) for r in raw_entries) if e is not None]

    def _read_document(self, text: str) -> Any:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise DataLoadError(f"Invalid JSON in {self.file_path}: {e}",
                                context={'path': str(self.file_path)}) from e
        if not isinstance(document, (list, dict)):
            raise DataLoadError(f"Unsupported log document in {self.file_path}",
                                context={'path': str(self.file_path)})
        return document

    def iter_entries(self) -> Iterator[LogEntry]:
        if self._entries is not None:
            yield from self._entries
            return
        with LogTailer(str(self.file_path)) as tailer:
            for line in tailer.tail():
                entry = self.parser.parse_log_line(line)
                if entry is not None:
                    yield entry

    def __iter__(self) -> Iterator[LogEntry]:
        return self.iter_entries()

    @property
    def time_range(self) -> Optional[Dict[str, str]]:
        time_range = self.metadata.get('timeRange')
        if isinstance(time_range, dict) and time_range.get('start') and time_range.get('end'):
            return time_range
        return None


def iter_log_files(file_paths: Iterable[str], parser: Optional[LogParser] = None) -> Iterator[LogEntry]:
    """Yield normalized entries from raw or normalized log files in order."""
    parser = parser or LogParser()
    for file_path in file_paths:
        logger.debug("Reading %s", file_path)
        yield from NormalizedLogFile(file_path, parser=parser).iter_entries()


async def aiter_log_files(file_paths: Iterable[str], parser: Optional[LogParser] = None,
                          chunk_size: int = 1000) -> AsyncIterator[LogEntry]:
    """Async variant of iter_log_files that yields control every chunk_size entries."""
    for index, entry in enumerate(iter_log_files(file_paths, parser=parser), start=1):
        yield entry
        if index % chunk_size == 0:
            await asyncio.sleep(0)


def write_normalized_file(file_path: str, entries: Iterable[LogEntry], source_format: str = 'JSONL',
                          provider: str = 'unknown') -> Dict[str, Any]:
    """Write entries as a normalized ``{metadata, entries}`` document.

    Returns the metadata that was written.
    """
    records = []
    start = end = None
    for entry in entries:
        records.append(entry.to_dict())
        if start is None or entry.timestamp < start:
            start = entry.timestamp
        if end is None or entry.timestamp > end:
            end = entry.timestamp

    metadata = {
        'sourceFormat': source_format,
        'totalEntries': len(records),
        'timeRange': {'start': iso_or_none(start), 'end': iso_or_none(end)},
        'provider': provider,
    }
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump({'metadata': metadata, 'entries': records}, f, indent=2)
    return metadata
