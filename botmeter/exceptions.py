"""
Exception hierarchy for the analysis pipeline.

Only DataLoadError is fatal to an analysis run; the orchestrator catches the
others at stage boundaries and records them as notes on the report.
"""

from typing import Any, Dict, Optional


class BotmeterError(Exception):
    """Base exception for all analysis errors."""

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}

    @property
    def error_code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for JSON output."""
        return {
            "error": self.error_code,
            "message": str(self),
            "context": self.context,
        }


class DataLoadError(BotmeterError):
    """Raised when no usable input data source exists."""


class ClassificationError(BotmeterError):
    """Raised when the classification cache or signature source cannot be used."""


class AnomalyToolError(BotmeterError):
    """Raised when anomaly detection fails."""


class CostComputeError(BotmeterError):
    """Raised when a cost breakdown cannot be computed."""


class PersistenceError(BotmeterError):
    """Raised when a report or cache write fails."""


class ExternalToolError(BotmeterError):
    """Raised for failed or malformed calls to an external classifier or tool."""
