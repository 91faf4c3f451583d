"""
botmeter - bot traffic classification and bandwidth cost analysis
"""

from .analyzer import AnalyzeOptions, AnalyzeRequest, Analyzer, DataRef, analyze
from .exceptions import BotmeterError, DataLoadError

__version__ = "1.0.0"

__all__ = [
    "AnalyzeOptions",
    "AnalyzeRequest",
    "Analyzer",
    "BotmeterError",
    "DataLoadError",
    "DataRef",
    "analyze",
]
