"""Trace file writers."""

from .chrome_json import ChromeTraceEmitter, cycles_to_us
from .perfetto_tracing import PerfettoTraceWriter

__all__ = [
    "ChromeTraceEmitter",
    "PerfettoTraceWriter",
    "cycles_to_us",
]
