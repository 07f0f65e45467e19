"""Mega Drive execution trace profiler."""

__version__ = "0.1.0"

from .engine import (
    Anomaly,
    AnomalyKind,
    CategoryStack,
    Diagnostics,
    Interval,
    IntervalSource,
    Reconstruction,
    ReconstructionEngine,
    reconstruct,
)
from .events import EventKind, MalformedTraceError, RawEvent, TraceHeader, read_trace
from .intervals import (
    INTERRUPTS,
    MAIN_THREAD,
    IntervalDefinitionError,
    IntervalRule,
    RuleTable,
    read_intervals,
)
from .symbols import SymbolFileError, SymbolTable, read_symbols

__all__ = [
    "Anomaly",
    "AnomalyKind",
    "CategoryStack",
    "Diagnostics",
    "EventKind",
    "INTERRUPTS",
    "Interval",
    "IntervalDefinitionError",
    "IntervalRule",
    "IntervalSource",
    "MAIN_THREAD",
    "MalformedTraceError",
    "RawEvent",
    "Reconstruction",
    "ReconstructionEngine",
    "RuleTable",
    "SymbolFileError",
    "SymbolTable",
    "TraceHeader",
    "read_intervals",
    "read_symbols",
    "read_trace",
    "reconstruct",
]
