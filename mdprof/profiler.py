"""End-to-end conversion: ``.mdp`` trace + symbols (+ intervals) -> trace file."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .config import ProfilerConfig
from .engine import Reconstruction, ReconstructionEngine
from .events import DEFAULT_CLOCK_HZ, read_trace
from .intervals import RuleTable, load_intervals
from .symbols import SymbolTable, load_symbols
from .tracing.chrome_json import ChromeTraceEmitter
from .tracing.perfetto_tracing import PerfettoTraceWriter

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class ConversionResult:
    output_path: Path
    output_format: str
    event_count: int
    reconstruction: Reconstruction
    reconstruct_seconds: float
    write_seconds: float


def load_rules(intervals_path: Optional[PathLike], symbols: SymbolTable) -> RuleTable:
    if intervals_path is None:
        return RuleTable()
    rules = load_intervals(intervals_path, symbols)
    logger.debug("Loaded %d interval rules from %s", len(rules.rules), intervals_path)
    return rules


def convert_trace(
    trace_path: PathLike,
    symbols_path: PathLike,
    output_path: PathLike,
    intervals_path: Optional[PathLike] = None,
    *,
    output_format: Optional[str] = None,
    clock_hz: Optional[float] = None,
) -> ConversionResult:
    """Reconstruct ``trace_path`` and write it in ``output_format``.

    Decode failures propagate as :class:`~mdprof.events.MalformedTraceError`;
    nothing is written in that case.
    """
    symbols = load_symbols(symbols_path)
    rules = load_rules(intervals_path, symbols)
    output_format = output_format or ProfilerConfig.get_output_format()

    header, events = read_trace(trace_path)
    try:
        rate = clock_hz or ProfilerConfig.get_clock_hz(header.clock_hz)
        if not rate:
            logger.warning(
                "Trace header has no clock rate; assuming %d Hz", DEFAULT_CLOCK_HZ
            )
            rate = DEFAULT_CLOCK_HZ

        started = time.perf_counter()
        engine = ReconstructionEngine(
            rules, symbols, mark_vblank=ProfilerConfig.mark_vblank()
        )
        reconstruction = engine.run(events)
        reconstruct_seconds = time.perf_counter() - started
    finally:
        events.close()
    if reconstruction.diagnostics:
        logger.warning("Trace anomalies: %s", reconstruction.diagnostics.summary())

    output_path = Path(output_path)
    started = time.perf_counter()
    if output_format == "perfetto":
        count = PerfettoTraceWriter(rate).save(reconstruction, output_path)
    else:
        emitter = ChromeTraceEmitter(rate, ProfilerConfig.get_display_time_unit())
        count = emitter.save(reconstruction, output_path)
    write_seconds = time.perf_counter() - started

    return ConversionResult(
        output_path=output_path,
        output_format=output_format,
        event_count=count,
        reconstruction=reconstruction,
        reconstruct_seconds=reconstruct_seconds,
        write_seconds=write_seconds,
    )


def write_breakpoint_file(
    symbols_path: PathLike, intervals_path: PathLike, output_path: PathLike
) -> int:
    """Write the emulator's breakpoint list; returns the address count."""
    symbols = load_symbols(symbols_path)
    rules = load_rules(intervals_path, symbols)
    with open(output_path, "wb") as f:
        count = rules.write_breakpoints(f)
    logger.debug("Wrote %d breakpoint addresses to %s", count, output_path)
    return count
