"""Chrome Trace Event (JSON) output, loadable by Perfetto and chrome://tracing."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, TextIO, Union

from ..engine import Interval, IntervalSource, Reconstruction
from ..events import DEFAULT_CLOCK_HZ

logger = logging.getLogger(__name__)

PROCESS_NAME = "M68000"
PID = 0


def cycles_to_us(cycles: int, clock_hz: float) -> float:
    return cycles / clock_hz * 1_000_000.0


class ChromeTraceEmitter:
    """Builds a ``{"traceEvents": [...]}`` document from a reconstruction."""

    def __init__(
        self, clock_hz: float = DEFAULT_CLOCK_HZ, display_time_unit: str = "ms"
    ) -> None:
        if clock_hz <= 0:
            raise ValueError(f"clock rate must be positive, got {clock_hz}")
        self.clock_hz = clock_hz
        self.display_time_unit = display_time_unit

    def _metadata(self, name: str, tid: int, args: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": name,
            "ph": "M",
            "ts": 0,
            "pid": PID,
            "tid": tid,
            "args": args,
        }

    def metadata_events(self, categories: Dict[str, int]) -> List[Dict[str, Any]]:
        events = [self._metadata("process_name", 0, {"name": PROCESS_NAME})]
        for category, tid in sorted(categories.items(), key=lambda item: item[1]):
            events.append(self._metadata("thread_name", tid, {"name": category}))
            events.append(self._metadata("thread_sort_index", tid, {"sort_index": tid}))
        return events

    def interval_event(self, interval: Interval, tid: int) -> Dict[str, Any]:
        args: Dict[str, Any] = {"source": interval.source.value}
        if interval.address is not None:
            args["address"] = f"0x{interval.address:06X}"
        if interval.source is IntervalSource.MANUAL_RULE:
            args["rule"] = interval.rule_id
        if interval.synthetic_close:
            args["synthetic_close"] = True
        return {
            "name": interval.label,
            "cat": interval.category,
            "ph": "X",
            "ts": cycles_to_us(interval.start_time, self.clock_hz),
            "dur": cycles_to_us(interval.duration, self.clock_hz),
            "pid": PID,
            "tid": tid,
            "args": args,
        }

    def build(self, reconstruction: Reconstruction) -> Dict[str, Any]:
        categories = reconstruction.categories
        trace_events = self.metadata_events(categories)
        for interval in reconstruction.intervals:
            trace_events.append(
                self.interval_event(interval, categories.get(interval.category, 0))
            )
        for instant in reconstruction.instants:
            trace_events.append(
                {
                    "name": instant.name,
                    "cat": instant.category,
                    "ph": "i",
                    "ts": cycles_to_us(instant.timestamp, self.clock_hz),
                    "pid": PID,
                    "tid": categories.get(instant.category, 1),
                    "s": "g",
                }
            )
        return {
            "traceEvents": trace_events,
            "displayTimeUnit": self.display_time_unit,
        }

    def write(self, reconstruction: Reconstruction, output: TextIO) -> int:
        """Serialize to ``output`` and return the number of trace events."""
        document = self.build(reconstruction)
        json.dump(document, output)
        return len(document["traceEvents"])

    def save(
        self, reconstruction: Reconstruction, path: Union[str, Path]
    ) -> int:
        with open(path, "w") as f:
            count = self.write(reconstruction, f)
        logger.debug("Wrote %d trace events to %s", count, path)
        return count
