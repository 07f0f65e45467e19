"""Native Perfetto output using ``retrobus-perfetto``.

Replays the engine's ordered open/close transitions as begin/end slices on
one thread track per category. Every manual interval rule gets a track of its
own (named ``"<category>: <rule name>"``) because a rule's instances never
overlap each other but may cross the automatic call frames of the same
category, or the instances of another rule.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from retrobus_perfetto import PerfettoTraceBuilder

from ..engine import Interval, IntervalSource, Reconstruction
from ..events import DEFAULT_CLOCK_HZ
from .chrome_json import PROCESS_NAME

logger = logging.getLogger(__name__)

# ("category", name) or ("rule", rule_id)
TrackKey = Tuple[str, object]


class PerfettoTraceWriter:
    """Builds a Perfetto protobuf trace from a reconstruction."""

    def __init__(self, clock_hz: float = DEFAULT_CLOCK_HZ) -> None:
        if clock_hz <= 0:
            raise ValueError(f"clock rate must be positive, got {clock_hz}")
        self.clock_hz = clock_hz
        self._builder: Optional[PerfettoTraceBuilder] = None
        self._track_uuids: Dict[TrackKey, int] = {}
        self._slice_stacks: Dict[TrackKey, List[Interval]] = {}

    def _to_ns(self, cycles: int) -> int:
        return int(round(cycles * 1_000_000_000 / self.clock_hz))

    def _ensure_track(self, key: TrackKey, name: str) -> int:
        """Ensure a thread track exists and return its UUID."""
        if key in self._track_uuids:
            return self._track_uuids[key]
        assert self._builder is not None
        uuid = self._builder.add_thread(name)
        self._track_uuids[key] = uuid
        self._slice_stacks[key] = []
        return uuid

    @staticmethod
    def track_name(interval: Interval) -> str:
        if interval.source is IntervalSource.MANUAL_RULE:
            return f"{interval.category}: {interval.label}"
        return interval.category

    @staticmethod
    def track_key(interval: Interval) -> TrackKey:
        # Two rules may share a name and category; slices still pair per rule.
        if interval.source is IntervalSource.MANUAL_RULE:
            return ("rule", interval.rule_id)
        return ("category", interval.category)

    def _interval_track(self, interval: Interval) -> Tuple[TrackKey, int]:
        key = self.track_key(interval)
        return key, self._ensure_track(key, self.track_name(interval))

    def _annotations(self, interval: Interval) -> Dict[str, Any]:
        annotations: Dict[str, Any] = {"source": interval.source.value}
        if interval.address is not None:
            annotations["address"] = f"0x{interval.address:06X}"
        if interval.synthetic_close:
            annotations["synthetic_close"] = "true"
        return annotations

    def _begin_slice(self, interval: Interval) -> None:
        assert self._builder is not None
        key, track_uuid = self._interval_track(interval)
        self._slice_stacks[key].append(interval)
        event = self._builder.begin_slice(
            track_uuid, interval.label, self._to_ns(interval.start_time)
        )
        event.add_annotations(self._annotations(interval))

    def _end_slice(self, interval: Interval, timestamp: int) -> None:
        assert self._builder is not None
        key, track_uuid = self._interval_track(interval)
        stack = self._slice_stacks[key]
        if not stack or stack[-1] is not interval:
            logger.debug(
                "Slice %r on %s closes out of nesting order",
                interval.label,
                self.track_name(interval),
            )
        for position in range(len(stack) - 1, -1, -1):
            if stack[position] is interval:
                del stack[position]
                break
        self._builder.end_slice(track_uuid, self._to_ns(timestamp))

    def build(self, reconstruction: Reconstruction) -> PerfettoTraceBuilder:
        self._builder = PerfettoTraceBuilder(PROCESS_NAME)
        self._track_uuids.clear()
        self._slice_stacks.clear()

        for category, _tid in sorted(
            reconstruction.categories.items(), key=lambda item: item[1]
        ):
            self._ensure_track(("category", category), category)

        for transition in reconstruction.transitions:
            if transition.opened:
                self._begin_slice(transition.interval)
            else:
                self._end_slice(transition.interval, transition.timestamp)

        for instant in reconstruction.instants:
            track_uuid = self._ensure_track(
                ("category", instant.category), instant.category
            )
            self._builder.add_instant_event(
                track_uuid, instant.name, self._to_ns(instant.timestamp)
            )
        return self._builder

    def save(self, reconstruction: Reconstruction, path: Union[str, Path]) -> int:
        """Write the trace to ``path`` and return the number of slices."""
        builder = self.build(reconstruction)
        builder.save(str(path))
        logger.debug("Saved Perfetto trace to %s", path)
        return len(reconstruction.intervals)
