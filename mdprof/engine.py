"""Reconstruction of nested intervals from a flat execution event stream.

The engine keeps one call stack per category ("Main thread", "Interrupts" and
any category named by a manual interval rule) and one open/closed slot per
manual rule. It is a pure function of ``(events, rules, symbols)``: feed it
events in recorded order and read back the closed intervals, the ordered
open/close transitions and the diagnostics collected along the way.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .events import EventKind, MalformedTraceError, RawEvent
from .intervals import INTERRUPTS, MAIN_THREAD, IntervalRule, RuleTable
from .symbols import SymbolTable

logger = logging.getLogger(__name__)

# The RTS has not popped the return address yet when the exit is recorded.
RETURN_ADDRESS_SIZE = 4


class IntervalSource(Enum):
    AUTOMATIC_CALL = "call"
    INTERRUPT = "interrupt"
    MANUAL_RULE = "manual"


class AnomalyKind(Enum):
    UNMATCHED_RETURN = "unmatched_return"
    UNMATCHED_INTERRUPT_EXIT = "unmatched_interrupt_exit"
    UNWOUND_FRAME = "unwound_frame"
    SYNTHETIC_CLOSE = "synthetic_close"
    EMPTY_RULE = "empty_rule"


@dataclass
class Interval:
    """An opened span; ``end_time`` stays ``None`` while it is open."""

    label: str
    category: str
    source: IntervalSource
    start_time: int
    address: Optional[int] = None
    rule_id: Optional[int] = None
    stack_pointer: Optional[int] = None
    end_time: Optional[int] = None
    synthetic_close: bool = False
    seq: int = 0

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def duration(self) -> int:
        if self.end_time is None:
            raise ValueError(f"interval {self.label!r} is still open")
        return self.end_time - self.start_time


@dataclass
class Transition:
    """An interval boundary, in the order the engine applied it."""

    opened: bool
    interval: Interval
    timestamp: int


@dataclass(frozen=True)
class Instant:
    """A zero-length marker such as a vertical blank interrupt."""

    name: str
    category: str
    timestamp: int


@dataclass(frozen=True)
class Anomaly:
    kind: AnomalyKind
    timestamp: int
    category: str
    detail: str = ""
    event_index: Optional[int] = None


@dataclass
class Diagnostics:
    """Recoverable problems found while reconstructing a trace."""

    anomalies: List[Anomaly] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.anomalies)

    def record(self, anomaly: Anomaly) -> None:
        self.anomalies.append(anomaly)

    def of_kind(self, kind: AnomalyKind) -> List[Anomaly]:
        return [a for a in self.anomalies if a.kind is kind]

    def counts(self) -> Dict[AnomalyKind, int]:
        return dict(Counter(a.kind for a in self.anomalies))

    def summary(self) -> str:
        counts = self.counts()
        if not counts:
            return "no anomalies"
        return ", ".join(
            f"{count} {kind.value.replace('_', ' ')}"
            for kind, count in sorted(counts.items(), key=lambda item: item[0].value)
        )


class CategoryStack:
    """Open intervals of one category, innermost last."""

    def __init__(self, category: str) -> None:
        self.category = category
        self.frames: List[Interval] = []

    def __len__(self) -> int:
        return len(self.frames)

    def __bool__(self) -> bool:
        return bool(self.frames)

    def push(self, interval: Interval) -> None:
        self.frames.append(interval)

    def top(self) -> Optional[Interval]:
        return self.frames[-1] if self.frames else None

    def pop(self) -> Interval:
        return self.frames.pop()

    def interrupt_depth(self) -> int:
        return sum(1 for f in self.frames if f.source is IntervalSource.INTERRUPT)


@dataclass
class Reconstruction:
    """Everything the emitters need from one run of the engine."""

    intervals: List[Interval]
    transitions: List[Transition]
    instants: List[Instant]
    diagnostics: Diagnostics
    categories: Dict[str, int]
    end_time: Optional[int] = None

    def by_category(self, category: str) -> List[Interval]:
        return [i for i in self.intervals if i.category == category]


def synthesize_label(address: int) -> str:
    return f"sub_{address:X}"


def _usable_rules(table: Dict[int, List[IntervalRule]]) -> Dict[int, List[IntervalRule]]:
    usable: Dict[int, List[IntervalRule]] = {}
    for address, rules in table.items():
        kept = [r for r in rules if r.entry_addresses and r.exit_addresses]
        if kept:
            usable[address] = kept
    return usable


class ReconstructionEngine:
    """Single-pass state machine turning raw events into nested intervals."""

    def __init__(
        self,
        rules: Optional[RuleTable] = None,
        symbols: Optional[SymbolTable] = None,
        *,
        mark_vblank: bool = True,
    ) -> None:
        self.rules = rules if rules is not None else RuleTable()
        self.symbols = symbols if symbols is not None else SymbolTable()
        self.mark_vblank = mark_vblank

        self.stacks: Dict[str, CategoryStack] = {}
        self.open_rules: Dict[int, Interval] = {}
        self.diagnostics = Diagnostics()
        self.transitions: List[Transition] = []
        self.instants: List[Instant] = []
        self._closed: List[Interval] = []
        self._seq = 0
        self._event_index = 0
        self._last_timestamp: Optional[int] = None

        # A rule missing either side could never close; leave it out entirely.
        for rule in self.rules.rules:
            if not rule.entry_addresses or not rule.exit_addresses:
                logger.warning("Ignoring interval rule %r with no entry or exit", rule.name)
                self.diagnostics.record(
                    Anomaly(AnomalyKind.EMPTY_RULE, 0, rule.category, rule.name)
                )
        self._entries = _usable_rules(self.rules.entries)
        self._exits = _usable_rules(self.rules.exits)

    # ------------------------------------------------------------------ #
    # Stack helpers
    # ------------------------------------------------------------------ #
    def stack(self, category: str) -> CategoryStack:
        stack = self.stacks.get(category)
        if stack is None:
            stack = CategoryStack(category)
            self.stacks[category] = stack
        return stack

    def active_category(self) -> str:
        interrupts = self.stacks.get(INTERRUPTS)
        if interrupts is not None and interrupts.interrupt_depth():
            return INTERRUPTS
        return MAIN_THREAD

    def _label(self, address: int) -> str:
        return self.symbols.resolve(address) or synthesize_label(address)

    def _open(self, interval: Interval) -> Interval:
        interval.seq = self._seq
        self._seq += 1
        self.transitions.append(Transition(True, interval, interval.start_time))
        return interval

    def _close(self, interval: Interval, timestamp: int, synthetic: bool = False) -> None:
        interval.end_time = timestamp
        interval.synthetic_close = synthetic
        self.transitions.append(Transition(False, interval, timestamp))
        self._closed.append(interval)

    def _anomaly(self, kind: AnomalyKind, event: RawEvent, category: str, detail: str = "") -> None:
        anomaly = Anomaly(
            kind=kind,
            timestamp=event.timestamp,
            category=category,
            detail=detail,
            event_index=event.index if event.index is not None else self._event_index,
        )
        self.diagnostics.record(anomaly)
        logger.warning(
            "%s on %s at cycle %d%s",
            kind.value.replace("_", " "),
            category,
            event.timestamp,
            f": {detail}" if detail else "",
        )

    # ------------------------------------------------------------------ #
    # Event handlers
    # ------------------------------------------------------------------ #
    def _on_call(self, event: RawEvent) -> None:
        category = self.active_category()
        interval = Interval(
            label=self._label(event.address),
            category=category,
            source=IntervalSource.AUTOMATIC_CALL,
            start_time=event.timestamp,
            address=event.address,
            stack_pointer=event.stack_pointer,
        )
        self.stack(category).push(self._open(interval))

    def _on_return(self, event: RawEvent) -> None:
        category = self.active_category()
        stack = self.stack(category)
        top = stack.top()
        if top is None or top.source is not IntervalSource.AUTOMATIC_CALL:
            self._anomaly(AnomalyKind.UNMATCHED_RETURN, event, category)
            return
        self._close(stack.pop(), event.timestamp)

        if event.stack_pointer is None:
            return
        # Frames whose entry stack pointer sits at or below the returning one
        # were unwound by this same return.
        unwound_to = event.stack_pointer + RETURN_ADDRESS_SIZE
        while True:
            top = stack.top()
            if (
                top is None
                or top.source is not IntervalSource.AUTOMATIC_CALL
                or top.stack_pointer is None
                or top.stack_pointer > unwound_to
            ):
                break
            frame = stack.pop()
            self._close(frame, event.timestamp)
            self._anomaly(AnomalyKind.UNWOUND_FRAME, event, category, frame.label)

    def _on_interrupt_enter(self, event: RawEvent) -> None:
        interval = Interval(
            label=self._label(event.address),
            category=INTERRUPTS,
            source=IntervalSource.INTERRUPT,
            start_time=event.timestamp,
            address=event.address,
            stack_pointer=event.stack_pointer,
        )
        self.stack(INTERRUPTS).push(self._open(interval))

    def _on_interrupt_exit(self, event: RawEvent) -> None:
        stack = self.stack(INTERRUPTS)
        if not stack.interrupt_depth():
            self._anomaly(AnomalyKind.UNMATCHED_INTERRUPT_EXIT, event, INTERRUPTS)
            return
        while True:
            frame = stack.pop()
            self._close(frame, event.timestamp)
            if frame.source is IntervalSource.INTERRUPT:
                break
            self._anomaly(AnomalyKind.UNWOUND_FRAME, event, INTERRUPTS, frame.label)

    def _on_breakpoint(self, event: RawEvent) -> None:
        address = event.address
        for rule in self._exits.get(address, ()):
            interval = self.open_rules.pop(rule.rule_id, None)
            if interval is not None:
                self._close(interval, event.timestamp)
        for rule in self._entries.get(address, ()):
            if rule.rule_id in self.open_rules:
                continue
            interval = Interval(
                label=rule.name,
                category=rule.category,
                source=IntervalSource.MANUAL_RULE,
                start_time=event.timestamp,
                address=address,
                rule_id=rule.rule_id,
            )
            self.open_rules[rule.rule_id] = self._open(interval)

    def _on_vblank(self, event: RawEvent) -> None:
        if self.mark_vblank:
            self.instants.append(Instant("VInt", INTERRUPTS, event.timestamp))

    # ------------------------------------------------------------------ #
    # Driving
    # ------------------------------------------------------------------ #
    def feed(self, event: RawEvent) -> None:
        """Apply one event. Events must arrive in non-decreasing time order."""
        if self._last_timestamp is not None and event.timestamp < self._last_timestamp:
            raise MalformedTraceError(
                f"timestamp went backwards from {self._last_timestamp} to {event.timestamp}",
                offset=event.offset,
                index=event.index if event.index is not None else self._event_index,
            )
        self._last_timestamp = event.timestamp

        kind = event.kind
        if kind is EventKind.CALL:
            self._on_call(event)
        elif kind is EventKind.RETURN:
            self._on_return(event)
        elif kind is EventKind.INTERRUPT_ENTER:
            self._on_interrupt_enter(event)
        elif kind is EventKind.INTERRUPT_EXIT:
            self._on_interrupt_exit(event)
        elif kind is EventKind.BREAKPOINT_HIT:
            self._on_breakpoint(event)
        elif kind is EventKind.VBLANK_INTERRUPT:
            self._on_vblank(event)
        self._event_index += 1

    def finish(self) -> Reconstruction:
        """Force-close everything still open and return the result."""
        end_time = self._last_timestamp
        if end_time is not None:
            leftovers: List[Interval] = []
            for stack in self.stacks.values():
                while stack:
                    leftovers.append(stack.pop())
            leftovers.extend(
                self.open_rules[rule_id] for rule_id in sorted(self.open_rules)
            )
            self.open_rules.clear()
            for interval in leftovers:
                self._close(interval, end_time, synthetic=True)
                self.diagnostics.record(
                    Anomaly(
                        AnomalyKind.SYNTHETIC_CLOSE,
                        end_time,
                        interval.category,
                        interval.label,
                    )
                )
                logger.debug(
                    "Force-closed %r on %s at cycle %d",
                    interval.label,
                    interval.category,
                    end_time,
                )
            if leftovers:
                logger.warning(
                    "%d intervals were still open at the end of the trace",
                    len(leftovers),
                )

        categories = {MAIN_THREAD: 0, INTERRUPTS: 1}
        categories.update(self.rules.categories)
        return Reconstruction(
            intervals=sorted(self._closed, key=lambda i: i.seq),
            transitions=self.transitions,
            instants=self.instants,
            diagnostics=self.diagnostics,
            categories=categories,
            end_time=end_time,
        )

    def run(self, events: Iterable[RawEvent]) -> Reconstruction:
        for event in events:
            self.feed(event)
        return self.finish()


def reconstruct(
    events: Iterable[RawEvent],
    rules: Optional[RuleTable] = None,
    symbols: Optional[SymbolTable] = None,
    *,
    mark_vblank: bool = True,
) -> Reconstruction:
    """Run a fresh engine over ``events``."""
    return ReconstructionEngine(rules, symbols, mark_vblank=mark_vblank).run(events)
