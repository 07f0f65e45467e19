"""Decoder for ``.mdp`` execution traces recorded by the emulator.

The recorder writes a fixed 256 byte header followed by a stream of packed
records. Each record is::

    tag:u8  cycle:u32  stack_pointer:u32  [payload:u32]

The payload is only present for subroutine enter, interrupt enter and manual
breakpoint records. ``ADJUST_CYCLES`` records extend the 32-bit cycle counter
and never surface as events.
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple, Union

logger = logging.getLogger(__name__)

MDP_VERSION = 1
HEADER_SIZE = 256

# Genesis NTSC master clock, used when no header is available.
DEFAULT_CLOCK_HZ = 53_693_175

TAG_SUBROUTINE_ENTER = 0
TAG_SUBROUTINE_EXIT = 1
TAG_INTERRUPT_ENTER = 2
TAG_INTERRUPT_EXIT = 3
TAG_HINT = 4
TAG_VINT = 5
TAG_ADJUST_CYCLES = 6
TAG_MANUAL_BREAKPOINT = 7

_RECORD_HEAD = struct.Struct("<BII")
_PAYLOAD = struct.Struct("<I")
_HEADER_CLOCKS = struct.Struct("<II")


class MalformedTraceError(ValueError):
    """Raised when the recorded trace cannot be decoded."""

    def __init__(
        self, message: str, *, offset: Optional[int] = None, index: Optional[int] = None
    ) -> None:
        context = []
        if offset is not None:
            context.append(f"byte offset {offset}")
        if index is not None:
            context.append(f"record {index}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)
        self.offset = offset
        self.index = index


class EventKind(Enum):
    """Kinds of execution events found in a trace."""

    CALL = "call"
    RETURN = "return"
    INTERRUPT_ENTER = "interrupt_enter"
    INTERRUPT_EXIT = "interrupt_exit"
    BREAKPOINT_HIT = "breakpoint_hit"
    HBLANK_INTERRUPT = "hint"
    VBLANK_INTERRUPT = "vint"


_TAG_KINDS = {
    TAG_SUBROUTINE_ENTER: EventKind.CALL,
    TAG_SUBROUTINE_EXIT: EventKind.RETURN,
    TAG_INTERRUPT_ENTER: EventKind.INTERRUPT_ENTER,
    TAG_INTERRUPT_EXIT: EventKind.INTERRUPT_EXIT,
    TAG_HINT: EventKind.HBLANK_INTERRUPT,
    TAG_VINT: EventKind.VBLANK_INTERRUPT,
    TAG_MANUAL_BREAKPOINT: EventKind.BREAKPOINT_HIT,
}

_TAGS_WITH_PAYLOAD = frozenset(
    (TAG_SUBROUTINE_ENTER, TAG_INTERRUPT_ENTER, TAG_MANUAL_BREAKPOINT)
)


@dataclass(frozen=True)
class RawEvent:
    """One decoded trace record."""

    timestamp: int
    kind: EventKind
    address: int = 0
    stack_pointer: Optional[int] = None
    offset: Optional[int] = None
    index: Optional[int] = None


@dataclass(frozen=True)
class TraceHeader:
    """Fields of the fixed-size ``.mdp`` header."""

    version: int
    clock_hz: int
    m68k_divider: int


def parse_header(data: bytes) -> TraceHeader:
    """Decode the fixed header from the first ``HEADER_SIZE`` bytes."""
    if len(data) < HEADER_SIZE:
        raise MalformedTraceError(
            f"trace header truncated: expected {HEADER_SIZE} bytes, got {len(data)}",
            offset=len(data),
        )
    version = data[3]
    if version != MDP_VERSION:
        logger.warning(
            "Trace uses mdp format version %d but this tool reads version %d",
            version,
            MDP_VERSION,
        )
    clock_hz, divider = _HEADER_CLOCKS.unpack_from(data, 4)
    return TraceHeader(version=version, clock_hz=clock_hz, m68k_divider=divider)


def _read_exact(stream: BinaryIO, size: int, offset: int, index: int) -> bytes:
    chunk = stream.read(size)
    if len(chunk) != size:
        raise MalformedTraceError(
            f"record truncated: needed {size} bytes, got {len(chunk)}",
            offset=offset,
            index=index,
        )
    return chunk


def iter_events(stream: BinaryIO, *, base_offset: int = HEADER_SIZE) -> Iterator[RawEvent]:
    """Lazily decode records from ``stream`` positioned just after the header.

    Decoding stops at a clean end of stream. Truncated records, unknown tags and
    timestamps that go backwards raise :class:`MalformedTraceError`.
    """
    offset = base_offset
    index = 0
    cycle_offset = 0
    last_timestamp: Optional[int] = None

    while True:
        head = stream.read(_RECORD_HEAD.size)
        if not head:
            return
        if len(head) != _RECORD_HEAD.size:
            raise MalformedTraceError(
                f"record truncated: needed {_RECORD_HEAD.size} bytes, got {len(head)}",
                offset=offset,
                index=index,
            )
        record_offset = offset
        tag, cycle32, stack_pointer = _RECORD_HEAD.unpack(head)
        offset += _RECORD_HEAD.size

        if tag == TAG_ADJUST_CYCLES:
            cycle_offset += cycle32
            index += 1
            continue

        kind = _TAG_KINDS.get(tag)
        if kind is None:
            raise MalformedTraceError(
                f"unknown record tag {tag}", offset=record_offset, index=index
            )

        address = 0
        if tag in _TAGS_WITH_PAYLOAD:
            (address,) = _PAYLOAD.unpack(
                _read_exact(stream, _PAYLOAD.size, offset, index)
            )
            offset += _PAYLOAD.size

        timestamp = cycle_offset + cycle32
        if last_timestamp is not None and timestamp < last_timestamp:
            raise MalformedTraceError(
                f"timestamp went backwards from {last_timestamp} to {timestamp}",
                offset=record_offset,
                index=index,
            )
        last_timestamp = timestamp

        yield RawEvent(
            timestamp=timestamp,
            kind=kind,
            address=address,
            stack_pointer=stack_pointer,
            offset=record_offset,
            index=index,
        )
        index += 1


def decode_trace(data: bytes) -> Tuple[TraceHeader, Iterator[RawEvent]]:
    """Decode an in-memory ``.mdp`` image."""
    header = parse_header(data[:HEADER_SIZE])
    stream = io.BytesIO(data)
    stream.seek(HEADER_SIZE)
    return header, iter_events(stream)


class TraceEventReader:
    """Lazy event iterator that owns the open trace file.

    The file is closed when iteration ends, when decoding fails, or on
    :meth:`close`, whichever comes first.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._events = iter_events(stream)

    def __iter__(self) -> TraceEventReader:
        return self

    def __next__(self) -> RawEvent:
        try:
            return next(self._events)
        except Exception:
            self.close()
            raise

    def __enter__(self) -> TraceEventReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._stream.closed

    def close(self) -> None:
        self._events.close()
        self._stream.close()


def read_trace(path: Union[str, Path]) -> Tuple[TraceHeader, TraceEventReader]:
    """Open ``path`` and return its header and a lazy event iterator."""
    stream = open(path, "rb")
    try:
        header = parse_header(stream.read(HEADER_SIZE))
    except Exception:
        stream.close()
        raise
    logger.debug(
        "Opened %s: version=%d clock=%dHz divider=%d",
        path,
        header.version,
        header.clock_hz,
        header.m68k_divider,
    )
    return header, TraceEventReader(stream)


def encode_header(
    clock_hz: int = DEFAULT_CLOCK_HZ, m68k_divider: int = 7, version: int = MDP_VERSION
) -> bytes:
    """Build a header image; the recorder's inverse, used by tests and tools."""
    header = bytearray(HEADER_SIZE)
    header[0:3] = b"MDP"
    header[3] = version
    _HEADER_CLOCKS.pack_into(header, 4, clock_hz, m68k_divider)
    return bytes(header)


def encode_record(
    tag: int, cycle: int, stack_pointer: int = 0, payload: Optional[int] = None
) -> bytes:
    """Pack one record in the recorder's layout."""
    record = _RECORD_HEAD.pack(tag, cycle, stack_pointer)
    if tag in _TAGS_WITH_PAYLOAD:
        record += _PAYLOAD.pack(payload or 0)
    return record

