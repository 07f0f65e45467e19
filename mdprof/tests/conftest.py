"""Shared pytest fixtures for mdprof tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

import pytest
from retrobus_perfetto.proto import perfetto_pb2

from mdprof.config import ProfilerConfig
from mdprof.events import encode_header, encode_record
from mdprof.symbols import SymbolTable

# (tag, cycle, stack_pointer, payload)
Record = Tuple[int, int, int, Optional[int]]

NM_SYMBOLS = """\
00000200 T main
00001000 T update_sprites
00001100 T draw_hud
00002000 T vblank_handler
00003000 t mdp_label_physics_a
00003010 t mdp_label_physics_b
00003100 t physics_end
"""


@pytest.fixture(autouse=True)
def reset_config(monkeypatch: pytest.MonkeyPatch):
    for name in (
        ProfilerConfig.ENV_OUTPUT_FORMAT,
        ProfilerConfig.ENV_CLOCK_HZ,
        ProfilerConfig.ENV_DISPLAY_TIME_UNIT,
        ProfilerConfig.ENV_MARK_VBLANK,
    ):
        monkeypatch.delenv(name, raising=False)
    ProfilerConfig.reset()
    yield
    ProfilerConfig.reset()


@pytest.fixture
def symbols() -> SymbolTable:
    return SymbolTable(
        [
            (0x200, "main"),
            (0x1000, "update_sprites"),
            (0x1100, "draw_hud"),
            (0x2000, "vblank_handler"),
            (0x3000, "mdp_label_physics_a"),
            (0x3010, "mdp_label_physics_b"),
            (0x3100, "physics_end"),
        ]
    )


@pytest.fixture
def mdp_bytes() -> Callable[..., bytes]:
    """Build an in-memory .mdp image from ``(tag, cycle, sp, payload)`` tuples."""

    def build(records: Iterable[Record], clock_hz: int = 1_000_000) -> bytes:
        data = bytearray(encode_header(clock_hz=clock_hz))
        for tag, cycle, stack_pointer, payload in records:
            data += encode_record(tag, cycle, stack_pointer, payload)
        return bytes(data)

    return build


@pytest.fixture
def project_files(tmp_path: Path, mdp_bytes: Callable[..., bytes]):
    """Write a trace, nm symbol file and interval file; return their paths."""

    def write(
        records: List[Record], intervals: str = "", clock_hz: int = 1_000_000
    ) -> Tuple[Path, Path, Optional[Path]]:
        trace = tmp_path / "game.mdp"
        trace.write_bytes(mdp_bytes(records, clock_hz))
        symbols_path = tmp_path / "game.sym"
        symbols_path.write_text(NM_SYMBOLS)
        intervals_path = None
        if intervals:
            intervals_path = tmp_path / "intervals.txt"
            intervals_path.write_text(intervals)
        return trace, symbols_path, intervals_path

    return write


class TrackEvent(NamedTuple):
    track: str
    track_uuid: int
    kind: int
    name: str
    timestamp: int
    annotations: Dict[str, object]


def _interned(packet, field_name: str):
    # Older schemas lack some interned tables.
    if field_name not in packet.interned_data.DESCRIPTOR.fields_by_name:
        return ()
    return getattr(packet.interned_data, field_name)


def read_perfetto_trace(path: Path) -> Tuple[Dict[int, str], List[TrackEvent]]:
    """Decode a native trace into track names and track events.

    Event and annotation names may be interned; both are resolved.
    """
    trace = perfetto_pb2.Trace()
    trace.ParseFromString(Path(path).read_bytes())

    track_names: Dict[int, str] = {}
    event_names: Dict[int, str] = {}
    annotation_names: Dict[int, str] = {}
    events: List[TrackEvent] = []
    for packet in trace.packet:
        if packet.HasField("interned_data"):
            for entry in _interned(packet, "event_names"):
                event_names[entry.iid] = entry.name
            for table in ("debug_annotation_names", "debug_annotation_name"):
                for entry in _interned(packet, table):
                    annotation_names[entry.iid] = entry.name
        if packet.HasField("track_descriptor"):
            desc = packet.track_descriptor
            track_names[desc.uuid] = (
                desc.thread.thread_name or desc.name or desc.process.process_name
            )
        if packet.HasField("track_event"):
            event = packet.track_event
            annotations = {}
            for ann in event.debug_annotations:
                name = ann.name or annotation_names.get(ann.name_iid, "")
                if name:
                    annotations[name] = ann
            events.append(
                TrackEvent(
                    track=track_names.get(event.track_uuid, ""),
                    track_uuid=event.track_uuid,
                    kind=event.type,
                    name=event.name or event_names.get(event.name_iid, ""),
                    timestamp=packet.timestamp,
                    annotations=annotations,
                )
            )
    return track_names, events


@pytest.fixture
def perfetto_trace() -> Callable[[Path], Tuple[Dict[int, str], List[TrackEvent]]]:
    return read_perfetto_trace
