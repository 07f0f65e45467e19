import logging

import pytest

from mdprof.events import (
    HEADER_SIZE,
    TAG_ADJUST_CYCLES,
    TAG_HINT,
    TAG_INTERRUPT_ENTER,
    TAG_INTERRUPT_EXIT,
    TAG_MANUAL_BREAKPOINT,
    TAG_SUBROUTINE_ENTER,
    TAG_SUBROUTINE_EXIT,
    TAG_VINT,
    EventKind,
    MalformedTraceError,
    decode_trace,
    encode_header,
    parse_header,
    read_trace,
)


def test_header_fields():
    header = parse_header(encode_header(clock_hz=53_203_424, m68k_divider=7))
    assert header.version == 1
    assert header.clock_hz == 53_203_424
    assert header.m68k_divider == 7


def test_short_header_is_malformed():
    with pytest.raises(MalformedTraceError):
        parse_header(b"MDP\x01")


def test_version_mismatch_only_warns(caplog):
    with caplog.at_level(logging.WARNING, logger="mdprof.events"):
        header = parse_header(encode_header(version=9))
    assert header.version == 9
    assert "version 9" in caplog.text


def test_decodes_every_record_kind(mdp_bytes):
    data = mdp_bytes(
        [
            (TAG_SUBROUTINE_ENTER, 10, 0xFFFE00, 0x1000),
            (TAG_INTERRUPT_ENTER, 12, 0xFFFDF0, 0x2000),
            (TAG_VINT, 12, 0xFFFDF0, None),
            (TAG_HINT, 13, 0xFFFDF0, None),
            (TAG_INTERRUPT_EXIT, 14, 0xFFFDF0, None),
            (TAG_MANUAL_BREAKPOINT, 20, 0xFFFE00, 0x3000),
            (TAG_SUBROUTINE_EXIT, 30, 0xFFFDFC, None),
        ]
    )
    _, events = decode_trace(data)
    events = list(events)

    assert [(e.kind, e.timestamp, e.address) for e in events] == [
        (EventKind.CALL, 10, 0x1000),
        (EventKind.INTERRUPT_ENTER, 12, 0x2000),
        (EventKind.VBLANK_INTERRUPT, 12, 0),
        (EventKind.HBLANK_INTERRUPT, 13, 0),
        (EventKind.INTERRUPT_EXIT, 14, 0),
        (EventKind.BREAKPOINT_HIT, 20, 0x3000),
        (EventKind.RETURN, 30, 0),
    ]
    assert events[0].stack_pointer == 0xFFFE00
    assert events[0].offset == HEADER_SIZE
    assert events[1].offset == HEADER_SIZE + 13
    assert [e.index for e in events] == list(range(7))


def test_adjust_cycles_extends_the_counter(mdp_bytes):
    data = mdp_bytes(
        [
            (TAG_SUBROUTINE_ENTER, 0xFFFFFFF0, 0, 0x1000),
            (TAG_ADJUST_CYCLES, 0xFFFFFFFF, 0, None),
            (TAG_SUBROUTINE_EXIT, 0xFFFFFFF5, 0, None),
        ]
    )
    _, events = decode_trace(data)
    events = list(events)

    assert [e.timestamp for e in events] == [0xFFFFFFF0, 0xFFFFFFFF + 0xFFFFFFF5]
    assert events[1].index == 2


def test_unknown_tag_is_fatal(mdp_bytes):
    data = mdp_bytes([(TAG_SUBROUTINE_EXIT, 1, 0, None)]) + bytes([42]) + bytes(8)
    _, events = decode_trace(data)
    with pytest.raises(MalformedTraceError) as excinfo:
        list(events)
    assert excinfo.value.offset == HEADER_SIZE + 9
    assert excinfo.value.index == 1
    assert "unknown record tag 42" in str(excinfo.value)


@pytest.mark.parametrize("cut", [1, 5, 9, 12])
def test_truncated_record_is_fatal(mdp_bytes, cut):
    data = mdp_bytes([(TAG_SUBROUTINE_ENTER, 1, 0, 0x1000)])
    _, events = decode_trace(data[: HEADER_SIZE + cut])
    with pytest.raises(MalformedTraceError) as excinfo:
        list(events)
    assert excinfo.value.index == 0


def test_timestamp_regression_is_fatal(mdp_bytes):
    data = mdp_bytes(
        [
            (TAG_SUBROUTINE_ENTER, 50, 0, 0x1000),
            (TAG_SUBROUTINE_EXIT, 40, 0, None),
        ]
    )
    _, events = decode_trace(data)
    with pytest.raises(MalformedTraceError, match="backwards"):
        list(events)


def test_events_are_decoded_lazily(mdp_bytes):
    data = mdp_bytes([(TAG_SUBROUTINE_EXIT, 1, 0, None)]) + bytes([42])
    _, events = decode_trace(data)
    assert next(events).kind is EventKind.RETURN
    with pytest.raises(MalformedTraceError):
        next(events)


def test_read_trace_from_file(tmp_path, mdp_bytes):
    path = tmp_path / "capture.mdp"
    path.write_bytes(mdp_bytes([(TAG_SUBROUTINE_ENTER, 5, 0, 0x200)], clock_hz=1234))
    header, events = read_trace(path)
    assert header.clock_hz == 1234
    assert [e.address for e in events] == [0x200]


def test_read_trace_rejects_truncated_header(tmp_path):
    path = tmp_path / "short.mdp"
    path.write_bytes(b"MDP\x01" + bytes(10))
    with pytest.raises(MalformedTraceError):
        read_trace(path)


def test_empty_body_yields_nothing():
    _, events = decode_trace(encode_header())
    assert list(events) == []


def test_read_trace_closes_file_when_exhausted(tmp_path, mdp_bytes):
    path = tmp_path / "capture.mdp"
    path.write_bytes(mdp_bytes([(TAG_SUBROUTINE_EXIT, 1, 0, None)]))
    _, events = read_trace(path)

    assert not events.closed
    assert len(list(events)) == 1
    assert events.closed


def test_read_trace_closes_file_on_decode_error(tmp_path, mdp_bytes):
    path = tmp_path / "capture.mdp"
    path.write_bytes(mdp_bytes([]) + bytes([42]) + bytes(8))
    _, events = read_trace(path)

    with pytest.raises(MalformedTraceError):
        next(events)
    assert events.closed


def test_unread_trace_can_be_closed(tmp_path, mdp_bytes):
    path = tmp_path / "capture.mdp"
    path.write_bytes(mdp_bytes([(TAG_SUBROUTINE_EXIT, 1, 0, None)]))
    _, events = read_trace(path)

    events.close()
    assert events.closed
    assert list(events) == []
