import json

from mdprof.cli import MdprofCLI
from mdprof.events import TAG_INTERRUPT_ENTER, TAG_SUBROUTINE_ENTER, TAG_SUBROUTINE_EXIT

RECORDS = [
    (TAG_SUBROUTINE_ENTER, 10, 0xFFFE00, 0x200),
    (TAG_SUBROUTINE_EXIT, 20, 0xFFFDFC, None),
    (TAG_INTERRUPT_ENTER, 30, 0xFFFDF0, 0x2000),
]


def run(*argv):
    _, retcode = MdprofCLI.run(["mdprof", *argv], exit=False)
    return retcode


def test_convert_writes_next_to_trace(project_files, capsys):
    trace, symbols, _ = project_files(RECORDS)

    assert run("convert", "-s", str(symbols), str(trace)) == 0

    output = trace.with_suffix(".json")
    data = json.loads(output.read_text())
    names = [e["name"] for e in data["traceEvents"] if e["ph"] == "X"]
    assert names == ["main", "vblank_handler"]

    out = capsys.readouterr().out
    assert "Generated 2 intervals in" in out
    assert f"of json to {output}" in out
    assert "Anomalies: 1 synthetic close" in out


def test_convert_perfetto_with_explicit_output(tmp_path, project_files, capsys):
    trace, symbols, intervals = project_files(RECORDS, "main,vblank_handler,Frame\n")
    output = tmp_path / "custom.pftrace"

    retcode = run(
        "convert",
        "-s",
        str(symbols),
        "-i",
        str(intervals),
        "-f",
        "perfetto",
        "-o",
        str(output),
        str(trace),
    )

    assert retcode == 0
    assert output.stat().st_size > 0
    assert "of perfetto to" in capsys.readouterr().out


def test_convert_reports_malformed_trace(project_files, capsys):
    trace, symbols, _ = project_files(RECORDS)
    with open(trace, "ab") as f:
        f.write(b"\x01\x00")

    assert run("convert", "-s", str(symbols), str(trace)) == 1
    assert "Error: record truncated" in capsys.readouterr().err
    assert not trace.with_suffix(".json").exists()


def test_convert_requires_symbols(project_files):
    trace, _, _ = project_files(RECORDS)
    assert run("convert", str(trace)) == 2


def test_breakpoints_command(tmp_path, project_files, capsys):
    _, symbols, intervals = project_files(RECORDS, "update_sprites,draw_hud\n")
    output = tmp_path / "breakpoints.bin"

    retcode = run(
        "breakpoints", "-s", str(symbols), "-i", str(intervals), "-o", str(output)
    )

    assert retcode == 0
    assert output.read_bytes() == bytes.fromhex("00100000" "00110000")
    assert f"Wrote 2 breakpoint addresses to {output}" in capsys.readouterr().out


def test_no_command_prints_help():
    assert run() == 1
