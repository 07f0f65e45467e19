#!/usr/bin/env python3
"""Command line front end: ``mdprof convert`` and ``mdprof breakpoints``."""

import logging
import sys
from pathlib import Path
from typing import Optional

from plumbum import cli  # type: ignore[import-untyped]

from . import __version__
from .config import ProfilerConfig
from .profiler import convert_trace, write_breakpoint_file

logger = logging.getLogger(__name__)

# MalformedTraceError, SymbolFileError and IntervalDefinitionError are ValueErrors.
_USER_ERRORS = (ValueError, OSError)

_DEFAULT_SUFFIX = {"json": ".json", "perfetto": ".perfetto-trace"}


class MdprofCLI(cli.Application):
    """Turns Mega Drive emulator execution traces into Perfetto/Chrome traces."""

    PROGNAME = "mdprof"
    VERSION = __version__

    verbose = cli.Flag(["-v", "--verbose"], help="Enable debug logging")

    def main(self, *args: str) -> Optional[int]:
        logging.basicConfig(
            level=logging.DEBUG if self.verbose else logging.INFO,
            format="%(levelname)s %(name)s: %(message)s",
        )
        if args:
            print(f"Unknown command {args[0]!r}", file=sys.stderr)
            return 1
        if not self.nested_command:
            self.help()
            return 1
        return None


@MdprofCLI.subcommand("convert")
class ConvertCommand(cli.Application):
    """Convert a recorded .mdp trace into a trace viewer file."""

    symbols = cli.SwitchAttr(
        ["-s", "--symbols"],
        cli.ExistingFile,
        mandatory=True,
        help="Symbol file (asm68k, AS or nm format)",
    )
    intervals = cli.SwitchAttr(
        ["-i", "--intervals"], cli.ExistingFile, help="Manual interval definitions"
    )
    output = cli.SwitchAttr(
        ["-o", "--output"], str, help="Output path (default: next to the trace)"
    )
    output_format = cli.SwitchAttr(
        ["-f", "--format"],
        cli.Set(*ProfilerConfig.OUTPUT_FORMATS),
        help="Output format (default: $MDPROF_OUTPUT_FORMAT or json)",
    )
    clock_hz = cli.SwitchAttr(
        ["--clock-hz"], float, help="Override the master clock rate from the header"
    )

    def main(self, trace: cli.ExistingFile) -> int:
        trace_path = Path(str(trace))
        try:
            output_format = (
                self.output_format.lower()
                if self.output_format
                else ProfilerConfig.get_output_format()
            )
            output = (
                Path(self.output)
                if self.output
                else trace_path.with_suffix(_DEFAULT_SUFFIX[output_format])
            )
            result = convert_trace(
                trace_path,
                str(self.symbols),
                output,
                str(self.intervals) if self.intervals else None,
                output_format=output_format,
                clock_hz=self.clock_hz,
            )
        except _USER_ERRORS as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        reconstruction = result.reconstruction
        print(
            f"Generated {len(reconstruction.intervals)} intervals in "
            f"{result.reconstruct_seconds * 1000:.3f} ms"
        )
        size_mb = result.output_path.stat().st_size / 1_000_000
        print(
            f"Wrote {size_mb:.1f} MB of {result.output_format} to "
            f"{result.output_path} in {result.write_seconds * 1000:.3f} ms"
        )
        if reconstruction.diagnostics:
            print(f"Anomalies: {reconstruction.diagnostics.summary()}")
        return 0


@MdprofCLI.subcommand("breakpoints")
class BreakpointsCommand(cli.Application):
    """Write the breakpoint address list the emulator needs before recording."""

    symbols = cli.SwitchAttr(
        ["-s", "--symbols"], cli.ExistingFile, mandatory=True, help="Symbol file"
    )
    intervals = cli.SwitchAttr(
        ["-i", "--intervals"],
        cli.ExistingFile,
        mandatory=True,
        help="Manual interval definitions",
    )
    output = cli.SwitchAttr(
        ["-o", "--output"], str, mandatory=True, help="Breakpoint file to write"
    )

    def main(self) -> int:
        try:
            count = write_breakpoint_file(
                str(self.symbols), str(self.intervals), self.output
            )
        except _USER_ERRORS as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Wrote {count} breakpoint addresses to {self.output}")
        return 0


def main() -> None:
    MdprofCLI.run()


if __name__ == "__main__":
    main()
