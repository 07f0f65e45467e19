"""Runtime configuration for trace conversion."""

import os
from typing import Optional


class ProfilerConfig:
    """Configuration for trace conversion.

    Values can be set via environment variables or programmatically;
    programmatic settings win over the environment, which wins over defaults.
    """

    # Environment variable names
    ENV_OUTPUT_FORMAT = "MDPROF_OUTPUT_FORMAT"
    ENV_CLOCK_HZ = "MDPROF_CLOCK_HZ"
    ENV_DISPLAY_TIME_UNIT = "MDPROF_DISPLAY_TIME_UNIT"
    ENV_MARK_VBLANK = "MDPROF_MARK_VBLANK"

    OUTPUT_FORMATS = ("json", "perfetto")

    # Default values
    DEFAULT_OUTPUT_FORMAT = "json"
    DEFAULT_DISPLAY_TIME_UNIT = "ms"

    _output_format: Optional[str] = None
    _clock_hz: Optional[float] = None
    _display_time_unit: Optional[str] = None
    _mark_vblank: Optional[bool] = None

    @classmethod
    def get_output_format(cls) -> str:
        """Return ``json`` or ``perfetto``.

        Raises:
            ValueError: if the environment names an unknown format
        """
        if cls._output_format:
            return cls._output_format
        env_val = os.environ.get(cls.ENV_OUTPUT_FORMAT, "").strip().lower()
        if not env_val:
            return cls.DEFAULT_OUTPUT_FORMAT
        if env_val not in cls.OUTPUT_FORMATS:
            raise ValueError(
                f"{cls.ENV_OUTPUT_FORMAT}={env_val!r} is not one of {cls.OUTPUT_FORMATS}"
            )
        return env_val

    @classmethod
    def set_output_format(cls, output_format: str) -> None:
        output_format = output_format.lower()
        if output_format not in cls.OUTPUT_FORMATS:
            raise ValueError(f"unknown output format {output_format!r}")
        cls._output_format = output_format

    @classmethod
    def get_clock_hz(cls, header_clock_hz: Optional[float] = None) -> Optional[float]:
        """Clock used to turn cycles into time.

        Checks in order:
        1. Programmatically set rate
        2. MDPROF_CLOCK_HZ environment variable
        3. The rate recorded in the trace header, if any
        """
        if cls._clock_hz:
            return cls._clock_hz
        env_val = os.environ.get(cls.ENV_CLOCK_HZ)
        if env_val:
            try:
                value = float(env_val)
            except ValueError:
                raise ValueError(f"{cls.ENV_CLOCK_HZ}={env_val!r} is not a number")
            if value > 0:
                return value
        if header_clock_hz:
            return float(header_clock_hz)
        return None

    @classmethod
    def set_clock_hz(cls, clock_hz: float) -> None:
        if clock_hz <= 0:
            raise ValueError(f"clock rate must be positive, got {clock_hz}")
        cls._clock_hz = float(clock_hz)

    @classmethod
    def get_display_time_unit(cls) -> str:
        if cls._display_time_unit:
            return cls._display_time_unit
        return os.environ.get(cls.ENV_DISPLAY_TIME_UNIT) or cls.DEFAULT_DISPLAY_TIME_UNIT

    @classmethod
    def set_display_time_unit(cls, unit: str) -> None:
        cls._display_time_unit = unit

    @classmethod
    def mark_vblank(cls) -> bool:
        """Whether VInt markers are emitted on the Interrupts track."""
        if cls._mark_vblank is not None:
            return cls._mark_vblank
        env_val = os.environ.get(cls.ENV_MARK_VBLANK, "").lower()
        if env_val in ("0", "false", "no", "off"):
            return False
        return True

    @classmethod
    def set_mark_vblank(cls, enabled: bool) -> None:
        cls._mark_vblank = bool(enabled)

    @classmethod
    def reset(cls) -> None:
        """Reset configuration to defaults."""
        cls._output_format = None
        cls._clock_hz = None
        cls._display_time_unit = None
        cls._mark_vblank = None
