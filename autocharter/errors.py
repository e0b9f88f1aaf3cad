"""
Error taxonomy for the chart generator.

Every error carries the pipeline stage that raised it and the process
exit code the CLI reports for it.
"""

from typing import Optional


class ChartGenError(Exception):
    """Base class for all chart generator failures."""

    exit_code = 1
    default_stage = "pipeline"

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        self.stage = stage or self.default_stage
        super().__init__(f"[{self.stage}] {message}")

    def __reduce__(self):
        # Rebuild from the raw message so worker errors unpickle intact
        return (self.__class__, (self.message, self.stage))


class InvalidParameter(ChartGenError):
    """Bad window/hop/sensitivity/... configuration (validated before analysis)."""

    exit_code = 2
    default_stage = "config"


class InputIOError(ChartGenError):
    """The input file could not be read."""

    exit_code = 3
    default_stage = "decode"


class UnsupportedFormat(ChartGenError):
    """The container or codec is not one we decode."""

    exit_code = 4
    default_stage = "decode"


class DecodeError(ChartGenError):
    """Corrupt or truncated audio data."""

    exit_code = 5
    default_stage = "decode"


class InsufficientSignal(ChartGenError):
    """Too little signal to estimate a tempo (recoverable with a default BPM)."""

    exit_code = 6
    default_stage = "beat"


class EmptySpectrogram(InsufficientSignal):
    """The spectrogram has zero frames."""

    default_stage = "onset"


class ChartFormatError(ChartGenError):
    """A chart document is malformed or cannot be written."""

    exit_code = 7
    default_stage = "serialize"
