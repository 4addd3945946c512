"""Error taxonomy for the tempo engine.

An undetermined tempo (bpm 0, confidence 0) is a successful result and has
no exception here.
"""


class TempotapError(Exception):
    """Base class for all engine errors."""


class InvalidInputError(TempotapError, ValueError):
    """Caller error, rejected synchronously before any work is scheduled."""


class AnalysisFailedError(TempotapError):
    """An analysis run could not complete.

    The original exception is kept as ``cause`` (and as ``__cause__`` when
    raised with ``from``).
    """

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class AnalysisCancelledError(TempotapError):
    """Raised inside a run that was superseded or reset mid-flight."""
