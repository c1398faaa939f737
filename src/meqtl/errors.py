"""Exception taxonomy for meqtl.

Input, alignment and configuration problems are detected before any
pair is tested and always abort the run. Numeric problems with a single
feature row are recovered by the engine (the row's pairs are skipped and
counted); rank-deficient covariates are fatal. Output sink failures abort
the scan mid-way and name the partial outputs left behind.
"""


class MeqtlError(Exception):
    """Base class for all meqtl errors."""


class InputFormatError(MeqtlError, ValueError):
    """Malformed input row, wrong column count or unparsable numeric token."""


class AlignmentError(MeqtlError, ValueError):
    """Sample identifiers or their order differ across input matrices."""


class ConfigError(MeqtlError, ValueError):
    """Invalid threshold, radius, chunk size or model name."""


class NumericError(MeqtlError, ArithmeticError):
    """Degenerate numeric input (rank-deficient covariates, zero variance)."""


class SinkIOError(MeqtlError, OSError):
    """An output sink could not be opened, written or finalized.

    Attributes:
        partial_outputs: Paths of outputs left incomplete by the failure.
    """

    def __init__(self, message: str, partial_outputs: list | None = None):
        super().__init__(message)
        self.partial_outputs = list(partial_outputs or [])


class ScanAborted(MeqtlError):
    """The scan was cancelled between chunk-pair evaluations.

    Records already written to the spool files are complete; the set of
    records is not. ``partial_outputs`` lists the spool files left behind.
    """

    def __init__(self, message: str, partial_outputs: list | None = None):
        super().__init__(message)
        self.partial_outputs = list(partial_outputs or [])
