"""Exception types for fragbias.

Failures are scoped to the smallest unit of work that can be retried or
skipped independently:

- ConfigurationError halts a run before any fitting begins.
- InsufficientDataError (and RankDeficientError) is reported per
  (model, sample) pair by the fitter.
- DegenerateGeometryError marks transcripts or genes that yield an empty
  or zero result; callers normally see the empty result, not the exception.
"""


class FragbiasError(Exception):
    """Base class for all fragbias errors."""

    pass


class ConfigurationError(FragbiasError, ValueError):
    """Raised when a configuration or model specification is inconsistent."""

    pass


class InsufficientDataError(FragbiasError):
    """Raised when there is too little evidence to estimate a quantity."""

    pass


class RankDeficientError(InsufficientDataError):
    """Raised when a regression design matrix is not of full column rank.

    Attributes:
        rank: Numerical rank of the design matrix.
        n_columns: Number of columns in the design matrix.
    """

    def __init__(self, message: str, rank: int, n_columns: int) -> None:
        super().__init__(message)
        self.rank = rank
        self.n_columns = n_columns


class DegenerateGeometryError(FragbiasError):
    """Raised when a transcript or gene cannot produce any valid fragment."""

    pass
