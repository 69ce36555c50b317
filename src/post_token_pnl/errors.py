"""Domain error taxonomy shared by the analysis components."""


class AnalysisError(Exception):
    """Base exception for wallet analysis errors."""


class InconclusiveError(AnalysisError):
    """A source did not answer in time or returned nothing usable.

    Callers move on to the next fallback; this is never fatal.
    """


class NotFoundError(AnalysisError):
    """The requested entity provably does not exist."""


class InvalidInputError(AnalysisError, ValueError):
    """Malformed address or out-of-range value. Fatal to the single item."""
