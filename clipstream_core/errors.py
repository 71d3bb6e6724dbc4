class ClipstreamError(Exception):
    """Base error for Clipstream."""


class RecoverableError(ClipstreamError):
    """Indicates the operation can be retried safely."""


class PermanentError(ClipstreamError):
    """Indicates the operation should not be retried."""


class ValidationError(ClipstreamError):
    """Input validation failure."""


class DimensionMismatchError(PermanentError):
    """Embedding vectors do not share the expected dimensionality."""


class InvalidTransitionError(ClipstreamError):
    """A processing state change that the state machine does not allow."""
