class BatchGradError(Exception):
    """Base class for every error raised by :mod:`batchgrad`."""


class DtypeError(BatchGradError, TypeError):
    """An input has a dtype kind the operation does not support."""


class DimensionError(BatchGradError, ValueError):
    """An input has a shape or size incompatible with the operation."""


class BatchNormStateError(BatchGradError, RuntimeError):
    """
    Batch-norm backward ran without a usable forward state.

    Raised when the state produced by the forward pass is missing, or when
    the state of one forward call is consumed by a second backward call.
    This is a programming error, not a recoverable condition: the mean and
    inverse standard deviation are never recomputed from ``x``.
    """


class GradientError(BatchGradError, RuntimeError):
    """Misuse of the autograd engine."""
