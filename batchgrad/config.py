import os

DEFAULT_EPS = 2e-5
DEFAULT_DECAY = 0.9

_TRUTHY = {"1", "true", "yes", "on"}

_debug = os.environ.get("BATCHGRAD_DEBUG", "").strip().lower() in _TRUTHY
"""bool: Global flag enabling internal consistency checks.

Initialised from the ``BATCHGRAD_DEBUG`` environment variable and toggled by
:func:`set_debug` or the :class:`debug_mode` context manager. When set, the
normalization kernel asserts the shape invariants of its inputs.
"""


def is_debug() -> bool:
    """Return whether debug checks are enabled."""
    return _debug


def set_debug(flag: bool) -> None:
    """Enable or disable debug checks globally."""
    global _debug
    _debug = bool(flag)


class debug_mode:
    """
    Context manager that temporarily sets the debug flag.

    Examples
    --------
    >>> with debug_mode():
    ...     y = batch_norm(x, gamma, beta, running_mean, running_var)

    Notes
    -----
    Nesting is safe; the previous value is restored on exit.
    """
    def __init__(self, flag: bool = True) -> None:
        self.flag = bool(flag)

    def __enter__(self):
        global _debug
        self.prev = _debug
        _debug = self.flag

    def __exit__(self, *args):
        global _debug
        _debug = self.prev
