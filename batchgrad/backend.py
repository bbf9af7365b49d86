import logging
from typing import Any, Callable, Dict, Iterable, Tuple

logger = logging.getLogger(__name__)

DEVICES: Tuple[str, ...] = ("cpu", "cuda")


class OpRegistry:
    """
    Per-device table of numeric kernel implementations.

    Kernels are registered under ``(device, name)``. Callers pass tensors that
    are already detached from the graph; a kernel never records graph nodes,
    only the differentiable operator around the call does.

    Examples
    --------
    >>> registry = OpRegistry()
    >>> @registry.register("scale")
    ... def scale(x, out):
    ...     out.copy_from(x * 2)
    >>> registry.call_op("cpu", "scale", x, out)
    """
    def __init__(self) -> None:
        self._ops: Dict[Tuple[str, str], Callable[..., Any]] = {}

    def register(self, name: str, devices: Iterable[str] = DEVICES) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering ``fn`` as ``name`` for each of ``devices``."""
        def decorator(fn):
            for device in devices:
                self._ops[(device, name)] = fn
            return fn
        return decorator

    def get(self, device: str, name: str) -> Callable[..., Any]:
        try:
            return self._ops[(device, name)]
        except KeyError:
            raise KeyError(f"No implementation of {name!r} registered for device {device!r}") from None

    def call_op(self, device: str, name: str, *args: Any, **kwargs: Any) -> Any:
        fn = self.get(device, name)
        logger.debug("dispatching %s on %s", name, device)
        return fn(*args, **kwargs)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._ops


OP_REGISTRY = OpRegistry()
"""OpRegistry: The registry the public operators dispatch through."""
