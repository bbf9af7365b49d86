import logging
import weakref
from typing import TYPE_CHECKING, Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from batchgrad.errors import GradientError

if TYPE_CHECKING:
    from batchgrad.tensor import Tensor

logger = logging.getLogger(__name__)

_grad_enabled = True
"""bool: Global flag indicating whether automatic differentiation is enabled.

This flag is toggled by the :class:`no_grad`, :class:`enable_grad` and
:class:`set_grad_enabled` context managers. When ``_grad_enabled`` is
``False``, operations on tensors are not recorded in the graph.
"""


def is_grad_enabled() -> bool:
    """Return whether operations are currently recorded for autograd."""
    return _grad_enabled


class set_grad_enabled:
    """
    Context manager that sets gradient recording on or off.

    Parameters
    ----------
    mode : bool
        Recording state inside the block.

    Notes
    -----
    The backward engine runs every backward function inside
    ``set_grad_enabled(create_graph)`` so that gradients are themselves
    differentiable only when a caller asked for it.
    """
    def __init__(self, mode: bool) -> None:
        self.mode = bool(mode)

    def __enter__(self):
        global _grad_enabled
        self.prev = _grad_enabled
        _grad_enabled = self.mode

    def __exit__(self, *args):
        global _grad_enabled
        _grad_enabled = self.prev


class no_grad(set_grad_enabled):
    """
    Context manager that temporarily disables gradient computation.

    Examples
    --------
    >>> with no_grad():
    ...     y = fixed_batch_norm(x, gamma, beta, mean, var)   # no graph recorded

    Notes
    -----
    - This mirrors the behavior of ``torch.no_grad()`` in PyTorch.
    - It is safe to nest ``no_grad`` contexts; the previous state of
      ``_grad_enabled`` is restored upon exit.
    """
    def __init__(self) -> None:
        super().__init__(False)


class enable_grad(set_grad_enabled):
    """Context manager that re-enables gradient recording inside ``no_grad``."""
    def __init__(self) -> None:
        super().__init__(True)


class RetainedInputToken(NamedTuple):
    index: int


class RetainedOutputToken(NamedTuple):
    index: int


BackwardFn = Callable[["BackwardContext"], None]


class Node:
    """
    One recorded differentiable edge of the graph.

    A node links the tensors an operation consumed (``inputs``) to the tensors
    it produced (``outputs``). Outputs are referenced weakly so that recording
    a node never keeps an otherwise dead result alive; outputs a backward
    function needs later are pinned explicitly through
    :meth:`BackwardBuilder.retain_output`.
    """
    def __init__(
        self,
        name: Optional[str],
        inputs: Sequence["Tensor"],
        outputs: Sequence["Tensor"],
        backward_fn: Optional[BackwardFn] = None,
        retained_outputs: Optional[Dict[int, "Tensor"]] = None,
    ) -> None:
        self.name = name
        self.inputs = tuple(inputs)
        self._outputs = tuple(weakref.ref(o) for o in outputs)
        self.backward_fn = backward_fn
        self.retained_outputs = dict(retained_outputs or {})

    @property
    def num_outputs(self) -> int:
        return len(self._outputs)

    def output(self, index: int) -> Optional["Tensor"]:
        return self._outputs[index]()

    def __repr__(self) -> str:
        return f"<Node {self.name or 'op'}: {len(self.inputs)} -> {self.num_outputs}>"


class BackwardContext:
    """
    View of one node handed to its backward function.

    The backward function reads the upstream gradients with
    :meth:`output_grad`, fetches retained tensors by token, and writes one
    gradient per input with :meth:`set_input_grad` (``None`` meaning "no
    contribution").
    """
    def __init__(
        self,
        node: Node,
        output_grads: Sequence[Optional["Tensor"]],
        create_graph: bool,
    ) -> None:
        self._node = node
        self._output_grads = tuple(output_grads)
        self._create_graph = create_graph
        self.input_grads: List[Optional["Tensor"]] = [None] * len(node.inputs)

    def output_grad(self, index: int = 0) -> Optional["Tensor"]:
        """Upstream gradient of output ``index``, or None if it received none."""
        return self._output_grads[index]

    def get_retained_input(self, token: RetainedInputToken) -> "Tensor":
        return self._node.inputs[token.index]

    def get_retained_output(self, token: RetainedOutputToken) -> "Tensor":
        return self._node.retained_outputs[token.index]

    def set_input_grad(self, index: int, grad: Optional["Tensor"]) -> None:
        self.input_grads[index] = grad

    def set_input_grads(self, grads: Sequence[Optional["Tensor"]]) -> None:
        if len(grads) != len(self.input_grads):
            raise GradientError(
                f"Backward of {self._node!r} returned {len(grads)} gradients for {len(self.input_grads)} inputs"
            )
        self.input_grads = list(grads)

    def next_required(self) -> bool:
        """Whether the gradients written here must themselves be differentiable."""
        return self._create_graph


class BackwardBuilder:
    """
    Records a differentiable edge from ``inputs`` to ``outputs``.

    Parameters
    ----------
    name : str
        Name of the operation, used in ``repr`` and log messages.
    inputs : sequence of Tensor
        Tensors the operation is differentiable with respect to.
    outputs : sequence of Tensor
        Tensors the operation produced. They must not be part of a graph yet.

    Examples
    --------
    >>> bb = BackwardBuilder("scale", (x,), (out,))
    >>> if bb.is_required():
    ...     x_tok = bb.retain_input(0)
    ...     def _backward(ctx):
    ...         ctx.set_input_grad(0, ctx.output_grad() * 2)
    ...     bb.define(_backward)
    """
    def __init__(
        self,
        name: str,
        inputs: Sequence["Tensor"],
        outputs: Sequence["Tensor"],
    ) -> None:
        self.name = name
        self._inputs = tuple(inputs)
        self._outputs = tuple(outputs)
        self._retained_outputs: Dict[int, "Tensor"] = {}
        self._defined = False

    def is_required(self) -> bool:
        """True when grad mode is on and any input requires grad."""
        return _grad_enabled and any(t.requires_grad for t in self._inputs)

    def retain_input(self, index: int) -> RetainedInputToken:
        if not 0 <= index < len(self._inputs):
            raise IndexError(f"{self.name!r} has no input {index}")
        return RetainedInputToken(index)

    def retain_output(self, index: int) -> RetainedOutputToken:
        self._retained_outputs[index] = self._outputs[index]
        return RetainedOutputToken(index)

    def define(self, backward_fn: BackwardFn) -> Optional[Node]:
        """
        Attach ``backward_fn`` to the outputs.

        Returns the recorded node, or None when no input requires grad (in
        which case nothing is recorded and the outputs stay detached).

        Raises
        ------
        GradientError
            If called twice on the same builder.
        """
        if self._defined:
            raise GradientError(f"Backward of {self.name!r} is already defined")
        self._defined = True
        if not self.is_required():
            return None

        node = Node(self.name, self._inputs, self._outputs, backward_fn, self._retained_outputs)
        for out in self._outputs:
            out.requires_grad = True
            out._node = node
        logger.debug("recorded %r", node)
        return node


def _topological_order(roots: Sequence["Tensor"]) -> List[Node]:
    visited = set()
    topo = []

    def build_topo(node):
        if node not in visited:
            visited.add(node)
            for t in node.inputs:
                if t._node is not None:
                    build_topo(t._node)
            topo.append(node)

    for t in roots:
        if t._node is not None:
            build_topo(t._node)
    return topo


def _run(
    outputs: Sequence["Tensor"],
    grad_outputs: Sequence["Tensor"],
    create_graph: bool,
) -> Tuple[Dict[int, "Tensor"], Dict[int, "Tensor"]]:
    """
    Propagate ``grad_outputs`` from ``outputs`` through the recorded graph.

    Returns a pair of dicts keyed by ``id(tensor)``: accumulated gradients and
    the tensors they belong to.
    """
    grads: Dict[int, "Tensor"] = {}
    owners: Dict[int, "Tensor"] = {}

    def accumulate(t, g):
        key = id(t)
        owners[key] = t
        prev = grads.get(key)
        grads[key] = g if prev is None else prev + g

    topo = _topological_order(outputs)

    with set_grad_enabled(create_graph):
        for out, g in zip(outputs, grad_outputs):
            accumulate(out, g)

        for node in reversed(topo):
            out_grads = []
            for i in range(node.num_outputs):
                o = node.output(i)
                out_grads.append(None if o is None else grads.get(id(o)))
            if all(g is None for g in out_grads):
                continue
            if node.backward_fn is None:
                raise GradientError(f"{node!r} has no backward function")

            ctx = BackwardContext(node, out_grads, create_graph)
            node.backward_fn(ctx)

            for t, g in zip(node.inputs, ctx.input_grads):
                if g is None or not t.requires_grad:
                    continue
                if g.shape != t.shape:
                    raise GradientError(
                        f"Backward of {node!r} produced a gradient of shape {g.shape} for an input of shape {t.shape}"
                    )
                accumulate(t, g)

    return grads, owners


def _seed(outputs: Sequence["Tensor"], grad_outputs: Optional[Sequence[Any]]) -> List["Tensor"]:
    from batchgrad.tensor import Tensor

    if grad_outputs is None:
        grad_outputs = [None] * len(outputs)
    if len(grad_outputs) != len(outputs):
        raise GradientError(f"Got {len(grad_outputs)} gradients for {len(outputs)} outputs")

    seeds = []
    for out, g in zip(outputs, grad_outputs):
        if not out.requires_grad:
            raise GradientError("Tensor does not require gradient")
        if g is None:
            g = Tensor.ones_like(out)
        elif not isinstance(g, Tensor):
            g = Tensor(g, device=out.device, dtype=out.dtype)
        if g.shape != out.shape:
            raise GradientError(f"Gradient of shape {g.shape} does not match output of shape {out.shape}")
        seeds.append(g)
    return seeds


def _as_sequence(x: Union["Tensor", Sequence["Tensor"]]) -> Tuple["Tensor", ...]:
    from batchgrad.tensor import Tensor

    return (x,) if isinstance(x, Tensor) else tuple(x)


def backward(
    tensors: Union["Tensor", Sequence["Tensor"]],
    grad_tensors: Optional[Sequence[Any]] = None,
    create_graph: bool = False,
) -> None:
    """
    Accumulate gradients of ``tensors`` into the ``.grad`` of every leaf.

    Parameters
    ----------
    tensors : Tensor or sequence of Tensor
        Roots of the backward pass.
    grad_tensors : sequence, optional
        Upstream gradient per root. ``None`` entries default to ones.
    create_graph : bool, default False
        Record the backward computation so that the accumulated gradients can
        be differentiated again.
    """
    outputs = _as_sequence(tensors)
    seeds = _seed(outputs, grad_tensors)
    grads, owners = _run(outputs, seeds, create_graph)

    with set_grad_enabled(create_graph):
        for key, t in owners.items():
            if t._node is None and t.requires_grad:
                g = grads[key]
                t.grad = g if t.grad is None else t.grad + g


def grad(
    outputs: Union["Tensor", Sequence["Tensor"]],
    inputs: Union["Tensor", Sequence["Tensor"]],
    grad_outputs: Optional[Sequence[Any]] = None,
    create_graph: bool = False,
    allow_unused: bool = False,
) -> Tuple[Optional["Tensor"], ...]:
    """
    Compute gradients of ``outputs`` with respect to ``inputs``.

    Unlike :func:`backward`, nothing is written to ``.grad``.

    Parameters
    ----------
    outputs : Tensor or sequence of Tensor
        Differentiated tensors.
    inputs : Tensor or sequence of Tensor
        Tensors to differentiate with respect to.
    grad_outputs : sequence, optional
        Upstream gradient per output; ``None`` entries default to ones.
    create_graph : bool, default False
        If True, the returned gradients are part of a graph and can be
        differentiated again (double backward).
    allow_unused : bool, default False
        If False, an input that receives no gradient raises
        :class:`GradientError`; otherwise its entry is None.

    Returns
    -------
    tuple of Tensor or None
        One gradient per input, in order.
    """
    outputs = _as_sequence(outputs)
    inputs = _as_sequence(inputs)
    seeds = _seed(outputs, grad_outputs)
    grads, _ = _run(outputs, seeds, create_graph)

    result = []
    for i, t in enumerate(inputs):
        g = grads.get(id(t))
        if g is None and not allow_unused:
            raise GradientError(f"Input {i} was not used to compute the outputs; pass allow_unused=True")
        result.append(g)
    return tuple(result)
