from typing import Any, Callable, Iterable, Optional, Literal, Sequence, Tuple, Union

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

from batchgrad import autograd
from batchgrad.autograd import Node, is_grad_enabled

DTypeLike = Any
DimLike = Optional[Union[int, Tuple[int, ...]]]

def _is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    This is safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)

_DeviceStr = Literal["cpu", "cuda"]
def _normalize_device(device: Optional[Union[str, _DeviceStr]]) -> Optional[_DeviceStr]:
    """
    Normalize a device specifier to 'cpu', 'cuda', or None.

    Parameters
    ----------
    device : {None, 'cpu', 'cuda', str}
        Device specifier. If a string starts with 'cuda' (e.g. 'cuda', 'cuda:0'),
        it is normalized to 'cuda'. 'cpu' is preserved. None is returned as None.

    Returns
    -------
    {'cpu', 'cuda', None}
        Normalized device identifier.

    Raises
    ------
    ValueError
        If ``device`` is a string that is neither 'cpu' nor startswith 'cuda'.

    Examples
    --------
    >>> _normalize_device('cuda:1')
    'cuda'
    >>> _normalize_device('gpu')
    Traceback (most recent call last):
        ...
    ValueError: Unknown device spec: 'gpu'
    """
    if device is None:
        return None
    if isinstance(device, str):
        dev = device.lower()
        if dev.startswith("cuda"):
            return "cuda"
        if dev == "cpu":
            return "cpu"
    raise ValueError(f"Unknown device spec: {device!r}")

def _backend_for(device: Optional[str]) -> Any:
    dev = _normalize_device(device) or "cpu"
    if dev == "cuda":
        if not _HAS_CUPY:
            raise RuntimeError("CUDA requested but CuPy is not installed/available.")
        return cp
    return np

def is_float_kind(dtype: DTypeLike) -> bool:
    """Return whether ``dtype`` is a real floating-point dtype."""
    return np.dtype(dtype).kind == "f"

def result_type(*tensors: "Tensor") -> np.dtype:
    """
    Promoted dtype of ``tensors`` under the array library's promotion rules.

    The result is never less precise than any of the inputs, e.g.
    ``float16`` and ``float32`` promote to ``float32``.
    """
    return np.result_type(*(t.dtype for t in tensors))

class Tensor:
    """
    A multi-dimensional array with automatic differentiation.

    This class wraps a NumPy or CuPy array (selected per instance) and
    records a computation graph when gradient tracking is enabled.
    Backpropagation is triggered via :meth:`backward` or
    :func:`batchgrad.autograd.grad`.

    Notes
    -----
    - Backend is chosen per tensor: CPU uses NumPy, CUDA uses CuPy.
    - The dtype of array inputs is preserved. Python scalars and lists default
      to ``float32`` unless ``dtype`` is given.
    - Every backward rule is written with Tensor operations, so gradients can
      be differentiated again when the backward pass runs with
      ``create_graph=True``.
    - ``.grad`` holds a :class:`Tensor` (or None until the first backward).
    """
    def __init__(
        self,
        data: Any,
        _prev: Iterable["Tensor"] = (),
        requires_grad: bool = False,
        device: Optional[str] = None,
        dtype: Optional[DTypeLike] = None,
    ) -> None:
        """
        Construct a tensor from array-like data, selecting NumPy or CuPy as backend.

        Parameters
        ----------
        data : Any
            Array-like input (Python scalar/list, ``numpy.ndarray`` or
            ``cupy.ndarray``). Arrays are wrapped without copying when no dtype
            conversion or device transfer is needed.
        _prev : Iterable[Tensor], optional
            Internal: parent tensors that produced this tensor. When this
            tensor requires grad, a graph node over ``_prev`` is recorded and
            its backward rule is attached through ``_backward``.
        requires_grad : bool, default False
            If True (and global grad mode is enabled), this tensor is tracked
            for automatic differentiation.
        device : {'cpu', 'cuda', 'cuda:0', ...} or None, optional
            Desired device. If None, the device is inferred from ``data``.
        dtype : dtype-like, optional
            Desired dtype.

        Raises
        ------
        RuntimeError
            If ``device`` requests CUDA but CuPy is not installed/available.
        """
        dev = _normalize_device(device)
        if isinstance(data, Tensor):
            data = data.data

        if dev is None:
            backend = cp if _is_cupy_array(data) else np
        else:
            backend = _backend_for(dev)

        if backend is np and _is_cupy_array(data):
            data = cp.asnumpy(data)

        if isinstance(data, backend.ndarray):
            if dtype is not None:
                data = data.astype(dtype, copy=False)
        elif isinstance(data, (np.ndarray, np.generic)):
            data = backend.asarray(data, dtype=dtype)
        else:
            data = backend.asarray(data, dtype=np.float32 if dtype is None else dtype)

        self.backend = backend
        self.data = data
        self.requires_grad = bool(requires_grad) and is_grad_enabled()
        self.grad: Optional["Tensor"] = None

        prev = tuple(_prev)
        self._node: Optional[Node] = Node(None, prev, (self,)) if (self.requires_grad and prev) else None

    @property
    def _backward(self) -> Optional[Callable]:
        return self._node.backward_fn if self._node is not None else None

    @_backward.setter
    def _backward(self, fn: Callable[["Tensor"], Sequence[Optional["Tensor"]]]) -> None:
        """
        Attach a single-output backward rule.

        ``fn`` receives the upstream gradient and returns one gradient per
        entry of ``_prev`` (None for "no contribution"). Nothing is recorded
        when this tensor does not require grad.
        """
        if self._node is None:
            return

        def backward_fn(ctx):
            ctx.set_input_grads(fn(ctx.output_grad()))
        self._node.backward_fn = backward_fn

    @property
    def shape(self) -> Tuple[int, ...]:
        """tuple of int: The tensor's shape."""
        return self.data.shape

    @property
    def dtype(self) -> np.dtype:
        """numpy.dtype: The data type of the tensor."""
        return self.data.dtype

    @property
    def ndim(self) -> int:
        """int: The number of dimensions of the tensor."""
        return self.data.ndim

    @property
    def size(self) -> int:
        """int: Total number of elements in the tensor."""
        return self.data.size

    @property
    def device(self) -> _DeviceStr:
        """str: ``'cuda'`` for CuPy-backed tensors, ``'cpu'`` otherwise."""
        return "cuda" if (_HAS_CUPY and self.backend is cp) else "cpu"

    @property
    def is_leaf(self) -> bool:
        """bool: True if this tensor was not produced by a recorded operation."""
        return self._node is None

    def __add__(self, other: Union["Tensor", Any]) -> "Tensor":
        """
        Elementwise addition with NumPy-style broadcasting.

        Parameters
        ----------
        other : Tensor or array-like
            Value to add. Scalars are converted to a tensor of ``self``'s
            dtype so that they never promote the result.

        Returns
        -------
        Tensor
            The result of ``self + other``.

        Notes
        -----
        Gradients:
        ``dL/dself = unbroadcast(out.grad, self)`` and
        ``dL/dother = unbroadcast(out.grad, other)``.
        """
        other = Tensor._ensure_tensor(other, self)

        requires_grad = self.requires_grad or other.requires_grad
        out = Tensor(self.data + other.data, (self, other), requires_grad=requires_grad)

        def _backward(gout):
            return Tensor._unbroadcast(gout, self), Tensor._unbroadcast(gout, other)
        out._backward = _backward

        return out

    def __sub__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Elementwise subtraction; implemented as ``self + (-other)``."""
        return self + (-Tensor._ensure_tensor(other, self))

    def __mul__(self, other: Union["Tensor", Any]) -> "Tensor":
        """
        Elementwise multiplication with NumPy-style broadcasting.

        Notes
        -----
        Gradients:
        ``dL/dself = unbroadcast(other * out.grad, self)``,
        ``dL/dother = unbroadcast(self * out.grad, other)``.
        Both are Tensor expressions, so the rule is itself differentiable.
        """
        other = Tensor._ensure_tensor(other, self)

        requires_grad = self.requires_grad or other.requires_grad
        out = Tensor(self.data * other.data, (self, other), requires_grad=requires_grad)

        def _backward(gout):
            gself = Tensor._unbroadcast(gout * other, self) if self.requires_grad else None
            gother = Tensor._unbroadcast(gout * self, other) if other.requires_grad else None
            return gself, gother
        out._backward = _backward

        return out

    def __truediv__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Elementwise division; implemented as ``self * other.reciprocal()``."""
        return self * Tensor._ensure_tensor(other, self).reciprocal()

    def __neg__(self) -> "Tensor":
        """Elementwise negation (returns ``-self``)."""
        return self * -1

    def __radd__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Right-hand addition: ``other + self``."""
        return self + other

    def __rsub__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Right-hand subtraction: ``other - self``."""
        return Tensor._ensure_tensor(other, self) - self

    def __rmul__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Right-hand multiplication: ``other * self``."""
        return self * other

    def __rtruediv__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Right-hand division: ``other / self``."""
        return Tensor._ensure_tensor(other, self) / self

    def reciprocal(self) -> "Tensor":
        """
        Elementwise ``1 / self``.

        Notes
        -----
        ``d(1/x)/dx = -1/x**2``, expressed through the output as
        ``-out * out`` so the rule stays differentiable.
        """
        out = Tensor(self.backend.reciprocal(self.data), (self,), requires_grad=self.requires_grad)

        def _backward(gout):
            return (-(gout * out * out),)
        out._backward = _backward

        return out

    def sqrt(self) -> "Tensor":
        """
        Elementwise square root.

        Notes
        -----
        ``d sqrt(x)/dx = 1 / (2 * sqrt(x))``.
        """
        out = Tensor(self.backend.sqrt(self.data), (self,), requires_grad=self.requires_grad)

        def _backward(gout):
            return (gout / (out * 2),)
        out._backward = _backward

        return out

    def sum(
        self,
        dim: DimLike = None,
        keepdim: bool = False,
    ) -> "Tensor":
        """
        Sum of elements along a dimension.

        Parameters
        ----------
        dim : int or tuple of int, optional
            Dimension(s) to reduce. If ``None``, computes the global sum.
            An empty tuple reduces nothing.
        keepdim : bool, default=False
            If True, retains reduced dimensions with length 1.

        Returns
        -------
        Tensor
            The summed value(s).

        Notes
        -----
        The upstream gradient is reshaped to the keep-dims shape and
        broadcast back to the input shape.
        """
        dims = self._normalize_dims(dim)
        out_data = self.backend.sum(self.data, axis=dims, keepdims=keepdim)
        out = Tensor(out_data, (self,), requires_grad=self.requires_grad)
        kept_shape = tuple(1 if i in dims else s for i, s in enumerate(self.shape))

        def _backward(gout):
            return (gout.reshape(*kept_shape).broadcast_to(*self.shape),)
        out._backward = _backward

        return out

    def mean(
        self,
        dim: DimLike = None,
        keepdim: bool = False,
    ) -> "Tensor":
        """
        Compute the mean of elements along a dimension.

        Notes
        -----
        Implemented as ``sum / N`` where ``N`` is the number of elements
        reduced; the gradient therefore distributes ``1/N`` to each element.
        float16 inputs are reduced in float32 and the result cast back, since
        ``N`` itself overflows float16 from 65520 on.
        """
        if self.dtype == np.float16:
            return self.astype(np.float32).mean(dim=dim, keepdim=keepdim).astype(self.dtype)
        out = self.sum(dim=dim, keepdim=keepdim)
        return out / self._reduced_count(dim)

    def var(
        self,
        dim: DimLike = None,
        keepdim: bool = False,
        unbiased: bool = True,
    ) -> "Tensor":
        """
        Compute the variance of elements along a dimension.

        Parameters
        ----------
        dim : int or tuple of int, optional
            Dimension(s) to reduce. If ``None``, all elements.
        keepdim : bool, default=False
            If True, retains reduced dimensions with length 1.
        unbiased : bool, default=True
            If True, divides by ``N - 1`` (``N`` when ``N == 1``), otherwise
            by ``N``.

        Notes
        -----
        Built from ``mean``, subtraction, multiplication and ``sum``, so the
        gradient (of any order) comes from the autograd engine.
        float16 inputs are handled in float32 as in :meth:`mean`.
        """
        if self.dtype == np.float16:
            return self.astype(np.float32).var(dim=dim, keepdim=keepdim, unbiased=unbiased).astype(self.dtype)
        mean = self.mean(dim=dim, keepdim=True)
        diff = self - mean
        out = (diff * diff).sum(dim=dim, keepdim=keepdim)

        count = self._reduced_count(dim)
        divisor = count - 1 if unbiased and count > 1 else count

        return out / divisor

    def reshape(
        self,
        *shape: Union[int, Sequence[int]],
    ) -> "Tensor":
        """
        Return a tensor with the same data but a new shape.

        Parameters
        ----------
        shape : int or tuple of int
            The desired shape, variadic or as a single tuple. At most one
            dimension may be ``-1``.

        Returns
        -------
        Tensor
            ``self`` itself when the shape is unchanged; otherwise a tensor
            whose data is a view of ``self.data`` whenever the backend can
            reshape without copying.
        """
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        out_data = self.data.reshape(shape)
        if out_data.shape == self.shape:
            return self
        out = Tensor(out_data, (self,), requires_grad=self.requires_grad)

        def _backward(gout):
            return (gout.reshape(*self.shape),)
        out._backward = _backward

        return out

    def broadcast_to(self, *shape: int) -> "Tensor":
        """Broadcast to ``shape`` (read-only view); the gradient is summed back."""
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        if tuple(shape) == self.shape:
            return self
        out = Tensor(self.backend.broadcast_to(self.data, shape), (self,), requires_grad=self.requires_grad)

        def _backward(gout):
            return (Tensor._unbroadcast(gout, self),)
        out._backward = _backward

        return out

    def astype(self, dtype: DTypeLike, copy: bool = False) -> "Tensor":
        """
        Cast to ``dtype``.

        Parameters
        ----------
        dtype : dtype-like
            Target dtype.
        copy : bool, default False
            If False and the dtype already matches, ``self`` is returned
            unchanged (same handle, same storage).

        Notes
        -----
        The gradient is cast back to the source dtype.
        """
        dtype = np.dtype(dtype)
        if dtype == self.dtype and not copy:
            return self
        requires_grad = self.requires_grad and is_float_kind(dtype)
        out = Tensor(self.data.astype(dtype), (self,), requires_grad=requires_grad)

        def _backward(gout):
            return (gout.astype(self.dtype),)
        out._backward = _backward

        return out

    def detach(self) -> "Tensor":
        """Return a tensor sharing storage with ``self`` but outside any graph."""
        return Tensor(self.data, device=self.device)

    def copy_from(self, src: Union["Tensor", Any]) -> "Tensor":
        """
        Write ``src`` into this tensor's buffer in place, casting to its dtype.

        This is the only in-place primitive; it is used on freshly allocated
        outputs and on running statistics, never on tensors in a graph.
        """
        value = src.data if isinstance(src, Tensor) else src
        self.data[...] = value
        return self

    def backward(
        self,
        gradient: Optional[Any] = None,
        create_graph: bool = False,
    ) -> None:
        """
        Performs backpropagation through the computation graph, accumulating
        gradients into ``.grad`` of every leaf with ``requires_grad=True``.

        Parameters
        ----------
        gradient : Tensor or array-like, optional
            Gradient of the output with respect to itself. Defaults to
            ``ones_like(self)``, which allows calling ``backward()`` on
            non-scalar tensors, unlike PyTorch.
        create_graph : bool, default False
            If True, the backward computation is recorded so that ``.grad``
            can be differentiated again.

        Raises
        ------
        GradientError
            If the tensor does not require grad.
        """
        autograd.backward(self, None if gradient is None else [gradient], create_graph=create_graph)

    def zero_grad(self) -> None:
        """
        Resets the gradient of this tensor to zero.

        Notes
        -----
        Equivalent to ``torch.Tensor.grad.zero_()`` in PyTorch.
        """
        if self.requires_grad:
            self.grad = Tensor.zeros_like(self)

    def __repr__(self) -> str:
        """
        Returns a readable string representation of the tensor.

        Examples
        --------
        >>> Tensor([[1, 2], [3, 4]], requires_grad=True)
        tensor([[1., 2.],
                [3., 4.]], dtype=float32, requires_grad=True, device='cpu')
        """
        data_str = np.array2string(self.numpy(), separator=', ', prefix='tensor(')
        details = [f"dtype={self.data.dtype}, requires_grad={self.requires_grad}"]
        details.append(f"device='{self.device}'")

        return f"tensor({data_str}, {', '.join(details)})"

    def numpy(self) -> np.ndarray:
        """Return the data as a NumPy array (copied from the GPU if needed)."""
        if _is_cupy_array(self.data):
            return cp.asnumpy(self.data)
        return self.data

    def to(
        self,
        device: str,
    ) -> "Tensor":
        """
        Moves the tensor to the specified device (CPU or CUDA).

        The operation is performed in-place and returns the same tensor for
        convenience.

        Raises
        ------
        RuntimeError
            If ``"cuda"`` is requested but CuPy is not installed or available.
        """
        dev = _normalize_device(device)
        if dev == "cpu" and _HAS_CUPY and self.backend is cp:
            self.data = cp.asnumpy(self.data)
            if self.grad is not None:
                self.grad.to("cpu")
            self.backend = np
        elif dev == "cuda" and self.backend is not (cp if _HAS_CUPY else None):
            if not _HAS_CUPY:
                raise RuntimeError("CUDA requested but CuPy is not installed/available.")
            self.data = cp.asarray(self.data)
            if self.grad is not None:
                self.grad.to("cuda")
            self.backend = cp
        return self

    def xp(self) -> Any:
        """Return the current array backend (NumPy or CuPy)."""
        return self.backend

    def _normalize_dims(self, dim: DimLike) -> Tuple[int, ...]:
        if dim is None:
            return tuple(range(self.ndim))
        if isinstance(dim, int):
            dim = (dim,)
        return tuple(sorted({d % self.ndim for d in dim}))

    def _reduced_count(self, dim: DimLike) -> int:
        count = 1
        for d in self._normalize_dims(dim):
            count *= self.shape[d]
        return count

    @staticmethod
    def _unbroadcast(
        x: "Tensor",
        target: "Tensor",
    ) -> "Tensor":
        """
        Reduce a broadcasted gradient ``x`` back to ``target``'s shape and dtype.

        Leading axes that broadcasting added are summed away, as are axes
        where ``target`` has size 1 but ``x`` does not.
        """
        shape = target.shape
        lead = x.ndim - len(shape)
        dims = tuple(range(lead)) + tuple(
            lead + i for i, s in enumerate(shape) if s == 1 and x.shape[lead + i] != 1
        )
        if dims:
            x = x.sum(dim=dims, keepdim=True)
        return x.reshape(*shape).astype(target.dtype)

    @staticmethod
    def _ensure_tensor(
        x: Union["Tensor", Any],
        like: "Tensor",
    ) -> "Tensor":
        """
        Ensure that ``x`` is a :class:`Tensor` on ``like``'s device.

        Non-tensor values (e.g. the ``3`` in ``Tensor + 3``) take ``like``'s
        dtype when it is floating, so Python scalars never change the
        precision of a result.
        """
        if isinstance(x, Tensor):
            return x
        dtype = like.dtype if is_float_kind(like.dtype) else None
        return Tensor(x, device=like.device, dtype=dtype)

    @staticmethod
    def zeros(
        *shape: int,
        dtype: DTypeLike = np.float32,
        requires_grad: bool = False,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """
        Create a tensor filled with zeros.

        Parameters
        ----------
        *shape : int
            Shape of the output tensor.
        dtype : dtype-like, default float32
            Element type.
        requires_grad : bool, default=False
            If True (and global grad mode is enabled), the tensor is tracked.
        device : str or None, default="cpu"
            Target device for the tensor (``"cpu"`` or ``"cuda"``).
        """
        xp = _backend_for(device)
        return Tensor(xp.zeros(shape, dtype=dtype), requires_grad=requires_grad)

    @staticmethod
    def ones(
        *shape: int,
        dtype: DTypeLike = np.float32,
        requires_grad: bool = False,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """Create a tensor filled with ones. See :meth:`zeros`."""
        xp = _backend_for(device)
        return Tensor(xp.ones(shape, dtype=dtype), requires_grad=requires_grad)

    @staticmethod
    def empty(
        shape: Sequence[int],
        dtype: DTypeLike = np.float32,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """Allocate an uninitialized tensor (the caller must overwrite it)."""
        xp = _backend_for(device)
        return Tensor(xp.empty(tuple(shape), dtype=dtype))

    @staticmethod
    def zeros_like(t: "Tensor", dtype: Optional[DTypeLike] = None) -> "Tensor":
        return Tensor(t.backend.zeros_like(t.data, dtype=dtype))

    @staticmethod
    def ones_like(t: "Tensor", dtype: Optional[DTypeLike] = None) -> "Tensor":
        return Tensor(t.backend.ones_like(t.data, dtype=dtype))

    @staticmethod
    def empty_like(t: "Tensor", dtype: Optional[DTypeLike] = None) -> "Tensor":
        """Uninitialized tensor with ``t``'s shape, device and (by default) dtype."""
        return Tensor(t.backend.empty_like(t.data, dtype=dtype))

    @staticmethod
    def randn(
        *shape: int,
        dtype: DTypeLike = np.float32,
        requires_grad: bool = False,
        scale: float = 1.0,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """
        Create a tensor with values sampled from a normal distribution.

        Samples i.i.d. values from ``N(0, 1)`` and scales them by ``scale``,
        resulting in a distribution ``N(0, scale^2)``.
        """
        xp = _backend_for(device)
        data = (scale * xp.random.randn(*shape)).astype(dtype)
        return Tensor(data, requires_grad=requires_grad)
