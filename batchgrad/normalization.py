"""
Batch normalization with first- and second-order gradients.

The public operators are :func:`batch_norm` (training mode, differentiable
with respect to ``x``, ``gamma`` and ``beta`` up to second order, updates
the running statistics in place) and :func:`fixed_batch_norm` (inference
mode with externally supplied statistics, never differentiable).

Both validate and reshape their parameters with :func:`preprocess_batch_norm`,
then dispatch detached tensors to the numeric kernels registered in
:data:`batchgrad.backend.OP_REGISTRY`. The training-mode forward kernel hands
the batch mean and inverse standard deviation to its backward through an
opaque :class:`BatchNormState`, so backward never recomputes them.
"""
import logging
from typing import NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from batchgrad import config
from batchgrad.autograd import BackwardBuilder, BackwardContext, no_grad
from batchgrad.backend import OP_REGISTRY
from batchgrad.errors import BatchNormStateError, DimensionError, DtypeError
from batchgrad.tensor import Tensor, is_float_kind, result_type

logger = logging.getLogger(__name__)

AxisLike = Optional[Union[int, Sequence[int]]]


class PreprocessResult(NamedTuple):
    gamma: Tensor
    beta: Tensor
    mean: Tensor
    var: Tensor
    sorted_axis: Tuple[int, ...]


def get_sorted_axes(axis: Union[int, Sequence[int]], ndim: int) -> Tuple[int, ...]:
    """
    Normalize ``axis`` to sorted, de-duplicated, non-negative indices.

    Raises
    ------
    DimensionError
        If an axis is out of range for ``ndim`` dimensions.
    """
    if isinstance(axis, (int, np.integer)):
        axis = (int(axis),)
    normalized = set()
    for a in axis:
        if not -ndim <= a < ndim:
            raise DimensionError(f"Axis {a} is out of bounds for an array of dimension {ndim}.")
        normalized.add(a % ndim)
    return tuple(sorted(normalized))


def reduce_shape(shape: Sequence[int], axis: Sequence[int]) -> Tuple[int, ...]:
    """``shape`` with every axis in ``axis`` collapsed to 1 (rank is kept)."""
    return tuple(1 if i in axis else s for i, s in enumerate(shape))


def reshape_or_identity(a: Tensor, shape: Tuple[int, ...]) -> Tensor:
    """Reshape ``a``; return the very same tensor when the shape already matches."""
    if a.shape == shape:
        return a
    return a.reshape(*shape)


def _check_supported_kind(t: Tensor) -> None:
    if not is_float_kind(t.dtype):
        raise DtypeError("BatchNorm only supports floating kind inputs.")


def _check_size(name: str, t: Tensor, reduced_size: int) -> None:
    if t.size != reduced_size:
        raise DimensionError(
            f"{name} must have the same size as the reduced input. Actual: {t.size}. Expected: {reduced_size}."
        )


def preprocess_batch_norm(
    x: Tensor,
    gamma: Tensor,
    beta: Tensor,
    mean: Tensor,
    var: Tensor,
    axis: AxisLike = None,
) -> PreprocessResult:
    """
    Validate batch-norm inputs and reshape the parameters for broadcasting.

    Parameters
    ----------
    x : Tensor
        Input.
    gamma, beta, mean, var : Tensor
        Scale, shift and statistics. Each must hold exactly as many elements
        as ``x`` reduced over ``axis``; their own shape is free.
    axis : int or sequence of int, optional
        Normalization axes. Defaults to ``(0,)``.

    Returns
    -------
    PreprocessResult
        ``gamma``, ``beta``, ``mean``, ``var`` reshaped to the reduced shape
        (the same tensors when their shape already matches, views otherwise)
        and the sorted axes.

    Raises
    ------
    DtypeError
        If any of the five tensors is not of floating kind.
    DimensionError
        If a parameter's size differs from the reduced size, or if ``x``
        is empty.
    """
    for t in (x, gamma, beta, mean, var):
        _check_supported_kind(t)

    sorted_axis = get_sorted_axes(axis, x.ndim) if axis is not None else (0,)

    reduced_shape = reduce_shape(x.shape, sorted_axis)
    reduced_size = 1
    for s in reduced_shape:
        reduced_size *= s

    _check_size("Gamma", gamma, reduced_size)
    _check_size("Beta", beta, reduced_size)
    _check_size("Mean", mean, reduced_size)
    _check_size("Variance", var, reduced_size)
    if x.size == 0:
        raise DimensionError(f"BatchNorm requires a non-empty input. Actual shape: {x.shape}.")

    gamma_reshaped = reshape_or_identity(gamma, reduced_shape)
    beta_reshaped = reshape_or_identity(beta, reduced_shape)
    mean_reshaped = reshape_or_identity(mean, reduced_shape)
    var_reshaped = reshape_or_identity(var, reduced_shape)
    if config.is_debug():
        # No data copy should occur
        for before, after in ((gamma, gamma_reshaped), (beta, beta_reshaped), (mean, mean_reshaped), (var, var_reshaped)):
            assert before.backend.shares_memory(before.data, after.data)

    return PreprocessResult(gamma_reshaped, beta_reshaped, mean_reshaped, var_reshaped, sorted_axis)


def apply_batch_norm(
    x: Tensor,
    gamma: Tensor,
    beta: Tensor,
    mean: Tensor,
    var: Tensor,
    eps: float,
    axis: Tuple[int, ...],
    out: Tensor,
    interm_dtype: np.dtype,
) -> Tensor:
    """
    Normalize ``x`` into ``out`` and return the inverse standard deviation.

    Computes ``(x - mean) * inv_std * gamma + beta`` with
    ``inv_std = 1 / sqrt(var + eps)`` in ``interm_dtype`` and writes the
    result into ``out`` with a cast to ``out.dtype``. Writing ``out`` is the
    only side effect. ``inv_std`` is returned in ``interm_dtype``.
    """
    if config.is_debug():
        reduced_shape = reduce_shape(x.shape, axis)
        assert gamma.shape == reduced_shape
        assert beta.shape == reduced_shape

        reduced_total_size = 1
        for s in reduced_shape:
            reduced_total_size *= s
        assert mean.size == reduced_total_size
        assert var.size == reduced_total_size

    x_cast = x.astype(interm_dtype)
    gamma_cast = gamma.astype(interm_dtype)
    beta_cast = beta.astype(interm_dtype)
    mean_cast = mean.astype(interm_dtype)
    var_cast = var.astype(interm_dtype)

    inv_std = (var_cast + eps).sqrt().reciprocal()

    out_cast = (x_cast - mean_cast) * inv_std * gamma_cast + beta_cast
    out.copy_from(out_cast)

    return inv_std


class BatchNormState:
    """
    Statistics handed from a training-mode forward call to its backward.

    Holds the batch mean and the inverse standard deviation in the promoted
    dtype of the forward computation. A state is consumed exactly once; the
    arrays are released on consumption.
    """
    __slots__ = ("_x_mean", "_x_inv_std", "_consumed")

    def __init__(self, x_mean: Tensor, x_inv_std: Tensor) -> None:
        self._x_mean = x_mean
        self._x_inv_std = x_inv_std
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> Tuple[Tensor, Tensor]:
        """
        Take the mean and inverse standard deviation out of the state.

        Raises
        ------
        BatchNormStateError
            If the state was already consumed by another backward call.
        """
        if self._consumed:
            raise BatchNormStateError(
                "BatchNorm forward state was already consumed by a previous backward call."
            )
        x_mean, x_inv_std = self._x_mean, self._x_inv_std
        self._x_mean = self._x_inv_std = None
        self._consumed = True
        return x_mean, x_inv_std


def _assert_detached(*tensors: Tensor) -> None:
    for t in tensors:
        assert t.is_leaf and not t.requires_grad


@OP_REGISTRY.register("batch_norm_forward")
def batch_norm_forward(
    x: Tensor,
    gamma: Tensor,
    beta: Tensor,
    running_mean: Tensor,
    running_var: Tensor,
    eps: float,
    decay: float,
    axis: Tuple[int, ...],
    out: Tensor,
    persist_state: bool = True,
) -> Optional[BatchNormState]:
    """
    Training-mode forward kernel.

    Normalizes ``x`` with its own batch statistics into ``out``, then
    updates the running statistics in place::

        running_mean = running_mean * decay + batch_mean * (1 - decay)
        running_var  = running_var  * decay + batch_var  * (1 - decay) * n / max(n - 1, 1)

    where ``n`` is the number of samples reduced per statistic. The batch
    variance used for normalization is the biased one; the running variance
    receives the unbiased estimate.

    Returns
    -------
    BatchNormState or None
        The state for the matching backward call when ``persist_state``.
    """
    _assert_detached(x, gamma, beta)
    for t in (x, gamma, beta, running_mean, running_var):
        assert is_float_kind(t.dtype)

    # Compute the statistics with the promoted dtype if the parameters have higher precision.
    interm_dtype = result_type(x, gamma, beta)
    x_cast = x.astype(interm_dtype)
    x_mean = x_cast.mean(dim=axis, keepdim=True)
    x_var = x_cast.var(dim=axis, keepdim=True, unbiased=False)

    x_inv_std = apply_batch_norm(x, gamma, beta, x_mean, x_var, eps, axis, out, interm_dtype)

    inv_decay = 1.0 - float(decay)
    n = x.size // gamma.size

    running_mean.copy_from(running_mean * decay + (x_mean * inv_decay).astype(running_mean.dtype))
    running_var.copy_from(
        running_var * decay + (x_var * (inv_decay * n / max(n - 1, 1))).astype(running_var.dtype)
    )

    if persist_state:
        logger.debug("batch_norm_forward: persisting state in %s", interm_dtype)
        return BatchNormState(x_mean, x_inv_std)
    return None


@OP_REGISTRY.register("batch_norm_backward")
def batch_norm_backward(
    x: Tensor,
    gamma: Tensor,
    gout: Tensor,
    eps: float,
    axis: Tuple[int, ...],
    gx: Tensor,
    ggamma: Tensor,
    gbeta: Tensor,
    state: Optional[BatchNormState],
) -> None:
    """
    First-order backward kernel.

    Writes the gradients with respect to ``x``, ``gamma`` and ``beta`` into
    ``gx``, ``ggamma`` and ``gbeta``. ``eps`` is not used: it is already part
    of the retained inverse standard deviation.

    Raises
    ------
    BatchNormStateError
        If ``state`` is None or already consumed. Recomputing the statistics
        from ``x`` is not supported.
    """
    _assert_detached(gout)

    # TODO: recompute x_mean and x_inv_std from x when the forward did not persist a state.
    if state is None:
        raise BatchNormStateError(
            "BatchNorm backward requires the state produced by its forward call; recomputation is not supported."
        )
    x_mean, x_inv_std = state.consume()

    interm_dtype = x_mean.dtype

    n = x.size // gamma.size
    inv_n = 1.0 / n
    gout_cast = gout.astype(interm_dtype)
    x_hat = (x.astype(interm_dtype) - x_mean) * x_inv_std
    ggamma_cast = (gout_cast * x_hat).sum(dim=axis, keepdim=True)
    gbeta_cast = gout_cast.sum(dim=axis, keepdim=True)
    gx_cast = (gamma.astype(interm_dtype) * x_inv_std) * (gout_cast - (x_hat * ggamma_cast + gbeta_cast) * inv_n)

    gx.copy_from(gx_cast)
    ggamma.copy_from(ggamma_cast)
    gbeta.copy_from(gbeta_cast)


@OP_REGISTRY.register("fixed_batch_norm_forward")
def fixed_batch_norm_forward(
    x: Tensor,
    gamma: Tensor,
    beta: Tensor,
    mean: Tensor,
    var: Tensor,
    eps: float,
    axis: Tuple[int, ...],
    out: Tensor,
) -> None:
    """Inference-mode forward kernel using the given statistics."""
    interm_dtype = result_type(x, gamma, beta, mean, var)
    apply_batch_norm(x, gamma, beta, mean, var, eps, axis, out, interm_dtype)


def _array_or_zeros(array: Optional[Tensor], zeros_template: Tensor, dtype: np.dtype) -> Tensor:
    if array is not None:
        return array.astype(dtype)
    return Tensor.zeros_like(zeros_template, dtype=dtype)


def _define_double_backward(
    x: Tensor,
    gamma: Tensor,
    gout: Tensor,
    gx: Tensor,
    ggamma: Tensor,
    gbeta: Tensor,
    eps: float,
    axis: Tuple[int, ...],
) -> None:
    """Record the backward of the first-order batch-norm gradients."""
    bb = BackwardBuilder("batch_norm_backward", (x, gamma, gout), (gx, ggamma, gbeta))
    if not bb.is_required():
        return

    x_tok = bb.retain_input(0)
    gamma_tok = bb.retain_input(1)
    gout_tok = bb.retain_input(2)
    gx_tok = bb.retain_output(0)
    ggamma_tok = bb.retain_output(1)

    def _double_backward(ctx: BackwardContext) -> None:
        x_retained = ctx.get_retained_input(x_tok)
        gamma_retained = ctx.get_retained_input(gamma_tok)
        gout_retained = ctx.get_retained_input(gout_tok)

        interm_dtype = result_type(gout_retained, x_retained, gamma_retained)
        x = x_retained.astype(interm_dtype)
        gamma = gamma_retained.astype(interm_dtype)
        gout = gout_retained.astype(interm_dtype)

        ggx = _array_or_zeros(ctx.output_grad(0), x, interm_dtype)
        gggamma = _array_or_zeros(ctx.output_grad(1), gamma, interm_dtype)
        ggbeta = _array_or_zeros(ctx.output_grad(2), gamma, interm_dtype)

        # Recomputed rather than taken from the forward state: this path must
        # itself be differentiable with respect to x.
        x_mean = x.mean(dim=axis, keepdim=True)
        x_var = x.var(dim=axis, keepdim=True, unbiased=False)
        x_inv_std = (x_var + eps).sqrt().reciprocal()

        gx = ctx.get_retained_output(gx_tok).astype(interm_dtype)
        ggamma = ctx.get_retained_output(ggamma_tok).astype(interm_dtype)

        n = x.size // gamma.size
        inv_n = 1.0 / n
        r = (gx * ggx).sum(dim=axis, keepdim=True)
        coeff = gamma * x_inv_std
        coeff_m = coeff * inv_n
        x_hat = (x - x_mean) * x_inv_std

        gggamma2 = gggamma - coeff_m * (x_hat * ggx).sum(dim=axis, keepdim=True)
        ggbeta2 = ggbeta - coeff_m * ggx.sum(dim=axis, keepdim=True)

        gx_hat2 = gggamma2 * gout - coeff_m * ggamma * ggx
        gstd2 = -x_inv_std * (r + (x_hat * gx_hat2).sum(dim=axis, keepdim=True))
        gmean2 = -x_inv_std * gx_hat2.sum(dim=axis, keepdim=True)
        gx2 = x_inv_std * gx_hat2 + inv_n * (gmean2 + x_hat * gstd2)
        ggout2 = gggamma2 * x_hat + ggbeta2 + coeff * ggx

        ggamma2 = r / gamma

        ctx.set_input_grad(0, gx2.astype(x_retained.dtype))
        ctx.set_input_grad(1, ggamma2.astype(gamma_retained.dtype))
        ctx.set_input_grad(2, ggout2.astype(gout_retained.dtype))

    bb.define(_double_backward)
    logger.debug("recorded batch_norm double backward")


def _check_hyperparameters(eps: float, decay: Optional[float] = None) -> None:
    if eps < 0:
        raise ValueError(f"eps must be non-negative, got {eps}")
    if decay is not None and not 0.0 <= decay <= 1.0:
        raise ValueError(f"decay must be in [0, 1], got {decay}")


def batch_norm(
    x: Tensor,
    gamma: Tensor,
    beta: Tensor,
    running_mean: Tensor,
    running_var: Tensor,
    eps: float = config.DEFAULT_EPS,
    decay: float = config.DEFAULT_DECAY,
    axis: AxisLike = None,
) -> Tensor:
    """
    Batch normalization in training mode.

    Normalizes ``x`` with the mean and (biased) variance computed over
    ``axis``, applies ``gamma`` and ``beta``, and updates ``running_mean``
    and ``running_var`` in place.

    Parameters
    ----------
    x : Tensor
        Input of floating dtype.
    gamma, beta : Tensor
        Scale and shift, with as many elements as ``x`` reduced over ``axis``.
    running_mean, running_var : Tensor
        Running statistics, same size constraint as ``gamma``. Mutated in
        place after the output has been computed.
    eps : float, default 2e-5
        Added to the variance before taking the square root.
    decay : float, default 0.9
        Weight of the previous running statistics, in ``[0, 1]``.
    axis : int or sequence of int, optional
        Normalization axes. Defaults to ``(0,)``.

    Returns
    -------
    Tensor
        Output with ``x``'s shape and dtype. Differentiable with respect to
        ``x``, ``gamma`` and ``beta``; the gradients are differentiable again
        when computed with ``create_graph=True``.

    Raises
    ------
    DtypeError
        If an input is not of floating kind.
    DimensionError
        If a parameter size does not match the reduced input.
    ValueError
        If ``eps`` is negative or ``decay`` outside ``[0, 1]``.

    Notes
    -----
    All validation happens before the output is allocated, so a failing call
    leaves the running statistics untouched. Each forward call supports one
    backward pass; a second pass through the same call raises
    :class:`BatchNormStateError`.

    Examples
    --------
    >>> x = Tensor.randn(8, 3, requires_grad=True)
    >>> gamma = Tensor.ones(3, requires_grad=True)
    >>> beta = Tensor.zeros(3, requires_grad=True)
    >>> y = batch_norm(x, gamma, beta, Tensor.zeros(3), Tensor.ones(3))
    >>> y.shape
    (8, 3)
    """
    _check_hyperparameters(eps, decay)
    result = preprocess_batch_norm(x, gamma, beta, running_mean, running_var, axis)
    gamma_reshaped = result.gamma
    beta_reshaped = result.beta
    sorted_axis = result.sorted_axis

    out = Tensor.empty_like(x)
    bb = BackwardBuilder("batch_norm", (x, gamma_reshaped, beta_reshaped), (out,))
    required = bb.is_required()

    state = OP_REGISTRY.call_op(
        x.device,
        "batch_norm_forward",
        x.detach(),
        gamma_reshaped.detach(),
        beta_reshaped.detach(),
        result.mean,
        result.var,
        eps,
        decay,
        sorted_axis,
        out,
        persist_state=required,
    )

    if required:
        x_tok = bb.retain_input(0)
        gamma_tok = bb.retain_input(1)
        beta_shape = beta_reshaped.shape
        beta_dtype = beta_reshaped.dtype

        def _backward(ctx: BackwardContext) -> None:
            gout = ctx.output_grad()
            x = ctx.get_retained_input(x_tok)
            gamma_reshaped = ctx.get_retained_input(gamma_tok)

            gx = Tensor.empty_like(x)
            ggamma = Tensor.empty_like(gamma_reshaped)
            gbeta = Tensor.empty(beta_shape, dtype=beta_dtype, device=x.device)

            OP_REGISTRY.call_op(
                gout.device,
                "batch_norm_backward",
                x.detach(),
                gamma_reshaped.detach(),
                gout.detach(),
                eps,
                sorted_axis,
                gx,
                ggamma,
                gbeta,
                state,
            )

            if ctx.next_required():
                _define_double_backward(x, gamma_reshaped, gout, gx, ggamma, gbeta, eps, sorted_axis)

            ctx.set_input_grads((gx, ggamma, gbeta))

        bb.define(_backward)

    return out


def fixed_batch_norm(
    x: Tensor,
    gamma: Tensor,
    beta: Tensor,
    mean: Tensor,
    var: Tensor,
    eps: float = config.DEFAULT_EPS,
    axis: AxisLike = None,
) -> Tensor:
    """
    Batch normalization with fixed statistics (inference mode).

    Same contract as :func:`batch_norm` but normalizes with the given
    ``mean`` and ``var``, never mutates them, and never records a graph: the
    output does not require grad whatever its inputs do.
    """
    _check_hyperparameters(eps)
    result = preprocess_batch_norm(x, gamma.detach(), beta.detach(), mean.detach(), var.detach(), axis)

    out = Tensor.empty_like(x)
    with no_grad():
        OP_REGISTRY.call_op(
            x.device,
            "fixed_batch_norm_forward",
            x.detach(),
            result.gamma,
            result.beta,
            result.mean,
            result.var,
            eps,
            result.sorted_axis,
            out,
        )
    return out
