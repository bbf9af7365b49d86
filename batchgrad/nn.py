from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from batchgrad import config
from batchgrad.errors import DimensionError
from batchgrad.normalization import batch_norm, fixed_batch_norm
from batchgrad.tensor import Tensor

class Module:
    """
    Base class for all neural network modules.

    Modules can contain:
    - submodules (instances of :class:`Module`)
    - parameters (instances of :class:`Tensor`)
    - buffers (tensors registered with :meth:`register_buffer`, such as
      running statistics, which are saved but never optimized)

    Submodules and parameters assigned as attributes are registered automatically
    via :meth:`__setattr__`. The public API mirrors a minimal subset of PyTorch's
    ``torch.nn.Module``.
    """
    def __init__(self) -> None:
        """
        Initialize an empty module.

        Attributes
        ----------
        _modules : dict[str, Module]
            Registered child modules.
        _parameters : dict[str, Tensor]
            Registered parameters.
        _buffers : dict[str, Tensor]
            Registered buffers.
        training : bool
            If True, the module is in training mode (affects BatchNormalization).
        """
        self._modules = {}
        self._parameters = {}
        self._buffers = {}
        self.training = True

    def parameters(self) -> List[Tensor]:
        """
        Return a flat list of all parameters in this module and its submodules.

        Returns
        -------
        list[Tensor]
            Parameters in a deterministic traversal order: local parameters first,
            then parameters of children in insertion order.
        """
        params = list(self._parameters.values())
        for module in self._modules.values():
            params.extend(module.parameters())
        return params

    def buffers(self) -> List[Tensor]:
        """Return a flat list of all buffers, in the same order as :meth:`parameters`."""
        bufs = list(self._buffers.values())
        for module in self._modules.values():
            bufs.extend(module.buffers())
        return bufs

    def register_buffer(self, name: str, tensor: Tensor) -> None:
        """Register ``tensor`` as a buffer and set it as attribute ``name``."""
        self._buffers[name] = tensor
        super().__setattr__(name, tensor)

    def zero_grad(self) -> None:
        """Set gradients of all parameters to zero."""
        for param in self.parameters():
            param.zero_grad()

    def train(self, mode: bool = True) -> "Module":
        """
        Set training mode for this module and all submodules.

        Returns
        -------
        Module
            ``self`` (to allow chaining).
        """
        self.training = mode
        for module in self._modules.values():
            module.train(mode)
        return self

    def eval(self) -> "Module":
        """Set evaluation mode for this module and all submodules."""
        return self.train(False)

    def __setattr__(self, name: str, value: Any) -> None:
        """
        Register submodules and parameters assigned as attributes.

        Notes
        -----
        - Assigning a :class:`Module` registers it in ``self._modules``.
        - Assigning a :class:`Tensor` to a registered buffer name replaces the
          buffer; any other :class:`Tensor` is registered as a parameter.
        """
        if isinstance(value, Module):
            self._modules[name] = value
        elif isinstance(value, Tensor):
            if name in self._buffers:
                self._buffers[name] = value
            else:
                self._parameters[name] = value
        super().__setattr__(name, value)

    def __repr__(self):
        lines = [f"{self.__class__.__name__}("]
        for name, module in self._modules.items():
            mod_repr = "\n    ".join(repr(module).splitlines())
            lines.append(f"  ({name}): {mod_repr}")
        lines.append(")")
        return "\n".join(lines)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.forward(*args, **kwargs)

    def forward(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError

    def state_dict(self) -> Dict[str, Any]:
        """
        Return a state dictionary of parameter and buffer values.

        Returns
        -------
        dict
            Maps names to **copies** of the underlying arrays. Submodule
            entries use dotted keys (e.g. ``"bn1.gamma"``).
        """
        state = {}
        for name, param in self._parameters.items():
            state[name] = param.data.copy()
        for name, buf in self._buffers.items():
            state[name] = buf.data.copy()

        for name, module in self._modules.items():
            sub_state = module.state_dict()
            for sub_name, value in sub_state.items():
                state[f"{name}.{sub_name}"] = value

        return state

    def load_state_dict(self, state_dict: Dict[str, Any]) -> None:
        """
        Load parameter and buffer values from a state dictionary.

        Raises
        ------
        KeyError
            If a required key is missing.
        DimensionError
            If a value's shape differs from the tensor it is loaded into.

        Notes
        -----
        Values are copied in place, so tensors keep their identity.
        """
        for name, tensor in list(self._parameters.items()) + list(self._buffers.items()):
            if name not in state_dict:
                raise KeyError(f"{name} not found in state_dict")
            value = state_dict[name]
            if np.shape(value) != tensor.shape:
                raise DimensionError(
                    f"{name} has shape {tensor.shape} but state_dict holds shape {np.shape(value)}"
                )
            tensor.data[...] = value

        for name, module in self._modules.items():
            sub_state = {
                k[len(name) + 1:]: v
                for k, v in state_dict.items()
                if k.startswith(f"{name}.")
            }
            module.load_state_dict(sub_state)

    def to(self, device: str) -> "Module":
        """Move all parameters, buffers and submodules to ``device``."""
        for param in self._parameters.values():
            param.to(device)
        for buf in self._buffers.values():
            buf.to(device)
        for module in self._modules.values():
            module.to(device)
        return self

class BatchNormalization(Module):
    """
    Batch normalization layer with learnable scale and shift.

    In training mode the input is normalized with its batch statistics and the
    running averages ``avg_mean``/``avg_var`` are updated; in evaluation mode
    the running averages are used instead and nothing is mutated.

    Parameters
    ----------
    size : int or tuple of int
        Shape of the parameters and statistics (e.g. the channel count).
    decay : float, default 0.9
        Decay rate of the running averages.
    eps : float, default 2e-5
        Added to the variance for numerical stability.
    dtype : dtype-like, default float32
        Dtype of the parameters and running averages.
    use_gamma, use_beta : bool, default True
        If False, the scale (shift) is the constant 1 (0) and not learned.
    axis : int or tuple of int, optional
        Normalization axes. If None, ``(0,)`` plus every axis after the
        parameter dimensions, e.g. ``(0, 2, 3)`` for ``size=C`` and an
        ``(N, C, H, W)`` input.
    device : str, default "cpu"
        Device of the parameters and running averages.

    Examples
    --------
    >>> bn = BatchNormalization(3)
    >>> y = bn(Tensor.randn(8, 3, 5, 5))
    >>> y.shape
    (8, 3, 5, 5)
    """
    def __init__(
        self,
        size: Union[int, Sequence[int]],
        decay: float = config.DEFAULT_DECAY,
        eps: float = config.DEFAULT_EPS,
        dtype: Any = np.float32,
        use_gamma: bool = True,
        use_beta: bool = True,
        axis: Optional[Union[int, Sequence[int]]] = None,
        device: str = "cpu",
    ) -> None:
        super().__init__()
        self.size = (size,) if isinstance(size, int) else tuple(size)
        self.decay = decay
        self.eps = eps
        self.dtype = np.dtype(dtype)
        self.axis = axis
        self.device = device
        self.N = 0

        if use_gamma:
            self.gamma = Tensor.ones(*self.size, dtype=self.dtype, requires_grad=True, device=device)
        else:
            self.gamma = None
        if use_beta:
            self.beta = Tensor.zeros(*self.size, dtype=self.dtype, requires_grad=True, device=device)
        else:
            self.beta = None

        self.register_buffer("avg_mean", Tensor.zeros(*self.size, dtype=self.dtype, device=device))
        self.register_buffer("avg_var", Tensor.ones(*self.size, dtype=self.dtype, device=device))

    def __repr__(self):
        return (
            f"{self.__class__.__name__}({self.size}, decay={self.decay}, eps={self.eps}, "
            f"dtype={self.dtype}, axis={self.axis})"
        )

    def _compute_axis(self, x_ndim: int) -> Tuple[int, ...]:
        if self.axis is not None:
            return (self.axis,) if isinstance(self.axis, int) else tuple(self.axis)
        return (0,) + tuple(range(len(self.size) + 1, x_ndim))

    def start_finetuning(self) -> None:
        """Reset the finetuning counter; see ``finetune`` in :meth:`forward`."""
        self.N = 0

    def forward(self, x: Tensor, finetune: bool = False) -> Tensor:
        """
        Parameters
        ----------
        x : Tensor
            Input whose non-normalized axes match ``size``.
        finetune : bool, default False
            In training mode, accumulate the running statistics as a plain
            cumulative average over the calls since :meth:`start_finetuning`
            (decay ``1 - 1/N``) instead of using ``decay``.

        Returns
        -------
        Tensor
            Normalized tensor with the same shape and dtype as ``x``.
        """
        gamma = self.gamma
        if gamma is None:
            gamma = Tensor.ones(*self.size, dtype=self.dtype, device=self.device)
        beta = self.beta
        if beta is None:
            beta = Tensor.zeros(*self.size, dtype=self.dtype, device=self.device)
        axis = self._compute_axis(x.ndim)

        if self.training:
            if finetune:
                self.N += 1
                decay = 1.0 - 1.0 / self.N
            else:
                decay = self.decay
            return batch_norm(x, gamma, beta, self.avg_mean, self.avg_var, eps=self.eps, decay=decay, axis=axis)
        return fixed_batch_norm(x, gamma, beta, self.avg_mean, self.avg_var, eps=self.eps, axis=axis)
