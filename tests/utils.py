import numpy as np
import torch

from batchgrad.tensor import Tensor

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if isinstance(x, Tensor):
        x = x.data
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def tdata(t: Tensor):
    return to_numpy(t.data)

def tgrad(t: Tensor):
    return None if t.grad is None else to_numpy(t.grad.data)

def make_tensor(x_np: np.ndarray, requires_grad: bool = True, device: str = "cpu", dtype=np.float32) -> Tensor:
    return Tensor(np.asarray(x_np, dtype=dtype), requires_grad=requires_grad, device=device)

def make_torch(x_np: np.ndarray, requires_grad: bool = True, dtype=np.float32) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=dtype), requires_grad=requires_grad)

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"

def assert_grad_close(t: Tensor, tt: torch.Tensor, atol=ATOL, rtol=RTOL):
    assert t.grad is not None, "Your Tensor.grad is None"
    assert tt.grad is not None, "Torch grad is None"
    assert_close(tgrad(t), tt.grad.detach().cpu().numpy(), atol=atol, rtol=rtol)

def numerical_grad(f, x_np: np.ndarray, h: float = 1e-6) -> np.ndarray:
    """Central finite differences of the scalar function ``f`` at ``x_np``."""
    x_np = np.array(x_np, dtype=np.float64)
    grad = np.zeros_like(x_np)
    it = np.nditer(x_np, flags=["multi_index"])
    for _ in it:
        idx = it.multi_index
        orig = x_np[idx]
        x_np[idx] = orig + h
        fp = f(x_np.copy())
        x_np[idx] = orig - h
        fm = f(x_np.copy())
        x_np[idx] = orig
        grad[idx] = (fp - fm) / (2 * h)
    return grad
