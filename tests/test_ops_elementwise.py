import numpy as np
import pytest
import torch

from batchgrad.autograd import grad
from tests.utils import make_tensor, make_torch, tdata, assert_close, assert_grad_close


@pytest.mark.parametrize("op", ["neg", "sqrt", "reciprocal"])
def test_unary_ops_forward_backward(rng, op, device):
    shape = tuple(int(x) for x in rng.integers(1, 6, size=int(rng.integers(1, 6))))
    x_np = rng.random(size=shape).astype(np.float32) + 0.5

    xt = make_torch(x_np, requires_grad=True)
    x = make_tensor(x_np, requires_grad=True, device=device)

    if op == "neg":
        yt = -xt
        y = -x
    elif op == "sqrt":
        yt = xt.sqrt()
        y = x.sqrt()
    elif op == "reciprocal":
        yt = xt.reciprocal()
        y = x.reciprocal()
    else:
        raise RuntimeError(op)

    yt.sum().backward()
    y.sum().backward()

    assert_close(tdata(y), yt.detach().cpu().numpy())
    assert_grad_close(x, xt)


@pytest.mark.parametrize("op", ["sqrt", "reciprocal"])
def test_unary_ops_second_derivative(rng, op, device):
    x_np = rng.random(size=(4, 3)) + 0.5

    xt = make_torch(x_np, requires_grad=True, dtype=np.float64)
    x = make_tensor(x_np, requires_grad=True, device=device, dtype=np.float64)

    yt = getattr(xt, op)()
    y = getattr(x, op)()

    (gt,) = torch.autograd.grad(yt.sum(), xt, create_graph=True)
    (g,) = grad(y.sum(), x, create_graph=True)

    (ggt,) = torch.autograd.grad(gt.sum(), xt)
    (gg,) = grad(g.sum(), x)

    assert_close(g.data, gt.detach().numpy(), atol=1e-10, rtol=1e-8)
    assert_close(gg.data, ggt.numpy(), atol=1e-10, rtol=1e-8)
