import numpy as np
import pytest
import torch.nn.functional as F

from batchgrad.errors import DimensionError
from batchgrad.normalization import fixed_batch_norm
from tests.utils import make_tensor, make_torch, tdata, to_numpy, assert_close


def _inputs(rng, device, shape=(4, 3, 5), dtype=np.float64, requires_grad=True):
    c = shape[1]
    x = make_tensor(rng.normal(size=shape), requires_grad=requires_grad, device=device, dtype=dtype)
    gamma = make_tensor(rng.normal(size=(c,)), requires_grad=requires_grad, device=device, dtype=dtype)
    beta = make_tensor(rng.normal(size=(c,)), requires_grad=requires_grad, device=device, dtype=dtype)
    mean = make_tensor(rng.normal(size=(c,)), requires_grad=False, device=device, dtype=dtype)
    var = make_tensor(rng.random(size=(c,)) + 0.5, requires_grad=False, device=device, dtype=dtype)
    return x, gamma, beta, mean, var


def test_matches_torch_eval_mode(rng, device):
    x, gamma, beta, mean, var = _inputs(rng, device)

    y = fixed_batch_norm(x, gamma, beta, mean, var, eps=1e-3, axis=(0, 2))

    yt = F.batch_norm(
        make_torch(tdata(x), requires_grad=False, dtype=np.float64),
        make_torch(tdata(mean), requires_grad=False, dtype=np.float64),
        make_torch(tdata(var), requires_grad=False, dtype=np.float64),
        make_torch(tdata(gamma), requires_grad=False, dtype=np.float64),
        make_torch(tdata(beta), requires_grad=False, dtype=np.float64),
        training=False,
        eps=1e-3,
    )
    assert_close(tdata(y), yt.numpy(), atol=1e-12, rtol=1e-10)


def test_never_mutates_inputs(rng, device):
    tensors = _inputs(rng, device)
    before = [to_numpy(t.data).copy() for t in tensors]

    fixed_batch_norm(*tensors, axis=(0, 2))

    for t, b in zip(tensors, before):
        assert_close(tdata(t), b, atol=0, rtol=0)


def test_output_is_never_differentiable(rng, device):
    x, gamma, beta, mean, var = _inputs(rng, device)

    y = fixed_batch_norm(x, gamma, beta, mean, var, axis=(0, 2))

    assert y.requires_grad is False
    assert y.is_leaf
    assert x.grad is None


def test_statistics_take_part_in_promotion(rng, device):
    x, gamma, beta, _, _ = _inputs(rng, device, shape=(6, 2), dtype=np.float32, requires_grad=False)
    m_np = np.array([0.1, -0.2])
    v_np = np.array([1.5, 0.75])
    mean = make_tensor(m_np, requires_grad=False, device=device, dtype=np.float64)
    var = make_tensor(v_np, requires_grad=False, device=device, dtype=np.float64)

    y = fixed_batch_norm(x, gamma, beta, mean, var, eps=0.0)

    assert y.dtype == np.float32
    expected = (tdata(x).astype(np.float64) - m_np) / np.sqrt(v_np) * tdata(gamma) + tdata(beta)
    assert_close(tdata(y), expected.astype(np.float32))


def test_size_mismatch_raises(rng, device):
    x, gamma, beta, mean, var = _inputs(rng, device)

    with pytest.raises(DimensionError):
        fixed_batch_norm(x, gamma, beta, mean, var)


def test_negative_eps_raises(rng, device):
    with pytest.raises(ValueError):
        fixed_batch_norm(*_inputs(rng, device), eps=-1.0, axis=(0, 2))
