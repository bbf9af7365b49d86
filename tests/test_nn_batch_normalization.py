import numpy as np
import pytest
import torch

from batchgrad.errors import DimensionError
from batchgrad.nn import BatchNormalization, Module
from tests.utils import make_tensor, make_torch, tdata, to_numpy, assert_close, assert_grad_close


def test_training_and_eval_parity_with_torch(rng, device):
    eps = 1e-3
    bn = BatchNormalization(3, decay=0.9, eps=eps, dtype=np.float64, device=device)
    bn_t = torch.nn.BatchNorm2d(3, eps=eps, momentum=0.1, dtype=torch.float64)

    for _ in range(3):
        x_np = rng.normal(size=(4, 3, 5, 5)) * 2.0 + 0.5
        w_np = rng.normal(size=(4, 3, 5, 5))

        bn_t.zero_grad()
        yt = bn_t(make_torch(x_np, requires_grad=False, dtype=np.float64))
        (yt * make_torch(w_np, requires_grad=False, dtype=np.float64)).sum().backward()

        bn.zero_grad()
        y = bn(make_tensor(x_np, requires_grad=False, device=device, dtype=np.float64))
        (y * make_tensor(w_np, requires_grad=False, device=device, dtype=np.float64)).sum().backward()

        assert_close(tdata(y), yt.detach().numpy(), atol=1e-10, rtol=1e-8)
        assert_close(tdata(bn.avg_mean), bn_t.running_mean.numpy(), atol=1e-10, rtol=1e-8)
        assert_close(tdata(bn.avg_var), bn_t.running_var.numpy(), atol=1e-10, rtol=1e-8)
        assert_grad_close(bn.gamma, bn_t.weight, atol=1e-10, rtol=1e-8)
        assert_grad_close(bn.beta, bn_t.bias, atol=1e-10, rtol=1e-8)

    bn.eval()
    bn_t.eval()
    x_np = rng.normal(size=(2, 3, 5, 5))
    y = bn(make_tensor(x_np, requires_grad=False, device=device, dtype=np.float64))
    yt = bn_t(make_torch(x_np, requires_grad=False, dtype=np.float64))

    assert y.requires_grad is False
    assert_close(tdata(y), yt.detach().numpy(), atol=1e-10, rtol=1e-8)


def test_eval_does_not_touch_running_statistics(rng, device):
    bn = BatchNormalization(3, dtype=np.float64, device=device).eval()

    bn(make_tensor(rng.normal(size=(8, 3)), device=device, dtype=np.float64))

    assert_close(tdata(bn.avg_mean), np.zeros(3), atol=0, rtol=0)
    assert_close(tdata(bn.avg_var), np.ones(3), atol=0, rtol=0)


def test_finetune_accumulates_cumulative_average(rng, device):
    bn = BatchNormalization(2, dtype=np.float64, device=device)
    x1 = rng.normal(size=(5, 2))
    x2 = rng.normal(size=(5, 2)) + 1.0

    bn.start_finetuning()
    bn(make_tensor(x1, requires_grad=False, device=device, dtype=np.float64), finetune=True)
    assert_close(tdata(bn.avg_mean), x1.mean(axis=0), atol=1e-12, rtol=1e-10)

    bn(make_tensor(x2, requires_grad=False, device=device, dtype=np.float64), finetune=True)
    assert bn.N == 2
    assert_close(tdata(bn.avg_mean), (x1.mean(axis=0) + x2.mean(axis=0)) / 2, atol=1e-12, rtol=1e-10)
    assert_close(tdata(bn.avg_var), (x1.var(axis=0, ddof=1) + x2.var(axis=0, ddof=1)) / 2, atol=1e-12, rtol=1e-10)

    bn.start_finetuning()
    assert bn.N == 0


def test_disabled_gamma_and_beta_are_constants(rng, device):
    bn = BatchNormalization(3, dtype=np.float64, use_gamma=False, use_beta=False, device=device)
    x_np = rng.normal(size=(6, 3))

    assert bn.gamma is None
    assert bn.beta is None
    assert bn.parameters() == []

    x = make_tensor(x_np, device=device, dtype=np.float64)
    y = bn(x)
    y.sum().backward()

    expected = (x_np - x_np.mean(axis=0)) / np.sqrt(x_np.var(axis=0) + 2e-5)
    assert_close(tdata(y), expected, atol=1e-10, rtol=1e-8)
    assert x.grad is not None


def test_only_gamma_disabled(device):
    bn = BatchNormalization(3, use_gamma=False, device=device)

    params = bn.parameters()
    assert len(params) == 1
    assert params[0] is bn.beta


@pytest.mark.parametrize("size,x_shape,axis", [
    (3, (2, 3, 4, 5), (0, 2, 3)),
    ((3, 4), (2, 3, 4, 5), (0, 3)),
])
def test_default_axis(size, x_shape, axis, rng, device):
    bn = BatchNormalization(size, dtype=np.float64, device=device)
    x_np = rng.normal(size=x_shape) * 3.0 + 2.0

    y = bn(make_tensor(x_np, requires_grad=False, device=device, dtype=np.float64))

    assert bn._compute_axis(len(x_shape)) == axis
    assert_close(to_numpy(y.data).mean(axis=axis), np.zeros(bn.size), atol=1e-10, rtol=0)


def test_explicit_axis(rng, device):
    bn = BatchNormalization(5, dtype=np.float64, axis=(0, 1), device=device)
    x_np = rng.normal(size=(2, 3, 5))

    y = bn(make_tensor(x_np, requires_grad=False, device=device, dtype=np.float64))

    expected = (x_np - x_np.mean(axis=(0, 1))) / np.sqrt(x_np.var(axis=(0, 1)) + 2e-5)
    assert_close(tdata(y), expected, atol=1e-10, rtol=1e-8)


class _Net(Module):
    def __init__(self, device):
        super().__init__()
        self.bn = BatchNormalization(2, dtype=np.float64, device=device)

    def forward(self, x):
        return self.bn(x)


def test_state_dict_includes_buffers_and_loads_in_place(rng, device):
    net = _Net(device)
    net(make_tensor(rng.normal(size=(4, 2)), requires_grad=False, device=device, dtype=np.float64))

    state = net.state_dict()
    assert set(state) == {"bn.gamma", "bn.beta", "bn.avg_mean", "bn.avg_var"}

    other = _Net(device)
    avg_mean = other.bn.avg_mean
    other.load_state_dict(state)

    assert other.bn.avg_mean is avg_mean
    assert_close(tdata(other.bn.avg_mean), to_numpy(state["bn.avg_mean"]), atol=0, rtol=0)
    assert_close(tdata(other.bn.avg_var), to_numpy(state["bn.avg_var"]), atol=0, rtol=0)


def test_load_state_dict_missing_key(device):
    net = _Net(device)
    state = net.state_dict()
    del state["bn.avg_var"]

    with pytest.raises(KeyError):
        _Net(device).load_state_dict(state)


@pytest.mark.parametrize("value", [1.0, np.ones(3), np.ones((1, 2))])
def test_load_state_dict_rejects_wrong_shape(device, value):
    net = _Net(device)
    state = net.state_dict()
    state["bn.avg_mean"] = value

    with pytest.raises(DimensionError, match="avg_mean"):
        net.load_state_dict(state)

    assert_close(tdata(net.bn.avg_mean), np.zeros(2), atol=0, rtol=0)


def test_buffers_are_not_parameters(device):
    bn = BatchNormalization(3, device=device)

    assert len(bn.parameters()) == 2
    assert bn.buffers() == [bn.avg_mean, bn.avg_var]
    assert bn.avg_mean.requires_grad is False


def test_train_eval_propagate_to_children(device):
    net = _Net(device)

    net.eval()
    assert net.bn.training is False
    net.train()
    assert net.bn.training is True
