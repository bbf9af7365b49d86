import importlib

import numpy as np
import pytest

from batchgrad import config
from batchgrad.normalization import apply_batch_norm
from batchgrad.tensor import Tensor


def test_debug_mode_restores_previous_value():
    prev = config.is_debug()
    with config.debug_mode(True):
        assert config.is_debug()
        with config.debug_mode(False):
            assert not config.is_debug()
        assert config.is_debug()
    assert config.is_debug() == prev


def test_set_debug():
    prev = config.is_debug()
    try:
        config.set_debug(True)
        assert config.is_debug()
        config.set_debug(False)
        assert not config.is_debug()
    finally:
        config.set_debug(prev)


@pytest.mark.parametrize("value,expected", [("1", True), ("TRUE", True), (" on ", True), ("0", False), ("", False)])
def test_debug_flag_from_environment(monkeypatch, value, expected):
    prev = config.is_debug()
    monkeypatch.setenv("BATCHGRAD_DEBUG", value)
    try:
        importlib.reload(config)
        assert config.is_debug() is expected
    finally:
        config.set_debug(prev)


def _kernel_args(gamma_shape):
    x = Tensor.ones(4, 3)
    gamma = Tensor.ones(*gamma_shape)
    beta = Tensor.zeros(1, 3)
    mean = Tensor.zeros(1, 3)
    var = Tensor.ones(1, 3)
    return x, gamma, beta, mean, var, 2e-5, (0,), Tensor.empty_like(x), np.dtype(np.float32)


def test_kernel_shape_assertions_only_in_debug(debug):
    with pytest.raises(AssertionError):
        apply_batch_norm(*_kernel_args((3, 1)))


def test_kernel_skips_assertions_without_debug():
    with config.debug_mode(False):
        # the bad gamma then fails in the array library instead
        with pytest.raises(ValueError):
            apply_batch_norm(*_kernel_args((3, 1)))
