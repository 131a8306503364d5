# solver_test.py

from __future__ import annotations

import numpy as np
import pytest

from outlayer.config import OutputLayerConfig, UpdaterConfig
from outlayer.optim import Adam, Sgd, build_optimizer
from outlayer.output_layer import OutputLayer
from outlayer.params import BIAS_KEY, WEIGHT_KEY, Param
from outlayer.solver import Solver


def assert_allclose(a, b, atol=1e-10, rtol=1e-8):
    a = np.asarray(a)
    b = np.asarray(b)
    if a.shape != b.shape:
        raise AssertionError(f"Shape mismatch: {a.shape} vs {b.shape}")
    if not np.allclose(a, b, atol=atol, rtol=rtol):
        diff = np.abs(a - b)
        raise AssertionError(f"Arrays differ: max |a-b| = {float(diff.max())}")


def make_layer(updater: UpdaterConfig, l1=0.0, l2=0.0) -> OutputLayer:
    rng = np.random.default_rng(21)
    layer = OutputLayer(OutputLayerConfig(n_in=3, n_out=2, activation="identity", loss="mse",
                                          l1=l1, l2=l2, updater=updater, seed=21))
    layer.set_input(rng.normal(size=(5, 3)))
    layer.set_labels(rng.normal(size=(5, 2)))
    return layer


def test_sgd_step_follows_regularized_objective():
    lr, l1, l2 = 0.1, 0.01, 0.05
    layer = make_layer(UpdaterConfig(name="sgd", lr=lr), l1=l1, l2=l2)
    n = 5

    W = layer.get_param(WEIGHT_KEY).copy()
    b = layer.get_param(BIAS_KEY).copy()
    _, gradient = layer.backprop_gradient()
    grad_W = gradient[WEIGHT_KEY].copy()
    grad_b = gradient[BIAS_KEY].copy()
    expected_score = layer.compute_score(layer.calc_l1(), layer.calc_l2())

    solver = Solver(layer)
    score = solver.optimize()

    assert solver.iterations == 1
    assert_allclose(score, expected_score)
    assert_allclose(layer.get_param(WEIGHT_KEY), W - lr * (grad_W + l2 * W + l1 * np.sign(W)) / n)
    assert_allclose(layer.get_param(BIAS_KEY), b - lr * grad_b / n)


def test_sgd_without_minibatch_scaling():
    lr = 0.01
    layer = make_layer(UpdaterConfig(name="sgd", lr=lr, minibatch=False))
    W = layer.get_param(WEIGHT_KEY).copy()
    _, gradient = layer.backprop_gradient()
    grad_W = gradient[WEIGHT_KEY].copy()

    Solver(layer).optimize()

    assert_allclose(layer.get_param(WEIGHT_KEY), W - lr * grad_W)


def test_optimize_without_labels_keeps_params():
    layer = make_layer(UpdaterConfig())
    solver = Solver(layer)
    before = layer.params().copy()

    layer.set_labels(None)
    assert solver.optimize() == layer.score

    assert solver.iterations == 0
    assert_allclose(layer.params(), before)


def test_adam_first_step_moves_by_lr():
    # With bias correction the first Adam step is lr * sign(grad) (up to eps)
    data = np.array([1.0, -2.0, 3.0])
    grad = np.array([0.5, -4.0, 0.0])
    opt = Adam([Param(data=data, grad=grad)], lr=0.1)

    opt.step()

    assert_allclose(data, [0.9, -1.9, 3.0], atol=1e-6)


def test_build_optimizer():
    params = [Param(data=np.zeros(2), grad=np.zeros(2))]
    assert isinstance(build_optimizer(params, UpdaterConfig(name="sgd")), Sgd)
    assert isinstance(build_optimizer(params, UpdaterConfig(name="Adam")), Adam)

    with pytest.raises(ValueError):
        Sgd([])
    with pytest.raises(ValueError):
        Adam(params, betas=(1.0, 0.999))


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
