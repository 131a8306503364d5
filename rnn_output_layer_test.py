# rnn_output_layer_test.py

from __future__ import annotations

import numpy as np
import pytest

from outlayer.config import OutputLayerConfig, UpdaterConfig
from outlayer.dataset import DataSet
from outlayer.exceptions import LayerArgumentError, LayerStateError, UnsupportedOperationError
from outlayer.grad_check import check_input_gradients, check_param_gradients
from outlayer.output_layer import OutputLayer
from outlayer.params import BIAS_KEY, WEIGHT_KEY
from outlayer.rnn_output_layer import RnnOutputLayer
from outlayer.time_series import (
    reshape_2d_to_3d,
    reshape_3d_to_2d,
    reshape_time_series_mask_to_vector,
    reshape_vector_to_time_series_mask,
)
from outlayer.weight_noise import WeightNoise


# --------------------------------------------------
# Helpers
# --------------------------------------------------

def assert_allclose(a, b, atol=1e-10, rtol=1e-8):
    a = np.asarray(a)
    b = np.asarray(b)
    if a.shape != b.shape:
        raise AssertionError(f"Shape mismatch: {a.shape} vs {b.shape}")
    if not np.allclose(a, b, atol=atol, rtol=rtol):
        diff = np.abs(a - b)
        raise AssertionError(f"Arrays differ: max |a-b| = {float(diff.max())}")


def one_hot_sequences(rng: np.random.Generator, B: int, C: int, T: int) -> np.ndarray:
    """(B, C, T) labels with exactly one active class per time step."""
    y = np.zeros((B, C, T))
    classes = rng.integers(0, C, size=(B, T))
    for b in range(B):
        y[b, classes[b], np.arange(T)] = 1.0
    return y


def make_conf(n_in=3, n_out=4, activation="softmax", loss="mcxent", seed=0, **kwargs):
    return OutputLayerConfig(n_in=n_in, n_out=n_out, activation=activation, loss=loss,
                             seed=seed, **kwargs)


def loaded_rnn_layer(seed=0, B=3, n_in=3, n_out=4, T=5, **kwargs) -> RnnOutputLayer:
    rng = np.random.default_rng(seed)
    layer = RnnOutputLayer(make_conf(n_in=n_in, n_out=n_out, seed=seed, **kwargs))
    layer.set_input(rng.normal(size=(B, n_in, T)))
    layer.set_labels(one_hot_sequences(rng, B, n_out, T))
    return layer


# --------------------------------------------------
# Reshaping
# --------------------------------------------------

def test_flatten_row_order_and_round_trip():
    B, F, T = 2, 3, 4
    x = np.arange(B * F * T, dtype=np.float64).reshape(B, F, T)

    flat = reshape_3d_to_2d(x)
    assert flat.shape == (B * T, F)
    for b in range(B):
        for t in range(T):
            assert_allclose(flat[b * T + t], x[b, :, t])

    assert_allclose(reshape_2d_to_3d(flat, B), x)


def test_time_mask_round_trip():
    mask = np.array([[1.0, 0.0, 1.0], [0.0, 1.0, 1.0]])
    vec = reshape_time_series_mask_to_vector(mask)
    assert vec.shape == (6, 1)
    assert_allclose(vec[:, 0], [1.0, 0.0, 1.0, 0.0, 1.0, 1.0])
    assert_allclose(reshape_vector_to_time_series_mask(vec, 2), mask)


def test_reshape_rejects_bad_shapes():
    with pytest.raises(LayerArgumentError):
        reshape_3d_to_2d(np.zeros((2, 3)))
    with pytest.raises(LayerArgumentError):
        reshape_2d_to_3d(np.zeros((5, 3)), 2)
    with pytest.raises(LayerArgumentError):
        reshape_vector_to_time_series_mask(np.zeros(5), 2)


# --------------------------------------------------
# Agreement with the dense layer
# --------------------------------------------------

def test_single_time_step_matches_dense_layer():
    rng = np.random.default_rng(1)
    B, n_in, n_out = 4, 3, 5
    x = rng.normal(size=(B, n_in))
    y = one_hot_sequences(rng, B, n_out, 1)[:, :, 0]

    dense = OutputLayer(make_conf(n_in=n_in, n_out=n_out, seed=1))
    rnn = RnnOutputLayer(make_conf(n_in=n_in, n_out=n_out, seed=1))
    assert_allclose(rnn.params(), dense.params())

    dense.set_input(x)
    dense.set_labels(y)
    rnn.set_input(x[:, :, None])
    rnn.set_labels(y[:, :, None])

    assert_allclose(rnn.compute_score(0.1, 0.2), dense.compute_score(0.1, 0.2))
    assert_allclose(rnn.compute_score_for_examples(0.0, 0.0), dense.compute_score_for_examples(0.0, 0.0))

    eps_dense, grad_dense = dense.backprop_gradient()
    eps_dense = eps_dense.copy()
    dense_grads = grad_dense.flattened()
    eps_rnn, grad_rnn = rnn.backprop_gradient()

    assert eps_rnn.shape == (B, n_in, 1)
    assert_allclose(eps_rnn[:, :, 0], eps_dense)
    assert_allclose(grad_rnn.flattened(), dense_grads)
    assert_allclose(rnn.output(x[:, :, None])[:, :, 0], dense.output(x))


def test_score_is_sum_over_time_slices():
    rng = np.random.default_rng(2)
    B, n_in, n_out, T = 3, 2, 4, 5
    layer = loaded_rnn_layer(seed=2, B=B, n_in=n_in, n_out=n_out, T=T)
    x, y = layer.input, layer.labels
    time_mask = (rng.random((B, T)) < 0.6).astype(np.float64)
    layer.set_mask_array(time_mask)

    total = layer.compute_score(0.0, 0.0) * B
    per_sequence = layer.compute_score_for_examples(0.0, 0.0)
    _, gradient = layer.backprop_gradient()
    rnn_grads = gradient.flattened()

    dense = OutputLayer(make_conf(n_in=n_in, n_out=n_out, seed=2))
    sliced_total = 0.0
    sliced_per_sequence = np.zeros(B)
    sliced_grads = np.zeros_like(rnn_grads)
    for t in range(T):
        dense.set_input(x[:, :, t])
        dense.set_labels(y[:, :, t])
        dense.set_mask_array(time_mask[:, t])
        sliced_total += dense.compute_score(0.0, 0.0) * B
        sliced_per_sequence += dense.compute_score_for_examples(0.0, 0.0)
        _, g = dense.backprop_gradient()
        sliced_grads += g.flattened()

    assert_allclose(total, sliced_total)
    assert_allclose(per_sequence, sliced_per_sequence)
    assert_allclose(rnn_grads, sliced_grads)


def test_score_is_sum_over_time_slices_with_per_output_mask():
    rng = np.random.default_rng(12)
    B, n_in, n_out, T = 2, 3, 4, 4
    layer = loaded_rnn_layer(seed=12, B=B, n_in=n_in, n_out=n_out, T=T,
                             activation="sigmoid", loss="xent")
    x, y = layer.input, layer.labels
    mask = (rng.random((B, n_out, T)) < 0.7).astype(np.float64)
    layer.set_mask_array(mask)

    total = layer.compute_score(0.0, 0.0) * B
    per_sequence = layer.compute_score_for_examples(0.0, 0.0)
    eps_rnn, gradient = layer.backprop_gradient()
    rnn_grads = gradient.flattened()

    dense = OutputLayer(make_conf(n_in=n_in, n_out=n_out, activation="sigmoid",
                                  loss="xent", seed=12))
    sliced_total = 0.0
    sliced_per_sequence = np.zeros(B)
    sliced_grads = np.zeros_like(rnn_grads)
    for t in range(T):
        dense.set_input(x[:, :, t])
        dense.set_labels(y[:, :, t])
        dense.set_mask_array(mask[:, :, t])
        sliced_total += dense.compute_score(0.0, 0.0) * B
        sliced_per_sequence += dense.compute_score_for_examples(0.0, 0.0)
        eps_t, g = dense.backprop_gradient()
        assert_allclose(eps_rnn[:, :, t], eps_t)
        sliced_grads += g.flattened()

    assert_allclose(total, sliced_total)
    assert_allclose(per_sequence, sliced_per_sequence)
    assert_allclose(rnn_grads, sliced_grads)


def test_regularization_added_once_per_sequence():
    layer = loaded_rnn_layer(seed=3, B=2, T=6)
    base = layer.compute_score_for_examples(0.0, 0.0)
    regularized = layer.compute_score_for_examples(0.2, 0.3)
    assert base.shape == (2,)
    assert_allclose(regularized, base + 0.5)

    # compute_score divides by the number of sequences, not time steps
    assert_allclose(layer.compute_score(0.2, 0.3), base.mean() + 0.5 / 2)


# --------------------------------------------------
# Forward
# --------------------------------------------------

def test_softmax_output_is_a_distribution_per_time_step():
    B, n_out, T = 2, 4, 3
    layer = loaded_rnn_layer(seed=4, B=B, n_out=n_out, T=T)
    time_mask = np.array([[1.0, 1.0, 0.0], [1.0, 0.0, 1.0]])
    layer.set_mask_array(time_mask)

    out = layer.output(layer.input)
    assert out.shape == (B, n_out, T)

    sums = out.sum(axis=1)
    assert_allclose(sums, time_mask)
    assert np.all(out[0, :, 2] == 0.0)
    assert np.all(out[1, :, 1] == 0.0)

    # activate() gives the same masked activations
    assert_allclose(layer.activate(False), out)


def test_per_output_mask():
    B, n_out, T = 2, 3, 4
    layer = loaded_rnn_layer(seed=5, B=B, n_out=n_out, T=T, activation="identity", loss="mse")
    mask = np.ones((B, n_out, T))
    mask[0, 1, 2] = 0.0
    layer.set_mask_array(mask)
    assert layer.mask_array.shape == (B * T, n_out)

    out = layer.output()
    assert out[0, 1, 2] == 0.0
    assert out.shape == (B, n_out, T)

    _, gradient = layer.backprop_gradient()
    assert gradient[WEIGHT_KEY].shape == (3, n_out)
    assert gradient[BIAS_KEY].shape == (n_out,)


# --------------------------------------------------
# Errors
# --------------------------------------------------

def test_rank_errors():
    layer = RnnOutputLayer(make_conf())

    with pytest.raises(LayerArgumentError):
        layer.output()
    with pytest.raises(LayerArgumentError):
        layer.output(np.zeros((2, 3)))

    layer.set_input(np.zeros((2, 3)))
    layer.set_labels(np.zeros((2, 4)))
    with pytest.raises(UnsupportedOperationError):
        layer.backprop_gradient()
    with pytest.raises(LayerArgumentError):
        layer.output()

    with pytest.raises(UnsupportedOperationError) as info:
        layer.set_mask_array(np.ones(6))
    assert "rank 1" in str(info.value)


def test_backprop_without_labels_is_a_state_error():
    layer = RnnOutputLayer(make_conf())
    layer.set_input(np.zeros((2, 3, 4)))
    with pytest.raises(LayerStateError):
        layer.backprop_gradient()
    with pytest.raises(LayerStateError):
        layer.compute_score()


# --------------------------------------------------
# Backward
# --------------------------------------------------

def test_backprop_shapes_and_input_restored():
    B, n_in, n_out, T = 3, 2, 4, 5
    layer = loaded_rnn_layer(seed=6, B=B, n_in=n_in, n_out=n_out, T=T)
    x = layer.input

    epsilon_next, gradient = layer.backprop_gradient(np.ones((B, n_out, T)))

    assert epsilon_next.shape == (B, n_in, T)
    assert gradient[WEIGHT_KEY].shape == (n_in, n_out)
    assert gradient[BIAS_KEY].shape == (n_out,)
    assert layer.input is x
    assert np.shares_memory(gradient[WEIGHT_KEY], layer.arena.grads_flat)


def test_compute_gradient_and_score_matches_backprop():
    layer = loaded_rnn_layer(seed=7)
    layer.compute_gradient_and_score()
    grads = layer.gradient.flattened()
    score = layer.score

    _, gradient = layer.backprop_gradient()
    assert_allclose(gradient.flattened(), grads)
    assert_allclose(layer.compute_score(0.0, 0.0, True), score)
    assert layer.input.ndim == 3


def test_rank_2_input_trains_like_the_dense_layer():
    rng = np.random.default_rng(13)
    n, n_in, n_out = 6, 3, 4
    x = rng.normal(size=(n, n_in))
    y = one_hot_sequences(rng, n, n_out, 1)[:, :, 0]

    rnn = RnnOutputLayer(make_conf(n_in=n_in, n_out=n_out, seed=13))
    dense = OutputLayer(make_conf(n_in=n_in, n_out=n_out, seed=13))
    for layer in (rnn, dense):
        layer.set_input(x)
        layer.set_labels(y)
        layer.compute_gradient_and_score()

    assert_allclose(rnn.score, dense.score)
    assert_allclose(rnn.gradient.flattened(), dense.gradient.flattened())

    rnn.fit(x, y)
    dense.fit(x, y)
    assert_allclose(rnn.params(), dense.params())


def test_weight_noise_dropped_after_backprop():
    layer = loaded_rnn_layer(seed=8, weight_noise=WeightNoise(stddev=0.1))
    layer.backprop_gradient()
    assert layer._weight_noise_params == {}


@pytest.mark.parametrize("activation,loss", [("softmax", "mcxent"), ("tanh", "mse")])
def test_finite_difference_gradients(activation, loss):
    layer = loaded_rnn_layer(seed=9, B=2, n_in=2, n_out=3, T=3, activation=activation, loss=loss)
    layer.set_mask_array(np.array([[1.0, 0.0, 1.0], [1.0, 1.0, 0.0]]))

    params = check_param_gradients(layer)
    assert params.passed, params.failures

    inputs = check_input_gradients(layer)
    assert inputs.passed, inputs.failures
    assert inputs.n_checked == 2 * 2 * 3


# --------------------------------------------------
# Fitting
# --------------------------------------------------

def test_fit_sequences_reduces_score():
    B, T = 4, 6
    layer = loaded_rnn_layer(seed=10, B=B, T=T, updater=UpdaterConfig(name="adam", lr=0.05))
    x, y = layer.input.copy(), layer.labels.copy()
    time_mask = np.ones((B, T))
    start = layer.compute_score(0.0, 0.0)

    for _ in range(100):
        layer.fit(DataSet(features=x, labels=y, labels_mask=time_mask))

    assert layer.mask_array.shape == (B * T, 1)
    assert layer.input.shape == x.shape
    assert layer.compute_score(0.0, 0.0) < start


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
