# output_layer_cross_verify.py

from __future__ import annotations

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from outlayer.config import OutputLayerConfig
from outlayer.output_layer import OutputLayer
from outlayer.params import BIAS_KEY, WEIGHT_KEY
from outlayer.rnn_output_layer import RnnOutputLayer


# --------------------------------------------------
# Config
# --------------------------------------------------

NUM_TRIALS = 48


# --------------------------------------------------
# Helpers
# --------------------------------------------------

def assert_allclose(a, b, atol=1e-8, rtol=1e-6):
    a = np.asarray(a)
    b = np.asarray(b)
    if a.shape != b.shape:
        raise AssertionError(f"Shape mismatch: {a.shape} vs {b.shape}")
    if not np.allclose(a, b, atol=atol, rtol=rtol):
        diff = np.abs(a - b)
        raise AssertionError(
            f"Arrays differ: max |a-b| = {float(diff.max())}, atol={atol}, rtol={rtol}"
        )


def sync_layer_to_torch(layer, torch_layer: nn.Linear) -> None:
    """
    Copy W (n_in, n_out) and b (n_out,) into a torch.nn.Linear, whose
    weight is stored the other way round: (out_features, in_features).
    """
    with torch.no_grad():
        torch_layer.weight.copy_(torch.from_numpy(layer.get_param(WEIGHT_KEY).T.copy()))
        torch_layer.bias.copy_(torch.from_numpy(layer.get_param(BIAS_KEY).copy()))


def one_hot_rows(n: int, c: int) -> np.ndarray:
    y = np.zeros((n, c))
    y[np.arange(n), np.random.randint(0, c, size=n)] = 1.0
    return y


# --------------------------------------------------
# Dense output layer vs torch
# --------------------------------------------------

def cross_verify_output_layer_once(trial_index: int) -> None:
    """
    OutputLayer (softmax + MCXENT) against nn.Linear + log_softmax with a
    per-example mask:
      - score (sum of masked losses / N)
      - per-example scores
      - dL/dW, dL/db (sums over the batch)
      - propagated error dL/dx
    """
    n = int(np.random.randint(1, 9))
    n_in = int(np.random.randint(1, 7))
    n_out = int(np.random.randint(2, 6))

    layer = OutputLayer(OutputLayerConfig(n_in=n_in, n_out=n_out, activation="softmax",
                                          loss="mcxent", seed=trial_index))
    torch_lin = nn.Linear(n_in, n_out).double()
    sync_layer_to_torch(layer, torch_lin)

    x = np.random.uniform(-2.0, 2.0, size=(n, n_in))
    y = one_hot_rows(n, n_out)
    mask = (np.random.rand(n, 1) < 0.75).astype(np.float64)

    layer.set_input(x)
    layer.set_labels(y)
    layer.set_mask_array(mask)

    score = layer.compute_score(0.0, 0.0, training=True)
    per_example = layer.compute_score_for_examples(0.0, 0.0)
    epsilon_next, gradient = layer.backprop_gradient()

    x_t = torch.from_numpy(x.copy()).requires_grad_(True)
    z_t = torch_lin(x_t)
    per_example_t = (-torch.from_numpy(y) * F.log_softmax(z_t, dim=1)).sum(dim=1)
    per_example_t = per_example_t * torch.from_numpy(mask[:, 0])
    total = per_example_t.sum()
    total.backward()

    assert_allclose(score, float(total) / n)
    assert_allclose(per_example, per_example_t.detach().numpy())
    assert_allclose(gradient[WEIGHT_KEY], torch_lin.weight.grad.numpy().T)
    assert_allclose(gradient[BIAS_KEY], torch_lin.bias.grad.numpy())
    assert_allclose(epsilon_next, x_t.grad.numpy())


# --------------------------------------------------
# Sequence output layer vs torch
# --------------------------------------------------

def cross_verify_rnn_output_layer_once(trial_index: int) -> None:
    """
    RnnOutputLayer (identity + MSE) against nn.Linear applied at every
    time step of a (B, T, F) view, with a (B, T) time mask:
      - score (sum over all steps / B)
      - per-sequence scores (sum over time)
      - parameter gradients and dL/dx in (B, F, T)
      - output in (B, n_out, T)
    """
    B = int(np.random.randint(1, 5))
    T = int(np.random.randint(1, 6))
    n_in = int(np.random.randint(1, 6))
    n_out = int(np.random.randint(1, 5))

    layer = RnnOutputLayer(OutputLayerConfig(n_in=n_in, n_out=n_out, activation="identity",
                                             loss="mse", seed=1000 + trial_index))
    torch_lin = nn.Linear(n_in, n_out).double()
    sync_layer_to_torch(layer, torch_lin)

    x = np.random.randn(B, n_in, T)
    y = np.random.randn(B, n_out, T)
    time_mask = (np.random.rand(B, T) < 0.7).astype(np.float64)

    layer.set_input(x)
    layer.set_labels(y)
    layer.set_mask_array(time_mask)

    score = layer.compute_score(0.0, 0.0, training=True)
    per_sequence = layer.compute_score_for_examples(0.0, 0.0)
    epsilon_next, gradient = layer.backprop_gradient()
    out = layer.output(x)

    x_t = torch.from_numpy(x.copy()).requires_grad_(True)
    z_t = torch_lin(x_t.permute(0, 2, 1))                           # (B, T, n_out)
    y_t = torch.from_numpy(y).permute(0, 2, 1)                      # (B, T, n_out)
    per_step = ((z_t - y_t) ** 2).mean(dim=2) * torch.from_numpy(time_mask)   # (B, T)
    per_sequence_t = per_step.sum(dim=1)
    total = per_sequence_t.sum()
    total.backward()

    out_t = (z_t * torch.from_numpy(time_mask)[:, :, None]).permute(0, 2, 1)

    assert_allclose(score, float(total) / B)
    assert_allclose(per_sequence, per_sequence_t.detach().numpy())
    assert_allclose(gradient[WEIGHT_KEY], torch_lin.weight.grad.numpy().T)
    assert_allclose(gradient[BIAS_KEY], torch_lin.bias.grad.numpy())
    assert_allclose(epsilon_next, x_t.grad.numpy())
    assert_allclose(out, out_t.detach().numpy())


def test_output_layer_cross_verify() -> None:
    np.random.seed(1357)
    torch.manual_seed(1357)

    for i in range(NUM_TRIALS):
        cross_verify_output_layer_once(i)


def test_rnn_output_layer_cross_verify() -> None:
    np.random.seed(9753)
    torch.manual_seed(9753)

    for i in range(NUM_TRIALS):
        cross_verify_rnn_output_layer_once(i)


# --------------------------------------------------
# Script entry point
# --------------------------------------------------

if __name__ == "__main__":
    np.random.seed(1357)
    torch.manual_seed(1357)

    print(f"[output_layer_cross_verify] Running {NUM_TRIALS} dense + {NUM_TRIALS} sequence trials...")
    try:
        for i in range(NUM_TRIALS):
            cross_verify_output_layer_once(i)
            cross_verify_rnn_output_layer_once(i)
            print(f"  [OK] trial {i+1}/{NUM_TRIALS}")
    except AssertionError as e:
        print(f"[output_layer_cross_verify] FAILED on trial {i}: {e}")
        raise
    else:
        print("[output_layer_cross_verify] All trials passed. "
              "OutputLayer and RnnOutputLayer agree with torch.nn.Linear + loss.")
