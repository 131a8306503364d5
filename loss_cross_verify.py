# loss_cross_verify.py

from __future__ import annotations

import numpy as np
import torch
import torch.nn.functional as F

from outlayer.activations import Identity, Sigmoid, Softmax, Tanh
from outlayer.losses import LossBinaryXENT, LossL2, LossMCXENT, LossMSE
from outlayer.reduction import Reduction


# --------------------------------------------------
# Config
# --------------------------------------------------

NUM_TRIALS = 64


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


def one_hot(n: int, c: int) -> np.ndarray:
    y = np.zeros((n, c))
    y[np.arange(n), np.random.randint(0, c, size=n)] = 1.0
    return y


def random_column_mask(n: int) -> np.ndarray:
    mask = (np.random.rand(n, 1) < 0.7).astype(np.float64)
    mask[0, 0] = 1.0
    return mask


# Each case: (loss, activation, label maker, torch per-output loss from z and y)
def _mcxent_softmax(z, y):
    return -y * F.log_softmax(z, dim=1)


def _mse_identity(z, y):
    return (z - y) ** 2 / y.shape[1]


def _l2_tanh(z, y):
    return (torch.tanh(z) - y) ** 2


def _xent_sigmoid(z, y):
    return F.binary_cross_entropy_with_logits(z, y, reduction="none")


def _mse_softmax(z, y):
    return (torch.softmax(z, dim=1) - y) ** 2 / y.shape[1]


def _mcxent_sigmoid(z, y):
    return -y * torch.log(torch.sigmoid(z))


CASES = [
    ("mcxent+softmax", LossMCXENT(), Softmax(), "one_hot", _mcxent_softmax),
    ("mse+identity", LossMSE(), Identity(), "real", _mse_identity),
    ("l2+tanh", LossL2(), Tanh(), "unit", _l2_tanh),
    ("xent+sigmoid", LossBinaryXENT(), Sigmoid(), "binary", _xent_sigmoid),
    ("mse+softmax", LossMSE(), Softmax(), "one_hot", _mse_softmax),
    ("mcxent+sigmoid", LossMCXENT(), Sigmoid(), "one_hot", _mcxent_sigmoid),
]


def make_labels(kind: str, n: int, c: int) -> np.ndarray:
    if kind == "one_hot":
        return one_hot(n, c)
    if kind == "binary":
        return (np.random.rand(n, c) < 0.5).astype(np.float64)
    if kind == "unit":
        return np.random.uniform(-0.9, 0.9, size=(n, c))
    return np.random.randn(n, c)


# --------------------------------------------------
# Core cross-verify
# --------------------------------------------------

def cross_verify_loss_once(trial_index: int) -> None:
    """
    For one random (N, C) problem and every loss/activation case:
      1. per-example score, summed score and delta from outlayer
      2. the same per-output loss written directly in torch, masked,
         summed, and differentiated by autograd
      3. assert everything matches
    """
    n = int(np.random.randint(1, 9))
    c = int(np.random.randint(2, 7))
    z = np.random.uniform(-3.0, 3.0, size=(n, c))
    use_mask = trial_index % 2 == 1
    mask = random_column_mask(n) if use_mask else None

    for name, loss, activation, label_kind, torch_loss in CASES:
        y = make_labels(label_kind, n, c)

        score_array = loss.score_array(y, z, activation, mask)
        score_sum = loss.score(y, z, activation, mask, Reduction.SUM)
        score_mean = loss.score(y, z, activation, mask, "mean")
        delta = loss.gradient(y, z, activation, mask)

        z_t = torch.from_numpy(z.copy()).requires_grad_(True)
        y_t = torch.from_numpy(y.copy())
        per_output = torch_loss(z_t, y_t)
        if mask is not None:
            per_output = per_output * torch.from_numpy(mask)
        per_example = per_output.sum(dim=1)
        per_example.sum().backward()

        try:
            assert_allclose(score_array, per_example.detach().numpy())
            assert_allclose(score_sum, float(per_example.sum()))
            assert_allclose(score_mean, float(per_example.mean()))
            assert_allclose(delta, z_t.grad.numpy())
        except AssertionError as e:
            raise AssertionError(f"[{name}] trial {trial_index}: {e}") from e


def test_loss_cross_verify() -> None:
    np.random.seed(2468)
    torch.manual_seed(2468)

    for i in range(NUM_TRIALS):
        cross_verify_loss_once(i)


def test_reduction_values() -> None:
    scores = np.array([1.0, 2.0, 6.0])
    assert Reduction.from_value(None) is Reduction.SUM
    assert Reduction.from_value("MEAN") is Reduction.MEAN
    assert Reduction.SUM.reduce(scores) == 9.0
    assert Reduction.MEAN.reduce(scores) == 3.0
    assert Reduction.MEAN.reduce(np.zeros((0,))) == 0.0
    assert Reduction.NONE.reduce(scores) is scores

    try:
        Reduction.from_value("max")
    except ValueError:
        pass
    else:
        raise AssertionError("Reduction.from_value('max') should raise ValueError")


def test_weighted_mcxent_softmax_matches_torch() -> None:
    np.random.seed(77)
    n, c = 6, 4
    z = np.random.randn(n, c)
    y = one_hot(n, c)
    w = np.array([0.5, 1.0, 2.0, 3.0])

    loss = LossMCXENT(weights=w)
    delta = loss.gradient(y, z, Softmax())
    score = loss.score(y, z, Softmax())

    z_t = torch.from_numpy(z.copy()).requires_grad_(True)
    target = torch.from_numpy(np.argmax(y, axis=1))
    expected = F.cross_entropy(z_t, target, weight=torch.from_numpy(w), reduction="sum")
    expected.backward()

    assert_allclose(score, float(expected))
    assert_allclose(delta, z_t.grad.numpy())


# --------------------------------------------------
# Script entry point
# --------------------------------------------------

if __name__ == "__main__":
    np.random.seed(2468)
    torch.manual_seed(2468)

    print(f"[loss_cross_verify] Running {NUM_TRIALS} random trials x {len(CASES)} cases...")
    try:
        for i in range(NUM_TRIALS):
            cross_verify_loss_once(i)
            print(f"  [OK] trial {i+1}/{NUM_TRIALS}")
    except AssertionError as e:
        print(f"[loss_cross_verify] FAILED on trial {i}: {e}")
        raise
    else:
        print("[loss_cross_verify] All trials passed. Scores and deltas agree with torch.")
