# outlayer/grad_check.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List
import logging

import numpy as np

from .output_layer import BaseOutputLayer

logger = logging.getLogger(__name__)


@dataclass
class GradCheckResult:
    passed: bool
    max_rel_error: float
    n_checked: int
    failures: List[str] = field(default_factory=list)


def _summed_loss(layer: BaseOutputLayer) -> float:
    """
    Unaveraged loss for the current input/labels. The layer's gradients
    are batch sums, so this is the objective they are the derivative of.
    """
    return layer.compute_score(0.0, 0.0, training=False) * layer.get_input_mini_batch_size()


def _compare(analytic: float, numeric: float, where: str, max_rel_error: float,
             min_abs_error: float, result: GradCheckResult) -> None:
    abs_err = abs(analytic - numeric)
    denom = abs(analytic) + abs(numeric)
    rel_err = 0.0 if denom == 0.0 else abs_err / denom

    result.n_checked += 1
    if rel_err > result.max_rel_error:
        result.max_rel_error = rel_err

    if rel_err > max_rel_error and abs_err > min_abs_error:
        msg = f"{where}: analytic={analytic:.8g} numeric={numeric:.8g} rel_err={rel_err:.3g}"
        result.failures.append(msg)
        result.passed = False
        logger.info("[grad_check] FAILED %s", msg)


def _require_no_weight_noise(layer: BaseOutputLayer) -> None:
    if layer.conf.weight_noise is not None:
        raise ValueError(f"Gradient checks need a layer without weight noise {layer.layer_id()}")


def check_param_gradients(
    layer: BaseOutputLayer,
    eps: float = 1e-6,
    max_rel_error: float = 1e-5,
    min_abs_error: float = 1e-8,
) -> GradCheckResult:
    """
    Compare every analytic parameter gradient from backprop_gradient()
    with a central finite difference:

        numeric = (L(p + eps) - L(p - eps)) / (2 * eps)

    Input and labels (and mask) must already be set on the layer. Use
    float64 layers; float32 is too coarse for these tolerances.
    """
    _require_no_weight_noise(layer)

    _, gradient = layer.backprop_gradient()
    analytic = {key: np.array(g, copy=True) for key, g in gradient.items()}

    result = GradCheckResult(passed=True, max_rel_error=0.0, n_checked=0)

    for key, param in layer.param_table().items():
        for idx in np.ndindex(param.shape):
            original = param[idx]

            param[idx] = original + eps
            loss_plus = _summed_loss(layer)

            param[idx] = original - eps
            loss_minus = _summed_loss(layer)

            param[idx] = original

            numeric = (loss_plus - loss_minus) / (2.0 * eps)
            _compare(float(analytic[key][idx]), numeric, f"{key}{list(idx)}",
                     max_rel_error, min_abs_error, result)

    logger.debug("[grad_check] params: checked=%d max_rel_error=%.3g",
                 result.n_checked, result.max_rel_error)
    return result


def check_input_gradients(
    layer: BaseOutputLayer,
    eps: float = 1e-6,
    max_rel_error: float = 1e-5,
    min_abs_error: float = 1e-8,
) -> GradCheckResult:
    """
    Same as check_param_gradients, for the error propagated to the
    previous layer (dL/d input), in the input's own shape.
    """
    _require_no_weight_noise(layer)

    # Perturb a private copy, never the caller's array
    layer.set_input(np.array(layer.input, copy=True))
    x = layer.input

    epsilon_next, _ = layer.backprop_gradient()
    analytic = np.array(epsilon_next, copy=True)

    result = GradCheckResult(passed=True, max_rel_error=0.0, n_checked=0)

    for idx in np.ndindex(x.shape):
        original = x[idx]

        x[idx] = original + eps
        loss_plus = _summed_loss(layer)

        x[idx] = original - eps
        loss_minus = _summed_loss(layer)

        x[idx] = original

        numeric = (loss_plus - loss_minus) / (2.0 * eps)
        _compare(float(analytic[idx]), numeric, f"input{list(idx)}",
                 max_rel_error, min_abs_error, result)

    logger.debug("[grad_check] input: checked=%d max_rel_error=%.3g",
                 result.n_checked, result.max_rel_error)
    return result
