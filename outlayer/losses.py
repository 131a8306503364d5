# outlayer/losses.py
from __future__ import annotations

from typing import Dict, Optional, Type, Union
import numpy as np

from .activations import Activation, Sigmoid, Softmax
from .exceptions import LayerArgumentError
from .masking import apply_mask
from .reduction import Reduction

# Allow both "mean"/"sum"/"none" and Reduction.MEAN etc.
ReductionLike = Union[str, Reduction]


class LossFunction:
    """
    Base class for output-layer loss functions.

    Every loss is a pure strategy object with three operations, each taking
    (labels, pre_output, activation, mask):

        score_array(...)  -> (N,)      per-example loss
        score(...)        -> scalar    reduced over the batch
        gradient(...)     -> (N, C)    dL/d(pre_output), the "delta"

    The gradient is of the SUMMED loss (no division by batch size); the
    layer does the batch averaging on the score side.

    Masking is applied here, once: per-output scores and the delta are
    multiplied by the mask (column vector or same shape as labels).

    Subclasses implement the per-output score and its derivative with
    respect to the activation output:
        _score_per_output(labels, output) -> (N, C)
        _d_output(labels, output)         -> (N, C)

    Attributes:
        weights: Optional (C,) per-output weights, applied to both the
                 score and the gradient.
    """

    name: str = "loss"

    def __init__(self, weights: Optional[np.ndarray] = None) -> None:
        if weights is not None:
            w = np.asarray(weights, dtype=np.float64)
            if w.ndim != 1:
                raise ValueError(
                    f"weights must be 1D (num_outputs,), got shape {w.shape}"
                )
            self.weights: Optional[np.ndarray] = w
        else:
            self.weights = None

    # --------------------------------------------------
    # Subclass hooks
    # --------------------------------------------------
    def _score_per_output(self, labels: np.ndarray, output: np.ndarray) -> np.ndarray:
        raise NotImplementedError(f"{self.__class__.__name__}._score_per_output not implemented.")

    def _d_output(self, labels: np.ndarray, output: np.ndarray) -> np.ndarray:
        raise NotImplementedError(f"{self.__class__.__name__}._d_output not implemented.")

    # --------------------------------------------------
    # Public contract
    # --------------------------------------------------
    def score_array(
        self,
        labels: np.ndarray,
        pre_output: np.ndarray,
        activation: Activation,
        mask: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Per-example loss, shape (N,). Masked outputs contribute 0.
        """
        self._check_shapes(labels, pre_output)
        output = activation.apply(pre_output)
        per_output = self._score_per_output(labels, output)
        per_output = self._apply_weights(per_output)
        if mask is not None:
            per_output = apply_mask(per_output, mask)
        return np.sum(per_output, axis=1)

    def score(
        self,
        labels: np.ndarray,
        pre_output: np.ndarray,
        activation: Activation,
        mask: Optional[np.ndarray] = None,
        reduction: ReductionLike = Reduction.SUM,
    ) -> float | np.ndarray:
        return Reduction.from_value(reduction).reduce(
            self.score_array(labels, pre_output, activation, mask)
        )

    def gradient(
        self,
        labels: np.ndarray,
        pre_output: np.ndarray,
        activation: Activation,
        mask: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        delta = dL/d(pre_output), shape (N, C), masked.
        """
        self._check_shapes(labels, pre_output)
        output = activation.apply(pre_output)
        d_output = self._apply_weights(self._d_output(labels, output))
        delta = activation.backprop(pre_output, d_output)
        if mask is not None:
            delta = apply_mask(delta, mask)
        return delta

    def compute_gradient_and_score(
        self,
        labels: np.ndarray,
        pre_output: np.ndarray,
        activation: Activation,
        mask: Optional[np.ndarray] = None,
        reduction: ReductionLike = Reduction.SUM,
    ) -> tuple[float | np.ndarray, np.ndarray]:
        """
        Returns (score, delta) in one call.
        """
        return (
            self.score(labels, pre_output, activation, mask, reduction),
            self.gradient(labels, pre_output, activation, mask),
        )

    # --------------------------------------------------
    # Helpers for subclasses
    # --------------------------------------------------
    def _check_shapes(self, labels: np.ndarray, pre_output: np.ndarray) -> None:
        if labels.shape != pre_output.shape:
            raise LayerArgumentError(
                f"{self.__class__.__name__}: labels shape {tuple(labels.shape)} "
                f"does not match pre-output shape {tuple(pre_output.shape)}"
            )
        if self.weights is not None and self.weights.shape[0] != labels.shape[1]:
            raise LayerArgumentError(
                f"{self.__class__.__name__}: weights length {self.weights.shape[0]} "
                f"does not match number of outputs {labels.shape[1]}"
            )

    def _apply_weights(self, per_output: np.ndarray) -> np.ndarray:
        if self.weights is None:
            return per_output
        return per_output * self.weights[None, :]

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class LossL2(LossFunction):
    """
    Sum of squared errors over the outputs of each example:
        L = sum_c (a_c - y_c)^2
    """

    name = "l2"

    def _score_per_output(self, labels, output):
        diff = output - labels
        return diff * diff

    def _d_output(self, labels, output):
        return 2.0 * (output - labels)


class LossMSE(LossL2):
    """
    Mean squared error over the outputs of each example:
        L = (1/C) * sum_c (a_c - y_c)^2
    """

    name = "mse"

    def _score_per_output(self, labels, output):
        return super()._score_per_output(labels, output) / labels.shape[1]

    def _d_output(self, labels, output):
        return super()._d_output(labels, output) / labels.shape[1]


class LossMAE(LossFunction):
    """
    Mean absolute error over the outputs of each example:
        L = (1/C) * sum_c |a_c - y_c|
    """

    name = "mae"

    def _score_per_output(self, labels, output):
        return np.abs(output - labels) / labels.shape[1]

    def _d_output(self, labels, output):
        return np.sign(output - labels) / labels.shape[1]


class LossMCXENT(LossFunction):
    """
    Multi-class cross-entropy:
        L = - sum_c y_c * log(p_c)

    With softmax the delta collapses to (p - y); other activations go
    through the generic chain rule with dL/dp = -y / p.

    Probabilities are clipped to [eps, 1 - eps] before taking logs.
    """

    name = "mcxent"

    def __init__(self, weights: Optional[np.ndarray] = None, eps: float = 1e-10) -> None:
        super().__init__(weights=weights)
        self.eps = float(eps)

    def _clip(self, output):
        return np.clip(output, self.eps, 1.0 - self.eps)

    def _score_per_output(self, labels, output):
        return -labels * np.log(self._clip(output))

    def _d_output(self, labels, output):
        return -labels / self._clip(output)

    def gradient(self, labels, pre_output, activation, mask=None):
        if not isinstance(activation, Softmax):
            return super().gradient(labels, pre_output, activation, mask)

        self._check_shapes(labels, pre_output)
        probs = activation.apply(pre_output)
        delta = probs - labels
        if self.weights is not None:
            # d/dz of -sum_c w_c y_c log p_c = p * sum_c(w_c y_c) - w * y
            wy = labels * self.weights[None, :]
            delta = probs * np.sum(wy, axis=1, keepdims=True) - wy
        if mask is not None:
            delta = apply_mask(delta, mask)
        return delta


class LossBinaryXENT(LossFunction):
    """
    Binary cross-entropy, one independent probability per output:
        L = - sum_c [ y_c log(p_c) + (1 - y_c) log(1 - p_c) ]

    With sigmoid the delta collapses to (p - y).
    """

    name = "xent"

    def __init__(self, weights: Optional[np.ndarray] = None, eps: float = 1e-10) -> None:
        super().__init__(weights=weights)
        self.eps = float(eps)

    def _score_per_output(self, labels, output):
        p = np.clip(output, self.eps, 1.0 - self.eps)
        return -(labels * np.log(p) + (1.0 - labels) * np.log(1.0 - p))

    def _d_output(self, labels, output):
        p = np.clip(output, self.eps, 1.0 - self.eps)
        return (p - labels) / (p * (1.0 - p))

    def gradient(self, labels, pre_output, activation, mask=None):
        if not isinstance(activation, Sigmoid):
            return super().gradient(labels, pre_output, activation, mask)

        self._check_shapes(labels, pre_output)
        delta = self._apply_weights(activation.apply(pre_output) - labels)
        if mask is not None:
            delta = apply_mask(delta, mask)
        return delta


_LOSSES: Dict[str, Type[LossFunction]] = {
    "mse": LossMSE,
    "l2": LossL2,
    "mae": LossMAE,
    "l1": LossMAE,
    "mcxent": LossMCXENT,
    "cross_entropy": LossMCXENT,
    "negativeloglikelihood": LossMCXENT,
    "xent": LossBinaryXENT,
    "binary_xent": LossBinaryXENT,
}


def get_loss(loss: Union[str, LossFunction]) -> LossFunction:
    """
    Resolve a loss from its name (case-insensitive) or pass an instance
    straight through.
    """
    if isinstance(loss, LossFunction):
        return loss
    if isinstance(loss, str):
        cls = _LOSSES.get(loss.lower())
        if cls is not None:
            return cls()
        raise ValueError(
            f"Unknown loss: {loss!r}. Expected one of: {sorted(_LOSSES)}"
        )
    raise TypeError(f"Invalid loss type: {type(loss).__name__}")
