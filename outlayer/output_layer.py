# outlayer/output_layer.py
from __future__ import annotations

from typing import Any, Optional, Tuple
import logging

import numpy as np

from .base_layer import BaseLayer
from .config import OutputLayerConfig
from .dataset import DataSet, as_dataset
from .exceptions import LayerArgumentError, LayerStateError
from .masking import apply_mask
from .params import BIAS_KEY, WEIGHT_KEY, Gradient
from .reduction import Reduction
from .solver import Solver

logger = logging.getLogger(__name__)


class BaseOutputLayer(BaseLayer):
    """
    Terminal layer of a network: couples the dense layer to a loss.

    Given input x (N, n_in), labels y (N, n_out) and an optional mask:

        z     = x @ W + b                             pre-output
        score = (loss.score(y, z) + l1 + l2) / N      scalar
        delta = loss.gradient(y, z)                   dL/dz, (N, n_out)
        dL/dW = x.T @ delta                           (n_in, n_out)
        dL/db = sum(delta, axis=0)                    (n_out,)
        eps   = (W @ delta.T).T                       (N, n_in), to previous layer

    Weight and bias gradients are written into the layer's pre-allocated
    gradient views and stay valid until the next gradient call.

    Subclasses reshape around this math by overriding _pre_output_2d and
    get_labels_2d (see RnnOutputLayer).
    """

    def __init__(self, conf: OutputLayerConfig, index: int = 0):
        super().__init__(conf, index)
        self.loss_fn = conf.loss

        self._labels: Optional[np.ndarray] = None
        self._solver: Optional[Solver] = None

        # Regularization totals supplied by the enclosing network
        self._full_network_l1 = 0.0
        self._full_network_l2 = 0.0
        self._score = 0.0

    # ------------------------------------------------------
    # Labels / cached results
    # ------------------------------------------------------
    @property
    def labels(self) -> Optional[np.ndarray]:
        return self._labels

    def set_labels(self, labels: Optional[np.ndarray]) -> None:
        self._labels = None if labels is None else np.asarray(labels, dtype=self.dtype)

    @property
    def score(self) -> float:
        return self._score

    def gradient_and_score(self) -> Tuple[Optional[Gradient], float]:
        return self.gradient, self._score

    def _require_input_and_labels(self) -> None:
        if self._input is None or self._labels is None:
            raise LayerStateError(
                f"Cannot calculate score without input and labels {self.layer_id()}"
            )

    # ------------------------------------------------------
    # Scoring
    # ------------------------------------------------------
    def compute_score(self, full_network_l1: float = 0.0, full_network_l2: float = 0.0,
                      training: bool = False) -> float:
        """
        Score after input and labels have been set.

        full_network_l1 / full_network_l2: regularization terms for the
        entire network. training: whether to score at train time (weight
        noise applies).
        """
        self._require_input_and_labels()
        self._full_network_l1 = float(full_network_l1)
        self._full_network_l2 = float(full_network_l2)

        pre_out = self._pre_output_2d(training)
        score = self.loss_fn.score(
            self.get_labels_2d(), pre_out, self.activation_fn, self.mask_array, Reduction.SUM
        )
        score += self._full_network_l1 + self._full_network_l2
        score /= self.get_input_mini_batch_size()

        if not np.isfinite(score):
            logger.warning("%s: non-finite score %s", self.name, score)

        self._score = float(score)
        return self._score

    def compute_score_for_examples(self, full_network_l1: float = 0.0,
                                   full_network_l2: float = 0.0) -> np.ndarray:
        """
        Score of each example, shape (N,). Regularization is added to every
        entry and nothing is averaged.
        """
        self._require_input_and_labels()
        pre_out = self._pre_output_2d(False)

        score_array = self.loss_fn.score_array(
            self.get_labels_2d(), pre_out, self.activation_fn, self.mask_array
        )
        l1l2 = full_network_l1 + full_network_l2
        if l1l2 != 0.0:
            score_array += l1l2
        return score_array

    # ------------------------------------------------------
    # Gradients
    # ------------------------------------------------------
    def compute_gradient_and_score(self) -> None:
        """
        No-op when input or labels are unset, so it can be called
        speculatively.
        """
        if self._input is None or self._labels is None:
            return

        pre_out = self._pre_output_2d(True)
        self.gradient, _ = self._get_gradients_and_delta(pre_out)

        self.compute_score(self._full_network_l1, self._full_network_l2, True)

    def backprop_gradient(self, epsilon: Optional[np.ndarray] = None) -> Tuple[np.ndarray, Gradient]:
        """
        Returns (epsilon_next, gradient).

        epsilon from a downstream layer is accepted for the generic layer
        contract and ignored: the output layer's error comes from its loss.
        """
        self._require_input_and_labels()

        gradient, delta = self._get_gradients_and_delta(self._pre_output_2d(True))
        W = self.get_param_with_noise(WEIGHT_KEY, True)

        # (n_in, n_out) @ (n_out, N) -> (n_in, N) -> (N, n_in)
        epsilon_next = (W @ delta.T).T

        self.gradient = gradient
        return epsilon_next, gradient

    def _get_gradients_and_delta(self, pre_out: np.ndarray) -> Tuple[Gradient, np.ndarray]:
        labels_2d = self.get_labels_2d()
        delta = self.loss_fn.gradient(labels_2d, pre_out, self.activation_fn, self.mask_array)

        if not np.all(np.isfinite(delta)):
            logger.warning("%s: NaN or Inf detected in delta (dL/dz)", self.name)

        gradient = Gradient()

        # x.T is a view; the product is written straight into the arena
        weight_grad_view = self.arena.grad_view(WEIGHT_KEY)
        np.matmul(self._input.T, delta, out=weight_grad_view)
        gradient.set_gradient_for(WEIGHT_KEY, weight_grad_view)

        if self.has_bias():
            bias_grad_view = self.arena.grad_view(BIAS_KEY)
            np.sum(delta, axis=0, out=bias_grad_view)
            gradient.set_gradient_for(BIAS_KEY, bias_grad_view)

        return gradient, delta

    # ------------------------------------------------------
    # Reshaping hooks
    # ------------------------------------------------------
    def _pre_output_2d(self, training: bool) -> np.ndarray:
        return self.pre_output(training)

    def get_labels_2d(self) -> np.ndarray:
        labels = self._labels
        if labels is not None and labels.ndim > 2:
            return labels.reshape(labels.shape[0], -1)
        return labels

    def apply_mask(self, to: np.ndarray) -> np.ndarray:
        """
        Per-example (column vector) or per-output (same shape) masking of
        `to` with this layer's mask. Without a mask, `to` is returned as is.
        """
        if self.mask_array is None:
            return to
        return apply_mask(to, self.mask_array, self.layer_id())

    # ------------------------------------------------------
    # Forward
    # ------------------------------------------------------
    def output(self, input: Optional[np.ndarray] = None, training: bool = False) -> np.ndarray:
        """
        Activations for `input` (or the input already set). Each row of
        the result belongs to the matching row of the input.
        """
        if input is not None:
            self.set_input(input)
        if self._input is None:
            raise LayerArgumentError(
                f"Cannot perform forward pass with null input {self.layer_id()}"
            )
        return self.activate(training)

    def forward(self, x: np.ndarray) -> np.ndarray:
        return self.output(x, training=False)

    def backward(self, grad_output: Optional[np.ndarray] = None) -> np.ndarray:
        epsilon_next, _ = self.backprop_gradient(grad_output)
        return epsilon_next

    # ------------------------------------------------------
    # Fitting
    # ------------------------------------------------------
    def fit(self, data: Any = None, labels: Optional[np.ndarray] = None) -> None:
        """
        fit(input, labels)    one iteration on a single batch
        fit(DataSet)          same, masks taken from the DataSet
        fit(iterable)         one iteration per DataSet / (input, labels) item
        fit(input) / fit()    no-op: an output layer cannot train without labels
        """
        if labels is not None:
            self._fit_batch(data, labels)
            return

        if data is None:
            return

        if isinstance(data, np.ndarray):
            logger.debug("%s: fit called without labels, ignoring", self.name)
            return

        if isinstance(data, DataSet) or (
            isinstance(data, tuple) and len(data) == 2 and isinstance(data[0], np.ndarray)
        ):
            self._fit_dataset(as_dataset(data))
            return

        for item in data:
            self._fit_dataset(as_dataset(item))

    def _fit_dataset(self, ds: DataSet) -> None:
        self._fit_batch(ds.features, ds.labels, ds.labels_mask)

    def _fit_batch(self, input: np.ndarray, labels: np.ndarray,
                   labels_mask: Optional[np.ndarray] = None) -> None:
        self.set_input(input)
        self.set_labels(labels)
        # Each batch brings its own mask; an unmasked batch clears the last one
        self.set_mask_array(labels_mask)

        if self._solver is None:
            self._solver = Solver(self)
            logger.debug("%s: created solver with %s", self.name, self._solver.optimizer.__class__.__name__)

        self._solver.optimize()

    # ------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------
    def clear(self) -> None:
        super().clear()
        self._labels = None
        self._solver = None
        logger.debug("%s: cleared", self.name)


class OutputLayer(BaseOutputLayer):
    """
    Dense output layer for (N, n_in) input and (N, n_out) labels.
    """
