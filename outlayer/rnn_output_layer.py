# outlayer/rnn_output_layer.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple
import logging

import numpy as np

from .activations import Softmax, softmax_rows
from .exceptions import LayerArgumentError, UnsupportedOperationError
from .output_layer import BaseOutputLayer
from .params import BIAS_KEY, WEIGHT_KEY, Gradient
from .time_series import (
    reshape_2d_to_3d,
    reshape_3d_to_2d,
    reshape_time_series_mask_to_vector,
    reshape_vector_to_time_series_mask,
)

logger = logging.getLogger(__name__)


class RnnOutputLayer(BaseOutputLayer):
    """
    Output layer for sequences.

    Same math as OutputLayer, applied independently at every time step.
    Input and labels are rank 3:

        input:  (B, n_in,  T)
        labels: (B, n_out, T)
        output: (B, n_out, T)

    Every entry point flattens time into the batch axis, (B, F, T) ->
    (B*T, F), hands the 2-D arrays to the base math unchanged, and
    reshapes results back using the original batch size B.

    Masks:
        (B, T)          one weight per time step  -> (B*T, 1) column
        (B, n_out, T)   one weight per output     -> (B*T, n_out)

    Scores are divided by B (examples), not B*T (time steps).
    """

    @contextmanager
    def _flattened_input(self) -> Iterator[np.ndarray]:
        """
        Swap the stored rank-3 input for its (B*T, F) flattening for the
        duration of the block. Yields the original input, which is put
        back on exit.
        """
        original = self._input
        self._input = reshape_3d_to_2d(original)
        try:
            yield original
        finally:
            self._input = original

    def _require_rank_3_input(self, what: str) -> np.ndarray:
        x = self._input
        if x is None:
            raise LayerArgumentError(f"Cannot {what} with null input {self.layer_id()}")
        if x.ndim != 3:
            raise UnsupportedOperationError(
                f"Input is not rank 3. Got input with rank {x.ndim} {self.layer_id()}"
            )
        return x

    # ------------------------------------------------------
    # Reshaping hooks
    # ------------------------------------------------------
    def _pre_output_2d(self, training: bool) -> np.ndarray:
        if self._input is not None and self._input.ndim == 3:
            with self._flattened_input():
                return self.pre_output(training)
        return self.pre_output(training)

    def get_labels_2d(self) -> np.ndarray:
        labels = self._labels
        if labels is not None and labels.ndim == 3:
            return reshape_3d_to_2d(labels)
        return labels

    # ------------------------------------------------------
    # Backward
    # ------------------------------------------------------
    def compute_gradient_and_score(self) -> None:
        if self._input is None or self._labels is None:
            return
        if self._input.ndim != 3:
            # Already flat: same as the dense layer
            super().compute_gradient_and_score()
            return

        with self._flattened_input():
            self.gradient, _ = self._get_gradients_and_delta(self.pre_output(True))

        # Scored on the rank-3 input so the divisor is B
        self.compute_score(self._full_network_l1, self._full_network_l2, True)

    def backprop_gradient(self, epsilon: Optional[np.ndarray] = None) -> Tuple[np.ndarray, Gradient]:
        """
        Returns (epsilon_next, gradient) with epsilon_next shaped like the
        rank-3 input. Weight noise drawn for this pass is dropped on return.
        """
        self._require_input_and_labels()
        x = self._require_rank_3_input("backprop")

        with self.weight_noise_scope():
            with self._flattened_input():
                epsilon_2d, gradient = super().backprop_gradient(epsilon)

        return reshape_2d_to_3d(epsilon_2d, x.shape[0]), gradient

    # ------------------------------------------------------
    # Forward
    # ------------------------------------------------------
    def output(self, input: Optional[np.ndarray] = None, training: bool = False) -> np.ndarray:
        if input is not None:
            if np.ndim(input) != 3:
                raise LayerArgumentError(
                    f"Input must be rank 3 (is: {np.ndim(input)}) {self.layer_id()}"
                )
            self.set_input(input)

        x = self._input
        if x is None:
            raise LayerArgumentError(
                f"Cannot perform forward pass with null input {self.layer_id()}"
            )
        if x.ndim != 3:
            raise LayerArgumentError(
                f"input must be rank 3. Got input with rank {x.ndim} {self.layer_id()}"
            )

        if isinstance(self.activation_fn, Softmax):
            # One distribution per time step: softmax over each row of (B*T, n_out)
            out_2d = softmax_rows(self._pre_output_2d(training))
        else:
            with self._flattened_input():
                out_2d = super().activate(training)

        out_2d = self.apply_mask(out_2d)
        return reshape_2d_to_3d(out_2d, x.shape[0])

    def activate(self, training: bool) -> np.ndarray:
        x = self._require_rank_3_input("activate")

        W = self.get_param_with_noise(WEIGHT_KEY, training)
        input_2d = reshape_3d_to_2d(x)

        z = input_2d @ W
        if self.has_bias():
            z += self.get_param_with_noise(BIAS_KEY, training)
        act_2d = self.activation_fn.apply(z, training)

        act_2d = self.apply_mask(act_2d)
        return reshape_2d_to_3d(act_2d, x.shape[0])

    # ------------------------------------------------------
    # Masks
    # ------------------------------------------------------
    def set_mask_array(self, mask: Optional[np.ndarray]) -> None:
        if mask is None:
            self.mask_array = None
            return

        mask = np.asarray(mask, dtype=self.dtype)
        if mask.ndim == 2:
            # Per time step
            self.mask_array = reshape_time_series_mask_to_vector(mask)
        elif mask.ndim == 3:
            # Per output
            self.mask_array = reshape_3d_to_2d(mask)
        else:
            raise UnsupportedOperationError(
                f"Invalid mask array: must be rank 2 or 3 (got: rank {mask.ndim}, "
                f"shape = {tuple(mask.shape)}) {self.layer_id()}"
            )
        logger.debug("%s: mask set, flattened shape %s", self.name, self.mask_array.shape)

    # ------------------------------------------------------
    # Scoring
    # ------------------------------------------------------
    def compute_score_for_examples(self, full_network_l1: float = 0.0,
                                   full_network_l2: float = 0.0) -> np.ndarray:
        """
        Score of each sequence, shape (B,): the sum of its per-time-step
        losses. Masked time steps contribute 0 through the loss. The
        regularization terms are added once per sequence.
        """
        self._require_input_and_labels()
        pre_out = self._pre_output_2d(False)

        # (B*T,)
        score_array = self.loss_fn.score_array(
            self.get_labels_2d(), pre_out, self.activation_fn, self.mask_array
        )
        # (B*T,) -> (B, T) -> (B,)
        score_array_ts = reshape_vector_to_time_series_mask(score_array, self._input.shape[0])
        summed_scores = np.sum(score_array_ts, axis=1)

        l1l2 = full_network_l1 + full_network_l2
        if l1l2 != 0.0:
            summed_scores += l1l2
        return summed_scores
