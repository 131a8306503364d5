# outlayer/solver.py
from __future__ import annotations

from typing import TYPE_CHECKING
import logging

import numpy as np

from .optim import Optimizer, build_optimizer
from .params import WEIGHT_KEY

if TYPE_CHECKING:
    from .output_layer import BaseOutputLayer

logger = logging.getLogger(__name__)


class Solver:
    """
    Binds an optimizer to one output layer.

    optimize() runs a single iteration on whatever input/labels the layer
    currently holds:
        1. gradient + score (fresh weight noise for the iteration)
        2. L1/L2 gradient terms on the weights
        3. divide by mini-batch size (layer gradients are batch sums)
        4. optimizer step
    """

    def __init__(self, layer: "BaseOutputLayer") -> None:
        self.layer = layer
        self.optimizer: Optimizer = build_optimizer(layer.parameters(), layer.conf.updater)
        self.iterations = 0

    def optimize(self) -> float:
        layer = self.layer
        conf = layer.conf

        if layer.input is None or layer.labels is None:
            logger.debug("%s: nothing to optimize, input or labels unset", layer.name)
            return layer.score

        with layer.weight_noise_scope():
            layer.compute_gradient_and_score()
            score = layer.compute_score(layer.calc_l1(), layer.calc_l2(), True)

        W = layer.get_param(WEIGHT_KEY)
        grad_W = layer.gradient[WEIGHT_KEY]
        batch_size = layer.get_input_mini_batch_size()

        # Same objective as compute_score: (loss_sum + l1 + l2) / batch_size
        if conf.l2 > 0.0:
            grad_W += conf.l2 * W
        if conf.l1 > 0.0:
            grad_W += conf.l1 * np.sign(W)

        if conf.updater.minibatch:
            for _, g in layer.gradient.items():
                g /= batch_size

        self.optimizer.step()
        self.iterations += 1

        logger.debug("%s: iteration %d score=%.6f", layer.name, self.iterations, score)
        return score
