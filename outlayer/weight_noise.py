# outlayer/weight_noise.py
from __future__ import annotations

from dataclasses import dataclass
import numpy as np

from .params import BIAS_KEY, WEIGHT_KEY


@dataclass
class DropConnect:
    """
    Randomly zero individual weights during training.

    Each weight is kept with probability `retain_prob` (no rescaling).
    Bias is left alone unless `apply_to_bias` is set.
    """
    retain_prob: float = 0.5
    apply_to_bias: bool = False

    def __post_init__(self) -> None:
        if not 0.0 < self.retain_prob <= 1.0:
            raise ValueError(f"Invalid retain_prob: {self.retain_prob}")

    def applies_to(self, key: str) -> bool:
        return key == WEIGHT_KEY or (self.apply_to_bias and key == BIAS_KEY)

    def get_parameter(self, param: np.ndarray, key: str, training: bool,
                      rng: np.random.Generator) -> np.ndarray:
        if not training or not self.applies_to(key):
            return param
        keep = rng.random(param.shape) < self.retain_prob
        return param * keep


@dataclass
class WeightNoise:
    """
    Gaussian perturbation of parameters during training.

    additive=True:   w + N(0, stddev^2)
    additive=False:  w * N(1, stddev^2)
    """
    stddev: float = 0.01
    additive: bool = True
    apply_to_bias: bool = False

    def __post_init__(self) -> None:
        if self.stddev < 0.0:
            raise ValueError(f"Invalid stddev: {self.stddev}")

    def applies_to(self, key: str) -> bool:
        return key == WEIGHT_KEY or (self.apply_to_bias and key == BIAS_KEY)

    def get_parameter(self, param: np.ndarray, key: str, training: bool,
                      rng: np.random.Generator) -> np.ndarray:
        if not training or not self.applies_to(key):
            return param
        noise = rng.normal(0.0, self.stddev, size=param.shape)
        if self.additive:
            return param + noise
        return param * (1.0 + noise)
