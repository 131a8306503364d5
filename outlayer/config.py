# outlayer/config.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union
import numpy as np

from .activations import Activation, get_activation
from .losses import LossFunction, get_loss
from .weight_noise import DropConnect, WeightNoise

_WEIGHT_INITS = ("xavier", "uniform", "normal", "zeros")
_UPDATERS = ("sgd", "adam")


@dataclass
class UpdaterConfig:
    """
    Settings for the optimizer a Solver builds for a layer.

    minibatch: divide gradients by the mini-batch size before stepping
               (layer gradients are sums over the batch).
    """
    name: str = "sgd"
    lr: float = 1e-2
    betas: Tuple[float, float] = (0.9, 0.999)
    eps: float = 1e-8
    minibatch: bool = True

    def __post_init__(self) -> None:
        self.name = str(self.name).lower()
        if self.name not in _UPDATERS:
            raise ValueError(f"Invalid updater: {self.name!r}. Expected one of: {list(_UPDATERS)}")
        if self.lr <= 0.0:
            raise ValueError(f"Invalid lr: {self.lr}")


@dataclass
class OutputLayerConfig:
    n_in: int
    n_out: int

    activation: Union[str, Activation] = "softmax"
    loss: Union[str, LossFunction] = "mcxent"
    has_bias: bool = True

    weight_init: str = "xavier"
    bias_init: float = 0.0

    # Regularization coefficients for this layer's own L1/L2 terms
    l1: float = 0.0
    l2: float = 0.0

    weight_noise: Optional[Union[DropConnect, WeightNoise]] = None
    updater: UpdaterConfig = field(default_factory=UpdaterConfig)

    seed: Optional[int] = None
    dtype: str = "float64"
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if int(self.n_in) <= 0:
            raise ValueError(f"n_in must be positive, got {self.n_in}")
        if int(self.n_out) <= 0:
            raise ValueError(f"n_out must be positive, got {self.n_out}")
        self.n_in = int(self.n_in)
        self.n_out = int(self.n_out)

        self.weight_init = str(self.weight_init).lower()
        if self.weight_init not in _WEIGHT_INITS:
            raise ValueError(
                f"Invalid weight_init: {self.weight_init!r}. Expected one of: {list(_WEIGHT_INITS)}"
            )
        if self.l1 < 0.0 or self.l2 < 0.0:
            raise ValueError(f"l1/l2 must be non-negative, got l1={self.l1}, l2={self.l2}")

        # Resolve names once so layers only ever see strategy objects
        self.activation = get_activation(self.activation)
        self.loss = get_loss(self.loss)

        if np.dtype(self.dtype).kind != "f":
            raise ValueError(f"dtype must be a floating point type, got {self.dtype!r}")
