# outlayer/base_layer.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional
import logging
import math

import numpy as np

from .config import OutputLayerConfig
from .exceptions import LayerArgumentError
from .module import Module
from .params import BIAS_KEY, WEIGHT_KEY, Param, ParamArena, Gradient

logger = logging.getLogger(__name__)


class BaseLayer(Module):
    """
    Generic dense layer primitive:

        z = x @ W + b
        a = activation(z)

    Shapes:
        x: (N, n_in)
        W: (n_in, n_out)
        b: (n_out,)
        z, a: (N, n_out)

    Parameters and their gradients live in a ParamArena (one flat buffer
    each, typed views per key). The layer owns the arena; gradient views
    handed out are valid until the next gradient computation.

    State held between calls:
        input       current mini-batch input (set by the caller)
        mask_array  optional mask, per-example column (N, 1) or per-output
        gradient    Gradient from the last backward computation
    """

    def __init__(self, conf: OutputLayerConfig, index: int = 0):
        super().__init__()
        self.conf = conf
        self.index = int(index)
        self.name = conf.name or f"{self.__class__.__name__}({conf.n_in}->{conf.n_out})"
        self.dtype = np.dtype(conf.dtype)
        self.activation_fn = conf.activation

        self._rng = np.random.default_rng(conf.seed)

        self.arena = ParamArena(conf.n_in, conf.n_out, has_bias=conf.has_bias, dtype=self.dtype)
        self._init_params()

        self._input: Optional[np.ndarray] = None
        self.mask_array: Optional[np.ndarray] = None
        self.gradient: Optional[Gradient] = None

        # Noisy copies of parameters for the current pass, keyed like the arena
        self._weight_noise_params: Dict[str, np.ndarray] = {}

    # ------------------------------------------------------
    # Initialization
    # ------------------------------------------------------
    def _init_params(self) -> None:
        n_in, n_out = self.conf.n_in, self.conf.n_out
        W = self.arena.param_view(WEIGHT_KEY)

        match self.conf.weight_init:
            case "xavier":
                limit = math.sqrt(6.0 / (n_in + n_out))
                W[...] = self._rng.uniform(-limit, limit, size=W.shape)
            case "uniform":
                # W_ij ~ U(-1/sqrt(D), 1/sqrt(D))
                limit = 1.0 / math.sqrt(n_in)
                W[...] = self._rng.uniform(-limit, limit, size=W.shape)
            case "normal":
                W[...] = self._rng.normal(0.0, 1.0 / math.sqrt(n_in), size=W.shape)
            case "zeros":
                W.fill(0.0)

        if self.has_bias():
            self.arena.param_view(BIAS_KEY).fill(self.conf.bias_init)

        logger.debug("%s: initialized %s with %s weights", self.name, self.arena, self.conf.weight_init)

    # ------------------------------------------------------
    # Input / mask
    # ------------------------------------------------------
    @property
    def input(self) -> Optional[np.ndarray]:
        return self._input

    def set_input(self, x: Optional[np.ndarray]) -> None:
        self._input = None if x is None else np.asarray(x, dtype=self.dtype)

    def set_mask_array(self, mask: Optional[np.ndarray]) -> None:
        """
        Per-example masks may be given as (N,) and are stored as (N, 1).
        """
        if mask is None:
            self.mask_array = None
            return
        mask = np.asarray(mask, dtype=self.dtype)
        if mask.ndim == 1:
            mask = mask.reshape(-1, 1)
        self.mask_array = mask

    def get_input_mini_batch_size(self) -> int:
        if self._input is None:
            raise LayerArgumentError(f"No input set {self.layer_id()}")
        return int(self._input.shape[0])

    # ------------------------------------------------------
    # Parameters
    # ------------------------------------------------------
    def has_bias(self) -> bool:
        return self.conf.has_bias

    def get_param(self, key: str) -> np.ndarray:
        return self.arena.param_view(key)

    def set_param(self, key: str, value: np.ndarray) -> None:
        view = self.arena.param_view(key)
        value = np.asarray(value, dtype=self.dtype)
        if value.shape != view.shape:
            raise LayerArgumentError(
                f"Parameter {key!r} expects shape {view.shape}, got {value.shape} {self.layer_id()}"
            )
        view[...] = value

    def param_table(self) -> Dict[str, np.ndarray]:
        return self.arena.param_table()

    def params(self) -> np.ndarray:
        """All parameters as one flat view (not a copy)."""
        return self.arena.params_flat

    def set_params(self, flat: np.ndarray) -> None:
        flat = np.asarray(flat, dtype=self.dtype).ravel()
        if flat.shape[0] != self.arena.num_params:
            raise LayerArgumentError(
                f"Expected {self.arena.num_params} parameters, got {flat.shape[0]} {self.layer_id()}"
            )
        self.arena.params_flat[...] = flat

    def num_params(self) -> int:
        return self.arena.num_params

    def parameters(self) -> List[Param]:
        return [
            Param(data=self.arena.param_view(k), grad=self.arena.grad_view(k))
            for k in self.arena.keys()
        ]

    def zero_grad(self) -> None:
        self.arena.zero_grad()

    # ------------------------------------------------------
    # Weight noise
    # ------------------------------------------------------
    def get_param_with_noise(self, key: str, training: bool) -> np.ndarray:
        """
        Parameter as used by this pass. With weight noise configured and
        training=True, the first call per key draws a noisy copy which is
        then reused until weight_noise_scope() exits.

        Called outside a weight_noise_scope() block, the draw stays cached
        (the same DropConnect mask on every call) until clear().
        """
        param = self.arena.param_view(key)
        noise = self.conf.weight_noise
        if noise is None or not training:
            return param
        if key not in self._weight_noise_params:
            self._weight_noise_params[key] = noise.get_parameter(param, key, training, self._rng)
        return self._weight_noise_params[key]

    @contextmanager
    def weight_noise_scope(self) -> Iterator[None]:
        """
        Noisy parameters drawn inside the block are shared by every call in
        it and dropped on exit, even when the block raises.
        """
        try:
            yield
        finally:
            self._weight_noise_params.clear()

    # ------------------------------------------------------
    # Forward
    # ------------------------------------------------------
    def pre_output(self, training: bool) -> np.ndarray:
        x = self._input
        if x is None:
            raise LayerArgumentError(f"Cannot compute pre-output with null input {self.layer_id()}")
        if x.ndim != 2 or x.shape[1] != self.conf.n_in:
            raise LayerArgumentError(
                f"Expected input of shape (N, {self.conf.n_in}), got {x.shape} {self.layer_id()}"
            )

        W = self.get_param_with_noise(WEIGHT_KEY, training)
        z = x @ W
        if self.has_bias():
            z += self.get_param_with_noise(BIAS_KEY, training)
        return z

    def activate(self, training: bool) -> np.ndarray:
        return self.activation_fn.apply(self.pre_output(training), training)

    # ------------------------------------------------------
    # Regularization
    # ------------------------------------------------------
    def calc_l1(self) -> float:
        """l1 * sum(|W|); bias is not regularized."""
        if self.conf.l1 <= 0.0:
            return 0.0
        return float(self.conf.l1 * np.sum(np.abs(self.arena.param_view(WEIGHT_KEY))))

    def calc_l2(self) -> float:
        """0.5 * l2 * sum(W^2); bias is not regularized."""
        if self.conf.l2 <= 0.0:
            return 0.0
        W = self.arena.param_view(WEIGHT_KEY)
        return float(0.5 * self.conf.l2 * np.sum(W * W))

    # ------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------
    def clear(self) -> None:
        """Drop references to tensors from the previous batch."""
        self._input = None
        self.mask_array = None
        self._weight_noise_params.clear()

    def layer_id(self) -> str:
        return f"(layer name: {self.name}, layer index: {self.index})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(name={self.name!r}, n_in={self.conf.n_in}, "
            f"n_out={self.conf.n_out}, activation={self.activation_fn!r}, "
            f"has_bias={self.has_bias()})"
        )
