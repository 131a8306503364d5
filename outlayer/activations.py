# outlayer/activations.py
from __future__ import annotations

from typing import Dict, Type, Union
import numpy as np


class Activation:
    """
    Base class for activation functions used by output layers.

    Two pure operations:
        apply(z, training)        -> a = f(z)
        backprop(z, epsilon)      -> dL/dz, given epsilon = dL/da

    z is always the pre-activation, (N, C). Neither method modifies z.
    """

    name: str = "activation"

    def apply(self, z: np.ndarray, training: bool = False) -> np.ndarray:
        raise NotImplementedError(f"{self.__class__.__name__}.apply not implemented.")

    def backprop(self, z: np.ndarray, epsilon: np.ndarray) -> np.ndarray:
        raise NotImplementedError(f"{self.__class__.__name__}.backprop not implemented.")

    def __call__(self, z: np.ndarray, training: bool = False) -> np.ndarray:
        return self.apply(z, training)

    def __eq__(self, other) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(type(self))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Identity(Activation):
    """f(z) = z"""

    name = "identity"

    def apply(self, z, training=False):
        return np.array(z, copy=True)

    def backprop(self, z, epsilon):
        return np.array(epsilon, copy=True)


class Sigmoid(Activation):
    """
    f(z)  = 1 / (1 + e^-z)
    f'(z) = f(z) * (1 - f(z))
    """

    name = "sigmoid"

    def apply(self, z, training=False):
        z = np.asarray(z)
        out = np.empty_like(z)
        pos = z >= 0
        neg = ~pos
        # Piecewise form keeps exp() from overflowing on either side
        out[pos] = 1.0 / (1.0 + np.exp(-z[pos]))
        ez = np.exp(z[neg])
        out[neg] = ez / (1.0 + ez)
        return out

    def backprop(self, z, epsilon):
        s = self.apply(z)
        return epsilon * s * (1.0 - s)


class Tanh(Activation):
    """
    f(z)  = tanh(z)
    f'(z) = 1 - tanh^2(z)
    """

    name = "tanh"

    def apply(self, z, training=False):
        return np.tanh(z)

    def backprop(self, z, epsilon):
        t = np.tanh(z)
        return epsilon * (1.0 - t * t)


class ReLU(Activation):
    """
    f(z)  = max(0, z)
    f'(z) = 1 where z > 0, else 0
    """

    name = "relu"

    def apply(self, z, training=False):
        z = np.asarray(z)
        return z * (z > 0)

    def backprop(self, z, epsilon):
        return epsilon * (np.asarray(z) > 0)


def softmax_rows(z: np.ndarray) -> np.ndarray:
    """
    Row-wise softmax of a (N, C) matrix: every row sums to 1.

    The row max is subtracted first for numerical stability.
    """
    z = np.asarray(z)
    if z.ndim != 2:
        raise ValueError(f"softmax_rows: Expected (N, C) input, got shape {z.shape}")
    shifted = z - np.max(z, axis=1, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=1, keepdims=True)


class Softmax(Activation):
    """
    Row-wise softmax: f(z)_i = e^z_i / sum_j e^z_j, per example (row).

    Normalisation is over the columns of each row, never over the whole
    matrix. For a flattened sequence batch (B*T, C) that means one
    distribution per time step.

    backprop is the Jacobian-vector product:
        dL/dz = s * (eps - sum(eps * s, axis=1))
    """

    name = "softmax"

    def apply(self, z, training=False):
        return softmax_rows(z)

    def backprop(self, z, epsilon):
        s = softmax_rows(z)
        dot = np.sum(epsilon * s, axis=1, keepdims=True)
        return s * (epsilon - dot)


_ACTIVATIONS: Dict[str, Type[Activation]] = {
    "identity": Identity,
    "linear": Identity,
    "sigmoid": Sigmoid,
    "tanh": Tanh,
    "relu": ReLU,
    "softmax": Softmax,
}


def get_activation(activation: Union[str, Activation, None]) -> Activation:
    """
    Resolve an activation from its name (case-insensitive) or pass an
    instance straight through. None means identity.
    """
    if activation is None:
        return Identity()
    if isinstance(activation, Activation):
        return activation
    if isinstance(activation, str):
        cls = _ACTIVATIONS.get(activation.lower())
        if cls is not None:
            return cls()
        raise ValueError(
            f"Unknown activation: {activation!r}. "
            f"Expected one of: {sorted(_ACTIVATIONS)}"
        )
    raise TypeError(f"Invalid activation type: {type(activation).__name__}")
