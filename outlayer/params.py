# outlayer/params.py
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple
import numpy as np

WEIGHT_KEY = "W"
BIAS_KEY = "b"


@dataclass
class Param:
    """
    A learnable parameter as the optimizer sees it.

    data: view into the layer's parameter buffer (updated in place).
    grad: view into the layer's gradient buffer, same shape.
    """
    data: np.ndarray
    grad: np.ndarray | None = None


class ParamArena:
    """
    One contiguous parameter buffer and one contiguous gradient buffer for
    a dense layer, with typed sub-views handed out by key.

    Layout of both flat buffers:
        [ W (n_in * n_out) | b (n_out) ]

    Shapes of the views:
        W: (n_in, n_out)
        b: (n_out,)        (only when has_bias)

    Buffers are allocated once. Gradient views are overwritten by every
    gradient computation on the owning layer, so anything read from them
    is valid until the next such call.
    """

    def __init__(self, n_in: int, n_out: int, has_bias: bool = True, dtype=np.float64):
        self.n_in = int(n_in)
        self.n_out = int(n_out)
        self.has_bias = bool(has_bias)
        self.dtype = np.dtype(dtype)

        self._layout: "OrderedDict[str, Tuple[int, Tuple[int, ...]]]" = OrderedDict()
        offset = 0
        self._layout[WEIGHT_KEY] = (offset, (self.n_in, self.n_out))
        offset += self.n_in * self.n_out
        if self.has_bias:
            self._layout[BIAS_KEY] = (offset, (self.n_out,))
            offset += self.n_out
        self.num_params = offset

        self.params_flat = np.zeros((self.num_params,), dtype=self.dtype)
        self.grads_flat = np.zeros((self.num_params,), dtype=self.dtype)

        self._param_views = {k: self._view(self.params_flat, k) for k in self._layout}
        self._grad_views = {k: self._view(self.grads_flat, k) for k in self._layout}

    def _view(self, flat: np.ndarray, key: str) -> np.ndarray:
        offset, shape = self._layout[key]
        size = int(np.prod(shape))
        return flat[offset:offset + size].reshape(shape)

    def keys(self) -> List[str]:
        return list(self._layout)

    def param_view(self, key: str) -> np.ndarray:
        return self._param_views[key]

    def grad_view(self, key: str) -> np.ndarray:
        return self._grad_views[key]

    def param_table(self) -> Dict[str, np.ndarray]:
        return OrderedDict((k, self._param_views[k]) for k in self._layout)

    def zero_grad(self) -> None:
        self.grads_flat.fill(0.0)

    def __repr__(self) -> str:
        shapes = ", ".join(f"{k}={shape}" for k, (_, shape) in self._layout.items())
        return f"ParamArena({shapes}, num_params={self.num_params})"


class Gradient:
    """
    Ordered mapping: parameter key -> gradient array.

    The arrays are normally views into a ParamArena gradient buffer,
    not copies.
    """

    def __init__(self) -> None:
        self._by_key: "OrderedDict[str, np.ndarray]" = OrderedDict()

    def set_gradient_for(self, key: str, grad: np.ndarray) -> None:
        self._by_key[key] = grad

    def gradient_for_variable(self) -> Dict[str, np.ndarray]:
        return self._by_key

    def get(self, key: str) -> np.ndarray | None:
        return self._by_key.get(key)

    def flattened(self) -> np.ndarray:
        """Concatenate all gradients into a single new 1-D array (a copy)."""
        if not self._by_key:
            return np.zeros((0,))
        return np.concatenate([g.ravel() for g in self._by_key.values()])

    def __getitem__(self, key: str) -> np.ndarray:
        return self._by_key[key]

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_key)

    def __len__(self) -> int:
        return len(self._by_key)

    def items(self):
        return self._by_key.items()

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={g.shape}" for k, g in self._by_key.items())
        return f"Gradient({inner})"
