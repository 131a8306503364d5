# outlayer/optim.py
from __future__ import annotations

from typing import Iterable, List, Tuple
import numpy as np

from .config import UpdaterConfig
from .params import Param


class Optimizer:
    """
    Minimal PyTorch-style optimizer base class.

    - Holds a flat list of Param objects (anything with .data / .grad).
    - Provides zero_grad().
    - Child classes implement step(), updating .data in place.
    """

    def __init__(self, params: Iterable[Param], lr: float = 1e-3) -> None:
        self.params: List[Param] = list(params)
        if len(self.params) == 0:
            raise ValueError("Optimizer got an empty parameter list.")
        self.lr: float = float(lr)

    def zero_grad(self) -> None:
        for p in self.params:
            if p.grad is not None:
                p.grad[...] = 0.0

    def step(self) -> None:
        raise NotImplementedError("Optimizer.step() must be implemented by subclasses.")


class Sgd(Optimizer):
    """param = param - lr * grad"""

    def step(self) -> None:
        for p in self.params:
            if p.grad is None:
                continue
            p.data[...] -= self.lr * p.grad


class Adam(Optimizer):
    """
    Adam optimizer (NumPy).

        m_t = beta1 * m_{t-1} + (1 - beta1) * g_t
        v_t = beta2 * v_{t-1} + (1 - beta2) * (g_t ** 2)

        m_hat = m_t / (1 - beta1 ** t)
        v_hat = v_t / (1 - beta2 ** t)

        param = param - lr * m_hat / (sqrt(v_hat) + eps)
    """

    def __init__(
        self,
        params: Iterable[Param],
        lr: float = 1e-3,
        betas: Tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
    ) -> None:
        super().__init__(params, lr=lr)

        beta1, beta2 = betas
        if not 0.0 <= beta1 < 1.0:
            raise ValueError(f"Invalid beta1: {beta1}")
        if not 0.0 <= beta2 < 1.0:
            raise ValueError(f"Invalid beta2: {beta2}")
        if not 0.0 <= eps:
            raise ValueError(f"Invalid eps: {eps}")

        self.beta1 = float(beta1)
        self.beta2 = float(beta2)
        self.eps = float(eps)

        # One state slot per parameter: (m, v, step)
        self._m: List[np.ndarray] = [np.zeros_like(p.data) for p in self.params]
        self._v: List[np.ndarray] = [np.zeros_like(p.data) for p in self.params]
        self._step: List[int] = [0 for _ in self.params]

    def step(self) -> None:
        beta1 = self.beta1
        beta2 = self.beta2

        for i, p in enumerate(self.params):
            g = p.grad
            if g is None:
                continue

            m = self._m[i]
            v = self._v[i]

            self._step[i] += 1
            t = self._step[i]

            m[:] = beta1 * m + (1.0 - beta1) * g
            v[:] = beta2 * v + (1.0 - beta2) * (g * g)

            m_hat = m / (1.0 - beta1 ** t)
            v_hat = v / (1.0 - beta2 ** t)

            p.data[...] -= self.lr * m_hat / (np.sqrt(v_hat) + self.eps)


def build_optimizer(params: Iterable[Param], conf: UpdaterConfig) -> Optimizer:
    match conf.name:
        case "sgd":
            return Sgd(params, lr=conf.lr)
        case "adam":
            return Adam(params, lr=conf.lr, betas=conf.betas, eps=conf.eps)
        case _:
            raise ValueError(f"Unknown updater: {conf.name!r}")
