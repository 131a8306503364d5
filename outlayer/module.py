# outlayer/module.py
from __future__ import annotations

from typing import Any, List


class Module:
    """
    Minimal base class for layers.

    Forward and backward are explicit; there is no autograd. A layer
    computes its own gradients and hands them out, and an optimizer
    only needs .parameters().

    Subclasses should override:
      - forward(self, x)
      - backward(self, grad_output)
      - parameters(self)         (if they have learnable params)
      - zero_grad(self)          (if they store gradients)
    """

    def forward(self, x: Any) -> Any:
        """
        Compute the forward pass.

        Forward = compute values
        Backward = compute sensitivities
        """
        raise NotImplementedError(f"{self.__class__.__name__}.forward not implemented.")

    def backward(self, grad_output: Any) -> Any:
        """
        Compute the backward pass.

        grad_output is dL/d(out) from the next layer (may be ignored by
        layers that compute their own loss). Returns dL/d(input) and
        stores gradients for parameters (if any).
        """
        raise NotImplementedError(f"{self.__class__.__name__}.backward not implemented.")

    # --------------------------------------------------
    # Parameter handling
    # --------------------------------------------------
    def parameters(self) -> List[Any]:
        """
        Flat list of all learnable parameters owned by this module.
        """
        return []

    def zero_grad(self) -> None:
        """
        Reset gradients for all learnable parameters. No-op by default.
        """
        pass

    # Allow calling module(x) like in PyTorch
    def __call__(self, x: Any) -> Any:
        return self.forward(x)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
