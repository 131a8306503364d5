# outlayer/reduction.py
from __future__ import annotations

from enum import Enum
from typing import Optional, Union

import numpy as np


class Reduction(str, Enum):
    """
    How per-example loss scores of shape (N,) are collapsed.

    Output layers always score with SUM and divide by the mini-batch size
    themselves, after the regularization terms have been added, so SUM is
    also what an unspecified reduction means.
    """

    NONE = "none"
    MEAN = "mean"
    SUM = "sum"

    @classmethod
    def from_value(cls, val: Optional[Union[str, "Reduction"]]) -> "Reduction":
        if val is None:
            return cls.SUM
        if isinstance(val, cls):
            return val
        if isinstance(val, str):
            try:
                return cls(val.lower())
            except ValueError:
                pass
        raise ValueError(
            f"Invalid reduction: {val!r}. Expected None or one of: {[r.value for r in cls]}"
        )

    def reduce(self, score_array: np.ndarray) -> Union[float, np.ndarray]:
        """
        NONE returns the (N,) array untouched. MEAN of an empty batch is 0.
        """
        match self:
            case Reduction.SUM:
                return float(np.sum(score_array))
            case Reduction.MEAN:
                if score_array.size == 0:
                    return 0.0
                return float(np.mean(score_array))
            case Reduction.NONE:
                return score_array
