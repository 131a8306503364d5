# outlayer/masking.py
from __future__ import annotations

import numpy as np

from .exceptions import MaskValidationError


def is_column_vector(mask: np.ndarray) -> bool:
    """True for a rank-2 array with exactly one column, shape (N, 1)."""
    return mask.ndim == 2 and mask.shape[1] == 1


def apply_mask(to: np.ndarray, mask: np.ndarray, layer_id: str = "") -> np.ndarray:
    """
    Multiply `to` by `mask` and return the result.

    Two kinds of mask are accepted:
      - per-example: a column vector (N, 1), one weight per row of `to`
      - per-output:  exactly the shape of `to`, one weight per element

    `to` is updated in place when it is writable, so callers that hold a
    reference see the masked values too.

    Anything else is a MaskValidationError naming both shapes.
    """
    if is_column_vector(mask) and mask.shape[0] == to.shape[0]:
        factor = mask
    elif to.shape == mask.shape:
        factor = mask
    else:
        raise MaskValidationError(
            "Invalid mask array: per-example masking should be a column vector, "
            "per output masking arrays should be the same shape as the output/labels "
            f"arrays. Mask shape: {tuple(mask.shape)}, output shape: {tuple(to.shape)}"
            + (f" {layer_id}" if layer_id else "")
        )

    if to.flags.writeable and np.can_cast(np.result_type(to, factor), to.dtype):
        np.multiply(to, factor, out=to)
        return to
    return to * factor
