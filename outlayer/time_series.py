# outlayer/time_series.py
"""
Reshaping between sequence tensors and flat batches.

A sequence tensor has shape (B, F, T): batch, features, time.
Flattening moves time into the batch axis, giving (B*T, F) where

    row i  <->  (batch = i // T, time = i % T)

The same row order is used for inputs, labels, masks and per-example
scores, so the flat math lines up row for row.
"""
from __future__ import annotations

import numpy as np

from .exceptions import LayerArgumentError


def reshape_3d_to_2d(x: np.ndarray) -> np.ndarray:
    """(B, F, T) -> (B*T, F)"""
    if x.ndim != 3:
        raise LayerArgumentError(
            f"Expected rank 3 array (batch, features, time), got shape {x.shape}"
        )
    B, F, T = x.shape
    # (B, F, T) -> (B, T, F) -> (B*T, F)
    return np.transpose(x, (0, 2, 1)).reshape(B * T, F)


def reshape_2d_to_3d(x: np.ndarray, batch_size: int) -> np.ndarray:
    """
    (B*T, F) -> (B, F, T)

    Only the original batch size is needed; F and T are inferred.
    """
    if x.ndim != 2:
        raise LayerArgumentError(f"Expected rank 2 array, got shape {x.shape}")
    rows, F = x.shape
    if batch_size <= 0 or rows % batch_size != 0:
        raise LayerArgumentError(
            f"Cannot split {rows} rows into batch size {batch_size}"
        )
    T = rows // batch_size
    return np.transpose(x.reshape(batch_size, T, F), (0, 2, 1))


def reshape_time_series_mask_to_vector(mask: np.ndarray) -> np.ndarray:
    """(B, T) time mask -> (B*T, 1) per-row column vector."""
    if mask.ndim != 2:
        raise LayerArgumentError(
            f"Expected rank 2 time series mask (batch, time), got shape {mask.shape}"
        )
    return mask.reshape(mask.shape[0] * mask.shape[1], 1)


def reshape_vector_to_time_series_mask(vec: np.ndarray, batch_size: int) -> np.ndarray:
    """(B*T,) or (B*T, 1) per-row vector -> (B, T)"""
    flat = np.ravel(vec)
    if batch_size <= 0 or flat.size % batch_size != 0:
        raise LayerArgumentError(
            f"Cannot split vector of length {flat.size} into batch size {batch_size}"
        )
    return flat.reshape(batch_size, flat.size // batch_size)
