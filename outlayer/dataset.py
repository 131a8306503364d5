# outlayer/dataset.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
import numpy as np


@dataclass
class DataSet:
    """
    One mini-batch: features, labels and optional masks.

    Shapes follow the layer being fitted: (N, n_in) / (N, n_out) for a
    dense output layer, (B, n_in, T) / (B, n_out, T) for a sequence one.
    labels_mask is whatever that layer's set_mask_array accepts.
    """
    features: np.ndarray
    labels: np.ndarray
    features_mask: Optional[np.ndarray] = None
    labels_mask: Optional[np.ndarray] = None

    def num_examples(self) -> int:
        return int(np.asarray(self.features).shape[0])


def as_dataset(item: Any) -> DataSet:
    """
    Accepts a DataSet or a (features, labels) pair.
    """
    if isinstance(item, DataSet):
        return item
    if isinstance(item, tuple) and len(item) == 2:
        return DataSet(features=item[0], labels=item[1])
    raise TypeError(
        f"Expected DataSet or (features, labels) tuple, got {type(item).__name__}"
    )
