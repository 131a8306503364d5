# outlayer/exceptions.py
from __future__ import annotations


class OutputLayerError(Exception):
    """
    Base class for every error raised by the output-layer engine.

    None of these are recoverable inside a layer; they propagate to the
    caller unchanged.
    """


class LayerStateError(OutputLayerError, RuntimeError):
    """
    The operation needs input and/or labels set on the layer, and at
    least one of them is missing.
    """


class LayerArgumentError(OutputLayerError, ValueError):
    """
    The caller passed a structurally invalid argument (missing input,
    wrong rank, mismatched shapes).
    """


class UnsupportedOperationError(OutputLayerError):
    """
    Rank contract of the sequence output layer was violated
    (input not rank 3, mask not rank 2 or 3).
    """


class MaskValidationError(OutputLayerError, ValueError):
    """
    Mask is neither a column vector nor the same shape as the array
    it is applied to.
    """
