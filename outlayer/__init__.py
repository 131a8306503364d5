from .activations import Activation, Identity, ReLU, Sigmoid, Softmax, Tanh, get_activation, softmax_rows
from .config import OutputLayerConfig, UpdaterConfig
from .dataset import DataSet
from .exceptions import (
    LayerArgumentError,
    LayerStateError,
    MaskValidationError,
    OutputLayerError,
    UnsupportedOperationError,
)
from .losses import (
    LossBinaryXENT,
    LossFunction,
    LossL2,
    LossMAE,
    LossMCXENT,
    LossMSE,
    get_loss,
)
from .output_layer import BaseOutputLayer, OutputLayer
from .params import BIAS_KEY, WEIGHT_KEY, Gradient, Param, ParamArena
from .reduction import Reduction
from .rnn_output_layer import RnnOutputLayer
from .weight_noise import DropConnect, WeightNoise

__all__ = [
    "Activation", "Identity", "ReLU", "Sigmoid", "Softmax", "Tanh", "get_activation", "softmax_rows",
    "OutputLayerConfig", "UpdaterConfig",
    "DataSet",
    "LayerArgumentError", "LayerStateError", "MaskValidationError", "OutputLayerError",
    "UnsupportedOperationError",
    "LossBinaryXENT", "LossFunction", "LossL2", "LossMAE", "LossMCXENT", "LossMSE", "get_loss",
    "BaseOutputLayer", "OutputLayer", "RnnOutputLayer",
    "BIAS_KEY", "WEIGHT_KEY", "Gradient", "Param", "ParamArena",
    "Reduction",
    "DropConnect", "WeightNoise",
]
