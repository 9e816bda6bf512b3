"""convnet: a small feed-forward network engine with host and CuPy backends."""

from .NeuralNetwork import NeuralNetwork
from .NetworkTrainer import NetworkTrainer
from .data import ArrayDataSet, one_hot
from .early_stopping import EarlyStopping
from .errors import BackendError, GeometryError, NetworkError, UsageError
from .helpers.Backend import ComputeBackend, HostBackend, create_backend
from .layers import ConvolutionalLayer, FullyConnectedLayer, Geometry, Layer, ReLU, SoftMax
from .loss import CrossEntropyLoss

__version__ = "0.1.0"

__all__ = [
    "NeuralNetwork",
    "NetworkTrainer",
    "ArrayDataSet",
    "one_hot",
    "EarlyStopping",
    "BackendError",
    "GeometryError",
    "NetworkError",
    "UsageError",
    "ComputeBackend",
    "HostBackend",
    "create_backend",
    "ConvolutionalLayer",
    "FullyConnectedLayer",
    "Geometry",
    "Layer",
    "ReLU",
    "SoftMax",
    "CrossEntropyLoss",
]
