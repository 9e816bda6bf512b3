from .Layer import Geometry, Layer, NeuronBuffer
from .ConvolutionalLayer import ConvolutionalLayer
from .FullyConnectedLayer import FullyConnectedLayer
from .ReLU import ReLU
from .SoftMax import SoftMax

__all__ = [
    "Geometry",
    "Layer",
    "NeuronBuffer",
    "ConvolutionalLayer",
    "FullyConnectedLayer",
    "ReLU",
    "SoftMax",
]
