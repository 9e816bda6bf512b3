import logging
from dataclasses import dataclass

import numpy as np

from ..errors import GeometryError, UsageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Geometry:
    width: int
    height: int
    depth: int

    @property
    def units(self):
        return self.width * self.height * self.depth


class NeuronBuffer:
    """Activations and their deltas for one layer output, shaped (batch, units)."""

    def __init__(self, backend, units, mini_batch_size=1):
        self.units = units
        self.mini_batch_size = mini_batch_size
        self.activations = backend.allocate((mini_batch_size, units))
        self.delta = backend.allocate((mini_batch_size, units))


def gaussian(rng, shape, std):
    # Box-Muller on two uniform draws; 1 - u keeps log() away from zero
    u1 = 1.0 - rng.random(shape)
    u2 = rng.random(shape)
    return std * np.sqrt(-2.0 * np.log(u1)) * np.sin(2.0 * np.pi * u2)


class Layer:
    """
    Base class of every layer in a NeuralNetwork.

    Lifecycle: construct with hyperparameters only -> connect_to(previous)
    (or set_as_first_layer(...)) fixes geometry and allocates the output
    buffer -> initialize_parameters(rng) once -> feed_forward /
    back_propagate / update_parameters for every training step.

    The input buffer of a connected layer *is* its predecessor's output
    buffer; the layer never owns it.
    """

    type = "Layer"

    def __init__(self):
        self.id = None
        self.backend = None
        self.input = None
        self.output = None
        self.input_geometry = None
        self.output_geometry = None
        self._initialized = False

    # ----- setup -----
    @property
    def is_connected(self):
        return self.output is not None

    @property
    def mini_batch_size(self):
        return self.input.mini_batch_size

    def connect_to(self, previous):
        if not previous.is_connected:
            raise UsageError(
                f"{self.type}.connect_to(): previous layer {previous.type} is not connected"
            )
        self.backend = previous.backend
        self.input = previous.output
        self.input_geometry = previous.output_geometry
        return self._setup()

    def set_as_first_layer(self, width, height, depth, backend, mini_batch_size=1):
        if min(width, height, depth) < 1:
            raise GeometryError(
                f"{self.type}: invalid input shape {width}x{height}x{depth}"
            )
        if mini_batch_size < 1:
            raise GeometryError(f"{self.type}: invalid mini-batch size {mini_batch_size}")
        self.backend = backend
        self.input_geometry = Geometry(width, height, depth)
        self.input = NeuronBuffer(backend, self.input_geometry.units, mini_batch_size)
        return self._setup()

    def _setup(self):
        self.output_geometry = self.setup_output()
        self.output = NeuronBuffer(self.backend, self.output_geometry.units, self.mini_batch_size)
        self.setup_buffers()
        return self.output_geometry

    def setup_output(self):
        # Return this layer's output Geometry, derived from self.input_geometry
        raise NotImplementedError

    def setup_buffers(self):
        # Extra per-layer buffers, allocated once geometry is known
        pass

    def initialize_parameters(self, rng=None):
        """Checks call order; subclasses allocate their parameters after calling this."""
        if not self.is_connected:
            raise UsageError(
                f"{self.type}.initialize_parameters() called before connect_to()/set_as_first_layer()"
            )
        if self._initialized:
            raise UsageError(f"{self.type}.initialize_parameters() called twice")
        self._initialized = True
        return np.random.default_rng(rng)

    # ----- training -----
    def feed_forward(self):
        raise NotImplementedError

    def back_propagate(self):
        raise NotImplementedError

    def update_parameters(self, learning_rate, momentum):
        # Layers without trainable parameters have nothing to update
        pass

    def parameters(self):
        # Name -> backend buffer, for checkpointing
        return {}

    def __repr__(self):
        return f"{type(self).__name__}(id={self.id}, output={self.output_geometry})"
