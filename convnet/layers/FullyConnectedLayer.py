import numpy as np

from ..errors import GeometryError
from .Layer import Geometry, Layer, gaussian


class FullyConnectedLayer(Layer):
    type = "FullyConnected"

    def __init__(self, n_units):
        # weights: (n_units, n_inputs)
        # biases: (n_units,)
        super().__init__()
        self.n_units = n_units

        self.weights = None
        self.biases = None
        self.weights_velocity = None
        self.biases_velocity = None

    def setup_output(self):
        if self.n_units < 1:
            raise GeometryError(f"FullyConnected: invalid number of units {self.n_units}")
        return Geometry(1, 1, self.n_units)

    def initialize_parameters(self, rng=None):
        rng = super().initialize_parameters(rng)
        n_in = self.input.units
        n_out = self.output.units
        backend = self.backend

        # He initialization, drawn on the host, then moved to the backend
        weights_cpu = gaussian(rng, (n_out, n_in), np.sqrt(2.0 / n_in))
        biases_cpu = np.full(n_out, 0.01)

        self.weights = backend.allocate((n_out, n_in))
        self.biases = backend.allocate(n_out)
        backend.write(self.weights, weights_cpu)
        backend.write(self.biases, biases_cpu)

        self.weights_velocity = backend.allocate((n_out, n_in))
        self.biases_velocity = backend.allocate(n_out)

        batch = self.mini_batch_size
        backend.prepare_work_groups(batch * n_out, batch * n_in, n_out * n_in)

    def _columns(self, array):
        # (batch, units) -> (batch, units, 1): a dense layer is a linear op over one position
        return array.reshape(array.shape[0], array.shape[1], 1)

    def feed_forward(self):
        self.backend.linear_forward(
            self._columns(self.output.activations),
            self._columns(self.input.activations),
            self.weights,
            self.biases,
        )

    def back_propagate(self):
        self.backend.linear_backward(
            self._columns(self.input.delta),
            self._columns(self.output.delta),
            self.weights,
        )

    def update_parameters(self, learning_rate, momentum):
        self.backend.momentum_update(
            self.weights,
            self.biases,
            self.weights_velocity,
            self.biases_velocity,
            self._columns(self.input.activations),
            self._columns(self.output.delta),
            learning_rate,
            momentum,
        )

    def parameters(self):
        return {"weights": self.weights, "biases": self.biases}
