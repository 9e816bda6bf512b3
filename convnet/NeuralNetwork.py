import logging

import numpy as np

from .errors import GeometryError, UsageError
from .helpers.Backend import HostBackend
from .layers.SoftMax import SoftMax

logger = logging.getLogger(__name__)


class NeuralNetwork:
    """
    A static, linear chain of layers.

    The network owns the layers; neighbours are list indices. Each layer's
    input buffer is, by reference, its predecessor's output buffer.

    Typical step:
        net.feed_data(dataset, indices)
        net.forward_pass()
        loss.backward(net, labels)   # writes the gradient into layers[-1].input.delta
        net.backward_pass(learning_rate, momentum)
    """

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else HostBackend()
        self._layers = []
        self._is_setup = False

    @property
    def layers(self):
        return self._layers

    @property
    def n_layers(self):
        return len(self._layers)

    @property
    def mini_batch_size(self):
        if not self._is_setup:
            raise UsageError("NeuralNetwork.mini_batch_size: call setup() first")
        return self._layers[0].mini_batch_size

    def add_layer(self, layer):
        if self._is_setup:
            raise UsageError("NeuralNetwork.add_layer(): network is already set up")
        layer.id = len(self._layers)
        self._layers.append(layer)
        return layer

    # ================== setup ==================
    def setup(self, input_width, input_height, input_depth, n_output_classes,
              mini_batch_size=1, rng=None):
        """
        Fix every layer's geometry and initialize parameters, first to last.

        rng may be a numpy Generator or a seed; the same generator is passed
        to every layer in order, so a seed fully determines the weights.
        """
        if not self._layers:
            raise GeometryError("NeuralNetwork.setup(): no layers")
        if self._is_setup:
            raise UsageError("NeuralNetwork.setup() called twice")
        for layer in self._layers[:-1]:
            if isinstance(layer, SoftMax):
                raise UsageError(
                    f"NeuralNetwork.setup(): SoftMax at position {layer.id} must be the last layer"
                )
        rng = np.random.default_rng(rng)

        logger.info("Network setup on %s backend", self.backend.name)
        first = self._layers[0]
        first.set_as_first_layer(input_width, input_height, input_depth, self.backend, mini_batch_size)
        first.initialize_parameters(rng)
        logger.info("  layer 0 (input layer): %s -> %s", first.type, first.output_geometry)

        for i in range(1, len(self._layers)):
            layer = self._layers[i]
            layer.connect_to(self._layers[i - 1])
            layer.initialize_parameters(rng)
            logger.info("  layer %d: %s -> %s", i, layer.type, layer.output_geometry)

        n_out = self._layers[-1].output_geometry.units
        if n_out != n_output_classes:
            raise GeometryError(
                f"NeuralNetwork.setup(): last layer has {n_out} outputs, "
                f"expected {n_output_classes} classes"
            )
        self._is_setup = True

    # ================== training ==================
    def feed_data(self, dataset, index):
        """Copy one data point (int index) or a full mini-batch (sequence) into layer 0."""
        first = self._layers[0]
        indices = np.atleast_1d(index)
        if indices.shape[0] != first.mini_batch_size:
            raise UsageError(
                f"NeuralNetwork.feed_data(): got {indices.shape[0]} data points "
                f"for a mini-batch of {first.mini_batch_size}"
            )
        samples = np.stack([np.ravel(dataset.get_sample(int(i))) for i in indices])
        if samples.shape[1] != first.input.units:
            raise GeometryError(
                f"NeuralNetwork.feed_data(): data points have {samples.shape[1]} units, "
                f"input layer expects {first.input.units}"
            )
        self.backend.write(first.input.activations, samples)

    def forward_pass(self):
        for layer in self._layers:
            layer.feed_forward()

    def backward_pass(self, learning_rate, momentum):
        """
        Run layers L-2..0 backwards, propagating deltas and updating parameters.

        Requires the gradient to ALREADY be in layers[-1].input.delta.
        """
        for i in range(len(self._layers) - 2, -1, -1):
            layer = self._layers[i]
            if i > 0:  # nothing upstream of the first layer
                layer.back_propagate()
            layer.update_parameters(learning_rate, momentum)

    def output(self):
        """Terminal activations copied to the host, shape (batch, n_classes)."""
        return self.backend.read(self._layers[-1].output.activations)

    # ================== parameters I/O ==================
    def state_dict(self):
        state = {}
        for layer in self._layers:
            for name, buffer in layer.parameters().items():
                state[f"{layer.id}.{name}"] = self.backend.read(buffer)
        return state

    def load_state_dict(self, state):
        for layer in self._layers:
            for name, buffer in layer.parameters().items():
                key = f"{layer.id}.{name}"
                if key not in state:
                    raise UsageError(f"NeuralNetwork.load_state_dict(): missing '{key}'")
                if tuple(np.shape(state[key])) != tuple(buffer.shape):
                    raise UsageError(
                        f"NeuralNetwork.load_state_dict(): '{key}' has shape "
                        f"{np.shape(state[key])}, expected {tuple(buffer.shape)}"
                    )
                self.backend.write(buffer, state[key])

    def save(self, path):
        np.savez(path, **self.state_dict())

    def load(self, path):
        with np.load(path) as data:
            self.load_state_dict({k: data[k] for k in data.files})

    def __repr__(self):
        lines = [f"NeuralNetwork(backend={self.backend.name}, layers=["]
        lines += [f"  {layer!r}," for layer in self._layers]
        lines.append("])")
        return "\n".join(lines)
