import numpy as np

from ..data.DataSet import one_hot
from ..errors import UsageError
from ..layers.SoftMax import SoftMax


class CrossEntropyLoss:
    """
    Cross-entropy on top of a terminal SoftMax layer.

    forward() reads the probabilities back to the host to report the loss.
    backward() never leaves the backend: it writes the fused
    softmax + cross-entropy gradient (p - y) / batch straight into the
    SoftMax input delta, which is the penultimate layer's output delta.
    """

    def __init__(self, eps=1e-12):
        self.eps = eps
        self._targets = None
        self._targets_backend = None

    @staticmethod
    def _terminal(network):
        terminal = network.layers[-1]
        if not isinstance(terminal, SoftMax):
            raise UsageError(
                f"CrossEntropyLoss needs a terminal SoftMax layer, got {terminal.type}"
            )
        return terminal

    def forward(self, network, labels):
        """Mean cross-entropy of the current network output against integer labels."""
        terminal = self._terminal(network)
        probs = network.output()
        Y = one_hot(labels, terminal.output.units)
        if Y.shape != probs.shape:
            raise UsageError(f"CrossEntropyLoss: {Y.shape[0]} labels for a batch of {probs.shape[0]}")
        return float(-np.sum(Y * np.log(probs + self.eps)) / probs.shape[0])

    def backward(self, network, labels):
        terminal = self._terminal(network)
        backend = network.backend
        shape = tuple(terminal.output.activations.shape)
        if self._targets_backend is not backend or tuple(self._targets.shape) != shape:
            self._targets = backend.allocate(shape)
            self._targets_backend = backend
        Y = one_hot(labels, terminal.output.units)
        if Y.shape != shape:
            raise UsageError(f"CrossEntropyLoss: {Y.shape[0]} labels for a batch of {shape[0]}")
        backend.write(self._targets, Y)
        backend.cross_entropy_gradient(terminal.input.delta, terminal.output.activations, self._targets)
