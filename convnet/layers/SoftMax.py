from ..errors import UsageError
from .Layer import Layer


class SoftMax(Layer):
    """
    Normalized exponential over each sample. Only valid as the terminal layer.

    The gradient at this boundary is written straight into the input delta by
    the loss (fused softmax + cross-entropy), so back_propagate() is never
    meant to run.
    """

    type = "SoftMax"

    def setup_output(self):
        return self.input_geometry

    def initialize_parameters(self, rng=None):
        super().initialize_parameters(rng)
        self.backend.prepare_work_groups(self.mini_batch_size)

    def feed_forward(self):
        self.backend.softmax_forward(self.output.activations, self.input.activations)

    def back_propagate(self):
        raise UsageError(
            "Called back_propagate() on a SoftMax layer. The loss must write the "
            "gradient into its input delta directly."
        )
