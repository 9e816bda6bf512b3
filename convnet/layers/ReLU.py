from .Layer import Layer


class ReLU(Layer):
    type = "ReLU"

    def setup_output(self):
        return self.input_geometry

    def initialize_parameters(self, rng=None):
        super().initialize_parameters(rng)
        n = self.output.units * self.mini_batch_size
        self.backend.prepare_work_groups(n)

    def feed_forward(self):
        self.backend.relu_forward(self.output.activations, self.input.activations)

    def back_propagate(self):
        self.backend.relu_backward(self.input.delta, self.output.delta, self.input.activations)
