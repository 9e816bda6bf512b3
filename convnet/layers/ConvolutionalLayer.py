import logging

import numpy as np

from ..errors import GeometryError
from .Layer import Geometry, Layer, gaussian

logger = logging.getLogger(__name__)

EPSILON = 1e-6


def receptive_field_lookup_table(depth, padded_width, filter_size, stride, output_width):
    """
    Index table of shape (depth * filter_size**2, output_width**2).

    Entry [r, p] is the flat index, inside one padded input sample laid out
    as (depth, padded_height, padded_width), of filter element r applied at
    output position p. Rows run over (channel, filter row, filter column),
    columns over (output row, output column).
    """
    area = filter_size * filter_size
    rows = np.arange(depth * area)
    channel = rows // area
    fy = (rows % area) // filter_size
    fx = rows % filter_size

    positions = np.arange(output_width * output_width)
    oy = positions // output_width
    ox = positions % output_width

    y = oy[None, :] * stride + fy[:, None]
    x = ox[None, :] * stride + fx[:, None]
    table = (channel[:, None] * padded_width + y) * padded_width + x
    return table.astype(np.int32)


class ConvolutionalLayer(Layer):
    """
    Convolution as one matrix product over gathered patches (im2col).

    forward:  pad -> gather through the lookup table into
              patches (receptive_field_size, n_positions) -> W @ patches + b
    backward: W.T @ delta -> scatter-add through the table into the padded
              delta -> crop the padding
    update:   the dense update, with patches in place of input activations

    Only square inputs and odd filter sizes are supported.
    """

    type = "Convolutional"

    def __init__(self, filter_size, n_filters, stride=1, padding=0):
        super().__init__()
        self.filter_size = filter_size
        self.n_filters = n_filters
        self.stride = stride
        self.padding = padding

        self.receptive_field_size = None  # input_depth * filter_size^2
        self.n_receptive_fields = None    # output_width * output_height
        self.padded_input_size = None

        self.lookup_table = None
        self.padded_input = None
        self.patches = None
        self.padded_delta = None
        self.patches_delta = None

        self.weights = None
        self.biases = None
        self.weights_velocity = None
        self.biases_velocity = None

    def setup_output(self):
        g = self.input_geometry
        if self.filter_size < 1 or self.filter_size % 2 != 1:
            raise GeometryError(f"Convolutional: only odd filter size is supported (got {self.filter_size})")
        if self.n_filters < 1 or self.stride < 1 or self.padding < 0:
            raise GeometryError(
                f"Convolutional: invalid hyperparameters n_filters={self.n_filters}, "
                f"stride={self.stride}, padding={self.padding}"
            )
        if g.width != g.height:
            raise GeometryError(
                f"Convolutional: only square input is supported (got {g.width}x{g.height})"
            )

        size = (g.width - self.filter_size + 2 * self.padding) / self.stride + 1
        if abs(size - round(size)) > EPSILON or size < 1:
            raise GeometryError(
                f"Convolutional: input width {g.width}, filter size {self.filter_size}, "
                f"padding {self.padding} and stride {self.stride} do not fit (output size {size})"
            )
        output_width = int(round(size))

        self.receptive_field_size = g.depth * self.filter_size * self.filter_size
        self.n_receptive_fields = output_width * output_width
        padded_width = g.width + 2 * self.padding
        self.padded_input_size = g.depth * padded_width * padded_width
        return Geometry(output_width, output_width, self.n_filters)

    def setup_buffers(self):
        # geometry is static, so the table is built once
        g = self.input_geometry
        backend = self.backend
        batch = self.mini_batch_size

        table = receptive_field_lookup_table(
            g.depth, g.width + 2 * self.padding, self.filter_size, self.stride, self.output_geometry.width
        )
        self.lookup_table = backend.allocate(table.shape, dtype=np.int32)
        backend.write(self.lookup_table, table)

        self.padded_input = backend.allocate((batch, self.padded_input_size))
        self.padded_delta = backend.allocate((batch, self.padded_input_size))
        self.patches = backend.allocate((batch, self.receptive_field_size, self.n_receptive_fields))
        self.patches_delta = backend.allocate((batch, self.receptive_field_size, self.n_receptive_fields))
        logger.debug(
            "Convolutional lookup table %s, padded input %d",
            table.shape, self.padded_input_size,
        )

    def initialize_parameters(self, rng=None):
        rng = super().initialize_parameters(rng)
        backend = self.backend
        shape = (self.n_filters, self.receptive_field_size)

        weights_cpu = gaussian(rng, shape, np.sqrt(2.0 / self.input.units))
        biases_cpu = np.full(self.n_filters, 0.01)

        self.weights = backend.allocate(shape)
        self.biases = backend.allocate(self.n_filters)
        backend.write(self.weights, weights_cpu)
        backend.write(self.biases, biases_cpu)

        self.weights_velocity = backend.allocate(shape)
        self.biases_velocity = backend.allocate(self.n_filters)

        batch = self.mini_batch_size
        backend.prepare_work_groups(
            batch * self.padded_input_size,
            batch * self.lookup_table.size,
            batch * self.output.units,
            batch * self.input.units,
            self.weights.size,
        )

    def _output_matrix(self, array):
        # (batch, n_filters * n_positions) -> (batch, n_filters, n_positions)
        return array.reshape(array.shape[0], self.n_filters, self.n_receptive_fields)

    def feed_forward(self):
        g = self.input_geometry
        self.backend.zero_pad(self.padded_input, self.input.activations, g.depth, g.height, g.width, self.padding)
        self.backend.im2col(self.patches, self.padded_input, self.lookup_table)
        self.backend.linear_forward(
            self._output_matrix(self.output.activations), self.patches, self.weights, self.biases
        )

    def back_propagate(self):
        g = self.input_geometry
        self.backend.linear_backward(self.patches_delta, self._output_matrix(self.output.delta), self.weights)
        self.backend.col2im(self.padded_delta, self.patches_delta, self.lookup_table)
        self.backend.crop_padding(self.input.delta, self.padded_delta, g.depth, g.height, g.width, self.padding)

    def update_parameters(self, learning_rate, momentum):
        self.backend.momentum_update(
            self.weights,
            self.biases,
            self.weights_velocity,
            self.biases_velocity,
            self.patches,
            self._output_matrix(self.output.delta),
            learning_rate,
            momentum,
        )

    def parameters(self):
        return {"weights": self.weights, "biases": self.biases}
