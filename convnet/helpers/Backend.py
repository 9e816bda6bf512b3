# convnet/helpers/Backend.py
import logging

import numpy as np

from ..errors import BackendError

logger = logging.getLogger(__name__)

try:
    import cupy as cp

    # Quick runtime check
    try:
        _ = (cp.array([1, 2, 3]) + 1).sum()
        CUPY_AVAILABLE = True
    except Exception as e:
        logger.info("CuPy installed but CUDA runtime error: %s", e)
        cp = None
        CUPY_AVAILABLE = False
except ImportError:
    cp = None
    CUPY_AVAILABLE = False


class ComputeBackend:
    """
    Everything a layer needs from the device it runs on.

    Buffers are arrays owned by the backend (NumPy on the host, CuPy on the
    accelerator). Layers never touch their contents directly: they allocate
    through the backend and hand buffers back to the kernel methods below.

    Shape conventions used by the kernel methods:
      - neuron buffers: (batch, units)
      - linear ops: inputs (batch, n_in, n_positions), outputs
        (batch, n_out, n_positions), weights (n_out, n_in), biases (n_out,).
        A dense layer is the n_positions == 1 case.
      - lookup tables: int32 (receptive_field_size, n_positions) holding
        indices into one sample of the padded input.
    """

    name = "abstract"

    def __init__(self, default_float=np.float32):
        self.default_float = default_float

    # -------- memory / transfer --------
    def allocate(self, shape, dtype=None):
        raise NotImplementedError

    def write(self, buffer, host_data):
        raise NotImplementedError

    def read(self, buffer):
        raise NotImplementedError

    def synchronize(self):
        pass

    def prepare_work_groups(self, *n_items):
        # Only meaningful for backends that dispatch kernels.
        pass

    # -------- kernels --------
    def relu_forward(self, out, inp):
        raise NotImplementedError

    def relu_backward(self, din, dout, inp):
        raise NotImplementedError

    def softmax_forward(self, out, inp):
        raise NotImplementedError

    def linear_forward(self, out, inp, weights, biases):
        raise NotImplementedError

    def linear_backward(self, din, dout, weights):
        raise NotImplementedError

    def momentum_update(self, weights, biases, weights_velocity, biases_velocity,
                        inp, dout, learning_rate, momentum):
        raise NotImplementedError

    def zero_pad(self, padded, inp, depth, height, width, padding):
        raise NotImplementedError

    def im2col(self, patches, padded, lookup_table):
        raise NotImplementedError

    def col2im(self, padded_delta, patches_delta, lookup_table):
        raise NotImplementedError

    def crop_padding(self, din, padded_delta, depth, height, width, padding):
        raise NotImplementedError

    def cross_entropy_gradient(self, delta, probs, targets):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(default_float={np.dtype(self.default_float).name})"


class HostBackend(ComputeBackend):
    """NumPy implementation; every call completes before it returns."""

    name = "host"

    def __init__(self, default_float=np.float32):
        super().__init__(default_float=default_float)
        self.xp = np

    # -------- memory / transfer --------
    def allocate(self, shape, dtype=None):
        dtype = self.default_float if dtype is None else dtype
        try:
            return np.zeros(shape, dtype=dtype)
        except (MemoryError, ValueError) as e:
            raise BackendError(f"allocate{tuple(np.atleast_1d(shape))}: {e}") from e

    def write(self, buffer, host_data):
        data = np.asarray(host_data, dtype=buffer.dtype)
        if data.size != buffer.size:
            raise BackendError(
                f"write: got {data.size} values for a buffer of {buffer.size}"
            )
        buffer[...] = data.reshape(buffer.shape)

    def read(self, buffer):
        return np.array(buffer, copy=True)

    # -------- elementwise --------
    def relu_forward(self, out, inp):
        np.maximum(inp, 0, out=out)

    def relu_backward(self, din, dout, inp):
        # inp == 0 routes no gradient
        din[...] = np.where(inp > 0, dout, 0)

    def softmax_forward(self, out, inp):
        # rescaling trick: subtract per-sample max before exp
        z = inp - np.max(inp, axis=1, keepdims=True)
        np.exp(z, out=out)
        out /= np.sum(out, axis=1, keepdims=True)

    def cross_entropy_gradient(self, delta, probs, targets):
        delta[...] = (probs - targets) / probs.shape[0]

    # -------- linear algebra --------
    def linear_forward(self, out, inp, weights, biases):
        out[...] = np.matmul(weights, inp) + biases[:, None]

    def linear_backward(self, din, dout, weights):
        din[...] = np.matmul(weights.T, dout)

    def momentum_update(self, weights, biases, weights_velocity, biases_velocity,
                        inp, dout, learning_rate, momentum):
        # summed over the mini-batch and (for convolutions) output positions
        grad_w = np.sum(np.matmul(dout, np.transpose(inp, (0, 2, 1))), axis=0)
        grad_b = np.sum(dout, axis=(0, 2))

        weights_velocity *= momentum
        weights_velocity -= learning_rate * grad_w
        weights += weights_velocity

        biases_velocity *= momentum
        biases_velocity -= learning_rate * grad_b
        biases += biases_velocity

    # -------- convolution helpers --------
    def zero_pad(self, padded, inp, depth, height, width, padding):
        batch = inp.shape[0]
        p = padding
        view = padded.reshape(batch, depth, height + 2 * p, width + 2 * p)
        view[...] = 0
        view[:, :, p:p + height, p:p + width] = inp.reshape(batch, depth, height, width)

    def im2col(self, patches, padded, lookup_table):
        # padded: (B, padded_size) -> patches: (B, K, P)
        patches[...] = padded[:, lookup_table]

    def col2im(self, padded_delta, patches_delta, lookup_table):
        batch = padded_delta.shape[0]
        padded_delta[...] = 0
        # many-to-one: overlapping receptive fields accumulate
        batch_idx = np.arange(batch)[:, None, None]
        np.add.at(padded_delta, (batch_idx, lookup_table[None, :, :]), patches_delta)

    def crop_padding(self, din, padded_delta, depth, height, width, padding):
        batch = din.shape[0]
        p = padding
        view = padded_delta.reshape(batch, depth, height + 2 * p, width + 2 * p)
        din[...] = view[:, :, p:p + height, p:p + width].reshape(batch, -1)


def create_backend(use_gpu=False, default_float=np.float32, **kwargs):
    """
    Select the compute backend once, at construction time.

    Asking for the accelerator without a working CuPy/CUDA runtime is an
    error; there is no silent fallback to the host.
    """
    if use_gpu:
        from .Accelerator import AcceleratorBackend

        backend = AcceleratorBackend(**kwargs)
    else:
        backend = HostBackend(default_float=default_float)
    logger.info("Using %s backend", backend.name)
    return backend
