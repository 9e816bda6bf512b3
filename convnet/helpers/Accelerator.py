# convnet/helpers/Accelerator.py
import logging
import math

import numpy as np

from ..errors import BackendError
from .Backend import CUPY_AVAILABLE, ComputeBackend, cp
from .kernels import KERNEL_NAMES, KERNEL_SOURCE

logger = logging.getLogger(__name__)

# warp size on NVIDIA hardware
BASE_GROUP_SIZE = 32


def work_group_sizes(n_items, max_work_group_size, max_work_item_size,
                     base_group_size=BASE_GROUP_SIZE):
    """
    Global / local work sizes for a 1D launch over n_items elements.

    global size = smallest multiple of base_group_size covering n_items
    local size  = global size, halved until it fits both device limits.
                  Halving only ever happens on an even size, so the local
                  size stays a divisor of the global size.
    """
    if n_items < 1:
        raise BackendError(f"work_group_sizes: nothing to launch ({n_items} items)")
    if base_group_size < 1:
        raise BackendError(f"work_group_sizes: invalid base group size {base_group_size}")

    global_size = base_group_size * math.ceil(n_items / base_group_size)
    local_size = global_size
    while local_size > max_work_group_size or local_size > max_work_item_size:
        if local_size % 2 != 0 or local_size == 1:
            raise BackendError(
                f"work_group_sizes: no local size dividing {global_size} fits "
                f"max_work_group_size={max_work_group_size}, "
                f"max_work_item_size={max_work_item_size}"
            )
        local_size //= 2
    if local_size == 1 and global_size > 1:
        raise BackendError(
            f"work_group_sizes: local size for {global_size} work items degenerated to 1"
        )
    return global_size, local_size


class AcceleratorBackend(ComputeBackend):
    """
    CuPy raw-kernel implementation.

    Every kernel launch is synchronized before returning; there is no
    pipelining between layers.
    """

    name = "accelerator"

    def __init__(self, device_id=0, base_group_size=BASE_GROUP_SIZE):
        if not CUPY_AVAILABLE:
            raise BackendError("accelerator backend requested but CuPy/CUDA is not available")
        # kernels are single precision
        super().__init__(default_float=np.float32)
        self.xp = cp
        self.base_group_size = base_group_size
        try:
            self.device = cp.cuda.Device(device_id)
            self.device.use()
            attributes = self.device.attributes
            self.max_work_group_size = int(attributes["MaxThreadsPerBlock"])
            self.max_work_item_size = int(attributes["MaxBlockDimX"])
            self.module = cp.RawModule(code=KERNEL_SOURCE)
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise BackendError(f"device {device_id}: {e}") from e
        self._kernels = {}
        self._work_groups = {}
        logger.info(
            "Accelerator device %d: max work group %d, max work items %d",
            device_id, self.max_work_group_size, self.max_work_item_size,
        )

    # -------- memory / transfer --------
    def allocate(self, shape, dtype=None):
        dtype = self.default_float if dtype is None else dtype
        try:
            return cp.zeros(shape, dtype=dtype)
        except cp.cuda.memory.OutOfMemoryError as e:
            raise BackendError(f"allocate{tuple(np.atleast_1d(shape))}: {e}") from e

    def write(self, buffer, host_data):
        data = np.asarray(host_data, dtype=buffer.dtype)
        if data.size != buffer.size:
            raise BackendError(
                f"write: got {data.size} values for a buffer of {buffer.size}"
            )
        buffer[...] = cp.asarray(data.reshape(buffer.shape))
        self.synchronize()

    def read(self, buffer):
        return cp.asnumpy(buffer)

    def synchronize(self):
        """Block until all queued GPU kernels complete."""
        cp.cuda.Stream.null.synchronize()

    # -------- dispatch --------
    def prepare_work_groups(self, *n_items):
        for n in n_items:
            self._work_group_sizes(n)

    def _work_group_sizes(self, n_items):
        sizes = self._work_groups.get(n_items)
        if sizes is None:
            sizes = work_group_sizes(
                n_items, self.max_work_group_size, self.max_work_item_size,
                base_group_size=self.base_group_size,
            )
            self._work_groups[n_items] = sizes
        return sizes

    def _get_kernel(self, kernel_name):
        kernel = self._kernels.get(kernel_name)
        if kernel is None:
            if kernel_name not in KERNEL_NAMES:
                raise BackendError(f"unknown kernel '{kernel_name}'")
            try:
                kernel = self.module.get_function(kernel_name)
            except cp.cuda.compiler.CompileException as e:
                raise BackendError(f"{kernel_name}: compilation failed: {e}") from e
            logger.debug("Compiled kernel %s", kernel_name)
            self._kernels[kernel_name] = kernel
        return kernel

    def launch(self, kernel_name, global_work_size, local_work_size, *args):
        """Launch a kernel and wait for it to finish."""
        if local_work_size < 1 or global_work_size % local_work_size != 0:
            raise BackendError(
                f"{kernel_name}: local work size {local_work_size} does not divide "
                f"global work size {global_work_size}"
            )
        kernel = self._get_kernel(kernel_name)
        try:
            kernel((global_work_size // local_work_size,), (local_work_size,), args)
            self.synchronize()
        except (cp.cuda.driver.CUDADriverError, cp.cuda.runtime.CUDARuntimeError) as e:
            raise BackendError(f"{kernel_name}: launch failed: {e}") from e
        except (TypeError, ValueError) as e:
            # arguments CuPy cannot marshal into the kernel signature
            raise BackendError(f"{kernel_name}: invalid kernel arguments: {e}") from e

    def _dispatch(self, kernel_name, n_items, *args):
        global_size, local_size = self._work_group_sizes(n_items)
        self.launch(kernel_name, global_size, local_size, *args)

    # -------- elementwise --------
    def relu_forward(self, out, inp):
        n = inp.size
        self._dispatch("relu_forward", n, out, inp, np.int32(n))

    def relu_backward(self, din, dout, inp):
        n = inp.size
        self._dispatch("relu_backward", n, din, dout, inp, np.int32(n))

    def softmax_forward(self, out, inp):
        batch, n_units = inp.shape
        self._dispatch("softmax_forward", batch, out, inp, np.int32(n_units), np.int32(batch))

    def cross_entropy_gradient(self, delta, probs, targets):
        n = probs.size
        scale = np.float32(1.0 / probs.shape[0])
        self._dispatch("cross_entropy_gradient", n, delta, probs, targets, np.int32(n), scale)

    # -------- linear algebra --------
    def linear_forward(self, out, inp, weights, biases):
        batch, n_in, n_pos = inp.shape
        n_out = weights.shape[0]
        self._dispatch(
            "linear_forward", batch * n_out * n_pos,
            out, inp, weights, biases,
            np.int32(n_out), np.int32(n_in), np.int32(n_pos), np.int32(batch),
        )

    def linear_backward(self, din, dout, weights):
        batch, n_out, n_pos = dout.shape
        n_in = weights.shape[1]
        self._dispatch(
            "linear_backward", batch * n_in * n_pos,
            din, dout, weights,
            np.int32(n_out), np.int32(n_in), np.int32(n_pos), np.int32(batch),
        )

    def momentum_update(self, weights, biases, weights_velocity, biases_velocity,
                        inp, dout, learning_rate, momentum):
        batch, n_in, n_pos = inp.shape
        n_out = weights.shape[0]
        self._dispatch(
            "momentum_update", n_out * n_in,
            weights, biases, weights_velocity, biases_velocity, inp, dout,
            np.int32(n_out), np.int32(n_in), np.int32(n_pos), np.int32(batch),
            np.float32(learning_rate), np.float32(momentum),
        )

    # -------- convolution helpers --------
    def zero_pad(self, padded, inp, depth, height, width, padding):
        batch = inp.shape[0]
        self._dispatch(
            "zero_pad", padded.size, padded, inp,
            np.int32(depth), np.int32(height), np.int32(width), np.int32(padding), np.int32(batch),
        )

    def im2col(self, patches, padded, lookup_table):
        batch, padded_size = padded.shape
        table_size = lookup_table.size
        self._dispatch(
            "im2col", batch * table_size, patches, padded, lookup_table,
            np.int32(table_size), np.int32(padded_size), np.int32(batch),
        )

    def col2im(self, padded_delta, patches_delta, lookup_table):
        batch, padded_size = padded_delta.shape
        table_size = lookup_table.size
        self._dispatch("fill_zero", padded_delta.size, padded_delta, np.int32(padded_delta.size))
        self._dispatch(
            "col2im", batch * table_size, padded_delta, patches_delta, lookup_table,
            np.int32(table_size), np.int32(padded_size), np.int32(batch),
        )

    def crop_padding(self, din, padded_delta, depth, height, width, padding):
        batch = din.shape[0]
        self._dispatch(
            "crop_padding", din.size, din, padded_delta,
            np.int32(depth), np.int32(height), np.int32(width), np.int32(padding), np.int32(batch),
        )
