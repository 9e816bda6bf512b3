"""Accelerator kernels against the host reference. Needs CuPy and a CUDA device."""

import numpy as np
import pytest

from convnet import (
    BackendError,
    ArrayDataSet,
    ConvolutionalLayer,
    CrossEntropyLoss,
    FullyConnectedLayer,
    NeuralNetwork,
    ReLU,
    SoftMax,
)

pytestmark = pytest.mark.gpu


def build(backend, batch):
    net = NeuralNetwork(backend=backend)
    net.add_layer(ConvolutionalLayer(3, n_filters=4, stride=1, padding=1))
    net.add_layer(ReLU())
    net.add_layer(ConvolutionalLayer(3, n_filters=6, stride=2, padding=0))
    net.add_layer(ReLU())
    net.add_layer(FullyConnectedLayer(5))
    net.add_layer(SoftMax())
    net.setup(9, 9, 2, 5, mini_batch_size=batch, rng=123)
    return net


@pytest.fixture
def data():
    rng = np.random.default_rng(9)
    return ArrayDataSet(rng.normal(size=(6, 2, 9, 9)), [0, 1, 2, 3, 4, 0], n_classes=5)


def test_same_initial_parameters(host_backend, gpu_backend):
    host = build(host_backend, 3)
    device = build(gpu_backend, 3)
    for key, value in host.state_dict().items():
        np.testing.assert_array_equal(device.state_dict()[key], value)


def test_forward_matches_host(host_backend, gpu_backend, data):
    host = build(host_backend, 3)
    device = build(gpu_backend, 3)
    for net in (host, device):
        net.feed_data(data, [0, 2, 4])
        net.forward_pass()
    np.testing.assert_allclose(device.output(), host.output(), rtol=1e-4, atol=1e-6)


def test_training_steps_match_host(host_backend, gpu_backend, data):
    host = build(host_backend, 3)
    device = build(gpu_backend, 3)
    for net in (host, device):
        loss = CrossEntropyLoss()
        for batch in ([0, 1, 2], [3, 4, 5], [5, 0, 2]):
            net.feed_data(data, batch)
            net.forward_pass()
            loss.backward(net, data.get_labels(batch))
            net.backward_pass(0.05, 0.9)

    device_state = device.state_dict()
    for key, value in host.state_dict().items():
        np.testing.assert_allclose(device_state[key], value, rtol=1e-3, atol=1e-5)


def test_work_groups_are_prepared_at_setup(gpu_backend):
    net = build(gpu_backend, 2)
    conv = net.layers[0]
    assert 2 * conv.padded_input_size in gpu_backend._work_groups
    for global_size, local_size in gpu_backend._work_groups.values():
        assert global_size % local_size == 0
        assert local_size <= gpu_backend.max_work_group_size


def test_launch_errors_name_the_kernel(gpu_backend):
    out = gpu_backend.allocate(32)
    with pytest.raises(BackendError, match="relu_forward"):
        gpu_backend.launch("relu_forward", 32, 32, out, "not a buffer", np.int32(32))
    with pytest.raises(BackendError, match="relu_forward"):
        gpu_backend.launch("relu_forward", 32, 12, out, out, np.int32(32))
