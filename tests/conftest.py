"""
Pytest configuration and fixtures for convnet tests
"""

import numpy as np
import pytest

from convnet.helpers.Backend import CUPY_AVAILABLE, HostBackend


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "gpu: marks tests that require CuPy/CUDA (deselect with '-m \"not gpu\"')"
    )


@pytest.fixture
def host_backend():
    """Single-precision host backend, as used in training."""
    return HostBackend()


@pytest.fixture
def host_backend64():
    """Double-precision host backend for finite-difference checks."""
    return HostBackend(default_float=np.float64)


@pytest.fixture
def gpu_backend():
    """Accelerator backend (skips if not available)."""
    if not CUPY_AVAILABLE:
        pytest.skip("CuPy/CUDA not available")
    from convnet.helpers.Accelerator import AcceleratorBackend

    return AcceleratorBackend()


@pytest.fixture
def rng():
    return np.random.default_rng(42)
