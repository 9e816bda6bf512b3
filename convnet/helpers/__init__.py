from .Backend import CUPY_AVAILABLE, ComputeBackend, HostBackend, create_backend

__all__ = ["CUPY_AVAILABLE", "ComputeBackend", "HostBackend", "create_backend"]
