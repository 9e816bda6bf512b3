class NetworkError(Exception):
    """Base class for every fatal error raised by convnet."""


class GeometryError(NetworkError, ValueError):
    # incompatible layer chain, bad convolution hyperparameters, non-square input
    pass


class UsageError(NetworkError, RuntimeError):
    # caller bug: wrong call order, backward through the terminal SoftMax, ...
    pass


class BackendError(NetworkError, RuntimeError):
    # kernel launch rejected, bad work-group sizing, allocation failure
    pass
