import logging

from ..errors import UsageError

logger = logging.getLogger(__name__)


class EarlyStopping:
    """
    Stop training once `monitor` has not improved by more than `min_delta`
    for `patience` consecutive epochs.

    The network's parameters are copied to the host (state_dict) on every
    improvement and written back when training stops, unless
    restore_best_weights is False.
    """

    def __init__(self, patience=5, min_delta=0.0, monitor="val_loss", mode="min",
                 restore_best_weights=True):
        if mode not in ("min", "max"):
            raise ValueError(f"EarlyStopping: mode must be 'min' or 'max', got {mode!r}")
        self.patience = patience
        self.min_delta = float(min_delta)
        self.monitor = monitor
        self.mode = mode
        self.restore_best_weights = restore_best_weights
        self.reset()

    def reset(self):
        self.best = None
        self.best_epoch = -1
        self.wait = 0
        self.stopped = False
        self._best_state = None

    def _improves(self, value):
        if self.best is None:
            return True
        if self.mode == "min":
            return value < self.best - self.min_delta
        return value > self.best + self.min_delta

    def update(self, epoch, metrics, network):
        """Record one epoch; True means stop now."""
        if self.monitor not in metrics:
            raise UsageError(
                f"EarlyStopping: metric '{self.monitor}' not available, got {sorted(metrics)}"
            )
        value = metrics[self.monitor]

        if self._improves(value):
            self.best, self.best_epoch, self.wait = value, epoch, 0
            self._best_state = network.state_dict()
            logger.debug("EarlyStopping: new best %s=%.4f at epoch %d", self.monitor, value, epoch)
            return False

        self.wait += 1
        if self.wait < self.patience:
            return False

        self.stopped = True
        if self.restore_best_weights and self._best_state is not None:
            network.load_state_dict(self._best_state)
            logger.info("EarlyStopping: restored weights from epoch %d", self.best_epoch)
        return True
