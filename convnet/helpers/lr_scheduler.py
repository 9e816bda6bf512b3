"""
Learning rate schedules for NetworkTrainer.

A scheduler owns the `learning_rate` attribute of the trainer it wraps and
rewrites it once per epoch, before that epoch's backward passes.
"""
import logging

logger = logging.getLogger(__name__)


class LRScheduler:
    """Base class: a constant learning rate."""

    def __init__(self, trainer, verbose=True):
        self.trainer = trainer
        self.verbose = verbose
        self.initial_lr = trainer.learning_rate
        self.current_lr = trainer.learning_rate

    def step(self, epoch, metrics=None):
        new_lr = self.get_lr(epoch, metrics)
        if new_lr != self.current_lr:
            self.current_lr = new_lr
            self.trainer.learning_rate = new_lr
            if self.verbose:
                logger.info("Learning rate set to %.6g at epoch %d", new_lr, epoch)
        return new_lr

    def get_lr(self, epoch, metrics=None):
        return self.current_lr


class StepLR(LRScheduler):
    """Multiply the learning rate by gamma every step_size epochs."""

    def __init__(self, trainer, step_size, gamma=0.1, verbose=True):
        super().__init__(trainer, verbose)
        self.step_size = step_size
        self.gamma = gamma

    def get_lr(self, epoch, metrics=None):
        return self.initial_lr * self.gamma ** (epoch // self.step_size)


class ExponentialLR(LRScheduler):
    """initial_lr * gamma**epoch"""

    def __init__(self, trainer, gamma=0.95, verbose=True):
        super().__init__(trainer, verbose)
        self.gamma = gamma

    def get_lr(self, epoch, metrics=None):
        return self.initial_lr * self.gamma ** epoch


class ReduceLROnPlateau(LRScheduler):
    """Scale the learning rate by `factor` once `monitor` stalls for `patience` epochs."""

    def __init__(self, trainer, monitor="val_loss", mode="min", factor=0.5,
                 patience=10, threshold=1e-4, min_lr=0.0, verbose=True):
        super().__init__(trainer, verbose)
        if mode not in ("min", "max"):
            raise ValueError(f"ReduceLROnPlateau: mode must be 'min' or 'max', got {mode!r}")
        self.monitor = monitor
        self.mode = mode
        self.factor = factor
        self.patience = patience
        self.threshold = threshold
        self.min_lr = min_lr

        self.best = None
        self.num_bad_epochs = 0

    def _improved(self, value):
        if self.mode == "min":
            return value < self.best - self.threshold
        return value > self.best + self.threshold

    def get_lr(self, epoch, metrics=None):
        if not metrics or self.monitor not in metrics:
            return self.current_lr

        value = metrics[self.monitor]
        if self.best is None or self._improved(value):
            self.best = value
            self.num_bad_epochs = 0
            return self.current_lr

        self.num_bad_epochs += 1
        if self.num_bad_epochs < self.patience:
            return self.current_lr

        self.num_bad_epochs = 0
        return max(self.current_lr * self.factor, self.min_lr)


SCHEDULERS = {
    "step": StepLR,
    "exponential": ExponentialLR,
    "plateau": ReduceLROnPlateau,
}


def get_scheduler(name, trainer, **kwargs):
    """Create a scheduler by name."""
    if name not in SCHEDULERS:
        raise ValueError(f"Unknown scheduler: {name}. Available: {list(SCHEDULERS)}")
    return SCHEDULERS[name](trainer, **kwargs)
