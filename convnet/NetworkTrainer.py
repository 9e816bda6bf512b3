import logging
import time

import numpy as np

from .early_stopping.EarlyStopping import EarlyStopping
from .errors import UsageError
from .helpers.logger import RunLogger
from .helpers.lr_scheduler import LRScheduler, get_scheduler
from .loss.CrossEntropyLoss import CrossEntropyLoss

logger = logging.getLogger(__name__)


class NetworkTrainer:
    """
    Momentum-SGD training loop around a set-up NeuralNetwork.

    The mini-batch size is the one the network was set up with. Training
    epochs drop the incomplete last batch; evaluation pads it by repeating
    the last data point and discards the extra outputs.

    scheduler: None, an LRScheduler, or (name, kwargs) for get_scheduler().
    early_stopping: None, an EarlyStopping, or a dict of its kwargs.
    runs_root: directory for RunLogger files; None keeps everything in memory.
    """

    def __init__(
        self,
        network,
        epochs=10,
        learning_rate=0.01,
        momentum=0.9,
        shuffle=True,
        seed=None,
        scheduler=None,
        early_stopping=None,
        runs_root=None,
        tag="run",
        verbose=1,
    ):
        self.network = network
        self.epochs = epochs
        self.learning_rate = learning_rate
        self.momentum = momentum
        self.shuffle = shuffle
        self.seed = seed
        self.runs_root = runs_root
        self.tag = tag
        self.verbose = verbose
        self.loss_fn = CrossEntropyLoss()

        if scheduler is None or isinstance(scheduler, LRScheduler):
            self.scheduler = scheduler
        else:
            name, kwargs = scheduler
            self.scheduler = get_scheduler(name, self, **kwargs)

        if isinstance(early_stopping, dict):
            self.stopper = EarlyStopping(**early_stopping)
        else:
            self.stopper = early_stopping

    # ================== batching ==================
    def _batches(self, n, shuffle=False, rng=None, pad=False):
        batch_size = self.network.mini_batch_size
        idx = np.arange(n)
        if shuffle:
            rng.shuffle(idx)
        start = 0
        while start + batch_size <= n:
            yield idx[start:start + batch_size], batch_size
            start += batch_size
        if pad and start < n:
            tail = idx[start:]
            padded = np.concatenate([tail, np.repeat(tail[-1:], batch_size - tail.size)])
            yield padded, tail.size

    # ================== evaluation ==================
    def predict_proba(self, dataset):
        if len(dataset) == 0:
            raise UsageError("NetworkTrainer.predict_proba(): empty dataset")
        probs = []
        for batch, n_valid in self._batches(len(dataset), pad=True):
            self.network.feed_data(dataset, batch)
            self.network.forward_pass()
            probs.append(self.network.output()[:n_valid])
        return np.vstack(probs)

    def predict(self, dataset):
        return np.argmax(self.predict_proba(dataset), axis=1)

    def evaluate(self, dataset):
        """(mean cross-entropy, accuracy) over the whole dataset."""
        probs = self.predict_proba(dataset)
        labels = dataset.get_labels(np.arange(len(dataset)))
        picked = probs[np.arange(labels.size), labels]
        loss = float(-np.mean(np.log(picked + self.loss_fn.eps)))
        acc = float(np.mean(np.argmax(probs, axis=1) == labels))
        return loss, acc

    # ================== training ==================
    def train_epoch(self, dataset, rng):
        n_steps = 0
        for batch, _ in self._batches(len(dataset), shuffle=self.shuffle, rng=rng):
            self.network.feed_data(dataset, batch)
            self.network.forward_pass()
            self.loss_fn.backward(self.network, dataset.get_labels(batch))
            self.network.backward_pass(self.learning_rate, self.momentum)
            n_steps += 1
        if n_steps == 0:
            raise UsageError(
                f"NetworkTrainer: {len(dataset)} data points do not fill one "
                f"mini-batch of {self.network.mini_batch_size}"
            )
        return n_steps

    def fit(self, train_set, validation_set=None):
        rng = np.random.default_rng(self.seed)
        history = {"loss": [], "acc": []}
        if validation_set is not None:
            history["val_loss"] = []
            history["val_acc"] = []
        run_logger = RunLogger(root=self.runs_root, tag=self.tag) if self.runs_root else None

        logger.info("Starting training for %d epochs...", self.epochs)
        for ep in range(1, self.epochs + 1):
            t0 = time.time()
            self.train_epoch(train_set, rng)

            train_loss, train_acc = self.evaluate(train_set)
            history["loss"].append(train_loss)
            history["acc"].append(train_acc)
            metrics = {"loss": train_loss, "acc": train_acc}

            if validation_set is not None:
                val_loss, val_acc = self.evaluate(validation_set)
                history["val_loss"].append(val_loss)
                history["val_acc"].append(val_acc)
                metrics.update({"val_loss": val_loss, "val_acc": val_acc})

            elapsed = time.time() - t0
            if self.verbose > 0:
                logger.info(
                    "Epoch %d/%d - %s - lr: %.6g - %.1fs",
                    ep, self.epochs,
                    " - ".join(f"{k}: {v:.4f}" for k, v in metrics.items()),
                    self.learning_rate, elapsed,
                )

            # the stopper may restore older weights, so take this epoch's state first
            state = self.network.state_dict() if run_logger is not None else None
            stop = False
            if self.stopper is not None:
                stop = self.stopper.update(ep, metrics, self.network)
                is_best = self.stopper.best_epoch == ep
            else:
                monitored = history["val_loss"] if validation_set is not None else history["loss"]
                is_best = monitored[-1] <= min(monitored)

            if run_logger is not None:
                run_logger.log_epoch(ep, time_s=elapsed, lr=self.learning_rate, **metrics)
                run_logger.save_checkpoint(state, best=False)
                if is_best:
                    run_logger.save_checkpoint(state, best=True)

            if self.scheduler is not None:
                self.scheduler.step(ep, metrics)

            if stop:
                logger.info(
                    "Early stopping at epoch %02d. Best %s=%.4f at epoch %02d.",
                    ep, self.stopper.monitor, self.stopper.best, self.stopper.best_epoch,
                )
                break

        if run_logger is not None:
            run_logger.save_json()
            run_logger.plot_all(history, tag=self.tag)
        return history
