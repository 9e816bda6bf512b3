# convnet/helpers/logger.py
import csv
import datetime
import json
import logging
import pathlib

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)

# history key -> legend label
LOSS_CURVES = {"loss": "train loss", "val_loss": "val loss"}
ACCURACY_CURVES = {"acc": "train accuracy", "val_acc": "val accuracy"}


class RunLogger:
    """
    Files for one training run, all under <root>/<tag>_<timestamp>/:

        history.csv, history.json   one row per epoch
        checkpoint_last.npz         parameters after the latest epoch
        checkpoint_best.npz         parameters at the best monitored epoch
        plots/                      loss and accuracy curves
    """

    def __init__(self, root="runs", tag="run"):
        stamp = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
        self.dir = pathlib.Path(root) / f"{tag}_{stamp}"
        self.dir.mkdir(parents=True, exist_ok=True)

        self.csv_path = self.dir / "history.csv"
        self.json_path = self.dir / "history.json"
        self.last_ckpt = self.dir / "checkpoint_last.npz"
        self.best_ckpt = self.dir / "checkpoint_best.npz"

        self.metrics = []
        self._columns = None
        logger.info("Run files in %s", self.dir)

    def log_epoch(self, epoch, **values):
        """Append one row; the first row fixes the CSV columns."""
        row = {"epoch": int(epoch)}
        row.update((name, float(value)) for name, value in values.items())
        self.metrics.append(row)

        new_file = self._columns is None
        if new_file:
            self._columns = list(row)
        with open(self.csv_path, "a", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=self._columns, extrasaction="ignore")
            if new_file:
                writer.writeheader()
            writer.writerow(row)

    def save_json(self):
        self.json_path.write_text(json.dumps(self.metrics, indent=2))

    def save_checkpoint(self, state, best=False):
        """state: name -> host array, as returned by NeuralNetwork.state_dict()."""
        target = self.best_ckpt if best else self.last_ckpt
        np.savez(target, **state)
        return str(target)

    # ---------- plots ----------
    def _plot(self, history, curves, ylabel, filename, tag, subdir):
        series = {label: history[key] for key, label in curves.items() if history.get(key)}
        if not series:
            return None

        folder = self.dir / subdir
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / filename

        fig, ax = plt.subplots()
        for label, values in series.items():
            ax.plot(range(1, len(values) + 1), values, label=label)
        ax.set_xlabel("Epoch")
        ax.set_ylabel(ylabel)
        ax.set_title(f"{ylabel} vs Epochs ({tag})")
        ax.legend()
        fig.tight_layout()
        fig.savefig(path, dpi=160)
        plt.close(fig)
        return path

    def plot_loss(self, history, tag="run", subdir="plots"):
        return self._plot(history, LOSS_CURVES, "Cross-Entropy Loss", f"loss_curve_{tag}.png", tag, subdir)

    def plot_accuracy(self, history, tag="run", subdir="plots"):
        return self._plot(history, ACCURACY_CURVES, "Accuracy", f"accuracy_{tag}.png", tag, subdir)

    def plot_all(self, history, tag="run", subdir="plots"):
        return [
            path
            for path in (
                self.plot_loss(history, tag=tag, subdir=subdir),
                self.plot_accuracy(history, tag=tag, subdir=subdir),
            )
            if path is not None
        ]
