"""Training loop, schedulers, early stopping, run logging and datasets."""

import csv
import json
from types import SimpleNamespace

import numpy as np
import pytest

from convnet import (
    ArrayDataSet,
    EarlyStopping,
    FullyConnectedLayer,
    NetworkTrainer,
    NeuralNetwork,
    ReLU,
    SoftMax,
    UsageError,
)
from convnet.data.DataSet import one_hot
from convnet.helpers.logger import RunLogger
from convnet.helpers.lr_scheduler import ExponentialLR, ReduceLROnPlateau, StepLR, get_scheduler


@pytest.fixture
def blobs():
    rng = np.random.default_rng(0)
    centres = np.array([[-1.0, -1.0], [1.0, 1.0]])
    labels = np.tile([0, 1], 40)
    x = centres[labels] + 0.3 * rng.normal(size=(80, 2))
    return ArrayDataSet(x, labels)


def small_network(backend, batch=8, rng=1):
    net = NeuralNetwork(backend=backend)
    net.add_layer(FullyConnectedLayer(8))
    net.add_layer(ReLU())
    net.add_layer(FullyConnectedLayer(2))
    net.add_layer(SoftMax())
    net.setup(2, 1, 1, 2, mini_batch_size=batch, rng=rng)
    return net


class FakeNetwork:
    def __init__(self):
        self.value = 0
        self.loaded = None

    def state_dict(self):
        return {"w": np.array([self.value])}

    def load_state_dict(self, state):
        self.loaded = state


class TestSchedulers:
    def test_step(self):
        trainer = SimpleNamespace(learning_rate=0.1)
        scheduler = StepLR(trainer, step_size=2, gamma=0.5)
        assert scheduler.step(1) == pytest.approx(0.1)
        scheduler.step(2)
        assert trainer.learning_rate == pytest.approx(0.05)
        scheduler.step(4)
        assert trainer.learning_rate == pytest.approx(0.025)

    def test_exponential(self):
        trainer = SimpleNamespace(learning_rate=0.2)
        scheduler = ExponentialLR(trainer, gamma=0.5)
        scheduler.step(1)
        scheduler.step(2)
        assert trainer.learning_rate == pytest.approx(0.05)

    def test_plateau(self):
        trainer = SimpleNamespace(learning_rate=0.1)
        scheduler = ReduceLROnPlateau(trainer, factor=0.5, patience=2, min_lr=0.03)
        for epoch, loss in enumerate([1.0, 0.9, 0.9, 0.9], start=1):
            scheduler.step(epoch, {"val_loss": loss})
        assert trainer.learning_rate == pytest.approx(0.05)
        scheduler.step(5, {"val_loss": 0.95})
        scheduler.step(6, {"val_loss": 0.95})
        assert trainer.learning_rate == pytest.approx(0.03)

    def test_plateau_ignores_missing_metric(self):
        trainer = SimpleNamespace(learning_rate=0.1)
        scheduler = ReduceLROnPlateau(trainer, patience=1)
        for epoch in range(1, 5):
            scheduler.step(epoch, {"loss": 1.0})
        assert trainer.learning_rate == 0.1

    def test_by_name(self):
        trainer = SimpleNamespace(learning_rate=0.1)
        assert isinstance(get_scheduler("step", trainer, step_size=3), StepLR)
        with pytest.raises(ValueError, match="Unknown scheduler"):
            get_scheduler("cosine", trainer)


class TestEarlyStopping:
    def test_stops_after_patience_and_restores(self):
        net = FakeNetwork()
        stopper = EarlyStopping(patience=2, monitor="val_loss")
        for epoch, loss in enumerate([1.0, 0.5, 0.6], start=1):
            net.value = epoch
            assert not stopper.update(epoch, {"val_loss": loss}, net)
        net.value = 4
        assert stopper.update(4, {"val_loss": 0.7}, net)
        assert stopper.best == 0.5
        assert stopper.best_epoch == 2
        assert net.loaded["w"][0] == 2

    def test_max_mode_with_min_delta(self):
        net = FakeNetwork()
        stopper = EarlyStopping(patience=1, monitor="acc", mode="max", min_delta=0.05,
                                restore_best_weights=False)
        assert not stopper.update(1, {"acc": 0.80}, net)
        assert stopper.update(2, {"acc": 0.83}, net)
        assert net.loaded is None

    def test_missing_metric(self):
        stopper = EarlyStopping(monitor="val_loss")
        with pytest.raises(UsageError, match="val_loss"):
            stopper.update(1, {"loss": 1.0}, FakeNetwork())

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            EarlyStopping(mode="sideways")


class TestRunLogger:
    def test_files(self, tmp_path):
        run = RunLogger(root=tmp_path, tag="unit")
        run.log_epoch(1, loss=0.9, acc=0.5)
        run.log_epoch(2, loss=0.7, acc=0.75)
        run.save_json()
        run.save_checkpoint({"0.weights": np.ones((2, 2))}, best=True)

        with open(run.csv_path, newline="") as f:
            rows = list(csv.DictReader(f))
        assert [row["epoch"] for row in rows] == ["1", "2"]
        assert float(rows[1]["acc"]) == 0.75
        assert json.loads(run.json_path.read_text())[0]["loss"] == 0.9
        with np.load(run.best_ckpt) as data:
            np.testing.assert_array_equal(data["0.weights"], np.ones((2, 2)))
        assert run.dir.name.startswith("unit_")

    def test_plots(self, tmp_path):
        run = RunLogger(root=tmp_path)
        history = {"loss": [1.0, 0.5], "val_loss": [1.1, 0.6], "acc": [0.5, 0.8]}
        assert run.plot_loss(history, tag="t").exists()
        assert run.plot_accuracy(history, tag="t").exists()
        assert run.plot_loss({}, tag="empty") is None


class TestDataSet:
    def test_one_hot(self):
        np.testing.assert_array_equal(one_hot([2, 0], 3), [[0, 0, 1], [1, 0, 0]])

    def test_flattening_and_classes(self):
        data = ArrayDataSet(np.zeros((3, 2, 4, 4)), [0, 2, 1])
        assert len(data) == 3
        assert data.n_units == 32
        assert data.n_classes == 3
        assert data.get_label(1) == 2
        np.testing.assert_array_equal(data.get_labels([2, 0]), [1, 0])

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            ArrayDataSet(np.zeros((3, 2)), [0, 1])

    @pytest.mark.parametrize("labels", [[0, -1], [0, 3]])
    def test_labels_out_of_range(self, labels):
        with pytest.raises(UsageError):
            one_hot(labels, 3)
        with pytest.raises(ValueError):
            ArrayDataSet(np.zeros((2, 2)), labels, n_classes=3)

    def test_from_npz(self, tmp_path):
        path = tmp_path / "data.npz"
        np.savez(path, x=np.arange(6).reshape(3, 2), y=[1, 0, 1])
        data = ArrayDataSet.from_npz(path, n_classes=2)
        assert len(data) == 3
        np.testing.assert_array_equal(data.get_sample(2), [4.0, 5.0])


class TestNetworkTrainer:
    def test_fit_learns_separable_data(self, host_backend, blobs):
        trainer = NetworkTrainer(small_network(host_backend), epochs=15, learning_rate=0.05,
                                 momentum=0.9, seed=0, verbose=0)
        history = trainer.fit(blobs, validation_set=blobs)
        assert len(history["loss"]) == 15
        assert len(history["val_acc"]) == 15
        assert history["loss"][-1] < history["loss"][0]
        assert history["acc"][-1] > 0.9

    def test_predict_pads_last_batch(self, host_backend, blobs):
        trainer = NetworkTrainer(small_network(host_backend))
        subset = ArrayDataSet(blobs.data[:13], blobs.labels[:13], n_classes=2)
        probs = trainer.predict_proba(subset)
        assert probs.shape == (13, 2)
        np.testing.assert_allclose(probs.sum(axis=1), 1.0, rtol=1e-5)
        assert trainer.predict(subset).shape == (13,)

    def test_evaluate_empty_dataset(self, host_backend):
        trainer = NetworkTrainer(small_network(host_backend))
        empty = ArrayDataSet(np.zeros((0, 2)), [], n_classes=2)
        with pytest.raises(UsageError):
            trainer.evaluate(empty)
        with pytest.raises(UsageError, match="empty"):
            trainer.predict(empty)

    def test_best_checkpoint_is_the_stopping_snapshot(self, host_backend, blobs, tmp_path):
        # nothing improves on epoch 1 by 1e9, so epoch 1 stays best and training stops at 2
        stopper = EarlyStopping(patience=1, monitor="loss", mode="max", min_delta=1e9,
                                restore_best_weights=False)
        trainer = NetworkTrainer(small_network(host_backend), epochs=5, early_stopping=stopper,
                                 runs_root=tmp_path, verbose=0)
        trainer.fit(blobs)
        assert stopper.stopped and stopper.best_epoch == 1

        (run_dir,) = tmp_path.iterdir()
        with np.load(run_dir / "checkpoint_best.npz") as best, np.load(run_dir / "checkpoint_last.npz") as last:
            for key, value in stopper._best_state.items():
                np.testing.assert_array_equal(best[key], value)
            assert any(not np.array_equal(best[key], last[key]) for key in best.files)
            # weights were not restored, so the network holds the last epoch
            for key, value in trainer.network.state_dict().items():
                np.testing.assert_array_equal(last[key], value)

    def test_restored_weights_match_best_checkpoint(self, host_backend, blobs, tmp_path):
        stopper = EarlyStopping(patience=1, monitor="loss", mode="max", min_delta=1e9)
        trainer = NetworkTrainer(small_network(host_backend), epochs=5, early_stopping=stopper,
                                 runs_root=tmp_path, verbose=0)
        trainer.fit(blobs)

        (run_dir,) = tmp_path.iterdir()
        with np.load(run_dir / "checkpoint_best.npz") as best:
            for key, value in trainer.network.state_dict().items():
                np.testing.assert_array_equal(best[key], value)

    def test_dataset_smaller_than_batch(self, host_backend, blobs):
        trainer = NetworkTrainer(small_network(host_backend, batch=8))
        tiny = ArrayDataSet(blobs.data[:5], blobs.labels[:5], n_classes=2)
        with pytest.raises(UsageError, match="mini-batch"):
            trainer.train_epoch(tiny, np.random.default_rng(0))

    def test_scheduler_and_early_stopping_from_config(self, host_backend, blobs):
        trainer = NetworkTrainer(
            small_network(host_backend),
            epochs=10,
            learning_rate=0.1,
            scheduler=("step", {"step_size": 1, "gamma": 0.5, "verbose": False}),
            # nothing ever improves by 1e9, so training stops after `patience` epochs
            early_stopping={"monitor": "loss", "patience": 2, "min_delta": 1e9},
            verbose=0,
        )
        assert isinstance(trainer.scheduler, StepLR)
        history = trainer.fit(blobs)
        assert len(history["loss"]) == 3
        assert trainer.stopper.stopped
        assert trainer.learning_rate == pytest.approx(0.1 * 0.5 ** 3)

    def test_run_files(self, host_backend, blobs, tmp_path):
        trainer = NetworkTrainer(small_network(host_backend), epochs=2, runs_root=tmp_path,
                                 tag="toy", verbose=0)
        trainer.fit(blobs, validation_set=blobs)
        (run_dir,) = tmp_path.iterdir()
        names = {p.name for p in run_dir.iterdir()}
        assert {"history.csv", "history.json", "checkpoint_last.npz", "checkpoint_best.npz", "plots"} <= names

        restored = small_network(host_backend, rng=5)
        restored.load(run_dir / "checkpoint_last.npz")
        for key, value in trainer.network.state_dict().items():
            np.testing.assert_array_equal(restored.state_dict()[key], value)
