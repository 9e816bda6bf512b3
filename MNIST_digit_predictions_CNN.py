# MNIST_digit_predictions_CNN.py
import argparse
import logging

import numpy as np
from tensorflow import keras

from convnet import (
    ArrayDataSet,
    ConvolutionalLayer,
    FullyConnectedLayer,
    NetworkTrainer,
    NeuralNetwork,
    ReLU,
    SoftMax,
    create_backend,
)


def build_network(backend):
    net = NeuralNetwork(backend=backend)
    net.add_layer(ConvolutionalLayer(filter_size=5, n_filters=8, stride=1, padding=0))   # 24x24x8
    net.add_layer(ReLU())
    net.add_layer(ConvolutionalLayer(filter_size=3, n_filters=16, stride=3, padding=0))  # 8x8x16
    net.add_layer(ReLU())
    net.add_layer(FullyConnectedLayer(100))
    net.add_layer(ReLU())
    net.add_layer(FullyConnectedLayer(10))
    net.add_layer(SoftMax())
    return net


# ------------------ Main ------------------
if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Train a small CNN on MNIST")
    parser.add_argument("--gpu", action="store_true", help="use the CuPy accelerator backend")
    parser.add_argument("--epochs", type=int, default=5)
    parser.add_argument("--n-train", type=int, default=10000)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    # Load MNIST, normalize to [0,1], channel-first flattening (1, 28, 28)
    (x_train, y_train), (x_test, y_test) = keras.datasets.mnist.load_data()
    x_train = x_train.astype(np.float32)[: args.n_train] / 255.0
    y_train = y_train[: args.n_train]
    x_test = x_test.astype(np.float32) / 255.0

    # split off validation set
    val_frac = 0.1
    n_val = int(val_frac * x_train.shape[0])
    val_set = ArrayDataSet(x_train[:n_val], y_train[:n_val], n_classes=10)
    train_set = ArrayDataSet(x_train[n_val:], y_train[n_val:], n_classes=10)
    test_set = ArrayDataSet(x_test, y_test, n_classes=10)

    # Hyperparameters
    lr = 0.01
    momentum = 0.9
    mini_batch_size = 32
    tag = f"MNIST_CNN_epochs_{args.epochs}_lr_{lr}_bs_{mini_batch_size}"

    backend = create_backend(use_gpu=args.gpu)
    net = build_network(backend)
    net.setup(28, 28, 1, 10, mini_batch_size=mini_batch_size, rng=42)
    print(net)

    trainer = NetworkTrainer(
        net,
        epochs=args.epochs,
        learning_rate=lr,
        momentum=momentum,
        seed=42,
        scheduler=("step", {"step_size": 2, "gamma": 0.5}),
        early_stopping={"monitor": "val_loss", "mode": "min", "patience": 3},
        runs_root="runs",
        tag=tag,
    )
    history = trainer.fit(train_set, validation_set=val_set)

    test_loss, test_acc = trainer.evaluate(test_set)
    y_pred = trainer.predict(test_set)

    # Confusion matrix
    cm = np.zeros((10, 10), dtype=np.int64)
    for t, p in zip(y_test, y_pred):
        cm[int(t), int(p)] += 1

    print("\n===== CNN Results =====")
    print(f"Test loss: {test_loss:.4f}")
    print(f"Test acc:  {test_acc:.4f}")
    print("Confusion matrix:\n", cm)
