import numpy as np

from ..errors import UsageError


def one_hot(y, num_classes=10):
    y = np.asarray(y).astype(int).ravel()
    # negative labels would silently index from the end
    if y.size and (y.min() < 0 or y.max() >= num_classes):
        raise UsageError(f"one_hot: labels must lie in [0, {num_classes}), got {y.min()}..{y.max()}")
    oh = np.zeros((num_classes, y.size), dtype=np.float32)
    oh[y, np.arange(y.size)] = 1.0
    return oh.T   # (N, num_classes)


class ArrayDataSet:
    """
    In-memory dataset: one flat activation vector and one integer label per
    data point. Images are flattened channel-first, i.e. (depth, height, width).
    """

    def __init__(self, data, labels, n_classes=None):
        data = np.asarray(data, dtype=np.float32)
        labels = np.asarray(labels).astype(int).ravel()
        if data.shape[0] != labels.shape[0]:
            raise ValueError(
                f"got {data.shape[0]} data points but {labels.shape[0]} labels"
            )
        self.data = data.reshape(data.shape[0], int(np.prod(data.shape[1:])))
        self.labels = labels
        self.n_classes = int(n_classes) if n_classes is not None else int(labels.max()) + 1
        if labels.size and (labels.min() < 0 or labels.max() >= self.n_classes):
            raise ValueError(
                f"labels must lie in [0, {self.n_classes}), got {labels.min()}..{labels.max()}"
            )

    @classmethod
    def from_npz(cls, path, data_key="x", labels_key="y", n_classes=None):
        with np.load(path) as f:
            return cls(f[data_key], f[labels_key], n_classes=n_classes)

    def __len__(self):
        return self.data.shape[0]

    @property
    def n_units(self):
        return self.data.shape[1]

    def get_sample(self, index):
        return self.data[index]

    def get_label(self, index):
        return int(self.labels[index])

    def get_labels(self, indices):
        return self.labels[np.asarray(indices, dtype=int)]
