from .DataSet import ArrayDataSet, one_hot

__all__ = ["ArrayDataSet", "one_hot"]
