"""
Data access for features_pipeline.

- `loading`: read CSV/Parquet datasets into pandas and write run outputs
  without ever overwriting an existing file.
- `splits`: row-disjoint train/test split.
"""

from __future__ import annotations

from .loading import load_dataframe, read_header, write_dataframe
from .splits import Dataset, split_dataset

__all__ = ["Dataset", "load_dataframe", "read_header", "split_dataset", "write_dataframe"]
