from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping

import pandas as pd

from features_pipeline.exceptions import DataError
from features_pipeline.logging_config import get_logger

logger = get_logger(__name__)

SUPPORTED_FORMATS = ("csv", "parquet")


def _infer_format(path: Path) -> str:
    """Infer file format from suffix, defaulting to 'csv'."""
    suffix = path.suffix.lower()
    if suffix in {".parquet", ".pq"}:
        return "parquet"
    return "csv"


def _ensure_exists(path: Path) -> None:
    """Raise DataError if path does not exist."""
    if not path.exists():
        raise DataError(
            f"Data file not found: {path}",
            code="data_file_not_found",
            context={"path": str(path)},
            location=f"{__name__}._ensure_exists",
        )


def _validate_columns(
    df: pd.DataFrame,
    required_columns: Iterable[str] | None = None,
    *,
    path: Path | None = None,
) -> None:
    """Validate that required columns are present in the dataframe.

    Raises
    ------
    DataError
        If any required columns are missing.
    """
    if not required_columns:
        return

    missing = set(required_columns).difference(df.columns)
    if missing:
        raise DataError(
            "Missing required columns in loaded dataset",
            code="data_missing_columns",
            context={
                "path": str(path) if path is not None else None,
                "missing_columns": sorted(missing),
                "available_columns": list(df.columns),
            },
            location=f"{__name__}._validate_columns",
        )


def load_dataframe(
    path: str | Path,
    *,
    format: str | None = None,
    separator: str = ",",
    required_columns: Iterable[str] | None = None,
    read_kwargs: Mapping[str, Any] | None = None,
) -> pd.DataFrame:
    """Load a CSV or Parquet dataset into a pandas DataFrame.

    Parameters
    ----------
    path:
        Path to the file to load.
    format:
        Optional format override: 'csv' or 'parquet'. If omitted, inferred
        from the file suffix.
    separator:
        CSV field separator.
    required_columns:
        Optional iterable of column names that must be present in the dataset.
    read_kwargs:
        Optional additional keyword arguments forwarded to the pandas reader.

    Raises
    ------
    DataError
        If the file does not exist, cannot be read, or fails column validation.
    """
    path = Path(path)
    _ensure_exists(path)

    fmt = (format or _infer_format(path)).lower()
    kwargs: dict[str, Any] = dict(read_kwargs or {})

    logger.info(
        "Loading dataframe",
        extra={"path": str(path), "format": fmt, "read_kwargs": kwargs},
    )

    try:
        if fmt == "csv":
            kwargs.setdefault("sep", separator)
            df = pd.read_csv(path, **kwargs)
        elif fmt == "parquet":
            df = pd.read_parquet(path, **kwargs)
        else:
            raise DataError(
                f"Unsupported data format: {fmt}",
                code="data_unsupported_format",
                context={"path": str(path), "format": fmt, "supported": list(SUPPORTED_FORMATS)},
                location=f"{__name__}.load_dataframe",
            )
    except DataError:
        raise
    except Exception as exc:
        raise DataError(
            f"Failed to load dataframe from {path}",
            code="data_load_error",
            cause=exc,
            context={"path": str(path), "format": fmt},
            location=f"{__name__}.load_dataframe",
        ) from exc

    _validate_columns(df, required_columns, path=path)

    logger.info(
        "Loaded dataframe",
        extra={
            "path": str(path),
            "format": fmt,
            "n_rows": int(df.shape[0]),
            "n_cols": int(df.shape[1]),
        },
    )

    return df


def read_header(path: str | Path, *, separator: str = ",") -> list[str]:
    """Return the column names of a dataset without loading its rows."""
    path = Path(path)
    _ensure_exists(path)

    try:
        if _infer_format(path) == "parquet":
            return [str(c) for c in pd.read_parquet(path).columns]
        return [str(c) for c in pd.read_csv(path, sep=separator, nrows=0).columns]
    except Exception as exc:
        raise DataError(
            f"Failed to read header of {path}",
            code="data_load_error",
            cause=exc,
            context={"path": str(path)},
            location=f"{__name__}.read_header",
        ) from exc


def write_dataframe(
    df: pd.DataFrame,
    path: str | Path,
    *,
    separator: str = ";",
) -> Path:
    """Write `df` as CSV to a file that must not exist yet.

    Raises
    ------
    DataError
        If the file already exists or cannot be written.
    """
    path = Path(path)

    try:
        # Mode "x" fails if the file exists, so earlier outputs are never overwritten.
        with path.open("x", encoding="utf-8", newline="") as handle:
            df.to_csv(handle, sep=separator, index=False)
    except FileExistsError as exc:
        raise DataError(
            f"Refusing to overwrite existing file: {path}",
            code="data_output_exists",
            cause=exc,
            context={"path": str(path)},
            location=f"{__name__}.write_dataframe",
        ) from exc
    except OSError as exc:
        raise DataError(
            f"Failed to write dataframe to {path}",
            code="data_write_error",
            cause=exc,
            context={"path": str(path)},
            location=f"{__name__}.write_dataframe",
        ) from exc

    logger.info(
        "Wrote dataframe",
        extra={"path": str(path), "n_rows": int(df.shape[0]), "n_cols": int(df.shape[1])},
    )
    return path
