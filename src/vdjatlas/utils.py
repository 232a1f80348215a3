"""Utilities for vdjatlas."""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Union

import anndata as ad
import pandas as pd
import yaml

Table = Union[pd.DataFrame, ad.AnnData]


def load_config(config_path: str) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


@contextmanager
def timer(description: str) -> Generator[None, None, None]:
    """Context manager for timing operations."""
    start = time.time()
    logging.info(f"Starting: {description}")
    try:
        yield
    finally:
        elapsed = time.time() - start
        logging.info(f"Finished: {description} ({elapsed:.2f}s)")


def setup_logging(level: str = "INFO") -> None:
    """Set up logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def ensure_dir(path: Path) -> None:
    """Ensure directory exists."""
    path.mkdir(parents=True, exist_ok=True)


def obs_frame(table: Table) -> pd.DataFrame:
    """Return a copy of the per-cell annotation table of ``table``."""
    if isinstance(table, ad.AnnData):
        return table.obs.copy()
    if isinstance(table, pd.DataFrame):
        return table.copy()
    raise TypeError(f"Expected a DataFrame or AnnData, got {type(table).__name__}")


def with_obs(table: Table, obs: pd.DataFrame) -> Table:
    """Return ``obs`` in the container type of ``table``.

    For AnnData the result is a new object subset to ``obs.index``; the
    original container is never modified.
    """
    if isinstance(table, ad.AnnData):
        if len(obs.index) != table.n_obs or not obs.index.equals(table.obs_names):
            adata = table[obs.index].copy()
        else:
            adata = table.copy()
        adata.obs = obs
        return adata
    return obs


def writable_columns(obs: pd.DataFrame, columns, int_columns=()) -> None:
    """Cast ``columns`` in place so arbitrary values can be assigned.

    String columns come back from h5ad as categoricals, which reject values
    outside their categories.
    """
    for col in columns:
        if col not in obs.columns:
            continue
        obs[col] = obs[col].astype("Int64" if col in int_columns else object)


def read_master(path: Union[str, Path]) -> Table:
    """Read the master annotation table (``.h5ad`` or delimited text)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    if path.suffix == ".h5ad":
        return ad.read_h5ad(path)
    sep = "\t" if path.suffix in {".tsv", ".txt"} else ","
    # "None" is a chain token, not a missing value
    return pd.read_csv(path, sep=sep, index_col=0, keep_default_na=False, na_values=[""])


def write_master(table: Table, path: Union[str, Path]) -> Path:
    path = Path(path)
    ensure_dir(path.parent)
    if isinstance(table, ad.AnnData):
        table.write_h5ad(path)
    else:
        sep = "\t" if path.suffix in {".tsv", ".txt"} else ","
        table.to_csv(path, sep=sep)
    logging.info("Wrote annotation table to %s", path)
    return path
