"""Merge per-sample chain-call tables into the master annotation table."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from ..chains import (
    CHAIN_COLUMNS,
    DEFAULT_DELIMITER,
    MISSING_TOKEN,
    RECORD_FIELDS,
    column_name,
    encode_token,
)
from ..exceptions import DuplicateBarcodeError, MissingColumnError, SampleNotFoundError
from ..schemas import validate_call_table, validate_master
from ..utils import Table, obs_frame, with_obs, writable_columns

logger = logging.getLogger(__name__)

# canonical column -> accepted source columns, first match wins
COLUMN_ALIASES: Dict[str, List[str]] = {
    "barcode": ["barcode", "cell_id", "cell_barcode"],
    "chains": ["chains", "chain", "locus", "chain_type"],
    "cdr3": ["cdr3", "cdr3_aa", "junction_aa"],
    "cdr3_nt": ["cdr3_nt", "junction", "cdr3_nt_seq"],
    "v_gene": ["v_gene", "v_call"],
    "d_gene": ["d_gene", "d_call"],
    "j_gene": ["j_gene", "j_call"],
    "c_gene": ["c_gene", "c_call"],
    "umis": ["umis", "umi_count", "duplicate_count"],
    "reads": ["reads", "read_count", "consensus_count"],
    "productive": ["productive"],
    "clonotype_id": ["raw_clonotype_id", "clonotype_id", "clone_id"],
}

_STRING_FIELDS = ["chains", "cdr3", "cdr3_nt", "v_gene", "d_gene", "j_gene", "c_gene", "clonotype_id"]
_NULL_STRINGS = {"", MISSING_TOKEN, "none", "nan", "NaN", "NA"}

SUPPORTED_FORMATS = {"10x_vdj", "airr"}

AIRR_RENAMES = {
    "cdr3": "cdr3_nt",
    "clone_id": "clonotype_id",
}


@dataclass
class MergeSummary:
    """Bookkeeping returned alongside a merged table."""

    n_cells_master: int
    columns: List[str]
    n_cells_merged: Dict[str, int] = field(default_factory=dict)
    n_cells_dropped: Dict[str, int] = field(default_factory=dict)
    n_chains_filtered: Dict[str, int] = field(default_factory=dict)
    n_cells_kept_existing: Dict[str, int] = field(default_factory=dict)

    @property
    def total_dropped(self) -> int:
        return int(sum(self.n_cells_dropped.values()))


def normalise_productive(value: object) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    text = str(value).strip().lower()
    if text in {"true", "t", "yes", "y", "productive", "1"}:
        return True
    if text in {"false", "f", "no", "n", "unproductive", "0", "non-productive"}:
        return False
    return None


def _column(df: pd.DataFrame, names: Iterable[str]) -> Optional[pd.Series]:
    for name in names:
        if name in df.columns:
            return df[name]
    return None


def _clean_strings(series: pd.Series) -> pd.Series:
    values = series.astype(object).where(series.notna(), None)
    values = values.map(lambda v: None if v is None or str(v).strip() in _NULL_STRINGS else str(v).strip())
    return values.astype(object)


def resolve_barcode(raw: object, prefix: str = "", strip_suffixes: Iterable[str] = ()) -> str:
    barcode = str(raw).strip()
    for suffix in strip_suffixes:
        if suffix and barcode.endswith(suffix):
            barcode = barcode[: -len(suffix)]
    return f"{prefix}{barcode}"


def normalise_table(
    sample: str,
    df: pd.DataFrame,
    *,
    barcode_prefix: str = "",
    strip_suffixes: Iterable[str] = (),
    aliases: Optional[Mapping[str, Iterable[str]]] = None,
) -> pd.DataFrame:
    """Return harmonised chain calls with canonical columns.

    One row per chain, in input order, with the resolved cell barcode in
    ``barcode`` and the sample key in ``sample``. Within a sample, distinct
    raw barcodes must resolve to distinct cell barcodes.
    """
    lookup = {key: list(values) for key, values in COLUMN_ALIASES.items()}
    for key, values in (aliases or {}).items():
        lookup[key] = list(values) + lookup.get(key, [])

    barcode_series = _column(df, lookup["barcode"])
    if barcode_series is None:
        raise MissingColumnError("barcode", where=f"chain calls of sample '{sample}'")
    if barcode_series.isna().any():
        raise DuplicateBarcodeError(
            f"{int(barcode_series.isna().sum())} chain call(s) without a cell barcode",
            sample=sample,
        )

    raw = barcode_series.astype(str).str.strip()
    resolved = raw.map(lambda value: resolve_barcode(value, barcode_prefix, strip_suffixes))
    collisions = pd.DataFrame({"raw": raw, "resolved": resolved}).groupby("resolved")["raw"].nunique()
    collisions = collisions[collisions > 1]
    if not collisions.empty:
        raise DuplicateBarcodeError(
            "Distinct barcodes resolve to the same cell: " + ", ".join(collisions.index[:10]),
            sample=sample,
            barcodes=collisions.index.tolist(),
        )

    harmonised = pd.DataFrame({"sample": sample, "barcode": resolved.values}, index=df.index)
    for name in _STRING_FIELDS:
        series = _column(df, lookup[name])
        if series is None:
            harmonised[name] = pd.Series([None] * len(df), index=df.index, dtype=object)
        else:
            harmonised[name] = _clean_strings(series)
    harmonised["chains"] = harmonised["chains"].map(lambda v: v.upper() if v else v)

    for name in ("umis", "reads"):
        series = _column(df, lookup[name])
        if series is None:
            harmonised[name] = pd.Series([float("nan")] * len(df), index=df.index, dtype=float)
        else:
            harmonised[name] = pd.to_numeric(series, errors="coerce").astype(float)

    productive = _column(df, lookup["productive"])
    if productive is None:
        harmonised["productive"] = pd.Series([pd.NA] * len(df), index=df.index, dtype="boolean")
    else:
        harmonised["productive"] = productive.map(normalise_productive).astype("boolean")

    return harmonised.reset_index(drop=True)


def read_call_table(path: Union[str, Path], fmt: Optional[str] = None, delimiter: Optional[str] = None) -> pd.DataFrame:
    """Read a 10x ``*_contig_annotations.csv`` or an AIRR rearrangement TSV."""
    path = Path(path)
    if fmt is None:
        fmt = "10x_vdj" if path.suffix.lower() == ".csv" else "airr"
    fmt = fmt.lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported chain-call format '{fmt}'")
    sep = delimiter or ("\t" if fmt == "airr" else ",")
    logger.info("Loading chain calls %s (format=%s, sep=%r)", path, fmt, sep)
    if not path.exists():
        raise FileNotFoundError(path)
    df = pd.read_csv(path, sep=sep)
    if fmt == "airr":
        # AIRR 'cdr3' holds nucleotides; amino acids live in 'cdr3_aa'
        df = df.rename(columns={k: v for k, v in AIRR_RENAMES.items() if k in df.columns and v not in df.columns})
    return df


def _resolve_prefixes(
    sample_keys: Iterable[str],
    barcode_prefix: Union[None, bool, Mapping[str, str]],
    separator: str,
) -> Dict[str, str]:
    keys = list(sample_keys)
    if barcode_prefix is None or barcode_prefix is False:
        return {key: "" for key in keys}
    if barcode_prefix is True:
        return {key: f"{key}{separator}" for key in keys}
    return {key: str(barcode_prefix.get(key, "")) for key in keys}


def _cell_table(calls: pd.DataFrame, prefix: str, delimiter: str) -> pd.DataFrame:
    """Collapse per-chain rows into one serialized row per cell.

    Chains keep the order in which they were called.
    """
    encoded = pd.DataFrame(
        {name: calls[name].map(lambda value: encode_token(value, delimiter)) for name in RECORD_FIELDS},
    )
    encoded["barcode"] = calls["barcode"].values
    grouped = encoded.groupby("barcode", sort=False)
    cells = grouped[list(RECORD_FIELDS)].agg(delimiter.join)
    cells = cells.rename(columns={name: column_name(name, prefix) for name in RECORD_FIELDS})

    clonotypes = calls.groupby("barcode", sort=False)["clonotype_id"].first()
    cells[f"{prefix}clonotype_id"] = clonotypes.reindex(cells.index)
    cells[f"{prefix}n_chains"] = grouped.size().astype("Int64")
    return cells


def new_columns(prefix: str = "") -> List[str]:
    """Columns added to the master table by ``merge_vdj``."""
    return [column_name(name, prefix) for name in CHAIN_COLUMNS] + [
        f"{prefix}clonotype_id",
        f"{prefix}n_chains",
    ]


def merge_vdj(
    master: Table,
    samples: Mapping[str, Optional[pd.DataFrame]],
    *,
    barcode_prefix: Union[None, bool, Mapping[str, str]] = None,
    prefix: str = "",
    productive_only: bool = True,
    delimiter: str = DEFAULT_DELIMITER,
    dataset_separator: str = "_",
    strip_suffixes: Iterable[str] = (),
    allow_empty: bool = True,
    return_summary: bool = False,
):
    """Fold per-sample chain calls into the master annotation table.

    Each sample's calls are harmonised, optionally restricted to productive
    chains, grouped per cell (keeping call order) and serialized into one
    delimited string per chain attribute. The result is left-joined onto the
    master by barcode:

    * cells of the master without calls get missing values in all new columns;
    * calls for barcodes absent from the master are dropped. The master's cell
      universe is authoritative; dropped counts are logged and reported in the
      ``MergeSummary``.

    Samples write into the same columns. A cell keeps values it already has;
    later samples (and later merges) only fill rows that are still missing.

    Parameters
    ----------
    master
        DataFrame indexed by cell barcode, or AnnData.
    samples
        Mapping sample key -> chain-call table (one row per chain).
    barcode_prefix
        ``True`` prefixes barcodes with ``<sample><dataset_separator>``; a
        mapping gives an explicit prefix per sample; ``None`` disables.
    prefix
        Prefix for every added column name.
    productive_only
        Drop chains not flagged productive.

    Returns
    -------
    The merged table (same container type as ``master``), or
    ``(table, MergeSummary)`` when ``return_summary`` is set.
    """
    if not delimiter:
        raise ValueError("delimiter must be a non-empty string")

    obs = obs_frame(master)
    validate_master(obs)
    prefixes = _resolve_prefixes(samples.keys(), barcode_prefix, dataset_separator)

    columns = new_columns(prefix)
    summary = MergeSummary(n_cells_master=int(len(obs)), columns=columns)
    for col in columns:
        if col not in obs.columns:
            dtype = "Int64" if col == f"{prefix}n_chains" else object
            obs[col] = pd.Series(pd.NA, index=obs.index, dtype=dtype)
    writable_columns(obs, columns, int_columns={f"{prefix}n_chains"})

    for sample, calls in samples.items():
        if calls is None:
            raise SampleNotFoundError(sample)
        if calls.empty:
            if not allow_empty:
                raise SampleNotFoundError(sample)
            logger.warning("Sample %s has no chain calls; nothing merged", sample)
            summary.n_cells_merged[sample] = 0
            continue

        harmonised = normalise_table(
            sample,
            calls,
            barcode_prefix=prefixes[sample],
            strip_suffixes=strip_suffixes,
        )
        validate_call_table(harmonised, sample=sample)

        n_before = len(harmonised)
        if productive_only:
            harmonised = harmonised[harmonised["productive"].fillna(False).astype(bool)]
        summary.n_chains_filtered[sample] = int(n_before - len(harmonised))
        if harmonised.empty:
            logger.warning("Sample %s has no productive chains; nothing merged", sample)
            summary.n_cells_merged[sample] = 0
            continue

        cells = _cell_table(harmonised, prefix, delimiter)
        in_master = cells.index.isin(obs.index)
        dropped = int((~in_master).sum())
        summary.n_cells_dropped[sample] = dropped
        if dropped:
            logger.warning(
                "Sample %s: %d of %d cells with chain calls are absent from the master table and were dropped",
                sample,
                dropped,
                len(cells),
            )
        cells = cells[in_master]

        # cells that already carry chain data keep it
        existing = obs.loc[cells.index, column_name("chains", prefix)].notna()
        summary.n_cells_kept_existing[sample] = int(existing.sum())
        if existing.any():
            logger.info(
                "Sample %s: %d cells already have chain data and were left unchanged",
                sample,
                int(existing.sum()),
            )
        fill = cells.index[~existing.values]
        for col in columns:
            obs.loc[fill, col] = cells.loc[fill, col].values
        summary.n_cells_merged[sample] = int(len(fill))
        logger.info("Merged %d cells from sample %s", len(fill), sample)

    result = with_obs(master, obs)
    if return_summary:
        return result, summary
    return result
