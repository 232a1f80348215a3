"""Per-cell chain records and their delimited-string representation.

Every chain attribute of a cell is stored in the annotation table as a single
string with one token per chain, e.g. ``"TRA;TRB"`` in the ``chains`` column
and ``"TRAV1;TRBV5"`` in ``v_gene``. Cells without chains carry a missing
value in every chain column. The helpers here are the only place where those
strings are split or joined.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .exceptions import MalformedRecordError

DEFAULT_DELIMITER = ";"
MISSING_TOKEN = "None"

# ChainRecord field -> column suffix in the annotation table
CHAIN_COLUMNS: Dict[str, str] = {
    "chains": "chains",
    "cdr3": "cdr3",
    "cdr3_nt": "cdr3_nt",
    "v_gene": "v_gene",
    "d_gene": "d_gene",
    "j_gene": "j_gene",
    "c_gene": "c_gene",
    "umis": "umis",
    "reads": "reads",
    "productive": "productive",
    "clonotype_id": "chain_clonotype_id",
}

_INT_FIELDS = {"umis", "reads"}
_BOOL_FIELDS = {"productive"}
_TRUE_TOKENS = {"true", "t", "yes", "y", "1"}
_FALSE_TOKENS = {"false", "f", "no", "n", "0"}


@dataclass(frozen=True)
class ChainRecord:
    """One receptor chain detected for a cell."""

    chains: Optional[str] = None
    cdr3: Optional[str] = None
    cdr3_nt: Optional[str] = None
    v_gene: Optional[str] = None
    d_gene: Optional[str] = None
    j_gene: Optional[str] = None
    c_gene: Optional[str] = None
    umis: Optional[int] = None
    reads: Optional[int] = None
    productive: Optional[bool] = None
    clonotype_id: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


RECORD_FIELDS = tuple(f.name for f in fields(ChainRecord))


def is_missing(value: object) -> bool:
    """Return True for None/NA/NaN scalars."""
    if value is None:
        return True
    try:
        return bool(pd.api.types.is_scalar(value) and pd.isna(value))
    except (TypeError, ValueError):
        return False


def column_name(field: str, prefix: str = "") -> str:
    return f"{prefix}{CHAIN_COLUMNS.get(field, field)}"


def chain_columns(columns: Iterable[str], prefix: str = "", extra: Optional[Sequence[str]] = None) -> List[str]:
    """Return the chain-derived columns present among ``columns``.

    Canonical columns come first, in ``CHAIN_COLUMNS`` order, followed by
    ``extra`` (e.g. per-chain columns created with ``mutate_vdj``).
    """
    available = set(columns)
    found = [column_name(field, prefix) for field in CHAIN_COLUMNS if column_name(field, prefix) in available]
    for col in extra or ():
        if col in available and col not in found:
            found.append(col)
    return found


def split_tokens(value: object, delimiter: str = DEFAULT_DELIMITER) -> List[str]:
    """Split one serialized value; missing values split to an empty list."""
    if is_missing(value):
        return []
    return str(value).split(delimiter)


def split_column(series: pd.Series, delimiter: str = DEFAULT_DELIMITER) -> pd.Series:
    """Split a serialized column into lists, keeping the index."""
    return series.map(lambda value: split_tokens(value, delimiter))


def count_tokens(series: pd.Series, delimiter: str = DEFAULT_DELIMITER) -> pd.Series:
    return series.map(lambda value: len(split_tokens(value, delimiter))).astype(int)


def _decode(field: str, token: str):
    if token == MISSING_TOKEN or token == "":
        return None
    if field in _INT_FIELDS:
        try:
            value = float(token)
        except ValueError:
            raise MalformedRecordError(f"Non-numeric token {token!r} in '{field}'") from None
        if not value.is_integer():
            raise MalformedRecordError(f"Non-integer token {token!r} in '{field}'")
        return int(value)
    if field in _BOOL_FIELDS:
        lowered = token.strip().lower()
        if lowered in _TRUE_TOKENS:
            return True
        if lowered in _FALSE_TOKENS:
            return False
        return None
    return token


def encode_token(value: object, delimiter: str = DEFAULT_DELIMITER) -> str:
    """Encode a single chain value as a token."""
    if is_missing(value):
        return MISSING_TOKEN
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    token = str(value)
    if delimiter in token:
        raise MalformedRecordError(f"Token {token!r} contains the delimiter {delimiter!r}")
    return token


def _row_barcode(cell_row) -> Optional[str]:
    name = getattr(cell_row, "name", None)
    return None if name is None else str(name)


def parse(
    cell_row: Mapping[str, object],
    delimiter: str = DEFAULT_DELIMITER,
    *,
    prefix: str = "",
) -> List[ChainRecord]:
    """Unpack a cell's serialized chain columns into ``ChainRecord`` objects.

    Raises
    ------
    MalformedRecordError
        If the chain columns of the row disagree on the number of tokens.
    """
    if not delimiter:
        raise ValueError("delimiter must be a non-empty string")

    tokens: Dict[str, List[str]] = {
        field: split_tokens(cell_row[column_name(field, prefix)], delimiter)
        for field in present_fields(cell_row, prefix)
    }

    counts = {column_name(field, prefix): len(values) for field, values in tokens.items()}
    if len(set(counts.values())) > 1:
        raise MalformedRecordError(
            f"Chain columns disagree on token count: {counts}",
            barcode=_row_barcode(cell_row),
        )
    n_chains = next(iter(counts.values()), 0)

    records = []
    for idx in range(n_chains):
        values = {field: _decode(field, tokens[field][idx]) for field in tokens}
        records.append(ChainRecord(**values))
    return records


def serialize(
    records: Sequence[ChainRecord],
    delimiter: str = DEFAULT_DELIMITER,
    *,
    prefix: str = "",
    columns: Optional[Iterable[str]] = None,
) -> Dict[str, object]:
    """Join per-attribute values of ``records`` into column strings.

    ``columns`` restricts the output to the given ChainRecord fields; by
    default every field is written. An empty sequence maps every column to
    ``pd.NA``.
    """
    if not delimiter:
        raise ValueError("delimiter must be a non-empty string")
    selected = list(columns) if columns is not None else list(RECORD_FIELDS)

    result: Dict[str, object] = {}
    for field in selected:
        col = column_name(field, prefix)
        if not records:
            result[col] = pd.NA
            continue
        result[col] = delimiter.join(encode_token(getattr(rec, field), delimiter) for rec in records)
    return result


def serialize_values(values: Sequence[object], delimiter: str = DEFAULT_DELIMITER) -> object:
    """Serialize an arbitrary per-chain value list into one cell value."""
    if len(values) == 0:
        return pd.NA
    return delimiter.join(encode_token(value, delimiter) for value in values)


def present_fields(cell_row: Mapping[str, object], prefix: str = "") -> List[str]:
    """ChainRecord fields that have a column in ``cell_row``."""
    return [field for field in RECORD_FIELDS if column_name(field, prefix) in cell_row]
