"""Pandera schemas for chain-call tables and the master annotation table."""

from __future__ import annotations

import logging
from typing import Optional

import pandas as pd
import pandera as pa

from .exceptions import DuplicateBarcodeError

logger = logging.getLogger(__name__)


# Harmonised chain calls: one row per chain, see receptor.ingest.normalise_table
call_table_schema = pa.DataFrameSchema(
    {
        "sample": pa.Column(str, required=True, nullable=False),
        "barcode": pa.Column(
            str,
            checks=pa.Check(lambda s: s.str.len() > 0, error="empty barcode"),
            required=True,
            nullable=False,
        ),
        "chains": pa.Column(str, required=True, nullable=True),
        "cdr3": pa.Column(str, required=False, nullable=True),
        "cdr3_nt": pa.Column(str, required=False, nullable=True),
        "v_gene": pa.Column(str, required=False, nullable=True),
        "d_gene": pa.Column(str, required=False, nullable=True),
        "j_gene": pa.Column(str, required=False, nullable=True),
        "c_gene": pa.Column(str, required=False, nullable=True),
        "umis": pa.Column(float, checks=pa.Check.ge(0), required=False, nullable=True),
        "reads": pa.Column(float, checks=pa.Check.ge(0), required=False, nullable=True),
        "productive": pa.Column("boolean", required=False, nullable=True),
        "clonotype_id": pa.Column(str, required=False, nullable=True),
    },
    strict=False,
    coerce=False,
)


def validate_call_table(
    df: pd.DataFrame,
    *,
    sample: Optional[str] = None,
    raise_on_error: bool = True,
) -> tuple[bool, Optional[str]]:
    """Validate a harmonised chain-call table.

    Parameters
    ----------
    df : pd.DataFrame
        Output of ``normalise_table``.
    sample : Optional[str]
        Sample key for logging context.
    raise_on_error : bool
        If True, re-raise the schema error; otherwise return ``(False, message)``.

    Returns
    -------
    tuple[bool, Optional[str]]
        ``(is_valid, error_message)``; the message is None when valid.
    """
    context = f" for sample {sample}" if sample else ""
    try:
        call_table_schema.validate(df, lazy=True)
        logger.debug("Chain-call schema validation passed%s", context)
        return True, None
    except pa.errors.SchemaErrors as exc:
        message = f"Chain-call table validation failed{context}: {exc}"
        logger.error(message)
        if raise_on_error:
            raise
        return False, message


def validate_master(obs: pd.DataFrame) -> None:
    """The master table must be indexed by unique cell barcodes."""
    if obs.index.has_duplicates:
        dupes = obs.index[obs.index.duplicated()].unique().tolist()
        raise DuplicateBarcodeError(
            "Master annotation table has duplicated cell barcodes: "
            + ", ".join(map(str, dupes[:10]))
            + ("..." if len(dupes) > 10 else ""),
            barcodes=dupes,
        )
