"""Evaluate per-cell predicates and derived values over unpacked chain lists.

Functions passed to :func:`filter_vdj`, :func:`mutate_vdj` and
:func:`summarize_vdj` receive a :class:`ChainContext`. Each chain attribute is
exposed as a tuple aligned by chain index::

    filter_vdj(adata, lambda ctx: "TRA" in ctx.chains)
    mutate_vdj(adata, "n_tra", lambda ctx: ctx.chains.count("TRA"))
    filter_vdj(adata, lambda ctx: ctx.umis[0] > 2, per_chain=True)

Cells without chains are evaluated with every tuple empty, never absent. So
``all(...)`` over a chain attribute is True and ``any(...)`` is False for such
cells; ``keep_chainless`` decides whether they survive a filter without being
evaluated at all.

Functions must not modify the table or carry state between cells.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from ..chains import (
    DEFAULT_DELIMITER,
    MISSING_TOKEN,
    RECORD_FIELDS,
    ChainRecord,
    chain_columns,
    column_name,
    is_missing,
    parse,
    serialize_values,
    split_tokens,
)
from ..exceptions import ExpressionError, MalformedRecordError, MissingColumnError
from ..utils import Table, obs_frame, with_obs, writable_columns

logger = logging.getLogger(__name__)


class ChainContext:
    """Read-only view of one cell for caller-supplied expressions.

    ``ctx.<field>`` returns the per-chain tuple for a ChainRecord field or an
    extra per-chain column; ``ctx.cell`` holds the cell's scalar columns.
    ``ctx[key]`` looks in chain attributes first, then scalar columns.
    """

    __slots__ = ("barcode", "records", "cell", "_chain_values")

    def __init__(
        self,
        barcode: str,
        records: Sequence[ChainRecord],
        cell: Dict[str, object],
        extra: Optional[Dict[str, Tuple]] = None,
    ):
        values = {name: tuple(getattr(rec, name) for rec in records) for name in RECORD_FIELDS}
        values.update(extra or {})
        object.__setattr__(self, "barcode", barcode)
        object.__setattr__(self, "records", tuple(records))
        object.__setattr__(self, "cell", dict(cell))
        object.__setattr__(self, "_chain_values", values)

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._chain_values[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name, value):
        raise AttributeError("ChainContext is read-only")

    def __getitem__(self, key: str):
        if key in self._chain_values:
            return self._chain_values[key]
        return self.cell[key]

    def __contains__(self, key: str) -> bool:
        return key in self._chain_values or key in self.cell

    def get(self, key: str, default=None):
        try:
            return self[key]
        except KeyError:
            return default

    def __len__(self) -> int:
        return len(self.records)

    @property
    def n_chains(self) -> int:
        return len(self.records)

    @property
    def is_empty(self) -> bool:
        return not self.records

    @property
    def extra_attributes(self) -> List[str]:
        """Per-chain columns beyond the ChainRecord fields."""
        return [name for name in self._chain_values if name not in RECORD_FIELDS]

    def chain(self, index: int) -> "ChainContext":
        """Context restricted to a single chain."""
        extra = {
            name: (values[index],)
            for name, values in self._chain_values.items()
            if name not in RECORD_FIELDS
        }
        return ChainContext(self.barcode, [self.records[index]], self.cell, extra)

    def __repr__(self) -> str:
        return f"ChainContext(barcode={self.barcode!r}, chains={self._chain_values['chains']!r})"


def _resolve_chain_cols(obs: pd.DataFrame, prefix: str, chain_cols: Optional[Sequence[str]]) -> List[str]:
    for col in chain_cols or ():
        if col not in obs.columns:
            raise MissingColumnError(col, where="annotation table")
    cols = chain_columns(obs.columns, prefix, extra=chain_cols)
    if not cols:
        raise MissingColumnError(column_name("chains", prefix), where="annotation table")
    return cols


def _extra_cols(cols: Sequence[str], prefix: str) -> List[str]:
    canonical = {column_name(name, prefix) for name in RECORD_FIELDS}
    return [col for col in cols if col not in canonical]


def _derived_cols(obs: pd.DataFrame, prefix: str) -> List[str]:
    return [col for col in (f"{prefix}clonotype_id", f"{prefix}n_chains") if col in obs.columns]


def iter_contexts(
    obs: pd.DataFrame,
    *,
    prefix: str = "",
    delimiter: str = DEFAULT_DELIMITER,
    chain_cols: Optional[Sequence[str]] = None,
) -> Iterator[Tuple[str, ChainContext, Dict[str, List[str]]]]:
    """Yield ``(barcode, context, raw tokens per chain column)`` for each cell."""
    cols = _resolve_chain_cols(obs, prefix, chain_cols)
    extra_cols = _extra_cols(cols, prefix)
    scalar_cols = [col for col in obs.columns if col not in cols]

    for barcode, row in obs.iterrows():
        records = parse(row[[c for c in cols if c not in extra_cols]], delimiter, prefix=prefix)
        tokens = {col: split_tokens(row[col], delimiter) for col in cols}
        extra = {}
        for col in extra_cols:
            if len(tokens[col]) != len(records):
                raise MalformedRecordError(
                    f"Column '{col}' has {len(tokens[col])} tokens for {len(records)} chains",
                    barcode=str(barcode),
                    column=col,
                )
            extra[col] = tuple(None if t == MISSING_TOKEN else t for t in tokens[col])
        cell = {col: row[col] for col in scalar_cols}
        yield str(barcode), ChainContext(str(barcode), records, cell, extra), tokens


def _evaluate(func: Callable, ctx: ChainContext):
    try:
        return func(ctx)
    except Exception as exc:
        raise ExpressionError(ctx.barcode, exc) from exc


def filter_vdj(
    master: Table,
    predicate: Callable[[ChainContext], bool],
    *,
    keep_chainless: bool = False,
    remove_cells: bool = False,
    per_chain: bool = False,
    prefix: str = "",
    delimiter: str = DEFAULT_DELIMITER,
    chain_cols: Optional[Sequence[str]] = None,
) -> Table:
    """Filter cells (or chains) by a predicate over their chain attributes.

    Cell mode: cells for which ``predicate`` is false are removed from the
    table when ``remove_cells`` is set; otherwise the row is kept and its
    chain columns (plus the derived ``clonotype_id`` and ``n_chains``) are set
    to missing. Cells without chains are kept untouched when
    ``keep_chainless`` is set; otherwise they are evaluated like any other
    cell and an exception raised for them counts as False.

    Chain mode (``per_chain=True``): ``predicate`` receives a single-chain
    context for each chain and failing chains are removed from every chain
    column. Cells left without chains become chainless, and are removed when
    ``remove_cells`` is set and ``keep_chainless`` is not.

    Returns a new table of the same container type; ``master`` is unchanged.
    """
    obs = obs_frame(master)
    cols = _resolve_chain_cols(obs, prefix, chain_cols)
    derived = _derived_cols(obs, prefix)
    writable_columns(obs, cols + derived, int_columns={f"{prefix}n_chains"})

    if per_chain:
        obs, remove = _filter_chains(obs, predicate, cols, prefix, delimiter, chain_cols, keep_chainless)
    else:
        failing: List[str] = []
        for barcode, ctx, _ in iter_contexts(obs, prefix=prefix, delimiter=delimiter, chain_cols=chain_cols):
            if ctx.is_empty:
                if keep_chainless:
                    continue
                try:
                    keep = bool(predicate(ctx))
                except Exception:
                    keep = False
            else:
                keep = bool(_evaluate(predicate, ctx))
            if not keep:
                failing.append(barcode)
        fail_mask = obs.index.astype(str).isin(failing)
        if not remove_cells:
            for col in cols + derived:
                obs.loc[fail_mask, col] = pd.NA
        remove = fail_mask

    if remove_cells:
        n_removed = int(remove.sum())
        obs = obs.loc[~remove]
        logger.info("Removed %d cells failing the V(D)J filter", n_removed)

    return with_obs(master, obs)


def _filter_chains(obs, predicate, cols, prefix, delimiter, chain_cols, keep_chainless):
    chain_clono_col = column_name("clonotype_id", prefix)
    updates: Dict[str, Dict[str, object]] = {}
    chainless: List[str] = []
    n_dropped = 0

    for barcode, ctx, tokens in iter_contexts(obs, prefix=prefix, delimiter=delimiter, chain_cols=chain_cols):
        if ctx.is_empty:
            if not keep_chainless:
                chainless.append(barcode)
            continue
        keep = [idx for idx in range(ctx.n_chains) if bool(_evaluate(predicate, ctx.chain(idx)))]
        if len(keep) == ctx.n_chains:
            continue
        n_dropped += ctx.n_chains - len(keep)
        if not keep:
            chainless.append(barcode)
        row = {col: (delimiter.join(tokens[col][i] for i in keep) if keep else pd.NA) for col in cols}
        if f"{prefix}n_chains" in obs.columns:
            row[f"{prefix}n_chains"] = len(keep) if keep else pd.NA
        if f"{prefix}clonotype_id" in obs.columns and chain_clono_col in tokens:
            kept_clono = [tokens[chain_clono_col][i] for i in keep if tokens[chain_clono_col][i] != MISSING_TOKEN]
            row[f"{prefix}clonotype_id"] = kept_clono[0] if kept_clono else pd.NA
        updates[barcode] = row

    index_str = obs.index.astype(str)
    for barcode, row in updates.items():
        loc = index_str == barcode
        for col, value in row.items():
            obs.loc[loc, col] = value

    logger.info("Removed %d chains failing the V(D)J filter", n_dropped)
    return obs, index_str.isin(chainless)


def mutate_vdj(
    master: Table,
    column: str,
    func: Callable[[ChainContext], object],
    *,
    default: object = pd.NA,
    per_chain: bool = False,
    prefix: str = "",
    delimiter: str = DEFAULT_DELIMITER,
    chain_cols: Optional[Sequence[str]] = None,
) -> Table:
    """Write ``func(ctx)`` for every cell into ``column``.

    Cells without chains receive ``default`` and ``func`` is not called for
    them. With ``per_chain=True`` the function is evaluated once per chain and
    the results are serialized, so ``column`` becomes a chain column (pass it
    via ``chain_cols`` to later calls); chainless cells then always get a
    missing value.
    """
    obs = obs_frame(master)
    values: List[object] = []
    for _, ctx, _ in iter_contexts(obs, prefix=prefix, delimiter=delimiter, chain_cols=chain_cols):
        if ctx.is_empty:
            values.append(pd.NA if per_chain else default)
        elif per_chain:
            results = [_evaluate(func, ctx.chain(idx)) for idx in range(ctx.n_chains)]
            values.append(serialize_values(results, delimiter))
        else:
            values.append(_evaluate(func, ctx))

    obs[column] = pd.Series(values, index=obs.index, dtype=object)
    if not per_chain:
        obs[column] = obs[column].infer_objects()
    return with_obs(master, obs)


def summarize_vdj(
    master: Table,
    data_col: str,
    func: Callable[[Sequence[object]], object],
    *,
    result_col: Optional[str] = None,
    chain: Optional[str] = None,
    default: object = pd.NA,
    prefix: str = "",
    delimiter: str = DEFAULT_DELIMITER,
    chain_cols: Optional[Sequence[str]] = None,
) -> Table:
    """Aggregate one chain attribute per cell, e.g. mean UMIs per cell.

    ``data_col`` is a ChainRecord field (``"umis"``) or an extra chain
    column; ``chain`` restricts the values to one chain type. Missing tokens
    are skipped; cells with nothing left get ``default``.
    """
    target = result_col or f"{prefix}{data_col}_summary"

    def _summary(ctx: ChainContext):
        if data_col not in ctx:
            raise MissingColumnError(data_col, where="chain attributes")
        values = ctx[data_col]
        if chain is not None:
            values = tuple(v for v, c in zip(values, ctx.chains) if c == chain)
        values = [v for v in values if not is_missing(v)]
        if not values:
            return default
        return func(values)

    return mutate_vdj(
        master,
        target,
        _summary,
        default=default,
        prefix=prefix,
        delimiter=delimiter,
        chain_cols=chain_cols,
    )


def fetch_vdj(
    master: Table,
    *,
    prefix: str = "",
    delimiter: str = DEFAULT_DELIMITER,
    chain_cols: Optional[Sequence[str]] = None,
    include_chainless: bool = False,
    cell_cols: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Unpack the serialized chain columns into one row per chain.

    The result has a ``barcode`` column, the requested scalar cell columns
    (all by default) and one column per chain attribute. Chainless cells are
    omitted unless ``include_chainless`` is set, in which case they appear
    once with missing chain attributes.
    """
    obs = obs_frame(master)
    for col in cell_cols or ():
        if col not in obs.columns:
            raise MissingColumnError(col, where="annotation table")

    rows: List[Dict[str, object]] = []
    for barcode, ctx, _ in iter_contexts(obs, prefix=prefix, delimiter=delimiter, chain_cols=chain_cols):
        cell = ctx.cell if cell_cols is None else {col: ctx.cell[col] for col in cell_cols}
        extra_names = ctx.extra_attributes
        if ctx.is_empty:
            if include_chainless:
                blank = {name: None for name in list(RECORD_FIELDS) + extra_names}
                rows.append({"barcode": barcode, **cell, **blank})
            continue
        for idx, record in enumerate(ctx.records):
            chain_values = record.to_dict()
            chain_values.update({name: ctx[name][idx] for name in extra_names})
            rows.append({"barcode": barcode, "chain_index": idx, **cell, **chain_values})

    return pd.DataFrame(rows)
