"""Repertoire metrics computed per cluster of the annotation table.

All functions take the annotation table (DataFrame or AnnData), a clonotype
or gene column and an optional ``cluster_col``. Clusters are enumerated once,
in order of first appearance (category order for categoricals), before any
metric is evaluated; results are returned in that order whether or not the
work is spread over threads with ``n_jobs``.

Metric callables may run concurrently when ``n_jobs > 1``. They must not
mutate shared state; this is not checked.
"""

from __future__ import annotations

import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..chains import DEFAULT_DELIMITER, MISSING_TOKEN, column_name, is_missing, split_tokens
from ..exceptions import EmptyResultError, MalformedRecordError, MetricFunctionError, MissingColumnError
from ..utils import Table, obs_frame, with_obs
from . import indices
from .config import DEFAULT_EXPANSION_BINS

logger = logging.getLogger(__name__)

# group label used when no cluster column is given
_ALL = "all"


def _require(obs: pd.DataFrame, *columns: Optional[str]) -> None:
    for col in columns:
        if col is not None and col not in obs.columns:
            raise MissingColumnError(col, where="annotation table")


def _data_col(data_col: Optional[str], prefix: str) -> str:
    return data_col or f"{prefix}clonotype_id"


def _cluster_order(obs: pd.DataFrame, cluster_col: Optional[str]) -> List[Hashable]:
    if cluster_col is None:
        return [None]
    series = obs[cluster_col]
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.dropna().unique())
        return [cat for cat in series.cat.categories if cat in present]
    return list(pd.unique(series.dropna()))


def _groups(
    obs: pd.DataFrame,
    cluster_col: Optional[str],
    clusters: Optional[Sequence[Hashable]] = None,
) -> List[Tuple[Hashable, pd.DataFrame]]:
    order = _cluster_order(obs, cluster_col)
    if clusters is not None:
        unknown = [c for c in clusters if c not in order]
        if unknown:
            raise EmptyResultError(
                f"Requested clusters have no cells in '{cluster_col}': {unknown}", cluster=unknown[0]
            )
        order = [c for c in order if c in set(clusters)]
    if cluster_col is None:
        return [(None, obs)]
    return [(label, obs[obs[cluster_col] == label]) for label in order]


def _values(frame: pd.DataFrame, data_col: str) -> pd.Series:
    series = frame[data_col]
    return series[~series.map(is_missing)].astype(str)


def clonotype_counts(values: pd.Series) -> pd.Series:
    """Cells per clonotype, in order of first encounter."""
    codes, uniques = pd.factorize(values, sort=False)
    counts = np.bincount(codes, minlength=len(uniques)) if len(codes) else np.array([], dtype=int)
    return pd.Series(counts, index=pd.Index(uniques, name=values.name), dtype=int)


def _eligible_groups(
    obs: pd.DataFrame,
    data_col: str,
    cluster_col: Optional[str],
    clusters: Optional[Sequence[Hashable]],
) -> List[Tuple[Hashable, pd.Series]]:
    """Clonotype counts per cluster; clusters without clonotypes are skipped.

    A cluster that was requested explicitly, or a table without any
    clonotype, raises ``EmptyResultError`` instead.
    """
    result = []
    for label, frame in _groups(obs, cluster_col, clusters):
        counts = clonotype_counts(_values(frame, data_col))
        if counts.empty:
            if clusters is not None:
                raise EmptyResultError(f"Cluster {label!r} has no cells with '{data_col}'", cluster=label)
            logger.warning("Cluster %r has no cells with '%s'; skipped", label, data_col)
            continue
        result.append((label, counts))
    if not result:
        raise EmptyResultError(f"No cells with a value in '{data_col}'")
    return result


def _run(func: Callable, items: Sequence, n_jobs: Optional[int]) -> List:
    if not n_jobs or n_jobs == 1 or len(items) <= 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=n_jobs) as executor:
        return list(executor.map(func, items))


def _call_metric(name: str, func: Callable, label, *args) -> float:
    try:
        return func(*args)
    except Exception as exc:
        raise MetricFunctionError(name, label, exc) from exc


def calc_abundance(
    master: Table,
    data_col: Optional[str] = None,
    cluster_col: Optional[str] = None,
    *,
    prefix: str = "",
    clusters: Optional[Sequence[Hashable]] = None,
) -> pd.DataFrame:
    """Rank clonotypes by the number of cells carrying them, per cluster.

    Ranks start at 1 for the most abundant clonotype. Ties keep the order in
    which clonotypes are first encountered in the table, so ranks are unique
    and deterministic. ``pct`` is relative to the cluster's cells with a
    clonotype; missing clonotypes are ignored.
    """
    obs = obs_frame(master)
    data_col = _data_col(data_col, prefix)
    _require(obs, data_col, cluster_col)

    frames = []
    for label, counts in _eligible_groups(obs, data_col, cluster_col, clusters):
        order = np.argsort(-counts.to_numpy(), kind="stable")
        ranked = counts.iloc[order]
        frame = pd.DataFrame(
            {
                data_col: ranked.index.astype(str),
                "n_cells": ranked.to_numpy(),
                "rank": np.arange(1, len(ranked) + 1),
                "pct": 100.0 * ranked.to_numpy() / ranked.sum(),
            }
        )
        if cluster_col is not None:
            frame.insert(0, cluster_col, label)
        frames.append(frame)

    return pd.concat(frames, ignore_index=True)


def _default_expansion_labels(n_bins: int) -> List[str]:
    base = ["singleton", "small", "intermediate", "expanded"]
    if n_bins <= len(base):
        return base[:n_bins]
    labels = base[:]
    for idx in range(len(base), n_bins):
        labels.append(f"bin_{idx}")
    return labels


def _assign_expansion(size: int, thresholds: List[int], labels: List[str]) -> str:
    for idx, threshold in enumerate(thresholds):
        if size <= threshold:
            return labels[idx]
    return labels[len(thresholds)]


def calc_frequency(
    master: Table,
    data_col: Optional[str] = None,
    cluster_col: Optional[str] = None,
    *,
    prefix: str = "",
    bins: Sequence[int] = (1, 5, 20),
    labels: Optional[Sequence[str]] = None,
) -> Table:
    """Add clonotype frequency columns to the annotation table.

    ``<prefix>freq`` holds the number of cells in the same cluster sharing the
    cell's clonotype, ``<prefix>pct`` the percentage of the cluster, and
    ``<prefix>grp`` the expansion bin. Bins are upper bounds; a clonotype
    larger than the last bound falls into the final label.
    """
    obs = obs_frame(master)
    data_col = _data_col(data_col, prefix)
    _require(obs, data_col, cluster_col)

    thresholds = sorted(int(b) for b in bins)
    labels = list(labels) if labels else _default_expansion_labels(len(thresholds) + 1)
    if len(labels) != len(thresholds) + 1:
        raise ValueError(f"Expected {len(thresholds) + 1} expansion labels, got {len(labels)}")

    freq = pd.Series(pd.NA, index=obs.index, dtype="Int64")
    pct = pd.Series(np.nan, index=obs.index, dtype=float)
    for _, frame in _groups(obs, cluster_col):
        values = _values(frame, data_col)
        if values.empty:
            continue
        counts = values.map(values.value_counts())
        freq.loc[counts.index] = counts.astype(int).to_numpy()
        pct.loc[counts.index] = 100.0 * counts.to_numpy() / len(values)

    obs[f"{prefix}freq"] = freq
    obs[f"{prefix}pct"] = pct
    obs[f"{prefix}grp"] = freq.map(
        lambda size: pd.NA if pd.isna(size) else _assign_expansion(int(size), thresholds, labels)
    ).astype(object)
    return with_obs(master, obs)


def calc_diversity(
    master: Table,
    data_col: Optional[str] = None,
    cluster_col: Optional[str] = None,
    method: Union[None, str, Callable, Mapping[str, Callable], Sequence] = None,
    *,
    prefix: str = "",
    clusters: Optional[Sequence[Hashable]] = None,
    n_jobs: Optional[int] = 1,
) -> pd.DataFrame:
    """Apply diversity metrics to each cluster's clonotype count vector.

    ``method`` is a callable (counts -> scalar), a built-in name, or a
    mapping of names to callables; None uses shannon, simpson, inv_simpson
    and gini. Returns one row per cluster with ``n_cells`` and one column per
    metric.
    """
    obs = obs_frame(master)
    data_col = _data_col(data_col, prefix)
    _require(obs, data_col, cluster_col)
    methods = indices.resolve_methods(method, indices.DIVERSITY_METRICS, indices.DEFAULT_DIVERSITY)
    groups = _eligible_groups(obs, data_col, cluster_col, clusters)

    def _evaluate(item):
        label, counts = item
        vector = counts.to_numpy()
        row: Dict[str, object] = {"n_cells": int(vector.sum())}
        for name, func in methods.items():
            row[name] = _call_metric(name, func, label, vector)
        return row

    rows = _run(_evaluate, groups, n_jobs)
    result = pd.DataFrame(rows, columns=["n_cells"] + list(methods))
    if cluster_col is not None:
        result.insert(0, cluster_col, [label for label, _ in groups])
    return result


def _aligned(counts: Mapping[Hashable, pd.Series]) -> pd.DataFrame:
    universe = sorted(set().union(*(c.index for c in counts.values())))
    return pd.DataFrame(
        {label: c.reindex(universe, fill_value=0).to_numpy() for label, c in counts.items()},
        index=universe,
    )


def calc_similarity(
    master: Table,
    data_col: Optional[str] = None,
    cluster_col: Optional[str] = None,
    method: Union[None, str, Callable, Mapping[str, Callable], Sequence] = None,
    *,
    include_self: bool = False,
    prefix: str = "",
    clusters: Optional[Sequence[Hashable]] = None,
    n_jobs: Optional[int] = 1,
) -> pd.DataFrame:
    """Pairwise repertoire similarity between clusters.

    Count vectors are aligned over the union of clonotypes of both clusters
    (absent clonotypes count zero). Each unordered pair is computed once and
    reported in both orientations, so the table is symmetric. Self-pairs are
    evaluated by the metric when ``include_self`` is set and omitted
    otherwise.

    Output columns: ``<cluster_col>_1``, ``<cluster_col>_2`` and one column
    per metric (None uses jaccard and morisita_horn).
    """
    if cluster_col is None:
        raise ValueError("calc_similarity requires a cluster_col")
    obs = obs_frame(master)
    data_col = _data_col(data_col, prefix)
    _require(obs, data_col, cluster_col)
    methods = indices.resolve_methods(method, indices.SIMILARITY_METRICS, indices.DEFAULT_SIMILARITY)

    groups = _eligible_groups(obs, data_col, cluster_col, clusters)
    labels = [label for label, _ in groups]
    if len(labels) < 2 and not include_self:
        raise EmptyResultError(
            f"Similarity needs at least two clusters with '{data_col}', found {len(labels)}"
        )
    counts = _aligned(dict(groups))

    pairer = itertools.combinations_with_replacement if include_self else itertools.combinations
    pairs = list(pairer(range(len(labels)), 2))

    def _evaluate(pair):
        i, j = pair
        a = counts[labels[i]].to_numpy()
        b = counts[labels[j]].to_numpy()
        return {
            name: _call_metric(name, func, (labels[i], labels[j]), a, b)
            for name, func in methods.items()
        }

    computed = dict(zip(pairs, _run(_evaluate, pairs, n_jobs)))

    rows = []
    for i, j in itertools.product(range(len(labels)), repeat=2):
        key = (min(i, j), max(i, j))
        if key not in computed:
            continue
        rows.append({f"{cluster_col}_1": labels[i], f"{cluster_col}_2": labels[j], **computed[key]})
    return pd.DataFrame(rows, columns=[f"{cluster_col}_1", f"{cluster_col}_2"] + list(methods))


def similarity_matrix(table: pd.DataFrame, metric: str, cluster_col: str) -> pd.DataFrame:
    """Pivot a ``calc_similarity`` table into a square matrix; missing pairs are NaN."""
    _require(table, f"{cluster_col}_1", f"{cluster_col}_2", metric)
    order = list(pd.unique(table[f"{cluster_col}_1"]))
    matrix = table.pivot(index=f"{cluster_col}_1", columns=f"{cluster_col}_2", values=metric)
    return matrix.reindex(index=order, columns=order)


def _resolve_col(obs: pd.DataFrame, name: str, prefix: str) -> str:
    for candidate in (name, f"{prefix}{name}", column_name(name, prefix)):
        if candidate in obs.columns:
            return candidate
    raise MissingColumnError(name, where="annotation table")


def _chain_rows(
    obs: pd.DataFrame,
    cols: Sequence[str],
    cluster_col: Optional[str],
    delimiter: str,
) -> pd.DataFrame:
    """Unpack parallel chain columns into one row per chain."""
    records = []
    for barcode, row in obs[list(cols) + ([cluster_col] if cluster_col else [])].iterrows():
        tokens = [split_tokens(row[col], delimiter) for col in cols]
        lengths = {col: len(t) for col, t in zip(cols, tokens)}
        if len(set(lengths.values())) > 1:
            raise MalformedRecordError(f"Chain columns disagree on token count: {lengths}", barcode=str(barcode))
        cluster = row[cluster_col] if cluster_col else _ALL
        for values in zip(*tokens):
            records.append((barcode, cluster) + tuple(None if v == MISSING_TOKEN else v for v in values))
    return pd.DataFrame(records, columns=["barcode", "_cluster"] + list(cols))


def calc_gene_usage(
    master: Table,
    gene_cols: Union[str, Sequence[str]],
    cluster_col: Optional[str] = None,
    *,
    chain: Optional[str] = None,
    chain_col: Optional[str] = None,
    normalize: str = "chain",
    prefix: str = "",
    delimiter: str = DEFAULT_DELIMITER,
    clusters: Optional[Sequence[Hashable]] = None,
) -> pd.DataFrame:
    """Frequency of genes, or gene combinations, per cluster.

    Tokens of the ``gene_cols`` are paired by chain index and each chain
    contributes the tuple of its genes; chains with any missing gene are
    skipped. ``chain`` keeps only chains of that type according to
    ``chain_col`` (default ``<prefix>chains``).

    ``normalize="chain"`` counts chains and divides by the cluster's chain
    count; ``normalize="cell"`` counts cells carrying the combination and
    divides by the cluster's cell count. Every combination is reported for
    every cluster, with zeros where it was not observed.
    """
    if normalize not in {"chain", "cell"}:
        raise ValueError(f"normalize must be 'chain' or 'cell', got {normalize!r}")
    if isinstance(gene_cols, str):
        gene_cols = [gene_cols]
    if not gene_cols:
        raise ValueError("At least one gene column is required")

    obs = obs_frame(master)
    _require(obs, cluster_col)
    cols = [_resolve_col(obs, col, prefix) for col in gene_cols]
    if chain is not None:
        chain_col = chain_col or column_name("chains", prefix)
        _require(obs, chain_col)
        cols_with_chain = cols + [chain_col] if chain_col not in cols else cols
    else:
        cols_with_chain = cols

    if cluster_col is None:
        order = [_ALL]
    else:
        order = [label for label, _ in _groups(obs, cluster_col, clusters)]
        obs = obs[obs[cluster_col].isin(order)]

    chains = _chain_rows(obs, cols_with_chain, cluster_col, delimiter)
    if chain is not None:
        chains = chains[chains[chain_col] == chain]
    chains = chains.dropna(subset=cols)
    if chains.empty:
        raise EmptyResultError(f"No chains with calls in {cols}" + (f" for chain {chain}" if chain else ""))

    if normalize == "cell":
        chains = chains.drop_duplicates(subset=["barcode", "_cluster"] + cols)
        totals = chains.groupby("_cluster", dropna=False, sort=False)["barcode"].nunique()
        counts = chains.groupby(cols + ["_cluster"], dropna=False, sort=False)["barcode"].nunique()
    else:
        totals = chains.groupby("_cluster", dropna=False, sort=False).size()
        counts = chains.groupby(cols + ["_cluster"], dropna=False, sort=False).size()

    present = set(chains["_cluster"])
    cluster_order = [label for label in order if label in present]
    if clusters is not None:
        missing = [label for label in order if label not in present]
        if missing:
            raise EmptyResultError(f"Cluster {missing[0]!r} has no chains with calls in {cols}", cluster=missing[0])

    combos = sorted(set(map(tuple, chains[cols].to_numpy().tolist())))
    rows = []
    for combo in combos:
        for label in cluster_order:
            n = int(counts.get(combo + (label,), 0))
            total = int(totals.get(label, 0))
            rows.append(list(combo) + [label, n, 100.0 * n / total if total else np.nan])

    result = pd.DataFrame(rows, columns=list(gene_cols) + ["_cluster", "n", "pct"])
    if cluster_col is None:
        return result.drop(columns="_cluster")
    return result.rename(columns={"_cluster": cluster_col})


def calc_gene_pairs(
    master: Table,
    gene_col: str = "v_gene",
    cluster_col: Optional[str] = None,
    *,
    chains: Tuple[str, str] = ("TRA", "TRB"),
    chain_col: Optional[str] = None,
    prefix: str = "",
    delimiter: str = DEFAULT_DELIMITER,
) -> pd.DataFrame:
    """Usage of gene pairs between two chain types within the same cell.

    Only cells with both chain types contribute; when a cell has several
    chains of one type the first is used. ``pct`` is relative to the
    cluster's paired cells.
    """
    first, second = chains
    obs = obs_frame(master)
    _require(obs, cluster_col)
    gene = _resolve_col(obs, gene_col, prefix)
    chain_col = chain_col or column_name("chains", prefix)
    _require(obs, chain_col)

    rows = _chain_rows(obs, [gene, chain_col], cluster_col, delimiter).dropna(subset=[gene])
    by_type = {
        name: rows[rows[chain_col] == name].drop_duplicates(subset="barcode").set_index("barcode")
        for name in (first, second)
    }
    paired = by_type[first][[gene, "_cluster"]].join(
        by_type[second][[gene]], how="inner", lsuffix=f"_{first}", rsuffix=f"_{second}"
    )
    if paired.empty:
        raise EmptyResultError(f"No cells carry both {first} and {second} chains with '{gene}'")

    left = f"{first}_{gene_col}"
    right = f"{second}_{gene_col}"
    paired = paired.rename(columns={f"{gene}_{first}": left, f"{gene}_{second}": right})
    counts = paired.groupby([left, right, "_cluster"], dropna=False, sort=True).size().reset_index(name="n")
    totals = paired.groupby("_cluster", dropna=False).size()
    counts["pct"] = 100.0 * counts["n"] / counts["_cluster"].map(totals).to_numpy()
    if cluster_col is None:
        return counts.drop(columns="_cluster")
    return counts.rename(columns={"_cluster": cluster_col})


@dataclass
class MetricsResult:
    table: Table
    abundance: pd.DataFrame
    diversity: pd.DataFrame
    similarity: Optional[pd.DataFrame]
    gene_usage: Dict[str, pd.DataFrame]
    summary_payload: Dict


def _expansion_counts(grp: pd.Series) -> Dict[str, int]:
    return {str(label): int(n) for label, n in grp.dropna().value_counts(sort=False).items()}


def _summary_payload(
    abundance: pd.DataFrame,
    diversity: pd.DataFrame,
    obs: pd.DataFrame,
    data_col: str,
    cluster_col: Optional[str],
    grp_col: str,
) -> Dict:
    clusters: Dict[str, Dict] = {}
    if cluster_col is not None:
        div_by_cluster = diversity.set_index(cluster_col).drop(columns="n_cells")
        for label, frame in abundance.groupby(cluster_col, sort=False):
            clusters[str(label)] = {
                "n_cells": int(frame["n_cells"].sum()),
                "n_clonotypes": int(len(frame)),
                "diversity": {
                    key: float(value)
                    for key, value in div_by_cluster.loc[label].items()
                },
                "top_clonotypes": [
                    {data_col: str(clone), "n_cells": int(n)}
                    for clone, n in zip(frame[data_col].head(10), frame["n_cells"].head(10))
                ],
                "expansion": _expansion_counts(obs.loc[obs[cluster_col] == label, grp_col]),
            }
    global_summary = {
        "n_cells": int(abundance["n_cells"].sum()),
        "n_clonotypes": int(abundance[data_col].nunique()),
        "expansion": _expansion_counts(obs[grp_col]),
    }
    return {"clusters": clusters, "global": global_summary}


def run_metrics(master: Table, cfg: Dict) -> MetricsResult:
    """Compute every metric family with options from a resolved ``vdj`` config."""
    prefix = cfg.get("prefix", "")
    data_col = cfg.get("data_col") or f"{prefix}clonotype_id"
    cluster_col = cfg.get("cluster_col")
    n_jobs = cfg.get("n_jobs", 1)

    table = calc_frequency(
        master,
        data_col,
        cluster_col,
        prefix=prefix,
        bins=cfg.get("expansion_bins") or DEFAULT_EXPANSION_BINS,
        labels=cfg.get("expansion_labels"),
    )
    abundance = calc_abundance(master, data_col, cluster_col, prefix=prefix)
    diversity = calc_diversity(
        master, data_col, cluster_col, cfg.get("diversity_methods"), prefix=prefix, n_jobs=n_jobs
    )

    similarity = None
    if cluster_col is not None:
        try:
            similarity = calc_similarity(
                master,
                data_col,
                cluster_col,
                cfg.get("similarity_methods"),
                include_self=bool(cfg.get("include_self", False)),
                prefix=prefix,
                n_jobs=n_jobs,
            )
        except EmptyResultError as exc:
            logger.warning("Skipping similarity: %s", exc)

    gene_usage: Dict[str, pd.DataFrame] = {}
    for genes in cfg.get("gene_cols") or []:
        genes = [genes] if isinstance(genes, str) else list(genes)
        key = "_".join(genes)
        if cfg.get("chain"):
            key = f"{key}_{cfg['chain']}"
        gene_usage[key] = calc_gene_usage(
            master,
            genes,
            cluster_col,
            chain=cfg.get("chain"),
            normalize=cfg.get("normalize", "chain"),
            prefix=prefix,
            delimiter=cfg.get("delimiter", DEFAULT_DELIMITER),
        )

    return MetricsResult(
        table=table,
        abundance=abundance,
        diversity=diversity,
        similarity=similarity,
        gene_usage=gene_usage,
        summary_payload=_summary_payload(
            abundance, diversity, obs_frame(table), data_col, cluster_col, f"{prefix}grp"
        ),
    )
