"""V(D)J module orchestration: merge declared samples and compute metrics."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from ..exceptions import SampleNotFoundError
from ..utils import Table, load_config, read_master, setup_logging, timer, write_master
from . import analytics, evaluate, indices, ingest, report
from .analytics import (
    calc_abundance,
    calc_diversity,
    calc_frequency,
    calc_gene_pairs,
    calc_gene_usage,
    calc_similarity,
    similarity_matrix,
)
from .config import metrics_dir as config_metrics_dir
from .config import sample_barcode_prefixes, samples, vdj_config
from .evaluate import ChainContext, fetch_vdj, filter_vdj, mutate_vdj, summarize_vdj
from .ingest import MergeSummary, merge_vdj, read_call_table

__all__ = [
    "analytics",
    "evaluate",
    "indices",
    "ingest",
    "report",
    "ChainContext",
    "MergeSummary",
    "calc_abundance",
    "calc_diversity",
    "calc_frequency",
    "calc_gene_pairs",
    "calc_gene_usage",
    "calc_similarity",
    "fetch_vdj",
    "filter_vdj",
    "merge_vdj",
    "mutate_vdj",
    "read_call_table",
    "similarity_matrix",
    "summarize_vdj",
]


def load_samples(config: Dict) -> Dict[str, pd.DataFrame]:
    """Read every chain-call table declared under ``samples``.

    A declared sample whose file is missing, or holds no calls, raises
    :class:`SampleNotFoundError`.
    """
    tables: Dict[str, pd.DataFrame] = {}
    for entry in samples(config):
        sample = entry["id"]
        path = entry.get("path")
        if not path:
            raise ValueError(f"Sample '{sample}' has no 'path'")
        if not Path(path).exists():
            raise SampleNotFoundError(sample, f"Sample '{sample}': call table {path} does not exist")
        try:
            calls = read_call_table(path, entry.get("format"), entry.get("delimiter"))
        except pd.errors.EmptyDataError as exc:
            raise SampleNotFoundError(sample, f"Sample '{sample}': call table {path} is empty") from exc
        if calls.empty:
            raise SampleNotFoundError(sample, f"Sample '{sample}': call table {path} has no calls")
        tables[sample] = calls
    return tables


def run_merge(config: Dict, master: Optional[Table] = None) -> Table:
    """Merge declared samples into the master table and write the result."""
    cfg = vdj_config(config)
    if master is None:
        master = read_master(cfg["master_path"])
    tables = load_samples(config)
    if not tables:
        raise ValueError("No samples declared in configuration")

    with timer("V(D)J merge"):
        merged, summary = merge_vdj(
            master,
            tables,
            barcode_prefix=sample_barcode_prefixes(config),
            prefix=cfg["prefix"],
            productive_only=bool(cfg["productive_only"]),
            delimiter=cfg["delimiter"],
            dataset_separator=cfg["dataset_separator"],
            strip_suffixes=cfg["strip_suffixes"],
            return_summary=True,
        )
    if summary.total_dropped:
        logging.info(
            "%d cells with chain calls were not in the master table and were dropped",
            summary.total_dropped,
        )
    write_master(merged, cfg["output_path"])
    return merged


def run_metrics(config: Dict, table: Optional[Table] = None) -> analytics.MetricsResult:
    """Compute repertoire metrics on the merged table and write them to disk."""
    cfg = vdj_config(config)
    if table is None:
        table = read_master(cfg["output_path"])

    with timer("Repertoire metrics"):
        result = analytics.run_metrics(table, cfg)

    write_master(result.table, cfg["output_path"])
    out_dir = config_metrics_dir(config)
    report.write_tables(result, out_dir)
    report.write_report_fragment(result, out_dir)
    return result


def run_pipeline(config: Dict) -> analytics.MetricsResult:
    merged = run_merge(config)
    return run_metrics(config, merged)


def _cli_entry(args: argparse.Namespace) -> None:
    setup_logging(args.log_level)
    config = load_config(args.config)

    if args.stage in {None, "all"}:
        run_pipeline(config)
        return
    if args.stage == "merge":
        run_merge(config)
        return
    if args.stage == "metrics":
        run_metrics(config)
        return
    raise SystemExit(f"Unknown V(D)J stage: {args.stage}")


def main() -> None:
    parser = argparse.ArgumentParser(description="V(D)J annotation and repertoire metrics")
    parser.add_argument("--config", default="config/vdj.yaml", help="Config file path")
    parser.add_argument(
        "--stage",
        choices=["merge", "metrics", "all"],
        default="all",
        help="Stage to execute",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()
    _cli_entry(args)


if __name__ == "__main__":
    main()
