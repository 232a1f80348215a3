"""Write repertoire metric tables and a report snippet."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List

import pandas as pd

from ..utils import ensure_dir
from .analytics import MetricsResult

SUMMARY_FILENAME = "repertoire_summary.json"
ABUNDANCE_FILENAME = "clonotype_abundance.tsv"
DIVERSITY_FILENAME = "diversity.tsv"
SIMILARITY_FILENAME = "similarity.tsv"
REPORT_FRAGMENT = "report_section.md"


def _write_json(path: Path, payload: Dict) -> None:
    ensure_dir(path.parent)
    path.write_text(json.dumps(payload, indent=2, default=str))


def _write_tsv(path: Path, table: pd.DataFrame) -> Path:
    ensure_dir(path.parent)
    table.to_csv(path, sep="\t", index=False)
    return path


def write_tables(result: MetricsResult, metrics_dir: Path) -> Dict[str, Path]:
    """Write every metric table as TSV plus the JSON summary."""
    metrics_dir = Path(metrics_dir)
    paths: Dict[str, Path] = {
        "abundance": _write_tsv(metrics_dir / ABUNDANCE_FILENAME, result.abundance),
        "diversity": _write_tsv(metrics_dir / DIVERSITY_FILENAME, result.diversity),
    }
    if result.similarity is not None:
        paths["similarity"] = _write_tsv(metrics_dir / SIMILARITY_FILENAME, result.similarity)
    for key, table in result.gene_usage.items():
        paths[f"gene_usage_{key}"] = _write_tsv(metrics_dir / f"gene_usage_{key}.tsv", table)

    summary_path = metrics_dir / SUMMARY_FILENAME
    _write_json(summary_path, result.summary_payload)
    paths["summary"] = summary_path
    logging.info("Repertoire metrics written to %s", metrics_dir)
    return paths


def write_report_fragment(result: MetricsResult, metrics_dir: Path) -> Path:
    summary = result.summary_payload
    global_summary = summary.get("global", {})
    fragment_path = Path(metrics_dir) / REPORT_FRAGMENT
    ensure_dir(fragment_path.parent)

    lines: List[str] = []
    lines.append("## Immune Receptor Repertoire")
    lines.append("")
    lines.append(f"- Cells with a clonotype: {global_summary.get('n_cells', 0):,}")
    lines.append(f"- Unique clonotypes detected: {global_summary.get('n_clonotypes', 0):,}")
    expansion = global_summary.get("expansion") or {}
    if expansion:
        formatted = ", ".join(f"{label}={n:,}" for label, n in expansion.items())
        lines.append(f"- Cells per expansion group: {formatted}")

    per_cluster = summary.get("clusters", {})
    if per_cluster:
        lines.append("")
        lines.append("### Cluster Highlights")
        lines.append("")
        for label, payload in per_cluster.items():
            diversity = payload.get("diversity", {})
            shannon = diversity.get("shannon")
            shannon_str = f", Shannon={shannon:.2f}" if isinstance(shannon, (int, float)) else ""
            lines.append(
                f"- **{label}**: {payload.get('n_clonotypes', 0):,} clonotypes, "
                f"{payload.get('n_cells', 0):,} cells{shannon_str}"
            )
            top = payload.get("top_clonotypes", [])[:3]
            if top:
                clono_key = next(key for key in top[0] if key != "n_cells")
                formatted = ", ".join(f"{item[clono_key]} ({item['n_cells']} cells)" for item in top)
                lines.append(f"  - Top clonotypes: {formatted}")

    lines.append("")
    fragment_path.write_text("\n".join(lines))
    return fragment_path
