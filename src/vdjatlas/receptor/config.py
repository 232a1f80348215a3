"""Configuration helpers for the V(D)J module."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from ..chains import DEFAULT_DELIMITER

DEFAULT_METRICS_DIR = "processed/metrics/vdj"
DEFAULT_MASTER_PATH = "processed/annotated.h5ad"
DEFAULT_OUTPUT_PATH = "processed/annotated_vdj.h5ad"
DEFAULT_EXPANSION_BINS = [1, 5, 20]

NORMALIZE_CHOICES = {"chain", "cell"}


def _base_config(config: Optional[Dict]) -> Dict:
    if not config:
        return {}
    if "vdj" in config and config.get("vdj") is not None:
        return dict(config.get("vdj") or {})
    if "receptor" in config and config.get("receptor") is not None:
        return dict(config.get("receptor") or {})
    return {}


def vdj_config(config: Optional[Dict]) -> Dict:
    """Return the ``vdj`` section with every recognised option defaulted."""
    cfg = _base_config(config)
    cfg.setdefault("delimiter", DEFAULT_DELIMITER)
    cfg.setdefault("prefix", "")
    cfg.setdefault("productive_only", True)
    cfg.setdefault("barcode_prefix", False)
    cfg.setdefault("dataset_separator", "_")
    cfg.setdefault("strip_suffixes", [])
    cfg.setdefault("include_self", False)
    cfg.setdefault("normalize", "chain")
    cfg.setdefault("expansion_bins", list(DEFAULT_EXPANSION_BINS))
    cfg.setdefault("expansion_labels", None)
    cfg.setdefault("n_jobs", 1)
    cfg.setdefault("metrics_dir", DEFAULT_METRICS_DIR)
    cfg.setdefault("master_path", DEFAULT_MASTER_PATH)
    cfg.setdefault("output_path", DEFAULT_OUTPUT_PATH)
    cfg.setdefault("cluster_col", None)
    cfg.setdefault("gene_cols", [["v_gene"]])

    if not cfg["delimiter"]:
        raise ValueError("vdj.delimiter must be a non-empty string")
    if cfg["normalize"] not in NORMALIZE_CHOICES:
        raise ValueError(
            f"vdj.normalize must be one of {sorted(NORMALIZE_CHOICES)}, got {cfg['normalize']!r}"
        )
    return cfg


def samples(config: Optional[Dict]) -> List[Dict]:
    """Declared samples; each entry needs an ``id`` and a ``path``."""
    entries = (config or {}).get("samples") or []
    for entry in entries:
        if "id" not in entry:
            raise ValueError(f"Sample entry without 'id': {entry}")
    return list(entries)


def sample_barcode_prefixes(config: Optional[Dict]) -> Optional[Dict[str, str]]:
    """Per-sample barcode prefixes, or None when prefixing is disabled."""
    cfg = vdj_config(config)
    entries = samples(config)
    explicit = {entry["id"]: entry["barcode_prefix"] for entry in entries if entry.get("barcode_prefix")}
    if cfg.get("barcode_prefix"):
        sep = cfg.get("dataset_separator", "_")
        prefixes = {entry["id"]: f"{entry['id']}{sep}" for entry in entries}
        prefixes.update(explicit)
        return prefixes
    return explicit or None


def metrics_dir(config: Optional[Dict]) -> Path:
    return Path(vdj_config(config).get("metrics_dir", DEFAULT_METRICS_DIR))
