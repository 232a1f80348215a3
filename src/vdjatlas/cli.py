"""Command-line interface for vdjatlas."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Tuple

from . import receptor
from .exceptions import VDJError
from .receptor.config import sample_barcode_prefixes, samples, vdj_config
from .receptor.ingest import normalise_table, read_call_table
from .schemas import validate_call_table
from .utils import load_config, setup_logging


def _run_merge(config: dict) -> None:
    receptor.run_merge(config)


def _run_metrics(config: dict) -> None:
    receptor.run_metrics(config)


def _run_pipeline(config: dict) -> None:
    receptor.run_pipeline(config)


def _run_validate_samples(config: dict) -> None:
    """Read and validate every declared chain-call table without merging."""
    cfg = vdj_config(config)
    prefixes = sample_barcode_prefixes(config) or {}
    entries = samples(config)
    failures: List[Tuple[str, str]] = []
    successes: List[str] = []

    logging.info(f"Validating {len(entries)} samples...")

    for entry in entries:
        sample = entry["id"]
        try:
            calls = read_call_table(entry["path"], entry.get("format"), entry.get("delimiter"))
            harmonised = normalise_table(
                sample,
                calls,
                barcode_prefix=prefixes.get(sample, ""),
                strip_suffixes=cfg["strip_suffixes"],
            )
            is_valid, error = validate_call_table(harmonised, sample=sample, raise_on_error=False)
        except (VDJError, OSError, KeyError, ValueError) as exc:
            is_valid, error = False, str(exc)

        if is_valid:
            logging.info(f"  ✓ {sample}: {len(harmonised)} chains, {harmonised['barcode'].nunique()} cells")
            successes.append(sample)
        else:
            logging.error(f"  ✗ {sample}: {error}")
            failures.append((sample, error))

    print("\n" + "=" * 80)
    print(f"Validation Summary: {len(successes)}/{len(entries)} passed")
    print("=" * 80)

    if successes:
        print(f"\n✓ Passed ({len(successes)}):")
        for sample in successes:
            print(f"  - {sample}")

    if failures:
        print(f"\n✗ Failed ({len(failures)}):")
        for sample, error in failures:
            print(f"  - {sample}")
            print(f"    Error: {error}")
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(description="vdjatlas command-line interface")
    parser.add_argument("command", choices=["merge", "metrics", "all", "validate-samples"])
    parser.add_argument("--config", default="config/vdj.yaml", help="Config file path")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()

    setup_logging(args.log_level)
    config = load_config(args.config)

    if args.command == "merge":
        _run_merge(config)
    elif args.command == "metrics":
        _run_metrics(config)
    elif args.command == "all":
        _run_pipeline(config)
    elif args.command == "validate-samples":
        _run_validate_samples(config)


if __name__ == "__main__":
    main()
