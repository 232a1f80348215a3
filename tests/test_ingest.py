"""Tests for merging per-sample chain calls into the master table."""

from __future__ import annotations

from pathlib import Path

import anndata as ad
import pandas as pd
import pytest

from src.vdjatlas.exceptions import DuplicateBarcodeError, MissingColumnError, SampleNotFoundError
from src.vdjatlas.receptor.evaluate import filter_vdj
from src.vdjatlas.receptor.ingest import (
    MergeSummary,
    merge_vdj,
    new_columns,
    normalise_table,
    read_call_table,
    resolve_barcode,
)
from src.vdjatlas.utils import read_master, write_master


# ============================================================================
# Harmonisation
# ============================================================================


def test_normalise_table_accepts_airr_aliases():
    calls = pd.DataFrame(
        {
            "cell_id": ["AAAC-1", "AAAC-1"],
            "locus": ["tra", "TRB"],
            "junction_aa": ["CAVRDF", "CASSLG"],
            "v_call": ["TRAV1-2", "TRBV5-1"],
            "duplicate_count": ["4", "x"],
            "productive": ["T", "F"],
        }
    )

    harmonised = normalise_table("S1", calls)

    assert harmonised["barcode"].tolist() == ["AAAC-1", "AAAC-1"]
    assert harmonised["chains"].tolist() == ["TRA", "TRB"]
    assert harmonised["cdr3"].tolist() == ["CAVRDF", "CASSLG"]
    assert harmonised["v_gene"].tolist() == ["TRAV1-2", "TRBV5-1"]
    assert harmonised["umis"].iloc[0] == 4.0
    assert pd.isna(harmonised["umis"].iloc[1])
    assert harmonised["productive"].dtype.name == "boolean"
    assert harmonised["productive"].tolist() == [True, False]
    assert harmonised["d_gene"].isna().all()


def test_normalise_table_requires_barcode_column():
    with pytest.raises(MissingColumnError):
        normalise_table("S1", pd.DataFrame({"chain": ["TRA"]}))


def test_normalise_table_rejects_missing_barcodes():
    calls = pd.DataFrame({"barcode": ["AAAC-1", None], "chain": ["TRA", "TRB"]})
    with pytest.raises(DuplicateBarcodeError):
        normalise_table("S1", calls)


def test_normalise_table_detects_collisions_after_suffix_stripping():
    calls = pd.DataFrame({"barcode": ["AAAC-1", "AAAC"], "chain": ["TRA", "TRB"]})

    with pytest.raises(DuplicateBarcodeError) as excinfo:
        normalise_table("S1", calls, strip_suffixes=["-1"])

    assert excinfo.value.sample == "S1"
    assert excinfo.value.barcodes == ["AAAC"]


def test_resolve_barcode_prefix_and_suffix():
    assert resolve_barcode(" AAAC-1 ", "S1_", ["-1"]) == "S1_AAAC"
    assert resolve_barcode("AAAC-1") == "AAAC-1"


# ============================================================================
# Merge
# ============================================================================


def test_merge_serializes_chains_per_cell(master_obs, calls_s1):
    merged = merge_vdj(master_obs, {"S1": calls_s1})

    assert merged.loc["AAAC-1", "chains"] == "TRA;TRB"
    assert merged.loc["AAAC-1", "v_gene"] == "TRAV1-2;TRBV5-1"
    assert merged.loc["AAAC-1", "umis"] == "4;9"
    assert merged.loc["AAAC-1", "d_gene"] == "None;None"
    assert merged.loc["AAAC-1", "chain_clonotype_id"] == "clonotype1;clonotype1"
    assert merged.loc["AAAC-1", "clonotype_id"] == "clonotype1"
    assert merged.loc["AAAC-1", "n_chains"] == 2
    # the non-productive TRA of AACC-1 is filtered out
    assert merged.loc["AACC-1", "chains"] == "TRA"
    assert merged.loc["AACC-1", "n_chains"] == 1


def test_merge_keeps_call_order():
    master = pd.DataFrame(index=pd.Index(["c1"], name="barcode"))
    calls = pd.DataFrame(
        {"barcode": ["c1", "c1", "c1"], "chain": ["TRB", "TRA", "TRB"], "productive": [True, True, True]}
    )
    merged = merge_vdj(master, {"S1": calls})
    assert merged.loc["c1", "chains"] == "TRB;TRA;TRB"


def test_merge_master_cell_universe_is_authoritative(master_obs, calls_s1):
    merged, summary = merge_vdj(master_obs, {"S1": calls_s1}, return_summary=True)

    # master-only cells stay, with missing chain columns
    assert list(merged.index) == list(master_obs.index)
    for barcode in ("AACG-1", "AAGC-1", "AAGG-1"):
        assert merged.loc[barcode, new_columns()].isna().all()
    # calls without a master cell are dropped and counted
    assert "TTTT-1" not in merged.index
    assert summary.n_cells_dropped == {"S1": 1}
    assert summary.total_dropped == 1
    assert summary.n_chains_filtered == {"S1": 1}
    assert summary.n_cells_merged == {"S1": 3}
    assert isinstance(summary, MergeSummary)


def test_merge_without_productive_filter(master_obs, calls_s1):
    merged = merge_vdj(master_obs, {"S1": calls_s1}, productive_only=False)
    assert merged.loc["AACC-1", "chains"] == "TRA;TRA"
    assert merged.loc["AACC-1", "productive"] == "True;False"


def test_merge_does_not_modify_master(master_obs, calls_s1):
    before = master_obs.copy()
    merge_vdj(master_obs, {"S1": calls_s1})
    pd.testing.assert_frame_equal(master_obs, before)


def test_merge_empty_sample_is_idempotent(master_obs, calls_s1):
    merged = merge_vdj(master_obs, {"S1": calls_s1})
    again = merge_vdj(merged, {"S3": pd.DataFrame(columns=["barcode", "chain"])})
    pd.testing.assert_frame_equal(again, merged)


def test_merge_empty_sample_can_be_rejected(master_obs):
    with pytest.raises(SampleNotFoundError):
        merge_vdj(master_obs, {"S3": pd.DataFrame(columns=["barcode", "chain"])}, allow_empty=False)


def test_merge_missing_sample_raises(master_obs):
    with pytest.raises(SampleNotFoundError) as excinfo:
        merge_vdj(master_obs, {"S9": None})
    assert excinfo.value.sample == "S9"


def test_merge_prefixed_samples_share_columns():
    master = pd.DataFrame(
        {"cluster": ["A", "B"]},
        index=pd.Index(["S1_AAAC-1", "S2_AAAC-1"], name="barcode"),
    )
    s1 = pd.DataFrame({"barcode": ["AAAC-1"], "chain": ["TRA"], "v_gene": ["TRAV1"], "productive": [True]})
    s2 = pd.DataFrame({"barcode": ["AAAC-1"], "chain": ["TRB"], "v_gene": ["TRBV5"], "productive": [True]})

    merged = merge_vdj(master, {"S1": s1, "S2": s2}, barcode_prefix=True)

    assert not merged.columns.duplicated().any()
    assert merged.loc["S1_AAAC-1", "v_gene"] == "TRAV1"
    assert merged.loc["S2_AAAC-1", "v_gene"] == "TRBV5"
    assert list(merged.columns) == ["cluster"] + new_columns()


def test_merge_explicit_prefix_mapping_and_column_prefix():
    master = pd.DataFrame(index=pd.Index(["lib1:AAAC"], name="barcode"))
    calls = pd.DataFrame({"barcode": ["AAAC-1"], "chain": ["IGH"], "productive": ["true"]})

    merged = merge_vdj(
        master,
        {"S1": calls},
        barcode_prefix={"S1": "lib1:"},
        strip_suffixes=["-1"],
        prefix="ir_",
    )

    assert merged.loc["lib1:AAAC", "ir_chains"] == "IGH"
    assert "chains" not in merged.columns


def test_merge_keeps_existing_chain_data(master_obs, calls_s1):
    merged = merge_vdj(master_obs, {"S1": calls_s1})
    later = pd.DataFrame(
        {"barcode": ["AAAC-1", "AAGC-1"], "chain": ["TRG", "TRD"], "productive": [True, True]}
    )

    remerged, summary = merge_vdj(merged, {"S1b": later}, return_summary=True)

    assert remerged.loc["AAAC-1", "chains"] == "TRA;TRB"
    assert remerged.loc["AAGC-1", "chains"] == "TRD"
    assert summary.n_cells_kept_existing == {"S1b": 1}


def test_merge_rejects_duplicated_master_barcodes(calls_s1):
    master = pd.DataFrame(index=pd.Index(["AAAC-1", "AAAC-1"], name="barcode"))
    with pytest.raises(DuplicateBarcodeError):
        merge_vdj(master, {"S1": calls_s1})


def test_merge_anndata_returns_new_anndata(master_obs, calls_s1):
    adata = ad.AnnData(obs=master_obs)

    merged = merge_vdj(adata, {"S1": calls_s1})

    assert isinstance(merged, ad.AnnData)
    assert merged is not adata
    assert list(merged.obs_names) == list(adata.obs_names)
    assert merged.obs.loc["AAAC-1", "chains"] == "TRA;TRB"
    assert "chains" not in adata.obs.columns


def test_h5ad_round_trip_allows_filter_and_second_merge(tmp_path: Path, master_obs, calls_s1):
    merged = merge_vdj(ad.AnnData(obs=master_obs), {"S1": calls_s1})
    write_master(merged, tmp_path / "merged.h5ad")
    reloaded = read_master(tmp_path / "merged.h5ad")
    assert isinstance(reloaded.obs["chains"].dtype, pd.CategoricalDtype)

    filtered = filter_vdj(reloaded, lambda ctx: ctx.chains[0] == "TRA", per_chain=True)
    assert filtered.obs.loc["AAAC-1", "chains"] == "TRA"
    assert filtered.obs.loc["AAAC-1", "v_gene"] == "TRAV1-2"
    assert filtered.obs.loc["AAAC-1", "n_chains"] == 1
    assert pd.isna(filtered.obs.loc["AAAG-1", "chains"])

    later = pd.DataFrame({"barcode": ["AAGC-1"], "chain": ["TRD"], "v_gene": ["TRDV2"], "productive": [True]})
    remerged = merge_vdj(reloaded, {"S2": later})
    assert remerged.obs.loc["AAGC-1", "chains"] == "TRD"
    assert remerged.obs.loc["AAGC-1", "v_gene"] == "TRDV2"
    assert remerged.obs.loc["AAGC-1", "n_chains"] == 1
    assert remerged.obs.loc["AAAC-1", "chains"] == "TRA;TRB"


# ============================================================================
# File readers
# ============================================================================


def test_read_call_table_10x(tmp_path: Path, calls_s1):
    path = tmp_path / "filtered_contig_annotations.csv"
    calls_s1.to_csv(path, index=False)

    df = read_call_table(path)

    assert df.shape == calls_s1.shape
    assert "raw_clonotype_id" in df.columns


def test_read_call_table_airr_renames_nucleotide_cdr3(tmp_path: Path):
    path = tmp_path / "rearrangements.tsv"
    pd.DataFrame(
        {
            "cell_id": ["AAAC-1"],
            "locus": ["TRB"],
            "cdr3": ["TGTGCCAGC"],
            "cdr3_aa": ["CAS"],
            "clone_id": ["c7"],
        }
    ).to_csv(path, sep="\t", index=False)

    df = read_call_table(path)
    harmonised = normalise_table("S1", df)

    assert harmonised.loc[0, "cdr3_nt"] == "TGTGCCAGC"
    assert harmonised.loc[0, "cdr3"] == "CAS"
    assert harmonised.loc[0, "clonotype_id"] == "c7"


def test_read_call_table_unknown_format(tmp_path: Path):
    with pytest.raises(ValueError):
        read_call_table(tmp_path / "calls.csv", fmt="vdjtools")
