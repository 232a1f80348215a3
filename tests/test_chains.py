"""Tests for the per-cell chain record model."""

from __future__ import annotations

import pandas as pd
import pytest

from src.vdjatlas.chains import (
    ChainRecord,
    chain_columns,
    count_tokens,
    encode_token,
    parse,
    present_fields,
    serialize,
    split_column,
)
from src.vdjatlas.exceptions import MalformedRecordError


def test_parse_unpacks_tokens_in_order():
    row = pd.Series(
        {"chains": "TRA;TRB", "v_gene": "TRAV1;TRBV5", "umis": "3;7", "productive": "True;False"},
        name="c1",
    )

    records = parse(row)

    assert [rec.chains for rec in records] == ["TRA", "TRB"]
    assert [rec.v_gene for rec in records] == ["TRAV1", "TRBV5"]
    assert [rec.umis for rec in records] == [3, 7]
    assert [rec.productive for rec in records] == [True, False]
    assert records[0].cdr3 is None  # column absent


def test_parse_missing_token_becomes_none():
    row = pd.Series({"chains": "TRA;TRB", "umis": "None;4"}, name="c1")
    records = parse(row)
    assert records[0].umis is None
    assert records[1].umis == 4


def test_parse_chainless_cell_is_empty():
    row = pd.Series({"chains": pd.NA, "v_gene": pd.NA, "umis": float("nan")}, name="c2")
    assert parse(row) == []


def test_parse_token_count_mismatch_names_cell():
    row = pd.Series({"chains": "TRA;TRB", "v_gene": "TRAV1"}, name="bad_cell")

    with pytest.raises(MalformedRecordError) as excinfo:
        parse(row)

    assert excinfo.value.barcode == "bad_cell"
    assert "bad_cell" in str(excinfo.value)


def test_parse_respects_prefix_and_delimiter():
    row = pd.Series({"ir_chains": "TRA|TRB", "ir_v_gene": "TRAV1|TRBV5", "chains": "ignored"}, name="c1")
    records = parse(row, "|", prefix="ir_")
    assert [rec.v_gene for rec in records] == ["TRAV1", "TRBV5"]


def test_serialize_round_trip():
    row = {"chains": "TRA;TRB", "v_gene": "TRAV1;None", "umis": "3;7", "productive": "True;True"}
    records = parse(row)
    assert present_fields(row) == ["chains", "v_gene", "umis", "productive"]
    assert serialize(records, columns=present_fields(row)) == row


def test_serialize_empty_maps_every_column_to_na():
    result = serialize([], columns=["chains", "v_gene", "clonotype_id"])
    assert set(result) == {"chains", "v_gene", "chain_clonotype_id"}
    assert all(value is pd.NA for value in result.values())


def test_serialize_rejects_delimiter_inside_token():
    records = [ChainRecord(chains="TRA", v_gene="TRAV1;TRAV2")]
    with pytest.raises(MalformedRecordError):
        serialize(records, columns=["chains", "v_gene"])


def test_serialize_requires_delimiter():
    with pytest.raises(ValueError):
        serialize([ChainRecord(chains="TRA")], "")


def test_encode_token_integral_float():
    assert encode_token(5.0) == "5"
    assert encode_token(float("nan")) == "None"
    assert encode_token(True) == "True"


def test_split_and_count_tokens_keep_missing():
    series = pd.Series(["TRA;TRB", pd.NA, "TRB"], index=["a", "b", "c"])

    split = split_column(series)
    counts = count_tokens(series)

    assert split.tolist() == [["TRA", "TRB"], [], ["TRB"]]
    assert counts.tolist() == [2, 0, 1]
    assert list(split.index) == ["a", "b", "c"]


def test_chain_columns_lists_present_columns_in_order():
    columns = ["cluster", "v_gene", "chains", "chain_clonotype_id", "n_tra"]
    assert chain_columns(columns) == ["chains", "v_gene", "chain_clonotype_id"]
    assert chain_columns(columns, extra=["n_tra"])[-1] == "n_tra"


def test_records_round_trip_through_serialize():
    records = [
        ChainRecord(chains="TRB", cdr3="CASSLG", v_gene="TRBV5-1", umis=9, reads=120, productive=True, clonotype_id="ct1"),
        ChainRecord(chains="TRA", cdr3="CAVRDF", j_gene="TRAJ33", umis=None, productive=False, clonotype_id="ct1"),
    ]

    row = pd.Series(serialize(records), name="c1")

    assert row["chains"] == "TRB;TRA"
    assert parse(row) == records


@pytest.mark.parametrize("token", ["3.7", "abc"])
def test_parse_rejects_non_integer_counts(token):
    row = pd.Series({"chains": "TRA;TRB", "umis": f"2;{token}"}, name="c1")
    with pytest.raises(MalformedRecordError):
        parse(row)


def test_parse_accepts_integral_float_counts():
    records = parse({"chains": "TRA", "umis": "4.0"})
    assert records[0].umis == 4
