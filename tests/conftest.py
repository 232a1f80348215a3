import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pandas as pd
import pytest


@pytest.fixture
def master_obs():
    """Master annotation table of six cells over two clusters."""
    return pd.DataFrame(
        {
            "cluster": ["T1", "T1", "T2", "T2", "T1", "T2"],
            "sample": ["S1", "S1", "S1", "S2", "S2", "S2"],
        },
        index=pd.Index(["AAAC-1", "AAAG-1", "AACC-1", "AACG-1", "AAGC-1", "AAGG-1"], name="barcode"),
    )


@pytest.fixture
def calls_s1():
    """10x-style contig calls, one row per chain."""
    return pd.DataFrame(
        {
            "barcode": ["AAAC-1", "AAAC-1", "AAAG-1", "AACC-1", "AACC-1", "TTTT-1"],
            "chain": ["TRA", "TRB", "TRB", "TRA", "TRA", "TRB"],
            "cdr3": ["CAVRDF", "CASSLG", "CASSPT", "CAVNNA", "CALSEA", "CASSQQ"],
            "v_gene": ["TRAV1-2", "TRBV5-1", "TRBV7-9", "TRAV12-1", "TRAV8-4", "TRBV20-1"],
            "j_gene": ["TRAJ33", "TRBJ2-7", "TRBJ1-1", "TRAJ20", "TRAJ49", "TRBJ2-1"],
            "umis": [4, 9, 3, 2, 6, 1],
            "productive": ["True", "True", "True", "True", "False", "True"],
            "raw_clonotype_id": ["clonotype1", "clonotype1", "clonotype2", "clonotype3", "clonotype3", "clonotype9"],
        }
    )


@pytest.fixture
def merged_obs():
    """Annotation table after a merge, in serialized form."""
    return pd.DataFrame(
        {
            "cluster": ["A", "A", "A", "B", "B"],
            "chains": ["TRA;TRB", pd.NA, "TRA;TRA", "TRB", "TRA;TRB"],
            "v_gene": ["TRAV1;TRBV5", pd.NA, "TRAV2;TRAV3", "TRBV5", "TRAV1;TRBV6"],
            "umis": ["3;7", pd.NA, "1;5", "2", "4;None"],
            "productive": ["True;True", pd.NA, "True;False", "True", "True;True"],
            "chain_clonotype_id": ["ct1;ct1", pd.NA, "ct2;ct2", "ct1", "ct3;ct3"],
            "clonotype_id": ["ct1", pd.NA, "ct2", "ct1", "ct3"],
            "n_chains": pd.array([2, pd.NA, 2, 1, 2], dtype="Int64"),
        },
        index=pd.Index(["c1", "c2", "c3", "c4", "c5"], name="barcode"),
    )
