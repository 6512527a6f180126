"""Shared pytest fixtures for drug_response_ml tests."""

import numpy as np
import polars as pl
import pytest


# Data fixtures - small synthetic datasets


@pytest.fixture
def noisy_dataset():
    """100 samples x 10 genes, label driven by the first two genes."""
    rng = np.random.default_rng(0)
    X = rng.normal(size=(100, 10))
    y = (X[:, 0] + X[:, 1] + rng.normal(scale=0.5, size=100) > 0).astype(int)
    return X, y


@pytest.fixture
def separable_blobs():
    """Two well separated Gaussian blobs in 5 dimensions."""
    rng = np.random.default_rng(1)
    X = np.vstack(
        [
            rng.normal(loc=-3.0, scale=1.0, size=(30, 5)),
            rng.normal(loc=3.0, scale=1.0, size=(30, 5)),
        ]
    )
    y = np.array(["Resistant"] * 30 + ["Sensitive"] * 30)
    return X, y


@pytest.fixture
def sparse_signal():
    """Three informative genes out of eight."""
    rng = np.random.default_rng(2)
    X = rng.normal(size=(300, 8))
    logits = 2.0 * X[:, 0] - 1.5 * X[:, 1] + 1.0 * X[:, 2]
    y = (rng.uniform(size=300) < 1.0 / (1.0 + np.exp(-logits))).astype(int)
    return X, y


@pytest.fixture
def training_frame():
    """Merged samples x [labid, auc_binary, genes] table."""
    rng = np.random.default_rng(3)
    n = 60
    labels = np.array([0, 1] * (n // 2))
    data = {
        "labid": [f"X16.{i:05d}" for i in range(n)],
        "auc_binary": labels.tolist(),
    }
    for g in range(6):
        shift = 2.0 if g < 2 else 0.0
        data[f"GENE{g}"] = (
            rng.normal(size=n) + shift * (labels * 2 - 1)
        ).tolist()
    return pl.DataFrame(data)


# CSV file fixtures - write data to temporary files


@pytest.fixture
def cpm_csv(tmp_path):
    """Genes x samples CPM table with one annotation column."""
    path = tmp_path / "Gene_Counts_CPM.csv"
    pl.DataFrame(
        {
            "Gene": ["G1", "G2", "G3", "G4"],
            "Symbol": ["A", "B", "C", "D"],
            "16-00001": [1.0, 10.0, 5.0, 7.0],
            "16-00002": [2.0, 50.0, 5.0, 1.0],
            "16-00003": [3.0, 90.0, 5.0, 9.0],
            "16-00004": [4.0, 20.0, 5.0, 2.0],
        }
    ).write_csv(path)
    return path


@pytest.fixture
def drug_response_csv(tmp_path):
    """Drug response table in long format."""
    path = tmp_path / "Drug_Responses.csv"
    pl.DataFrame(
        {
            "inhibitor": ["Venetoclax"] * 4
            + ["Gilteritinib (ASP-2215)"] * 3,
            "lab_id": [
                "16-00001",
                "16-00002",
                "16-00003",
                "16-00004",
                "16-00001",
                "16-00002",
                "16-00003",
            ],
            "auc": [100.0, 200.0, 50.0, 300.0, 10.0, 30.0, 20.0],
        }
    ).write_csv(path)
    return path
