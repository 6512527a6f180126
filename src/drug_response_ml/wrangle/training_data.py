"""Build per-drug training tables from BeatAML CPM counts and drug responses.

Each drug gets one table with a `labid` column, a binary `auc_binary` label
(1 when the sample's AUC is at or below the drug's median AUC, i.e. the
sample is sensitive) and the CPM values of the most variable genes among the
samples tested with that drug.

Usage:
    from drug_response_ml.wrangle.training_data import write_training_files

    write_training_files(
        "datasets/beataml/real/Gene_Counts_CPM.csv",
        "datasets/beataml/real/Drug_Responses.csv",
        "datasets/beataml/real",
    )
"""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Union

import numpy as np
import polars as pl

logger = logging.getLogger(__name__)

ID_COLUMN = "labid"
LABEL_COLUMN = "auc_binary"

DRUGS_IN_CLINICAL_PRACTICE = (
    "Gilteritinib..ASP.2215.",
    "Lenalidomide",
    "Midostaurin",
    "Venetoclax",
)

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9._]")
_VALID_NAME_START = re.compile(r"[A-Za-z]|\.(?![0-9])")


def make_name(value: str) -> str:
    """Turn `value` into a syntactically valid name the way R's
    `make.names` does (invalid characters become dots, an `X` is prefixed
    when the name does not start with a letter or a dot not followed by a
    digit)."""
    name = _INVALID_NAME_CHARS.sub(".", str(value))
    if not _VALID_NAME_START.match(name):
        name = "X" + name
    return name


def make_names(values: Iterable[str]) -> List[str]:
    return [make_name(v) for v in values]


def load_cpm(path: Union[str, Path], n_annotation_columns: int = 2) -> pl.DataFrame:
    """Load a genes x samples CPM table and return it as samples x genes.

    The first column holds the gene identifier, the next
    `n_annotation_columns - 1` columns are annotations, and every remaining
    column is a sample.

    Returns:
        DataFrame with a `labid` column followed by one column per gene
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"CPM file not found: {path}")

    raw = pl.read_csv(path)
    if raw.width <= n_annotation_columns:
        raise ValueError(
            f"CPM table has no sample columns after {n_annotation_columns} annotation column(s)"
        )
    genes = [str(g) for g in raw[raw.columns[0]].to_list()]
    sample_cols = raw.columns[n_annotation_columns:]

    values = raw.select(sample_cols).cast(pl.Float64)
    cpm = values.transpose(column_names=genes)
    return cpm.with_columns(
        pl.Series(ID_COLUMN, make_names(sample_cols))
    ).select([ID_COLUMN] + genes)


def load_drug_response(path: Union[str, Path]) -> pl.DataFrame:
    """Load the drug response table with normalised inhibitor and sample
    names.

    Requires `inhibitor`, `lab_id` and `auc` columns; `lab_id` is renamed to
    `labid` so it joins with `load_cpm` output.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Drug response file not found: {path}")

    df = pl.read_csv(path)
    missing = [c for c in ("inhibitor", "lab_id", "auc") if c not in df.columns]
    if missing:
        raise ValueError(
            f"Drug response table is missing column(s): {', '.join(missing)}"
        )

    return df.with_columns(
        pl.Series("inhibitor", make_names(df["inhibitor"].to_list())),
        pl.Series("lab_id", make_names(df["lab_id"].to_list())),
        pl.col("auc").cast(pl.Float64),
    ).rename({"lab_id": ID_COLUMN})


def binarize_auc(response: pl.DataFrame) -> pl.DataFrame:
    """Add `auc_binary`: 1 when `auc` is at or below the median, else 0."""
    median = response["auc"].median()
    return response.with_columns(
        pl.when(pl.col("auc") <= median)
        .then(1)
        .otherwise(0)
        .cast(pl.Int64)
        .alias(LABEL_COLUMN)
    )


def top_variable_genes(cpm: pl.DataFrame, n_genes: int = 50) -> List[str]:
    """Names of the `n_genes` genes with the largest sample standard
    deviation, returned in the table's column order.

    Genes whose deviation is undefined (fewer than two samples) are never
    selected.
    """
    if n_genes < 1:
        raise ValueError("n_genes must be at least 1")
    genes = [c for c in cpm.columns if c != ID_COLUMN]
    sds = np.asarray(
        cpm.select([pl.col(g).std(ddof=1) for g in genes]).row(0),
        dtype=float,
    )
    defined = np.flatnonzero(~np.isnan(sds))
    order = defined[np.argsort(-sds[defined], kind="stable")]
    keep = set(order[:n_genes].tolist())
    return [g for i, g in enumerate(genes) if i in keep]


def make_training_data(
    cpm: pl.DataFrame,
    response: pl.DataFrame,
    drug: str,
    n_genes: int = 50,
) -> pl.DataFrame:
    """Merge the binarised response of one drug with its most variable genes.

    Returns:
        DataFrame with `labid`, `auc_binary` and the selected gene columns,
        one row per sample present in both tables, sorted by `labid`
    """
    drug_response = response.filter(pl.col("inhibitor") == drug).select(
        [ID_COLUMN, "auc"]
    )
    if drug_response.is_empty():
        raise ValueError(f"No drug response rows for inhibitor '{drug}'")
    drug_response = binarize_auc(drug_response)

    drug_cpm = cpm.filter(pl.col(ID_COLUMN).is_in(drug_response[ID_COLUMN]))
    if drug_cpm.is_empty():
        raise ValueError(f"No CPM samples match the responses for '{drug}'")
    genes = top_variable_genes(drug_cpm, n_genes=n_genes)

    return (
        drug_response.select([ID_COLUMN, LABEL_COLUMN])
        .join(drug_cpm.select([ID_COLUMN] + genes), on=ID_COLUMN, how="inner")
        .sort(ID_COLUMN)
    )


def write_training_files(
    cpm_path: Union[str, Path],
    response_path: Union[str, Path],
    out_dir: Union[str, Path],
    drugs: Sequence[str] = DRUGS_IN_CLINICAL_PRACTICE,
    n_genes: int = 50,
) -> Dict[str, Path]:
    """Write `<drug>_training_data.csv` for every drug in `drugs`.

    Returns:
        Mapping of drug name to the written file
    """
    cpm = load_cpm(cpm_path)
    response = load_drug_response(response_path)
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    written: Dict[str, Path] = {}
    for drug in drugs:
        data = make_training_data(cpm, response, drug, n_genes=n_genes)
        target = out / f"{drug}_training_data.csv"
        data.write_csv(target)
        logger.info(
            "Wrote %s: %d samples, %d genes",
            target,
            data.height,
            data.width - 2,
        )
        written[drug] = target
    return written
