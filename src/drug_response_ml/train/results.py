"""Containers for cross-validated lambda selection and their export helpers.

Typical workflow:

    result = RegularizedClassifierSelector(config).select_and_fit(X, y)
    # cv table, coefficients, fold assignment and the pickled model
    result.export_result("out/venetoclax")

`export_result(...)` writes these artifacts side-by-side:
- `results.ndjson`
- `cv_results.csv`
- `fold_assignment.csv`
- `coefficients.csv`
- `models/selected_model.pkl`
- `manifest.json`

Use `SelectionResult.save_model(model, path)` to pickle a model on demand and
`load_model` to restore it later.
"""

import gzip
import json
import pickle
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

import numpy as np
import polars as pl
from scipy.special import expit

from drug_response_ml.core.errors import InvalidInput


@dataclass
class LinearModel:
    """Fitted penalised logistic classifier on the original feature scale.

    `classes` holds the two original label values in encoded order: the
    probability returned by `predict_proba` is the probability of
    `classes[1]`.
    """

    coef: np.ndarray
    intercept: float
    classes: Sequence[Any]
    lam: float
    feature_names: Optional[List[str]] = None
    n_iter: Optional[int] = None

    def __post_init__(self) -> None:
        self.coef = np.asarray(self.coef, dtype=float).ravel()
        self.intercept = float(self.intercept)
        self.classes = list(self.classes)
        if self.feature_names is not None:
            self.feature_names = [str(name) for name in self.feature_names]

    @property
    def n_features(self) -> int:
        return int(self.coef.size)

    @property
    def n_nonzero(self) -> int:
        """Number of genes with a non-zero weight."""
        return int(np.count_nonzero(self.coef))

    def decision_function(self, X: Any) -> np.ndarray:
        X_arr = np.asarray(X, dtype=float)
        if X_arr.ndim != 2 or X_arr.shape[1] != self.n_features:
            raise InvalidInput(
                f"Expected a matrix with {self.n_features} columns, "
                f"got shape {X_arr.shape}"
            )
        return X_arr @ self.coef + self.intercept

    def predict_proba(self, X: Any) -> np.ndarray:
        """Probability of `classes[1]` for each row of `X`."""
        return expit(self.decision_function(X))

    def predict_encoded(self, X: Any) -> np.ndarray:
        """Predicted class as 0/1, thresholding the probability at 0.5."""
        return (self.predict_proba(X) >= 0.5).astype(int)

    def predict(self, X: Any) -> np.ndarray:
        """Predicted class in the original label values."""
        return np.asarray(self.classes, dtype=object)[
            self.predict_encoded(X)
        ]

    def coefficients_frame(self) -> pl.DataFrame:
        """Non-zero weights ranked by absolute magnitude.

        This is the feature-importance view used to interpret which genes
        drive the predicted drug response.
        """
        names = self.feature_names or [
            f"feature_{i}" for i in range(self.n_features)
        ]
        order = np.argsort(-np.abs(self.coef), kind="stable")
        active = [int(idx) for idx in order if self.coef[int(idx)] != 0]
        rows = [
            {
                "feature": names[idx],
                "weight": float(self.coef[idx]),
                "abs_weight": float(abs(self.coef[idx])),
                "rank": rank,
            }
            for rank, idx in enumerate(active, start=1)
        ]
        if not rows:
            return pl.DataFrame(
                schema={
                    "feature": pl.Utf8,
                    "weight": pl.Float64,
                    "abs_weight": pl.Float64,
                    "rank": pl.Int64,
                }
            )
        return pl.DataFrame(rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lambda": self.lam,
            "intercept": self.intercept,
            "coef": [float(v) for v in self.coef],
            "classes": [_serialize_value(c) for c in self.classes],
            "feature_names": self.feature_names,
            "n_nonzero": self.n_nonzero,
            "n_iter": self.n_iter,
        }


class CVResultTable:
    """Scores indexed by (lambda, fold); NaN marks a missing cell.

    Rows follow the order of the lambda grid given to the selector and
    columns are folds `1..k`.
    """

    def __init__(
        self,
        lambdas: Sequence[float],
        scores: Any,
        metric: str = "accuracy",
    ) -> None:
        self.lambdas = np.asarray(lambdas, dtype=float)
        self.scores = np.asarray(scores, dtype=float)
        if self.scores.ndim != 2 or self.scores.shape[0] != self.lambdas.size:
            raise InvalidInput(
                "CV table must have one row per lambda, got "
                f"{self.scores.shape} for {self.lambdas.size} lambdas"
            )
        self.metric = metric

    @property
    def n_folds(self) -> int:
        return int(self.scores.shape[1])

    @property
    def fold_ids(self) -> List[int]:
        return list(range(1, self.n_folds + 1))

    @property
    def n_valid_folds(self) -> np.ndarray:
        """Per-lambda count of folds holding a score."""
        return np.sum(~np.isnan(self.scores), axis=1)

    @property
    def mean_scores(self) -> np.ndarray:
        """Per-lambda mean over the folds that hold a score.

        Lambdas with no score at all get NaN.
        """
        valid = ~np.isnan(self.scores)
        counts = valid.sum(axis=1)
        sums = np.where(valid, self.scores, 0.0).sum(axis=1)
        means = np.full(self.lambdas.size, np.nan)
        has_data = counts > 0
        means[has_data] = sums[has_data] / counts[has_data]
        return means

    def reliable_mask(self, min_valid_folds: int) -> np.ndarray:
        return self.n_valid_folds >= min_valid_folds

    def column(self, fold: int) -> np.ndarray:
        """Scores of one fold (fold ids start at 1)."""
        if not 1 <= fold <= self.n_folds:
            raise IndexError(f"fold must be within 1..{self.n_folds}")
        return self.scores[:, fold - 1].copy()

    def to_frame(self, min_valid_folds: Optional[int] = None) -> pl.DataFrame:
        """Return the table as a polars DataFrame, one row per lambda."""
        data: Dict[str, Any] = {"lambda": self.lambdas.tolist()}
        for fold in self.fold_ids:
            data[f"fold_{fold}"] = [
                None if np.isnan(v) else float(v)
                for v in self.scores[:, fold - 1]
            ]
        data["mean_score"] = [
            None if np.isnan(v) else float(v) for v in self.mean_scores
        ]
        data["n_valid_folds"] = [int(v) for v in self.n_valid_folds]
        frame = pl.DataFrame(data)
        if min_valid_folds is not None:
            frame = frame.with_columns(
                (pl.col("n_valid_folds") >= min_valid_folds).alias("reliable")
            )
        return frame

    def __repr__(self) -> str:
        return (
            f"CVResultTable(metric={self.metric!r}, "
            f"n_lambdas={self.lambdas.size}, n_folds={self.n_folds})"
        )


@dataclass
class SelectionResult:
    """Outcome of one cross-validated selection run.

    Unpacks as `(selected_lambda, model, cv_table)`.
    """

    selected_lambda: float
    model: LinearModel
    cv_table: CVResultTable
    fold_assignment: np.ndarray
    metric: str
    seed: int
    min_valid_folds: int
    unreliable_lambdas: List[float] = field(default_factory=list)
    refit_failures: Dict[float, str] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Any]:
        return iter((self.selected_lambda, self.model, self.cv_table))

    @property
    def best_score(self) -> float:
        idx = int(np.flatnonzero(self.cv_table.lambdas == self.selected_lambda)[0])
        return float(self.cv_table.mean_scores[idx])

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable representation of this result."""
        return {
            "selected_lambda": self.selected_lambda,
            "best_score": _serialize_value(self.best_score),
            "metric": self.metric,
            "seed": self.seed,
            "k": self.cv_table.n_folds,
            "min_valid_folds": self.min_valid_folds,
            "lambda_grid": _serialize_value(self.cv_table.lambdas),
            "mean_scores": _serialize_value(self.cv_table.mean_scores),
            "unreliable_lambdas": _serialize_value(self.unreliable_lambdas),
            "refit_failures": {
                str(lam): msg for lam, msg in self.refit_failures.items()
            },
            "model": self.model.to_dict(),
        }

    def to_json(
        self, path: Optional[Union[str, Path]] = None, indent: int = 2
    ) -> str:
        """Return a JSON string for this result and optionally write it to
        disk."""
        j = json.dumps(self.to_dict(), indent=indent)
        if path:
            Path(path).write_text(j)
        return j

    def export_result(self, path: Union[str, Path], indent: int = 2) -> None:
        """Export tables, the pickled model and a manifest under `path`."""
        out_dir = Path(path)
        if out_dir.exists() and out_dir.is_file():
            out_dir = out_dir.parent
        out_dir.mkdir(parents=True, exist_ok=True)

        with (out_dir / "results.ndjson").open("w", encoding="utf-8") as f:
            f.write(json.dumps(self.to_dict(), default=str) + "\n")

        self.cv_table.to_frame(self.min_valid_folds).write_csv(
            out_dir / "cv_results.csv"
        )
        pl.DataFrame(
            {
                "sample_index": list(range(self.fold_assignment.size)),
                "fold": [int(f) for f in self.fold_assignment],
            }
        ).write_csv(out_dir / "fold_assignment.csv")
        coefficients = self.model.coefficients_frame()
        coefficients.write_csv(out_dir / "coefficients.csv")

        model_path = out_dir / "models" / "selected_model.pkl"
        SelectionResult.save_model(self.model, model_path)

        manifest = {
            "version": "1.0",
            "created": datetime.now().isoformat(),
            "components": {
                "results": {
                    "files": [
                        "results.ndjson",
                        "cv_results.csv",
                        "fold_assignment.csv",
                        "coefficients.csv",
                    ],
                    "n_lambdas": int(self.cv_table.lambdas.size),
                    "n_folds": self.cv_table.n_folds,
                    "n_nonzero_coefficients": coefficients.height,
                },
                "models": {
                    "path": "models",
                    "files": [str(model_path.relative_to(out_dir))],
                },
            },
        }
        (out_dir / "manifest.json").write_text(
            json.dumps(manifest, indent=indent)
        )

    @staticmethod
    def save_model(
        model: Any, path: Union[str, Path], compress: bool = False
    ) -> Path:
        """Pickle `model` to `path`; gzip it when `compress` is set."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        opener = gzip.open if compress else open
        with opener(target, "wb") as f:
            pickle.dump(model, f, protocol=pickle.HIGHEST_PROTOCOL)
        return target

    @staticmethod
    def load_model(path: Union[str, Path]) -> Any:
        """Unpickle a model written by `save_model` (`.gz` means gzip)."""
        source = Path(path)
        if not source.exists():
            raise FileNotFoundError(f"Model file not found: {source}")
        opener = gzip.open if source.suffix == ".gz" else open
        with opener(source, "rb") as f:
            return pickle.load(f)


def _serialize_value(v: Any) -> Any:
    """Make values JSON/Polars-friendly.

    numpy scalars/arrays are converted, NaN becomes None, lists/tuples are
    recursively serialized and Paths become strings.
    """
    if isinstance(v, Path):
        return str(v)
    if v is None:
        return None
    if isinstance(v, (np.floating, float)):
        return None if np.isnan(v) else float(v)
    if isinstance(v, (np.integer,)):
        return int(v)
    if isinstance(v, (np.bool_,)):
        return bool(v)
    if isinstance(v, (str, bool, int)):
        return v
    if isinstance(v, np.ndarray):
        return [_serialize_value(x) for x in v.tolist()]
    if isinstance(v, (list, tuple)):
        return [_serialize_value(x) for x in v]
    return str(v)
