"""Validated feature matrix / label vector pair for drug response models."""

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import polars as pl

from drug_response_ml.core.errors import InvalidInput

DEFAULT_LABEL = "auc_binary"
DEFAULT_ID_COLUMN = "labid"


def as_feature_matrix(features: Any) -> np.ndarray:
    """Coerce `features` to a finite (N, G) float matrix.

    Raises:
        InvalidInput: if rows differ in length, values are not numeric or
            missing, or the input is not two-dimensional
    """
    if isinstance(features, pl.DataFrame):
        features = features.to_numpy()
    elif not isinstance(features, np.ndarray):
        try:
            rows = list(features)
            lengths = {len(row) for row in rows}
        except TypeError:
            raise InvalidInput(
                "Features must be a 2-D samples x genes matrix, with one row per sample"
            ) from None
        if len(lengths) > 1:
            raise InvalidInput(
                f"All samples must share the same feature count, got lengths {sorted(lengths)}"
            )
        features = rows

    try:
        X = np.asarray(features, dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Features must be numeric: {e}") from e

    if X.ndim != 2:
        raise InvalidInput(
            f"Features must be a 2-D samples x genes matrix, got {X.ndim} dimension(s)"
        )
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise InvalidInput(f"Feature matrix is empty (shape {X.shape})")
    if not np.all(np.isfinite(X)):
        n_bad = int(np.sum(~np.isfinite(X).all(axis=1)))
        raise InvalidInput(
            f"Feature matrix contains missing or non-finite values in {n_bad} sample(s)"
        )
    return X


def check_labels(labels: Any, n_samples: Optional[int] = None) -> np.ndarray:
    """Return `labels` as a 1-D array after checking length and missing values.

    None and non-finite floats (NaN, inf) count as missing.
    """
    if isinstance(labels, pl.Series):
        labels = labels.to_list()
    y = np.asarray(labels)
    if y.ndim != 1:
        y = y.ravel()
    if n_samples is not None and y.size != n_samples:
        raise InvalidInput(
            f"Label vector length ({y.size}) must match number of samples ({n_samples})"
        )
    n_missing = sum(
        1
        for value in y.tolist()
        if value is None or (isinstance(value, float) and not math.isfinite(value))
    )
    if n_missing:
        raise InvalidInput(f"Label vector contains {n_missing} missing value(s)")
    return y


def encode_labels(
    labels: Any, n_samples: Optional[int] = None
) -> Tuple[np.ndarray, List[Any]]:
    """Encode a binary label vector as 0/1.

    Classes are sorted; the first sorted value is encoded 0.

    Returns:
        Tuple of (encoded labels, [class_0, class_1])
    """
    y = check_labels(labels, n_samples=n_samples)

    try:
        classes, encoded = np.unique(y, return_inverse=True)
    except TypeError as e:
        raise InvalidInput(f"Labels are not comparable: {e}") from e

    if classes.size != 2:
        raise InvalidInput(
            f"Labels must contain exactly two distinct classes, found {classes.size}"
        )
    return encoded.astype(int).ravel(), classes.tolist()


@dataclass(frozen=True, eq=False)
class TrainingSet:
    """Samples x genes matrix with its parallel label vector.

    Labels are checked for length and missing values only; a holdout split
    may carry a single class. The two-class requirement is enforced by the
    selector.

    Attributes:
        features: (N, G) float matrix
        labels: length-N vector of original label values
        feature_names: ordered gene names (length G)
        sample_ids: ordered sample identifiers (length N)
    """

    features: np.ndarray
    labels: np.ndarray
    feature_names: List[str]
    sample_ids: List[str]

    def __post_init__(self) -> None:
        X = as_feature_matrix(self.features)
        check_labels(self.labels, n_samples=X.shape[0])
        if len(self.feature_names) != X.shape[1]:
            raise InvalidInput(
                f"feature_names length ({len(self.feature_names)}) must match feature columns ({X.shape[1]})"
            )
        if len(self.sample_ids) != X.shape[0]:
            raise InvalidInput(
                f"sample_ids length ({len(self.sample_ids)}) must match samples ({X.shape[0]})"
            )
        object.__setattr__(self, "features", X)
        object.__setattr__(self, "labels", np.asarray(self.labels))

    @property
    def n_samples(self) -> int:
        return int(self.features.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.features.shape[1])

    @property
    def classes(self) -> List[Any]:
        """Sorted distinct label values; a holdout split may hold only one."""
        return np.unique(self.labels).tolist()

    @classmethod
    def from_frame(
        cls,
        df: pl.DataFrame,
        label: str = DEFAULT_LABEL,
        id_column: Optional[str] = DEFAULT_ID_COLUMN,
        feature_columns: Optional[Sequence[str]] = None,
    ) -> "TrainingSet":
        """Build a training set from a merged samples x [label, genes] table.

        Args:
            df: one row per sample
            label: name of the binary label column
            id_column: sample identifier column, or None to use row numbers
            feature_columns: gene columns to use (defaults to every other
                column, in table order)
        """
        if label not in df.columns:
            raise InvalidInput(f"Label column '{label}' not found")
        if id_column is not None and id_column not in df.columns:
            raise InvalidInput(f"Identifier column '{id_column}' not found")

        if feature_columns is None:
            skip = {label, id_column}
            feature_columns = [c for c in df.columns if c not in skip]
        else:
            missing = [c for c in feature_columns if c not in df.columns]
            if missing:
                raise InvalidInput(
                    f"Feature columns not found: {', '.join(missing)}"
                )
        if not feature_columns:
            raise InvalidInput("Table must provide at least one feature column")

        non_numeric = [
            c for c in feature_columns if not df.schema[c].is_numeric()
        ]
        if non_numeric:
            raise InvalidInput(
                f"Feature columns must be numeric: {', '.join(non_numeric)}"
            )

        if id_column is not None:
            sample_ids = [str(s) for s in df[id_column].to_list()]
        else:
            sample_ids = [str(i) for i in range(df.height)]

        return cls(
            features=df.select(feature_columns).to_numpy(),
            labels=np.asarray(df[label].to_list()),
            feature_names=list(feature_columns),
            sample_ids=sample_ids,
        )

    def subset(self, sample_ids: Sequence[str]) -> "TrainingSet":
        """Rows matching `sample_ids`, in the order given."""
        index = {sid: i for i, sid in enumerate(self.sample_ids)}
        unknown = [sid for sid in sample_ids if sid not in index]
        if unknown:
            raise InvalidInput(f"Unknown sample ids: {', '.join(unknown[:5])}")
        rows = [index[sid] for sid in sample_ids]
        return TrainingSet(
            features=self.features[rows],
            labels=self.labels[rows],
            feature_names=list(self.feature_names),
            sample_ids=list(sample_ids),
        )

    def to_frame(
        self, label: str = DEFAULT_LABEL, id_column: str = DEFAULT_ID_COLUMN
    ) -> pl.DataFrame:
        df = pl.DataFrame(self.features, schema=self.feature_names, orient="row")
        return df.with_columns(
            pl.Series(id_column, self.sample_ids),
            pl.Series(label, self.labels.tolist()),
        ).select([id_column, label] + self.feature_names)
