from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import polars as pl
from sklearn.metrics import (
    accuracy_score,
    balanced_accuracy_score,
    confusion_matrix,
    roc_auc_score,
)

from drug_response_ml.core.errors import InvalidInput
from drug_response_ml.train.results import LinearModel, SelectionResult
from drug_response_ml.train.selector import RegularizedClassifierSelector
from drug_response_ml.wrangle.dataset import TrainingSet, as_feature_matrix
from drug_response_ml.wrangle.splits import SplitManager

logger = logging.getLogger(__name__)


@dataclass
class HoldoutEvaluation:
    """Holdout test results of a selected model.

    `probabilities` are P(model.classes[1]); `predictions` are original
    label values.
    """

    metrics: Dict[str, Any]
    model: LinearModel
    predictions: np.ndarray
    probabilities: np.ndarray
    targets: np.ndarray
    sample_ids: Optional[List[str]] = None


def _encode_against(model: LinearModel, labels: Any, n_samples: int) -> np.ndarray:
    """Encode `labels` with the model's class order (class_0 -> 0)."""
    y = np.asarray(labels, dtype=object).ravel()
    if y.size != n_samples:
        raise InvalidInput(
            f"Label vector length ({y.size}) must match number of samples ({n_samples})"
        )
    lookup = {cls: i for i, cls in enumerate(model.classes)}
    unknown = sorted({str(v) for v in y.tolist() if v not in lookup})
    if unknown:
        raise InvalidInput(
            f"Labels {unknown} are not among the model classes {model.classes}"
        )
    return np.asarray([lookup[v] for v in y.tolist()], dtype=int)


def classification_metrics(
    y_true: np.ndarray, proba: np.ndarray
) -> Dict[str, Any]:
    """Accuracy, balanced accuracy, ROC AUC and the 2x2 confusion matrix.

    Metrics that are undefined for a single-class `y_true` are None.
    """
    y_true = np.asarray(y_true, dtype=int)
    predicted = (np.asarray(proba) >= 0.5).astype(int)
    if y_true.size == 0:
        return {
            "accuracy": None,
            "balanced_accuracy": None,
            "roc_auc": None,
            "confusion_matrix": None,
        }

    both_classes = np.unique(y_true).size == 2
    return {
        "accuracy": float(accuracy_score(y_true, predicted)),
        "balanced_accuracy": float(balanced_accuracy_score(y_true, predicted))
        if both_classes
        else None,
        "roc_auc": float(roc_auc_score(y_true, proba)) if both_classes else None,
        # rows = true class, columns = predicted class
        "confusion_matrix": confusion_matrix(
            y_true, predicted, labels=[0, 1]
        ).tolist(),
    }


def evaluate_holdout(
    model: LinearModel,
    features: Any,
    labels: Any,
    sample_ids: Optional[List[str]] = None,
) -> HoldoutEvaluation:
    """Score a fitted model on an independent labelled matrix."""
    X = as_feature_matrix(features)
    y = _encode_against(model, labels, X.shape[0])
    proba = model.predict_proba(X)

    metrics = classification_metrics(y, proba)
    metrics.update(
        {
            "lambda": model.lam,
            "n_test": int(X.shape[0]),
            "n_nonzero": model.n_nonzero,
            "classes": list(model.classes),
        }
    )
    return HoldoutEvaluation(
        metrics=metrics,
        model=model,
        predictions=model.predict(X),
        probabilities=proba,
        targets=np.asarray(labels),
        sample_ids=sample_ids,
    )


def submission_frame(model: LinearModel, features: Any) -> pl.DataFrame:
    """Mini-challenge predictions: `predict` (0/1) and `p0` = P(class 0)."""
    X = as_feature_matrix(features)
    proba = model.predict_proba(X)
    return pl.DataFrame(
        {
            "predict": (proba >= 0.5).astype(int),
            "p0": 1.0 - proba,
        }
    )


def write_submission(
    model: LinearModel,
    features: Any,
    out_dir: Union[str, Path],
    team_name: str,
    test_file_name: Union[str, Path],
) -> Path:
    """Write the submission table as `<team_name>_<test file name>`."""
    team = team_name.strip()
    if not team:
        raise InvalidInput("team_name must not be empty")
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    target = out / f"{team}_{Path(test_file_name).name}"
    submission_frame(model, features).write_csv(target)
    logger.info("Wrote submission %s", target)
    return target


class ModelTrainer:
    """Select lambda on the holdout training split and evaluate on the test
    split.

    input:
        - selector: configured RegularizedClassifierSelector
        - split_manager: SplitManager with a holdout already created, or one
          that will be created on `train_and_evaluate`
        - output_path: optional directory for the exported selection result
    """

    def __init__(
        self,
        selector: RegularizedClassifierSelector,
        split_manager: Optional[SplitManager] = None,
        output_path: Optional[Union[str, Path]] = None,
    ) -> None:
        self.selector = selector
        self.split_manager = split_manager or SplitManager()
        self.output_path = Path(output_path) if output_path else None
        self.selection: Optional[SelectionResult] = None

    def train_and_evaluate(
        self,
        data: pl.DataFrame,
        test_size: float = 0.2,
        random_state: int = 42,
    ) -> HoldoutEvaluation:
        """Steps:
        1. Create the stratified holdout split unless one exists.
        2. Run cross-validated selection on the training rows.
        3. Evaluate the refit model on the test rows.
        4. Export the selection result when `output_path` is set.
        """
        sm = self.split_manager
        if sm.holdout is None:
            sm.create_holdout(
                data, test_size=test_size, random_state=random_state
            )

        train = TrainingSet.from_frame(
            sm.train_frame(data), label=sm.label, id_column=sm.id_column
        )
        test_df = sm.test_frame(data)
        if test_df.is_empty():
            raise InvalidInput("Holdout split contains no test samples")
        test = TrainingSet.from_frame(
            test_df,
            label=sm.label,
            id_column=sm.id_column,
            feature_columns=train.feature_names,
        )

        self.selection = self.selector.fit_training_set(train)
        evaluation = evaluate_holdout(
            self.selection.model,
            test.features,
            test.labels,
            sample_ids=test.sample_ids,
        )
        evaluation.metrics["cv_" + self.selection.metric] = (
            self.selection.best_score
        )

        if self.output_path is not None:
            self.selection.export_result(self.output_path)
        return evaluation
