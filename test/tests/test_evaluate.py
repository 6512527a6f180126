import json

import numpy as np
import polars as pl
import pytest

from drug_response_ml.core.errors import InvalidInput
from drug_response_ml.train.evaluate import (
    ModelTrainer,
    classification_metrics,
    evaluate_holdout,
    submission_frame,
    write_submission,
)
from drug_response_ml.train.results import LinearModel
from drug_response_ml.train.selector import RegularizedClassifierSelector
from drug_response_ml.wrangle.splits import SplitManager


@pytest.fixture
def simple_model():
    return LinearModel(
        coef=np.array([2.0, 0.0]),
        intercept=0.0,
        classes=["Resistant", "Sensitive"],
        lam=0.05,
        feature_names=["GENE0", "GENE1"],
    )


def test_classification_metrics():
    metrics = classification_metrics(
        np.array([0, 1, 1, 0]), np.array([0.2, 0.8, 0.4, 0.6])
    )
    assert metrics["accuracy"] == pytest.approx(0.5)
    assert metrics["balanced_accuracy"] == pytest.approx(0.5)
    assert metrics["roc_auc"] == pytest.approx(0.75)
    assert metrics["confusion_matrix"] == [[1, 1], [1, 1]]


def test_metrics_single_class_holdout():
    metrics = classification_metrics(np.array([1, 1]), np.array([0.9, 0.3]))
    assert metrics["accuracy"] == pytest.approx(0.5)
    assert metrics["roc_auc"] is None
    assert metrics["balanced_accuracy"] is None


def test_evaluate_holdout(simple_model):
    X = np.array([[1.0, 5.0], [-1.0, 5.0], [2.0, -3.0]])
    labels = ["Sensitive", "Resistant", "Resistant"]
    evaluation = evaluate_holdout(simple_model, X, labels, sample_ids=["a", "b", "c"])

    assert evaluation.predictions.tolist() == [
        "Sensitive",
        "Resistant",
        "Sensitive",
    ]
    assert evaluation.metrics["accuracy"] == pytest.approx(2 / 3)
    assert evaluation.metrics["lambda"] == 0.05
    assert evaluation.metrics["n_test"] == 3
    assert evaluation.metrics["n_nonzero"] == 1
    assert evaluation.sample_ids == ["a", "b", "c"]


def test_evaluate_holdout_unknown_label(simple_model):
    with pytest.raises(InvalidInput, match="not among"):
        evaluate_holdout(simple_model, np.zeros((2, 2)), ["Sensitive", "Other"])


def test_submission_frame(simple_model):
    frame = submission_frame(simple_model, np.array([[1.0, 0.0], [-1.0, 0.0]]))

    assert frame.columns == ["predict", "p0"]
    assert frame["predict"].to_list() == [1, 0]
    p1 = 1 / (1 + np.exp(-2.0))
    assert frame["p0"].to_list() == pytest.approx([1 - p1, p1])


def test_write_submission(tmp_path, simple_model):
    target = write_submission(
        simple_model,
        np.array([[1.0, 0.0]]),
        tmp_path / "submissions",
        "teamA",
        "data/Venetoclax_test_data.csv",
    )

    assert target == tmp_path / "submissions" / "teamA_Venetoclax_test_data.csv"
    assert pl.read_csv(target).columns == ["predict", "p0"]


def test_write_submission_requires_team(tmp_path, simple_model):
    with pytest.raises(InvalidInput):
        write_submission(simple_model, np.zeros((1, 2)), tmp_path, "  ", "t.csv")


class TestModelTrainer:
    def test_train_and_evaluate(self, tmp_path, training_frame):
        selector = RegularizedClassifierSelector(
            lambda_grid=[0.005, 0.02, 0.1], k=3, random_seed=1
        )
        trainer = ModelTrainer(selector, output_path=tmp_path / "run")
        evaluation = trainer.train_and_evaluate(training_frame, random_state=7)

        assert trainer.selection is not None
        assert trainer.selection.model.feature_names == [
            f"GENE{g}" for g in range(6)
        ]
        assert evaluation.metrics["n_test"] == 12
        assert evaluation.metrics["accuracy"] >= 0.75
        assert evaluation.metrics["cv_accuracy"] == pytest.approx(
            trainer.selection.best_score
        )

        manifest = json.loads((tmp_path / "run" / "manifest.json").read_text())
        assert manifest["components"]["results"]["n_lambdas"] == 3

    def test_existing_holdout_is_reused(self, training_frame):
        sm = SplitManager()
        holdout = sm.create_holdout(training_frame, test_size=0.25, random_state=3)
        selector = RegularizedClassifierSelector(
            lambda_grid=[0.01, 0.1], k=3, random_seed=2
        )
        evaluation = ModelTrainer(selector, split_manager=sm).train_and_evaluate(
            training_frame
        )

        assert sm.holdout is holdout
        test_ids = holdout.filter(pl.col("split") == "test")["labid"].to_list()
        assert sorted(evaluation.sample_ids) == sorted(test_ids)

    def test_single_class_holdout(self, training_frame):
        ids = training_frame["labid"].to_list()
        # odd rows carry label 1
        test_ids = ids[1:12:2]
        sm = SplitManager()
        sm.holdout = pl.DataFrame(
            {
                "labid": ids,
                "split": ["test" if i in test_ids else "train" for i in ids],
            }
        )
        selector = RegularizedClassifierSelector(
            lambda_grid=[0.01, 0.1], k=3, random_seed=2
        )
        evaluation = ModelTrainer(selector, split_manager=sm).train_and_evaluate(
            training_frame
        )

        assert evaluation.metrics["n_test"] == 6
        assert evaluation.metrics["roc_auc"] is None
        assert evaluation.metrics["balanced_accuracy"] is None
        assert 0.0 <= evaluation.metrics["accuracy"] <= 1.0
