"""Cross-validated regularization path selection for penalised logistic
classifiers.

The selector assigns every sample to one of `k` folds at random (not
stratified), fits an L1 / elastic-net logistic regularization path on each
training split, scores every lambda on the held-out fold, and refits the
winning lambda on the whole training set.

Usage:
    from drug_response_ml.train.selector import RegularizedClassifierSelector

    selector = RegularizedClassifierSelector(k=5, random_seed=42)
    best_lambda, model, cv_table = selector.select_and_fit(X, y)
"""

import dataclasses
import logging
import warnings
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from joblib import Parallel, delayed
from sklearn.base import clone
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import (
    accuracy_score,
    balanced_accuracy_score,
    roc_auc_score,
)

from drug_response_ml.core.config import ScoringMetric, SelectorConfig
from drug_response_ml.core.errors import (
    InvalidInput,
    NumericalFailure,
    UnreliableSelection,
)
from drug_response_ml.train.results import (
    CVResultTable,
    LinearModel,
    SelectionResult,
)
from drug_response_ml.wrangle.dataset import (
    TrainingSet,
    as_feature_matrix,
    encode_labels,
)

logger = logging.getLogger(__name__)

# mean scores are compared at this precision when breaking ties
_TIE_DECIMALS = 12

PathFit = Union[LinearModel, NumericalFailure]


def assign_folds(n_samples: int, k: int, random_seed: int) -> np.ndarray:
    """Draw a fold id in 1..k for every sample, independently and uniformly.

    Folds are neither stratified nor balanced. The generator is local to the
    call so repeated or concurrent runs with the same seed agree.
    """
    rng = np.random.default_rng(random_seed)
    return rng.integers(1, k + 1, size=n_samples)


def _penalty_params(l1_ratio: float) -> Dict[str, Any]:
    # releases before 1.8 only honour l1_ratio under the elasticnet penalty
    if LogisticRegression().get_params().get("penalty") == "l2":
        return {"penalty": "elasticnet", "l1_ratio": l1_ratio}
    return {"l1_ratio": l1_ratio}


def _standardize(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    means = X.mean(axis=0)
    scales = X.std(axis=0)
    scales[scales == 0] = 1.0
    return (X - means) / scales, means, scales


def fit_regularization_path(
    X: np.ndarray,
    y: np.ndarray,
    lambdas: Sequence[float],
    l1_ratio: float = 1.0,
    max_iter: int = 10000,
    tol: float = 1e-4,
    standardize: bool = True,
    random_state: int = 0,
    classes: Optional[Sequence[Any]] = None,
    feature_names: Optional[List[str]] = None,
) -> List[PathFit]:
    """Fit one penalised logistic model per lambda on (X, y).

    Each lambda minimises the mean binomial deviance plus
    `lambda * (l1_ratio * |w|_1 + (1 - l1_ratio) / 2 * |w|_2^2)`. Lambdas are
    fitted from the largest to the smallest, warm-starting each fit from the
    previous solution. Coefficients are returned on the original feature
    scale.

    Args:
        X: (n, G) feature matrix
        y: 0/1 encoded labels
        lambdas: regularization strengths, in any order
        classes: original label values for the returned models

    Returns:
        List aligned with `lambdas` holding a `LinearModel`, or the
        `NumericalFailure` explaining why that lambda could not be fitted.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=int)
    lams = np.asarray(lambdas, dtype=float)
    classes = list(classes) if classes is not None else [0, 1]
    results: List[PathFit] = [
        NumericalFailure("not fitted", lam=float(lam)) for lam in lams
    ]

    if np.unique(y).size < 2:
        return [
            NumericalFailure(
                "training subset holds a single class", lam=float(lam)
            )
            for lam in lams
        ]

    if standardize:
        Xs, means, scales = _standardize(X)
    else:
        Xs = X
        means = np.zeros(X.shape[1])
        scales = np.ones(X.shape[1])

    n_train = X.shape[0]
    estimator = LogisticRegression(
        solver="saga",
        C=1.0,
        max_iter=max_iter,
        tol=tol,
        warm_start=True,
        random_state=random_state,
        **_penalty_params(l1_ratio),
    )

    for idx in np.argsort(-lams, kind="stable"):
        lam = float(lams[idx])
        estimator.set_params(C=1.0 / (lam * n_train))
        try:
            coef, intercept, n_iter = _fit_once(estimator, Xs, y, lam)
        except NumericalFailure as exc:
            results[idx] = exc
            # a diverged solution is a poor starting point for the next lambda
            estimator = clone(estimator)
            continue

        weights = coef / scales
        results[idx] = LinearModel(
            coef=weights,
            intercept=intercept - float(np.dot(weights, means)),
            classes=classes,
            lam=lam,
            feature_names=feature_names,
            n_iter=n_iter,
        )
    return results


def _fit_once(
    estimator: LogisticRegression, X: np.ndarray, y: np.ndarray, lam: float
) -> Tuple[np.ndarray, float, int]:
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        estimator.fit(X, y)

    for w in caught:
        if issubclass(w.category, ConvergenceWarning):
            raise NumericalFailure(
                f"fit did not converge at lambda={lam:g} "
                f"within {estimator.max_iter} iterations",
                lam=lam,
            )
        warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

    coef = np.asarray(estimator.coef_, dtype=float).ravel().copy()
    intercept = float(np.asarray(estimator.intercept_).ravel()[0])
    if not (np.all(np.isfinite(coef)) and np.isfinite(intercept)):
        raise NumericalFailure(
            f"non-finite coefficients at lambda={lam:g}", lam=lam
        )
    n_iter = int(np.max(estimator.n_iter_))
    return coef, intercept, n_iter


def fit_l1_logistic(
    X: np.ndarray,
    y: np.ndarray,
    lam: float,
    **kwargs: Any,
) -> LinearModel:
    """Fit a single lambda, raising `NumericalFailure` when it fails."""
    fitted = fit_regularization_path(X, y, [lam], **kwargs)[0]
    if isinstance(fitted, NumericalFailure):
        raise fitted
    return fitted


def score_predictions(
    metric: ScoringMetric, y_true: np.ndarray, proba: np.ndarray
) -> float:
    """Score 0/1 labels against P(class 1); NaN when the metric is undefined."""
    predicted = (proba >= 0.5).astype(int)
    if metric is ScoringMetric.ACCURACY:
        return float(accuracy_score(y_true, predicted))
    if metric is ScoringMetric.BALANCED_ACCURACY:
        if np.unique(y_true).size < 2:
            return float("nan")
        return float(balanced_accuracy_score(y_true, predicted))
    if metric is ScoringMetric.ROC_AUC:
        if np.unique(y_true).size < 2:
            return float("nan")
        return float(roc_auc_score(y_true, proba))
    raise InvalidInput(f"Unsupported metric: {metric}")


def _score_fold(
    fold: int,
    X: np.ndarray,
    y: np.ndarray,
    fold_assignment: np.ndarray,
    lambdas: np.ndarray,
    metric: ScoringMetric,
    fit_kwargs: Dict[str, Any],
) -> Tuple[int, np.ndarray]:
    """Fit the path without `fold` and score every lambda on it."""
    val_mask = fold_assignment == fold
    X_val, y_val = X[val_mask], y[val_mask]
    path = fit_regularization_path(
        X[~val_mask], y[~val_mask], lambdas, **fit_kwargs
    )

    scores = np.full(lambdas.size, np.nan)
    for i, fitted in enumerate(path):
        if isinstance(fitted, NumericalFailure):
            logger.warning(
                "Fold %d, lambda=%g: %s; recording as missing",
                fold,
                lambdas[i],
                fitted,
            )
            continue
        score = score_predictions(metric, y_val, fitted.predict_proba(X_val))
        if np.isnan(score):
            logger.warning(
                "Fold %d, lambda=%g: %s undefined on this fold; recording as missing",
                fold,
                lambdas[i],
                metric.value,
            )
        scores[i] = score
    return fold, scores


def rank_lambdas(
    lambdas: np.ndarray, mean_scores: np.ndarray, eligible: np.ndarray
) -> List[int]:
    """Indices of eligible lambdas, best first.

    Ordered by descending mean score; equal scores are ordered by ascending
    lambda, so the smallest of several tied lambdas comes first.
    """
    candidates = [int(i) for i in np.flatnonzero(eligible)]
    return sorted(
        candidates,
        key=lambda i: (-round(float(mean_scores[i]), _TIE_DECIMALS), lambdas[i]),
    )


class RegularizedClassifierSelector:
    """Choose a regularization strength by k-fold CV and refit on all samples.

    The selector holds configuration only; every call to `select_and_fit` is
    independent.
    """

    def __init__(
        self, config: Optional[SelectorConfig] = None, **overrides: Any
    ) -> None:
        """Create a selector.

        Args:
            config: selector configuration; defaults to `SelectorConfig()`
            **overrides: individual `SelectorConfig` fields to replace
        """
        if config is None:
            config = SelectorConfig(**overrides)
        elif overrides:
            config = dataclasses.replace(config, **overrides)
        self.config = config

    def _fit_kwargs(self, random_seed: int) -> Dict[str, Any]:
        return {
            "l1_ratio": self.config.l1_ratio,
            "max_iter": self.config.max_iter,
            "tol": self.config.tol,
            "standardize": self.config.standardize,
            "random_state": random_seed,
        }

    def _validate(
        self, features: Any, labels: Any, lambda_grid: Any, k: Any
    ) -> Tuple[np.ndarray, np.ndarray, List[Any], np.ndarray, int]:
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
            raise InvalidInput(f"k must be an integer, got {k!r}")
        k = int(k)
        if k < 2:
            raise InvalidInput(f"k must be at least 2, got {k}")

        grid = np.asarray(list(lambda_grid), dtype=float)
        if grid.size == 0:
            raise InvalidInput("lambda grid must not be empty")
        if not np.all(np.isfinite(grid)) or np.any(grid <= 0):
            raise InvalidInput("lambda grid values must be finite and > 0")
        if np.unique(grid).size != grid.size:
            raise InvalidInput("lambda grid values must be distinct")

        X = as_feature_matrix(features)
        n_samples = X.shape[0]
        if n_samples < k:
            raise InvalidInput(
                f"Need at least k={k} samples for {k}-fold CV, got {n_samples}"
            )
        y, classes = encode_labels(labels, n_samples=n_samples)
        return X, y, classes, grid, k

    def select_and_fit(
        self,
        features: Any,
        labels: Any,
        lambda_grid: Optional[Sequence[float]] = None,
        k: Optional[int] = None,
        random_seed: Optional[int] = None,
        feature_names: Optional[List[str]] = None,
    ) -> SelectionResult:
        """Run k-fold CV over the lambda grid and refit the best lambda.

        Args:
            features: (N, G) numeric matrix, one row per sample
            labels: length-N vector with exactly two distinct values
            lambda_grid: candidate strengths (defaults to the configured grid)
            k: number of folds (defaults to the configured value)
            random_seed: seed for the fold assignment and the solver
            feature_names: optional gene names carried onto the model

        Returns:
            SelectionResult, which unpacks as
            `(selected_lambda, model, cv_table)`.

        Raises:
            InvalidInput: bad shapes, grid, k, or a non-binary label vector
            UnreliableSelection: no lambda kept enough valid folds
            NumericalFailure: the final refit could not be completed
        """
        cfg = self.config
        lambda_grid = cfg.lambda_grid if lambda_grid is None else lambda_grid
        k = cfg.k if k is None else k
        seed = cfg.random_seed if random_seed is None else int(random_seed)

        X, y, classes, grid, k = self._validate(features, labels, lambda_grid, k)
        if feature_names is not None and len(feature_names) != X.shape[1]:
            raise InvalidInput(
                f"feature_names length ({len(feature_names)}) must match feature columns ({X.shape[1]})"
            )

        fold_assignment = assign_folds(X.shape[0], k, seed)
        fold_sizes = np.bincount(fold_assignment, minlength=k + 1)[1:]
        empty = [int(f) + 1 for f in np.flatnonzero(fold_sizes == 0)]
        if empty:
            raise InvalidInput(
                f"Random fold assignment left fold(s) {empty} empty; "
                "use fewer folds or another seed"
            )

        fit_kwargs = self._fit_kwargs(seed)
        fit_kwargs["classes"] = classes
        n_jobs = cfg.n_jobs if cfg.n_jobs < 1 else min(cfg.n_jobs, k)
        fold_outputs = Parallel(n_jobs=n_jobs)(
            delayed(_score_fold)(
                fold, X, y, fold_assignment, grid, cfg.metric, fit_kwargs
            )
            for fold in range(1, k + 1)
        )

        scores = np.full((grid.size, k), np.nan)
        for fold, column in fold_outputs:
            scores[:, fold - 1] = column
        table = CVResultTable(grid, scores, metric=cfg.metric.value)

        min_valid = cfg.resolved_min_valid_folds(k)
        mean_scores = table.mean_scores
        reliable = table.reliable_mask(min_valid)
        unreliable = [float(lam) for lam in grid[~reliable]]
        for lam, count in zip(grid[~reliable], table.n_valid_folds[~reliable]):
            logger.warning(
                "lambda=%g has %d valid fold(s) (< %d); excluded from selection",
                lam,
                count,
                min_valid,
            )

        eligible = reliable & ~np.isnan(mean_scores)
        if not eligible.any():
            raise UnreliableSelection(
                f"No lambda has at least {min_valid} valid fold(s) out of {k}"
            )

        ranking = rank_lambdas(grid, mean_scores, eligible)
        model, selected, refit_failures = self._refit(
            X, y, grid, ranking, fit_kwargs, feature_names
        )
        best = int(np.flatnonzero(grid == selected)[0])
        logger.info(
            "Selected lambda=%g (mean %s=%.4f over %d of %d folds, %d non-zero weights)",
            selected,
            cfg.metric.value,
            mean_scores[best],
            table.n_valid_folds[best],
            k,
            model.n_nonzero,
        )

        return SelectionResult(
            selected_lambda=selected,
            model=model,
            cv_table=table,
            fold_assignment=fold_assignment,
            metric=cfg.metric.value,
            seed=seed,
            min_valid_folds=min_valid,
            unreliable_lambdas=unreliable,
            refit_failures=refit_failures,
        )

    def _refit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        grid: np.ndarray,
        ranking: List[int],
        fit_kwargs: Dict[str, Any],
        feature_names: Optional[List[str]],
    ) -> Tuple[LinearModel, float, Dict[float, str]]:
        """Refit on every sample, walking down the ranking on failure."""
        failures: Dict[float, str] = {}
        last_error: Optional[NumericalFailure] = None
        for idx in ranking:
            lam = float(grid[idx])
            try:
                model = fit_l1_logistic(
                    X, y, lam, feature_names=feature_names, **fit_kwargs
                )
            except NumericalFailure as exc:
                failures[lam] = str(exc)
                if not self.config.refit_fallback:
                    raise
                logger.warning(
                    "Refit at lambda=%g failed (%s); trying the next-best lambda",
                    lam,
                    exc,
                )
                last_error = exc
                continue
            return model, lam, failures

        raise NumericalFailure(
            f"Refit failed for every eligible lambda ({len(failures)} tried)",
            lam=float(grid[ranking[-1]]),
        ) from last_error

    def fit_training_set(
        self, training_set: TrainingSet, **kwargs: Any
    ) -> SelectionResult:
        """`select_and_fit` on a `TrainingSet`, keeping its gene names."""
        return self.select_and_fit(
            training_set.features,
            training_set.labels,
            feature_names=training_set.feature_names,
            **kwargs,
        )


def select_and_fit(
    features: Any,
    labels: Any,
    lambda_grid: Sequence[float],
    k: int,
    random_seed: int,
    **config: Any,
) -> SelectionResult:
    """Functional form of `RegularizedClassifierSelector.select_and_fit`."""
    selector = RegularizedClassifierSelector(**config)
    return selector.select_and_fit(
        features, labels, lambda_grid=lambda_grid, k=k, random_seed=random_seed
    )
