"""Stratified train/test holdout split upstream of lambda selection."""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

import polars as pl

from drug_response_ml.wrangle.training_data import ID_COLUMN, LABEL_COLUMN

logger = logging.getLogger(__name__)


class SplitManager:
    """Manages the train/test holdout split for a single label.

    The split is stratified by class so both classes keep roughly the same
    proportion in train and test. Cross-validation folds inside the training
    part are drawn separately by the selector.

    Attributes:
        label: Name of the binary label column
        id_column: Name of the sample identifier column
        holdout: DataFrame with {id_column, split} columns ("train"/"test")
    """

    def __init__(self, label: str = LABEL_COLUMN, id_column: str = ID_COLUMN):
        self.label = label
        self.id_column = id_column
        self.holdout: Optional[pl.DataFrame] = None

    def create_holdout(
        self,
        data: pl.DataFrame,
        grouping: Optional[str] = None,
        test_size: float = 0.2,
        random_state: int = 42,
    ) -> pl.DataFrame:
        """Create holdout train/test split.

        Args:
            data: DataFrame with id, label, and optional grouping columns
            grouping: Column name for grouping samples (e.g. patient), so all
                samples of a group land on the same side
            test_size: Fraction of samples for test set
            random_state: Random seed for reproducibility

        Returns:
            DataFrame with {id_column, split} columns
        """
        if not 0.0 < test_size < 1.0:
            raise ValueError(f"test_size must be within (0, 1), got {test_size}")
        required = [self.id_column, self.label]
        if grouping is not None:
            required.append(grouping)
        for col in required:
            if col not in data.columns:
                raise ValueError(f"Column '{col}' not found in data")

        train_ids, test_ids = self._stratified_split(
            data, grouping, test_size, random_state
        )
        id_dtype = data.schema[self.id_column]
        self.holdout = pl.DataFrame(
            {
                self.id_column: pl.Series(test_ids + train_ids, dtype=id_dtype),
                "split": ["test"] * len(test_ids) + ["train"] * len(train_ids),
            }
        )
        n_test = len(test_ids)
        logger.info(
            "Holdout split for '%s': %d train / %d test samples",
            self.label,
            self.holdout.height - n_test,
            n_test,
        )
        return self.holdout

    def _require_holdout(self) -> pl.DataFrame:
        if self.holdout is None:
            raise RuntimeError("No holdout split; call create_holdout first")
        return self.holdout

    def train_frame(self, data: pl.DataFrame) -> pl.DataFrame:
        """Rows of `data` assigned to the training side."""
        return self._side(data, "train")

    def test_frame(self, data: pl.DataFrame) -> pl.DataFrame:
        """Rows of `data` assigned to the test side."""
        return self._side(data, "test")

    def _side(self, data: pl.DataFrame, side: str) -> pl.DataFrame:
        ids = self._require_holdout().filter(pl.col("split") == side)[
            self.id_column
        ]
        return data.filter(pl.col(self.id_column).is_in(ids))

    def _stratified_split(
        self,
        data: pl.DataFrame,
        grouping: Optional[str],
        test_size: float,
        random_state: int,
    ) -> Tuple[List[Any], List[Any]]:
        """Greedy class-stratified assignment of whole groups.

        Groups are visited in shuffled order and moved to the test side while
        every class still has room under its quota of
        `round(test_size * class size)` samples.

        Returns:
            (train ids, test ids), in shuffled order
        """
        group_col = grouping if grouping is not None else self.id_column
        shuffled = data.sample(fraction=1.0, shuffle=True, seed=random_state)
        classes = shuffled[self.label].cast(pl.Utf8)

        quota: Dict[str, float] = {}
        for cls, count in Counter(classes.to_list()).items():
            quota[cls] = round(count * test_size)

        members: Dict[Any, List[Any]] = {}
        group_classes: Dict[Any, Counter] = {}
        for sample_id, group, cls in zip(
            shuffled[self.id_column].to_list(),
            shuffled[group_col].to_list(),
            classes.to_list(),
        ):
            members.setdefault(group, []).append(sample_id)
            group_classes.setdefault(group, Counter())[cls] += 1

        train_ids: List[Any] = []
        test_ids: List[Any] = []
        for group, counts in group_classes.items():
            if all(n <= quota[cls] for cls, n in counts.items()):
                test_ids.extend(members[group])
                for cls, n in counts.items():
                    quota[cls] -= n
            else:
                train_ids.extend(members[group])
        return train_ids, test_ids
