"""Configuration classes for drug response classifier selection.

This module provides the selector configuration together with a small YAML
loader so tutorial runs can keep their settings next to the data.
"""

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml  # type: ignore

from drug_response_ml.core.errors import InvalidInput


class ScoringMetric(Enum):
    """Enumeration of metrics available for lambda selection."""

    ACCURACY = "accuracy"
    BALANCED_ACCURACY = "balanced_accuracy"
    ROC_AUC = "roc_auc"


def default_lambda_grid(
    low: float = 1e-4, high: float = 1e2, num: int = 25
) -> List[float]:
    """Log-spaced regularization strengths from `low` to `high`."""
    return [
        float(v)
        for v in np.logspace(math.log10(low), math.log10(high), num)
    ]


@dataclass
class SelectorConfig:
    """Configuration for cross-validated lambda selection."""

    lambda_grid: List[float] = field(default_factory=default_lambda_grid)
    k: int = 5
    random_seed: int = 42
    metric: ScoringMetric = ScoringMetric.ACCURACY
    l1_ratio: float = 1.0  # 1.0 is pure LASSO
    max_iter: int = 10000
    tol: float = 1e-4
    standardize: bool = True
    # None -> ceil(k / 2)
    min_valid_folds: Optional[int] = None
    n_jobs: int = 1
    refit_fallback: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not isinstance(self.metric, ScoringMetric):
            if isinstance(self.metric, str):
                try:
                    self.metric = ScoringMetric(self.metric)
                except ValueError:
                    raise InvalidInput(
                        f"Invalid scoring metric: {self.metric}"
                    ) from None
            else:
                raise InvalidInput(f"Invalid scoring metric: {self.metric}")

        self.lambda_grid = [float(v) for v in self.lambda_grid]
        if not 0.0 <= self.l1_ratio <= 1.0:
            raise InvalidInput(
                f"l1_ratio must be within [0, 1], got {self.l1_ratio}"
            )
        if self.l1_ratio == 0.0:
            raise InvalidInput(
                "l1_ratio of 0 is a pure ridge penalty; use a value in (0, 1]"
            )
        if self.max_iter < 1:
            raise InvalidInput("max_iter must be at least 1")
        if self.tol <= 0:
            raise InvalidInput("tol must be positive")
        if self.min_valid_folds is not None and self.min_valid_folds < 1:
            raise InvalidInput("min_valid_folds must be at least 1")
        if isinstance(self.n_jobs, bool) or not isinstance(self.n_jobs, int):
            raise InvalidInput(f"n_jobs must be an integer, got {self.n_jobs!r}")
        if self.n_jobs == 0:
            raise InvalidInput("n_jobs must be non-zero (-1 uses all cores)")

    def resolved_min_valid_folds(self, k: Optional[int] = None) -> int:
        """Minimum fold count a lambda needs to stay eligible."""
        if self.min_valid_folds is not None:
            return self.min_valid_folds
        return int(math.ceil((k if k is not None else self.k) / 2))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectorConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in data.items() if key in known}
        grid = data.get("lambda_grid")
        if isinstance(grid, dict):
            # {low, high, num} shorthand for a log-spaced grid
            kwargs["lambda_grid"] = default_lambda_grid(**grid)
        return cls(**kwargs)

    @classmethod
    def from_yaml(
        cls, path: Union[str, Path], section: Optional[str] = "selector"
    ) -> "SelectorConfig":
        """Load selector settings from a YAML file.

        Args:
            path: Path to YAML configuration file
            section: Top-level key holding the selector settings, or None
                when the whole file is the selector section
        """
        config = Config(path)
        data = config.to_dict()
        if section is not None:
            data = data.get(section) or {}
        return cls.from_dict(data)


class Config:
    """Read-only view of a YAML settings file with dot notation access.

    Nested mappings are wrapped in `Config` too, so
    `Config("run.yaml").selector.k` works.
    """

    def __init__(self, config_path: Union[str, Path]):
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}"
            )
        with open(self.config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise InvalidInput(
                f"{self.config_path} must hold a mapping at the top level"
            )
        self._data: Dict[str, Any] = data

    @classmethod
    def _wrap(cls, value: Any) -> Any:
        if isinstance(value, dict):
            section = cls.__new__(cls)
            section.config_path = None
            section._data = value
            return section
        return value

    def __getattr__(self, key: str) -> Any:
        if key.startswith("_"):
            raise AttributeError(key)
        try:
            return self._wrap(self._data[key])
        except KeyError:
            raise AttributeError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return self._wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __getitem__(self, key: str) -> Any:
        return self._wrap(self._data[key])

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __repr__(self) -> str:
        return f"Config({self._data})"
