"""Walk-forward window planning for strategy parameter validation.

Splits a historical date range into consecutive training (in-sample) and
testing (out-of-sample) windows, measured in calendar months. Rolling plans
slide a fixed-length training window forward by ``step_months``; anchored plans
keep the training start fixed and grow the training window instead.
"""

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from optimization.engine.exceptions import WindowPlanError
from optimization.engine.parameter_space import combination_to_storable
from optimization.engine.records import OPTIMIZATION_METRICS, ResultRecord

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def add_months(day: date, months: int) -> date:
    """Add calendar months, clamping the day to the end of the target month.

    Example: ``add_months(date(2020, 1, 31), 1) == date(2020, 2, 29)``.
    """
    return (pd.Timestamp(day) + pd.DateOffset(months=months)).date()


@dataclass(frozen=True)
class Window:
    """A single training/testing window.

    Attributes:
        index: 0-based position in generation order.
        training_start: First day of the in-sample period.
        training_end: Last day of the in-sample period.
        testing_start: First day of the out-of-sample period.
        testing_end: Last day of the out-of-sample period.
    """

    index: int
    training_start: date
    training_end: date
    testing_start: date
    testing_end: date

    @property
    def training(self) -> tuple[date, date]:
        return self.training_start, self.training_end

    @property
    def testing(self) -> tuple[date, date]:
        return self.testing_start, self.testing_end

    def training_months(self) -> int:
        """Length of the training period in whole months."""
        end = self.training_end + ONE_DAY
        return (end.year - self.training_start.year) * 12 + end.month - self.training_start.month

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "training_start": self.training_start.isoformat(),
            "training_end": self.training_end.isoformat(),
            "testing_start": self.testing_start.isoformat(),
            "testing_end": self.testing_end.isoformat(),
        }


def valid_window(window: Window) -> bool:
    """Check ``training_start <= training_end < testing_start <= testing_end``."""
    return (
        window.training_start <= window.training_end
        and window.training_end < window.testing_start
        and window.testing_start <= window.testing_end
    )


@dataclass(frozen=True)
class WindowPlan:
    """Walk-forward configuration.

    Attributes:
        training_months: Length of each training period in months.
        testing_months: Length of each testing period in months.
        step_months: Months to advance between consecutive windows.
        optimization_metric: Metric used to pick each window's training winner.
        min_trades: Minimum trades for a training result to be eligible.
        anchored: Keep the training start fixed and grow the training period.
    """

    training_months: int = 12
    testing_months: int = 3
    step_months: int = 3
    optimization_metric: str = "profit_factor"
    min_trades: int = 30
    anchored: bool = False

    def __post_init__(self) -> None:
        for name in ("training_months", "testing_months", "step_months"):
            value = getattr(self, name)
            if not _is_int(value) or value <= 0:
                raise WindowPlanError(name, f"must be a positive integer, got {value!r}")
        if self.optimization_metric not in OPTIMIZATION_METRICS:
            raise WindowPlanError(
                "optimization_metric",
                f"must be one of {list(OPTIMIZATION_METRICS)}, got {self.optimization_metric!r}",
            )
        if not _is_int(self.min_trades) or self.min_trades < 0:
            raise WindowPlanError("min_trades", f"must be a non-negative integer, got {self.min_trades!r}")
        if not isinstance(self.anchored, bool):
            raise WindowPlanError("anchored", f"must be a boolean, got {self.anchored!r}")

    @classmethod
    def default(cls) -> "WindowPlan":
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WindowPlan":
        """Build a plan from a plain mapping; absent keys take the defaults.

        Raises:
            WindowPlanError: If a field is invalid or the key is unknown.
        """
        if not isinstance(data, Mapping):
            raise WindowPlanError(None, f"walk-forward config must be a mapping, got {type(data).__name__}")
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise WindowPlanError(unknown[0], "unknown walk-forward option")
        return cls(**dict(data))

    def to_dict(self) -> dict:
        return {
            "training_months": self.training_months,
            "testing_months": self.testing_months,
            "step_months": self.step_months,
            "optimization_metric": self.optimization_metric,
            "min_trades": self.min_trades,
            "anchored": self.anchored,
        }

    def min_data_months(self) -> int:
        """Months of history needed for at least one window."""
        return self.training_months + self.testing_months

    def window_dates(self, start_date: date, index: int) -> Window:
        """Dates of window ``index`` for a range starting at ``start_date``."""
        if self.anchored:
            train_start = start_date
            train_months = self.training_months + index * self.step_months
        else:
            train_start = add_months(start_date, index * self.step_months)
            train_months = self.training_months

        train_end = add_months(train_start, train_months) - ONE_DAY
        test_start = train_end + ONE_DAY
        test_end = add_months(test_start, self.testing_months) - ONE_DAY
        return Window(index, train_start, train_end, test_start, test_end)

    def generate_windows(self, start_date: date, end_date: date) -> list[Window]:
        """Create all windows that fit inside ``[start_date, end_date]``.

        Generation stops at the first window whose testing period would end
        after ``end_date``; that window is dropped, not truncated.

        Args:
            start_date: First day of available history.
            end_date: Last day of available history.

        Returns:
            Windows in generation order, indexed from 0.
        """
        windows: list[Window] = []
        index = 0
        while True:
            window = self.window_dates(start_date, index)
            if window.testing_end > end_date:
                break
            windows.append(window)
            index += 1

        logger.debug(
            "Generated %d walk-forward windows for %s..%s (train=%d, test=%d, step=%d, anchored=%s)",
            len(windows),
            start_date,
            end_date,
            self.training_months,
            self.testing_months,
            self.step_months,
            self.anchored,
        )
        return windows

    def window_count(self, start_date: date, end_date: date) -> int:
        """Number of windows ``generate_windows`` would produce."""
        return len(self.generate_windows(start_date, end_date))


@dataclass
class WindowOutcome:
    """Training winner and its out-of-sample result for one window.

    ``training_winner`` is None when no training result met ``min_trades``;
    no testing backtest runs in that case.
    """

    window: Window
    training_winner: ResultRecord | None = None
    testing_result: ResultRecord | None = None


@dataclass
class WalkForwardResult:
    """Result of a walk-forward optimization run."""

    outcomes: list[WindowOutcome]
    metric: str
    validation: list = field(default_factory=list)
    best_params: dict[str, Any] | None = None

    def _values(self, attr: str) -> list[float]:
        values = []
        for o in self.outcomes:
            record = getattr(o, attr)
            value = _finite(record.metric(self.metric)) if record is not None else None
            if value is not None:
                values.append(value)
        return values

    @property
    def avg_in_sample(self) -> float:
        """Average in-sample metric of the window winners."""
        values = self._values("training_winner")
        return float(np.mean(values)) if values else 0.0

    @property
    def avg_out_of_sample(self) -> float:
        """Average out-of-sample metric of the window winners."""
        values = self._values("testing_result")
        return float(np.mean(values)) if values else 0.0

    @property
    def efficiency(self) -> float:
        """Ratio of OOS to IS metric. < 0.5 suggests overfitting."""
        if self.avg_in_sample == 0:
            return 0.0
        return self.avg_out_of_sample / self.avg_in_sample

    @property
    def total_oos_net_profit(self) -> float:
        """Sum of out-of-sample net profit across windows."""
        return sum(
            o.testing_result.metrics.net_profit or 0.0
            for o in self.outcomes
            if o.testing_result is not None
        )

    def summary(self) -> dict:
        """Return a summary dict of the walk-forward results."""
        return {
            "num_windows": len(self.outcomes),
            "windows_with_winner": sum(1 for o in self.outcomes if o.training_winner is not None),
            "metric": self.metric,
            "avg_in_sample": round(self.avg_in_sample, 3),
            "avg_out_of_sample": round(self.avg_out_of_sample, 3),
            "efficiency": round(self.efficiency, 3),
            "total_oos_net_profit": round(self.total_oos_net_profit, 2),
            "overfit_combinations": sum(1 for v in self.validation if v.is_overfit),
        }

    def to_json(self) -> str:
        """Serialize the result to a JSON string."""
        data = {
            "metric": self.metric,
            "summary": self.summary(),
            "best_params": combination_to_storable(self.best_params) if self.best_params else None,
            "windows": [
                {
                    **o.window.to_dict(),
                    "best_params": (
                        combination_to_storable(o.training_winner.combination) if o.training_winner else None
                    ),
                    "in_sample": _finite(o.training_winner.metric(self.metric)) if o.training_winner else None,
                    "out_of_sample": _finite(o.testing_result.metric(self.metric)) if o.testing_result else None,
                }
                for o in self.outcomes
            ],
            "validation": [v.to_dict() for v in self.validation],
        }
        return json.dumps(data, indent=2, allow_nan=False)

    def save(self, path: Path) -> None:
        """Save the result to a JSON file.

        Args:
            path: File path to write the JSON output.
        """
        Path(path).write_text(self.to_json())


def _finite(value: Any) -> float | None:
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _is_int(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)
