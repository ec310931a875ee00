"""Run state and per-backtest result records."""

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from optimization.engine.parameter_space import combination_to_storable

# Metrics a run can be optimized for.
OPTIMIZATION_METRICS = (
    "profit_factor",
    "net_profit",
    "sharpe_ratio",
    "sortino_ratio",
    "win_rate",
    "expectancy",
    "calmar_ratio",
)


class RunStatus(str, Enum):
    """Lifecycle of an optimization run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass(frozen=True)
class BacktestMetrics:
    """Performance metrics of one backtest.

    Attributes:
        total_trades: Number of closed trades.
        win_rate: Fraction of winning trades (0.0 to 1.0).
        profit_factor: Gross profit / gross loss.
        net_profit: Profit after costs, in account currency.
        sharpe_ratio: Annualized Sharpe ratio.
        sortino_ratio: Annualized Sortino ratio.
        max_drawdown_pct: Maximum drawdown as percentage of peak equity.
        expectancy: Average profit per trade.
        avg_r_multiple: Average profit per trade in units of initial risk.
        calmar_ratio: Annualized return / max drawdown.
    """

    total_trades: int = 0
    win_rate: float | None = None
    profit_factor: float | None = None
    net_profit: float | None = None
    sharpe_ratio: float | None = None
    sortino_ratio: float | None = None
    max_drawdown_pct: float | None = None
    expectancy: float | None = None
    avg_r_multiple: float | None = None
    calmar_ratio: float | None = None

    @classmethod
    def from_result(cls, result: Any) -> "BacktestMetrics":
        """Copy metric fields from a simulator result, missing attributes as None."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = getattr(result, f.name, None)
            values[f.name] = float(raw) if raw is not None else None
        values["total_trades"] = int(values["total_trades"] or 0)
        return cls(**values)

    def get(self, metric: str) -> float | None:
        """Value of ``metric`` by name."""
        if metric not in _METRIC_NAMES:
            raise KeyError(f"unknown metric: {metric}")
        return getattr(self, metric)


_METRIC_NAMES = frozenset(f.name for f in fields(BacktestMetrics))


@dataclass
class ResultRecord:
    """Outcome of one simulator call for one combination.

    A failed backtest is still recorded, with zero trades and ``error`` set, so
    that a ``min_trades`` filter excludes it naturally.
    """

    run_id: str
    combination: dict[str, Any]
    metrics: BacktestMetrics
    combination_index: int = 0
    is_training: bool = True
    window_index: int | None = None
    window_start: date | None = None
    window_end: date | None = None
    backtest_run_id: str | None = None
    error: str | None = None
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    # Walk-forward validation, set on training records that won their window.
    degradation_pct: float | None = None
    walk_forward_efficiency: float | None = None
    is_overfit: bool | None = None
    oos_profit_factor: float | None = None
    oos_net_profit: float | None = None
    oos_win_rate: float | None = None
    oos_total_trades: int | None = None

    @property
    def total_trades(self) -> int:
        return self.metrics.total_trades

    def metric(self, name: str) -> float | None:
        """Value of the named metric, or None if the backtest did not report it."""
        return self.metrics.get(name)

    def to_dict(self) -> dict:
        """Flat, JSON-compatible representation."""
        data = {
            "record_id": self.record_id,
            "run_id": self.run_id,
            "parameters": combination_to_storable(self.combination),
            "combination_index": self.combination_index,
            "is_training": self.is_training,
            "window_index": self.window_index,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "backtest_run_id": self.backtest_run_id,
            "error": self.error,
            "degradation_pct": self.degradation_pct,
            "walk_forward_efficiency": self.walk_forward_efficiency,
            "is_overfit": self.is_overfit,
            "oos_profit_factor": self.oos_profit_factor,
            "oos_net_profit": self.oos_net_profit,
            "oos_win_rate": self.oos_win_rate,
            "oos_total_trades": self.oos_total_trades,
        }
        data.update(asdict(self.metrics))
        return data


@dataclass
class RunState:
    """Configuration summary, progress and outcome of one optimization run."""

    mode: str
    total_combinations: int
    total_backtests: int
    name: str | None = None
    parameter_grid: dict = field(default_factory=dict)
    walk_forward_config: dict = field(default_factory=dict)
    optimization_metric: str = "profit_factor"
    min_trades: int = 30
    status: RunStatus = RunStatus.PENDING
    completed_combinations: int = 0
    progress: float = 0.0
    best_params: dict[str, Any] | None = None
    error_message: str | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def progress_pct(self) -> float:
        return self.progress * 100

    def to_dict(self) -> dict:
        """JSON-compatible status snapshot."""
        return {
            "run_id": self.run_id,
            "name": self.name,
            "mode": self.mode,
            "status": self.status.value,
            "total_combinations": self.total_combinations,
            "total_backtests": self.total_backtests,
            "completed_combinations": self.completed_combinations,
            "progress": self.progress,
            "optimization_metric": self.optimization_metric,
            "min_trades": self.min_trades,
            "parameter_grid": self.parameter_grid,
            "walk_forward_config": self.walk_forward_config,
            "best_params": combination_to_storable(self.best_params) if self.best_params else None,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
