"""Optimization run configuration."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from optimization.engine.exceptions import ConfigError
from optimization.engine.parameter_space import ParameterSpace
from optimization.engine.records import OPTIMIZATION_METRICS
from optimization.engine.walk_forward import WindowPlan

REQUIRED_FIELDS = (
    "symbols",
    "start_date",
    "end_date",
    "strategies",
    "initial_capital",
    "base_risk_per_trade",
    "parameter_grid",
)

OPTIONAL_FIELDS = (
    "walk_forward_config",
    "optimization_metric",
    "min_trades",
    "max_concurrency",
    "name",
)


def default_concurrency() -> int:
    """Number of CPUs available, at least 1."""
    return os.cpu_count() or 1


@dataclass(frozen=True)
class RunConfig:
    """Validated settings of one optimization run.

    Attributes:
        symbols: Instruments to backtest.
        start_date: First day of history.
        end_date: Last day of history.
        strategies: Strategy names passed through to the simulator.
        initial_capital: Starting equity of every backtest.
        base_risk_per_trade: Risk per trade unless the combination sets
            ``risk_per_trade`` itself.
        parameter_space: Candidate values to search.
        walk_forward: Window plan; None for a plain grid search.
        optimization_metric: Metric used to rank results.
        min_trades: Minimum trades for a result to be eligible.
        max_concurrency: Maximum simultaneous backtests.
        name: Optional label for the run.
    """

    symbols: tuple[str, ...]
    start_date: date
    end_date: date
    strategies: tuple[str, ...]
    initial_capital: Decimal
    base_risk_per_trade: Decimal
    parameter_space: ParameterSpace
    walk_forward: WindowPlan | None = None
    optimization_metric: str = "profit_factor"
    min_trades: int = 30
    max_concurrency: int = field(default_factory=default_concurrency)
    name: str | None = None

    def __post_init__(self) -> None:
        if not self.symbols:
            raise ConfigError("symbols", "at least one symbol is required")
        if not self.strategies:
            raise ConfigError("strategies", "at least one strategy is required")
        if self.start_date > self.end_date:
            raise ConfigError("end_date", f"must not be before start_date ({self.start_date})")
        if self.initial_capital <= 0:
            raise ConfigError("initial_capital", f"must be positive, got {self.initial_capital}")
        if not 0 < self.base_risk_per_trade <= 1:
            raise ConfigError("base_risk_per_trade", f"must be in (0, 1], got {self.base_risk_per_trade}")
        if self.optimization_metric not in OPTIMIZATION_METRICS:
            raise ConfigError(
                "optimization_metric",
                f"must be one of {list(OPTIMIZATION_METRICS)}, got {self.optimization_metric!r}",
            )
        if not _is_int(self.min_trades) or self.min_trades < 0:
            raise ConfigError("min_trades", f"must be a non-negative integer, got {self.min_trades!r}")
        if not _is_int(self.max_concurrency) or self.max_concurrency <= 0:
            raise ConfigError("max_concurrency", f"must be a positive integer, got {self.max_concurrency!r}")

    @property
    def mode(self) -> str:
        return "walk_forward" if self.walk_forward is not None else "grid_search"

    @property
    def metric(self) -> str:
        """Metric that ranks results; the window plan's in walk-forward mode."""
        return self.walk_forward.optimization_metric if self.walk_forward else self.optimization_metric

    @property
    def effective_min_trades(self) -> int:
        return self.walk_forward.min_trades if self.walk_forward else self.min_trades

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunConfig":
        """Parse a plain configuration mapping.

        Dates may be ``date`` objects or ISO strings; capital and risk may be
        numbers, strings or Decimals. A ``walk_forward_config`` without its own
        ``optimization_metric`` or ``min_trades`` inherits the run-level values.

        Raises:
            ConfigError: If a required field is missing or any field is invalid.
                ParameterSpaceError and WindowPlanError are ConfigError subclasses.
        """
        if not isinstance(data, Mapping):
            raise ConfigError(None, f"configuration must be a mapping, got {type(data).__name__}")

        missing = [k for k in REQUIRED_FIELDS if k not in data]
        if missing:
            raise ConfigError(missing[0], f"missing required fields: {', '.join(missing)}")
        unknown = sorted(set(data) - set(REQUIRED_FIELDS) - set(OPTIONAL_FIELDS))
        if unknown:
            raise ConfigError(unknown[0], "unknown configuration option")

        metric = data.get("optimization_metric", "profit_factor")
        min_trades = data.get("min_trades", 30)

        grid = data["parameter_grid"]
        space = grid if isinstance(grid, ParameterSpace) else ParameterSpace(grid)

        max_concurrency = data.get("max_concurrency")
        if max_concurrency is None:
            max_concurrency = default_concurrency()

        plan = None
        wf = data.get("walk_forward_config")
        if isinstance(wf, WindowPlan):
            plan = wf
        elif wf is not None:
            if not isinstance(wf, Mapping):
                raise ConfigError("walk_forward_config", "must be a mapping")
            plan = WindowPlan.from_dict({"optimization_metric": metric, "min_trades": min_trades, **wf})

        return cls(
            symbols=_str_tuple("symbols", data["symbols"]),
            start_date=_parse_date("start_date", data["start_date"]),
            end_date=_parse_date("end_date", data["end_date"]),
            strategies=_str_tuple("strategies", data["strategies"]),
            initial_capital=_parse_decimal("initial_capital", data["initial_capital"]),
            base_risk_per_trade=_parse_decimal("base_risk_per_trade", data["base_risk_per_trade"]),
            parameter_space=space,
            walk_forward=plan,
            optimization_metric=metric,
            min_trades=min_trades,
            max_concurrency=max_concurrency,
            name=data.get("name"),
        )


def _parse_date(name: str, value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise ConfigError(name, f"invalid ISO date {value!r}") from exc
    raise ConfigError(name, f"must be a date or ISO date string, got {type(value).__name__}")


def _parse_decimal(name: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ConfigError(name, "must be numeric, got bool")
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ConfigError(name, f"must be numeric, got {value!r}") from exc


def _str_tuple(name: str, value: Any) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise ConfigError(name, f"must be a list, got {type(value).__name__}")
    return tuple(str(v) for v in value)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
