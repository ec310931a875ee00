"""Parameter optimization and walk-forward validation engine."""

from optimization.engine.analytics import MetricsCalculator, PerformanceMetrics, compare_results
from optimization.engine.config import RunConfig
from optimization.engine.exceptions import (
    BacktestError,
    ConfigError,
    OptimizationError,
    ParameterSpaceError,
    RunNotFoundError,
    WindowPlanError,
)
from optimization.engine.orchestrator import OptimizationOutcome, OptimizationRunner
from optimization.engine.parameter_space import ParameterSpace, Symbol
from optimization.engine.records import BacktestMetrics, ResultRecord, RunState, RunStatus
from optimization.engine.simulator import BacktestRequest, BacktestResult, Simulator, SyntheticSimulator
from optimization.engine.store import InMemoryResultStore, ResultStore
from optimization.engine.validation import ValidationSummary, analyze_walk_forward, best_params
from optimization.engine.walk_forward import Window, WindowOutcome, WindowPlan, WalkForwardResult

__all__ = [
    "OptimizationRunner",
    "OptimizationOutcome",
    "RunConfig",
    "ParameterSpace",
    "Symbol",
    "WindowPlan",
    "Window",
    "WindowOutcome",
    "WalkForwardResult",
    "ValidationSummary",
    "analyze_walk_forward",
    "best_params",
    "BacktestRequest",
    "BacktestResult",
    "Simulator",
    "SyntheticSimulator",
    "BacktestMetrics",
    "ResultRecord",
    "RunState",
    "RunStatus",
    "ResultStore",
    "InMemoryResultStore",
    "MetricsCalculator",
    "PerformanceMetrics",
    "compare_results",
    "OptimizationError",
    "ConfigError",
    "ParameterSpaceError",
    "WindowPlanError",
    "BacktestError",
    "RunNotFoundError",
]
