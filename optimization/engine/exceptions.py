"""Exceptions raised by the optimization engine."""


class OptimizationError(Exception):
    """Base exception for all optimization errors."""


class ConfigError(OptimizationError):
    """Raised when a run configuration is invalid.

    Attributes:
        field: Name of the offending configuration field, if known.
    """

    def __init__(self, field: str | None, details: str = "") -> None:
        self.field = field
        message = f"Invalid configuration for '{field}'" if field else "Invalid configuration"
        if details:
            message += f": {details}"
        super().__init__(message)


class ParameterSpaceError(ConfigError):
    """Raised when a parameter space definition is invalid."""

    def __init__(self, param: str | None, details: str = "") -> None:
        self.param = param
        super().__init__(param, details)


class WindowPlanError(ConfigError):
    """Raised when a walk-forward window plan is invalid."""


class BacktestError(OptimizationError):
    """Raised by a simulator when a single backtest cannot be completed."""


class RunNotFoundError(OptimizationError):
    """Raised when a run id is unknown to the result store."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Optimization run not found: {run_id}")
