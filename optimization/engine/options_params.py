"""Preset parameter grids for optimizing options execution.

Grids here combine with the strategy grid of ``ParameterSpace.default()`` via
``merge_with_strategy`` and feed straight into ``OptimizationRunner``::

    grid = merge_with_strategy(preset("weekly"), {"min_confluence_score": [6, 7]})
    runner.run({..., "parameter_grid": grid})

Parameters:
    instrument_type: Trade the underlying or its options (equity, options).
    expiration_preference: Options expiry (weekly, zero_dte).
    strike_selection: Strike distance from the money (atm, one_otm, two_otm).
    slippage_pct: Assumed fill slippage on option premium.
    risk_per_trade: Fraction of equity risked per trade.
    premium_target_multiple: Exit when premium reaches this multiple of entry.
    premium_floor_pct: Exit when premium falls to this fraction of entry.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from optimization.engine.exceptions import ParameterSpaceError
from optimization.engine.parameter_space import ParameterSpace, Symbol

OPTIONS_PARAMS = (
    "instrument_type",
    "expiration_preference",
    "strike_selection",
    "slippage_pct",
    "risk_per_trade",
    "premium_target_multiple",
    "premium_floor_pct",
)

INSTRUMENT_TYPES = ("equity", "options")
EXPIRATIONS = ("weekly", "zero_dte")
STRIKES = ("atm", "one_otm", "two_otm")


def _symbols(*names: str) -> list[Symbol]:
    return [Symbol(n) for n in names]


def _decimals(*values: str) -> list[Decimal]:
    return [Decimal(v) for v in values]


def default_grid() -> dict[str, list]:
    """Options only, weekly and 0DTE, ATM and one strike OTM, three risk levels."""
    return {
        "instrument_type": _symbols("options"),
        "expiration_preference": _symbols("weekly", "zero_dte"),
        "strike_selection": _symbols("atm", "one_otm"),
        "slippage_pct": _decimals("0.01"),
        "risk_per_trade": _decimals("0.01", "0.015", "0.02"),
    }


def comprehensive_grid() -> dict[str, list]:
    """Every instrument type, expiry, strike and slippage level."""
    return {
        "instrument_type": _symbols(*INSTRUMENT_TYPES),
        "expiration_preference": _symbols(*EXPIRATIONS),
        "strike_selection": _symbols(*STRIKES),
        "slippage_pct": _decimals("0.005", "0.01", "0.02"),
        "risk_per_trade": _decimals("0.01", "0.015", "0.02"),
    }


def comparison_grid() -> dict[str, list]:
    """Same signals executed as equity and as weekly ATM options."""
    return {
        "instrument_type": _symbols(*INSTRUMENT_TYPES),
        "expiration_preference": _symbols("weekly"),
        "strike_selection": _symbols("atm"),
        "slippage_pct": _decimals("0.01"),
        "risk_per_trade": _decimals("0.01"),
    }


def zero_dte_grid() -> dict[str, list]:
    """Same-day expiry, meant for the most liquid underlyings (SPY, QQQ)."""
    return {
        "instrument_type": _symbols("options"),
        "expiration_preference": _symbols("zero_dte"),
        "strike_selection": _symbols(*STRIKES),
        "slippage_pct": _decimals("0.01", "0.02"),
        "risk_per_trade": _decimals("0.01", "0.015"),
    }


def weekly_grid() -> dict[str, list]:
    return {
        "instrument_type": _symbols("options"),
        "expiration_preference": _symbols("weekly"),
        "strike_selection": _symbols(*STRIKES),
        "slippage_pct": _decimals("0.01"),
        "risk_per_trade": _decimals("0.01", "0.015", "0.02"),
    }


def _conservative_grid() -> dict[str, list]:
    return {
        "instrument_type": _symbols("options"),
        "expiration_preference": _symbols("weekly"),
        "strike_selection": _symbols("atm"),
        "slippage_pct": _decimals("0.01"),
        "risk_per_trade": _decimals("0.005", "0.01"),
    }


def _aggressive_grid() -> dict[str, list]:
    return {
        "instrument_type": _symbols("options"),
        "expiration_preference": _symbols("zero_dte", "weekly"),
        "strike_selection": _symbols("one_otm", "two_otm"),
        "slippage_pct": _decimals("0.01", "0.02"),
        "risk_per_trade": _decimals("0.015", "0.02"),
    }


PRESETS: dict[str, Callable[[], dict[str, list]]] = {
    "default": default_grid,
    "comprehensive": comprehensive_grid,
    "comparison": comparison_grid,
    "zero_dte": zero_dte_grid,
    "weekly": weekly_grid,
    "conservative": _conservative_grid,
    "aggressive": _aggressive_grid,
}


def preset(name: str) -> dict[str, list]:
    """Named preset grid.

    Args:
        name: One of ``PRESETS``: default, comprehensive, comparison, zero_dte,
            weekly, conservative (low risk, ATM) or aggressive (higher risk, OTM).

    Raises:
        ParameterSpaceError: If the preset does not exist.
    """
    try:
        factory = PRESETS[str(name)]
    except KeyError:
        raise ParameterSpaceError("preset", f"unknown preset {name!r}, expected one of {sorted(PRESETS)}") from None
    return factory()


def custom_grid(overrides: Mapping[str, list]) -> dict[str, list]:
    """Default grid with some parameters replaced or added."""
    return {**default_grid(), **overrides}


def merge_with_strategy(options_grid: Mapping[str, list], strategy_params: Mapping[str, list]) -> dict[str, list]:
    """Combine an options grid with strategy parameters; strategy values win on overlap."""
    return {**options_grid, **strategy_params}


def validate(params: Mapping[str, Any]) -> None:
    """Check that every key is a known options parameter.

    Raises:
        ParameterSpaceError: Naming the first unknown parameter; the message
            lists all of them.
    """
    invalid = sorted(k for k in params if k not in OPTIONS_PARAMS)
    if invalid:
        raise ParameterSpaceError(invalid[0], f"not an options parameter: {', '.join(invalid)}")


def grid_space(grid: Mapping[str, list]) -> ParameterSpace:
    """Validate an options grid and build its ParameterSpace."""
    validate(grid)
    return ParameterSpace(grid)


@dataclass(frozen=True)
class InstrumentConfig:
    """Execution settings derived from one options combination."""

    instrument_type: str = "options"
    expiration_preference: str = "weekly"
    strike_selection: str = "atm"
    slippage_pct: Decimal = Decimal("0.01")
    risk_percentage: Decimal = Decimal("0.01")
    premium_target_multiple: Decimal | None = None
    premium_floor_pct: Decimal | None = None

    def __post_init__(self) -> None:
        if self.instrument_type not in INSTRUMENT_TYPES:
            raise ParameterSpaceError("instrument_type", f"must be one of {INSTRUMENT_TYPES}")
        if self.expiration_preference not in EXPIRATIONS:
            raise ParameterSpaceError("expiration_preference", f"must be one of {EXPIRATIONS}")
        if self.strike_selection not in STRIKES:
            raise ParameterSpaceError("strike_selection", f"must be one of {STRIKES}")

    @property
    def is_options(self) -> bool:
        return self.instrument_type == "options"


def to_instrument_config(combination: Mapping[str, Any]) -> InstrumentConfig:
    """Build an InstrumentConfig from a combination; missing keys take defaults."""
    defaults = InstrumentConfig()
    return InstrumentConfig(
        instrument_type=_tag(combination, "instrument_type", defaults.instrument_type),
        expiration_preference=_tag(combination, "expiration_preference", defaults.expiration_preference),
        strike_selection=_tag(combination, "strike_selection", defaults.strike_selection),
        slippage_pct=_decimal(combination, "slippage_pct", defaults.slippage_pct),
        risk_percentage=_decimal(combination, "risk_per_trade", defaults.risk_percentage),
        premium_target_multiple=_decimal(combination, "premium_target_multiple", None),
        premium_floor_pct=_decimal(combination, "premium_floor_pct", None),
    )


def _tag(combination: Mapping[str, Any], name: str, default: str) -> str:
    value = combination.get(name)
    if isinstance(value, (Symbol, str)):
        return str(value)
    return default


def _decimal(combination: Mapping[str, Any], name: str, default: Decimal | None) -> Decimal | None:
    value = combination.get(name)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float, str)) and not isinstance(value, bool):
        return Decimal(str(value))
    return default
