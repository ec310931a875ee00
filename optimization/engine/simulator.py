"""Backtest simulator interface and a synthetic implementation.

The optimization engine drives any object implementing ``Simulator``: one
``run_backtest`` call per combination per date range. Simulators report failure
by raising (``BacktestError`` or any other exception); the engine records such
calls as zero-trade results instead of aborting the batch.

``SyntheticSimulator`` generates deterministic trade outcomes from the
parameters, without market data. It is meant for examples and tests of the
optimization layer, not for research.
"""

import logging
import time
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

import numpy as np

from optimization.engine.analytics import MetricsCalculator
from optimization.engine.exceptions import BacktestError
from optimization.engine.parameter_space import combination_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BacktestRequest:
    """Inputs for a single backtest run.

    Attributes:
        symbols: Instruments to trade.
        start_date: First day of the backtest (inclusive).
        end_date: Last day of the backtest (inclusive).
        strategies: Strategy names to run.
        initial_capital: Starting account equity.
        risk_per_trade: Fraction of equity risked per trade.
        parameters: The combination under test.
    """

    symbols: tuple[str, ...]
    start_date: date
    end_date: date
    strategies: tuple[str, ...]
    initial_capital: Decimal
    risk_per_trade: Decimal
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def years(self) -> float:
        return ((self.end_date - self.start_date).days + 1) / 365.25


@dataclass
class BacktestResult:
    """Summary of a completed backtest.

    Attributes:
        backtest_run_id: Identifier of the simulator run, for traceability.
        total_trades: Number of closed trades.
        win_rate: Fraction of winning trades.
        profit_factor: Gross profit / gross loss.
        net_profit: Sum of trade P&L.
        sharpe_ratio: Annualized Sharpe ratio.
        sortino_ratio: Annualized Sortino ratio.
        max_drawdown_pct: Maximum drawdown as percentage of peak equity.
        expectancy: Average P&L per trade.
        avg_r_multiple: Average P&L per trade in R.
        calmar_ratio: Annualized return / max drawdown.
        duration_seconds: Wall-clock time of the run.
    """

    backtest_run_id: str
    total_trades: int
    win_rate: float | None = None
    profit_factor: float | None = None
    net_profit: float | None = None
    sharpe_ratio: float | None = None
    sortino_ratio: float | None = None
    max_drawdown_pct: float | None = None
    expectancy: float | None = None
    avg_r_multiple: float | None = None
    calmar_ratio: float | None = None
    duration_seconds: float = 0.0


class Simulator(Protocol):
    """Anything that can run one backtest for one combination."""

    def run_backtest(self, request: BacktestRequest) -> BacktestResult: ...


class SyntheticSimulator:
    """Deterministic stand-in for a bar-replaying backtest engine.

    Trade outcomes are drawn from a random generator seeded by the combination
    and the date range, so repeated requests return identical results. Stricter
    filters (higher ``min_confluence_score``, narrower ``signal_grade_filter``)
    take fewer trades with a higher hit rate; ``min_rr`` sets the payoff of a
    winning trade.

    Attributes:
        trades_per_month: Trade frequency at the loosest filter settings.
        base_win_rate: Hit rate at the loosest filter settings.
    """

    GRADE_FILTER_SCALE = {
        "all": 1.0,
        "c_and_above": 0.8,
        "b_and_above": 0.55,
        "a_only": 0.3,
    }

    def __init__(self, trades_per_month: float = 20.0, base_win_rate: float = 0.38) -> None:
        """Initialize the simulator.

        Args:
            trades_per_month: Expected trades per month with no filtering.
            base_win_rate: Probability of a winning trade with no filtering.
        """
        self.trades_per_month = trades_per_month
        self.base_win_rate = base_win_rate

    def run_backtest(self, request: BacktestRequest) -> BacktestResult:
        """Simulate trades for the request and compute their metrics.

        Raises:
            BacktestError: If the request's date range is empty.
        """
        if request.end_date < request.start_date:
            raise BacktestError(f"empty date range {request.start_date}..{request.end_date}")

        start = time.perf_counter()
        params = request.parameters
        rng = np.random.default_rng(self._seed(request))

        score = float(params.get("min_confluence_score", 5))
        grade = str(params.get("signal_grade_filter", "all"))
        reward = float(params.get("min_rr", params.get("min_risk_reward", 2.0)))

        selectivity = max(0.1, 1.0 - 0.12 * (score - 5)) * self.GRADE_FILTER_SCALE.get(grade, 1.0)
        months = request.years * 12
        expected_trades = self.trades_per_month * months * selectivity * len(request.symbols)
        n_trades = int(rng.poisson(max(expected_trades, 0.0)))

        win_prob = min(0.9, self.base_win_rate + 0.03 * (score - 5) + 0.15 * (1.0 - selectivity))
        # Wider targets are hit less often
        win_prob = float(np.clip(win_prob - 0.05 * (reward - 2.0), 0.05, 0.95))

        capital = float(request.initial_capital)
        risk_amount = capital * float(request.risk_per_trade)
        wins = rng.random(n_trades) < win_prob
        noise = rng.normal(1.0, 0.15, n_trades)
        pnls = np.where(wins, reward * risk_amount * noise, -risk_amount * np.abs(noise))

        metrics = MetricsCalculator.calculate(pnls, capital, risk_amount, request.years)
        duration = time.perf_counter() - start
        logger.debug(
            "Synthetic backtest %s..%s: %d trades, PF=%s",
            request.start_date,
            request.end_date,
            metrics.total_trades,
            metrics.profit_factor,
        )

        return BacktestResult(
            backtest_run_id=uuid.uuid4().hex,
            total_trades=metrics.total_trades,
            win_rate=metrics.win_rate,
            profit_factor=metrics.profit_factor,
            net_profit=metrics.net_profit,
            sharpe_ratio=metrics.sharpe_ratio,
            sortino_ratio=metrics.sortino_ratio,
            max_drawdown_pct=metrics.max_drawdown_pct,
            expectancy=metrics.expectancy,
            avg_r_multiple=metrics.avg_r_multiple,
            calmar_ratio=metrics.calmar_ratio,
            duration_seconds=duration,
        )

    @staticmethod
    def _seed(request: BacktestRequest) -> int:
        key = (
            combination_key(request.parameters),
            request.start_date.isoformat(),
            request.end_date.isoformat(),
            request.symbols,
            request.strategies,
        )
        return zlib.crc32(repr(key).encode())
