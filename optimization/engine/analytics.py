"""Backtesting analytics: trade metrics and result comparison tables.

Computes standard trading performance metrics from per-trade P&L and builds
Polars tables for ranking optimization results.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import polars as pl

from optimization.engine.records import ResultRecord

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetrics:
    """Standard trading performance metrics.

    Attributes:
        total_trades: Number of closed trades.
        net_profit: Sum of trade P&L.
        total_return_pct: Net profit as percentage of initial capital.
        sharpe_ratio: Annualized Sharpe ratio of per-trade returns.
        sortino_ratio: Annualized Sortino ratio (downside deviation), None without downside.
        max_drawdown: Maximum drawdown of the equity curve in absolute terms.
        max_drawdown_pct: Maximum drawdown as percentage of peak equity.
        profit_factor: Gross profit / gross loss, None without losing trades.
        win_rate: Fraction of profitable trades.
        expectancy: Average P&L per trade.
        avg_r_multiple: Average P&L per trade in units of risk per trade.
        calmar_ratio: Annualized return / max drawdown percentage.
    """

    total_trades: int
    net_profit: float
    total_return_pct: float
    sharpe_ratio: float
    sortino_ratio: float | None
    max_drawdown: float
    max_drawdown_pct: float
    profit_factor: float | None
    win_rate: float
    expectancy: float
    avg_r_multiple: float
    calmar_ratio: float


class MetricsCalculator:
    """Calculates performance metrics from backtest trades."""

    @staticmethod
    def calculate(
        trade_pnls: Sequence[float],
        initial_capital: float,
        risk_amount: float,
        years: float,
    ) -> PerformanceMetrics:
        """Calculate all performance metrics from a list of trade P&Ls.

        Args:
            trade_pnls: Realized P&L of each trade, in chronological order.
            initial_capital: Starting account equity.
            risk_amount: Capital risked per trade (1R), for R-multiples.
            years: Length of the backtest period in years, for annualization.

        Returns:
            PerformanceMetrics with all computed fields.
        """
        pnls = np.asarray(trade_pnls, dtype=float)
        equity = initial_capital + np.concatenate(([0.0], np.cumsum(pnls)))

        if len(pnls) > 0:
            returns = pnls / equity[:-1]
        else:
            returns = np.array([])

        periods_per_year = len(pnls) / years if years > 0 else 0.0
        net_profit = float(pnls.sum()) if len(pnls) else 0.0
        total_return_pct = net_profit / initial_capital * 100 if initial_capital else 0.0
        dd_abs, dd_pct = MetricsCalculator.max_drawdown(equity.tolist())

        return PerformanceMetrics(
            total_trades=len(pnls),
            net_profit=net_profit,
            total_return_pct=total_return_pct,
            sharpe_ratio=MetricsCalculator.sharpe_ratio(returns, periods_per_year=periods_per_year),
            sortino_ratio=MetricsCalculator.sortino_ratio(returns, periods_per_year=periods_per_year),
            max_drawdown=dd_abs,
            max_drawdown_pct=dd_pct,
            profit_factor=MetricsCalculator.profit_factor(pnls),
            win_rate=MetricsCalculator.win_rate(pnls),
            expectancy=MetricsCalculator.expectancy(pnls),
            avg_r_multiple=MetricsCalculator.avg_r_multiple(pnls, risk_amount),
            calmar_ratio=MetricsCalculator.calmar_ratio(total_return_pct, dd_pct, years),
        )

    @staticmethod
    def sharpe_ratio(
        returns: np.ndarray,
        risk_free_rate: float = 0.0,
        periods_per_year: float = 252,
    ) -> float:
        """Annualized Sharpe ratio.

        Args:
            returns: Array of period returns.
            risk_free_rate: Annual risk-free rate.
            periods_per_year: Number of periods per year for annualization.

        Returns:
            Annualized Sharpe ratio, or 0.0 if std is zero or no data.
        """
        if len(returns) == 0 or np.std(returns) == 0 or periods_per_year <= 0:
            return 0.0
        excess = returns - risk_free_rate / periods_per_year
        return float(np.mean(excess) / np.std(excess) * np.sqrt(periods_per_year))

    @staticmethod
    def sortino_ratio(
        returns: np.ndarray,
        risk_free_rate: float = 0.0,
        periods_per_year: float = 252,
    ) -> float | None:
        """Annualized Sortino ratio (downside deviation only).

        Returns:
            Annualized Sortino ratio. Returns None if positive mean with no
            downside (undefined), 0.0 if no data.
        """
        if len(returns) == 0 or periods_per_year <= 0:
            return 0.0
        excess = returns - risk_free_rate / periods_per_year
        downside = returns[returns < 0]
        if len(downside) == 0 or np.std(downside) == 0:
            return None if np.mean(excess) > 0 else 0.0
        return float(np.mean(excess) / np.std(downside) * np.sqrt(periods_per_year))

    @staticmethod
    def max_drawdown(equity_curve: list[float]) -> tuple[float, float]:
        """Maximum drawdown (absolute and percentage).

        Args:
            equity_curve: Time series of account equity.

        Returns:
            Tuple of (max_dd_absolute, max_dd_percentage). Percentage is relative
            to the peak value. Returns (0.0, 0.0) for empty or monotonically
            increasing series.
        """
        if not equity_curve or len(equity_curve) < 2:
            return 0.0, 0.0

        arr = np.array(equity_curve)
        running_max = np.maximum.accumulate(arr)
        drawdowns = running_max - arr

        max_dd = float(np.max(drawdowns))

        # Only meaningful where the peak is positive
        with np.errstate(divide="ignore", invalid="ignore"):
            pct_drawdowns = np.where(running_max > 0, drawdowns / running_max, 0.0)
        max_dd_pct = float(np.max(pct_drawdowns)) * 100

        return max_dd, max_dd_pct

    @staticmethod
    def profit_factor(pnls: np.ndarray) -> float | None:
        """Gross profit / gross loss. > 1.0 is profitable.

        Returns:
            Profit factor. Returns None if there are trades but no losses
            (undefined), 0.0 if no trades.
        """
        if len(pnls) == 0:
            return 0.0

        gross_profit = float(pnls[pnls > 0].sum())
        gross_loss = abs(float(pnls[pnls < 0].sum()))

        if gross_loss == 0:
            return None
        return gross_profit / gross_loss

    @staticmethod
    def win_rate(pnls: np.ndarray) -> float:
        """Fraction of profitable trades (0.0 to 1.0), 0.0 if no trades."""
        if len(pnls) == 0:
            return 0.0
        return float(np.count_nonzero(pnls > 0)) / len(pnls)

    @staticmethod
    def expectancy(pnls: np.ndarray) -> float:
        """Average P&L per trade."""
        return float(np.mean(pnls)) if len(pnls) else 0.0

    @staticmethod
    def avg_r_multiple(pnls: np.ndarray, risk_amount: float) -> float:
        """Average P&L per trade expressed in units of risk (R)."""
        if len(pnls) == 0 or risk_amount <= 0:
            return 0.0
        return float(np.mean(pnls) / risk_amount)

    @staticmethod
    def calmar_ratio(total_return_pct: float, max_drawdown_pct: float, years: float) -> float:
        """Annualized return divided by max drawdown (both in percent)."""
        if max_drawdown_pct == 0 or years <= 0:
            return 0.0
        return (total_return_pct / years) / max_drawdown_pct


def compare_results(
    records: Sequence[ResultRecord],
    metric: str = "profit_factor",
) -> pl.DataFrame:
    """Compare optimization results side by side.

    Returns a DataFrame with one row per record, the combination flattened into
    ``param_<name>`` columns, sorted by ``metric`` descending with nulls last.

    Args:
        records: Result records to compare.
        metric: Column to rank by.

    Returns:
        Polars DataFrame with comparison data.
    """
    rows = []
    for r in records:
        row = {k: v for k, v in r.to_dict().items() if k != "parameters"}
        for name, value in r.combination.items():
            row[f"param_{name}"] = str(value)
        rows.append(row)

    if not rows:
        logger.debug("No results to compare")
        return pl.DataFrame()

    df = pl.DataFrame(rows, infer_schema_length=None)
    return df.sort(metric, descending=True, nulls_last=True)
