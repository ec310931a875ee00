"""Overfitting detection by comparing in-sample and out-of-sample performance.

A parameter combination is flagged as overfit when its performance degrades by
more than 30% from the training period to the testing period, or when its
walk-forward efficiency (OOS / IS) falls below 0.5.

When the in-sample metric is negative the two ratios no longer read the usual
way (IS=-10, OOS=-5 gives efficiency 0.5 although OOS improved), so the
decision switches to a plain comparison: overfit only if OOS is worse than IS.
"""

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import numpy as np

from optimization.engine.parameter_space import combination_key, combination_to_storable

logger = logging.getLogger(__name__)

OVERFIT_THRESHOLD_PCT = 30.0
MIN_EFFICIENCY = 0.5


@dataclass
class ValidationSummary:
    """Aggregated walk-forward performance of one training-winner combination.

    Attributes:
        params: The combination.
        in_sample_metric: Mean optimization metric over its training wins (2 dp).
        out_of_sample_metric: Mean optimization metric over its testing runs.
        degradation_pct: (IS - OOS) / IS * 100, None if undefined.
        walk_forward_efficiency: OOS / IS, None if undefined.
        is_overfit: Whether the combination failed the overfit checks.
        oos_profit_factor: Mean OOS profit factor.
        oos_net_profit: Total OOS net profit.
        oos_win_rate: Mean OOS win rate.
        oos_total_trades: Total OOS trades.
        window_count: Number of windows the combination won.
    """

    params: dict[str, Any]
    in_sample_metric: float | None
    out_of_sample_metric: float | None
    degradation_pct: float | None
    walk_forward_efficiency: float | None
    is_overfit: bool
    oos_profit_factor: float | None = None
    oos_net_profit: float | None = None
    oos_win_rate: float | None = None
    oos_total_trades: int = 0
    window_count: int = 0

    def to_dict(self) -> dict:
        return {
            "params": combination_to_storable(self.params),
            "in_sample_metric": self.in_sample_metric,
            "out_of_sample_metric": self.out_of_sample_metric,
            "degradation_pct": self.degradation_pct,
            "walk_forward_efficiency": self.walk_forward_efficiency,
            "is_overfit": self.is_overfit,
            "oos_profit_factor": self.oos_profit_factor,
            "oos_net_profit": self.oos_net_profit,
            "oos_win_rate": self.oos_win_rate,
            "oos_total_trades": self.oos_total_trades,
            "window_count": self.window_count,
        }


def calculate_degradation(in_sample: Any, out_of_sample: Any) -> float | None:
    """Relative drop from IS to OOS, in percent: ``(IS - OOS) / IS * 100``.

    Positive values mean OOS underperformed. Returns None if either input is
    None or non-finite, or IS is zero.
    """
    is_val = _to_float(in_sample)
    oos_val = _to_float(out_of_sample)
    if is_val is None or oos_val is None or is_val == 0:
        return None
    return round((is_val - oos_val) / is_val * 100, 2)


def calculate_efficiency(in_sample: Any, out_of_sample: Any) -> float | None:
    """Walk-forward efficiency ``OOS / IS``; values near 1.0 generalize well.

    Returns None if either input is None or non-finite, or IS is zero. A
    negative IS still yields the plain ratio.
    """
    is_val = _to_float(in_sample)
    oos_val = _to_float(out_of_sample)
    if is_val is None or oos_val is None or is_val == 0:
        return None
    return round(oos_val / is_val, 2)


def check_overfit(in_sample: Any, out_of_sample: Any) -> bool:
    """Apply the overfit rules to one IS/OOS pair.

    With a negative IS only an OOS below IS counts as overfit.
    """
    is_val = _to_float(in_sample)
    oos_val = _to_float(out_of_sample)
    degradation = calculate_degradation(is_val, oos_val)
    efficiency = calculate_efficiency(is_val, oos_val)
    if degradation is None or efficiency is None:
        return False
    if is_val < 0:
        return oos_val < is_val
    return degradation > OVERFIT_THRESHOLD_PCT or efficiency < MIN_EFFICIENCY


def validate_result(in_sample: Any, out_of_sample: Any, metric: str = "profit_factor") -> dict:
    """Validate a single in-sample/out-of-sample pair.

    Args:
        in_sample: Training metrics (ResultRecord, metrics object or mapping).
        out_of_sample: Testing metrics, same forms.
        metric: The metric to compare.

    Returns:
        Dict with in/out-of-sample values, degradation, efficiency and the overfit flag.
    """
    is_value = _metric_of(in_sample, metric)
    oos_value = _metric_of(out_of_sample, metric)
    return {
        "in_sample_metric": is_value,
        "out_of_sample_metric": oos_value,
        "degradation_pct": calculate_degradation(is_value, oos_value),
        "walk_forward_efficiency": calculate_efficiency(is_value, oos_value),
        "is_overfit": check_overfit(is_value, oos_value),
    }


def analyze_walk_forward(window_results: Iterable[Any], metric: str = "profit_factor") -> list[ValidationSummary]:
    """Aggregate walk-forward window results per training-winner combination.

    A combination is overfit when its mean IS metric is positive and degradation
    exceeds 30% or efficiency falls below 0.5. When the mean IS metric is
    negative those ratios flip meaning, so the combination is flagged only if
    OOS is worse still (IS=-10, OOS=+5 is not overfit). Non-finite metric
    values are ignored when averaging.

    Args:
        window_results: Items with ``training_winner`` and ``testing_result``
            (WindowOutcome objects or mappings). Items without a training
            winner are skipped.
        metric: The optimization metric to compare.

    Returns:
        One ValidationSummary per distinct winner, sorted by OOS profit factor
        descending.
    """
    groups: dict[tuple, list[tuple[Any, Any]]] = {}
    params_by_key: dict[tuple, dict] = {}
    for item in window_results:
        winner = _field(item, "training_winner")
        if winner is None:
            continue
        params = _params_of(winner)
        key = combination_key(params)
        params_by_key.setdefault(key, dict(params))
        groups.setdefault(key, []).append((winner, _field(item, "testing_result")))

    summaries = [_analyze_group(params_by_key[key], pairs, metric) for key, pairs in groups.items()]
    summaries.sort(key=lambda s: _sort_value(s.oos_profit_factor), reverse=True)

    logger.info(
        "Validated %d winning combinations (%d overfit)",
        len(summaries),
        sum(1 for s in summaries if s.is_overfit),
    )
    return summaries


def filter_valid(summaries: Iterable[ValidationSummary]) -> list[ValidationSummary]:
    """Drop overfit summaries."""
    return [s for s in summaries if not s.is_overfit]


def best_result(summaries: Iterable[ValidationSummary]) -> ValidationSummary | None:
    """Non-overfit summary with the highest OOS profit factor, or None."""
    valid = filter_valid(summaries)
    if not valid:
        return None
    return max(valid, key=lambda s: _sort_value(s.oos_profit_factor))


def best_params(summaries: Iterable[ValidationSummary]) -> dict[str, Any] | None:
    """Combination of ``best_result``, or None if every combination is overfit."""
    best = best_result(summaries)
    return best.params if best is not None else None


def _analyze_group(params: dict, pairs: list[tuple[Any, Any]], metric: str) -> ValidationSummary:
    training = [w for w, _ in pairs]
    testing = [t for _, t in pairs if t is not None]

    avg_is = _mean(_metric_of(r, metric) for r in training)
    avg_oos = _mean(_metric_of(r, metric) for r in testing)
    oos_net = [v for v in (_to_float(_metric_of(r, "net_profit")) for r in testing) if v is not None]

    return ValidationSummary(
        params=params,
        in_sample_metric=avg_is,
        out_of_sample_metric=avg_oos,
        degradation_pct=calculate_degradation(avg_is, avg_oos),
        walk_forward_efficiency=calculate_efficiency(avg_is, avg_oos),
        is_overfit=check_overfit(avg_is, avg_oos),
        oos_profit_factor=_mean(_metric_of(r, "profit_factor") for r in testing),
        oos_net_profit=round(float(np.sum(oos_net)), 2) if oos_net else None,
        oos_win_rate=_mean(_metric_of(r, "win_rate") for r in testing),
        oos_total_trades=sum(int(_metric_of(r, "total_trades") or 0) for r in testing),
        window_count=len(pairs),
    )


def _mean(values: Iterable[Any]) -> float | None:
    present = [v for v in (_to_float(x) for x in values) if v is not None]
    return round(float(np.mean(present)), 2) if present else None


def _sort_value(value: float | None) -> float:
    return value if value is not None else 0.0


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (Decimal, int, float, np.number)):
        result = float(value)
        return result if math.isfinite(result) else None
    raise TypeError(f"metric value must be numeric, got {type(value).__name__}")


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _metric_of(source: Any, metric: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(metric)
    if callable(getattr(source, "metric", None)):
        return source.metric(metric)
    return getattr(source, metric, None)


def _params_of(source: Any) -> Mapping[str, Any]:
    if isinstance(source, Mapping):
        return source.get("parameters") or source.get("combination") or {}
    return source.combination
