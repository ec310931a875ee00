# %% [markdown]
# # Walk-Forward Optimization
# Re-optimize on rolling training windows and validate each winner out of sample.

# %%
from decimal import Decimal

from optimization.engine import options_params
from optimization.engine.orchestrator import OptimizationRunner

# %%
grid = options_params.merge_with_strategy(
    options_params.preset("conservative"),
    {"min_confluence_score": [6, 7, 8], "min_rr": [Decimal("2.0"), Decimal("2.5")]},
)

runner = OptimizationRunner()
outcome = runner.run(
    {
        "symbols": ["SPY"],
        "start_date": "2020-01-01",
        "end_date": "2023-12-31",
        "strategies": ["break_and_retest"],
        "initial_capital": 100_000,
        "base_risk_per_trade": "0.01",
        "parameter_grid": grid,
        "walk_forward_config": {"training_months": 12, "testing_months": 3, "step_months": 3},
    }
)
result = outcome.walk_forward

# %% [markdown]
# ## Summary

# %%
for key, val in result.summary().items():
    print(f"{key}: {val}")

# %% [markdown]
# ## Per-Window Results

# %%
for o in outcome.window_results:
    w = o.window
    is_pf = o.training_winner.metric("profit_factor") if o.training_winner else None
    oos_pf = o.testing_result.metric("profit_factor") if o.testing_result else None
    params = o.training_winner.combination if o.training_winner else None
    print(f"Window {w.index} ({w.testing_start}..{w.testing_end}): IS PF={is_pf}, OOS PF={oos_pf}, params={params}")

# %% [markdown]
# ## Overfitting Check

# %%
for v in outcome.validation:
    flag = "OVERFIT" if v.is_overfit else "ok"
    print(
        f"{flag:8s} windows={v.window_count} degradation={v.degradation_pct}% "
        f"efficiency={v.walk_forward_efficiency} params={v.params}"
    )
print(f"Best validated params: {outcome.best_params}")
