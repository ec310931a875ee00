# %% [markdown]
# # Grid Search
# Search the default strategy grid with the synthetic simulator and rank the results.

# %%
import logging

import polars as pl

from optimization.engine.orchestrator import OptimizationRunner
from optimization.engine.parameter_space import ParameterSpace

logging.basicConfig(level=logging.INFO)

# %%
space = ParameterSpace.default()
print(space.summary())

runner = OptimizationRunner()
outcome = runner.run(
    {
        "symbols": ["SPY", "QQQ"],
        "start_date": "2023-01-01",
        "end_date": "2023-12-31",
        "strategies": ["break_and_retest"],
        "initial_capital": 100_000,
        "base_risk_per_trade": "0.01",
        "parameter_grid": space,
        "min_trades": 30,
    },
    progress_callback=lambda p: print(f"\r{p['completed']}/{p['total']}", end=""),
)

# %% [markdown]
# ## Results Table

# %%
print(f"\nBest params: {outcome.best_params}")
df = runner.store.results_frame(outcome.run_id)
print(df.select("profit_factor", "total_trades", "win_rate", "^param_.*$").head(10))

# %% [markdown]
# ## Heatmap (score x grade filter)

# %%
cells = (
    df.group_by("param_min_confluence_score", "param_signal_grade_filter")
    .agg(pl.col("profit_factor").max().alias("best_pf"))
    .sort("param_min_confluence_score", "param_signal_grade_filter")
)
print(cells)
# import plotly.express as px
# For a heatmap, pivot cells and use px.imshow(matrix, x=grades, y=scores)
