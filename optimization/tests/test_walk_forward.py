"""Tests for walk-forward window planning and results."""

import json
from datetime import date

import pytest

from optimization.engine.exceptions import ConfigError, WindowPlanError
from optimization.engine.records import BacktestMetrics, ResultRecord
from optimization.engine.walk_forward import (
    WalkForwardResult,
    Window,
    WindowOutcome,
    WindowPlan,
    add_months,
    valid_window,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def plan():
    """Twelve months of training, three of testing, stepping three months."""
    return WindowPlan(training_months=12, testing_months=3, step_months=3)


def _record(pf, net=100.0, trades=40, is_training=True, combo=None):
    return ResultRecord(
        run_id="run-1",
        combination=combo or {"min_rr": 2.0},
        metrics=BacktestMetrics(total_trades=trades, profit_factor=pf, net_profit=net),
        is_training=is_training,
    )


# ---------------------------------------------------------------------------
# add_months
# ---------------------------------------------------------------------------


class TestAddMonths:
    def test_plain(self):
        assert add_months(date(2020, 1, 15), 3) == date(2020, 4, 15)

    def test_crosses_year(self):
        assert add_months(date(2020, 11, 1), 3) == date(2021, 2, 1)

    def test_clamps_to_month_end(self):
        """Jan 31 + 1 month lands on the last day of February."""
        assert add_months(date(2020, 1, 31), 1) == date(2020, 2, 29)
        assert add_months(date(2021, 1, 31), 1) == date(2021, 2, 28)

    def test_zero(self):
        assert add_months(date(2020, 5, 31), 0) == date(2020, 5, 31)


# ---------------------------------------------------------------------------
# WindowPlan
# ---------------------------------------------------------------------------


class TestWindowPlan:
    def test_defaults(self):
        plan = WindowPlan.default()
        assert plan.training_months == 12
        assert plan.testing_months == 3
        assert plan.step_months == 3
        assert plan.optimization_metric == "profit_factor"
        assert plan.min_trades == 30
        assert plan.anchored is False
        assert plan.min_data_months() == 15

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"training_months": 0}, "training_months"),
            ({"testing_months": -1}, "testing_months"),
            ({"step_months": 1.5}, "step_months"),
            ({"optimization_metric": "max_drawdown_pct"}, "optimization_metric"),
            ({"min_trades": -1}, "min_trades"),
            ({"anchored": "yes"}, "anchored"),
        ],
    )
    def test_invalid_field_is_named(self, kwargs, field):
        with pytest.raises(WindowPlanError) as exc_info:
            WindowPlan(**kwargs)
        assert exc_info.value.field == field

    def test_error_is_config_error(self):
        with pytest.raises(ConfigError):
            WindowPlan(training_months=True)

    def test_dict_round_trip(self):
        plan = WindowPlan(training_months=6, testing_months=2, step_months=1, min_trades=10, anchored=True)
        restored = WindowPlan.from_dict(json.loads(json.dumps(plan.to_dict())))
        assert restored == plan

    def test_from_dict_fills_defaults(self):
        assert WindowPlan.from_dict({"training_months": 6}) == WindowPlan(training_months=6)

    def test_from_dict_rejects_unknown_key(self):
        with pytest.raises(WindowPlanError) as exc_info:
            WindowPlan.from_dict({"train_months": 6})
        assert exc_info.value.field == "train_months"


class TestGenerateWindows:
    def test_rolling_windows(self, plan):
        """30 months of history fit six 12+3 windows stepping by 3 months."""
        windows = plan.generate_windows(date(2020, 1, 1), date(2022, 6, 30))
        assert len(windows) == 6
        assert [w.testing_end for w in windows] == [
            date(2021, 3, 31),
            date(2021, 6, 30),
            date(2021, 9, 30),
            date(2021, 12, 31),
            date(2022, 3, 31),
            date(2022, 6, 30),
        ]

    def test_first_window_boundaries(self, plan):
        first = plan.generate_windows(date(2020, 1, 1), date(2022, 6, 30))[0]
        assert first == Window(
            index=0,
            training_start=date(2020, 1, 1),
            training_end=date(2020, 12, 31),
            testing_start=date(2021, 1, 1),
            testing_end=date(2021, 3, 31),
        )

    def test_rolling_training_slides(self, plan):
        windows = plan.generate_windows(date(2020, 1, 1), date(2022, 6, 30))
        assert windows[1].training_start == date(2020, 4, 1)
        assert windows[1].training_end == date(2021, 3, 31)
        assert all(w.training_months() == 12 for w in windows)

    def test_anchored_training_grows(self):
        plan = WindowPlan(training_months=12, testing_months=3, step_months=3, anchored=True)
        windows = plan.generate_windows(date(2020, 1, 1), date(2022, 6, 30))
        assert len(windows) == 6
        assert all(w.training_start == date(2020, 1, 1) for w in windows)
        assert [w.training_months() for w in windows] == [12, 15, 18, 21, 24, 27]
        assert windows[2].testing_start == date(2021, 7, 1)
        assert windows[2].testing_end == date(2021, 9, 30)

    def test_windows_are_ordered_and_indexed(self, plan):
        windows = plan.generate_windows(date(2019, 1, 1), date(2023, 12, 31))
        assert [w.index for w in windows] == list(range(len(windows)))
        for w in windows:
            assert valid_window(w)
            assert (w.testing_start - w.training_end).days == 1

    def test_partial_last_window_dropped(self, plan):
        """A testing period running one day past the end is discarded, not truncated."""
        windows = plan.generate_windows(date(2020, 1, 1), date(2022, 6, 29))
        assert len(windows) == 5
        assert windows[-1].testing_end == date(2022, 3, 31)

    def test_range_too_short(self, plan):
        assert plan.generate_windows(date(2020, 1, 1), date(2021, 3, 30)) == []
        assert plan.window_count(date(2020, 1, 1), date(2021, 3, 31)) == 1

    def test_month_end_start_clamps(self):
        plan = WindowPlan(training_months=1, testing_months=1, step_months=1)
        first = plan.generate_windows(date(2020, 1, 31), date(2020, 12, 31))[0]
        assert first.training_end == date(2020, 2, 28)
        assert first.testing_start == date(2020, 2, 29)
        assert valid_window(first)

    def test_valid_window_rejects_overlap(self):
        bad = Window(0, date(2020, 1, 1), date(2020, 6, 30), date(2020, 6, 30), date(2020, 9, 30))
        assert not valid_window(bad)


# ---------------------------------------------------------------------------
# WalkForwardResult
# ---------------------------------------------------------------------------


class TestWalkForwardResult:
    @pytest.fixture
    def result(self, plan):
        windows = plan.generate_windows(date(2020, 1, 1), date(2021, 9, 30))
        outcomes = [
            WindowOutcome(windows[0], _record(2.0), _record(1.5, net=300.0, is_training=False)),
            WindowOutcome(windows[1], _record(1.6), _record(0.9, net=-50.0, is_training=False)),
            WindowOutcome(windows[2]),
        ]
        return WalkForwardResult(outcomes=outcomes, metric="profit_factor", best_params={"min_rr": 2.0})

    def test_averages(self, result):
        assert result.avg_in_sample == pytest.approx(1.8)
        assert result.avg_out_of_sample == pytest.approx(1.2)
        assert result.efficiency == pytest.approx(1.2 / 1.8)
        assert result.total_oos_net_profit == pytest.approx(250.0)

    def test_summary(self, result):
        summary = result.summary()
        assert summary["num_windows"] == 3
        assert summary["windows_with_winner"] == 2
        assert summary["metric"] == "profit_factor"

    def test_empty_result(self):
        empty = WalkForwardResult(outcomes=[], metric="profit_factor")
        assert empty.avg_in_sample == 0.0
        assert empty.efficiency == 0.0

    def test_save_json(self, result, tmp_path):
        out = tmp_path / "wf.json"
        result.save(out)
        data = json.loads(out.read_text())
        assert len(data["windows"]) == 3
        assert data["windows"][0]["training_start"] == "2020-01-01"
        assert data["windows"][0]["in_sample"] == 2.0
        assert data["windows"][2]["best_params"] is None
        assert data["best_params"] == {"min_rr": 2.0}

    def test_infinite_metric_is_strict_json(self, plan):
        windows = plan.generate_windows(date(2020, 1, 1), date(2021, 6, 30))
        outcomes = [
            WindowOutcome(windows[0], _record(float("inf")), _record(1.5, is_training=False)),
            WindowOutcome(windows[1], _record(2.0), _record(1.0, is_training=False)),
        ]
        result = WalkForwardResult(outcomes=outcomes, metric="profit_factor")
        assert result.avg_in_sample == pytest.approx(2.0)

        data = json.loads(result.to_json())
        assert data["windows"][0]["in_sample"] is None
        assert data["summary"]["avg_in_sample"] == 2.0
