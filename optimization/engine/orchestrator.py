"""Optimization orchestrator: runs backtests across a parameter space.

Provides the high-level API for grid searches and walk-forward optimizations.
Backtests run on a bounded thread pool; results are consumed as they complete,
in no particular order, and every consumed result updates the run's progress
in the result store. Runs can be executed synchronously, in the background,
queried while running and cancelled.
"""

import dataclasses
import logging
import math
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from optimization.engine.config import RunConfig
from optimization.engine.exceptions import ConfigError, OptimizationError
from optimization.engine.parameter_space import ParameterSpace, combination_key, format_combination
from optimization.engine.records import BacktestMetrics, ResultRecord, RunState, RunStatus
from optimization.engine.simulator import BacktestRequest, Simulator, SyntheticSimulator
from optimization.engine.store import InMemoryResultStore, ResultStore
from optimization.engine.validation import ValidationSummary, analyze_walk_forward, best_params
from optimization.engine.walk_forward import WalkForwardResult, Window, WindowOutcome, WindowPlan

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]


@dataclass
class OptimizationOutcome:
    """What a finished (or cancelled) run produced.

    Attributes:
        run_id: Identifier of the run in the result store.
        status: Final status (completed or cancelled).
        mode: "grid_search" or "walk_forward".
        total_combinations: Size of the parameter space.
        best_params: Winning combination, or None if nothing qualified.
        best_metrics: Metrics of the grid-search winner.
        windows: Number of walk-forward windows.
        walk_forward: Per-window outcomes and validation, walk-forward mode only.
    """

    run_id: str
    status: RunStatus
    mode: str
    total_combinations: int
    best_params: dict[str, Any] | None = None
    best_metrics: BacktestMetrics | None = None
    windows: int = 0
    walk_forward: WalkForwardResult | None = None

    @property
    def window_results(self) -> list[WindowOutcome]:
        return self.walk_forward.outcomes if self.walk_forward else []

    @property
    def validation(self) -> list[ValidationSummary]:
        return self.walk_forward.validation if self.walk_forward else []


class ProgressCounter:
    """Thread-safe count of completed backtests."""

    def __init__(self, total: int) -> None:
        self.total = total
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def advance(self) -> tuple[int, float]:
        """Count one completed backtest; returns (completed, fraction)."""
        with self._lock:
            self._count += 1
            completed = self._count
        fraction = completed / self.total if self.total else 1.0
        return completed, fraction


class _RunCancelled(Exception):
    pass


@dataclass
class _RunContext:
    run_id: str
    config: RunConfig
    max_workers: int
    counter: ProgressCounter
    cancel_event: threading.Event
    progress_callback: ProgressCallback | None = None
    windows: list[Window] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def select_best(records: list[ResultRecord], metric: str, min_trades: int) -> ResultRecord | None:
    """Pick the record with the highest ``metric`` among those with enough trades.

    Missing or non-finite metric values count as 0.0. Exact ties go to the
    combination that comes first in enumeration order, regardless of
    completion order.
    """
    eligible = [r for r in records if r.total_trades >= min_trades]
    if not eligible:
        return None
    return min(eligible, key=lambda r: (-_metric_value(r, metric), r.combination_index))


class OptimizationRunner:
    """High-level API for running optimizations.

    Attributes:
        simulator: Backtest collaborator, one call per combination per date range.
        store: Where run states and result records are kept.
        max_workers: Pool size override; defaults to the run's ``max_concurrency``.
    """

    def __init__(
        self,
        simulator: Simulator | None = None,
        store: ResultStore | None = None,
        max_workers: int | None = None,
    ) -> None:
        """Initialize runner.

        Args:
            simulator: Backtest simulator. Defaults to SyntheticSimulator.
            store: Result store. Defaults to a fresh InMemoryResultStore.
            max_workers: Parallel backtests for every run, overriding the
                configuration's ``max_concurrency``.
        """
        if max_workers is not None and max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {max_workers}")
        self.simulator = simulator if simulator is not None else SyntheticSimulator()
        self.store = store if store is not None else InMemoryResultStore()
        self.max_workers = max_workers
        self._lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}

    def run(
        self,
        config: RunConfig | Mapping[str, Any],
        progress_callback: ProgressCallback | None = None,
    ) -> OptimizationOutcome:
        """Run a grid search, or a walk-forward optimization if configured.

        Args:
            config: RunConfig or a plain configuration mapping.
            progress_callback: Called with ``{"completed", "total", "fraction"}``
                after every finished backtest.

        Returns:
            OptimizationOutcome of the run.

        Raises:
            ConfigError: If the configuration is invalid; no run is created.
            OptimizationError: If the run fails; the run is marked failed.
        """
        cfg = _as_config(config)
        ctx = self._start_run(cfg, progress_callback)
        return self._execute(ctx)

    def run_grid_search(
        self,
        config: RunConfig | Mapping[str, Any],
        space: ParameterSpace | Mapping[str, list] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> OptimizationOutcome:
        """Run every combination over the full date range and keep the best.

        Args:
            config: RunConfig or configuration mapping. Any walk-forward
                settings are ignored.
            space: Parameter space to search; defaults to the configuration's.
            progress_callback: See ``run``.
        """
        cfg = _as_config(config, space=space, grid_only=True)
        ctx = self._start_run(cfg, progress_callback)
        return self._execute(ctx)

    def run_walk_forward(
        self,
        config: RunConfig | Mapping[str, Any],
        space: ParameterSpace | Mapping[str, list] | None = None,
        plan: WindowPlan | Mapping[str, Any] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> OptimizationOutcome:
        """Optimize on each training window and validate on its testing window.

        Args:
            config: RunConfig or configuration mapping.
            space: Parameter space to search; defaults to the configuration's.
            plan: Window plan; defaults to the configuration's.
            progress_callback: See ``run``.

        Raises:
            ConfigError: If no window plan is given or the date range is too
                short for a single window.
        """
        cfg = _as_config(config, space=space, plan=plan)
        if cfg.walk_forward is None:
            raise ConfigError("walk_forward_config", "a window plan is required for walk-forward runs")
        ctx = self._start_run(cfg, progress_callback)
        return self._execute(ctx)

    def run_async(
        self,
        config: RunConfig | Mapping[str, Any],
        progress_callback: ProgressCallback | None = None,
    ) -> str:
        """Start a run on a background thread and return its id immediately.

        Configuration errors are still raised synchronously. Use ``get_status``
        to follow progress and ``join`` to wait for the run to finish.
        """
        cfg = _as_config(config)
        ctx = self._start_run(cfg, progress_callback)
        thread = threading.Thread(
            target=self._execute_in_background,
            args=(ctx,),
            name=f"optimization-{ctx.run_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._threads[ctx.run_id] = thread
        thread.start()
        return ctx.run_id

    def join(self, run_id: str, timeout: float | None = None) -> RunState:
        """Wait for a background run to finish and return its latest state."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.store.get_run(run_id)

    def get_status(self, run_id: str) -> RunState:
        """Latest known state of a run, including partial progress."""
        return self.store.get_run(run_id)

    def get_results(
        self,
        run_id: str,
        limit: int | None = 20,
        metric: str = "profit_factor",
        training_only: bool = True,
    ) -> list[ResultRecord]:
        """Result records of a run, sorted by ``metric`` descending."""
        return self.store.get_results(run_id, limit=limit, metric=metric, training_only=training_only)

    def cancel(self, run_id: str) -> bool:
        """Cancel a run.

        The run is marked cancelled and no further backtests are dispatched for
        it. Backtests already running finish and their results are kept.

        Returns:
            False if the run had already finished.
        """
        cancelled = self.store.mark_cancelled(run_id)
        with self._lock:
            event = self._cancel_events.get(run_id)
        if event is not None:
            event.set()
        if cancelled:
            logger.info("[Optimization] Cancellation requested for run %s", run_id)
        return cancelled

    def _start_run(self, cfg: RunConfig, progress_callback: ProgressCallback | None) -> _RunContext:
        space = cfg.parameter_space
        n = space.count()
        windows: list[Window] = []
        if cfg.walk_forward is not None:
            windows = cfg.walk_forward.generate_windows(cfg.start_date, cfg.end_date)
            if not windows:
                raise ConfigError(
                    "walk_forward_config",
                    f"{cfg.start_date}..{cfg.end_date} is too short for one window "
                    f"({cfg.walk_forward.min_data_months()} months required)",
                )
            total_backtests = len(windows) * (n + 1)
        else:
            total_backtests = n

        state = self.store.create_run(
            RunState(
                mode=cfg.mode,
                total_combinations=n,
                total_backtests=total_backtests,
                name=cfg.name,
                parameter_grid=space.to_storable(),
                walk_forward_config=cfg.walk_forward.to_dict() if cfg.walk_forward else {},
                optimization_metric=cfg.metric,
                min_trades=cfg.effective_min_trades,
            )
        )
        event = threading.Event()
        with self._lock:
            self._cancel_events[state.run_id] = event

        return _RunContext(
            run_id=state.run_id,
            config=cfg,
            max_workers=self.max_workers or cfg.max_concurrency,
            counter=ProgressCounter(total_backtests),
            cancel_event=event,
            progress_callback=progress_callback,
            windows=windows,
        )

    def _execute(self, ctx: _RunContext) -> OptimizationOutcome:
        run_id = ctx.run_id
        cfg = ctx.config
        start = time.perf_counter()
        logger.info(
            "[Optimization] Starting %s run %s: %d combinations, %d backtests, %d workers",
            cfg.mode,
            run_id,
            cfg.parameter_space.count(),
            ctx.counter.total,
            ctx.max_workers,
        )

        try:
            self.store.mark_running(run_id)
            if ctx.cancelled:
                raise _RunCancelled
            if cfg.walk_forward is not None:
                outcome = self._walk_forward(ctx)
            else:
                outcome = self._grid_search(ctx)
        except _RunCancelled:
            self.store.mark_cancelled(run_id)
            logger.info(
                "[Optimization] Run %s cancelled after %d of %d backtests",
                run_id,
                ctx.counter.count,
                ctx.counter.total,
            )
            return OptimizationOutcome(
                run_id=run_id,
                status=RunStatus.CANCELLED,
                mode=cfg.mode,
                total_combinations=cfg.parameter_space.count(),
                windows=len(ctx.windows),
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("[Optimization] Run %s failed", run_id)
            self.store.mark_failed(run_id, message)
            raise OptimizationError(f"optimization run {run_id} failed: {message}") from exc
        finally:
            with self._lock:
                self._cancel_events.pop(run_id, None)

        logger.info("[Optimization] Run %s completed in %.2fs", run_id, time.perf_counter() - start)
        return outcome

    def _execute_in_background(self, ctx: _RunContext) -> None:
        try:
            self._execute(ctx)
        except OptimizationError:
            # Already logged and recorded on the run state.
            pass
        finally:
            with self._lock:
                self._threads.pop(ctx.run_id, None)

    def _grid_search(self, ctx: _RunContext) -> OptimizationOutcome:
        cfg = ctx.config
        records = self._run_batch(
            ctx,
            enumerate(cfg.parameter_space.lazy_combinations()),
            cfg.start_date,
            cfg.end_date,
        )

        best = select_best(records, cfg.metric, cfg.effective_min_trades)
        best_combo = best.combination if best else None
        self._complete(ctx, best_combo)

        if best is None:
            logger.warning(
                "[Optimization] No combination reached %d trades in run %s",
                cfg.effective_min_trades,
                ctx.run_id,
            )
        else:
            logger.info(
                "[Optimization] Best %s=%s with %s",
                cfg.metric,
                best.metric(cfg.metric),
                format_combination(best.combination),
            )

        return OptimizationOutcome(
            run_id=ctx.run_id,
            status=RunStatus.COMPLETED,
            mode=cfg.mode,
            total_combinations=cfg.parameter_space.count(),
            best_params=best_combo,
            best_metrics=best.metrics if best else None,
        )

    def _complete(self, ctx: _RunContext, best: dict[str, Any] | None) -> None:
        # A cancel that lands after the last backtest still wins.
        if ctx.cancelled or not self.store.mark_completed(ctx.run_id, best):
            raise _RunCancelled

    def _walk_forward(self, ctx: _RunContext) -> OptimizationOutcome:
        cfg = ctx.config
        metric = cfg.metric
        min_trades = cfg.effective_min_trades
        outcomes: list[WindowOutcome] = []

        for window in ctx.windows:
            logger.debug("[Optimization] Processing window %d", window.index)
            training = self._run_batch(
                ctx,
                enumerate(cfg.parameter_space.lazy_combinations()),
                window.training_start,
                window.training_end,
                window=window,
            )

            winner = select_best(training, metric, min_trades)
            testing = None
            if winner is not None:
                if ctx.cancelled:
                    raise _RunCancelled
                testing = self._run_single(
                    ctx,
                    winner.combination,
                    winner.combination_index,
                    window.testing_start,
                    window.testing_end,
                    window=window,
                    is_training=False,
                )
                self._consume(ctx, testing)

            outcomes.append(WindowOutcome(window=window, training_winner=winner, testing_result=testing))
            logger.info(
                "Window %d: IS %s=%s, OOS %s=%s, best_params=%s",
                window.index,
                metric,
                winner.metric(metric) if winner else None,
                metric,
                testing.metric(metric) if testing else None,
                format_combination(winner.combination) if winner else None,
            )

        if ctx.cancelled:
            raise _RunCancelled
        validation = analyze_walk_forward(outcomes, metric)
        self._record_validation(ctx.run_id, outcomes, validation)
        best = best_params(validation)
        self._complete(ctx, best)

        return OptimizationOutcome(
            run_id=ctx.run_id,
            status=RunStatus.COMPLETED,
            mode=cfg.mode,
            total_combinations=cfg.parameter_space.count(),
            best_params=best,
            windows=len(ctx.windows),
            walk_forward=WalkForwardResult(
                outcomes=outcomes,
                metric=metric,
                validation=validation,
                best_params=best,
            ),
        )

    def _run_batch(
        self,
        ctx: _RunContext,
        combinations: Iterator[tuple[int, dict[str, Any]]],
        start_date: date,
        end_date: date,
        window: Window | None = None,
    ) -> list[ResultRecord]:
        """Backtest every combination over one date range on the worker pool.

        At most ``max_workers`` backtests are in flight; the next combination is
        only pulled from the iterator when a slot frees up, and not at all once
        the run is cancelled.
        """
        records: list[ResultRecord] = []
        pending: set[Future] = set()
        exhausted = False

        with ThreadPoolExecutor(max_workers=ctx.max_workers, thread_name_prefix="backtest") as pool:
            while True:
                while not exhausted and not ctx.cancelled and len(pending) < ctx.max_workers:
                    item = next(combinations, None)
                    if item is None:
                        exhausted = True
                        break
                    index, combo = item
                    pending.add(
                        pool.submit(self._run_single, ctx, combo, index, start_date, end_date, window, True)
                    )

                if not pending:
                    break

                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    record = future.result()
                    self._consume(ctx, record)
                    records.append(record)

        if ctx.cancelled:
            raise _RunCancelled
        return records

    def _run_single(
        self,
        ctx: _RunContext,
        combination: dict[str, Any],
        index: int,
        start_date: date,
        end_date: date,
        window: Window | None = None,
        is_training: bool = True,
    ) -> ResultRecord:
        """Run one backtest; simulator failures become zero-trade records."""
        cfg = ctx.config
        request = BacktestRequest(
            symbols=cfg.symbols,
            start_date=start_date,
            end_date=end_date,
            strategies=cfg.strategies,
            initial_capital=cfg.initial_capital,
            risk_per_trade=_risk_per_trade(combination, cfg.base_risk_per_trade),
            parameters=dict(combination),
        )
        base = {
            "run_id": ctx.run_id,
            "combination": dict(combination),
            "combination_index": index,
            "is_training": is_training,
            "window_index": window.index if window else None,
            "window_start": start_date if window else None,
            "window_end": end_date if window else None,
        }

        try:
            result = self.simulator.run_backtest(request)
        except Exception as exc:
            logger.warning(
                "[Optimization] Backtest failed for params %s (%s..%s): %s",
                format_combination(combination),
                start_date,
                end_date,
                exc,
            )
            return ResultRecord(metrics=BacktestMetrics(), error=str(exc) or type(exc).__name__, **base)

        return ResultRecord(
            metrics=BacktestMetrics.from_result(result),
            backtest_run_id=getattr(result, "backtest_run_id", None),
            **base,
        )

    def _consume(self, ctx: _RunContext, record: ResultRecord) -> None:
        self.store.append_result(record)
        completed, fraction = ctx.counter.advance()
        self.store.update_progress(ctx.run_id, completed, fraction)
        if ctx.progress_callback is not None:
            ctx.progress_callback({"completed": completed, "total": ctx.counter.total, "fraction": fraction})

    def _record_validation(
        self,
        run_id: str,
        outcomes: list[WindowOutcome],
        validation: list[ValidationSummary],
    ) -> None:
        winners: dict[tuple, list[str]] = {}
        for o in outcomes:
            if o.training_winner is not None:
                key = combination_key(o.training_winner.combination)
                winners.setdefault(key, []).append(o.training_winner.record_id)

        for summary in validation:
            record_ids = winners.get(combination_key(summary.params), [])
            fields = {
                "degradation_pct": summary.degradation_pct,
                "walk_forward_efficiency": summary.walk_forward_efficiency,
                "is_overfit": summary.is_overfit,
                "oos_profit_factor": summary.oos_profit_factor,
                "oos_net_profit": summary.oos_net_profit,
                "oos_win_rate": summary.oos_win_rate,
                "oos_total_trades": summary.oos_total_trades,
            }
            self.store.apply_validation(run_id, record_ids, fields)
            for o in outcomes:
                if o.training_winner is not None and o.training_winner.record_id in record_ids:
                    for name, value in fields.items():
                        setattr(o.training_winner, name, value)


def _as_config(
    config: RunConfig | Mapping[str, Any],
    space: ParameterSpace | Mapping[str, list] | None = None,
    plan: WindowPlan | Mapping[str, Any] | None = None,
    grid_only: bool = False,
) -> RunConfig:
    if isinstance(config, RunConfig):
        changes: dict[str, Any] = {}
        if space is not None:
            changes["parameter_space"] = space if isinstance(space, ParameterSpace) else ParameterSpace(space)
        if plan is not None:
            changes["walk_forward"] = (
                plan
                if isinstance(plan, WindowPlan)
                else WindowPlan.from_dict(
                    {"optimization_metric": config.optimization_metric, "min_trades": config.min_trades, **plan}
                )
            )
        if grid_only:
            changes["walk_forward"] = None
        return dataclasses.replace(config, **changes) if changes else config

    if not isinstance(config, Mapping):
        raise ConfigError(None, f"configuration must be a RunConfig or mapping, got {type(config).__name__}")
    data = dict(config)
    if space is not None:
        data["parameter_grid"] = space
    if plan is not None:
        data["walk_forward_config"] = plan
    if grid_only:
        data.pop("walk_forward_config", None)
    return RunConfig.from_dict(data)


def _risk_per_trade(combination: Mapping[str, Any], base: Decimal) -> Decimal:
    value = combination.get("risk_per_trade")
    if value is None:
        return base
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _metric_value(record: ResultRecord, metric: str) -> float:
    value = record.metric(metric)
    if value is None:
        return 0.0
    value = float(value)
    return value if math.isfinite(value) else 0.0
