"""Persistence of optimization runs and their result records."""

import dataclasses
import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import polars as pl

from optimization.engine.analytics import compare_results
from optimization.engine.exceptions import RunNotFoundError
from optimization.engine.records import ResultRecord, RunState, RunStatus

logger = logging.getLogger(__name__)


class ResultStore(Protocol):
    """Storage keyed by run id, queried by (run_id, is_training)."""

    def create_run(self, state: RunState) -> RunState: ...

    def mark_running(self, run_id: str) -> None: ...

    def update_progress(self, run_id: str, completed: int, progress: float) -> None: ...

    def append_result(self, record: ResultRecord) -> None: ...

    def apply_validation(self, run_id: str, record_ids: list[str], fields: dict[str, Any]) -> None: ...

    def mark_completed(self, run_id: str, best_params: dict[str, Any] | None) -> bool: ...

    def mark_failed(self, run_id: str, error_message: str) -> None: ...

    def mark_cancelled(self, run_id: str) -> bool: ...

    def get_run(self, run_id: str) -> RunState: ...

    def get_results(
        self,
        run_id: str,
        limit: int | None = 20,
        metric: str = "profit_factor",
        training_only: bool = True,
    ) -> list[ResultRecord]: ...


_VALIDATION_FIELDS = frozenset(
    {
        "degradation_pct",
        "walk_forward_efficiency",
        "is_overfit",
        "oos_profit_factor",
        "oos_net_profit",
        "oos_win_rate",
        "oos_total_trades",
    }
)


class InMemoryResultStore:
    """Thread-safe in-process ResultStore.

    Runs and records live in dicts guarded by one lock. Reads return copies, so
    callers never observe a half-applied update. Terminal statuses are final:
    later attempts to complete, fail or cancel the run are ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, RunState] = {}
        self._results: dict[str, list[ResultRecord]] = {}

    def create_run(self, state: RunState) -> RunState:
        with self._lock:
            self._runs[state.run_id] = state
            self._results[state.run_id] = []
            return dataclasses.replace(state)

    def mark_running(self, run_id: str) -> None:
        with self._lock:
            run = self._run(run_id)
            if run.status is RunStatus.PENDING:
                run.status = RunStatus.RUNNING
                run.started_at = _now()

    def update_progress(self, run_id: str, completed: int, progress: float) -> None:
        with self._lock:
            run = self._run(run_id)
            run.completed_combinations = completed
            run.progress = progress

    def append_result(self, record: ResultRecord) -> None:
        with self._lock:
            self._run(record.run_id)
            self._results[record.run_id].append(record)

    def apply_validation(self, run_id: str, record_ids: list[str], fields: dict[str, Any]) -> None:
        """Copy walk-forward validation fields onto the given records."""
        unknown = set(fields) - _VALIDATION_FIELDS
        if unknown:
            raise ValueError(f"not validation fields: {sorted(unknown)}")
        wanted = set(record_ids)
        with self._lock:
            self._run(run_id)
            for record in self._results[run_id]:
                if record.record_id in wanted:
                    for name, value in fields.items():
                        setattr(record, name, value)

    def mark_completed(self, run_id: str, best_params: dict[str, Any] | None) -> bool:
        """Complete the run; returns False if it had already finished."""
        with self._lock:
            run = self._run(run_id)
            if not self._finish(run, RunStatus.COMPLETED):
                return False
            run.progress = 1.0
            run.best_params = dict(best_params) if best_params is not None else None
            return True

    def mark_failed(self, run_id: str, error_message: str) -> None:
        with self._lock:
            run = self._run(run_id)
            if self._finish(run, RunStatus.FAILED):
                run.error_message = error_message

    def mark_cancelled(self, run_id: str) -> bool:
        """Cancel the run; returns False if it had already finished."""
        with self._lock:
            return self._finish(self._run(run_id), RunStatus.CANCELLED)

    def get_run(self, run_id: str) -> RunState:
        with self._lock:
            return dataclasses.replace(self._run(run_id))

    def list_runs(self, status: RunStatus | None = None) -> list[RunState]:
        """All runs, oldest first, optionally only those with ``status``."""
        with self._lock:
            runs = [dataclasses.replace(r) for r in self._runs.values()]
        if status is not None:
            runs = [r for r in runs if r.status is status]
        return sorted(runs, key=lambda r: r.created_at)

    def get_results(
        self,
        run_id: str,
        limit: int | None = 20,
        metric: str = "profit_factor",
        training_only: bool = True,
    ) -> list[ResultRecord]:
        """Records of a run, best ``metric`` first (missing values last).

        Args:
            run_id: Run to query.
            limit: Maximum number of records, None for all.
            metric: Metric to sort by.
            training_only: Only return training-period records.
        """
        with self._lock:
            self._run(run_id)
            records = [dataclasses.replace(r) for r in self._results[run_id]]

        if training_only:
            records = [r for r in records if r.is_training]

        def sort_key(r: ResultRecord) -> tuple:
            value = r.metric(metric)
            return (value is None, -(value or 0.0), r.window_index or 0, r.combination_index)

        records.sort(key=sort_key)
        return records if limit is None else records[:limit]

    def results_frame(self, run_id: str, metric: str = "profit_factor", training_only: bool = False) -> pl.DataFrame:
        """All records of a run as a Polars DataFrame ranked by ``metric``."""
        return compare_results(
            self.get_results(run_id, limit=None, metric=metric, training_only=training_only),
            metric=metric,
        )

    def save(self, run_id: str, path: str | Path) -> Path:
        """Save a run's results to Parquet and its state to JSON.

        Args:
            run_id: Run to export.
            path: Directory to write ``results.parquet`` and ``run.json`` into.

        Returns:
            Path to the output directory.
        """
        out_dir = Path(path)
        out_dir.mkdir(parents=True, exist_ok=True)

        state = self.get_run(run_id)
        df = self.results_frame(run_id, metric=state.optimization_metric)
        if df.height:
            df.write_parquet(out_dir / "results.parquet", use_pyarrow=True)
        with open(out_dir / "run.json", "w") as f:
            json.dump(state.to_dict(), f, indent=2)

        logger.info("Saved %d results of run %s to %s", df.height, run_id, out_dir)
        return out_dir

    def _run(self, run_id: str) -> RunState:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(run_id) from None

    @staticmethod
    def _finish(run: RunState, status: RunStatus) -> bool:
        if run.status.is_terminal:
            logger.debug("Run %s already %s, ignoring %s", run.run_id, run.status.value, status.value)
            return False
        run.status = status
        run.completed_at = _now()
        return True


def _now() -> datetime:
    return datetime.now(UTC)
