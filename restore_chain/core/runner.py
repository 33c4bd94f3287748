"""
Plan runner.

Executes restore plans through a restore executor. Steps of one database run
strictly in order, each one a precondition for the next; plans of different
databases run concurrently on a small bounded pool. Failed steps are reported
with their index and are never retried here.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from ..models import PlanExecutionReport, RestorePlanStep, StepFailure

logger = logging.getLogger(__name__)

MAX_PARALLEL_DATABASES = 10


def _noop_progress(status: str, message: str, data: Dict[str, Any]) -> None:
    pass


class PlanRunner:
    """Runs restore plans step by step.

    Attributes:
        executor: Object with ``execute(step, options) -> StepOutcome``
        max_workers: Number of databases restored at the same time
        progress_callback: Called with (status, message, data) for each step
    """

    def __init__(
        self,
        executor,
        max_workers: int = 2,
        progress_callback: Optional[Callable[[str, str, Dict[str, Any]], None]] = None,
    ):
        if not 1 <= max_workers <= MAX_PARALLEL_DATABASES:
            raise ValueError(f"max_workers must be between 1 and {MAX_PARALLEL_DATABASES}")
        self.executor = executor
        self.max_workers = max_workers
        self.progress_callback = progress_callback or _noop_progress

    def run_plan(
        self,
        database_name: str,
        steps: Sequence[RestorePlanStep],
        options=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PlanExecutionReport:
        """
        Execute one database's plan in order.

        Cancellation is checked between steps, so an aborted run leaves the
        database in the state of the last completed step.

        Args:
            database_name: Database the plan restores
            steps: Plan steps in apply order
            options: Executor options passed through unchanged
            cancel_event: Set to stop before the next step

        Returns:
            PlanExecutionReport: Completed step count and the failure, if any
        """
        total = len(steps)
        for position, step in enumerate(steps):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    f"Restore of {database_name} cancelled after {position}/{total} step(s)"
                )
                return PlanExecutionReport(
                    database_name=database_name,
                    completed_steps=position,
                    total_steps=total,
                    cancelled=True,
                )

            self.progress_callback(
                "processing",
                f"Step {step.index + 1}/{total}: {step.action.value} {database_name}",
                {"database": database_name, "step": step.index, "recovery": step.recovery_mode.value},
            )

            try:
                outcome = self.executor.execute(step, options)
                error = None if outcome.success else (outcome.error or "unknown executor failure")
            except Exception as e:
                logger.exception(f"Executor raised on step {step.index} of {database_name}")
                error = f"{type(e).__name__}: {e}"

            if error is not None:
                logger.error(f"Restore of {database_name} failed at step {step.index}: {error}")
                self.progress_callback(
                    "failed",
                    f"Step {step.index + 1}/{total} failed",
                    {"database": database_name, "step": step.index, "error": error},
                )
                return PlanExecutionReport(
                    database_name=database_name,
                    completed_steps=position,
                    total_steps=total,
                    failure=StepFailure(step_index=step.index, error=error),
                )

        logger.info(f"Restore of {database_name} completed ({total} step(s))")
        self.progress_callback(
            "success",
            f"Restore of {database_name} completed",
            {"database": database_name, "steps": total},
        )
        return PlanExecutionReport(
            database_name=database_name, completed_steps=total, total_steps=total
        )

    def run_all(
        self,
        plans: Mapping[str, Sequence[RestorePlanStep]],
        options=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, PlanExecutionReport]:
        """Execute the plans of several databases, at most ``max_workers`` at a time."""
        if not plans:
            return {}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(plans))) as pool:
            futures = {
                name: pool.submit(self.run_plan, name, steps, options, cancel_event)
                for name, steps in sorted(plans.items())
            }
            return {name: future.result() for name, future in futures.items()}
