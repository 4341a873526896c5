"""Ordered, timeout-gated application of rollback plans."""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable
import logging
import threading

from canary_governance.time_utils import now_utc

from .contracts import (
    ExecutionStatus,
    RollbackExecution,
    RollbackPlan,
    RollbackStep,
    VerificationCheck,
    VerificationResult,
)

logger = logging.getLogger(__name__)

VERIFICATION_TIMEOUT_SECONDS = 30.0


class RollbackStepHandler(ABC):
    """Side-effecting primitives a rollback plan is applied through."""

    @abstractmethod
    def run_step(self, plan: RollbackPlan, step: RollbackStep, cancelled: threading.Event) -> None:
        """
        Apply one step; raise to signal failure.

        `cancelled` is set once the step has outlived its timeout. The worker
        thread cannot be stopped, so handlers must check it before every
        mutation and give up when it is set.
        """

    @abstractmethod
    def verify(self, plan: RollbackPlan, check: VerificationCheck) -> VerificationResult:
        """Evaluate one post-rollback verification check."""


def _call_with_timeout(fn: Callable[..., Any], timeout_seconds: float, *args: Any) -> Any:
    # One worker per call so a hung step never delays the next one.
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rollback-step")
    try:
        return pool.submit(fn, *args).result(timeout=timeout_seconds)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def run_plan(
    plan: RollbackPlan,
    execution: RollbackExecution,
    handler: RollbackStepHandler,
    timeout_scale: float = 1.0,
) -> RollbackExecution:
    """
    Run steps in declared order, then verification checks.

    A step that raises or exceeds its timeout fails. A timed-out step has its
    cancellation event set so the handler stops before mutating anything else.
    With `rollback_on_failure` the remaining plan is abandoned and the execution
    is FAILED; otherwise the error is recorded and the execution ends
    PARTIALLY_COMPLETED.
    """
    for step in plan.steps:
        timeout = step.timeout_seconds * timeout_scale
        error: str | None = None
        cancelled = threading.Event()
        try:
            _call_with_timeout(handler.run_step, timeout, plan, step, cancelled)
        except FutureTimeout:
            cancelled.set()
            error = f"step {step.index} ({step.action}) timed out after {timeout:g}s"
        except Exception as exc:  # handler failures are recorded on the execution, never raised
            error = f"step {step.index} ({step.action}) failed: {exc}"

        if error is None:
            execution.steps_completed.append(step.index)
            continue
        execution.errors.append(error)
        logger.warning("Rollback plan %s: %s", plan.plan_id, error)
        if plan.rollback_on_failure:
            execution.status = ExecutionStatus.FAILED
            execution.failed_step = step.index
            execution.status_reason = error
            execution.completed_at = now_utc()
            return execution

    for check in plan.verification_checks:
        try:
            result = _call_with_timeout(handler.verify, VERIFICATION_TIMEOUT_SECONDS * timeout_scale, plan, check)
        except FutureTimeout:
            result = VerificationResult(check.check_type, passed=False, mandatory=check.mandatory, detail="timed out")
        except Exception as exc:  # same boundary as steps
            result = VerificationResult(check.check_type, passed=False, mandatory=check.mandatory, detail=str(exc))
        execution.verification_results.append(result)

    failed_mandatory = [str(r.check_type) for r in execution.verification_results if r.mandatory and not r.passed]
    if execution.errors:
        execution.status = ExecutionStatus.PARTIALLY_COMPLETED
        execution.status_reason = f"{len(execution.errors)} step(s) failed"
    elif failed_mandatory:
        execution.status = ExecutionStatus.PARTIALLY_COMPLETED
        execution.status_reason = f"mandatory verification failed: {', '.join(failed_mandatory)}"
    else:
        execution.status = ExecutionStatus.COMPLETED
    execution.completed_at = now_utc()
    return execution
