"""
Rescan Workflow - Durable, resumable verification schedule for one submission.

A run is a row in workflow_runs. step_index is the next scan to execute
(1 = initial verification, 2 and 3 = rescans) and next_wake_at is when it
may run. The scheduler polls for due runs, claims each with
FOR UPDATE SKIP LOCKED and executes exactly one step per transaction, so a
crash at any point resumes from the persisted step. Step 1 commits its scan
before advancing and re-claims the row for the advance; a worker that loses
that claim leaves the run to whoever holds it.

Only one run may exist per submission. submit() creates it and stores its
id on the submission; starting a second run is a caller error.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from referral_engine.db.models import SocialSubmission, WorkflowRun
from referral_engine.exceptions import WorkflowError
from referral_engine.models.api import WorkflowRunStatus
from referral_engine.models.domain import WorkflowOutcome
from referral_engine.observability.logging import log_context
from referral_engine.observability.metrics import metrics
from referral_engine.observability.tracing import trace_operation
from referral_engine.services.submission_state import MAX_SCANS
from referral_engine.services.verification import VerificationService

logger = get_logger(__name__)

RESCAN_WORKFLOW_NAME = "rescan-social-submission"

VerificationServiceFactory = Callable[[AsyncSession], VerificationService]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def workflow_id_for(submission_id: UUID, now: datetime) -> str:
    """Workflow handle: rescan-<submission_id>-<epoch millis>."""
    return f"rescan-{submission_id}-{int(now.timestamp() * 1000)}"


def start_rescan_workflow(
    session: AsyncSession,
    submission: SocialSubmission,
    delay_seconds: int,
    now: datetime,
) -> WorkflowRun:
    """
    Create the single workflow run for a submission, due immediately.

    Raises:
        WorkflowError: Submission already has a run
    """
    if submission.rescan_workflow_id:
        raise WorkflowError(
            submission.rescan_workflow_id, "Submission already has an active rescan workflow"
        )
    if delay_seconds < 0:
        raise ValueError(f"delay_seconds cannot be negative: {delay_seconds}")

    run = WorkflowRun(
        id=workflow_id_for(submission.id, now),
        workflow_name=RESCAN_WORKFLOW_NAME,
        submission_id=submission.id,
        step_index=1,
        status=WorkflowRunStatus.PENDING.value,
        delay_seconds=delay_seconds,
        next_wake_at=now,
        attempts=0,
        completed_scans=0,
    )
    session.add(run)
    submission.rescan_workflow_id = run.id
    return run


class WorkflowScheduler:
    """
    Executes due workflow steps.

    Due runs execute concurrently, at most `concurrency` at a time; the row
    claim keeps any one run on a single worker. Each step opens its own
    session from session_factory. Unexpected
    errors roll the step back and schedule a retry with linear backoff;
    after max_attempts the run is marked FAILED.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service_factory: VerificationServiceFactory,
        max_attempts: int = 5,
        retry_backoff_seconds: int = 300,
        batch_size: int = 20,
        poll_interval_seconds: float = 30.0,
        concurrency: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.service_factory = service_factory
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.concurrency = concurrency
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    # ========================================================================
    # Polling loop
    # ========================================================================

    def start(self) -> None:
        """Start the background polling loop."""
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever(self._stop_event))
        logger.info("workflow_scheduler_started", poll_interval=self.poll_interval_seconds)

    async def stop(self) -> None:
        """Signal the polling loop to exit and wait for the current tick."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("workflow_scheduler_stopped")

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick()
            except SQLAlchemyError as exc:
                logger.error("workflow_tick_failed", error=str(exc))
                metrics.record_error(type(exc).__name__, "workflow_tick")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
            except TimeoutError:
                pass

    async def tick(self, now: datetime | None = None) -> int:
        """Run every due step once. Returns the number of runs picked up."""
        run_ids = await self.due_run_ids(now or _utc_now())
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(run_id: str) -> WorkflowOutcome | None:
            async with semaphore:
                return await self.run_step(run_id, now)

        results = await asyncio.gather(
            *(_bounded(run_id) for run_id in run_ids), return_exceptions=True
        )
        for run_id, result in zip(run_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "workflow_step_unhandled_error",
                    workflow_id=run_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                metrics.record_error(type(result).__name__, "workflow_step")
            elif isinstance(result, BaseException):
                raise result
        if run_ids:
            logger.info("workflow_tick_completed", runs=len(run_ids))
        return len(run_ids)

    async def due_run_ids(self, now: datetime) -> list[str]:
        async with self.session_factory() as session:
            stmt = (
                select(WorkflowRun.id)
                .where(
                    WorkflowRun.status == WorkflowRunStatus.PENDING.value,
                    WorkflowRun.next_wake_at <= now,
                )
                .order_by(WorkflowRun.next_wake_at)
                .limit(self.batch_size)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ========================================================================
    # Step execution
    # ========================================================================

    async def run_step(
        self, workflow_id: str, now: datetime | None = None
    ) -> WorkflowOutcome | None:
        """
        Execute the run's current step if it is due.

        Returns the final outcome when the run finished in this step,
        otherwise None (still pending, not due, claimed elsewhere, or retrying).
        """
        now = now or _utc_now()
        started = time.monotonic()

        async with self.session_factory() as session:
            run = await self._claim_run(session, workflow_id, now)
            if run is None:
                return None

            step = run.step_index
            with log_context(workflow_id=run.id, submission_id=str(run.submission_id)):
                with trace_operation("workflow_step", workflow_id=run.id, step=step):
                    try:
                        outcome = await self._execute_step(session, run, now)
                    except Exception as exc:
                        await session.rollback()
                        logger.error(
                            "workflow_step_failed",
                            step=step,
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )
                        metrics.record_workflow_step(step, "error", time.monotonic() - started)
                        metrics.record_error(type(exc).__name__, "workflow_step")
                        await self._record_failure(workflow_id, exc, now)
                        return None

                metrics.record_workflow_step(step, "ok", time.monotonic() - started)
                return outcome

    async def _claim_run(
        self, session: AsyncSession, workflow_id: str, now: datetime
    ) -> WorkflowRun | None:
        stmt = (
            select(WorkflowRun)
            .where(
                WorkflowRun.id == workflow_id,
                WorkflowRun.status == WorkflowRunStatus.PENDING.value,
                WorkflowRun.next_wake_at <= now,
            )
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _execute_step(
        self, session: AsyncSession, run: WorkflowRun, now: datetime
    ) -> WorkflowOutcome | None:
        service = self.service_factory(session)
        step = run.step_index
        interval = timedelta(seconds=run.delay_seconds)

        if step == 1:
            result = await service.verify_initial(
                run.submission_id, now, rescan_interval=interval
            )
            # The initial result is durable before the continuation is scheduled
            await session.commit()

            reclaimed = await self._reclaim_initial_step(session, run.id)
            if reclaimed is None:
                logger.info("rescan_continuation_claimed_elsewhere")
                return None
            run = reclaimed

            if not result.success:
                await self._finish(
                    session, run, WorkflowRunStatus.STOPPED, "initial_verification_failed", 1, now
                )
                await session.commit()
                logger.info("rescan_workflow_not_started", message=result.message)
                return WorkflowOutcome(
                    status="stopped",
                    completed_scans=1,
                    reason="initial_verification_failed",
                    current_status="FAILED",
                )

            await self._schedule_continuation(session, run, now)
            return None

        scan = await service.rescan(run.submission_id, step, now, rescan_interval=interval)

        if scan.status == "stopped":
            submission = await session.get(SocialSubmission, run.submission_id)
            current_status = submission.status if submission is not None else None
            await self._finish(session, run, WorkflowRunStatus.STOPPED, "not_verified", step - 1, now)
            await session.commit()
            logger.info(
                "rescan_workflow_stopped",
                reason="not_verified",
                current_status=current_status,
                completed_scans=step - 1,
            )
            return WorkflowOutcome(
                status="stopped",
                completed_scans=step - 1,
                reason="not_verified",
                current_status=current_status,
            )

        run.completed_scans = step
        if step >= MAX_SCANS:
            await self._finish(session, run, WorkflowRunStatus.COMPLETED, None, step, now)
            await session.commit()
            logger.info("rescan_workflow_completed", completed_scans=step)
            return WorkflowOutcome(status="success", completed_scans=step)

        run.step_index = step + 1
        run.next_wake_at = now + timedelta(seconds=run.delay_seconds)
        run.attempts = 0
        run.last_error = None
        await session.commit()
        logger.info(
            "rescan_scheduled",
            scan_number=step + 1,
            next_wake_at=run.next_wake_at.isoformat(),
        )
        return None

    async def _reclaim_initial_step(
        self, session: AsyncSession, workflow_id: str
    ) -> WorkflowRun | None:
        """
        Re-lock a run after the step 1 commit released it.

        Returns None when another worker already moved the run past step 1.
        """
        stmt = (
            select(WorkflowRun)
            .where(
                WorkflowRun.id == workflow_id,
                WorkflowRun.status == WorkflowRunStatus.PENDING.value,
                WorkflowRun.step_index == 1,
            )
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _schedule_continuation(
        self, session: AsyncSession, run: WorkflowRun, now: datetime
    ) -> None:
        """
        Move a run past the initial verification.

        A failure here is logged only. The run stays at step 1, and its
        next execution finds the submission already decided and schedules again.
        """
        try:
            run.step_index = 2
            run.completed_scans = 1
            run.next_wake_at = now + timedelta(seconds=run.delay_seconds)
            run.attempts = 0
            run.last_error = None
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("rescan_schedule_failed", error=str(exc))
            metrics.record_error(type(exc).__name__, "rescan_schedule")
            return

        logger.info("rescan_scheduled", scan_number=2, next_wake_at=run.next_wake_at.isoformat())

    async def _finish(
        self,
        session: AsyncSession,
        run: WorkflowRun,
        status: WorkflowRunStatus,
        reason: str | None,
        completed_scans: int,
        now: datetime,
    ) -> None:
        run.status = status.value
        run.result_reason = reason
        run.completed_scans = completed_scans
        run.finished_at = now

        submission = await session.get(SocialSubmission, run.submission_id)
        if submission is not None and submission.rescan_workflow_id == run.id:
            submission.rescan_workflow_id = None
            if status == WorkflowRunStatus.COMPLETED:
                submission.next_scan_at = None

    async def _record_failure(self, workflow_id: str, exc: Exception, now: datetime) -> None:
        async with self.session_factory() as session:
            run = await session.get(WorkflowRun, workflow_id, with_for_update=True)
            if run is None or run.status != WorkflowRunStatus.PENDING.value:
                return

            run.attempts = run.attempts + 1
            run.last_error = f"{type(exc).__name__}: {exc}"[:2000]

            if run.attempts >= self.max_attempts:
                await self._finish(
                    session,
                    run,
                    WorkflowRunStatus.FAILED,
                    "max_attempts_exceeded",
                    run.completed_scans,
                    now,
                )
                logger.error(
                    "workflow_run_failed",
                    workflow_id=workflow_id,
                    attempts=run.attempts,
                    last_error=run.last_error,
                )
            else:
                run.next_wake_at = now + timedelta(
                    seconds=self.retry_backoff_seconds * run.attempts
                )
                logger.warning(
                    "workflow_step_retry_scheduled",
                    workflow_id=workflow_id,
                    attempts=run.attempts,
                    next_wake_at=run.next_wake_at.isoformat(),
                )

            await session.commit()
