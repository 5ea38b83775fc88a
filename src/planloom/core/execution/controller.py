"""
ExecutionController: the state machine that drives plans through their
lifecycle.

Each running plan owns exactly one scheduling loop (an asyncio task). The
loop resolves the current phase's next batch, dispatches it to the
TaskRunner, waits for completions (or a control signal), records results
and repeats. Control operations (start/pause/resume/cancel/retry) only
record intent and return; the loop acts on it.

All mutation of a plan's rows happens in synchronous stretches of code on
the event loop, which gives a single writer per plan without extra locks.
A per-plan asyncio.Lock serializes the control operations themselves.

Failure policy:
    - A failed task blocks new dispatch in its phase; siblings already
      running finish. Once drained the plan pauses (task_failed), or fails
      when the task has used up ``max_task_attempts``.
    - A dependency deadlock pauses the plan (dependency_deadlock).
    - Any other fault of the loop (e.g., StorageFailure) pauses the plan
      defensively; tasks it left "running" are re-dispatched on resume.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from planloom.core.circuit_breaker import CircuitBreaker, CircuitBreakerTrippedError
from planloom.core.errors import (
    DependencyDeadlock,
    InvalidTransition,
    NotFoundError,
    PlanloomError,
    StorageFailure,
    TaskExecutionFailure,
)
from planloom.core.events.bus import ProgressBus
from planloom.core.events.models import ProgressEventType
from planloom.core.execution.models import (
    ControllerState,
    TaskOutcome,
    TaskRequest,
    TaskResult,
)
from planloom.core.execution.runner import TaskRunner
from planloom.core.plans.counters import refresh_counters
from planloom.core.plans.models import (
    ExecutionMode,
    Phase,
    PhaseStatus,
    Plan,
    PlanStatus,
    StatusReason,
    Task,
    TaskStatus,
    utcnow,
)
from planloom.core.plans.service import reopen_phase
from planloom.core.scheduling.resolver import PhaseGraph, check_deadlock, resolve_next_batch
from planloom.core.store.backend import PlanStore, RecordKind

logger = logging.getLogger(__name__)

# Reasons for which retrying a task also restarts the plan
TASK_FAILURE_REASONS = frozenset({StatusReason.TASK_FAILED, StatusReason.RETRY_CEILING_EXHAUSTED})

_UNSET: Any = object()


@dataclass
class PlanRun:
    """Live state of one plan's scheduling loop."""

    plan_id: str
    state: ControllerState = ControllerState.SCHEDULING
    in_flight: dict[asyncio.Task[TaskResult], str] = field(default_factory=dict)
    correlations: dict[str, str] = field(default_factory=dict)
    manual_queue: list[str] = field(default_factory=list)
    pause_requested: bool = False
    cancel_requested: bool = False
    shutting_down: bool = False
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    loop_task: asyncio.Task[None] | None = None

    @property
    def is_live(self) -> bool:
        return self.loop_task is not None and not self.loop_task.done()


class ExecutionController:
    """
    Drives plans: start, pause, resume, cancel, retry.

    Args:
        store: Plan store
        runner: Task runner performing the work
        bus: Progress bus receiving every transition
        max_task_attempts: Retry ceiling; a task failing this many times fails the plan
        task_timeout_minutes: Per-task time limit
        _task_timeout_seconds_override: Per-task limit in seconds (testing only)

    Example:
        >>> controller = ExecutionController(store, runner, bus)
        >>> await controller.start(plan.id)
        >>> plan = await controller.wait(plan.id)
        >>> plan.status
        <PlanStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: PlanStore,
        runner: TaskRunner,
        bus: ProgressBus,
        *,
        max_task_attempts: int = 3,
        task_timeout_minutes: int = 30,
        _task_timeout_seconds_override: float | None = None,
    ) -> None:
        if max_task_attempts < 1:
            raise ValueError(f"max_task_attempts must be >= 1, got {max_task_attempts}")
        self._store = store
        self._runner = runner
        self._bus = bus
        self.max_task_attempts = max_task_attempts
        self.task_timeout_minutes = task_timeout_minutes
        self._task_timeout_seconds_override = _task_timeout_seconds_override
        self._runs: dict[str, PlanRun] = {}
        # A lock lives only while some coroutine holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_active(self, plan_id: str) -> bool:
        """True if a scheduling loop is live for the plan."""
        run = self._runs.get(plan_id)
        return run is not None and run.is_live

    def state(self, plan_id: str) -> ControllerState:
        """
        Current controller state of a plan.

        Raises:
            NotFoundError: If the plan doesn't exist
        """
        run = self._runs.get(plan_id)
        if run is not None and run.is_live:
            return run.state

        plan = self._require_plan(plan_id)
        if plan.status == PlanStatus.COMPLETED:
            return ControllerState.COMPLETED
        if plan.status == PlanStatus.FAILED:
            return ControllerState.FAILED
        if plan.status in (PlanStatus.PAUSED, PlanStatus.RUNNING):
            # running without a loop is an interrupted run; it resumes like a paused one
            return ControllerState.PAUSED
        return ControllerState.IDLE

    async def wait(self, plan_id: str, timeout: float | None = None) -> Plan:
        """
        Wait for the plan's scheduling loop to settle (paused/completed/failed).

        Returns immediately if no loop is live. Never cancels the loop.

        Args:
            plan_id: Plan to wait for
            timeout: Give up after this many seconds (the loop keeps running)

        Returns:
            The plan as persisted afterwards
        """
        run = self._runs.get(plan_id)
        if run is not None and run.loop_task is not None:
            await asyncio.wait({run.loop_task}, timeout=timeout)
        return self._require_plan(plan_id)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def start(self, plan_id: str) -> Plan:
        """
        Start a ready plan.

        Raises:
            NotFoundError: If the plan doesn't exist
            InvalidTransition: If the plan isn't ready or a loop is already live
        """
        async with self._lock(plan_id):
            if self.is_active(plan_id):
                raise InvalidTransition(f"Plan {plan_id} already has an active scheduling loop")

            plan = self._require_plan(plan_id)
            if plan.status != PlanStatus.READY:
                raise InvalidTransition(
                    f"Cannot start plan {plan_id}: status is {plan.status.value}, expected ready"
                )

            plan = self._store.update(
                RecordKind.PLAN,
                plan_id,
                {
                    "status": PlanStatus.RUNNING,
                    "status_reason": None,
                    "status_detail": None,
                    "started_at": utcnow(),
                    "completed_at": None,
                },
            )
            logger.info("Starting plan %s (%s)", plan_id, plan.title)
            self._bus.publish(ProgressEventType.PLAN_STARTED, plan_id, status=plan.status.value)
            self._launch(plan_id)
            return plan

    async def resume(self, plan_id: str) -> Plan:
        """
        Resume a paused plan from its persisted position.

        Tasks left running by a previous pause or crash are reset to pending
        and re-dispatched; failed tasks under the retry ceiling are retried
        with their attempts kept. Completed tasks never re-run.

        Resuming while a pause is still draining withdraws the pause.
        Resuming a plan whose loop is running is a no-op.

        Raises:
            NotFoundError: If the plan doesn't exist
            InvalidTransition: If the plan isn't paused or is being cancelled
        """
        async with self._lock(plan_id):
            run = self._live_run(plan_id)
            if run is not None:
                if run.cancel_requested:
                    raise InvalidTransition(f"Plan {plan_id} is being cancelled")
                if run.pause_requested and not run.shutting_down:
                    run.pause_requested = False
                    run.state = (
                        ControllerState.AWAITING_TASKS if run.in_flight else ControllerState.SCHEDULING
                    )
                    run.wakeup.set()
                    logger.info("Pause of plan %s withdrawn", plan_id)
                return self._require_plan(plan_id)

            plan = self._require_plan(plan_id)
            if plan.status not in (PlanStatus.PAUSED, PlanStatus.RUNNING):
                raise InvalidTransition(
                    f"Cannot resume plan {plan_id}: status is {plan.status.value}, expected paused"
                )
            return self._resume_locked(plan)

    async def pause(self, plan_id: str) -> Plan:
        """
        Request a pause: no new dispatch; in-flight tasks finish first.

        Pausing a paused plan (or one already draining) is a no-op.

        Raises:
            NotFoundError: If the plan doesn't exist
            InvalidTransition: If the plan isn't running or paused
        """
        async with self._lock(plan_id):
            run = self._live_run(plan_id)
            if run is not None:
                if not (run.pause_requested or run.cancel_requested):
                    run.pause_requested = True
                    run.state = ControllerState.PAUSE_PENDING
                    run.wakeup.set()
                    logger.info(
                        "Pause requested for plan %s (%d task(s) in flight)",
                        plan_id,
                        len(run.in_flight),
                    )
                return self._require_plan(plan_id)

            plan = self._require_plan(plan_id)
            if plan.status == PlanStatus.PAUSED:
                return plan
            if plan.status == PlanStatus.RUNNING:
                # Persisted as running but no loop: left over from a crash
                return self._settle(
                    plan_id, PlanStatus.PAUSED, StatusReason.PAUSE_REQUESTED, "Paused by operator"
                )
            raise InvalidTransition(
                f"Cannot pause plan {plan_id}: status is {plan.status.value}, expected running"
            )

    async def cancel(self, plan_id: str) -> Plan:
        """
        Cancel a running or paused plan. The plan ends failed (cancelled).

        In-flight tasks get a cooperative cancel signal; the plan is marked
        failed once they have drained. Repeated calls are no-ops.

        Raises:
            NotFoundError: If the plan doesn't exist
            InvalidTransition: If the plan is draft, ready or completed
        """
        async with self._lock(plan_id):
            run = self._live_run(plan_id)
            if run is not None:
                if not run.cancel_requested:
                    run.cancel_requested = True
                    run.state = ControllerState.CANCELLING
                    for correlation_id in run.correlations.values():
                        self._runner.cancel(correlation_id)
                    run.wakeup.set()
                    logger.info("Cancel requested for plan %s", plan_id)
                return self._require_plan(plan_id)

            plan = self._require_plan(plan_id)
            if plan.status == PlanStatus.FAILED:
                return plan
            if plan.status in (PlanStatus.PAUSED, PlanStatus.RUNNING):
                self._reset_abandoned(plan_id)
                return self._settle(
                    plan_id, PlanStatus.FAILED, StatusReason.CANCELLED, "Cancelled by operator"
                )
            raise InvalidTransition(
                f"Cannot cancel plan {plan_id}: status is {plan.status.value}"
            )

    async def retry_task(self, task_id: str) -> Task:
        """
        Reset a task for another attempt and pick the plan back up.

        Resets status to pending, attempts to 0 and clears last_error and the
        correlation id. If the plan is paused or failed because of a task
        failure, or was reopened because the task was in a completed plan, the
        plan is resumed so the loop re-dispatches the task.

        Raises:
            NotFoundError: If the task doesn't exist
            InvalidTransition: If the task is running or already completed
        """
        task = self._require_task(task_id)
        async with self._lock(task.plan_id):
            task = self._reset_locked(task)
            run = self._live_run(task.plan_id)
            if run is not None:
                run.wakeup.set()
                return task

            plan = self._require_plan(task.plan_id)
            reopened = (
                plan.status == PlanStatus.PAUSED and plan.status_reason == StatusReason.REOPENED
            )
            if reopened or (
                plan.status in (PlanStatus.PAUSED, PlanStatus.FAILED)
                and plan.status_reason in TASK_FAILURE_REASONS
            ):
                logger.info("Retrying task %s resumes plan %s", task_id, plan.id)
                self._resume_locked(plan)
            return self._require_task(task_id)

    async def reset_task(self, task_id: str) -> Task:
        """
        Reset a task to pending with attempts 0, without resuming the plan.

        A task reset inside a completed plan reopens its phase and leaves the
        plan paused (``reopened``) until it is resumed.

        Together with ``resume`` this is the uncoupled form of ``retry_task``.

        Raises:
            NotFoundError: If the task doesn't exist
            InvalidTransition: If the task is running or already completed
        """
        task = self._require_task(task_id)
        async with self._lock(task.plan_id):
            task = self._reset_locked(task)
            run = self._live_run(task.plan_id)
            if run is not None:
                run.wakeup.set()
            return task

    async def trigger_task(self, task_id: str) -> Task:
        """
        Manually dispatch a pending task of the current (manual) phase.

        If the plan is paused (typically waiting for manual approval), it is
        resumed with the task queued.

        Raises:
            NotFoundError: If the task doesn't exist
            InvalidTransition: If the task can't be triggered now
        """
        task = self._require_task(task_id)
        phase = self._require_phase(task.phase_id)
        if phase.execution_mode != ExecutionMode.MANUAL:
            raise InvalidTransition(
                f"Task {task_id} is in a {phase.execution_mode.value} phase; "
                "only tasks of manual phases can be triggered"
            )

        async with self._lock(task.plan_id):
            task = self._require_task(task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidTransition(
                    f"Cannot trigger task {task_id}: status is {task.status.value}, expected pending"
                )
            siblings = self._store.list(RecordKind.TASK, {"phase_id": phase.id}, order_by="order")
            waiting_on = PhaseGraph(siblings).unsatisfied(task_id)
            if waiting_on:
                raise InvalidTransition(
                    f"Cannot trigger task {task_id}: waiting on {', '.join(waiting_on)}"
                )
            current = self._current_phase(task.plan_id)
            if current is None or current.id != phase.id:
                raise InvalidTransition(
                    f"Cannot trigger task {task_id}: its phase is not the current phase"
                )

            run = self._live_run(task.plan_id)
            if run is not None:
                if run.pause_requested or run.cancel_requested:
                    raise InvalidTransition(f"Plan {task.plan_id} is pausing or cancelling")
                run.manual_queue.append(task_id)
                run.wakeup.set()
                logger.info("Task %s triggered manually", task_id)
                return task

            plan = self._require_plan(task.plan_id)
            if plan.status not in (PlanStatus.PAUSED, PlanStatus.RUNNING):
                raise InvalidTransition(
                    f"Cannot trigger task {task_id}: plan status is {plan.status.value}"
                )
            logger.info("Task %s triggered manually; resuming plan %s", task_id, plan.id)
            self._resume_locked(plan, manual_queue=[task_id])
            return task

    def recover(self) -> list[str]:
        """
        Pause plans persisted as running that have no live loop.

        Called on service start: a running plan without a loop was
        interrupted (process exit, crash). Resuming it re-dispatches the
        tasks it left running.

        Returns:
            Ids of the recovered plans
        """
        recovered = []
        for plan in self._store.list(RecordKind.PLAN, {"status": PlanStatus.RUNNING}):
            if self.is_active(plan.id):
                continue
            self._settle(
                plan.id,
                PlanStatus.PAUSED,
                StatusReason.INTERRUPTED,
                "Scheduling loop was not running; resume to continue",
            )
            recovered.append(plan.id)
        if recovered:
            logger.warning("Recovered %d interrupted plan(s): %s", len(recovered), recovered)
        return recovered

    async def shutdown(self, timeout: float = 10.0) -> None:
        """
        Stop every live loop: pause them, signal in-flight tasks to stop, and
        wait up to ``timeout`` seconds before cancelling what's left.

        Plans end paused (interrupted); their unfinished tasks go back to
        pending.
        """
        runs = [run for run in self._runs.values() if run.is_live]
        if not runs:
            return

        logger.info("Shutting down %d scheduling loop(s)", len(runs))
        for run in runs:
            run.shutting_down = True
            run.pause_requested = True
            run.state = ControllerState.PAUSE_PENDING
            for correlation_id in run.correlations.values():
                self._runner.cancel(correlation_id)
            run.wakeup.set()

        loop_tasks = {run.loop_task for run in runs if run.loop_task is not None}
        _, pending = await asyncio.wait(loop_tasks, timeout=timeout)
        for loop_task in pending:
            loop_task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    def _launch(self, plan_id: str, manual_queue: list[str] | None = None) -> PlanRun:
        run = PlanRun(plan_id=plan_id, manual_queue=list(manual_queue or []))
        self._runs[plan_id] = run
        run.loop_task = asyncio.create_task(self._drive(run), name=f"planloom-plan-{plan_id}")
        return run

    async def _drive(self, run: PlanRun) -> None:
        try:
            await self._schedule(run)
        except asyncio.CancelledError:
            self._abandon(run, None)
            raise
        except Exception as exc:
            logger.exception("Scheduling loop for plan %s failed; pausing plan", run.plan_id)
            self._abandon(run, exc)
        finally:
            if self._runs.get(run.plan_id) is run:
                del self._runs[run.plan_id]

    async def _schedule(self, run: PlanRun) -> None:
        while True:
            if run.cancel_requested:
                if run.in_flight:
                    run.state = ControllerState.CANCELLING
                    await self._wait_for_activity(run)
                    continue
                self._reset_abandoned(run.plan_id)
                self._finish(run, PlanStatus.FAILED, StatusReason.CANCELLED, "Cancelled by operator")
                return

            if run.pause_requested:
                if run.in_flight:
                    run.state = ControllerState.PAUSE_PENDING
                    await self._wait_for_activity(run)
                    continue
                if run.shutting_down:
                    self._finish(
                        run, PlanStatus.PAUSED, StatusReason.INTERRUPTED, "Engine shut down"
                    )
                else:
                    self._finish(
                        run, PlanStatus.PAUSED, StatusReason.PAUSE_REQUESTED, "Paused by operator"
                    )
                return

            run.state = ControllerState.SCHEDULING
            try:
                finished = self._advance(run)
            except DependencyDeadlock as exc:
                logger.warning("Plan %s: %s", run.plan_id, exc)
                self._finish(
                    run,
                    PlanStatus.PAUSED,
                    StatusReason.DEPENDENCY_DEADLOCK,
                    str(exc),
                    data={"phaseId": exc.phase_id, "blocked": exc.blocked, "cycle": exc.cycle},
                )
                return
            if finished:
                return

            if not run.in_flight:
                raise RuntimeError(f"Plan {run.plan_id} made no progress and has nothing in flight")
            run.state = ControllerState.AWAITING_TASKS
            await self._wait_for_activity(run)

    async def _wait_for_activity(self, run: PlanRun) -> None:
        """Suspend until an in-flight task finishes or a control signal arrives."""
        waiter = asyncio.ensure_future(run.wakeup.wait())
        try:
            await asyncio.wait({*run.in_flight, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
        run.wakeup.clear()

        # Completions may arrive in any order; record every finished one
        for aio_task in [t for t in run.in_flight if t.done()]:
            self._record_result(run, aio_task)

    def _advance(self, run: PlanRun) -> bool:
        """
        Move the plan forward by one scheduling step.

        Returns:
            True if the loop is finished (plan paused, completed or failed)
        """
        plan = self._require_plan(run.plan_id)
        phases = self._store.list(RecordKind.PHASE, {"plan_id": plan.id}, order_by="order")

        while True:
            phase = next((p for p in phases if p.status != PhaseStatus.COMPLETED), None)
            if phase is None:
                self._finish(run, PlanStatus.COMPLETED, None, None)
                return True

            tasks = self._store.list(RecordKind.TASK, {"phase_id": phase.id}, order_by="order")

            if phase.status != PhaseStatus.RUNNING:
                first_start = phase.started_at is None
                phase = self._store.update(
                    RecordKind.PHASE,
                    phase.id,
                    {"status": PhaseStatus.RUNNING, "started_at": phase.started_at or utcnow()},
                )
                plan = self._store.update(RecordKind.PLAN, plan.id, {"current_phase_id": phase.id})
                logger.info("Plan %s: phase %d '%s' started", plan.id, phase.order, phase.title)
                self._bus.publish(
                    ProgressEventType.PHASE_STARTED,
                    plan.id,
                    phase_id=phase.id,
                    status=phase.status.value,
                    message=phase.title,
                    data={"order": phase.order, "resumed": not first_start},
                )

            # Phase completion is "no unfinished task remains", never a callback count
            if all(t.status.satisfies_dependency for t in tasks):
                phase = self._store.update(
                    RecordKind.PHASE,
                    phase.id,
                    {"status": PhaseStatus.COMPLETED, "completed_at": utcnow()},
                )
                refresh_counters(self._store, plan.id)
                logger.info("Plan %s: phase %d '%s' completed", plan.id, phase.order, phase.title)
                self._bus.publish(
                    ProgressEventType.PHASE_COMPLETED,
                    plan.id,
                    phase_id=phase.id,
                    status=phase.status.value,
                    message=phase.title,
                )

                phases = [phase if p.id == phase.id else p for p in phases]
                if all(p.status == PhaseStatus.COMPLETED for p in phases):
                    self._finish(run, PlanStatus.COMPLETED, None, None)
                    return True
                if phase.pause_after:
                    self._finish(
                        run,
                        PlanStatus.PAUSED,
                        StatusReason.PHASE_COMPLETE,
                        f"Phase '{phase.title}' completed; resume to continue",
                    )
                    return True
                continue

            failed = [t for t in tasks if t.status == TaskStatus.FAILED]
            if failed:
                if run.in_flight:
                    # Let siblings of the failed task finish; dispatch nothing new
                    return False
                exhausted = [t for t in failed if t.attempts >= self.max_task_attempts]
                culprit = (exhausted or failed)[0]
                detail = f"Task '{culprit.title}' failed: {culprit.last_error}"
                if exhausted:
                    self._finish(
                        run,
                        PlanStatus.FAILED,
                        StatusReason.RETRY_CEILING_EXHAUSTED,
                        f"{detail} (after {culprit.attempts} attempts)",
                        current_task_id=culprit.id,
                    )
                else:
                    self._finish(
                        run,
                        PlanStatus.PAUSED,
                        StatusReason.TASK_FAILED,
                        detail,
                        current_task_id=culprit.id,
                    )
                return True

            if phase.execution_mode == ExecutionMode.MANUAL:
                batch = self._take_manual(run, tasks)
                if not batch and not run.in_flight:
                    eligible = PhaseGraph(tasks).eligible()
                    if not eligible:
                        check_deadlock(phase.id, tasks)
                        raise RuntimeError(f"Manual phase {phase.id} has nothing to trigger")
                    waiting = eligible[0]
                    self._finish(
                        run,
                        PlanStatus.PAUSED,
                        StatusReason.MANUAL_APPROVAL_REQUIRED,
                        f"Task '{waiting.title}' of manual phase '{phase.title}' must be triggered",
                        current_task_id=waiting.id,
                    )
                    return True
            else:
                batch = resolve_next_batch(phase.execution_mode, tasks, phase_id=phase.id)

            for task in batch:
                self._dispatch(run, plan, phase, task)
            return False

    def _take_manual(self, run: PlanRun, tasks: list[Task]) -> list[Task]:
        graph = PhaseGraph(tasks)
        by_id = {t.id: t for t in tasks}
        batch = []
        for task_id in run.manual_queue:
            task = by_id.get(task_id)
            if task is not None and graph.is_eligible(task) and task not in batch:
                batch.append(task)
            else:
                logger.warning("Dropping manual trigger of task %s: no longer eligible", task_id)
        run.manual_queue = []
        return batch

    def _dispatch(self, run: PlanRun, plan: Plan, phase: Phase, task: Task) -> None:
        correlation_id = uuid4().hex
        task = self._store.update(
            RecordKind.TASK,
            task.id,
            {
                "status": TaskStatus.RUNNING,
                "correlation_id": correlation_id,
                "started_at": utcnow(),
                "completed_at": None,
            },
        )
        plan = self._store.update(
            RecordKind.PLAN, plan.id, {"current_phase_id": phase.id, "current_task_id": task.id}
        )
        logger.debug(
            "Dispatching task %s '%s' (attempt %d)", task.id, task.title, task.attempts + 1
        )
        self._bus.publish(
            ProgressEventType.TASK_STARTED,
            plan.id,
            phase_id=phase.id,
            task_id=task.id,
            status=task.status.value,
            message=task.title,
            data={"attempt": task.attempts + 1, "correlationId": correlation_id},
        )
        self._bus.publish(
            ProgressEventType.TASK_PROGRESS,
            plan.id,
            phase_id=phase.id,
            task_id=task.id,
            status=task.status.value,
        )

        request = TaskRequest(plan=plan, phase=phase, task=task, correlation_id=correlation_id)
        aio_task = asyncio.create_task(self._execute(run, request), name=f"planloom-task-{task.id}")
        run.in_flight[aio_task] = task.id
        run.correlations[task.id] = correlation_id

    async def _execute(self, run: PlanRun, request: TaskRequest) -> TaskResult:
        if run.cancel_requested or run.shutting_down:
            # Stopped between dispatch and start; the runner never saw it
            return TaskResult.failed("Cancelled")
        breaker = CircuitBreaker(
            timeout_minutes=self.task_timeout_minutes,
            _timeout_seconds_override=self._task_timeout_seconds_override,
        )
        try:
            return await breaker.execute(self._runner.run(request))
        except CircuitBreakerTrippedError as e:
            self._runner.cancel(request.correlation_id)
            logger.warning("Task %s: %s", request.task.id, e)
            return TaskResult.failed(str(e))
        except TaskExecutionFailure as e:
            return TaskResult.failed(e.error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Runner raised for task %s", request.task.id, exc_info=True)
            return TaskResult.failed(f"{type(e).__name__}: {e}")

    def _record_result(self, run: PlanRun, aio_task: asyncio.Task[TaskResult]) -> None:
        task_id = run.in_flight.pop(aio_task)
        run.correlations.pop(task_id, None)
        if aio_task.cancelled():
            result = TaskResult.failed("Task execution was cancelled")
        else:
            result = aio_task.result()

        task = self._store.get(RecordKind.TASK, task_id)
        if task is None:
            logger.warning("Task %s was deleted while running; dropping its result", task_id)
            refresh_counters(self._store, run.plan_id)
            return

        if run.shutting_down and result.outcome == TaskOutcome.FAILED:
            # Interrupted by shutdown: abandoned work, not a failure
            self._store.update(
                RecordKind.TASK,
                task_id,
                {"status": TaskStatus.PENDING, "correlation_id": None, "started_at": None},
            )
            return

        now = utcnow()
        if result.outcome == TaskOutcome.FAILED:
            fields: dict[str, Any] = {
                "status": TaskStatus.FAILED,
                "attempts": task.attempts + 1,
                "last_error": result.error or "Task failed without an error message",
                "output": result.output,
                "completed_at": now,
            }
        else:
            fields = {
                "status": TaskStatus(result.outcome.value),
                "output": result.output,
                "completed_at": now,
            }
        task = self._store.update(RecordKind.TASK, task_id, fields)
        refresh_counters(self._store, run.plan_id)

        if task.status == TaskStatus.FAILED:
            logger.warning(
                "Task %s '%s' failed (attempt %d): %s",
                task.id,
                task.title,
                task.attempts,
                task.last_error,
            )
            self._bus.publish(
                ProgressEventType.TASK_PROGRESS,
                run.plan_id,
                phase_id=task.phase_id,
                task_id=task.id,
                status=task.status.value,
                message=task.last_error or "",
                data={"error": task.last_error, "attempts": task.attempts},
            )
            return

        logger.info("Task %s '%s' %s", task.id, task.title, task.status.value)
        self._bus.publish(
            ProgressEventType.TASK_PROGRESS,
            run.plan_id,
            phase_id=task.phase_id,
            task_id=task.id,
            status=task.status.value,
        )
        self._bus.publish(
            ProgressEventType.TASK_COMPLETED,
            run.plan_id,
            phase_id=task.phase_id,
            task_id=task.id,
            status=task.status.value,
            message=task.title,
        )

    def _abandon(self, run: PlanRun, exc: BaseException | None) -> None:
        """Stop a loop that can't continue normally and pause its plan."""
        for aio_task, task_id in list(run.in_flight.items()):
            correlation_id = run.correlations.get(task_id)
            if correlation_id is not None:
                self._runner.cancel(correlation_id)
            aio_task.cancel()
        run.in_flight.clear()
        run.correlations.clear()

        if isinstance(exc, StorageFailure):
            reason = StatusReason.STORAGE_FAILURE
        else:
            reason = StatusReason.INTERRUPTED
        detail = str(exc) if exc is not None else "Scheduling loop was stopped"
        run.state = ControllerState.PAUSED
        try:
            self._settle(run.plan_id, PlanStatus.PAUSED, reason, detail)
        except PlanloomError:
            logger.exception("Could not persist pause of plan %s", run.plan_id)
            # Observers still learn that the loop stopped
            self._bus.publish(
                ProgressEventType.PLAN_PAUSED,
                run.plan_id,
                status=PlanStatus.PAUSED.value,
                reason=reason.value,
                message=detail,
            )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _finish(
        self,
        run: PlanRun,
        status: PlanStatus,
        reason: StatusReason | None,
        detail: str | None,
        *,
        current_task_id: Any = _UNSET,
        data: dict[str, Any] | None = None,
    ) -> None:
        run.state = {
            PlanStatus.PAUSED: ControllerState.PAUSED,
            PlanStatus.COMPLETED: ControllerState.COMPLETED,
            PlanStatus.FAILED: ControllerState.FAILED,
        }[status]
        self._settle(
            run.plan_id, status, reason, detail, current_task_id=current_task_id, data=data
        )

    def _settle(
        self,
        plan_id: str,
        status: PlanStatus,
        reason: StatusReason | None,
        detail: str | None,
        *,
        current_task_id: Any = _UNSET,
        data: dict[str, Any] | None = None,
    ) -> Plan:
        """Persist a paused/completed/failed plan and publish the event."""
        now = utcnow()
        fields: dict[str, Any] = {
            "status": status,
            "status_reason": reason,
            "status_detail": detail,
        }
        if status == PlanStatus.COMPLETED:
            fields.update(completed_at=now, current_task_id=None)
        elif status == PlanStatus.FAILED:
            fields["completed_at"] = now
        if current_task_id is not _UNSET:
            fields["current_task_id"] = current_task_id

        if status == PlanStatus.PAUSED:
            phase_status = (
                PhaseStatus.FAILED if reason == StatusReason.TASK_FAILED else PhaseStatus.PAUSED
            )
        elif status == PlanStatus.FAILED:
            phase_status = PhaseStatus.FAILED
        else:
            phase_status = None

        with self._store.transaction():
            if phase_status is not None:
                for phase in self._store.list(RecordKind.PHASE, {"plan_id": plan_id}):
                    if phase.status in (PhaseStatus.RUNNING, PhaseStatus.PAUSED):
                        self._store.update(RecordKind.PHASE, phase.id, {"status": phase_status})
            self._store.update(RecordKind.PLAN, plan_id, fields)
        plan = refresh_counters(self._store, plan_id)

        event_type = {
            PlanStatus.PAUSED: ProgressEventType.PLAN_PAUSED,
            PlanStatus.COMPLETED: ProgressEventType.PLAN_COMPLETED,
            PlanStatus.FAILED: ProgressEventType.PLAN_FAILED,
        }[status]
        logger.info(
            "Plan %s %s%s", plan_id, status.value, f" ({reason.value})" if reason else ""
        )
        self._bus.publish(
            event_type,
            plan_id,
            status=status.value,
            reason=reason.value if reason else None,
            message=detail or "",
            data=data,
        )
        return plan

    def _resume_locked(self, plan: Plan, manual_queue: list[str] | None = None) -> Plan:
        with self._store.transaction():
            self._reset_abandoned(plan.id)
            for task in self._store.list(
                RecordKind.TASK, {"plan_id": plan.id, "status": TaskStatus.FAILED}
            ):
                if task.attempts < self.max_task_attempts:
                    self._store.update(
                        RecordKind.TASK,
                        task.id,
                        {"status": TaskStatus.PENDING, "correlation_id": None, "completed_at": None},
                    )
            plan = self._store.update(
                RecordKind.PLAN,
                plan.id,
                {
                    "status": PlanStatus.RUNNING,
                    "status_reason": None,
                    "status_detail": None,
                    "completed_at": None,
                    "started_at": plan.started_at or utcnow(),
                },
            )
        refresh_counters(self._store, plan.id)
        logger.info("Resuming plan %s (%s)", plan.id, plan.title)
        self._bus.publish(ProgressEventType.PLAN_RESUMED, plan.id, status=plan.status.value)
        self._launch(plan.id, manual_queue)
        return plan

    def _reset_abandoned(self, plan_id: str) -> None:
        """Running tasks with no live handle are abandoned work: back to pending."""
        for task in self._store.list(
            RecordKind.TASK, {"plan_id": plan_id, "status": TaskStatus.RUNNING}
        ):
            logger.info("Task %s was left running; resetting to pending", task.id)
            self._store.update(
                RecordKind.TASK,
                task.id,
                {"status": TaskStatus.PENDING, "correlation_id": None, "started_at": None},
            )

    def _reset_locked(self, task: Task) -> Task:
        if task.status == TaskStatus.RUNNING and self.is_active(task.plan_id):
            raise InvalidTransition(f"Task {task.id} is running")
        if task.status == TaskStatus.COMPLETED:
            raise InvalidTransition(f"Task {task.id} is already completed")

        with self._store.transaction():
            task = self._store.update(
                RecordKind.TASK,
                task.id,
                {
                    "status": TaskStatus.PENDING,
                    "attempts": 0,
                    "last_error": None,
                    "correlation_id": None,
                    "output": None,
                    "started_at": None,
                    "completed_at": None,
                },
            )
            phase = self._require_phase(task.phase_id)
            if phase.status == PhaseStatus.FAILED:
                self._store.update(RecordKind.PHASE, phase.id, {"status": PhaseStatus.PENDING})
            else:
                reopen_phase(self._store, phase, f"Task '{task.title}' was reset")
        refresh_counters(self._store, task.plan_id)
        logger.info("Task %s reset to pending", task.id)
        self._bus.publish(
            ProgressEventType.TASK_PROGRESS,
            task.plan_id,
            phase_id=task.phase_id,
            task_id=task.id,
            status=task.status.value,
            message="reset",
        )
        return task

    def _current_phase(self, plan_id: str) -> Phase | None:
        phases = self._store.list(RecordKind.PHASE, {"plan_id": plan_id}, order_by="order")
        return next((p for p in phases if p.status != PhaseStatus.COMPLETED), None)

    def _live_run(self, plan_id: str) -> PlanRun | None:
        run = self._runs.get(plan_id)
        return run if run is not None and run.is_live else None

    def _lock(self, plan_id: str) -> asyncio.Lock:
        lock = self._locks.get(plan_id)
        if lock is None:
            lock = self._locks[plan_id] = asyncio.Lock()
        return lock

    def _require_plan(self, plan_id: str) -> Plan:
        plan = self._store.get(RecordKind.PLAN, plan_id)
        if plan is None:
            raise NotFoundError("plan", plan_id)
        return plan

    def _require_phase(self, phase_id: str) -> Phase:
        phase = self._store.get(RecordKind.PHASE, phase_id)
        if phase is None:
            raise NotFoundError("phase", phase_id)
        return phase

    def _require_task(self, task_id: str) -> Task:
        task = self._store.get(RecordKind.TASK, task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task
