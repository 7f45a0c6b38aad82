"""Bounded-concurrency dispatcher.

Tasks are launched in submission order while fewer than ``concurrency_limit``
workers are in flight. When the pool is full the dispatcher blocks on the
workers' completion futures, reaps every finished worker, and then continues.
After the last launch it drains the pool. Only the dispatcher thread touches
the in-flight map and the result maps.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field

from remote_dispatch.dispatch.cancellation import CancelToken
from remote_dispatch.dispatch.connector.base import SessionConnector
from remote_dispatch.dispatch.metrics import DispatchReport
from remote_dispatch.dispatch.models import (
    DispatchConfigurationError,
    DispatchError,
    ErrorKind,
    Failure,
    RawOutcome,
    Result,
    Success,
    Task,
    TaskState,
)
from remote_dispatch.dispatch.units import Classifier, ExecutionUnit, ThreadExecutionUnit

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]
LaunchCallback = Callable[[Task, int], None]
ResultCallback = Callable[[Task, Result], None]
CommandBuilder = Callable[[Task], str]


@dataclass(frozen=True, slots=True)
class DispatchStrategy:
    """Per-dispatcher hooks.

    ``classify`` defaults to the execution unit's classifier. ``build_command``
    derives the command from a task and takes precedence over ``Task.command``.
    """

    classify: Classifier | None = None
    build_command: CommandBuilder | None = None
    on_progress: ProgressCallback | None = None
    on_launch: LaunchCallback | None = None
    on_result: ResultCallback | None = None


@dataclass(slots=True)
class WorkerHandle:
    """One in-flight worker, owned by the dispatcher."""

    task: Task
    future: Future[RawOutcome]
    started_at: float
    sequence: int


@dataclass(slots=True)
class _RunState:
    report: DispatchReport
    states: dict[str, TaskState] = field(default_factory=dict)
    in_flight: dict[Future[RawOutcome], WorkerHandle] = field(default_factory=dict)

    def mark_running(self, task: Task) -> None:
        self.states[task.task_id] = TaskState.RUNNING
        self.report.max_in_flight = max(self.report.max_in_flight, len(self.in_flight))

    def record(self, task: Task, result: Result, duration_seconds: float | None) -> None:
        current = self.states.get(task.task_id)
        if current is None or current.is_terminal:
            raise DispatchError(
                f"Task {task.task_id!r} cannot be recorded from state {current!r}.",
            )
        if isinstance(result, Success):
            self.report.successes[task.task_id] = result.payload
            self.states[task.task_id] = TaskState.SUCCEEDED
        else:
            self.report.failures[task.task_id] = result
            self.states[task.task_id] = TaskState.FAILED
        if duration_seconds is not None:
            self.report.durations[task.task_id] = duration_seconds


class Dispatcher:
    """Fan tasks out over an execution unit with a concurrency ceiling."""

    def __init__(self, unit: ExecutionUnit, strategy: DispatchStrategy | None = None) -> None:
        self.unit = unit
        self.strategy = strategy or DispatchStrategy()

    def run(
        self,
        tasks: Iterable[Task],
        concurrency_limit: int,
        per_task_timeout: int,
        progress_callback: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> DispatchReport:
        """Run every task and return the full success/failure partition.

        Configuration errors (bad limits, duplicate task ids, missing commands)
        raise ``DispatchConfigurationError`` before any worker is launched.
        """

        _validate_limits(concurrency_limit, per_task_timeout)
        task_list = list(tasks)
        _ensure_unique_task_ids(task_list)
        commands = self._resolve_commands(task_list)

        token = cancel_token or CancelToken()
        progress = progress_callback or self.strategy.on_progress
        state = _RunState(
            report=DispatchReport(total=len(task_list)),
            states={task.task_id: TaskState.QUEUED for task in task_list},
        )
        run_started = time.monotonic()
        if not task_list:
            return state.report

        logger.info(
            "Dispatching %d task(s): unit=%s concurrency=%d timeout=%ss",
            len(task_list),
            self.unit.name,
            concurrency_limit,
            per_task_timeout,
        )
        try:
            launched = self._launch_all(
                task_list=task_list,
                commands=commands,
                concurrency_limit=concurrency_limit,
                per_task_timeout=per_task_timeout,
                token=token,
                state=state,
                progress=progress,
            )
            for task in task_list[launched:]:
                self._complete(
                    task,
                    Failure(
                        task_id=task.task_id,
                        error_kind=ErrorKind.UNKNOWN,
                        detail=f"Cancelled before launch: {token.reason or 'dispatch cancelled'}",
                    ),
                    None,
                    state,
                    progress,
                )
            while state.in_flight:
                self._reap(state, progress, block=True)
        except BaseException:
            token.cancel("Dispatcher aborted.")
            raise

        state.report.cancelled = token.cancelled
        state.report.elapsed_seconds = time.monotonic() - run_started
        logger.info(
            "Dispatch finished: total=%d succeeded=%d failed=%d elapsed=%.1fs",
            state.report.total,
            len(state.report.successes),
            state.report.failed,
            state.report.elapsed_seconds,
        )
        return state.report

    def _launch_all(  # noqa: PLR0913
        self,
        *,
        task_list: list[Task],
        commands: dict[str, str],
        concurrency_limit: int,
        per_task_timeout: int,
        token: CancelToken,
        state: _RunState,
        progress: ProgressCallback | None,
    ) -> int:
        launched = 0
        for sequence, task in enumerate(task_list):
            while len(state.in_flight) >= concurrency_limit:
                self._reap(state, progress, block=True)
            if token.cancelled:
                logger.warning(
                    "Dispatch cancelled with %d task(s) not launched",
                    len(task_list) - launched,
                )
                break
            self._launch(
                task=task,
                command=commands[task.task_id],
                per_task_timeout=per_task_timeout,
                token=token,
                sequence=sequence,
                state=state,
                progress=progress,
            )
            launched += 1
            self._reap(state, progress, block=False)
        return launched

    def _launch(  # noqa: PLR0913
        self,
        *,
        task: Task,
        command: str,
        per_task_timeout: int,
        token: CancelToken,
        sequence: int,
        state: _RunState,
        progress: ProgressCallback | None,
    ) -> None:
        try:
            future = self.unit.start(task, command, per_task_timeout, token)
        except Exception as error:  # noqa: BLE001
            logger.exception("Failed to launch worker for task %s", task.task_id)
            self._complete(
                task,
                Failure(
                    task_id=task.task_id,
                    error_kind=ErrorKind.UNKNOWN,
                    detail=f"Worker launch failed: {error}",
                ),
                None,
                state,
                progress,
            )
            return

        state.in_flight[future] = WorkerHandle(
            task=task,
            future=future,
            started_at=time.monotonic(),
            sequence=sequence,
        )
        state.mark_running(task)
        if self.strategy.on_launch is not None:
            self.strategy.on_launch(task, len(state.in_flight))

    def _reap(self, state: _RunState, progress: ProgressCallback | None, *, block: bool) -> None:
        if not state.in_flight:
            return
        done, _ = wait(
            list(state.in_flight),
            timeout=None if block else 0,
            return_when=FIRST_COMPLETED,
        )
        now = time.monotonic()
        for future in sorted(done, key=lambda item: state.in_flight[item].sequence):
            handle = state.in_flight.pop(future)
            result = self._settle(handle.task, future)
            self._complete(handle.task, result, now - handle.started_at, state, progress)

    def _settle(self, task: Task, future: Future[RawOutcome]) -> Result:
        try:
            outcome = future.result()
        except Exception as error:  # noqa: BLE001
            logger.exception("Worker for task %s failed", task.task_id)
            return Failure(
                task_id=task.task_id,
                error_kind=ErrorKind.UNKNOWN,
                detail=f"Worker failed: {error}",
            )
        return self._classify(task, outcome)

    def _classify(self, task: Task, outcome: RawOutcome) -> Result:
        classifier = self.strategy.classify or self.unit.classifier
        try:
            return classifier(task.task_id, outcome)
        except Exception as error:  # noqa: BLE001
            logger.exception("Classifier failed for task %s", task.task_id)
            return Failure(
                task_id=task.task_id,
                error_kind=ErrorKind.UNKNOWN,
                detail=f"Result classification failed: {error}",
            )

    def _complete(  # noqa: PLR0913
        self,
        task: Task,
        result: Result,
        duration_seconds: float | None,
        state: _RunState,
        progress: ProgressCallback | None,
    ) -> None:
        state.record(task, result, duration_seconds)
        if isinstance(result, Failure):
            logger.info(
                "Task %s failed: %s %s",
                task.task_id,
                result.error_kind.value,
                result.detail,
            )
        if self.strategy.on_result is not None:
            self.strategy.on_result(task, result)
        if progress is not None:
            progress(state.report.completed, state.report.total, state.report.failed)

    def _resolve_commands(self, task_list: list[Task]) -> dict[str, str]:
        commands: dict[str, str] = {}
        for task in task_list:
            if self.strategy.build_command is not None:
                command = self.strategy.build_command(task)
            else:
                command = task.command
            if not isinstance(command, str) or not command.strip():
                raise DispatchConfigurationError(
                    f"No command for task {task.task_id!r}: "
                    "set Task.command or DispatchStrategy.build_command.",
                )
            commands[task.task_id] = command
        return commands


def dispatch(  # noqa: PLR0913
    tasks: Iterable[Task],
    *,
    connector: SessionConnector,
    concurrency_limit: int,
    per_task_timeout: int,
    progress_callback: ProgressCallback | None = None,
    strategy: DispatchStrategy | None = None,
    cancel_token: CancelToken | None = None,
) -> DispatchReport:
    """Run tasks on in-process worker threads through ``connector``."""

    dispatcher = Dispatcher(ThreadExecutionUnit(connector), strategy)
    return dispatcher.run(
        tasks,
        concurrency_limit,
        per_task_timeout,
        progress_callback=progress_callback,
        cancel_token=cancel_token,
    )


def _validate_limits(concurrency_limit: int, per_task_timeout: int) -> None:
    if isinstance(concurrency_limit, bool) or not isinstance(concurrency_limit, int):
        raise DispatchConfigurationError("concurrency_limit must be an integer.")
    if concurrency_limit < 1:
        raise DispatchConfigurationError(
            f"concurrency_limit must be >= 1, got {concurrency_limit}.",
        )
    if per_task_timeout < 0:
        raise DispatchConfigurationError(
            f"per_task_timeout must be >= 0, got {per_task_timeout}.",
        )


def _ensure_unique_task_ids(task_list: list[Task]) -> None:
    seen: set[str] = set()
    for task in task_list:
        if task.task_id in seen:
            raise DispatchConfigurationError(f"Duplicate task id {task.task_id!r}.")
        seen.add(task.task_id)
