"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TextIO

from remote_dispatch.config import Settings
from remote_dispatch.dispatch.cancellation import CancelToken, cancel_on_signals
from remote_dispatch.dispatch.connector import (
    LocalShellConnector,
    SessionConnector,
    SshConnector,
)
from remote_dispatch.dispatch.dispatcher import Dispatcher, DispatchStrategy
from remote_dispatch.dispatch.metrics import (
    DispatchReport,
    format_progress_line,
    render_report_lines,
)
from remote_dispatch.dispatch.models import (
    Failure,
    Result,
    TargetDescriptor,
    TargetValidationError,
    Task,
)
from remote_dispatch.dispatch.targets import load_targets_csv, merge_targets, parse_target_spec
from remote_dispatch.dispatch.units import (
    ExecutionUnit,
    ProcessExecutionUnit,
    ThreadExecutionUnit,
)
from remote_dispatch.dispatch.worker import run_worker_process

Emit = Callable[[str], None]


@dataclass(slots=True)
class RunCommand:
    """CLI input for a dispatch run."""

    command: str
    target_specs: tuple[str, ...] = ()
    targets_file: Path | None = None
    concurrency: int | None = None
    timeout_seconds: int | None = None
    execution_unit: str | None = None
    connector: str | None = None
    output_format: str = "text"
    quiet: bool = False


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for one worker process."""

    target_id: str
    target_kind: str
    target_url: str | None
    command: str
    timeout_seconds: int | None = None
    connector: str | None = None


@dataclass(slots=True)
class RunResult:
    lines: list[str]
    report: DispatchReport

    @property
    def success(self) -> bool:
        return not self.report.failures and not self.report.cancelled


def build_connector(settings: Settings, name: str | None = None) -> SessionConnector:
    connector_name = name or settings.dispatch.connector
    if connector_name == "local":
        return LocalShellConnector()
    if connector_name == "ssh":
        return SshConnector(settings.ssh)
    raise ValueError(f"Unsupported connector {connector_name!r}.")


def build_execution_unit(settings: Settings) -> ExecutionUnit:
    if settings.dispatch.execution_unit == "process":
        return ProcessExecutionUnit(
            connector_name=settings.dispatch.connector,
            grace_seconds=settings.dispatch.process_grace_seconds,
        )
    return ThreadExecutionUnit(build_connector(settings))


class _ProgressPrinter:
    """Emit one line per reaped task."""

    def __init__(self, *, total: int, emit: Emit) -> None:
        self.total = total
        self.emit = emit
        self.completed = 0
        self.failed = 0

    def __call__(self, task: Task, result: Result) -> None:
        self.completed += 1
        if isinstance(result, Failure):
            self.failed += 1
        self.emit(
            format_progress_line(
                completed=self.completed,
                total=self.total,
                failed=self.failed,
                task=task,
                result=result,
            ),
        )


class DispatchCliController:
    """Coordinates dispatch runs and single worker executions for the CLI."""

    def run(self, command: RunCommand, *, emit_progress: Emit | None = None) -> RunResult:
        settings = _settings_for(
            concurrency=command.concurrency,
            timeout_seconds=command.timeout_seconds,
            execution_unit=command.execution_unit,
            connector=command.connector,
        )
        targets = _load_targets(command)
        if not targets:
            raise TargetValidationError("No targets given: use --target or --targets-file.")
        if not command.command.strip():
            raise TargetValidationError("Command must not be empty.")

        tasks = [Task.for_target(target, command.command) for target in targets]
        on_result = None
        if emit_progress is not None and not command.quiet:
            on_result = _ProgressPrinter(total=len(tasks), emit=emit_progress)
        dispatcher = Dispatcher(
            build_execution_unit(settings),
            DispatchStrategy(on_result=on_result),
        )
        with cancel_on_signals(CancelToken()) as token:
            report = dispatcher.run(
                tasks,
                settings.dispatch.concurrency_limit,
                settings.dispatch.per_task_timeout_seconds,
                cancel_token=token,
            )

        if command.output_format == "json":
            lines = [json.dumps(report.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)]
        else:
            lines = render_report_lines(report)
        return RunResult(lines=lines, report=report)

    def run_worker(self, command: WorkerCommand, *, stream: TextIO | None = None) -> Result:
        settings = _settings_for(
            timeout_seconds=command.timeout_seconds,
            connector=command.connector,
        )
        target = TargetDescriptor(
            target_id=command.target_id,
            target_kind=command.target_kind,
            target_url=command.target_url,
        )
        with cancel_on_signals(CancelToken()) as token:
            return run_worker_process(
                target,
                command.command,
                settings.dispatch.per_task_timeout_seconds,
                connector=build_connector(settings),
                cancel_token=token,
                stream=stream,
            )


def _settings_for(
    *,
    concurrency: int | None = None,
    timeout_seconds: int | None = None,
    execution_unit: str | None = None,
    connector: str | None = None,
) -> Settings:
    settings = Settings.from_env()
    dispatch_settings = settings.dispatch
    if concurrency is not None:
        dispatch_settings = replace(dispatch_settings, concurrency_limit=concurrency)
    if timeout_seconds is not None:
        dispatch_settings = replace(dispatch_settings, per_task_timeout_seconds=timeout_seconds)
    if execution_unit is not None:
        dispatch_settings = replace(dispatch_settings, execution_unit=execution_unit.lower())
    if connector is not None:
        dispatch_settings = replace(dispatch_settings, connector=connector.lower())
    settings = replace(settings, dispatch=dispatch_settings)
    settings.validate()
    return settings


def _load_targets(command: RunCommand) -> list[TargetDescriptor]:
    from_specs = [parse_target_spec(spec) for spec in command.target_specs]
    from_file = load_targets_csv(command.targets_file) if command.targets_file else []
    return merge_targets(from_specs, from_file)
