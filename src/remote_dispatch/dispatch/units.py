"""Execution units: where a worker runs (thread or OS process).

The dispatcher only sees ``start(...) -> Future[RawOutcome]`` plus the
classifier that understands the unit's raw output.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import tempfile
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from typing import IO, Protocol

from remote_dispatch.dispatch.cancellation import CancelToken
from remote_dispatch.dispatch.classifier import classify, classify_report
from remote_dispatch.dispatch.connector.base import SessionConnector
from remote_dispatch.dispatch.connector.local import terminate_process
from remote_dispatch.dispatch.models import RawOutcome, Result, Task
from remote_dispatch.dispatch.worker import DEFAULT_POLL_INTERVAL_SECONDS, execute

logger = logging.getLogger(__name__)

Classifier = Callable[[str, RawOutcome], Result]

_STDERR_LOG_CHARS = 2_000


class ExecutionUnit(Protocol):
    """Launches workers and hands back one completion future per task."""

    name: str
    classifier: Classifier

    def start(
        self,
        task: Task,
        command: str,
        timeout_seconds: int,
        cancel_token: CancelToken,
    ) -> Future[RawOutcome]:
        """Start a worker for ``task``; the future resolves to its raw outcome."""


class ThreadExecutionUnit:
    """One daemon thread per task running ``worker.execute`` in-process."""

    name = "thread"

    def __init__(
        self,
        connector: SessionConnector,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.connector = connector
        self.poll_interval_seconds = poll_interval_seconds
        self.classifier: Classifier = classify

    def start(
        self,
        task: Task,
        command: str,
        timeout_seconds: int,
        cancel_token: CancelToken,
    ) -> Future[RawOutcome]:
        future: Future[RawOutcome] = Future()
        future.set_running_or_notify_cancel()
        thread = threading.Thread(
            target=self._run,
            args=(future, task, command, timeout_seconds, cancel_token),
            name=f"dispatch-worker-{task.task_id}",
            daemon=True,
        )
        thread.start()
        return future

    def _run(  # noqa: PLR0913
        self,
        future: Future[RawOutcome],
        task: Task,
        command: str,
        timeout_seconds: int,
        cancel_token: CancelToken,
    ) -> None:
        try:
            outcome = execute(
                task.target,
                command,
                timeout_seconds,
                connector=self.connector,
                cancel_token=cancel_token,
                poll_interval_seconds=self.poll_interval_seconds,
            )
        except BaseException as error:
            future.set_result(RawOutcome.crashed(f"{type(error).__name__}: {error}"))
            raise
        future.set_result(outcome)


def default_worker_argv() -> list[str]:
    return [sys.executable, "-m", "remote_dispatch.main", "worker"]


class ProcessExecutionUnit:
    """One OS process per task running the hidden ``worker`` CLI command.

    The child prints one worker record on stdout, so results are classified
    with ``classify_report``. The child enforces the task deadline itself; the
    parent kills it only after ``timeout + grace_seconds``.
    """

    name = "process"

    def __init__(
        self,
        *,
        connector_name: str = "ssh",
        argv_prefix: Sequence[str] | None = None,
        env: dict[str, str] | None = None,
        grace_seconds: int = 5,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.connector_name = connector_name
        self.argv_prefix = list(argv_prefix) if argv_prefix is not None else default_worker_argv()
        self.env = env
        self.grace_seconds = grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.classifier: Classifier = classify_report

    def build_argv(self, task: Task, command: str, timeout_seconds: int) -> list[str]:
        target = task.target
        argv = [
            *self.argv_prefix,
            "--target-id",
            target.target_id,
            "--target-kind",
            target.target_kind.value,
            "--command",
            command,
            "--timeout",
            str(timeout_seconds),
            "--connector",
            self.connector_name,
        ]
        if target.target_url:
            argv.extend(["--target-url", target.target_url])
        return argv

    def start(
        self,
        task: Task,
        command: str,
        timeout_seconds: int,
        cancel_token: CancelToken,
    ) -> Future[RawOutcome]:
        future: Future[RawOutcome] = Future()
        future.set_running_or_notify_cancel()

        stdout_handle = tempfile.TemporaryFile()  # noqa: SIM115
        stderr_handle = tempfile.TemporaryFile()  # noqa: SIM115
        try:
            process = subprocess.Popen(  # noqa: S603
                self.build_argv(task, command, timeout_seconds),
                env=self.env if self.env is not None else os.environ.copy(),
                stdin=subprocess.DEVNULL,
                stdout=stdout_handle,
                stderr=stderr_handle,
            )
        except OSError as error:
            stdout_handle.close()
            stderr_handle.close()
            future.set_result(RawOutcome.crashed(f"Worker process failed to start: {error}"))
            return future

        hard_limit = timeout_seconds + self.grace_seconds if timeout_seconds > 0 else 0
        watcher = threading.Thread(
            target=self._watch,
            args=(future, task, process, stdout_handle, stderr_handle, hard_limit, cancel_token),
            name=f"dispatch-watch-{task.task_id}",
            daemon=True,
        )
        watcher.start()
        return future

    def _watch(  # noqa: PLR0913
        self,
        future: Future[RawOutcome],
        task: Task,
        process: subprocess.Popen[bytes],
        stdout_handle: IO[bytes],
        stderr_handle: IO[bytes],
        hard_limit: float,
        cancel_token: CancelToken,
    ) -> None:
        try:
            outcome = self._wait_for_process(process, stdout_handle, hard_limit, cancel_token)
            stderr_text = _read_spool(stderr_handle).decode("utf-8", errors="replace").strip()
            if stderr_text:
                logger.debug(
                    "Worker process for %s (pid=%s, exit=%s) stderr: %s",
                    task.task_id,
                    process.pid,
                    process.returncode,
                    stderr_text[-_STDERR_LOG_CHARS:],
                )
        except BaseException as error:
            future.set_result(RawOutcome.crashed(f"{type(error).__name__}: {error}"))
            raise
        finally:
            stdout_handle.close()
            stderr_handle.close()
        future.set_result(outcome)

    def _wait_for_process(
        self,
        process: subprocess.Popen[bytes],
        stdout_handle: IO[bytes],
        hard_limit: float,
        cancel_token: CancelToken,
    ) -> RawOutcome:
        start_monotonic = time.monotonic()
        while True:
            if process.poll() is not None:
                return RawOutcome.raw(_read_spool(stdout_handle))

            if hard_limit > 0 and time.monotonic() - start_monotonic >= hard_limit:
                terminate_process(process)
                return RawOutcome.timeout(
                    f"Worker process did not finish within {hard_limit}s and was terminated.",
                )

            if cancel_token.wait(self.poll_interval_seconds):
                terminate_process(process)
                return RawOutcome.cancelled(cancel_token.reason or "Dispatch cancelled.")


def _read_spool(handle: IO[bytes]) -> bytes:
    handle.flush()
    handle.seek(0)
    return handle.read()
