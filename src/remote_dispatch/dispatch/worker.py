"""Worker: run one command against one target and report a raw outcome."""

from __future__ import annotations

import logging
import sys
import threading
import time
from concurrent.futures import Future, wait
from contextlib import closing
from typing import TextIO

from remote_dispatch.dispatch.cancellation import CancelToken
from remote_dispatch.dispatch.classifier import classify
from remote_dispatch.dispatch.connector.base import (
    ChannelError,
    ConnectorError,
    RemoteChannel,
    RemoteSession,
    SessionConnector,
)
from remote_dispatch.dispatch.models import RawOutcome, Result, TargetDescriptor
from remote_dispatch.dispatch.reports import encode_report

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05


def execute(  # noqa: PLR0913
    target: TargetDescriptor,
    command: str,
    timeout_seconds: float,
    *,
    connector: SessionConnector,
    cancel_token: CancelToken | None = None,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> RawOutcome:
    """Execute ``command`` on ``target`` and return what happened.

    Never raises: connection, channel, deadline and unexpected errors all come
    back as a ``RawOutcome``. ``timeout_seconds == 0`` disables the deadline.
    """

    started = time.monotonic()
    try:
        if timeout_seconds < 0:
            raise ValueError(f"timeout_seconds must be >= 0, got {timeout_seconds!r}")
        if timeout_seconds == 0:
            logger.warning("Running %r on %s without a deadline", command, target.target_id)
        outcome = _execute(
            target=target,
            command=command,
            timeout_seconds=timeout_seconds,
            connector=connector,
            cancel_token=cancel_token,
            poll_interval_seconds=poll_interval_seconds,
        )
    except Exception as error:  # noqa: BLE001
        logger.exception("Worker for target %s crashed", target.target_id)
        return RawOutcome.crashed(f"{type(error).__name__}: {error}")

    logger.debug(
        "Worker finished: target=%s outcome=%s elapsed=%.2fs",
        target.target_id,
        outcome.kind.value,
        time.monotonic() - started,
    )
    return outcome


def run_worker_process(  # noqa: PLR0913
    target: TargetDescriptor,
    command: str,
    timeout_seconds: float,
    *,
    connector: SessionConnector,
    cancel_token: CancelToken | None = None,
    stream: TextIO | None = None,
) -> Result:
    """Worker-process entry point: execute, classify, print one report record."""

    outcome = execute(
        target,
        command,
        timeout_seconds,
        connector=connector,
        cancel_token=cancel_token,
    )
    result = classify(target.target_id, outcome)
    out = stream or sys.stdout
    out.write(encode_report(result, target) + "\n")
    out.flush()
    return result


def _execute(  # noqa: PLR0913
    *,
    target: TargetDescriptor,
    command: str,
    timeout_seconds: float,
    connector: SessionConnector,
    cancel_token: CancelToken | None,
    poll_interval_seconds: float,
) -> RawOutcome:
    if cancel_token is not None and cancel_token.cancelled:
        return RawOutcome.cancelled(cancel_token.reason or "Dispatch cancelled.")

    deadline = time.monotonic() + timeout_seconds if timeout_seconds > 0 else None
    connected = _connect(
        connector,
        target,
        deadline=deadline,
        timeout_seconds=timeout_seconds,
        cancel_token=cancel_token,
        poll_interval_seconds=poll_interval_seconds,
    )
    if isinstance(connected, RawOutcome):
        return connected

    with closing(connected):
        try:
            channel = connected.start(command)
        except (ChannelError, OSError) as error:
            return RawOutcome.execution_error(str(error))
        with closing(channel):
            return _await_channel(
                channel,
                deadline=deadline,
                timeout_seconds=timeout_seconds,
                cancel_token=cancel_token,
                poll_interval_seconds=poll_interval_seconds,
            )


def _connect(  # noqa: PLR0913
    connector: SessionConnector,
    target: TargetDescriptor,
    *,
    deadline: float | None,
    timeout_seconds: float,
    cancel_token: CancelToken | None,
    poll_interval_seconds: float,
) -> RemoteSession | RawOutcome:
    """Open a session on a helper thread so the deadline also covers connecting.

    A session that arrives after the worker gave up is closed on arrival.
    """

    future: Future[RemoteSession] = Future()
    future.set_running_or_notify_cancel()

    def _run() -> None:
        try:
            session = connector.connect(target)
        except BaseException as error:  # noqa: BLE001
            future.set_exception(error)
        else:
            future.set_result(session)

    threading.Thread(
        target=_run,
        name=f"dispatch-connect-{target.target_id}",
        daemon=True,
    ).start()

    while True:
        done, _ = wait([future], timeout=poll_interval_seconds)
        if done:
            try:
                return future.result()
            except ConnectorError as error:
                logger.info(
                    "Connector %s failed for %s: %s",
                    connector.name,
                    target.target_id,
                    error,
                )
                return RawOutcome.connector_error(str(error))

        if deadline is not None and time.monotonic() >= deadline:
            future.add_done_callback(_close_abandoned_session)
            return RawOutcome.timeout(
                f"Connecting to {target.target_id} exceeded the {timeout_seconds}s deadline.",
            )

        if cancel_token is not None and cancel_token.cancelled:
            future.add_done_callback(_close_abandoned_session)
            return RawOutcome.cancelled(cancel_token.reason or "Dispatch cancelled.")


def _close_abandoned_session(future: Future[RemoteSession]) -> None:
    if future.exception() is not None:
        return
    try:
        future.result().close()
    except (ConnectorError, ChannelError, OSError) as error:
        logger.warning("Closing abandoned session failed: %s", error)


def _await_channel(
    channel: RemoteChannel,
    *,
    deadline: float | None,
    timeout_seconds: float,
    cancel_token: CancelToken | None,
    poll_interval_seconds: float,
) -> RawOutcome:
    while True:
        try:
            if channel.poll():
                return RawOutcome.raw(channel.output())
        except (ChannelError, OSError) as error:
            return RawOutcome.execution_error(str(error))

        if deadline is not None and time.monotonic() >= deadline:
            _abort(channel)
            return RawOutcome.timeout(f"Command exceeded the {timeout_seconds}s deadline.")

        if cancel_token is None:
            time.sleep(poll_interval_seconds)
        elif cancel_token.wait(poll_interval_seconds):
            _abort(channel)
            return RawOutcome.cancelled(cancel_token.reason or "Dispatch cancelled.")


def _abort(channel: RemoteChannel) -> None:
    try:
        channel.abort()
    except (ChannelError, OSError) as error:
        logger.warning("Channel abort failed: %s", error)
