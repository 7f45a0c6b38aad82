"""Deterministic classification of worker outcomes into typed results."""

from __future__ import annotations

import json
from typing import Any

from remote_dispatch.dispatch.models import (
    ErrorKind,
    Failure,
    RawOutcome,
    RawOutcomeKind,
    Result,
    Success,
)
from remote_dispatch.dispatch.reports import decode_report

CLASSIFIER_VERSION = 1
MAX_DETAIL_CHARS = 2_000

FATAL_ERROR_MARKERS: tuple[str, ...] = ("Fatal error:",)

_NON_RAW_ERROR_KINDS = {
    RawOutcomeKind.CONNECTOR_ERROR: ErrorKind.CONNECTOR_UNAVAILABLE,
    RawOutcomeKind.EXECUTION_ERROR: ErrorKind.COMMAND_FAILED,
    RawOutcomeKind.TIMEOUT: ErrorKind.TIMEOUT,
    RawOutcomeKind.CRASHED: ErrorKind.UNKNOWN,
    RawOutcomeKind.CANCELLED: ErrorKind.UNKNOWN,
}


def classify(task_id: str, outcome: RawOutcome) -> Result:
    """Classify remote command output; the payload must be a JSON object or array."""

    failure = _classify_non_raw(task_id, outcome)
    if failure is not None:
        return failure

    text = outcome.text()
    if not text.strip():
        return Failure(
            task_id=task_id,
            error_kind=ErrorKind.EMPTY_OUTPUT,
            detail="No output received from remote command.",
        )

    payload = _try_load_structured(text)
    if payload is _UNPARSED:
        return _unparsed_failure(task_id, text)
    return Success(task_id=task_id, payload=payload)


def classify_report(task_id: str, outcome: RawOutcome) -> Result:
    """Classify the stdout of a worker process, which carries one worker record."""

    failure = _classify_non_raw(task_id, outcome)
    if failure is not None:
        return failure

    text = outcome.text()
    if not text.strip():
        return Failure(
            task_id=task_id,
            error_kind=ErrorKind.EMPTY_OUTPUT,
            detail="Worker process exited without output.",
        )

    report = decode_report(text)
    if report is None:
        return _unparsed_failure(task_id, text)
    if report.error_kind is not None:
        return Failure(task_id=task_id, error_kind=report.error_kind, detail=report.detail)
    return Success(task_id=task_id, payload=report.data)


def find_fatal_marker_line(text: str) -> str | None:
    """Return the first line carrying a fatal-execution marker, if any."""

    for line in text.splitlines():
        for marker in FATAL_ERROR_MARKERS:
            index = line.find(marker)
            if index != -1:
                return line[index:].strip()
    return None


def truncate_detail(text: str, limit: int = MAX_DETAIL_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "... (truncated)"


class _Unparsed:
    pass


_UNPARSED = _Unparsed()


def _classify_non_raw(task_id: str, outcome: RawOutcome) -> Failure | None:
    if outcome.kind is RawOutcomeKind.RAW:
        return None
    return Failure(
        task_id=task_id,
        error_kind=_NON_RAW_ERROR_KINDS[outcome.kind],
        detail=outcome.detail or outcome.kind.value,
    )


def _unparsed_failure(task_id: str, text: str) -> Failure:
    marker_line = find_fatal_marker_line(text)
    if marker_line is not None:
        return Failure(
            task_id=task_id,
            error_kind=ErrorKind.COMMAND_FAILED,
            detail=truncate_detail(marker_line),
        )
    return Failure(
        task_id=task_id,
        error_kind=ErrorKind.MALFORMED_OUTPUT,
        detail=truncate_detail(text.strip()),
    )


def _try_load_structured(raw: str) -> Any:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return _UNPARSED
    if not isinstance(parsed, dict | list):
        return _UNPARSED
    return parsed
