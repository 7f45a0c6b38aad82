"""Worker report records exchanged between worker processes and the dispatcher.

A worker process prints exactly one record as a JSON line on stdout::

    {"code": "success", "target_id": ..., "target_kind": ..., "data": ...}
    {"error": "<error kind>", "target_id": ..., "target_kind": ..., "detail": "..."}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from remote_dispatch.dispatch.models import ErrorKind, Result, Success, TargetDescriptor

SUCCESS_CODE = "success"


@dataclass(slots=True)
class WorkerReport:
    """Decoded worker record."""

    target_id: str | None
    target_kind: str | None
    data: Any = None
    error_kind: ErrorKind | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind is None


def encode_report(result: Result, target: TargetDescriptor) -> str:
    """Serialize one result as a single JSON line."""

    record: dict[str, Any]
    if isinstance(result, Success):
        record = {
            "code": SUCCESS_CODE,
            "target_id": target.target_id,
            "target_kind": target.target_kind.value,
            "data": result.payload,
        }
    else:
        record = {
            "error": result.error_kind.value,
            "target_id": target.target_id,
            "target_kind": target.target_kind.value,
            "detail": result.detail,
        }
    return json.dumps(record, ensure_ascii=False, default=str)


def decode_report(text: str) -> WorkerReport | None:
    """Find the worker record in process stdout.

    The record is normally the whole output, but stray lines printed before it
    are tolerated: the last line that parses as a record wins.
    """

    stripped = text.strip()
    if not stripped:
        return None

    candidates = [stripped]
    candidates.extend(reversed([line.strip() for line in stripped.splitlines() if line.strip()]))
    for candidate in candidates:
        record = _try_load_dict(candidate)
        if record is None:
            continue
        report = _to_report(record)
        if report is not None:
            return report
    return None


def _to_report(record: dict[str, Any]) -> WorkerReport | None:
    target_id = _optional_str(record.get("target_id"))
    target_kind = _optional_str(record.get("target_kind"))
    if "error" in record:
        detail = record.get("detail")
        return WorkerReport(
            target_id=target_id,
            target_kind=target_kind,
            error_kind=ErrorKind.parse(record["error"]),
            detail=detail if isinstance(detail, str) else json.dumps(detail, default=str),
        )
    if record.get("code") == SUCCESS_CODE and "data" in record:
        return WorkerReport(target_id=target_id, target_kind=target_kind, data=record["data"])
    return None


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
