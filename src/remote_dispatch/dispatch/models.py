"""Domain models for remote command dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class DispatchError(RuntimeError):
    """Base error for dispatcher failures that abort a whole run."""


class DispatchConfigurationError(DispatchError):
    """Caller or programming error detected before or during a run."""


class TargetValidationError(ValueError):
    """Target descriptor rejected at construction time."""


class TargetKind(str, Enum):
    """Closed set of hosting platforms a target can live on."""

    WPCOM = "wpcom"
    PRESSABLE = "pressable"

    @property
    def display_name(self) -> str:
        return _KIND_DISPLAY_NAMES[self]

    @property
    def requires_url(self) -> bool:
        return self in _KINDS_REQUIRING_URL

    @classmethod
    def parse(cls, value: str | TargetKind) -> TargetKind:
        """Resolve a kind from its string value, rejecting unknown kinds."""

        if isinstance(value, TargetKind):
            return value
        if not isinstance(value, str):
            raise TargetValidationError(f"Target kind must be a string, got {value!r}.")
        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError as error:
            allowed = ", ".join(kind.value for kind in cls)
            raise TargetValidationError(
                f"Unsupported target kind {value!r}. Expected one of: {allowed}.",
            ) from error


_KIND_DISPLAY_NAMES = {
    TargetKind.WPCOM: "WordPress.com",
    TargetKind.PRESSABLE: "Pressable",
}
_KINDS_REQUIRING_URL = frozenset({TargetKind.PRESSABLE})


class ErrorKind(str, Enum):
    """Closed taxonomy of why a task failed."""

    CONNECTOR_UNAVAILABLE = "connector_unavailable"
    COMMAND_FAILED = "command_failed"
    EMPTY_OUTPUT = "empty_output"
    MALFORMED_OUTPUT = "malformed_output"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> ErrorKind:
        """Map a reported error string onto the taxonomy; unknown strings map to UNKNOWN."""

        if isinstance(value, ErrorKind):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN


class TaskState(str, Enum):
    """Per-task lifecycle inside one dispatch run."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


@dataclass(frozen=True, slots=True)
class TargetDescriptor:
    """Remote entity a command runs against."""

    target_id: str
    target_kind: TargetKind
    target_url: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.target_id, str) or not self.target_id.strip():
            raise TargetValidationError("Target id must be a non-empty string.")
        kind = TargetKind.parse(self.target_kind)
        object.__setattr__(self, "target_kind", kind)
        url = self.target_url.strip() if self.target_url else None
        object.__setattr__(self, "target_url", url or None)
        if kind.requires_url and not url:
            raise TargetValidationError(
                f"{kind.display_name} targets require a target URL "
                f"(target_id={self.target_id!r}).",
            )


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of work: a target plus the command to run against it."""

    task_id: str
    target: TargetDescriptor
    command: str | None = None

    @classmethod
    def for_target(cls, target: TargetDescriptor, command: str | None = None) -> Task:
        """Build a task keyed by its target id."""

        return cls(task_id=target.target_id, target=target, command=command)


class RawOutcomeKind(str, Enum):
    """What a worker observed before any classification."""

    RAW = "raw"
    CONNECTOR_ERROR = "connector_error"
    EXECUTION_ERROR = "execution_error"
    TIMEOUT = "timeout"
    CRASHED = "crashed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class RawOutcome:
    """Unclassified worker outcome.

    Only ``RAW`` carries ``data``; every other kind carries a ``detail`` message.
    """

    kind: RawOutcomeKind
    data: bytes = b""
    detail: str = ""

    @classmethod
    def raw(cls, data: bytes | str) -> RawOutcome:
        if isinstance(data, str):
            data = data.encode("utf-8")
        return cls(kind=RawOutcomeKind.RAW, data=data)

    @classmethod
    def connector_error(cls, detail: str) -> RawOutcome:
        return cls(kind=RawOutcomeKind.CONNECTOR_ERROR, detail=detail)

    @classmethod
    def execution_error(cls, detail: str) -> RawOutcome:
        return cls(kind=RawOutcomeKind.EXECUTION_ERROR, detail=detail)

    @classmethod
    def timeout(cls, detail: str = "Deadline exceeded.") -> RawOutcome:
        return cls(kind=RawOutcomeKind.TIMEOUT, detail=detail)

    @classmethod
    def crashed(cls, detail: str) -> RawOutcome:
        return cls(kind=RawOutcomeKind.CRASHED, detail=detail)

    @classmethod
    def cancelled(cls, detail: str = "Dispatch cancelled.") -> RawOutcome:
        return cls(kind=RawOutcomeKind.CANCELLED, detail=detail)

    def text(self) -> str:
        """Decode raw data leniently for classification and diagnostics."""

        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class Success:
    """Task finished and produced a structured payload."""

    task_id: str
    payload: Any

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failure:
    """Task finished without a usable payload."""

    task_id: str
    error_kind: ErrorKind
    detail: str

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict[str, str]:
        return {
            "task_id": self.task_id,
            "error": self.error_kind.value,
            "detail": self.detail,
        }


Result = Success | Failure
