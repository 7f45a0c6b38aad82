"""Runtime configuration for the remote command dispatcher."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from remote_dispatch.dispatch.models import TargetKind

EXECUTION_UNITS = ("thread", "process")
CONNECTORS = ("ssh", "local")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class DispatchSettings:
    """Dispatcher pool settings."""

    concurrency_limit: int = 10
    per_task_timeout_seconds: int = 120
    execution_unit: str = "thread"
    connector: str = "ssh"
    process_grace_seconds: int = 5


@dataclass(slots=True)
class SshSettings:
    """Remote session settings for the SSH connector."""

    hosts: dict[TargetKind, str] = field(
        default_factory=lambda: {
            TargetKind.WPCOM: "ssh.atomicsites.net",
            TargetKind.PRESSABLE: "ssh.pressable.com",
        },
    )
    port: int = 22
    connect_timeout_seconds: float = 30.0
    username_template: str = "{target_id}"
    password: str | None = None
    key_path: Path | None = None
    allow_agent: bool = True
    verify_shell_access: bool = True

    def host_for(self, kind: TargetKind) -> str:
        try:
            return self.hosts[kind]
        except KeyError as error:
            raise ValueError(f"No SSH host configured for target kind {kind.value!r}.") from error


@dataclass(slots=True)
class LoggingSettings:
    """CLI logging settings."""

    level: str = "WARNING"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    ssh: SshSettings = field(default_factory=SshSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suitable for interactive use."""

        defaults = SshSettings()
        key_path = os.getenv("REMOTE_DISPATCH_SSH_KEY_PATH", "").strip()
        return cls(
            dispatch=DispatchSettings(
                concurrency_limit=_env_int("REMOTE_DISPATCH_CONCURRENCY_LIMIT", 10),
                per_task_timeout_seconds=_env_int("REMOTE_DISPATCH_TASK_TIMEOUT_SECONDS", 120),
                execution_unit=os.getenv("REMOTE_DISPATCH_EXECUTION_UNIT", "thread")
                .strip()
                .lower(),
                connector=os.getenv("REMOTE_DISPATCH_CONNECTOR", "ssh").strip().lower(),
                process_grace_seconds=_env_int("REMOTE_DISPATCH_PROCESS_GRACE_SECONDS", 5),
            ),
            ssh=SshSettings(
                hosts={
                    kind: os.getenv(f"REMOTE_DISPATCH_SSH_HOST_{kind.name}", host).strip()
                    for kind, host in defaults.hosts.items()
                },
                port=_env_int("REMOTE_DISPATCH_SSH_PORT", 22),
                connect_timeout_seconds=float(
                    os.getenv("REMOTE_DISPATCH_SSH_CONNECT_TIMEOUT_SECONDS", "30"),
                ),
                username_template=os.getenv("REMOTE_DISPATCH_SSH_USERNAME", "{target_id}"),
                password=os.getenv("REMOTE_DISPATCH_SSH_PASSWORD") or None,
                key_path=Path(key_path).expanduser() if key_path else None,
                allow_agent=_env_bool("REMOTE_DISPATCH_SSH_ALLOW_AGENT", default=True),
                verify_shell_access=_env_bool(
                    "REMOTE_DISPATCH_SSH_VERIFY_SHELL_ACCESS",
                    default=True,
                ),
            ),
            logging=LoggingSettings(
                level=os.getenv("REMOTE_DISPATCH_LOG_LEVEL", "WARNING").strip().upper(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.dispatch.concurrency_limit <= 0:
            raise ValueError("REMOTE_DISPATCH_CONCURRENCY_LIMIT must be > 0.")
        if self.dispatch.per_task_timeout_seconds < 0:
            raise ValueError("REMOTE_DISPATCH_TASK_TIMEOUT_SECONDS must be >= 0.")
        if self.dispatch.process_grace_seconds < 0:
            raise ValueError("REMOTE_DISPATCH_PROCESS_GRACE_SECONDS must be >= 0.")
        if self.dispatch.execution_unit not in EXECUTION_UNITS:
            raise ValueError(
                f"Unsupported execution unit {self.dispatch.execution_unit!r}. "
                f"Expected one of: {', '.join(EXECUTION_UNITS)}.",
            )
        if self.dispatch.connector not in CONNECTORS:
            raise ValueError(
                f"Unsupported connector {self.dispatch.connector!r}. "
                f"Expected one of: {', '.join(CONNECTORS)}.",
            )
        if not 0 < self.ssh.port < 65536:  # noqa: PLR2004
            raise ValueError("REMOTE_DISPATCH_SSH_PORT must be between 1 and 65535.")
        if self.ssh.connect_timeout_seconds <= 0:
            raise ValueError("REMOTE_DISPATCH_SSH_CONNECT_TIMEOUT_SECONDS must be > 0.")
        if not self.ssh.username_template.strip():
            raise ValueError("REMOTE_DISPATCH_SSH_USERNAME must not be empty.")
        if self.logging.level not in LOG_LEVELS:
            raise ValueError(
                f"Invalid REMOTE_DISPATCH_LOG_LEVEL {self.logging.level!r}. "
                f"Expected one of: {', '.join(LOG_LEVELS)}.",
            )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
