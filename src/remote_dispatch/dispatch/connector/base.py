"""Remote session interfaces consumed by workers."""

from __future__ import annotations

from typing import Protocol

from remote_dispatch.dispatch.models import TargetDescriptor


class ConnectorError(RuntimeError):
    """A remote session could not be established."""


class ChannelError(RuntimeError):
    """I/O or protocol failure on an established session."""


class RemoteChannel(Protocol):
    """One running command on a remote session."""

    def poll(self) -> bool:
        """Collect pending output and return True once the command has finished."""

    def output(self) -> bytes:
        """Return everything the command wrote to stdout so far."""

    def abort(self) -> None:
        """Stop the command; called on deadline expiry or cancellation."""

    def close(self) -> None:
        """Release the channel."""


class RemoteSession(Protocol):
    """Authenticated command-execution session for one target."""

    def start(self, command: str) -> RemoteChannel:
        """Start ``command`` and return its channel."""

    def close(self) -> None:
        """Disconnect the session."""


class SessionConnector(Protocol):
    """Opens remote sessions; raises ``ConnectorError`` when that is impossible."""

    name: str

    def connect(self, target: TargetDescriptor) -> RemoteSession:
        """Open a session for ``target``."""
