"""Remote session connectors."""

from remote_dispatch.dispatch.connector.base import (
    ChannelError,
    ConnectorError,
    RemoteChannel,
    RemoteSession,
    SessionConnector,
)
from remote_dispatch.dispatch.connector.local import LocalShellConnector
from remote_dispatch.dispatch.connector.ssh import SshConnector, SshCredentials

__all__ = [
    "ChannelError",
    "ConnectorError",
    "LocalShellConnector",
    "RemoteChannel",
    "RemoteSession",
    "SessionConnector",
    "SshConnector",
    "SshCredentials",
]
