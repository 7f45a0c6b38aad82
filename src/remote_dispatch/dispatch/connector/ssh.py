"""SSH connector backed by paramiko."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import paramiko

from remote_dispatch.config import SshSettings
from remote_dispatch.dispatch.connector.base import ChannelError, ConnectorError
from remote_dispatch.dispatch.models import TargetDescriptor

logger = logging.getLogger(__name__)

SFTP_ONLY_RESPONSE = "This service allows sftp connections only."
SHELL_PROBE_COMMAND = "ls -la"
_RECV_CHUNK_BYTES = 32_768


@dataclass(frozen=True, slots=True)
class SshCredentials:
    """Login data for one target."""

    username: str
    password: str | None = None
    key_path: Path | None = None


CredentialProvider = Callable[[TargetDescriptor], SshCredentials | None]


def credentials_from_settings(settings: SshSettings) -> CredentialProvider:
    """Build a provider that renders the configured username template per target."""

    def _provide(target: TargetDescriptor) -> SshCredentials | None:
        host = urlparse(target.target_url).netloc if target.target_url else ""
        try:
            username = settings.username_template.format(
                target_id=target.target_id,
                target_kind=target.target_kind.value,
                target_host=host,
            )
        except (KeyError, IndexError) as error:
            raise ConnectorError(
                f"Unsupported SSH username template placeholder: {error}",
            ) from error
        if not username.strip():
            return None
        return SshCredentials(
            username=username.strip(),
            password=settings.password,
            key_path=settings.key_path,
        )

    return _provide


class SshConnector:
    """Open one SSH session per target on the host configured for its kind."""

    name = "ssh"

    def __init__(
        self,
        settings: SshSettings,
        *,
        credentials: CredentialProvider | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.settings = settings
        self.credentials = credentials or credentials_from_settings(settings)
        self.client_factory = client_factory

    def connect(self, target: TargetDescriptor) -> SshSession:
        try:
            host = self.settings.host_for(target.target_kind)
        except ValueError as error:
            raise ConnectorError(str(error)) from error

        credentials = self.credentials(target)
        if credentials is None:
            raise ConnectorError(f"No SSH credentials available for target {target.target_id}.")

        kind_label = target.target_kind.value.upper()
        client = self.client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        logger.debug(
            "Connecting to %s SSH %s@%s:%d for target %s",
            kind_label,
            credentials.username,
            host,
            self.settings.port,
            target.target_id,
        )
        try:
            client.connect(
                hostname=host,
                port=self.settings.port,
                username=credentials.username,
                password=credentials.password,
                key_filename=str(credentials.key_path) if credentials.key_path else None,
                timeout=self.settings.connect_timeout_seconds,
                auth_timeout=self.settings.connect_timeout_seconds,
                allow_agent=self.settings.allow_agent,
                look_for_keys=credentials.key_path is None and credentials.password is None,
            )
        except paramiko.AuthenticationException as error:
            client.close()
            raise ConnectorError(
                f"{kind_label} SSH authentication failed for {credentials.username}@{host}: {error}",
            ) from error
        except (paramiko.SSHException, OSError) as error:
            client.close()
            raise ConnectorError(
                f"Could not establish {kind_label} SSH connection to {host}: {error}",
            ) from error

        if self.settings.verify_shell_access:
            try:
                self._verify_shell_access(client)
            except ConnectorError:
                client.close()
                raise
        return SshSession(client)

    def _verify_shell_access(self, client: paramiko.SSHClient) -> None:
        # Freshly provisioned hosts accept logins before shell commands work.
        try:
            _, stdout, _ = client.exec_command(
                SHELL_PROBE_COMMAND,
                timeout=self.settings.connect_timeout_seconds,
            )
            response = stdout.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as error:
            raise ConnectorError(f"SSH shell probe failed: {error}") from error
        if response.strip() == SFTP_ONLY_RESPONSE or exit_status != 0:
            raise ConnectorError("SSH server does not accept shell commands yet.")


class SshSession:
    def __init__(self, client: paramiko.SSHClient) -> None:
        self._client = client

    def start(self, command: str) -> SshChannel:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise ChannelError("SSH transport is not active.")
        try:
            channel = transport.open_session()
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as error:
            raise ChannelError(f"Failed to start remote command: {error}") from error
        return SshChannel(channel)

    def close(self) -> None:
        self._client.close()


class SshChannel:
    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel
        self._stdout = bytearray()

    def poll(self) -> bool:
        try:
            self._drain()
            if not self._channel.exit_status_ready():
                return False
            self._drain()
        except (paramiko.SSHException, OSError) as error:
            raise ChannelError(f"SSH channel read failed: {error}") from error
        return True

    def output(self) -> bytes:
        return bytes(self._stdout)

    def abort(self) -> None:
        self._channel.close()

    def close(self) -> None:
        self._channel.close()

    def _drain(self) -> None:
        while self._channel.recv_ready():
            chunk = self._channel.recv(_RECV_CHUNK_BYTES)
            if not chunk:
                break
            self._stdout.extend(chunk)
        # stderr is discarded but must be consumed so the remote side never blocks
        while self._channel.recv_stderr_ready():
            if not self._channel.recv_stderr(_RECV_CHUNK_BYTES):
                break
