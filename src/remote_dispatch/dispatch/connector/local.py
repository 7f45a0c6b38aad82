"""Local shell connector for dry runs and integration tests."""

from __future__ import annotations

import os
import subprocess
import tempfile
from typing import IO

from remote_dispatch.dispatch.connector.base import ChannelError
from remote_dispatch.dispatch.models import TargetDescriptor


class LocalShellConnector:
    """Run commands in a local shell instead of on the target host.

    The target is exposed to the command through ``REMOTE_DISPATCH_TARGET_*``
    environment variables.
    """

    name = "local"

    def __init__(self, *, shell: str | None = None, env: dict[str, str] | None = None) -> None:
        self.shell = shell
        self.env = env

    def connect(self, target: TargetDescriptor) -> LocalShellSession:
        env = dict(self.env if self.env is not None else os.environ)
        env["REMOTE_DISPATCH_TARGET_ID"] = target.target_id
        env["REMOTE_DISPATCH_TARGET_KIND"] = target.target_kind.value
        env["REMOTE_DISPATCH_TARGET_URL"] = target.target_url or ""
        return LocalShellSession(env=env, shell=self.shell)


class LocalShellSession:
    def __init__(self, *, env: dict[str, str], shell: str | None) -> None:
        self._env = env
        self._shell = shell

    def start(self, command: str) -> LocalShellChannel:
        stdout_handle = tempfile.TemporaryFile()  # noqa: SIM115
        try:
            process = subprocess.Popen(  # noqa: S602
                command,
                shell=True,
                executable=self._shell,
                env=self._env,
                stdin=subprocess.DEVNULL,
                stdout=stdout_handle,
                stderr=subprocess.DEVNULL,
            )
        except OSError as error:
            stdout_handle.close()
            raise ChannelError(f"Local shell failed to start: {error}") from error
        return LocalShellChannel(process=process, stdout_handle=stdout_handle)

    def close(self) -> None:
        return None


class LocalShellChannel:
    def __init__(self, *, process: subprocess.Popen[bytes], stdout_handle: IO[bytes]) -> None:
        self._process = process
        self._stdout_handle = stdout_handle

    def poll(self) -> bool:
        return self._process.poll() is not None

    def output(self) -> bytes:
        self._stdout_handle.flush()
        self._stdout_handle.seek(0)
        return self._stdout_handle.read()

    def abort(self) -> None:
        terminate_process(self._process)

    def close(self) -> None:
        if self._process.poll() is None:
            terminate_process(self._process)
        self._stdout_handle.close()


def terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    """Terminate politely, then kill if the process ignores SIGTERM."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
