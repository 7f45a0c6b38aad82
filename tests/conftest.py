"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass

import pytest

from remote_dispatch.dispatch.connector.base import ChannelError, ConnectorError
from remote_dispatch.dispatch.models import TargetDescriptor


@dataclass(slots=True)
class FakeBehaviour:
    """What the fake remote side does for one target."""

    output: bytes = b'{"code": "success", "data": {"x": 1}}'
    delay_seconds: float = 0.0
    connect_delay_seconds: float = 0.0
    connect_error: str | None = None
    start_error: str | None = None
    poll_error: str | None = None
    crash: Exception | None = None


class FakeChannel:
    def __init__(self, session: FakeSession, behaviour: FakeBehaviour) -> None:
        self._session = session
        self._behaviour = behaviour
        self._started = time.monotonic()
        self.aborted = False
        self.closed = False

    def poll(self) -> bool:
        if self._behaviour.poll_error is not None:
            raise ChannelError(self._behaviour.poll_error)
        return time.monotonic() - self._started >= self._behaviour.delay_seconds

    def output(self) -> bytes:
        return self._behaviour.output

    def abort(self) -> None:
        self.aborted = True

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, connector: FakeConnector, target: TargetDescriptor) -> None:
        self._connector = connector
        self.target = target
        self.commands: list[str] = []
        self.channel: FakeChannel | None = None
        self.closed = False

    def start(self, command: str) -> FakeChannel:
        self.commands.append(command)
        behaviour = self._connector.behaviour_for(self.target)
        if behaviour.start_error is not None:
            raise ChannelError(behaviour.start_error)
        self.channel = FakeChannel(self, behaviour)
        return self.channel

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._connector.release()


class FakeConnector:
    """In-memory connector that records sessions and peak concurrency."""

    name = "fake"

    def __init__(self) -> None:
        self.default = FakeBehaviour()
        self.behaviours: dict[str, FakeBehaviour] = {}
        self.sessions: list[FakeSession] = []
        self.connect_order: list[str] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def set(self, target_id: str, **kwargs: object) -> None:
        self.behaviours[target_id] = FakeBehaviour(**kwargs)  # type: ignore[arg-type]

    def behaviour_for(self, target: TargetDescriptor) -> FakeBehaviour:
        return self.behaviours.get(target.target_id, self.default)

    def connect(self, target: TargetDescriptor) -> FakeSession:
        behaviour = self.behaviour_for(target)
        if behaviour.connect_delay_seconds:
            time.sleep(behaviour.connect_delay_seconds)
        if behaviour.crash is not None:
            raise behaviour.crash
        if behaviour.connect_error is not None:
            raise ConnectorError(behaviour.connect_error)
        session = FakeSession(self, target)
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.sessions.append(session)
            self.connect_order.append(target.target_id)
        return session

    def release(self) -> None:
        with self._lock:
            self.active -= 1


@pytest.fixture()
def fake_connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def clean_env(monkeypatch):
    """Remove every REMOTE_DISPATCH_* variable so settings fall back to defaults."""

    for name in list(os.environ):
        if name.startswith("REMOTE_DISPATCH_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
