"""Fakes standing in for Docker and Postgres in unit tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import psycopg
import pytest

from pgscope.descriptor import ServiceDescriptor
from pgscope.runtime import ServiceHandle

if TYPE_CHECKING:
    from pgscope.descriptor import ConnectionTarget


class FakeRuntime:
    """In-memory container runtime recording every start and teardown."""

    def __init__(self, start_error: BaseException | None = None, stop_error: BaseException | None = None) -> None:
        self.start_error = start_error
        self.stop_error = stop_error
        self.started: list[str] = []
        self.stopped: list[str] = []
        self._running: set[str] = set()

    def start(self, descriptor: ServiceDescriptor) -> ServiceHandle:
        if self.start_error is not None:
            raise self.start_error
        container_id = f"{len(self.started) + 1:012d}{'f' * 52}"
        self.started.append(container_id)
        self._running.add(container_id)
        return ServiceHandle(self, container_id, descriptor)

    def stop_and_remove(self, container_id: str) -> None:
        self.stopped.append(container_id)
        self._running.discard(container_id)
        if self.stop_error is not None:
            raise self.stop_error

    def is_running(self, container_id: str) -> bool:
        return container_id in self._running

    def running_containers(self) -> list[str]:
        return sorted(self._running)


class FakeConnection:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeAsyncConnection:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FlakyConnector:
    """Refuses the first ``failures`` connection attempts, then succeeds."""

    def __init__(self, failures: int = 0, error: type[Exception] = psycopg.OperationalError) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0
        self.connections: list[FakeConnection] = []

    def __call__(self, target: ConnectionTarget) -> FakeConnection:
        self.calls += 1
        if self.calls <= self.failures:
            msg = f"connection to {target.host}:{target.port} refused"
            raise self.error(msg)
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


class AsyncFlakyConnector:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.connections: list[FakeAsyncConnection] = []

    async def __call__(self, target: ConnectionTarget) -> FakeAsyncConnection:
        self.calls += 1
        if self.calls <= self.failures:
            msg = f"connection to {target.host}:{target.port} refused"
            raise psycopg.OperationalError(msg)
        connection = FakeAsyncConnection()
        self.connections.append(connection)
        return connection


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def descriptor() -> ServiceDescriptor:
    return ServiceDescriptor.postgres(host_port=15432)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_runtime() -> type[FakeRuntime]:
    return FakeRuntime


@pytest.fixture
def make_connector() -> type[FlakyConnector]:
    return FlakyConnector


@pytest.fixture
def make_async_connector() -> type[AsyncFlakyConnector]:
    return AsyncFlakyConnector
