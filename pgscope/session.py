"""Scoped service lifecycle.

A :class:`ServiceScope` ties one container to a ``with`` (or ``async with``) block:
whatever way the block exits, the container is stopped and removed exactly once.
The scope also records the run's progress through :class:`RunState`::

    NOT_STARTED -> STARTING -> POLLING -> READY -> EXECUTING -> PASSED | FAILED -> TORN_DOWN

``TORN_DOWN`` is reached from every state when the scope exits.
"""

import logging
import threading
import time
from collections.abc import AsyncGenerator, Callable, Generator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING

import anyio
import anyio.to_thread

from pgscope.descriptor import ConnectionTarget, RetryPolicy, ServiceDescriptor
from pgscope.exceptions import HandleReleasedError, ImproperConfigurationError
from pgscope.readiness import AsyncConnect, SyncConnect, await_ready, wait_until_ready
from pgscope.runtime import ContainerRuntime, DockerRuntime, ServiceHandle
from pgscope.utils.logging import get_logger, log_with_context

if TYPE_CHECKING:
    from typing_extensions import Self

__all__ = ("ReadyService", "RunState", "ServiceScope", "SharedService", "async_service_scope", "service_scope")

logger = get_logger("session")


class RunState(Enum):
    """Progress of one service run."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    POLLING = "polling"
    READY = "ready"
    EXECUTING = "executing"
    PASSED = "passed"
    FAILED = "failed"
    TORN_DOWN = "torn_down"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class ReadyService:
    """A started service that has accepted at least one connection."""

    handle: ServiceHandle
    target: ConnectionTarget
    attempts: int


class ServiceScope:
    """Owns at most one live :class:`ServiceHandle` and guarantees its release.

    Args:
        descriptor: How to start the service.
        runtime: Container runtime. Defaults to :class:`DockerRuntime`.
        policy: Retry bounds for :meth:`wait_ready`.
        host: Host name clients use to reach published ports.
    """

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        runtime: ContainerRuntime | None = None,
        policy: RetryPolicy | None = None,
        *,
        host: str = "localhost",
    ) -> None:
        self.descriptor = descriptor
        self.runtime = runtime if runtime is not None else DockerRuntime()
        self.policy = policy or RetryPolicy()
        self.target = ConnectionTarget.from_descriptor(descriptor, host=host)
        self.state = RunState.NOT_STARTED
        self.history: list[RunState] = [RunState.NOT_STARTED]
        self._handle: ServiceHandle | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"ServiceScope(image={self.descriptor.image!r}, state={self.state})"

    @property
    def handle(self) -> ServiceHandle:
        if self._handle is None:
            msg = "No service has been acquired in this scope."
            raise HandleReleasedError(msg)
        return self._handle

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> ServiceHandle:
        """Start the service, or return the handle this scope already holds.

        Blocks until the runtime reports the container running. That does not mean
        Postgres accepts clients yet; see :meth:`wait_ready`.

        Raises:
            StartupError: The runtime could not launch the container.
            HandleReleasedError: The scope was already torn down.
        """
        self._ensure_open()
        if self._handle is not None:
            return self._handle
        self._transition(RunState.STARTING)
        self._handle = self.runtime.start(self.descriptor)
        return self._handle

    def wait_ready(self, *, connect: SyncConnect | None = None, sleep: Callable[[float], None] = time.sleep) -> int:
        """Acquire the service if needed and poll until it accepts a connection.

        Returns:
            Number of connection attempts used.
        """
        self.acquire()
        self._transition(RunState.POLLING)
        attempts = wait_until_ready(self.target, self.policy, connect=connect, sleep=sleep)
        self._transition(RunState.READY)
        return attempts

    async def await_ready(self, *, connect: AsyncConnect | None = None) -> int:
        """Async variant of :meth:`wait_ready`. Docker calls run in a worker thread."""
        await anyio.to_thread.run_sync(self.acquire)
        self._transition(RunState.POLLING)
        attempts = await await_ready(self.target, self.policy, connect=connect)
        self._transition(RunState.READY)
        return attempts

    def mark_executing(self) -> None:
        self._ensure_open()
        self._transition(RunState.EXECUTING)

    def close(self) -> None:
        """Release the held service. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        handle, self._handle = self._handle, None
        try:
            if handle is not None:
                handle.release()
        finally:
            self._transition(RunState.TORN_DOWN)

    async def aclose(self) -> None:
        with anyio.CancelScope(shield=True):
            await anyio.to_thread.run_sync(self.close)

    def __enter__(self) -> "Self":
        self._ensure_open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._record_outcome(exc_val)
        try:
            self.close()
        except Exception:
            if exc_val is None:
                raise
            logger.exception("Teardown failed while handling %s", type(exc_val).__name__)

    async def __aenter__(self) -> "Self":
        self._ensure_open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._record_outcome(exc_val)
        try:
            await self.aclose()
        except Exception:
            if exc_val is None:
                raise
            logger.exception("Teardown failed while handling %s", type(exc_val).__name__)

    def _record_outcome(self, exc_val: BaseException | None) -> None:
        if self._closed:
            return
        if exc_val is not None:
            self._transition(RunState.FAILED)
        elif self.state in {RunState.READY, RunState.EXECUTING}:
            self._transition(RunState.PASSED)

    def _ensure_open(self) -> None:
        if self._closed:
            msg = "This service scope has already been torn down."
            raise HandleReleasedError(msg)

    def _transition(self, state: RunState) -> None:
        previous, self.state = self.state, state
        self.history.append(state)
        log_with_context(
            logger,
            logging.DEBUG,
            f"Service scope {previous} -> {state}",
            image=self.descriptor.image,
            port=self.target.port,
            state=str(state),
        )


@contextmanager
def service_scope(
    descriptor: ServiceDescriptor,
    runtime: ContainerRuntime | None = None,
    policy: RetryPolicy | None = None,
    *,
    host: str = "localhost",
    connect: SyncConnect | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Generator[ReadyService, None, None]:
    """Start a service, wait until it is ready and yield it; tear it down on exit.

    Example:
        >>> with service_scope(ServiceDescriptor.postgres()) as service:
        ...     print(service.target.url)
    """
    with ServiceScope(descriptor, runtime, policy, host=host) as scope:
        attempts = scope.wait_ready(connect=connect, sleep=sleep)
        scope.mark_executing()
        yield ReadyService(scope.handle, scope.target, attempts)


@asynccontextmanager
async def async_service_scope(
    descriptor: ServiceDescriptor,
    runtime: ContainerRuntime | None = None,
    policy: RetryPolicy | None = None,
    *,
    host: str = "localhost",
    connect: AsyncConnect | None = None,
) -> AsyncGenerator[ReadyService, None]:
    """Async variant of :func:`service_scope`. Teardown is shielded from cancellation."""
    async with ServiceScope(descriptor, runtime, policy, host=host) as scope:
        attempts = await scope.await_ready(connect=connect)
        scope.mark_executing()
        yield ReadyService(scope.handle, scope.target, attempts)


class SharedService:
    """One service shared by many tests, started on first use and stopped by :meth:`close`.

    Initialisation happens once under a lock. If it fails, the partially started
    container is torn down and every later :meth:`get` re-raises the same error.
    """

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        runtime: ContainerRuntime | None = None,
        policy: RetryPolicy | None = None,
        *,
        host: str = "localhost",
    ) -> None:
        self._scope = ServiceScope(descriptor, runtime, policy, host=host)
        self._lock = threading.Lock()
        self._ready: ReadyService | None = None
        self._failure: BaseException | None = None

    @property
    def scope(self) -> ServiceScope:
        return self._scope

    @property
    def started(self) -> bool:
        return self._ready is not None

    def get(self, *, connect: SyncConnect | None = None, sleep: Callable[[float], None] = time.sleep) -> ReadyService:
        with self._lock:
            if self._failure is not None:
                raise self._failure
            if self._ready is None:
                if self._scope.closed:
                    msg = "Shared service was already closed."
                    raise ImproperConfigurationError(msg)
                try:
                    attempts = self._scope.wait_ready(connect=connect, sleep=sleep)
                except BaseException as e:
                    self._failure = e
                    self._scope.__exit__(type(e), e, e.__traceback__)
                    raise
                self._ready = ReadyService(self._scope.handle, self._scope.target, attempts)
            return self._ready

    def close(self) -> None:
        with self._lock:
            self._ready = None
            self._scope.__exit__(None, None, None)
