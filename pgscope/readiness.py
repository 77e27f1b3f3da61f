"""Bounded readiness polling for a freshly started Postgres service.

A container reports ``running`` long before Postgres accepts TCP clients: the
image first runs its init scripts against a socket-only server, then restarts.
The poller opens real connections until one succeeds or the retry policy is
exhausted. Every attempt's connection is closed before the next one starts.
"""

import time
from collections.abc import Awaitable, Callable
from typing import Any

import anyio
import psycopg

from pgscope.descriptor import ConnectionTarget, RetryPolicy
from pgscope.exceptions import ServiceUnavailable
from pgscope.utils.logging import get_logger

__all__ = ("RETRYABLE_ERRORS", "await_ready", "wait_until_ready")

logger = get_logger("readiness")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (psycopg.OperationalError, OSError)
"""Failures that mean "not accepting connections yet". Anything else is raised at once."""

DEFAULT_CONNECT_TIMEOUT = 5

SyncConnect = Callable[[ConnectionTarget], Any]
AsyncConnect = Callable[[ConnectionTarget], Awaitable[Any]]


def _connect(target: ConnectionTarget, connect_timeout: int = DEFAULT_CONNECT_TIMEOUT) -> "psycopg.Connection[Any]":
    return psycopg.connect(**target.connect_kwargs(), connect_timeout=connect_timeout)


async def _connect_async(
    target: ConnectionTarget, connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
) -> "psycopg.AsyncConnection[Any]":
    return await psycopg.AsyncConnection.connect(**target.connect_kwargs(), connect_timeout=connect_timeout)


def _exhausted(policy: RetryPolicy, last_error: BaseException | None) -> ServiceUnavailable:
    if policy.max_attempts == 0:
        return ServiceUnavailable(0, "Readiness check allows no attempts; refusing to report the service ready.")
    msg = f"Service did not accept connections after {policy.max_attempts} attempt(s)"
    if last_error is not None:
        msg = f"{msg}: {last_error}"
    return ServiceUnavailable(policy.max_attempts, msg)


def _log_failure(target: ConnectionTarget, policy: RetryPolicy, attempt: int, error: BaseException) -> None:
    logger.debug(
        "Readiness attempt %d/%d against %s:%d failed: %s",
        attempt,
        policy.max_attempts,
        target.host,
        target.port,
        error,
    )


def wait_until_ready(
    target: ConnectionTarget,
    policy: RetryPolicy | None = None,
    *,
    connect: SyncConnect | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Block until ``target`` accepts a connection.

    Args:
        target: Where to connect.
        policy: Attempt bound and delay. Defaults to 30 attempts, one second apart.
        connect: Opens a connection for ``target``; the result must have ``close()``.
            Defaults to :func:`psycopg.connect`.
        sleep: Waits between attempts.

    Raises:
        ServiceUnavailable: Every allowed attempt failed, or ``max_attempts`` is zero.

    Returns:
        The number of attempts used, counting the successful one.
    """
    policy = policy or RetryPolicy()
    connect = connect or _connect
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            connection = connect(target)
        except RETRYABLE_ERRORS as e:
            last_error = e
            _log_failure(target, policy, attempt, e)
        else:
            connection.close()
            logger.info("Service at %s:%d ready after %d attempt(s)", target.host, target.port, attempt)
            return attempt

        if attempt < policy.max_attempts:
            wait = policy.delay_for(attempt)
            if wait > 0:
                sleep(wait)

    raise _exhausted(policy, last_error) from last_error


async def await_ready(
    target: ConnectionTarget,
    policy: RetryPolicy | None = None,
    *,
    connect: AsyncConnect | None = None,
) -> int:
    """Async variant of :func:`wait_until_ready`; waits with :func:`anyio.sleep`."""
    policy = policy or RetryPolicy()
    connect = connect or _connect_async
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            connection = await connect(target)
        except RETRYABLE_ERRORS as e:
            last_error = e
            _log_failure(target, policy, attempt, e)
        else:
            await connection.close()
            logger.info("Service at %s:%d ready after %d attempt(s)", target.host, target.port, attempt)
            return attempt

        if attempt < policy.max_attempts:
            wait = policy.delay_for(attempt)
            if wait > 0:
                await anyio.sleep(wait)

    raise _exhausted(policy, last_error) from last_error
