"""pgscope: disposable Postgres containers for integration tests."""

from pgscope import exceptions, utils
from pgscope.__metadata__ import __version__
from pgscope.config import HarnessConfig
from pgscope.descriptor import ConnectionTarget, RetryPolicy, ServiceDescriptor, find_free_port
from pgscope.driver import AsyncPostgresDriver, PostgresConfig, PostgresDriver
from pgscope.exceptions import (
    HandleReleasedError,
    ImproperConfigurationError,
    PGScopeError,
    QueryError,
    ServiceUnavailable,
    SmokeAssertionError,
    StartupError,
)
from pgscope.readiness import await_ready, wait_until_ready
from pgscope.runtime import ContainerRuntime, DockerRuntime, ServiceHandle
from pgscope.session import ReadyService, RunState, ServiceScope, SharedService, async_service_scope, service_scope
from pgscope.smoke import SmokeResult, SmokeTest

__all__ = (
    "AsyncPostgresDriver",
    "ConnectionTarget",
    "ContainerRuntime",
    "DockerRuntime",
    "HandleReleasedError",
    "HarnessConfig",
    "ImproperConfigurationError",
    "PGScopeError",
    "PostgresConfig",
    "PostgresDriver",
    "QueryError",
    "ReadyService",
    "RetryPolicy",
    "RunState",
    "ServiceDescriptor",
    "ServiceHandle",
    "ServiceScope",
    "ServiceUnavailable",
    "SharedService",
    "SmokeAssertionError",
    "SmokeResult",
    "SmokeTest",
    "StartupError",
    "__version__",
    "async_service_scope",
    "await_ready",
    "exceptions",
    "find_free_port",
    "service_scope",
    "utils",
    "wait_until_ready",
)
