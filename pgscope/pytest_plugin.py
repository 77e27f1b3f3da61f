"""pytest fixtures for disposable Postgres services.

Enable with ``pytest_plugins = ["pgscope.pytest_plugin"]`` in a ``conftest.py``.

``pgscope_service`` is one container shared by the whole session, started the
first time a test asks for it. ``isolated_postgres`` starts a private container
on a free host port for a single test, which is what parallel runs need: the
default configuration publishes the fixed host port 5432.
"""

from collections.abc import Callable, Generator
from contextlib import ExitStack
from typing import Any

import pytest

from pgscope.config import HarnessConfig
from pgscope.descriptor import ConnectionTarget, ServiceDescriptor, find_free_port
from pgscope.driver import PostgresConfig, PostgresDriver
from pgscope.runtime import DockerRuntime
from pgscope.session import ReadyService, SharedService, service_scope
from pgscope.utils.logging import get_logger, set_correlation_id

__all__ = (
    "isolated_postgres",
    "pgscope_config",
    "pgscope_runtime",
    "pgscope_service",
    "postgres_driver",
    "postgres_target",
)

logger = get_logger("pytest")

CONFIG_KEY = pytest.StashKey[HarnessConfig]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("pgscope", "disposable Postgres services")
    group.addoption("--pgscope-image", dest="pgscope_image", default=None, help="Postgres image to start.")
    group.addoption(
        "--pgscope-host-port",
        dest="pgscope_host_port",
        type=int,
        default=None,
        help="Host port for the shared service (0 picks a free port).",
    )
    group.addoption(
        "--pgscope-max-attempts",
        dest="pgscope_max_attempts",
        type=int,
        default=None,
        help="Readiness attempts before giving up.",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "pgscope: test starts a disposable Postgres container")


def resolve_config(config: pytest.Config) -> HarnessConfig:
    """Merge ``PGSCOPE_*`` environment settings with command-line overrides."""
    harness = HarnessConfig.from_env()
    if (image := config.getoption("pgscope_image", None)) is not None:
        harness.image = image
    if (host_port := config.getoption("pgscope_host_port", None)) is not None:
        harness.host_port = host_port
    if (max_attempts := config.getoption("pgscope_max_attempts", None)) is not None:
        harness.max_attempts = max_attempts
    return harness


def pytest_sessionstart(session: pytest.Session) -> None:
    harness = resolve_config(session.config)
    session.config.stash[CONFIG_KEY] = harness
    get_logger().setLevel(harness.log_level)
    logger.debug("pgscope suite setup: image=%s host_port=%s", harness.image, harness.host_port)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_protocol(item: pytest.Item, nextitem: "pytest.Item | None") -> Generator[None, None, None]:
    set_correlation_id(item.nodeid)
    try:
        yield
    finally:
        set_correlation_id(None)


@pytest.fixture(scope="session")
def pgscope_config(request: pytest.FixtureRequest) -> HarnessConfig:
    stash = request.config.stash
    if CONFIG_KEY not in stash:
        stash[CONFIG_KEY] = resolve_config(request.config)
    return stash[CONFIG_KEY].copy()


@pytest.fixture(scope="session")
def pgscope_runtime() -> Generator[DockerRuntime, None, None]:
    runtime = DockerRuntime()
    try:
        yield runtime
    finally:
        runtime.close()


@pytest.fixture(scope="session")
def pgscope_service(
    pgscope_config: HarnessConfig, pgscope_runtime: DockerRuntime
) -> Generator[ReadyService, None, None]:
    """A Postgres service shared by every test in the session."""
    shared = SharedService(
        pgscope_config.descriptor(),
        pgscope_runtime,
        pgscope_config.retry_policy(),
        host=pgscope_config.host,
    )
    try:
        yield shared.get()
    finally:
        shared.close()


@pytest.fixture
def postgres_target(pgscope_service: ReadyService) -> ConnectionTarget:
    return pgscope_service.target


@pytest.fixture
def postgres_driver(postgres_target: ConnectionTarget) -> Generator[PostgresDriver, None, None]:
    """A driver on a fresh autocommit connection to the shared service."""
    with PostgresConfig(postgres_target).provide_session() as driver:
        yield driver


@pytest.fixture
def isolated_postgres(
    pgscope_config: HarnessConfig, pgscope_runtime: DockerRuntime
) -> Generator[Callable[..., ReadyService], None, None]:
    """Factory starting private services for one test; all are torn down afterwards.

    Keyword arguments are forwarded to :meth:`ServiceDescriptor.postgres`.
    """
    with ExitStack() as stack:

        def _start(**overrides: Any) -> ReadyService:
            descriptor = pgscope_config.descriptor(host_port=find_free_port())
            if overrides:
                overrides.setdefault("image", descriptor.image)
                overrides.setdefault("user", descriptor.user)
                overrides.setdefault("password", descriptor.password)
                overrides.setdefault("database", descriptor.database)
                overrides.setdefault("host_port", descriptor.host_port())
                descriptor = ServiceDescriptor.postgres(**overrides)
            return stack.enter_context(
                service_scope(descriptor, pgscope_runtime, pgscope_config.retry_policy(), host=pgscope_config.host)
            )

        yield _start
