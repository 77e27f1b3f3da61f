"""Integration tests start real containers and are skipped when Docker is unreachable."""

from __future__ import annotations

from functools import cache
from pathlib import Path

import docker
import pytest
from docker.errors import DockerException

here = Path(__file__).parent


@cache
def docker_available() -> bool:
    try:
        client = docker.from_env()
        try:
            return bool(client.ping())
        finally:
            client.close()
    except (DockerException, OSError):
        return False


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    skip_docker = pytest.mark.skip(reason="Docker daemon is not reachable")
    for item in items:
        if here not in Path(item.fspath).parents:
            continue
        item.add_marker(pytest.mark.integration)
        if not docker_available():
            item.add_marker(skip_docker)
