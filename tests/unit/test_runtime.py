"""Tests for the Docker-backed runtime using a stand-in client."""

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from pgscope.exceptions import StartupError
from pgscope.runtime import MANAGED_LABEL, RUN_LABEL, ContainerRuntime, DockerRuntime


class FakeContainer:
    def __init__(self, statuses: list[str], logs: bytes = b"") -> None:
        self._statuses = list(statuses)
        self.status = "created"
        self.id = "a" * 64
        self.short_id = self.id[:12]
        self._logs = logs
        self.removed = False
        self.stopped = False

    def reload(self) -> None:
        if self._statuses:
            self.status = self._statuses.pop(0)

    def logs(self, tail: int = 20) -> bytes:
        return self._logs

    def stop(self, timeout: int = 10) -> None:
        self.stopped = True
        self.status = "exited"

    def remove(self, v: bool = False, force: bool = False) -> None:
        self.removed = True


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


def test_docker_runtime_satisfies_protocol() -> None:
    assert isinstance(DockerRuntime(client=MagicMock()), ContainerRuntime)


def test_start_runs_detached_container(client: MagicMock, descriptor) -> None:
    container = FakeContainer(["created", "running"])
    client.containers.run.return_value = container
    runtime = DockerRuntime(client=client)

    handle = runtime.start(descriptor)

    assert handle.container_id == container.id
    assert handle.descriptor is descriptor
    _, kwargs = client.containers.run.call_args
    assert client.containers.run.call_args.args == ("postgres:latest",)
    assert kwargs["environment"] == descriptor.env_dict()
    assert kwargs["ports"] == {"5432/tcp": 15432}
    assert kwargs["detach"] is True
    assert kwargs["labels"][MANAGED_LABEL] == "true"
    assert kwargs["labels"][RUN_LABEL] == runtime.run_id


def test_container_exiting_during_launch_raises(client: MagicMock, descriptor) -> None:
    container = FakeContainer(["exited"], logs=b"FATAL: data directory has wrong ownership")
    client.containers.run.return_value = container
    runtime = DockerRuntime(client=client)

    with pytest.raises(StartupError, match="wrong ownership") as exc_info:
        runtime.start(descriptor)

    assert exc_info.value.image == descriptor.image
    assert container.removed


def test_launch_timeout_raises(client: MagicMock, descriptor) -> None:
    container = FakeContainer(["created"])
    client.containers.run.return_value = container
    runtime = DockerRuntime(client=client, launch_timeout=0)

    with pytest.raises(StartupError, match="status: created"):
        runtime.start(descriptor)

    assert container.removed


@pytest.mark.parametrize(
    "error", [ImageNotFound("pull access denied"), APIError("Bind for 0.0.0.0:5432 failed: port is already allocated")]
)
def test_docker_errors_become_startup_errors(client: MagicMock, descriptor, error: Exception) -> None:
    leftover = FakeContainer([])
    client.containers.run.side_effect = error
    client.containers.list.return_value = [leftover]
    runtime = DockerRuntime(client=client)

    with pytest.raises(StartupError) as exc_info:
        runtime.start(descriptor)

    assert exc_info.value.__cause__ is error
    assert leftover.removed
    _, list_kwargs = client.containers.list.call_args
    assert list_kwargs["all"] is True
    assert list_kwargs["filters"]["label"].startswith(f"{MANAGED_LABEL}.launch=")


def test_stop_and_remove(client: MagicMock) -> None:
    container = FakeContainer([])
    client.containers.get.return_value = container

    DockerRuntime(client=client, stop_timeout=3).stop_and_remove(container.id)

    client.containers.get.assert_called_once_with(container.id)
    assert container.stopped
    assert container.removed


def test_stop_and_remove_tolerates_missing_container(client: MagicMock) -> None:
    client.containers.get.side_effect = NotFound("no such container")

    DockerRuntime(client=client).stop_and_remove("b" * 64)


def test_is_running(client: MagicMock) -> None:
    running = FakeContainer([])
    running.status = "running"
    client.containers.get.return_value = running
    runtime = DockerRuntime(client=client)

    assert runtime.is_running(running.id)

    client.containers.get.side_effect = NotFound("gone")
    assert not runtime.is_running(running.id)


def test_running_containers_filters_by_run(client: MagicMock) -> None:
    container = FakeContainer([])
    client.containers.list.return_value = [container]
    runtime = DockerRuntime(client=client)

    assert runtime.running_containers() == [container.id]
    client.containers.list.assert_called_once_with(filters={"label": f"{RUN_LABEL}={runtime.run_id}"})


def test_handle_release_goes_through_runtime(client: MagicMock, descriptor) -> None:
    container = FakeContainer(["running"])
    client.containers.run.return_value = container
    client.containers.get.return_value = container
    runtime = DockerRuntime(client=client)

    handle = runtime.start(descriptor)
    assert handle.is_running()
    handle.release()

    assert container.stopped
    assert container.removed


def test_close_releases_client(client: MagicMock) -> None:
    runtime = DockerRuntime(client=client)

    runtime.close()

    client.close.assert_called_once_with()


class BrokenReloadContainer(FakeContainer):
    def __init__(self, error: BaseException) -> None:
        super().__init__([])
        self._error = error

    def reload(self) -> None:
        raise self._error


def test_reload_failure_during_launch_removes_container(client: MagicMock, descriptor) -> None:
    error = APIError("500 Server Error: container state unavailable")
    container = BrokenReloadContainer(error)
    client.containers.run.return_value = container

    with pytest.raises(StartupError, match="container state unavailable") as exc_info:
        DockerRuntime(client=client).start(descriptor)

    assert exc_info.value.__cause__ is error
    assert exc_info.value.image == descriptor.image
    assert container.removed


def test_interrupt_during_launch_removes_container(client: MagicMock, descriptor) -> None:
    container = FakeContainer(["created"])
    client.containers.run.return_value = container

    with patch("pgscope.runtime.time.sleep", side_effect=KeyboardInterrupt), pytest.raises(KeyboardInterrupt):
        DockerRuntime(client=client).start(descriptor)

    assert container.removed


def test_launch_cleanup_failure_keeps_original_error(client: MagicMock, descriptor) -> None:
    container = BrokenReloadContainer(APIError("daemon restarting"))
    container.remove = MagicMock(side_effect=APIError("removal already in progress"))
    client.containers.run.return_value = container

    with pytest.raises(StartupError, match="daemon restarting"):
        DockerRuntime(client=client).start(descriptor)

    container.remove.assert_called_once_with(v=True, force=True)


def test_stop_failure_still_removes_container(client: MagicMock) -> None:
    container = FakeContainer([])
    container.stop = MagicMock(side_effect=APIError("stop timed out"))
    client.containers.get.return_value = container

    with pytest.raises(APIError, match="stop timed out"):
        DockerRuntime(client=client).stop_and_remove(container.id)

    assert container.removed
