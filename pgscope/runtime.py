"""Container runtime access and the handle that owns one running service."""

import time
import uuid
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import docker
from docker.errors import DockerException, NotFound

from pgscope.exceptions import HandleReleasedError, StartupError
from pgscope.utils.logging import get_logger

if TYPE_CHECKING:
    from pgscope.descriptor import ServiceDescriptor

__all__ = ("MANAGED_LABEL", "RUN_LABEL", "ContainerRuntime", "DockerRuntime", "ServiceHandle")

logger = get_logger("runtime")

MANAGED_LABEL = "pgscope.managed"
RUN_LABEL = "pgscope.run"


@runtime_checkable
class ContainerRuntime(Protocol):
    """The container operations the harness consumes."""

    def start(self, descriptor: "ServiceDescriptor") -> "ServiceHandle":
        """Launch a container and return once the runtime reports it running."""
        ...

    def stop_and_remove(self, container_id: str) -> None: ...

    def is_running(self, container_id: str) -> bool: ...

    def running_containers(self) -> list[str]:
        """Return the IDs of running containers started by this runtime."""
        ...


class ServiceHandle:
    """Token for one running service, owned by the scope that started it.

    :meth:`release` stops and removes the container. It acts once; later calls
    do nothing. Querying a released handle raises :class:`HandleReleasedError`.
    """

    __slots__ = ("_released", "_runtime", "container_id", "descriptor")

    def __init__(self, runtime: ContainerRuntime, container_id: str, descriptor: "ServiceDescriptor") -> None:
        self._runtime = runtime
        self._released = False
        self.container_id = container_id
        self.descriptor = descriptor

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"ServiceHandle(container_id={self.container_id[:12]!r}, image={self.descriptor.image!r}, {state})"

    @property
    def released(self) -> bool:
        return self._released

    def is_running(self) -> bool:
        self._ensure_live()
        return self._runtime.is_running(self.container_id)

    def release(self) -> bool:
        """Stop and remove the container.

        Returns:
            True if this call performed the teardown, False if it had already happened.
        """
        if self._released:
            logger.debug("Handle %s already released", self.container_id[:12])
            return False
        self._released = True
        self._runtime.stop_and_remove(self.container_id)
        return True

    def _ensure_live(self) -> None:
        if self._released:
            msg = f"Service handle {self.container_id[:12]} was already released."
            raise HandleReleasedError(msg)


class DockerRuntime:
    """:class:`ContainerRuntime` backed by the Docker Engine API.

    Args:
        client: A ``docker.DockerClient``. Created with ``docker.from_env()`` when omitted.
        launch_timeout: Seconds to wait for a created container to report ``running``.
        stop_timeout: Seconds Docker waits for the container to stop before killing it.
    """

    def __init__(self, client: Any = None, launch_timeout: float = 60.0, stop_timeout: int = 10) -> None:
        self._client = client
        self.launch_timeout = launch_timeout
        self.stop_timeout = stop_timeout
        self.run_id = uuid.uuid4().hex

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                msg = f"Cannot reach the Docker daemon: {e}"
                raise StartupError(msg) from e
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def start(self, descriptor: "ServiceDescriptor") -> ServiceHandle:
        launch_label = uuid.uuid4().hex
        labels = {MANAGED_LABEL: "true", RUN_LABEL: self.run_id, f"{MANAGED_LABEL}.launch": launch_label}
        logger.info(
            "Starting container",
            extra={"extra_fields": {"image": descriptor.image, "ports": descriptor.port_bindings()}},
        )
        try:
            container = self.client.containers.run(
                descriptor.image,
                environment=descriptor.env_dict(),
                ports=descriptor.port_bindings(),
                name=descriptor.name,
                labels=labels,
                detach=True,
            )
        except DockerException as e:
            self._discard_launch(launch_label)
            msg = f"Container failed to launch: {e}"
            raise StartupError(msg, image=descriptor.image) from e

        try:
            self._wait_until_launched(container, descriptor)
        except BaseException as e:
            self._remove_quietly(container)
            if isinstance(e, DockerException):
                msg = f"Container state could not be read during launch: {e}"
                raise StartupError(msg, image=descriptor.image) from e
            raise
        logger.info("Container %s running", container.short_id)
        return ServiceHandle(self, container.id, descriptor)

    def stop_and_remove(self, container_id: str) -> None:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            logger.warning("Container %s disappeared before teardown", container_id[:12])
            return
        logger.info("Stopping and removing container %s", container.short_id)
        try:
            container.stop(timeout=self.stop_timeout)
        finally:
            container.remove(v=True, force=True)

    def is_running(self, container_id: str) -> bool:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        return bool(container.status == "running")

    def running_containers(self) -> list[str]:
        containers = self.client.containers.list(filters={"label": f"{RUN_LABEL}={self.run_id}"})
        return [container.id for container in containers]

    def _wait_until_launched(self, container: Any, descriptor: "ServiceDescriptor") -> None:
        deadline = time.monotonic() + self.launch_timeout
        while True:
            container.reload()
            if container.status == "running":
                return
            if container.status in {"exited", "dead"} or time.monotonic() >= deadline:
                status = container.status
                tail = container.logs(tail=20).decode("utf-8", errors="replace").strip()
                msg = f"Container did not reach the running state (status: {status})"
                if tail:
                    msg = f"{msg}\n{tail}"
                raise StartupError(msg, image=descriptor.image)
            time.sleep(0.1)

    @staticmethod
    def _remove_quietly(container: Any) -> None:
        try:
            container.remove(v=True, force=True)
        except DockerException:
            logger.warning("Could not remove container %s after failed launch", container.short_id, exc_info=True)

    def _discard_launch(self, launch_label: str) -> None:
        # `containers.run` leaves a created container behind when `start` fails (e.g. port in use).
        try:
            leftovers = self.client.containers.list(
                all=True, filters={"label": f"{MANAGED_LABEL}.launch={launch_label}"}
            )
            for container in leftovers:
                container.remove(v=True, force=True)
        except DockerException:
            logger.warning("Could not remove container left by failed launch", exc_info=True)
