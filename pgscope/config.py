"""Harness configuration resolved from environment variables."""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace

from pgscope.descriptor import DEFAULT_IMAGE, POSTGRES_PORT, RetryPolicy, ServiceDescriptor, find_free_port
from pgscope.exceptions import ImproperConfigurationError

__all__ = ("ENV_PREFIX", "HarnessConfig")

ENV_PREFIX = "PGSCOPE_"


@dataclass(slots=True)
class HarnessConfig:
    """Settings shared by every service a test session starts.

    ``host_port`` of ``0`` asks for a free port each time :meth:`descriptor` is called.
    """

    image: str = DEFAULT_IMAGE
    user: str = "postgres"
    password: str = "postgres"
    database: str = "postgres"
    host: str = "localhost"
    host_port: int = POSTGRES_PORT
    max_attempts: int = 30
    retry_delay: float = 1.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: "Mapping[str, str] | None" = None) -> "HarnessConfig":
        """Build a configuration from ``PGSCOPE_*`` variables, falling back to defaults.

        Args:
            environ: Mapping to read instead of :data:`os.environ`.

        Raises:
            ImproperConfigurationError: A numeric variable or the log level could not be parsed.

        Returns:
            The resolved configuration.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def _get(key: str, default: str) -> str:
            return env.get(f"{ENV_PREFIX}{key}", default)

        return cls(
            image=_get("IMAGE", defaults.image),
            user=_get("USER", defaults.user),
            password=_get("PASSWORD", defaults.password),
            database=_get("DATABASE", defaults.database),
            host=_get("HOST", defaults.host),
            host_port=_parse_number(int, "HOST_PORT", _get("HOST_PORT", str(defaults.host_port))),
            max_attempts=_parse_number(int, "MAX_ATTEMPTS", _get("MAX_ATTEMPTS", str(defaults.max_attempts))),
            retry_delay=_parse_number(float, "RETRY_DELAY", _get("RETRY_DELAY", str(defaults.retry_delay))),
            log_level=_parse_log_level(_get("LOG_LEVEL", defaults.log_level)),
        )

    def copy(self) -> "HarnessConfig":
        return replace(self)

    def descriptor(self, host_port: int | None = None) -> ServiceDescriptor:
        """Build the service descriptor for this configuration."""
        port = self.host_port if host_port is None else host_port
        if port == 0:
            port = find_free_port()
        return ServiceDescriptor.postgres(
            image=self.image, user=self.user, password=self.password, database=self.database, host_port=port
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, delay=self.retry_delay)


def _parse_number(kind: "type[int] | type[float]", key: str, raw: str) -> "int | float":
    try:
        return kind(raw)
    except ValueError as e:
        msg = f"{ENV_PREFIX}{key} must be a number, got {raw!r}."
        raise ImproperConfigurationError(msg) from e


def _parse_log_level(raw: str) -> str:
    level = raw.upper()
    if not isinstance(logging.getLevelName(level), int):
        msg = f"{ENV_PREFIX}LOG_LEVEL must be a logging level name, got {raw!r}."
        raise ImproperConfigurationError(msg)
    return level
