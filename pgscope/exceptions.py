from typing import Any

__all__ = (
    "HandleReleasedError",
    "ImproperConfigurationError",
    "PGScopeError",
    "QueryError",
    "ServiceUnavailable",
    "SmokeAssertionError",
    "StartupError",
)


class PGScopeError(Exception):
    """Base exception class from which all pgscope exceptions inherit."""

    detail: str

    def __init__(self, *args: Any, detail: str = "") -> None:
        """Initialize ``PGScopeError``.

        Args:
            *args: args are converted to :class:`str` before passing to :class:`Exception`
            detail: detail of the exception.
        """
        str_args = [str(arg) for arg in args if arg]
        if not detail:
            if str_args:
                detail, *str_args = str_args
            elif hasattr(self, "detail"):
                detail = self.detail
        self.detail = detail
        super().__init__(*str_args)

    def __repr__(self) -> str:
        if self.detail:
            return f"{self.__class__.__name__} - {self.detail}"
        return self.__class__.__name__

    def __str__(self) -> str:
        return " ".join((*self.args, self.detail)).strip()


class ImproperConfigurationError(PGScopeError):
    """Improper Configuration error.

    Raised when a descriptor, retry policy or environment setting holds a value that cannot be used.
    """


class StartupError(PGScopeError):
    """The container runtime could not launch the service.

    Fatal for the test that requested the service; start-up is never retried.
    """

    image: str | None

    def __init__(self, message: str | None = None, image: str | None = None) -> None:
        if message is None:
            message = "The container runtime failed to launch the service."
        detail_message = message
        if image:
            detail_message = f"{message} (image: {image})"
        super().__init__(detail=detail_message)
        self.image = image


class ServiceUnavailable(PGScopeError):
    """Readiness polling gave up before the service accepted a connection."""

    attempts: int

    def __init__(self, attempts: int, message: str | None = None) -> None:
        if message is None:
            message = f"Service did not become ready after {attempts} attempt(s)."
        super().__init__(detail=message)
        self.attempts = attempts


class QueryError(PGScopeError):
    """A statement failed after the service was ready. Not retried."""

    sql: str | None

    def __init__(self, message: str, sql: str | None = None) -> None:
        detail_message = message
        if sql:
            detail_message = f"{message}\nSQL: {sql}"
        super().__init__(detail=detail_message)
        self.sql = sql


class SmokeAssertionError(PGScopeError, AssertionError):
    """The value read back differs from the value written."""

    expected: Any
    actual: Any

    def __init__(self, expected: Any, actual: Any) -> None:
        super().__init__(detail=f"Round trip mismatch: expected {expected!r}, got {actual!r}")
        self.expected = expected
        self.actual = actual


class HandleReleasedError(PGScopeError):
    """A service handle was used after its container was stopped and removed."""

