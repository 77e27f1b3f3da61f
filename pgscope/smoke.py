"""Schema/write/read round trip against a ready service.

Every step is fatal on failure. Nothing here is retried: retries belong to the
readiness poller, which only deals with the start-up race.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from psycopg import sql

from pgscope.exceptions import ImproperConfigurationError, SmokeAssertionError
from pgscope.utils.logging import get_logger

if TYPE_CHECKING:
    from pgscope.driver import AsyncPostgresDriver, PostgresDriver

__all__ = ("DEFAULT_TABLE", "DEFAULT_VALUE", "SmokeResult", "SmokeTest")

logger = get_logger("smoke")

DEFAULT_TABLE = "smoke_test"
DEFAULT_VALUE = "SomeValue"


@dataclass(frozen=True, slots=True)
class SmokeResult:
    table: str
    key: int
    written: str
    read: str | None


class SmokeTest:
    """Create-if-missing, insert one literal, read it back by key, compare.

    Args:
        table: Table to create and write to.
        value: Literal written and expected back unchanged.
    """

    def __init__(self, table: str = DEFAULT_TABLE, value: str = DEFAULT_VALUE) -> None:
        if not table:
            msg = "Smoke test table name must not be empty."
            raise ImproperConfigurationError(msg)
        self.table = table
        self.value = value

    def __repr__(self) -> str:
        return f"SmokeTest(table={self.table!r}, value={self.value!r})"

    @property
    def create_statement(self) -> sql.Composed:
        return sql.SQL("CREATE TABLE IF NOT EXISTS {} (id SERIAL PRIMARY KEY, value TEXT NOT NULL)").format(
            sql.Identifier(self.table)
        )

    @property
    def insert_statement(self) -> sql.Composed:
        return sql.SQL("INSERT INTO {} (value) VALUES (%s) RETURNING id").format(sql.Identifier(self.table))

    @property
    def select_statement(self) -> sql.Composed:
        return sql.SQL("SELECT value FROM {} WHERE id = %s").format(sql.Identifier(self.table))

    def ensure_schema(self, driver: "PostgresDriver") -> None:
        driver.execute(self.create_statement)

    def insert(self, driver: "PostgresDriver") -> int:
        """Insert :attr:`value` and return the generated key."""
        return int(driver.fetch_value(self.insert_statement, (self.value,)))

    def read_back(self, driver: "PostgresDriver", key: int) -> str | None:
        row = driver.fetch_one(self.select_statement, (key,))
        return None if row is None else row["value"]

    @staticmethod
    def verify(expected: Any, actual: Any) -> None:
        """Raise :class:`SmokeAssertionError` unless both values are equal."""
        if expected != actual:
            raise SmokeAssertionError(expected, actual)

    def run(self, driver: "PostgresDriver") -> SmokeResult:
        self.ensure_schema(driver)
        key = self.insert(driver)
        actual = self.read_back(driver, key)
        self.verify(self.value, actual)
        logger.info("Smoke test round trip on %s passed (key=%d)", self.table, key)
        return SmokeResult(table=self.table, key=key, written=self.value, read=actual)

    async def ensure_schema_async(self, driver: "AsyncPostgresDriver") -> None:
        await driver.execute(self.create_statement)

    async def insert_async(self, driver: "AsyncPostgresDriver") -> int:
        return int(await driver.fetch_value(self.insert_statement, (self.value,)))

    async def read_back_async(self, driver: "AsyncPostgresDriver", key: int) -> str | None:
        row = await driver.fetch_one(self.select_statement, (key,))
        return None if row is None else row["value"]

    async def run_async(self, driver: "AsyncPostgresDriver") -> SmokeResult:
        await self.ensure_schema_async(driver)
        key = await self.insert_async(driver)
        actual = await self.read_back_async(driver, key)
        self.verify(self.value, actual)
        logger.info("Smoke test round trip on %s passed (key=%d)", self.table, key)
        return SmokeResult(table=self.table, key=key, written=self.value, read=actual)
