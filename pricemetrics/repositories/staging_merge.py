"""
Staging-table merge loader for the analytical store.

One protocol for every entity table, parameterized by
{table name, column list, merge key columns}:

  1. ensure_table      create the durable table once, then wait until the
                       store reports it (bounded exponential backoff)
  2. staging table     "<table>_temp_<epoch-ms>", same columns, no key constraint
  3. insert            rows go into staging in sub-batches of insert_batch_size
  4. merge             one atomic statement keyed on the merge key:
                       matched     -> overwrite every non-key column
                       not matched -> insert the full row
  5. drop              staging is always dropped; a failed drop is logged and
                       never replaces the original error

Re-running a load with the same rows leaves the durable table unchanged:
the key is the natural key and non-key columns are overwritten, never appended.

Merge SQL:
  sqlite / postgresql  INSERT ... SELECT ... ON CONFLICT (key) DO UPDATE
  other dialects       MERGE INTO <table> T USING <staging> S ON (...)
                       targets SQL Server, Oracle and DB2; ";" only on SQL Server
"""

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    inspect,
    select,
    text,
    true,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Dialect, Engine

from pricemetrics import config
from pricemetrics.schemas import PRICE_METRICS_COLUMNS, PRICE_METRICS_KEY

logger = logging.getLogger(__name__)

ColumnSpec = tuple[str, str, bool]   # (name, scalar type, required)

_SCALAR_TYPES: dict[str, Any] = {
    "STRING": String,
    "TIMESTAMP": DateTime,
    "FLOAT64": Float,
    "INT64": Integer,
    "BOOLEAN": Boolean,
}


class TableNotVisibleError(RuntimeError):
    """The store never reported the table within the allowed attempts."""


class StagingLoadError(RuntimeError):
    """Staging insert or merge failed; the durable table is unchanged by this load."""


# ---------------------------------------------------------------------------
# Eventually-consistent visibility wait
# ---------------------------------------------------------------------------

def wait_for_visibility(
    is_visible: Callable[[], bool],
    *,
    create: Callable[[], None] | None = None,
    max_attempts: int = 3,
    backoff_base_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "resource",
) -> int:
    """
    Wait until is_visible() holds, calling create() once before the first retry.

    Delay before retry n is backoff_base_s * 2**n. Returns the number of
    attempts used (0 if already visible); raises TableNotVisibleError after
    max_attempts.
    """
    visible = is_visible()
    attempt = 0
    while not visible and attempt < max_attempts:
        if attempt == 0 and create is not None:
            create()
            logger.info("[Staging] created %s", label)
        attempt += 1
        visible = is_visible()
        if not visible and attempt < max_attempts:
            delay = backoff_base_s * 2 ** attempt
            logger.warning("[Staging] %s not visible yet (attempt %d/%d), retrying in %.1fs",
                           label, attempt, max_attempts, delay)
            sleep(delay)

    if not visible:
        raise TableNotVisibleError(f"{label} not visible after {max_attempts} attempts")
    return attempt


# ---------------------------------------------------------------------------
# Generic staging/merge table
# ---------------------------------------------------------------------------

class StagingMergeTable:
    def __init__(
        self,
        engine: Engine,
        table_name: str,
        columns: Sequence[ColumnSpec],
        key_columns: Sequence[str],
        *,
        schema: str | None = None,
        insert_batch_size: int = config.STAGING_INSERT_BATCH_SIZE,
        max_attempts: int = config.TABLE_VISIBILITY_MAX_ATTEMPTS,
        backoff_base_s: float = config.TABLE_VISIBILITY_BACKOFF_S,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        names = [c[0] for c in columns]
        missing = [k for k in key_columns if k not in names]
        if missing:
            raise ValueError(f"merge key columns {missing} not in column list of {table_name}")

        self.engine = engine
        self.table_name = table_name
        self.columns = list(columns)
        self.column_names = names
        self.key_columns = list(key_columns)
        self.value_columns = [n for n in names if n not in self.key_columns]
        self.schema = schema
        self.insert_batch_size = insert_batch_size
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self._sleep = sleep
        self._clock = clock

        self.table = self._build_table(table_name, MetaData(), keyed=True)

    # -- schema -----------------------------------------------------------

    def _build_table(self, name: str, metadata: MetaData, keyed: bool) -> Table:
        cols: list[Any] = [
            Column(col_name, _SCALAR_TYPES[col_type](), nullable=not required)
            for col_name, col_type, required in self.columns
        ]
        if keyed:
            cols.append(UniqueConstraint(*self.key_columns, name=f"uq_{name}_merge_key"))
        return Table(name, metadata, *cols, schema=self.schema)

    def _qualified(self, name: str) -> str:
        return f"{self.schema}.{name}" if self.schema else name

    def has_table(self, name: str) -> bool:
        return inspect(self.engine).has_table(name, schema=self.schema)

    def _wait_for(self, table: Table) -> None:
        wait_for_visibility(
            lambda: self.has_table(table.name),
            create=lambda: table.create(self.engine, checkfirst=True),
            max_attempts=self.max_attempts,
            backoff_base_s=self.backoff_base_s,
            sleep=self._sleep,
            label=f"table {self._qualified(table.name)}",
        )

    def ensure_table(self) -> None:
        self._wait_for(self.table)

    def new_staging_table(self) -> Table:
        name = f"{self.table_name}_temp_{int(self._clock() * 1000)}"
        return self._build_table(name, MetaData(), keyed=False)

    # -- load steps ---------------------------------------------------------

    def insert_rows(self, staging: Table, records: list[dict[str, Any]]) -> None:
        for i in range(0, len(records), self.insert_batch_size):
            chunk = records[i: i + self.insert_batch_size]
            with self.engine.begin() as conn:
                conn.execute(staging.insert(), chunk)
            logger.debug("[Staging] inserted %d rows into %s", len(chunk), self._qualified(staging.name))

    def merge_statement(self, staging: Table):
        dialect = self.engine.dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            # WHERE true keeps SQLite from parsing ON CONFLICT as a join clause
            source = select(*[staging.c[n] for n in self.column_names]).where(true())
            stmt = insert(self.table).from_select(self.column_names, source)
            if not self.value_columns:
                return stmt.on_conflict_do_nothing(index_elements=self.key_columns)
            return stmt.on_conflict_do_update(
                index_elements=self.key_columns,
                set_={n: stmt.excluded[n] for n in self.value_columns},
            )
        return text(self._ansi_merge_sql(staging))

    def _ansi_merge_sql(self, staging: Table, dialect: Dialect | None = None) -> str:
        dialect = dialect or self.engine.dialect
        prep = dialect.identifier_preparer
        q = prep.quote
        on = " AND ".join(f"T.{q(k)} = S.{q(k)}" for k in self.key_columns)
        cols = ", ".join(q(n) for n in self.column_names)
        vals = ", ".join(f"S.{q(n)}" for n in self.column_names)
        # no AS on aliases (Oracle rejects it); parenthesized ON (Oracle requires it)
        sql = (
            f"MERGE INTO {prep.format_table(self.table)} T "
            f"USING {prep.format_table(staging)} S ON ({on}) "
        )
        if self.value_columns:
            sets = ", ".join(f"{q(n)} = S.{q(n)}" for n in self.value_columns)
            sql += f"WHEN MATCHED THEN UPDATE SET {sets} "
        sql += f"WHEN NOT MATCHED THEN INSERT ({cols}) VALUES ({vals})"
        # SQL Server requires the terminator, Oracle drivers reject it
        return sql + ";" if dialect.name == "mssql" else sql

    def merge(self, staging: Table) -> None:
        with self.engine.begin() as conn:
            conn.execute(self.merge_statement(staging))

    def drop_staging(self, staging: Table) -> None:
        try:
            staging.drop(self.engine, checkfirst=True)
            logger.debug("[Staging] dropped %s", self._qualified(staging.name))
        except Exception as exc:
            logger.error("[Staging] could not drop %s: %s", self._qualified(staging.name), exc)

    def _dedupe(self, rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        by_key: dict[tuple, dict[str, Any]] = {}
        total = 0
        for row in rows:
            total += 1
            record = {n: row.get(n) for n in self.column_names}
            by_key[tuple(record[k] for k in self.key_columns)] = record
        if len(by_key) != total:
            logger.warning("[Staging] %s: collapsed %d duplicate-key rows",
                           self.table_name, total - len(by_key))
        return list(by_key.values())

    # -- protocol -----------------------------------------------------------

    def load(self, rows: Iterable[dict[str, Any]]) -> int:
        """Stage and merge rows. Returns the number of distinct keys merged."""
        records = self._dedupe(rows)
        if not records:
            logger.info("[Staging] %s: nothing to load", self.table_name)
            return 0

        self.ensure_table()
        staging = self.new_staging_table()
        target = self._qualified(self.table_name)
        try:
            self._wait_for(staging)
            try:
                self.insert_rows(staging, records)
            except Exception as exc:
                logger.error("[Staging] insert into %s failed (%d rows): %s",
                             self._qualified(staging.name), len(records), exc)
                raise StagingLoadError(f"Staging insert for {target} failed: {exc}") from exc
            try:
                self.merge(staging)
            except Exception as exc:
                logger.error("[Staging] merge %s -> %s failed (%d rows): %s",
                             self._qualified(staging.name), target, len(records), exc)
                raise StagingLoadError(f"Merge into {target} failed: {exc}") from exc
        finally:
            self.drop_staging(staging)

        logger.info("[Staging] merged %d rows into %s", len(records), target)
        return len(records)


def price_metrics_table(engine: Engine, **kwargs: Any) -> StagingMergeTable:
    """StagingMergeTable for the durable price metrics table."""
    kwargs.setdefault("schema", config.ANALYTICS_SCHEMA)
    return StagingMergeTable(
        engine,
        kwargs.pop("table_name", config.PRICE_METRICS_TABLE),
        PRICE_METRICS_COLUMNS,
        PRICE_METRICS_KEY,
        **kwargs,
    )
