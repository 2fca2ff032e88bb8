"""Database access object and schema setup for the search tables."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol, Sequence

from search_indexer.cluster_cache import ClustersCache

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 2500
"""Statements sent to the database in one batch."""

DEFAULT_MAX_BACKOFF = 300.0
"""Longest wait, in seconds, between retries of a failing operation."""


class DatabasePool(Protocol):
    """The database operations the indexer needs from a connection pool.

    ``send_batch`` sends statements as one transaction and returns a result
    object with ``exec()``, ``query_row()`` and ``close()``; each raises on
    failure. ``begin`` returns a transaction with ``execute``, ``commit`` and
    ``rollback``.
    """

    def execute(self, sql: str, args: Sequence[Any] = ()) -> Any:
        """Run a statement and return the number of affected rows."""

    def query(self, sql: str, args: Sequence[Any] = ()) -> Iterable[Sequence[Any]]:
        """Run a query and return its rows."""

    def send_batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> Any:
        """Send several statements at once."""

    def begin(self) -> Any:
        """Start a transaction."""


_SCHEMA_STATEMENTS: tuple[tuple[str, str], ...] = (
    ("CREATE SCHEMA IF NOT EXISTS search", "Error creating schema."),
    (
        "CREATE TABLE IF NOT EXISTS search.resources (uid TEXT PRIMARY KEY, cluster TEXT, data JSONB)",
        "Error creating table search.resources.",
    ),
    (
        "CREATE TABLE IF NOT EXISTS search.edges (sourceId TEXT, sourceKind TEXT,destId TEXT,"
        "destKind TEXT,edgeType TEXT,cluster TEXT, PRIMARY KEY(sourceId, destId, edgeType))",
        "Error creating table search.edges.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS data_kind_idx ON search.resources USING GIN ((data -> 'kind'))",
        "Error creating index on search.resources data key kind.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS data_namespace_idx ON search.resources "
        "USING GIN ((data -> 'namespace'))",
        "Error creating index on search.resources data key namespace.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS data_name_idx ON search.resources USING GIN ((data ->  'name'))",
        "Error creating index on search.resources data key name.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS data_cluster_idx ON search.resources USING btree (cluster)",
        "Error creating index on search.resources cluster.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS data_composite_idx ON search.resources USING GIN "
        "((data -> '_hubClusterResource'::text), (data -> 'namespace'::text), "
        "(data -> 'apigroup'::text), (data -> 'kind_plural'::text))",
        "Error creating index on search.resources data composite.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS data_hubCluster_idx ON search.resources USING GIN "
        "((data ->  '_hubClusterResource')) WHERE data ? '_hubClusterResource'",
        "Error creating index on search.resources data key _hubClusterResource.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS edges_sourceid_idx ON search.edges USING btree (sourceid)",
        "Error creating index on search.edges key sourceid.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS edges_destid_idx ON search.edges USING btree (destid)",
        "Error creating index on search.edges key destid.",
    ),
    (
        "CREATE INDEX IF NOT EXISTS edges_cluster_idx ON search.edges USING btree (cluster)",
        "Error creating index on search.edges key cluster.",
    ),
)


def check_error(err: BaseException | None, log_message: str) -> bool:
    """Log ``err`` with ``log_message`` if there is one; return whether it was logged."""
    if err is None:
        return False
    logger.error("%s %s", log_message, err)
    return True


def check_error_and_rollback(err: BaseException | None, log_message: str, tx: Any) -> None:
    """Log ``err`` and roll back ``tx``; a failed rollback is logged, not raised."""
    check_error(err, log_message)
    try:
        tx.rollback()
    except Exception as rollback_err:  # noqa: BLE001 - reported, never propagated
        check_error(
            rollback_err,
            "Encountered error while rolling back cluster delete transaction command",
        )


@dataclass
class DAO:
    """Access to the search database through an injected connection pool."""

    pool: DatabasePool
    batch_size: int = DEFAULT_BATCH_SIZE
    max_backoff: float = DEFAULT_MAX_BACKOFF
    clusters_cache: ClustersCache = field(default_factory=ClustersCache)
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_backoff < 0:
            raise ValueError("max_backoff must not be negative")

    def initialize_tables(self, development_mode: bool = False) -> None:
        """Create the search schema, tables and indexes; errors are logged."""
        statements: list[tuple[str, str]] = []
        if development_mode:
            logger.warning(
                "Dropping search schema for development only. "
                "We must not see this message in production."
            )
            statements.append(("DROP SCHEMA IF EXISTS search CASCADE", "Error dropping schema search."))
        statements.extend(_SCHEMA_STATEMENTS)
        for sql, message in statements:
            try:
                self.pool.execute(sql)
            except Exception as err:  # noqa: BLE001 - schema setup continues past failures
                check_error(err, message)