"""Batches statements, sends them in the background and isolates failing ones."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from search_indexer.connection import DAO
from search_indexer.model import SyncError, SyncResponse

logger = logging.getLogger(__name__)

_ERROR_MESSAGE = "Resource generated an error while updating the database."

_ERROR_LISTS: dict[str, Callable[[SyncResponse], list[SyncError]]] = {
    "addResource": lambda r: r.add_errors,
    "updateResource": lambda r: r.update_errors,
    "deleteResource": lambda r: r.delete_errors,
    "addEdge": lambda r: r.add_edge_errors,
    "deleteEdge": lambda r: r.delete_edge_errors,
}

_CONNECTION_FAILURES = ("unexpected EOF", "failed to connect")


class DatabaseUnavailableError(ConnectionError):
    """The database could not be reached; no more statements are accepted."""


@dataclass
class BatchItem:
    """One statement to send, with what to report if it fails."""

    query: str
    args: Sequence[Any] = ()
    action: str = ""
    uid: str = ""


class BatchWithRetry:
    """Queues statements and sends them once ``dao.batch_size`` are waiting.

    A failed batch is split in halves and resent until the failing statement
    is found; it is then recorded in the sync response.
    """

    def __init__(self, dao: DAO, response: SyncResponse) -> None:
        self._dao = dao
        self._response = response
        self._items: list[BatchItem] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.conn_error: DatabaseUnavailableError | None = None

    def queue(self, item: BatchItem) -> None:
        """Add a statement; raises once the database has been found unavailable."""
        if self.conn_error is not None:
            raise self.conn_error
        self._items.append(item)
        if len(self._items) >= self._dao.batch_size:
            self._dispatch()

    def flush(self) -> None:
        """Send whatever is still queued."""
        if self._items:
            self._dispatch()

    def wait(self) -> None:
        """Block until every batch sent so far has finished."""
        while self._threads:
            self._threads.pop().join()

    def _dispatch(self) -> None:
        items, self._items = self._items, []
        thread = threading.Thread(target=self._run, args=(items,), daemon=True)
        self._threads.append(thread)
        thread.start()

    def _run(self, items: list[BatchItem]) -> None:
        try:
            self._send(items)
        except Exception:  # noqa: BLE001 - background work must not die silently
            logger.exception("Unexpected error sending batch.")

    def _send(self, items: list[BatchItem]) -> None:
        exec_error: Exception | None = None
        try:
            results = self._dao.pool.send_batch([(item.query, list(item.args)) for item in items])
            try:
                results.exec()
            except Exception as err:  # noqa: BLE001 - handled by splitting the batch
                exec_error = err
            results.close()
        except Exception as close_err:  # noqa: BLE001 - classified below
            message = str(close_err)
            if any(text in message for text in _CONNECTION_FAILURES):
                unavailable = DatabaseUnavailableError("Failed to connect to database.")
                unavailable.__cause__ = close_err
                self.conn_error = unavailable
                logger.error("Send batch failed because database is unavailable. Won't retry.")
            else:
                logger.error("Error closing batch result. %s", close_err)
            return

        if exec_error is None:
            return
        if len(items) == 1:
            self._record_failure(items[0])
            return
        middle = len(items) // 2
        for half in (items[:middle], items[middle:]):
            self._send(half)

    def _record_failure(self, item: BatchItem) -> None:
        logger.error("ERROR processing batchItem. %r", item)
        errors = _ERROR_LISTS.get(item.action)
        if errors is None:
            logger.error("Unable to process sync error with type: %s", item.action)
            return
        with self._lock:
            errors(self._response).append(
                SyncError(resource_uid=item.uid, message=_ERROR_MESSAGE)
            )