import threading

import pytest

from search_indexer.batch import BatchItem, BatchWithRetry, DatabaseUnavailableError
from search_indexer.connection import DAO
from search_indexer.model import SyncResponse


class FakeResults:
    def __init__(self, exec_error=None, close_error=None):
        self.exec_error = exec_error
        self.close_error = close_error

    def exec(self):
        if self.exec_error is not None:
            raise self.exec_error

    def close(self):
        if self.close_error is not None:
            raise self.close_error


class FakePool:
    def __init__(self, bad_marker=None, close_error=None):
        self.batches = []
        self.bad_marker = bad_marker
        self.close_error = close_error
        self._lock = threading.Lock()

    def send_batch(self, statements):
        with self._lock:
            self.batches.append(list(statements))
        failing = self.bad_marker is not None and any(
            self.bad_marker in sql for sql, _ in statements
        )
        return FakeResults(
            exec_error=RuntimeError("exec failed") if failing else None,
            close_error=self.close_error,
        )

    def execute(self, sql, args=()):
        return 0

    def query(self, sql, args=()):
        return []

    def begin(self):
        raise AssertionError("not used")


def make_batch(pool, batch_size=10):
    response = SyncResponse()
    return BatchWithRetry(DAO(pool, batch_size=batch_size), response), response


def test_queue_with_errors():
    batch, _ = make_batch(FakePool())
    batch.conn_error = DatabaseUnavailableError("failed to connect")
    with pytest.raises(DatabaseUnavailableError):
        batch.queue(BatchItem(query="SELECT 1"))


def test_queue_sends_when_batch_is_full():
    pool = FakePool()
    batch, _ = make_batch(pool, batch_size=2)
    batch.queue(BatchItem("q1", [1], "addResource", "a"))
    batch.queue(BatchItem("q2", [2], "addResource", "b"))
    batch.wait()
    assert pool.batches == [[("q1", [1]), ("q2", [2])]]


def test_flush_sends_remaining_items():
    pool = FakePool()
    batch, _ = make_batch(pool, batch_size=5)
    batch.queue(BatchItem("q1", [], "addEdge", "a"))
    assert pool.batches == []
    batch.flush()
    batch.wait()
    assert pool.batches == [[("q1", [])]]


def test_flush_with_empty_queue_sends_nothing():
    pool = FakePool()
    batch, _ = make_batch(pool)
    batch.flush()
    batch.wait()
    assert pool.batches == []


@pytest.mark.parametrize(
    "action, attribute",
    [
        ("addResource", "add_errors"),
        ("updateResource", "update_errors"),
        ("deleteResource", "delete_errors"),
        ("addEdge", "add_edge_errors"),
        ("deleteEdge", "delete_edge_errors"),
    ],
)
def test_single_failing_item_is_recorded(action, attribute):
    pool = FakePool(bad_marker="bad")
    batch, response = make_batch(pool, batch_size=1)
    batch.queue(BatchItem("bad query", [], action, "uid-1"))
    batch.wait()
    errors = getattr(response, attribute)
    assert [e.resource_uid for e in errors] == ["uid-1"]
    assert errors[0].message == "Resource generated an error while updating the database."


def test_failing_batch_is_split_to_isolate_bad_item():
    pool = FakePool(bad_marker="bad")
    batch, response = make_batch(pool, batch_size=4)
    for name in ("ok1", "ok2", "bad3", "ok4"):
        batch.queue(BatchItem(name, [], "addResource", name))
    batch.wait()
    assert [e.resource_uid for e in response.add_errors] == ["bad3"]
    assert [len(b) for b in pool.batches] == [4, 2, 2, 1, 1]


def test_connection_failure_on_close_blocks_further_queueing():
    pool = FakePool(close_error=RuntimeError("unexpected EOF"))
    batch, response = make_batch(pool, batch_size=1)
    batch.queue(BatchItem("q1", [], "addResource", "a"))
    batch.wait()
    assert isinstance(batch.conn_error, DatabaseUnavailableError)
    with pytest.raises(DatabaseUnavailableError):
        batch.queue(BatchItem("q2", [], "addResource", "b"))
    assert response.add_errors == []


def test_other_close_error_does_not_mark_database_unavailable():
    pool = FakePool(close_error=RuntimeError("something else"))
    batch, _ = make_batch(pool, batch_size=1)
    batch.queue(BatchItem("q1", [], "addResource", "a"))
    batch.wait()
    assert batch.conn_error is None
    batch.queue(BatchItem("q2", [], "addResource", "b"))
    batch.wait()
    assert len(pool.batches) == 2