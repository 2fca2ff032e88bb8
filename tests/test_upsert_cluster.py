import json

import pytest

from search_indexer.connection import DAO
from search_indexer.model import Resource
from search_indexer.queries import QueryBuildError
from search_indexer.upsert_cluster import (
    cluster_in_db,
    cluster_props_up_to_date,
    delete_cluster_and_resources,
    delete_cluster_resources_txn,
    delete_cluster_txn,
    delete_query,
    get_managed_clusters,
    insert_update_query,
    upsert_cluster,
)

UID = "cluster__name-foo"
SELECT_SQL = 'SELECT "uid", "data" FROM "search"."resources" WHERE ("uid" = \'cluster__name-foo\')'
DEL_RESOURCES = (
    'DELETE FROM "search"."resources" WHERE (("cluster" = \'name-foo\') '
    "AND (\"uid\" != 'cluster__name-foo'))"
)
DEL_EDGES = 'DELETE FROM "search"."edges" WHERE ("cluster" = \'name-foo\')'
DEL_NODE = 'DELETE FROM "search"."resources" WHERE ("uid" = \'cluster__name-foo\')'


class FakeTx:
    def __init__(self, execute_results=None, commit_error=None):
        self.execute_results = list(execute_results or [])
        self.commit_error = commit_error
        self.executed = []
        self.committed = False
        self.rollbacks = 0

    def execute(self, sql, args=()):
        self.executed.append((sql, list(args)))
        result = self.execute_results.pop(0) if self.execute_results else 1
        if isinstance(result, Exception):
            raise result
        return result

    def commit(self):
        if self.commit_error:
            raise self.commit_error
        self.committed = True

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    def __init__(self, query_results=None, execute_results=None, transactions=None):
        self.query_results = list(query_results or [])
        self.execute_results = list(execute_results or [])
        self.transactions = list(transactions or [])
        self.queries = []
        self.executed = []

    def query(self, sql, args=()):
        self.queries.append((sql, list(args)))
        result = self.query_results.pop(0) if self.query_results else []
        if isinstance(result, Exception):
            raise result
        return result

    def execute(self, sql, args=()):
        self.executed.append((sql, list(args)))
        result = self.execute_results.pop(0) if self.execute_results else 1
        if isinstance(result, Exception):
            raise result
        return result

    def begin(self):
        result = self.transactions.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def send_batch(self, statements):
        raise AssertionError("not used")


def cluster_props():
    return {
        "apigroup": "internal.open-cluster-management.io",
        "consoleURL": "",
        "cpu": 0,
        "created": "0001-01-01T00:00:00Z",
        "kind": "Cluster",
        "kubernetesVersion": "",
        "memory": 0,
        "name": "name-foo",
        "nodes": 0,
    }


def make_dao(pool):
    sleeps = []
    return DAO(pool=pool, sleep=sleeps.append), sleeps


def expected_upsert(props):
    data = json.dumps(props, sort_keys=True, separators=(",", ":"))
    return (
        f'INSERT INTO "search"."resources" AS "r" ("cluster", "data", "uid") VALUES '
        f"('name-foo', '{data}', '{UID}') ON CONFLICT (uid) DO UPDATE SET \"data\"='{data}' "
        f"WHERE (\"r\".uid = '{UID}')"
    )


def test_delete_query_resources_keeps_cluster_node():
    assert delete_query("resources", "cluster", "name-foo") == (DEL_RESOURCES, [])


def test_delete_query_edges_and_uid():
    assert delete_query("edges", "cluster", "name-foo") == (DEL_EDGES, [])
    assert delete_query("resources", "uid", UID) == (DEL_NODE, [])


def test_insert_update_query_pinned():
    sql, args = insert_update_query("resources", [UID, "name-foo", '{"cpu":10,"name":"name-foo"}'])
    assert sql == (
        'INSERT INTO "search"."resources" AS "r" ("cluster", "data", "uid") VALUES '
        "('name-foo', '{\"cpu\":10,\"name\":\"name-foo\"}', 'cluster__name-foo') "
        "ON CONFLICT (uid) DO UPDATE SET \"data\"='{\"cpu\":10,\"name\":\"name-foo\"}' "
        "WHERE (\"r\".uid = 'cluster__name-foo')"
    )
    assert args == []


def test_insert_update_query_requires_three_args():
    with pytest.raises(QueryBuildError):
        insert_update_query("resources", [UID, "name-foo"])


def test_upsert_cluster_no_update():
    pool = FakePool()
    dao, _ = make_dao(pool)
    dao.clusters_cache.update(UID, cluster_props())
    written = upsert_cluster(dao, Resource(kind="Cluster", uid=UID, properties=cluster_props()))
    assert written is False
    assert pool.executed == []
    assert len(dao.clusters_cache) == 1
    assert UID in dao.clusters_cache


def test_upsert_cluster_update_values_changed():
    stored = cluster_props()
    stored["cpu"] = 9
    del stored["nodes"]
    current = dict(stored)
    current["cpu"] = 10
    pool = FakePool(query_results=[[(UID, json.dumps(stored))]])
    dao, _ = make_dao(pool)
    written = upsert_cluster(dao, Resource(kind="Cluster", uid=UID, properties=current))
    assert written is True
    assert pool.queries == [(SELECT_SQL, [])]
    assert pool.executed == [(expected_upsert(current), [])]
    assert len(dao.clusters_cache) == 1
    props, present = dao.clusters_cache.read(UID)
    assert present is True
    assert props["cpu"] == 10


def test_upsert_cluster_update_property_count_changed():
    stored = cluster_props()
    for key in ("cpu", "memory", "nodes"):
        del stored[key]
    current = dict(stored)
    current["cpu"] = 10
    pool = FakePool(query_results=[[(UID, cluster_props())]])
    dao, _ = make_dao(pool)
    assert upsert_cluster(dao, Resource(kind="Cluster", uid=UID, properties=current)) is True
    assert pool.executed == [(expected_upsert(current), [])]
    props, present = dao.clusters_cache.read(UID)
    assert present is True
    assert props["cpu"] == 10
    assert props.get("nodes") is None


def test_upsert_cluster_insert_when_not_stored():
    current = cluster_props()
    del current["memory"]
    del current["nodes"]
    current["cpu"] = 10
    pool = FakePool(query_results=[None])
    dao, _ = make_dao(pool)
    assert upsert_cluster(dao, Resource(kind="Cluster", uid=UID, properties=current)) is True
    assert pool.executed == [(expected_upsert(current), [])]
    assert len(dao.clusters_cache) == 1
    assert UID in dao.clusters_cache


def test_upsert_cluster_execute_error_leaves_cache():
    pool = FakePool(query_results=[None], execute_results=[RuntimeError("boom")])
    dao, _ = make_dao(pool)
    assert upsert_cluster(dao, Resource(uid=UID, properties=cluster_props())) is False
    assert UID not in dao.clusters_cache


def test_upsert_cluster_without_name_raises():
    dao, _ = make_dao(FakePool())
    with pytest.raises(ValueError):
        upsert_cluster(dao, Resource(uid=UID, properties={"kind": "Cluster"}))


def test_cluster_props_up_to_date_not_in_cache():
    dao, _ = make_dao(FakePool())
    assert cluster_props_up_to_date(dao, "cluster__name-foo1", Resource()) is False


def test_cluster_in_db_query_error():
    pool = FakePool(query_results=[RuntimeError("Error fetching data")])
    dao, _ = make_dao(pool)
    assert cluster_in_db(dao, "cluster__name-foo1") is False
    assert pool.queries == [
        ('SELECT "uid", "data" FROM "search"."resources" WHERE ("uid" = \'cluster__name-foo1\')', [])
    ]


def test_delete_cluster_resources_only():
    tx = FakeTx()
    pool = FakePool(transactions=[tx])
    dao, _ = make_dao(pool)
    dao.clusters_cache.update(UID, None)
    delete_cluster_and_resources(dao, "name-foo", False)
    assert tx.executed == [(DEL_RESOURCES, []), (DEL_EDGES, [])]
    assert tx.committed is True
    assert pool.executed == []
    assert UID in dao.clusters_cache


def test_delete_cluster_with_node():
    tx = FakeTx()
    pool = FakePool(transactions=[tx])
    dao, _ = make_dao(pool)
    dao.clusters_cache.update(UID, None)
    delete_cluster_and_resources(dao, "name-foo", True)
    assert tx.committed is True
    assert pool.executed == [(DEL_NODE, [])]
    assert UID not in dao.clusters_cache


def test_delete_cluster_retries_after_errors():
    tx = FakeTx()
    pool = FakePool(
        transactions=[RuntimeError("error deleting cluster resources"), tx],
        execute_results=[RuntimeError("error deleting cluster from resources"), 1],
    )
    dao, sleeps = make_dao(pool)
    dao.clusters_cache.update(UID, None)
    delete_cluster_and_resources(dao, "name-foo", True)
    assert tx.committed is True
    assert pool.executed == [(DEL_NODE, []), (DEL_NODE, [])]
    assert sleeps == [0.0, 0.0]
    assert UID not in dao.clusters_cache


def test_delete_cluster_resources_txn_counts():
    tx = FakeTx(execute_results=[3, 2])
    dao, _ = make_dao(FakePool(transactions=[tx]))
    assert delete_cluster_resources_txn(dao, "name-foo") == (3, 2)


def test_delete_cluster_resources_txn_rolls_back_on_error():
    tx = FakeTx(execute_results=[RuntimeError("table resources not found")])
    dao, _ = make_dao(FakePool(transactions=[tx]))
    with pytest.raises(RuntimeError, match="table resources not found"):
        delete_cluster_resources_txn(dao, "name-foo")
    assert tx.rollbacks == 1
    assert tx.committed is False


def test_delete_cluster_resources_txn_commit_error_rolls_back():
    tx = FakeTx(commit_error=RuntimeError("commit failed"))
    dao, _ = make_dao(FakePool(transactions=[tx]))
    with pytest.raises(RuntimeError, match="commit failed"):
        delete_cluster_resources_txn(dao, "name-foo")
    assert tx.rollbacks == 1


def test_delete_cluster_txn_returns_rows():
    pool = FakePool(execute_results=[1])
    dao, _ = make_dao(pool)
    assert delete_cluster_txn(dao, UID) == 1
    assert pool.executed == [(DEL_NODE, [])]


def test_get_managed_clusters():
    pool = FakePool(query_results=[[(UID,), ("",), ("other",)]])
    dao, _ = make_dao(pool)
    assert get_managed_clusters(dao) == [UID, "other"]
    assert pool.queries == [
        (
            'SELECT DISTINCT "cluster" FROM "search"."resources" '
            "WHERE ((data ? '_hubClusterResource') IS FALSE)",
            [],
        )
    ]


def test_get_managed_clusters_query_error():
    dao, _ = make_dao(FakePool(query_results=[RuntimeError("db down")]))
    with pytest.raises(RuntimeError, match="db down"):
        get_managed_clusters(dao)