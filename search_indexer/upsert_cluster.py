"""Stores cluster pseudo-nodes and removes clusters with their resources."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Sequence

from search_indexer.connection import DAO, check_error, check_error_and_rollback
from search_indexer.model import Resource
from search_indexer.queries import QueryBuildError, literal, quote_identifier

logger = logging.getLogger(__name__)

_SLOW_DELETE = 0.1
"""Seconds after which deleting a cluster's data is reported as slow."""

_MANAGED_CLUSTERS_SQL = (
    'SELECT DISTINCT "cluster" FROM "search"."resources" '
    "WHERE ((data ? '_hubClusterResource') IS FALSE)"
)


def _encode_properties(properties: dict[str, Any]) -> str:
    return json.dumps(properties, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _cluster_uid(cluster_name: str) -> str:
    return f"cluster__{cluster_name}"


def delete_query(table_name: str, column_name: str, arg: str) -> tuple[str, list[Any]]:
    """Build a DELETE on ``search.<table_name>`` matching ``column_name = arg``.

    Deleting a cluster's resources keeps the cluster pseudo-node.
    """
    conditions = [f'("{column_name}" = {literal(arg)})']
    if column_name == "cluster" and table_name == "resources":
        conditions.append(f'("uid" != {literal(_cluster_uid(arg))})')
    where = conditions[0] if len(conditions) == 1 else "(" + " AND ".join(conditions) + ")"
    return f"DELETE FROM {quote_identifier('search.' + table_name)} WHERE {where}", []


def insert_update_query(table_name: str, args: Sequence[Any]) -> tuple[str, list[Any]]:
    """Build an upsert of ``(uid, cluster, data)`` into ``search.<table_name>``."""
    if len(args) < 3:
        raise QueryBuildError(f"Expected uid, cluster and data for upsert into {table_name}")
    uid, cluster, data = args[0], args[1], args[2]
    sql = (
        f'INSERT INTO {quote_identifier("search." + table_name)} AS "r" '
        f'("cluster", "data", "uid") VALUES ({literal(cluster)}, {literal(data)}, {literal(uid)}) '
        f'ON CONFLICT (uid) DO UPDATE SET "data"={literal(data)} '
        f'WHERE ("r".uid = {literal(uid)})'
    )
    return sql, []


def _delete_with_retry(dao: DAO, delete: Callable[[DAO, str], Any], name: str) -> None:
    """Run ``delete`` until it succeeds; a failed transaction is retried whole."""
    retry = 0
    while True:
        try:
            delete(dao, name)
        except Exception as err:  # noqa: BLE001 - retried until it succeeds
            wait = min(retry * 0.5, dao.max_backoff)
            retry += 1
            logger.error("Unable to process cluster delete transaction: %s. Retry in %ss", err, wait)
            dao.sleep(wait)
        else:
            return


def delete_cluster_and_resources(dao: DAO, cluster_name: str, delete_cluster_node: bool) -> None:
    """Delete a cluster's resources and edges, and optionally its pseudo-node."""
    _delete_with_retry(dao, delete_cluster_resources_txn, cluster_name)
    logger.debug("Successfully deleted resources and edges for cluster %s from database!", cluster_name)

    if delete_cluster_node:
        cluster_uid = _cluster_uid(cluster_name)
        _delete_with_retry(dao, delete_cluster_txn, cluster_uid)
        logger.debug("Successfully deleted cluster node %s from database!", cluster_name)
        dao.clusters_cache.delete(cluster_uid)


def delete_cluster_resources_txn(dao: DAO, cluster_name: str) -> tuple[int, int]:
    """Delete a cluster's resources and edges in one transaction.

    Returns the number of resources and edges deleted.
    """
    start = time.monotonic()
    resources_deleted = edges_deleted = 0
    try:
        try:
            tx = dao.pool.begin()
        except Exception:
            logger.error("Error while beginning transaction block for deleting cluster %s", cluster_name)
            raise

        sql, args = delete_query("resources", "cluster", cluster_name)
        logger.debug("Query to delete cluster resources for %s - sql: %s args: %s", cluster_name, sql, args)
        try:
            resources_deleted = int(tx.execute(sql, args) or 0)
        except Exception as err:
            check_error_and_rollback(
                err,
                f"Error deleting resources from search.resources for clusterName {cluster_name}.",
                tx,
            )
            raise

        sql, args = delete_query("edges", "cluster", cluster_name)
        try:
            edges_deleted = int(tx.execute(sql, args) or 0)
        except Exception as err:
            check_error_and_rollback(
                err, f"Error deleting edges from search.edges for clusterName {cluster_name}.", tx
            )
            raise

        try:
            tx.commit()
        except Exception as err:
            check_error_and_rollback(
                err,
                f"Error committing delete cluster transaction for cluster: {cluster_name}.",
                tx,
            )
            raise
        return resources_deleted, edges_deleted
    finally:
        elapsed = time.monotonic() - start
        log = logger.warning if elapsed > _SLOW_DELETE else logger.debug
        log(
            "Delete of %s took %.3fs. Resources Deleted: %d, Edges Deleted: %d, "
            "Total RowsDeleted: %d",
            cluster_name,
            elapsed,
            resources_deleted,
            edges_deleted,
            resources_deleted + edges_deleted,
        )


def delete_cluster_txn(dao: DAO, cluster_uid: str) -> int:
    """Delete the cluster pseudo-node and return the number of rows deleted."""
    sql, args = delete_query("resources", "uid", cluster_uid)
    logger.debug("Query to delete clusterNode for %s - sql: %s args: %s", cluster_uid, sql, args)
    try:
        deleted = int(dao.pool.execute(sql, args) or 0)
    except Exception as err:
        check_error(err, f"Error deleting cluster {cluster_uid} from search.resources.")
        raise
    logger.debug("Cluster nodes deleted for %s: %d", cluster_uid, deleted)
    return deleted


def upsert_cluster(dao: DAO, resource: Resource) -> bool:
    """Store the cluster pseudo-node if it is new or its properties changed.

    Returns whether the database was written.
    """
    cluster_name = resource.properties.get("name")
    if not isinstance(cluster_name, str):
        raise ValueError(f"cluster resource {resource.uid!r} has no string 'name' property")
    data = _encode_properties(resource.properties)
    try:
        sql, args = insert_update_query("resources", [resource.uid, cluster_name, data])
    except QueryBuildError as err:
        check_error(err, f"Error creating insert/update cluster query for {cluster_name}")
        return False
    logger.debug("Query to insert/update cluster for %s - sql: %s args: %s", cluster_name, sql, args)

    if cluster_in_db(dao, resource.uid) and cluster_props_up_to_date(dao, resource.uid, resource):
        logger.debug("Cluster %s already exists in DB and properties are up to date.", cluster_name)
        return False

    try:
        dao.pool.execute(sql, args)
    except Exception as err:  # noqa: BLE001 - the next update retries the write
        logger.warning("Error inserting/updating cluster with query %s, %s: %s", sql, cluster_name, err)
        return False
    dao.clusters_cache.update(resource.uid, resource.properties)
    return True


def _decode_data(data: Any) -> Any:
    if isinstance(data, (str, bytes, bytearray)):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


def cluster_in_db(dao: DAO, cluster_uid: str) -> bool:
    """Whether the cluster node is stored, loading it into the cache if needed."""
    _, present = dao.clusters_cache.read(cluster_uid)
    if present:
        return True
    logger.debug(
        "Cluster [%s] is not in existingClustersCache. Updating cache with latest state from database.",
        cluster_uid,
    )
    sql = (
        f'SELECT "uid", "data" FROM {quote_identifier("search.resources")} '
        f'WHERE ("uid" = {literal(cluster_uid)})'
    )
    try:
        rows = dao.pool.query(sql, [])
    except Exception as err:  # noqa: BLE001 - treated as not stored
        logger.error("Error while fetching cluster %s from database: %s", cluster_uid, err)
        return False

    for row in rows or ():
        try:
            uid, data = row
        except (TypeError, ValueError) as err:
            logger.error("Error %s retrieving rows for clusterInDB query:%s", err, sql)
            continue
        dao.clusters_cache.update(uid, _decode_data(data))
    _, present = dao.clusters_cache.read(cluster_uid)
    return present


def cluster_props_up_to_date(dao: DAO, cluster_uid: str, resource: Resource) -> bool:
    """Whether the cached properties match the resource's properties exactly."""
    current = resource.properties
    existing, present = dao.clusters_cache.read(cluster_uid)
    if not present:
        logger.debug("Cluster [%s] is not in existingClustersCache.", cluster_uid)
        return False
    if not isinstance(existing, dict) or len(existing) != len(current):
        logger.debug("For cluster %s, properties needs to be updated.", cluster_uid)
        return False
    for key, value in current.items():
        if key not in existing or existing[key] != value:
            logger.debug(
                "cluster property values doesn't match for key:%s, existing value:%s, new value:%s",
                key,
                existing.get(key),
                value,
            )
            return False
    return True


def get_managed_clusters(dao: DAO) -> list[str]:
    """Return the names of stored clusters other than the hub cluster."""
    try:
        rows = dao.pool.query(_MANAGED_CLUSTERS_SQL, [])
    except Exception as err:
        logger.error("Error resolving managed clusters query [%s]. Error: [%s]", _MANAGED_CLUSTERS_SQL, err)
        raise

    clusters: list[str] = []
    for row in rows or ():
        try:
            (name,) = row
        except (TypeError, ValueError) as err:
            logger.error("Error reading cluster names. Error: %s Query: %s", err, _MANAGED_CLUSTERS_SQL)
            continue
        if isinstance(name, str) and name:
            clusters.append(name)
    return clusters