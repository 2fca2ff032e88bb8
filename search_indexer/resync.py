"""Resets a cluster's stored resources and edges to a full incoming state."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Iterator

from search_indexer.batch import BatchItem, BatchWithRetry, DatabaseUnavailableError
from search_indexer.connection import DAO
from search_indexer.model import Edge, Resource, SyncResponse
from search_indexer.queries import (
    DELETE_EDGE,
    DELETE_EDGES_NOT_IN,
    DELETE_RESOURCES_NOT_IN,
    INSERT_EDGE,
    SELECT_CLUSTER_EDGES,
    UPSERT_RESOURCE,
    QueryBuildError,
    build_query,
    literal,
    quote_identifier,
)
from search_indexer.slow_log import StepTimer, slow_log

logger = logging.getLogger(__name__)

_HUB_CLUSTERS_SQL = (
    'SELECT DISTINCT "cluster" FROM "search"."resources" WHERE "data"?\'_hubClusterResource\''
)


def _encode_properties(properties: dict[str, Any]) -> str:
    return json.dumps(properties, sort_keys=True, separators=(",", ":"))


def _uid_list(uids: list[str]) -> str:
    return "[" + " ".join(uids) + "]"


def _parse_body(body: bytes | str) -> dict[str, Any]:
    try:
        document = json.loads(body)
    except (ValueError, UnicodeDecodeError) as err:
        raise ValueError(f"invalid resync request: {err}") from err
    if not isinstance(document, dict):
        raise ValueError("resync request must be a JSON object")
    return document


def resync_data(
    dao: DAO, cluster_name: str, response: SyncResponse, request_body: bytes | str
) -> threading.Thread | None:
    """Make the stored data for ``cluster_name`` match the full state in ``request_body``.

    Returns the background thread cleaning up old hub cluster data when the
    request comes from the hub cluster, otherwise None.
    """
    with slow_log(f"Slow resync from {cluster_name:>12}."):
        logger.info(
            "Starting resync from %12s. This is normal, but it could be a problem "
            "if it happens often.",
            cluster_name,
        )
        document = _parse_body(request_body)

        try:
            last_resource = _reset_resources(dao, cluster_name, response, document)
        except Exception as err:
            logger.warning("Error resyncing resources for cluster %12s. Error: %s", cluster_name, err)
            raise

        try:
            _reset_edges(dao, cluster_name, response, document)
        except Exception as err:
            logger.warning("Error resyncing edges for cluster %12s. Error: %s", cluster_name, err)
            raise

        cleanup = None
        if "_hubClusterResource" in last_resource.properties:
            cleanup = threading.Thread(
                target=hub_cluster_cleanup_with_retry, args=(dao, cluster_name), daemon=True
            )
            cleanup.start()

        logger.debug("Completed resync of cluster %12s.", cluster_name)
        return cleanup


def _upsert_resources(
    document: dict[str, Any], cluster_name: str, response: SyncResponse, batch: BatchWithRetry
) -> Iterator[Resource]:
    """Queue an upsert for each incoming resource and yield it once queued."""
    items = document.get("addResources")
    if items is None:
        return
    if not isinstance(items, list):
        raise ValueError("error reading addResources: expected a JSON array")
    for raw in items:
        try:
            resource = Resource.from_dict(raw)
        except ValueError as err:
            raise ValueError(f"error decoding resource from request: {err}") from err
        try:
            sql, args = build_query(
                UPSERT_RESOURCE,
                [resource.uid, cluster_name, _encode_properties(resource.properties)],
            )
        except QueryBuildError as err:
            logger.error("Error building query for resource %s: %s", resource.uid, err)
        else:
            try:
                batch.queue(BatchItem(query=sql, args=args, action="addResource", uid=resource.uid))
            except DatabaseUnavailableError as err:
                logger.warning("Error queuing resources to add. Error: %s", err)
                raise
            response.total_added += 1
        yield resource


def _reset_resources(
    dao: DAO, cluster_name: str, response: SyncResponse, document: dict[str, Any]
) -> Resource:
    """Upsert incoming resources, then delete stored ones that were not sent."""
    batch = BatchWithRetry(dao, response)

    incoming: list[str] = []
    last = Resource()
    upsert_error: Exception | None = None
    try:
        for resource in _upsert_resources(document, cluster_name, response, batch):
            incoming.append(resource.uid)
            last = resource
    except (ValueError, DatabaseUnavailableError) as err:
        upsert_error = err

    # The cluster pseudo-node is created by the indexer and must be kept.
    incoming.append(f"cluster__{cluster_name}")

    for template, action, what in (
        (DELETE_RESOURCES_NOT_IN, "deleteResource", "resources"),
        (DELETE_EDGES_NOT_IN, "deleteEdge", "edges"),
    ):
        try:
            sql, args = build_query(template, [cluster_name, incoming])
        except QueryBuildError as err:
            logger.error("Error building query to delete %s: %s", what, err)
            continue
        try:
            batch.queue(BatchItem(query=sql, args=args, action=action, uid=_uid_list(incoming)))
        except DatabaseUnavailableError as err:
            logger.warning("Error queuing %s for deletion. Error: %s", what, err)

    batch.flush()
    batch.wait()

    # Deletes are sent even after an upsert error, so stale data does not pile up.
    if upsert_error is not None:
        raise upsert_error
    if batch.conn_error is not None:
        raise batch.conn_error
    return last


def _existing_edges(dao: DAO, cluster_name: str) -> dict[tuple[str, str, str], Edge]:
    existing: dict[tuple[str, str, str], Edge] = {}
    try:
        sql, args = build_query(SELECT_CLUSTER_EDGES, [cluster_name])
    except QueryBuildError as err:
        logger.error("Error building query for existing edges: %s", err)
        return existing
    try:
        rows = dao.pool.query(sql, args)
    except Exception as err:  # noqa: BLE001 - resync continues without existing edges
        logger.warning(
            "Error getting existing edges during resync of cluster %12s. Error: %s",
            cluster_name,
            err,
        )
        return existing
    for row in rows:
        try:
            source, edge_type, dest = row
        except (TypeError, ValueError) as err:
            logger.warning("Error scanning edge row. Error: %s", err)
            continue
        existing[(source, edge_type, dest)] = Edge(
            source_uid=source, dest_uid=dest, edge_type=edge_type
        )
    return existing


def _add_edges(
    document: dict[str, Any],
    existing: dict[tuple[str, str, str], Edge],
    cluster_name: str,
    response: SyncResponse,
    batch: BatchWithRetry,
) -> None:
    """Queue inserts for incoming edges; edges already stored are removed from ``existing``."""
    items = document.get("addEdges")
    if items is None:
        return
    if not isinstance(items, list):
        raise ValueError("error reading addEdges: expected a JSON array")
    for raw in items:
        try:
            edge = Edge.from_dict(raw)
        except ValueError as err:
            raise ValueError(f"error decoding edge from request: {err}") from err
        key = (edge.source_uid, edge.edge_type, edge.dest_uid)
        if key in existing:
            del existing[key]
            continue
        try:
            sql, args = build_query(
                INSERT_EDGE,
                [
                    edge.source_uid,
                    edge.source_kind,
                    edge.dest_uid,
                    edge.dest_kind,
                    edge.edge_type,
                    cluster_name,
                ],
            )
        except QueryBuildError as err:
            logger.error("Error building query for edge from %s: %s", edge.source_uid, err)
            continue
        try:
            batch.queue(BatchItem(query=sql, args=args, action="addEdge", uid=edge.source_uid))
        except DatabaseUnavailableError as err:
            logger.warning("Error queuing edges. Error: %s", err)
            raise
        response.total_edges_added += 1


def _reset_edges(
    dao: DAO, cluster_name: str, response: SyncResponse, document: dict[str, Any]
) -> None:
    """Insert incoming edges that are missing and delete stored edges not sent."""
    timer = StepTimer()
    batch = BatchWithRetry(dao, response)

    existing = _existing_edges(dao, cluster_name)
    timer.log_step(cluster_name, "Resync QUERY existing edges")

    add_error: Exception | None = None
    try:
        _add_edges(document, existing, cluster_name, response, batch)
    except (ValueError, DatabaseUnavailableError) as err:
        add_error = err

    for edge in existing.values():
        try:
            sql, args = build_query(DELETE_EDGE, [edge.source_uid, edge.dest_uid, edge.edge_type])
        except QueryBuildError as err:
            logger.error("Error building query to delete edge: %s", err)
            continue
        try:
            batch.queue(BatchItem(query=sql, args=args, action="deleteEdge", uid=edge.source_uid))
        except DatabaseUnavailableError as err:
            logger.warning("Error queuing edges. Error: %s", err)
            batch.wait()
            raise
        response.total_edges_deleted += 1

    batch.flush()
    batch.wait()
    timer.log_step(
        cluster_name,
        f"Reset edges stats: INSERT [{response.total_edges_added}] "
        f"DELETE [{response.total_edges_deleted}]",
    )

    if add_error is not None:
        raise add_error
    if batch.conn_error is not None:
        raise batch.conn_error


def _delete_cluster_rows(dao: DAO, cluster: str, table: str) -> None:
    sql = f'DELETE FROM {quote_identifier("search." + table)} WHERE ("cluster" = {literal(cluster)})'
    try:
        affected = dao.pool.execute(sql, [])
    except Exception as err:
        logger.error("Error deleting old hub cluster %s: %s", table, err)
        raise
    logger.info("Deleted %s old hub cluster %s", affected, table)


def check_hub_cluster_rename(dao: DAO, request_cluster: str) -> None:
    """Delete resources and edges stored under any other hub cluster name."""
    try:
        rows = dao.pool.query(_HUB_CLUSTERS_SQL, [])
    except Exception as err:
        logger.error("Error while fetching hub cluster name from database: %s", err)
        raise

    to_delete: list[str] = []
    for row in rows or ():
        cluster = row[0]
        if not isinstance(cluster, str):
            raise TypeError(f"unexpected cluster value {cluster!r} from query: {_HUB_CLUSTERS_SQL}")
        if cluster and cluster != request_cluster:
            to_delete.append(cluster)

    for cluster in to_delete:
        _delete_cluster_rows(dao, cluster, "resources")
        _delete_cluster_rows(dao, cluster, "edges")


def hub_cluster_cleanup_with_retry(dao: DAO, request_cluster: str) -> None:
    """Run ``check_hub_cluster_rename`` until it succeeds, backing off between tries."""
    retry = 0
    while True:
        try:
            check_hub_cluster_rename(dao, request_cluster)
        except Exception as err:  # noqa: BLE001 - retried until it succeeds
            wait = min(retry * 0.5, dao.max_backoff)
            retry += 1
            logger.error(
                "Error handling old hub cluster check and cleanup: %s. Will retry in %ss",
                err,
                wait,
            )
            dao.sleep(wait)
        else:
            logger.debug("Successfully completed check and handling of old hub clusters.")
            return