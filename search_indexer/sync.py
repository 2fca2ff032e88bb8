"""Applies an incremental sync event from a managed cluster to the database."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterator

from search_indexer.batch import BatchItem, BatchWithRetry, DatabaseUnavailableError
from search_indexer.connection import DAO
from search_indexer.model import SyncEvent, SyncResponse
from search_indexer.slow_log import slow_log

logger = logging.getLogger(__name__)

_UPSERT_RESOURCE = (
    "INSERT into search.resources as r values($1,$2,$3) ON CONFLICT (uid) "
    "DO UPDATE SET data=$3 WHERE r.uid=$1 and r.data IS DISTINCT FROM $3"
)
_UPDATE_RESOURCE = "UPDATE search.resources SET data=$2 WHERE uid=$1"
_INSERT_EDGE = (
    "INSERT into search.edges values($1,$2,$3,$4,$5,$6) "
    "ON CONFLICT (sourceid, destid, edgetype) DO NOTHING"
)
_DELETE_EDGE = "DELETE from search.edges WHERE sourceId=$1 AND destId=$2 AND edgeType=$3"


def _encode_properties(properties: dict[str, Any]) -> str:
    return json.dumps(properties, sort_keys=True, separators=(",", ":"))


def _uid_list(uids: list[str]) -> str:
    return "[" + " ".join(uids) + "]"


def _statements(event: SyncEvent, cluster_name: str) -> Iterator[BatchItem]:
    # In case of conflict the resource is updated only if its data changed.
    for resource in event.add_resources:
        yield BatchItem(
            query=_UPSERT_RESOURCE,
            args=[resource.uid, cluster_name, _encode_properties(resource.properties)],
            action="addResource",
            uid=resource.uid,
        )

    # The uid and cluster of a resource never change.
    for resource in event.update_resources:
        yield BatchItem(
            query=_UPDATE_RESOURCE,
            args=[resource.uid, _encode_properties(resource.properties)],
            action="updateResource",
            uid=resource.uid,
        )

    # Deleting a resource also deletes every edge pointing to or from it.
    if event.delete_resources:
        uids = [deleted.uid for deleted in event.delete_resources]
        markers = ",".join(f"${n}" for n in range(1, len(uids) + 1))
        yield BatchItem(
            query=f"DELETE from search.resources WHERE uid IN ({markers})",
            args=list(uids),
            action="deleteResource",
            uid=_uid_list(uids),
        )
        yield BatchItem(
            query=f"DELETE from search.edges WHERE sourceId IN ({markers}) OR destId IN ({markers})",
            args=list(uids),
            action="deleteResource",
            uid=_uid_list(uids),
        )

    for edge in event.add_edges:
        yield BatchItem(
            query=_INSERT_EDGE,
            args=[
                edge.source_uid,
                edge.source_kind,
                edge.dest_uid,
                edge.dest_kind,
                edge.edge_type,
                cluster_name,
            ],
            action="addEdge",
            uid=edge.source_uid,
        )

    for edge in event.delete_edges:
        yield BatchItem(
            query=_DELETE_EDGE,
            args=[edge.source_uid, edge.dest_uid, edge.edge_type],
            action="deleteEdge",
            uid=edge.source_uid,
        )


def sync_data(dao: DAO, event: SyncEvent, cluster_name: str, response: SyncResponse) -> None:
    """Write the changes in ``event`` and fill ``response`` with the outcome.

    Statements that fail are recorded in the response's error lists. Raises
    ``DatabaseUnavailableError`` if the database could not be reached.
    """
    with slow_log(f"Slow Sync from cluster {cluster_name}."):
        batch = BatchWithRetry(dao, response)
        queue_error: DatabaseUnavailableError | None = None
        try:
            for item in _statements(event, cluster_name):
                batch.queue(item)
        except DatabaseUnavailableError as err:
            queue_error = err

        batch.flush()
        batch.wait()
        if queue_error is not None:
            logger.debug("Completed sync of cluster %12s with errors.", cluster_name)
            raise queue_error

        response.total_added = len(event.add_resources) - len(response.add_errors)
        response.total_updated = len(event.update_resources) - len(response.update_errors)
        response.total_deleted = len(event.delete_resources) - len(response.delete_errors)
        response.total_edges_added = len(event.add_edges) - len(response.add_edge_errors)
        response.total_edges_deleted = len(event.delete_edges) - len(response.delete_edge_errors)

        logger.debug("Completed sync of cluster %12s", cluster_name)
        if batch.conn_error is not None:
            raise batch.conn_error