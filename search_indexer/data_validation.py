"""Counts of stored resources and edges, used to validate a cluster's data."""

from __future__ import annotations

import logging

from search_indexer.connection import DAO
from search_indexer.queries import literal, quote_identifier

logger = logging.getLogger(__name__)


def cluster_totals(dao: DAO, cluster_name: str) -> tuple[int, int]:
    """Return the number of resources and edges stored for ``cluster_name``.

    The cluster pseudo-node and inter-cluster edges are not counted.
    """
    cluster = literal(cluster_name)
    resources_sql = (
        f"SELECT COUNT(*) FROM {quote_identifier('search.resources')} "
        f'WHERE (("cluster" = {cluster}) AND ("uid" != {literal("cluster__" + cluster_name)}))'
    )
    edges_sql = (
        f"SELECT COUNT(*) FROM {quote_identifier('search.edges')} "
        f'WHERE (("cluster" = {cluster}) AND ("edgetype" != {literal("interCluster")}))'
    )
    logger.debug(
        "Data validation queries for cluster %s - resources: %s edges: %s",
        cluster_name,
        resources_sql,
        edges_sql,
    )

    results = dao.pool.send_batch([(resources_sql, []), (edges_sql, [])])
    try:
        try:
            resources = int(results.query_row()[0])
        except Exception as err:
            logger.error("Error reading total resources for cluster %s err: %s", cluster_name, err)
            raise
        try:
            edges = int(results.query_row()[0])
        except Exception as err:
            logger.error("Error reading total edges for cluster %s err: %s", cluster_name, err)
            raise
    finally:
        try:
            results.close()
        except Exception as err:  # noqa: BLE001 - the counts are already read
            logger.debug("Error closing batch results: %s", err)
    return resources, edges