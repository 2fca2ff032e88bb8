"""Keep a PostgreSQL search schema in step with managed-cluster resources and edges."""

__version__ = "0.1.0"

__all__ = [
    "batch",
    "cluster_cache",
    "connection",
    "data_validation",
    "metrics",
    "model",
    "queries",
    "resync",
    "slow_log",
    "sync",
    "upsert_cluster",
]