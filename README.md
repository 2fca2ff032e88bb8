# search-indexer

`search_indexer` keeps a PostgreSQL search schema in step with the resources
and relationships that managed clusters report. Resources are stored in
`search.resources` and edges between resources in `search.edges`. The package
needs only the standard library.

## Modules

- `search_indexer.model`: the data that is exchanged. It has `Resource`, `Edge`,
  `DeleteResourceEvent` and `SyncEvent`, each with a `from_dict` constructor.
  Key matching in `from_dict` ignores case. The module also has `SyncError`,
  and `SyncResponse`, whose `to_dict()` returns the response in its wire form.
- `search_indexer.connection`: `DAO` is the database access object, and
  `DatabasePool` is the protocol that its pool must follow.
  `DAO.initialize_tables(development_mode=False)` creates the `search` schema,
  its tables and its indexes. In development mode it first drops the schema.
  Errors during schema setup are logged and do not stop the run.
- `search_indexer.batch`: `BatchWithRetry` queues `BatchItem` statements. Once
  `dao.batch_size` statements are waiting, it sends them on a background thread.
  A batch that fails is split in halves and sent again until the failing
  statement is found. That statement is then recorded in the matching error
  list of the `SyncResponse`. A connection failure sets `conn_error` and makes
  any later `queue()` call raise `DatabaseUnavailableError`.
- `search_indexer.sync`: `sync_data(dao, event, cluster_name, response)` applies
  an incremental `SyncEvent` and fills in the response totals.
- `search_indexer.resync`: `resync_data(dao, cluster_name, response,
  request_body)` resets the stored data of a cluster to a full JSON request
  body. It upserts every incoming resource and inserts edges that are missing.
  It deletes resources and edges that were not sent, except the cluster
  pseudo-node `cluster__<name>`. When the last resource carries
  `_hubClusterResource`, the function starts a background thread running
  `hub_cluster_cleanup_with_retry` and returns that thread. The thread removes
  data stored under old hub cluster names.
- `search_indexer.upsert_cluster`: `upsert_cluster` writes a cluster pseudo-node
  only when it is not stored yet or its properties have changed. It uses a
  `ClustersCache` to decide. `delete_cluster_and_resources` deletes the
  resources and edges of a cluster in one transaction and, if asked, the
  cluster node too. Each deletion is retried with backoff until it succeeds.
  `get_managed_clusters` lists the clusters other than the hub.
- `search_indexer.data_validation`: `cluster_totals(dao, cluster_name)` returns
  `(resources, edges)`. The count leaves out the cluster pseudo-node and
  inter-cluster edges.
- `search_indexer.queries`: `build_query(template, params)` turns one of the
  known statement templates into SQL and arguments. It raises `QueryBuildError`
  when the template is unknown or the parameter count is wrong. The module also
  has `quote_identifier` and `literal`.
- `search_indexer.cluster_cache`: `ClustersCache` is a thread-safe map from
  cluster UIDs to their last stored properties.
- `search_indexer.metrics`: a small Prometheus-style `Registry` holding
  `Counter`, `Gauge` and `Histogram` metrics. `IndexerMetrics` registers the
  indexer's request metrics. `prometheus_middleware(app, metrics)` wraps a WSGI
  app and does three things for each request. It counts the request per
  managed cluster, taking the cluster from `/aggregator/clusters/<id>/...`
  paths. It records the request duration by status code. It tracks the number
  of requests in flight.
- `search_indexer.slow_log`: `slow_log(message)` is a context manager that logs a
  warning when its block runs slowly. `StepTimer.log_step` logs how long each
  step of a process took.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Using it

You supply the database pool. It must provide `execute`, `query`, `send_batch`
and `begin`, as described in `DatabasePool`.

```python
from search_indexer.connection import DAO
from search_indexer.model import SyncEvent, SyncResponse
from search_indexer.sync import sync_data

dao = DAO(pool)
dao.initialize_tables()

event = SyncEvent.from_dict(payload)
response = SyncResponse()
sync_data(dao, event, "cluster-a", response)
print(response.to_dict())
```

To run a full resync from a raw request body:

```python
from search_indexer.resync import resync_data

response = SyncResponse()
cleanup = resync_data(dao, "cluster-a", response, request_body)
if cleanup is not None:
    cleanup.join()
```

To build a statement from a template:

```python
from search_indexer.queries import build_query

sql, params = build_query(
    "SELECT uid FROM search.resources WHERE cluster=$1 AND uid!='cluster__$1'",
    ["cluster-a"],
)
```

To add request metrics to a WSGI app:

```python
from search_indexer.metrics import IndexerMetrics, prometheus_middleware

metrics = IndexerMetrics()
app = prometheus_middleware(app, metrics)
print(metrics.registry.render())
```

## What it does not do

- The package does not open database connections. It contains no PostgreSQL
  driver and no connection pool. Every database call goes through the pool you
  pass to `DAO`.
- The package has no HTTP server, no request routing and no command-line
  program. `prometheus_middleware` only wraps a WSGI application that you
  already have.
- The package reads no configuration from the environment or from files.
  Settings such as batch size and backoff are fields of `DAO`.