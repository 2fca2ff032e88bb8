"""Builds the PostgreSQL statements used by the indexer."""

from __future__ import annotations

from typing import Any, Callable, Sequence


class QueryBuildError(ValueError):
    """A statement could not be built from the given template and parameters."""


SELECT_CLUSTER_UIDS = "SELECT uid FROM search.resources WHERE cluster=$1 AND uid!='cluster__$1'"
UPSERT_RESOURCE = (
    "INSERT into search.resources values($1,$2,$3) "
    "ON CONFLICT (uid) DO UPDATE SET data=$3 WHERE data!=$3"
)
UPDATE_RESOURCE = "UPDATE search.resources SET data=$2 WHERE uid=$1"
DELETE_RESOURCES_NOT_IN = "DELETE from search.resources WHERE cluster=$1 AND uid NOT IN ($2)"
DELETE_EDGES_NOT_IN = (
    "DELETE from search.edges WHERE cluster=$1 AND sourceid NOT IN ($2) OR destid NOT IN ($2)"
)
SELECT_CLUSTER_EDGES = (
    "SELECT sourceid, edgetype, destid FROM search.edges "
    "WHERE edgetype!='interCluster' AND cluster=$1"
)
INSERT_EDGE = (
    "INSERT into search.edges values($1,$2,$3,$4,$5,$6) "
    "ON CONFLICT (sourceid, destid, edgetype) DO NOTHING"
)
DELETE_EDGE = "DELETE from search.edges WHERE sourceid=$1 AND destid=$2 AND edgetype=$3"


def quote_identifier(name: str) -> str:
    """Quote a possibly dotted identifier, e.g. ``search.resources``."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


def literal(value: Any) -> str:
    """Render a value as an inline SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode()
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, (list, tuple)):
        return "(" + ", ".join(literal(item) for item in value) + ")"
    raise QueryBuildError(f"Unable to render a literal of type {type(value).__name__}")


_RESOURCES = quote_identifier("search.resources")
_EDGES = quote_identifier("search.edges")


class _Placeholders:
    """Collects prepared-statement arguments and hands out $n markers."""

    def __init__(self) -> None:
        self.args: list[Any] = []

    def __call__(self, value: Any) -> str:
        self.args.append(value)
        return f"${len(self.args)}"


def _where(*conditions: str) -> str:
    if len(conditions) == 1:
        return conditions[0]
    return "(" + " AND ".join(conditions) + ")"


def _invalid(query: str) -> QueryBuildError:
    return QueryBuildError(f"Invalid number of params for query [{query}]")


def _require(query: str, params: Sequence[Any], count: int, exact: bool) -> None:
    if len(params) < count or (exact and len(params) != count):
        raise _invalid(query)


def _uid_list(query: str, value: Any) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise QueryBuildError(f"Expected a list of uids for query [{query}]")
    return list(value)


def _select_cluster_uids(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(SELECT_CLUSTER_UIDS, params, 1, exact=False)
    p = _Placeholders()
    where = _where(f'("cluster" = {p(params[0])})', f'("uid" != {p(f"cluster__{params[0]}")})')
    return f'SELECT "uid" FROM {_RESOURCES} WHERE {where}', p.args


def _upsert_resource(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(UPSERT_RESOURCE, params, 3, exact=True)
    uid, cluster, data = params
    p = _Placeholders()
    values = f"({p(cluster)}, {p(data)}, {p(uid)})"
    sql = (
        f'INSERT INTO {_RESOURCES} ("cluster", "data", "uid") VALUES {values} '
        f'ON CONFLICT (uid) DO UPDATE SET "data"={p(data)} '
        f'WHERE ({_RESOURCES}."data" != {p(data)})'
    )
    return sql, p.args


def _update_resource(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(UPDATE_RESOURCE, params, 2, exact=True)
    uid, data = params
    if not isinstance(data, str):
        raise QueryBuildError(f"Resource data must be a string for query [{UPDATE_RESOURCE}]")
    p = _Placeholders()
    sql = f'UPDATE {_RESOURCES} SET "data"={p(data)} WHERE ("uid" = {p(uid)})'
    return sql, p.args


def _delete_resources_not_in(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(DELETE_RESOURCES_NOT_IN, params, 2, exact=False)
    uids = _uid_list(DELETE_RESOURCES_NOT_IN, params[1])
    where = _where(f'("cluster" = {literal(params[0])})', f'("uid" NOT IN {literal(uids)})')
    return f"DELETE FROM {_RESOURCES} WHERE {where}", []


def _delete_edges_not_in(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(DELETE_EDGES_NOT_IN, params, 2, exact=False)
    uids = literal(_uid_list(DELETE_EDGES_NOT_IN, params[1]))
    either = f'(("sourceid" NOT IN {uids}) OR ("destid" NOT IN {uids}))'
    where = _where(f'("cluster" = {literal(params[0])})', either)
    return f"DELETE FROM {_EDGES} WHERE {where}", []


def _select_cluster_edges(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(SELECT_CLUSTER_EDGES, params, 1, exact=False)
    p = _Placeholders()
    where = _where(f'("edgetype" != {p("interCluster")})', f'("cluster" = {p(params[0])})')
    return f'SELECT "sourceid", "edgetype", "destid" FROM {_EDGES} WHERE {where}', p.args


def _insert_edge(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(INSERT_EDGE, params, 6, exact=True)
    p = _Placeholders()
    values = ", ".join(p(value) for value in params)
    sql = (
        f'INSERT INTO {_EDGES} ("sourceid", "sourcekind", "destid", "destkind", '
        f'"edgetype", "cluster") VALUES ({values}) ON CONFLICT DO NOTHING'
    )
    return sql, p.args


def _delete_edge(params: Sequence[Any]) -> tuple[str, list[Any]]:
    _require(DELETE_EDGE, params, 3, exact=True)
    source, dest, edge_type = params
    p = _Placeholders()
    where = _where(
        f'("sourceid" = {p(source)})', f'("destid" = {p(dest)})', f'("edgetype" = {p(edge_type)})'
    )
    return f"DELETE FROM {_EDGES} WHERE {where}", p.args


_BUILDERS: dict[str, Callable[[Sequence[Any]], tuple[str, list[Any]]]] = {
    SELECT_CLUSTER_UIDS: _select_cluster_uids,
    UPSERT_RESOURCE: _upsert_resource,
    UPDATE_RESOURCE: _update_resource,
    DELETE_RESOURCES_NOT_IN: _delete_resources_not_in,
    DELETE_EDGES_NOT_IN: _delete_edges_not_in,
    SELECT_CLUSTER_EDGES: _select_cluster_edges,
    INSERT_EDGE: _insert_edge,
    DELETE_EDGE: _delete_edge,
}


def build_query(query: str, params: Sequence[Any]) -> tuple[str, list[Any]]:
    """Build the SQL and arguments for one of the known query templates."""
    builder = _BUILDERS.get(query)
    if builder is None:
        raise QueryBuildError(f"Unable to build query for [{query}]")
    return builder(list(params))