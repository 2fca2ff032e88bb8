"""Data exchanged between the collector and the indexer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypeVar

T = TypeVar("T")


def _fold(data: Any, what: str) -> dict[str, Any]:
    """Return the object's keys lower-cased; later duplicates win."""
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object, got {type(data).__name__}")
    return {str(key).lower(): value for key, value in data.items()}


def _string(folded: Mapping[str, Any], key: str, what: str) -> str:
    value = folded.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{what}.{key} must be a string, got {type(value).__name__}")
    return value


def _objects(
    folded: Mapping[str, Any], key: str, factory: Callable[[Any], T], what: str
) -> list[T]:
    value = folded.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what}.{key} must be a JSON array")
    return [factory(item) for item in value]


@dataclass
class Resource:
    """A resource (node) reported by a managed cluster."""

    kind: str = ""
    uid: str = ""
    resource_string: str = ""
    properties: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Resource:
        folded = _fold(data, "resource")
        properties = folded.get("properties")
        if properties is None:
            properties = {}
        elif not isinstance(properties, Mapping):
            raise ValueError("resource.properties must be a JSON object")
        return cls(
            kind=_string(folded, "kind", "resource"),
            uid=_string(folded, "uid", "resource"),
            resource_string=_string(folded, "resourcestring", "resource"),
            properties=dict(properties),
        )


@dataclass(frozen=True)
class Edge:
    """A relationship between two resources."""

    source_uid: str = ""
    dest_uid: str = ""
    edge_type: str = ""
    source_kind: str = ""
    dest_kind: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Edge:
        folded = _fold(data, "edge")
        return cls(
            source_uid=_string(folded, "sourceuid", "edge"),
            dest_uid=_string(folded, "destuid", "edge"),
            edge_type=_string(folded, "edgetype", "edge"),
            source_kind=_string(folded, "sourcekind", "edge"),
            dest_kind=_string(folded, "destkind", "edge"),
        )


@dataclass(frozen=True)
class DeleteResourceEvent:
    """Identifies a resource to delete."""

    uid: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> DeleteResourceEvent:
        folded = _fold(data, "deleteResource")
        return cls(uid=_string(folded, "uid", "deleteResource"))


@dataclass
class SyncEvent:
    """Changes sent by the collector for one cluster."""

    add_resources: list[Resource] = field(default_factory=list)
    update_resources: list[Resource] = field(default_factory=list)
    delete_resources: list[DeleteResourceEvent] = field(default_factory=list)
    add_edges: list[Edge] = field(default_factory=list)
    delete_edges: list[Edge] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> SyncEvent:
        folded = _fold(data, "syncEvent")
        return cls(
            add_resources=_objects(folded, "addresources", Resource.from_dict, "syncEvent"),
            update_resources=_objects(
                folded, "updateresources", Resource.from_dict, "syncEvent"
            ),
            delete_resources=_objects(
                folded, "deleteresources", DeleteResourceEvent.from_dict, "syncEvent"
            ),
            add_edges=_objects(folded, "addedges", Edge.from_dict, "syncEvent"),
            delete_edges=_objects(folded, "deleteedges", Edge.from_dict, "syncEvent"),
        )


@dataclass
class SyncError:
    """A resource that could not be written to the database."""

    resource_uid: str
    message: str


@dataclass
class SyncResponse:
    """Result of processing a sync event."""

    total_added: int = 0
    total_updated: int = 0
    total_deleted: int = 0
    total_resources: int = 0
    total_edges_added: int = 0
    total_edges_deleted: int = 0
    total_edges: int = 0
    add_errors: list[SyncError] = field(default_factory=list)
    update_errors: list[SyncError] = field(default_factory=list)
    delete_errors: list[SyncError] = field(default_factory=list)
    add_edge_errors: list[SyncError] = field(default_factory=list)
    delete_edge_errors: list[SyncError] = field(default_factory=list)
    version: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the response in its wire form."""

        def errors(items: list[SyncError]) -> list[dict[str, str]]:
            return [{"ResourceUID": e.resource_uid, "Message": e.message} for e in items]

        return {
            "TotalAdded": self.total_added,
            "TotalUpdated": self.total_updated,
            "TotalDeleted": self.total_deleted,
            "TotalResources": self.total_resources,
            "TotalEdgesAdded": self.total_edges_added,
            "TotalEdgesDeleted": self.total_edges_deleted,
            "TotalEdges": self.total_edges,
            "AddErrors": errors(self.add_errors),
            "UpdateErrors": errors(self.update_errors),
            "DeleteErrors": errors(self.delete_errors),
            "AddEdgeErrors": errors(self.add_edge_errors),
            "DeleteEdgeErrors": errors(self.delete_edge_errors),
            "Version": self.version,
        }