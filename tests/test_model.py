import json

import pytest

from search_indexer.model import (
    DeleteResourceEvent,
    Edge,
    Resource,
    SyncError,
    SyncEvent,
    SyncResponse,
)

EVENT = {
    "addResources": [
        {"kind": "Pod", "uid": "local/pod-a", "properties": {"name": "pod-a", "cpu": 1}},
        {"kind": "Pod", "uid": "local/pod-b", "Properties": {"name": "pod-b"}},
    ],
    "updateResources": [{"kind": "Pod", "uid": "local/pod-c", "properties": {}}],
    "deleteResources": [{"uid": "local/pod-d"}],
    "addEdges": [
        {"SourceUID": "local/pod-a", "DestUID": "local/node-1", "EdgeType": "runsOn",
         "SourceKind": "Pod", "DestKind": "Node"}
    ],
    "deleteEdges": [{"sourceUID": "local/pod-b", "destUID": "local/node-1", "edgeType": "runsOn"}],
}


def test_resource_from_dict_reads_fields():
    resource = Resource.from_dict(EVENT["addResources"][0])
    assert resource.kind == "Pod"
    assert resource.uid == "local/pod-a"
    assert resource.properties == {"name": "pod-a", "cpu": 1}
    assert resource.resource_string == ""


def test_resource_properties_key_is_case_insensitive():
    resource = Resource.from_dict(EVENT["addResources"][1])
    assert resource.properties == {"name": "pod-b"}


def test_resource_missing_properties_is_empty():
    assert Resource.from_dict({"uid": "x"}).properties == {}


def test_resource_rejects_non_object():
    with pytest.raises(ValueError):
        Resource.from_dict(["not", "an", "object"])


def test_resource_rejects_wrong_type():
    with pytest.raises(ValueError):
        Resource.from_dict({"uid": 5})


def test_edge_from_dict_case_insensitive():
    first = Edge.from_dict(EVENT["addEdges"][0])
    second = Edge.from_dict(EVENT["deleteEdges"][0])
    assert first.source_uid == "local/pod-a"
    assert first.dest_kind == "Node"
    assert second.source_uid == "local/pod-b"
    assert second.edge_type == "runsOn"
    assert second.source_kind == ""


def test_delete_resource_event_from_dict():
    assert DeleteResourceEvent.from_dict({"uid": "local/pod-d"}).uid == "local/pod-d"


def test_sync_event_from_dict_counts():
    event = SyncEvent.from_dict(json.loads(json.dumps(EVENT)))
    assert len(event.add_resources) == len(EVENT["addResources"])
    assert len(event.update_resources) == len(EVENT["updateResources"])
    assert [d.uid for d in event.delete_resources] == ["local/pod-d"]
    assert len(event.add_edges) == len(EVENT["addEdges"])
    assert len(event.delete_edges) == len(EVENT["deleteEdges"])


def test_sync_event_null_lists_are_empty():
    event = SyncEvent.from_dict({"addResources": None})
    assert event.add_resources == []
    assert event.delete_edges == []


def test_sync_event_rejects_non_array():
    with pytest.raises(ValueError):
        SyncEvent.from_dict({"addEdges": {"a": 1}})


def test_sync_response_to_dict_uses_wire_names():
    response = SyncResponse(total_added=3, version="v")
    response.add_errors.append(SyncError("uid-1", "boom"))
    data = response.to_dict()
    assert data["TotalAdded"] == 3
    assert data["Version"] == "v"
    assert data["AddErrors"] == [{"ResourceUID": "uid-1", "Message": "boom"}]
    assert data["DeleteEdgeErrors"] == []
    assert set(data) >= {"TotalEdgesAdded", "TotalEdgesDeleted", "UpdateErrors"}


def test_sync_response_to_dict_is_json_serialisable():
    data = SyncResponse().to_dict()
    assert json.loads(json.dumps(data)) == data