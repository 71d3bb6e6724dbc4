import pytest

from clipstream_core.embeddings.edges import (
    EdgeKind,
    InMemoryEdgeLog,
    RelationshipEdge,
    SqliteEdgeLog,
)
from clipstream_core.errors import ValidationError


@pytest.fixture(params=["memory", "sqlite"])
def edges(request, tmp_path):
    if request.param == "memory":
        return InMemoryEdgeLog()
    return SqliteEdgeLog(str(tmp_path / "catalog.db"))


def test_undirected_edges_are_stored_once(edges):
    assert edges.upsert(RelationshipEdge("b", "a", EdgeKind.SIMILAR, 0.1, created_at=1.0))
    assert not edges.upsert(
        RelationshipEdge("a", "b", EdgeKind.SIMILAR, 0.05, created_at=2.0)
    )
    stored = edges.edges_for("a")
    assert len(stored) == 1
    assert (stored[0].video_a, stored[0].video_b) == ("a", "b")
    assert stored[0].score == 0.05
    assert stored[0].created_at == 1.0
    assert edges.edges_for("b") == stored


def test_directed_edges_keep_orientation(edges):
    edges.upsert(
        RelationshipEdge(
            "clip",
            "source",
            EdgeKind.TRIMMED_FROM,
            0.01,
            offset=42,
            dtw_cost=0.01,
            created_at=1.0,
        )
    )
    [edge] = edges.edges_for("source", EdgeKind.TRIMMED_FROM)
    assert edge.video_a == "clip"
    assert edge.offset == 42
    assert edge.other("source") == "clip"
    assert edges.edges_for("source", EdgeKind.POV) == []


def test_a_video_has_at_most_one_canonical(edges):
    assert edges.upsert(RelationshipEdge("copy", "orig", EdgeKind.DUPLICATE, 0.0))
    assert not edges.upsert(RelationshipEdge("copy", "orig", EdgeKind.DUPLICATE, 0.0))
    with pytest.raises(ValidationError):
        edges.upsert(RelationshipEdge("copy", "other", EdgeKind.DUPLICATE, 0.0))
    assert edges.duplicate_of("copy").video_b == "orig"
    assert edges.duplicate_of("orig") is None


def test_invalid_edges_are_rejected(edges):
    with pytest.raises(ValidationError):
        edges.upsert(RelationshipEdge("a", "a", EdgeKind.SIMILAR, 0.0))
    with pytest.raises(ValidationError):
        edges.upsert(RelationshipEdge("a", "b", EdgeKind.POV, 0.1, offset=3))


def test_count_by_kind(edges):
    edges.upsert(RelationshipEdge("a", "b", EdgeKind.SIMILAR, 0.1))
    edges.upsert(RelationshipEdge("a", "c", EdgeKind.POV, 0.2))
    edges.upsert(RelationshipEdge("b", "c", EdgeKind.POV, 0.2))
    assert edges.count_by_kind() == {"similar": 1, "pov": 2}
