import numpy as np
import pytest

from clipstream_core.alignment.relate import AlignmentRules, RelationshipFinder
from clipstream_core.embeddings.edges import EdgeKind, InMemoryEdgeLog
from clipstream_core.embeddings.store import EmbeddingStore
from clipstream_core.similarity.index import BruteForceIndex

DIM = 16


def _unit(position: int, scale: float = 10.0) -> np.ndarray:
    vector = np.zeros(DIM)
    vector[position] = scale
    return vector


def _smooth_sequence(windows: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    steps = rng.normal(scale=0.05, size=(windows, DIM))
    return np.cumsum(steps, axis=0) + rng.normal(size=DIM)


@pytest.fixture
def finder() -> RelationshipFinder:
    store = EmbeddingStore(
        BruteForceIndex(metric="euclidean", dim=DIM),
        InMemoryEdgeLog(),
        dim=DIM,
    )
    rules = AlignmentRules(metric="euclidean")
    return RelationshipFinder(store, rules, similarity_threshold=0.5, shortlist_k=10)


def test_trimmed_clip_is_placed_on_its_source(finder):
    store = finder.store
    reference = np.random.default_rng(7).normal(size=(300, DIM))
    store.insert("source", reference, created_at=1.0, clip_vector=_unit(0))
    store.insert("clip", reference[100:131], created_at=2.0, clip_vector=_unit(1))

    [edge] = finder.relate("clip")
    assert edge.kind is EdgeKind.TRIMMED_FROM
    assert (edge.video_a, edge.video_b) == ("clip", "source")
    assert edge.offset == 100
    assert edge.dtw_cost == pytest.approx(0.0, abs=1e-9)

    [timeline] = store.trimmed_clips("source")
    assert timeline.video_id == "clip"
    assert timeline.offset_windows == 100


def test_source_analyzed_after_its_clip_still_links(finder):
    store = finder.store
    reference = np.random.default_rng(7).normal(size=(300, DIM))
    store.insert("clip", reference[40:80], created_at=1.0, clip_vector=_unit(1))
    store.insert("source", reference, created_at=2.0, clip_vector=_unit(0))

    [edge] = finder.relate("source")
    assert edge.kind is EdgeKind.TRIMMED_FROM
    assert (edge.video_a, edge.video_b) == ("clip", "source")
    assert edge.offset == 40


def test_same_moment_from_another_player_is_pov(finder):
    store = finder.store
    first = _smooth_sequence(100, seed=11)
    order = []
    for position in range(100):
        if position % 20 == 10:
            continue
        order.append(position)
        if position % 20 == 15:
            order.append(position)
    noise = np.random.default_rng(3).normal(scale=0.005, size=(len(order), DIM))
    second = first[order] + noise
    store.insert("player-1", first, created_at=1.0, clip_vector=_unit(2))
    store.insert("player-2", second, created_at=2.0, clip_vector=_unit(3))

    [edge] = finder.relate("player-2")
    assert edge.kind is EdgeKind.POV
    assert {edge.video_a, edge.video_b} == {"player-1", "player-2"}
    assert edge.offset is None


def test_close_but_unaligned_videos_are_similar(finder):
    store = finder.store
    rng = np.random.default_rng(21)
    near = _unit(4)
    near[5] = 0.1
    for video_id, windows, created_at, vector in (
        ("video-a", 40, 1.0, _unit(4)),
        ("video-b", 60, 2.0, near),
        ("video-c", 50, 3.0, _unit(6)),
    ):
        segments = rng.normal(size=(windows, DIM))
        store.insert(video_id, segments, created_at=created_at, clip_vector=vector)

    [edge] = finder.relate("video-b")
    assert edge.kind is EdgeKind.SIMILAR
    assert {edge.video_a, edge.video_b} == {"video-a", "video-b"}
    assert edge.score == pytest.approx(0.1)
    assert store.relationships("video-c") == []


def test_unknown_video_has_no_relationships(finder):
    assert finder.relate("missing") == []
