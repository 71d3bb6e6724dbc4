from clipstream_core.embeddings.edges import (
    EdgeKind,
    EdgeLog,
    InMemoryEdgeLog,
    RelationshipEdge,
    SqliteEdgeLog,
)
from clipstream_core.embeddings.store import EmbeddingStore, TimelineEntry, VideoEmbedding
from clipstream_core.embeddings.stub import (
    StubVideoEmbedder,
    VideoEmbedder,
    get_video_embedder,
)

__all__ = [
    "EdgeKind",
    "EdgeLog",
    "EmbeddingStore",
    "InMemoryEdgeLog",
    "RelationshipEdge",
    "SqliteEdgeLog",
    "StubVideoEmbedder",
    "TimelineEntry",
    "VideoEmbedder",
    "VideoEmbedding",
    "get_video_embedder",
]
