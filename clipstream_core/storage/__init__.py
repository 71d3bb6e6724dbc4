from clipstream_core.storage.object_store import ObjectStore, atomic_write_bytes
from clipstream_core.storage.paths import (
    VideoPaths,
    embeddings_key,
    join_uri,
    master_manifest_key,
    raw_upload_key,
    rendition_key,
    thumbnail_key,
    transcript_key,
)
from clipstream_core.storage.writer import WriteResult, read_parquet, write_parquet

__all__ = [
    "ObjectStore",
    "VideoPaths",
    "WriteResult",
    "atomic_write_bytes",
    "embeddings_key",
    "join_uri",
    "master_manifest_key",
    "raw_upload_key",
    "read_parquet",
    "rendition_key",
    "thumbnail_key",
    "transcript_key",
    "write_parquet",
]
