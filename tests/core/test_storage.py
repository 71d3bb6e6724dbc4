import pyarrow as pa

from clipstream_core.storage.object_store import ObjectStore
from clipstream_core.storage.paths import VideoPaths, join_uri
from clipstream_core.storage.writer import read_parquet, write_parquet


def test_video_paths():
    paths = VideoPaths("video-1")
    assert paths.raw_upload == "raw-uploads/video-1"
    assert paths.rendition("720p") == "processed-videos/video-1/720p"
    assert paths.master_manifest == "processed-videos/video-1/master.m3u8"
    assert paths.thumbnail == "thumbnails/video-1"
    assert paths.transcript == "transcripts/video-1"
    assert paths.embeddings == "embeddings/video-1"


def test_join_uri():
    remote = join_uri("s3://bucket/root", "raw-uploads", "a")
    assert remote == "s3://bucket/root/raw-uploads/a"
    assert join_uri("/srv/data", "/raw-uploads/", "a") == "/srv/data/raw-uploads/a"


def test_object_store_round_trip(tmp_path):
    store = ObjectStore.from_base_uri(str(tmp_path / "objects"))
    assert not store.exists("thumbnails/a")
    store.write_bytes("thumbnails/a", b"jpeg")
    store.write_bytes("thumbnails/b", b"png")
    assert store.read_bytes("thumbnails/a") == b"jpeg"
    assert store.size("thumbnails/b") == 3
    assert store.list_keys("thumbnails") == ["thumbnails/a", "thumbnails/b"]
    assert store.list_keys("missing") == []


def test_parquet_write_and_read(tmp_path):
    store = ObjectStore.from_base_uri(str(tmp_path / "objects"))
    schema = pa.schema([("video_id", pa.string()), ("score", pa.float64())])
    result = write_parquet(
        [{"video_id": "a", "score": 0.5}, {"video_id": "b", "score": 0.25}],
        schema,
        store,
        "tables/scores",
    )
    assert result.rows == 2
    assert len(result.sha256) == 64
    table = read_parquet(store, "tables/scores")
    assert table.column("video_id").to_pylist() == ["a", "b"]
