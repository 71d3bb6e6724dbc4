import hashlib
import json
from pathlib import Path

import pytest

from clipstream_core.alignment.relate import AlignmentRules, RelationshipFinder
from clipstream_core.embeddings.edges import EdgeKind, InMemoryEdgeLog
from clipstream_core.embeddings.store import EmbeddingStore
from clipstream_core.embeddings.stub import StubVideoEmbedder
from clipstream_core.errors import PermanentError, RecoverableError
from clipstream_core.ingestion.stages import (
    AnalyzeExecutor,
    DuplicateCheckExecutor,
    TranscodeExecutor,
    TranscribeExecutor,
)
from clipstream_core.ingestion.transcribe import TranscriptSegment
from clipstream_core.pipeline.executors import run_stage
from clipstream_core.pipeline.types import OutcomeKind, VideoReference
from clipstream_core.similarity.index import BruteForceIndex
from clipstream_core.storage.object_store import ObjectStore
from clipstream_core.storage.paths import VideoPaths, raw_upload_key


@pytest.fixture
def store(tmp_path) -> ObjectStore:
    return ObjectStore.from_base_uri(str(tmp_path / "objects"))


def _upload(store: ObjectStore, video_id: str, payload: bytes) -> VideoReference:
    key = raw_upload_key(video_id)
    store.write_bytes(key, payload)
    return VideoReference(
        video_id=video_id,
        source_key=key,
        created_at=1.0,
        duration_seconds=12.0,
    )


def test_duplicate_check_reports_fingerprint_and_duration(store):
    video = _upload(store, "video-1", b"frames" * 100)
    probes = []

    def fake_probe(object_store, key, max_bytes):
        probes.append(key)
        return 12.5

    executor = DuplicateCheckExecutor(store, chunk_bytes=4096, duration_probe=fake_probe)
    output = executor.execute(video, {})
    assert output.data["fingerprint"].startswith("sha256:")
    assert output.data["duration_seconds"] == 12.5
    assert output.data["size_bytes"] == 600
    assert probes == [video.source_key]


def test_duplicate_check_rejects_oversized_upload(store):
    video = _upload(store, "video-1", b"x" * 100)
    executor = DuplicateCheckExecutor(
        store,
        max_raw_bytes=10,
        duration_probe=lambda *_args: 1.0,
    )
    with pytest.raises(PermanentError):
        executor.execute(video, {})


def test_missing_upload_is_classified_retryable(store):
    video = VideoReference("video-1", raw_upload_key("video-1"), created_at=1.0)
    executor = DuplicateCheckExecutor(store, duration_probe=lambda *_args: 1.0)
    result = run_stage(executor, video, {})
    assert result.kind is OutcomeKind.RETRYABLE
    assert result.error.code == "RECOVERABLE"
    assert result.duration_ms is not None


def _fake_transcode(calls):
    def transcode(input_path, output_dir, rendition):
        calls.append(rendition.quality)
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        playlist = Path(output_dir) / "index.m3u8"
        playlist.write_text("#EXTM3U\n")
        (Path(output_dir) / "segment-00000.ts").write_bytes(b"ts")
        return str(playlist)

    return transcode


def _fake_thumbnail(input_path, output_path, at_seconds):
    Path(output_path).write_bytes(b"jpeg")
    return output_path


def test_transcode_writes_renditions_then_master(store):
    video = _upload(store, "video-1", b"raw video")
    calls = []
    executor = TranscodeExecutor(
        store,
        ("720p", "480p"),
        transcode_fn=_fake_transcode(calls),
        thumbnail_fn=_fake_thumbnail,
    )
    output = executor.execute(video, {})
    paths = VideoPaths("video-1")

    assert calls == ["720p", "480p"]
    assert output.object_key == paths.master_manifest
    assert output.data["qualities"] == ["720p", "480p"]
    assert store.exists(f"{paths.rendition('720p')}/index.m3u8")
    assert store.exists(f"{paths.rendition('480p')}/segment-00000.ts")
    assert store.read_bytes(paths.thumbnail) == b"jpeg"
    manifest = store.read_bytes(paths.master_manifest).decode("utf-8")
    assert "720p/index.m3u8" in manifest
    assert "BANDWIDTH=1600000" in manifest

    # A rerun after success is a no-op.
    executor.execute(video, {})
    assert calls == ["720p", "480p"]


def test_transcode_failure_leaves_no_master(store):
    video = _upload(store, "video-1", b"raw video")

    def failing_transcode(input_path, output_dir, rendition):
        raise RecoverableError("ffmpeg transcode 720p failed: killed")

    executor = TranscodeExecutor(
        store,
        ("720p",),
        transcode_fn=failing_transcode,
        thumbnail_fn=_fake_thumbnail,
    )
    with pytest.raises(RecoverableError):
        executor.execute(video, {})
    assert not store.exists(VideoPaths("video-1").master_manifest)


def test_transcribe_writes_transcript(store, tmp_path):
    video = _upload(store, "video-1", b"raw video")
    audio = tmp_path / "audio.wav"

    def fake_audio(path):
        audio.write_bytes(b"wav")
        return str(audio)

    def fake_transcribe(path, duration_seconds):
        return [
            TranscriptSegment(0, 0, 1500, "gg", "en"),
            TranscriptSegment(1, 1500, 3000, "nice shot", "en"),
        ]

    executor = TranscribeExecutor(
        store,
        audio_fn=fake_audio,
        transcribe_fn=fake_transcribe,
    )
    output = executor.execute(video, {})
    payload = json.loads(store.read_bytes(output.object_key))
    assert payload["language"] == "en"
    assert payload["skipped"] is False
    assert [segment["text"] for segment in payload["segments"]] == ["gg", "nice shot"]
    assert output.data["segment_count"] == 2
    assert not audio.exists()


def test_disabled_transcription_still_records_output(store):
    video = _upload(store, "video-1", b"raw video")
    executor = TranscribeExecutor(store, enabled=False)
    output = executor.execute(video, {})
    payload = json.loads(store.read_bytes(output.object_key))
    assert payload["skipped"] is True
    assert payload["segments"] == []


def _analyze_executor(store: ObjectStore) -> AnalyzeExecutor:
    embeddings = EmbeddingStore(
        BruteForceIndex(metric="euclidean", dim=8),
        InMemoryEdgeLog(),
        object_store=store,
        dim=8,
    )
    finder = RelationshipFinder(
        embeddings,
        AlignmentRules(metric="euclidean"),
        similarity_threshold=0.01,
        shortlist_k=5,
    )
    return AnalyzeExecutor(store, embeddings, StubVideoEmbedder(8), finder)


def test_analyze_embeds_and_relates(store):
    executor = _analyze_executor(store)
    payload = b"".join(hashlib.sha256(str(i).encode()).digest() for i in range(320))
    source = _upload(store, "source", payload)
    source = VideoReference("source", source.source_key, 1.0, duration_seconds=40.0)
    output = executor.execute(source, {})
    assert output.data["window_count"] == 40
    assert output.object_key == VideoPaths("source").embeddings
    assert store.exists(output.object_key)

    # Stub windows are seeded by their bytes, so a byte-aligned cut of the
    # upload reproduces the matching windows of the source.
    step = len(payload) // 40
    clip = _upload(store, "clip", payload[10 * step : 20 * step])
    clip = VideoReference("clip", clip.source_key, 2.0, duration_seconds=10.0)
    output = executor.execute(clip, {})
    assert output.data["window_count"] == 10

    [edge] = executor.embeddings.relationships("clip", EdgeKind.TRIMMED_FROM)
    assert edge.video_b == "source"
    assert edge.offset == 10


def test_analyze_reuses_persisted_embeddings(store):
    executor = _analyze_executor(store)
    video = _upload(store, "video-1", b"abc" * 300)
    video = VideoReference("video-1", video.source_key, 1.0, duration_seconds=5.0)
    executor.execute(video, {})

    restarted = _analyze_executor(store)
    store.fs.rm(store.join(video.source_key))
    output = restarted.execute(video, {})
    assert output.data["window_count"] == 5
