from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Callable, Mapping

from clipstream_core.alignment.relate import RelationshipFinder
from clipstream_core.embeddings.store import EmbeddingStore
from clipstream_core.embeddings.stub import VideoEmbedder
from clipstream_core.errors import PermanentError
from clipstream_core.ingestion.download import cleanup_tmp, download_to_tmp
from clipstream_core.ingestion.fingerprint import fingerprint_object, probe_duration
from clipstream_core.ingestion.media import (
    Rendition,
    extract_audio,
    extract_thumbnail,
    master_playlist,
    rendition_for,
    transcode_hls,
)
from clipstream_core.ingestion.transcribe import TranscriptSegment, transcribe_audio
from clipstream_core.logging import get_logger
from clipstream_core.pipeline.states import Stage
from clipstream_core.pipeline.types import StageOutput, VideoReference
from clipstream_core.storage.object_store import ObjectStore
from clipstream_core.storage.paths import VideoPaths

logger = get_logger(__name__)

DurationProbe = Callable[[ObjectStore, str, int], float]
TranscodeFn = Callable[[str, str, Rendition], str]
ThumbnailFn = Callable[[str, str, float], str]
AudioFn = Callable[[str], str]
TranscribeFn = Callable[[str, float], list[TranscriptSegment]]


class DuplicateCheckExecutor:
    """Computes the fingerprint and exact duration of the raw upload.

    The duplicate decision itself needs the catalog and is made by the
    orchestrator when it applies this output.
    """

    stage = Stage.DUPLICATE_CHECK

    def __init__(
        self,
        store: ObjectStore,
        *,
        mode: str = "full",
        chunk_bytes: int = 1024 * 1024,
        max_raw_bytes: int = 4_000_000_000,
        duration_probe: DurationProbe = probe_duration,
    ) -> None:
        self.store = store
        self.mode = mode
        self.chunk_bytes = chunk_bytes
        self.max_raw_bytes = max_raw_bytes
        self.duration_probe = duration_probe

    def execute(
        self,
        video: VideoReference,
        prior_outputs: Mapping[str, str],
    ) -> StageOutput:
        fingerprint = fingerprint_object(
            self.store,
            video.source_key,
            mode=self.mode,
            chunk_bytes=self.chunk_bytes,
        )
        if fingerprint.size_bytes > self.max_raw_bytes:
            raise PermanentError(f"Object too large: {fingerprint.size_bytes} bytes")
        duration = self.duration_probe(self.store, video.source_key, self.max_raw_bytes)
        return StageOutput(
            object_key=video.source_key,
            data={
                "fingerprint": fingerprint.value,
                "duration_seconds": duration,
                "size_bytes": fingerprint.size_bytes,
            },
        )


class TranscodeExecutor:
    """HLS renditions, master manifest and thumbnail.

    The master manifest is written last and marks the stage as done, so a
    rerun after a crash redoes a partial transcode and skips a complete one.
    """

    stage = Stage.TRANSCODE

    def __init__(
        self,
        store: ObjectStore,
        qualities: tuple[str, ...],
        *,
        max_raw_bytes: int = 4_000_000_000,
        transcode_fn: TranscodeFn = transcode_hls,
        thumbnail_fn: ThumbnailFn = extract_thumbnail,
    ) -> None:
        self.store = store
        self.renditions = [rendition_for(quality) for quality in qualities]
        self.max_raw_bytes = max_raw_bytes
        self.transcode_fn = transcode_fn
        self.thumbnail_fn = thumbnail_fn

    def execute(
        self,
        video: VideoReference,
        prior_outputs: Mapping[str, str],
    ) -> StageOutput:
        paths = VideoPaths(video.video_id)
        if self.store.exists(paths.master_manifest) and self.store.exists(
            paths.thumbnail
        ):
            logger.info(
                "Transcode output already present",
                extra={"video_id": video.video_id, "object_key": paths.master_manifest},
            )
            return self._output(paths)

        download = download_to_tmp(self.store, video.source_key, self.max_raw_bytes)
        try:
            with tempfile.TemporaryDirectory() as work_dir:
                for rendition in self.renditions:
                    output_dir = Path(work_dir) / rendition.quality
                    self.transcode_fn(download.path, str(output_dir), rendition)
                    for item in sorted(output_dir.iterdir()):
                        self.store.put_file(
                            str(item),
                            f"{paths.rendition(rendition.quality)}/{item.name}",
                        )
                thumb_path = str(Path(work_dir) / "thumbnail.jpg")
                at_seconds = min(1.0, (video.duration_seconds or 0.0) / 2.0)
                self.thumbnail_fn(download.path, thumb_path, at_seconds)
                self.store.put_file(thumb_path, paths.thumbnail)
            manifest = master_playlist(self.renditions)
            self.store.write_bytes(paths.master_manifest, manifest.encode("utf-8"))
        finally:
            cleanup_tmp(download.path)
        return self._output(paths)

    def _output(self, paths: VideoPaths) -> StageOutput:
        return StageOutput(
            object_key=paths.master_manifest,
            data={
                "thumbnail_key": paths.thumbnail,
                "qualities": [rendition.quality for rendition in self.renditions],
            },
        )


class TranscribeExecutor:
    stage = Stage.TRANSCRIBE

    def __init__(
        self,
        store: ObjectStore,
        *,
        enabled: bool = True,
        use_real_models: bool = False,
        max_raw_bytes: int = 4_000_000_000,
        audio_fn: AudioFn = extract_audio,
        transcribe_fn: TranscribeFn | None = None,
    ) -> None:
        self.store = store
        self.enabled = enabled
        self.use_real_models = use_real_models
        self.max_raw_bytes = max_raw_bytes
        self.audio_fn = audio_fn
        self.transcribe_fn = transcribe_fn or self._default_transcribe

    def _default_transcribe(
        self,
        path: str,
        duration_seconds: float,
    ) -> list[TranscriptSegment]:
        return transcribe_audio(
            path,
            duration_seconds,
            use_real_models=self.use_real_models,
        )

    def execute(
        self,
        video: VideoReference,
        prior_outputs: Mapping[str, str],
    ) -> StageOutput:
        key = VideoPaths(video.video_id).transcript
        if self.store.exists(key):
            return StageOutput(object_key=key)

        segments: list[TranscriptSegment] = []
        if self.enabled:
            download = download_to_tmp(self.store, video.source_key, self.max_raw_bytes)
            audio_path = None
            try:
                audio_path = self.audio_fn(download.path)
                segments = self.transcribe_fn(audio_path, video.duration_seconds or 0.0)
            finally:
                cleanup_tmp(download.path)
                if audio_path:
                    cleanup_tmp(audio_path)

        language = next(
            (segment.language for segment in segments if segment.language), None
        )
        payload = {
            "video_id": video.video_id,
            "language": language,
            "skipped": not self.enabled,
            "segments": [segment.to_dict() for segment in segments],
        }
        body = json.dumps(payload, ensure_ascii=True).encode("utf-8")
        self.store.write_bytes(key, body)
        return StageOutput(object_key=key, data={"segment_count": len(segments)})


class AnalyzeExecutor:
    """Per-window embeddings plus relationship edges for one video."""

    stage = Stage.ANALYZE

    def __init__(
        self,
        store: ObjectStore,
        embeddings: EmbeddingStore,
        embedder: VideoEmbedder,
        finder: RelationshipFinder,
        *,
        window_seconds: float = 1.0,
        max_raw_bytes: int = 4_000_000_000,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.embedder = embedder
        self.finder = finder
        self.window_seconds = window_seconds
        self.max_raw_bytes = max_raw_bytes

    def execute(
        self,
        video: VideoReference,
        prior_outputs: Mapping[str, str],
    ) -> StageOutput:
        paths = VideoPaths(video.video_id)
        entry = self.embeddings.get(video.video_id) or self.embeddings.load(
            video.video_id
        )
        if entry is None:
            download = download_to_tmp(self.store, video.source_key, self.max_raw_bytes)
            try:
                windows = self.embedder.encode_windows(
                    download.path,
                    video.duration_seconds or 0.0,
                    self.window_seconds,
                )
            finally:
                cleanup_tmp(download.path)
            if not windows:
                raise PermanentError("Embedder returned no windows")
            entry = self.embeddings.insert(
                video.video_id,
                windows,
                video.created_at,
                window_seconds=self.window_seconds,
            )

        edges = self.finder.relate(video.video_id)
        return StageOutput(
            object_key=paths.embeddings,
            data={"window_count": entry.window_count, "edge_count": len(edges)},
        )
