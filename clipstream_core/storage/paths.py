from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from urllib.parse import urlparse

RAW_UPLOADS_PREFIX = "raw-uploads"
PROCESSED_VIDEOS_PREFIX = "processed-videos"
THUMBNAILS_PREFIX = "thumbnails"
TRANSCRIPTS_PREFIX = "transcripts"
EMBEDDINGS_PREFIX = "embeddings"
MASTER_MANIFEST_NAME = "master.m3u8"


def _strip_slashes(value: str) -> str:
    return value.strip("/")


def _join_parts(parts: Iterable[str]) -> str:
    return "/".join(_strip_slashes(part) for part in parts if part)


def has_uri_scheme(value: str) -> bool:
    return bool(urlparse(value).scheme) and "://" in value


def join_uri(base_uri: str, *parts: str) -> str:
    parsed = urlparse(base_uri)
    if parsed.scheme == "file":
        safe_parts = [_strip_slashes(part) for part in parts if part]
        return str(Path(parsed.path).joinpath(*safe_parts))
    if parsed.scheme and parsed.netloc:
        base = base_uri.rstrip("/")
        return f"{base}/{_join_parts(parts)}"
    safe_parts = [_strip_slashes(part) for part in parts if part]
    return str(Path(base_uri).joinpath(*safe_parts))


def raw_upload_key(video_id: str) -> str:
    return _join_parts((RAW_UPLOADS_PREFIX, video_id))


def rendition_key(video_id: str, quality: str) -> str:
    return _join_parts((PROCESSED_VIDEOS_PREFIX, video_id, quality))


def master_manifest_key(video_id: str) -> str:
    return _join_parts((PROCESSED_VIDEOS_PREFIX, video_id, MASTER_MANIFEST_NAME))


def thumbnail_key(video_id: str) -> str:
    return _join_parts((THUMBNAILS_PREFIX, video_id))


def transcript_key(video_id: str) -> str:
    return _join_parts((TRANSCRIPTS_PREFIX, video_id))


def embeddings_key(video_id: str) -> str:
    return _join_parts((EMBEDDINGS_PREFIX, video_id))


@dataclass(frozen=True)
class VideoPaths:
    video_id: str

    @property
    def raw_upload(self) -> str:
        return raw_upload_key(self.video_id)

    def rendition(self, quality: str) -> str:
        return rendition_key(self.video_id, quality)

    @property
    def master_manifest(self) -> str:
        return master_manifest_key(self.video_id)

    @property
    def thumbnail(self) -> str:
        return thumbnail_key(self.video_id)

    @property
    def transcript(self) -> str:
        return transcript_key(self.video_id)

    @property
    def embeddings(self) -> str:
        return embeddings_key(self.video_id)
