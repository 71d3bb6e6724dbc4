"""Content fingerprints for raw uploads.

``full`` hashes every byte and is the default. ``sampled`` hashes the size
plus the head, the tail and evenly spaced chunks, which is much cheaper for
multi-gigabyte uploads but only detects byte-identical copies with high
probability rather than certainty.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import BinaryIO

from clipstream_core.errors import RecoverableError, ValidationError
from clipstream_core.ingestion.download import cleanup_tmp, download_to_tmp
from clipstream_core.ingestion.media import probe_media
from clipstream_core.storage.object_store import ObjectStore

FINGERPRINT_MODES = ("full", "sampled")
DEFAULT_SAMPLE_COUNT = 8


@dataclass(frozen=True)
class Fingerprint:
    value: str
    size_bytes: int
    mode: str


def fingerprint_object(
    store: ObjectStore,
    key: str,
    *,
    mode: str = "full",
    chunk_bytes: int = 1024 * 1024,
    samples: int = DEFAULT_SAMPLE_COUNT,
) -> Fingerprint:
    if mode not in FINGERPRINT_MODES:
        raise ValidationError(f"Unsupported fingerprint mode: {mode}")
    size = store.size(key)
    try:
        with store.open(store.join(key), "rb") as handle:
            if mode == "full":
                digest = _full_digest(handle, chunk_bytes)
            else:
                digest = _sampled_digest(handle, size, chunk_bytes, samples)
    except FileNotFoundError as exc:
        raise RecoverableError(f"Object not found: {key}") from exc
    except OSError as exc:
        raise RecoverableError(f"Failed reading {key}: {exc}") from exc
    prefix = "sha256" if mode == "full" else "sampled-sha256"
    return Fingerprint(value=f"{prefix}:{digest}", size_bytes=size, mode=mode)


def _full_digest(handle: BinaryIO, chunk_bytes: int) -> str:
    digest = hashlib.sha256()
    for chunk in iter(lambda: handle.read(chunk_bytes), b""):
        digest.update(chunk)
    return digest.hexdigest()


def sample_offsets(size: int, chunk_bytes: int, samples: int) -> list[int]:
    """Start offsets of the sampled chunks, head and tail included."""
    if size <= chunk_bytes * (samples + 2):
        return [0]
    last = size - chunk_bytes
    offsets = {0, last}
    step = last / (samples + 1)
    for position in range(1, samples + 1):
        offsets.add(int(step * position))
    return sorted(offsets)


def _sampled_digest(
    handle: BinaryIO,
    size: int,
    chunk_bytes: int,
    samples: int,
) -> str:
    digest = hashlib.sha256()
    digest.update(str(size).encode("ascii"))
    if size <= chunk_bytes * (samples + 2):
        for chunk in iter(lambda: handle.read(chunk_bytes), b""):
            digest.update(chunk)
        return digest.hexdigest()
    for offset in sample_offsets(size, chunk_bytes, samples):
        handle.seek(offset)
        digest.update(handle.read(chunk_bytes))
    return digest.hexdigest()


def probe_duration(store: ObjectStore, key: str, max_bytes: int) -> float:
    """Exact duration in seconds, read with ffprobe from a local copy."""
    download = download_to_tmp(store, key, max_bytes)
    try:
        return probe_media(download.path).duration_seconds
    finally:
        cleanup_tmp(download.path)
