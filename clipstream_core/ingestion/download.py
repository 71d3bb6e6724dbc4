from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass

from clipstream_core.errors import PermanentError, RecoverableError
from clipstream_core.storage.object_store import ObjectStore


@dataclass(frozen=True)
class DownloadResult:
    path: str
    size_bytes: int


def download_to_tmp(
    store: ObjectStore,
    key: str,
    max_bytes: int,
    suffix: str = "",
) -> DownloadResult:
    """Copy a stored object to a local temp file for the media tools.

    A missing object is retryable since the upload may still be settling.
    """
    size_hint = store.size(key)
    if size_hint > max_bytes:
        raise PermanentError(f"Object too large: {size_hint} bytes")

    tmp_handle = tempfile.NamedTemporaryFile(delete=False, suffix=suffix)
    tmp_path = tmp_handle.name
    tmp_handle.close()

    try:
        size = 0
        with store.open(store.join(key), "rb") as reader, open(tmp_path, "wb") as writer:
            while True:
                chunk = reader.read(8 * 1024 * 1024)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise PermanentError("Download exceeded MAX_RAW_BYTES")
                writer.write(chunk)
    except Exception as exc:
        cleanup_tmp(tmp_path)
        if isinstance(exc, PermanentError):
            raise
        raise RecoverableError(f"Failed downloading {key}: {exc}") from exc

    return DownloadResult(path=tmp_path, size_bytes=size)


def cleanup_tmp(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        return
