import hashlib
from pathlib import Path

import pytest

from clipstream_core.errors import RecoverableError, ValidationError
from clipstream_core.ingestion.fingerprint import fingerprint_object, sample_offsets
from clipstream_core.storage.object_store import ObjectStore


def _store(tmp_path: Path) -> ObjectStore:
    return ObjectStore.from_base_uri(str(tmp_path / "objects"))


def test_full_fingerprint_hashes_every_byte(tmp_path):
    store = _store(tmp_path)
    payload = b"gameplay" * 5000
    store.write_bytes("raw-uploads/a", payload)
    store.write_bytes("raw-uploads/b", payload)
    store.write_bytes("raw-uploads/c", payload + b"!")

    first = fingerprint_object(store, "raw-uploads/a", chunk_bytes=4096)
    second = fingerprint_object(store, "raw-uploads/b", chunk_bytes=4096)
    third = fingerprint_object(store, "raw-uploads/c", chunk_bytes=4096)

    assert first.value == f"sha256:{hashlib.sha256(payload).hexdigest()}"
    assert first.size_bytes == len(payload)
    assert first == second
    assert first.value != third.value


def test_sample_offsets_cover_head_and_tail():
    assert sample_offsets(1000, 4096, 2) == [0]
    assert sample_offsets(40960, 4096, 2) == [0, 12288, 24576, 36864]


def test_sampled_fingerprint_only_reads_sampled_chunks(tmp_path):
    store = _store(tmp_path)
    payload = bytearray(b"\x00" * 40960)
    store.write_bytes("raw-uploads/base", bytes(payload))

    unsampled = bytearray(payload)
    unsampled[8000] = 1
    store.write_bytes("raw-uploads/unsampled", bytes(unsampled))

    sampled = bytearray(payload)
    sampled[13000] = 1
    store.write_bytes("raw-uploads/sampled", bytes(sampled))

    def run(key: str) -> str:
        return fingerprint_object(
            store,
            key,
            mode="sampled",
            chunk_bytes=4096,
            samples=2,
        ).value

    base = run("raw-uploads/base")
    assert base.startswith("sampled-sha256:")
    assert run("raw-uploads/unsampled") == base
    assert run("raw-uploads/sampled") != base


def test_sampled_fingerprint_includes_size(tmp_path):
    store = _store(tmp_path)
    store.write_bytes("raw-uploads/short", b"\x00" * 100)
    store.write_bytes("raw-uploads/long", b"\x00" * 101)
    short = fingerprint_object(store, "raw-uploads/short", mode="sampled")
    long = fingerprint_object(store, "raw-uploads/long", mode="sampled")
    assert short.value != long.value


def test_missing_object_is_retryable(tmp_path):
    store = _store(tmp_path)
    with pytest.raises(RecoverableError):
        fingerprint_object(store, "raw-uploads/missing")


def test_unknown_mode_is_rejected(tmp_path):
    store = _store(tmp_path)
    store.write_bytes("raw-uploads/a", b"data")
    with pytest.raises(ValidationError):
        fingerprint_object(store, "raw-uploads/a", mode="partial")
