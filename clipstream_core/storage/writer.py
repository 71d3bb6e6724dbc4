from __future__ import annotations

import hashlib
import os
import tempfile
from dataclasses import dataclass
from typing import Iterable, Mapping

import pyarrow as pa
import pyarrow.parquet as pq

from clipstream_core.storage.object_store import ObjectStore


@dataclass(frozen=True)
class WriteResult:
    uri: str
    rows: int
    bytes_written: int
    sha256: str


def _sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_parquet(
    rows: Iterable[Mapping[str, object]],
    schema: pa.Schema,
    store: ObjectStore,
    key: str,
    compression: str = "zstd",
) -> WriteResult:
    rows_list = rows if isinstance(rows, list) else list(rows)
    table = pa.Table.from_pylist(rows_list, schema=schema)
    with tempfile.NamedTemporaryFile(suffix=".parquet", delete=False) as tmp:
        tmp_path = tmp.name

    try:
        pq.write_table(table, tmp_path, compression=compression)
        bytes_written = os.path.getsize(tmp_path)
        checksum = _sha256_file(tmp_path)
        if store.is_remote:
            dest = store.put_file(tmp_path, key)
        else:
            dest = store.join(key)
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            os.replace(tmp_path, dest)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)

    return WriteResult(
        uri=dest,
        rows=table.num_rows,
        bytes_written=bytes_written,
        sha256=checksum,
    )


def read_parquet(store: ObjectStore, key: str) -> pa.Table:
    with store.open(store.join(key), "rb") as handle:
        return pq.read_table(handle)
