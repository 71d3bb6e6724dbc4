from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from urllib.parse import urlparse

import fsspec

from clipstream_core.errors import RecoverableError


@dataclass(frozen=True)
class ObjectStore:
    base_uri: str
    fs: fsspec.AbstractFileSystem
    base_path: str
    is_remote: bool

    @classmethod
    def from_base_uri(cls, base_uri: str) -> "ObjectStore":
        parsed = urlparse(base_uri)
        if parsed.scheme == "file":
            base_path = parsed.path
            fs = fsspec.filesystem("file")
            return cls(base_uri=base_uri, fs=fs, base_path=base_path, is_remote=False)
        if parsed.scheme and parsed.netloc:
            fs, path = fsspec.core.url_to_fs(base_uri)
            return cls(base_uri=base_uri, fs=fs, base_path=path, is_remote=True)
        fs = fsspec.filesystem("file")
        base_path = str(Path(base_uri).resolve())
        return cls(base_uri=base_uri, fs=fs, base_path=base_path, is_remote=False)

    def join(self, *parts: str) -> str:
        safe_parts = [part.strip("/") for part in parts if part]
        if self.is_remote:
            return "/".join([self.base_path.rstrip("/"), *safe_parts])
        return str(Path(self.base_path).joinpath(*safe_parts))

    def uri(self, key: str) -> str:
        path = self.join(key)
        if self.is_remote:
            protocol = self.fs.protocol
            scheme = protocol[0] if isinstance(protocol, (tuple, list)) else protocol
            return f"{scheme}://{path}"
        return path

    def open(self, path: str, mode: str = "rb") -> BinaryIO:
        return self.fs.open(path, mode)

    def makedirs(self, path: str) -> None:
        self.fs.makedirs(path, exist_ok=True)

    def exists(self, key: str) -> bool:
        try:
            return bool(self.fs.exists(self.join(key)))
        except Exception as exc:
            raise RecoverableError(f"Failed to stat {key}: {exc}") from exc

    def size(self, key: str) -> int:
        path = self.join(key)
        try:
            info = self.fs.info(path)
        except FileNotFoundError as exc:
            raise RecoverableError(f"Object not found: {key}") from exc
        except Exception as exc:
            raise RecoverableError(f"Failed to stat {key}: {exc}") from exc
        size = info.get("size") or info.get("Size") or 0
        return int(size)

    def read_bytes(self, key: str) -> bytes:
        with self.open(self.join(key), "rb") as handle:
            return handle.read()

    def write_bytes(self, key: str, payload: bytes) -> str:
        path = self.join(key)
        if not self.is_remote:
            atomic_write_bytes(path, payload)
            return path
        self.makedirs("/".join(path.split("/")[:-1]))
        with self.open(path, "wb") as handle:
            handle.write(payload)
        return path

    def put_file(self, local_path: str, key: str) -> str:
        path = self.join(key)
        if not self.is_remote:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        else:
            self.makedirs("/".join(path.split("/")[:-1]))
        self.fs.put_file(local_path, path)
        return path

    def list_keys(self, prefix: str) -> list[str]:
        root = self.join(prefix)
        if not self.fs.exists(root):
            return []
        base = self.base_path.rstrip("/")
        keys: list[str] = []
        for entry in self.fs.ls(root, detail=False):
            name = str(entry)
            if name.startswith(base):
                name = name[len(base):]
            keys.append(name.strip("/").replace(os.sep, "/"))
        return sorted(keys)


def atomic_write_bytes(dest_path: str, payload: bytes) -> None:
    dest = Path(dest_path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(delete=False, dir=str(dest.parent)) as tmp:
        tmp.write(payload)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = tmp.name
    os.replace(tmp_path, dest_path)
