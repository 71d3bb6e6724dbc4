from __future__ import annotations

import hashlib
import math
import os
import random
import tempfile
from typing import BinaryIO, Iterable, Protocol

from PIL import Image

from clipstream_core.errors import PermanentError
from clipstream_core.ingestion.media import extract_frames


class VideoEmbedder(Protocol):
    dim: int

    def encode_windows(
        self,
        path: str,
        duration_seconds: float,
        window_seconds: float,
    ) -> list[list[float]]: ...


def _model_dir() -> str:
    return os.getenv("MODEL_DIR", "/app/models")


def _image_model_name() -> str:
    return os.getenv("IMAGE_MODEL_NAME", "openai/clip-vit-base-patch32")


def _embedding_device() -> str:
    return os.getenv("EMBEDDING_DEVICE", "cpu")


_READ_BLOCK_BYTES = 1 << 20


def _seed_from_bytes(payload: bytes) -> int:
    digest = hashlib.sha256(payload).digest()
    return int.from_bytes(digest[:8], "big")


def _window_seed(handle: BinaryIO, start: int, length: int, index: int) -> int:
    if length <= 0:
        return _seed_from_bytes(index.to_bytes(8, "big"))
    digest = hashlib.sha256()
    handle.seek(start)
    remaining = length
    while remaining > 0:
        block = handle.read(min(remaining, _READ_BLOCK_BYTES))
        if not block:
            break
        digest.update(block)
        remaining -= len(block)
    return int.from_bytes(digest.digest()[:8], "big")


def _deterministic_vector(seed: int, dim: int) -> list[float]:
    rng = random.Random(seed)
    return [rng.uniform(-1.0, 1.0) for _ in range(dim)]


def window_count(duration_seconds: float, window_seconds: float) -> int:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    return max(1, math.ceil(duration_seconds / window_seconds))


class StubVideoEmbedder:
    """One deterministic vector per window, seeded from that window's bytes."""

    def __init__(self, dim: int) -> None:
        self.dim = dim

    def encode_windows(
        self,
        path: str,
        duration_seconds: float,
        window_seconds: float,
    ) -> list[list[float]]:
        size = os.path.getsize(path)
        count = window_count(duration_seconds, window_seconds)
        step = max(1, math.ceil(size / count))
        vectors: list[list[float]] = []
        with open(path, "rb") as handle:
            for index in range(count):
                start = index * step
                length = max(0, min(step, size - start))
                seed = _window_seed(handle, start, length, index)
                vectors.append(_deterministic_vector(seed, self.dim))
        return vectors


class RealClipVideoEmbedder:
    """CLIP image features of one frame sampled per window."""

    def __init__(self) -> None:
        from transformers import CLIPModel, CLIPProcessor

        model_name = _image_model_name()
        cache_dir = _model_dir()
        self.device = _embedding_device()
        self.model = CLIPModel.from_pretrained(model_name, cache_dir=cache_dir)
        self.processor = CLIPProcessor.from_pretrained(model_name, cache_dir=cache_dir)
        self.model.to(self.device)
        self.model.eval()
        self.dim = int(self.model.config.projection_dim)

    def encode(self, images: Iterable[Image.Image]) -> list[list[float]]:
        import torch

        inputs = self.processor(images=list(images), return_tensors="pt")
        inputs = {key: value.to(self.device) for key, value in inputs.items()}
        with torch.no_grad():
            features = self.model.get_image_features(**inputs)
            features = torch.nn.functional.normalize(features, p=2, dim=-1)
        return features.cpu().numpy().tolist()

    def encode_windows(
        self,
        path: str,
        duration_seconds: float,
        window_seconds: float,
    ) -> list[list[float]]:
        with tempfile.TemporaryDirectory() as frame_dir:
            frames = extract_frames(path, 1.0 / window_seconds, frame_dir)
            if not frames:
                raise PermanentError("No frames extracted for embedding")
            vectors: list[list[float]] = []
            batch_size = 32
            for start in range(0, len(frames), batch_size):
                images = []
                for frame in frames[start : start + batch_size]:
                    with Image.open(frame) as image:
                        images.append(image.convert("RGB"))
                vectors.extend(self.encode(images))
        return vectors


_STUB_CACHE: dict[int, StubVideoEmbedder] = {}
_REAL_VIDEO: RealClipVideoEmbedder | None = None


def get_video_embedder(dim: int, use_real_models: bool = False) -> VideoEmbedder:
    global _REAL_VIDEO
    if use_real_models:
        if _REAL_VIDEO is None:
            _REAL_VIDEO = RealClipVideoEmbedder()
        return _REAL_VIDEO
    embedder = _STUB_CACHE.get(dim)
    if embedder is None:
        embedder = StubVideoEmbedder(dim)
        _STUB_CACHE[dim] = embedder
    return embedder
