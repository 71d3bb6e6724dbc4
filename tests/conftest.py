import os
from pathlib import Path

import pytest

from clipstream_core.config import get_config


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _clipstream_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    def set_default(name: str, value: str) -> None:
        if not os.getenv(name):
            monkeypatch.setenv(name, value)

    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "objects"))
    monkeypatch.setenv("CATALOG_PATH", str(tmp_path / "catalog.db"))
    monkeypatch.setenv("USE_REAL_MODELS", "0")
    set_default("ENV", "test")
    set_default("LOG_LEVEL", "INFO")
    set_default("EMBEDDING_DIM", "8")
    set_default("MAX_RAW_BYTES", "500000000")
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
