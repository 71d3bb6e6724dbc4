from __future__ import annotations

import json
import logging

import pytest

from clipstream_cli import cli
from clipstream_core import runtime as runtime_module
from clipstream_core.pipeline.executors import ExecutorRegistry
from clipstream_core.pipeline.states import Stage
from clipstream_core.pipeline.types import StageOutput


class _FakeExecutor:
    def __init__(self, stage: Stage) -> None:
        self.stage = stage

    def execute(self, video, prior_outputs):
        if self.stage is Stage.DUPLICATE_CHECK:
            return StageOutput(
                object_key=video.source_key,
                data={"fingerprint": "sha256:same", "duration_seconds": 3.0},
            )
        return StageOutput(object_key=f"{self.stage.value}/{video.video_id}")


@pytest.fixture(autouse=True)
def _restore_root_handlers():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def fake_stages(monkeypatch):
    def build_executors(config, object_store, embeddings, finder):
        return ExecutorRegistry({stage: _FakeExecutor(stage) for stage in Stage})

    monkeypatch.setattr(runtime_module, "build_executors", build_executors)


def _run(capsys, *argv: str):
    code = cli.main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def test_submit_copies_file_and_registers(capsys, tmp_path):
    upload = tmp_path / "match.mp4"
    upload.write_bytes(b"not really a video")

    code, out, _ = _run(capsys, "submit", "--video-id", "video-1", "--path", str(upload))
    assert code == 0
    status = json.loads(out)
    assert status["state"] == "duplicate_check"
    assert status["status_code"] == 1
    assert (tmp_path / "objects" / "raw-uploads" / "video-1").read_bytes() == (
        b"not really a video"
    )

    code, out, _ = _run(capsys, "queue-stats")
    assert json.loads(out)["depth"] == 1


def test_submit_missing_file(capsys, tmp_path):
    code, _, err = _run(
        capsys, "submit", "--video-id", "video-1", "--path", str(tmp_path / "nope")
    )
    assert code == 1
    assert "File not found" in err


def test_worker_drain_processes_queue(capsys, fake_stages):
    _run(capsys, "submit", "--video-id", "a-original")
    _run(capsys, "submit", "--video-id", "b-copy")

    code, out, _ = _run(capsys, "worker", "--drain")
    assert code == 0
    summary = json.loads(out)
    assert summary["processed"] == 5
    assert summary["depth"] == 0

    code, out, _ = _run(capsys, "status", "a-original", "--history")
    status = json.loads(out)
    assert status["state"] == "complete"
    assert status["history"][-1] == "complete"

    code, out, _ = _run(capsys, "status", "b-copy")
    assert json.loads(out)["status_code"] == -1

    code, out, _ = _run(capsys, "related", "b-copy")
    [related] = json.loads(out)
    assert related["video_id"] == "a-original"
    assert related["kind"] == "duplicate"
    assert related["direction"] == "outgoing"

    code, out, _ = _run(capsys, "stats")
    stats = json.loads(out)
    assert stats["complete"] == 1
    assert stats["duplicates"] == 1
    assert stats["edges_by_kind"] == {"duplicate": 1}

    code, out, _ = _run(capsys, "timeline", "a-original")
    assert json.loads(out) == []


def test_cancel_and_requeue(capsys):
    _run(capsys, "submit", "--video-id", "video-1")
    code, out, _ = _run(capsys, "cancel", "video-1")
    assert code == 0
    assert json.loads(out)["status_code"] == -3

    code, _, err = _run(capsys, "requeue", "video-1")
    assert code == 1
    assert err.startswith("Error:")


def test_unknown_video(capsys):
    code, _, err = _run(capsys, "status", "missing")
    assert code == 1
    assert "Unknown video" in err
    code, _, _ = _run(capsys, "cancel", "missing")
    assert code == 1


def test_no_command_prints_help(capsys):
    code, out, _ = _run(capsys)
    assert code == 2
    assert "usage" in out


def test_logs_are_json_on_stderr(capsys):
    code, _, err = _run(capsys, "submit", "--video-id", "video-1")
    assert code == 0
    record = json.loads(err.strip().splitlines()[-1])
    assert record["service"] == cli.SERVICE_NAME
    assert record["video_id"] == "video-1"
    assert record["state"] == "duplicate_check"
