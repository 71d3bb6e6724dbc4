import json
import subprocess

import pytest

from clipstream_core.errors import PermanentError, RecoverableError, ValidationError
from clipstream_core.ingestion import media


def _fake_ffprobe(monkeypatch, payload: dict) -> None:
    monkeypatch.setattr(media.shutil, "which", lambda name: f"/usr/bin/{name}")

    def fake_run(cmd, capture_output, text, check):
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(payload), stderr="")

    monkeypatch.setattr(media.subprocess, "run", fake_run)


def test_probe_reads_longest_duration(monkeypatch):
    _fake_ffprobe(
        monkeypatch,
        {
            "format": {"duration": "12.0"},
            "streams": [
                {
                    "codec_type": "video",
                    "width": 1920,
                    "height": 1080,
                    "avg_frame_rate": "60/1",
                    "duration": "12.5",
                },
                {"codec_type": "audio", "duration": "12.2"},
            ],
        },
    )
    probe = media.probe_media("/tmp/video.mp4")
    assert probe.duration_seconds == 12.5
    assert probe.has_audio
    assert probe.frame_rate == 60.0
    assert (probe.video_width, probe.video_height) == (1920, 1080)


def test_probe_without_video_stream_is_permanent(monkeypatch):
    _fake_ffprobe(
        monkeypatch,
        {"format": {"duration": "3.0"}, "streams": [{"codec_type": "audio"}]},
    )
    with pytest.raises(PermanentError):
        media.probe_media("/tmp/audio.mp3")


def test_missing_binary_is_retryable(monkeypatch):
    monkeypatch.setattr(media.shutil, "which", lambda name: None)
    with pytest.raises(RecoverableError):
        media.probe_media("/tmp/video.mp4")


def test_tool_errors_are_classified(monkeypatch):
    monkeypatch.setattr(media.shutil, "which", lambda name: f"/usr/bin/{name}")

    def corrupt(cmd, capture_output, text, check):
        raise subprocess.CalledProcessError(
            1, cmd, stderr="moov atom not found\nInvalid data found when processing input"
        )

    monkeypatch.setattr(media.subprocess, "run", corrupt)
    with pytest.raises(PermanentError):
        media.probe_media("/tmp/video.mp4")

    def flaky(cmd, capture_output, text, check):
        raise subprocess.CalledProcessError(1, cmd, stderr="Connection reset by peer")

    monkeypatch.setattr(media.subprocess, "run", flaky)
    with pytest.raises(RecoverableError):
        media.probe_media("/tmp/video.mp4")


def test_rendition_ladder():
    assert media.rendition_for("720p").height == 720
    with pytest.raises(ValidationError):
        media.rendition_for("4k")
    playlist = media.master_playlist([media.rendition_for("360p")])
    assert playlist.startswith("#EXTM3U\n")
    assert "360p/index.m3u8" in playlist
