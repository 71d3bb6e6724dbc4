from __future__ import annotations

import json
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

from clipstream_core.errors import PermanentError, RecoverableError, ValidationError


@dataclass(frozen=True)
class MediaProbe:
    duration_seconds: float
    has_audio: bool
    has_video: bool
    video_width: int | None
    video_height: int | None
    frame_rate: float | None


@dataclass(frozen=True)
class Rendition:
    quality: str
    height: int
    video_bitrate: str
    audio_bitrate: str
    bandwidth: int


# Ladder for the HLS renditions; qualities outside it are rejected.
RENDITION_LADDER: dict[str, Rendition] = {
    "1080p": Rendition("1080p", 1080, "5000k", "192k", 5_400_000),
    "720p": Rendition("720p", 720, "2800k", "128k", 3_000_000),
    "480p": Rendition("480p", 480, "1400k", "128k", 1_600_000),
    "360p": Rendition("360p", 360, "800k", "96k", 950_000),
}


def rendition_for(quality: str) -> Rendition:
    rendition = RENDITION_LADDER.get(quality)
    if rendition is None:
        allowed = ", ".join(RENDITION_LADDER)
        raise ValidationError(f"Unsupported quality {quality}; expected one of {allowed}")
    return rendition


def _ensure_tool(name: str) -> None:
    if shutil.which(name) is None:
        raise RecoverableError(f"Missing required binary: {name}")


_CORRUPT_MARKERS = (
    "invalid data found when processing input",
    "moov atom not found",
    "output file does not contain any stream",
    "could not find codec parameters",
    "invalid argument",
    "unknown format",
)


def _raise_media_error(step: str, stderr: str) -> NoReturn:
    message = stderr.strip() or "Unknown media error"
    lowered = message.lower()
    if any(marker in lowered for marker in _CORRUPT_MARKERS):
        raise PermanentError(f"{step} failed: {message}")
    raise RecoverableError(f"{step} failed: {message}")


def _run(step: str, cmd: list[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as exc:
        _raise_media_error(step, exc.stderr or exc.stdout or str(exc))


def _parse_fraction(value: str | None) -> float | None:
    if not value:
        return None
    if "/" in value:
        num, den = value.split("/", 1)
        try:
            return float(num) / float(den)
        except (ValueError, ZeroDivisionError):
            return None
    try:
        return float(value)
    except ValueError:
        return None


def probe_media(path: str) -> MediaProbe:
    _ensure_tool("ffprobe")
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        path,
    ]
    result = _run("ffprobe", cmd)
    try:
        payload = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise PermanentError(f"ffprobe returned invalid JSON: {exc}") from exc
    format_info = payload.get("format", {}) or {}
    streams = payload.get("streams", []) or []

    duration = _parse_fraction(format_info.get("duration")) or 0.0
    has_audio = False
    has_video = False
    video_width = None
    video_height = None
    frame_rate = None

    for stream in streams:
        if stream.get("codec_type") == "audio":
            has_audio = True
        if stream.get("codec_type") == "video":
            has_video = True
            video_width = stream.get("width")
            video_height = stream.get("height")
            frame_rate = _parse_fraction(stream.get("avg_frame_rate"))
        stream_duration = _parse_fraction(stream.get("duration"))
        if stream_duration and stream_duration > duration:
            duration = stream_duration

    if not has_video:
        raise PermanentError("Upload does not contain a video stream")
    if duration <= 0:
        raise PermanentError("Could not determine video duration")

    return MediaProbe(
        duration_seconds=duration,
        has_audio=has_audio,
        has_video=has_video,
        video_width=video_width,
        video_height=video_height,
        frame_rate=frame_rate,
    )


def extract_audio(input_path: str, sample_rate: int = 16000) -> str:
    _ensure_tool("ffmpeg")
    tmp = tempfile.NamedTemporaryFile(suffix=".wav", delete=False)
    tmp_path = tmp.name
    tmp.close()

    cmd = [
        "ffmpeg",
        "-y",
        "-i",
        input_path,
        "-vn",
        "-ac",
        "1",
        "-ar",
        str(sample_rate),
        tmp_path,
    ]
    _run("ffmpeg extract audio", cmd)
    return tmp_path


def extract_frames(input_path: str, fps: float, output_dir: str) -> list[str]:
    _ensure_tool("ffmpeg")
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    safe_fps = max(fps, 0.1)
    cmd = [
        "ffmpeg",
        "-y",
        "-i",
        input_path,
        "-vf",
        f"fps={safe_fps},format=yuvj420p",
        str(Path(output_dir) / "frame-%05d.jpg"),
    ]
    _run("ffmpeg extract frames", cmd)
    frames = sorted(Path(output_dir).glob("frame-*.jpg"))
    return [str(frame) for frame in frames]


def extract_thumbnail(input_path: str, output_path: str, at_seconds: float) -> str:
    _ensure_tool("ffmpeg")
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        "ffmpeg",
        "-y",
        "-ss",
        f"{max(at_seconds, 0.0):.3f}",
        "-i",
        input_path,
        "-frames:v",
        "1",
        "-vf",
        "scale=640:-2",
        "-f",
        "image2",
        output_path,
    ]
    _run("ffmpeg thumbnail", cmd)
    return output_path


def transcode_hls(input_path: str, output_dir: str, rendition: Rendition) -> str:
    """Write one HLS rendition into ``output_dir`` and return its playlist."""
    _ensure_tool("ffmpeg")
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    playlist = str(Path(output_dir) / "index.m3u8")
    cmd = [
        "ffmpeg",
        "-y",
        "-i",
        input_path,
        "-vf",
        f"scale=-2:{rendition.height}",
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-b:v",
        rendition.video_bitrate,
        "-c:a",
        "aac",
        "-b:a",
        rendition.audio_bitrate,
        "-hls_time",
        "6",
        "-hls_playlist_type",
        "vod",
        "-hls_segment_filename",
        str(Path(output_dir) / "segment-%05d.ts"),
        playlist,
    ]
    _run(f"ffmpeg transcode {rendition.quality}", cmd)
    return playlist


def master_playlist(renditions: list[Rendition]) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for rendition in renditions:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bandwidth},"
            f"NAME=\"{rendition.quality}\""
        )
        lines.append(f"{rendition.quality}/index.m3u8")
    return "\n".join(lines) + "\n"
