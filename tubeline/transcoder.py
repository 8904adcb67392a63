"""ffmpeg transcoder: one subprocess per job, output on stdout."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import IO, Callable, List, Optional

from .catalog import can_copy_audio, can_copy_video
from .errors import TranscodeError
from .models import AUDIO, HIGHEST, LOWEST, JobSpec, Selection, tier_kbps
from .process import ManagedProcess

logger = logging.getLogger(__name__)

# Pipe output is not seekable, so MP4 has to be fragmented.
_FRAGMENTED_MP4 = ["-movflags", "frag_keyframe+empty_moov+default_base_moof"]
_SPECIAL_AUDIO_BITRATES = {HIGHEST: 320, LOWEST: 64}
_VIDEO_AUDIO_BITRATE = "192k"


def output_audio_bitrate(quality: str) -> int:
    if quality in _SPECIAL_AUDIO_BITRATES:
        return _SPECIAL_AUDIO_BITRATES[quality]
    return tier_kbps(quality)


@dataclass
class TranscodeRequest:
    spec: JobSpec
    selection: Selection
    primary: IO[bytes]
    audio_path: Optional[str] = None
    duration_seconds: Optional[int] = None
    on_progress: Optional[Callable[[float], None]] = None


class ProgressParser:
    """Reads ``-progress`` key=value lines and reports percent of duration."""

    def __init__(self, duration_seconds: Optional[int], callback: Optional[Callable[[float], None]]) -> None:
        self.duration_us = (duration_seconds or 0) * 1_000_000
        self.callback = callback

    def __call__(self, line: str) -> bool:
        key, sep, value = line.partition("=")
        if not sep or " " in key:
            return False
        if self.callback is None:
            return True
        if key in ("out_time_us", "out_time_ms") and self.duration_us:
            try:
                elapsed = int(value)
            except ValueError:
                return True
            self.callback(min(elapsed / self.duration_us * 100.0, 99.9))
        elif key == "progress" and value == "end":
            self.callback(100.0)
        return True


class TranscodeSession:
    def __init__(self, process: ManagedProcess) -> None:
        self.process = process

    @property
    def stdout(self) -> IO[bytes]:
        return self.process.stdout

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.process.wait(timeout=timeout)

    def error_detail(self) -> str:
        return self.process.error_detail()

    def terminate(self) -> None:
        self.process.terminate()


class FfmpegTranscoder:
    def __init__(self, binary: str = "ffmpeg") -> None:
        self.binary = binary

    def build_command(self, request: TranscodeRequest) -> List[str]:
        spec = request.spec
        selection = request.selection
        cmd = [
            self.binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-nostats",
            "-progress",
            "pipe:2",
            "-i",
            "pipe:0",
        ]
        if request.audio_path:
            cmd.extend(["-i", request.audio_path])

        if spec.media_type == AUDIO:
            bitrate = f"{output_audio_bitrate(spec.quality)}k"
            cmd.extend(["-vn", "-map", "0:a:0"])
            if spec.container == "mp3":
                cmd.extend(["-c:a", "libmp3lame", "-b:a", bitrate, "-f", "mp3"])
            else:
                cmd.extend(["-c:a", "aac", "-b:a", bitrate, *_FRAGMENTED_MP4, "-f", "mp4"])
            cmd.append("pipe:1")
            return cmd

        audio_source = selection.audio or selection.primary
        if request.audio_path:
            cmd.extend(["-map", "0:v:0", "-map", "1:a:0"])
        else:
            cmd.extend(["-map", "0:v:0", "-map", "0:a:0?"])

        if can_copy_video(selection.primary, spec.container):
            cmd.extend(["-c:v", "copy"])
        else:
            cmd.extend(["-c:v", "libx264", "-preset", "veryfast", "-crf", "23"])
        if can_copy_audio(audio_source, spec.container):
            cmd.extend(["-c:a", "copy"])
        else:
            cmd.extend(["-c:a", "aac", "-b:a", _VIDEO_AUDIO_BITRATE])

        if spec.container == "mp4":
            cmd.extend([*_FRAGMENTED_MP4, "-f", "mp4"])
        else:
            cmd.extend(["-f", "matroska"])
        cmd.append("pipe:1")
        return cmd

    def start(self, request: TranscodeRequest) -> TranscodeSession:
        cmd = self.build_command(request)
        parser = ProgressParser(request.duration_seconds, request.on_progress)
        try:
            process = ManagedProcess(cmd, stdin=request.primary, on_stderr_line=parser, name="ffmpeg")
        except FileNotFoundError as exc:
            raise TranscodeError("ffmpeg is required for transcoding") from exc
        # ffmpeg now owns the read end; dropping ours lets the source see EPIPE if ffmpeg dies.
        try:
            request.primary.close()
        except OSError:
            pass
        logger.debug("Started ffmpeg: %s", " ".join(cmd))
        return TranscodeSession(process)

    def version(self) -> Optional[str]:
        try:
            proc = subprocess.run([self.binary, "-version"], capture_output=True, text=True, timeout=2)
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        if proc.returncode != 0 or not proc.stdout:
            return None
        return proc.stdout.splitlines()[0]
