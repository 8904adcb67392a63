"""Source resolver backed by yt-dlp.

``resolve`` runs yt-dlp in-process for metadata and formats; ``open_stream``
runs the yt-dlp CLI with the chosen format written to stdout so its bytes can
be piped straight into ffmpeg.
"""
from __future__ import annotations

import logging
import shlex
import shutil
from typing import Any, Dict, IO, List, Optional

import yt_dlp

from .catalog import renditions_from_formats
from .errors import ContentUnavailable, InternalError, SourceStreamError
from .models import ContentLocator, ContentMetadata, ResolvedContent, SourceHandle
from .process import ManagedProcess

logger = logging.getLogger(__name__)

DEFAULT_HTTP_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"}

_UNAVAILABLE_HINTS = (
    "video unavailable",
    "private video",
    "not available",
    "has been removed",
    "sign in to confirm your age",
    "members-only",
    "blocked it in your country",
)


def metadata_from_info(info: Dict[str, Any]) -> ContentMetadata:
    duration = info.get("duration")
    views = info.get("view_count")
    return ContentMetadata(
        id=info.get("id") or "",
        title=info.get("title") or info.get("id") or "download",
        author=info.get("uploader") or info.get("channel") or info.get("uploader_id"),
        duration_seconds=int(duration) if duration else None,
        view_count=int(views) if views is not None else None,
        thumbnail=info.get("thumbnail"),
        webpage_url=info.get("webpage_url"),
    )


class SourceStream:
    """One rendition's bytes, produced by a yt-dlp subprocess on stdout."""

    def __init__(self, handle: SourceHandle, process: ManagedProcess) -> None:
        self.handle = handle
        self.process = process

    @property
    def stdout(self) -> IO[bytes]:
        return self.process.stdout

    def check(self, timeout: Optional[float] = 5) -> None:
        """Raise SourceStreamError if the download exited non-zero."""
        returncode = self.process.wait(timeout=timeout)
        if returncode != 0:
            raise SourceStreamError(f"Source stream {self.handle.format_id} failed: {self.process.error_detail()}")

    def close(self) -> None:
        self.process.terminate()


class YtDlpResolver:
    def __init__(self, command: str = "yt-dlp", http_headers: Optional[Dict[str, str]] = None) -> None:
        self.command = shlex.split(command)
        self.http_headers = http_headers or DEFAULT_HTTP_HEADERS

    def _ydl_opts(self) -> Dict[str, Any]:
        return {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "http_headers": self.http_headers,
        }

    def resolve(self, locator: ContentLocator) -> ResolvedContent:
        try:
            with yt_dlp.YoutubeDL(self._ydl_opts()) as ydl:
                info = ydl.extract_info(locator.url, download=False)
        except yt_dlp.utils.DownloadError as exc:
            message = str(exc)
            hint = next((h for h in _UNAVAILABLE_HINTS if h in message.lower()), None)
            logger.info("Resolver could not fetch %s (%s): %s", locator, hint or "download error", message)
            raise ContentUnavailable() from exc
        except Exception as exc:
            raise InternalError(f"Resolver failed: {exc}") from exc

        if not info:
            raise ContentUnavailable()
        page_url = info.get("webpage_url") or locator.url
        renditions = renditions_from_formats(info.get("formats") or [], page_url)
        return ResolvedContent(metadata=metadata_from_info(info), renditions=renditions)

    def build_stream_command(self, handle: SourceHandle) -> List[str]:
        cmd = [
            *self.command,
            "-f",
            handle.format_id,
            "-o",
            "-",
            "--no-playlist",
            "--no-warnings",
            "--no-part",
            "--quiet",
        ]
        # Same client identity as the metadata lookup.
        for name, value in self.http_headers.items():
            cmd += ["--add-header", f"{name}:{value}"]
        cmd.append(handle.page_url)
        return cmd

    def open_stream(self, handle: SourceHandle) -> SourceStream:
        try:
            process = ManagedProcess(self.build_stream_command(handle), name=f"yt-dlp[{handle.format_id}]")
        except FileNotFoundError as exc:
            raise InternalError("yt-dlp is not installed or not in PATH") from exc
        return SourceStream(handle, process)

    def version(self) -> Optional[str]:
        return getattr(yt_dlp.version, "__version__", None)

    def cli_available(self) -> bool:
        return bool(self.command) and shutil.which(self.command[0]) is not None
