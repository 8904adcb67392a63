"""Value types passed between the pipeline stages."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

VIDEO = "video"
AUDIO = "audio"
MEDIA_TYPES = (VIDEO, AUDIO)

HIGHEST = "highest"
LOWEST = "lowest"

# Ordered worst to best.
VIDEO_TIERS = ("144p", "240p", "360p", "480p", "720p", "1080p", "1440p", "2160p", "4320p")
AUDIO_TIERS = ("48k", "64k", "96k", "128k", "160k", "192k", "256k", "320k")

TIER_ALIASES = {
    VIDEO: {"highestvideo": HIGHEST, "lowestvideo": LOWEST},
    AUDIO: {"highestaudio": HIGHEST, "lowestaudio": LOWEST},
}

CONTAINERS = {
    VIDEO: ("mp4", "mkv"),
    AUDIO: ("mp3", "m4a"),
}

MIME_TYPES = {
    "mp4": "video/mp4",
    "mkv": "video/x-matroska",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
}


def tier_height(tier: str) -> int:
    return int(tier[:-1])


def tier_kbps(tier: str) -> int:
    return int(tier[:-1])


@dataclass(frozen=True)
class ContentLocator:
    video_id: str

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"

    def __str__(self) -> str:
        return self.video_id


@dataclass(frozen=True)
class JobSpec:
    locator: ContentLocator
    media_type: str
    quality: str
    container: str

    @property
    def extension(self) -> str:
        return self.container

    @property
    def mime_type(self) -> str:
        return MIME_TYPES[self.container]


@dataclass(frozen=True)
class SourceHandle:
    """Enough to reopen one format of one video through yt-dlp."""

    page_url: str
    format_id: str


@dataclass(frozen=True)
class VideoOnly:
    handle: SourceHandle
    height: int
    tier: str
    ext: Optional[str] = None
    vcodec: Optional[str] = None
    bitrate: Optional[float] = None
    size: Optional[int] = None
    kind = "video"


@dataclass(frozen=True)
class AudioOnly:
    handle: SourceHandle
    bitrate: float
    tier: str
    ext: Optional[str] = None
    acodec: Optional[str] = None
    size: Optional[int] = None
    kind = "audio"


@dataclass(frozen=True)
class Combined:
    handle: SourceHandle
    height: int
    tier: str
    ext: Optional[str] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    bitrate: Optional[float] = None
    size: Optional[int] = None
    kind = "combined"


Rendition = Union[VideoOnly, AudioOnly, Combined]


@dataclass(frozen=True)
class Selection:
    """Input renditions chosen for one job.

    ``audio`` is only set when ``primary`` is a video-only rendition that has to
    be combined with a separate audio track.
    """

    primary: Rendition
    audio: Optional[AudioOnly] = None

    @property
    def needs_combination(self) -> bool:
        return self.audio is not None

    @property
    def approx_size(self) -> Optional[int]:
        sizes = [r.size for r in (self.primary, self.audio) if r is not None]
        if not sizes or any(s is None for s in sizes):
            return None
        return sum(sizes)


@dataclass(frozen=True)
class ContentMetadata:
    id: str
    title: str
    author: Optional[str] = None
    duration_seconds: Optional[int] = None
    view_count: Optional[int] = None
    thumbnail: Optional[str] = None
    webpage_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "durationSeconds": self.duration_seconds,
            "viewCount": self.view_count,
            "thumbnail": self.thumbnail,
            "webpageUrl": self.webpage_url,
        }


@dataclass(frozen=True)
class ResolvedContent:
    metadata: ContentMetadata
    renditions: List[Rendition] = field(default_factory=list)
