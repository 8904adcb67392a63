"""Rendition catalog: normalize yt-dlp formats and pick inputs for a job."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import NoMatchingRendition
from .models import (
    AUDIO,
    AUDIO_TIERS,
    HIGHEST,
    LOWEST,
    VIDEO,
    VIDEO_TIERS,
    AudioOnly,
    Combined,
    Rendition,
    Selection,
    SourceHandle,
    VideoOnly,
    tier_height,
    tier_kbps,
)

# Codecs that can be stream-copied into each output container.
_COPYABLE_VIDEO = {"mp4": ("avc1", "h264"), "mkv": ("",)}
_COPYABLE_AUDIO = {"mp4": ("mp4a", "aac"), "mkv": ("",), "m4a": ("mp4a", "aac"), "mp3": ("mp3",)}


def tier_for_height(height: int) -> str:
    """Smallest resolution tier that holds ``height`` lines."""
    for tier in VIDEO_TIERS:
        if height <= tier_height(tier):
            return tier
    return VIDEO_TIERS[-1]


def tier_for_bitrate(kbps: float) -> str:
    """Nearest bitrate tier; YouTube reports e.g. 129.5 for its 128k stream."""
    return min(AUDIO_TIERS, key=lambda tier: (abs(tier_kbps(tier) - kbps), -tier_kbps(tier)))


def _codec_missing(value: Optional[str]) -> bool:
    return not value or value == "none"


def _number(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def renditions_from_formats(formats: Iterable[Dict[str, Any]], page_url: str) -> List[Rendition]:
    """Turn the heterogeneous yt-dlp ``formats`` list into tagged renditions."""
    renditions: List[Rendition] = []
    for fmt in formats or []:
        format_id = fmt.get("format_id")
        if not format_id:
            continue
        vcodec = fmt.get("vcodec")
        acodec = fmt.get("acodec")
        has_video = not _codec_missing(vcodec)
        has_audio = not _codec_missing(acodec)
        # Storyboards and similar image-only entries have neither codec.
        if not has_video and not has_audio:
            continue
        handle = SourceHandle(page_url=page_url, format_id=str(format_id))
        size = fmt.get("filesize") or fmt.get("filesize_approx")
        size = int(size) if size else None
        height = _number(fmt.get("height"))
        total_bitrate = _number(fmt.get("tbr"))
        audio_bitrate = _number(fmt.get("abr")) or (total_bitrate if not has_video else None)

        if has_video and has_audio:
            if not height:
                continue
            renditions.append(
                Combined(
                    handle=handle,
                    height=int(height),
                    tier=tier_for_height(int(height)),
                    ext=fmt.get("ext"),
                    vcodec=vcodec,
                    acodec=acodec,
                    bitrate=total_bitrate,
                    size=size,
                )
            )
        elif has_video:
            if not height:
                continue
            renditions.append(
                VideoOnly(
                    handle=handle,
                    height=int(height),
                    tier=tier_for_height(int(height)),
                    ext=fmt.get("ext"),
                    vcodec=vcodec,
                    bitrate=total_bitrate,
                    size=size,
                )
            )
        else:
            if not audio_bitrate:
                continue
            renditions.append(
                AudioOnly(
                    handle=handle,
                    bitrate=audio_bitrate,
                    tier=tier_for_bitrate(audio_bitrate),
                    ext=fmt.get("ext"),
                    acodec=acodec,
                    size=size,
                )
            )
    return renditions


def _compatible(codec: Optional[str], table: Dict[str, Sequence[str]], container: str) -> bool:
    prefixes = table.get(container, ())
    return bool(codec) and any(codec.startswith(prefix) for prefix in prefixes)


def can_copy_video(rendition: Rendition, container: str) -> bool:
    return _compatible(getattr(rendition, "vcodec", None), _COPYABLE_VIDEO, container)


def can_copy_audio(rendition: Rendition, container: str) -> bool:
    return _compatible(getattr(rendition, "acodec", None), _COPYABLE_AUDIO, container)


def _best_audio(candidates: List[AudioOnly], container: str) -> AudioOnly:
    return max(candidates, key=lambda r: (AUDIO_TIERS.index(r.tier), can_copy_audio(r, container), r.bitrate))


def _best_video(candidates: List[Rendition], container: str) -> Rendition:
    return max(
        candidates,
        key=lambda r: (VIDEO_TIERS.index(r.tier), can_copy_video(r, container), r.bitrate or 0.0),
    )


def select_audio(renditions: Sequence[Rendition], quality: str, container: str = "mp3") -> AudioOnly:
    candidates = [r for r in renditions if isinstance(r, AudioOnly)]
    if not candidates:
        raise NoMatchingRendition("No audio-only stream is available for this video.")

    tiers = sorted({AUDIO_TIERS.index(r.tier) for r in candidates})
    if quality == HIGHEST:
        wanted = tiers[-1]
    elif quality == LOWEST:
        wanted = tiers[0]
    else:
        requested = AUDIO_TIERS.index(quality)
        not_above = [t for t in tiers if t <= requested]
        # Below the lowest available tier the closest one is the lowest.
        wanted = not_above[-1] if not_above else tiers[0]
    return _best_audio([r for r in candidates if AUDIO_TIERS.index(r.tier) == wanted], container)


def select_video(renditions: Sequence[Rendition], quality: str, container: str = "mp4") -> Selection:
    combined = [r for r in renditions if isinstance(r, Combined)]
    video_only = [r for r in renditions if isinstance(r, VideoOnly)]
    audio_only = [r for r in renditions if isinstance(r, AudioOnly)]
    if not combined and not video_only:
        raise NoMatchingRendition("No video stream is available for this video.")

    available = sorted({VIDEO_TIERS.index(r.tier) for r in combined + video_only})
    if quality == HIGHEST:
        wanted = available[-1]
    elif quality == LOWEST:
        wanted = available[0]
    else:
        wanted = VIDEO_TIERS.index(quality)

    exact = [r for r in combined if VIDEO_TIERS.index(r.tier) == wanted]
    if exact:
        return Selection(primary=_best_video(exact, container))

    video_below = [r for r in video_only if VIDEO_TIERS.index(r.tier) <= wanted]
    if video_below and audio_only:
        return Selection(
            primary=_best_video(video_below, container),
            audio=_best_audio(audio_only, container),
        )

    combined_below = [r for r in combined if VIDEO_TIERS.index(r.tier) <= wanted]
    if combined_below:
        return Selection(primary=_best_video(combined_below, container))

    raise NoMatchingRendition(f"No video stream at or below {VIDEO_TIERS[wanted]} is available.")


def select(renditions: Sequence[Rendition], media_type: str, quality: str, container: str) -> Selection:
    """Pick the input rendition(s) for ``media_type`` at ``quality``."""
    if media_type == AUDIO:
        return Selection(primary=select_audio(renditions, quality, container))
    if media_type == VIDEO:
        return select_video(renditions, quality, container)
    raise NoMatchingRendition(f"Unsupported media type '{media_type}'.")


def available_qualities(renditions: Sequence[Rendition]) -> Dict[str, List[str]]:
    video = {r.tier for r in renditions if isinstance(r, (VideoOnly, Combined))}
    audio = {r.tier for r in renditions if isinstance(r, AudioOnly)}
    return {
        "video": sorted(video, key=VIDEO_TIERS.index, reverse=True),
        "audio": sorted(audio, key=AUDIO_TIERS.index, reverse=True),
    }
