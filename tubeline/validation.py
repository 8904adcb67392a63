"""Turn raw request input into a JobSpec. Pure: no network or disk access."""
from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidLocator, InvalidParameter
from .models import (
    AUDIO_TIERS,
    CONTAINERS,
    HIGHEST,
    LOWEST,
    MEDIA_TYPES,
    TIER_ALIASES,
    VIDEO,
    VIDEO_TIERS,
    ContentLocator,
    JobSpec,
)

_ID = r"(?P<id>[A-Za-z0-9_-]{11})"
# The id must be followed by the end of the string or a URL delimiter so that
# a 12-character id is rejected instead of silently truncated.
_END = r"(?=$|[?&#/])"

LOCATOR_PATTERNS = (
    # https://www.youtube.com/watch?v=ID (also m. and music. hosts, v= anywhere in the query)
    re.compile(r"^(?:https?://)?(?:www\.|m\.|music\.)?youtube\.com/watch\?(?:[^#]*&)?v=" + _ID + r"(?=$|[&#])"),
    # https://youtu.be/ID
    re.compile(r"^(?:https?://)?(?:www\.)?youtu\.be/" + _ID + _END),
    # https://www.youtube.com/embed/ID and the privacy-enhanced host
    re.compile(r"^(?:https?://)?(?:www\.)?youtube(?:-nocookie)?\.com/embed/" + _ID + _END),
    # bare id
    re.compile(r"^" + _ID + r"$"),
)

_VIDEO_QUALITIES = set(VIDEO_TIERS) | {HIGHEST, LOWEST}
_AUDIO_QUALITIES = set(AUDIO_TIERS) | {HIGHEST, LOWEST}


def parse_locator(raw: Any) -> ContentLocator:
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidLocator()
    text = raw.strip()
    for pattern in LOCATOR_PATTERNS:
        match = pattern.match(text)
        if match:
            return ContentLocator(video_id=match.group("id"))
    raise InvalidLocator()


class DownloadRequest(BaseModel):
    """Shape of a download request; the long field names are accepted too."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    url: str = Field(validation_alias=AliasChoices("url", "locator"))
    type: str = Field(validation_alias=AliasChoices("type", "mediaType"))
    quality: str = Field(validation_alias=AliasChoices("quality", "qualityTier"))
    format: Optional[str] = None


def _normalize_quality(media_type: str, value: str) -> str:
    quality = value.lower()
    quality = TIER_ALIASES[media_type].get(quality, quality)
    allowed = _VIDEO_QUALITIES if media_type == VIDEO else _AUDIO_QUALITIES
    if quality not in allowed:
        tiers = VIDEO_TIERS if media_type == VIDEO else AUDIO_TIERS
        choices = ", ".join((HIGHEST, LOWEST) + tiers)
        raise InvalidParameter("quality", f"Quality '{value}' is not valid for {media_type}; use one of: {choices}.")
    return quality


def parse_request(raw: Any) -> DownloadRequest:
    """Check the request shape, reporting the first bad field as InvalidParameter."""
    try:
        return DownloadRequest.model_validate(raw)
    except ValidationError as exc:
        error = exc.errors()[0]
        field = str(error["loc"][-1]) if error.get("loc") else "body"
        raise InvalidParameter(field, error.get("msg") or "Invalid request.") from exc


def validate(raw: Union[DownloadRequest, Mapping[str, Any]]) -> JobSpec:
    """Apply the domain rules to a download request.

    Plain mappings are checked against ``DownloadRequest`` first. The locator
    is checked before the media type, quality and container.
    """
    request = raw if isinstance(raw, DownloadRequest) else parse_request(raw)

    locator = parse_locator(request.url)

    media_type = request.type.lower()
    if media_type not in MEDIA_TYPES:
        raise InvalidParameter("type", "Type must be 'video' or 'audio'.")

    quality = _normalize_quality(media_type, request.quality)

    container = (request.format or "").lower() or CONTAINERS[media_type][0]
    if container not in CONTAINERS[media_type]:
        choices = ", ".join(CONTAINERS[media_type])
        raise InvalidParameter("format", f"Format for {media_type} must be one of: {choices}.")

    return JobSpec(locator=locator, media_type=media_type, quality=quality, container=container)

