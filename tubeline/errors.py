"""Error taxonomy shared by every pipeline stage.

Each error knows the HTTP-style status it maps to so the delivery layer can
render it without a lookup table.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class PipelineError(Exception):
    code = "InternalError"
    status_code = 500
    default_message = "An internal error occurred."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidLocator(PipelineError):
    code = "InvalidLocator"
    status_code = 400
    default_message = "Enter a valid YouTube URL or video id."


class InvalidParameter(PipelineError):
    code = "InvalidParameter"
    status_code = 400

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message or f"Invalid value for '{field}'.")

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["field"] = self.field
        return payload


class NoMatchingRendition(PipelineError):
    code = "NoMatchingRendition"
    status_code = 404
    default_message = "No stream matches the requested quality."


class ContentUnavailable(PipelineError):
    code = "ContentUnavailable"
    status_code = 404
    default_message = "The video is missing, private or not available in this region."


class _RetryableError(PipelineError):
    def __init__(self, retry_after: float, message: Optional[str] = None) -> None:
        self.retry_after = max(float(retry_after), 0.0)
        super().__init__(message)

    @property
    def retry_after_header(self) -> str:
        # Retry-After only carries whole seconds; round up so waiting is enough.
        whole = int(self.retry_after)
        return str(whole + 1 if self.retry_after > whole else max(whole, 1))

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["retryAfter"] = round(self.retry_after, 3)
        return payload


class RateLimited(_RetryableError):
    code = "RateLimited"
    status_code = 429
    default_message = "Rate limit reached, please wait before retrying."


class Overloaded(_RetryableError):
    code = "Overloaded"
    status_code = 503
    default_message = "Too many concurrent downloads, please wait."


class ResolutionTimeout(PipelineError):
    code = "ResolutionTimeout"
    status_code = 503
    default_message = "Timed out while looking up the video."


class StreamingStalled(PipelineError):
    code = "StreamingStalled"
    status_code = 500
    default_message = "The transcoder stopped producing output."


class TranscodeError(PipelineError):
    code = "TranscodeError"
    status_code = 500
    default_message = "ffmpeg failed to process the stream."


class SourceStreamError(PipelineError):
    code = "SourceStreamError"
    status_code = 500
    default_message = "The source stream could not be read."


class ScratchAllocationError(PipelineError):
    code = "ScratchAllocationError"
    status_code = 500
    default_message = "Temporary storage could not be allocated."


class InternalError(PipelineError):
    pass
