"""Turn a started pipeline run into an HTTP response."""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import AsyncIterator, Dict, Optional
from urllib.parse import quote

import anyio
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import PipelineError
from .models import JobSpec
from .pipeline import PipelineRun

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = [
    "Content-Disposition",
    "X-Job-Id",
    "X-Video-Title",
    "X-Video-Author",
    "X-Video-Duration",
    "X-Estimated-Size",
    "Retry-After",
]


def _strip_unsafe(title: str) -> str:
    cleaned = re.sub(r'[\\/*?:"<>|\x00-\x1f]', "", title).replace("\n", " ").replace("\r", " ")
    return re.sub(r"\s+", " ", cleaned).strip(" .")


def sanitize_filename(title: str, ext: str) -> str:
    """Create a safe, ASCII filename for Content-Disposition headers."""
    safe_title = _strip_unsafe(title) or "download"
    # Force ASCII to avoid latin-1 header encoding failures
    safe_title_ascii = safe_title.encode("ascii", "ignore").decode("ascii").strip() or "download"
    safe_ext_ascii = ext.encode("ascii", "ignore").decode("ascii") or ext
    return f"{safe_title_ascii}.{safe_ext_ascii}"


def build_filename(title: str, spec: JobSpec, now: Optional[datetime] = None) -> str:
    """``{title}_{quality}_{timestamp}`` without the extension, unsafe characters removed."""
    timestamp = (now or datetime.now()).strftime("%Y%m%dT%H%M%S")
    return f"{_strip_unsafe(title) or 'download'}_{spec.quality}_{timestamp}"


def content_disposition(title: str, spec: JobSpec, now: Optional[datetime] = None) -> str:
    base = build_filename(title, spec, now)
    ascii_name = sanitize_filename(base, spec.extension)
    utf8_name = quote(f"{base}.{spec.extension}", safe="")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{utf8_name}"


def response_headers(run: PipelineRun, now: Optional[datetime] = None) -> Dict[str, str]:
    metadata = run.metadata
    spec = run.job.spec
    title = metadata.title if metadata else spec.locator.video_id
    headers = {
        "Content-Disposition": content_disposition(title, spec, now),
        "X-Job-Id": run.job.id,
        "X-Video-Title": quote(title, safe=""),
        "Cache-Control": "no-store",
    }
    if metadata and metadata.author:
        headers["X-Video-Author"] = quote(metadata.author, safe="")
    if metadata and metadata.duration_seconds is not None:
        headers["X-Video-Duration"] = str(metadata.duration_seconds)
    if run.approx_size:
        headers["X-Estimated-Size"] = str(run.approx_size)
    return headers


async def _close_run(run: PipelineRun) -> None:
    with anyio.CancelScope(shield=True):
        await anyio.to_thread.run_sync(run.close)


async def stream_body(run: PipelineRun) -> AsyncIterator[bytes]:
    """Yield the run's output and close the run once the body ends.

    A failure here happens after headers went out, so the exception is left to
    abort the connection rather than end the body cleanly.
    """
    try:
        yield run.first_chunk
        while True:
            chunk = await anyio.to_thread.run_sync(run.read_chunk)
            if chunk is None:
                break
            if chunk:
                yield chunk
        await anyio.to_thread.run_sync(run.finish)
    except PipelineError as exc:
        logger.warning("Job %s aborted mid-stream: %s", run.job.id, exc.message)
        raise
    finally:
        await _close_run(run)


class PipelineResponse(StreamingResponse):
    """Streams a run and closes it however the response ends.

    The body generator's own cleanup never runs when sending the headers
    fails, so the run is also closed here.
    """

    def __init__(self, run: PipelineRun) -> None:
        super().__init__(stream_body(run), media_type=run.job.spec.mime_type, headers=response_headers(run))
        self.run = run

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await _close_run(self.run)


def deliver(run: PipelineRun) -> StreamingResponse:
    return PipelineResponse(run)


def error_response(exc: PipelineError) -> JSONResponse:
    headers = {}
    retry_after = getattr(exc, "retry_after_header", None)
    if retry_after is not None:
        headers["Retry-After"] = retry_after
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)
