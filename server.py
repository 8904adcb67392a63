"""FastAPI backend for tubeline.

This service exposes:
- POST/GET /api/download               : streams a video (mp4/mkv) or audio (mp3/m4a) track
- GET /api/download/progress/{job_id}  : server-sent progress events for a running download
- GET /api/jobs/{job_id}               : job status
- GET /api/info, /api/info/{video_id}  : metadata and available qualities, no transcoding
- POST /api/info/batch                 : metadata for up to 10 URLs
- GET /api/health[/dependencies|/stats]: readiness and counters

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import json
import logging
import os
import platform
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import anyio
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from tubeline import __version__
from tubeline.catalog import available_qualities
from tubeline.config import Settings
from tubeline.delivery import EXPOSED_HEADERS, deliver, error_response
from tubeline.errors import InternalError, InvalidParameter, PipelineError
from tubeline.models import ResolvedContent
from tubeline.pipeline import PipelineExecutor
from tubeline.resolver import YtDlpResolver
from tubeline.scheduler import JobScheduler
from tubeline.scratch import ScratchManager
from tubeline.transcoder import FfmpegTranscoder
from tubeline.validation import DownloadRequest, parse_locator, validate

APP_NAME = "tubeline API"
MAX_BATCH_URLS = 10

logger = logging.getLogger("tubeline.server")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@dataclass
class Services:
    settings: Settings
    resolver: Any
    transcoder: Any
    scheduler: JobScheduler
    scratch: ScratchManager
    executor: PipelineExecutor
    started_at: float


def build_services(settings: Settings, resolver: Any = None, transcoder: Any = None) -> Services:
    resolver = resolver or YtDlpResolver(settings.ytdlp_command)
    transcoder = transcoder or FfmpegTranscoder(settings.ffmpeg_binary)
    scheduler = JobScheduler(
        max_concurrent=settings.max_concurrent,
        bucket_capacity=settings.rate_limit_capacity,
        refill_per_second=settings.refill_per_second,
        overload_retry_after=settings.overload_retry_after,
        history_size=settings.job_history_size,
    )
    scratch = ScratchManager(
        settings.scratch_dir,
        grace_seconds=settings.scratch_grace_seconds,
        sweep_interval=settings.scratch_sweep_interval,
    )
    executor = PipelineExecutor(
        resolver,
        transcoder,
        scratch,
        scheduler,
        resolve_timeout=settings.resolve_timeout,
        stall_timeout=settings.stall_timeout,
        resolve_workers=settings.max_concurrent * 2 + 2,
    )
    return Services(settings, resolver, transcoder, scheduler, scratch, executor, time.time())


def _services(request: Request) -> Services:
    return request.app.state.services


def client_key(request: Request, trust_proxy: bool) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _info_payload(content: ResolvedContent) -> Dict[str, Any]:
    return {**content.metadata.to_dict(), "availableQualities": available_qualities(content.renditions)}


class BatchInfoRequest(BaseModel):
    urls: List[str]


router = APIRouter()


@router.get("/")
async def root() -> Dict[str, Any]:
    return {
        "status": "ok",
        "name": APP_NAME,
        "version": __version__,
        "endpoints": {
            "health": "/api/health",
            "info": "/api/info/{video_id}",
            "download": "/api/download",
            "progress": "/api/download/progress/{job_id}",
        },
    }


@router.get("/api/health")
def healthcheck(request: Request) -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    services = _services(request)
    return {
        "status": "ok",
        "service": APP_NAME,
        "version": __version__,
        "uptime": int(time.time() - services.started_at),
        "yt_dlp": services.resolver.version(),
        "ffmpeg": services.transcoder.version() or "missing",
        "max_concurrent_downloads": services.scheduler.max_concurrent,
        "in_flight": services.scheduler.in_flight(),
    }


@router.get("/api/health/dependencies")
def dependency_check(request: Request) -> JSONResponse:
    services = _services(request)
    checks: List[Dict[str, Any]] = []

    resolver_version = services.resolver.version()
    cli_ok = services.resolver.cli_available()
    checks.append(
        {
            "name": "yt-dlp",
            "status": "ok" if resolver_version and cli_ok else "error",
            "message": f"yt-dlp {resolver_version}" if cli_ok else "yt-dlp command not found in PATH",
        }
    )

    ffmpeg_version = services.transcoder.version()
    checks.append(
        {
            "name": "ffmpeg",
            "status": "ok" if ffmpeg_version else "error",
            "message": ffmpeg_version or "ffmpeg binary not found",
        }
    )

    writable, message = services.scratch.check_writable()
    checks.append(
        {
            "name": "scratch-directory",
            "status": "ok" if writable else "error",
            "message": message,
            "path": services.scratch.root,
        }
    )

    healthy = all(check["status"] == "ok" for check in checks)
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "timestamp": time.time(), "checks": checks},
    )


@router.get("/api/health/stats")
def stats(request: Request) -> Dict[str, Any]:
    services = _services(request)
    return {
        "timestamp": time.time(),
        "uptime": int(time.time() - services.started_at),
        "jobs": services.scheduler.snapshot(),
        "scratch": {"root": services.scratch.root, "live": services.scratch.live_count()},
        "server": {
            "pid": os.getpid(),
            "platform": platform.platform(),
            "python": platform.python_version(),
        },
    }


@router.get("/api/info")
def fetch_info(request: Request, url: str = Query(..., description="YouTube URL or video id")) -> Dict[str, Any]:
    """Return metadata for the provided URL."""
    locator = parse_locator(url)
    return _info_payload(_services(request).executor.lookup(locator))


@router.post("/api/info/batch")
def fetch_info_batch(request: Request, payload: BatchInfoRequest) -> Dict[str, Any]:
    urls = payload.urls
    if not urls:
        raise InvalidParameter("urls", "Provide a non-empty list of URLs.")
    if len(urls) > MAX_BATCH_URLS:
        raise InvalidParameter("urls", f"At most {MAX_BATCH_URLS} URLs can be processed at once.")
    executor = _services(request).executor

    def lookup_one(url: str) -> Dict[str, Any]:
        try:
            content = executor.lookup(parse_locator(url))
        except PipelineError as exc:
            return {"url": url, "ok": False, **exc.to_dict()}
        return {"url": url, "ok": True, **_info_payload(content)}

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lookup_one, urls))

    successful: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    for result in results:
        (successful if result.pop("ok") else failed).append(result)
    return {
        "successful": successful,
        "failed": failed,
        "summary": {"total": len(urls), "successful": len(successful), "failed": len(failed)},
    }


@router.get("/api/info/{video_id}")
def fetch_info_by_id(request: Request, video_id: str) -> Dict[str, Any]:
    locator = parse_locator(video_id)
    return _info_payload(_services(request).executor.lookup(locator))


def _start_download(request: Request, payload: DownloadRequest) -> StreamingResponse:
    services = _services(request)
    spec = validate(payload)
    job = services.scheduler.admit(spec, client_key(request, services.settings.trust_proxy))
    run = services.executor.start(job)
    return deliver(run)


@router.post("/api/download")
def download(request: Request, payload: DownloadRequest) -> StreamingResponse:
    """
    Stream the requested track back to the client.

    - yt-dlp writes the selected format to stdout, piped into ffmpeg
    - video-only formats are combined with a separately downloaded audio track
    - headers are only sent once ffmpeg has produced its first chunk
    """
    return _start_download(request, payload)


@router.get("/api/download")
def download_get(
    request: Request,
    url: str = Query(..., description="Video URL to download"),
    type: str = Query("video", description="video or audio"),
    quality: str = Query("highest", description="e.g. 1080p, 720p, 192k, highest, lowest"),
    format: Optional[str] = Query(None, description="mp4/mkv for video, mp3/m4a for audio"),
) -> StreamingResponse:
    return _start_download(request, DownloadRequest(url=url, type=type, quality=quality, format=format))


@router.get("/api/download/progress/{job_id}")
async def download_progress(request: Request, job_id: str):
    job = _services(request).scheduler.get(job_id)
    if job is None:
        return JSONResponse(status_code=404, content={"error": "JobNotFound", "message": f"No job with id {job_id}."})

    async def events():
        while True:
            payload = {"jobId": job.id, "progress": round(job.progress), "status": job.state.value}
            yield f"data: {json.dumps(payload)}\n\n"
            if job.state.terminal or await request.is_disconnected():
                break
            await anyio.sleep(0.5)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/api/jobs/{job_id}")
def job_status(request: Request, job_id: str):
    job = _services(request).scheduler.get(job_id)
    if job is None:
        return JSONResponse(status_code=404, content={"error": "JobNotFound", "message": f"No job with id {job_id}."})
    return job.to_dict()


async def _pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    return error_response(exc)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    field = str(errors[0]["loc"][-1]) if errors and errors[0].get("loc") else "body"
    message = errors[0].get("msg") if errors else "Invalid request."
    return error_response(InvalidParameter(field, message))


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return error_response(InternalError(str(exc) or exc.__class__.__name__))


def create_app(
    settings: Optional[Settings] = None,
    resolver: Any = None,
    transcoder: Any = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    services = build_services(settings, resolver=resolver, transcoder=transcoder)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.scratch.purge_orphans()
        services.scratch.start()
        logger.info(
            "%s %s ready (max concurrent %d, scratch %s)",
            APP_NAME,
            __version__,
            settings.max_concurrent,
            settings.scratch_dir,
        )
        try:
            yield
        finally:
            services.scratch.stop()
            services.executor.shutdown()

    app = FastAPI(title=APP_NAME, version=__version__, lifespan=lifespan)
    app.state.services = services

    # Allow the frontend to connect from any origin during development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )
    app.add_exception_handler(PipelineError, _pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    app.include_router(router)
    return app


_settings = Settings.from_env()
_setup_logging(_settings.log_level)
app = create_app(_settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
