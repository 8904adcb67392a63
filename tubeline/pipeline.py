"""Pipeline executor: resolve, open sources, transcode, hand bytes to delivery.

A job moves admitted -> resolving -> streaming -> completed, or to failed from
any of those. ``PipelineExecutor.start`` returns only once ffmpeg has produced
its first chunk, so nothing is committed to the client for a job that dies
immediately. ``PipelineRun.close`` is the single teardown path: it kills the
processes, releases scratch and frees the scheduler slot, and it is safe to
call from any exit path, including client disconnect.
"""
from __future__ import annotations

import json
import logging
import queue
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import ExitStack
from typing import IO, Any, Callable, Dict, List, Optional

from . import catalog
from .errors import (
    InternalError,
    PipelineError,
    ResolutionTimeout,
    SourceStreamError,
    StreamingStalled,
    TranscodeError,
)
from .models import AudioOnly, ContentLocator, ContentMetadata, ResolvedContent, Selection
from .scheduler import Job, JobScheduler, JobState
from .scratch import ScratchManager
from .transcoder import TranscodeRequest

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 256
POLL_INTERVAL = 0.5
_EOF = object()


def _job_log(level: str, *, job_id: str, event: str, **fields: Any) -> None:
    payload = {"event": event, "job_id": job_id, **fields}
    getattr(logger, level)(json.dumps(payload, sort_keys=True, default=str))


class ProgressChannel:
    """Monotonic percent-complete feed with independent subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[float], None]] = {}
        self._next_id = 0
        self._value = 0.0
        self._closed = False

    @property
    def value(self) -> float:
        return self._value

    def subscribe(self, callback: Callable[[float], None]) -> Callable[[], None]:
        with self._lock:
            token = self._next_id
            self._next_id += 1
            self._subscribers[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, percent: float) -> None:
        with self._lock:
            if self._closed:
                return
            percent = min(max(percent, 0.0), 100.0)
            if percent <= self._value:
                return
            self._value = percent
            subscribers = list(self._subscribers.values())
        for callback in subscribers:
            try:
                callback(percent)
            except Exception:
                logger.exception("Progress subscriber failed")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()


class _Pump:
    """Copies a blocking byte stream into a bounded queue on a daemon thread."""

    def __init__(self, stream: IO[bytes], chunk_size: int, name: str, max_chunks: int = 16) -> None:
        self.stream = stream
        self.chunk_size = chunk_size
        self.items: "queue.Queue[Any]" = queue.Queue(maxsize=max_chunks)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            for chunk in iter(lambda: self.stream.read(self.chunk_size), b""):
                if self._stop.is_set():
                    return
                self._put(chunk)
        except (OSError, ValueError) as exc:
            if not self._stop.is_set():
                self._put(exc)
            return
        self._put(_EOF)

    def _put(self, item: Any) -> None:
        while not self._stop.is_set():
            try:
                self.items.put(item, timeout=0.25)
                return
            except queue.Full:
                continue

    def get(self, timeout: float) -> Any:
        return self.items.get(timeout=timeout)

    def stop(self) -> None:
        self._stop.set()


class PipelineRun:
    """One admitted job from resolution to teardown."""

    def __init__(self, executor: "PipelineExecutor", job: Job) -> None:
        self.executor = executor
        self.job = job
        self.metadata: Optional[ContentMetadata] = None
        self.selection: Optional[Selection] = None
        self.first_chunk = b""
        self.bytes_sent = 0
        self.progress = ProgressChannel()
        self._sources: List[Any] = []
        self._pumps: List[_Pump] = []
        self._session: Any = None
        self._output: Optional[_Pump] = None
        self._held = ExitStack()
        self._eof = False
        self._last_output = executor.clock()
        self._close_lock = threading.Lock()
        self._closed = False

        def track(percent: float) -> None:
            job.progress = percent

        self.progress.subscribe(track)
        self.progress.subscribe(self._log_progress())

    def _log_progress(self) -> Callable[[float], None]:
        reported = {"step": 0}

        def log(percent: float) -> None:
            step = int(percent // 25)
            if step > reported["step"]:
                reported["step"] = step
                _job_log("info", job_id=self.job.id, event="job_progress", percent=round(percent, 1))

        return log

    @property
    def approx_size(self) -> Optional[int]:
        return self.selection.approx_size if self.selection else None

    def _fail(self, exc: PipelineError) -> PipelineError:
        if self.job.fail(exc.message):
            _job_log(
                "warning",
                job_id=self.job.id,
                event="job_failed",
                state_error=exc.code,
                message=exc.message,
                bytes_sent=self.bytes_sent,
            )
        return exc

    def prepare(self) -> None:
        executor = self.executor
        job = self.job
        spec = job.spec

        job.advance(JobState.RESOLVING)
        _job_log("info", job_id=job.id, event="job_resolving", video_id=spec.locator.video_id)
        content = executor.lookup(spec.locator)
        self.metadata = content.metadata

        job.scratch = executor.scratch.allocate(job.id)
        self.selection = catalog.select(content.renditions, spec.media_type, spec.quality, spec.container)
        _job_log(
            "info",
            job_id=job.id,
            event="job_selected",
            primary=self.selection.primary.handle.format_id,
            audio=self.selection.audio.handle.format_id if self.selection.audio else None,
        )

        # Resolving ends once renditions are chosen; moving bytes from here on
        # is bounded by the stall timeout.
        job.advance(JobState.STREAMING)
        audio_path = None
        if self.selection.needs_combination:
            audio_path = self._spool_audio(self.selection.audio)
        primary = executor.resolver.open_stream(self.selection.primary.handle)
        self._sources.append(primary)

        self._held.enter_context(executor.scratch.reading(job.scratch))
        self._session = executor.transcoder.start(
            TranscodeRequest(
                spec=spec,
                selection=self.selection,
                primary=primary.stdout,
                audio_path=audio_path,
                duration_seconds=self.metadata.duration_seconds,
                on_progress=self.progress.publish,
            )
        )
        self._output = _Pump(self._session.stdout, executor.chunk_size, name=f"output-{job.id[:8]}")
        self._pumps.append(self._output)
        self._last_output = executor.clock()

        first = b""
        while first == b"":
            first = self.read_chunk()
        if first is None:
            # ffmpeg ended without output; finish() reports why.
            self.finish()
            raise self._fail(TranscodeError("ffmpeg produced no output."))
        self.first_chunk = first
        _job_log("info", job_id=job.id, event="job_streaming", selection_size=self.approx_size)

    def _spool_audio(self, rendition: AudioOnly) -> str:
        """Download the audio track into scratch so ffmpeg can read it as a second input."""
        executor = self.executor
        path = self.job.scratch.file(f"audio.{rendition.ext or 'bin'}")
        source = executor.resolver.open_stream(rendition.handle)
        self._sources.append(source)
        pump = _Pump(source.stdout, executor.chunk_size, name=f"spool-{self.job.id[:8]}")
        self._pumps.append(pump)
        last = executor.clock()
        with executor.scratch.reading(self.job.scratch), open(path, "wb") as handle:
            while True:
                try:
                    item = pump.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    if executor.clock() - last > executor.stall_timeout:
                        raise StreamingStalled("Audio download stalled.")
                    continue
                if item is _EOF:
                    break
                if isinstance(item, Exception):
                    raise SourceStreamError(f"Audio download failed: {item}")
                handle.write(item)
                last = executor.clock()
        try:
            source.check()
        except subprocess.TimeoutExpired as exc:
            raise SourceStreamError("Audio download did not finish.") from exc
        return path

    def read_chunk(self, poll: float = POLL_INTERVAL) -> Optional[bytes]:
        """Next output chunk, ``b""`` if none arrived within ``poll``, None at end of stream."""
        if self._eof or self._output is None:
            return None
        try:
            item = self._output.get(timeout=poll)
        except queue.Empty:
            if self.executor.clock() - self._last_output > self.executor.stall_timeout:
                raise self._fail(
                    StreamingStalled(f"No output from ffmpeg for {self.executor.stall_timeout:g}s.")
                )
            return b""
        if item is _EOF:
            self._eof = True
            return None
        if isinstance(item, Exception):
            raise self._fail(TranscodeError(f"Reading ffmpeg output failed: {item}"))
        self._last_output = self.executor.clock()
        self.bytes_sent += len(item)
        return item

    def finish(self) -> None:
        """Reap the processes after end of stream and mark the job completed."""
        try:
            returncode = self._session.wait(timeout=5)
        except subprocess.TimeoutExpired:
            raise self._fail(TranscodeError("ffmpeg did not exit after end of output."))
        if returncode != 0:
            raise self._fail(TranscodeError(self._session.error_detail()))
        for source in self._sources:
            try:
                source.check()
            except SourceStreamError as exc:
                raise self._fail(exc)
            except subprocess.TimeoutExpired:
                raise self._fail(SourceStreamError("Source download did not exit."))
        if self.bytes_sent == 0:
            return
        self.progress.publish(100.0)
        self.job.advance(JobState.COMPLETED)
        _job_log(
            "info",
            job_id=self.job.id,
            event="job_completed",
            bytes_sent=self.bytes_sent,
            seconds=round(time.time() - self.job.started_at, 2),
        )

    def close(self, error: Optional[PipelineError] = None) -> None:
        """Tear everything down. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        if error is not None:
            self._fail(error)
        elif self.job.fail("Cancelled before completion."):
            _job_log("info", job_id=self.job.id, event="job_cancelled", bytes_sent=self.bytes_sent)

        for pump in self._pumps:
            pump.stop()
        if self._session is not None:
            self._teardown(self._session.terminate, "ffmpeg")
        for source in self._sources:
            self._teardown(source.close, "source stream")
        self._teardown(self._held.close, "scratch reader")
        self._teardown(lambda: self.executor.scratch.release(self.job.scratch), "scratch release")
        self.progress.close()
        self.executor.scheduler.complete(self.job)

    def _teardown(self, step: Callable[[], Any], what: str) -> None:
        try:
            step()
        except Exception:
            logger.exception("Failed to clean up %s for job %s", what, self.job.id)


class PipelineExecutor:
    def __init__(
        self,
        resolver: Any,
        transcoder: Any,
        scratch: ScratchManager,
        scheduler: JobScheduler,
        resolve_timeout: float = 20.0,
        stall_timeout: float = 30.0,
        chunk_size: int = CHUNK_SIZE,
        resolve_workers: int = 8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.transcoder = transcoder
        self.scratch = scratch
        self.scheduler = scheduler
        self.resolve_timeout = resolve_timeout
        self.stall_timeout = stall_timeout
        self.chunk_size = chunk_size
        self.clock = clock
        # Timed-out lookups keep their worker until yt-dlp returns.
        self._resolve_pool = ThreadPoolExecutor(max_workers=resolve_workers, thread_name_prefix="resolver")

    def lookup(self, locator: ContentLocator) -> ResolvedContent:
        """Resolve metadata and renditions, bounded by ``resolve_timeout``."""
        future = self._resolve_pool.submit(self.resolver.resolve, locator)
        try:
            return future.result(timeout=self.resolve_timeout)
        except FutureTimeout:
            future.cancel()
            raise ResolutionTimeout(f"Looking up {locator} took longer than {self.resolve_timeout:g}s.")

    def start(self, job: Job) -> PipelineRun:
        run = PipelineRun(self, job)
        try:
            run.prepare()
        except PipelineError as exc:
            run.close(exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected failure preparing job %s", job.id)
            error = InternalError(str(exc) or exc.__class__.__name__)
            run.close(error)
            raise error from exc
        return run

    def shutdown(self) -> None:
        self._resolve_pool.shutdown(wait=False, cancel_futures=True)
