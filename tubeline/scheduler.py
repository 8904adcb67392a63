"""Admission control: per-client token buckets plus a global in-flight cap."""
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from .errors import InternalError, Overloaded, RateLimited
from .models import JobSpec

logger = logging.getLogger(__name__)

# Float refills can land a hair under a whole token after exactly retry_after.
_TOKEN_EPSILON = 1e-9


class JobState(str, Enum):
    ADMITTED = "admitted"
    RESOLVING = "resolving"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


_TRANSITIONS = {
    JobState.ADMITTED: {JobState.RESOLVING, JobState.FAILED},
    JobState.RESOLVING: {JobState.STREAMING, JobState.FAILED},
    JobState.STREAMING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


@dataclass
class Job:
    id: str
    spec: JobSpec
    client_key: str
    started_at: float
    state: JobState = JobState.ADMITTED
    scratch: Optional[Any] = None
    progress: float = 0.0
    error: Optional[str] = None
    finished_at: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def advance(self, state: JobState) -> None:
        with self._lock:
            if state not in _TRANSITIONS[self.state]:
                raise InternalError(f"Job {self.id} cannot move from {self.state.value} to {state.value}.")
            self.state = state

    def fail(self, reason: str) -> bool:
        """Move to FAILED unless already terminal. Returns True if it changed."""
        with self._lock:
            if self.state.terminal:
                return False
            self.state = JobState.FAILED
            self.error = reason
            return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "progress": round(self.progress, 1),
            "videoId": self.spec.locator.video_id,
            "mediaType": self.spec.media_type,
            "quality": self.spec.quality,
            "format": self.spec.container,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": self.error,
        }


@dataclass
class TokenBucket:
    capacity: float
    refill_per_second: float
    tokens: float
    updated_at: float

    def refill(self, now: float) -> None:
        elapsed = max(now - self.updated_at, 0.0)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_second)
        self.updated_at = now

    def has_token(self) -> bool:
        return self.tokens + _TOKEN_EPSILON >= 1.0

    def seconds_until_token(self) -> float:
        return max(1.0 - self.tokens, 0.0) / self.refill_per_second

    @property
    def full(self) -> bool:
        return self.tokens >= self.capacity


@dataclass
class AdmissionState:
    """Everything admissions share, guarded by one lock."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    buckets: Dict[str, TokenBucket] = field(default_factory=dict)
    active: Dict[str, Job] = field(default_factory=dict)
    recent: "OrderedDict[str, Job]" = field(default_factory=OrderedDict)
    counters: Dict[str, int] = field(
        default_factory=lambda: {
            "admitted": 0,
            "rate_limited": 0,
            "overloaded": 0,
            "completed": 0,
            "failed": 0,
        }
    )


class JobScheduler:
    def __init__(
        self,
        max_concurrent: int,
        bucket_capacity: int,
        refill_per_second: float,
        overload_retry_after: float = 5.0,
        history_size: int = 200,
        state: Optional[AdmissionState] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be positive")
        self.max_concurrent = max_concurrent
        self.bucket_capacity = float(bucket_capacity)
        self.refill_per_second = refill_per_second
        self.overload_retry_after = overload_retry_after
        self.history_size = history_size
        self.state = state or AdmissionState()
        self._clock = clock
        self._wall_clock = wall_clock

    def _bucket(self, client_key: str, now: float) -> TokenBucket:
        bucket = self.state.buckets.get(client_key)
        if bucket is None:
            bucket = TokenBucket(self.bucket_capacity, self.refill_per_second, self.bucket_capacity, now)
            self.state.buckets[client_key] = bucket
        else:
            bucket.refill(now)
        return bucket

    def _prune_buckets(self, now: float) -> None:
        # A full bucket is indistinguishable from a fresh one.
        for key, bucket in list(self.state.buckets.items()):
            bucket.refill(now)
            if bucket.full:
                del self.state.buckets[key]

    def admit(self, spec: JobSpec, client_key: str) -> Job:
        """Admit a job or raise RateLimited / Overloaded. Never blocks."""
        now = self._clock()
        with self.state.lock:
            bucket = self._bucket(client_key, now)
            if not bucket.has_token():
                self.state.counters["rate_limited"] += 1
                raise RateLimited(bucket.seconds_until_token())
            if len(self.state.active) >= self.max_concurrent:
                self.state.counters["overloaded"] += 1
                raise Overloaded(self.overload_retry_after)

            bucket.tokens -= 1.0
            job_id = uuid4().hex
            while job_id in self.state.active or job_id in self.state.recent:
                job_id = uuid4().hex
            job = Job(id=job_id, spec=spec, client_key=client_key, started_at=self._wall_clock())
            self.state.active[job_id] = job
            self.state.counters["admitted"] += 1
            if len(self.state.buckets) > 1024:
                self._prune_buckets(now)

        logger.info("Admitted job %s for %s (%s %s)", job.id, client_key, spec.media_type, spec.quality)
        return job

    def complete(self, job: Job) -> None:
        """Free the job's slot. Safe to call more than once."""
        with self.state.lock:
            if self.state.active.pop(job.id, None) is None:
                return
            if not job.state.terminal:
                job.fail("Job ended without reaching a terminal state.")
            job.finished_at = self._wall_clock()
            self.state.counters["completed" if job.state == JobState.COMPLETED else "failed"] += 1
            self.state.recent[job.id] = job
            while len(self.state.recent) > self.history_size:
                self.state.recent.popitem(last=False)

    def get(self, job_id: str) -> Optional[Job]:
        with self.state.lock:
            return self.state.active.get(job_id) or self.state.recent.get(job_id)

    def in_flight(self) -> int:
        with self.state.lock:
            return len(self.state.active)

    def snapshot(self) -> Dict[str, Any]:
        with self.state.lock:
            return {
                "in_flight": len(self.state.active),
                "max_concurrent": self.max_concurrent,
                "tracked_clients": len(self.state.buckets),
                **self.state.counters,
            }
