"""Per-job scratch directories with exactly-once, reader-aware release."""
from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from .errors import ScratchAllocationError

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "tubeline_"


class ScratchResource:
    def __init__(self, job_id: str, path: str, created_at: float) -> None:
        self.job_id = job_id
        self.path = path
        self.created_at = created_at
        self.readers = 0
        self.released = False
        self.release_pending = False

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    def file(self, name: str) -> str:
        return os.path.join(self.path, name)

    def __repr__(self) -> str:
        return f"ScratchResource({self.name!r}, released={self.released})"


class ScratchManager:
    def __init__(
        self,
        root: str,
        grace_seconds: float = 1800.0,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.root = root
        self.grace_seconds = grace_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._resources: Dict[str, ScratchResource] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def allocate(self, job_id: str) -> ScratchResource:
        # The random suffix keeps names unique even if a job id were reused.
        path = os.path.join(self.root, f"{SCRATCH_PREFIX}{job_id}_{uuid4().hex[:12]}")
        try:
            os.makedirs(path)
        except OSError as exc:
            raise ScratchAllocationError(f"Could not create scratch directory: {exc}") from exc
        resource = ScratchResource(job_id, path, self._clock())
        with self._lock:
            self._resources[path] = resource
        logger.debug("Allocated scratch %s for job %s", resource.name, job_id)
        return resource

    def release(self, resource: Optional[ScratchResource]) -> bool:
        """Delete the resource now, or once its last reader is done.

        Returns True when this call deleted it. Releasing twice is a no-op.
        """
        if resource is None:
            return False
        with self._lock:
            if resource.released:
                return False
            if resource.readers > 0:
                resource.release_pending = True
                return False
            resource.released = True
            self._resources.pop(resource.path, None)
        self._remove(resource.path)
        return True

    @contextmanager
    def reading(self, resource: ScratchResource) -> Iterator[ScratchResource]:
        """Hold off release while the caller reads from the resource."""
        with self._lock:
            if resource.released:
                raise ScratchAllocationError("Scratch resource was already released.")
            resource.readers += 1
        try:
            yield resource
        finally:
            with self._lock:
                resource.readers -= 1
                deferred = resource.readers == 0 and resource.release_pending
            if deferred:
                self.release(resource)

    def sweep(self, now: Optional[float] = None) -> int:
        """Release everything older than the grace period. Returns how many went."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [r for r in self._resources.values() if now - r.created_at >= self.grace_seconds]
        released = sum(1 for resource in expired if self.release(resource))
        if released:
            logger.info("Scratch sweep released %d expired resource(s)", released)
        return released

    def purge_orphans(self) -> int:
        """Remove scratch directories left behind by an earlier process."""
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return 0
        except OSError as exc:
            logger.warning("Could not list scratch root %s: %s", self.root, exc)
            return 0
        with self._lock:
            live = {os.path.basename(path) for path in self._resources}
        orphans = [n for n in names if n.startswith(SCRATCH_PREFIX) and n not in live]
        for name in orphans:
            self._remove(os.path.join(self.root, name))
        if orphans:
            logger.info("Removed %d orphaned scratch director(ies)", len(orphans))
        return len(orphans)

    def live(self) -> List[ScratchResource]:
        with self._lock:
            return list(self._resources.values())

    def live_count(self) -> int:
        with self._lock:
            return len(self._resources)

    def check_writable(self) -> Tuple[bool, str]:
        probe = os.path.join(self.root, f".health-{uuid4().hex[:8]}")
        try:
            os.makedirs(self.root, exist_ok=True)
            with open(probe, "w", encoding="utf-8") as handle:
                handle.write("ok")
            os.remove(probe)
        except OSError as exc:
            return False, str(exc)
        return True, "Scratch directory writable"

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="scratch-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Scratch sweep failed")

    @staticmethod
    def _remove(path: str) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove scratch %s: %s", path, exc)
