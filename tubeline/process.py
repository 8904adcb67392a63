"""Scoped subprocess wrapper shared by the source opener and the transcoder."""
from __future__ import annotations

import logging
import subprocess
import threading
from collections import deque
from typing import IO, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


class ManagedProcess:
    """A Popen whose stderr is drained in the background and which is always reaped.

    ``on_stderr_line`` sees every decoded stderr line and returns True for
    lines it consumed; the last ``tail_size`` other lines are kept for error
    messages.
    """

    def __init__(
        self,
        cmd: Sequence[str],
        stdin: Optional[IO[bytes]] = None,
        on_stderr_line: Optional[Callable[[str], Optional[bool]]] = None,
        tail_size: int = 20,
        name: str = "process",
    ) -> None:
        self.cmd = list(cmd)
        self.name = name
        self._on_stderr_line = on_stderr_line
        self._tail: deque = deque(maxlen=tail_size)
        self.proc = subprocess.Popen(
            self.cmd,
            stdin=stdin if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
        # Drain stderr to avoid deadlock and capture errors.
        self._stderr_thread = threading.Thread(target=self._drain_stderr, name=f"{name}-stderr", daemon=True)
        self._stderr_thread.start()

    @property
    def stdout(self) -> IO[bytes]:
        return self.proc.stdout

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.poll()

    def _drain_stderr(self) -> None:
        stream = self.proc.stderr
        if stream is None:
            return
        try:
            for line in iter(stream.readline, b""):
                text = line.decode("utf-8", "ignore").strip()
                if not text:
                    continue
                consumed = False
                if self._on_stderr_line is not None:
                    try:
                        consumed = bool(self._on_stderr_line(text))
                    except Exception:
                        logger.exception("stderr handler for %s failed", self.name)
                if not consumed:
                    self._tail.append(text)
        except (OSError, ValueError):
            # Pipe closed underneath us by terminate().
            pass

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.proc.wait(timeout=timeout)

    def error_detail(self, lines: int = 6) -> str:
        self._stderr_thread.join(timeout=1)
        tail: List[str] = list(self._tail)[-lines:]
        detail = "\n".join(tail).strip()
        return detail or f"{self.name} exited with code {self.proc.returncode}"

    def terminate(self) -> None:
        """Kill if still running, reap, and close our pipe ends."""
        if self.proc.poll() is None:
            self.proc.kill()
        try:
            self.proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("%s (pid %s) did not exit after kill", self.name, self.proc.pid)
        for stream in (self.proc.stdout, self.proc.stderr):
            try:
                if stream:
                    stream.close()
            except OSError:
                pass
