"""Runtime settings, read from the environment once at startup."""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    try:
        return max(int(os.getenv(name, str(default)) or str(default)), minimum)
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(float(os.getenv(name, str(default)) or str(default)), minimum)
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    max_concurrent: int = 3
    rate_limit_capacity: int = 10
    rate_limit_refill_per_minute: float = 10.0
    overload_retry_after: float = 5.0
    resolve_timeout: float = 20.0
    stall_timeout: float = 30.0
    scratch_dir: str = os.path.join(tempfile.gettempdir(), "tubeline-scratch")
    scratch_grace_seconds: float = 1800.0
    scratch_sweep_interval: float = 30.0
    ffmpeg_binary: str = "ffmpeg"
    ytdlp_command: str = "yt-dlp"
    trust_proxy: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    job_history_size: int = 200

    @property
    def refill_per_second(self) -> float:
        return self.rate_limit_refill_per_minute / 60.0

    @classmethod
    def from_env(cls, scratch_dir: Optional[str] = None) -> "Settings":
        origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()]
        return cls(
            max_concurrent=_env_int("MAX_CONCURRENT_DOWNLOADS", 3),
            rate_limit_capacity=_env_int("RATE_LIMIT_CAPACITY", 10),
            rate_limit_refill_per_minute=_env_float("RATE_LIMIT_REFILL_PER_MINUTE", 10.0, minimum=0.01),
            overload_retry_after=_env_float("OVERLOAD_RETRY_AFTER", 5.0),
            resolve_timeout=_env_float("RESOLVE_TIMEOUT", 20.0, minimum=0.1),
            stall_timeout=_env_float("STALL_TIMEOUT", 30.0, minimum=0.1),
            scratch_dir=scratch_dir or os.getenv("SCRATCH_DIR") or cls.scratch_dir,
            scratch_grace_seconds=_env_float("SCRATCH_GRACE_SECONDS", 1800.0, minimum=1.0),
            scratch_sweep_interval=_env_float("SCRATCH_SWEEP_INTERVAL", 30.0, minimum=0.5),
            ffmpeg_binary=os.getenv("FFMPEG_BINARY") or "ffmpeg",
            ytdlp_command=os.getenv("YTDLP_COMMAND") or "yt-dlp",
            trust_proxy=_env_flag("TRUST_PROXY"),
            cors_origins=origins or ["*"],
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            job_history_size=_env_int("JOB_HISTORY_SIZE", 200),
        )
