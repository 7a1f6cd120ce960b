from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # turnaudio/internal_core/config.py -> turnaudio -> repo root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class PipelineConfig:
    HUME_API_KEY: Optional[str]
    HUME_API_BASE_URL: str
    HUME_REQUEST_TIMEOUT_SEC: float
    SUPABASE_URL: Optional[str]
    SUPABASE_SERVICE_ROLE_KEY: Optional[str]
    TURNAUDIO_STORAGE_BUCKET: str
    TURNAUDIO_PROVIDER: str
    TURNAUDIO_STORE: str
    TURNAUDIO_MATCH_TOLERANCE_MS: int
    TURNAUDIO_POLL_MAX_ATTEMPTS: int
    TURNAUDIO_POLL_INTERVAL_MS: int
    TURNAUDIO_MAX_WORKERS: int
    TURNAUDIO_SAMPLE_RATE_HZ: int
    TURNAUDIO_MAX_AUDIO_SECONDS: int
    TURNAUDIO_PIPELINE_DEADLINE_SEC: Optional[float]
    TURNAUDIO_TMP_DIR: str
    TURNAUDIO_LOG_LEVEL: str
    TURNAUDIO_PERSIST_FAILED_TURNS: bool
    TURNAUDIO_ARCHIVE_MERGED_AUDIO: bool

    def tmp_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        root = repo_root if repo_root is not None else _project_root()
        return (root / self.TURNAUDIO_TMP_DIR).resolve()

    @property
    def hume_configured(self) -> bool:
        return bool(self.HUME_API_KEY)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)


def load_config() -> PipelineConfig:
    deadline = _getenv_float("TURNAUDIO_PIPELINE_DEADLINE_SEC", 0.0)
    return PipelineConfig(
        HUME_API_KEY=_getenv_opt_str("HUME_API_KEY"),
        HUME_API_BASE_URL=_getenv_str("HUME_API_BASE_URL", "https://api.hume.ai").rstrip("/"),
        HUME_REQUEST_TIMEOUT_SEC=_getenv_float("HUME_REQUEST_TIMEOUT_SEC", 30.0),
        SUPABASE_URL=_getenv_opt_str("SUPABASE_URL"),
        SUPABASE_SERVICE_ROLE_KEY=_getenv_opt_str("SUPABASE_SERVICE_ROLE_KEY"),
        TURNAUDIO_STORAGE_BUCKET=_getenv_str("TURNAUDIO_STORAGE_BUCKET", "conversation-audio"),
        # "hume" or "mock"; "auto" picks hume when an API key is present.
        TURNAUDIO_PROVIDER=_getenv_str("TURNAUDIO_PROVIDER", "auto"),
        # "supabase" or "memory"; "auto" picks supabase when credentials are present.
        TURNAUDIO_STORE=_getenv_str("TURNAUDIO_STORE", "auto"),
        TURNAUDIO_MATCH_TOLERANCE_MS=_getenv_int("TURNAUDIO_MATCH_TOLERANCE_MS", 30 * 60 * 1000),
        TURNAUDIO_POLL_MAX_ATTEMPTS=_getenv_int("TURNAUDIO_POLL_MAX_ATTEMPTS", 6),
        TURNAUDIO_POLL_INTERVAL_MS=_getenv_int("TURNAUDIO_POLL_INTERVAL_MS", 5000),
        TURNAUDIO_MAX_WORKERS=max(1, _getenv_int("TURNAUDIO_MAX_WORKERS", 4)),
        TURNAUDIO_SAMPLE_RATE_HZ=_getenv_int("TURNAUDIO_SAMPLE_RATE_HZ", 16000),
        TURNAUDIO_MAX_AUDIO_SECONDS=_getenv_int("TURNAUDIO_MAX_AUDIO_SECONDS", 4 * 3600),
        TURNAUDIO_PIPELINE_DEADLINE_SEC=deadline if deadline > 0 else None,
        TURNAUDIO_TMP_DIR=_getenv_str("TURNAUDIO_TMP_DIR", "./tmp"),
        TURNAUDIO_LOG_LEVEL=_getenv_str("TURNAUDIO_LOG_LEVEL", "INFO"),
        TURNAUDIO_PERSIST_FAILED_TURNS=_getenv_bool("TURNAUDIO_PERSIST_FAILED_TURNS", True),
        # On COMPLETE, copy the merged recording into the storage bucket.
        TURNAUDIO_ARCHIVE_MERGED_AUDIO=_getenv_bool("TURNAUDIO_ARCHIVE_MERGED_AUDIO", True),
    )
