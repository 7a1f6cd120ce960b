from __future__ import annotations

from ..internal_core.config import PipelineConfig
from .base import VoiceProvider, normalize_job_status
from .hume import HumeProvider
from .mock import MockVoiceProvider


def build_provider(cfg: PipelineConfig) -> VoiceProvider:
    choice = cfg.TURNAUDIO_PROVIDER.strip().lower()
    if choice == "auto":
        choice = "hume" if cfg.hume_configured else "mock"
    if choice == "hume":
        return HumeProvider(
            api_key=cfg.HUME_API_KEY or "",
            base_url=cfg.HUME_API_BASE_URL,
            timeout_sec=cfg.HUME_REQUEST_TIMEOUT_SEC,
        )
    if choice == "mock":
        return MockVoiceProvider()
    raise ValueError(f"Unsupported TURNAUDIO_PROVIDER: {cfg.TURNAUDIO_PROVIDER}")


__all__ = [
    "HumeProvider",
    "MockVoiceProvider",
    "VoiceProvider",
    "build_provider",
    "normalize_job_status",
]
