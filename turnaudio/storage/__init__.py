from __future__ import annotations

from typing import Tuple

from ..internal_core.config import PipelineConfig
from ..internal_core.conversation_store import ConversationStore, InMemoryConversationStore
from .base import BlobStore
from .memory import InMemoryBlobStore
from .supabase_store import (
    SupabaseBlobStore,
    SupabaseConversationStore,
    create_supabase_client,
)


def build_stores(cfg: PipelineConfig) -> Tuple[ConversationStore, BlobStore]:
    choice = cfg.TURNAUDIO_STORE.strip().lower()
    if choice == "auto":
        choice = "supabase" if cfg.supabase_configured else "memory"
    if choice == "supabase":
        client = create_supabase_client(cfg)
        return SupabaseConversationStore(client), SupabaseBlobStore(client, cfg.TURNAUDIO_STORAGE_BUCKET)
    if choice == "memory":
        return InMemoryConversationStore(), InMemoryBlobStore()
    raise ValueError(f"Unsupported TURNAUDIO_STORE: {cfg.TURNAUDIO_STORE}")


__all__ = [
    "BlobStore",
    "InMemoryBlobStore",
    "SupabaseBlobStore",
    "SupabaseConversationStore",
    "build_stores",
    "create_supabase_client",
]
