from .service import AudioPersistenceService, segment_storage_path

__all__ = ["AudioPersistenceService", "segment_storage_path"]
