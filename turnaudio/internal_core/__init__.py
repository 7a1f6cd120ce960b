from .config import PipelineConfig, load_config
from .conversation_store import ConversationStore, InMemoryConversationStore

__all__ = ["PipelineConfig", "load_config", "ConversationStore", "InMemoryConversationStore"]
