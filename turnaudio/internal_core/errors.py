from __future__ import annotations


class PipelineError(RuntimeError):
    def __init__(self, code: str, message: str, origin: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.origin = origin


class ProviderError(PipelineError):
    """Raised when the voice-AI provider call fails or cannot be reached."""

    def __init__(self, code: str, message: str, origin: str = "provider"):
        super().__init__(code, message, origin)


class MalformedProviderResponse(ProviderError):
    """Raised when the provider answers with a payload we cannot interpret."""

    def __init__(self, message: str, origin: str = "provider"):
        super().__init__("MALFORMED_RESPONSE", message, origin)


class StorageError(PipelineError):
    def __init__(self, code: str, message: str, origin: str = "storage"):
        super().__init__(code, message, origin)


class InvalidTransition(PipelineError):
    def __init__(self, message: str):
        super().__init__("INVALID_TRANSITION", message, "reconstruction")


class ConversationNotFound(KeyError):
    def __init__(self, session_id: str):
        super().__init__(f"Unknown session_id: {session_id}")
        self.session_id = session_id
