"""
Chat identity resolution and audio reconstruction polling.

Design intent:
- Link internal sessions to provider chats without a stored foreign key.
- Drive the provider's merge job to a terminal state within a bounded number of status checks.
- Keep a durable copy of the merged recording once the provider finishes it.
"""

from .archive import MergedAudioArchiver, merged_audio_path
from .poller import ReconstructionPoller
from .resolver import ChatIdentityResolver

__all__ = ["ChatIdentityResolver", "MergedAudioArchiver", "ReconstructionPoller", "merged_audio_path"]
