"""
Per-turn audio segmentation.

Design intent:
- Download and decode the merged recording exactly once per session.
- Cut one standalone clip per turn window; isolate failures to that turn.
"""

from .segmenter import TurnAudioSegmenter
from .timing import compute_window, turns_from_transcript, validate_turns

__all__ = ["TurnAudioSegmenter", "compute_window", "turns_from_transcript", "validate_turns"]
