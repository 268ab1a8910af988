"""
Transcription module - Batch upload and realtime streaming backends.

Factory function for creating a transcription client for a recording mode.
"""

from sttkey.core.models import TranscriptionMode

from .base import TranscriptAccumulator, TranscriptCompletion
from .batch import BatchTranscriber
from .realtime import RealtimeSession

__all__ = [
    "BatchTranscriber",
    "RealtimeSession",
    "TranscriptAccumulator",
    "TranscriptCompletion",
    "create_transcriber",
]


def create_transcriber(mode: str, **kwargs) -> BatchTranscriber | RealtimeSession:
    """
    Factory function to create a transcription client for a mode.

    Args:
        mode: Transcription mode ("batch" or "streaming")
        **kwargs: Client-specific configuration (settings, client, connect)

    Returns:
        A fresh BatchTranscriber or RealtimeSession

    Raises:
        ValueError: If mode is unknown
    """
    if mode == TranscriptionMode.batch:
        return BatchTranscriber(**kwargs)
    elif mode == TranscriptionMode.streaming:
        return RealtimeSession(**kwargs)
    else:
        raise ValueError(f"Unknown transcription mode: {mode}")
