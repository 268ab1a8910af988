"""
Shared data model for the capture and transcription pipeline.

Enums describe lifecycle states, pydantic models parse the two server wire
formats and the caller-facing result, and plain dataclasses carry values that
hold numpy arrays or exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import numpy as np
from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from sttkey.core.exceptions import SttKeyError

# ---------------------------------------------------------------------------
# Lifecycle states
# ---------------------------------------------------------------------------


class TranscriptionMode(StrEnum):
    """Which backend transcribes a recording cycle."""

    batch = "batch"
    streaming = "streaming"


class CoordinatorState(StrEnum):
    """States of the recording coordinator."""

    idle = "idle"
    starting = "starting"
    recording = "recording"
    transcribing = "transcribing"


class ToggleAction(StrEnum):
    """What a ``toggle()`` call did."""

    starting = "starting"
    cancelled = "cancelled"
    transcribing = "transcribing"
    busy = "busy"


class SessionState(StrEnum):
    """States of a streaming transcription session."""

    idle = "idle"
    connecting = "connecting"
    awaiting_configuration = "awaiting_configuration"
    configured = "configured"
    finished = "finished"


class RealtimeErrorKind(StrEnum):
    """Failure categories of the streaming session."""

    connection_closed = "connection_closed"
    server_error = "server_error"
    transcription_failed = "transcription_failed"


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AudioBlock:
    """One callback's worth of native input samples.

    ``samples`` is shaped ``(frames, channels)`` or ``(frames,)`` and is only
    valid for the duration of the callback that produced it.
    """

    samples: np.ndarray
    sample_rate: int
    sequence: int = 0

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0]) if self.samples.ndim else 0

    @property
    def channels(self) -> int:
        if self.samples.ndim < 2:
            return 1
        return int(self.samples.shape[1])


# ---------------------------------------------------------------------------
# Wire events
# ---------------------------------------------------------------------------


class TranscriptStreamEvent(BaseModel):
    """One ``data:`` payload of the batch upload's event-stream response."""

    model_config = ConfigDict(extra="ignore")

    type: str
    delta: str | None = None
    text: str | None = None


class RealtimeServerEvent(BaseModel):
    """A JSON message received on the streaming session."""

    model_config = ConfigDict(extra="ignore")

    type: str
    item_id: str | None = None
    delta: str | None = None
    transcript: str | None = None
    error: Any = None

    @property
    def error_message(self) -> str:
        """Human-readable message of an ``error`` payload (object or string)."""
        if isinstance(self.error, dict):
            return str(self.error.get("message") or self.error.get("code") or self.error)
        if self.error is None:
            return ""
        return str(self.error)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TranscriptOutcome:
    """Terminal value of one transcription client invocation."""

    text: str | None = None
    error: SttKeyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RecordingResult(BaseModel):
    """Successful result of one recording cycle, as delivered to the caller."""

    text: str
    mode: TranscriptionMode
    started_at: datetime
    first_audio_latency: float | None = None
    recording_duration: float = 0.0


@dataclass(frozen=True)
class RecordingOutcome:
    """The single terminal notification of a recording cycle."""

    mode: TranscriptionMode
    result: RecordingResult | None = None
    error: SttKeyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
