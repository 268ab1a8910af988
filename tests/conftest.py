"""Shared pytest fixtures for the sttkey test suite.

Provides settings isolated from the developer's environment, synthetic
audio, and in-memory stand-ins for the WebSocket connection and the capture
device so no network or hardware is needed.
"""

import asyncio
import json
import math
import struct
import threading
from pathlib import Path
from unittest.mock import AsyncMock

import numpy as np
import pytest

from sttkey.core.config import Settings

# ---------------------------------------------------------------------------
# Settings Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings with a test API key and recordings under tmp_path.

    Returns:
        Settings: Instance that ignores any local .env file.
    """
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("TRANSCRIPTION_MODE", raising=False)
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        recordings_dir=str(tmp_path / "recordings"),
    )


@pytest.fixture
def streaming_settings(settings):
    """Same as ``settings`` but in streaming mode."""
    return settings.model_copy(update={"transcription_mode": "streaming"})


# ---------------------------------------------------------------------------
# Audio Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_pcm_bytes():
    """Generate 1 second of 440Hz sine-wave PCM audio (24kHz, 16-bit, mono).

    Returns:
        bytes: Raw PCM audio data.
    """
    sample_rate = 24000
    frequency = 440.0
    amplitude = 16000  # ~50% of max int16

    samples = []
    for i in range(sample_rate):
        value = int(amplitude * math.sin(2 * math.pi * frequency * i / sample_rate))
        samples.append(struct.pack("<h", value))
    return b"".join(samples)


@pytest.fixture
def stereo_block():
    """10ms of 48kHz stereo float32 sine, shaped like a sounddevice callback block.

    Returns:
        np.ndarray: Array of shape (480, 2).
    """
    t = np.arange(480, dtype=np.float32) / 48000
    tone = 0.5 * np.sin(2 * np.pi * 440.0 * t)
    return np.stack([tone, tone], axis=1).astype(np.float32)


@pytest.fixture
def sample_audio_path(tmp_path, sample_pcm_bytes):
    """Create a temporary WAV file from sample PCM data.

    Returns:
        Path: Path to the temporary WAV file.
    """
    import wave

    wav_path = tmp_path / "clip.wav"
    with wave.open(str(wav_path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(24000)
        wf.writeframes(sample_pcm_bytes)
    return wav_path


# ---------------------------------------------------------------------------
# Realtime Fixtures
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """In-memory WebSocket: records sent JSON, yields fed server messages."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def feed(self, **payload) -> None:
        """Queue one server event."""
        self._incoming.put_nowait(json.dumps(payload))

    def feed_raw(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def disconnect(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(None)

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def fake_connect(fake_ws):
    """Connect stand-in resolving to ``fake_ws``."""
    return AsyncMock(return_value=fake_ws)


# ---------------------------------------------------------------------------
# Capture Fixtures
# ---------------------------------------------------------------------------


class FakeCapture:
    """Capture source stand-in driven by the test instead of a device."""

    def __init__(self) -> None:
        self.start_calls = 0
        self.stop_calls = 0
        self.active = False
        self.error: Exception | None = None
        self.start_gate: threading.Event | None = None
        self.mode = None
        self.audio_path: Path | None = None
        self.on_first_audio = None
        self.on_chunk = None

    def start(self, mode, on_first_audio, on_chunk=None, audio_path=None) -> None:
        self.start_calls += 1
        if self.start_gate is not None:
            self.start_gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        self.mode = mode
        self.on_first_audio = on_first_audio
        self.on_chunk = on_chunk
        self.audio_path = Path(audio_path) if audio_path is not None else None
        if self.audio_path is not None:
            self.audio_path.parent.mkdir(parents=True, exist_ok=True)
            self.audio_path.write_bytes(b"RIFF")
        self.active = True

    def stop(self) -> None:
        self.stop_calls += 1
        self.active = False

    def emit(self, chunk: bytes = b"\x01\x00\x02\x00") -> None:
        """Deliver one chunk the way the audio thread would."""
        self.on_first_audio()
        if self.on_chunk is not None:
            self.on_chunk(chunk)


@pytest.fixture
def fake_capture():
    return FakeCapture()


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def wait_until():
    """Return a coroutine function polling ``predicate`` until true or timeout."""

    async def _wait_until(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait_until
