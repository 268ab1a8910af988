"""Streaming transcription over a persistent WebSocket session.

Protocol::

    client -> session.update                 (PCM format, model, no turn detection)
    server -> session.updated                (configuration acknowledged)
    client -> input_audio_buffer.clear
    client -> input_audio_buffer.append      (base64 PCM, repeated)
    client -> input_audio_buffer.commit
    server -> input_audio_buffer.committed   {item_id}
    server -> conversation.item.input_audio_transcription.delta      {item_id, delta}
    server -> conversation.item.input_audio_transcription.completed  {item_id, transcript}

Input requests issued before ``session.updated`` are held back and replayed
in call order once the server has acknowledged the configuration. All
bookkeeping runs on the event loop; only the sender task writes to the
socket.
"""

import asyncio
import base64
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError
from websockets.asyncio.client import connect as websockets_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from sttkey.core.config import Settings, get_settings
from sttkey.core.exceptions import RealtimeError, SttKeyError, TransportError
from sttkey.core.models import RealtimeErrorKind, RealtimeServerEvent, SessionState
from sttkey.services.transcription.base import (
    CompleteCallback,
    DeltaCallback,
    TranscriptAccumulator,
    TranscriptCompletion,
)

logger = logging.getLogger(__name__)

ConnectFn = Callable[..., Awaitable[Any]]

_CONFIGURED_EVENTS = frozenset({"session.updated", "transcription_session.updated"})
_COMMITTED_EVENT = "input_audio_buffer.committed"
_DELTA_EVENT = "conversation.item.input_audio_transcription.delta"
_COMPLETED_EVENT = "conversation.item.input_audio_transcription.completed"
_FAILED_EVENT = "conversation.item.input_audio_transcription.failed"
_ERROR_EVENT = "error"


class RealtimeSession:
    """One streaming transcription session (one connection, one outcome).

    Args:
        settings: Optional Settings instance (defaults to get_settings()).
        connect: Coroutine factory returning an open connection; defaults to
            ``websockets.asyncio.client.connect``. Tests inject a fake here.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        connect: ConnectFn | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._connect = connect or websockets_connect
        self._state = SessionState.idle
        self._completion: TranscriptCompletion | None = None
        self._on_delta: DeltaCallback | None = None

        # Per-cycle transcript state
        self._accumulator = TranscriptAccumulator()
        self._identity: str | None = None
        self._accepting = False

        # Requests held back until the server acknowledges configuration
        self._pending_clear = False
        self._pending_audio: deque[bytes] = deque()
        self._pending_commit = False

        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._ws = None
        self._run_task: asyncio.Task | None = None
        self._sender_task: asyncio.Task | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> str | None:
        """Item id bound for the current cycle, if any."""
        return self._identity

    @property
    def accepting_input(self) -> bool:
        return self._accepting

    @property
    def pending_audio_count(self) -> int:
        return len(self._pending_audio)

    @property
    def finished(self) -> bool:
        return self._state is SessionState.finished

    @property
    def completion(self) -> TranscriptCompletion | None:
        return self._completion

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        api_key: str,
        on_delta: DeltaCallback | None = None,
        on_complete: CompleteCallback | None = None,
    ) -> TranscriptCompletion:
        """Open the connection in the background and return the completion handle.

        Must be called from a running event loop. The session moves to
        ``connecting`` immediately; ``session.update`` is sent as soon as the
        socket opens.

        Raises:
            RuntimeError: If the session was already started or cancelled.
        """
        if self._state is not SessionState.idle:
            raise RuntimeError(f"Realtime session already started (state={self._state})")
        self._on_delta = on_delta
        self._completion = TranscriptCompletion(on_complete)
        self._state = SessionState.connecting
        self._run_task = asyncio.create_task(self._run(api_key), name="realtime-session")
        return self._completion

    def cancel(self) -> None:
        """Force a ``connection_closed`` failure regardless of the current state."""
        self._fail(RealtimeError(RealtimeErrorKind.connection_closed, "cancelled"))

    async def shutdown(self) -> None:
        """Close the connection and stop background tasks. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._accepting = False
        self._pending_audio.clear()
        if self._completion is not None and not self.finished:
            self._fail(RealtimeError(RealtimeErrorKind.connection_closed, "session shut down"))

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._sender_task, self._run_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as exc:
                logger.warning("Error closing realtime connection: %s", exc)
        logger.debug("Realtime session shut down")

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def begin_input(self) -> None:
        """Start a new input cycle: fresh accumulator, unbound identity, empty buffer."""
        if self.finished:
            logger.debug("begin_input() ignored: session already finished")
            return
        self._accumulator = TranscriptAccumulator()
        self._identity = None
        self._pending_audio.clear()
        self._pending_commit = False
        self._accepting = True
        if self._state is SessionState.configured:
            self._enqueue({"type": "input_audio_buffer.clear"})
        else:
            self._pending_clear = True

    def send_audio(self, chunk: bytes) -> bool:
        """Send or hold one PCM chunk. Returns False when input is not being accepted."""
        if not self._accepting or self.finished:
            return False
        if self._state is SessionState.configured:
            self._enqueue(self._append_message(chunk))
        else:
            self._pending_audio.append(chunk)
        return True

    def commit(self) -> None:
        """Stop accepting input and ask the server to transcribe the buffer."""
        self._accepting = False
        if self.finished:
            return
        if self._state is SessionState.configured:
            self._enqueue({"type": "input_audio_buffer.commit"})
        else:
            self._pending_commit = True

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _run(self, api_key: str) -> None:
        try:
            ws = await self._connect(
                self._settings.realtime_url,
                additional_headers={"Authorization": f"Bearer {api_key}"},
                max_size=None,
                open_timeout=self._settings.request_timeout,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            logger.warning("Realtime connection failed: %s", exc)
            self._fail(TransportError(exc))
            return

        self._ws = ws
        if self.finished:
            logger.debug("Realtime session finished while connecting; closing")
            await ws.close()
            return

        logger.info("Realtime connection open; configuring session")
        self._enqueue(self._session_update())
        self._state = SessionState.awaiting_configuration
        self._sender_task = asyncio.create_task(self._drain_outbox(ws), name="realtime-sender")

        reason = "connection closed by server"
        try:
            async for raw in ws:
                self._handle_message(raw)
        except ConnectionClosed as exc:
            reason = str(exc)

        if not self.finished:
            logger.warning("Realtime connection closed before completion: %s", reason)
            self._fail(RealtimeError(RealtimeErrorKind.connection_closed, reason))

    async def _drain_outbox(self, ws) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await ws.send(message)
            except ConnectionClosed as exc:
                logger.warning("Realtime send failed, connection closed: %s", exc)
                return

    def _enqueue(self, payload: dict) -> None:
        self._outbox.put_nowait(json.dumps(payload))

    def _session_update(self) -> dict:
        transcription = {"model": self._settings.realtime_model}
        if self._settings.transcription_language:
            transcription["language"] = self._settings.transcription_language
        return {
            "type": "session.update",
            "session": {
                "type": "transcription",
                "audio": {
                    "input": {
                        "format": {
                            "type": "audio/pcm",
                            "rate": self._settings.realtime_sample_rate,
                        },
                        "transcription": transcription,
                        "turn_detection": None,
                    }
                },
            },
        }

    @staticmethod
    def _append_message(chunk: bytes) -> dict:
        return {
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(chunk).decode("ascii"),
        }

    # ------------------------------------------------------------------
    # Server events
    # ------------------------------------------------------------------

    def _handle_message(self, raw: str | bytes) -> None:
        if self.finished:
            logger.debug("Discarding server message after completion")
            return
        try:
            event = RealtimeServerEvent.model_validate_json(raw)
        except ValidationError:
            logger.debug("Ignoring unparseable server message: %.80s", raw)
            return

        if event.type in _CONFIGURED_EVENTS:
            self._on_configured()
        elif event.type == _COMMITTED_EVENT:
            if self._identity is None and event.item_id:
                self._identity = event.item_id
        elif event.type == _DELTA_EVENT:
            self._on_transcript_delta(event)
        elif event.type == _COMPLETED_EVENT:
            self._on_transcript_completed(event)
        elif event.type == _FAILED_EVENT:
            self._fail(
                RealtimeError(RealtimeErrorKind.transcription_failed, event.error_message)
            )
        elif event.type == _ERROR_EVENT:
            self._fail(RealtimeError(RealtimeErrorKind.server_error, event.error_message))

    def _on_configured(self) -> None:
        if self._state is SessionState.configured:
            return
        self._state = SessionState.configured
        replayed = len(self._pending_audio)
        if self._pending_clear:
            self._pending_clear = False
            self._enqueue({"type": "input_audio_buffer.clear"})
        while self._pending_audio:
            self._enqueue(self._append_message(self._pending_audio.popleft()))
        if self._pending_commit:
            self._pending_commit = False
            self._enqueue({"type": "input_audio_buffer.commit"})
        logger.info("Realtime session configured (%d held chunks replayed)", replayed)

    def _claims_identity(self, item_id: str | None) -> bool:
        """Bind to the first id seen this cycle; reject any other id afterwards."""
        if self._identity is None:
            self._identity = item_id
            return True
        if item_id != self._identity:
            logger.debug("Ignoring event for item %s (bound to %s)", item_id, self._identity)
            return False
        return True

    def _on_transcript_delta(self, event: RealtimeServerEvent) -> None:
        if not self._claims_identity(event.item_id) or not event.delta:
            return
        if self._accumulator.append_delta(event.delta) and self._on_delta is not None:
            self._on_delta(event.delta)

    def _on_transcript_completed(self, event: RealtimeServerEvent) -> None:
        if not self._claims_identity(event.item_id):
            return
        if event.transcript:
            self._accumulator.set_final(event.transcript)
        self._state = SessionState.finished
        self._accepting = False
        if self._completion.finish_with(self._accumulator):
            logger.info("Realtime transcript completed (%d chars)", len(self._accumulator.text))

    def _fail(self, error: SttKeyError) -> None:
        if self.finished:
            return
        self._state = SessionState.finished
        self._accepting = False
        self._pending_audio.clear()
        # Before start() there is no completion; finishing still refuses a later start
        if self._completion is not None:
            self._completion.fail(error)
        logger.info("Realtime session failed: %s", error.detail)
