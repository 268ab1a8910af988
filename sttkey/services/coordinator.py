"""Recording lifecycle coordinator.

Binds the capture source to one transcription backend per cycle and drives
the ``idle -> starting -> recording -> transcribing -> idle`` state machine.
Every transition and caller notification runs on the event loop; the audio
thread only hands chunks and the first-audio signal over with
``loop.call_soon_threadsafe``.

Usage::

    coordinator = RecordingCoordinator(on_finished=print)
    coordinator.toggle()   # idle -> starting -> recording
    ...
    coordinator.toggle()   # recording -> transcribing -> idle (on_finished fires)
"""

import asyncio
import logging
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from pathlib import Path

from sttkey.core.config import Settings, get_settings
from sttkey.core.exceptions import MissingApiKeyError, PermissionDeniedError, SttKeyError
from sttkey.core.models import (
    CoordinatorState,
    RecordingOutcome,
    RecordingResult,
    ToggleAction,
    TranscriptionMode,
    TranscriptOutcome,
)
from sttkey.services.audio import CaptureSource, PcmConverter
from sttkey.services.transcription import RealtimeSession, create_transcriber

logger = logging.getLogger(__name__)


@dataclass
class RecordingSession:
    """State of one recording cycle. Never reused across cycles."""

    mode: TranscriptionMode
    attempt: int
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    audio_path: Path | None = None
    realtime: RealtimeSession | None = None
    chunks: asyncio.Queue = field(default_factory=asyncio.Queue)
    pump_task: asyncio.Task | None = None
    capture_started: float | None = None
    first_audio_at: float | None = None
    recording_since: float | None = None
    stopped_at: float | None = None

    @property
    def first_audio_latency(self) -> float | None:
        if self.capture_started is None or self.first_audio_at is None:
            return None
        return self.first_audio_at - self.capture_started

    @property
    def recording_duration(self) -> float:
        if self.recording_since is None or self.stopped_at is None:
            return 0.0
        return max(0.0, self.stopped_at - self.recording_since)


class RecordingCoordinator:
    """Single-session recording state machine.

    Args:
        settings: Optional Settings instance (defaults to get_settings()).
        capture: Capture source; built from settings when omitted.
        on_finished: Receives the one ``RecordingOutcome`` of each cycle.
        on_delta: Receives transcript fragments as they arrive.
        on_state_change: Receives every new ``CoordinatorState``.
        on_first_audio: Called once per cycle when the first audio is captured.
        request_permission: Async microphone-permission check; an exception
            counts as denial. Defaults to always granted.
        transcriber_factory: Builds the backend for a mode
            (``create_transcriber`` signature).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        capture: CaptureSource | None = None,
        on_finished: Callable[[RecordingOutcome], None] | None = None,
        on_delta: Callable[[str], None] | None = None,
        on_state_change: Callable[[CoordinatorState], None] | None = None,
        on_first_audio: Callable[[], None] | None = None,
        request_permission: Callable[[], Awaitable[bool]] | None = None,
        transcriber_factory: Callable[..., object] = create_transcriber,
    ) -> None:
        self._settings = settings or get_settings()
        self._capture = capture or CaptureSource(
            converter=PcmConverter(self._settings.realtime_sample_rate),
            device=self._settings.input_device,
            blocksize=self._settings.capture_blocksize,
        )
        self._on_finished = on_finished
        self._on_delta = on_delta
        self._on_state_change = on_state_change
        self._on_first_audio = on_first_audio
        self._request_permission = request_permission
        self._transcriber_factory = transcriber_factory

        self._state = CoordinatorState.idle
        self._attempt = 0
        self._session: RecordingSession | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._device_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._opening: asyncio.Future | None = None

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def session(self) -> RecordingSession | None:
        """The active cycle, or None when idle."""
        return self._session

    # ------------------------------------------------------------------
    # User-driven transitions
    # ------------------------------------------------------------------

    def toggle(self) -> ToggleAction:
        """Advance the state machine in response to the hotkey.

        Must be called from the running event loop.

        Returns:
            What the toggle did.

        Raises:
            MissingApiKeyError: Starting without a configured API key.
        """
        if self._state is CoordinatorState.idle:
            self._begin_start()
            return ToggleAction.starting
        if self._state is CoordinatorState.starting:
            self.cancel_pending_start()
            return ToggleAction.cancelled
        if self._state is CoordinatorState.recording:
            self._begin_finish()
            return ToggleAction.transcribing
        logger.debug("Toggle ignored while transcribing")
        return ToggleAction.busy

    def cancel_pending_start(self) -> bool:
        """Abandon a start that has not reached ``recording`` yet.

        Results of the in-flight start are discarded when they arrive; a
        streaming connection opened for it is cancelled now and closed then.

        Returns:
            True if a pending start was cancelled.
        """
        if self._state is not CoordinatorState.starting:
            return False
        session = self._session
        self._attempt += 1
        self._session = None
        self._set_state(CoordinatorState.idle)
        if session is not None and session.realtime is not None:
            session.realtime.cancel()
        logger.info("Pending start cancelled")
        return True

    async def shutdown(self) -> None:
        """Tear down any active cycle and release the device."""
        session = self._session
        self._attempt += 1
        self._session = None
        self._set_state(CoordinatorState.idle)

        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        # A device open still running in its worker thread must land before the close
        opening = self._opening
        if opening is not None and not opening.done():
            await asyncio.gather(opening, return_exceptions=True)

        await self._stop_capture()
        if session is not None:
            await self._release(session)
        logger.info("Coordinator shut down")

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _begin_start(self) -> None:
        if not self._settings.openai_api_key:
            raise MissingApiKeyError()
        self._loop = asyncio.get_running_loop()
        self._attempt += 1
        session = RecordingSession(
            mode=TranscriptionMode(self._settings.transcription_mode),
            attempt=self._attempt,
        )
        self._session = session
        self._set_state(CoordinatorState.starting)
        self._spawn(self._start_cycle(session), name=f"recording-start-{session.attempt}")

    async def _start_cycle(self, session: RecordingSession) -> None:
        try:
            granted = await self._permission_granted()
            if not self._is_current(session):
                logger.debug("Discarding permission result of stale attempt %s", session.attempt)
                return
            if not granted:
                raise PermissionDeniedError()

            if session.mode is TranscriptionMode.streaming:
                self._open_stream(session)
            else:
                session.audio_path = self._new_audio_path()

            async with self._device_lock:
                if not self._is_current(session):
                    await self._release(session)
                    return
                session.capture_started = time.monotonic()
                # shutdown() waits on this even after cancelling the start task
                self._opening = asyncio.ensure_future(
                    asyncio.to_thread(self._start_capture, session)
                )
                await asyncio.shield(self._opening)
                if not self._is_current(session):
                    logger.debug("Capture opened for stale attempt %s; closing", session.attempt)
                    await asyncio.to_thread(self._capture.stop)
                    await self._release(session)
                    return
        except Exception as exc:
            error = exc if isinstance(exc, SttKeyError) else SttKeyError(detail=str(exc))
            if not isinstance(exc, SttKeyError):
                logger.exception("Unexpected failure starting attempt %s", session.attempt)
            if self._is_current(session):
                self._deliver(session, RecordingOutcome(mode=session.mode, error=error))
            await self._release(session)
            return

        session.recording_since = time.monotonic()
        self._set_state(CoordinatorState.recording)

    async def _permission_granted(self) -> bool:
        if self._request_permission is None:
            return True
        try:
            return bool(await self._request_permission())
        except Exception as exc:
            logger.warning("Microphone permission request failed: %s", exc)
            return False

    def _open_stream(self, session: RecordingSession) -> None:
        realtime = self._transcriber_factory(TranscriptionMode.streaming, settings=self._settings)
        session.realtime = realtime
        realtime.start(
            self._settings.openai_api_key,
            on_delta=partial(self._emit_delta, session),
            on_complete=partial(self._on_stream_outcome, session),
        )
        realtime.begin_input()
        session.pump_task = asyncio.create_task(
            self._pump_audio(session), name=f"audio-pump-{session.attempt}"
        )

    def _start_capture(self, session: RecordingSession) -> None:
        """Runs in a worker thread; callbacks hop back onto the loop."""
        loop = self._loop
        on_first_audio = partial(loop.call_soon_threadsafe, self._mark_first_audio, session)
        if session.mode is TranscriptionMode.streaming:
            self._capture.start(
                session.mode,
                on_first_audio=on_first_audio,
                on_chunk=partial(loop.call_soon_threadsafe, session.chunks.put_nowait),
            )
        else:
            self._capture.start(
                session.mode,
                on_first_audio=on_first_audio,
                audio_path=session.audio_path,
            )

    def _new_audio_path(self) -> Path:
        directory = Path(self._settings.recordings_dir or tempfile.gettempdir())
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S-%f")
        return directory / f"sttkey-{stamp}.wav"

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def _pump_audio(self, session: RecordingSession) -> None:
        """Forward captured chunks to the session in arrival order until the sentinel."""
        while True:
            chunk = await session.chunks.get()
            if chunk is None:
                return
            session.realtime.send_audio(chunk)

    def _mark_first_audio(self, session: RecordingSession) -> None:
        if not self._is_current(session) or session.first_audio_at is not None:
            return
        session.first_audio_at = time.monotonic()
        logger.debug("First audio after %.3fs", session.first_audio_latency or 0.0)
        if self._on_first_audio is not None:
            self._on_first_audio()

    def _emit_delta(self, session: RecordingSession, text: str) -> None:
        if self._is_current(session) and self._on_delta is not None:
            self._on_delta(text)

    def _on_stream_outcome(self, session: RecordingSession, outcome: TranscriptOutcome) -> None:
        """Abort the cycle when the stream fails before the user stops recording."""
        if outcome.ok or not self._is_current(session):
            return
        if self._state is CoordinatorState.transcribing:
            return
        logger.warning("Streaming session failed during %s: %s", self._state, outcome.error)
        was_recording = self._state is CoordinatorState.recording
        self._deliver(session, RecordingOutcome(mode=session.mode, error=outcome.error))
        if was_recording:
            self._spawn(self._abort_cycle(session), name=f"recording-abort-{session.attempt}")

    async def _abort_cycle(self, session: RecordingSession) -> None:
        await self._stop_capture()
        await self._release(session)

    # ------------------------------------------------------------------
    # Stop and transcribe
    # ------------------------------------------------------------------

    def _begin_finish(self) -> None:
        session = self._session
        self._set_state(CoordinatorState.transcribing)
        self._spawn(self._finish_cycle(session), name=f"recording-finish-{session.attempt}")

    async def _finish_cycle(self, session: RecordingSession) -> None:
        try:
            await self._stop_capture()
            session.stopped_at = time.monotonic()
            if session.mode is TranscriptionMode.streaming:
                outcome = await self._finish_stream(session)
            else:
                outcome = await self._upload(session)
        except Exception as exc:
            logger.exception("Unexpected failure finishing attempt %s", session.attempt)
            outcome = TranscriptOutcome(error=SttKeyError(detail=str(exc)))
        finally:
            await self._release(session)

        if not self._is_current(session):
            logger.debug("Discarding late outcome of attempt %s", session.attempt)
            return
        if outcome.ok:
            result = RecordingResult(
                text=outcome.text,
                mode=session.mode,
                started_at=session.started_at,
                first_audio_latency=session.first_audio_latency,
                recording_duration=session.recording_duration,
            )
            self._deliver(session, RecordingOutcome(mode=session.mode, result=result))
        else:
            self._deliver(session, RecordingOutcome(mode=session.mode, error=outcome.error))

    async def _finish_stream(self, session: RecordingSession) -> TranscriptOutcome:
        session.chunks.put_nowait(None)
        if session.pump_task is not None:
            await session.pump_task
        session.realtime.commit()
        return await session.realtime.completion.wait()

    async def _upload(self, session: RecordingSession) -> TranscriptOutcome:
        transcriber = self._transcriber_factory(TranscriptionMode.batch, settings=self._settings)
        try:
            return await transcriber.transcribe(
                session.audio_path,
                self._settings.openai_api_key,
                on_delta=partial(self._emit_delta, session),
            )
        finally:
            await transcriber.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_current(self, session: RecordingSession) -> bool:
        return self._session is session and session.attempt == self._attempt

    def _deliver(self, session: RecordingSession, outcome: RecordingOutcome) -> None:
        self._session = None
        self._set_state(CoordinatorState.idle)
        if outcome.ok:
            logger.info(
                "Recording %s transcribed (%s, %d chars)",
                session.attempt,
                session.mode.value,
                len(outcome.result.text),
            )
        else:
            logger.info("Recording %s failed: %s", session.attempt, outcome.error.detail)
        if self._on_finished is not None:
            self._on_finished(outcome)

    def _set_state(self, state: CoordinatorState) -> None:
        if state is self._state:
            return
        logger.info("Coordinator state: %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    async def _stop_capture(self) -> None:
        async with self._device_lock:
            await asyncio.to_thread(self._capture.stop)

    async def _release(self, session: RecordingSession) -> None:
        """Free everything a cycle holds. Safe to call more than once."""
        if session.pump_task is not None and not session.pump_task.done():
            session.pump_task.cancel()
            await asyncio.gather(session.pump_task, return_exceptions=True)
        if session.realtime is not None:
            await session.realtime.shutdown()
        if session.audio_path is not None:
            try:
                session.audio_path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove recording %s: %s", session.audio_path, exc)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
