"""One-shot transcription upload with an incremental response.

Posts the recorded WAV file as multipart form data with ``stream=true`` and
parses the ``text/event-stream`` body line by line: delta events are
reported as they arrive, a ``done`` event supplies the authoritative text and
the ``[DONE]`` sentinel finalizes the transcript.
"""

import asyncio
import logging
from pathlib import Path

import httpx
from pydantic import ValidationError

from sttkey.core.config import Settings, get_settings
from sttkey.core.exceptions import HttpError, SttKeyError, TransportError
from sttkey.core.models import TranscriptOutcome, TranscriptStreamEvent
from sttkey.services.transcription.base import (
    CompleteCallback,
    DeltaCallback,
    TranscriptAccumulator,
    TranscriptCompletion,
)

logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"
_DONE_SENTINEL = "[DONE]"
_DELTA_EVENT = "transcript.text.delta"
_DONE_EVENT = "transcript.text.done"


class BatchTranscriber:
    """Uploads a complete recording and streams back its transcript.

    Args:
        settings: Optional Settings instance (defaults to get_settings()).
        client: Optional pre-configured ``httpx.AsyncClient`` (tests inject a
            ``MockTransport`` here). A client created internally is closed by
            ``aclose()``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self._settings.request_timeout)
        )

    async def transcribe(
        self,
        audio_path: str | Path,
        api_key: str,
        on_delta: DeltaCallback | None = None,
        on_complete: CompleteCallback | None = None,
    ) -> TranscriptOutcome:
        """Upload ``audio_path`` and return the single transcription outcome.

        Errors are reported through the outcome, never raised: HTTP status
        >= 400 becomes ``HttpError`` with the full body, network failures
        become ``TransportError`` and an empty stream becomes
        ``NoTranscriptError``.

        Args:
            audio_path: WAV file produced by the capture source.
            api_key: Bearer token.
            on_delta: Called with each text fragment as it arrives.
            on_complete: Called exactly once with the terminal outcome.

        Returns:
            The same outcome passed to ``on_complete``.
        """
        completion = TranscriptCompletion(on_complete)
        accumulator = TranscriptAccumulator()
        path = Path(audio_path)

        try:
            audio = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            completion.fail(
                SttKeyError(
                    detail=f"Cannot read recording file {path}: {exc}",
                    code="RECORDING_FILE_ERROR",
                )
            )
            return await completion.wait()

        logger.info("Uploading %s (%d bytes) for transcription", path.name, len(audio))
        try:
            async with self._client.stream(
                "POST",
                self._settings.batch_url,
                headers={"Authorization": f"Bearer {api_key}"},
                data=self._form_fields(),
                files={"file": (path.name, audio, "audio/wav")},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    completion.fail(
                        HttpError(response.status_code, body.decode("utf-8", errors="replace"))
                    )
                else:
                    async for line in response.aiter_lines():
                        self._handle_line(line, accumulator, completion, on_delta)
                        if completion.done:
                            break
        except httpx.HTTPError as exc:
            logger.warning("Transcription upload failed: %s", exc)
            completion.fail(TransportError(exc))

        if not completion.done:
            completion.finish_with(accumulator)
        return await completion.wait()

    def _form_fields(self) -> dict[str, str]:
        fields = {
            "model": self._settings.batch_model,
            "stream": "true",
            "response_format": "json",
        }
        if self._settings.transcription_language:
            fields["language"] = self._settings.transcription_language
        return fields

    @staticmethod
    def _handle_line(
        line: str,
        accumulator: TranscriptAccumulator,
        completion: TranscriptCompletion,
        on_delta: DeltaCallback | None,
    ) -> None:
        """Apply one event-stream line to the accumulator."""
        trimmed = line.strip()
        if not trimmed.startswith(_DATA_PREFIX):
            return
        payload = trimmed[len(_DATA_PREFIX):].strip()
        if payload == _DONE_SENTINEL:
            # Nothing accumulated by the sentinel is NoTranscript, not an empty success
            completion.finish_with(accumulator)
            return

        try:
            event = TranscriptStreamEvent.model_validate_json(payload)
        except ValidationError:
            logger.debug("Ignoring unparseable stream payload: %.80s", payload)
            return

        if event.type == _DELTA_EVENT and event.delta is not None:
            if accumulator.append_delta(event.delta) and on_delta is not None:
                on_delta(event.delta)
        elif event.type == _DONE_EVENT and event.text is not None:
            accumulator.set_final(event.text)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
