"""
Building blocks shared by both transcription backends.

``TranscriptAccumulator`` collects delta fragments until authoritative final
text arrives; ``TranscriptCompletion`` guarantees that each invocation
reports exactly one outcome no matter how many code paths race to finish it.
"""

import asyncio
import logging
from collections.abc import Callable

from sttkey.core.exceptions import NoTranscriptError, SttKeyError
from sttkey.core.models import TranscriptOutcome

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], None]
CompleteCallback = Callable[[TranscriptOutcome], None]


class TranscriptAccumulator:
    """Ordered delta fragments plus optional final text.

    Once ``final_text`` is set no further deltas are accepted.
    """

    def __init__(self) -> None:
        self.deltas: list[str] = []
        self.final_text: str | None = None

    @property
    def is_final(self) -> bool:
        return self.final_text is not None

    @property
    def text(self) -> str:
        """Authoritative text when known, else the concatenated deltas."""
        if self.final_text is not None:
            return self.final_text
        return "".join(self.deltas)

    @property
    def has_text(self) -> bool:
        """True when an explicit final was seen or any delta carried text."""
        return self.final_text is not None or any(self.deltas)

    def append_delta(self, fragment: str) -> bool:
        """Add a fragment; returns False if the transcript is already final."""
        if self.final_text is not None:
            return False
        self.deltas.append(fragment)
        return True

    def set_final(self, text: str) -> None:
        self.final_text = text


class TranscriptCompletion:
    """Single-fire result holder for one transcription invocation.

    The first ``succeed()`` or ``fail()`` wins; later calls return False and
    change nothing. ``on_complete`` is invoked exactly once, synchronously,
    with the winning outcome.

    Args:
        on_complete: Optional callback receiving the terminal outcome.
    """

    def __init__(self, on_complete: CompleteCallback | None = None) -> None:
        self._on_complete = on_complete
        self._outcome: TranscriptOutcome | None = None
        self._event = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> TranscriptOutcome | None:
        return self._outcome

    def succeed(self, text: str) -> bool:
        return self._finish(TranscriptOutcome(text=text))

    def fail(self, error: SttKeyError) -> bool:
        return self._finish(TranscriptOutcome(error=error))

    def finish_with(self, accumulator: TranscriptAccumulator) -> bool:
        """Succeed with the accumulated text, or fail with ``NoTranscriptError``."""
        if accumulator.has_text:
            return self.succeed(accumulator.text)
        return self.fail(NoTranscriptError())

    async def wait(self) -> TranscriptOutcome:
        """Block until the outcome is known and return it."""
        await self._event.wait()
        return self._outcome

    def _finish(self, outcome: TranscriptOutcome) -> bool:
        if self._outcome is not None:
            logger.debug("Transcript already completed; ignoring %s", outcome)
            return False
        self._outcome = outcome
        self._event.set()
        callback, self._on_complete = self._on_complete, None
        if callback is not None:
            callback(outcome)
        return True
