"""
sttkey exception hierarchy.

All application-specific exceptions inherit from SttKeyError, so callers
can surface any capture or transcription failure through one handler.
"""

from datetime import UTC, datetime

from sttkey.core.models import RealtimeErrorKind


class SttKeyError(Exception):
    """Base exception for all sttkey errors."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred",
        code: str = "STTKEY_ERROR",
    ) -> None:
        self.detail = detail
        self.code = code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)


class DeviceUnavailableError(SttKeyError):
    """Raised when no usable audio input device (or no input channel) exists."""

    def __init__(self, detail: str = "No audio input device available") -> None:
        super().__init__(detail=detail, code="DEVICE_UNAVAILABLE")


class PermissionDeniedError(SttKeyError):
    """Raised when the microphone permission request is refused."""

    def __init__(self, detail: str = "Microphone access is required to record audio") -> None:
        super().__init__(detail=detail, code="PERMISSION_DENIED")


class MissingApiKeyError(SttKeyError):
    """Raised when a recording is requested without a configured API key."""

    def __init__(self) -> None:
        super().__init__(
            detail="Set OPENAI_API_KEY in the environment or .env file",
            code="MISSING_API_KEY",
        )


class TransportError(SttKeyError):
    """Raised when the network connection fails before a transcript completes."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(detail=f"Transport failure: {cause}", code="TRANSPORT_ERROR")
        self.__cause__ = cause


class HttpError(SttKeyError):
    """Raised when the upload endpoint answers with an HTTP error status."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(detail=f"HTTP {status}: {body}", code="HTTP_ERROR")


class RealtimeError(SttKeyError):
    """Raised when the streaming transcription session fails."""

    def __init__(self, kind: RealtimeErrorKind, message: str = "") -> None:
        self.kind = kind
        self.message = message
        detail = f"Realtime session {kind.value.replace('_', ' ')}"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail=detail, code="REALTIME_ERROR")


class NoTranscriptError(SttKeyError):
    """Raised when a transcription finished without any usable text."""

    def __init__(self) -> None:
        super().__init__(detail="No transcription text returned", code="NO_TRANSCRIPT")
