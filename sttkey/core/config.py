"""
Application configuration via pydantic-settings.

Loads values from the environment or a .env file with defaults matching the
hosted OpenAI transcription endpoints. Use ``get_settings()`` to obtain the
cached singleton instance.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """sttkey settings loaded from environment / .env file.

    Field names map directly to env var names (case-insensitive), so
    ``OPENAI_API_KEY`` populates ``openai_api_key``.

    Attributes:
        openai_api_key: Bearer token for both transcription backends.
        transcription_mode: Backend used for the next recording cycle.
        realtime_sample_rate: PCM rate declared to the streaming session and
            produced by the converter.
        request_timeout: Connect timeout in seconds; ``None`` waits forever.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Silently ignore unrecognized env vars
    )

    # --- Credentials ---
    openai_api_key: str = ""

    # --- Backend selection ---
    transcription_mode: Literal["batch", "streaming"] = "batch"
    transcription_language: str = ""  # Empty = auto-detect; ISO 639-1 code e.g. "en"

    # One-shot upload with an event-stream response
    batch_url: str = "https://api.openai.com/v1/audio/transcriptions"
    batch_model: str = "gpt-4o-mini-transcribe"

    # Persistent realtime transcription session
    realtime_url: str = "wss://api.openai.com/v1/realtime?intent=transcription"
    realtime_model: str = "gpt-4o-mini-transcribe"
    realtime_sample_rate: int = 24000

    # --- Capture ---
    input_device: str | None = None  # Device index or name substring; None = system default
    capture_blocksize: int = 0  # 0 lets the host API choose
    recordings_dir: str = ""  # Batch WAV files; empty = system temp dir

    # --- Network ---
    request_timeout: float | None = None

    # --- Application ---
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings singleton.

    Uses ``functools.lru_cache`` so the .env file is read only once.

    Returns:
        Settings: The application-wide configuration object.
    """
    return Settings()
