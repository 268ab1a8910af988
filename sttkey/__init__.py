"""sttkey - hotkey-triggered speech-to-text."""

__version__ = "0.1.0"
