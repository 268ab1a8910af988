"""Microphone capture built on sounddevice.

``CaptureSource`` owns the single input-stream subscription. In streaming
mode each block is converted to PCM chunks on the audio thread and handed to
``on_chunk``; in batch mode blocks are appended to a WAV file at the device's
native rate and channel count. Callbacks run on the PortAudio thread and must
stay cheap.
"""

import logging
import threading
import wave
from collections.abc import Callable
from pathlib import Path

import numpy as np

from sttkey.core.exceptions import DeviceUnavailableError, SttKeyError
from sttkey.core.models import AudioBlock, TranscriptionMode
from sttkey.services.audio.converter import PcmConverter, float_to_pcm16, to_float32

logger = logging.getLogger(__name__)


def _sounddevice():
    """Import sounddevice on first use.

    The module loads the PortAudio shared library at import time; a host
    without it has no usable input device.
    """
    try:
        import sounddevice as sd
    except OSError as exc:
        raise DeviceUnavailableError(f"PortAudio library not available: {exc}") from exc
    return sd


def list_input_devices() -> list[dict]:
    """Return ``index``, ``name``, ``channels`` and ``sample_rate`` for every input device."""
    sd = _sounddevice()
    return [
        {
            "index": index,
            "name": device["name"],
            "channels": int(device["max_input_channels"]),
            "sample_rate": int(device["default_samplerate"]),
        }
        for index, device in enumerate(sd.query_devices())
        if device["max_input_channels"] > 0
    ]


def resolve_device(device: str | int | None) -> str | int | None:
    """Map a configured device value to what sounddevice expects.

    Digit strings become indices, other strings are name substrings, and
    empty values select the system default input.
    """
    if device is None or isinstance(device, int):
        return device
    device = device.strip()
    if not device:
        return None
    return int(device) if device.isdigit() else device


class WavWriter:
    """Incrementally writes 16-bit PCM frames to a WAV file.

    Args:
        path: Destination WAV path (parent directories are created).
        sample_rate: Frame rate written to the header.
        channels: Interleaved channel count.
    """

    def __init__(self, path: str | Path, sample_rate: int, channels: int) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.frames_written = 0
        self._wav = wave.open(str(self.path), "wb")
        self._wav.setnchannels(channels)
        self._wav.setsampwidth(2)
        self._wav.setframerate(sample_rate)

    def write(self, samples: np.ndarray) -> None:
        """Append one block of float or int16 samples."""
        pcm = float_to_pcm16(to_float32(samples)).astype("<i2", copy=False)
        self._wav.writeframes(pcm.tobytes())
        self.frames_written += int(pcm.shape[0])

    def close(self) -> None:
        """Finalize the header. Safe to call more than once."""
        if self._wav is None:
            return
        wav, self._wav = self._wav, None
        wav.close()


class CaptureSource:
    """Single-subscription microphone capture.

    Args:
        converter: PCM converter used in streaming mode.
        device: Input device index or name substring (None = default).
        blocksize: Frames per callback (0 lets the host API decide).
    """

    def __init__(
        self,
        converter: PcmConverter | None = None,
        device: str | int | None = None,
        blocksize: int = 0,
    ) -> None:
        self._converter = converter or PcmConverter()
        self._device = resolve_device(device)
        self._blocksize = blocksize
        self._lock = threading.Lock()
        self._stream = None
        self._portaudio_error: type[Exception] = OSError
        self._writer: WavWriter | None = None
        self._mode = TranscriptionMode.batch
        self._on_first_audio: Callable[[], None] | None = None
        self._on_chunk: Callable[[bytes], None] | None = None
        self._first_audio_fired = False
        self._sequence = 0
        self.sample_rate = 0
        self.channels = 0
        self.dropped_blocks = 0

    @property
    def is_active(self) -> bool:
        return self._stream is not None

    def start(
        self,
        mode: TranscriptionMode,
        on_first_audio: Callable[[], None],
        on_chunk: Callable[[bytes], None] | None = None,
        audio_path: str | Path | None = None,
    ) -> None:
        """Open the input device at its native format and begin delivering audio.

        Any capture already running is fully stopped first.

        Args:
            mode: ``streaming`` converts and forwards chunks; ``batch`` writes
                raw blocks to ``audio_path``.
            on_first_audio: Fired once, on the first chunk produced (streaming)
                or the first block written (batch).
            on_chunk: Receives each encoded PCM chunk (streaming mode only).
            audio_path: Destination WAV file (batch mode only).

        Raises:
            DeviceUnavailableError: No input device, no input channels, or the
                stream could not be opened.
            SttKeyError: The batch recording file could not be created.
        """
        if mode is TranscriptionMode.streaming and on_chunk is None:
            raise ValueError("streaming capture requires an on_chunk callback")
        if mode is TranscriptionMode.batch and audio_path is None:
            raise ValueError("batch capture requires an audio_path")

        self.stop()

        sd = _sounddevice()
        try:
            info = sd.query_devices(self._device, "input")
        except (ValueError, sd.PortAudioError) as exc:
            raise DeviceUnavailableError(f"No audio input device: {exc}") from exc

        channels = int(info.get("max_input_channels", 0))
        sample_rate = int(info.get("default_samplerate") or 0)
        if channels <= 0 or sample_rate <= 0:
            raise DeviceUnavailableError(
                f"Input device {info.get('name', self._device)!r} has no input channels"
            )

        writer = None
        if mode is TranscriptionMode.batch:
            try:
                writer = WavWriter(audio_path, sample_rate, channels)
            except (OSError, wave.Error) as exc:
                raise SttKeyError(
                    detail=f"Cannot create recording file {audio_path}: {exc}",
                    code="RECORDING_FILE_ERROR",
                ) from exc

        with self._lock:
            self._mode = mode
            self._on_first_audio = on_first_audio
            self._on_chunk = on_chunk
            self._writer = writer
            self._first_audio_fired = False
            self._sequence = 0
            self.sample_rate = sample_rate
            self.channels = channels
            self.dropped_blocks = 0
            self._converter.reset()
            try:
                stream = sd.InputStream(
                    device=self._device,
                    samplerate=sample_rate,
                    channels=channels,
                    dtype="float32",
                    blocksize=self._blocksize,
                    callback=self._callback,
                )
                stream.start()
            except sd.PortAudioError as exc:
                self._writer = None
                if writer is not None:
                    writer.close()
                raise DeviceUnavailableError(f"Could not open input stream: {exc}") from exc
            self._stream = stream
            self._portaudio_error = sd.PortAudioError

        logger.info(
            "Capture started (%s): device=%s rate=%sHz channels=%s",
            mode.value,
            info.get("name", self._device),
            sample_rate,
            channels,
        )

    def stop(self) -> None:
        """Detach the callback and release the device. No-op when idle.

        In streaming mode the samples still held by the resampling filter are
        forwarded as one last chunk once the device is closed.
        """
        with self._lock:
            stream, self._stream = self._stream, None
            writer, self._writer = self._writer, None
        if stream is None and writer is None:
            return
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except self._portaudio_error as exc:
                logger.warning("Error closing input stream: %s", exc)
            if self._mode is TranscriptionMode.streaming:
                self._forward_tail()
        if writer is not None:
            writer.close()
            logger.info(
                "Capture stopped: %s frames written to %s (%s blocks dropped)",
                writer.frames_written,
                writer.path,
                self.dropped_blocks,
            )
        else:
            logger.info("Capture stopped")

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        block = AudioBlock(samples=indata, sample_rate=self.sample_rate, sequence=self._sequence)
        self._sequence += 1
        if self._mode is TranscriptionMode.streaming:
            self._forward(block)
        else:
            self._append(block)

    def _forward(self, block: AudioBlock) -> None:
        chunk = self._converter.convert(block)
        if chunk is None:
            return
        self._signal_first_audio()
        on_chunk = self._on_chunk
        if on_chunk is not None:
            on_chunk(chunk)

    def _forward_tail(self) -> None:
        chunk = self._converter.flush()
        on_chunk = self._on_chunk
        if chunk is not None and on_chunk is not None:
            on_chunk(chunk)

    def _append(self, block: AudioBlock) -> None:
        writer = self._writer
        if writer is None or block.frames == 0:
            return
        try:
            writer.write(block.samples)
        except (OSError, wave.Error) as exc:
            # Tolerated per block; the upload goes ahead with what was written
            self.dropped_blocks += 1
            logger.debug("Dropped block %s: %s", block.sequence, exc)
            return
        self._signal_first_audio()

    def _signal_first_audio(self) -> None:
        if self._first_audio_fired:
            return
        self._first_audio_fired = True
        if self._on_first_audio is not None:
            self._on_first_audio()
