"""PCM conversion for the streaming upload path.

Turns a native input block (any rate, any channel count, float or int16)
into mono 16-bit little-endian PCM at the session's fixed sample rate. Runs
on the audio callback thread, so every step is bounded vectorised numpy work
and failures yield "no chunk" instead of raising.
"""

import logging
import math
from functools import lru_cache

import numpy as np
from scipy.signal import firwin

from sttkey.core.models import AudioBlock

logger = logging.getLogger(__name__)


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1.0, 1.0] to int16.

    Values are clamped first; negative samples scale by 32768 and positive
    ones by 32767 so both extremes map exactly onto the int16 range.

    Args:
        samples: Float numpy array of any shape.

    Returns:
        Int16 array of the same shape.
    """
    clipped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype(np.int16)


def to_float32(samples: np.ndarray) -> np.ndarray:
    """Normalise int16 or float input to float32."""
    if samples.dtype == np.int16:
        return samples.astype(np.float32) / 32768.0
    return samples.astype(np.float32, copy=False)


@lru_cache(maxsize=16)
def _resample_factors(source_rate: int, target_rate: int) -> tuple[int, int]:
    """Reduced (up, down) polyphase factors for a rate pair."""
    divisor = math.gcd(source_rate, target_rate)
    return target_rate // divisor, source_rate // divisor


class StreamResampler:
    """Polyphase resampler that carries its filter history across blocks.

    Feeding a signal block by block and then calling :meth:`flush` yields the
    same samples as ``scipy.signal.resample_poly`` applied to the whole
    signal at once. Each output sample is emitted as soon as every input it
    depends on has arrived, so the stream lags by half the filter length.

    Args:
        source_rate: Input sample rate in Hz.
        target_rate: Output sample rate in Hz.
    """

    def __init__(self, source_rate: int, target_rate: int) -> None:
        self.source_rate = source_rate
        self.target_rate = target_rate
        self.up, self.down = _resample_factors(source_rate, target_rate)
        max_rate = max(self.up, self.down)
        self._half_len = 10 * max_rate
        self._taps = (
            firwin(2 * self._half_len + 1, 1.0 / max_rate, window=("kaiser", 5.0)) * self.up
        )
        # Most input samples a single output sample can touch
        self._span = 2 * self._half_len // self.up + 1
        self.reset()

    def reset(self) -> None:
        """Forget all buffered input and start a new signal."""
        self._history = np.zeros(0, dtype=np.float64)
        self._base = 0
        self._received = 0
        self._next_out = 0

    def process(self, samples: np.ndarray) -> np.ndarray:
        """Consume mono samples and return every output sample now complete."""
        if samples.size:
            self._history = np.concatenate((self._history, samples.astype(np.float64)))
            self._received += samples.size
        last = (self._received * self.up - self._half_len - 1) // self.down
        return self._emit(last + 1)

    def flush(self) -> np.ndarray:
        """Return the remaining output (input zero-padded past the end) and reset."""
        out = self._emit(-(-self._received * self.up // self.down))
        self.reset()
        return out

    def _emit(self, stop: int) -> np.ndarray:
        if stop <= self._next_out or self._history.size == 0:
            return np.zeros(0, dtype=np.float64)
        half_len = self._half_len
        centers = np.arange(self._next_out, stop, dtype=np.int64) * self.down + half_len
        inputs = (centers // self.up)[:, None] - np.arange(self._span, dtype=np.int64)
        taps = centers[:, None] - inputs * self.up
        valid = (taps <= 2 * half_len) & (inputs >= 0) & (inputs < self._received)
        local = np.clip(inputs - self._base, 0, self._history.size - 1)
        weights = np.where(valid, self._taps[np.clip(taps, 0, 2 * half_len)], 0.0)
        out = (weights * self._history[local]).sum(axis=1)

        self._next_out = stop
        keep_from = -(-(stop * self.down - half_len) // self.up)
        keep_from = min(max(keep_from, self._base), self._received)
        self._history = self._history[keep_from - self._base :]
        self._base = keep_from
        return out


class PcmConverter:
    """Resamples and reformats native audio blocks into upload-ready PCM.

    The converter is stateful: consecutive blocks are treated as one
    continuous signal. Call :meth:`reset` before a new recording and
    :meth:`flush` after its last block.

    Args:
        target_rate: Output sample rate in Hz (mono, 16-bit signed, LE).
    """

    def __init__(self, target_rate: int = 24000) -> None:
        if target_rate <= 0:
            raise ValueError(f"target_rate must be positive, got {target_rate}")
        self.target_rate = target_rate
        self._resampler: StreamResampler | None = None

    def ratio(self, source_rate: int) -> float:
        """Resampling ratio ``target / source``."""
        return self.target_rate / source_rate

    def frame_capacity(self, input_frames: int, source_rate: int) -> int:
        """Upper bound on output frames for one block (rounding guard included)."""
        return math.ceil(input_frames * self.ratio(source_rate)) + 1

    def reset(self) -> None:
        """Drop the filter history of the previous recording."""
        self._resampler = None

    def convert(self, block: AudioBlock) -> bytes | None:
        """Convert one block into an encoded PCM chunk.

        Args:
            block: Native samples from the input device.

        Returns:
            Little-endian int16 mono bytes, or None when the block yields no
            output frames or the conversion fails.
        """
        if block.frames == 0 or block.channels == 0 or block.sample_rate <= 0:
            return None
        try:
            mono = self._downmix(to_float32(block.samples))
            resampled = self._resample(mono, block.sample_rate)
            capacity = self.frame_capacity(block.frames, block.sample_rate)
            return self._encode(resampled[:capacity])
        except Exception as exc:
            # Audio loss for one block is tolerated mid-stream
            logger.debug("Dropping audio block %s: %s", block.sequence, exc)
            return None

    def flush(self) -> bytes | None:
        """Encode the samples still held back by the resampling filter.

        Returns:
            The final chunk of the recording, or None when nothing is pending.
        """
        resampler, self._resampler = self._resampler, None
        if resampler is None:
            return None
        return self._encode(resampler.flush())

    @staticmethod
    def _encode(samples: np.ndarray) -> bytes | None:
        if samples.size == 0:
            return None
        return float_to_pcm16(samples).astype("<i2", copy=False).tobytes()

    @staticmethod
    def _downmix(samples: np.ndarray) -> np.ndarray:
        if samples.ndim == 1:
            return samples
        if samples.shape[1] == 1:
            return samples[:, 0]
        return samples.mean(axis=1, dtype=np.float32)

    def _resample(self, mono: np.ndarray, source_rate: int) -> np.ndarray:
        if source_rate == self.target_rate:
            return mono
        resampler = self._resampler
        if resampler is None or resampler.source_rate != source_rate:
            resampler = StreamResampler(source_rate, self.target_rate)
            self._resampler = resampler
        return resampler.process(mono)
