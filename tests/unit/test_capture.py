"""Tests for CaptureSource and WavWriter (mocked sounddevice, no hardware needed).

Validates device validation, stream lifecycle, first-audio signalling,
streaming chunk delivery (including the resampler tail on stop), and
native-format WAV persistence in batch mode.
"""

import wave
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from sttkey.core.exceptions import DeviceUnavailableError
from sttkey.core.models import TranscriptionMode
from sttkey.services.audio.capture import CaptureSource, WavWriter, list_input_devices, resolve_device
from sttkey.services.audio.converter import PcmConverter


class FakePortAudioError(Exception):
    pass


class FakeInputStream:
    """Records construction arguments and lets the test push blocks."""

    fail_on_start = False

    def __init__(self, device, samplerate, channels, dtype, blocksize, callback):
        self.device = device
        self.samplerate = samplerate
        self.channels = channels
        self.dtype = dtype
        self.callback = callback
        self.started = False
        self.closed = False

    def start(self):
        if self.fail_on_start:
            raise FakePortAudioError("device busy")
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True

    def push(self, block):
        self.callback(block, len(block), None, None)


def _make_sd(channels=2, sample_rate=48000.0, streams=None):
    """Create a fake sounddevice module with one input and one output device."""
    streams = streams if streams is not None else []
    devices = [
        {"name": "Built-in Mic", "max_input_channels": channels, "default_samplerate": sample_rate},
        {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000.0},
    ]

    def query_devices(device=None, kind=None):
        if kind is None:
            return devices
        return devices[0]

    def input_stream(**kwargs):
        stream = FakeInputStream(**kwargs)
        streams.append(stream)
        return stream

    return SimpleNamespace(
        PortAudioError=FakePortAudioError,
        query_devices=MagicMock(side_effect=query_devices),
        InputStream=input_stream,
    )


@pytest.fixture
def streams():
    return []


@pytest.fixture
def fake_sd(streams):
    sd = _make_sd(streams=streams)
    with patch("sttkey.services.audio.capture._sounddevice", return_value=sd):
        yield sd


# ---------------------------------------------------------------------------
# Device validation
# ---------------------------------------------------------------------------


class TestDeviceValidation:
    """Verify unusable devices surface as DeviceUnavailableError."""

    def test_no_input_channels(self):
        """A device reporting zero input channels cannot be recorded from."""
        sd = _make_sd(channels=0)
        with patch("sttkey.services.audio.capture._sounddevice", return_value=sd):
            capture = CaptureSource()
            with pytest.raises(DeviceUnavailableError):
                capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock())
        assert capture.is_active is False

    def test_unknown_device(self):
        """A device lookup failure maps to DeviceUnavailableError."""
        sd = _make_sd()
        sd.query_devices.side_effect = ValueError("No input device matching 'USB'")
        with patch("sttkey.services.audio.capture._sounddevice", return_value=sd):
            with pytest.raises(DeviceUnavailableError):
                CaptureSource(device="USB").start(
                    TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock()
                )

    def test_stream_open_failure(self, fake_sd, streams, tmp_path):
        """A PortAudio error on start leaves the source inactive."""
        with patch.object(FakeInputStream, "fail_on_start", True):
            capture = CaptureSource()
            with pytest.raises(DeviceUnavailableError):
                capture.start(
                    TranscriptionMode.batch, MagicMock(), audio_path=tmp_path / "a.wav"
                )
        assert capture.is_active is False

    def test_mode_arguments_required(self, fake_sd, tmp_path):
        """Each mode requires its own sink."""
        capture = CaptureSource()
        with pytest.raises(ValueError):
            capture.start(TranscriptionMode.streaming, MagicMock())
        with pytest.raises(ValueError):
            capture.start(TranscriptionMode.batch, MagicMock())


# ---------------------------------------------------------------------------
# Streaming mode
# ---------------------------------------------------------------------------


class TestStreamingCapture:
    """Verify blocks are converted and forwarded in streaming mode."""

    def test_opens_device_at_native_format(self, fake_sd, streams):
        """The stream uses the device's own rate and channel count."""
        capture = CaptureSource()
        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock())
        assert streams[0].samplerate == 48000
        assert streams[0].channels == 2
        assert streams[0].dtype == "float32"
        assert capture.is_active is True

    def test_chunks_forwarded(self, fake_sd, streams, stereo_block):
        """Each block yields one 24kHz mono chunk."""
        on_chunk = MagicMock()
        capture = CaptureSource()
        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=on_chunk)
        streams[0].push(stereo_block)
        streams[0].push(stereo_block)
        assert on_chunk.call_count == 2
        assert len(on_chunk.call_args.args[0]) == 240 * 2

    def test_first_audio_fires_once(self, fake_sd, streams, stereo_block):
        """The first-audio signal fires on the first chunk only."""
        on_first_audio = MagicMock()
        capture = CaptureSource()
        capture.start(TranscriptionMode.streaming, on_first_audio, on_chunk=MagicMock())
        for _ in range(3):
            streams[0].push(stereo_block)
        on_first_audio.assert_called_once()

    def test_empty_block_not_signalled(self, fake_sd, streams):
        """A block producing no chunk neither forwards nor signals."""
        on_first_audio = MagicMock()
        on_chunk = MagicMock()
        capture = CaptureSource()
        capture.start(TranscriptionMode.streaming, on_first_audio, on_chunk=on_chunk)
        streams[0].push(np.zeros((0, 2), dtype=np.float32))
        on_first_audio.assert_not_called()
        on_chunk.assert_not_called()

    def test_restart_stops_previous_stream(self, fake_sd, streams):
        """Starting again tears down the earlier subscription first."""
        capture = CaptureSource()
        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock())
        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock())
        assert streams[0].closed is True
        assert streams[1].started is True

    def test_stop_is_idempotent(self, fake_sd, streams):
        capture = CaptureSource()
        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock())
        capture.stop()
        capture.stop()
        assert streams[0].closed is True
        assert capture.is_active is False

    def test_stop_forwards_filter_tail(self, fake_sd, streams, stereo_block):
        """Samples held back by the resampler arrive as a final chunk on stop."""
        on_chunk = MagicMock()
        capture = CaptureSource()
        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=on_chunk)
        streams[0].push(stereo_block)
        assert len(on_chunk.call_args.args[0]) == 230 * 2

        capture.stop()
        assert on_chunk.call_count == 2
        assert len(on_chunk.call_args.args[0]) == 10 * 2
        capture.stop()
        assert on_chunk.call_count == 2

    def test_start_resets_converter(self, fake_sd, streams, stereo_block):
        """A new recording does not inherit filter history from the last one."""
        converter = MagicMock(wraps=PcmConverter())
        capture = CaptureSource(converter=converter)
        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock())
        streams[0].push(stereo_block)
        converter.reset.reset_mock()

        capture.start(TranscriptionMode.streaming, MagicMock(), on_chunk=MagicMock())
        converter.reset.assert_called_once()


# ---------------------------------------------------------------------------
# Batch mode
# ---------------------------------------------------------------------------


class TestBatchCapture:
    """Verify blocks are persisted as native-format WAV in batch mode."""

    def test_writes_native_wav(self, fake_sd, streams, stereo_block, tmp_path):
        """The file keeps the device rate and channels and every frame."""
        path = tmp_path / "rec" / "take.wav"
        on_first_audio = MagicMock()
        capture = CaptureSource()
        capture.start(TranscriptionMode.batch, on_first_audio, audio_path=path)
        streams[0].push(stereo_block)
        streams[0].push(stereo_block)
        capture.stop()

        with wave.open(str(path), "rb") as wf:
            assert wf.getframerate() == 48000
            assert wf.getnchannels() == 2
            assert wf.getsampwidth() == 2
            assert wf.getnframes() == 960
        on_first_audio.assert_called_once()

    def test_write_failure_tolerated(self, fake_sd, streams, stereo_block, tmp_path):
        """A failed block write is counted and capture continues."""
        capture = CaptureSource()
        capture.start(TranscriptionMode.batch, MagicMock(), audio_path=tmp_path / "a.wav")
        with patch.object(WavWriter, "write", side_effect=OSError("disk full")):
            streams[0].push(stereo_block)
        streams[0].push(stereo_block)
        assert capture.dropped_blocks == 1
        capture.stop()


# ---------------------------------------------------------------------------
# Device helpers
# ---------------------------------------------------------------------------


class TestDeviceHelpers:
    def test_list_input_devices_skips_outputs(self, fake_sd):
        devices = list_input_devices()
        assert [d["name"] for d in devices] == ["Built-in Mic"]
        assert devices[0]["sample_rate"] == 48000

    @pytest.mark.parametrize(
        ("configured", "expected"),
        [(None, None), ("", None), ("  ", None), ("3", 3), (2, 2), ("USB Mic", "USB Mic")],
    )
    def test_resolve_device(self, configured, expected):
        assert resolve_device(configured) == expected
