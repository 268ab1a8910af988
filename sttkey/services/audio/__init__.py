"""
Audio module - Microphone capture and PCM conversion.
"""

from .capture import CaptureSource, WavWriter, list_input_devices
from .converter import PcmConverter, float_to_pcm16

__all__ = ["CaptureSource", "PcmConverter", "WavWriter", "float_to_pcm16", "list_input_devices"]
