"""
Audio utilities for converting between sample formats and the wire encoding.

Microphone blocks arrive as float32 in [-1, 1]; the realtime protocol carries
16-bit signed little-endian PCM wrapped in base64 so it can travel inside a
JSON envelope. Everything here is pure and stateless.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np

from .errors import DecodeError


Samples = Union[np.ndarray, Sequence[float]]
PCM16_DTYPE = np.dtype("<i2")


def float_to_pcm16(samples: Samples) -> np.ndarray:
    """
    Convert float samples to 16-bit signed PCM.

    Samples are clamped to [-1, 1] first. Negative values scale by 32768 and
    non-negative values by 32767 so both ends of the int16 range are reachable.

    Args:
        samples (Samples): Float audio samples

    Returns:
        np.ndarray: int16 samples
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype(np.int16)


def pcm16_to_float(samples: Samples) -> np.ndarray:
    """
    Convert 16-bit signed PCM to float32 samples.

    Args:
        samples (Samples): int16 audio samples

    Returns:
        np.ndarray: float32 samples in [-1, 1)
    """
    return np.asarray(samples, dtype=np.int16).astype(np.float32) / 32768.0


def encode_pcm16(samples: Samples) -> str:
    """
    Encode int16 samples as base64 text of their little-endian bytes.

    Args:
        samples (Samples): int16 audio samples

    Returns:
        str: base64 payload for `input_audio_buffer.append`
    """
    raw = np.asarray(samples, dtype=np.int16).astype(PCM16_DTYPE).tobytes()
    return base64.b64encode(raw).decode("ascii")


def decode_pcm16(text: str) -> np.ndarray:
    """
    Decode a base64 PCM16 payload back into int16 samples.

    Args:
        text (str): base64 payload from `response.output_audio.delta`

    Returns:
        np.ndarray: int16 samples

    Raises:
        DecodeError: If the payload is not valid base64 or has an odd byte length
    """
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"Invalid base64 audio payload: {e}") from e

    if len(raw) % 2 != 0:
        raise DecodeError(f"PCM16 payload has odd byte length: {len(raw)}")

    return np.frombuffer(raw, dtype=PCM16_DTYPE).astype(np.int16)


@dataclass(frozen=True, eq=False)
class AudioFragment:
    """A decoded, ready-to-play chunk of mono float samples."""

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        samples = np.array(self.samples, dtype=np.float32)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    @classmethod
    def from_payload(cls, text: str, sample_rate: int) -> "AudioFragment":
        """Build a fragment from a base64 PCM16 payload."""
        return cls(pcm16_to_float(decode_pcm16(text)), sample_rate)

    @property
    def duration(self) -> float:
        """Fragment duration in seconds."""
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0

    def __len__(self) -> int:
        return len(self.samples)
