"""Audio codec and sample-rate helpers for the voice bridge.

Conversions between the three representations the bridge deals with:
- μ-law @ 8kHz (telephony media streams)
- PCM16 @ 24kHz (realtime AI endpoint, native rate)
- PCM16 @ 48kHz (browser capture before downsampling)

All functions are stateless. The μ-law tables are built once at import time
and are read-only afterwards, so every call session shares them.
"""

from typing import Union

import numpy as np


PcmInput = Union[bytes, bytearray, memoryview, np.ndarray]


class Codec:
    """G.711 μ-law codec with vectorized operations."""

    # μ-law constants
    ULAW_BIAS = 0x84
    ULAW_CLIP = 32635

    @staticmethod
    def _create_ulaw_table() -> np.ndarray:
        """Create μ-law to PCM16 lookup table."""
        table = np.zeros(256, dtype=np.int16)
        for i in range(256):
            # Complement to obtain normal u-law value
            ulaw = ~i & 0xFF

            # Extract sign, exponent, and mantissa
            sign = ulaw & 0x80
            exponent = (ulaw >> 4) & 0x07
            mantissa = ulaw & 0x0F

            # Compute magnitude
            sample = ((mantissa << 3) + Codec.ULAW_BIAS) << exponent

            # Apply sign
            if sign:
                table[i] = Codec.ULAW_BIAS - sample
            else:
                table[i] = sample - Codec.ULAW_BIAS

        return table

    @staticmethod
    def _create_exponent_table() -> np.ndarray:
        """Create highest-set-bit table for biased magnitudes (>> 7)."""
        table = np.zeros(256, dtype=np.int32)
        for i in range(1, 256):
            table[i] = i.bit_length() - 1
        return table

    @staticmethod
    def encode_ulaw_sample(sample: int) -> int:
        """Encode a single PCM16 sample to μ-law.

        Args:
            sample: Signed 16-bit sample

        Returns:
            μ-law byte (0-255)
        """
        sample = int(sample)

        # Get sign
        if sample < 0:
            sign = 0x80
            sample = -sample
        else:
            sign = 0

        # Clip
        if sample > Codec.ULAW_CLIP:
            sample = Codec.ULAW_CLIP

        # Add bias
        sample += Codec.ULAW_BIAS

        # Find exponent
        exponent = 7
        mask = 0x4000
        while (sample & mask) == 0 and exponent > 0:
            exponent -= 1
            mask >>= 1

        # Extract mantissa
        mantissa = (sample >> (exponent + 3)) & 0x0F

        # Combine and complement
        return ~(sign | (exponent << 4) | mantissa) & 0xFF


_ULAW_DECODE_TABLE = Codec._create_ulaw_table()
_ULAW_DECODE_TABLE.setflags(write=False)

_ULAW_EXPONENT_TABLE = Codec._create_exponent_table()
_ULAW_EXPONENT_TABLE.setflags(write=False)


def pcm16_from_bytes(data: PcmInput) -> np.ndarray:
    """View little-endian PCM16 bytes as an int16 array.

    Raises:
        ValueError: If the byte length is odd
    """
    if isinstance(data, np.ndarray):
        return data.astype(np.int16, copy=False)
    if len(data) % 2:
        raise ValueError(f"PCM16 data must have an even length, got {len(data)}")
    return np.frombuffer(data, dtype="<i2").astype(np.int16)


def pcm16_to_bytes(samples: np.ndarray) -> bytes:
    """Serialize int16 samples as little-endian PCM16 bytes."""
    return np.asarray(samples, dtype="<i2").tobytes()


def decode_ulaw(data: PcmInput) -> np.ndarray:
    """Convert μ-law bytes to PCM16 samples.

    Args:
        data: μ-law encoded audio

    Returns:
        int16 samples, one per input byte
    """
    ulaw_array = np.frombuffer(bytes(data), dtype=np.uint8)
    return _ULAW_DECODE_TABLE[ulaw_array]


def encode_ulaw(samples: np.ndarray) -> bytes:
    """Convert PCM16 samples to μ-law bytes.

    Same algorithm as Codec.encode_ulaw_sample, vectorized: the exponent
    comes from a 256-entry highest-bit table indexed by the biased
    magnitude shifted right by 7.

    Args:
        samples: int16 samples

    Returns:
        μ-law encoded audio, one byte per sample
    """
    pcm = np.asarray(samples, dtype=np.int32)
    if pcm.size == 0:
        return b""

    sign = np.where(pcm < 0, 0x80, 0)
    magnitude = np.minimum(np.abs(pcm), Codec.ULAW_CLIP) + Codec.ULAW_BIAS

    exponent = _ULAW_EXPONENT_TABLE[(magnitude >> 7) & 0xFF]
    mantissa = (magnitude >> (exponent + 3)) & 0x0F

    ulaw = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return ulaw.astype(np.uint8).tobytes()


def _integer_ratio(high_rate: int, low_rate: int) -> int:
    if high_rate <= 0 or low_rate <= 0:
        raise ValueError(f"Sample rates must be positive, got {high_rate}/{low_rate}")
    if high_rate % low_rate:
        raise ValueError(f"Unsupported non-integer ratio: {high_rate}/{low_rate}")
    return high_rate // low_rate


def upsample_linear(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Upsample PCM16 by an integer ratio using linear interpolation.

    Output sample i*R equals input sample i; the R-1 samples after it are
    interpolated towards input sample i+1. The last input sample has no
    successor and is repeated R times.

    Args:
        samples: int16 samples at from_rate
        from_rate: Source sample rate in Hz
        to_rate: Target sample rate in Hz

    Returns:
        int16 samples at to_rate

    Raises:
        ValueError: If to_rate is not an integer multiple of from_rate

    Examples:
        # 20ms of 8kHz telephony audio -> 24kHz for the AI endpoint
        pcm16_24k = upsample_linear(pcm16_8k, 8000, 24000)
    """
    if from_rate == to_rate:
        return np.asarray(samples, dtype=np.int16)

    ratio = _integer_ratio(to_rate, from_rate)
    current = np.asarray(samples, dtype=np.float64)
    if current.size == 0:
        return np.zeros(0, dtype=np.int16)

    following = np.append(current[1:], current[-1])
    steps = np.arange(ratio, dtype=np.float64) / ratio

    interpolated = current[:, None] + (following - current)[:, None] * steps[None, :]

    # Round half up
    out = np.floor(interpolated.reshape(-1) + 0.5)
    return np.clip(out, -32768, 32767).astype(np.int16)


def downsample_decimate(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Downsample PCM16 by an integer ratio keeping every R-th sample.

    Nearest-neighbor decimation with no anti-alias filter.

    Args:
        samples: int16 samples at from_rate
        from_rate: Source sample rate in Hz
        to_rate: Target sample rate in Hz

    Returns:
        int16 samples at to_rate, floor(len / R) of them

    Raises:
        ValueError: If from_rate is not an integer multiple of to_rate
    """
    if from_rate == to_rate:
        return np.asarray(samples, dtype=np.int16)

    ratio = _integer_ratio(from_rate, to_rate)
    pcm = np.asarray(samples, dtype=np.int16)
    length = len(pcm) // ratio
    return pcm[: length * ratio : ratio].copy()


def pcm16_to_float32(samples: np.ndarray) -> np.ndarray:
    """Convert PCM16 samples to float32 in [-1, 1]."""
    pcm = np.asarray(samples, dtype=np.float32)
    return np.where(pcm < 0, pcm / 32768.0, pcm / 32767.0).astype(np.float32)


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples to PCM16.

    Values are clamped to [-1, 1] first; negative values scale by 32768 and
    non-negative ones by 32767 so +1.0 does not overflow.
    """
    clamped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clamped < 0, clamped * 32768.0, clamped * 32767.0)
    return np.rint(scaled).astype(np.int16)


def rms(samples: np.ndarray) -> float:
    """Root-mean-square amplitude of PCM16 samples (0.0 when empty)."""
    pcm = np.asarray(samples, dtype=np.float64)
    if pcm.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(pcm * pcm)))


def ulaw_8k_to_pcm16_24k(data: bytes) -> np.ndarray:
    """Convert telephony audio (μ-law 8kHz) to AI endpoint PCM16 24kHz."""
    return upsample_linear(decode_ulaw(data), 8000, 24000)


def pcm16_24k_to_ulaw_8k(samples: np.ndarray) -> bytes:
    """Convert AI endpoint PCM16 24kHz to telephony audio (μ-law 8kHz)."""
    return encode_ulaw(downsample_decimate(samples, 24000, 8000))
