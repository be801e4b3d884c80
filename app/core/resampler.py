"""Audio resampler for sample rate conversion."""

import numpy as np
import soxr

from app.utils.codec import downsample_decimate, upsample_linear


class Resampler:
    """Sample rate converter for one direction of a call.

    Two algorithms are available:
    - "linear": linear interpolation up / decimation down (integer ratios
      only). Deterministic and identical to what the telephony side expects.
    - soxr qualities ("LQ", "MQ", "HQ", "VHQ"): band-limited resampling,
      which avoids the aliasing of plain decimation.
    """

    LINEAR = "linear"

    def __init__(
        self,
        source_rate: int,
        target_rate: int,
        quality: str = LINEAR
    ) -> None:
        """Initialize resampler.

        Args:
            source_rate: Source sample rate in Hz
            target_rate: Target sample rate in Hz
            quality: "linear" or a soxr quality ("LQ", "MQ", "HQ", "VHQ")

        Raises:
            ValueError: If rates are invalid, or the linear algorithm is
                asked for a non-integer ratio
        """
        if source_rate <= 0:
            raise ValueError(f"Source rate must be positive, got {source_rate}")
        if target_rate <= 0:
            raise ValueError(f"Target rate must be positive, got {target_rate}")

        self._source_rate = source_rate
        self._target_rate = target_rate

        quality_map = {
            "LQ": soxr.LQ,
            "MQ": soxr.MQ,
            "HQ": soxr.HQ,
            "VHQ": soxr.VHQ,
        }
        if quality == self.LINEAR:
            high, low = max(source_rate, target_rate), min(source_rate, target_rate)
            if high % low:
                raise ValueError(
                    f"Linear resampling needs an integer ratio, got {source_rate}->{target_rate}"
                )
            self._quality = None
        elif quality in quality_map:
            self._quality = quality_map[quality]
        else:
            raise ValueError(f"Unknown resampler quality: {quality}")

        # soxr keeps filter state between chunks, one stream per direction
        self._stream = self._create_stream()

    def _create_stream(self) -> "soxr.ResampleStream | None":
        if self._quality is None:
            return None
        return soxr.ResampleStream(
            self._source_rate,
            self._target_rate,
            1,
            dtype="float32",
            quality=self._quality
        )

    @property
    def source_rate(self) -> int:
        """Source sample rate."""
        return self._source_rate

    @property
    def target_rate(self) -> int:
        """Target sample rate."""
        return self._target_rate

    def resample_samples(self, samples: np.ndarray) -> np.ndarray:
        """Resample int16 samples.

        Args:
            samples: PCM16 samples at source rate

        Returns:
            PCM16 samples at target rate
        """
        samples = np.asarray(samples, dtype=np.int16)
        if samples.size == 0 or self._source_rate == self._target_rate:
            return samples

        if self._quality is None:
            if self._target_rate > self._source_rate:
                return upsample_linear(samples, self._source_rate, self._target_rate)
            return downsample_decimate(samples, self._source_rate, self._target_rate)

        resampled = self._stream.resample_chunk(samples.astype(np.float32))
        return np.clip(np.round(resampled), -32768, 32767).astype(np.int16)

    def reset(self) -> None:
        """Drop any filter state carried over from previous chunks."""
        self._stream = self._create_stream()
