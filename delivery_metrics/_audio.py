"""Per-frame loudness and pitch extraction from a live audio track.

Incoming ``av.AudioFrame``s (typically 10-20 ms, any sample format) are
mixed to mono and re-framed into fixed ``audio_frame_ms`` frames inside a
preallocated buffer. Each full frame yields one AudioFrameResult that
overwrites the extractor's single-slot cache; nothing accumulates.

Pitch is found by autocorrelation over the lags matching the configured
frequency band. The best lag is rejected (pitch = 0) unless its
correlation exceeds ``pitch_energy_ratio`` of the frame energy, so
unvoiced or noisy frames do not report a pitch.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

import av
import numpy as np
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

from ._buffers import LatestValue
from ._config import AnalyticsConfig
from ._tasks import cancel_and_wait
from ._telemetry import LatencyTracker
from ._types import AudioFrameResult

logger = logging.getLogger(__name__)


def compute_rms(samples: np.ndarray) -> float:
    """Root-mean-square of a sample frame; 0.0 for an empty frame."""
    x = np.asarray(samples, dtype=np.float64)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(x * x)))


def estimate_pitch(
    samples: np.ndarray,
    sample_rate: float,
    min_hz: float = 75.0,
    max_hz: float = 400.0,
    energy_ratio: float = 0.3,
) -> float:
    """Estimate the fundamental frequency of a frame by autocorrelation.

    The lag search covers ``sample_rate // max_hz`` to ``sample_rate // min_hz``
    samples. The lag with the largest correlation sum is the candidate
    period.

    Returns:
        Pitch in Hz, or 0.0 when no lag correlates above
        ``energy_ratio * sum(x**2)``.
    """
    x = np.asarray(samples, dtype=np.float64)
    n = x.size
    if n == 0:
        return 0.0

    min_lag = int(sample_rate // max_hz)
    max_lag = min(int(sample_rate // min_hz), n - 1)
    if min_lag < 1 or max_lag < min_lag:
        return 0.0

    # Linear (not circular) autocorrelation via zero-padded FFT.
    size = 1 << (2 * n - 1).bit_length()
    spectrum = np.fft.rfft(x, size)
    acf = np.fft.irfft(spectrum * np.conj(spectrum), size)

    band = acf[min_lag : max_lag + 1]
    best = int(np.argmax(band))
    best_corr = float(band[best])
    energy = float(np.dot(x, x))

    if best_corr <= 0.0 or best_corr < energy * energy_ratio:
        return 0.0
    return float(sample_rate) / (min_lag + best)


def audio_frame_to_mono(frame: av.AudioFrame) -> np.ndarray:
    """Convert an audio frame of any layout/format to mono float32 in [-1, 1]."""
    arr = frame.to_ndarray()
    channels = max(len(frame.layout.channels), 1)

    if arr.dtype == np.uint8:
        data = (arr.astype(np.float64) - 128.0) / 128.0
    elif np.issubdtype(arr.dtype, np.integer):
        data = arr.astype(np.float64) / float(np.iinfo(arr.dtype).max + 1)
    else:
        data = arr.astype(np.float64)

    if frame.format.is_planar:
        mono = data.reshape(channels, -1).mean(axis=0)
    else:
        mono = data.reshape(-1, channels).mean(axis=1)
    return mono.astype(np.float32)


class AudioFeatureExtractor:
    """Frames PCM audio and computes RMS + pitch for every full frame.

    Only the latest result is kept (see ``latest``). The frame buffer is
    allocated once per sample rate, so the per-callback path never grows
    memory.

    Args:
        config: Session configuration (frame length, pitch band, energy ratio).
        clock: Monotonic time source used to timestamp results.
        latency: Optional tracker for the ``audio_frame`` stage.
    """

    def __init__(
        self,
        config: AnalyticsConfig,
        clock: Callable[[], float] = time.monotonic,
        latency: Optional[LatencyTracker] = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._latency = latency
        self.latest: LatestValue[AudioFrameResult] = LatestValue()

        self._sample_rate: Optional[int] = None
        self._buffer: Optional[np.ndarray] = None
        self._fill = 0
        self.frames_analysed = 0

    @property
    def frame_length(self) -> int:
        return 0 if self._buffer is None else self._buffer.size

    def reset(self) -> None:
        self._sample_rate = None
        self._buffer = None
        self._fill = 0
        self.latest.clear()

    def _configure(self, sample_rate: int) -> None:
        frame_len = max(int(sample_rate * self._config.audio_frame_ms / 1000.0), 1)
        self._sample_rate = sample_rate
        self._buffer = np.zeros(frame_len, dtype=np.float32)
        self._fill = 0
        logger.debug("Audio framing: %d samples @ %d Hz", frame_len, sample_rate)

    def push_frame(self, frame: av.AudioFrame) -> int:
        """Feed one decoded audio frame. Returns the number of frames analysed."""
        return self.push_samples(audio_frame_to_mono(frame), frame.sample_rate)

    def push_samples(self, samples: np.ndarray, sample_rate: int) -> int:
        """Feed mono float samples. Returns the number of frames analysed."""
        if sample_rate != self._sample_rate or self._buffer is None:
            self._configure(sample_rate)
        buf = self._buffer
        assert buf is not None

        analysed = 0
        pos = 0
        total = len(samples)
        while pos < total:
            n = min(total - pos, buf.size - self._fill)
            buf[self._fill : self._fill + n] = samples[pos : pos + n]
            self._fill += n
            pos += n
            if self._fill == buf.size:
                self.latest.set(self.analyse(buf, sample_rate))
                self._fill = 0
                analysed += 1
        self.frames_analysed += analysed
        return analysed

    def analyse(self, frame: np.ndarray, sample_rate: int) -> AudioFrameResult:
        """Compute features for one complete frame; never raises."""
        now = self._clock()
        cfg = self._config
        try:
            if self._latency is not None:
                with self._latency.measure("audio_frame"):
                    rms = compute_rms(frame)
                    pitch = estimate_pitch(
                        frame, sample_rate, cfg.pitch_min_hz, cfg.pitch_max_hz, cfg.pitch_energy_ratio
                    )
            else:
                rms = compute_rms(frame)
                pitch = estimate_pitch(
                    frame, sample_rate, cfg.pitch_min_hz, cfg.pitch_max_hz, cfg.pitch_energy_ratio
                )
        except Exception:
            logger.exception("Audio frame analysis failed; emitting silence")
            return AudioFrameResult(rms=0.0, pitch_hz=0.0, timestamp=now)

        if not (np.isfinite(rms) and np.isfinite(pitch)):
            logger.debug("Non-finite audio features (rms=%s pitch=%s)", rms, pitch)
            return AudioFrameResult(rms=0.0, pitch_hz=0.0, timestamp=now)
        return AudioFrameResult(rms=rms, pitch_hz=pitch, timestamp=now)


class AudioPipeline:
    """Pulls frames from an audio track into an AudioFeatureExtractor.

    This is the "audio processing graph": one reader task per session,
    started by the aggregator and torn down with close().
    """

    def __init__(self, extractor: AudioFeatureExtractor) -> None:
        self._extractor = extractor
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, track: MediaStreamTrack) -> None:
        if self.running:
            raise RuntimeError("Audio pipeline already started")
        self._task = asyncio.create_task(self._run(track), name="audio_feature_loop")

    async def _run(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("Audio track ended")
                return
            try:
                self._extractor.push_frame(frame)
            except ValueError:
                logger.exception("Unsupported audio frame layout; frame dropped")
            except Exception:
                logger.exception("Audio frame processing failed; frame dropped")

    async def close(self) -> None:
        await cancel_and_wait(self._task)
        self._task = None
        self._extractor.reset()
