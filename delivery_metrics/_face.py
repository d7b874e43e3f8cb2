"""Face-derived delivery metrics: blink rate, smile, head pose, gaze jitter.

FaceFeatureExtractor turns one frame's Face Mesh landmarks into a
FaceFrameResult. FaceAnalysisLoop drives it on a dedicated worker thread
at a throttled rate (``face_fps``), independent of the camera framerate.

Landmark indices follow the 468-point MediaPipe Face Mesh:
  eye (EAR order p1..p6)  left  33 160 158 133 153 144
                          right 362 385 387 263 373 380
  mouth                   61 (left) 291 (right) 0 (top) 17 (bottom)
  nose                    1 (tip) 6 (bridge)

Derived metrics:
  blink_per_min  : EAR down-crossings of the threshold in the blink window
  smile          : mouth width/height ratio mapped linearly to [0, 1]
  yaw / pitch    : nose offset from the eye line, scaled to degrees
  gaze_jitter    : std of the eye-center position over the gaze window
"""

import asyncio
import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol, Union

import av
import numpy as np
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

from ._buffers import LatestValue, RollingWindow
from ._config import AnalyticsConfig
from ._errors import DeliveryMetricsError, InitializationTimeoutError
from ._landmarks import downscale
from ._tasks import cancel_and_wait
from ._telemetry import LatencyTracker
from ._types import FaceFrameResult

logger = logging.getLogger(__name__)

LEFT_EYE = (33, 160, 158, 133, 153, 144)
RIGHT_EYE = (362, 385, 387, 263, 373, 380)
MOUTH = (61, 291, 0, 17)
NOSE_TIP = 1
NOSE_BRIDGE = 6

_REQUIRED_LANDMARKS = max(LEFT_EYE + RIGHT_EYE + MOUTH + (NOSE_TIP, NOSE_BRIDGE)) + 1
_EPS = 1e-6

Frame = Union[av.VideoFrame, np.ndarray]


class LandmarkModel(Protocol):
    def detect(self, rgb: np.ndarray) -> Optional[np.ndarray]: ...

    def close(self) -> None: ...


def _dist(a: np.ndarray, b: np.ndarray) -> float:
    return float(math.hypot(a[0] - b[0], a[1] - b[1]))


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """EAR = (|p2-p6| + |p3-p5|) / (2 * |p1-p4|) for six eye points.

    Returns 1.0 (open) when the eye width degenerates to zero.
    """
    horizontal = _dist(eye[0], eye[3])
    if horizontal < _EPS:
        return 1.0
    return (_dist(eye[1], eye[5]) + _dist(eye[2], eye[4])) / (2.0 * horizontal)


def mouth_aspect_ratio(mouth: np.ndarray) -> float:
    """Mouth width over mouth opening height (left, right, top, bottom points)."""
    width = abs(mouth[0][0] - mouth[1][0])
    height = abs(mouth[2][1] - mouth[3][1])
    return float(width / (height + 0.001))


def smile_score(mar: float, baseline: float, span: float) -> float:
    return min(1.0, max(0.0, (mar - baseline) / span))


def head_pose(
    landmarks: np.ndarray, yaw_scale: float = 45.0, pitch_scale: float = 30.0
) -> tuple[float, float]:
    """Approximate (yaw, pitch) in degrees from nose and outer eye corners.

    Not a 6-DoF solve: yaw is the nose offset from the eye midpoint relative
    to the inter-eye distance, pitch the nose-tip/bridge offset relative to
    the eye-to-nose height. Clamped to ±90° yaw and ±45° pitch.
    """
    nose = landmarks[NOSE_TIP]
    bridge = landmarks[NOSE_BRIDGE]
    left = landmarks[LEFT_EYE[0]]
    right = landmarks[RIGHT_EYE[0]]

    eye_span = abs(left[0] - right[0])
    eye_mid_x = (left[0] + right[0]) / 2.0
    yaw = 0.0 if eye_span < _EPS else (nose[0] - eye_mid_x) / eye_span * yaw_scale

    eye_to_nose = abs(left[1] - nose[1])
    pitch = 0.0 if eye_to_nose < _EPS else (nose[1] - bridge[1]) / eye_to_nose * pitch_scale

    return float(max(-90.0, min(90.0, yaw))), float(max(-45.0, min(45.0, pitch)))


class FaceFeatureExtractor:
    """Stateful per-frame face metric computation.

    Holds the rolling blink and gaze windows, so one instance must only be
    driven from one thread (the face worker).

    Args:
        config: Session configuration (thresholds, windows, scale factors).
    """

    def __init__(self, config: AnalyticsConfig) -> None:
        self._config = config
        self._blinks: RollingWindow[float] = RollingWindow(config.blink_window_s)
        self._gaze: RollingWindow[tuple[float, float]] = RollingWindow(config.gaze_window_s)
        self._last_ear = 1.0
        self.blink_count = 0

    def reset(self) -> None:
        self._blinks.clear()
        self._gaze.clear()
        self._last_ear = 1.0
        self.blink_count = 0

    def blink_per_min(self) -> float:
        return len(self._blinks) * (60.0 / self._config.blink_window_s)

    def update_blink(self, ear: float, timestamp: float) -> float:
        """Count a blink on an above-to-at-or-below threshold transition."""
        threshold = self._config.blink_ear_threshold
        if self._last_ear > threshold >= ear:
            self._blinks.append(timestamp, timestamp)
            self.blink_count += 1
        else:
            self._blinks.evict(timestamp)
        self._last_ear = ear
        return self.blink_per_min()

    def update_gaze(self, x: float, y: float, timestamp: float) -> float:
        """Push a normalized eye-center position and return the scaled std."""
        self._gaze.append(timestamp, (x, y))
        points = self._gaze.values()
        if len(points) < 2:
            return 0.0
        arr = np.asarray(points, dtype=np.float64)
        variance = float(np.mean(np.sum((arr - arr.mean(axis=0)) ** 2, axis=1)))
        return math.sqrt(variance) * self._config.gaze_jitter_scale

    def analyze_landmarks(
        self,
        landmarks: Optional[np.ndarray],
        timestamp: float,
        frame_size: tuple[int, int],
    ) -> FaceFrameResult:
        """Compute all face metrics for one frame.

        Args:
            landmarks: (N, 2) pixel coordinates, or None when no face was found.
            timestamp: Capture time of the frame.
            frame_size: (width, height) of the frame the landmarks refer to.
        """
        if landmarks is None or len(landmarks) < _REQUIRED_LANDMARKS:
            return FaceFrameResult.neutral(self.blink_per_min(), timestamp)

        cfg = self._config
        left_ear = eye_aspect_ratio(landmarks[list(LEFT_EYE)])
        right_ear = eye_aspect_ratio(landmarks[list(RIGHT_EYE)])
        blink_per_min = self.update_blink((left_ear + right_ear) / 2.0, timestamp)

        mar = mouth_aspect_ratio(landmarks[list(MOUTH)])
        smile = smile_score(mar, cfg.smile_mar_baseline, cfg.smile_mar_span)

        yaw, pitch = head_pose(landmarks, cfg.yaw_scale_deg, cfg.pitch_scale_deg)

        width, height = frame_size
        left = landmarks[LEFT_EYE[0]]
        right = landmarks[RIGHT_EYE[0]]
        gaze_jitter = self.update_gaze(
            (left[0] + right[0]) / 2.0 / max(width, 1),
            (left[1] + right[1]) / 2.0 / max(height, 1),
            timestamp,
        )

        return FaceFrameResult(
            yaw=yaw,
            pitch=pitch,
            blink_per_min=blink_per_min,
            smile=smile,
            gaze_jitter=gaze_jitter,
            face_detected=True,
            timestamp=timestamp,
        )

    def process_frame(self, frame: Frame, timestamp: float, model: LandmarkModel) -> FaceFrameResult:
        """Downscale, detect and analyse one frame; never raises."""
        cfg = self._config
        try:
            if isinstance(frame, av.VideoFrame):
                rgb = frame.to_ndarray(format="rgb24")
            else:
                rgb = np.asarray(frame, dtype=np.uint8)
            small = downscale(rgb, cfg.face_frame_width, cfg.face_frame_height)
            landmarks = model.detect(small)
            return self.analyze_landmarks(
                landmarks, timestamp, (cfg.face_frame_width, cfg.face_frame_height)
            )
        except Exception:
            logger.exception("Face frame analysis failed; emitting neutral result")
            return FaceFrameResult.neutral(self.blink_per_min(), timestamp)


class FaceAnalysisLoop:
    """Throttled capture loop feeding a single face worker thread.

    A reader task keeps only the newest camera frame. Every ``1/face_fps``
    seconds the capture loop hands that frame to the worker, unless the
    previous analysis is still running, in which case the tick is skipped
    (frames are dropped, never queued). Results land in ``latest``.

    Args:
        extractor: Face metric extractor, owned by the worker thread.
        config: Session configuration.
        model_factory: Builds the landmark model; called on the worker thread.
        clock: Monotonic time source.
        latency: Optional tracker for the ``face_inference`` stage.
    """

    def __init__(
        self,
        extractor: FaceFeatureExtractor,
        config: AnalyticsConfig,
        model_factory: Callable[[], LandmarkModel],
        clock: Callable[[], float],
        latency: Optional[LatencyTracker] = None,
    ) -> None:
        self._extractor = extractor
        self._config = config
        self._model_factory = model_factory
        self._clock = clock
        self._latency = latency

        self.latest: LatestValue[FaceFrameResult] = LatestValue()
        self._frame_slot: LatestValue[Any] = LatestValue()

        self._executor: Optional[ThreadPoolExecutor] = None
        self._model: Optional[LandmarkModel] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._capture_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None

        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self.frames_processed = 0
        self.frames_skipped = 0

    @property
    def running(self) -> bool:
        return self._capture_task is not None and not self._capture_task.done()

    async def start(self, track: Optional[MediaStreamTrack] = None) -> None:
        """Load the landmark model on the worker and start the loops.

        Args:
            track: Video track to read frames from. When None, frames must be
                supplied with submit_frame().

        Raises:
            InitializationTimeoutError: Model load exceeded init_timeout_s.
            DeliveryMetricsError: Model load failed.
        """
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="face-worker")
        timeout = self._config.init_timeout_s
        load = self._executor.submit(self._model_factory)
        try:
            self._model = await asyncio.wait_for(asyncio.wrap_future(load), timeout=timeout)
        except TimeoutError:
            self._abandon_load(load)
            await self.close()
            raise InitializationTimeoutError("face worker", timeout) from None
        except Exception as exc:
            await self.close()
            raise DeliveryMetricsError(f"Face landmark model failed to load: {exc}") from exc

        self._started_at = self._clock()
        if track is not None:
            self._reader_task = asyncio.create_task(
                self._read_frames(track), name="face_frame_reader"
            )
        self._capture_task = asyncio.create_task(self._capture_loop(), name="face_capture_loop")
        logger.info("Face loop started (%.1f fps)", self._config.face_fps)

    def _abandon_load(self, load: Future) -> None:
        # The loader thread cannot be interrupted; close whatever it returns.
        def close_late_model(fut: Future) -> None:
            if fut.cancelled() or fut.exception() is not None:
                return
            try:
                fut.result().close()
            except Exception:
                logger.exception("Face landmark model failed to close")

        load.add_done_callback(close_late_model)
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)

    def submit_frame(self, frame: Frame) -> None:
        """Offer a frame; it replaces any frame not yet picked up."""
        self._frame_slot.set(frame)

    def fps(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        elapsed = end - self._started_at
        return self.frames_processed / elapsed if elapsed > 0 else 0.0

    async def _read_frames(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("Video track ended")
                return
            self._frame_slot.set(frame)

    async def _capture_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.face_interval_s
        deadline = loop.time()
        while True:
            deadline += interval
            delay = deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                deadline = loop.time()
                await asyncio.sleep(0)
            self.capture_once()

    def capture_once(self) -> bool:
        """Dispatch the newest frame to the worker if it is idle.

        Returns:
            True if a frame was dispatched.
        """
        if self._inflight is not None and not self._inflight.done():
            self.frames_skipped += 1
            logger.debug("Skipping face capture: previous analysis still in progress")
            return False
        frame = self._frame_slot.take()
        if frame is None or self._executor is None or self._model is None:
            return False

        loop = asyncio.get_running_loop()
        self._inflight = loop.run_in_executor(self._executor, self._analyze, frame, self._clock())
        self._inflight.add_done_callback(self._on_result)
        return True

    def _analyze(self, frame: Frame, timestamp: float) -> FaceFrameResult:
        assert self._model is not None
        if self._latency is None:
            return self._extractor.process_frame(frame, timestamp, self._model)
        with self._latency.measure("face_inference"):
            return self._extractor.process_frame(frame, timestamp, self._model)

    def _on_result(self, fut: Union[asyncio.Future, Future]) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error("Face worker failed: %r", exc)
            return
        self.latest.set(fut.result())
        self.frames_processed += 1

    async def wait_idle(self) -> None:
        """Wait for the in-flight analysis, if any, to finish."""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait([self._inflight])

    async def close(self) -> None:
        """Cancel the loops and release the worker thread and model."""
        if self._started_at is not None and self._stopped_at is None:
            self._stopped_at = self._clock()
        await cancel_and_wait(self._capture_task)
        await cancel_and_wait(self._reader_task)
        self._capture_task = None
        self._reader_task = None
        self._frame_slot.clear()

        await self.wait_idle()
        self._inflight = None
        executor, self._executor = self._executor, None
        model, self._model = self._model, None
        if executor is not None:
            loop = asyncio.get_running_loop()
            if model is not None:
                try:
                    await loop.run_in_executor(executor, model.close)
                except Exception:
                    logger.exception("Face landmark model failed to close")
            await asyncio.to_thread(executor.shutdown, wait=True)
        logger.info(
            "Face loop stopped (processed=%d skipped=%d)",
            self.frames_processed,
            self.frames_skipped,
        )
