"""End-to-end tests for MetricsAggregator.

Test matrix covers:
  - full session: audio + video + transcript + emotions -> snapshot -> summary
  - lifecycle: double start, idempotent / concurrent stop, restart
  - failures: acquisition error, face worker init timeout, teardown errors
  - degradation: missing camera / recognizer, recognizer give-up,
    emotion model failure, all surfaced as notices
  - history cap and perf stats

Tracks are real aiortc MediaStreamTrack subclasses fed from a queue; the
landmark model and the text-classification pipeline are small fakes so no
model weights are needed. The snapshot timer is slowed to one tick per
100 s so every snapshot in a test comes from an explicit tick().
"""

import asyncio
import threading
import time
from typing import Optional

import av
import numpy as np
import pytest
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

from delivery_metrics import (
    AcquisitionError,
    AggregatorState,
    AlreadyRunningError,
    AnalyticsConfig,
    DeliveryMetricsError,
    InitializationTimeoutError,
    MediaStreams,
    MetricsAggregator,
    MetricsSnapshot,
    Notice,
    QueueSpeechSource,
    SpeechRecognitionError,
)

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class ManualClock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class QueueTrack(MediaStreamTrack):
    """Track whose frames are pushed by the test."""

    def __init__(self, kind: str, fail_on_stop: bool = False) -> None:
        super().__init__()
        self.kind = kind
        self._queue: asyncio.Queue = asyncio.Queue()
        self._fail_on_stop = fail_on_stop

    def push(self, frame) -> None:
        self._queue.put_nowait(frame)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self._queue.get()
        if frame is None:
            raise MediaStreamError
        return frame

    def stop(self) -> None:
        super().stop()
        self._queue.put_nowait(None)
        if self._fail_on_stop:
            raise RuntimeError("device busy")


class FakeDevices:
    def __init__(
        self,
        audio: Optional[QueueTrack] = None,
        video: Optional[QueueTrack] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.audio = audio
        self.video = video
        self.error = error
        self.acquired = 0

    async def acquire(self) -> MediaStreams:
        if self.error is not None:
            raise self.error
        self.acquired += 1
        return MediaStreams(audio=self.audio, video=self.video)


def _face_landmarks() -> np.ndarray:
    """Frontal face, eyes open (EAR 0.5), closed mouth, nose 12 deg down."""
    lm = np.zeros((468, 2), dtype=np.float64)
    for corner_l, top1, top2, corner_r, bot2, bot1, x0 in (
        (33, 160, 158, 133, 153, 144, 100.0),
        (362, 385, 387, 263, 373, 380, 200.0),
    ):
        lm[corner_l] = (x0, 200.0)
        lm[corner_r] = (x0 + 40.0, 200.0)
        lm[top1] = (x0 + 10.0, 190.0)
        lm[bot1] = (x0 + 10.0, 210.0)
        lm[top2] = (x0 + 30.0, 190.0)
        lm[bot2] = (x0 + 30.0, 210.0)
    lm[61] = (120.0, 300.0)
    lm[291] = (180.0, 300.0)
    lm[0] = (150.0, 290.0)
    lm[17] = (150.0, 310.0)
    lm[1] = (150.0, 250.0)
    lm[6] = (150.0, 230.0)
    return lm


class FakeLandmarkModel:
    def __init__(self) -> None:
        self.closed = False

    def detect(self, rgb: np.ndarray) -> np.ndarray:
        return _face_landmarks()

    def close(self) -> None:
        self.closed = True


class SlowLandmarkModel(FakeLandmarkModel):
    """Landmark model whose detect() blocks the face worker for a while."""

    def __init__(self, delay: float = 0.3) -> None:
        super().__init__()
        self.delay = delay
        self.worker: Optional[threading.Thread] = None
        self.detect_finished = False

    def detect(self, rgb: np.ndarray) -> np.ndarray:
        self.worker = threading.current_thread()
        time.sleep(self.delay)
        self.detect_finished = True
        return super().detect(rgb)


def fake_emotion_pipeline(model: str):
    def pipe(text: str):
        return [
            {"label": "joy", "score": 0.55},
            {"label": "optimism", "score": 0.31},
            {"label": "neutral", "score": 0.08},
            {"label": "nervousness", "score": 0.02},
        ]

    return pipe


def broken_emotion_pipeline(model: str):
    raise OSError("no such model")


class RecordingSink:
    def __init__(self, fail_on_stop: bool = False) -> None:
        self.tracks: list[MediaStreamTrack] = []
        self.started = False
        self.fail_on_stop = fail_on_stop

    def addTrack(self, track: MediaStreamTrack) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        if self.fail_on_stop:
            raise RuntimeError("disk full")
        self.started = False


class NetworkDownSource:
    async def stream(self):
        raise SpeechRecognitionError("network", "recognizer unreachable")
        yield  # pragma: no cover


class CrashingSource:
    async def stream(self):
        raise RuntimeError("socket closed by provider")
        yield  # pragma: no cover


def sine_audio_frame(hz: float = 200.0, sample_rate: int = 16_000, samples: int = 800) -> av.AudioFrame:
    t = np.arange(samples) / sample_rate
    pcm = (0.5 * 32767 * np.sin(2 * np.pi * hz * t)).astype(np.int16).reshape(1, -1)
    frame = av.AudioFrame.from_ndarray(pcm, format="s16", layout="mono")
    frame.sample_rate = sample_rate
    return frame


def video_frame() -> av.VideoFrame:
    return av.VideoFrame.from_ndarray(np.zeros((480, 640, 3), dtype=np.uint8), format="rgb24")


SLOW_TICKS = dict(metrics_hz=0.01, face_fps=0.01)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def make_aggregator(devices: FakeDevices, clock: Optional[ManualClock] = None, **kwargs) -> MetricsAggregator:
    overrides = kwargs.pop("config", {})
    config = AnalyticsConfig(**{**SLOW_TICKS, **overrides})
    return MetricsAggregator(
        devices,
        config=config,
        landmark_model_factory=kwargs.pop("landmark_model_factory", FakeLandmarkModel),
        emotion_pipeline_factory=kwargs.pop("emotion_pipeline_factory", fake_emotion_pipeline),
        clock=clock or ManualClock(),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Full session
# ---------------------------------------------------------------------------


class TestFullSession:
    @pytest.mark.asyncio
    async def test_all_modalities_end_to_end(self) -> None:
        clock = ManualClock(1000.0)
        audio, video = QueueTrack("audio"), QueueTrack("video")
        speech = QueueSpeechSource()
        models: list[FakeLandmarkModel] = []

        def landmark_model() -> FakeLandmarkModel:
            models.append(FakeLandmarkModel())
            return models[-1]

        aggregator = make_aggregator(
            FakeDevices(audio=audio, video=video),
            clock,
            speech_source=speech,
            landmark_model_factory=landmark_model,
            config={"face_fps": 50.0},
        )
        received: list[MetricsSnapshot] = []
        aggregator.subscribe(received.append)

        await aggregator.start()
        assert aggregator.state is AggregatorState.RUNNING
        assert aggregator.policy.degraded == []

        audio.push(sine_audio_frame())
        video.push(video_frame())
        speech.push_interim("um hello")
        speech.push_final("um hello there uh everyone")
        await wait_until(
            lambda: aggregator.get_perf_stats()["face_frames_processed"] >= 1
            and aggregator.get_perf_stats()["audio_frames_analysed"] >= 1
            and aggregator.session.transcript.word_count == 5
        )

        clock.advance(30.0)
        await wait_until(lambda: aggregator.tick().emotions is not None)
        snap = received[-1]

        assert snap.t_ms == 30_000
        assert snap.wpm == pytest.approx(10.0)
        assert snap.fillers_per_min == pytest.approx(4.0)
        assert snap.pitch_hz == pytest.approx(200.0, rel=0.03)
        assert snap.rms == pytest.approx(0.5 / np.sqrt(2), rel=0.02)
        assert snap.pause_ratio == 0.0
        assert snap.head.yaw == pytest.approx(0.0)
        assert snap.head.pitch == pytest.approx(12.0)
        assert snap.blink_per_min == 0.0
        assert snap.smile == pytest.approx(0.0, abs=1e-3)
        assert snap.transcript_partial is None
        assert snap.transcript_final == "um hello there uh everyone"
        assert [e.label for e in snap.emotions] == ["joy", "optimism", "neutral"]

        await aggregator.stop()
        assert aggregator.state is AggregatorState.IDLE
        assert audio.readyState == "ended"
        assert video.readyState == "ended"
        assert models[0].closed

        summary = aggregator.get_summary()
        assert summary.duration_s == 30.0
        assert summary.total_data_points == len(received)
        assert summary.total_filler_count == 2
        assert summary.fillers_per_min == pytest.approx(4.0)
        assert summary.word_count == 5
        assert summary.dominant_emotions[0].label == "joy"
        assert summary.degraded == []

        dump = aggregator.get_metrics_dump()
        assert dump.duration_ms == 30_000
        assert len(dump.metrics) == len(received)

    @pytest.mark.asyncio
    async def test_snapshot_times_monotonic(self) -> None:
        clock = ManualClock()
        aggregator = make_aggregator(FakeDevices(audio=QueueTrack("audio")), clock)
        async with aggregator:
            times = []
            for _ in range(5):
                clock.advance(0.1)
                times.append(aggregator.tick().t_ms)
        assert times == sorted(times)
        assert times[0] == 100

    @pytest.mark.asyncio
    async def test_timer_publishes_at_configured_rate(self) -> None:
        aggregator = make_aggregator(
            FakeDevices(audio=QueueTrack("audio")), config={"metrics_hz": 50.0}
        )
        received: list[MetricsSnapshot] = []
        aggregator.subscribe(received.append)
        async with aggregator:
            await wait_until(lambda: len(received) >= 3)
        count = len(received)
        await asyncio.sleep(0.1)
        assert len(received) == count

    @pytest.mark.asyncio
    async def test_sink_receives_relayed_tracks(self) -> None:
        audio, video = QueueTrack("audio"), QueueTrack("video")
        sink = RecordingSink()
        aggregator = make_aggregator(FakeDevices(audio=audio, video=video), sink=sink)
        await aggregator.start()
        assert sink.started
        assert len(sink.tracks) == 2
        assert all(t is not audio and t is not video for t in sink.tracks)
        await aggregator.stop()
        assert not sink.started


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_double_start_rejected(self) -> None:
        devices = FakeDevices(audio=QueueTrack("audio"))
        aggregator = make_aggregator(devices)
        await aggregator.start()
        try:
            with pytest.raises(AlreadyRunningError, match="already running"):
                await aggregator.start()
            assert devices.acquired == 1
            assert aggregator.state is AggregatorState.RUNNING
        finally:
            await aggregator.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self) -> None:
        aggregator = make_aggregator(FakeDevices(audio=QueueTrack("audio")))
        await aggregator.stop()
        await aggregator.start()
        await asyncio.gather(aggregator.stop(), aggregator.stop())
        await aggregator.stop()
        assert aggregator.state is AggregatorState.IDLE

    @pytest.mark.asyncio
    async def test_stop_releases_face_worker_mid_analysis(self) -> None:
        model = SlowLandmarkModel(delay=0.3)
        video = QueueTrack("video")
        aggregator = make_aggregator(
            FakeDevices(video=video),
            landmark_model_factory=lambda: model,
            config={"face_fps": 50.0},
        )
        await aggregator.start()
        video.push(video_frame())
        await wait_until(lambda: model.worker is not None)

        await aggregator.stop()

        assert aggregator.state is AggregatorState.IDLE
        assert model.detect_finished
        assert model.closed
        assert not model.worker.is_alive()

    @pytest.mark.asyncio
    async def test_restart_begins_new_session(self) -> None:
        clock = ManualClock()
        aggregator = make_aggregator(
            FakeDevices(audio=QueueTrack("audio"), video=QueueTrack("video")), clock
        )
        await aggregator.start()
        aggregator.tick()
        aggregator.tick()
        first = aggregator.session
        await aggregator.stop()

        await aggregator.start()
        try:
            assert aggregator.session is not first
            assert aggregator.get_summary().total_data_points == 0
            assert aggregator.get_perf_stats()["ticks"] == 0
        finally:
            await aggregator.stop()

    def test_tick_and_summary_require_session(self) -> None:
        aggregator = make_aggregator(FakeDevices(audio=QueueTrack("audio")))
        with pytest.raises(DeliveryMetricsError):
            aggregator.tick()
        with pytest.raises(DeliveryMetricsError):
            aggregator.get_summary()
        with pytest.raises(DeliveryMetricsError):
            aggregator.get_metrics_dump()

    @pytest.mark.asyncio
    async def test_history_cap(self) -> None:
        clock = ManualClock()
        aggregator = make_aggregator(
            FakeDevices(audio=QueueTrack("audio")), clock, config={"history_cap": 3}
        )
        async with aggregator:
            for _ in range(5):
                clock.advance(0.1)
                aggregator.tick()
        dump = aggregator.get_metrics_dump()
        assert [m.t_ms for m in dump.metrics] == [300, 400, 500]

    @pytest.mark.asyncio
    async def test_perf_stats(self) -> None:
        aggregator = make_aggregator(FakeDevices(audio=QueueTrack("audio")))
        async with aggregator:
            aggregator.tick()
            stats = aggregator.get_perf_stats()
        assert stats["ticks"] == 1
        assert stats["face_frames_processed"] == 0
        assert stats["face_fps"] == 0.0
        assert stats["latency"]["tick"]["count"] == 1.0


# ---------------------------------------------------------------------------
# Start failures and teardown
# ---------------------------------------------------------------------------


class TestStartFailures:
    @pytest.mark.asyncio
    async def test_acquisition_failure_returns_to_idle(self) -> None:
        aggregator = make_aggregator(FakeDevices(error=AcquisitionError("permission denied")))
        with pytest.raises(AcquisitionError, match="permission denied"):
            await aggregator.start()
        assert aggregator.state is AggregatorState.IDLE

    @pytest.mark.asyncio
    async def test_face_init_timeout_releases_tracks(self) -> None:
        def slow_model():
            time.sleep(0.5)
            return FakeLandmarkModel()

        audio, video = QueueTrack("audio"), QueueTrack("video")
        aggregator = make_aggregator(
            FakeDevices(audio=audio, video=video),
            landmark_model_factory=slow_model,
            config={"init_timeout_s": 0.05},
        )
        with pytest.raises(InitializationTimeoutError):
            await aggregator.start()
        assert aggregator.state is AggregatorState.IDLE
        assert audio.readyState == "ended"
        assert video.readyState == "ended"

    @pytest.mark.asyncio
    async def test_face_model_failure_is_fatal(self) -> None:
        def broken_model():
            raise RuntimeError("graph file missing")

        video = QueueTrack("video")
        aggregator = make_aggregator(FakeDevices(video=video), landmark_model_factory=broken_model)
        with pytest.raises(DeliveryMetricsError, match="graph file missing"):
            await aggregator.start()
        assert aggregator.state is AggregatorState.IDLE
        assert video.readyState == "ended"

    @pytest.mark.asyncio
    async def test_teardown_errors_do_not_abort_stop(self) -> None:
        audio = QueueTrack("audio", fail_on_stop=True)
        video = QueueTrack("video")
        sink = RecordingSink(fail_on_stop=True)
        aggregator = make_aggregator(FakeDevices(audio=audio, video=video), sink=sink)
        await aggregator.start()
        await aggregator.stop()
        assert aggregator.state is AggregatorState.IDLE
        assert video.readyState == "ended"


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------


class TestDegradation:
    @pytest.mark.asyncio
    async def test_missing_camera_and_recognizer(self) -> None:
        clock = ManualClock()
        aggregator = make_aggregator(FakeDevices(audio=QueueTrack("audio")), clock)
        notices: list[Notice] = []
        aggregator.subscribe_notices(notices.append)

        async with aggregator:
            clock.advance(1.0)
            snap = aggregator.tick()
            assert aggregator.policy.degraded == ["video", "transcription"]

        assert {n.kind for n in notices} == {"degradation"}
        messages = " ".join(n.message for n in notices)
        assert "Camera unavailable" in messages
        assert "Speech recognition unavailable" in messages
        assert snap.head is None
        assert snap.wpm is None
        assert snap.emotions is None
        assert snap.to_dict() == {"t_ms": 1000}
        assert aggregator.get_summary().degraded == ["transcription", "video"]

    @pytest.mark.asyncio
    async def test_recognizer_gives_up(self) -> None:
        aggregator = make_aggregator(
            FakeDevices(audio=QueueTrack("audio")),
            speech_source=NetworkDownSource(),
            config={"transcription_max_restarts": 1, "transcription_restart_backoff_s": 0.001},
        )
        notices: list[Notice] = []
        aggregator.subscribe_notices(notices.append)

        async with aggregator:
            await wait_until(lambda: not aggregator.policy.allows("wpm"))
            assert aggregator.state is AggregatorState.RUNNING
            snap = aggregator.tick()

        assert snap.wpm is None
        assert snap.rms is None
        transcription = [n for n in notices if n.kind == "transcription"]
        assert len(transcription) == 2
        assert "network" in transcription[0].message
        assert any("Speech recognition unavailable" in n.message for n in notices)

    @pytest.mark.asyncio
    async def test_recognizer_crash_is_reported(self) -> None:
        aggregator = make_aggregator(
            FakeDevices(audio=QueueTrack("audio")),
            speech_source=CrashingSource(),
            config={"transcription_max_restarts": 1, "transcription_restart_backoff_s": 0.001},
        )
        notices: list[Notice] = []
        aggregator.subscribe_notices(notices.append)

        async with aggregator:
            await wait_until(lambda: not aggregator.policy.allows("wpm"))
            assert aggregator.state is AggregatorState.RUNNING

        transcription = [n for n in notices if n.kind == "transcription"]
        assert len(transcription) == 2
        assert "socket closed by provider" in transcription[0].message
        assert "transcription" in aggregator.get_summary().degraded

    @pytest.mark.asyncio
    async def test_bad_audio_frame_does_not_stop_audio(self) -> None:
        audio = QueueTrack("audio")
        aggregator = make_aggregator(FakeDevices(audio=audio))
        async with aggregator:
            audio.push(object())
            audio.push(sine_audio_frame())
            await wait_until(lambda: aggregator.get_perf_stats()["audio_frames_analysed"] >= 1)
            snap = aggregator.tick()
        assert snap.pitch_hz == pytest.approx(200.0, rel=0.03)

    @pytest.mark.asyncio
    async def test_emotion_model_failure(self) -> None:
        speech = QueueSpeechSource()
        aggregator = make_aggregator(
            FakeDevices(audio=QueueTrack("audio"), video=QueueTrack("video")),
            speech_source=speech,
            emotion_pipeline_factory=broken_emotion_pipeline,
        )
        notices: list[Notice] = []
        aggregator.subscribe_notices(notices.append)

        async with aggregator:
            speech.push_final("this is going well")
            await wait_until(lambda: not aggregator.policy.allows("emotions"))
            snap = aggregator.tick()
            assert aggregator.policy.allows("wpm")

        assert snap.emotions is None
        assert snap.transcript_final == "this is going well"
        assert [n.kind for n in notices] == ["emotion", "degradation"]
        assert "emotion" in aggregator.get_summary().degraded

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_ticks(self) -> None:
        aggregator = make_aggregator(FakeDevices(audio=QueueTrack("audio")))
        received: list[MetricsSnapshot] = []

        def broken(snap: MetricsSnapshot) -> None:
            raise ValueError("render failed")

        aggregator.subscribe(broken)
        aggregator.subscribe(received.append)
        async with aggregator:
            aggregator.tick()
            aggregator.tick()
        assert len(received) == 2
