"""MetricsAggregator: the session controller.

Owns device acquisition, wires the producers, runs the fixed-rate tick
that merges their latest outputs into one MetricsSnapshot, and keeps the
bounded history used by get_summary() and get_metrics_dump().

    IDLE ──start()──▶ STARTING ──▶ RUNNING ──stop()──▶ STOPPING ──▶ IDLE
                          │
                          └── failure: partial resources released ──▶ IDLE

Producers and what they write:

    AudioPipeline        audio.latest        (per 50 ms frame)
    FaceAnalysisLoop     face_loop.latest    (face_fps, worker thread)
    TranscriptionAdapter session.transcript  (per recognizer result)
    EmotionClassifier    emotion.latest      (per final segment)

The tick only reads these; it never waits for a fresher value.
"""

import asyncio
import dataclasses
import enum
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamTrack

from ._aggregator import SnapshotComposer
from ._audio import AudioFeatureExtractor, AudioPipeline
from ._bus import MetricsBus, NoticeCallback, SnapshotCallback
from ._config import AnalyticsConfig
from ._degradation import DegradationPolicy, GracefulDegradationEngine, ModalityAvailability
from ._emotion import EmotionClassifier, PipelineFactory
from ._errors import AlreadyRunningError, DeliveryMetricsError, SpeechRecognitionError
from ._face import FaceAnalysisLoop, FaceFeatureExtractor, LandmarkModel
from ._landmarks import FaceLandmarkModel
from ._media import MediaDevices, MediaStreams
from ._session import Session
from ._session_summary import SessionSummary, SessionSummaryGenerator
from ._tasks import cancel_and_wait
from ._telemetry import LatencyTracker
from ._transcription import SpeechSource, TranscriptionAdapter
from ._types import MetricsDump, MetricsSnapshot, Notice

logger = logging.getLogger(__name__)


class AggregatorState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class MediaSink(Protocol):
    """Preview/recording sink such as aiortc's MediaRecorder."""

    def addTrack(self, track: MediaStreamTrack) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class MetricsAggregator:
    """Live delivery-metrics controller for one speaker.

    Args:
        devices: Source of the microphone and camera tracks.
        config: Default session configuration; start() may override it.
        speech_source: Streaming recognizer for transcript, speaking rate,
            fillers and emotions. Without one those fields stay absent.
        landmark_model_factory: Builds the face landmark model on the face
            worker thread.
        emotion_pipeline_factory: Builds the text-classification pipeline.
            Defaults to a Hugging Face transformers pipeline.
        bus: Pub/sub used for snapshots and notices.
        sink: Optional preview/recording sink fed through a MediaRelay.
        clock: Monotonic time source.

    Usage::

        aggregator = MetricsAggregator(PlayerDevices(video="/dev/video0"))
        unsubscribe = aggregator.subscribe(lambda snap: print(snap.to_dict()))
        async with aggregator:
            await asyncio.sleep(30)
        print(aggregator.get_summary())
    """

    def __init__(
        self,
        devices: MediaDevices,
        config: Optional[AnalyticsConfig] = None,
        speech_source: Optional[SpeechSource] = None,
        landmark_model_factory: Callable[[], LandmarkModel] = FaceLandmarkModel,
        emotion_pipeline_factory: Optional[PipelineFactory] = None,
        bus: Optional[MetricsBus] = None,
        sink: Optional[MediaSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._devices = devices
        self._config = config or AnalyticsConfig()
        self._speech_source = speech_source
        self._landmark_model_factory = landmark_model_factory
        self._emotion_pipeline_factory = emotion_pipeline_factory
        self._sink = sink
        self._clock = clock

        self.bus = bus or MetricsBus()
        self.latency = LatencyTracker()

        self._state = AggregatorState.IDLE
        self._start_finished = asyncio.Event()
        self._stop_task: Optional[asyncio.Task] = None

        self._session: Optional[Session] = None
        self._composer = SnapshotComposer(self._config)
        self._summary = SessionSummaryGenerator()
        self._degradation = GracefulDegradationEngine()
        self._availability = ModalityAvailability()
        self._policy: DegradationPolicy = self._degradation.evaluate(self._availability)

        self._streams: Optional[MediaStreams] = None
        self._relay: Optional[MediaRelay] = None
        self._sink_started = False
        self._audio: Optional[AudioFeatureExtractor] = None
        self._audio_pipeline: Optional[AudioPipeline] = None
        self._face_loop: Optional[FaceAnalysisLoop] = None
        self._transcription: Optional[TranscriptionAdapter] = None
        self._emotion: Optional[EmotionClassifier] = None
        self._timer_task: Optional[asyncio.Task] = None

        self.tick_count = 0

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> AggregatorState:
        return self._state

    @property
    def config(self) -> AnalyticsConfig:
        return self._config

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def policy(self) -> DegradationPolicy:
        return self._policy

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Receive every published snapshot. Returns the unsubscribe function."""
        return self.bus.subscribe(callback)

    def subscribe_notices(self, callback: NoticeCallback) -> Callable[[], None]:
        """Receive non-fatal notices (degradations, recognizer errors)."""
        return self.bus.subscribe_notices(callback)

    async def __aenter__(self) -> "MetricsAggregator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self, config: Optional[AnalyticsConfig] = None) -> None:
        """Acquire devices, start every producer and the snapshot timer.

        Args:
            config: Configuration for this session; defaults to the one given
                at construction.

        Raises:
            AlreadyRunningError: The aggregator is not idle.
            AcquisitionError: Camera/microphone could not be acquired.
            InitializationTimeoutError: The face worker did not come up in time.
        """
        if self._state is not AggregatorState.IDLE:
            raise AlreadyRunningError(self._state.value)

        self._state = AggregatorState.STARTING
        self._start_finished.clear()
        if config is not None:
            self._config = config
        try:
            await self._start()
        except (Exception, asyncio.CancelledError):
            logger.warning("Metrics aggregator failed to start; releasing resources")
            await self._teardown()
            self._state = AggregatorState.IDLE
            raise
        else:
            self._state = AggregatorState.RUNNING
        finally:
            self._start_finished.set()

    async def stop(self) -> None:
        """Stop the session and release every resource.

        Idempotent: concurrent callers share one teardown, and calling it
        while idle does nothing. Teardown failures are logged, never raised.
        """
        if self._state is AggregatorState.STARTING:
            await self._start_finished.wait()
        if self._state is AggregatorState.IDLE:
            return

        if self._stop_task is None:
            self._state = AggregatorState.STOPPING
            self._stop_task = asyncio.create_task(self._stop(), name="metrics_stop")
        task = self._stop_task
        # Run teardown in a shielded task so it completes even if the
        # caller is cancelled.
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise

    def tick(self) -> MetricsSnapshot:
        """Compose, record and publish one snapshot now.

        Raises:
            DeliveryMetricsError: No session is running.
        """
        session = self._session
        if session is None or self._state is not AggregatorState.RUNNING:
            raise DeliveryMetricsError("Metrics aggregator is not running")

        with self.latency.measure("tick"):
            snapshot = self._composer.compose(
                session,
                self._clock(),
                self._policy,
                audio=self._audio.latest.get() if self._audio else None,
                face=self._face_loop.latest.get() if self._face_loop else None,
                emotions=self._emotion.latest.get() if self._emotion else None,
            )
            session.record(snapshot)
            self.tick_count += 1
        self.bus.publish(snapshot)
        return snapshot

    def get_summary(self) -> SessionSummary:
        """Statistics for the current or most recent session.

        Raises:
            DeliveryMetricsError: No session has been started.
        """
        return self._summary.generate(self._require_session(), self._clock())

    def get_metrics_dump(self) -> MetricsDump:
        """Full snapshot history of the current or most recent session."""
        return self._summary.dump(self._require_session(), self._clock())

    def get_perf_stats(self) -> dict[str, Any]:
        """Face analysis rate, backpressure drops and per-stage latency."""
        face = self._face_loop
        return {
            "face_fps": round(face.fps(), 1) if face else 0.0,
            "face_frames_processed": face.frames_processed if face else 0,
            "face_frames_skipped": face.frames_skipped if face else 0,
            "audio_frames_analysed": self._audio.frames_analysed if self._audio else 0,
            "ticks": self.tick_count,
            "latency": self.latency.get_stats(),
        }

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def _start(self) -> None:
        cfg = self._config
        self._session = Session(cfg, self._clock())
        self._composer = SnapshotComposer(cfg)
        self.latency.reset()
        self.tick_count = 0
        self._audio = None
        self._face_loop = None
        self._emotion = None
        self._availability = ModalityAvailability()
        self._policy = self._degradation.evaluate(self._availability)

        streams = await self._devices.acquire()
        self._streams = streams

        audio_track = streams.audio
        video_track = streams.video
        if self._sink is not None:
            self._relay = MediaRelay()
            if audio_track is not None:
                self._sink.addTrack(self._relay.subscribe(audio_track))
                audio_track = self._relay.subscribe(audio_track)
            if video_track is not None:
                self._sink.addTrack(self._relay.subscribe(video_track))
                video_track = self._relay.subscribe(video_track)
            await self._sink.start()
            self._sink_started = True

        if video_track is not None:
            self._face_loop = FaceAnalysisLoop(
                FaceFeatureExtractor(cfg),
                cfg,
                self._landmark_model_factory,
                self._clock,
                self.latency,
            )
            await self._face_loop.start(video_track)

        if audio_track is not None:
            self._audio = AudioFeatureExtractor(cfg, self._clock, self.latency)
            self._audio_pipeline = AudioPipeline(self._audio)
            self._audio_pipeline.start(audio_track)

        transcribing = cfg.use_transcription and self._speech_source is not None
        if transcribing:
            assert self._speech_source is not None
            if cfg.use_emotion:
                self._emotion = EmotionClassifier(
                    model=cfg.emotion_model,
                    threshold=cfg.emotion_threshold,
                    top_k=cfg.emotion_top_k,
                    pipeline_factory=self._emotion_pipeline_factory,
                    load_timeout_s=cfg.init_timeout_s,
                    latency=self.latency,
                    on_failed=self._on_emotion_failed,
                )
            self._transcription = TranscriptionAdapter(
                self._speech_source,
                cfg,
                self._session.transcript,
                clock=self._clock,
                on_final=self._on_final_segment,
                on_error=self._on_transcription_error,
                on_give_up=self._on_transcription_give_up,
            )
            self._transcription.start()

        self._set_availability(
            ModalityAvailability(
                audio=streams.audio is not None,
                video=streams.video is not None,
                transcription=transcribing,
                emotion=True,
            )
        )

        self._timer_task = asyncio.create_task(self._run_timer(), name="metrics_tick")
        logger.info(
            "Metrics aggregator started (%.0f Hz, face %.0f fps, degraded=%s)",
            cfg.metrics_hz,
            cfg.face_fps,
            self._policy.degraded or "none",
        )

    async def _run_timer(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.tick_interval_s
        deadline = loop.time()
        while True:
            deadline += interval
            delay = deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                # Fell behind: resynchronise instead of bursting catch-up ticks.
                deadline = loop.time()
                await asyncio.sleep(0)
            self.tick()

    # ------------------------------------------------------------------
    # Producer callbacks
    # ------------------------------------------------------------------

    def _notice(self, kind: str, message: str) -> None:
        t_ms = self._session.elapsed_ms(self._clock()) if self._session else 0
        self.bus.publish_notice(Notice(kind=kind, message=message, t_ms=t_ms))

    def _set_availability(self, availability: ModalityAvailability) -> None:
        previous = set(self._policy.warnings)
        self._availability = availability
        self._policy = self._degradation.evaluate(availability)
        if self._session is not None:
            self._session.degraded.update(self._policy.degraded)
        for warning in self._policy.warnings:
            if warning not in previous:
                self._notice("degradation", warning)

    def _on_final_segment(self, text: str) -> None:
        if self._emotion is not None:
            self._emotion.submit(text)

    def _on_transcription_error(self, error: SpeechRecognitionError) -> None:
        self._notice("transcription", str(error))

    def _on_transcription_give_up(self) -> None:
        self._set_availability(dataclasses.replace(self._availability, transcription=False))

    def _on_emotion_failed(self, reason: str) -> None:
        self._notice("emotion", reason)
        self._set_availability(dataclasses.replace(self._availability, emotion=False))

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def _require_session(self) -> Session:
        if self._session is None:
            raise DeliveryMetricsError("No metrics session has been started")
        return self._session

    async def _stop(self) -> None:
        logger.info("Stopping metrics aggregator")
        try:
            if self._session is not None:
                self._session.finish(self._clock())
            await self._teardown()
        finally:
            self._state = AggregatorState.IDLE
            self._stop_task = None
        logger.info("Metrics aggregator stopped (%d snapshots)", self.tick_count)

    async def _teardown(self) -> None:
        await self._teardown_step("timer", self._stop_timer)
        await self._teardown_step("transcription", self._stop_transcription)
        await self._teardown_step("emotion classifier", self._stop_emotion)
        await self._teardown_step("face loop", self._stop_face_loop)
        await self._teardown_step("audio pipeline", self._stop_audio)
        await self._teardown_step("media tracks", self._stop_tracks)
        await self._teardown_step("media sink", self._stop_sink)

    @staticmethod
    async def _teardown_step(name: str, step: Callable[[], Awaitable[None]]) -> None:
        try:
            await step()
        except Exception:
            logger.exception("Error stopping %s", name)

    async def _stop_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        await cancel_and_wait(task)

    async def _stop_transcription(self) -> None:
        adapter, self._transcription = self._transcription, None
        if adapter is not None:
            await adapter.stop()

    async def _stop_emotion(self) -> None:
        # The classifier's latest result stays readable for the summary.
        if self._emotion is not None:
            await self._emotion.close()

    async def _stop_face_loop(self) -> None:
        if self._face_loop is not None:
            await self._face_loop.close()

    async def _stop_audio(self) -> None:
        pipeline, self._audio_pipeline = self._audio_pipeline, None
        if pipeline is not None:
            await pipeline.close()

    async def _stop_tracks(self) -> None:
        streams, self._streams = self._streams, None
        if streams is not None:
            streams.stop()

    async def _stop_sink(self) -> None:
        self._relay = None
        if self._sink is not None and self._sink_started:
            self._sink_started = False
            await self._sink.stop()
