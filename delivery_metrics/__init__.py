"""Live speech and visual delivery metrics from a microphone and camera.

Core components:
  MetricsAggregator     : session controller; merges producer outputs into a
                          MetricsSnapshot at a fixed rate (default 10 Hz)
  MetricsBus            : synchronous snapshot / notice fan-out
  AudioFeatureExtractor : per-frame loudness (RMS) and autocorrelation pitch
  FaceFeatureExtractor  : blink rate, smile, head pose, gaze jitter from
                          MediaPipe Face Mesh landmarks
  TranscriptionAdapter  : interim/final transcript, speaking rate, fillers
  EmotionClassifier     : lazily loaded GoEmotions text classifier

Supporting modules:
  GracefulDegradationEngine : which fields survive a missing modality
  SessionSummaryGenerator   : end-of-session statistics, JSON / Markdown
  LatencyTracker            : per-stage latency budgets with OTEL export
  score_delivery            : 0-1 desirability scores for a snapshot

Minimal wiring example::

    from delivery_metrics import (
        AnalyticsConfig, MetricsAggregator, PlayerDevices, PlayerSource,
        QueueSpeechSource, SessionSummaryGenerator, score_delivery,
    )

    speech = QueueSpeechSource()           # push STT results into it
    aggregator = MetricsAggregator(
        PlayerDevices(
            video=PlayerSource("/dev/video0", format="v4l2"),
            audio=PlayerSource("default", format="alsa"),
        ),
        config=AnalyticsConfig.from_env(),
        speech_source=speech,
    )
    aggregator.subscribe(lambda snap: print(snap.wpm, score_delivery(snap).overall))

    async with aggregator:
        await asyncio.sleep(60)

    print(SessionSummaryGenerator().to_markdown(aggregator.get_summary()))
"""

from ._audio import AudioFeatureExtractor, AudioPipeline, compute_rms, estimate_pitch
from ._buffers import LatestValue, RollingWindow
from ._bus import MetricsBus
from ._config import DEFAULT_EMOTION_MODEL, DEFAULT_FILLER_WORDS, AnalyticsConfig
from ._degradation import DegradationPolicy, GracefulDegradationEngine, ModalityAvailability
from ._emotion import EmotionClassifier, EmotionState, select_emotions
from ._errors import (
    AcquisitionError,
    AlreadyRunningError,
    DeliveryMetricsError,
    InitializationTimeoutError,
    SpeechRecognitionError,
)
from ._face import FaceAnalysisLoop, FaceFeatureExtractor
from ._landmarks import FaceLandmarkModel
from ._media import MediaDevices, MediaStreams, PlayerDevices, PlayerSource
from ._scorer import (
    DeliveryScores,
    score_blink,
    score_delivery,
    score_fillers,
    score_gaze,
    score_head_pose,
    score_pause,
    score_smile,
    score_wpm,
)
from ._session_summary import SessionSummary, SessionSummaryGenerator, compute_stats
from ._telemetry import LATENCY_BUDGETS_MS, LatencyTracker
from ._transcription import (
    QueueSpeechSource,
    RecognitionResult,
    SpeechSource,
    TranscriptionAdapter,
    count_fillers,
)
from ._types import (
    AudioFrameResult,
    EmotionScore,
    FaceFrameResult,
    HeadPose,
    MetricsDump,
    MetricsSnapshot,
    MetricStats,
    Notice,
)
from .controller import AggregatorState, MetricsAggregator

__all__ = [
    # Controller
    "AggregatorState",
    "MetricsAggregator",
    "MetricsBus",
    # Configuration
    "AnalyticsConfig",
    "DEFAULT_EMOTION_MODEL",
    "DEFAULT_FILLER_WORDS",
    # Producers
    "AudioFeatureExtractor",
    "AudioPipeline",
    "EmotionClassifier",
    "EmotionState",
    "FaceAnalysisLoop",
    "FaceFeatureExtractor",
    "FaceLandmarkModel",
    "QueueSpeechSource",
    "RecognitionResult",
    "SpeechSource",
    "TranscriptionAdapter",
    "compute_rms",
    "count_fillers",
    "estimate_pitch",
    "select_emotions",
    # Containers
    "LatestValue",
    "RollingWindow",
    # Media
    "MediaDevices",
    "MediaStreams",
    "PlayerDevices",
    "PlayerSource",
    # Degradation
    "DegradationPolicy",
    "GracefulDegradationEngine",
    "ModalityAvailability",
    # Scoring
    "DeliveryScores",
    "score_blink",
    "score_delivery",
    "score_fillers",
    "score_gaze",
    "score_head_pose",
    "score_pause",
    "score_smile",
    "score_wpm",
    # Session summary
    "SessionSummary",
    "SessionSummaryGenerator",
    "compute_stats",
    # Telemetry
    "LATENCY_BUDGETS_MS",
    "LatencyTracker",
    # Errors
    "AcquisitionError",
    "AlreadyRunningError",
    "DeliveryMetricsError",
    "InitializationTimeoutError",
    "SpeechRecognitionError",
    # Data types
    "AudioFrameResult",
    "EmotionScore",
    "FaceFrameResult",
    "HeadPose",
    "MetricStats",
    "MetricsDump",
    "MetricsSnapshot",
    "Notice",
]

try:
    from .agent_bridge import AnalyticsBridge  # noqa: F401
    from .events import (  # noqa: F401
        DeliveryNoticeEvent,
        DeliverySummaryEvent,
        MetricsSnapshotEvent,
    )

    __all__ += [
        "AnalyticsBridge",
        "DeliveryNoticeEvent",
        "DeliverySummaryEvent",
        "MetricsSnapshotEvent",
    ]
except ImportError:
    pass
