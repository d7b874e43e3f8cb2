import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, Literal, Optional


@dataclass(frozen=True)
class HeadPose:
    """Approximate head orientation in degrees (yaw ±90, pitch ±45)."""

    yaw: float
    pitch: float


@dataclass(frozen=True)
class EmotionScore:
    """One emotion label with its classifier probability."""

    label: str
    score: float


@dataclass(frozen=True)
class AudioFrameResult:
    """Features of a single ~50 ms audio frame.

    ``pitch_hz`` is 0.0 when no clear pitch was found (unvoiced or noisy
    audio); ``rms`` is 0.0 for digital silence. Both zeros are valid
    "no signal" readings rather than missing data.
    """

    rms: float
    pitch_hz: float
    timestamp: float


@dataclass(frozen=True)
class FaceFrameResult:
    """Features of a single analysed video frame.

    When ``face_detected`` is False all geometric fields are neutral (0.0)
    and ``blink_per_min`` carries the unchanged rolling blink count.
    """

    yaw: float
    pitch: float
    blink_per_min: float
    smile: float
    gaze_jitter: float
    face_detected: bool
    timestamp: float

    @classmethod
    def neutral(cls, blink_per_min: float, timestamp: float) -> "FaceFrameResult":
        return cls(
            yaw=0.0,
            pitch=0.0,
            blink_per_min=blink_per_min,
            smile=0.0,
            gaze_jitter=0.0,
            face_detected=False,
            timestamp=timestamp,
        )


@dataclass
class MetricsSnapshot:
    """Unified point-in-time metrics record, published once per tick.

    A field is None when its modality has never produced a value in the
    session (no microphone, no camera, transcription disabled, no emotion
    classified yet). It is never None merely because the latest reading
    was quiet: pitch_hz and rms use 0.0 as their "no signal" reading.
    """

    t_ms: int
    """Milliseconds since session start, monotonic across snapshots."""

    wpm: float | None = None
    """Finalized words in the trailing speaking-rate window, per minute."""

    pitch_hz: float | None = None
    """Latest pitch estimate; 0.0 means no clear pitch in the last frame."""

    rms: float | None = None
    """Latest frame loudness (root-mean-square of samples)."""

    pause_ratio: float | None = None
    """Fraction of recent loudness samples below the pause threshold [0, 1]."""

    fillers_per_min: float | None = None
    """Cumulative filler count divided by elapsed session minutes."""

    head: HeadPose | None = None
    gaze_jitter: float | None = None
    smile: float | None = None
    blink_per_min: float | None = None

    transcript_partial: str | None = None
    """Interim (not yet final) recognizer text, display only."""

    transcript_final: str | None = None
    """All finalized transcript segments so far, space-joined."""

    emotions: list[EmotionScore] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict, omitting absent fields."""
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


@dataclass(frozen=True)
class Notice:
    """Non-fatal condition surfaced to notice subscribers.

    Attributes:
        kind: Source of the condition.
        message: Human-readable description.
        t_ms: Session time the notice was raised.
    """

    kind: Literal["transcription", "emotion", "degradation", "face", "audio"]
    message: str
    t_ms: int


@dataclass(frozen=True)
class MetricStats:
    """Descriptive statistics for one numeric metric series."""

    mean: float
    median: float
    min: float
    max: float
    std_dev: float
    count: int


@dataclass
class MetricsDump:
    """Full export of a session's snapshot history."""

    started_at: str
    ended_at: str
    duration_ms: int
    metrics: list[MetricsSnapshot] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "metrics": [m.to_dict() for m in self.metrics],
        }

    def to_json(self, indent: Optional[int] = None) -> str:
        """Serialize the dump; absent snapshot fields are omitted."""
        return json.dumps(self.to_dict(), indent=indent)
