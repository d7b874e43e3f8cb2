from dataclasses import dataclass, field
from typing import Any, Optional

from vision_agents.core.events.base import PluginBaseEvent


@dataclass
class MetricsSnapshotEvent(PluginBaseEvent):
    """Emitted on every aggregator tick with the latest delivery metrics.

    A field is None when its modality has not produced a value in the
    session (see MetricsSnapshot).
    """

    type: str = field(default="plugin.delivery_metrics.snapshot", init=False)

    t_ms: int = 0
    """Milliseconds since session start."""

    wpm: Optional[float] = None
    pitch_hz: Optional[float] = None
    rms: Optional[float] = None
    pause_ratio: Optional[float] = None
    fillers_per_min: Optional[float] = None
    head_yaw: Optional[float] = None
    head_pitch: Optional[float] = None
    gaze_jitter: Optional[float] = None
    smile: Optional[float] = None
    blink_per_min: Optional[float] = None
    transcript_partial: Optional[str] = None

    emotions: list[dict[str, Any]] = field(default_factory=list)
    """Selected emotions as {"label", "score"} dicts, highest score first."""

    delivery_score: float = 0.0
    """Weighted overall delivery score [0, 1]."""


@dataclass
class DeliveryNoticeEvent(PluginBaseEvent):
    """Emitted when a modality degrades or a producer reports an error."""

    type: str = field(default="plugin.delivery_metrics.notice", init=False)

    kind: str = ""
    """'degradation', 'transcription', 'emotion', 'face' or 'audio'."""

    message: str = ""
    t_ms: int = 0


@dataclass
class DeliverySummaryEvent(PluginBaseEvent):
    """Emitted once when the session stops, with the headline summary values."""

    type: str = field(default="plugin.delivery_metrics.session_summary", init=False)

    duration_s: float = 0.0
    total_data_points: int = 0
    mean_wpm: Optional[float] = None
    mean_pitch_hz: Optional[float] = None
    mean_pause_pct: Optional[float] = None
    fillers_per_min: float = 0.0
    total_filler_count: int = 0
    mean_blink_per_min: Optional[float] = None
    mean_gaze_jitter: Optional[float] = None
    word_count: int = 0
    degraded: list[str] = field(default_factory=list)
