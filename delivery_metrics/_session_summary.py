"""End-of-session summary generator.

Reduces a session's snapshot history into descriptive statistics per
metric series, the final transcript and the degraded modalities. Outputs
as a typed dataclass, JSON string, or Markdown report.
"""

import dataclasses
import json
import logging
import statistics
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from ._session import Session
from ._types import EmotionScore, MetricsDump, MetricsSnapshot, MetricStats

logger = logging.getLogger(__name__)

_DOMINANT_EMOTIONS = 3


def compute_stats(values: Iterable[float]) -> Optional[MetricStats]:
    """Mean, median, min, max and population std dev of a series.

    Mean and std dev are rounded to two decimals. Returns None for an
    empty series.
    """
    data = [float(v) for v in values]
    if not data:
        return None
    return MetricStats(
        mean=round(statistics.fmean(data), 2),
        median=statistics.median(data),
        min=min(data),
        max=max(data),
        std_dev=round(statistics.pstdev(data), 2),
        count=len(data),
    )


@dataclass
class SessionSummary:
    """Complete end-of-session delivery summary.

    Series statistics are None when the metric never appeared in a
    snapshot. ``fillers_per_min`` is the session-level rate (total fillers
    over elapsed minutes); ``fillers_per_min_stats`` describes the
    per-snapshot series.
    """

    started_at: str
    ended_at: str
    duration_s: float
    total_data_points: int

    # Speech
    wpm: Optional[MetricStats]
    pitch_hz: Optional[MetricStats]
    pause_ratio_pct: Optional[MetricStats]
    fillers_per_min_stats: Optional[MetricStats]
    total_filler_count: int
    fillers_per_min: float

    # Face
    blink_per_min: Optional[MetricStats]
    gaze_jitter: Optional[MetricStats]
    smile: Optional[MetricStats]
    head_yaw: Optional[MetricStats]
    head_pitch: Optional[MetricStats]

    # Loudness
    rms: Optional[MetricStats]

    # Emotion
    dominant_emotions: list[EmotionScore] = field(default_factory=list)

    # Transcript
    transcript: str = ""
    word_count: int = 0

    degraded: list[str] = field(default_factory=list)


def _series(
    history: Iterable[MetricsSnapshot], getter: Callable[[MetricsSnapshot], Optional[float]]
) -> list[float]:
    return [v for v in (getter(m) for m in history) if v is not None]


def _dominant_emotions(history: Iterable[MetricsSnapshot], limit: int) -> list[EmotionScore]:
    totals: dict[str, float] = {}
    counts: dict[str, int] = {}
    for snap in history:
        for emotion in snap.emotions or ():
            totals[emotion.label] = totals.get(emotion.label, 0.0) + emotion.score
            counts[emotion.label] = counts.get(emotion.label, 0) + 1
    ranked = sorted(
        (EmotionScore(label=label, score=round(totals[label] / counts[label], 4)) for label in totals),
        key=lambda e: (-counts[e.label], -e.score),
    )
    return ranked[:limit]


class SessionSummaryGenerator:
    """Builds SessionSummary and MetricsDump values from a Session."""

    def generate(self, session: Session, now: float) -> SessionSummary:
        """Summarize the session as of ``now`` (or its end time if stopped).

        Args:
            session: Session to summarize.
            now: Current monotonic time.

        Returns:
            SessionSummary with all computed statistics.
        """
        history = list(session.history)
        transcript = session.transcript

        summary = SessionSummary(
            started_at=session.started_at.isoformat(timespec="milliseconds"),
            ended_at=session.ended_at(now).isoformat(timespec="milliseconds"),
            duration_s=round(session.elapsed_s(now), 1),
            total_data_points=len(history),
            wpm=compute_stats(_series(history, lambda m: m.wpm)),
            # 0 Hz marks "no clear pitch", not a low voice.
            pitch_hz=compute_stats(v for v in _series(history, lambda m: m.pitch_hz) if v > 0),
            pause_ratio_pct=compute_stats(
                v * 100.0 for v in _series(history, lambda m: m.pause_ratio)
            ),
            fillers_per_min_stats=compute_stats(_series(history, lambda m: m.fillers_per_min)),
            total_filler_count=transcript.filler_count,
            fillers_per_min=round(session.fillers_per_min(now), 2),
            blink_per_min=compute_stats(_series(history, lambda m: m.blink_per_min)),
            gaze_jitter=compute_stats(_series(history, lambda m: m.gaze_jitter)),
            smile=compute_stats(_series(history, lambda m: m.smile)),
            head_yaw=compute_stats(_series(history, lambda m: m.head.yaw if m.head else None)),
            head_pitch=compute_stats(_series(history, lambda m: m.head.pitch if m.head else None)),
            rms=compute_stats(_series(history, lambda m: m.rms)),
            dominant_emotions=_dominant_emotions(history, _DOMINANT_EMOTIONS),
            transcript=transcript.final_text,
            word_count=transcript.word_count,
            degraded=sorted(session.degraded),
        )
        logger.info(
            "Session summary: %.1fs, %d snapshots, %d words, %d fillers",
            summary.duration_s,
            summary.total_data_points,
            summary.word_count,
            summary.total_filler_count,
        )
        return summary

    def dump(self, session: Session, now: float) -> MetricsDump:
        """Full snapshot history with ISO-8601 start/end timestamps."""
        return MetricsDump(
            started_at=session.started_at.isoformat(timespec="milliseconds"),
            ended_at=session.ended_at(now).isoformat(timespec="milliseconds"),
            duration_ms=session.elapsed_ms(now),
            metrics=list(session.history),
        )

    def to_json(self, summary: SessionSummary) -> str:
        """Serialize the summary to a JSON string."""
        return json.dumps(dataclasses.asdict(summary), indent=2, default=str)

    def to_markdown(self, summary: SessionSummary) -> str:
        """Generate a human-readable Markdown report.

        Args:
            summary: SessionSummary to format.

        Returns:
            Multi-line Markdown string.
        """

        def stat_line(name: str, stats: Optional[MetricStats], unit: str = "") -> str:
            if stats is None:
                return f"- **{name}**: n/a"
            return (
                f"- **{name}**: mean {stats.mean:.2f}{unit} "
                f"(median {stats.median:.2f}, min {stats.min:.2f}, "
                f"max {stats.max:.2f}, sd {stats.std_dev:.2f})"
            )

        lines = [
            "# Delivery Session Report",
            "",
            f"**Started**: {summary.started_at}",
            f"**Duration**: {summary.duration_s:.0f}s ({summary.total_data_points} data points)",
            "",
            "## Speech",
            stat_line("Speaking Rate", summary.wpm, " wpm"),
            stat_line("Pitch", summary.pitch_hz, " Hz"),
            stat_line("Pauses", summary.pause_ratio_pct, "%"),
            f"- **Filler Words**: {summary.total_filler_count} "
            f"({summary.fillers_per_min:.1f}/min)",
            stat_line("Loudness", summary.rms),
            "",
            "## Face",
            stat_line("Blink Rate", summary.blink_per_min, "/min"),
            stat_line("Gaze Jitter", summary.gaze_jitter),
            stat_line("Smile", summary.smile),
            stat_line("Head Yaw", summary.head_yaw, "°"),
            stat_line("Head Pitch", summary.head_pitch, "°"),
        ]

        if summary.dominant_emotions:
            lines += [
                "",
                "## Emotions",
                *[f"- {e.label}: {e.score:.2f}" for e in summary.dominant_emotions],
            ]

        if summary.degraded:
            lines += ["", "## Unavailable", *[f"- {name}" for name in summary.degraded]]

        lines += [
            "",
            "## Transcript",
            f"_{summary.word_count} words_",
            "",
            summary.transcript or "(empty)",
        ]
        return "\n".join(lines)
