"""Pure mappings from raw delivery metrics to desirability scores in [0, 1].

Design principles:
- Each metric is scored independently against a fixed "ideal" band.
- Scores never leave [0, 1].
- The overall delivery score is a fixed weighted average; speech metrics
  carry 60% of the weight, visual metrics 40%.
- A metric missing from the snapshot scores a neutral 0.5, except fillers,
  where "none counted" is the ideal and scores 1.0.

None of this is used by the aggregator itself; it exists for consumers
rendering coaching feedback.
"""

from dataclasses import asdict, dataclass

from ._types import MetricsSnapshot

# ── Ideal bands ────────────────────────────────────────────────────────────────

_WPM_SLOW = 80.0
_WPM_FAST = 200.0
_PAUSE_IDEAL = 0.2
_FILLERS_CEILING = 10.0
_BLINK_IDEAL = 17.5
_BLINK_SPREAD = 20.0
_GAZE_CEILING = 50.0
_HEAD_DEVIATION_CEILING = 60.0

_MISSING_SCORE = 0.5

# ── Overall weights (must sum to 1.0) ──────────────────────────────────────────
_DELIVERY_WEIGHTS: dict[str, float] = {
    "wpm":       0.25,
    "pause":     0.15,
    "fillers":   0.20,
    "blink":     0.10,
    "gaze":      0.15,
    "head_pose": 0.10,
    "smile":     0.05,
}

assert abs(sum(_DELIVERY_WEIGHTS.values()) - 1.0) < 1e-9, "Delivery weights must sum to 1.0"


def score_wpm(wpm: float) -> float:
    """80-200 wpm maps linearly onto 0.5-1.0; slower or faster falls off."""
    if wpm < _WPM_SLOW:
        return max(0.0, wpm / _WPM_SLOW * 0.5)
    if wpm > _WPM_FAST:
        return max(0.0, 1.0 - (wpm - _WPM_FAST) / 100.0)
    return 0.5 + (wpm - _WPM_SLOW) / 120.0 * 0.5


def score_pause(pause_ratio: float) -> float:
    """Natural speech pauses about 20% of the time."""
    return max(0.0, 1.0 - abs(pause_ratio - _PAUSE_IDEAL) / _PAUSE_IDEAL)


def score_fillers(fillers_per_min: float) -> float:
    return max(0.0, 1.0 - fillers_per_min / _FILLERS_CEILING)


def score_blink(blink_per_min: float) -> float:
    """15-20 blinks/min is typical; both staring and rapid blinking score lower."""
    return max(0.0, 1.0 - abs(blink_per_min - _BLINK_IDEAL) / _BLINK_SPREAD)


def score_gaze(gaze_jitter: float) -> float:
    return max(0.0, 1.0 - gaze_jitter / _GAZE_CEILING)


def score_head_pose(yaw: float, pitch: float) -> float:
    return max(0.0, 1.0 - (abs(yaw) + abs(pitch)) / _HEAD_DEVIATION_CEILING)


def score_smile(smile: float) -> float:
    """0.3-0.7 reads as engaged; a flat face or a fixed grin scores lower."""
    if smile < 0.3:
        return smile / 0.3 * 0.7
    if smile > 0.7:
        return max(0.0, 1.0 - (smile - 0.7) / 0.3 * 0.3)
    return 0.7 + (smile - 0.3) / 0.4 * 0.3


@dataclass(frozen=True)
class DeliveryScores:
    """Per-metric scores and their weighted overall, all in [0, 1]."""

    wpm: float
    pause: float
    fillers: float
    blink: float
    gaze: float
    head_pose: float
    smile: float
    overall: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def score_delivery(snapshot: MetricsSnapshot) -> DeliveryScores:
    """Score every metric in a snapshot and combine them.

    Args:
        snapshot: Snapshot to score; absent fields get the neutral score.

    Returns:
        DeliveryScores with the weighted overall.
    """
    s = snapshot
    scores = {
        "wpm": score_wpm(s.wpm) if s.wpm is not None else _MISSING_SCORE,
        "pause": score_pause(s.pause_ratio) if s.pause_ratio is not None else _MISSING_SCORE,
        "fillers": score_fillers(s.fillers_per_min) if s.fillers_per_min is not None else 1.0,
        "blink": score_blink(s.blink_per_min) if s.blink_per_min is not None else _MISSING_SCORE,
        "gaze": score_gaze(s.gaze_jitter) if s.gaze_jitter is not None else _MISSING_SCORE,
        "head_pose": (
            score_head_pose(s.head.yaw, s.head.pitch) if s.head is not None else _MISSING_SCORE
        ),
        "smile": score_smile(s.smile) if s.smile is not None else _MISSING_SCORE,
    }
    overall = sum(scores[name] * weight for name, weight in _DELIVERY_WEIGHTS.items())
    return DeliveryScores(overall=overall, **scores)
