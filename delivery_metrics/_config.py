"""Session configuration for the delivery metrics engine.

All rates, windows and heuristic constants live here so that no producer
carries magic numbers. Defaults match the values the live coaching UI was
tuned against; the geometric scale factors (jitter, yaw, pitch, smile) are
uncalibrated heuristics and should be treated as tunables, not physical units.
"""

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_FILLER_WORDS: tuple[str, ...] = (
    # Hesitation sounds
    "um", "uh", "er", "ah", "hmm",
    # Hedges
    "like", "kind of", "sort of", "you know", "i mean",
    # Overused intensifiers
    "actually", "literally", "basically", "honestly", "really",
    # Discourse markers
    "you see", "right", "okay", "so", "well",
    # Stalling phrases
    "let me think", "how do i say", "the thing is",
)

DEFAULT_EMOTION_MODEL = "SamLowe/roberta-base-go_emotions"


@dataclass(frozen=True)
class AnalyticsConfig:
    """Knobs for one metrics session.

    Attributes:
        face_fps: Target face analysis rate, independent of camera framerate.
        metrics_hz: Snapshot publication rate.
        pitch_min_hz: Lowest pitch searched by the autocorrelation.
        pitch_max_hz: Highest pitch searched by the autocorrelation.
        audio_frame_ms: Length of one analysed PCM frame.
        pitch_energy_ratio: Minimum correlation / frame energy for a pitch to count.
        rms_noise_floor: Loudness of room noise with nobody speaking.
        pause_threshold_multiplier: RMS below noise_floor * multiplier is a pause.
        wpm_window_s: Trailing window for speaking rate.
        pause_window_s: Trailing window for pause ratio.
        gaze_window_s: Trailing window for gaze jitter.
        blink_window_s: Trailing window for blink counting.
        history_cap: Maximum snapshots kept for the summary (oldest dropped).
        filler_words: Words and phrases counted as fillers.
        use_transcription: Wire the speech recognition source.
        use_emotion: Classify finalized transcript segments.
    """

    face_fps: float = 12.0
    metrics_hz: float = 10.0

    pitch_min_hz: float = 75.0
    pitch_max_hz: float = 400.0
    audio_frame_ms: float = 50.0
    pitch_energy_ratio: float = 0.3
    rms_noise_floor: float = 0.03
    pause_threshold_multiplier: float = 2.0

    wpm_window_s: float = 30.0
    pause_window_s: float = 10.0
    gaze_window_s: float = 5.0
    blink_window_s: float = 60.0
    history_cap: int = 18_000

    filler_words: tuple[str, ...] = DEFAULT_FILLER_WORDS
    use_transcription: bool = True
    use_emotion: bool = True

    # Face heuristics
    face_frame_width: int = 640
    face_frame_height: int = 480
    blink_ear_threshold: float = 0.25
    smile_mar_baseline: float = 3.0
    smile_mar_span: float = 2.0
    yaw_scale_deg: float = 45.0
    pitch_scale_deg: float = 30.0
    gaze_jitter_scale: float = 1000.0

    # Models and producers
    init_timeout_s: float = 30.0
    emotion_model: str = DEFAULT_EMOTION_MODEL
    emotion_threshold: float = 0.30
    emotion_top_k: int = 3
    transcription_max_restarts: int = 5
    transcription_restart_backoff_s: float = 0.5

    _filler_pattern: Optional[re.Pattern] = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        positive = {
            "face_fps": self.face_fps,
            "metrics_hz": self.metrics_hz,
            "audio_frame_ms": self.audio_frame_ms,
            "wpm_window_s": self.wpm_window_s,
            "pause_window_s": self.pause_window_s,
            "gaze_window_s": self.gaze_window_s,
            "blink_window_s": self.blink_window_s,
            "init_timeout_s": self.init_timeout_s,
            "smile_mar_span": self.smile_mar_span,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")
        if not 0 < self.pitch_min_hz < self.pitch_max_hz:
            raise ValueError(
                f"pitch band must satisfy 0 < min < max, got "
                f"{self.pitch_min_hz}-{self.pitch_max_hz}"
            )
        if self.history_cap < 1:
            raise ValueError(f"history_cap must be >= 1, got {self.history_cap}")
        if self.rms_noise_floor < 0 or self.pause_threshold_multiplier <= 0:
            raise ValueError("noise floor must be >= 0 and multiplier > 0")
        if self.face_frame_width < 1 or self.face_frame_height < 1:
            raise ValueError("face frame resolution must be positive")
        if not 0.0 <= self.emotion_threshold <= 1.0:
            raise ValueError(f"emotion_threshold must be in [0, 1], got {self.emotion_threshold}")
        if self.emotion_top_k < 0 or self.transcription_max_restarts < 0:
            raise ValueError("emotion_top_k and transcription_max_restarts must be >= 0")

        words = tuple(w.strip().lower() for w in self.filler_words if w and w.strip())
        object.__setattr__(self, "filler_words", words)
        object.__setattr__(self, "_filler_pattern", build_filler_pattern(words))

    @property
    def pause_threshold(self) -> float:
        """RMS level below which an audio frame counts as a pause."""
        return self.rms_noise_floor * self.pause_threshold_multiplier

    @property
    def tick_interval_s(self) -> float:
        return 1.0 / self.metrics_hz

    @property
    def face_interval_s(self) -> float:
        return 1.0 / self.face_fps

    @property
    def filler_pattern(self) -> Optional[re.Pattern]:
        """Compiled whole-word filler matcher, None when the list is empty."""
        return self._filler_pattern

    def replace(self, **changes) -> "AnalyticsConfig":
        """Return a validated copy with the given fields changed."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_env(
        cls,
        prefix: str = "DELIVERY_METRICS_",
        env_file: Optional[str] = None,
        **overrides,
    ) -> "AnalyticsConfig":
        """Build a config from environment variables.

        Every init field can be set as ``<PREFIX><FIELD_NAME_UPPER>``, e.g.
        ``DELIVERY_METRICS_FACE_FPS=8``. ``filler_words`` is comma-separated
        and booleans accept 1/0, true/false, yes/no. Explicit keyword
        overrides win over the environment.

        Args:
            prefix: Environment variable prefix.
            env_file: Optional .env file loaded first (existing vars win).
            **overrides: Field values that take precedence over the environment.

        Raises:
            ValueError: If a variable cannot be parsed or a value is invalid.
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)

        values: dict = {}
        for f in dataclasses.fields(cls):
            if not f.init:
                continue
            raw = os.getenv(prefix + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _parse_env_value(f.name, f.default, raw)

        values.update(overrides)
        if values:
            logger.debug("AnalyticsConfig overrides: %s", sorted(values))
        return cls(**values)


def build_filler_pattern(words: tuple[str, ...]) -> Optional[re.Pattern]:
    """Compile a case-insensitive whole-word matcher for filler words/phrases.

    Longer phrases are tried first so 'you know' is one match, not a
    partial one. Internal whitespace matches any run of spaces.
    """
    if not words:
        return None
    ordered = sorted(set(words), key=lambda w: (-len(w), w))
    alternatives = [r"\s+".join(re.escape(part) for part in w.split()) for w in ordered]
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b", re.IGNORECASE)


def _parse_env_value(name: str, default, raw: str):
    raw = raw.strip()
    try:
        if isinstance(default, bool):
            lowered = raw.lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, tuple):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
    except ValueError:
        raise ValueError(f"Cannot parse environment value for {name}: {raw!r}") from None
    return raw
