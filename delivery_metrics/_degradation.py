"""Graceful degradation policy for partial modality availability.

When a modality is unavailable (no microphone, no camera) or a producer
fails permanently (speech recognition gave up, emotion model failed to
load), this module decides which snapshot field groups are still
produced and what to tell the caller, rather than failing the session or
silently emitting misleading values.
"""

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

AUDIO_FIELDS = ("pitch_hz", "rms", "pause_ratio")
TRANSCRIPT_FIELDS = ("wpm", "fillers_per_min", "transcript_partial", "transcript_final")
FACE_FIELDS = ("head", "gaze_jitter", "smile", "blink_per_min")
EMOTION_FIELDS = ("emotions",)


@dataclass
class ModalityAvailability:
    """Flags indicating which modalities are currently usable.

    Attributes:
        audio: A microphone track is being received.
        video: A camera track is being received and the face worker is up.
        transcription: Speech recognition is wired and has not given up.
        emotion: Emotion classification is enabled and has not failed.
    """

    audio: bool = True
    video: bool = True
    transcription: bool = True
    emotion: bool = True

    def degraded(self) -> list[str]:
        """Names of the modalities that are unavailable."""
        return [name for name, ok in vars(self).items() if not ok]


@dataclass
class DegradationPolicy:
    """Snapshot policy derived from current modality availability.

    Attributes:
        active_fields: Snapshot fields that can carry values.
        degraded: Unavailable modalities.
        warnings: Human-readable descriptions of active degradations.
    """

    active_fields: list[str]
    degraded: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def warning_message(self) -> str:
        """Concatenated warning summary for logging."""
        return "; ".join(self.warnings) if self.warnings else "All modalities nominal"

    def allows(self, field_name: str) -> bool:
        return field_name in self.active_fields


class GracefulDegradationEngine:
    """Evaluates modality availability and produces a DegradationPolicy.

    Decision tree:
        - No audio                 → loudness/pitch/pause dropped
        - No transcription         → wpm/fillers/transcript dropped
        - No transcription or
          no emotion               → emotions dropped
        - No video                 → blink/smile/gaze/head dropped
        - Nothing left             → explicit "no signals" warning

    Transcription does not depend on the audio track: the speech source
    may be fed by an external recognizer.

    Usage::

        engine = GracefulDegradationEngine()
        policy = engine.evaluate(ModalityAvailability(video=False))
        for warning in policy.warnings:
            notify(warning)
    """

    def evaluate(self, availability: ModalityAvailability) -> DegradationPolicy:
        """Derive a degradation policy from current availability.

        Args:
            availability: Which modalities are currently usable.

        Returns:
            DegradationPolicy listing active fields and warnings.
        """
        active: list[str] = []
        warnings: list[str] = []

        if availability.audio:
            active += AUDIO_FIELDS
        else:
            warnings.append("Microphone unavailable; loudness, pitch and pause metrics dropped")

        if availability.transcription:
            active += TRANSCRIPT_FIELDS
            if availability.emotion:
                active += EMOTION_FIELDS
            else:
                warnings.append("Emotion classification unavailable; emotions dropped")
        else:
            warnings.append(
                "Speech recognition unavailable; speaking rate, fillers and transcript dropped"
            )

        if availability.video:
            active += FACE_FIELDS
        else:
            warnings.append("Camera unavailable; blink, smile, gaze and head pose dropped")

        if not active:
            warnings.append("No modality available; snapshots carry only elapsed time")

        if warnings:
            logger.warning("Degradation active: %s", "; ".join(warnings))

        return DegradationPolicy(
            active_fields=active,
            degraded=availability.degraded(),
            warnings=warnings,
        )
