"""Composition of one MetricsSnapshot from the producers' latest values.

Every tick the aggregator reads the single-slot caches of the audio, face
and emotion producers without waiting, then derives the windowed metrics:

    wpm              finalized words timestamped in the trailing window,
                     times 60 / window seconds
    pause_ratio      fraction of loudness samples in the trailing pause
                     window below noise_floor * multiplier
    fillers_per_min  cumulative filler count / elapsed session minutes

Fields are left None when the degradation policy drops their modality or
the producer has never written a value.
"""

from typing import Optional

from ._config import AnalyticsConfig
from ._degradation import DegradationPolicy
from ._session import Session
from ._types import AudioFrameResult, EmotionScore, FaceFrameResult, HeadPose, MetricsSnapshot


class SnapshotComposer:
    """Builds snapshots for one session configuration.

    Args:
        config: Session configuration (windows and pause threshold).
    """

    def __init__(self, config: AnalyticsConfig) -> None:
        self._config = config

    def pause_ratio(self, session: Session, now: float) -> Optional[float]:
        window = session.rms_window
        window.evict(now)
        values = window.values()
        if not values:
            return None
        threshold = self._config.pause_threshold
        return sum(1 for v in values if v < threshold) / len(values)

    def wpm(self, session: Session, now: float) -> float:
        words = session.transcript.word_times
        words.evict(now)
        return len(words) * (60.0 / self._config.wpm_window_s)

    def compose(
        self,
        session: Session,
        now: float,
        policy: DegradationPolicy,
        audio: Optional[AudioFrameResult] = None,
        face: Optional[FaceFrameResult] = None,
        emotions: Optional[list[EmotionScore]] = None,
    ) -> MetricsSnapshot:
        """Assemble the snapshot for the tick at ``now``.

        Side effect: the latest loudness value is added to the session's
        pause window.
        """
        snap = MetricsSnapshot(t_ms=session.elapsed_ms(now))

        if policy.allows("rms"):
            if audio is not None:
                snap.rms = audio.rms
                snap.pitch_hz = audio.pitch_hz
                session.rms_window.append(now, audio.rms)
            snap.pause_ratio = self.pause_ratio(session, now)

        if policy.allows("wpm"):
            transcript = session.transcript
            snap.wpm = self.wpm(session, now)
            snap.fillers_per_min = session.fillers_per_min(now)
            snap.transcript_partial = transcript.interim
            snap.transcript_final = transcript.final_text

        if policy.allows("head") and face is not None:
            snap.head = HeadPose(yaw=face.yaw, pitch=face.pitch)
            snap.gaze_jitter = face.gaze_jitter
            snap.smile = face.smile
            snap.blink_per_min = face.blink_per_min

        if policy.allows("emotions") and emotions:
            snap.emotions = list(emotions)

        return snap
