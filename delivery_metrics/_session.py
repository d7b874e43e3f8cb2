"""Per-session state owned by the MetricsAggregator.

A Session is created on start() and replaced on the next start(). Only
the aggregator's tick appends to the history; the transcription adapter
writes the transcript state from the same event loop.
"""

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Optional

from ._buffers import RollingWindow
from ._config import AnalyticsConfig
from ._transcription import TranscriptState
from ._types import MetricsSnapshot


class Session:
    """Start/end times, bounded snapshot history and running accumulators.

    Args:
        config: Configuration the session was started with.
        start: Monotonic start time.
        started_at: Wall-clock start time; defaults to now (UTC).
    """

    def __init__(
        self,
        config: AnalyticsConfig,
        start: float,
        started_at: Optional[datetime] = None,
    ) -> None:
        self.config = config
        self.start = start
        self.started_at = started_at or datetime.now(timezone.utc)
        self.end: Optional[float] = None

        self.history: deque[MetricsSnapshot] = deque(maxlen=config.history_cap)
        self.transcript = TranscriptState(config.wpm_window_s)
        self.rms_window: RollingWindow[float] = RollingWindow(config.pause_window_s)
        self.degraded: set[str] = set()

    @property
    def ended(self) -> bool:
        return self.end is not None

    @property
    def filler_count(self) -> int:
        return self.transcript.filler_count

    def finish(self, now: float) -> None:
        if self.end is None:
            self.end = now

    def elapsed_s(self, now: float) -> float:
        """Seconds since start, frozen at the end time once finished."""
        end = self.end if self.end is not None else now
        return max(end - self.start, 0.0)

    def elapsed_ms(self, now: float) -> int:
        return int(round(self.elapsed_s(now) * 1000.0))

    def ended_at(self, now: float) -> datetime:
        return self.started_at + timedelta(seconds=self.elapsed_s(now))

    def record(self, snapshot: MetricsSnapshot) -> None:
        """Append a snapshot; the oldest is dropped once the cap is reached."""
        self.history.append(snapshot)

    def fillers_per_min(self, now: float) -> float:
        minutes = self.elapsed_s(now) / 60.0
        return self.transcript.filler_count / minutes if minutes > 0 else 0.0
