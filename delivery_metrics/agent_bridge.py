"""AnalyticsBridge: runs a MetricsAggregator inside a Vision-Agents agent.

- Candidate STT partial/final transcripts feed the aggregator's speech
  source, so speaking rate, fillers and emotions come from the agent's
  STT plugin.
- Every snapshot is re-emitted on the agent event bus as a
  MetricsSnapshotEvent (with the weighted delivery score attached),
  notices as DeliveryNoticeEvent, and the final summary as
  DeliverySummaryEvent when the bridge stops.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from vision_agents.core.processors import Processor
from vision_agents.core.stt.events import (
    STTErrorEvent,
    STTPartialTranscriptEvent,
    STTTranscriptEvent,
)

from ._errors import DeliveryMetricsError
from ._scorer import score_delivery
from ._transcription import QueueSpeechSource
from ._types import MetricsSnapshot, Notice
from .controller import AggregatorState, MetricsAggregator
from .events import DeliveryNoticeEvent, DeliverySummaryEvent, MetricsSnapshotEvent

if TYPE_CHECKING:
    from vision_agents.core.agents import Agent

logger = logging.getLogger(__name__)


class AnalyticsBridge(Processor):
    """Bridges agent STT events into a MetricsAggregator and its output back.

    Args:
        aggregator: Aggregator created with ``speech_source=speech_source``.
        speech_source: Queue the bridge pushes transcripts into.
        candidate_user_id: Participant whose speech is analysed. If None,
            every participant other than the agent is treated as the candidate.

    Raises:
        ValueError: If aggregator or speech_source is None.
    """

    name = "delivery_metrics"

    def __init__(
        self,
        aggregator: MetricsAggregator,
        speech_source: QueueSpeechSource,
        candidate_user_id: Optional[str] = None,
    ) -> None:
        if aggregator is None or speech_source is None:
            raise ValueError("aggregator and speech_source must not be None")
        self._aggregator = aggregator
        self._source = speech_source
        self._candidate_user_id = candidate_user_id
        self._agent: "Agent | None" = None
        self._unsubscribe: list[Callable[[], None]] = []

    def _is_candidate(self, user_id: Optional[str]) -> bool:
        if user_id is None:
            return False
        if self._candidate_user_id is not None:
            return user_id == self._candidate_user_id
        return self._agent is None or user_id != self._agent.agent_user.id

    def attach_agent(self, agent: "Agent") -> None:
        """Register emitted events and subscribe to STT events."""
        self._agent = agent
        agent.events.register(MetricsSnapshotEvent)
        agent.events.register(DeliveryNoticeEvent)
        agent.events.register(DeliverySummaryEvent)

        @agent.events.subscribe
        async def on_partial(event: STTPartialTranscriptEvent):
            if self._is_candidate(event.user_id()):
                self._source.push_interim(event.text)

        @agent.events.subscribe
        async def on_transcript(event: STTTranscriptEvent):
            if self._is_candidate(event.user_id()):
                self._source.push_final(event.text)

        @agent.events.subscribe
        async def on_stt_error(event: STTErrorEvent):
            if not self._is_candidate(event.user_id()):
                return
            code = getattr(event, "error_code", None) or "stt-error"
            self._source.push_error(str(code), str(getattr(event, "error", "") or ""))

        self._unsubscribe = [
            self._aggregator.subscribe(self._emit_snapshot),
            self._aggregator.subscribe_notices(self._emit_notice),
        ]
        logger.info("AnalyticsBridge attached (candidate_user_id=%s)", self._candidate_user_id)

    async def start(self) -> None:
        await self._aggregator.start()

    async def stop(self) -> None:
        """Stop the aggregator and emit the session summary."""
        if self._aggregator.state is AggregatorState.IDLE:
            return
        await self._aggregator.stop()
        self._emit_summary()

    async def close(self) -> None:
        await self.stop()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def _emit_snapshot(self, snap: MetricsSnapshot) -> None:
        if self._agent is None:
            return
        self._agent.events.send(
            MetricsSnapshotEvent(
                plugin_name=self.name,
                t_ms=snap.t_ms,
                wpm=snap.wpm,
                pitch_hz=snap.pitch_hz,
                rms=snap.rms,
                pause_ratio=snap.pause_ratio,
                fillers_per_min=snap.fillers_per_min,
                head_yaw=snap.head.yaw if snap.head else None,
                head_pitch=snap.head.pitch if snap.head else None,
                gaze_jitter=snap.gaze_jitter,
                smile=snap.smile,
                blink_per_min=snap.blink_per_min,
                transcript_partial=snap.transcript_partial,
                emotions=[{"label": e.label, "score": e.score} for e in snap.emotions or ()],
                delivery_score=round(score_delivery(snap).overall, 4),
            )
        )

    def _emit_notice(self, notice: Notice) -> None:
        if self._agent is None:
            return
        self._agent.events.send(
            DeliveryNoticeEvent(
                plugin_name=self.name,
                kind=notice.kind,
                message=notice.message,
                t_ms=notice.t_ms,
            )
        )

    def _emit_summary(self) -> None:
        if self._agent is None:
            return
        try:
            s = self._aggregator.get_summary()
        except DeliveryMetricsError:
            logger.debug("Session summary skipped: no session recorded")
            return
        self._agent.events.send(
            DeliverySummaryEvent(
                plugin_name=self.name,
                duration_s=s.duration_s,
                total_data_points=s.total_data_points,
                mean_wpm=s.wpm.mean if s.wpm else None,
                mean_pitch_hz=s.pitch_hz.mean if s.pitch_hz else None,
                mean_pause_pct=s.pause_ratio_pct.mean if s.pause_ratio_pct else None,
                fillers_per_min=s.fillers_per_min,
                total_filler_count=s.total_filler_count,
                mean_blink_per_min=s.blink_per_min.mean if s.blink_per_min else None,
                mean_gaze_jitter=s.gaze_jitter.mean if s.gaze_jitter else None,
                word_count=s.word_count,
                degraded=s.degraded,
            )
        )
