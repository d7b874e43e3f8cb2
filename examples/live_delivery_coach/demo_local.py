"""Local demo for the delivery metrics engine: no camera, microphone or API keys.

Runs a real MetricsAggregator for 20 seconds on synthetic inputs:
  • microphone : a 140 Hz voiced tone gated into speech bursts and pauses
  • camera     : blank frames; a scripted landmark model stands in for
                 MediaPipe, blinking every 3 s and slowly turning the head
  • recognizer : scripted interim/final phrases containing filler words

Once per second it prints the live snapshot with its delivery scores, then
the degradation scenarios, the latency report and the end-of-session
summary (JSON + Markdown).

Set DELIVERY_METRICS_USE_EMOTION=true to also classify emotions with the
GoEmotions model (downloaded from the Hugging Face hub on first use).

Run:
    python examples/live_delivery_coach/demo_local.py
"""

import asyncio
import fractions
import json
import math
import os
import time

import av
import numpy as np
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

from delivery_metrics import (
    AnalyticsConfig,
    GracefulDegradationEngine,
    LatestValue,
    MediaStreams,
    MetricsAggregator,
    MetricsSnapshot,
    ModalityAvailability,
    Notice,
    QueueSpeechSource,
    SessionSummaryGenerator,
    score_delivery,
)

_DURATION_S = 20
_AUDIO_PTIME = 0.02
_VIDEO_FPS = 15

# ── Colour helpers ────────────────────────────────────────────────────────────

RESET = "\033[0m"
BOLD = "\033[1m"
RED = "\033[31m"
YELLOW = "\033[33m"
GREEN = "\033[32m"
CYAN = "\033[36m"
MAGENTA = "\033[35m"
DIM = "\033[2m"


def _c(text: str, colour: str) -> str:
    return f"{colour}{text}{RESET}"


def _bar(score: float, width: int = 20) -> str:
    """Score bar; green is good delivery."""
    filled = int(score * width)
    bar = "█" * filled + "░" * (width - filled)
    if score >= 0.70:
        colour = GREEN
    elif score >= 0.40:
        colour = YELLOW
    else:
        colour = RED
    return f"{colour}{bar}{RESET} {score:.2f}"


# ── Synthetic devices ─────────────────────────────────────────────────────────


class SyntheticMicrophone(MediaStreamTrack):
    """20 ms s16 mono frames paced in real time: 2.5 s of voice, 0.8 s pause."""

    kind = "audio"

    def __init__(self, sample_rate: int = 16_000, pitch_hz: float = 140.0) -> None:
        super().__init__()
        self._sample_rate = sample_rate
        self._pitch_hz = pitch_hz
        self._samples = int(sample_rate * _AUDIO_PTIME)
        self._rng = np.random.default_rng(7)
        self._pts = 0
        self._start: float | None = None

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        if self._start is None:
            self._start = time.time()
        else:
            wait = self._start + self._pts / self._sample_rate - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        t = (self._pts + np.arange(self._samples)) / self._sample_rate
        speaking = (t % 3.3) < 2.5
        voice = 0.3 * np.sin(2 * np.pi * self._pitch_hz * t) * speaking
        noise = 0.005 * self._rng.standard_normal(self._samples)
        pcm = np.clip((voice + noise) * 32767, -32768, 32767).astype(np.int16).reshape(1, -1)

        frame = av.AudioFrame.from_ndarray(pcm, format="s16", layout="mono")
        frame.sample_rate = self._sample_rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, self._sample_rate)
        self._pts += self._samples
        return frame


class SyntheticCamera(MediaStreamTrack):
    """Blank 640x480 frames at a fixed rate."""

    kind = "video"

    def __init__(self) -> None:
        super().__init__()
        self._frames = 0
        self._start: float | None = None
        self._blank = np.zeros((480, 640, 3), dtype=np.uint8)

    async def recv(self) -> av.VideoFrame:
        if self.readyState != "live":
            raise MediaStreamError
        if self._start is None:
            self._start = time.time()
        else:
            wait = self._start + self._frames / _VIDEO_FPS - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        frame = av.VideoFrame.from_ndarray(self._blank, format="rgb24")
        frame.pts = self._frames
        frame.time_base = fractions.Fraction(1, _VIDEO_FPS)
        self._frames += 1
        return frame


class SyntheticDevices:
    async def acquire(self) -> MediaStreams:
        return MediaStreams(audio=SyntheticMicrophone(), video=SyntheticCamera())


class ScriptedFaceModel:
    """Stands in for the Face Mesh model with a face that blinks and turns."""

    def __init__(self) -> None:
        self._t0 = time.monotonic()
        self._rng = np.random.default_rng(11)

    def detect(self, rgb: np.ndarray) -> np.ndarray:
        t = time.monotonic() - self._t0
        eye_open = 3.0 if (t % 3.0) < 0.25 else 14.0
        nose_dx = 25.0 * math.sin(t / 4.0)
        mouth_height = 20.0 - 8.0 * (0.5 + 0.5 * math.sin(t / 3.0))
        jitter = self._rng.uniform(-2.0, 2.0, size=2)

        lm = np.zeros((468, 2), dtype=np.float64)
        half = eye_open / 2.0
        for corner_l, top1, top2, corner_r, bot2, bot1, x0 in (
            (33, 160, 158, 133, 153, 144, 270.0),
            (362, 385, 387, 263, 373, 380, 370.0),
        ):
            x0 += jitter[0]
            y0 = 200.0 + jitter[1]
            lm[corner_l] = (x0, y0)
            lm[corner_r] = (x0 + 40.0, y0)
            lm[top1] = (x0 + 10.0, y0 - half)
            lm[bot1] = (x0 + 10.0, y0 + half)
            lm[top2] = (x0 + 30.0, y0 - half)
            lm[bot2] = (x0 + 30.0, y0 + half)
        lm[61] = (290.0, 300.0)
        lm[291] = (350.0, 300.0)
        lm[0] = (320.0, 300.0 - mouth_height / 2.0)
        lm[17] = (320.0, 300.0 + mouth_height / 2.0)
        lm[1] = (320.0 + nose_dx, 250.0)
        lm[6] = (320.0, 232.0)
        return lm

    def close(self) -> None:
        pass


# ── Scripted speech ───────────────────────────────────────────────────────────

_SCRIPT = [
    "So um thanks for having me today",
    "I have been working on real time video systems for about five years",
    "Basically my last project was uh a live coaching tool",
    "It measured you know speaking rate and eye contact",
    "The hardest part was actually keeping latency under a hundred milliseconds",
    "I think the thing is you have to drop frames rather than queue them",
]


async def _speak(source: QueueSpeechSource) -> None:
    for phrase in _SCRIPT:
        words = phrase.split()
        await asyncio.sleep(1.0)
        source.push_interim(" ".join(words[: len(words) // 2]))
        await asyncio.sleep(1.5)
        source.push_final(phrase)


# ── Output ────────────────────────────────────────────────────────────────────


def _print_snapshot(second: int, snap: MetricsSnapshot | None) -> None:
    if snap is None:
        print(f"{DIM}t={second:>3}s  waiting for the first snapshot...{RESET}")
        return
    scores = score_delivery(snap)
    print(f"{BOLD}t={second:>3}s{RESET}  overall {_bar(scores.overall)}")
    print(
        f"  speech  wpm={snap.wpm or 0:5.1f}  pitch={snap.pitch_hz or 0:5.1f}Hz  "
        f"rms={snap.rms or 0:.3f}  pause={snap.pause_ratio or 0:.2f}  "
        f"fillers={snap.fillers_per_min or 0:.1f}/min"
    )
    if snap.head is not None:
        print(
            f"  face    yaw={snap.head.yaw:+5.1f}°  pitch={snap.head.pitch:+5.1f}°  "
            f"blink={snap.blink_per_min or 0:.0f}/min  smile={snap.smile or 0:.2f}  "
            f"jitter={snap.gaze_jitter or 0:.1f}"
        )
    if snap.emotions:
        labels = ", ".join(f"{e.label} {e.score:.2f}" for e in snap.emotions)
        print(f"  emotion {_c(labels, MAGENTA)}")
    if snap.transcript_partial:
        print(f"  {DIM}… {snap.transcript_partial}{RESET}")


def _print_notice(notice: Notice) -> None:
    colour = YELLOW if notice.kind == "degradation" else RED
    print(f"  {_c(f'[{notice.kind}]', colour)} {notice.message}")


def _print_degradation_scenarios() -> None:
    print(f"\n{BOLD}{YELLOW}{'─' * 66}{RESET}")
    print(f"{BOLD}{YELLOW}  Graceful Degradation Scenarios{RESET}")
    print(f"{BOLD}{YELLOW}{'─' * 66}{RESET}")
    engine = GracefulDegradationEngine()
    scenarios = [
        ("All modalities", ModalityAvailability()),
        ("No camera", ModalityAvailability(video=False)),
        ("Recognizer gave up", ModalityAvailability(transcription=False)),
        ("Emotion model failed", ModalityAvailability(emotion=False)),
        ("Nothing available", ModalityAvailability(False, False, False, False)),
    ]
    for label, availability in scenarios:
        policy = engine.evaluate(availability)
        active = len(policy.active_fields)
        colour = GREEN if active >= 10 else YELLOW if active else RED
        print(f"  {label:<24} active fields={_c(str(active), colour)}")
        if policy.warnings:
            print(f"    {DIM}↳ {policy.warnings[0]}{RESET}")
    print()


async def main() -> None:
    os.environ.setdefault("DELIVERY_METRICS_USE_EMOTION", "false")
    config = AnalyticsConfig.from_env()

    print(f"\n{BOLD}{CYAN}{'═' * 66}{RESET}")
    print(f"{BOLD}{CYAN}  Delivery Metrics: Local Demo ({_DURATION_S}s synthetic session){RESET}")
    print(f"{BOLD}{CYAN}{'═' * 66}{RESET}\n")

    speech = QueueSpeechSource()
    aggregator = MetricsAggregator(
        SyntheticDevices(),
        config=config,
        speech_source=speech,
        landmark_model_factory=ScriptedFaceModel,
    )
    latest: LatestValue[MetricsSnapshot] = LatestValue()
    aggregator.subscribe(latest.set)
    aggregator.subscribe_notices(_print_notice)

    async with aggregator:
        speaker = asyncio.create_task(_speak(speech))
        for second in range(1, _DURATION_S + 1):
            await asyncio.sleep(1.0)
            _print_snapshot(second, latest.get())
        speaker.cancel()
        perf = aggregator.get_perf_stats()

    _print_degradation_scenarios()

    # ── Latency stats ─────────────────────────────────────────────────────────
    print(f"\n{BOLD}{CYAN}{'─' * 66}{RESET}")
    print(f"{BOLD}{CYAN}  Latency Budget Report{RESET}")
    print(f"{BOLD}{CYAN}{'─' * 66}{RESET}")
    print(
        f"  face analysis {perf['face_fps']:.1f} fps  "
        f"(processed={perf['face_frames_processed']}, skipped={perf['face_frames_skipped']})  "
        f"audio frames={perf['audio_frames_analysed']}  ticks={perf['ticks']}"
    )
    for stage, stats in perf["latency"].items():
        mean = stats["mean_ms"]
        colour = GREEN if mean < 5 else YELLOW if mean < 50 else RED
        print(
            f"  {stage:<24} mean={_c(f'{mean:.2f}ms', colour)}  "
            f"p95={stats['p95_ms']:.2f}ms  n={int(stats['count'])}"
        )
    print()

    # ── Session summary ───────────────────────────────────────────────────────
    generator = SessionSummaryGenerator()
    summary = aggregator.get_summary()

    print(f"\n{BOLD}{DIM}{'─' * 66}{RESET}")
    print(f"{BOLD}{DIM}  JSON summary (speech block):{RESET}")
    print(f"{BOLD}{DIM}{'─' * 66}{RESET}")
    parsed = json.loads(generator.to_json(summary))
    subset = {
        k: parsed[k]
        for k in ("duration_s", "total_data_points", "wpm", "pitch_hz", "total_filler_count", "fillers_per_min")
    }
    print(json.dumps(subset, indent=2))

    print(f"\n{BOLD}{DIM}{'─' * 66}{RESET}")
    print(f"{BOLD}{DIM}  Markdown report:{RESET}")
    print(f"{BOLD}{DIM}{'─' * 66}{RESET}")
    for line in generator.to_markdown(summary).split("\n"):
        print(f"  {DIM}{line}{RESET}")

    dump = aggregator.get_metrics_dump()
    print(f"\n{BOLD}{GREEN}{'═' * 66}{RESET}")
    print(f"{BOLD}{GREEN}  {len(dump.metrics)} snapshots recorded, {dump.started_at} → {dump.ended_at}{RESET}")
    print(f"{BOLD}{GREEN}  Unit and end-to-end tests: pytest tests/ -q{RESET}")
    print(f"{BOLD}{GREEN}{'═' * 66}{RESET}\n")


if __name__ == "__main__":
    asyncio.run(main())
