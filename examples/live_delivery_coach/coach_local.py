"""Live delivery coach on the local camera and microphone.

Pipeline:
  Camera       → FaceAnalysisLoop (MediaPipe Face Mesh, 12 fps) ┐
  Microphone   → AudioFeatureExtractor (RMS + pitch, 50 ms)     ├→ MetricsAggregator → console
  (--record)   → MediaRelay → MediaRecorder (session recording) ┘

Speech recognition is not wired here, so speaking rate, fillers and
emotions are reported as unavailable; see AnalyticsBridge for feeding
transcripts from a Vision-Agents STT plugin.

Run (Linux):
    python examples/live_delivery_coach/coach_local.py \\
        --video /dev/video0 --video-format v4l2 --audio default --audio-format alsa

Run (macOS):
    python examples/live_delivery_coach/coach_local.py \\
        --video "default:none" --video-format avfoundation \\
        --audio ":default" --audio-format avfoundation

Analyse a recording instead of live devices:
    python examples/live_delivery_coach/coach_local.py --video interview.mp4

Every AnalyticsConfig field can be set in the environment or a .env file,
e.g. DELIVERY_METRICS_FACE_FPS=8 or DELIVERY_METRICS_METRICS_HZ=5.
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from aiortc.contrib.media import MediaRecorder

from delivery_metrics import (
    AcquisitionError,
    AnalyticsConfig,
    MetricsAggregator,
    MetricsSnapshot,
    Notice,
    PlayerDevices,
    PlayerSource,
    SessionSummaryGenerator,
    score_delivery,
)

logger = logging.getLogger("coach_local")


def _format_snapshot(snap: MetricsSnapshot) -> str:
    scores = score_delivery(snap)
    parts = [f"t={snap.t_ms / 1000:6.1f}s", f"score={scores.overall:.2f}"]
    if snap.rms is not None:
        parts.append(f"rms={snap.rms:.3f} pitch={snap.pitch_hz or 0:5.1f}Hz")
    if snap.pause_ratio is not None:
        parts.append(f"pause={snap.pause_ratio:.2f}")
    if snap.head is not None:
        parts.append(
            f"yaw={snap.head.yaw:+5.1f} pitch={snap.head.pitch:+5.1f} "
            f"blink={snap.blink_per_min:.0f}/min smile={snap.smile:.2f} jitter={snap.gaze_jitter:.1f}"
        )
    return "  ".join(parts)


def _source(path: Optional[str], fmt: Optional[str]) -> Optional[PlayerSource]:
    if path is None:
        return None
    return PlayerSource(file=path, format=fmt)


async def _run(args: argparse.Namespace) -> int:
    config = AnalyticsConfig.from_env(env_file=args.env_file)
    sink = MediaRecorder(args.record) if args.record else None
    aggregator = MetricsAggregator(
        PlayerDevices(
            video=_source(args.video, args.video_format),
            audio=_source(args.audio, args.audio_format),
        ),
        config=config,
        sink=sink,
    )

    printed = 0

    def on_snapshot(snap: MetricsSnapshot) -> None:
        nonlocal printed
        # Console output once per second regardless of metrics_hz.
        if snap.t_ms // 1000 > printed:
            printed = snap.t_ms // 1000
            print(_format_snapshot(snap))

    def on_notice(notice: Notice) -> None:
        logger.warning("[%s] %s", notice.kind, notice.message)

    aggregator.subscribe(on_snapshot)
    aggregator.subscribe_notices(on_notice)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await aggregator.start()
    except AcquisitionError as exc:
        logger.error("Cannot open capture devices: %s", exc)
        return 1

    logger.info("Coaching started; press Ctrl-C to finish")
    try:
        if args.duration:
            await asyncio.wait_for(stop.wait(), timeout=args.duration)
        else:
            await stop.wait()
    except TimeoutError:
        pass
    finally:
        await aggregator.stop()

    generator = SessionSummaryGenerator()
    summary = aggregator.get_summary()
    report = generator.to_markdown(summary)
    print()
    print(report)

    if args.report_dir:
        out_dir = Path(args.report_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        stem = summary.started_at.replace(":", "-")
        (out_dir / f"{stem}.md").write_text(report, encoding="utf-8")
        (out_dir / f"{stem}.json").write_text(generator.to_json(summary), encoding="utf-8")
        (out_dir / f"{stem}.metrics.json").write_text(
            aggregator.get_metrics_dump().to_json(), encoding="utf-8"
        )
        logger.info("Session saved → %s", out_dir / stem)

    stats = aggregator.get_perf_stats()
    logger.info(
        "Face analysis %.1f fps (skipped %d frames), %d snapshots",
        stats["face_fps"],
        stats["face_frames_skipped"],
        stats["ticks"],
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Live delivery coach (local devices)")
    parser.add_argument("--video", default=None, help="Camera device, URL or media file")
    parser.add_argument("--video-format", default=None, help="FFmpeg input format for --video")
    parser.add_argument("--audio", default=None, help="Microphone device (defaults to --video's audio)")
    parser.add_argument("--audio-format", default=None, help="FFmpeg input format for --audio")
    parser.add_argument("--record", default=None, help="Record the session to this file")
    parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    parser.add_argument("--report-dir", default=None, help="Write Markdown/JSON reports here")
    parser.add_argument("--env-file", default=".env", help="dotenv file with DELIVERY_METRICS_* settings")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    if args.video is None and args.audio is None:
        parser.error("at least one of --video or --audio is required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
