"""Multi-label emotion classification of finalized transcript segments.

The GoEmotions text-classification model is loaded lazily, on the first
segment that needs it, behind a single-initialization lock:

    UNINITIALIZED -> LOADING -> READY
                             -> FAILED   (terminal for the classifier)

Classification runs in a worker thread. submit() returns immediately; the
result replaces ``latest`` when it completes, unless a newer segment's
result has already been applied.
"""

import asyncio
import enum
import logging
from typing import Any, Callable, Optional

from ._buffers import LatestValue
from ._config import DEFAULT_EMOTION_MODEL
from ._tasks import cancel_and_wait
from ._telemetry import LatencyTracker
from ._types import EmotionScore

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[str], Callable[[str], Any]]

_WARMUP_TEXT = "ok"


class EmotionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def transformers_pipeline_factory(model: str) -> Callable[[str], Any]:
    """Build a Hugging Face text-classification pipeline returning all labels."""
    from transformers import pipeline

    return pipeline("text-classification", model=model, top_k=None)


def select_emotions(scores: list[EmotionScore], threshold: float, top_k: int) -> list[EmotionScore]:
    """Labels scoring at or above ``threshold``, padded up to ``top_k`` labels.

    The result is sorted by descending score.
    """
    ranked = sorted(scores, key=lambda s: s.score, reverse=True)
    above = sum(1 for s in ranked if s.score >= threshold)
    return ranked[: max(above, top_k)]


def _to_scores(raw: Any) -> list[EmotionScore]:
    # A single string may come back as [[{...}, ...]] depending on the
    # transformers version.
    if raw and isinstance(raw[0], list):
        raw = raw[0]
    return [EmotionScore(label=str(item["label"]), score=float(item["score"])) for item in raw]


class EmotionClassifier:
    """Lazily loaded GoEmotions classifier with non-blocking submission.

    Args:
        model: Hugging Face model id.
        threshold: Minimum score for a label to be reported.
        top_k: Minimum number of labels reported.
        pipeline_factory: Builds the callable pipeline for ``model``. Defaults
            to transformers_pipeline_factory.
        load_timeout_s: Bound on model load + warm-up.
        latency: Optional tracker for the load and classification stages.
        on_failed: Called once with a reason if the model fails to load.
    """

    def __init__(
        self,
        model: str = DEFAULT_EMOTION_MODEL,
        threshold: float = 0.30,
        top_k: int = 3,
        pipeline_factory: Optional[PipelineFactory] = None,
        load_timeout_s: float = 30.0,
        latency: Optional[LatencyTracker] = None,
        on_failed: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._model = model
        self._threshold = threshold
        self._top_k = top_k
        self._factory = pipeline_factory or transformers_pipeline_factory
        self._load_timeout_s = load_timeout_s
        self._latency = latency
        self._on_failed = on_failed

        self._state = EmotionState.UNINITIALIZED
        self._init_lock = asyncio.Lock()
        self._pipe: Optional[Callable[[str], Any]] = None

        self.latest: LatestValue[list[EmotionScore]] = LatestValue()
        self._submitted = 0
        self._applied = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> EmotionState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _load(self) -> Callable[[str], Any]:
        pipe = self._factory(self._model)
        pipe(_WARMUP_TEXT)
        return pipe

    async def ensure_ready(self) -> bool:
        """Load the model once. Returns True when it is usable."""
        if self._state is EmotionState.READY:
            return True
        if self._state is EmotionState.FAILED:
            return False

        async with self._init_lock:
            if self._state is not EmotionState.UNINITIALIZED:
                return self._state is EmotionState.READY
            self._state = EmotionState.LOADING
            logger.info("Loading emotion model %s", self._model)
            loop = asyncio.get_running_loop()
            started = loop.time()
            try:
                self._pipe = await asyncio.wait_for(
                    asyncio.to_thread(self._load), timeout=self._load_timeout_s
                )
            except TimeoutError:
                self._fail(f"emotion model load exceeded {self._load_timeout_s:.1f}s")
                return False
            except Exception as exc:
                logger.exception("Emotion model failed to load")
                self._fail(f"emotion model failed to load: {exc}")
                return False

            if self._latency is not None:
                self._latency.record("emotion_model_load", (loop.time() - started) * 1000.0)
            self._state = EmotionState.READY
            logger.info("Emotion model ready")
            return True

    def _fail(self, reason: str) -> None:
        self._state = EmotionState.FAILED
        logger.warning("Emotion classification disabled: %s", reason)
        if self._on_failed is not None:
            self._on_failed(reason)

    def _run_pipe(self, text: str) -> Any:
        assert self._pipe is not None
        if self._latency is None:
            return self._pipe(text)
        with self._latency.measure("emotion_classification"):
            return self._pipe(text)

    async def classify(self, text: str) -> Optional[list[EmotionScore]]:
        """Classify one segment.

        Returns:
            Selected emotions, or None for empty text or an unusable model.
        """
        text = text.strip()
        if not text:
            return None
        if not await self.ensure_ready():
            return None
        raw = await asyncio.to_thread(self._run_pipe, text)
        return select_emotions(_to_scores(raw), self._threshold, self._top_k)

    def submit(self, text: str) -> Optional[asyncio.Task]:
        """Classify ``text`` in the background; never blocks the caller."""
        if self._state is EmotionState.FAILED or not text.strip():
            return None
        self._submitted += 1
        task = asyncio.create_task(
            self._classify_latest(text, self._submitted), name="emotion_classification"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _classify_latest(self, text: str, seq: int) -> None:
        try:
            result = await self.classify(text)
        except Exception:
            logger.exception("Emotion classification failed; keeping previous result")
            return
        if result is None:
            return
        if seq < self._applied:
            logger.debug("Dropping stale emotion result #%d (applied #%d)", seq, self._applied)
            return
        self._applied = seq
        self.latest.set(result)

    async def wait_pending(self) -> None:
        """Wait for every submitted classification to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding classifications. The loaded model is kept."""
        for task in list(self._tasks):
            await cancel_and_wait(task)
        self._tasks.clear()
