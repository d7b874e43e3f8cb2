"""Continuous speech recognition wrapper.

A SpeechSource yields interim and final RecognitionResults from an async
iterator. TranscriptionAdapter consumes it for the lifetime of a session:

- interim text replaces ``TranscriptState.interim`` (display only)
- final text is appended to the transcript, every word is timestamped for
  the speaking-rate window, and filler words are counted
- when the source ends or fails while the session is active it is
  restarted with exponential backoff, up to ``transcription_max_restarts``
  consecutive failures; receiving a result resets the budget
- the benign ``no-speech`` error only triggers a quiet restart
"""

import asyncio
import logging
import re
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Protocol, Union

from ._buffers import RollingWindow
from ._config import AnalyticsConfig
from ._errors import SpeechRecognitionError
from ._tasks import cancel_and_wait

logger = logging.getLogger(__name__)

_MAX_BACKOFF_S = 8.0


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    is_final: bool


class SpeechSource(Protocol):
    """Streaming recognizer configured for interim + final results.

    ``stream()`` returns a fresh iterator each time it is called. Ending the
    iterator means the recognizer stopped; raising SpeechRecognitionError
    reports a recognizer error.
    """

    def stream(self) -> AsyncIterator[RecognitionResult]: ...


class _EndOfStream:
    pass


_END = _EndOfStream()
_QueueItem = Union[RecognitionResult, SpeechRecognitionError, _EndOfStream]


class QueueSpeechSource:
    """SpeechSource fed by pushing results from another component.

    Used to plug an external speech-to-text service (for example a
    Vision-Agents STT plugin) into the adapter, and by tests to script
    recognizer behaviour.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[_QueueItem] = asyncio.Queue()

    def push_interim(self, text: str) -> None:
        self._queue.put_nowait(RecognitionResult(text=text, is_final=False))

    def push_final(self, text: str) -> None:
        self._queue.put_nowait(RecognitionResult(text=text, is_final=True))

    def push_error(self, code: str, message: str = "") -> None:
        self._queue.put_nowait(SpeechRecognitionError(code, message))

    def end(self) -> None:
        """End the current stream, as a recognizer that stopped on its own."""
        self._queue.put_nowait(_END)

    async def stream(self) -> AsyncIterator[RecognitionResult]:
        while True:
            item = await self._queue.get()
            if isinstance(item, _EndOfStream):
                return
            if isinstance(item, SpeechRecognitionError):
                raise item
            yield item


def count_fillers(text: str, pattern: Optional[re.Pattern]) -> int:
    """Count non-overlapping whole-word filler matches in ``text``."""
    if pattern is None or not text:
        return 0
    return sum(1 for _ in pattern.finditer(text))


class TranscriptState:
    """Transcript accumulated over one session.

    Args:
        wpm_window_s: Horizon of the per-word timestamp window.
    """

    def __init__(self, wpm_window_s: float) -> None:
        self.interim: Optional[str] = None
        self.segments: list[str] = []
        self.word_times: RollingWindow[str] = RollingWindow(wpm_window_s)
        self.filler_count = 0
        self.word_count = 0

    @property
    def final_text(self) -> str:
        return " ".join(self.segments)

    def add_final(self, text: str, timestamp: float, filler_pattern: Optional[re.Pattern]) -> int:
        """Record a finalized segment. Returns the fillers found in it."""
        self.interim = None
        text = text.strip()
        if not text:
            return 0
        words = text.split()
        self.segments.append(text)
        self.word_times.extend(timestamp, words)
        self.word_count += len(words)
        fillers = count_fillers(text, filler_pattern)
        self.filler_count += fillers
        return fillers


class TranscriptionAdapter:
    """Drives a SpeechSource into a TranscriptState for one session.

    Args:
        source: Recognizer to consume.
        config: Session configuration (filler list, restart budget).
        state: Transcript state owned by the session.
        clock: Monotonic time source used to timestamp words.
        on_final: Called with each finalized segment's text.
        on_error: Called with non-benign recognizer errors.
        on_give_up: Called once the restart budget is exhausted.
    """

    def __init__(
        self,
        source: SpeechSource,
        config: AnalyticsConfig,
        state: TranscriptState,
        clock: Callable[[], float] = time.monotonic,
        on_final: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[SpeechRecognitionError], None]] = None,
        on_give_up: Optional[Callable[[], None]] = None,
    ) -> None:
        self._source = source
        self._config = config
        self._state = state
        self._clock = clock
        self._on_final = on_final
        self._on_error = on_error
        self._on_give_up = on_give_up
        self._task: Optional[asyncio.Task] = None
        self.restarts = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            raise RuntimeError("Transcription already started")
        self._task = asyncio.create_task(self._run(), name="transcription_loop")

    async def stop(self) -> None:
        await cancel_and_wait(self._task)
        self._task = None
        self._state.interim = None

    def handle_result(self, result: RecognitionResult, timestamp: float) -> None:
        if not result.is_final:
            self._state.interim = result.text
            return
        fillers = self._state.add_final(result.text, timestamp, self._config.filler_pattern)
        if fillers:
            logger.debug("Counted %d filler(s) in final segment", fillers)
        if self._on_final is not None and result.text.strip():
            self._on_final(result.text.strip())

    async def _run(self) -> None:
        max_restarts = self._config.transcription_max_restarts
        failures = 0
        while True:
            received = False
            benign = False
            try:
                async with aclosing(self._source.stream()) as results:
                    async for result in results:
                        received = True
                        failures = 0
                        self.handle_result(result, self._clock())
                logger.debug("Speech source ended")
            except SpeechRecognitionError as exc:
                if exc.benign:
                    benign = True
                    logger.debug("Speech recognition: %s", exc.code)
                else:
                    logger.warning("Speech recognition error: %s", exc)
                    self._report(exc)
            except OSError as exc:
                logger.warning("Speech source failed: %s", exc)
                self._report(SpeechRecognitionError("network", str(exc)))
            except Exception as exc:
                logger.exception("Speech source raised an unexpected error")
                self._report(SpeechRecognitionError("recognizer", str(exc)))

            if not (received or benign):
                failures += 1
            if failures > max_restarts:
                logger.warning(
                    "Speech recognition stopped after %d failed restarts", max_restarts
                )
                if self._on_give_up is not None:
                    self._on_give_up()
                return

            delay = self._config.transcription_restart_backoff_s if benign else 0.0
            if failures:
                delay = min(
                    self._config.transcription_restart_backoff_s * 2 ** (failures - 1),
                    _MAX_BACKOFF_S,
                )
            self.restarts += 1
            logger.debug("Restarting speech recognition in %.2fs", delay)
            await asyncio.sleep(delay)

    def _report(self, error: SpeechRecognitionError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            logger.exception("Transcription error callback failed")
