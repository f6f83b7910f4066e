import logging
from collections import deque
from typing import Callable, Optional

from overlay.models import TranscriptEvent

logger = logging.getLogger(__name__)


def last_words(text: str, count: int) -> str:
    words = (text or "").split()
    return " ".join(words[-count:]) if count > 0 else ""


class ContextWindow:
    """Rolling window over the most recent final phrases.

    ``text`` is the flattened buffer handed to the suggestion analysis. It is
    normally the space-joined phrase history, capped at ``max_chars`` by keeping
    only the last ``keep_words`` words, but the pipeline may shrink it further
    after a cycle.
    """

    def __init__(self, *, max_phrases: int = 10, max_chars: int = 500, keep_words: int = 50):
        self.max_chars = int(max_chars)
        self.keep_words = int(keep_words)
        self.phrases: deque[str] = deque(maxlen=int(max_phrases))
        self.text = ""

    def push(self, phrase: str) -> None:
        self.phrases.append(phrase)
        self.text = " ".join(self.phrases)
        if len(self.text) > self.max_chars:
            self.text = last_words(self.text, self.keep_words)

    def reset_to_last_phrase(self) -> None:
        self.text = self.phrases[-1] if self.phrases else ""

    def trim_to_last_words(self, count: int) -> None:
        self.text = last_words(self.text, count)


class ContextWindowAggregator:
    def __init__(
        self,
        window: Optional[ContextWindow] = None,
        *,
        on_final: Optional[Callable[[], None]] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.window = window or ContextWindow()
        self.live_preview = ""
        self.transcript_log: list[str] = []
        self._on_final = on_final
        self._on_change = on_change

    def observe(self, event: TranscriptEvent) -> None:
        if not event.is_final:
            self.live_preview = event.text
            self._changed()
            return

        self.live_preview = ""
        if event.text:
            self.transcript_log.append(event.text)
            self.window.push(event.text)
            logger.debug("Context window: %s phrases, %s chars", len(self.window.phrases), len(self.window.text))
            if self._on_final is not None:
                self._on_final()
        self._changed()

    def clear_preview(self) -> None:
        if self.live_preview:
            self.live_preview = ""
            self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
