"""Ambient suggestion pipeline.

A trailing debounce over final transcript phrases triggers one analysis call
at a time. Parsed candidates are filtered by confidence and by bidirectional
topic containment against the active suggestions and the recent-topic set,
then clamped to the free slots. Each accepted suggestion lives until its TTL
expires or the user activates it.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Iterable, Optional

from overlay.context_window import ContextWindow
from overlay.errors import SuggestionParseError
from overlay.logs import log_important
from overlay.models import GenerationParams, SmartSuggestion
from overlay.prompts import build_suggestion_prompt
from overlay.timers import KeyedTimers

logger = logging.getLogger(__name__)

DEBOUNCE_KEY = "suggestion-debounce"

# Only the fence wrapping the whole reply; answers may carry their own code blocks.
_FENCE_RE = re.compile(r"^```[\w-]*\s*|\s*```$")


def normalize_topic(topic: str) -> str:
    return (topic or "").strip().lower()


def topics_overlap(a: str, b: str) -> bool:
    na = normalize_topic(a)
    nb = normalize_topic(b)
    return na in nb or nb in na


class RecentTopicSet:
    """Insertion-ordered topic set; adding past capacity evicts the oldest."""

    def __init__(self, max_size: int = 10):
        self.max_size = int(max_size)
        self._topics: dict[str, None] = {}

    def add(self, topic: str) -> Optional[str]:
        if topic in self._topics:
            return None
        self._topics[topic] = None
        if len(self._topics) > self.max_size:
            oldest = next(iter(self._topics))
            del self._topics[oldest]
            return oldest
        return None

    def discard(self, topic: str) -> None:
        self._topics.pop(topic, None)

    def overlaps(self, topic: str) -> Optional[str]:
        for existing in self._topics:
            if topics_overlap(existing, topic):
                return existing
        return None

    def __contains__(self, topic: object) -> bool:
        return topic in self._topics

    def __iter__(self):
        return iter(list(self._topics))

    def __len__(self) -> int:
        return len(self._topics)


@dataclass(frozen=True)
class SuggestionCandidate:
    topic: str
    answer: str
    confidence: Optional[float] = None


def _strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", (text or "").strip()).strip()


def _load_json_object(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        pass
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start : end + 1])
        except ValueError as e:
            raise SuggestionParseError(f"invalid JSON: {e}") from e
    raise SuggestionParseError("no JSON object found")


def parse_suggestion_response(raw: str) -> list[SuggestionCandidate]:
    """Parse ``{"suggestions": [{"topic", "answer", "confidence"?}]}``; raises SuggestionParseError."""
    text = _strip_code_fences(raw)
    if not text:
        raise SuggestionParseError("empty response")
    data = _load_json_object(text)
    if not isinstance(data, dict):
        raise SuggestionParseError("response is not a JSON object")
    items = data.get("suggestions")
    if not isinstance(items, list):
        raise SuggestionParseError("missing 'suggestions' list")

    out: list[SuggestionCandidate] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise SuggestionParseError(f"suggestion #{i} is not an object")
        topic = item.get("topic")
        answer = item.get("answer")
        if not isinstance(topic, str) or not isinstance(answer, str):
            raise SuggestionParseError(f"suggestion #{i} is missing topic or answer")
        confidence = item.get("confidence")
        if confidence is not None:
            if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                raise SuggestionParseError(f"suggestion #{i} has a non-numeric confidence")
            confidence = float(confidence)
        out.append(SuggestionCandidate(topic=topic, answer=answer, confidence=confidence))
    return out


def filter_candidates(
    candidates: Iterable[SuggestionCandidate],
    *,
    active: Iterable[SmartSuggestion],
    recent: RecentTopicSet,
    min_confidence: float = 0.7,
    available_slots: int = 3,
) -> list[SuggestionCandidate]:
    active_list = list(active)
    kept: list[SuggestionCandidate] = []
    for item in candidates:
        if not item.topic.strip() or not item.answer.strip():
            logger.debug("Suggestion dropped: blank topic or answer")
            continue
        if item.confidence is not None and item.confidence < min_confidence:
            logger.debug("Suggestion '%s' dropped: low confidence (%s)", item.topic, item.confidence)
            continue
        duplicate = next((s for s in active_list if topics_overlap(s.topic, item.topic)), None)
        if duplicate is not None:
            logger.debug("Suggestion '%s' dropped: duplicate of active '%s'", item.topic, duplicate.topic)
            continue
        recent_match = recent.overlaps(item.topic)
        if recent_match is not None:
            logger.debug("Suggestion '%s' dropped: duplicate of recent topic '%s'", item.topic, recent_match)
            continue
        kept.append(item)
    return kept[: max(0, int(available_slots))]


class AmbientSuggestionPipeline:
    def __init__(
        self,
        gateway,
        window: ContextWindow,
        *,
        params: Optional[GenerationParams] = None,
        enabled: bool = True,
        debounce_seconds: float = 3.0,
        ttl_seconds: float = 20.0,
        min_context_chars: int = 50,
        min_confidence: float = 0.7,
        max_active: int = 3,
        max_recent_topics: int = 10,
        fallback_trim_words: int = 30,
        max_items: int = 2,
        timers: Optional[KeyedTimers] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.gateway = gateway
        self.window = window
        self.params = params or GenerationParams()
        self.enabled = bool(enabled)
        self.debounce_seconds = float(debounce_seconds)
        self.ttl_seconds = float(ttl_seconds)
        self.min_context_chars = int(min_context_chars)
        self.min_confidence = float(min_confidence)
        self.max_active = int(max_active)
        self.fallback_trim_words = int(fallback_trim_words)
        self.max_items = int(max_items)
        self.timers = timers or KeyedTimers()
        self.suggestions: list[SmartSuggestion] = []
        self.recent_topics = RecentTopicSet(max_recent_topics)
        self.analyzing = False
        self.closed = False
        self._request: Optional[asyncio.Future] = None
        self._on_change = on_change

    def signal(self) -> None:
        """New final speech arrived: restart the quiet-period timer."""
        if not self.enabled or self.closed:
            return
        self.timers.schedule(DEBOUNCE_KEY, self.debounce_seconds, self.run_cycle)

    async def run_cycle(self) -> list[SmartSuggestion]:
        if self.closed:
            return []
        if self.analyzing:
            logger.info("Suggestions: analysis already running, skipping cycle")
            return []
        if self.gateway is None:
            logger.debug("Suggestions: no model gateway configured")
            return []

        context = self.window.text.strip()
        if len(context) < self.min_context_chars:
            logger.debug(
                "Suggestions: context too short (%s chars, minimum %s)", len(context), self.min_context_chars
            )
            return []

        self.analyzing = True
        try:
            return await self._analyze(context)
        finally:
            self.analyzing = False

    async def _analyze(self, context: str) -> list[SmartSuggestion]:
        recent = list(self.recent_topics)
        logger.info(
            "Suggestions: analyzing %s chars, %s recent topics, %s/%s active",
            len(context),
            len(recent),
            len(self.suggestions),
            self.max_active,
        )
        prompt = build_suggestion_prompt(context, recent, max_items=self.max_items)
        self._request = asyncio.ensure_future(self.gateway.complete(prompt, self.params))
        try:
            raw = await self._request
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Suggestions: analysis request failed: %s", e)
            log_important("suggestions.cycle", outcome="request-failed", error=type(e).__name__)
            return []
        finally:
            self._request = None
        if self.closed:
            return []

        try:
            candidates = parse_suggestion_response(raw)
        except SuggestionParseError as e:
            logger.info("Suggestions: discarding malformed response (%s): %r", e, (raw or "")[:200])
            log_important("suggestions.cycle", outcome="parse-failed")
            return []

        accepted = filter_candidates(
            candidates,
            active=self.suggestions,
            recent=self.recent_topics,
            min_confidence=self.min_confidence,
            available_slots=self.max_active - len(self.suggestions),
        )

        if not accepted:
            if len(self.window.text) > self.window.max_chars:
                self.window.trim_to_last_words(self.fallback_trim_words)
            log_important("suggestions.cycle", outcome="none-accepted", candidates=len(candidates))
            return []

        self.window.reset_to_last_phrase()
        created: list[SmartSuggestion] = []
        for item in accepted:
            suggestion = SmartSuggestion(topic=item.topic, answer=item.answer, confidence=item.confidence)
            self.suggestions.append(suggestion)
            self.recent_topics.add(item.topic)
            self.timers.schedule(suggestion.id, self.ttl_seconds, partial(self._expire, suggestion.id))
            created.append(suggestion)
            log_important("suggestions.added", topic=item.topic, confidence=item.confidence)
        log_important("suggestions.cycle", outcome="accepted", candidates=len(candidates), accepted=len(created))
        self._changed()
        return created

    def get(self, suggestion_id: str) -> Optional[SmartSuggestion]:
        return next((s for s in self.suggestions if s.id == suggestion_id), None)

    def _expire(self, suggestion_id: str) -> None:
        suggestion = self.get(suggestion_id)
        if suggestion is None:
            return
        self.suggestions.remove(suggestion)
        self.recent_topics.discard(suggestion.topic)
        log_important("suggestions.expired", topic=suggestion.topic)
        self._changed()

    def activate(self, suggestion_id: str) -> Optional[SmartSuggestion]:
        """Remove a suggestion on user request. Its topic stays in the recent set."""
        self.timers.cancel(suggestion_id)
        suggestion = self.get(suggestion_id)
        if suggestion is None:
            return None
        self.suggestions.remove(suggestion)
        log_important("suggestions.activated", topic=suggestion.topic)
        self._changed()
        return suggestion

    def close(self) -> None:
        self.closed = True
        self.timers.cancel_all()
        if self._request is not None:
            self._request.cancel()

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Suggestion change listener failed")
