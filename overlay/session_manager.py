"""Owner of the active conversation.

All state mutations happen on the event loop: REST handlers, websocket
commands, stream deltas, transcript events and timers all call into this
object from loop callbacks, so no locks are taken here.
"""

import asyncio
import copy
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable, List, Optional

from overlay.config import analysis_generation_params, chat_generation_params
from overlay.context_window import ContextWindow, ContextWindowAggregator
from overlay.errors import NO_API_KEY_MESSAGE, CaptureError, describe_capture_error
from overlay.generation import GenerationHandle, StreamingResponseEngine
from overlay.history import HistoryStore, upsert_session
from overlay.logs import log_important
from overlay.models import ChatMessage, Session, SmartSuggestion, TranscriptEvent
from overlay.prompts import build_system_prompt
from overlay.suggestions import AmbientSuggestionPipeline
from overlay.timers import KeyedTimers

logger = logging.getLogger(__name__)

_TRANSCRIPT_TAIL = 50


class AudioFrameQueue:
    """Async iterator fed by ``put``; iteration ends after ``close``."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def put(self, frame: bytes) -> None:
        if not self.closed:
            self._queue.put_nowait(frame)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        frame = await self._queue.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class SessionManager:
    def __init__(
        self,
        *,
        gateway,
        store: HistoryStore,
        config: dict,
        transcription=None,
        timers: Optional[KeyedTimers] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.store = store
        self.transcription = transcription
        self.history: List[Session] = store.load()
        self.current_session = Session()
        self.input_text = ""
        self.model = str(config.get("model") or "")
        self.voice_mode_active = False
        self._voice_task: Optional[asyncio.Task] = None
        self.voice_owner: Optional[object] = None
        self._frames: Optional[AudioFrameQueue] = None
        self._listeners: list[Callable[[], Any]] = []

        self.engine = StreamingResponseEngine(
            gateway,
            on_change=lambda _session: self._notify(),
            on_complete=self._on_generation_complete,
        )
        window = ContextWindow(
            max_phrases=int(config.get("context_max_phrases", 10)),
            max_chars=int(config.get("context_max_chars", 500)),
            keep_words=int(config.get("context_keep_words", 50)),
        )
        self.pipeline = AmbientSuggestionPipeline(
            gateway,
            window,
            params=analysis_generation_params(config),
            enabled=bool(config.get("suggestions_enabled", True)),
            debounce_seconds=float(config.get("suggestion_debounce_seconds", 3.0)),
            ttl_seconds=float(config.get("suggestion_ttl_seconds", 20.0)),
            min_context_chars=int(config.get("suggestion_min_context_chars", 50)),
            min_confidence=float(config.get("suggestion_min_confidence", 0.7)),
            max_active=int(config.get("suggestion_max_active", 3)),
            max_recent_topics=int(config.get("suggestion_recent_topics_max", 10)),
            fallback_trim_words=int(config.get("context_fallback_trim_words", 30)),
            timers=timers,
            on_change=self._notify,
        )
        self.aggregator = ContextWindowAggregator(window, on_final=self.pipeline.signal, on_change=self._notify)
        log_important("history.loaded", sessions=len(self.history))

    # ----- read access -----

    @property
    def is_loading(self) -> bool:
        return self.engine.is_generating(self.current_session.id)

    @property
    def live_preview(self) -> str:
        return self.aggregator.live_preview

    @property
    def suggestions(self) -> List[SmartSuggestion]:
        return list(self.pipeline.suggestions)

    def add_listener(self, callback: Callable[[], Any]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("State listener failed")

    def snapshot(self) -> dict:
        return {
            "session_id": self.current_session.id,
            "messages": [m.to_dict() for m in self.current_session.messages],
            "input_text": self.input_text,
            "live_preview": self.live_preview,
            "transcript": self.aggregator.transcript_log[-_TRANSCRIPT_TAIL:],
            "suggestions": [s.to_dict() for s in self.pipeline.suggestions],
            "is_loading": self.is_loading,
            "model": self.model,
            "available_models": list(self.config.get("available_models") or []),
            "voice_mode": self.voice_mode_active,
            "configured": self.gateway is not None,
        }

    def history_summaries(self) -> List[dict]:
        out = []
        for s in self.history:
            first_user = next((m.text for m in s.messages if m.role == "user" and m.text), "")
            out.append(
                {
                    "id": s.id,
                    "created_at": s.created_at,
                    "message_count": len(s.messages),
                    "preview": first_user[:80],
                }
            )
        return out

    # ----- gateway / model -----

    def set_model(self, name: str) -> str:
        models = list(self.config.get("available_models") or [])
        name = str(name or "").strip()
        if models and name not in models:
            raise ValueError(f"Unknown model: {name}")
        self.model = name
        log_important("model.selected", model=name)
        self._notify()
        return name

    def cycle_model(self) -> str:
        models = list(self.config.get("available_models") or [])
        if not models:
            return self.model
        try:
            idx = (models.index(self.model) + 1) % len(models)
        except ValueError:
            idx = 0
        return self.set_model(models[idx])

    # ----- chat -----

    def send(self, text: Optional[str] = None, *, image_data: Optional[bytes] = None) -> Optional[GenerationHandle]:
        """Send ``text`` (or the input buffer) as a user message and start streaming a reply."""
        message_text = self.input_text if text is None else text
        if not (message_text or "").strip():
            return None
        self.input_text = ""

        user_message = ChatMessage.user(message_text, image_data=image_data)
        if self.gateway is None:
            self.current_session.messages.append(user_message)
            self.current_session.messages.append(ChatMessage.assistant(NO_API_KEY_MESSAGE))
            log_important("generation.skipped", level=logging.WARNING, reason="no-api-key")
            self._notify()
            return None

        params = chat_generation_params(self.config, model=self.model)
        system_prompt = build_system_prompt(str(self.config.get("custom_instructions") or ""))
        handle = self.engine.generate(self.current_session, user_message, params, system_prompt=system_prompt)
        self._notify()
        return handle

    def cancel(self) -> bool:
        cancelled = self.engine.cancel(self.current_session.id)
        self._notify()
        return cancelled

    def _on_generation_complete(self, session: Session) -> None:
        if session is self.current_session:
            self.save_current_session()
            return
        self.history = upsert_session(self.history, copy.deepcopy(session))
        self.store.save(self.history)

    # ----- suggestions -----

    def activate(self, suggestion_id: str) -> Optional[ChatMessage]:
        suggestion = self.pipeline.activate(suggestion_id)
        if suggestion is None:
            return None
        message = ChatMessage.assistant(suggestion.answer, is_ambient=True)
        self.current_session.messages.append(message)
        self.save_current_session()
        self._notify()
        return message

    # ----- sessions / history -----

    def save_current_session(self) -> None:
        if not self.current_session.messages:
            return
        self.history = upsert_session(self.history, copy.deepcopy(self.current_session))
        self.store.save(self.history)
        log_important(
            "session.saved",
            session_id=self.current_session.id,
            messages=len(self.current_session.messages),
            dedupe_key=f"session.saved:{self.current_session.id}",
            dedupe_window_s=5.0,
        )

    def start_new_session(self) -> Session:
        self.engine.cancel(self.current_session.id)
        self.save_current_session()
        self.current_session = Session()
        log_important("session.new", session_id=self.current_session.id)
        self._notify()
        return self.current_session

    def select_session(self, session_id: str) -> Optional[Session]:
        stored = next((s for s in self.history if s.id == session_id), None)
        if stored is None:
            return None
        if stored.id != self.current_session.id:
            self.engine.cancel(self.current_session.id)
            self.save_current_session()
            self.current_session = copy.deepcopy(stored)
            log_important("session.selected", session_id=session_id)
        self._notify()
        return self.current_session

    def delete_from_history(self, session_id: str) -> bool:
        remaining = [s for s in self.history if s.id != session_id]
        if len(remaining) == len(self.history):
            return False
        self.history = remaining
        self.store.save(self.history)
        log_important("history.deleted", session_id=session_id)
        self._notify()
        return True

    # ----- voice -----

    def observe_transcript(self, event: TranscriptEvent) -> None:
        self.aggregator.observe(event)

    def start_voice_mode(
        self, frames: Optional[AsyncIterable[bytes]] = None, *, owner: Optional[object] = None
    ) -> bool:
        """Start consuming transcript events. Without ``frames`` an internal queue is created for ``push_audio``.

        ``owner`` identifies the connection that feeds audio; only it may push
        frames, and ``stop_voice_mode(owner=...)`` from anyone else is ignored.
        """
        if self.voice_mode_active:
            return False
        if self.transcription is None:
            self.report_capture_error(CaptureError("Microphone", "transcription is not available"))
            return False

        if frames is None:
            self._frames = AudioFrameQueue()
            frames = self._frames
        self.voice_mode_active = True
        self.voice_owner = owner
        self._voice_task = asyncio.get_running_loop().create_task(self._consume_transcripts(frames))
        log_important("voice.start")
        self._notify()
        return True

    def push_audio(self, frame: bytes, *, owner: Optional[object] = None) -> bool:
        if not self.voice_mode_active or self._frames is None:
            return False
        if owner is not None and owner is not self.voice_owner:
            return False
        self._frames.put(frame)
        return True

    def stop_voice_mode(self, *, owner: Optional[object] = None) -> bool:
        if not self.voice_mode_active:
            return False
        if owner is not None and owner is not self.voice_owner:
            return False
        self.voice_mode_active = False
        self.voice_owner = None
        if self._frames is not None:
            # Closing lets the transcriber flush its buffered audio and finish.
            self._frames.close()
            self._frames = None
        elif self._voice_task is not None:
            self._voice_task.cancel()
        self.aggregator.clear_preview()
        log_important("voice.stop")
        self._notify()
        return True

    async def _consume_transcripts(self, frames: AsyncIterable[bytes]) -> None:
        try:
            async for event in self.transcription.stream(frames):
                self.observe_transcript(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Transcription stream failed: %s", e)
            self.report_capture_error(e, device="Microphone")
        finally:
            if self._voice_task is asyncio.current_task():
                self._voice_task = None
                self.voice_mode_active = False
                self._frames = None
                self.voice_owner = None
            self.aggregator.clear_preview()

    def report_capture_error(self, error: BaseException, *, device: str = "Audio") -> ChatMessage:
        message = ChatMessage.assistant(describe_capture_error(error, device=device))
        self.current_session.messages.append(message)
        log_important("capture.failed", level=logging.WARNING, device=device, error=type(error).__name__)
        self._notify()
        return message

    async def close(self) -> None:
        self.pipeline.close()
        self.engine.cancel(self.current_session.id)
        task = self._voice_task
        self.stop_voice_mode()
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.save_current_session()
