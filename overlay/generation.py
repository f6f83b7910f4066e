"""Streaming response engine.

Merges the ordered deltas of one model stream into a single assistant message
and keeps at most one live generation per session. Everything here runs on
the event loop; a superseded or cancelled generation stops silently and keeps
whatever it had already appended.
"""

import asyncio
import enum
import logging
from typing import Callable, Optional

from overlay.errors import describe_generation_error
from overlay.logs import log_important
from overlay.models import ROLE_ASSISTANT, ChatMessage, GenerationParams, Session, StreamDelta, new_id

logger = logging.getLogger(__name__)


class GenerationState(str, enum.Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


def merge_delta(message: ChatMessage, delta: StreamDelta) -> None:
    """Append both channels of ``delta`` to ``message``; never truncates or reorders."""
    if delta.text_part:
        message.text += delta.text_part
    if delta.thought_part is not None:
        if message.thought is None:
            message.thought = ""
        message.thought += delta.thought_part


class AssistantSlot:
    """Placeholder for the assistant message of one generation.

    Two states: not yet created (no delta has arrived) and created, holding the
    message that was appended to the session. The id is fixed up front.
    """

    def __init__(self, message_id: str):
        self.message_id = message_id
        self.message: Optional[ChatMessage] = None

    @property
    def created(self) -> bool:
        return self.message is not None

    def _create(self, session: Session, text: str = "", thought: Optional[str] = None) -> ChatMessage:
        self.message = ChatMessage(id=self.message_id, role=ROLE_ASSISTANT, text=text, thought=thought)
        session.messages.append(self.message)
        return self.message

    def apply(self, session: Session, delta: StreamDelta) -> ChatMessage:
        if self.message is None:
            return self._create(session, text=delta.text_part or "", thought=delta.thought_part)
        merge_delta(self.message, delta)
        return self.message

    def write_error(self, session: Session, text: str) -> ChatMessage:
        if self.message is None:
            return self._create(session, text=text)
        self.message.text = text
        return self.message


class GenerationHandle:
    def __init__(self, session_id: str, message_id: str):
        self.session_id = session_id
        self.slot = AssistantSlot(message_id)
        self.state = GenerationState.GENERATING
        self.error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def message_id(self) -> str:
        return self.slot.message_id

    @property
    def live(self) -> bool:
        return self.state is GenerationState.GENERATING

    def cancel(self) -> bool:
        if not self.live:
            return False
        self.state = GenerationState.CANCELLED
        if self._task is not None:
            self._task.cancel()
        return True

    async def wait(self) -> GenerationState:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        return self.state


class StreamingResponseEngine:
    def __init__(
        self,
        gateway,
        *,
        on_change: Optional[Callable[[Session], None]] = None,
        on_complete: Optional[Callable[[Session], None]] = None,
    ):
        self.gateway = gateway
        self._on_change = on_change
        self._on_complete = on_complete
        self._handles: dict[str, GenerationHandle] = {}

    def handle_for(self, session_id: str) -> Optional[GenerationHandle]:
        return self._handles.get(session_id)

    def state(self, session_id: str) -> GenerationState:
        handle = self._handles.get(session_id)
        return handle.state if handle is not None else GenerationState.IDLE

    def is_generating(self, session_id: str) -> bool:
        return self.state(session_id) is GenerationState.GENERATING

    def generate(
        self,
        session: Session,
        user_message: ChatMessage,
        params: GenerationParams,
        *,
        system_prompt: Optional[str] = None,
    ) -> GenerationHandle:
        if not (user_message.text or "").strip():
            raise ValueError("user message text must not be empty")

        session.messages.append(user_message)

        message_id = new_id()
        self.cancel(session.id)

        handle = GenerationHandle(session.id, message_id)
        history = list(session.messages)
        loop = asyncio.get_running_loop()
        handle._task = loop.create_task(self._run(session, handle, history, params, system_prompt))
        self._handles[session.id] = handle
        log_important("generation.start", session_id=session.id, message_id=message_id, model=params.model)
        return handle

    def cancel(self, session_id: str) -> bool:
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return False
        cancelled = handle.cancel()
        if cancelled:
            log_important("generation.cancelled", session_id=session_id, message_id=handle.message_id)
        return cancelled

    def _notify(self, session: Session) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(session)
        except Exception:
            logger.exception("Generation change listener failed")

    def _release(self, handle: GenerationHandle) -> None:
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]

    async def _run(
        self,
        session: Session,
        handle: GenerationHandle,
        history: list[ChatMessage],
        params: GenerationParams,
        system_prompt: Optional[str],
    ) -> None:
        try:
            async for delta in self.gateway.stream(history, params, system_prompt=system_prompt):
                if not handle.live:
                    return
                handle.slot.apply(session, delta)
                self._notify(session)
        except asyncio.CancelledError:
            handle.state = GenerationState.CANCELLED
            self._release(handle)
            raise
        except Exception as e:
            if not handle.live:
                return
            logger.warning("Generation failed for session %s: %s", session.id, e)
            handle.error = e
            handle.state = GenerationState.FAILED
            handle.slot.write_error(session, describe_generation_error(e))
            self._release(handle)
            log_important("generation.failed", level=logging.WARNING, session_id=session.id, error=type(e).__name__)
            self._notify(session)
            return

        if not handle.live:
            return
        handle.state = GenerationState.COMPLETED
        self._release(handle)
        log_important(
            "generation.completed",
            session_id=session.id,
            message_id=handle.message_id,
            chars=len(handle.slot.message.text) if handle.slot.created else 0,
        )
        self._notify(session)
        if session.messages and self._on_complete is not None:
            try:
                self._on_complete(session)
            except Exception:
                logger.exception("Failed to persist session after generation")
