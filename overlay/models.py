import base64
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
_ROLES = (ROLE_USER, ROLE_ASSISTANT)


def _now_iso() -> str:
    return datetime.now().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ChatMessage:
    id: str
    role: str  # "user" or "assistant"
    text: str = ""
    thought: Optional[str] = None  # reasoning trace, accumulated separately from text
    timestamp: str = field(default_factory=_now_iso)
    image_data: Optional[bytes] = None
    is_ambient: bool = False  # inserted from a suggestion, not generated

    @classmethod
    def user(cls, text: str, *, image_data: Optional[bytes] = None) -> "ChatMessage":
        return cls(id=new_id(), role=ROLE_USER, text=text, image_data=image_data)

    @classmethod
    def assistant(cls, text: str, *, message_id: Optional[str] = None, is_ambient: bool = False) -> "ChatMessage":
        return cls(id=message_id or new_id(), role=ROLE_ASSISTANT, text=text, is_ambient=is_ambient)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "thought": self.thought,
            "timestamp": self.timestamp,
            "image_data": base64.b64encode(self.image_data).decode("ascii") if self.image_data else None,
            "is_ambient": bool(self.is_ambient),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        role = str(data.get("role") or ROLE_USER)
        if role == "ai":
            role = ROLE_ASSISTANT
        if role not in _ROLES:
            role = ROLE_USER
        image_raw = data.get("image_data")
        image_data = None
        if isinstance(image_raw, str) and image_raw:
            image_data = base64.b64decode(image_raw)
        return cls(
            id=str(data["id"]),
            role=role,
            text=str(data.get("text") or ""),
            thought=data.get("thought"),
            timestamp=str(data.get("timestamp") or _now_iso()),
            image_data=image_data,
            is_ambient=bool(data.get("is_ambient", False)),
        )


@dataclass
class Session:
    id: str = field(default_factory=new_id)
    messages: List[ChatMessage] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        messages: list[ChatMessage] = []
        for m in data.get("messages", []) or []:
            if not isinstance(m, dict):
                continue
            try:
                messages.append(ChatMessage.from_dict(m))
            except (KeyError, ValueError):
                continue
        return cls(
            id=str(data["id"]),
            messages=messages,
            created_at=str(data.get("created_at") or _now_iso()),
        )


@dataclass(frozen=True)
class StreamDelta:
    """One incremental unit of model output. At least one channel is present."""

    text_part: Optional[str] = None
    thought_part: Optional[str] = None

    def __post_init__(self):
        if self.text_part is None and self.thought_part is None:
            raise ValueError("StreamDelta needs text_part or thought_part")


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    is_speech_final: bool = False


@dataclass(frozen=True)
class SmartSuggestion:
    topic: str
    answer: str
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=_now_iso)
    confidence: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GenerationParams:
    """Opaque generation settings; forwarded to the model gateway unmodified."""

    model: str = ""
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_output_tokens: Optional[int] = None
    thinking_enabled: bool = False
    thinking_level: Optional[str] = None
    safety_thresholds: Dict[str, str] = field(default_factory=dict)
    tools: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
