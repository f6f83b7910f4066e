import asyncio
import logging
import re
import threading
from typing import AsyncIterable, AsyncIterator, Optional, Protocol

import numpy as np
from faster_whisper import WhisperModel

from overlay.errors import CaptureError
from overlay.models import TranscriptEvent

logger = logging.getLogger(__name__)


class TranscriptionGateway(Protocol):
    def stream(self, frames: AsyncIterable[bytes]) -> AsyncIterator[TranscriptEvent]:
        ...


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Little-endian signed 16-bit mono PCM -> float32 in [-1, 1]."""
    if not data:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def _audio_energy(audio: np.ndarray) -> tuple[float, float]:
    arr = np.asarray(audio, dtype=np.float32).reshape(-1)
    if arr.size == 0:
        return 0.0, 0.0
    peak = float(np.max(np.abs(arr)))
    rms = float(np.sqrt(np.mean(arr * arr)))
    return rms, peak


_PHRASE_REPEAT_RE = re.compile(
    r"\b([a-z][a-z0-9']{2,}\s+[a-z][a-z0-9']{2,})\b(?:[\s,.;:!?-]+\1\b)+",
    flags=re.I,
)
_WORD_REPEAT_RE = re.compile(r"\b([a-z][a-z0-9']{2,})\b(?:[\s,.;:!?-]+\1\b)+", flags=re.I)
_PREFIX_STUTTER_RE = re.compile(r"\b([a-z][a-z0-9']{2,5})\b[\s,.;:!?-]+([a-z][a-z0-9']{2,})\b", flags=re.I)
_TOKEN_RE = re.compile(r"[a-z0-9']+", flags=re.I)


def _collapse_prefix_stutter(m: re.Match) -> str:
    a, b = m.group(1), m.group(2)
    a_cf, b_cf = a.casefold(), b.casefold()
    # Only short fragments that the next word completes: "wor worse", "clean cleaner".
    if len(a_cf) < 3 or not b_cf.startswith(a_cf) or len(b_cf) - len(a_cf) > 7:
        return m.group(0)
    return b


def normalize_transcript_text(text: str) -> str:
    t = " ".join((text or "").split()).strip()
    if not t:
        return ""

    t = re.sub(r"\b(\d+(?:\.\d+)?)\s*%\s*percent\b", r"\1%", t, flags=re.I)
    t = re.sub(r"\b(\d+(?:\.\d+)?)\s*percent\s*%", r"\1%", t, flags=re.I)

    prev = None
    while prev != t:
        prev = t
        t = _PHRASE_REPEAT_RE.sub(lambda m: m.group(1), t)
        t = _WORD_REPEAT_RE.sub(lambda m: m.group(1), t)
        t = _PREFIX_STUTTER_RE.sub(_collapse_prefix_stutter, t)

    t = re.sub(r"\s+([,.;:!?])", r"\1", t)
    return t.strip()


def _trim_leading_overlap(previous_text: str, current_text: str) -> str:
    a_tokens = _TOKEN_RE.findall(previous_text.casefold())
    b_tokens = _TOKEN_RE.findall(current_text.casefold())
    if not a_tokens or not b_tokens:
        return current_text

    overlap = 0
    for n in range(min(12, len(a_tokens), len(b_tokens)), 1, -1):
        if a_tokens[-n:] == b_tokens[:n]:
            overlap = n
            break
    if overlap == 0:
        return current_text

    matches = list(_TOKEN_RE.finditer(current_text))
    cut = matches[overlap - 1].end()
    return re.sub(r"^[\s,.;:!?-]+", "", current_text[cut:])


def merge_segment_texts(segments: list[str]) -> str:
    merged = ""
    for raw in segments:
        seg = normalize_transcript_text(raw)
        if not seg:
            continue
        if merged:
            seg = _trim_leading_overlap(merged, seg)
            if not seg:
                continue
            merged = f"{merged} {seg}"
        else:
            merged = seg
    return normalize_transcript_text(merged)


class WhisperTranscriptionGateway:
    """Local faster-whisper transcription over a stream of PCM16 frames.

    Audio is transcribed in fixed-size chunks; each chunk produces one final
    event. With interim results on, every further second of buffered audio is
    transcribed early and reported as a non-final event. Inference runs in a
    worker thread so the event loop keeps serving other work.
    """

    def __init__(
        self,
        model_size: str = "tiny",
        device: str = "cpu",
        compute_type: str | None = None,
        *,
        sample_rate: int = 16000,
        chunk_seconds: float = 3.0,
        interim_results: bool = True,
        interim_step_seconds: float = 1.0,
        quiet_tail_seconds: float = 0.4,
        quiet_tail_rms: float = 0.01,
        min_flush_seconds: float = 0.3,
        language: str | None = None,
    ):
        self.model_size = str(model_size or "tiny").strip() or "tiny"
        device = str(device or "cpu").strip().lower() or "cpu"
        if device in ("gpu", "cuda"):
            device = "cuda"
        if device not in ("cpu", "cuda"):
            device = "cpu"
        self.device = device
        self.compute_type = str(compute_type or "").strip().lower() or ("float16" if device == "cuda" else "int8")
        self.sample_rate = int(sample_rate)
        self.chunk_seconds = float(max(1.0, chunk_seconds))
        self.interim_results = bool(interim_results)
        self.interim_step_seconds = float(max(0.25, interim_step_seconds))
        self.quiet_tail_seconds = float(quiet_tail_seconds)
        self.quiet_tail_rms = float(quiet_tail_rms)
        self.min_flush_seconds = float(min_flush_seconds)
        self.language = language or None
        self.model: Optional[WhisperModel] = None
        self._lock = threading.Lock()

    def _load_model(self) -> WhisperModel:
        logger.info(f"Loading Whisper model: {self.model_size} on {self.device} ({self.compute_type})...")
        try:
            self.model = WhisperModel(self.model_size, device=self.device, compute_type=self.compute_type)
        except Exception as e:
            if self.device == "cpu":
                raise CaptureError("Transcription", f"could not load Whisper model: {e}") from e
            logger.warning(f"Failed to load Whisper on {self.device}; falling back to CPU: {e}")
            try:
                self.model = WhisperModel(self.model_size, device="cpu", compute_type="int8")
            except Exception as cpu_error:
                raise CaptureError("Transcription", f"could not load Whisper model: {cpu_error}") from cpu_error
            self.device = "cpu"
            self.compute_type = "int8"
        logger.info("Whisper model loaded.")
        return self.model

    def _transcribe_sync(self, audio: np.ndarray) -> str:
        with self._lock:
            model = self.model or self._load_model()
            segments, _info = model.transcribe(
                audio,
                beam_size=1,
                vad_filter=True,
                condition_on_previous_text=False,
                temperature=0.0,
                language=self.language,
            )
            texts = [str(getattr(s, "text", "") or "") for s in segments]
        return merge_segment_texts(texts)

    async def transcribe(self, audio: np.ndarray) -> str:
        return await asyncio.to_thread(self._transcribe_sync, audio)

    def is_quiet_tail(self, audio: np.ndarray) -> bool:
        tail = int(self.sample_rate * self.quiet_tail_seconds)
        if tail <= 0 or audio.size == 0:
            return False
        rms, _peak = _audio_energy(audio[-tail:])
        return rms < self.quiet_tail_rms

    async def stream(self, frames: AsyncIterable[bytes]) -> AsyncIterator[TranscriptEvent]:
        chunk_samples = int(self.sample_rate * self.chunk_seconds)
        step_samples = int(self.sample_rate * self.interim_step_seconds)
        pending = np.zeros(0, dtype=np.float32)
        carry = b""
        next_interim = step_samples

        async for frame in frames:
            if not frame:
                continue
            data = carry + bytes(frame)
            if len(data) % 2:
                data, carry = data[:-1], data[-1:]
            else:
                carry = b""
            pending = np.concatenate([pending, pcm16_to_float32(data)])

            while pending.size >= chunk_samples:
                chunk, pending = pending[:chunk_samples], pending[chunk_samples:]
                text = await self.transcribe(chunk)
                yield TranscriptEvent(text=text, is_final=True, is_speech_final=self.is_quiet_tail(chunk))
                next_interim = step_samples

            if self.interim_results and pending.size >= next_interim:
                next_interim = (pending.size // step_samples + 1) * step_samples
                text = await self.transcribe(pending)
                if text:
                    yield TranscriptEvent(text=text, is_final=False)

        if pending.size >= int(self.sample_rate * self.min_flush_seconds):
            text = await self.transcribe(pending)
            yield TranscriptEvent(text=text, is_final=True, is_speech_final=True)
