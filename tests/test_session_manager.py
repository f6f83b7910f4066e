import asyncio
import unittest

from overlay.config import DEFAULT_CONFIG, sanitize_config_values
from overlay.errors import CaptureError, NO_API_KEY_MESSAGE
from overlay.models import ChatMessage, Session, SmartSuggestion, StreamDelta, TranscriptEvent
from overlay.prompts import CUSTOM_INSTRUCTIONS_SEPARATOR
from overlay.session_manager import SessionManager


class _FakeStore:
    def __init__(self, sessions=None):
        self.sessions = list(sessions or [])
        self.saves = []

    def load(self):
        return list(self.sessions)

    def save(self, sessions):
        self.saves.append([(s.id, len(s.messages)) for s in sessions])


class _FakeGateway:
    def __init__(self, *replies, hold=None):
        self.replies = list(replies)
        self.calls = []
        self.hold = hold

    async def stream(self, history, params, *, system_prompt=None):
        self.calls.append({"history": [m.text for m in history], "model": params.model, "system_prompt": system_prompt})
        reply = self.replies.pop(0) if self.replies else "ok"
        yield StreamDelta(text_part=reply)
        if self.hold is not None:
            await self.hold.wait()

    async def complete(self, prompt, params):
        return '{"suggestions": []}'


class _FakeTranscription:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.frames = []

    async def stream(self, frames):
        async for frame in frames:
            self.frames.append(frame)
            if self.fail_with is not None:
                raise self.fail_with
            yield TranscriptEvent(frame.decode(), is_final=False)
        yield TranscriptEvent(" ".join(f.decode() for f in self.frames), is_final=True)


async def _frames(*chunks):
    for chunk in chunks:
        yield chunk


async def _until(predicate, *, steps: int = 200):
    for _ in range(steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _config(**overrides):
    cfg = sanitize_config_values(overrides, base=DEFAULT_CONFIG)
    return cfg


class TestSessionManagerChat(unittest.IsolatedAsyncioTestCase):
    def _manager(self, gateway=None, *, store=None, transcription=None, **cfg):
        self.store = store or _FakeStore()
        manager = SessionManager(
            gateway=gateway,
            store=self.store,
            config=_config(**cfg),
            transcription=transcription,
        )
        self.addAsyncCleanup(manager.close)
        return manager

    async def test_send_streams_reply_and_persists(self):
        gateway = _FakeGateway("Hello!")
        manager = self._manager(gateway)
        notified = []
        manager.add_listener(lambda: notified.append(1))

        handle = manager.send("hi")
        self.assertTrue(manager.is_loading)
        await handle.wait()

        self.assertFalse(manager.is_loading)
        self.assertEqual([m.text for m in manager.current_session.messages], ["hi", "Hello!"])
        self.assertEqual(self.store.saves[-1], [(manager.current_session.id, 2)])
        self.assertEqual(manager.history[0].id, manager.current_session.id)
        self.assertIsNot(manager.history[0], manager.current_session)
        self.assertTrue(notified)

    async def test_send_uses_and_clears_input_buffer(self):
        manager = self._manager(_FakeGateway())
        manager.input_text = "from the box"
        handle = manager.send()
        self.assertEqual(manager.input_text, "")
        await handle.wait()
        self.assertEqual(manager.current_session.messages[0].text, "from the box")

    async def test_empty_send_is_ignored(self):
        gateway = _FakeGateway()
        manager = self._manager(gateway)
        self.assertIsNone(manager.send("   "))
        self.assertEqual(manager.current_session.messages, [])
        self.assertEqual(gateway.calls, [])

    async def test_send_without_gateway_explains_missing_key(self):
        manager = self._manager(None)
        self.assertIsNone(manager.send("hi"))
        self.assertEqual([m.text for m in manager.current_session.messages], ["hi", NO_API_KEY_MESSAGE])

    async def test_custom_instructions_and_model_selection(self):
        gateway = _FakeGateway()
        manager = self._manager(gateway, custom_instructions="Answer in French.")
        manager.set_model("gemini-2.5-flash")
        await manager.send("hi").wait()

        call = gateway.calls[0]
        self.assertEqual(call["model"], "gemini-2.5-flash")
        self.assertIn(CUSTOM_INSTRUCTIONS_SEPARATOR, call["system_prompt"])
        self.assertTrue(call["system_prompt"].endswith("Answer in French."))

    async def test_cycle_model_wraps_around(self):
        manager = self._manager(_FakeGateway(), available_models=["a", "b"], model="b")
        self.assertEqual(manager.cycle_model(), "a")
        self.assertEqual(manager.cycle_model(), "b")
        with self.assertRaises(ValueError):
            manager.set_model("c")

    async def test_cancel_keeps_partial_reply(self):
        hold = asyncio.Event()
        manager = self._manager(_FakeGateway("partial", hold=hold))
        handle = manager.send("hi")
        await _until(lambda: handle.slot.created)
        self.assertTrue(manager.cancel())
        await handle.wait()
        self.assertFalse(manager.is_loading)
        self.assertEqual([m.text for m in manager.current_session.messages], ["hi", "partial"])

    async def test_new_session_cancels_and_saves_outgoing(self):
        hold = asyncio.Event()
        manager = self._manager(_FakeGateway("partial", hold=hold))
        handle = manager.send("hi")
        await _until(lambda: handle.slot.created)
        old_id = manager.current_session.id

        session = manager.start_new_session()
        await handle.wait()

        self.assertNotEqual(session.id, old_id)
        self.assertEqual(session.messages, [])
        self.assertEqual(self.store.saves[-1], [(old_id, 2)])
        self.assertEqual(handle.state.value, "cancelled")

    async def test_new_session_with_empty_session_does_not_save(self):
        manager = self._manager(_FakeGateway())
        manager.start_new_session()
        self.assertEqual(self.store.saves, [])

    async def test_history_select_and_delete(self):
        stored = Session(id="past", created_at="2000-01-01T00:00:00", messages=[ChatMessage.user("old question")])
        manager = self._manager(_FakeGateway(), store=_FakeStore([stored]))
        await manager.send("new question").wait()
        current_id = manager.current_session.id

        selected = manager.select_session("past")
        self.assertEqual(selected.id, "past")
        self.assertIsNot(selected, stored)
        self.assertEqual([s.id for s in manager.history], [current_id, "past"])

        self.assertIsNone(manager.select_session("missing"))
        self.assertTrue(manager.delete_from_history(current_id))
        self.assertEqual([s.id for s in manager.history], ["past"])
        self.assertEqual(self.store.saves[-1], [("past", 1)])
        self.assertFalse(manager.delete_from_history(current_id))

    async def test_activate_inserts_ambient_answer(self):
        manager = self._manager(_FakeGateway())
        suggestion = SmartSuggestion(topic="Event Loops", answer="It runs tasks.")
        manager.pipeline.suggestions.append(suggestion)
        manager.pipeline.recent_topics.add(suggestion.topic)

        message = manager.activate(suggestion.id)

        self.assertTrue(message.is_ambient)
        self.assertEqual(message.role, "assistant")
        self.assertEqual(manager.current_session.messages, [message])
        self.assertEqual(manager.suggestions, [])
        self.assertIn("Event Loops", manager.pipeline.recent_topics)
        self.assertEqual(self.store.saves[-1], [(manager.current_session.id, 1)])
        self.assertIsNone(manager.activate(suggestion.id))

    async def test_snapshot_shape(self):
        manager = self._manager(_FakeGateway())
        snap = manager.snapshot()
        for key in ("session_id", "messages", "live_preview", "transcript", "suggestions", "is_loading", "model", "voice_mode"):
            self.assertIn(key, snap)
        self.assertTrue(snap["configured"])


class TestSessionManagerVoice(unittest.IsolatedAsyncioTestCase):
    def _manager(self, transcription):
        self.store = _FakeStore()
        manager = SessionManager(
            gateway=_FakeGateway(),
            store=self.store,
            config=_config(suggestion_debounce_seconds=5.0),
            transcription=transcription,
        )
        self.addAsyncCleanup(manager.close)
        return manager

    async def test_voice_mode_feeds_context_window(self):
        transcription = _FakeTranscription()
        manager = self._manager(transcription)

        self.assertTrue(manager.start_voice_mode(_frames(b"hello", b"world")))
        self.assertTrue(manager.voice_mode_active)
        await _until(lambda: not manager.voice_mode_active)

        self.assertEqual(manager.aggregator.transcript_log, ["hello world"])
        self.assertEqual(manager.pipeline.window.text, "hello world")
        self.assertEqual(manager.live_preview, "")

    async def test_pushed_audio_is_flushed_on_stop(self):
        transcription = _FakeTranscription()
        manager = self._manager(transcription)

        manager.start_voice_mode()
        self.assertTrue(manager.push_audio(b"one"))
        self.assertTrue(manager.push_audio(b"two"))
        await _until(lambda: manager.live_preview == "two")

        self.assertTrue(manager.stop_voice_mode())
        self.assertEqual(manager.live_preview, "")
        self.assertFalse(manager.push_audio(b"late"))
        await _until(lambda: manager.aggregator.transcript_log == ["one two"])

    async def test_only_the_owner_feeds_or_stops_voice_mode(self):
        manager = self._manager(_FakeTranscription())
        owner, other = object(), object()

        self.assertTrue(manager.start_voice_mode(owner=owner))
        self.assertFalse(manager.push_audio(b"stray", owner=other))
        self.assertTrue(manager.push_audio(b"mine", owner=owner))
        self.assertFalse(manager.stop_voice_mode(owner=other))
        self.assertTrue(manager.voice_mode_active)

        self.assertTrue(manager.stop_voice_mode(owner=owner))
        self.assertIsNone(manager.voice_owner)
        await _until(lambda: manager.aggregator.transcript_log == ["mine"])

    async def test_missing_transcription_reports_capture_error(self):
        manager = self._manager(None)
        self.assertFalse(manager.start_voice_mode(_frames(b"x")))
        self.assertEqual(
            manager.current_session.messages[-1].text,
            "⚠️ Microphone capture failed: transcription is not available",
        )

    async def test_transcription_failure_is_reported_and_session_continues(self):
        manager = self._manager(_FakeTranscription(fail_with=CaptureError("Microphone", "device lost")))
        manager.start_voice_mode(_frames(b"x"))
        await _until(lambda: not manager.voice_mode_active)

        self.assertEqual(manager.current_session.messages[-1].text, "⚠️ Microphone capture failed: device lost")
        await manager.send("still works").wait()
        self.assertEqual(manager.current_session.messages[-1].text, "ok")


if __name__ == "__main__":
    unittest.main()
