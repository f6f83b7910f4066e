import json
import tempfile
import unittest
from pathlib import Path

from overlay.history import HistoryStore, upsert_session
from overlay.models import ChatMessage, Session


class TestHistoryStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = Path(self._tmp.name) / "chat_history.json"

    def test_missing_file_loads_empty(self):
        self.assertEqual(HistoryStore(self.path).load(), [])

    def test_save_then_load_is_newest_first(self):
        older = Session(id="old", created_at="2026-01-01T10:00:00")
        older.messages.append(ChatMessage.user("first"))
        newer = Session(id="new", created_at="2026-02-01T10:00:00")
        reply = ChatMessage.assistant("answer", is_ambient=True)
        reply.thought = "because"
        newer.messages.extend([ChatMessage.user("look", image_data=b"\xff\xd8jpeg"), reply])

        store = HistoryStore(self.path)
        store.save([older, newer])
        loaded = store.load()

        self.assertEqual([s.id for s in loaded], ["new", "old"])
        self.assertEqual(loaded[0].messages[0].image_data, b"\xff\xd8jpeg")
        self.assertTrue(loaded[0].messages[1].is_ambient)
        self.assertEqual(loaded[0].messages[1].thought, "because")
        self.assertFalse(self.path.with_suffix(".json.tmp").exists())

    def test_corrupt_file_loads_empty(self):
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("overlay.history", level="ERROR"):
            self.assertEqual(HistoryStore(self.path).load(), [])

    def test_legacy_ai_role_and_bad_entries(self):
        self.path.write_text(
            json.dumps(
                [
                    {"id": "s1", "created_at": "2026-01-01T00:00:00", "messages": [{"id": "m1", "role": "ai", "text": "hi"}]},
                    {"no_id": True},
                    "junk",
                ]
            ),
            encoding="utf-8",
        )
        loaded = HistoryStore(self.path).load()
        self.assertEqual([s.id for s in loaded], ["s1"])
        self.assertEqual(loaded[0].messages[0].role, "assistant")


class TestUpsertSession(unittest.TestCase):
    def test_upsert_replaces_by_id_and_sorts(self):
        a = Session(id="a", created_at="2026-01-01T00:00:00")
        b = Session(id="b", created_at="2026-03-01T00:00:00")
        a2 = Session(id="a", created_at="2026-01-01T00:00:00", messages=[ChatMessage.user("x")])

        history = upsert_session([a], b)
        self.assertEqual([s.id for s in history], ["b", "a"])
        history = upsert_session(history, a2)
        self.assertEqual([s.id for s in history], ["b", "a"])
        self.assertIs(history[1], a2)


if __name__ == "__main__":
    unittest.main()
