import unittest

from overlay.context_window import ContextWindow, ContextWindowAggregator, last_words
from overlay.models import TranscriptEvent


class TestContextWindow(unittest.TestCase):
    def test_phrase_history_caps_at_ten(self):
        window = ContextWindow()
        for i in range(12):
            window.push(f"p{i}")
        self.assertEqual(list(window.phrases), [f"p{i}" for i in range(2, 12)])
        self.assertEqual(window.text, " ".join(f"p{i}" for i in range(2, 12)))

    def test_long_buffer_keeps_last_fifty_words(self):
        window = ContextWindow()
        phrase = " ".join(f"w{i}" for i in range(150))
        window.push(phrase)
        self.assertGreater(len(phrase), 500)
        self.assertEqual(window.text.split(), [f"w{i}" for i in range(100, 150)])
        # the phrase history itself is not truncated
        self.assertEqual(window.phrases[-1], phrase)

    def test_reset_and_trim(self):
        window = ContextWindow()
        window.push("alpha beta")
        window.push("gamma delta epsilon")
        window.reset_to_last_phrase()
        self.assertEqual(window.text, "gamma delta epsilon")
        window.trim_to_last_words(2)
        self.assertEqual(window.text, "delta epsilon")

    def test_last_words(self):
        self.assertEqual(last_words("  a b   c d ", 2), "c d")
        self.assertEqual(last_words("a b", 5), "a b")
        self.assertEqual(last_words("a b", 0), "")


class TestContextWindowAggregator(unittest.TestCase):
    def setUp(self):
        self.signals = 0
        self.changes = 0

        def on_final():
            self.signals += 1

        def on_change():
            self.changes += 1

        self.agg = ContextWindowAggregator(on_final=on_final, on_change=on_change)

    def test_interim_updates_preview_only(self):
        self.agg.observe(TranscriptEvent("hello wor", is_final=False))
        self.agg.observe(TranscriptEvent("hello world", is_final=False))
        self.assertEqual(self.agg.live_preview, "hello world")
        self.assertEqual(self.agg.window.text, "")
        self.assertEqual(self.agg.transcript_log, [])
        self.assertEqual(self.signals, 0)
        self.assertEqual(self.changes, 2)

    def test_final_clears_preview_and_signals(self):
        self.agg.observe(TranscriptEvent("hello wor", is_final=False))
        self.agg.observe(TranscriptEvent("hello world", is_final=True))
        self.assertEqual(self.agg.live_preview, "")
        self.assertEqual(self.agg.transcript_log, ["hello world"])
        self.assertEqual(self.agg.window.text, "hello world")
        self.assertEqual(self.signals, 1)

    def test_empty_final_clears_preview_without_signal(self):
        self.agg.observe(TranscriptEvent("uh", is_final=False))
        self.agg.observe(TranscriptEvent("", is_final=True))
        self.assertEqual(self.agg.live_preview, "")
        self.assertEqual(self.agg.transcript_log, [])
        self.assertEqual(self.signals, 0)

    def test_transcript_log_is_unbounded(self):
        for i in range(25):
            self.agg.observe(TranscriptEvent(f"phrase {i}", is_final=True))
        self.assertEqual(len(self.agg.transcript_log), 25)
        self.assertEqual(len(self.agg.window.phrases), 10)


if __name__ == "__main__":
    unittest.main()
