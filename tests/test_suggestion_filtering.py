import unittest

from overlay.models import SmartSuggestion
from overlay.suggestions import RecentTopicSet, SuggestionCandidate, filter_candidates, topics_overlap


def _filter(candidates, active=(), recent=None, slots=3):
    return filter_candidates(
        candidates,
        active=list(active),
        recent=recent or RecentTopicSet(),
        min_confidence=0.7,
        available_slots=slots,
    )


class TestTopicOverlap(unittest.TestCase):
    def test_containment_is_bidirectional_and_case_insensitive(self):
        self.assertTrue(topics_overlap("Kubernetes pods", "pods"))
        self.assertTrue(topics_overlap("pods", "Kubernetes pods"))
        self.assertTrue(topics_overlap("  PODS ", "pods"))
        self.assertFalse(topics_overlap("pods", "containers"))

    def test_substring_false_positive_is_kept(self):
        self.assertTrue(topics_overlap("OS", "Chaos"))


class TestRecentTopicSet(unittest.TestCase):
    def test_eleventh_topic_evicts_oldest(self):
        recent = RecentTopicSet(10)
        for i in range(10):
            recent.add(f"topic {i}")
        evicted = recent.add("topic 10")
        self.assertEqual(evicted, "topic 0")
        self.assertEqual(len(recent), 10)
        self.assertNotIn("topic 0", recent)
        self.assertEqual(list(recent)[0], "topic 1")

    def test_discard_and_overlap_lookup(self):
        recent = RecentTopicSet()
        recent.add("Python GIL")
        self.assertEqual(recent.overlaps("gil"), "Python GIL")
        recent.discard("Python GIL")
        self.assertIsNone(recent.overlaps("gil"))
        recent.discard("missing")


class TestFilterCandidates(unittest.TestCase):
    def test_low_confidence_dropped_missing_confidence_kept(self):
        out = _filter(
            [
                SuggestionCandidate("a", "x", 0.69),
                SuggestionCandidate("b", "x", 0.7),
                SuggestionCandidate("c", "x", None),
            ]
        )
        self.assertEqual([c.topic for c in out], ["b", "c"])

    def test_dedup_against_active_both_directions(self):
        active = [SmartSuggestion(topic="pods", answer="...")]
        self.assertEqual(_filter([SuggestionCandidate("Kubernetes pods", "x", 0.9)], active=active), [])

        active = [SmartSuggestion(topic="Kubernetes pods", answer="...")]
        self.assertEqual(_filter([SuggestionCandidate("pods", "x", 0.9)], active=active), [])

    def test_dedup_against_recent_topics(self):
        recent = RecentTopicSet()
        recent.add("Event Loops")
        out = _filter([SuggestionCandidate("event loops in asyncio", "x"), SuggestionCandidate("Futures", "y")], recent=recent)
        self.assertEqual([c.topic for c in out], ["Futures"])

    def test_clamped_to_available_slots_in_order(self):
        candidates = [SuggestionCandidate(f"t{i}", "x", 0.9) for i in range(3)]
        self.assertEqual([c.topic for c in _filter(candidates, slots=2)], ["t0", "t1"])
        self.assertEqual(_filter(candidates, slots=0), [])
        self.assertEqual(_filter(candidates, slots=-1), [])

    def test_blank_topic_or_answer_dropped(self):
        out = _filter([SuggestionCandidate("  ", "x"), SuggestionCandidate("t", " "), SuggestionCandidate("ok", "y")])
        self.assertEqual([c.topic for c in out], ["ok"])


if __name__ == "__main__":
    unittest.main()
