from __future__ import annotations

import unittest

from bond_keeper.runtime_state import IdempotencyTracker


class IdempotencyTrackerTests(unittest.TestCase):
    def test_unknown_pool_has_not_completed(self) -> None:
        tracker = IdempotencyTracker()
        self.assertFalse(tracker.has_completed("1", "2025-03-14"))

    def test_mark_completed_blocks_same_epoch_only(self) -> None:
        tracker = IdempotencyTracker()
        tracker.mark_completed("1", "2025-03-14T12:05")
        self.assertTrue(tracker.has_completed("1", "2025-03-14T12:05"))
        self.assertFalse(tracker.has_completed("1", "2025-03-14T12:10"))
        self.assertFalse(tracker.has_completed("2", "2025-03-14T12:05"))

    def test_failures_reset_on_completion(self) -> None:
        tracker = IdempotencyTracker()
        self.assertEqual(tracker.record_failure("1"), 1)
        self.assertEqual(tracker.record_failure("1"), 2)
        tracker.mark_completed("1", "2025-03-14")
        self.assertEqual(tracker.state("1").consecutive_failure_count, 0)

    def test_failure_does_not_commit_epoch(self) -> None:
        tracker = IdempotencyTracker()
        tracker.record_failure("1")
        self.assertIsNone(tracker.state("1").last_completed_epoch_key)

    def test_seed_restores_completed_epochs(self) -> None:
        tracker = IdempotencyTracker()
        tracker.seed({"1": "2025-03-14", "2": ""})
        self.assertTrue(tracker.has_completed("1", "2025-03-14"))
        self.assertIsNone(tracker.state("2").last_completed_epoch_key)


if __name__ == "__main__":
    unittest.main()
