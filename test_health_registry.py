#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
test_health_registry.py - Unit tests for health_registry.py

  - initial yellow state for every feed
  - mark_ok / mark_failed transitions
  - snapshot isolation
  - aggregate indicator and degraded feed list
  - concurrent writes from worker threads
"""

import threading
import unittest

from health_registry import (
    FEED_NAMES,
    HealthRegistry,
    HealthState,
    aggregate_health,
    degraded_feeds,
)


class TestHealthRegistry(unittest.TestCase):

    def setUp(self):
        self.registry = HealthRegistry()

    def test_all_feeds_start_yellow(self):
        snapshot = self.registry.snapshot()
        self.assertEqual(set(snapshot), set(FEED_NAMES))
        self.assertTrue(all(v == "yellow" for v in snapshot.values()))

    def test_success_then_failure(self):
        self.registry.mark_ok("aviation")
        self.assertEqual(self.registry.get("aviation"), HealthState.GREEN)
        self.registry.mark_failed("aviation")
        self.assertEqual(self.registry.get("aviation"), HealthState.RED)

    def test_failure_recovers_on_next_success(self):
        self.registry.mark_failed("hazards")
        self.registry.mark_ok("hazards")
        self.assertEqual(self.registry.snapshot()["hazards"], "green")

    def test_snapshot_is_a_copy(self):
        snapshot = self.registry.snapshot()
        snapshot["aviation"] = "red"
        self.assertEqual(self.registry.snapshot()["aviation"], "yellow")

    def test_unknown_feed_reads_yellow(self):
        self.assertEqual(self.registry.get("nope"), HealthState.YELLOW)

    def test_reset(self):
        self.registry.mark_failed("military")
        self.registry.reset()
        self.assertEqual(self.registry.snapshot()["military"], "yellow")

    def test_concurrent_writes_keep_one_value_per_feed(self):
        def worker(i):
            for _ in range(200):
                if i % 2:
                    self.registry.mark_ok("surveillance")
                else:
                    self.registry.mark_failed("surveillance")
                self.registry.mark_ok("wikipedia")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = self.registry.snapshot()
        self.assertIn(snapshot["surveillance"], ("green", "red"))
        self.assertEqual(snapshot["wikipedia"], "green")
        self.assertEqual(len(snapshot), len(FEED_NAMES))


class TestAggregateHealth(unittest.TestCase):

    def test_all_green(self):
        self.assertEqual(aggregate_health({"a": "green", "b": "green"}), "green")

    def test_any_red_wins(self):
        self.assertEqual(aggregate_health({"a": "green", "b": "red", "c": "yellow"}), "red")

    def test_mixed_green_yellow(self):
        self.assertEqual(aggregate_health({"a": "green", "b": "yellow"}), "yellow")

    def test_empty_snapshot(self):
        self.assertEqual(aggregate_health({}), "yellow")

    def test_degraded_feeds_sorted(self):
        snapshot = {"surveillance": "red", "aviation": "red", "hazards": "green"}
        self.assertEqual(degraded_feeds(snapshot), ["aviation", "surveillance"])


if __name__ == "__main__":
    unittest.main()
