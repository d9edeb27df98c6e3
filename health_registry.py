#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
health_registry.py - Per-feed health tracking

Every upstream feed is in one of three states:
- yellow: not yet probed since process start
- green: last call attempt succeeded
- red: last call attempt failed (network error, timeout, non-2xx)

Adapters write their state after each call attempt; the gateway exposes a
snapshot on /api/health. Writes are single assignments under a lock, so
concurrent adapter completions in the worker threadpool never interleave.
"""

import logging
import threading
from enum import Enum
from typing import Dict, Iterable, List, Mapping

logger = logging.getLogger("iaware-health")


class HealthState(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


FEED_NAMES = (
    "aviation",
    "hazards",
    "wikipedia",
    "surveillance",
    "military",
    "gdacs",
    "cables",
    "geocode",
)


class HealthRegistry:
    """Thread-safe feed name -> HealthState map"""

    def __init__(self, feeds: Iterable[str] = FEED_NAMES):
        self._lock = threading.Lock()
        self._feeds = tuple(feeds)
        self._states: Dict[str, HealthState] = {name: HealthState.YELLOW for name in self._feeds}

    @property
    def feeds(self):
        return self._feeds

    def mark(self, feed: str, state: HealthState) -> None:
        state = HealthState(state)
        with self._lock:
            previous = self._states.get(feed)
            self._states[feed] = state
        if previous != state:
            logger.info(f"Feed {feed}: {previous.value if previous else 'unknown'} -> {state.value}")

    def mark_ok(self, feed: str) -> None:
        self.mark(feed, HealthState.GREEN)

    def mark_failed(self, feed: str) -> None:
        self.mark(feed, HealthState.RED)

    def get(self, feed: str) -> HealthState:
        with self._lock:
            return self._states.get(feed, HealthState.YELLOW)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return {name: state.value for name, state in self._states.items()}

    def reset(self) -> None:
        with self._lock:
            self._states = {name: HealthState.YELLOW for name in self._feeds}


def aggregate_health(snapshot: Mapping[str, str]) -> str:
    """Single indicator for the whole panel: all green, any red, else yellow."""
    values = [HealthState(v) for v in snapshot.values()]
    if values and all(v == HealthState.GREEN for v in values):
        return HealthState.GREEN.value
    if any(v == HealthState.RED for v in values):
        return HealthState.RED.value
    return HealthState.YELLOW.value


def degraded_feeds(snapshot: Mapping[str, str]) -> List[str]:
    return sorted(name for name, value in snapshot.items() if value == HealthState.RED.value)
