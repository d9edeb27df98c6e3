#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
viewport_controller.py - Viewport-driven feed queries with a keyed cache

Client side of the map. Turns move-end events into a bounded, deduplicated
stream of gateway requests:
 - per-layer cache keys from rounded coordinates (sub-precision jitter hits
   the same entry)
 - per-layer staleness windows; fresh entries are served without a request
 - zoom gating: gated layers below their minimum zoom return [] and issue
   no request
 - render-time truncation per layer (rendering cost guard, not a server limit)
 - monotonic request sequence: a response that completes after a newer one
   for the same key never overwrites it
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from health_registry import aggregate_health, degraded_feeds

logger = logging.getLogger("iaware-viewport")

DEFAULT_GATEWAY_URL = "http://127.0.0.1:5000"
REQUEST_TIMEOUT_SECONDS = 30
WIKIPEDIA_RADIUS = 10000
HEALTH_STALE_AFTER = 15

SCOPE_BBOX = "bbox"
SCOPE_POINT = "point"
SCOPE_GLOBAL = "global"


class Bounds:
    def __init__(self, south: float, west: float, north: float, east: float):
        self.south = south
        self.west = west
        self.north = north
        self.east = east

    def as_params(self) -> Dict[str, float]:
        return {"south": self.south, "west": self.west, "north": self.north, "east": self.east}

    def __repr__(self):
        return f"Bounds({self.south}, {self.west}, {self.north}, {self.east})"


class Viewport:
    """Visible extent, map center and zoom as of the last move end"""

    def __init__(self, bounds: Bounds, center: Tuple[float, float], zoom: float):
        self.bounds = bounds
        self.lat, self.lon = center
        self.zoom = zoom


def _is_plottable(record: Dict[str, Any]) -> bool:
    return record.get("latitude") is not None and record.get("longitude") is not None


def _is_polygon(record: Dict[str, Any]) -> bool:
    return len(record.get("geometry") or []) > 2


class LayerPolicy:
    """How one layer is keyed, cached, gated and truncated"""

    def __init__(self, name: str, path: str, scope: str, precision: Optional[int] = None,
                 stale_after: float = 60, min_zoom: float = 0,
                 render_limit: Optional[int] = None,
                 refetch_interval: Optional[float] = None,
                 render_filter: Optional[Callable[[Dict[str, Any]], bool]] = None,
                 records_key: Optional[str] = None):
        self.name = name
        self.path = path
        self.scope = scope
        self.precision = precision
        self.stale_after = stale_after
        self.min_zoom = min_zoom
        self.render_limit = render_limit
        self.refetch_interval = refetch_interval
        self.render_filter = render_filter
        # Envelope key for feeds that answer with an object instead of a list
        self.records_key = records_key

    def unwrap(self, payload: Any) -> List[Any]:
        if self.records_key is not None:
            payload = payload.get(self.records_key) if isinstance(payload, dict) else None
        return payload if isinstance(payload, list) else []

    def render(self, records: List[Any]) -> List[Any]:
        if self.render_filter is not None:
            records = [r for r in records if isinstance(r, dict) and self.render_filter(r)]
        if self.render_limit is not None:
            records = records[:self.render_limit]
        return records


LAYER_POLICIES: Dict[str, LayerPolicy] = {
    "aviation": LayerPolicy(
        "aviation", "/api/aviation", SCOPE_BBOX, precision=2, stale_after=10,
        render_limit=500, refetch_interval=15, render_filter=_is_plottable,
    ),
    "hazards": LayerPolicy("hazards", "/api/hazards", SCOPE_GLOBAL, stale_after=300),
    "wikipedia": LayerPolicy("wikipedia", "/api/wikipedia", SCOPE_POINT, precision=2, stale_after=60),
    "surveillance": LayerPolicy(
        "surveillance", "/api/surveillance", SCOPE_BBOX, precision=1, stale_after=120,
        min_zoom=12, render_limit=200,
    ),
    "military": LayerPolicy(
        "military", "/api/military", SCOPE_BBOX, precision=0, stale_after=600,
        min_zoom=8, render_limit=100, render_filter=_is_polygon, records_key="elements",
    ),
    "gdacs": LayerPolicy("gdacs", "/api/gdacs", SCOPE_GLOBAL, stale_after=300, records_key="features"),
    "cables": LayerPolicy("cables", "/api/submarine-cables", SCOPE_GLOBAL, stale_after=3600, records_key="features"),
}

DEFAULT_VISIBILITY = {
    "aviation": True,
    "hazards": True,
    "wikipedia": False,
    "surveillance": False,
    "military": False,
    "gdacs": False,
    "cables": False,
    "marine": False,
}


class CacheEntry:
    def __init__(self, records: List[Any], fetched_at: float, sequence: int):
        self.records = records
        self.fetched_at = fetched_at
        self.sequence = sequence


class ViewportQueryController:
    """
    Decides, per viewport and zoom, which layers to query and serves them
    from a staleness-windowed in-memory cache.

    Superseded requests are not cancelled; ordering is enforced when the
    response is stored instead.
    """

    def __init__(self, base_url: str = DEFAULT_GATEWAY_URL,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic,
                 marine=None,
                 policies: Optional[Dict[str, LayerPolicy]] = None,
                 max_workers: int = 4):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.clock = clock
        self.marine = marine
        self.policies = policies or LAYER_POLICIES
        self.viewport: Optional[Viewport] = None
        self.visible = dict(DEFAULT_VISIBILITY)
        self._cache: Dict[Tuple, CacheEntry] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="viewport")
        self._health: Dict[str, str] = {}
        self._health_at: Optional[float] = None

    # -------------------------
    # Viewport and visibility
    # -------------------------
    def on_move_end(self, bounds: Bounds, center: Tuple[float, float], zoom: float):
        """Only move-end events update the viewport; intermediate pan frames are ignored."""
        self.viewport = Viewport(bounds, center, zoom)
        logger.debug(f"Viewport {bounds!r} zoom {zoom}")
        if self.marine is not None and self.visible.get("marine"):
            self._retarget_marine(bounds)

    def set_visible(self, layer: str, visible: bool):
        if layer not in self.visible:
            raise KeyError(layer)
        self.visible[layer] = visible
        if layer == "marine" and self.marine is not None:
            if visible and self.viewport is not None:
                self._retarget_marine(self.viewport.bounds)
            elif not visible:
                self.marine.disconnect()

    def _retarget_marine(self, bounds: Bounds) -> bool:
        try:
            return self.marine.retarget(bounds)
        except FutureTimeoutError:
            logger.warning("Marine stream did not reconnect in time; vessels stay as last received")
            return False

    def toggle(self, layer: str) -> bool:
        self.set_visible(layer, not self.visible[layer])
        return self.visible[layer]

    def visible_layers(self) -> List[str]:
        return [name for name in self.policies if self.visible.get(name)]

    # -------------------------
    # Keys and parameters
    # -------------------------
    def cache_key(self, layer: str) -> Optional[Tuple]:
        policy = self.policies[layer]
        if policy.scope == SCOPE_GLOBAL:
            return (layer,)
        if self.viewport is None:
            return None
        if policy.scope == SCOPE_POINT:
            return (layer, round(self.viewport.lat, policy.precision), round(self.viewport.lon, policy.precision))
        b = self.viewport.bounds
        return (layer,) + tuple(round(v, policy.precision) for v in (b.south, b.west, b.north, b.east))

    def query_params(self, layer: str) -> Dict[str, Any]:
        policy = self.policies[layer]
        if policy.scope == SCOPE_GLOBAL:
            return {}
        if policy.scope == SCOPE_POINT:
            return {"lat": self.viewport.lat, "lon": self.viewport.lon, "radius": WIKIPEDIA_RADIUS}
        return self.viewport.bounds.as_params()

    def is_gated(self, layer: str) -> bool:
        policy = self.policies[layer]
        if policy.min_zoom <= 0:
            return False
        return self.viewport is None or self.viewport.zoom < policy.min_zoom

    # -------------------------
    # Fetch and cache
    # -------------------------
    def _request(self, path: str, params: Dict[str, Any]) -> Optional[Any]:
        try:
            response = self.session.get(f"{self.base_url}{path}", params=params, timeout=REQUEST_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            logger.warning(f"Gateway request {path} failed: {e.__class__.__name__}")
            return None
        if not response.ok:
            logger.warning(f"Gateway answered HTTP {response.status_code} for {path}")
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Gateway returned non-JSON body for {path}")
            return None

    def _fetch(self, layer: str, key: Tuple) -> List[Any]:
        policy = self.policies[layer]
        with self._lock:
            self._sequence += 1
            sequence = self._sequence
        payload = self._request(policy.path, self.query_params(layer))
        if payload is None:
            return []
        return self._store(key, policy.unwrap(payload), sequence)

    def _store(self, key: Tuple, records: List[Any], sequence: int) -> List[Any]:
        with self._lock:
            current = self._cache.get(key)
            if current is not None and current.sequence > sequence:
                logger.debug(f"Dropped out-of-order response #{sequence} for {key}")
                return current.records
            self._cache[key] = CacheEntry(records, self.clock(), sequence)
            return records

    def is_fresh(self, layer: str) -> bool:
        key = self.cache_key(layer)
        entry = self._cache.get(key) if key is not None else None
        return entry is not None and self.clock() - entry.fetched_at < self.policies[layer].stale_after

    def query(self, layer: str, force: bool = False) -> List[Any]:
        """Render-ready records for `layer` at the current viewport."""
        policy = self.policies[layer]
        if self.is_gated(layer):
            return []
        key = self.cache_key(layer)
        if key is None:
            return []
        if not force:
            entry = self._cache.get(key)
            if entry is not None and self.clock() - entry.fetched_at < policy.stale_after:
                return policy.render(entry.records)
        return policy.render(self._fetch(layer, key))

    def refresh(self, layers: Optional[Iterable[str]] = None) -> Dict[str, List[Any]]:
        """Query several layers concurrently (default: the visible ones)."""
        layers = list(self.visible_layers() if layers is None else layers)
        results = self._executor.map(self.query, layers)
        return dict(zip(layers, results))

    def poll(self, layers: Optional[Iterable[str]] = None) -> Dict[str, List[Any]]:
        """Refetch layers whose entries are older than their refetch interval."""
        due = []
        for layer in (self.visible_layers() if layers is None else layers):
            policy = self.policies[layer]
            if policy.refetch_interval is None or self.is_gated(layer):
                continue
            key = self.cache_key(layer)
            entry = self._cache.get(key) if key is not None else None
            if entry is None or self.clock() - entry.fetched_at >= policy.refetch_interval:
                due.append(layer)
        results = self._executor.map(lambda name: self.query(name, force=True), due)
        return dict(zip(due, results))

    def invalidate(self, layer: Optional[str] = None):
        with self._lock:
            if layer is None:
                self._cache.clear()
            else:
                for key in [k for k in self._cache if k[0] == layer]:
                    del self._cache[key]

    def marine_vessels(self) -> List[Dict[str, Any]]:
        if self.marine is None or not self.visible.get("marine"):
            return []
        return self.marine.snapshot()

    # -------------------------
    # Health
    # -------------------------
    def fetch_health(self, force: bool = False) -> Dict[str, str]:
        if not force and self._health_at is not None and self.clock() - self._health_at < HEALTH_STALE_AFTER:
            return self._health
        payload = self._request("/api/health", {})
        if isinstance(payload, dict):
            self._health = {str(k): str(v) for k, v in payload.items()}
            self._health_at = self.clock()
            for feed in degraded_feeds(self._health):
                logger.warning(f"Layer {feed} degraded: data feed is temporarily unavailable")
        return self._health

    def health_indicator(self) -> str:
        return aggregate_health(self.fetch_health())

    def degraded_feeds(self) -> List[str]:
        return degraded_feeds(self.fetch_health())

    def close(self):
        self._executor.shutdown(wait=True)
        if self.marine is not None:
            self.marine.stop()
        self.session.close()
