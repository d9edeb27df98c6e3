#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
marine_stream.py - Live vessel positions from AISStream.io

Owns at most one websocket at a time. Every viewport change closes the
current socket and then opens a new one subscribed to the new bounds.
Position reports are upserted by MMSI; a report older than the stored one
is ignored, so duplicates and reordering across reconnects are harmless.

Bounds are any object with south/west/north/east attributes.
"""

import asyncio
import json
import logging
import os
import re
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

logger = logging.getLogger("iaware-marine")

AISSTREAM_URL = "wss://stream.aisstream.io/v0/stream"
AISSTREAM_API_KEY = os.environ.get("AISSTREAM_API_KEY")

# "2024-05-01 12:30:45.123456789 +0000 UTC" and ISO 8601 variants
_TIME_UTC_RE = re.compile(r"(\d{4}-\d{2}-\d{2})[ T](\d{2}:\d{2}:\d{2})(?:\.(\d+))?")


def parse_time_utc(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    match = _TIME_UTC_RE.match(value.strip())
    if not match:
        return None
    day, clock, fraction = match.groups()
    stamp = datetime.strptime(f"{day} {clock}", "%Y-%m-%d %H:%M:%S")
    if fraction:
        stamp = stamp.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    return stamp.replace(tzinfo=timezone.utc)


class VesselState:
    """Latest known position of one vessel"""

    def __init__(self, mmsi: int, name: str, latitude: float, longitude: float,
                 cog: float = 0.0, sog: float = 0.0, heading: float = 0.0,
                 ship_type: int = 0, timestamp: Optional[datetime] = None):
        self.mmsi = mmsi
        self.name = name
        self.latitude = latitude
        self.longitude = longitude
        self.cog = cog
        self.sog = sog
        self.heading = heading
        self.ship_type = ship_type
        # None when the report carried no usable time_utc
        self.timestamp = timestamp

    @classmethod
    def from_position_report(cls, message: Dict[str, Any]) -> Optional["VesselState"]:
        """Build a state from an AISStream PositionReport envelope, None if unusable."""
        if message.get("MessageType") != "PositionReport":
            return None
        body = message.get("Message")
        report = body.get("PositionReport") if isinstance(body, dict) else None
        meta = message.get("MetaData")
        report = report if isinstance(report, dict) else {}
        meta = meta if isinstance(meta, dict) else {}
        mmsi = meta.get("MMSI", report.get("UserID"))
        latitude = report.get("Latitude", meta.get("latitude"))
        longitude = report.get("Longitude", meta.get("longitude"))
        if mmsi is None or latitude is None or longitude is None:
            return None

        cog = report.get("Cog") or 0
        # 511 means "not available" in AIS
        true_heading = report.get("TrueHeading")
        heading = true_heading if true_heading not in (None, 511) else cog
        name = (meta.get("ShipName") or "").strip() or f"MMSI {mmsi}"
        return cls(
            mmsi=int(mmsi),
            name=name,
            latitude=float(latitude),
            longitude=float(longitude),
            cog=float(cog),
            sog=float(report.get("Sog") or 0),
            heading=float(heading or 0),
            ship_type=int(meta.get("ShipType") or 0),
            timestamp=parse_time_utc(meta.get("time_utc")),
        )

    def is_older_than(self, other: "VesselState") -> bool:
        # Reports without a timestamp cannot be ordered, so they always win
        if self.timestamp is None or other.timestamp is None:
            return False
        return self.timestamp < other.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mmsi": self.mmsi,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "cog": self.cog,
            "sog": self.sog,
            "heading": self.heading,
            "shipType": self.ship_type,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


def subscription_message(api_key: str, bounds) -> Dict[str, Any]:
    return {
        "APIKey": api_key,
        "BoundingBoxes": [[[bounds.south, bounds.west], [bounds.north, bounds.east]]],
        "FiltersShipMMSI": [],
        "FilterMessageTypes": ["PositionReport"],
    }


class MarineStream:
    """
    Single-owner AISStream connection.

    The coroutine API (open/close) runs on any event loop. The sync facade
    (retarget/disconnect/stop) runs it on a private background loop thread.
    """

    def __init__(self, api_key: Optional[str] = AISSTREAM_API_KEY, url: str = AISSTREAM_URL,
                 connect: Optional[Callable] = None):
        self.api_key = api_key
        self.url = url
        self.connect = connect or websockets.connect
        self.bounds = None
        self._vessels: Dict[int, VesselState] = {}
        self._lock = threading.Lock()
        self._socket = None
        self._reader: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @property
    def connected(self) -> bool:
        return self._socket is not None

    # -------------------------
    # Vessel table
    # -------------------------
    def handle_message(self, raw: Any) -> bool:
        """Upsert one inbound message; returns True when the table changed."""
        try:
            message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError:
            logger.debug("Dropped non-JSON AIS message")
            return False
        if not isinstance(message, dict):
            return False
        try:
            vessel = VesselState.from_position_report(message)
        except (AttributeError, TypeError, ValueError):
            logger.debug("Dropped malformed PositionReport")
            return False
        if vessel is None:
            return False

        with self._lock:
            current = self._vessels.get(vessel.mmsi)
            if current is not None and vessel.is_older_than(current):
                return False
            self._vessels[vessel.mmsi] = vessel
        return True

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [v.to_dict() for v in self._vessels.values()]

    def clear(self):
        with self._lock:
            self._vessels.clear()

    # -------------------------
    # Connection (coroutines)
    # -------------------------
    async def open(self, bounds) -> bool:
        """Close the current socket, then subscribe a new one to `bounds`."""
        await self.close()
        if not self.enabled:
            logger.info("AISSTREAM_API_KEY not set, marine feed disabled")
            return False

        self.bounds = bounds
        try:
            socket = await self.connect(self.url, ping_interval=20, ping_timeout=10, close_timeout=5)
        except (OSError, asyncio.TimeoutError, InvalidHandshake) as e:
            logger.warning(f"[AISStream] connect failed: {e.__class__.__name__}")
            return False
        try:
            await socket.send(json.dumps(subscription_message(self.api_key, bounds)))
        except ConnectionClosed as e:
            logger.warning(f"[AISStream] subscribe failed: {e.__class__.__name__}")
            await socket.close()
            return False

        self._socket = socket
        self._reader = asyncio.ensure_future(self._read(socket))
        logger.info(
            f"[AISStream] subscribed to {bounds.south:.2f},{bounds.west:.2f},"
            f"{bounds.north:.2f},{bounds.east:.2f}"
        )
        return True

    async def _read(self, socket):
        try:
            async for raw in socket:
                try:
                    self.handle_message(raw)
                except Exception:
                    logger.exception("[AISStream] failed to handle message")
        except ConnectionClosed as e:
            logger.info(f"[AISStream] connection closed: {e.__class__.__name__}")

    async def close(self):
        socket, reader = self._socket, self._reader
        self._socket, self._reader = None, None
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if socket is not None:
            await socket.close()
            logger.debug("[AISStream] socket closed")

    # -------------------------
    # Sync facade
    # -------------------------
    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._loop.run_forever, name="marine-stream", daemon=True)
            self._thread.start()
        return self._loop

    def retarget(self, bounds, timeout: float = 15.0) -> bool:
        if not self.enabled:
            return False
        future = asyncio.run_coroutine_threadsafe(self.open(bounds), self._ensure_loop())
        return future.result(timeout)

    def disconnect(self, timeout: float = 10.0):
        if self._loop is None:
            return
        asyncio.run_coroutine_threadsafe(self.close(), self._loop).result(timeout)

    def stop(self, timeout: float = 10.0):
        if self._loop is None:
            return
        self.disconnect(timeout)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        self._loop.close()
        self._loop, self._thread = None, None
