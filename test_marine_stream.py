#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
test_marine_stream.py - Unit tests for marine_stream.py

The websocket is a fake connection object:
  - PositionReport parsing and upsert by MMSI
  - duplicate / older reports after reconnect are ignored
  - malformed envelopes are dropped without stopping the reader
  - close-before-reopen on retarget, one socket at a time
  - subscription message shape
  - disabled without an API key
"""

import asyncio
import json
import unittest

from marine_stream import MarineStream, VesselState, parse_time_utc, subscription_message
from viewport_controller import Bounds


def position_report(mmsi, lat, lon, time_utc, name="EVER GIVEN   ", heading=90, cog=88.5, sog=12.3):
    return json.dumps({
        "MessageType": "PositionReport",
        "MetaData": {"MMSI": mmsi, "ShipName": name, "time_utc": time_utc},
        "Message": {"PositionReport": {
            "UserID": mmsi, "Latitude": lat, "Longitude": lon,
            "Cog": cog, "Sog": sog, "TrueHeading": heading,
        }},
    })


class FakeSocket:
    def __init__(self, name, events, messages=()):
        self.name = name
        self.events = events
        self.messages = list(messages)
        self.sent = []
        self.closed = asyncio.Event()
        self.drained = asyncio.Event()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.events.append(("close", self.name))
        self.closed.set()

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        for message in self.messages:
            yield message
        self.drained.set()
        await self.closed.wait()


class FakeConnector:
    def __init__(self, scripted_messages=None):
        self.events = []
        self.sockets = []
        self.kwargs = []
        self.scripted_messages = scripted_messages or {}

    async def __call__(self, url, **kwargs):
        name = len(self.sockets)
        self.events.append(("open", name))
        self.kwargs.append(kwargs)
        socket = FakeSocket(name, self.events, self.scripted_messages.get(name, ()))
        self.sockets.append(socket)
        return socket


class TestVesselTable(unittest.TestCase):

    def setUp(self):
        self.stream = MarineStream(api_key="key")

    def test_position_report_parsed(self):
        self.assertTrue(self.stream.handle_message(position_report(244660000, 51.9, 4.1, "2024-05-01 12:00:00.5 +0000 UTC")))
        vessel = self.stream.snapshot()[0]
        self.assertEqual(vessel["mmsi"], 244660000)
        self.assertEqual(vessel["name"], "EVER GIVEN")
        self.assertEqual(vessel["heading"], 90.0)
        self.assertEqual(vessel["sog"], 12.3)

    def test_upsert_by_mmsi(self):
        self.stream.handle_message(position_report(1, 10.0, 10.0, "2024-05-01 12:00:00 +0000 UTC"))
        self.stream.handle_message(position_report(1, 10.5, 10.5, "2024-05-01 12:00:05 +0000 UTC"))
        self.stream.handle_message(position_report(2, 20.0, 20.0, "2024-05-01 12:00:01 +0000 UTC"))
        vessels = {v["mmsi"]: v for v in self.stream.snapshot()}
        self.assertEqual(len(vessels), 2)
        self.assertEqual(vessels[1]["latitude"], 10.5)

    def test_older_and_duplicate_reports(self):
        newer = position_report(1, 10.5, 10.5, "2024-05-01 12:00:05 +0000 UTC")
        older = position_report(1, 9.0, 9.0, "2024-05-01 12:00:01 +0000 UTC")
        self.assertTrue(self.stream.handle_message(newer))
        self.assertFalse(self.stream.handle_message(older))
        self.assertTrue(self.stream.handle_message(newer))
        self.assertEqual(self.stream.snapshot()[0]["latitude"], 10.5)
        self.assertEqual(len(self.stream.snapshot()), 1)

    def test_unusable_messages_ignored(self):
        for raw in ("not json", "[]", json.dumps({"MessageType": "ShipStaticData"}),
                    json.dumps({"MessageType": "PositionReport", "MetaData": {"MMSI": 5}, "Message": {}})):
            self.assertFalse(self.stream.handle_message(raw))
        self.assertEqual(self.stream.snapshot(), [])

    def test_malformed_envelopes_dropped(self):
        for message in (
            {"MessageType": "PositionReport", "Message": ["x"]},
            {"MessageType": "PositionReport", "Message": {"PositionReport": "x"}, "MetaData": {"MMSI": 5}},
            {"MessageType": "PositionReport", "MetaData": {"MMSI": 5, "ShipName": 42},
             "Message": {"PositionReport": {"Latitude": 1.0, "Longitude": 1.0}}},
        ):
            self.assertFalse(self.stream.handle_message(json.dumps(message)))
        self.assertEqual(self.stream.snapshot(), [])

    def test_metadata_not_a_dict_uses_report_fields(self):
        raw = json.dumps({"MessageType": "PositionReport", "MetaData": "oops",
                          "Message": {"PositionReport": {"UserID": 5, "Latitude": 1.0, "Longitude": 2.0}}})
        self.assertTrue(self.stream.handle_message(raw))
        vessel = self.stream.snapshot()[0]
        self.assertEqual((vessel["mmsi"], vessel["name"]), (5, "MMSI 5"))
        self.assertIsNone(vessel["timestamp"])

    def test_report_without_time_never_blocks_upsert(self):
        self.assertTrue(self.stream.handle_message(position_report(4, 1.0, 1.0, None)))
        self.assertTrue(self.stream.handle_message(position_report(4, 2.0, 2.0, "2000-01-01 00:00:00 +0000 UTC")))
        self.assertEqual(self.stream.snapshot()[0]["latitude"], 2.0)
        self.assertTrue(self.stream.handle_message(position_report(4, 3.0, 3.0, None)))
        self.assertEqual(self.stream.snapshot()[0]["latitude"], 3.0)

    def test_heading_not_available_falls_back_to_course(self):
        self.stream.handle_message(position_report(3, 1.0, 1.0, "2024-05-01 12:00:00 +0000 UTC", heading=511, cog=45))
        self.assertEqual(self.stream.snapshot()[0]["heading"], 45.0)

    def test_blank_name(self):
        self.stream.handle_message(position_report(77, 1.0, 1.0, "2024-05-01 12:00:00 +0000 UTC", name="   "))
        self.assertEqual(self.stream.snapshot()[0]["name"], "MMSI 77")

    def test_parse_time_utc(self):
        stamp = parse_time_utc("2024-05-01 12:30:45.123456789 +0000 UTC")
        self.assertEqual((stamp.hour, stamp.minute, stamp.second, stamp.microsecond), (12, 30, 45, 123456))
        self.assertIsNone(parse_time_utc("yesterday"))
        self.assertIsNone(parse_time_utc(None))

    def test_vessel_state_requires_position(self):
        self.assertIsNone(VesselState.from_position_report({"MessageType": "PositionReport", "MetaData": {}}))


class TestMarineConnection(unittest.IsolatedAsyncioTestCase):

    async def test_subscription_for_bounds(self):
        connector = FakeConnector()
        stream = MarineStream(api_key="secret", connect=connector)
        self.assertTrue(await stream.open(Bounds(50, 0, 52, 5)))
        self.assertEqual(connector.sockets[0].sent, [{
            "APIKey": "secret",
            "BoundingBoxes": [[[50, 0], [52, 5]]],
            "FiltersShipMMSI": [],
            "FilterMessageTypes": ["PositionReport"],
        }])
        self.assertEqual(connector.kwargs[0]["ping_interval"], 20)
        await stream.close()

    async def test_close_before_reopen(self):
        connector = FakeConnector()
        stream = MarineStream(api_key="secret", connect=connector)
        await stream.open(Bounds(0, 0, 1, 1))
        await stream.open(Bounds(1, 1, 2, 2))
        await stream.open(Bounds(2, 2, 3, 3))
        self.assertEqual(connector.events, [
            ("open", 0), ("close", 0), ("open", 1), ("close", 1), ("open", 2),
        ])
        self.assertTrue(stream.connected)
        await stream.close()
        self.assertFalse(stream.connected)
        self.assertEqual(connector.events[-1], ("close", 2))

    async def test_messages_flow_into_table(self):
        connector = FakeConnector({0: [
            position_report(1, 10.0, 10.0, "2024-05-01 12:00:00 +0000 UTC"),
            position_report(2, 11.0, 11.0, "2024-05-01 12:00:00 +0000 UTC"),
        ]})
        stream = MarineStream(api_key="secret", connect=connector)
        await stream.open(Bounds(0, 0, 20, 20))
        await asyncio.wait_for(connector.sockets[0].drained.wait(), timeout=2)
        self.assertEqual(sorted(v["mmsi"] for v in stream.snapshot()), [1, 2])
        await stream.close()

    async def test_bad_message_does_not_stop_reader(self):
        bad = json.dumps({"MessageType": "PositionReport", "Message": ["x"], "MetaData": "oops"})
        connector = FakeConnector({0: [bad, "\x00garbage", position_report(9, 5.0, 5.0, "2024-05-01 12:00:00 +0000 UTC")]})
        stream = MarineStream(api_key="secret", connect=connector)
        await stream.open(Bounds(0, 0, 20, 20))
        await asyncio.wait_for(connector.sockets[0].drained.wait(), timeout=2)
        self.assertEqual([v["mmsi"] for v in stream.snapshot()], [9])
        self.assertTrue(stream.connected)
        self.assertFalse(stream._reader.done())
        await stream.close()

    async def test_disabled_without_api_key(self):
        connector = FakeConnector()
        stream = MarineStream(api_key=None, connect=connector)
        self.assertFalse(await stream.open(Bounds(0, 0, 1, 1)))
        self.assertEqual(connector.events, [])

    async def test_connect_failure(self):
        async def refuse(url, **kwargs):
            raise OSError("connection refused")

        stream = MarineStream(api_key="secret", connect=refuse)
        self.assertFalse(await stream.open(Bounds(0, 0, 1, 1)))
        self.assertFalse(stream.connected)


class TestSyncFacade(unittest.TestCase):

    def test_retarget_on_background_loop(self):
        connector = FakeConnector()
        stream = MarineStream(api_key="secret", connect=connector)
        self.assertTrue(stream.retarget(Bounds(0, 0, 1, 1)))
        self.assertTrue(stream.retarget(Bounds(1, 1, 2, 2)))
        stream.stop()
        self.assertEqual(connector.events, [("open", 0), ("close", 0), ("open", 1), ("close", 1)])

    def test_retarget_disabled(self):
        stream = MarineStream(api_key="")
        self.assertFalse(stream.retarget(Bounds(0, 0, 1, 1)))
        stream.stop()

    def test_subscription_message_helper(self):
        message = subscription_message("k", Bounds(-1, -2, 3, 4))
        self.assertEqual(message["BoundingBoxes"], [[[-1, -2], [3, 4]]])


if __name__ == "__main__":
    unittest.main()
