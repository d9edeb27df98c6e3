#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
feed_adapters.py - Upstream feed adapters

One adapter per external data source. Each adapter:
- validates/coerces the client query (invalid -> empty result, no upstream call)
- calls the upstream API with scrubbed headers (fixed user agent, no
  forwarding chain, no caller address)
- classifies the outcome into the health registry (one write per call attempt)
- decodes the vendor payload into stable records

Feed endpoints never fail: every problem collapses into the feed's empty
payload so the map degrades per layer.
"""

import logging
import os
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
from pydantic import BaseModel, ValidationError

from feed_schemas import (
    HAZARD_CATEGORIES,
    BoundingBox,
    EonetEvents,
    FlightRecord,
    GeoJsonFeatureCollection,
    GeoPointQuery,
    HazardEvent,
    MilitaryElement,
    NominatimReverse,
    OpenSkyStates,
    OverpassElements,
    ReverseGeocodeQuery,
    SurveillanceCamera,
    WikiArticle,
    WikiGeoSearch,
    empty_feature_collection,
)
from health_registry import HealthRegistry

logger = logging.getLogger("iaware-feeds")

# Generic browser string shared by every caller, identifies nobody
UPSTREAM_USER_AGENT = os.environ.get(
    "UPSTREAM_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)
UPSTREAM_TIMEOUT_SECONDS = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "20"))
OVERPASS_URL = os.environ.get("OVERPASS_URL", "https://overpass-api.de/api/interpreter")

OPENSKY_URL = "https://opensky-network.org/api/states/all"
EONET_URL = "https://eonet.gsfc.nasa.gov/api/v3/events"
WIKIPEDIA_URL = "https://en.wikipedia.org/w/api.php"
GDACS_URL = "https://www.gdacs.org/gdacsapi/api/events/geteventlist/MAP"
CABLES_URL = "https://www.submarinecablemap.com/api/v3/cable/cable-geo.json"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/reverse"

SURVEILLANCE_QUERY_TIMEOUT = 10
MILITARY_QUERY_TIMEOUT = 15
# HTTP deadline a little above the Overpass server-side timeout, never past the cap
OVERPASS_GRACE_SECONDS = 5
OVERPASS_MAX_DEADLINE_SECONDS = 15

# Headers that reveal the caller or its proxy chain
FORWARDING_HEADERS = frozenset({
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "forwarded",
    "via",
    "x-real-ip",
    "x-client-ip",
    "true-client-ip",
    "cf-connecting-ip",
})


def scrub_outbound_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Drop forwarding headers and pin the user agent."""
    clean = {k: v for k, v in headers.items() if k.lower() not in FORWARDING_HEADERS}
    clean = {k: v for k, v in clean.items() if k.lower() != "user-agent"}
    clean["User-Agent"] = UPSTREAM_USER_AGENT
    return clean


def build_upstream_session() -> requests.Session:
    session = requests.Session()
    # No proxy/netrc settings from the environment leak into outbound calls
    session.trust_env = False
    session.headers.clear()
    session.headers.update(scrub_outbound_headers({"Accept": "application/json"}))
    return session


class OutboundRequest:
    """Method, URL and payload for one upstream call"""

    def __init__(self, url: str, method: str = "GET",
                 params: Optional[Dict[str, Any]] = None,
                 data: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None,
                 timeout: float = UPSTREAM_TIMEOUT_SECONDS):
        self.url = url
        self.method = method
        self.params = params
        self.data = data
        self.headers = headers or {}
        self.timeout = timeout


class FeedAdapter:
    """
    Base adapter.

    Subclasses set `name` and `query_model`, and implement `build_request`
    and `normalize`. `empty` returns the feed's empty payload.
    """

    name = ""
    query_model: Optional[type] = None

    def __init__(self, health: HealthRegistry, session: Optional[requests.Session] = None):
        self.health = health
        self.session = session or build_upstream_session()

    def empty(self) -> Any:
        return []

    def invalid(self) -> Any:
        return self.empty()

    def parse_query(self, params: Mapping[str, Any]) -> Optional[BaseModel]:
        if self.query_model is None:
            return None
        try:
            return self.query_model.model_validate(dict(params))
        except ValidationError as e:
            logger.debug(f"[{self.name}] rejected query: {e.errors(include_url=False)}")
            return None

    def build_request(self, query: Optional[BaseModel]) -> OutboundRequest:
        raise NotImplementedError

    def normalize(self, payload: Any) -> Any:
        raise NotImplementedError

    def payload_failed(self, payload: Any) -> bool:
        """True when a 2xx body reports that the upstream query itself failed."""
        return False

    def call_upstream(self, outbound: OutboundRequest) -> Optional[requests.Response]:
        """One upstream attempt; returns None on network error/timeout."""
        headers = scrub_outbound_headers({"Accept": "application/json", **outbound.headers})
        try:
            return self.session.request(
                outbound.method,
                outbound.url,
                params=outbound.params,
                data=outbound.data,
                headers=headers,
                timeout=outbound.timeout,
            )
        except requests.Timeout:
            logger.warning(f"[{self.name}] upstream timed out after {outbound.timeout}s")
        except requests.RequestException as e:
            logger.warning(f"[{self.name}] upstream request failed: {e.__class__.__name__}")
        except Exception:
            logger.exception(f"[{self.name}] upstream request raised")
        return None

    def fetch(self, params: Optional[Mapping[str, Any]] = None) -> Any:
        query = None
        if self.query_model is not None:
            query = self.parse_query(params or {})
            if query is None:
                return self.invalid()

        response = self.call_upstream(self.build_request(query))
        if response is None:
            self.health.mark_failed(self.name)
            return self.empty()
        if not response.ok:
            logger.warning(f"[{self.name}] upstream answered HTTP {response.status_code}")
            self.health.mark_failed(self.name)
            return self.empty()

        try:
            payload = response.json()
        except ValueError:
            self.health.mark_ok(self.name)
            logger.warning(f"[{self.name}] upstream returned non-JSON body")
            return self.empty()
        if self.payload_failed(payload):
            self.health.mark_failed(self.name)
            return self.empty()

        self.health.mark_ok(self.name)
        try:
            return self.normalize(payload)
        except ValidationError as e:
            logger.warning(f"[{self.name}] unexpected payload shape: {e.error_count()} error(s)")
            return self.empty()


def decode_each(model: type, items: List[Dict[str, Any]], feed: str,
                build: Optional[Callable[[Any], BaseModel]] = None) -> List[BaseModel]:
    """Decode records one by one; malformed entries are skipped."""
    records = []
    for item in items:
        try:
            records.append(build(item) if build else model.model_validate(item))
        except (ValidationError, TypeError):
            logger.debug(f"[{feed}] skipped malformed record")
    return records


# -------------------------
# Aviation (OpenSky)
# -------------------------
class AviationAdapter(FeedAdapter):
    name = "aviation"
    query_model = BoundingBox

    def build_request(self, query: BoundingBox) -> OutboundRequest:
        return OutboundRequest(OPENSKY_URL, params={
            "lamin": query.south,
            "lomin": query.west,
            "lamax": query.north,
            "lomax": query.east,
        })

    def normalize(self, payload: Any) -> List[Dict[str, Any]]:
        envelope = OpenSkyStates.model_validate(payload)
        if not envelope.states:
            return []
        flights = decode_each(FlightRecord, envelope.states, self.name, build=FlightRecord.from_state_vector)
        return [f.to_json() for f in flights]


# -------------------------
# Hazards (NASA EONET)
# -------------------------
class HazardsAdapter(FeedAdapter):
    name = "hazards"

    def build_request(self, query: None) -> OutboundRequest:
        return OutboundRequest(EONET_URL, params={"status": "open"})

    def normalize(self, payload: Any) -> List[Dict[str, Any]]:
        envelope = EonetEvents.model_validate(payload)
        events = decode_each(HazardEvent, envelope.events, self.name)
        # Only wildfires and severe storms are mapped
        return [e.to_json() for e in events if e.in_categories(HAZARD_CATEGORIES)]


# -------------------------
# Wikipedia geosearch
# -------------------------
class WikipediaAdapter(FeedAdapter):
    name = "wikipedia"
    query_model = GeoPointQuery

    def build_request(self, query: GeoPointQuery) -> OutboundRequest:
        return OutboundRequest(WIKIPEDIA_URL, params={
            "action": "query",
            "list": "geosearch",
            "gscoord": f"{query.lat}|{query.lon}",
            "gsradius": int(query.radius),
            "gslimit": 50,
            "format": "json",
        })

    def normalize(self, payload: Any) -> List[Dict[str, Any]]:
        envelope = WikiGeoSearch.model_validate(payload)
        if envelope.query is None:
            return []
        return [a.to_json() for a in decode_each(WikiArticle, envelope.query.geosearch, self.name)]


# -------------------------
# Overpass-backed feeds
# -------------------------
class OverpassAdapter(FeedAdapter):
    """Interpolates the bounding box into a fixed Overpass QL template"""

    query_model = BoundingBox
    query_timeout = 10
    template = ""

    def overpass_query(self, box: BoundingBox) -> str:
        return self.template.format(timeout=self.query_timeout, bbox=box.as_overpass())

    def build_request(self, query: BoundingBox) -> OutboundRequest:
        return OutboundRequest(
            OVERPASS_URL,
            method="POST",
            data={"data": self.overpass_query(query)},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=min(self.query_timeout + OVERPASS_GRACE_SECONDS, OVERPASS_MAX_DEADLINE_SECONDS),
        )

    def payload_failed(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            return False
        try:
            envelope = OverpassElements.model_validate(payload)
        except ValidationError:
            return False
        if envelope.runtime_error():
            logger.warning(f"[{self.name}] overpass query failed: {envelope.remark[:80]}")
            return True
        return False


class SurveillanceAdapter(OverpassAdapter):
    name = "surveillance"
    query_timeout = SURVEILLANCE_QUERY_TIMEOUT
    template = '[out:json][timeout:{timeout}];node["man_made"="surveillance"]({bbox});out body;'

    def normalize(self, payload: Any) -> List[Dict[str, Any]]:
        envelope = OverpassElements.model_validate(payload)
        return [c.to_json() for c in decode_each(SurveillanceCamera, envelope.elements, self.name)]


class MilitaryAdapter(OverpassAdapter):
    name = "military"
    query_timeout = MILITARY_QUERY_TIMEOUT
    template = (
        '[out:json][timeout:{timeout}];'
        '(way["landuse"="military"]({bbox});way["military"]({bbox}););'
        'out geom;'
    )

    def empty(self) -> Dict[str, Any]:
        return {"elements": []}

    def normalize(self, payload: Any) -> Dict[str, Any]:
        envelope = OverpassElements.model_validate(payload)
        elements = decode_each(MilitaryElement, envelope.elements, self.name)
        return {"elements": [e.to_json() for e in elements]}


# -------------------------
# GeoJSON passthrough feeds
# -------------------------
class GeoJsonPassthroughAdapter(FeedAdapter):
    url = ""

    def empty(self) -> Dict[str, Any]:
        return empty_feature_collection()

    def build_request(self, query: None) -> OutboundRequest:
        return OutboundRequest(self.url)

    def normalize(self, payload: Any) -> Dict[str, Any]:
        GeoJsonFeatureCollection.model_validate(payload)
        return payload


class GdacsAdapter(GeoJsonPassthroughAdapter):
    name = "gdacs"
    url = GDACS_URL


class CablesAdapter(GeoJsonPassthroughAdapter):
    name = "cables"
    url = CABLES_URL


# -------------------------
# Reverse geocode (Nominatim)
# -------------------------
class ReverseGeocodeAdapter(FeedAdapter):
    """Answers with a payload-level error instead of an empty list"""

    name = "geocode"
    query_model = ReverseGeocodeQuery

    def empty(self) -> Dict[str, Any]:
        return {"error": "Geocoding failed"}

    def invalid(self) -> Dict[str, Any]:
        return {"error": "Invalid parameters"}

    def build_request(self, query: ReverseGeocodeQuery) -> OutboundRequest:
        return OutboundRequest(NOMINATIM_URL, params={
            "format": "json",
            "lat": query.lat,
            "lon": query.lon,
            "zoom": 10,
        })

    def normalize(self, payload: Any) -> Dict[str, Any]:
        place = NominatimReverse.model_validate(payload)
        address = place.address or {}
        return {
            "zipCode": address.get("postcode"),
            "display_name": place.display_name,
            "address": address,
        }


ADAPTER_CLASSES = (
    AviationAdapter,
    HazardsAdapter,
    WikipediaAdapter,
    SurveillanceAdapter,
    MilitaryAdapter,
    GdacsAdapter,
    CablesAdapter,
    ReverseGeocodeAdapter,
)


def build_adapters(health: HealthRegistry, session: Optional[requests.Session] = None) -> Dict[str, FeedAdapter]:
    session = session or build_upstream_session()
    return {cls.name: cls(health, session) for cls in ADAPTER_CLASSES}
