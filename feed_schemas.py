#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
feed_schemas.py - Query models, feed records and vendor response schemas

Query models coerce raw query-string values (numeric strings -> floats).
Record models are the stable shapes returned by the gateway; they serialize
with camelCase keys (icao24, originCountry, onGround, ...).
Vendor models describe just enough of each upstream payload to decode it.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# MediaWiki geosearch refuses radii outside 10..10000 m
WIKI_MIN_RADIUS = 10.0
WIKI_MAX_RADIUS = 10000.0

HAZARD_CATEGORIES = ("wildfires", "severeStorms")


# -------------------------
# Queries
# -------------------------
class _Query(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)


class BoundingBox(_Query):
    south: float
    west: float
    north: float
    east: float

    @model_validator(mode="after")
    def _non_degenerate(self):
        if self.south >= self.north or self.west >= self.east:
            raise ValueError("bounding box must satisfy south < north and west < east")
        return self

    def as_overpass(self) -> str:
        return f"{self.south},{self.west},{self.north},{self.east}"


class GeoPointQuery(_Query):
    lat: float
    lon: float
    radius: float = 10000.0

    @field_validator("radius")
    @classmethod
    def _clamp_radius(cls, value: float) -> float:
        return min(max(value, WIKI_MIN_RADIUS), WIKI_MAX_RADIUS)


class ReverseGeocodeQuery(_Query):
    lat: float
    lon: float


# -------------------------
# Records
# -------------------------
class FeedRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class FlightRecord(FeedRecord):
    icao24: str
    callsign: Optional[str] = None
    origin_country: Optional[str] = None
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    baro_altitude: Optional[float] = None
    on_ground: bool = False
    velocity: Optional[float] = None
    true_track: Optional[float] = None
    vertical_rate: Optional[float] = None
    geo_altitude: Optional[float] = None

    @classmethod
    def from_state_vector(cls, row: List[Any]) -> "FlightRecord":
        """Map an OpenSky state vector (positional array) onto named fields."""

        def at(index):
            return row[index] if index < len(row) else None

        callsign = at(1)
        if isinstance(callsign, str):
            callsign = callsign.strip() or None
        return cls(
            icao24=at(0),
            callsign=callsign,
            origin_country=at(2),
            longitude=at(5),
            latitude=at(6),
            baro_altitude=at(7),
            on_ground=bool(at(8)),
            velocity=at(9),
            true_track=at(10),
            vertical_rate=at(11),
            geo_altitude=at(13),
        )

    @property
    def plottable(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class HazardCategory(FeedRecord):
    id: str
    title: str = ""


class HazardGeometry(FeedRecord):
    date: Optional[str] = None
    type: str = "Point"
    coordinates: List[Any] = Field(default_factory=list)


class HazardEvent(FeedRecord):
    id: str
    title: str
    description: str = ""
    categories: List[HazardCategory] = Field(default_factory=list)
    geometry: List[HazardGeometry] = Field(default_factory=list)

    @field_validator("description", mode="before")
    @classmethod
    def _blank_description(cls, value):
        return value or ""

    def in_categories(self, category_ids) -> bool:
        return any(c.id in category_ids for c in self.categories)


class WikiArticle(FeedRecord):
    pageid: int
    title: str
    lat: float
    lon: float
    dist: float = 0.0


class SurveillanceCamera(FeedRecord):
    id: int
    lat: float
    lon: float
    tags: Dict[str, Any] = Field(default_factory=dict)


class GeometryPoint(FeedRecord):
    lat: float
    lon: float


class MilitaryElement(FeedRecord):
    type: str
    id: int
    geometry: List[GeometryPoint] = Field(default_factory=list)
    tags: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_polygon(self) -> bool:
        return len(self.geometry) > 2


# -------------------------
# Vendor envelopes
# -------------------------
class _Vendor(BaseModel):
    model_config = ConfigDict(extra="ignore")


class OpenSkyStates(_Vendor):
    time: Optional[int] = None
    states: Optional[List[List[Any]]] = None


class EonetEvents(_Vendor):
    events: List[Dict[str, Any]] = Field(default_factory=list)


class WikiQuery(_Vendor):
    geosearch: List[Dict[str, Any]] = Field(default_factory=list)


class WikiGeoSearch(_Vendor):
    query: Optional[WikiQuery] = None


class OverpassElements(_Vendor):
    elements: List[Dict[str, Any]] = Field(default_factory=list)
    # Set by Overpass when the query itself failed, e.g. "runtime error: Query timed out ..."
    remark: Optional[str] = None

    def runtime_error(self) -> bool:
        return bool(self.remark) and self.remark.lstrip().lower().startswith("runtime error")


class GeoJsonFeatureCollection(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    features: List[Dict[str, Any]]

    @field_validator("type")
    @classmethod
    def _feature_collection(cls, value: str) -> str:
        if value != "FeatureCollection":
            raise ValueError("not a FeatureCollection")
        return value


class NominatimReverse(_Vendor):
    display_name: Optional[str] = None
    address: Optional[Dict[str, Any]] = None


def empty_feature_collection() -> Dict[str, Any]:
    return {"type": "FeatureCollection", "features": []}
