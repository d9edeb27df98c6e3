#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
overlay_renderer.py - GeoJSON overlays for the map widget

Converts the record sets served by ViewportQueryController into GeoJSON
FeatureCollections. Marker styling lives in each feature's `properties`
(icon, color, rotation, popup lines) for the map library to draw.
Records without a plottable position are skipped.
"""

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

logger = logging.getLogger("iaware-overlay")

AIRCRAFT_COLOR = "#00d4ff"
FIRE_COLOR = "#ff6b35"
STORM_COLOR = "#c084fc"
WIKI_COLOR = "#93c5fd"
CAMERA_COLOR = "#fbbf24"
MILITARY_COLOR = "#ef4444"
CABLE_COLOR = "#38bdf8"
VESSEL_COLOR = "#22d3ee"
GDACS_ALERT_COLORS = {"Red": "#ef4444", "Orange": "#f97316", "Green": "#22c55e"}

WIKIPEDIA_ARTICLE_URL = "https://en.wikipedia.org/wiki/"


def feature_collection(features: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "FeatureCollection", "features": list(features)}


def point_feature(lon: float, lat: float, properties: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "properties": properties,
    }


def _rounded(value: Optional[float], unit: str) -> str:
    return f"{round(value)}{unit}" if value else "N/A"


def render_aviation(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    features = []
    for f in records:
        if f.get("latitude") is None or f.get("longitude") is None:
            continue
        features.append(point_feature(f["longitude"], f["latitude"], {
            "id": f.get("icao24"),
            "icon": "aircraft",
            "color": AIRCRAFT_COLOR,
            "rotation": f.get("trueTrack") or 0,
            "title": f.get("callsign") or f.get("icao24"),
            "popup": [
                f"Country: {f.get('originCountry')}",
                f"Altitude: {_rounded(f.get('baroAltitude'), 'm')}",
                f"Speed: {_rounded(f.get('velocity'), 'm/s')}",
                f"Heading: {_rounded(f.get('trueTrack'), '°')}",
                "Status: On Ground" if f.get("onGround") else "Status: Airborne",
            ],
        }))
    return feature_collection(features)


def render_hazards(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """First geometry entry is taken as the event's position."""
    features = []
    for h in records:
        geometry = h.get("geometry") or []
        if not geometry:
            continue
        coordinates = geometry[0].get("coordinates") or []
        if len(coordinates) < 2 or coordinates[0] is None or coordinates[1] is None:
            continue
        lon, lat = coordinates[0], coordinates[1]
        wildfire = any(c.get("id") == "wildfires" for c in h.get("categories") or [])
        features.append(point_feature(lon, lat, {
            "id": h.get("id"),
            "icon": "fire" if wildfire else "storm",
            "color": FIRE_COLOR if wildfire else STORM_COLOR,
            "title": h.get("title"),
            "popup": [geometry[0].get("date") or "Active"],
        }))
    return feature_collection(features)


def render_wikipedia(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    features = []
    for a in records:
        if a.get("lat") is None or a.get("lon") is None:
            continue
        title = a.get("title") or ""
        features.append(point_feature(a["lon"], a["lat"], {
            "id": a.get("pageid"),
            "icon": "wikipedia",
            "color": WIKI_COLOR,
            "title": title,
            "url": WIKIPEDIA_ARTICLE_URL + quote(title.replace(" ", "_")),
            "popup": [f"{round(a.get('dist') or 0)}m away"],
        }))
    return feature_collection(features)


def render_surveillance(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    features = []
    for c in records:
        if c.get("lat") is None or c.get("lon") is None:
            continue
        tags = c.get("tags") or {}
        popup = []
        if tags.get("surveillance:type"):
            popup.append(f"Type: {tags['surveillance:type']}")
        if tags.get("operator"):
            popup.append(f"Operator: {tags['operator']}")
        if tags.get("description"):
            popup.append(tags["description"])
        features.append(point_feature(c["lon"], c["lat"], {
            "id": c.get("id"),
            "icon": "camera",
            "color": CAMERA_COLOR,
            "title": "Surveillance Camera",
            "popup": popup,
        }))
    return feature_collection(features)


def render_military(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    features = []
    for element in records:
        points = element.get("geometry") or []
        if len(points) <= 2:
            continue
        ring = [[p["lon"], p["lat"]] for p in points]
        if ring[0] != ring[-1]:
            ring.append(ring[0])
        tags = element.get("tags") or {}
        features.append({
            "type": "Feature",
            "geometry": {"type": "Polygon", "coordinates": [ring]},
            "properties": {
                "id": element.get("id"),
                "color": MILITARY_COLOR,
                "weight": 2,
                "fillOpacity": 0.15,
                "title": tags.get("name") or "Military Area",
                "popup": [f"{k}: {v}" for k, v in sorted(tags.items()) if k != "name"],
            },
        })
    return feature_collection(features)


def _styled_passthrough(features: Iterable[Dict[str, Any]],
                        style: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any]:
    styled = []
    for feature in features:
        if not isinstance(feature, dict) or not feature.get("geometry"):
            continue
        properties = dict(feature.get("properties") or {})
        properties.update(style(properties))
        styled.append({**feature, "properties": properties})
    return feature_collection(styled)


def render_gdacs(features: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return _styled_passthrough(features, lambda p: {
        "color": GDACS_ALERT_COLORS.get(p.get("alertlevel"), GDACS_ALERT_COLORS["Green"]),
        "title": p.get("name") or p.get("eventname") or "GDACS alert",
    })


def render_cables(features: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return _styled_passthrough(features, lambda p: {
        "color": p.get("color") or CABLE_COLOR,
        "weight": 2,
        "title": p.get("name") or "Submarine cable",
    })


def render_vessels(vessels: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    features = []
    for v in vessels:
        if v.get("latitude") is None or v.get("longitude") is None:
            continue
        features.append(point_feature(v["longitude"], v["latitude"], {
            "id": v.get("mmsi"),
            "icon": "vessel",
            "color": VESSEL_COLOR,
            "rotation": v.get("heading") or 0,
            "title": v.get("name"),
            "popup": [
                f"MMSI: {v.get('mmsi')}",
                f"Speed: {float(v.get('sog') or 0):.1f} knots",
                f"Course: {float(v.get('cog') or 0):.0f}°",
                f"Heading: {float(v.get('heading') or 0):.0f}°",
            ],
        }))
    return feature_collection(features)


RENDERERS: Dict[str, Callable[[Iterable[Dict[str, Any]]], Dict[str, Any]]] = {
    "aviation": render_aviation,
    "hazards": render_hazards,
    "wikipedia": render_wikipedia,
    "surveillance": render_surveillance,
    "military": render_military,
    "gdacs": render_gdacs,
    "cables": render_cables,
    "marine": render_vessels,
}


def render_layer(layer: str, records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return RENDERERS[layer](records)


# -------------------------
# Saved workspace features
# -------------------------
GEOMETRY_TYPES = {"Point", "MultiPoint", "LineString", "MultiLineString", "Polygon", "MultiPolygon"}


def render_saved_feature(saved: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Style one stored feature for display.

    Circles are stored as a Point with a `radius` property (meters) and are
    returned with shape "circle". Unparseable geojsonData yields None.
    """
    try:
        geojson = json.loads(saved.get("geojsonData") or "")
    except ValueError:
        logger.debug(f"Saved feature {saved.get('id')} has unparseable geojsonData")
        return None
    if not isinstance(geojson, dict):
        return None
    if geojson.get("type") in GEOMETRY_TYPES:
        geojson = {"type": "Feature", "geometry": geojson, "properties": {}}
    if geojson.get("type") != "Feature" or not isinstance(geojson.get("geometry"), dict):
        return None

    color = saved.get("color")
    opacity = saved.get("opacity")
    properties = dict(geojson.get("properties") or {})
    style = {
        "savedFeatureId": saved.get("id"),
        "groupId": saved.get("groupId"),
        "color": color,
        "weight": 2,
        "opacity": opacity,
        "fillOpacity": opacity * 0.2 if opacity is not None else None,
    }
    if properties.get("featureType") == "circle" and properties.get("radius"):
        style["shape"] = "circle"
        style["radius"] = properties["radius"]
    properties.update(style)
    return {"type": "Feature", "geometry": geojson["geometry"], "properties": properties}


def render_saved_features(saved_features: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    rendered = (render_saved_feature(f) for f in saved_features)
    return feature_collection(f for f in rendered if f is not None)
