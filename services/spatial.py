# -*- coding: utf-8 -*-
"""
Planar geometry helpers for building footprints.

Footprints are rings of (longitude, latitude) pairs. Areas are computed in
square metres with an equirectangular projection around the ring's mean
latitude, which is accurate at building scale.
"""

import json
import math
from typing import Any, List, Optional, Sequence, Tuple

Point = Tuple[float, float]
Ring = List[Point]

EARTH_RADIUS_M = 6371000.0


def parse_ring(geometry: Any) -> Optional[Ring]:
    """
    Accept a GeoJSON Polygon (dict or JSON string) or a bare list of
    [lng, lat] pairs. Returns the outer ring without the closing point,
    or None if there is no usable polygon.
    """
    if geometry is None or geometry == "":
        return None
    if isinstance(geometry, str):
        try:
            geometry = json.loads(geometry)
        except ValueError:
            return None
    if isinstance(geometry, dict):
        if geometry.get("type") != "Polygon":
            return None
        coordinates = geometry.get("coordinates") or []
        if not coordinates:
            return None
        geometry = coordinates[0]
    try:
        ring = [(float(p[0]), float(p[1])) for p in geometry]
    except (TypeError, ValueError, IndexError):
        return None
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    return ring if len(ring) >= 3 else None


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _project(ring: Sequence[Point], ref_lat: float) -> Ring:
    k = math.cos(math.radians(ref_lat))
    return [
        (math.radians(lon) * EARTH_RADIUS_M * k, math.radians(lat) * EARTH_RADIUS_M)
        for lon, lat in ring
    ]


def _signed_area(ring: Sequence[Point]) -> float:
    """Shoelace formula."""
    n = len(ring)
    total = 0.0
    for i in range(n):
        x1, y1 = ring[i]
        x2, y2 = ring[(i + 1) % n]
        total += x1 * y2 - x2 * y1
    return total / 2.0


def _ccw(ring: Ring) -> Ring:
    return ring if _signed_area(ring) >= 0 else list(reversed(ring))


def polygon_area_sqm(ring: Sequence[Point]) -> float:
    if len(ring) < 3:
        return 0.0
    ref_lat = sum(p[1] for p in ring) / len(ring)
    return abs(_signed_area(_project(ring, ref_lat)))


def _clip(subject: Ring, clip: Ring) -> Ring:
    """
    Sutherland-Hodgman clipping of ``subject`` by the convex ``clip`` ring.
    Both rings must be counter-clockwise.
    """
    def inside(p: Point, a: Point, b: Point) -> bool:
        return (b[0] - a[0]) * (p[1] - a[1]) - (b[1] - a[1]) * (p[0] - a[0]) >= 0

    def intersection(p1: Point, p2: Point, a: Point, b: Point) -> Point:
        dx, dy = p2[0] - p1[0], p2[1] - p1[1]
        ex, ey = b[0] - a[0], b[1] - a[1]
        denom = dx * ey - dy * ex
        if denom == 0:
            return p2
        t = ((a[0] - p1[0]) * ey - (a[1] - p1[1]) * ex) / denom
        return (p1[0] + t * dx, p1[1] + t * dy)

    output = list(subject)
    for i in range(len(clip)):
        a, b = clip[i], clip[(i + 1) % len(clip)]
        source, output = output, []
        if not source:
            break
        prev = source[-1]
        for current in source:
            if inside(current, a, b):
                if not inside(prev, a, b):
                    output.append(intersection(prev, current, a, b))
                output.append(current)
            elif inside(prev, a, b):
                output.append(intersection(prev, current, a, b))
            prev = current
    return output


def overlap_ratio(first: Sequence[Point], second: Sequence[Point]) -> float:
    """
    Intersection area divided by the smaller footprint's area, 0.0-1.0.

    A footprint fully contained in the other scores 1.0. The clip ring is
    treated as convex; building footprints are close enough for duplicate
    screening.
    """
    if len(first) < 3 or len(second) < 3:
        return 0.0
    ref_lat = (sum(p[1] for p in first) + sum(p[1] for p in second)) / (len(first) + len(second))
    a = _ccw(_project(first, ref_lat))
    b = _ccw(_project(second, ref_lat))
    area_a, area_b = abs(_signed_area(a)), abs(_signed_area(b))
    smaller = min(area_a, area_b)
    if smaller <= 0:
        return 0.0
    clipped = _clip(a, b)
    if len(clipped) < 3:
        return 0.0
    return round(min(1.0, abs(_signed_area(clipped)) / smaller), 4)
