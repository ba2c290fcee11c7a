"""Great-circle helpers and nearest-position search on shape polylines."""

import math
from dataclasses import dataclass
from typing import Sequence

EARTH_RADIUS_M = 6_371_000.0


@dataclass
class SegmentProjection:
    lat: float
    lon: float
    fraction: float  # 0.0-1.0 along the segment


@dataclass
class RoutePosition:
    dist_along: float  # meters from the start of the shape
    perp_dist: float  # meters from the point to the nearest shape point


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial bearing in degrees (0-360) from point 1 to point 2."""
    dlon = math.radians(lon2 - lon1)
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    y = math.sin(dlon) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def project_point_on_segment(
    plat: float, plon: float,
    alat: float, alon: float,
    blat: float, blon: float,
) -> SegmentProjection:
    """Project a point onto segment A-B in a local equirectangular plane."""
    cos_lat = math.cos(math.radians((alat + blat) / 2))
    bx, by = (blon - alon) * cos_lat, blat - alat
    px, py = (plon - alon) * cos_lat, plat - alat

    len_sq = bx * bx + by * by
    if len_sq < 1e-20:  # degenerate segment
        t = 0.0
    else:
        t = max(0.0, min(1.0, (px * bx + py * by) / len_sq))

    return SegmentProjection(
        lat=alat + t * (blat - alat),
        lon=alon + t * (blon - alon),
        fraction=t,
    )


def find_position_on_route(lat: float, lon: float, shape_points: Sequence) -> RoutePosition:
    """Find the nearest position on a shape polyline.

    ``shape_points`` are objects with ``lat``, ``lon`` and ``dist_traveled``.
    Returns the distance along the shape at the closest projected point and the
    great-circle distance from the input point to it. An empty shape yields an
    infinite perpendicular distance; a single point yields its own distance.
    """
    if not shape_points:
        return RoutePosition(dist_along=0.0, perp_dist=math.inf)
    if len(shape_points) == 1:
        only = shape_points[0]
        return RoutePosition(
            dist_along=only.dist_traveled,
            perp_dist=haversine_distance(lat, lon, only.lat, only.lon),
        )

    best_perp = math.inf
    best_along = 0.0

    for a, b in zip(shape_points, shape_points[1:]):
        proj = project_point_on_segment(lat, lon, a.lat, a.lon, b.lat, b.lon)
        perp = haversine_distance(lat, lon, proj.lat, proj.lon)
        if perp < best_perp:
            best_perp = perp
            best_along = a.dist_traveled + proj.fraction * (b.dist_traveled - a.dist_traveled)

    return RoutePosition(dist_along=best_along, perp_dist=best_perp)
