# spatial.py
import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
import numpy as np
from config import Config
from exceptions import InvalidParameterError
from models import Coordinate, utc_timestamp

ProgressCallback = Optional[Callable[[float], None]]

UNIT_FACTORS = {
    "meters": 1.0,
    "kilometers": 1 / 1000,
    "miles": 1 / 1609.344,
    "feet": 3.28084,
}


def haversine_distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """Great-circle distance in meters between two (lon, lat) pairs on a spherical Earth"""
    R = Config.EARTH_RADIUS_M
    lon1, lat1 = p1[0], p1[1]
    lon2, lat2 = p2[0], p2[1]
    phi1, phi2 = map(math.radians, (lat1, lat2))
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def haversine_matrix(origins: Sequence[Sequence[float]], targets: Sequence[Sequence[float]]) -> np.ndarray:
    """Vectorized haversine: (len(origins), len(targets)) matrix of meters"""
    a = np.radians(np.asarray(origins, dtype=float).reshape(-1, 2))
    b = np.radians(np.asarray(targets, dtype=float).reshape(-1, 2))
    d_lat = b[None, :, 1] - a[:, None, 1]
    d_lon = b[None, :, 0] - a[:, None, 0]
    h = (
        np.sin(d_lat / 2) ** 2
        + np.cos(a[:, None, 1]) * np.cos(b[None, :, 1]) * np.sin(d_lon / 2) ** 2
    )
    h = np.clip(h, 0.0, 1.0)
    return Config.EARTH_RADIUS_M * 2 * np.arctan2(np.sqrt(h), np.sqrt(1 - h))


def nearest_distance(coordinates: Sequence[float], candidates: Iterable[Sequence[float]]) -> float:
    """Distance in meters to the closest candidate, inf when there are none"""
    targets = [c for c in candidates]
    if not targets:
        return math.inf
    return float(haversine_matrix([coordinates], targets).min())


def convert_distance(meters: float, units: str = "meters") -> float:
    if units not in UNIT_FACTORS:
        raise InvalidParameterError(f"Unsupported distance units: {units}")
    return meters * UNIT_FACTORS[units]


def _ring_vertices(ring: Sequence[Sequence[float]]) -> List[Coordinate]:
    """Ring vertices with the closing vertex (if any) counted once"""
    vertices = [(float(c[0]), float(c[1])) for c in ring]
    if len(vertices) > 1 and vertices[0] == vertices[-1]:
        vertices = vertices[:-1]
    return vertices


def polygon_area(ring: Sequence[Sequence[float]]) -> float:
    """Shoelace area of a lon/lat ring scaled by a flat 111 km per degree.

    This is a rough approximation: it ignores the shrinking of longitude
    degrees away from the equator, so it is not valid near the poles or over
    large extents.
    """
    vertices = _ring_vertices(ring)
    if len(vertices) < 3:
        return 0.0
    total = 0.0
    for i, (x1, y1) in enumerate(vertices):
        x2, y2 = vertices[(i + 1) % len(vertices)]
        total += x1 * y2 - x2 * y1
    return abs(total) / 2 * Config.DEGREE_TO_METERS * Config.DEGREE_TO_METERS


def area(geometry: Dict[str, Any]) -> float:
    geometry_type = geometry.get("type")
    if geometry_type == "Polygon":
        return polygon_area(geometry["coordinates"][0])
    if geometry_type in ("Point", "LineString"):
        return 0.0
    raise InvalidParameterError(f"Unsupported geometry type: {geometry_type}")


def centroid(geometry: Dict[str, Any]) -> Coordinate:
    """Vertex mean for polygons, the point itself, or the middle vertex of a line"""
    geometry_type = geometry.get("type")
    coords = geometry.get("coordinates")
    if geometry_type == "Point":
        return (float(coords[0]), float(coords[1]))
    if geometry_type == "LineString":
        if not coords:
            raise InvalidParameterError("LineString has no coordinates")
        middle = coords[len(coords) // 2]
        return (float(middle[0]), float(middle[1]))
    if geometry_type == "Polygon":
        vertices = _ring_vertices(coords[0])
        if not vertices:
            raise InvalidParameterError("Polygon has no coordinates")
        xs, ys = zip(*vertices)
        return (sum(xs) / len(xs), sum(ys) / len(ys))
    raise InvalidParameterError(f"Unsupported geometry type: {geometry_type}")


def mean_coordinate(coordinates: Sequence[Sequence[float]]) -> Coordinate:
    if len(coordinates) == 0:
        return (0.0, 0.0)
    mean = np.asarray(coordinates, dtype=float).mean(axis=0)
    return (float(mean[0]), float(mean[1]))


def buffer(geometry: Dict[str, Any], distance: float = Config.BUFFER_DISTANCE, units: str = "meters") -> Dict[str, Any]:
    """Placeholder buffer: a fixed 0.01 degree box around the geometry's centroid.

    The requested distance is echoed in the properties but does not change the
    shape. Swap in a computational geometry library for real buffers.
    """
    x, y = centroid(geometry)
    d = 0.01
    return {
        "type": "Feature",
        "geometry": {
            "type": "Polygon",
            "coordinates": [[
                [x - d, y - d],
                [x + d, y - d],
                [x + d, y + d],
                [x - d, y + d],
                [x - d, y - d],
            ]],
        },
        "properties": {
            "buffer_distance": distance,
            "units": units,
            "original_geometry": geometry,
        },
    }


def intersection(geometry1: Dict[str, Any], geometry2: Dict[str, Any]) -> Dict[str, Any]:
    """Placeholder intersection: always the same 0.01 degree square at the origin"""
    return {
        "type": "Feature",
        "geometry": {
            "type": "Polygon",
            "coordinates": [[[0, 0], [0.01, 0], [0.01, 0.01], [0, 0.01], [0, 0]]],
        },
        "properties": {
            "intersection_type": "polygon",
            "source_geometries": [geometry1, geometry2],
        },
    }


def _geometry(feature: Dict[str, Any]) -> Dict[str, Any]:
    """The geometry of a GeoJSON Feature, or the object itself when it is a bare geometry"""
    if feature.get("type") == "Feature":
        return feature.get("geometry") or {}
    return feature


def point_in_polygon(point: Sequence[float], ring: Sequence[Sequence[float]]) -> bool:
    """Ray casting test against one ring. Points exactly on an edge may fall either way."""
    x, y = float(point[0]), float(point[1])
    vertices = _ring_vertices(ring)
    inside = False
    j = len(vertices) - 1
    for i, (xi, yi) in enumerate(vertices):
        xj, yj = vertices[j]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def feature_distance(feature1: Dict[str, Any], feature2: Dict[str, Any], units: str = "meters") -> float:
    """Haversine distance between two features, measured centroid to centroid"""
    meters = haversine_distance(centroid(_geometry(feature1)), centroid(_geometry(feature2)))
    return convert_distance(meters, units)


def within(inner: Dict[str, Any], outer: Dict[str, Any]) -> bool:
    """Only a point inside a polygon's outer ring counts"""
    g1, g2 = _geometry(inner), _geometry(outer)
    if g1.get("type") == "Point" and g2.get("type") == "Polygon":
        return point_in_polygon(g1["coordinates"], g2["coordinates"][0])
    return False


def intersects(feature1: Dict[str, Any], feature2: Dict[str, Any]) -> bool:
    g1, g2 = _geometry(feature1), _geometry(feature2)
    types = (g1.get("type"), g2.get("type"))
    if types == ("Point", "Point"):
        return [float(c) for c in g1["coordinates"][:2]] == [float(c) for c in g2["coordinates"][:2]]
    if types == ("Point", "Polygon"):
        return point_in_polygon(g1["coordinates"], g2["coordinates"][0])
    if types == ("Polygon", "Point"):
        return point_in_polygon(g2["coordinates"], g1["coordinates"][0])
    if types == ("Polygon", "Polygon"):
        # vertex containment only; crossing edges with no vertex inside are missed
        return any(
            point_in_polygon(vertex, outer["coordinates"][0])
            for inner, outer in ((g1, g2), (g2, g1))
            for ring in inner["coordinates"]
            for vertex in ring
        )
    return False


def proximity(
    features: Sequence[Dict[str, Any]],
    targets: Sequence[Dict[str, Any]],
    max_distance: float,
    units: str = "meters",
    on_progress: ProgressCallback = None,
) -> List[Dict[str, Any]]:
    """For each feature, the targets within max_distance (in units), nearest first.

    Features with no target in reach are left out of the result.
    """
    if max_distance is None or max_distance < 0:
        raise InvalidParameterError("max_distance must be a non-negative number")
    factor = convert_distance(1.0, units)
    if not features or not targets:
        return []

    distances = haversine_matrix(
        [centroid(_geometry(f)) for f in features],
        [centroid(_geometry(t)) for t in targets],
    ) * factor

    results = []
    for i, feature in enumerate(features):
        if on_progress and i % Config.DISTANCE_PROGRESS_INTERVAL == 0:
            on_progress(i / len(features) * 100)
        reachable = [j for j in np.argsort(distances[i], kind="stable") if distances[i, j] <= max_distance]
        if reachable:
            results.append({
                "feature": feature,
                "nearby": [{"feature": targets[j], "distance": float(distances[i, j])} for j in reachable],
                "count": len(reachable),
            })
    return results


JOIN_PREDICATES: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], bool]] = {
    "intersects": intersects,
    "within": within,
    "contains": lambda left, right: within(right, left),
}
JOIN_TYPES = ("inner", "left")


def spatial_join(
    left: Sequence[Dict[str, Any]],
    right: Sequence[Dict[str, Any]],
    predicate: str = "intersects",
    join_type: str = "inner",
    near_distance: float = Config.NEAR_DISTANCE,
    on_progress: ProgressCallback = None,
) -> List[Dict[str, Any]]:
    """Pair every left feature with the right features matching predicate.

    An inner join drops left features without matches, a left join keeps
    them with an empty list. "near" compares centroid distance in meters.
    """
    if join_type not in JOIN_TYPES:
        raise InvalidParameterError(f"Unknown join type: {join_type}")
    if predicate == "near":
        def matches(a, b):
            return feature_distance(a, b) <= near_distance
    elif predicate in JOIN_PREDICATES:
        matches = JOIN_PREDICATES[predicate]
    else:
        raise InvalidParameterError(f"Unknown spatial predicate: {predicate}")

    results = []
    for i, feature in enumerate(left):
        if on_progress and i % Config.JOIN_PROGRESS_INTERVAL == 0:
            on_progress(i / len(left) * 100)
        joined = [other for other in right if matches(feature, other)]
        if joined or join_type == "left":
            results.append({"left_feature": feature, "joined_features": joined, "join_count": len(joined)})
    return results


def analyze(data: Any, options: Dict[str, Any], on_progress: ProgressCallback = None) -> Dict[str, Any]:
    """Run one SPATIAL_ANALYSIS variant selected by options['type']"""
    analysis_type = options.get("type")
    metadata: Dict[str, Any] = {"processed_at": utc_timestamp()}

    if analysis_type == "buffer":
        distance = options.get("distance", Config.BUFFER_DISTANCE)
        units = options.get("units", "meters")
        result = buffer(data, distance, units)
        metadata.update(distance=distance, units=units)
    elif analysis_type == "intersection":
        result = intersection(data["geometry1"], data["geometry2"])
        metadata["geometry_count"] = 2
    elif analysis_type == "distance":
        units = data.get("units", options.get("units", "meters"))
        meters = haversine_distance(data["point1"], data["point2"])
        result = {
            "distance": convert_distance(meters, units),
            "units": units,
            "point1": data["point1"],
            "point2": data["point2"],
        }
        metadata["calculation_method"] = "haversine"
    elif analysis_type == "area":
        result = {
            "area": area(data),
            "units": options.get("units", "square_meters"),
            "geometry_type": data.get("type"),
        }
        metadata["calculation_method"] = "shoelace"
    elif analysis_type == "centroid":
        result = {"centroid": list(centroid(data)), "geometry_type": data.get("type")}
        metadata["calculation_method"] = "geometric"
    elif analysis_type == "proximity":
        max_distance = data.get("max_distance", options.get("max_distance"))
        units = data.get("units", options.get("units", "meters"))
        result = proximity(data.get("features") or [], data.get("target_features") or [], max_distance, units, on_progress)
        metadata.update(max_distance=max_distance, units=units, calculation_method="haversine")
    elif analysis_type == "join":
        predicate = data.get("spatial_predicate", options.get("spatial_predicate", "intersects"))
        join_type = data.get("join_type", options.get("join_type", "inner"))
        near_distance = data.get("near_distance", options.get("near_distance", Config.NEAR_DISTANCE))
        result = spatial_join(
            data.get("left_features") or [], data.get("right_features") or [],
            predicate, join_type, near_distance, on_progress,
        )
        metadata.update(spatial_predicate=predicate, join_type=join_type)
    else:
        raise InvalidParameterError(f"Unknown spatial analysis type: {analysis_type}")

    return {"type": analysis_type, "result": result, "metadata": metadata}
