"""Robust soil/study-area intersection.

Three strategies are tried in order and the first one producing at least
0.1 m² of overlap wins:

1. ``turf_intersect``     - plain GEOS overlay of the two geometries
2. ``polygon_clipping``   - rebuild from raw rings, repair, snap-rounded overlay
3. containment            - ``soil_within_study`` / ``study_within_soil``

``None`` means "no overlap", which is a normal outcome. The method tag is
kept on the result for troubleshooting output.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import shapely
from fastapi import APIRouter, HTTPException
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Polygon, mapping as shapely_mapping
from shapely.validation import make_valid

from .errors import IntersectionComputationError, InvalidGeometry
from .geo_utils import geodesic_area_sqm, geojson_to_shapely, polygonal_part

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_AREA_SQM = 0.1
# Snap-rounding grid for the clipping fallback, in degrees (~0.1 mm).
CLIP_GRID_SIZE = 1e-9


@dataclass(frozen=True)
class IntersectionResult:
    geometry: Any  # shapely Polygon | MultiPolygon
    area_sqm: float
    method: str

    def to_geojson(self) -> Dict[str, Any]:
        return shapely_mapping(self.geometry)


Strategy = Callable[[Any, Any], Optional[IntersectionResult]]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def overlay_intersection(soil, study) -> Optional[IntersectionResult]:
    """Direct overlay. Cheap, but GEOS rejects many self-touching inputs."""
    inter = polygonal_part(soil.intersection(study))
    if inter is None:
        return None
    return IntersectionResult(inter, geodesic_area_sqm(inter), "turf_intersect")


def _first_polygon(geom) -> Optional[Polygon]:
    # Only the first member of a MultiPolygon is clipped.
    if isinstance(geom, Polygon):
        return geom
    if isinstance(geom, MultiPolygon) and not geom.is_empty:
        return geom.geoms[0]
    return None


def _rings_to_polygon(poly: Polygon):
    rebuilt = Polygon(
        list(poly.exterior.coords),
        [list(ring.coords) for ring in poly.interiors],
    )
    return polygonal_part(make_valid(rebuilt))


def clipping_intersection(soil, study) -> Optional[IntersectionResult]:
    """Clip on the raw coordinate rings with a snap-rounded overlay."""
    soil_poly = _first_polygon(soil)
    study_poly = _first_polygon(study)
    if soil_poly is None or study_poly is None:
        return None
    subject = _rings_to_polygon(soil_poly)
    clip = _rings_to_polygon(study_poly)
    if subject is None or clip is None:
        return None

    clipped = shapely.intersection(subject, clip, grid_size=CLIP_GRID_SIZE)
    parts = polygonal_part(clipped)
    if parts is None:
        return None
    if isinstance(parts, MultiPolygon) and len(parts.geoms) == 1:
        parts = parts.geoms[0]
    return IntersectionResult(parts, geodesic_area_sqm(parts), "polygon_clipping")


def containment_intersection(soil, study) -> Optional[IntersectionResult]:
    """One geometry lies entirely inside the other."""
    if soil.within(study):
        return IntersectionResult(soil, geodesic_area_sqm(soil), "soil_within_study")
    if study.within(soil):
        return IntersectionResult(study, geodesic_area_sqm(study), "study_within_soil")
    return None


INTERSECTION_STRATEGIES: List[Strategy] = [
    overlay_intersection,
    clipping_intersection,
    containment_intersection,
]


def robust_intersection(soil, study,
                        strategies: Sequence[Strategy] = INTERSECTION_STRATEGIES,
                        ) -> Optional[IntersectionResult]:
    """Overlap of *soil* with *study*, or None when they do not overlap.

    Raises :class:`IntersectionComputationError` only when every strategy
    raised.
    """
    errors: List[Exception] = []
    for strategy in strategies:
        try:
            result = strategy(soil, study)
        except (GEOSException, ValueError, TypeError) as exc:
            logger.debug("[GEOM] %s failed: %s", strategy.__name__, exc)
            errors.append(exc)
            continue
        if result is not None and result.area_sqm >= MIN_AREA_SQM:
            return result

    if strategies and len(errors) == len(strategies):
        raise IntersectionComputationError(
            "All intersection methods failed", errors=errors,
        )
    return None


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@router.post("/robust")
async def intersect_geometries(payload: dict):
    """Intersect two GeoJSON polygons with the robust fallback chain.

    Body: ``{"soil": <geometry|Feature>, "study": <geometry|Feature>}``.
    Meant for troubleshooting a single soil polygon against a study area.
    """
    try:
        soil = geojson_to_shapely(payload.get("soil") or {})
        study = geojson_to_shapely(payload.get("study") or {})
    except InvalidGeometry as exc:
        raise HTTPException(status_code=400, detail=f"Invalid GeoJSON: {exc}")

    try:
        result = robust_intersection(soil, study)
    except IntersectionComputationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    if result is None:
        return {"intersection": None}

    return {
        "intersection": {
            "type": "Feature",
            "geometry": result.to_geojson(),
            "properties": {
                "area_square_meters": round(result.area_sqm, 3),
                "intersection_method": result.method,
            },
        },
    }
