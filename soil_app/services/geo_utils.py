"""Shared geospatial utilities for the soil analysis backend."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from pyproj import Geod
from shapely.errors import GEOSException, ShapelyError
from shapely.geometry import (
    GeometryCollection,
    MultiPolygon,
    Polygon,
    mapping as shapely_mapping,
    shape as shapely_shape,
)
from shapely.geometry.polygon import orient

from .errors import GeometryConversionError, InvalidGeometry

logger = logging.getLogger(__name__)

_geod = Geod(ellps="WGS84")

ACRES_PER_SQM = 0.000247105381

_POLYGON_TYPES = ("Polygon", "MultiPolygon")
_CONTAINER_TYPES = ("FeatureCollection", "Feature") + _POLYGON_TYPES


# ---------------------------------------------------------------------------
# Area helpers
# ---------------------------------------------------------------------------

def sqm_to_acres(area_sqm: float) -> float:
    """Square metres → acres, rounded to 1e-6 acre."""
    return round(area_sqm * ACRES_PER_SQM, 6)


def geodesic_area_sqm(geom) -> float:
    """Area of a (multi)polygon on the WGS84 ellipsoid, in square metres.

    Non-polygonal members of a collection contribute nothing.
    """
    if geom is None or geom.is_empty:
        return 0.0
    if isinstance(geom, Polygon):
        area, _ = _geod.geometry_area_perimeter(orient(geom, sign=1.0))
        return abs(area)
    if isinstance(geom, (MultiPolygon, GeometryCollection)):
        return sum(geodesic_area_sqm(part) for part in geom.geoms)
    return 0.0


def polygonal_part(geom):
    """Return the Polygon/MultiPolygon content of *geom*, or None.

    Overlay results can be GeometryCollections mixing slivers of lines and
    points with the polygons we care about.
    """
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    if isinstance(geom, GeometryCollection):
        polys: List[Polygon] = []
        for part in geom.geoms:
            sub = polygonal_part(part)
            if isinstance(sub, Polygon):
                polys.append(sub)
            elif isinstance(sub, MultiPolygon):
                polys.extend(sub.geoms)
        if not polys:
            return None
        return polys[0] if len(polys) == 1 else MultiPolygon(polys)
    return None


# ---------------------------------------------------------------------------
# Study area normalization
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StudyArea:
    geometry: Any  # shapely Polygon | MultiPolygon
    geojson: Dict[str, Any]
    wkt: str
    partial_union: bool = False
    skipped_features: Tuple[int, ...] = ()

    @property
    def area_sqm(self) -> float:
        return geodesic_area_sqm(self.geometry)


def _require_polygon_geometry(geometry: Any, where: str) -> Dict[str, Any]:
    if not isinstance(geometry, dict):
        raise InvalidGeometry(f"{where}: geometry is missing")
    geom_type = geometry.get("type")
    if not geom_type:
        raise InvalidGeometry(f"{where}: geometry has no 'type'")
    if geometry.get("coordinates") is None:
        raise InvalidGeometry(f"{where}: geometry has no 'coordinates'")
    if geom_type not in _POLYGON_TYPES:
        raise InvalidGeometry(f"{where}: unsupported geometry type {geom_type!r}")
    return geometry


def _build(geometry: Dict[str, Any], where: str):
    try:
        return shapely_shape(geometry)
    except (ShapelyError, ValueError, TypeError, IndexError, AttributeError) as exc:
        raise InvalidGeometry(f"{where}: cannot build geometry ({exc})") from exc


def _union_features(features: List[Any]) -> Tuple[Any, Tuple[int, ...]]:
    """Stepwise left-to-right union that skips members which fail."""
    union = None
    skipped: List[int] = []
    for idx, feature in enumerate(features):
        try:
            where = f"feature {idx}"
            geometry = feature.get("geometry") if isinstance(feature, dict) else None
            geom = _build(_require_polygon_geometry(geometry, where), where)
            union = geom if union is None else union.union(geom)
        except (InvalidGeometry, GEOSException) as exc:
            logger.warning("[GEOM] union skipped feature %d: %s", idx, exc)
            skipped.append(idx)
    if union is None:
        raise InvalidGeometry("No valid geometry found in FeatureCollection")
    return union, tuple(skipped)


def normalize_study_area(geojson: Any) -> StudyArea:
    """Turn a Feature, FeatureCollection or bare (Multi)Polygon into a
    single :class:`StudyArea` with its WKT.

    Multi-feature collections are unioned; members whose union fails are
    skipped and reported through ``partial_union``/``skipped_features``.
    """
    if not isinstance(geojson, dict):
        raise InvalidGeometry("GeoJSON must be an object")
    geom_type = geojson.get("type")
    if not geom_type:
        raise InvalidGeometry("GeoJSON must have a 'type' property")
    if geom_type not in _CONTAINER_TYPES:
        raise InvalidGeometry(f"Unsupported GeoJSON type: {geom_type}")

    skipped: Tuple[int, ...] = ()
    if geom_type == "FeatureCollection":
        features = geojson.get("features") or []
        if not features:
            raise InvalidGeometry("FeatureCollection has no features")
        if len(features) == 1:
            first = features[0] if isinstance(features[0], dict) else {}
            geometry = _require_polygon_geometry(first.get("geometry"), "feature 0")
            geom = _build(geometry, "feature 0")
        else:
            logger.debug("[GEOM] unioning %d features", len(features))
            geom, skipped = _union_features(features)
    elif geom_type == "Feature":
        geometry = _require_polygon_geometry(geojson.get("geometry"), "Feature")
        geom = _build(geometry, "Feature")
    else:
        geom = _build(_require_polygon_geometry(geojson, geom_type), geom_type)

    if not isinstance(geom, (Polygon, MultiPolygon)):
        raise InvalidGeometry(f"Study area must be polygonal, got {geom.geom_type}")
    if geom.is_empty:
        raise GeometryConversionError("WKT conversion resulted in empty geometry")

    wkt = geom.wkt
    if not wkt:
        raise GeometryConversionError("WKT conversion resulted in empty string")
    logger.debug("[GEOM] converted geometry to WKT: %d characters", len(wkt))

    return StudyArea(
        geometry=geom,
        geojson=shapely_mapping(geom),
        wkt=wkt,
        partial_union=bool(skipped),
        skipped_features=skipped,
    )


def geojson_to_shapely(geojson: dict):
    """Build a shapely geometry from a Feature or bare geometry dict."""
    if geojson.get("type") == "Feature":
        geojson = geojson.get("geometry") or {}
    return _build(_require_polygon_geometry(geojson, "geometry"), "geometry")

