"""Soil Analysis Service – which soil map units cover a study area, and how much.

Pipeline (strictly sequential, one SDA request at a time):

  1. normalize the input GeoJSON to one (Multi)Polygon + WKT
  2. look up the map units intersecting the WKT
  3. fetch the representative soil properties of those units
  4. per unit: fetch its polygons, intersect each with the study area,
     add up the overlap in acres
  5. sort units by area, largest first

Per-polygon and per-unit failures only drop that contribution. Geometry
errors, exhausted query retries and cancellation reach the caller.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests
from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool
from shapely import wkt as shapely_wkt
from shapely.errors import GEOSException

from ..config import get_settings
from .change_detector import ChangeDetector, geometry_fingerprint
from .errors import (
    GeometryConversionError,
    IntersectionComputationError,
    InvalidGeometry,
    QueryError,
    QueryTimeout,
    SoilAnalysisError,
)
from .geo_utils import StudyArea, normalize_study_area, sqm_to_acres
from .intersection_service import robust_intersection
from .run_context import (
    CancellationToken,
    ProgressCallback,
    ProgressEvent,
    RunContext,
    RunMessage,
)
from .sda_client import fetch_map_unit_keys, fetch_map_unit_polygons
from .soil_properties import fetch_soil_properties

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_FEATURE_ACRES = 0.0001
COVERAGE_TOLERANCE_ACRES = 1.0


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class AnalysisOptions:
    max_results: Optional[int] = None  # None → settings default, 0 → unlimited
    cancel_token: Optional[CancellationToken] = None
    progress_callback: Optional[ProgressCallback] = None
    debug: bool = False
    timeout: Optional[float] = None
    max_retries: Optional[int] = None


@dataclass(frozen=True)
class IntersectionFeature:
    mukey: str
    geometry: Dict[str, Any]
    area_square_meters: float
    area_acres: float
    intersection_method: str

    def to_feature(self, properties: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "Feature",
            "properties": {
                "mukey": self.mukey,
                "area_acres": self.area_acres,
                "area_square_meters": self.area_square_meters,
                "intersection_method": self.intersection_method,
                **properties,
            },
            "geometry": self.geometry,
        }


@dataclass(frozen=True)
class SoilUnitResult:
    mukey: str
    area_acres: float
    properties: Dict[str, Any]
    features: tuple = ()

    def to_features(self) -> List[Dict[str, Any]]:
        return [f.to_feature(self.properties) for f in self.features]

    def summary(self) -> Dict[str, Any]:
        return {
            **self.properties,
            "mukey": self.mukey,
            "area_acres": self.area_acres,
            "feature_count": len(self.features),
        }


@dataclass
class AnalysisResult:
    units: List[SoilUnitResult]
    study_area: Any  # the caller's GeoJSON, echoed back unchanged
    study_area_acres: float = 0.0
    mapunits_found: int = 0
    mapunits_analyzed: int = 0
    truncated: bool = False
    partial_union: bool = False
    skipped_features: tuple = ()

    @property
    def total_area_acres(self) -> float:
        return sum(u.area_acres for u in self.units)

    @property
    def mapunit_count(self) -> int:
        return len(self.units)

    def coverage(self) -> Dict[str, Any]:
        """How the summed unit acreage compares with the study area itself.

        Soil polygons of one unit are not deduplicated, so overlapping
        polygons or gaps in the survey show up here.
        """
        if self.study_area_acres <= 0 or not self.units:
            return {"coverage_percent": 0.0, "coverage_warning": False}
        total = self.total_area_acres
        return {
            "coverage_percent": round(total / self.study_area_acres * 100, 1),
            "coverage_warning": abs(total - self.study_area_acres) > COVERAGE_TOLERANCE_ACRES,
        }

    def to_geojson(self) -> Dict[str, Any]:
        features: List[Dict[str, Any]] = []
        for unit in self.units:
            features.extend(unit.to_features())
        return {
            "type": "FeatureCollection",
            "features": features,
            "properties": {
                "total_area_acres": self.total_area_acres,
                "mapunit_count": self.mapunit_count,
                "study_area": self.study_area,
                "study_area_acres": round(self.study_area_acres, 6),
                "mapunits_found": self.mapunits_found,
                "mapunits_analyzed": self.mapunits_analyzed,
                "truncated": self.truncated,
                "partial_union": self.partial_union,
                "skipped_feature_indices": list(self.skipped_features),
                **self.coverage(),
            },
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class _Progress:
    """Forward progress to the caller, never letting ``current`` go back."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self._last = 0

    def emit(self, current: int, message: str) -> None:
        current = max(self._last, min(100, current))
        self._last = current
        if self._callback is not None:
            self._callback(ProgressEvent(current=current, total=100, message=message))


def _checkpoint(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


def _intersect_unit(mukey: str, study: StudyArea, query_opts: Dict[str, Any],
                    log) -> List[IntersectionFeature]:
    """All overlap features of one map unit with the study area."""
    wkt_rows = fetch_map_unit_polygons(mukey, **query_opts)
    if not wkt_rows:
        log("[SOIL] no polygon data for MUKEY %s", mukey)
        return []

    features: List[IntersectionFeature] = []
    for idx, wkt_polygon in enumerate(wkt_rows):
        try:
            soil_geom = shapely_wkt.loads(wkt_polygon)
            if not soil_geom.intersects(study.geometry):
                continue
            result = robust_intersection(soil_geom, study.geometry)
        except (GEOSException, ValueError, TypeError, IntersectionComputationError) as exc:
            logger.warning("[SOIL] polygon %d of MUKEY %s skipped: %s", idx, mukey, exc)
            continue
        if result is None:
            log("[SOIL]   polygon %d of MUKEY %s: no valid intersection", idx, mukey)
            continue

        acres = sqm_to_acres(result.area_sqm)
        if acres > MIN_FEATURE_ACRES:
            features.append(IntersectionFeature(
                mukey=mukey,
                geometry=result.to_geojson(),
                area_square_meters=result.area_sqm,
                area_acres=acres,
                intersection_method=result.method,
            ))
            log("[SOIL]   intersection %.6f acres (%s)", acres, result.method)
    return features


def run_analysis(geojson: Any, options: Optional[AnalysisOptions] = None) -> AnalysisResult:
    """Compute the soil map unit breakdown for a study area."""
    options = options or AnalysisOptions()
    token = options.cancel_token
    progress = _Progress(options.progress_callback)
    log = logger.info if options.debug else logger.debug
    query_opts = {
        "timeout": options.timeout,
        "max_retries": options.max_retries,
        "cancel_token": token,
    }
    max_results = options.max_results
    if max_results is None:
        max_results = get_settings().max_results

    # ------------------------------------------------------------------
    # 1. Normalize geometry
    # ------------------------------------------------------------------
    progress.emit(0, "Converting geometry...")
    study = normalize_study_area(geojson)
    study_acres = sqm_to_acres(study.area_sqm)
    log("[SOIL] study area %.3f acres, WKT %d chars", study_acres, len(study.wkt))

    # ------------------------------------------------------------------
    # 2. Map units intersecting the study area
    # ------------------------------------------------------------------
    _checkpoint(token)
    progress.emit(20, "Finding soil map units...")
    mukeys = fetch_map_unit_keys(study.wkt, **query_opts)

    base = dict(
        study_area=geojson,
        study_area_acres=study_acres,
        mapunits_found=len(mukeys),
        partial_union=study.partial_union,
        skipped_features=study.skipped_features,
    )
    if not mukeys:
        logger.info("[SOIL] no soil map units found for the study area")
        progress.emit(100, "Analysis complete")
        return AnalysisResult(units=[], **base)

    # Service order is kept: truncation is not by area.
    limited = mukeys[:max_results] if max_results > 0 else mukeys
    if len(limited) < len(mukeys):
        logger.info("[SOIL] limiting to %d soil units out of %d found",
                    len(limited), len(mukeys))

    # ------------------------------------------------------------------
    # 3. Soil properties
    # ------------------------------------------------------------------
    _checkpoint(token)
    progress.emit(40, "Retrieving soil properties...")
    soil_props = fetch_soil_properties(limited, **query_opts)

    # ------------------------------------------------------------------
    # 4. Per-unit intersections
    # ------------------------------------------------------------------
    _checkpoint(token)
    progress.emit(60, "Calculating spatial intersections...")
    units: List[SoilUnitResult] = []
    total = len(limited)
    for processed, mukey in enumerate(limited):
        _checkpoint(token)
        progress.emit(round(60 + processed / total * 35), f"Processing soil unit {mukey}...")
        try:
            features = _intersect_unit(mukey, study, query_opts, log)
        except QueryTimeout as exc:
            if exc.cancelled:
                raise
            logger.warning("[SOIL] MUKEY %s skipped: %s", mukey, exc)
            continue
        except (QueryError, requests.RequestException, ValueError) as exc:
            logger.warning("[SOIL] MUKEY %s skipped: %s", mukey, exc)
            continue

        area = sum(f.area_acres for f in features)
        props = soil_props.get(mukey)
        if area > 0 and props:
            units.append(SoilUnitResult(mukey=mukey, area_acres=area,
                                        properties=props, features=tuple(features)))
            log("[SOIL] added soil unit %s: %.3f acres, %d features",
                mukey, area, len(features))

    progress.emit(95, "Spatial analysis complete")

    # ------------------------------------------------------------------
    # 5. Largest first (stable for ties)
    # ------------------------------------------------------------------
    units.sort(key=lambda u: u.area_acres, reverse=True)
    result = AnalysisResult(units=units, mapunits_analyzed=total,
                            truncated=len(limited) < len(mukeys), **base)

    progress.emit(100, "Analysis complete")
    logger.info("[SOIL] analysis complete: %d soil units, %.3f total acres",
                result.mapunit_count, result.total_area_acres)
    return result


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class AnalysisSession:
    """Caller-side orchestrator for successive analysis runs.

    Starting a run cancels the previous one. Messages are tagged with the
    run id that produced them and anything tagged with a stale id is
    dropped on delivery, results included: only the current run's result
    is remembered for reuse.
    """

    def __init__(self, runner: Callable[..., AnalysisResult] = run_analysis,
                 executor: Optional[ThreadPoolExecutor] = None):
        self._runner = runner
        self._executor = executor or ThreadPoolExecutor(max_workers=1)
        self._lock = threading.Lock()
        self._run_id = 0
        self._token: Optional[CancellationToken] = None
        self._detector = ChangeDetector()
        self._state: Dict[str, Any] = {"run_id": 0, "status": "idle"}

    @property
    def current_run_id(self) -> int:
        with self._lock:
            return self._run_id

    def begin(self) -> RunContext:
        """Cancel any run in flight and hand out a fresh context."""
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._run_id += 1
            ctx = RunContext(run_id=self._run_id)
            self._token = ctx.cancel_token
            self._state = {"run_id": ctx.run_id, "status": "running",
                           "progress": None, "result": None, "error": None}
        logger.info("[RUN] started run %d", ctx.run_id)
        return ctx

    def cancel(self) -> bool:
        """Request cancellation of the current run. Returns False if idle."""
        with self._lock:
            token = self._token
            run_id = self._run_id
        if token is None or token.cancelled:
            return False
        token.cancel()
        logger.info("[RUN] cancellation requested for run %d", run_id)
        return True

    def deliver(self, message: RunMessage) -> bool:
        """Record *message* if it belongs to the current run."""
        with self._lock:
            if message.run_id != self._run_id:
                logger.debug("[RUN] dropped stale %s message from run %d (current %d)",
                             message.kind, message.run_id, self._run_id)
                return False
            if message.kind == "progress":
                self._state["progress"] = message.payload
            elif message.kind == "result":
                self._state["status"] = "complete"
                self._state["result"] = message.payload
                self._token = None
                if message.source is not None:
                    self._detector.remember(message.source, message.payload)
            elif message.kind == "error":
                self._state["status"] = "cancelled" if message.payload.get("aborted") else "failed"
                self._state["error"] = message.payload
                self._token = None
            return True

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._state)

    def cached_result(self, geojson: Any) -> Any:
        """Result of the last completed run if *geojson* is unchanged, else None."""
        with self._lock:
            return self._detector.cached_result(geojson)

    def has_cached(self, geojson: Any) -> bool:
        return self.cached_result(geojson) is not None

    def submit(self, geojson: dict, **options) -> RunContext:
        """Start a run on the worker thread.

        When the geometry fingerprint matches the last completed run the
        cached result is delivered under the new run id without touching
        the network.
        """
        ctx = self.begin()
        cached = self.cached_result(geojson)
        if cached is not None:
            logger.info("[RUN] geometry unchanged, reusing result for run %d", ctx.run_id)
            self.deliver(RunMessage(ctx.run_id, "result", cached))
            return ctx
        self._executor.submit(self._execute, ctx, geojson, options)
        return ctx

    def _execute(self, ctx: RunContext, geojson: dict, options: Dict[str, Any]) -> None:
        def on_progress(event: ProgressEvent) -> None:
            self.deliver(RunMessage(ctx.run_id, "progress", event.to_dict()))

        opts = AnalysisOptions(cancel_token=ctx.cancel_token,
                               progress_callback=on_progress, **options)
        try:
            result = self._runner(geojson, opts).to_geojson()
        except Exception as exc:
            aborted = isinstance(exc, QueryTimeout) and exc.cancelled
            if not isinstance(exc, SoilAnalysisError):
                logger.exception("[RUN] run %d crashed", ctx.run_id)
            self.deliver(RunMessage(ctx.run_id, "error", {
                "aborted": aborted,
                "error": str(exc),
                "kind": type(exc).__name__,
            }))
            return
        self.deliver(RunMessage(ctx.run_id, "result", result, source=geojson))

    def shutdown(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=False)


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

_session = AnalysisSession()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (InvalidGeometry, GeometryConversionError)):
        return HTTPException(status_code=400, detail=f"Invalid GeoJSON: {exc}")
    if isinstance(exc, QueryTimeout):
        return HTTPException(status_code=504, detail=str(exc))
    return HTTPException(status_code=502, detail=f"Soil Data Access failed: {exc}")


@router.post("/analyze")
async def analyze_study_area(study_geojson: dict, max_results: Optional[int] = None,
                             debug: bool = False):
    """Receive a study-area GeoJSON and return the intersecting soil map
    units as a FeatureCollection, largest area first.

    Input can be a FeatureCollection, Feature, or bare (Multi)Polygon.
    ``max_results`` caps the number of map units analysed (0 = no cap).
    """
    opts = AnalysisOptions(max_results=max_results, debug=debug)
    try:
        result = await run_in_threadpool(run_analysis, study_geojson, opts)
    except (InvalidGeometry, GeometryConversionError, QueryError) as exc:
        raise _http_error(exc)
    except Exception as exc:
        logger.exception("[SOIL] analysis failed")
        raise HTTPException(status_code=502, detail=f"Soil analysis failed: {exc}")
    return result.to_geojson()


@router.post("/fingerprint")
async def fingerprint(study_geojson: dict):
    """Structural digest of a geometry; equal digests mean nothing to recompute."""
    return {"fingerprint": geometry_fingerprint(study_geojson)}


@router.post("/runs")
async def start_run(study_geojson: dict, max_results: Optional[int] = None,
                    debug: bool = False):
    """Start a background analysis, cancelling whichever run was in flight."""
    try:
        normalize_study_area(study_geojson)
    except (InvalidGeometry, GeometryConversionError) as exc:
        raise _http_error(exc)
    cached = _session.has_cached(study_geojson)
    ctx = _session.submit(study_geojson, max_results=max_results, debug=debug)
    return {"run_id": ctx.run_id, "status": "complete" if cached else "running",
            "cached": cached}


@router.get("/runs/current")
async def current_run():
    """Progress, result or error of the latest run."""
    return _session.snapshot()


@router.delete("/runs/current")
async def cancel_run():
    """Request cancellation of the latest run."""
    return {"cancelled": _session.cancel(), "run_id": _session.current_run_id}
