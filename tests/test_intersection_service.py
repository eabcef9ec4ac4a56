import pytest
from fastapi.testclient import TestClient
from shapely.geometry import MultiPolygon, Polygon, box

from conftest import make_square
from soil_app.main import app
from soil_app.services.errors import IntersectionComputationError
from soil_app.services.geo_utils import geodesic_area_sqm
from soil_app.services.intersection_service import (
    clipping_intersection,
    containment_intersection,
    robust_intersection,
)

client = TestClient(app)

METHODS = {"turf_intersect", "polygon_clipping", "soil_within_study", "study_within_soil"}

STUDY = Polygon(make_square(-95.32, 39.58, 100.0))


def _boom(soil, study):
    raise ValueError("degenerate input")


def test_disjoint_polygons_return_none():
    soil = box(-100.0, 40.0, -99.9, 40.1)
    assert robust_intersection(soil, STUDY) is None


def test_soil_containing_study_returns_study_area():
    soil = box(-95.33, 39.57, -95.31, 39.59)
    result = robust_intersection(soil, STUDY)

    assert result is not None
    assert result.method in METHODS
    assert result.area_sqm == pytest.approx(geodesic_area_sqm(STUDY), rel=1e-6)


def test_containment_fallback_tags_study_within_soil():
    soil = box(-95.33, 39.57, -95.31, 39.59)
    result = robust_intersection(soil, STUDY, strategies=[_boom, _boom, containment_intersection])

    assert result.method == "study_within_soil"
    assert result.area_sqm == pytest.approx(geodesic_area_sqm(STUDY), rel=1e-6)


def test_containment_fallback_tags_soil_within_study():
    study = box(-95.33, 39.57, -95.31, 39.59)
    result = containment_intersection(STUDY, study)

    assert result.method == "soil_within_study"
    assert result.geometry.equals(STUDY)


def test_partial_overlap_area():
    minx, miny, maxx, maxy = STUDY.bounds
    midx = (minx + maxx) / 2
    soil = box(midx, miny - 0.01, maxx + 0.01, maxy + 0.01)

    result = robust_intersection(soil, STUDY)

    assert result.method == "turf_intersect"
    assert result.area_sqm == pytest.approx(geodesic_area_sqm(STUDY) / 2, rel=1e-3)


def test_overlay_failure_falls_back_to_clipping():
    soil = box(-95.33, 39.57, -95.31, 39.59)
    result = robust_intersection(soil, STUDY, strategies=[_boom, clipping_intersection])

    assert result.method == "polygon_clipping"
    assert isinstance(result.geometry, Polygon)
    assert result.area_sqm == pytest.approx(geodesic_area_sqm(STUDY), rel=1e-4)


def test_clipping_uses_first_polygon_of_multipolygon():
    far = box(-100.0, 40.0, -99.9, 40.1)
    near = box(-95.33, 39.57, -95.31, 39.59)

    assert clipping_intersection(MultiPolygon([far, near]), STUDY) is None
    assert clipping_intersection(MultiPolygon([near, far]), STUDY) is not None


def test_self_intersecting_soil_polygon_still_resolves():
    minx, miny, maxx, maxy = STUDY.bounds
    bowtie = Polygon([(minx - 0.01, miny - 0.01), (maxx + 0.01, maxy + 0.01),
                      (maxx + 0.01, miny - 0.01), (minx - 0.01, maxy + 0.01)])

    result = robust_intersection(bowtie, STUDY)

    assert result is not None
    assert result.method in METHODS
    assert result.area_sqm > 0


def test_sliver_below_threshold_is_no_overlap():
    minx, miny, maxx, maxy = STUDY.bounds
    sliver = box(maxx - 1e-9, miny, maxx + 0.01, maxy)
    assert robust_intersection(sliver, STUDY) is None


def test_all_strategies_raising():
    with pytest.raises(IntersectionComputationError) as info:
        robust_intersection(STUDY, STUDY, strategies=[_boom, _boom])
    assert len(info.value.errors) == 2


def test_robust_endpoint_returns_feature():
    response = client.post("/intersection/robust", json={
        "soil": {"type": "Polygon", "coordinates": [list(box(-95.33, 39.57, -95.31, 39.59).exterior.coords)]},
        "study": {"type": "Feature", "properties": {},
                  "geometry": {"type": "Polygon", "coordinates": [make_square(-95.32, 39.58)]}},
    })
    assert response.status_code == 200
    feature = response.json()["intersection"]
    assert feature["type"] == "Feature"
    assert feature["properties"]["intersection_method"] in METHODS
    assert feature["properties"]["area_square_meters"] == pytest.approx(10000, rel=0.01)


def test_robust_endpoint_no_overlap():
    response = client.post("/intersection/robust", json={
        "soil": {"type": "Polygon", "coordinates": [list(box(0, 0, 1, 1).exterior.coords)]},
        "study": {"type": "Polygon", "coordinates": [list(box(5, 5, 6, 6).exterior.coords)]},
    })
    assert response.status_code == 200
    assert response.json() == {"intersection": None}


def test_robust_endpoint_rejects_points():
    response = client.post("/intersection/robust", json={
        "soil": {"type": "Point", "coordinates": [0, 0]},
        "study": {"type": "Polygon", "coordinates": [list(box(5, 5, 6, 6).exterior.coords)]},
    })
    assert response.status_code == 400
