import pytest
from pyproj import Geod
from shapely.geometry import box

from soil_app.services import sda_client

_geod = Geod(ellps="WGS84")

SOIL_ROW = [
    "123456", "Sharpsburg silt loam, 1 to 4 percent slopes", "Mollisols", "Udolls",
    "Moderately well drained", "mesic", "Fine, smectitic, mesic Typic Argiudolls",
    6.2, 3.5, 8.0, 62.0, 30.0, "Silt loam",
]


def make_square(lon: float, lat: float, size_m: float = 100.0) -> list:
    """Closed ring of a ~size_m × size_m square with its SW corner at lon/lat."""
    east_lon, _, _ = _geod.fwd(lon, lat, 90, size_m)
    _, north_lat, _ = _geod.fwd(lon, lat, 0, size_m)
    return [[lon, lat], [east_lon, lat], [east_lon, north_lat], [lon, north_lat], [lon, lat]]


def square_feature_collection(lon: float = -95.32, lat: float = 39.58, size_m: float = 100.0) -> dict:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "Polygon", "coordinates": [make_square(lon, lat, size_m)]},
                "properties": {"name": "Test field"},
            }
        ],
    }


def soil_row(mukey: str, name: str = "Test soil") -> list:
    row = list(SOIL_ROW)
    row[0] = mukey
    row[1] = name
    return row


# Big soil polygon that swallows the default test square.
CONTAINER_WKT = box(-95.33, 39.57, -95.31, 39.59).wkt


class FakeResponse:
    def __init__(self, payload=None, status_code=200,
                 content_type="application/json; charset=utf-8", text=""):
        self._payload = payload
        self.status_code = status_code
        self.headers = {"content-type": content_type}
        self.text = text
        self.reason = "OK" if status_code < 400 else "Error"

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        return self._payload


class FakeSDA:
    """Stand-in for the SDA endpoint, dispatching on the query text."""

    def __init__(self):
        self.queries = []
        self.mukeys = []
        self.properties = []
        self.polygons = {}
        self.failing_keys = set()
        self.on_request = None

    def __call__(self, url, json=None, headers=None, timeout=None):
        query = json["query"]
        self.queries.append(query)
        if self.on_request is not None:
            self.on_request(query)
        if "SDA_Get_Mukey_from_intersection_with_WktWgs84" in query:
            rows = [[k] for k in self.mukeys]
        elif "RankedSoils" in query:
            rows = self.properties
        elif "SDA_Get_MupolygonWktWgs84_from_Mukey" in query:
            key = query.rsplit("(", 1)[1].rstrip(")")
            if key in self.failing_keys:
                return FakeResponse(status_code=500, text="Internal error")
            rows = [[w] for w in self.polygons.get(key, [])]
        else:
            rows = []
        return FakeResponse({"Table": rows})

    def polygon_queries(self):
        return [q for q in self.queries if "SDA_Get_MupolygonWktWgs84_from_Mukey" in q]


@pytest.fixture
def fake_sda(monkeypatch):
    sda = FakeSDA()
    monkeypatch.setattr(sda_client.requests, "post", sda)
    monkeypatch.setattr(sda_client.time, "sleep", lambda seconds: None)
    return sda
