import threading
import time

import pytest
import requests

from conftest import FakeResponse
from soil_app.services import sda_client
from soil_app.services.errors import QueryExecutionError, QueryTimeout
from soil_app.services.run_context import CancellationToken


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(sda_client.time, "sleep", recorded.append)
    return recorded


def _always(monkeypatch, response_or_exc):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        if isinstance(response_or_exc, Exception):
            raise response_or_exc
        return response_or_exc

    monkeypatch.setattr(sda_client.requests, "post", fake_post)
    return calls


def test_backoff_schedule():
    assert [sda_client.backoff_delay(a) for a in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_always_failing_endpoint_retries_then_raises(monkeypatch, sleeps):
    """Three attempts, two waits (none after the last), last error re-raised."""
    calls = _always(monkeypatch, FakeResponse(status_code=503, text="Service Unavailable"))

    with pytest.raises(QueryExecutionError) as info:
        sda_client.execute_query("SELECT 1", max_retries=3)

    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]
    assert info.value.status_code == 503
    assert "Service Unavailable" in info.value.snippet


def test_backoff_is_capped(monkeypatch, sleeps):
    calls = _always(monkeypatch, FakeResponse(status_code=500, text="boom"))

    with pytest.raises(QueryExecutionError):
        sda_client.execute_query("SELECT 1", max_retries=6)

    assert len(calls) == 6
    assert sleeps == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_request_body_and_rows(monkeypatch, sleeps):
    calls = _always(monkeypatch, FakeResponse({"Table": [["1"], ["2"]]}))

    rows = sda_client.execute_query("  SELECT mukey FROM mapunit  ")

    assert rows == [["1"], ["2"]]
    assert calls == [{"query": "SELECT mukey FROM mapunit", "format": "JSON"}]
    assert sleeps == []


def test_missing_table_returns_empty_list(monkeypatch, sleeps):
    _always(monkeypatch, FakeResponse({}))
    assert sda_client.execute_query("SELECT 1") == []


def test_non_json_response(monkeypatch, sleeps):
    html = "<html>" + "x" * 500
    _always(monkeypatch, FakeResponse(content_type="text/html", text=html))

    with pytest.raises(QueryExecutionError) as info:
        sda_client.execute_query("SELECT 1", max_retries=1)

    assert "non-JSON" in str(info.value)
    assert len(info.value.snippet) == 200


def test_recovers_after_transient_failure(monkeypatch, sleeps):
    responses = [FakeResponse(status_code=502, text="bad gateway"),
                 FakeResponse({"Table": [["42"]]})]
    monkeypatch.setattr(sda_client.requests, "post",
                        lambda url, json=None, headers=None, timeout=None: responses.pop(0))

    assert sda_client.execute_query("SELECT 1") == [["42"]]
    assert sleeps == [1.0]


def test_timeout_is_retried_then_surfaces(monkeypatch, sleeps):
    calls = _always(monkeypatch, requests.Timeout("read timed out"))

    with pytest.raises(QueryTimeout) as info:
        sda_client.execute_query("SELECT 1", max_retries=2)

    assert len(calls) == 2
    assert info.value.cancelled is False


def test_connection_error_is_not_wrapped(monkeypatch, sleeps):
    _always(monkeypatch, requests.ConnectionError("refused"))

    with pytest.raises(requests.ConnectionError):
        sda_client.execute_query("SELECT 1", max_retries=2)


def test_cancelled_token_aborts_before_request(monkeypatch):
    calls = _always(monkeypatch, FakeResponse({"Table": []}))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(QueryTimeout) as info:
        sda_client.execute_query("SELECT 1", cancel_token=token)

    assert info.value.cancelled is True
    assert calls == []


def test_cancel_during_failed_attempt_stops_retries(monkeypatch):
    token = CancellationToken()
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        token.cancel()
        return FakeResponse(status_code=500, text="boom")

    monkeypatch.setattr(sda_client.requests, "post", fake_post)

    with pytest.raises(QueryTimeout) as info:
        sda_client.execute_query("SELECT 1", max_retries=3, cancel_token=token)

    assert info.value.cancelled is True
    assert len(calls) == 1


def test_cancel_during_backoff_wait(monkeypatch):
    token = CancellationToken()
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        return FakeResponse(status_code=500, text="boom")

    monkeypatch.setattr(sda_client.requests, "post", fake_post)
    timer = threading.Timer(0.2, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(QueryTimeout) as info:
            sda_client.execute_query("SELECT 1", max_retries=3, cancel_token=token)
    finally:
        timer.cancel()

    assert info.value.cancelled is True
    assert len(calls) == 1
    # first backoff is 1 s; cancellation cuts it short
    assert time.monotonic() - started < 0.9


def test_map_unit_keys_are_strings_in_service_order(monkeypatch, sleeps):
    _always(monkeypatch, FakeResponse({"Table": [[753], ["101"], [None], [" "], ["753"]]}))

    assert sda_client.fetch_map_unit_keys("POLYGON ((0 0, 1 0, 1 1, 0 0))") == ["753", "101"]


def test_query_builders():
    wkt = "POLYGON ((0 0, 1 0, 1 1, 0 0))"
    assert sda_client.mukey_lookup_query(wkt) == (
        "SELECT mukey FROM SDA_Get_Mukey_from_intersection_with_WktWgs84("
        "'POLYGON ((0 0, 1 0, 1 1, 0 0))')"
    )
    assert sda_client.mupolygon_query("123456") == (
        "SELECT * FROM SDA_Get_MupolygonWktWgs84_from_Mukey(123456)"
    )
    with pytest.raises(ValueError):
        sda_client.mupolygon_query("1; DROP TABLE mapunit")
