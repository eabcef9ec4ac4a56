"""Soil Data Access (SDA) tabular client.

This is the only module that talks to the network. Every query is a JSON
POST of ``{"query": ..., "format": "JSON"}``; the service answers with
``{"Table": [[...], ...]}`` (row-major, column order fixed per query).
"""

import logging
import re
import time
from typing import Any, List, Optional

import requests

from ..config import get_settings
from .errors import QueryExecutionError, QueryTimeout
from .run_context import CancellationToken

logger = logging.getLogger(__name__)

# ── RETRY POLICY ──────────────────────────────────────────────────────────
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 10000
_SNIPPET_CHARS = 200

_MUKEY_RE = re.compile(r"^\d+$")


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after failed attempt number *attempt* (0-based).

    1s, 2s, 4s, 8s, then capped at 10s.
    """
    return min(BASE_DELAY_MS * (2 ** attempt), MAX_DELAY_MS) / 1000.0


def _pause(seconds: float, cancel_token: Optional[CancellationToken]) -> None:
    if cancel_token is None:
        time.sleep(seconds)
    elif cancel_token.wait(seconds):
        raise QueryTimeout("Query cancelled", cancelled=True)


def _post(url: str, query: str, timeout: float) -> List[Any]:
    """Single attempt. Raises on any failure."""
    try:
        resp = requests.post(
            url,
            json={"query": query, "format": "JSON"},
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=timeout,
        )
    except requests.Timeout as exc:
        raise QueryTimeout() from exc

    if not resp.ok:
        text = resp.text or f"HTTP {resp.status_code} {resp.reason}"
        raise QueryExecutionError(
            f"SDA API Error {resp.status_code}: {text[:_SNIPPET_CHARS]}",
            status_code=resp.status_code,
            snippet=text[:_SNIPPET_CHARS],
        )

    content_type = resp.headers.get("content-type", "")
    if "application/json" not in content_type:
        snippet = (resp.text or "")[:_SNIPPET_CHARS]
        raise QueryExecutionError(
            f"SDA API returned non-JSON response: {snippet}",
            status_code=resp.status_code,
            snippet=snippet,
        )

    data = resp.json()
    if not isinstance(data, dict):
        return []
    return data.get("Table") or []


def execute_query(query: str, *, timeout: Optional[float] = None,
                  max_retries: Optional[int] = None,
                  cancel_token: Optional[CancellationToken] = None) -> List[Any]:
    """Run *query* against SDA and return the table rows.

    Retries every failure except cancellation, up to *max_retries*
    attempts, with :func:`backoff_delay` between attempts. The last error is
    re-raised unchanged once the budget is spent.
    """
    settings = get_settings()
    timeout = settings.request_timeout if timeout is None else timeout
    max_retries = settings.max_retries if max_retries is None else max(1, max_retries)
    query = query.strip()

    last_error: Optional[BaseException] = None
    for attempt in range(max_retries):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            rows = _post(settings.sda_url, query, timeout)
            logger.debug("[SDA] %d rows (attempt %d)", len(rows), attempt + 1)
            return rows
        except (QueryExecutionError, QueryTimeout, requests.RequestException, ValueError) as exc:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            last_error = exc
            logger.warning("[SDA] attempt %d/%d failed: %s", attempt + 1, max_retries, exc)

        if attempt < max_retries - 1:
            _pause(backoff_delay(attempt), cancel_token)

    raise last_error


# ── QUERY BUILDERS ────────────────────────────────────────────────────────

def check_mukey(mukey: str) -> str:
    mukey = str(mukey).strip()
    if not _MUKEY_RE.match(mukey):
        raise ValueError(f"Invalid map unit key: {mukey!r}")
    return mukey


def mukey_lookup_query(wkt: str) -> str:
    """Map units whose polygons intersect the WGS84 study-area WKT."""
    return (
        "SELECT mukey FROM "
        f"SDA_Get_Mukey_from_intersection_with_WktWgs84('{wkt}')"
    )


def mupolygon_query(mukey: str) -> str:
    """Every soil polygon (as WGS84 WKT) of one map unit."""
    return f"SELECT * FROM SDA_Get_MupolygonWktWgs84_from_Mukey({check_mukey(mukey)})"


def fetch_map_unit_keys(wkt: str, **query_opts) -> List[str]:
    """Map-unit keys intersecting the study area, in service order."""
    rows = execute_query(mukey_lookup_query(wkt), **query_opts)
    mukeys: List[str] = []
    for row in rows:
        if not row or row[0] is None:
            continue
        key = str(row[0]).strip()
        if not _MUKEY_RE.match(key):
            logger.warning("[SDA] ignoring malformed map unit key %r", key)
            continue
        if key not in mukeys:
            mukeys.append(key)
    logger.info("[SDA] found %d soil map units intersecting study area", len(mukeys))
    return mukeys


def fetch_map_unit_polygons(mukey: str, **query_opts) -> List[str]:
    """WKT strings of the soil polygons belonging to *mukey*."""
    rows = execute_query(mupolygon_query(mukey), **query_opts)
    return [row[0] for row in rows if row and row[0]]
