"""Geometry fingerprints for skipping unchanged re-runs.

The digest only looks at geometry type and coordinates; feature properties
(names, styling, ids) never affect it. It is a 32-bit rolling hash, good
for "did the drawing change?" and nothing more.
"""

import json
from typing import Any, Dict, Optional


def _reduce(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        return {"type": None, "features": []}
    geom_type = payload.get("type")
    if geom_type == "FeatureCollection":
        features = [
            f.get("geometry") if isinstance(f, dict) else None
            for f in payload.get("features") or []
        ]
    elif geom_type == "Feature":
        features = [payload.get("geometry")]
    else:
        features = [{"type": geom_type, "coordinates": payload.get("coordinates")}]
    return {"type": geom_type, "features": features}


def _rolling_hash(text: str) -> int:
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    # signed 32-bit, like the digest the front end computes
    return h - 0x100000000 if h & 0x80000000 else h


def geometry_fingerprint(payload: Any) -> int:
    """Structural digest of a GeoJSON payload (type + geometries only)."""
    text = json.dumps(_reduce(payload), sort_keys=True, separators=(",", ":"))
    return _rolling_hash(text)


class ChangeDetector:
    """Remembers the last fingerprint (and result) seen by one caller."""

    def __init__(self):
        self.last_fingerprint: Optional[int] = None
        self.last_result: Any = None

    def has_changed(self, payload: Any) -> bool:
        return geometry_fingerprint(payload) != self.last_fingerprint

    def remember(self, payload: Any, result: Any) -> None:
        self.last_fingerprint = geometry_fingerprint(payload)
        self.last_result = result

    def cached_result(self, payload: Any) -> Any:
        """Last result if *payload* is unchanged, else None."""
        if self.last_result is None or self.has_changed(payload):
            return None
        return self.last_result
