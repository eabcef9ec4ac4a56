"""Runtime settings for the soil analysis backend.

Values are read from the environment at call time so that a ``.env`` file
loaded by ``main.py`` (or a test's ``monkeypatch.setenv``) is honoured.
"""

import os
from dataclasses import dataclass

# ── SOIL DATA ACCESS (USDA NRCS) ──────────────────────────────────────────
DEFAULT_SDA_URL = (
    "https://sdmdataaccess.nrcs.usda.gov"
    "/Tabular/SDMTabularService/post.rest"
)
DEFAULT_REQUEST_TIMEOUT = 120.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_RESULTS = 100


@dataclass(frozen=True)
class Settings:
    sda_url: str = DEFAULT_SDA_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    max_results: int = DEFAULT_MAX_RESULTS
    log_level: str = "INFO"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def get_settings() -> Settings:
    """Build a :class:`Settings` snapshot from the current environment."""
    return Settings(
        sda_url=os.environ.get("SDA_API_URL", "") or DEFAULT_SDA_URL,
        request_timeout=_env_float("SDA_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
        max_retries=max(1, _env_int("SDA_MAX_RETRIES", DEFAULT_MAX_RETRIES)),
        max_results=max(0, _env_int("SOIL_MAX_RESULTS", DEFAULT_MAX_RESULTS)),
        log_level=os.environ.get("SOIL_LOG_LEVEL", "INFO").upper(),
    )
