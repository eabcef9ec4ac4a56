"""Run bookkeeping: cancellation tokens, progress events and the run-tagged
messages a session exchanges with its worker.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from .errors import QueryTimeout


class CancellationToken:
    """Single-shot cancellation flag. Once cancelled it stays cancelled."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True early if cancelled meanwhile."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise QueryTimeout("Query cancelled", cancelled=True)


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    message: str

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.current / self.total * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "message": self.message,
            "percentage": self.percentage,
        }


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class RunContext:
    run_id: int
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


@dataclass(frozen=True)
class RunMessage:
    run_id: int
    kind: str  # "progress" | "result" | "error"
    payload: Any = None
    source: Any = None  # input GeoJSON, carried on "result" messages
