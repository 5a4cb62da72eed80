"""
Latest-value debug slot shared between the control thread and an off-path reader.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from .types import QPControllerDebugData, TickStatus


@dataclass(frozen=True)
class DebugSnapshot:
    timestamp: float
    status: TickStatus
    debug: QPControllerDebugData | None


class DebugSnapshotChannel:
    """
    The control thread `publish()`es after each tick; a logger / viewer thread
    polls `latest()`. Only the newest snapshot is kept. A disabled channel
    stores nothing and the controller does not assemble debug data for it.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = bool(enabled)
        self.lock = threading.Lock()
        self._latest: DebugSnapshot | None = None
        self._count = 0

    def publish(self, timestamp: float, status: TickStatus, debug: QPControllerDebugData | None) -> None:
        if not self.enabled:
            return
        snap = DebugSnapshot(timestamp=float(timestamp), status=status, debug=debug)
        with self.lock:
            self._latest = snap
            self._count += 1

    def latest(self) -> DebugSnapshot | None:
        with self.lock:
            return self._latest

    @property
    def count(self) -> int:
        with self.lock:
            return self._count
