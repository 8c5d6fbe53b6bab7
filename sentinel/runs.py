"""
Run Registry

In-memory record of pipeline runs with a per-run event channel.

Delivery contract: emit() stores the event as the run's current stage and
hands it synchronously to every listener attached at that moment. There is
no replay; a late subscriber sees only the current-stage snapshot.
Completed runs are evicted once they are older than the retention window.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

from sentinel.config import RUN_RETENTION_SECONDS

logger = logging.getLogger(__name__)

StageEvent = dict[str, Any]
Listener = Callable[[StageEvent], None]

TERMINAL_STAGES = frozenset({"final", "error"})


@dataclass
class Run:
    id: str
    message: str
    payment_tx_hash: Optional[str] = None
    current_stage: Optional[StageEvent] = None
    result: Optional[StageEvent] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[float] = None     # monotonic seconds
    listeners: set[Listener] = field(default_factory=set)

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None


class RunRegistry:
    def __init__(self, retention_seconds: float = RUN_RETENTION_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._runs: dict[str, Run] = {}

    def __len__(self) -> int:
        return len(self._runs)

    def create(self, message: str, payment_tx_hash: Optional[str] = None) -> Run:
        run = Run(id=str(uuid4()), message=message, payment_tx_hash=payment_tx_hash)
        self.put(run)
        return run

    def put(self, run: Run) -> None:
        self.evict_expired()
        self._runs[run.id] = run

    def get(self, run_id: str) -> Optional[Run]:
        self.evict_expired()
        return self._runs.get(run_id)

    def evict(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None

    def evict_expired(self) -> int:
        """Drop completed runs past retention. Runs in flight are kept."""
        cutoff = self._clock() - self.retention_seconds
        expired = [
            run_id for run_id, run in self._runs.items()
            if run.completed_at is not None and run.completed_at <= cutoff
        ]
        for run_id in expired:
            del self._runs[run_id]
        if expired:
            logger.debug("Evicted %d expired runs", len(expired))
        return len(expired)

    # -- event channel --------------------------------------------------------

    def subscribe(self, run_id: str, listener: Listener) -> Optional[Run]:
        run = self._runs.get(run_id)
        if run is not None:
            run.listeners.add(listener)
        return run

    def unsubscribe(self, run_id: str, listener: Listener) -> None:
        run = self._runs.get(run_id)
        if run is not None:
            run.listeners.discard(listener)

    def emit(self, run_id: str, event: StageEvent) -> None:
        run = self._runs.get(run_id)
        if run is None:
            return
        run.current_stage = event
        if event.get("stage") in TERMINAL_STAGES:
            run.completed_at = self._clock()

        for listener in list(run.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Stream listener failed for run %s", run_id)
