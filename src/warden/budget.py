from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class ContextBudgetTracker:
    """Advisory per-run context consumption counter.

    Once a run crosses the high-water mark the orchestrator should prefer
    small single-file actions until a new run begins. Never raises.
    """

    def __init__(self, ceiling: float = 100_000.0, high_water: float = 0.8) -> None:
        self.ceiling = max(float(ceiling), 1e-9)
        self.high_water = min(max(float(high_water), 0.0), 1.0)
        self._used: dict[str, float] = {}
        self._lock = threading.Lock()

    def record(self, run_id: str, units: float) -> float:
        try:
            amount = max(float(units), 0.0)
        except (TypeError, ValueError):
            amount = 0.0
        with self._lock:
            before = self._used.get(run_id, 0.0)
            after = before + amount
            self._used[run_id] = after
        limit = self.ceiling * self.high_water
        if before < limit <= after:
            logger.warning(
                "Run %s crossed context high-water mark (%.0f/%.0f)", run_id, after, self.ceiling
            )
        return after

    def used(self, run_id: str) -> float:
        with self._lock:
            return self._used.get(run_id, 0.0)

    def fraction(self, run_id: str) -> float:
        return self.used(run_id) / self.ceiling

    def should_degrade(self, run_id: str) -> bool:
        return self.fraction(run_id) >= self.high_water

    def forget(self, run_id: str) -> None:
        with self._lock:
            self._used.pop(run_id, None)
