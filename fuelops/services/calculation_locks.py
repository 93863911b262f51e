"""In-process guard: one in-flight calculation per (station_id, period)."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Tuple
import uuid

from fuelops.core.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)

LockKey = Tuple[uuid.UUID, str]


class CalculationLockRegistry:
    """
    Non-blocking per-key locks. A second caller for a key that is already
    being calculated gets ConcurrencyConflict instead of waiting.
    Across processes the current-record unique index is the backstop.
    """

    def __init__(self):
        self._locks: Dict[LockKey, asyncio.Lock] = {}

    def is_locked(self, station_id: uuid.UUID, period: str) -> bool:
        lock = self._locks.get((station_id, period))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, station_id: uuid.UUID, period: str):
        key = (station_id, period)
        lock = self._locks.setdefault(key, asyncio.Lock())
        # Check-and-acquire happens without an await in between.
        if lock.locked():
            logger.warning(f"Calculation for station {station_id} period {period} already in progress")
            raise ConcurrencyConflict(
                f"Calculation for station {station_id} in {period} is already in progress",
                {"station_id": str(station_id), "period": period},
            )
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if not lock.locked() and self._locks.get(key) is lock:
                del self._locks[key]


calculation_locks = CalculationLockRegistry()
