"""
Commission Jobs

Background jobs for the commission engine:
- Daily auto-calculation of the open period for every active station
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from fuelops.core.periods import period_of

logger = logging.getLogger(__name__)


@dataclass
class AutoCalculationRun:
    """Outcome of the most recent auto-calculation run."""
    run_at: datetime
    period: str
    succeeded: int = 0
    failed: int = 0
    error: Optional[str] = None


_last_run: Optional[AutoCalculationRun] = None


def get_last_run() -> Optional[AutoCalculationRun]:
    return _last_run


def reset_last_run() -> None:
    global _last_run
    _last_run = None


async def auto_calculate_commissions(
    session_factory=None,
    period: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Calculate the open period for every active station as the system actor.

    Approved records are left alone and paid records are never touched; their
    failures appear in the per-station report like any other.
    """
    global _last_run

    from fuelops.core.permissions import system_actor
    from fuelops.services.commission_service import CommissionService

    if session_factory is None:
        from fuelops.database import async_session_factory
        session_factory = async_session_factory

    period = period or period_of(today or date.today())
    run = AutoCalculationRun(run_at=datetime.now(timezone.utc), period=period)
    logger.info(f"Starting commission auto-calculation for {period}...")

    try:
        service = CommissionService(session_factory, system_actor())
        batch = await service.calculate_commissions(period)
        run.succeeded = len(batch.succeeded)
        run.failed = len(batch.failed)
        for failure in batch.failed:
            logger.info(f"Auto-calculation skipped station {failure.station_id}: {failure.error_code}")
    except Exception as e:
        run.error = str(e)
        logger.error(f"Commission auto-calculation for {period} failed: {e}")
        raise
    finally:
        _last_run = run

    logger.info(
        f"Commission auto-calculation for {period} completed: "
        f"{run.succeeded} succeeded, {run.failed} failed"
    )
    return {
        "period": period,
        "succeeded": run.succeeded,
        "failed": run.failed,
    }
