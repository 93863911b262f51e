"""API endpoints for station commission calculation and settlement."""
from typing import Optional, List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from fuelops.api.deps import Commissions, require_capability
from fuelops.core.permissions import Capability
from fuelops.jobs import commission_jobs
from fuelops.jobs.scheduler import (
    AUTO_CALCULATION_JOB_ID,
    auto_calculation_schedule,
    configure_auto_calculation,
    get_auto_calculation_config,
    get_job_status,
)
from fuelops.models.commission import CommissionStatus
from fuelops.schemas.commission import (
    # Calculation
    CalculateCommissionsRequest, BatchCalculationResponse, StationCalculationResultResponse,
    # Records
    CommissionResponse, CommissionListResponse,
    # Lifecycle
    MarkPaidRequest, CancelRequest, CorrectionRequest,
    # Reports
    CommissionStatsResponse, StationProjectionResponse,
    # Configuration
    AdjustmentConfigCreate, AdjustmentConfigResponse,
    AutoCalculationConfigUpdate, AutoCalculationStatusResponse,
)
from fuelops.schemas.commission import PERIOD_PATTERN
from fuelops.services.commission_service import CommissionFilters, PaymentDetails

router = APIRouter()


# ==================== Calculation ====================

@router.post("/calculate", response_model=BatchCalculationResponse)
async def calculate_commissions(
    request: CalculateCommissionsRequest,
    service: Commissions,
):
    """
    Calculate commissions for a period.
    Returns a per-station success/failure report; failed stations do not abort the batch.
    """
    batch = await service.calculate_commissions(
        request.period,
        station_ids=request.station_ids,
        force_recalculation=request.force_recalculation,
    )
    return BatchCalculationResponse(
        period=batch.period,
        succeeded=len(batch.succeeded),
        failed=len(batch.failed),
        results=[StationCalculationResultResponse.model_validate(r) for r in batch.results],
    )


# ==================== Reports ====================

@router.get("", response_model=CommissionListResponse)
async def list_commissions(
    service: Commissions,
    period: Optional[str] = Query(None, pattern=PERIOD_PATTERN),
    status: Optional[CommissionStatus] = None,
    station_id: Optional[UUID] = None,
    omc_id: Optional[UUID] = None,
    dealer_id: Optional[UUID] = None,
    include_superseded: bool = False,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    """List commission records visible to the caller."""
    filters = CommissionFilters(
        period=period,
        status=status.value if status else None,
        station_id=station_id,
        omc_id=omc_id,
        dealer_id=dealer_id,
        include_superseded=include_superseded,
    )
    result = await service.get_commissions(filters, page=page, size=size)

    return CommissionListResponse(
        items=[CommissionResponse.model_validate(c) for c in result.items],
        total=result.total,
        page=result.page,
        size=result.size,
        pages=result.pages,
    )


@router.get("/stats", response_model=CommissionStatsResponse)
async def get_commission_stats(
    service: Commissions,
    period: Optional[str] = Query(None, pattern=PERIOD_PATTERN),
    station_id: Optional[UUID] = None,
    omc_id: Optional[UUID] = None,
    dealer_id: Optional[UUID] = None,
):
    """Totals, paid/pending sums and current vs previous period."""
    stats = await service.get_commission_stats(CommissionFilters(
        period=period,
        station_id=station_id,
        omc_id=omc_id,
        dealer_id=dealer_id,
    ))
    return CommissionStatsResponse.model_validate(stats)


@router.get("/progressive", response_model=List[StationProjectionResponse])
async def get_progressive_commissions(
    service: Commissions,
    period: str = Query(..., pattern=PERIOD_PATTERN),
    station_id: Optional[UUID] = None,
):
    """Day-by-day accrual with trend and end-of-period estimate."""
    projections = await service.get_progressive_commissions(period, station_id=station_id)
    return [StationProjectionResponse.model_validate(p) for p in projections]


# ==================== Windfall/Shortfall Configuration ====================

@router.get("/adjustment-configs", response_model=List[AdjustmentConfigResponse])
async def list_adjustment_configs(
    service: Commissions,
    station_id: Optional[UUID] = None,
):
    configs = await service.list_adjustment_configs(station_id=station_id)
    return [AdjustmentConfigResponse.model_validate(c) for c in configs]


@router.post("/adjustment-configs", response_model=AdjustmentConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_adjustment_config(
    config_in: AdjustmentConfigCreate,
    service: Commissions,
):
    config = await service.create_adjustment_config(
        station_id=config_in.station_id,
        type=config_in.type.value,
        commission_rate=config_in.commission_rate,
        threshold_amount=config_in.threshold_amount,
        effective_date=config_in.effective_date,
        end_date=config_in.end_date,
    )
    return AdjustmentConfigResponse.model_validate(config)


# ==================== Auto-calculation ====================

def _auto_calculation_status() -> AutoCalculationStatusResponse:
    config = get_auto_calculation_config()
    last_run = commission_jobs.get_last_run()
    next_run = next((job["next_run_time"] for job in get_job_status() if job["id"] == AUTO_CALCULATION_JOB_ID), None)

    return AutoCalculationStatusResponse(
        enabled=config.enabled,
        schedule_time=config.schedule_time,
        schedule=auto_calculation_schedule() if next_run is None else f"{auto_calculation_schedule()} (next {next_run})",
        last_run_at=last_run.run_at if last_run else None,
        last_period=last_run.period if last_run else None,
        last_succeeded=last_run.succeeded if last_run else None,
        last_failed=last_run.failed if last_run else None,
        last_error=last_run.error if last_run else None,
    )


@router.get(
    "/auto-calculation",
    response_model=AutoCalculationStatusResponse,
    dependencies=[Depends(require_capability(Capability.CALCULATE))],
)
async def get_auto_calculation_status():
    """Schedule and outcome of the last scheduled calculation."""
    return _auto_calculation_status()


@router.put(
    "/auto-calculation",
    response_model=AutoCalculationStatusResponse,
    dependencies=[Depends(require_capability(Capability.CONFIGURE))],
)
async def update_auto_calculation(config_in: AutoCalculationConfigUpdate):
    """
    Turn scheduled calculation on or off and set its time of day.
    Changes apply to the running process until restart.
    """
    configure_auto_calculation(config_in.enabled, config_in.schedule_time)
    return _auto_calculation_status()


# ==================== Single Record ====================

@router.get("/{commission_id}", response_model=CommissionResponse)
async def get_commission(
    commission_id: UUID,
    service: Commissions,
):
    """Get commission record by ID."""
    return CommissionResponse.model_validate(await service.get_commission(commission_id))


@router.post("/{commission_id}/approve", response_model=CommissionResponse)
async def approve_commission(
    commission_id: UUID,
    service: Commissions,
):
    """Approve a calculated commission."""
    return CommissionResponse.model_validate(await service.approve_commission(commission_id))


@router.post("/{commission_id}/pay", response_model=CommissionResponse)
async def mark_commission_as_paid(
    commission_id: UUID,
    payment_in: MarkPaidRequest,
    service: Commissions,
):
    """Record payment and mark the commission as paid."""
    record = await service.mark_commission_as_paid(
        commission_id,
        PaymentDetails(
            reference_number=payment_in.reference_number,
            payment_date=payment_in.payment_date,
            payment_method=payment_in.payment_method,
            notes=payment_in.notes,
        ),
    )
    return CommissionResponse.model_validate(record)


@router.post("/{commission_id}/cancel", response_model=CommissionResponse)
async def cancel_commission(
    commission_id: UUID,
    service: Commissions,
    cancel_in: Optional[CancelRequest] = None,
):
    """Cancel a commission that has not been paid."""
    record = await service.cancel_commission(commission_id, reason=cancel_in.reason if cancel_in else None)
    return CommissionResponse.model_validate(record)


@router.post("/{commission_id}/corrections", response_model=CommissionResponse, status_code=status.HTTP_201_CREATED)
async def create_correction(
    commission_id: UUID,
    service: Commissions,
    correction_in: Optional[CorrectionRequest] = None,
):
    """Recalculate a paid commission as a linked correction record."""
    record = await service.create_correction(commission_id, notes=correction_in.notes if correction_in else None)
    return CommissionResponse.model_validate(record)
