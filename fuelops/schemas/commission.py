"""Pydantic schemas for the commission engine."""
from datetime import datetime, date
from typing import Optional, List
from decimal import Decimal
from uuid import UUID

from pydantic import Field

from fuelops.schemas.base import BaseCreateSchema, BaseResponseSchema, PaginatedResponse
from fuelops.models.commission import AdjustmentType, CommissionStatus


PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


# ==================== Calculation ====================

class CalculateCommissionsRequest(BaseCreateSchema):
    """Calculate commissions for a period; all in-scope stations when station_ids is omitted."""
    period: str = Field(..., pattern=PERIOD_PATTERN, examples=["2024-03"])
    station_ids: Optional[List[UUID]] = None
    force_recalculation: bool = False


# ==================== Commission Records ====================

class CommissionPaymentResponse(BaseResponseSchema):
    id: UUID
    payment_method: str
    reference_number: str
    payment_date: date
    notes: Optional[str] = None
    recorded_by: Optional[str] = None
    created_at: datetime


class CommissionResponse(BaseResponseSchema):
    """Response schema for CommissionRecord."""
    id: UUID
    station_id: UUID
    dealer_id: Optional[UUID] = None
    omc_id: UUID
    period: str

    total_volume: Decimal
    total_sales: Decimal
    commission_rate_applied: Decimal
    data_source: str

    base_commission_amount: Decimal
    windfall_amount: Decimal
    shortfall_amount: Decimal
    bonus_amount: Decimal
    total_commission: Decimal

    status: CommissionStatus
    revision: int
    is_current: bool
    superseded_by_id: Optional[UUID] = None
    correction_of_id: Optional[UUID] = None

    calculated_at: Optional[datetime] = None
    calculated_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    paid_at: Optional[datetime] = None
    paid_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    notes: Optional[str] = None

    payment: Optional[CommissionPaymentResponse] = None

    created_at: datetime
    updated_at: datetime


class CommissionListResponse(PaginatedResponse[CommissionResponse]):
    """Paginated commission records."""
    pass


class StationCalculationResultResponse(BaseResponseSchema):
    station_id: UUID
    success: bool
    commission: Optional[CommissionResponse] = None
    superseded_id: Optional[UUID] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class BatchCalculationResponse(BaseResponseSchema):
    period: str
    succeeded: int
    failed: int
    results: List[StationCalculationResultResponse]


# ==================== Lifecycle ====================

class MarkPaidRequest(BaseCreateSchema):
    """Payment details. Reference number and payment date are checked by the service."""
    reference_number: Optional[str] = Field(None, max_length=100)
    payment_date: Optional[date] = None
    payment_method: str = Field("bank_transfer", max_length=30)
    notes: Optional[str] = None


class CancelRequest(BaseCreateSchema):
    reason: Optional[str] = None


class CorrectionRequest(BaseCreateSchema):
    notes: Optional[str] = None


# ==================== Stats ====================

class PeriodTotal(BaseResponseSchema):
    period: str
    count: int
    total_commission: Decimal


class CommissionStatsResponse(BaseResponseSchema):
    total_count: int
    total_amount: Decimal
    pending_count: int
    pending_amount: Decimal
    approved_count: int
    approved_amount: Decimal
    paid_count: int
    paid_amount: Decimal
    cancelled_count: int
    current_period: Optional[str] = None
    current_period_amount: Decimal
    previous_period: Optional[str] = None
    previous_period_amount: Decimal
    period_change_percent: Optional[Decimal] = None
    by_period: List[PeriodTotal] = []


# ==================== Progressive Accrual ====================

class DailyAccrualPointResponse(BaseResponseSchema):
    date: date
    station_id: UUID
    volume: Decimal
    commission_earned: Decimal
    cumulative_commission: Decimal
    cumulative_volume: Decimal
    trend: str
    is_today: bool
    has_data: bool


class StationProjectionResponse(BaseResponseSchema):
    station_id: UUID
    period: str
    days_in_period: int
    days_elapsed: int
    data_source: Optional[str] = None
    cumulative_commission: Decimal
    estimated_final_commission: Decimal
    is_estimate: bool
    points: List[DailyAccrualPointResponse]


# ==================== Windfall/Shortfall Configuration ====================

class AdjustmentConfigCreate(BaseCreateSchema):
    station_id: UUID
    type: AdjustmentType
    commission_rate: Decimal = Field(..., gt=0, le=1, decimal_places=6)
    threshold_amount: Optional[Decimal] = Field(None, ge=0)
    effective_date: date
    end_date: Optional[date] = None


class AdjustmentConfigResponse(BaseResponseSchema):
    id: UUID
    station_id: UUID
    omc_id: UUID
    type: str
    commission_rate: Decimal
    threshold_amount: Optional[Decimal] = None
    effective_date: date
    end_date: Optional[date] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime


# ==================== Auto-calculation ====================

SCHEDULE_TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class AutoCalculationConfigUpdate(BaseCreateSchema):
    enabled: bool
    schedule_time: Optional[str] = Field(None, pattern=SCHEDULE_TIME_PATTERN, examples=["01:30"])


class AutoCalculationStatusResponse(BaseResponseSchema):
    enabled: bool
    schedule_time: str
    schedule: str
    last_run_at: Optional[datetime] = None
    last_period: Optional[str] = None
    last_succeeded: Optional[int] = None
    last_failed: Optional[int] = None
    last_error: Optional[str] = None
