"""Commission settlement models for dealer/station commissions.

Supports:
- Periodic (monthly) commission records per station
- Windfall/shortfall adjustments from price-cap compliance
- Revisions and corrections (records are never deleted)
- Approval and payment tracking
"""
import uuid
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Date
from sqlalchemy import Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fuelops.database import Base
from fuelops.db_types import UUIDType, MoneyType, VolumeType, RateType


class CommissionStatus(str, Enum):
    """Commission record status."""
    PENDING = "pending"             # Created, not yet calculated
    CALCULATED = "calculated"       # Amounts computed, awaiting approval
    APPROVED = "approved"           # Approved for payment
    PAID = "paid"                   # Paid out (terminal)
    CANCELLED = "cancelled"         # Cancelled before payment (terminal)


class DataSource(str, Enum):
    """Upstream ledger a record was calculated from."""
    SALES = "sales"
    TANK_STOCK = "tank_stock"


class AdjustmentType(str, Enum):
    """Windfall/shortfall configuration type."""
    WINDFALL = "windfall"
    SHORTFALL = "shortfall"


class CommissionRecord(Base):
    """
    Commission entitlement of one station for one period.
    Exactly one current record exists per (station_id, period).
    """
    __tablename__ = "commission_records"
    __table_args__ = (
        Index("ix_commission_records_period_status", "period", "status"),
        Index("ix_commission_records_omc_period", "omc_id", "period"),
        Index("ix_commission_records_dealer_period", "dealer_id", "period"),
        Index(
            "uq_commission_records_current",
            "station_id",
            "period",
            unique=True,
            sqlite_where=text("is_current = 1"),
            postgresql_where=text("is_current"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    # Ownership (snapshot at calculation time)
    station_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    dealer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    omc_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)

    period: Mapped[str] = mapped_column(String(7), nullable=False, comment="YYYY-MM")

    # Inputs
    total_volume: Mapped[Decimal] = mapped_column(VolumeType, nullable=False, default=Decimal("0"))
    total_sales: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    commission_rate_applied: Mapped[Decimal] = mapped_column(RateType, nullable=False)
    data_source: Mapped[str] = mapped_column(String(20), nullable=False, default=DataSource.SALES.value)

    # Breakdown
    base_commission_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    windfall_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    shortfall_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    bonus_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    total_commission: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))

    # Status
    status: Mapped[str] = mapped_column(
        String(20),
        default=CommissionStatus.PENDING.value,
        nullable=False
    )

    # Revisions
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    superseded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    correction_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Paid record this record corrects"
    )

    # Workflow
    calculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    calculated_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    payments: Mapped[List["CommissionPayment"]] = relationship(
        "CommissionPayment",
        back_populates="commission",
        lazy="selectin",
    )

    @property
    def payment(self) -> Optional["CommissionPayment"]:
        return self.payments[0] if self.payments else None

    def __repr__(self) -> str:
        return f"<CommissionRecord(station={self.station_id}, period='{self.period}', status='{self.status}')>"


class CommissionPayment(Base):
    """Payment attached to a commission record when it is marked paid."""
    __tablename__ = "commission_payments"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    commission_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("commission_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    payment_method: Mapped[str] = mapped_column(String(30), nullable=False, default="bank_transfer")
    reference_number: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recorded_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    commission: Mapped["CommissionRecord"] = relationship(
        "CommissionRecord",
        back_populates="payments"
    )

    def __repr__(self) -> str:
        return f"<CommissionPayment(ref='{self.reference_number}')>"


class WindfallShortfallConfig(Base):
    """
    Per-station windfall/shortfall policy.
    `commission_rate` is the share of the price-cap spread credited (windfall)
    or debited (shortfall); adjustments smaller than `threshold_amount` are ignored.
    """
    __tablename__ = "windfall_shortfall_configs"
    __table_args__ = (
        Index("ix_windfall_configs_station_type", "station_id", "type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    station_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stations.id", ondelete="CASCADE"),
        nullable=False
    )
    omc_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(RateType, nullable=False)
    threshold_amount: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def applies_to(self, start: date, end: date) -> bool:
        """Whether the config is active anywhere inside [start, end]."""
        if not self.is_active:
            return False
        if self.effective_date > end:
            return False
        if self.end_date and self.end_date < start:
            return False
        return True

    def __repr__(self) -> str:
        return f"<WindfallShortfallConfig(station={self.station_id}, type='{self.type}')>"
