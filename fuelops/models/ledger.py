"""Upstream ledger models read by the data aggregator.

- Sales ledger: pump transactions with volume and amount
- Tank-stock ledger: daily opening/closing/delivery reconciliation
- Price-cap compliance: regulated cap vs. station selling price
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from fuelops.database import Base
from fuelops.db_types import UUIDType, MoneyType, VolumeType


class SalesTransaction(Base):
    """Single pump sale recorded by the sales module."""
    __tablename__ = "sales_transactions"
    __table_args__ = (
        Index("ix_sales_transactions_station_date", "station_id", "transaction_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    station_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stations.id", ondelete="CASCADE"),
        nullable=False
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    volume: Mapped[Decimal] = mapped_column(VolumeType, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class DailyTankStock(Base):
    """
    Daily tank reconciliation.
    `is_reconciled` marks a physically verified dip reading.
    """
    __tablename__ = "daily_tank_stocks"
    __table_args__ = (
        Index("ix_daily_tank_stocks_station_date", "station_id", "stock_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    station_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stations.id", ondelete="CASCADE"),
        nullable=False
    )
    stock_date: Mapped[date] = mapped_column(Date, nullable=False)

    opening_stock: Mapped[Decimal] = mapped_column(VolumeType, nullable=False)
    closing_stock: Mapped[Decimal] = mapped_column(VolumeType, nullable=False)
    deliveries: Mapped[Decimal] = mapped_column(VolumeType, default=Decimal("0"))
    sales: Mapped[Optional[Decimal]] = mapped_column(
        VolumeType,
        nullable=True,
        comment="Derived sold volume, if recorded"
    )
    unit_price: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)

    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def sold_volume(self) -> Decimal:
        """Recorded sales, else opening + deliveries - closing (never negative)."""
        if self.sales is not None:
            return Decimal(self.sales)
        derived = Decimal(self.opening_stock) + Decimal(self.deliveries or 0) - Decimal(self.closing_stock)
        return max(derived, Decimal("0"))


class PriceCapCompliance(Base):
    """Price-cap window published by the compliance service for a station."""
    __tablename__ = "price_cap_compliance"
    __table_args__ = (
        Index("ix_price_cap_compliance_station_date", "station_id", "effective_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    station_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stations.id", ondelete="CASCADE"),
        nullable=False
    )
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    price_cap: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    selling_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    expected_margin: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0"),
        comment="Expected dealer margin per unit at the cap"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
