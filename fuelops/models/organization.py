"""Organization directory models: OMCs, dealers and stations.

These tables are owned by the station-management side of the platform.
The commission engine only reads them to resolve rates and scope.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fuelops.database import Base
from fuelops.db_types import UUIDType, JSONType, RateType


class OMC(Base):
    """
    Oil Marketing Company.
    Holds the organization-level default commission rate and bonus tiers.
    """
    __tablename__ = "omcs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)

    default_commission_rate: Mapped[Optional[Decimal]] = mapped_column(
        RateType,
        nullable=True,
        comment="Organization default rate per unit volume"
    )

    # Example: [{"min_volume": 50000, "max_volume": null, "bonus_amount": 250, "bonus_per_unit": 0}]
    bonus_tiers: Mapped[Optional[list]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Volume bonus tiers"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    stations: Mapped[List["Station"]] = relationship("Station", back_populates="omc")

    def __repr__(self) -> str:
        return f"<OMC(code='{self.code}')>"


class Dealer(Base):
    """Dealer operating one or more stations under an OMC."""
    __tablename__ = "dealers"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    omc_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("omcs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Dealer(code='{self.code}')>"


class Station(Base):
    """Fuel station. `commission_rate` is the optional station-level override."""
    __tablename__ = "stations"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    location: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    dealer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("dealers.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    omc_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("omcs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    commission_rate: Mapped[Optional[Decimal]] = mapped_column(
        RateType,
        nullable=True,
        comment="Station override rate; supersedes OMC/system defaults when > 0"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    omc: Mapped["OMC"] = relationship("OMC", back_populates="stations")
    dealer: Mapped[Optional["Dealer"]] = relationship("Dealer")

    def __repr__(self) -> str:
        return f"<Station(code='{self.code}')>"
