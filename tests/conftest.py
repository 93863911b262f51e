"""
Fixtures for commission engine tests.

Each test gets its own SQLite file database with a small organization:

    OMC A (default rate 0.06)            OMC B (no default rate)
      Dealer A1                            Dealer B1
        S1 (override 0.05)                   S3 (system default)
        S2 (OMC default)
"""
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

import pytest

from fuelops.core.permissions import ActorContext, ActorRole
from fuelops.database import build_engine, build_session_factory, init_db
from fuelops.models import (
    OMC,
    Dealer,
    Station,
    SalesTransaction,
    DailyTankStock,
    PriceCapCompliance,
)
from fuelops.services.calculation_locks import CalculationLockRegistry


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'commissions.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def locks():
    return CalculationLockRegistry()


@dataclass
class Org:
    omc_a: uuid.UUID
    omc_b: uuid.UUID
    dealer_a1: uuid.UUID
    dealer_b1: uuid.UUID
    s1: uuid.UUID
    s2: uuid.UUID
    s3: uuid.UUID


@pytest.fixture
async def org(session_factory):
    """Create the organization directory."""
    async with session_factory() as db:
        omc_a = OMC(name="Alpha Petroleum", code="ALPHA", default_commission_rate=Decimal("0.06"))
        omc_b = OMC(name="Beta Energy", code="BETA")
        db.add_all([omc_a, omc_b])
        await db.flush()

        dealer_a1 = Dealer(name="Accra Fuels", code="D-A1", omc_id=omc_a.id)
        dealer_b1 = Dealer(name="Kumasi Fuels", code="D-B1", omc_id=omc_b.id)
        db.add_all([dealer_a1, dealer_b1])
        await db.flush()

        s1 = Station(name="Ring Road", code="S1", omc_id=omc_a.id, dealer_id=dealer_a1.id,
                     commission_rate=Decimal("0.05"))
        s2 = Station(name="Airport", code="S2", omc_id=omc_a.id, dealer_id=dealer_a1.id)
        s3 = Station(name="Adum", code="S3", omc_id=omc_b.id, dealer_id=dealer_b1.id)
        db.add_all([s1, s2, s3])
        await db.commit()

        return Org(
            omc_a=omc_a.id, omc_b=omc_b.id,
            dealer_a1=dealer_a1.id, dealer_b1=dealer_b1.id,
            s1=s1.id, s2=s2.id, s3=s3.id,
        )


async def add_sales(session_factory, station_id, start: date, days: int, volume, price=Decimal("12.50")):
    """One sales transaction per day for `days` days from `start`."""
    volume = Decimal(str(volume))
    async with session_factory() as db:
        for offset in range(days):
            db.add(SalesTransaction(
                station_id=station_id,
                transaction_date=start + timedelta(days=offset),
                volume=volume,
                amount=volume * price,
            ))
        await db.commit()


async def add_tank_stock(session_factory, station_id, day: date, opening, closing,
                         deliveries=0, reconciled=True, unit_price=None):
    async with session_factory() as db:
        db.add(DailyTankStock(
            station_id=station_id,
            stock_date=day,
            opening_stock=Decimal(str(opening)),
            closing_stock=Decimal(str(closing)),
            deliveries=Decimal(str(deliveries)),
            unit_price=Decimal(str(unit_price)) if unit_price is not None else None,
            is_reconciled=reconciled,
        ))
        await db.commit()


async def add_price_cap(session_factory, station_id, effective_date: date, price_cap, selling_price,
                        expected_margin=Decimal("1.00")):
    async with session_factory() as db:
        db.add(PriceCapCompliance(
            station_id=station_id,
            effective_date=effective_date,
            price_cap=Decimal(str(price_cap)),
            selling_price=Decimal(str(selling_price)),
            expected_margin=Decimal(str(expected_margin)),
        ))
        await db.commit()


@pytest.fixture
async def march_sales(session_factory, org):
    """
    March 2024 sales:
    - S1: 1,000 L/day on 1-10 March (10,000 L)
    - S2: 2,000 L/day on 1-5 March (10,000 L)
    - S3: nothing
    """
    await add_sales(session_factory, org.s1, date(2024, 3, 1), 10, 1000)
    await add_sales(session_factory, org.s2, date(2024, 3, 1), 5, 2000)
    return org


# ==================== Actors ====================

@pytest.fixture
def admin_actor():
    return ActorContext(user_id="admin-1", role=ActorRole.ADMIN.value)


@pytest.fixture
def omc_a_actor(org):
    return ActorContext(user_id="omc-a-user", role=ActorRole.OMC.value, omc_id=org.omc_a)


@pytest.fixture
def omc_b_actor(org):
    return ActorContext(user_id="omc-b-user", role=ActorRole.OMC.value, omc_id=org.omc_b)


@pytest.fixture
def dealer_a1_actor(org):
    return ActorContext(user_id="dealer-a1-user", role=ActorRole.DEALER.value, dealer_id=org.dealer_a1)


@pytest.fixture
def station_s1_actor(org):
    return ActorContext(user_id="s1-manager", role=ActorRole.STATION_MANAGER.value, station_id=org.s1)


@pytest.fixture
def attendant_actor(org):
    return ActorContext(user_id="s1-attendant", role=ActorRole.ATTENDANT.value, station_id=org.s1)
