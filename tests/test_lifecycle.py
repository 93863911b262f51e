"""
Tests for the commission service: calculation, revisions, approval, payment,
cancellation, corrections and scoped reads.
"""
import asyncio
import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from fuelops.core.exceptions import (
    ConcurrencyConflict,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from fuelops.models import OMC, CommissionRecord, Station
from fuelops.services import commission_state_machine as sm
from fuelops.services.commission_service import (
    CommissionFilters,
    CommissionService,
    PaymentDetails,
    default_aggregator_factory,
)
from fuelops.services.data_aggregator import DataAggregator, default_sources

from conftest import add_price_cap, add_sales


PAYMENT = PaymentDetails(reference_number="COMM-0001", payment_date=date(2024, 4, 1))


@pytest.fixture
def admin_service(session_factory, admin_actor, locks):
    return CommissionService(session_factory, admin_actor, locks=locks)


async def calculate_one(service, station_id, period="2024-03", **kwargs):
    batch = await service.calculate_commissions(period, station_ids=[station_id], **kwargs)
    assert len(batch.results) == 1
    return batch.results[0]


class TestCalculateCommissions:
    """Tests for batch calculation."""

    async def test_example_station(self, admin_service, march_sales):
        """Test 10,000 L at 0.05/L in 2024-03 -> 500.00 calculated."""
        result = await calculate_one(admin_service, march_sales.s1)

        assert result.success
        record = result.commission
        assert record.status == sm.CALCULATED
        assert record.base_commission_amount == Decimal("500.00")
        assert record.windfall_amount == 0
        assert record.shortfall_amount == 0
        assert record.bonus_amount == 0
        assert record.total_commission == Decimal("500.00")
        assert record.commission_rate_applied == Decimal("0.05")
        assert record.data_source == "sales"
        assert record.calculated_by == "admin-1"
        assert record.calculated_at is not None
        assert record.dealer_id == march_sales.dealer_a1
        assert record.omc_id == march_sales.omc_a

    async def test_partial_failure_does_not_abort_batch(self, admin_service, march_sales):
        """Test a station without upstream data fails alone."""
        batch = await admin_service.calculate_commissions("2024-03")

        by_station = {r.station_id: r for r in batch.results}
        assert by_station[march_sales.s1].success
        assert by_station[march_sales.s2].success
        assert not by_station[march_sales.s3].success
        assert by_station[march_sales.s3].error_code == "UPSTREAM_DATA_UNAVAILABLE"
        assert len(batch.commissions) == 2

    async def test_unexpected_error_does_not_abort_batch(self, session_factory, admin_actor, locks, march_sales):
        """Test a station whose upstream connection drops is reported, the rest are stored."""

        class DroppingAggregator:
            def __init__(self, db):
                self.inner = default_aggregator_factory(db)

            async def aggregate(self, station_id, period, as_of=None):
                if station_id == march_sales.s2:
                    raise ConnectionError("ledger connection reset")
                return await self.inner.aggregate(station_id, period, as_of)

        service = CommissionService(
            session_factory, admin_actor, locks=locks, aggregator_factory=DroppingAggregator,
        )
        batch = await service.calculate_commissions("2024-03", station_ids=[march_sales.s1, march_sales.s2])

        by_station = {r.station_id: r for r in batch.results}
        assert by_station[march_sales.s1].success
        assert by_station[march_sales.s1].commission.total_commission == Decimal("500.00")
        assert not by_station[march_sales.s2].success
        assert by_station[march_sales.s2].error_code == "INTERNAL_ERROR"
        assert "connection reset" in by_station[march_sales.s2].error_message
        assert not locks.is_locked(march_sales.s2, "2024-03")

        async with session_factory() as db:
            stored = (await db.execute(select(CommissionRecord))).scalars().all()
        assert [r.station_id for r in stored] == [march_sales.s1]

    async def test_cap_record_after_sales_earns_nothing(self, session_factory, admin_service, march_sales):
        """Test a cap record effective 20 March does not apply to sales on 1-10 March."""
        await add_price_cap(session_factory, march_sales.s1, date(2024, 3, 20), price_cap="10.00", selling_price="10.10")

        record = (await calculate_one(admin_service, march_sales.s1)).commission
        assert record.windfall_amount == Decimal("0.00")
        assert record.total_commission == Decimal("500.00")

    async def test_cap_record_applies_from_its_effective_day(self, session_factory, admin_service, march_sales):
        await add_price_cap(session_factory, march_sales.s1, date(2024, 3, 6), price_cap="10.00", selling_price="10.10")

        record = (await calculate_one(admin_service, march_sales.s1)).commission
        # 0.10 spread * 5,000 L sold on 6-10 March
        assert record.windfall_amount == Decimal("500.00")
        assert record.total_commission == Decimal("1000.00")

    async def test_cap_records_change_mid_period(self, session_factory, admin_service, march_sales):
        await add_price_cap(session_factory, march_sales.s1, date(2024, 3, 1), price_cap="10.00", selling_price="10.10")
        await add_price_cap(session_factory, march_sales.s1, date(2024, 3, 9), price_cap="10.00", selling_price="9.80")

        record = (await calculate_one(admin_service, march_sales.s1)).commission
        # 8,000 L at +0.10 then 2,000 L at -0.20
        assert record.windfall_amount == Decimal("800.00")
        assert record.shortfall_amount == Decimal("400.00")
        assert record.total_commission == Decimal("900.00")

    async def test_fine_grained_override_rate_stored(self, session_factory, admin_service, march_sales):
        async with session_factory() as db:
            await db.execute(update(Station).where(Station.id == march_sales.s1).values(
                commission_rate=Decimal("0.012345")
            ))
            await db.commit()

        result = await calculate_one(admin_service, march_sales.s1)
        reloaded = await admin_service.get_commission(result.commission.id)

        assert reloaded.commission_rate_applied == Decimal("0.012345")
        assert reloaded.base_commission_amount == Decimal("123.45")

    async def test_unknown_station_reported(self, admin_service, march_sales):
        missing = uuid.uuid4()
        batch = await admin_service.calculate_commissions("2024-03", station_ids=[march_sales.s1, missing])

        by_station = {r.station_id: r for r in batch.results}
        assert by_station[march_sales.s1].success
        assert by_station[missing].error_code == "NOT_FOUND"

    async def test_omc_limited_to_own_stations(self, session_factory, omc_a_actor, locks, march_sales):
        service = CommissionService(session_factory, omc_a_actor, locks=locks)

        batch = await service.calculate_commissions("2024-03")
        assert {r.station_id for r in batch.results} == {march_sales.s1, march_sales.s2}

        batch = await service.calculate_commissions("2024-03", station_ids=[march_sales.s3])
        assert batch.results[0].error_code == "PERMISSION_DENIED"

    async def test_dealer_cannot_calculate(self, session_factory, dealer_a1_actor, march_sales):
        service = CommissionService(session_factory, dealer_a1_actor)
        with pytest.raises(PermissionDenied):
            await service.calculate_commissions("2024-03")

    async def test_invalid_period(self, admin_service, march_sales):
        with pytest.raises(ValidationError):
            await admin_service.calculate_commissions("2024-3")

    async def test_bonus_tiers_from_omc(self, session_factory, admin_service, march_sales):

        async with session_factory() as db:
            await db.execute(update(OMC).where(OMC.id == march_sales.omc_a).values(
                bonus_tiers=[{"min_volume": 10000, "max_volume": None, "bonus_amount": 75}]
            ))
            await db.commit()

        result = await calculate_one(admin_service, march_sales.s1)
        assert result.commission.bonus_amount == Decimal("75.00")
        assert result.commission.total_commission == Decimal("575.00")


class TestRecalculation:
    """Tests for revisions and the one-current-record rule."""

    async def test_recalculation_supersedes(self, session_factory, admin_service, march_sales):
        first = (await calculate_one(admin_service, march_sales.s1)).commission
        await add_sales(session_factory, march_sales.s1, date(2024, 3, 11), 1, 1000)

        result = await calculate_one(admin_service, march_sales.s1)
        second = result.commission

        assert result.superseded_id == first.id
        assert second.revision == 2
        assert second.total_commission == Decimal("550.00")

        async with session_factory() as db:
            rows = (await db.execute(
                select(CommissionRecord).where(CommissionRecord.station_id == march_sales.s1)
            )).scalars().all()
        current = [r for r in rows if r.is_current]
        assert len(rows) == 2
        assert [r.id for r in current] == [second.id]
        old = next(r for r in rows if r.id == first.id)
        assert old.superseded_by_id == second.id
        assert old.total_commission == Decimal("500.00")

    async def test_approved_requires_force(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.approve_commission(record.id)

        result = await calculate_one(admin_service, march_sales.s1)
        assert not result.success
        assert result.error_code == "INVALID_STATE_TRANSITION"

        result = await calculate_one(admin_service, march_sales.s1, force_recalculation=True)
        assert result.success
        assert result.commission.status == sm.CALCULATED

    async def test_paid_record_immutable_to_calculation(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.mark_commission_as_paid(record.id, PAYMENT)

        result = await calculate_one(admin_service, march_sales.s1, force_recalculation=True)
        assert not result.success
        assert result.error_code == "INVALID_STATE_TRANSITION"

        paid = await admin_service.get_commission(record.id)
        assert paid.status == sm.PAID
        assert paid.total_commission == Decimal("500.00")

    async def test_cancelled_record_can_be_recalculated(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.cancel_commission(record.id, reason="Wrong meter readings")

        result = await calculate_one(admin_service, march_sales.s1)
        assert result.success
        assert result.commission.revision == 2

    async def test_concurrent_calculation_rejected(self, session_factory, admin_actor, locks, march_sales):
        """Test two in-flight calculations of one key yield one success and one conflict."""
        release = asyncio.Event()

        class GatedSource:
            name = "gated"

            def __init__(self, db):
                self.inner = default_sources(db)[1]

            async def fetch(self, station_id, start, end):
                await release.wait()
                return await self.inner.fetch(station_id, start, end)

        service = CommissionService(
            session_factory, admin_actor, locks=locks,
            aggregator_factory=lambda db: DataAggregator([GatedSource(db)]),
        )

        first = asyncio.create_task(calculate_one(service, march_sales.s1))
        while not locks.is_locked(march_sales.s1, "2024-03"):
            await asyncio.sleep(0.01)

        second = await calculate_one(service, march_sales.s1)
        release.set()
        first = await first

        assert first.success
        assert not second.success
        assert second.error_code == ConcurrencyConflict.code

    async def test_lock_registry_rejects_second_holder(self, locks, org):
        async with locks.hold(org.s1, "2024-03"):
            with pytest.raises(ConcurrencyConflict):
                async with locks.hold(org.s1, "2024-03"):
                    pass
            async with locks.hold(org.s1, "2024-04"):
                pass
        assert not locks.is_locked(org.s1, "2024-03")


class TestLifecycle:
    """Tests for approve, pay and cancel."""

    async def test_mark_paid_from_calculated(self, admin_service, march_sales):
        """Test paying a calculated record with reference COMM-0001 on 2024-04-01."""
        record = (await calculate_one(admin_service, march_sales.s1)).commission

        paid = await admin_service.mark_commission_as_paid(record.id, PAYMENT)

        assert paid.status == sm.PAID
        assert paid.paid_by == "admin-1"
        assert paid.paid_at is not None
        assert paid.payment.reference_number == "COMM-0001"
        assert paid.payment.payment_date == date(2024, 4, 1)

    async def test_payment_requires_approval_when_configured(self, admin_service, march_sales, monkeypatch):
        from fuelops.config import settings
        monkeypatch.setattr(settings, "APPROVAL_REQUIRED_FOR_PAYMENT", True)

        record = (await calculate_one(admin_service, march_sales.s1)).commission
        with pytest.raises(InvalidStateTransition):
            await admin_service.mark_commission_as_paid(record.id, PAYMENT)

        approved = await admin_service.approve_commission(record.id)
        assert approved.approved_by == "admin-1"
        paid = await admin_service.mark_commission_as_paid(record.id, PAYMENT)
        assert paid.status == sm.PAID

    @pytest.mark.parametrize("payment", [
        PaymentDetails(reference_number="", payment_date=date(2024, 4, 1)),
        PaymentDetails(reference_number="   ", payment_date=date(2024, 4, 1)),
        PaymentDetails(reference_number="COMM-0001", payment_date=None),
    ])
    async def test_payment_details_required(self, admin_service, march_sales, payment):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        with pytest.raises(ValidationError):
            await admin_service.mark_commission_as_paid(record.id, payment)

        unchanged = await admin_service.get_commission(record.id)
        assert unchanged.status == sm.CALCULATED

    async def test_approve_only_from_calculated(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.approve_commission(record.id)

        with pytest.raises(InvalidStateTransition):
            await admin_service.approve_commission(record.id)

    async def test_cancel_then_nothing(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        cancelled = await admin_service.cancel_commission(record.id, reason="Duplicate")

        assert cancelled.status == sm.CANCELLED
        assert cancelled.cancelled_by == "admin-1"
        assert cancelled.notes == "Duplicate"

        with pytest.raises(InvalidStateTransition):
            await admin_service.approve_commission(record.id)
        with pytest.raises(InvalidStateTransition):
            await admin_service.mark_commission_as_paid(record.id, PAYMENT)

    async def test_cannot_cancel_paid(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.mark_commission_as_paid(record.id, PAYMENT)

        with pytest.raises(InvalidStateTransition):
            await admin_service.cancel_commission(record.id)

    async def test_superseded_record_cannot_be_approved(self, admin_service, march_sales):
        first = (await calculate_one(admin_service, march_sales.s1)).commission
        await calculate_one(admin_service, march_sales.s1)

        with pytest.raises(InvalidStateTransition):
            await admin_service.approve_commission(first.id)

    async def test_unknown_record(self, admin_service, org):
        with pytest.raises(NotFound):
            await admin_service.approve_commission(uuid.uuid4())

    async def test_omc_cannot_act_outside_scope(self, session_factory, admin_service, omc_b_actor, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        service = CommissionService(session_factory, omc_b_actor)

        with pytest.raises(PermissionDenied):
            await service.approve_commission(record.id)
        with pytest.raises(PermissionDenied):
            await service.mark_commission_as_paid(record.id, PAYMENT)

    async def test_station_manager_cannot_approve(self, session_factory, admin_service, station_s1_actor, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        service = CommissionService(session_factory, station_s1_actor)

        with pytest.raises(PermissionDenied):
            await service.approve_commission(record.id)


class TestCorrections:
    """Tests for corrections of paid records."""

    async def test_correction_keeps_paid_record(self, session_factory, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.mark_commission_as_paid(record.id, PAYMENT)
        await add_sales(session_factory, march_sales.s1, date(2024, 3, 20), 1, 2000)

        correction = await admin_service.create_correction(record.id, notes="Late ledger entries")

        assert correction.correction_of_id == record.id
        assert correction.status == sm.CALCULATED
        assert correction.revision == 2
        assert correction.total_commission == Decimal("600.00")

        paid = await admin_service.get_commission(record.id)
        assert paid.status == sm.PAID
        assert paid.total_commission == Decimal("500.00")
        assert paid.is_current is False
        assert paid.superseded_by_id == correction.id

    async def test_correction_requires_paid(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        with pytest.raises(InvalidStateTransition):
            await admin_service.create_correction(record.id)

    async def test_correction_only_once(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.mark_commission_as_paid(record.id, PAYMENT)
        await admin_service.create_correction(record.id)

        with pytest.raises(InvalidStateTransition):
            await admin_service.create_correction(record.id)

    async def test_correction_can_be_recalculated(self, admin_service, march_sales):
        record = (await calculate_one(admin_service, march_sales.s1)).commission
        await admin_service.mark_commission_as_paid(record.id, PAYMENT)
        correction = await admin_service.create_correction(record.id)

        result = await calculate_one(admin_service, march_sales.s1)
        assert result.success
        assert result.superseded_id == correction.id
        assert result.commission.correction_of_id == record.id


class TestQueries:
    """Tests for scoped listing and stats."""

    async def test_dealer_sees_only_own_records(self, session_factory, admin_service, dealer_a1_actor, march_sales):
        await add_sales(session_factory, march_sales.s3, date(2024, 3, 1), 3, 500)
        await admin_service.calculate_commissions("2024-03")

        page = await CommissionService(session_factory, dealer_a1_actor).get_commissions()

        assert page.total == 2
        assert all(record.dealer_id == march_sales.dealer_a1 for record in page.items)

    async def test_dealer_filter_cannot_widen_scope(self, session_factory, admin_service, dealer_a1_actor, march_sales):
        await add_sales(session_factory, march_sales.s3, date(2024, 3, 1), 3, 500)
        await admin_service.calculate_commissions("2024-03")

        page = await CommissionService(session_factory, dealer_a1_actor).get_commissions(
            CommissionFilters(dealer_id=march_sales.dealer_b1)
        )
        assert page.total == 0

    async def test_station_manager_cannot_read_other_station(self, session_factory, admin_service, station_s1_actor, march_sales):
        batch = await admin_service.calculate_commissions("2024-03")
        s2_record = next(r.commission for r in batch.succeeded if r.station_id == march_sales.s2)

        with pytest.raises(PermissionDenied):
            await CommissionService(session_factory, station_s1_actor).get_commission(s2_record.id)

    async def test_attendant_has_no_access(self, session_factory, attendant_actor, march_sales):
        with pytest.raises(PermissionDenied):
            await CommissionService(session_factory, attendant_actor).get_commissions()

    async def test_filters_and_pagination(self, admin_service, march_sales):
        await admin_service.calculate_commissions("2024-03")

        page = await admin_service.get_commissions(CommissionFilters(period="2024-03"), page=1, size=1)
        assert page.total == 2
        assert len(page.items) == 1
        assert page.pages == 2

        page = await admin_service.get_commissions(CommissionFilters(station_id=march_sales.s2))
        assert [r.station_id for r in page.items] == [march_sales.s2]

    async def test_superseded_hidden_by_default(self, admin_service, march_sales):
        await calculate_one(admin_service, march_sales.s1)
        await calculate_one(admin_service, march_sales.s1)

        assert (await admin_service.get_commissions()).total == 1
        assert (await admin_service.get_commissions(CommissionFilters(include_superseded=True))).total == 2

    async def test_stats(self, session_factory, admin_service, march_sales):
        await add_sales(session_factory, march_sales.s1, date(2024, 2, 1), 1, 1000)
        await calculate_one(admin_service, march_sales.s1, period="2024-02")
        batch = await admin_service.calculate_commissions("2024-03")
        s1_record = next(r.commission for r in batch.succeeded if r.station_id == march_sales.s1)
        await admin_service.mark_commission_as_paid(s1_record.id, PAYMENT)

        stats = await admin_service.get_commission_stats(CommissionFilters(period="2024-03"))

        assert stats.total_count == 2
        assert stats.paid_count == 1
        assert stats.paid_amount == Decimal("500.00")
        assert stats.pending_count == 1
        assert stats.pending_amount == Decimal("600.00")
        assert stats.current_period_amount == Decimal("1100.00")
        assert stats.previous_period == "2024-02"
        assert stats.previous_period_amount == Decimal("50.00")
        assert [p["period"] for p in stats.by_period] == ["2024-03", "2024-02"]

    async def test_stats_amounts_rounded(self, session_factory, admin_service, march_sales):
        """Test summed amounts come back as 2dp currency, zero sums included."""
        await admin_service.calculate_commissions("2024-03")

        stats = await admin_service.get_commission_stats(CommissionFilters(period="2024-03"))

        for name in ("total_amount", "pending_amount", "approved_amount", "paid_amount",
                     "current_period_amount", "previous_period_amount"):
            amount = getattr(stats, name)
            assert isinstance(amount, Decimal), name
            assert amount.as_tuple().exponent == -2, name
        assert stats.approved_amount == Decimal("0.00")
        assert all(p["total_commission"].as_tuple().exponent == -2 for p in stats.by_period)

    async def test_stats_respect_scope(self, session_factory, admin_service, station_s1_actor, march_sales):
        await admin_service.calculate_commissions("2024-03")

        stats = await CommissionService(session_factory, station_s1_actor).get_commission_stats(
            CommissionFilters(period="2024-03")
        )
        assert stats.total_count == 1
        assert stats.total_amount == Decimal("500.00")

    async def test_progressive_respects_scope(self, session_factory, dealer_a1_actor, march_sales):
        service = CommissionService(session_factory, dealer_a1_actor)

        projections = await service.get_progressive_commissions("2024-03", today=date(2024, 4, 2))
        assert {p.station_id for p in projections} == {march_sales.s1, march_sales.s2}

        with pytest.raises(PermissionDenied):
            await service.get_progressive_commissions("2024-03", station_id=march_sales.s3)


class TestAdjustmentConfigs:
    """Tests for windfall/shortfall configuration."""

    async def test_config_scales_windfall(self, session_factory, admin_service, march_sales):

        await add_price_cap(session_factory, march_sales.s1, date(2024, 3, 1), price_cap="10.00", selling_price="10.20")
        await admin_service.create_adjustment_config(
            station_id=march_sales.s1,
            type="windfall",
            commission_rate=Decimal("0.5"),
            effective_date=date(2024, 1, 1),
        )

        record = (await calculate_one(admin_service, march_sales.s1)).commission
        # 0.20 spread * 10,000 L * 0.5 share
        assert record.windfall_amount == Decimal("1000.00")
        assert record.total_commission == Decimal("1500.00")

    async def test_invalid_rate(self, admin_service, march_sales):
        with pytest.raises(ValidationError):
            await admin_service.create_adjustment_config(
                station_id=march_sales.s1,
                type="windfall",
                commission_rate=Decimal("1.5"),
                effective_date=date(2024, 1, 1),
            )

    async def test_dealer_cannot_configure(self, session_factory, dealer_a1_actor, march_sales):
        service = CommissionService(session_factory, dealer_a1_actor)
        with pytest.raises(PermissionDenied):
            await service.list_adjustment_configs()

    async def test_list_scoped(self, session_factory, admin_service, omc_b_actor, march_sales):
        await admin_service.create_adjustment_config(
            station_id=march_sales.s1, type="shortfall", commission_rate=Decimal("1"),
            effective_date=date(2024, 1, 1), threshold_amount=Decimal("10"),
        )
        assert len(await admin_service.list_adjustment_configs()) == 1
        assert await CommissionService(session_factory, omc_b_actor).list_adjustment_configs() == []
