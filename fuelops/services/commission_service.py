"""
Commission Service

Lifecycle manager for commission records and the operations exposed to the
API and scheduled jobs:

- calculate_commissions: batch calculation with a per-station report
- get_commissions / get_commission / get_commission_stats
- get_progressive_commissions
- approve_commission / mark_commission_as_paid / cancel_commission
- create_correction for paid records
- windfall/shortfall configuration

Every operation checks the actor's capability and organizational scope.
Each operation (and each station of a batch) uses its own session.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from fuelops.config import settings
from fuelops.core.exceptions import (
    CommissionError,
    ConcurrencyConflict,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from fuelops.core.periods import parse_period, period_bounds, period_of, previous_period
from fuelops.core.permissions import ActorContext, Capability, PermissionChecker
from fuelops.middleware.access_scope import AccessScope
from fuelops.models.commission import (
    AdjustmentType,
    CommissionPayment,
    CommissionRecord,
    CommissionStatus,
    WindfallShortfallConfig,
)
from fuelops.models.organization import Station
from fuelops.services import commission_state_machine as sm
from fuelops.services.calculation_locks import CalculationLockRegistry, calculation_locks
from fuelops.services.commission_calculator import (
    CommissionBreakdown,
    ZERO,
    calculate,
    parse_bonus_tiers,
    round_currency,
    to_decimal,
)
from fuelops.services.compliance import CapMarginProvider, load_adjustment_policy
from fuelops.services.data_aggregator import DataAggregator, default_sources
from fuelops.services.progressive_tracker import ProgressiveTracker, StationProjection
from fuelops.services.rate_resolver import RateCache, RateResolver

logger = logging.getLogger(__name__)

AggregatorFactory = Callable[[AsyncSession], DataAggregator]

# Reported for stations that fail with an unexpected error
INTERNAL_ERROR = "INTERNAL_ERROR"


def default_aggregator_factory(db: AsyncSession) -> DataAggregator:
    return DataAggregator(default_sources(db))


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class StationCalculationResult:
    station_id: uuid.UUID
    success: bool
    commission: Optional[CommissionRecord] = None
    superseded_id: Optional[uuid.UUID] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class BatchCalculationResult:
    period: str
    results: List[StationCalculationResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[StationCalculationResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[StationCalculationResult]:
        return [r for r in self.results if not r.success]

    @property
    def commissions(self) -> List[CommissionRecord]:
        return [r.commission for r in self.succeeded]


@dataclass
class PaymentDetails:
    reference_number: Optional[str]
    payment_date: Optional[date]
    payment_method: str = "bank_transfer"
    notes: Optional[str] = None


@dataclass
class CommissionFilters:
    period: Optional[str] = None
    status: Optional[str] = None
    station_id: Optional[uuid.UUID] = None
    omc_id: Optional[uuid.UUID] = None
    dealer_id: Optional[uuid.UUID] = None
    include_superseded: bool = False


@dataclass
class CommissionPage:
    items: List[CommissionRecord]
    total: int
    page: int
    size: int

    @property
    def pages(self) -> int:
        return (self.total + self.size - 1) // self.size if self.size else 0


@dataclass
class CommissionStats:
    total_count: int = 0
    total_amount: Decimal = ZERO
    pending_count: int = 0
    pending_amount: Decimal = ZERO
    approved_count: int = 0
    approved_amount: Decimal = ZERO
    paid_count: int = 0
    paid_amount: Decimal = ZERO
    cancelled_count: int = 0
    current_period: Optional[str] = None
    current_period_amount: Decimal = ZERO
    previous_period: Optional[str] = None
    previous_period_amount: Decimal = ZERO
    by_period: List[Dict] = field(default_factory=list)

    @property
    def period_change_percent(self) -> Optional[Decimal]:
        if not self.previous_period_amount:
            return None
        change = (self.current_period_amount - self.previous_period_amount) / self.previous_period_amount
        return round_currency(change * 100)


STATS_AMOUNT_FIELDS = (
    "total_amount",
    "pending_amount",
    "approved_amount",
    "paid_amount",
    "current_period_amount",
    "previous_period_amount",
)


# =============================================================================
# SERVICE
# =============================================================================

class CommissionService:
    """Commission lifecycle operations for one actor."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        actor: ActorContext,
        locks: Optional[CalculationLockRegistry] = None,
        aggregator_factory: Optional[AggregatorFactory] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.actor = actor
        self.checker = PermissionChecker(actor)
        self.scope = AccessScope(actor)
        self.locks = locks or calculation_locks
        self.aggregator_factory = aggregator_factory or default_aggregator_factory
        self.max_concurrency = max_concurrency or settings.CALCULATION_MAX_CONCURRENCY

    # ==================== Calculation ====================

    async def calculate_commissions(
        self,
        period: str,
        station_ids: Optional[Sequence[uuid.UUID]] = None,
        force_recalculation: bool = False,
    ) -> BatchCalculationResult:
        """
        Calculate commissions for a period.

        Stations are calculated concurrently and independently; a failing
        station never aborts the batch. Without station_ids every active
        station in the actor's scope is calculated.
        """
        self.checker.require(Capability.CALCULATE)
        parse_period(period)

        batch = BatchCalculationResult(period=period)
        targets = await self._calculation_targets(station_ids, batch)

        logger.info(
            f"Calculating commissions for {period}: {len(targets)} station(s) "
            f"by {self.actor.user_id} (force={force_recalculation})"
        )

        cache = RateCache()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results = await asyncio.gather(*[
            self._calculate_station(station_id, period, cache, force_recalculation, semaphore)
            for station_id in targets
        ])
        batch.results.extend(results)

        logger.info(
            f"Commission calculation for {period} finished: "
            f"{len(batch.succeeded)} succeeded, {len(batch.failed)} failed"
        )
        return batch

    async def _calculation_targets(
        self,
        station_ids: Optional[Sequence[uuid.UUID]],
        batch: BatchCalculationResult,
    ) -> List[uuid.UUID]:
        async with self.session_factory() as db:
            if station_ids is None:
                query = self.scope.apply(
                    select(Station.id).where(Station.is_active == True).order_by(Station.code),
                    Station,
                )
                result = await db.execute(query)
                return list(result.scalars().all())

            result = await db.execute(select(Station).where(Station.id.in_(list(station_ids))))
            found = {station.id: station for station in result.scalars().all()}

        targets = []
        for station_id in dict.fromkeys(station_ids):
            station = found.get(station_id)
            try:
                if station is None:
                    raise NotFound(f"Station {station_id} not found", {"station_id": str(station_id)})
                self.scope.ensure_can_access(station)
            except CommissionError as e:
                batch.results.append(StationCalculationResult(
                    station_id=station_id,
                    success=False,
                    error_code=e.code,
                    error_message=e.message,
                ))
                continue
            targets.append(station_id)
        return targets

    async def _calculate_station(
        self,
        station_id: uuid.UUID,
        period: str,
        cache: RateCache,
        force: bool,
        semaphore: asyncio.Semaphore,
    ) -> StationCalculationResult:
        async with semaphore:
            try:
                async with self.locks.hold(station_id, period):
                    async with self.session_factory() as db:
                        try:
                            record, superseded = await self._store_calculation(
                                db, station_id, period, cache, force
                            )
                            await db.commit()
                        except IntegrityError:
                            await db.rollback()
                            raise ConcurrencyConflict(
                                f"Commission for station {station_id} in {period} was written concurrently",
                                {"station_id": str(station_id), "period": period},
                            )
            except CommissionError as e:
                logger.warning(f"Commission calculation failed for station {station_id} in {period}: {e.message}")
                return StationCalculationResult(
                    station_id=station_id,
                    success=False,
                    error_code=e.code,
                    error_message=e.message,
                )
            except Exception as e:
                logger.exception(f"Unexpected error calculating commission for station {station_id} in {period}")
                return StationCalculationResult(
                    station_id=station_id,
                    success=False,
                    error_code=INTERNAL_ERROR,
                    error_message=str(e),
                )

        logger.info(
            f"Station {station_id} {period}: total {record.total_commission} "
            f"(revision {record.revision}, source {record.data_source})"
        )
        return StationCalculationResult(
            station_id=station_id,
            success=True,
            commission=record,
            superseded_id=superseded.id if superseded else None,
        )

    async def _compute(
        self,
        db: AsyncSession,
        station_id: uuid.UUID,
        period: str,
        cache: RateCache,
    ):
        """Aggregate, resolve and calculate. Returns (station, breakdown, data_source)."""
        rate = await RateResolver(db, cache).resolve(station_id)
        # Already in the identity map with its OMC loaded by the resolver.
        station = await db.get(Station, station_id, options=[selectinload(Station.omc)])

        aggregate = await self.aggregator_factory(db).aggregate(station_id, period)
        start, end = period_bounds(period)
        cap_by_day = await CapMarginProvider(db).daily(station_id, aggregate.window_start, aggregate.window_end)
        policy = await load_adjustment_policy(db, station_id, start, end)
        bonus_tiers = parse_bonus_tiers(station.omc.bonus_tiers if station.omc else None)

        # Each day's volume earns the spread of the cap record in force that day.
        breakdown = calculate(
            aggregate.total_volume,
            aggregate.total_sales,
            rate,
            bonus_tiers=bonus_tiers,
            adjustment_policy=policy,
            margin_segments=[(slice_.volume, cap_by_day.get(slice_.day)) for slice_ in aggregate.daily],
        )
        return station, breakdown, aggregate.data_source

    def _new_record(
        self,
        station: Station,
        period: str,
        breakdown: CommissionBreakdown,
        data_source: str,
        previous: Optional[CommissionRecord],
        notes: Optional[str] = None,
        correction_of_id: Optional[uuid.UUID] = None,
    ) -> CommissionRecord:
        record = CommissionRecord(
            station_id=station.id,
            dealer_id=station.dealer_id,
            omc_id=station.omc_id,
            period=period,
            data_source=data_source,
            status=CommissionStatus.PENDING.value,
            revision=(previous.revision + 1) if previous else 1,
            is_current=True,
            correction_of_id=correction_of_id or (previous.correction_of_id if previous else None),
            notes=notes,
            payments=[],
            **breakdown.as_dict(),
        )
        sm.transition_commission(record, sm.CALCULATED, self.actor.user_id)
        return record

    async def _current_record(self, db: AsyncSession, station_id: uuid.UUID, period: str) -> Optional[CommissionRecord]:
        result = await db.execute(
            select(CommissionRecord)
            .where(
                CommissionRecord.station_id == station_id,
                CommissionRecord.period == period,
                CommissionRecord.is_current == True,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _supersede(self, db: AsyncSession, previous: CommissionRecord, record: CommissionRecord) -> None:
        # The old row must leave the current-record index before the new row is inserted.
        previous.is_current = False
        await db.flush()
        db.add(record)
        await db.flush()
        previous.superseded_by_id = record.id

    async def _store_calculation(
        self,
        db: AsyncSession,
        station_id: uuid.UUID,
        period: str,
        cache: RateCache,
        force: bool,
    ):
        existing = await self._current_record(db, station_id, period)
        if existing is not None and not sm.can_recalculate(existing.status, force):
            if existing.status == sm.PAID:
                raise InvalidStateTransition(
                    f"Commission for station {station_id} in {period} is paid; create a correction instead",
                    {"commission_id": str(existing.id), "status": existing.status},
                )
            raise InvalidStateTransition(
                f"Commission for station {station_id} in {period} is approved; "
                f"use force_recalculation to recalculate",
                {"commission_id": str(existing.id), "status": existing.status},
            )

        station, breakdown, data_source = await self._compute(db, station_id, period, cache)
        record = self._new_record(station, period, breakdown, data_source, existing)

        if existing is None:
            db.add(record)
            await db.flush()
        else:
            await self._supersede(db, existing, record)
            logger.info(
                f"Superseding commission {existing.id} ({existing.status}, revision {existing.revision}) "
                f"for station {station_id} in {period}"
            )
        return record, existing

    async def create_correction(self, commission_id: uuid.UUID, notes: Optional[str] = None) -> CommissionRecord:
        """
        Recalculate a paid period as a new record linked to the paid one.
        The paid record keeps its status and amounts.
        """
        self.checker.require(Capability.CALCULATE)

        async with self.session_factory() as db:
            paid = await self._load_for_action(db, commission_id)
            if paid.status != sm.PAID:
                raise InvalidStateTransition(
                    f"Only paid commissions can be corrected (status is '{paid.status}')",
                    {"commission_id": str(paid.id), "status": paid.status},
                )
            station_id, period = paid.station_id, paid.period

        async with self.locks.hold(station_id, period):
            async with self.session_factory() as db:
                paid = await self._current_record(db, station_id, period)
                if paid is None or paid.id != commission_id:
                    raise InvalidStateTransition(
                        f"Commission {commission_id} has already been corrected",
                        {"commission_id": str(commission_id)},
                    )
                station, breakdown, data_source = await self._compute(db, station_id, period, RateCache())
                record = self._new_record(
                    station, period, breakdown, data_source, paid,
                    notes=notes, correction_of_id=paid.id,
                )
                await self._supersede(db, paid, record)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise ConcurrencyConflict(
                        f"Commission for station {station_id} in {period} was written concurrently",
                        {"station_id": str(station_id), "period": period},
                    )

        logger.info(f"Correction {record.id} created for paid commission {commission_id} by {self.actor.user_id}")
        return record

    # ==================== Queries ====================

    def _filtered(self, query, filters: CommissionFilters):
        query = self.scope.apply(query, CommissionRecord)
        if not filters.include_superseded:
            query = query.where(CommissionRecord.is_current == True)
        if filters.period:
            parse_period(filters.period)
            query = query.where(CommissionRecord.period == filters.period)
        if filters.status:
            query = query.where(CommissionRecord.status == filters.status)
        if filters.station_id:
            query = query.where(CommissionRecord.station_id == filters.station_id)
        if filters.omc_id:
            query = query.where(CommissionRecord.omc_id == filters.omc_id)
        if filters.dealer_id:
            query = query.where(CommissionRecord.dealer_id == filters.dealer_id)
        return query

    async def get_commissions(
        self,
        filters: Optional[CommissionFilters] = None,
        page: int = 1,
        size: int = 20,
    ) -> CommissionPage:
        """Paginated commission records visible to the actor."""
        self.checker.require(Capability.VIEW)
        filters = filters or CommissionFilters()
        if page < 1 or size < 1:
            raise ValidationError("page and size must be positive", {"page": page, "size": size})

        async with self.session_factory() as db:
            count_query = self._filtered(select(func.count(CommissionRecord.id)), filters)
            total = (await db.execute(count_query)).scalar() or 0

            query = self._filtered(select(CommissionRecord), filters)
            query = query.order_by(
                CommissionRecord.period.desc(),
                CommissionRecord.created_at.desc(),
            ).offset((page - 1) * size).limit(size)
            result = await db.execute(query)
            items = list(result.scalars().all())

        return CommissionPage(items=items, total=total, page=page, size=size)

    async def get_commission(self, commission_id: uuid.UUID) -> CommissionRecord:
        self.checker.require(Capability.VIEW)
        async with self.session_factory() as db:
            record = await db.get(CommissionRecord, commission_id)
            if record is None:
                raise NotFound(f"Commission {commission_id} not found", {"commission_id": str(commission_id)})
            self.scope.ensure_can_access(record)
            return record

    async def get_commission_stats(self, filters: Optional[CommissionFilters] = None) -> CommissionStats:
        """
        Totals over current records visible to the actor.

        Cancelled records are counted but excluded from amounts. The current
        period is the filtered period, or this month when none is given.
        """
        self.checker.require(Capability.VIEW)
        filters = filters or CommissionFilters()

        async with self.session_factory() as db:
            query = self._filtered(
                select(
                    CommissionRecord.period,
                    CommissionRecord.status,
                    func.count(CommissionRecord.id),
                    func.coalesce(func.sum(CommissionRecord.total_commission), 0),
                ),
                CommissionFilters(
                    status=filters.status,
                    station_id=filters.station_id,
                    omc_id=filters.omc_id,
                    dealer_id=filters.dealer_id,
                ),
            ).group_by(CommissionRecord.period, CommissionRecord.status)
            rows = (await db.execute(query)).all()

        current = filters.period or period_of(date.today())
        parse_period(current)
        stats = CommissionStats(current_period=current, previous_period=previous_period(current))
        by_period: Dict[str, Dict] = {}

        for period, status, count, amount in rows:
            amount = to_decimal(amount)
            entry = by_period.setdefault(period, {"period": period, "count": 0, "total_commission": ZERO})
            entry["count"] += count

            if status != sm.CANCELLED:
                entry["total_commission"] += amount
                if period == stats.current_period:
                    stats.current_period_amount += amount
                elif period == stats.previous_period:
                    stats.previous_period_amount += amount

            if filters.period and period != filters.period:
                continue

            stats.total_count += count
            if status == sm.CANCELLED:
                stats.cancelled_count += count
                continue
            stats.total_amount += amount
            if status in (sm.PENDING, sm.CALCULATED):
                stats.pending_count += count
                stats.pending_amount += amount
            elif status == sm.APPROVED:
                stats.approved_count += count
                stats.approved_amount += amount
            elif status == sm.PAID:
                stats.paid_count += count
                stats.paid_amount += amount

        for name in STATS_AMOUNT_FIELDS:
            setattr(stats, name, round_currency(getattr(stats, name)))
        for entry in by_period.values():
            entry["total_commission"] = round_currency(entry["total_commission"])
        stats.by_period = sorted(by_period.values(), key=lambda e: e["period"], reverse=True)
        return stats

    async def get_progressive_commissions(
        self,
        period: str,
        station_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> List[StationProjection]:
        """Day-by-day accrual for one station, or every station in scope."""
        self.checker.require(Capability.VIEW)
        start, end = period_bounds(period)

        async with self.session_factory() as db:
            if station_id is not None:
                station = await db.get(Station, station_id)
                if station is None:
                    raise NotFound(f"Station {station_id} not found", {"station_id": str(station_id)})
                self.scope.ensure_can_access(station)
                station_ids = [station.id]
            else:
                query = self.scope.apply(
                    select(Station.id).where(Station.is_active == True).order_by(Station.code),
                    Station,
                )
                station_ids = list((await db.execute(query)).scalars().all())

            tracker = ProgressiveTracker(
                aggregator=self.aggregator_factory(db),
                resolver=RateResolver(db, RateCache()),
                cap_provider=CapMarginProvider(db),
            )
            projections = []
            for sid in station_ids:
                policy = await load_adjustment_policy(db, sid, start, end)
                projections.append(await tracker.project(sid, period, today=today, adjustment_policy=policy))
        return projections

    # ==================== Lifecycle ====================

    async def _load_for_action(self, db: AsyncSession, commission_id: uuid.UUID) -> CommissionRecord:
        result = await db.execute(
            select(CommissionRecord)
            .where(CommissionRecord.id == commission_id)
            .with_for_update()
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFound(f"Commission {commission_id} not found", {"commission_id": str(commission_id)})
        self.scope.ensure_can_access(record)
        return record

    def _ensure_current(self, record: CommissionRecord) -> None:
        if not record.is_current and not sm.is_terminal(record.status):
            raise InvalidStateTransition(
                f"Commission {record.id} has been superseded by {record.superseded_by_id}",
                {"commission_id": str(record.id), "superseded_by_id": str(record.superseded_by_id)},
            )

    async def approve_commission(self, commission_id: uuid.UUID) -> CommissionRecord:
        self.checker.require(Capability.APPROVE)
        async with self.session_factory() as db:
            record = await self._load_for_action(db, commission_id)
            self._ensure_current(record)
            sm.transition_commission(record, sm.APPROVED, self.actor.user_id)
            await db.commit()
        logger.info(f"Commission {commission_id} approved by {self.actor.user_id}")
        return record

    async def mark_commission_as_paid(self, commission_id: uuid.UUID, payment: PaymentDetails) -> CommissionRecord:
        """
        Record payment and move the commission to paid.

        Raises:
            ValidationError: reference number or payment date missing
        """
        self.checker.require(Capability.PAY)
        reference = (payment.reference_number or "").strip()
        missing = [name for name, value in (("reference_number", reference), ("payment_date", payment.payment_date)) if not value]
        if missing:
            raise ValidationError(f"Missing payment details: {', '.join(missing)}", {"missing": missing})

        async with self.session_factory() as db:
            record = await self._load_for_action(db, commission_id)
            self._ensure_current(record)
            sm.transition_commission(record, sm.PAID, self.actor.user_id)
            record.payments.append(CommissionPayment(
                payment_method=payment.payment_method,
                reference_number=reference,
                payment_date=payment.payment_date,
                notes=payment.notes,
                recorded_by=self.actor.user_id,
            ))
            await db.commit()
        logger.info(f"Commission {commission_id} marked as paid (ref {reference}) by {self.actor.user_id}")
        return record

    async def cancel_commission(self, commission_id: uuid.UUID, reason: Optional[str] = None) -> CommissionRecord:
        self.checker.require(Capability.CANCEL)
        async with self.session_factory() as db:
            record = await self._load_for_action(db, commission_id)
            self._ensure_current(record)
            sm.transition_commission(record, sm.CANCELLED, self.actor.user_id)
            if reason:
                record.notes = f"{record.notes}\n{reason}" if record.notes else reason
            await db.commit()
        logger.info(f"Commission {commission_id} cancelled by {self.actor.user_id}")
        return record

    # ==================== Windfall/Shortfall Configuration ====================

    async def create_adjustment_config(
        self,
        station_id: uuid.UUID,
        type: str,
        commission_rate: Decimal,
        effective_date: date,
        threshold_amount: Optional[Decimal] = None,
        end_date: Optional[date] = None,
    ) -> WindfallShortfallConfig:
        self.checker.require(Capability.CONFIGURE)

        if type not in (AdjustmentType.WINDFALL.value, AdjustmentType.SHORTFALL.value):
            raise ValidationError(f"Invalid adjustment type '{type}'", {"type": type})
        rate = to_decimal(commission_rate)
        if rate <= 0 or rate > 1:
            raise ValidationError("Adjustment rate must be in (0, 1]", {"commission_rate": str(rate)})
        if threshold_amount is not None and to_decimal(threshold_amount) < 0:
            raise ValidationError("Threshold cannot be negative", {"threshold_amount": str(threshold_amount)})
        if end_date is not None and end_date < effective_date:
            raise ValidationError("end_date is before effective_date", {"effective_date": effective_date.isoformat()})

        async with self.session_factory() as db:
            station = await db.get(Station, station_id)
            if station is None:
                raise NotFound(f"Station {station_id} not found", {"station_id": str(station_id)})
            self.scope.ensure_can_access(station)

            config = WindfallShortfallConfig(
                station_id=station.id,
                omc_id=station.omc_id,
                type=type,
                commission_rate=rate,
                threshold_amount=threshold_amount,
                effective_date=effective_date,
                end_date=end_date,
                is_active=True,
                created_by=self.actor.user_id,
            )
            db.add(config)
            await db.commit()

        logger.info(f"{type} config {config.id} created for station {station_id} by {self.actor.user_id}")
        return config

    async def list_adjustment_configs(self, station_id: Optional[uuid.UUID] = None) -> List[WindfallShortfallConfig]:
        self.checker.require(Capability.CONFIGURE)
        query = self.scope.apply(select(WindfallShortfallConfig), WindfallShortfallConfig)
        if station_id:
            query = query.where(WindfallShortfallConfig.station_id == station_id)
        query = query.order_by(WindfallShortfallConfig.effective_date.desc())

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())
