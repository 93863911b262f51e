"""
Rate Resolver

Resolves the commission rate applicable to a station:

    station override (> 0) -> OMC default (> 0) -> system default

Resolved rates are memoized in a RateCache that the caller creates for one
calculation invocation and passes in explicitly. There is no module-level
cache, so rates never leak between invocations or actors.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from fuelops.config import settings
from fuelops.core.exceptions import NotFound, ValidationError
from fuelops.db_types import RATE_SCALE
from fuelops.models.organization import Station

logger = logging.getLogger(__name__)


class RateSource:
    STATION_OVERRIDE = "station_override"
    ORGANIZATION_DEFAULT = "organization_default"
    SYSTEM_DEFAULT = "system_default"


@dataclass(frozen=True)
class ResolvedRate:
    rate: Decimal
    source: str


@dataclass
class RateCache:
    """Invocation-scoped memo of station_id -> ResolvedRate."""
    entries: Dict[uuid.UUID, ResolvedRate] = field(default_factory=dict)

    def get(self, station_id: uuid.UUID) -> Optional[ResolvedRate]:
        return self.entries.get(station_id)

    def put(self, station_id: uuid.UUID, resolved: ResolvedRate) -> None:
        self.entries[station_id] = resolved

    def __len__(self) -> int:
        return len(self.entries)


def _positive(value) -> Optional[Decimal]:
    if value is None:
        return None
    value = Decimal(str(value))
    return value if value > 0 else None


class RateResolver:
    """
    Resolve commission rates for stations.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: RateCache,
        system_default: Optional[Decimal] = None,
        absolute_rate_mode: Optional[bool] = None,
    ):
        self.db = db
        self.cache = cache
        self.system_default = Decimal(str(
            system_default if system_default is not None else settings.SYSTEM_DEFAULT_COMMISSION_RATE
        ))
        self.absolute_rate_mode = (
            settings.ABSOLUTE_RATE_MODE if absolute_rate_mode is None else absolute_rate_mode
        )

    async def resolve(self, station_id: uuid.UUID) -> Decimal:
        """Return the applicable rate for a station."""
        return (await self.resolve_detailed(station_id)).rate

    async def resolve_detailed(self, station_id: uuid.UUID) -> ResolvedRate:
        """
        Return the applicable rate and where it came from.

        Raises:
            NotFound: station does not exist
            ValidationError: resolved rate outside (0, 1] without absolute-rate mode,
                or finer than RATE_SCALE decimal places
        """
        cached = self.cache.get(station_id)
        if cached is not None:
            return cached

        result = await self.db.execute(
            select(Station)
            .options(selectinload(Station.omc))
            .where(Station.id == station_id)
        )
        station = result.scalar_one_or_none()
        if station is None:
            raise NotFound(f"Station {station_id} not found", {"station_id": str(station_id)})

        override = _positive(station.commission_rate)
        organization_default = _positive(station.omc.default_commission_rate) if station.omc else None

        if override is not None:
            resolved = ResolvedRate(override, RateSource.STATION_OVERRIDE)
        elif organization_default is not None:
            resolved = ResolvedRate(organization_default, RateSource.ORGANIZATION_DEFAULT)
        else:
            resolved = ResolvedRate(self.system_default, RateSource.SYSTEM_DEFAULT)

        self._validate(station_id, resolved)
        logger.debug(f"Resolved rate {resolved.rate} for station {station_id} from {resolved.source}")

        self.cache.put(station_id, resolved)
        return resolved

    def _validate(self, station_id: uuid.UUID, resolved: ResolvedRate) -> None:
        if resolved.rate <= 0:
            raise ValidationError(
                f"Commission rate for station {station_id} must be positive",
                {"rate": str(resolved.rate), "source": resolved.source},
            )
        if -resolved.rate.normalize().as_tuple().exponent > RATE_SCALE:
            raise ValidationError(
                f"Commission rate {resolved.rate} for station {station_id} has more than "
                f"{RATE_SCALE} decimal places",
                {"rate": str(resolved.rate), "source": resolved.source},
            )
        if not self.absolute_rate_mode and resolved.rate > 1:
            raise ValidationError(
                f"Commission rate {resolved.rate} for station {station_id} exceeds 1 "
                f"and absolute-rate mode is disabled",
                {"rate": str(resolved.rate), "source": resolved.source},
            )
