"""
Organization-scope filtering for commission data.
Provides attribute-based access control (ABAC) based on the actor's OMC,
dealer or station assignment. Every read and write path in the commission
service goes through this class.
"""

from typing import Any, List, Optional
import uuid

from sqlalchemy import Select, false, select
from sqlalchemy.sql.elements import ColumnElement

from fuelops.core.exceptions import PermissionDenied
from fuelops.core.permissions import ActorContext, ActorRole
from fuelops.models.organization import Station


STATION_ROLES = (ActorRole.STATION_MANAGER.value, ActorRole.ATTENDANT.value)


class AccessScope:
    """
    Scope filter for ABAC (Attribute-Based Access Control).

    - admin: unrestricted
    - omc: rows with the actor's omc_id
    - dealer: rows with the actor's dealer_id
    - station_manager / attendant: rows for the actor's station_id

    An actor whose role needs a scope identifier it does not carry sees nothing.
    """

    def __init__(self, actor: ActorContext):
        self.actor = actor

    @property
    def is_unrestricted(self) -> bool:
        return self.actor.is_admin

    def _scope_value(self) -> Optional[uuid.UUID]:
        role = self.actor.role
        if role == ActorRole.OMC.value:
            return self.actor.omc_id
        if role == ActorRole.DEALER.value:
            return self.actor.dealer_id
        if role in STATION_ROLES:
            return self.actor.station_id
        return None

    def conditions(self, model: Any) -> List[ColumnElement]:
        """
        WHERE conditions restricting `model` rows to the actor's scope.

        `model` must expose omc_id and station_id columns (or be Station);
        dealer scope uses dealer_id when present, else the station's dealer.
        """
        if self.is_unrestricted:
            return []

        value = self._scope_value()
        if value is None:
            return [false()]

        role = self.actor.role
        station_column = model.id if model is Station else model.station_id

        if role == ActorRole.OMC.value:
            return [model.omc_id == value]
        if role == ActorRole.DEALER.value:
            if hasattr(model, "dealer_id"):
                return [model.dealer_id == value]
            dealer_stations = select(Station.id).where(Station.dealer_id == value)
            return [station_column.in_(dealer_stations)]
        return [station_column == value]

    def apply(self, query: Select, model: Any) -> Select:
        """Apply scope conditions to a select statement."""
        conditions = self.conditions(model)
        if conditions:
            query = query.where(*conditions)
        return query

    def can_access(self, obj: Any) -> bool:
        """
        Check a loaded row (commission record, station, config) against the scope.
        """
        if self.is_unrestricted:
            return True

        value = self._scope_value()
        if value is None:
            return False

        role = self.actor.role
        if role == ActorRole.OMC.value:
            return getattr(obj, "omc_id", None) == value
        if role == ActorRole.DEALER.value:
            return getattr(obj, "dealer_id", None) == value
        station_id = obj.id if isinstance(obj, Station) else getattr(obj, "station_id", None)
        return station_id == value

    def ensure_can_access(self, obj: Any) -> None:
        """Raise PermissionDenied if the row is outside the actor's scope."""
        if not self.can_access(obj):
            raise PermissionDenied(
                "Record is outside your organizational scope",
                {"role": self.actor.role},
            )
