from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import uuid

from fuelops.core.exceptions import PermissionDenied


class ActorRole(str, Enum):
    """Dashboard roles as issued in the identity token."""
    ADMIN = "admin"
    OMC = "omc"
    DEALER = "dealer"
    STATION_MANAGER = "station_manager"
    ATTENDANT = "attendant"


class Capability:
    """Capability codes used by the commission engine."""
    VIEW = "commissions:view"
    CALCULATE = "commissions:calculate"
    APPROVE = "commissions:approve"
    PAY = "commissions:pay"
    CANCEL = "commissions:cancel"
    CONFIGURE = "commissions:configure"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.VIEW, cls.CALCULATE, cls.APPROVE, cls.PAY, cls.CANCEL, cls.CONFIGURE]


# Role-based capability assignments
ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    ActorRole.ADMIN.value: frozenset(Capability.all()),
    ActorRole.OMC.value: frozenset(Capability.all()),
    ActorRole.DEALER.value: frozenset({Capability.VIEW}),
    ActorRole.STATION_MANAGER.value: frozenset({Capability.VIEW}),
    ActorRole.ATTENDANT.value: frozenset(),
}


@dataclass(frozen=True)
class ActorContext:
    """
    Identity and organizational scope of the caller.
    Built from the bearer token on every request.
    """
    user_id: str
    role: str
    omc_id: Optional[uuid.UUID] = None
    dealer_id: Optional[uuid.UUID] = None
    station_id: Optional[uuid.UUID] = None
    extra_capabilities: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN.value

    @property
    def capabilities(self) -> FrozenSet[str]:
        return ROLE_CAPABILITIES.get(self.role, frozenset()) | self.extra_capabilities


def system_actor() -> ActorContext:
    """Actor used by scheduled jobs."""
    return ActorContext(user_id="system", role=ActorRole.ADMIN.value)


class PermissionChecker:
    """
    Capability checker for an actor.
    Organizational scope is handled by AccessScope; this only checks capabilities.
    """

    def __init__(self, actor: ActorContext):
        self.actor = actor

    def has_permission(self, capability: str) -> bool:
        if self.actor.is_admin:
            return True
        return capability in self.actor.capabilities

    def has_any_permission(self, capabilities: List[str]) -> bool:
        if self.actor.is_admin:
            return True
        return bool(self.actor.capabilities & set(capabilities))

    def require(self, capability: str) -> None:
        """Raise PermissionDenied unless the actor holds the capability."""
        if not self.has_permission(capability):
            raise PermissionDenied(
                f"Permission denied. Required: {capability}",
                {"role": self.actor.role, "required": capability},
            )
