from typing import Annotated
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelops.database import async_session_factory
from fuelops.core.security import actor_from_token
from fuelops.core.permissions import ActorContext, PermissionChecker
from fuelops.services.commission_service import CommissionService


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> ActorContext:
    """
    Dependency to get the calling actor.
    Validates the JWT issued by the identity service and reads role and scope claims.
    """
    actor = actor_from_token(credentials.credentials)
    if actor is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory; overridden in tests."""
    return async_session_factory


CurrentActor = Annotated[ActorContext, Depends(get_current_actor)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


def get_commission_service(actor: CurrentActor, session_factory: SessionFactory) -> CommissionService:
    return CommissionService(session_factory, actor)


Commissions = Annotated[CommissionService, Depends(get_commission_service)]


def require_capability(capability: str):
    """
    Dependency factory that requires a capability.

    Usage:
        @router.get("/auto-calculation", dependencies=[Depends(require_capability(Capability.CALCULATE))])
        async def auto_calculation_status():
            ...
    """
    async def capability_dependency(actor: CurrentActor) -> ActorContext:
        PermissionChecker(actor).require(capability)
        return actor

    return capability_dependency
