from fastapi import APIRouter

from fuelops.api.v1.endpoints import (
    # Commission Calculation & Settlement
    commissions,
)


api_router = APIRouter(prefix="/api/v1")

api_router.include_router(
    commissions.router,
    prefix="/commissions",
    tags=["Commissions"]
)
