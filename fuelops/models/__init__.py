# Models module
from fuelops.models.organization import OMC, Dealer, Station
from fuelops.models.ledger import SalesTransaction, DailyTankStock, PriceCapCompliance
from fuelops.models.commission import (
    CommissionStatus,
    DataSource,
    AdjustmentType,
    CommissionRecord,
    CommissionPayment,
    WindfallShortfallConfig,
)

__all__ = [
    "OMC",
    "Dealer",
    "Station",
    "SalesTransaction",
    "DailyTankStock",
    "PriceCapCompliance",
    "CommissionStatus",
    "DataSource",
    "AdjustmentType",
    "CommissionRecord",
    "CommissionPayment",
    "WindfallShortfallConfig",
]
