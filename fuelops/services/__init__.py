# Services module
from fuelops.services.commission_service import CommissionService
from fuelops.services.rate_resolver import RateResolver, RateCache
from fuelops.services.data_aggregator import DataAggregator
from fuelops.services.progressive_tracker import ProgressiveTracker

__all__ = [
    "CommissionService",
    "RateResolver",
    "RateCache",
    "DataAggregator",
    "ProgressiveTracker",
]
