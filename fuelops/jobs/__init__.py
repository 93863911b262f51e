"""
Background Jobs Module

Handles scheduled tasks for:
- Commission auto-calculation for the open period
"""

from fuelops.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from fuelops.jobs.commission_jobs import auto_calculate_commissions

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "auto_calculate_commissions",
]
