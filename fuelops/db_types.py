"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric, Uuid

# Use JSON instead of JSONB for cross-database compatibility
JSONType = JSON

# UUID type that works with both databases (CHAR(32) on SQLite, native on PostgreSQL)
UUIDType = Uuid

# Fixed-point columns used across the commission tables
MoneyType = Numeric(14, 2)
VolumeType = Numeric(14, 3)
# Rates carry up to RATE_SCALE decimal places; finer rates are rejected on resolution
RATE_SCALE = 6
RateType = Numeric(14, RATE_SCALE)
