"""Database-agnostic type definitions for SQLAlchemy models.

Works with both SQLite (offline installations) and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric, Uuid

JSONType = JSON

# Stored as CHAR(32) where the backend has no native UUID
UUIDType = Uuid

# Money is kept at 2 places, quantities at 3, rates as percentages
Money = Numeric(14, 2)
Quantity = Numeric(12, 3)
UnitPrice = Numeric(14, 4)
Rate = Numeric(5, 2)
