# backend/tenantlink/db/base.py

"""
Single source of truth for the SQLAlchemy Declarative Base.

This file must NOT import tenantlink.models; alembic/env.py imports Base
first and then the models module to register tables.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass
