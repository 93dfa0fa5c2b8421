"""
SQLAlchemy Base Configuration

This module provides the SQLAlchemy declarative base for the competency
engine's database models.
"""

from sqlalchemy import MetaData, inspect
from sqlalchemy.orm import declarative_base

# Naming convention for constraints so migrations get stable names
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}

metadata = MetaData(naming_convention=convention)

Base = declarative_base(metadata=metadata)


class ModelBase(Base):
    """Base class for all SQLAlchemy models."""

    __abstract__ = True

    def __repr__(self) -> str:
        identity = inspect(self).identity
        key = identity[0] if identity else None
        return f"<{type(self).__name__} {key}>"
