"""
Database Module

This module provides database configuration and models for the competency engine.
"""

from competency_backend.database.base import Base, ModelBase, metadata

__all__ = ['Base', 'ModelBase', 'metadata']
