"""
Database package.

- base: declarative base and mixins
- connection: async engine, sessions and FastAPI dependency
- models: ORM models for every table
"""

__all__ = []
