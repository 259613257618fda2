"""
Database package.

- connection: async engine, session factory and health check
- base: declarative base and shared column mixins
- models: orders, payments, COD tracking, webhook ledger and settings
"""

__all__ = []
