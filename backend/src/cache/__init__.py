"""
Redis client wrapper and cache key conventions.

Shared by the gateway settings cache and the inventory coordinator.
"""
