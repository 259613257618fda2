"""
API v1 package initialization.
"""

from src.api.v1.webhooks import router as webhooks_router

__all__ = ["webhooks_router"]
