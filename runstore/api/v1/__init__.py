"""
API v1 routers.
"""

from runstore.api.v1 import health, runs, websocket

__all__ = ["health", "runs", "websocket"]
