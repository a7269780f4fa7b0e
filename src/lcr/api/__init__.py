"""
HTTP API (FastAPI).
"""

from lcr.api.server import ApiServices, create_app

__all__ = [
    "ApiServices",
    "create_app",
]
