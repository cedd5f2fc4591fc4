"""
ParkStay portal access
"""
from .base import PortalClient
from .client import ParkStayClient, generate_session_key
from .endpoints import Endpoints, DEFAULT_HEADERS

__all__ = [
    "PortalClient",
    "ParkStayClient",
    "generate_session_key",
    "Endpoints",
    "DEFAULT_HEADERS",
]
