"""SciFlow HTTP API server.

REST surface over the bounty lifecycle engine, with Bearer JWT
authentication and signed rail callbacks.

Usage:
    # Start the server
    sciflow serve

    # Or with uvicorn directly
    uvicorn sciflow.server.app:create_app --factory --port 8430

    # Apply queued rail callbacks / sweep deadlines (cron)
    sciflow process-events
    sciflow watchdog

    # Issue an operator token
    sciflow issue-token --principal admin-1 --role admin
"""

from .auth import authenticate, create_access_token, verify_access_token
from .config import ServerSettings, get_settings

__all__ = [
    "ServerSettings",
    "get_settings",
    "authenticate",
    "create_access_token",
    "verify_access_token",
]
