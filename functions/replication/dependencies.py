"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from fastapi import Request

from replication.service import ReplicationService


def get_replication_service(request: Request) -> ReplicationService:
    """
    The service is created once per app in `create_app` and kept on
    `app.state` so queue and failure counters persist across requests.
    """
    return request.app.state.replication
