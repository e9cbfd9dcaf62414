"""Models module for Pydantic schemas and persistence.

This module exposes the request/response models used by the API.
Persistence lives in ``models.database``.
"""

from models.schemas import (
    HealthResponse,
    MonitorEventsResponse,
    MonitorStats,
    NodeDetailResponse,
    NodeSummary,
    SubmitTaskRequest,
    TaskResponse,
    TerminateNodeRequest,
)

__all__ = [
    "HealthResponse",
    "MonitorEventsResponse",
    "MonitorStats",
    "NodeDetailResponse",
    "NodeSummary",
    "SubmitTaskRequest",
    "TaskResponse",
    "TerminateNodeRequest",
]
