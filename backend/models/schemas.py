"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API. Node and task
payloads reuse the cluster's own models from ``swarm.types`` so the API
never drifts from what nodes persist.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from swarm.types import MonitorEvent, NodeKind, NodeState, NodeStatus, TaskResult


class SubmitTaskRequest(BaseModel):
    """Request body for submitting a user-level task to the cluster."""

    description: str = Field(
        min_length=1,
        max_length=10000,
        description="The task for the root coordinator to decompose and run",
        examples=["Build a CLI that converts CSV files to JSON"],
    )
    context: dict[str, Any] | None = Field(
        default=None,
        description="Optional context for the root task; never forwarded to workers",
    )


class TaskResponse(BaseModel):
    """Outcome of a submitted task."""

    root_id: str = Field(description="Coordinator that ran the task")
    result: TaskResult


class TerminateNodeRequest(BaseModel):
    reason: str = Field(default="Terminated via API", max_length=500)


class NodeSummary(BaseModel):
    """Compact view of one node for listings."""

    id: str
    name: str
    kind: NodeKind
    status: NodeStatus
    parent_id: str | None = None
    children_ids: list[str] = Field(default_factory=list)
    error_count: int = 0
    last_error: str | None = None
    updated_at: float


class MonitorStats(BaseModel):
    total_events: int = 0
    error_events: int = 0
    loop_events: int = 0
    timeout_events: int = 0
    is_running: bool = False


class NodeDetailResponse(BaseModel):
    """Full snapshot of a node plus its watchdog statistics."""

    state: NodeState
    monitor: MonitorStats


class MonitorEventsResponse(BaseModel):
    node_id: str
    events: list[MonitorEvent]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Unix timestamp of the health check",
    )
    cluster_id: str = Field(description="Cluster served by this process")
    oracle: str = Field(description="Reasoning oracle implementation in use")
    node_count: int = Field(default=0, ge=0, description="Nodes in the live tree")


class TemplateRequest(BaseModel):
    """Request body for storing a worker guidance template."""

    content: str = Field(
        min_length=1,
        max_length=100000,
        description="Markdown guidance a worker executes under",
    )


class TemplateResponse(BaseModel):
    name: str
    content: str
