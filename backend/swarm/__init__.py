"""Hierarchical agent cluster control plane.

This module exports the components needed to build and drive a cluster:
- Data model: tasks, results, node configuration and snapshots
- AgentNode base with its Monitor watchdog
- CoordinatorNode (decompose, dispatch, recover, aggregate) and WorkerNode
  (execute, self-test)
- Reasoning oracles and the LiteLLM client behind them

The process-scoped ``ClusterRuntime`` lives in ``swarm.runtime``; it pulls in
the persistence layer and is imported from there directly.
"""

from swarm.coordinator import CoordinatorNode
from swarm.errors import (
    ClusterError,
    ErrorLoopError,
    ExecutionFailedError,
    InvalidContextError,
    InvalidTreeOperationError,
    OracleFailureError,
    OracleTimeoutError,
    PersistenceFailureError,
    SelfTestFailedError,
)
from swarm.llm import LLMClient, LLMResponse, MockLLMClient, extract_json_payload
from swarm.monitor import Monitor
from swarm.node import AgentNode
from swarm.oracle import (
    LLMOracle,
    OfflineOracle,
    ReasoningOracle,
    create_oracle,
    fallback_decomposition,
)
from swarm.types import (
    MonitorEvent,
    MonitorEventType,
    NodeConfig,
    NodeKind,
    NodeState,
    NodeStatus,
    SubTaskSpec,
    Task,
    TaskResult,
)
from swarm.worker import WorkerNode

__all__ = [
    # Nodes
    "AgentNode",
    "CoordinatorNode",
    "WorkerNode",
    "Monitor",
    # Data model
    "MonitorEvent",
    "MonitorEventType",
    "NodeConfig",
    "NodeKind",
    "NodeState",
    "NodeStatus",
    "SubTaskSpec",
    "Task",
    "TaskResult",
    # Oracle and LLM
    "ReasoningOracle",
    "LLMOracle",
    "OfflineOracle",
    "create_oracle",
    "fallback_decomposition",
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_payload",
    # Errors
    "ClusterError",
    "ErrorLoopError",
    "ExecutionFailedError",
    "InvalidContextError",
    "InvalidTreeOperationError",
    "OracleFailureError",
    "OracleTimeoutError",
    "PersistenceFailureError",
    "SelfTestFailedError",
]
