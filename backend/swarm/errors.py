"""Exception hierarchy for the agent cluster.

Failures raised inside a node's task execution never escape ``execute_task``:
they are converted into a failed TaskResult plus a status transition. These
types exist so each failure path can be recorded with a precise message.
"""

from __future__ import annotations


class ClusterError(Exception):
    """Base for all cluster errors."""


class InvalidContextError(ClusterError):
    """Task carries neither an instruction nor a description."""


class ExecutionFailedError(ClusterError):
    """The oracle reported that the instruction could not be carried out."""


class SelfTestFailedError(ClusterError):
    """The worker's self-test rejected the produced output."""


class OracleFailureError(ClusterError):
    """The reasoning oracle failed or returned an unusable response.

    Callers always degrade to a scripted fallback instead of propagating it.
    """


class OracleTimeoutError(OracleFailureError):
    """An oracle call exceeded its caller-supplied timeout.

    Attributes:
        operation: Oracle operation that timed out (decompose, execute, self_test).
        timeout_seconds: The bound that was exceeded.
    """

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Oracle {operation} timed out after {timeout_seconds}s")


class ErrorLoopError(ClusterError):
    """A node repeated the same failure and must be recreated before reuse."""


class PersistenceFailureError(ClusterError):
    """The persistence gateway could not complete an operation.

    Nodes log and swallow this; it never blocks an in-memory transition.
    """


class InvalidTreeOperationError(ClusterError):
    """A parent/child operation would violate the cluster tree invariants."""
