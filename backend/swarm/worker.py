"""Leaf node: validate, execute via the oracle, self-test, report."""

from __future__ import annotations

from typing import Any

from swarm.errors import (
    ExecutionFailedError,
    InvalidContextError,
    OracleFailureError,
    PersistenceFailureError,
    SelfTestFailedError,
)
from swarm.node import AgentNode
from swarm.types import ExecutionOutcome, NodeKind, NodeStatus, Task, TaskResult

EXECUTION_RESULT_ACTION = "execution_result"


class WorkerNode(AgentNode):
    """Executes exactly one instruction per task and verifies its own output.

    Workers are always leaves. They see only the explicit context handed to
    them at dispatch (``instruction``, ``step``, ``total_steps``) and pass
    nothing else to the oracle, apart from their own role guidance.

    Attributes:
        guidance: Content of the ``config.template`` document, loaded on
            initialize. None when the node has no template or it is missing.
    """

    kind = NodeKind.WORKER

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.guidance: str | None = None

    async def initialize(self) -> None:
        await super().initialize()
        self.guidance = await self.load_guidance()

    async def load_guidance(self) -> str | None:
        """Load the role guidance named by ``config.template``.

        A missing template or an unreadable store leaves the worker without
        guidance; it still runs.
        """
        name = self.config.template
        if not name:
            return None
        try:
            content = await self.store.load_template(name)
        except PersistenceFailureError as e:
            self._log.warning("template_load_failed", template=name, error=str(e))
            return None
        if content is None:
            self._log.warning("template_not_found", template=name)
            return None
        await self.add_execution_log("template_loaded", f"Loaded template {name}")
        return content

    async def _run_task(self, task: Task) -> TaskResult:
        await self.add_execution_log("task_start", f"Starting task: {task.description}")

        instruction = self._resolve_instruction(task)
        await self.add_conversation_entry("user", instruction)

        outcome = await self._execute_instruction(instruction, task.context)
        await self.add_execution_log(EXECUTION_RESULT_ACTION, outcome.output)
        await self.add_conversation_entry("assistant", outcome.output)
        if not outcome.success:
            raise ExecutionFailedError(outcome.output)

        await self.add_execution_log("self_test", "Running self-test")
        if not await self.self_test():
            raise SelfTestFailedError("Self-test failed")
        await self.add_execution_log("self_test_passed", "Self-test passed")

        return TaskResult(
            task_id=task.id,
            success=True,
            output=outcome.output,
            self_test_passed=True,
        )

    @staticmethod
    def _resolve_instruction(task: Task) -> str:
        instruction = (task.context or {}).get("instruction") or task.description
        if not isinstance(instruction, str) or not instruction.strip():
            raise InvalidContextError("Invalid task context: missing required instruction")
        return instruction

    async def _execute_instruction(
        self,
        instruction: str,
        context: dict[str, Any] | None,
    ) -> ExecutionOutcome:
        try:
            return await self.call_oracle(
                "execute",
                self.oracle.execute(instruction, context, guidance=self.guidance),
            )
        except OracleFailureError as e:
            return ExecutionOutcome(success=False, output=f"Task execution failed: {e}")

    def latest_execution_output(self) -> str | None:
        for entry in reversed(self.context.execution_log):
            if entry.action == EXECUTION_RESULT_ACTION:
                return entry.result
        return None

    def _structural_check(self) -> bool:
        return self.current_task is not None and self.status is NodeStatus.RUNNING

    async def self_test(self) -> bool:
        """Ask the oracle whether the latest output satisfies the current task.

        Falls back to a structural check (a current task exists and the node
        is running) when the oracle fails. Never raises.
        """
        if self.current_task is None:
            return False

        produced_output = self.latest_execution_output() or ""
        try:
            verdict = await self.call_oracle(
                "self_test",
                self.oracle.self_test(self.current_task.description, produced_output),
            )
        except OracleFailureError as e:
            passed = self._structural_check()
            await self.add_execution_log(
                "self_test_fallback",
                f"Oracle unavailable ({e}); structural check {'passed' if passed else 'failed'}",
            )
            return passed

        await self.add_execution_log("self_test_feedback", verdict.feedback)
        return verdict.passed
