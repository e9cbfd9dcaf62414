"""Branch/root node: decomposition, dispatch, recovery and aggregation.

A coordinator never fans out concurrently. Subtasks run one at a time in the
order the oracle returned them; ``priority`` and ``dependencies`` travel with
each subtask as metadata only. Before anything reaches a child, the subtask
is stripped down to ``{instruction, step, total_steps}``.

A coordinator terminated mid-task dispatches nothing further; the remaining
subtasks are abandoned and the task reports a failure.
"""

from __future__ import annotations

from typing import Any

from config import settings
from events.types import EventType
from swarm.errors import ErrorLoopError, InvalidTreeOperationError, OracleFailureError
from swarm.node import AgentNode
from swarm.oracle import fallback_decomposition
from swarm.types import (
    AVAILABLE_STATUSES,
    NodeConfig,
    NodeKind,
    NodeStatus,
    Task,
    TaskResult,
)
from swarm.worker import WorkerNode

# The only keys a dispatched task's context may carry.
ISOLATED_CONTEXT_KEYS = ("instruction", "step", "total_steps")


class CoordinatorNode(AgentNode):
    """Decomposes tasks and drives child workers through them.

    Attributes:
        worker_config: Template for spawned workers; each spawn gets its own
            ``worker-<n>`` name. Defaults use ``settings.worker_timeout_seconds``.
    """

    kind = NodeKind.COORDINATOR

    def __init__(
        self,
        config: NodeConfig,
        *,
        worker_config: NodeConfig | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self.worker_config = worker_config
        self._spawned_workers = 0

    def _clone_kwargs(self) -> dict[str, Any]:
        return {**super()._clone_kwargs(), "worker_config": self.worker_config}

    # -----------------------------------------------------------------
    # Task flow
    # -----------------------------------------------------------------

    async def _run_task(self, task: Task) -> TaskResult:
        subtasks = await self.decompose_task(task)

        results: list[TaskResult] = []
        for sub_task in subtasks:
            if self.status is NodeStatus.TERMINATED:
                self._log.warning(
                    "dispatch_aborted",
                    task_id=task.id,
                    dispatched=len(results),
                    total_steps=len(subtasks),
                )
                return self.terminated_result(task)

            child = await self._resolve_target()
            result = await self.dispatch_task(sub_task, child)

            if (
                not result.success
                and child.status is NodeStatus.ERROR_LOOP
                and self.status is not NodeStatus.TERMINATED
            ):
                replacement = await self.recover_child(child)
                result = await self.dispatch_task(sub_task, replacement)

            results.append(result)

        aggregated = self.aggregate_results(results, task_id=task.id)
        summary = aggregated.output
        await self.add_execution_log(
            "aggregate",
            f"{summary['success_count']}/{summary['sub_task_count']} subtasks succeeded",
        )
        self.publish(
            EventType.AGGREGATION_COMPLETE,
            task_id=task.id,
            success=aggregated.success,
            sub_task_count=summary["sub_task_count"],
            success_count=summary["success_count"],
            self_test_passed_count=summary["self_test_passed_count"],
        )
        return aggregated

    async def decompose_task(self, task: Task) -> list[Task]:
        """Split ``task`` into subtasks, falling back to the fixed 3-step plan.

        Each subtask carries ``original_context``; it exists only here and is
        removed by ``dispatch_task``.
        """
        try:
            specs = await self.call_oracle("decompose", self.oracle.decompose(task.description))
            if not specs:
                raise OracleFailureError("Oracle decompose returned no subtasks")
        except OracleFailureError as e:
            self._log.warning("decomposition_fallback", task_id=task.id, error=str(e))
            await self.add_execution_log("decompose_fallback", str(e))
            specs = fallback_decomposition(task.description)

        total_steps = len(specs)
        subtasks = [
            Task(
                description=spec.description,
                parent_task_id=task.id,
                context={
                    "step": step,
                    "total_steps": total_steps,
                    "original_context": task.context,
                    "subtask_id": spec.id,
                    "priority": spec.priority,
                    "dependencies": list(spec.dependencies),
                },
            )
            for step, spec in enumerate(specs, start=1)
        ]

        await self.add_execution_log("decompose", f"Decomposed into {total_steps} subtasks")
        self.publish(
            EventType.DECOMPOSITION_PLAN,
            task_id=task.id,
            subtasks=[
                {"id": sub_task.id, "description": sub_task.description, "step": step}
                for step, sub_task in enumerate(subtasks, start=1)
            ],
        )
        return subtasks

    async def dispatch_task(self, sub_task: Task, worker: AgentNode | None = None) -> TaskResult:
        """Send an isolated view of ``sub_task`` to a child.

        Target resolution: the supplied child, else the first available
        child, else a freshly spawned worker.
        """
        target = await self._resolve_target(worker)
        if target.parent_id != self.id:
            raise InvalidTreeOperationError(f"Node {target.id} is not a child of {self.id}")
        if target.status is NodeStatus.ERROR_LOOP:
            raise ErrorLoopError(f"Node {target.id} is in an error loop and must be recreated")

        isolated = self.isolate_task(sub_task)
        step = isolated.context["step"] if isolated.context else None
        await self.add_execution_log("dispatch", f"Dispatching step {step} to {target.id}")
        self.publish(
            EventType.SUBTASK_DISPATCHED,
            task_id=isolated.id,
            target_id=target.id,
            step=step,
        )
        return await target.execute_task(isolated)

    @staticmethod
    def isolate_task(sub_task: Task) -> Task:
        """Return a copy of ``sub_task`` whose context holds only the whitelisted keys."""
        source = dict(sub_task.context or {}, instruction=sub_task.description)
        return sub_task.model_copy(
            update={"context": {key: source.get(key) for key in ISOLATED_CONTEXT_KEYS}}
        )

    def aggregate_results(self, results: list[TaskResult], task_id: str | None = None) -> TaskResult:
        """Fold subtask results, in dispatch order, into one report.

        Success requires every result to have succeeded and passed self-test.
        """
        if task_id is None and self.current_task is not None:
            task_id = self.current_task.id
        outputs = [result.output for result in results if result.output]
        errors = [result.error for result in results if result.error]
        all_self_tests_passed = all(result.self_test_passed for result in results)

        return TaskResult(
            task_id=task_id or "unknown",
            success=all(result.success for result in results) and all_self_tests_passed,
            output={
                "aggregated": True,
                "sub_task_count": len(results),
                "success_count": sum(1 for result in results if result.success),
                "self_test_passed_count": sum(1 for result in results if result.self_test_passed),
                "outputs": outputs,
                "errors": errors,
            },
            error="; ".join(errors) if errors else None,
            self_test_passed=all_self_tests_passed,
        )

    # -----------------------------------------------------------------
    # Child pool
    # -----------------------------------------------------------------

    async def _resolve_target(self, worker: AgentNode | None = None) -> AgentNode:
        return worker or self.find_available_child() or await self.spawn_worker()

    def find_available_child(self) -> AgentNode | None:
        for child in self.children.values():
            if child.status in AVAILABLE_STATUSES:
                return child
        return None

    async def spawn_worker(self) -> WorkerNode:
        """Create, attach and initialize a new worker under this coordinator."""
        self._spawned_workers += 1
        name = f"worker-{self._spawned_workers}"
        if self.worker_config is not None:
            config = self.worker_config.model_copy(update={"name": name})
        else:
            config = NodeConfig(
                name=name,
                timeout_seconds=settings.worker_timeout_seconds,
                template=settings.worker_template,
            )

        worker = WorkerNode(
            config,
            store=self.store,
            oracle=self.oracle,
            parent_id=self.id,
            event_bus=self.event_bus,
            cluster_id=self.cluster_id,
        )
        await self.add_child(worker)
        await worker.initialize()
        self._log.info("worker_spawned", worker_id=worker.id, worker_name=name)
        return worker

    async def recover_child(self, child: AgentNode) -> AgentNode:
        """Recreate a looping child and relink the replacement in its slot."""
        if self.status is NodeStatus.TERMINATED:
            raise InvalidTreeOperationError(f"Terminated node {self.id} cannot recover {child.id}")
        self._log.warning("child_error_loop", child_id=child.id, last_error=child.last_error)
        replacement = await child.recreate()
        await self.replace_child(child.id, replacement)
        await self.add_execution_log("recreate", f"Replaced {child.id} with {replacement.id}")
        return replacement
