"""Reasoning oracle: decomposition, execution and self-test judgment.

The control plane only depends on the ``ReasoningOracle`` protocol. Two
implementations ship here:

- LLMOracle: prompts a model through LLMClient and parses its JSON replies,
  tolerating the container keys and field aliases models commonly emit.
- OfflineOracle: deterministic, network-free responses used when
  ``settings.use_mock_llm`` is set.

Implementations raise OracleFailureError when a call cannot produce a usable
answer. Callers never let that error escape a node; see AgentNode.call_oracle.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol, runtime_checkable

import structlog

from config import settings
from swarm.errors import OracleFailureError
from swarm.llm import LLMClient, extract_json_payload
from swarm.prompts import (
    DECOMPOSE_PROMPT,
    SELF_TEST_PROMPT,
    build_decompose_message,
    build_execute_message,
    build_execute_system_prompt,
    build_self_test_message,
)
from swarm.types import ExecutionOutcome, SelfTestVerdict, SubTaskSpec

logger = structlog.get_logger()

# Keys under which models wrap a decomposition list.
_TASK_LIST_KEYS = (
    "tasks", "subTasks", "subtasks", "sub_tasks", "taskList", "task_list",
    "data", "result", "items", "steps", "actions",
)

_FAILURE_WORDS = (
    "error", "exception", "timeout", "failed", "unable", "cannot", "invalid",
)
_PASS_WORDS = ("pass", "success", "correct", "satisf", "meets", "ok", "good")
_FAIL_WORDS = ("fail", "error", "incorrect", "missing", "problem", "defect", "wrong")

_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s+(.+)$")


@runtime_checkable
class ReasoningOracle(Protocol):
    """Stateless natural-language capability consumed by cluster nodes."""

    async def decompose(self, task_text: str) -> list[SubTaskSpec]:
        """Split a task into ordered subtask specs."""
        ...

    async def execute(
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
        guidance: str | None = None,
    ) -> ExecutionOutcome:
        """Carry out one instruction, optionally under a role guidance document."""
        ...

    async def self_test(self, task_text: str, produced_output: str) -> SelfTestVerdict:
        """Judge whether ``produced_output`` satisfies ``task_text``."""
        ...


def fallback_decomposition(task_text: str) -> list[SubTaskSpec]:
    """Return the fixed analyze/execute/verify plan for ``task_text``."""
    return [
        SubTaskSpec(
            id="subtask-1",
            description=f"Analyze task requirements: {task_text}",
            priority=1,
            dependencies=[],
        ),
        SubTaskSpec(
            id="subtask-2",
            description=f"Execute task: {task_text}",
            priority=2,
            dependencies=["subtask-1"],
        ),
        SubTaskSpec(
            id="subtask-3",
            description=f"Verify task result: {task_text}",
            priority=3,
            dependencies=["subtask-2"],
        ),
    ]


# -----------------------------------------------------------------------------
# Response parsing
# -----------------------------------------------------------------------------


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _coerce_priority(value: Any) -> int:
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return 5
    return min(max(priority, 1), 10)


def parse_subtasks(content: str) -> list[SubTaskSpec]:
    """Parse a decomposition reply into subtask specs.

    Accepts a bare JSON array, an object wrapping the array under one of the
    usual container keys, or a numbered plain-text list.

    Raises:
        OracleFailureError: If no subtask can be recovered.
    """
    payload = extract_json_payload(content)

    if payload is None:
        items: list[Any] = [
            match.group(1).strip()
            for line in content.splitlines()
            if (match := _NUMBERED_LINE.match(line))
        ]
    elif isinstance(payload, list):
        items = payload
    else:
        items = next(
            (payload[key] for key in _TASK_LIST_KEYS if isinstance(payload.get(key), list)),
            [],
        )

    if not items:
        raise OracleFailureError("Invalid decomposition response: expected a list of tasks")

    specs: list[SubTaskSpec] = []
    for index, item in enumerate(items):
        default_id = f"subtask-{index + 1}"
        if not isinstance(item, dict):
            specs.append(SubTaskSpec(id=default_id, description=_as_text(item)))
            continue

        dependencies = item.get("dependencies") or []
        if not isinstance(dependencies, list):
            dependencies = [dependencies]

        specs.append(
            SubTaskSpec(
                id=str(item.get("id") or default_id),
                description=_as_text(
                    _first_present(item, "description", "name", "title")
                    or f"Subtask {index + 1}"
                ),
                priority=_coerce_priority(item.get("priority")),
                dependencies=[str(dep) for dep in dependencies],
            )
        )
    return specs


def parse_execution(content: str) -> ExecutionOutcome:
    """Parse an execution reply; plain text is judged by failure keywords."""
    payload = extract_json_payload(content)

    if not isinstance(payload, dict):
        text = content.strip()
        lowered = text.lower()
        return ExecutionOutcome(
            success=not any(word in lowered for word in _FAILURE_WORDS),
            output=text,
            reasoning="Response was not in JSON format, treated as plain text output",
        )

    success = payload.get("success", True)
    output = _first_present(payload, "output", "result", "content", "message")
    reasoning = _first_present(payload, "reasoning", "thought", "explanation")
    return ExecutionOutcome(
        success=bool(success),
        output=_as_text(output) if output is not None else "Task execution completed",
        reasoning=_as_text(reasoning) if reasoning is not None else None,
    )


def parse_verdict(content: str) -> SelfTestVerdict:
    """Parse a self-test reply; plain text is judged by keyword balance."""
    payload = extract_json_payload(content)

    if not isinstance(payload, dict):
        text = content.strip()
        lowered = text.lower()
        pass_hits = sum(1 for word in _PASS_WORDS if word in lowered)
        fail_hits = sum(1 for word in _FAIL_WORDS if word in lowered)
        passed = pass_hits > fail_hits or (fail_hits == 0 and len(lowered) > 20)
        return SelfTestVerdict(passed=passed, feedback=text)

    raw_passed: Any = False
    for key in ("passed", "success", "result"):
        if key in payload and payload[key] is not None:
            raw_passed = payload[key]
            break
    feedback = _first_present(payload, "feedback", "message", "comment", "output")
    return SelfTestVerdict(
        passed=raw_passed is True,
        feedback=_as_text(feedback) if feedback is not None else "Verification complete",
    )


# -----------------------------------------------------------------------------
# Implementations
# -----------------------------------------------------------------------------


class LLMOracle:
    """ReasoningOracle backed by a LiteLLM model.

    Attributes:
        client: LLMClient used for every call
        temperature: Sampling temperature for oracle prompts
    """

    def __init__(self, client: LLMClient | None = None, temperature: float | None = None) -> None:
        self.client = client or LLMClient()
        self.temperature = (
            temperature if temperature is not None else settings.oracle_temperature
        )

    async def _ask(self, operation: str, system_prompt: str, user_message: str) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        try:
            response = await self.client.call(messages=messages, temperature=self.temperature)
        except Exception as e:
            logger.warning(
                "oracle_call_failed",
                operation=operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise OracleFailureError(f"Oracle {operation} failed: {e}") from e

        if not response.content.strip():
            raise OracleFailureError(f"Oracle {operation} failed: empty response")
        return response.content

    async def decompose(self, task_text: str) -> list[SubTaskSpec]:
        content = await self._ask("decompose", DECOMPOSE_PROMPT, build_decompose_message(task_text))
        subtasks = parse_subtasks(content)
        logger.info("oracle_decomposed", subtask_count=len(subtasks))
        return subtasks

    async def execute(
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
        guidance: str | None = None,
    ) -> ExecutionOutcome:
        context_json = json.dumps(context, indent=2, default=str) if context else None
        content = await self._ask(
            "execute",
            build_execute_system_prompt(guidance),
            build_execute_message(instruction, context_json),
        )
        return parse_execution(content)

    async def self_test(self, task_text: str, produced_output: str) -> SelfTestVerdict:
        content = await self._ask(
            "self_test",
            SELF_TEST_PROMPT,
            build_self_test_message(task_text, produced_output),
        )
        return parse_verdict(content)


class OfflineOracle:
    """Deterministic oracle that never leaves the process.

    Decomposes every task into the analyze/execute/verify plan, reports each
    instruction as completed, and passes any non-empty output.
    """

    async def decompose(self, task_text: str) -> list[SubTaskSpec]:
        return fallback_decomposition(task_text)

    async def execute(
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
        guidance: str | None = None,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            success=True,
            output=f"Completed: {instruction}",
            reasoning="offline oracle",
        )

    async def self_test(self, task_text: str, produced_output: str) -> SelfTestVerdict:
        passed = bool(produced_output.strip())
        return SelfTestVerdict(
            passed=passed,
            feedback="Output present" if passed else "Output is empty",
        )


def create_oracle(client: LLMClient | None = None) -> ReasoningOracle:
    """Return the oracle selected by ``settings.use_mock_llm``."""
    if settings.use_mock_llm:
        logger.info("oracle_selected", oracle="offline")
        return OfflineOracle()
    logger.info("oracle_selected", oracle="llm", model=settings.default_model)
    return LLMOracle(client=client)
