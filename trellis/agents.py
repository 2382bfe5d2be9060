"""AI agent task execution with pydantic-ai agents."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel
from pydantic_ai import Agent

from .audit import AuditTrail
from .constants import AGENT_WORKER_ACTOR, DEFAULT_SERVICE_TIMEOUT
from .errors import OutputValidationFailed, TaskAlreadyTerminal
from .persistence.models import EventType, QueueItem, Task, TaskStatus
from .tasks import TaskManager

logger = logging.getLogger(__name__)

AGENT_UNAVAILABLE = "agent unavailable"


class _PromptValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def build_prompt(template: Optional[str], input_data: Dict[str, Any]) -> str:
    """Render ``template`` with the task input.

    ``{input}`` expands to the whole input as JSON and ``{name}`` to a
    top-level input value; without a template the JSON input is the prompt.
    """
    rendered_input = json.dumps(input_data, default=str, indent=2)
    if not template:
        return rendered_input
    values = _PromptValues(input_data)
    values.setdefault("input", rendered_input)
    return template.format_map(values)


def output_to_dict(output: Any) -> Dict[str, Any]:
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json")
    if isinstance(output, dict):
        return output
    return {"result": output}


class AgentRegistration(BaseModel):
    """A pydantic-ai agent bound to a ``function_code``."""

    agent: Any
    prompt_template: Optional[str] = None
    deps: Any = None


class AgentRegistry:
    def __init__(self) -> None:
        self._agents: Dict[str, AgentRegistration] = {}

    def register(
        self,
        function_code: str,
        agent: Agent,
        prompt_template: Optional[str] = None,
        deps: Any = None,
    ) -> None:
        self._agents[function_code] = AgentRegistration(
            agent=agent, prompt_template=prompt_template, deps=deps
        )

    def get(self, function_code: str) -> Optional[AgentRegistration]:
        return self._agents.get(function_code)

    def __contains__(self, function_code: object) -> bool:
        return function_code in self._agents


class AgentTaskWorker:
    """Handles ``INVOKE_AGENT_TASK`` queue items."""

    def __init__(
        self,
        tasks: TaskManager,
        audit: AuditTrail,
        agents: AgentRegistry,
        default_timeout: float = DEFAULT_SERVICE_TIMEOUT,
    ) -> None:
        self.tasks = tasks
        self.audit = audit
        self.agents = agents
        self.default_timeout = default_timeout

    async def handle(self, item: QueueItem) -> None:
        task = await self.tasks.get_task(item.task_id)
        if not task.status.is_open:
            logger.info(f"Task {task.id} already {task.status.value}, skipping agent run")
            return

        registration = self.agents.get(task.function_code)
        if registration is None:
            await self._fail(task, f"No agent registered for function {task.function_code}")
            return

        descriptor = self.tasks.registry.get(task.function_code)
        template = registration.prompt_template or (
            descriptor.prompt_template if descriptor else None
        )
        timeout = (descriptor.timeout if descriptor else None) or self.default_timeout

        if task.status == TaskStatus.PENDING:
            task = await self.tasks.start_task(task.id, AGENT_WORKER_ACTOR)

        prompt = build_prompt(template, task.input_data)
        try:
            result = await asyncio.wait_for(
                registration.agent.run(prompt, deps=registration.deps), timeout
            )
        except Exception as e:
            logger.warning(
                f"Agent for {task.function_code} failed on task {task.id} "
                f"(attempt {item.attempt_count + 1}): {e!r}"
            )
            await self.audit.record(
                task.instance_id,
                EventType.SERVICE_CALL_FAILED,
                node_id=task.node_id,
                task_id=task.id,
                actor_id=AGENT_WORKER_ACTOR,
                metadata={
                    "function_code": task.function_code,
                    "attempt": item.attempt_count + 1,
                    "error": repr(e),
                    "queue_item_id": item.id,
                },
            )
            raise

        output = output_to_dict(getattr(result, "output", result))
        try:
            await self.tasks.complete_task(task.id, output, AGENT_WORKER_ACTOR)
        except OutputValidationFailed as e:
            await self._fail(task, e.message)
        except TaskAlreadyTerminal:
            logger.info(f"Task {task.id} was closed while its agent was running")

    async def exhausted(self, item: QueueItem, error: Exception) -> None:
        task = await self.tasks.get_task(item.task_id)
        if task.status.is_open:
            await self._fail(task, AGENT_UNAVAILABLE)

    async def _fail(self, task: Task, error: str) -> None:
        try:
            await self.tasks.fail_task(task.id, error, AGENT_WORKER_ACTOR)
        except TaskAlreadyTerminal:
            logger.info(f"Task {task.id} was already closed")
