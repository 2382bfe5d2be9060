"""Task lifecycle management.

Tasks are the only place where outside actors feed data into an instance.
Each terminal transition is an optimistic conditional update so that two
racing completions produce exactly one winner; the loser receives
``TaskAlreadyTerminal``. Every terminal transition enqueues an advancement of
the owning instance instead of advancing it inline.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel

from .audit import AuditTrail
from .constants import SYSTEM_ACTOR
from .context import ContextStore
from .contracts import Node, TaskType
from .errors import (
    DuplicateOpenTask,
    InstanceNotFound,
    InstanceTerminal,
    OutputValidationFailed,
    TaskAlreadyTerminal,
    TaskNotAssignedToActor,
    TaskNotFound,
)
from .persistence.models import (
    OPEN_TASK_STATUSES,
    ContextVersion,
    EventType,
    QueueItemKind,
    Task,
    TaskStatus,
)
from .persistence.repository import WorkflowRepository
from .queues.base import BaseWorkQueue
from .registry import REGISTRY, FunctionRegistry

logger = logging.getLogger(__name__)

_INVOCATION_KINDS = {
    TaskType.SERVICE_TASK: QueueItemKind.INVOKE_SERVICE_TASK,
    TaskType.AI_AGENT_TASK: QueueItemKind.INVOKE_AGENT_TASK,
}


class TaskCompletion(BaseModel):
    """Result of a successful ``complete_task`` call."""

    task_id: str
    instance_id: str
    context_version: int


def schema_errors(payload: Any, schema: Optional[Dict[str, Any]]) -> List[str]:
    """Return JSON schema violations of ``payload`` (empty when valid)."""
    if not schema:
        return []
    try:
        validator = Draft202012Validator(schema)
    except SchemaError as exc:
        return [f"invalid schema: {exc.message}"]
    errors = sorted(
        validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path]
    )
    return [e.message for e in errors]


class TaskManager:
    def __init__(
        self,
        repository: WorkflowRepository,
        queue: BaseWorkQueue,
        audit: AuditTrail,
        context: ContextStore,
        registry: Optional[FunctionRegistry] = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.audit = audit
        self.context = context
        self.registry = registry if registry is not None else REGISTRY

    def task_type_for(self, node: Node) -> TaskType:
        """Node override first, then the registered function, else a user task."""
        if node.task_type is not None:
            return node.task_type
        descriptor = self.registry.get(node.function_code or "")
        if descriptor is not None:
            return descriptor.task_type
        return TaskType.USER_TASK

    async def get_task(self, task_id: str) -> Task:
        task = await self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    async def list_tasks(
        self,
        instance_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> list[Task]:
        return await self.repository.list_tasks(instance_id, status, assigned_to)

    # ------------------------------------------------------------------
    async def create_task(
        self,
        instance_id: str,
        node_id: str,
        function_code: str,
        task_type: TaskType,
        assignment: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> Task:
        existing = await self.repository.find_open_task(instance_id, node_id)
        if existing is not None:
            raise DuplicateOpenTask(instance_id, node_id, existing.id)

        task = Task(
            instance_id=instance_id,
            node_id=node_id,
            function_code=function_code,
            task_type=task_type,
            assigned_to=assignment,
            input_data=dict(input_data or {}),
        )
        await self.repository.create_task(task)
        await self._announce(task)
        await self._dispatch(task)
        logger.info(
            f"Created {task_type.value} task {task.id} for node {node_id} "
            f"of instance {instance_id}"
        )
        return task

    async def redispatch(self, task: Task) -> Task:
        """Finish announcing an open task whose creation was interrupted.

        Writes the ``TASK_CREATED`` event and the invocation item only where
        they are missing.
        """
        if not await self.audit.has_task_event(
            task.instance_id, EventType.TASK_CREATED, task.id
        ):
            await self._announce(task)
        kind = _INVOCATION_KINDS.get(task.task_type)
        if kind is not None:
            queued = await self.queue.list_items(kind=kind)
            if not any(item.task_id == task.id for item in queued):
                await self._dispatch(task)
        logger.info(f"Adopted open task {task.id} for node {task.node_id}")
        return task

    async def _announce(self, task: Task) -> None:
        await self.audit.record(
            task.instance_id,
            EventType.TASK_CREATED,
            node_id=task.node_id,
            task_id=task.id,
            actor_id=SYSTEM_ACTOR,
            metadata={
                "function_code": task.function_code,
                "task_type": task.task_type.value,
                "assigned_to": task.assigned_to,
            },
        )

    async def _dispatch(self, task: Task) -> None:
        kind = _INVOCATION_KINDS.get(task.task_type)
        if kind is not None:
            await self.queue.enqueue(
                kind, {"task_id": task.id, "instance_id": task.instance_id}
            )

    def _check_actor(self, task: Task, actor_id: Optional[str]) -> None:
        if (
            task.task_type == TaskType.USER_TASK
            and task.assigned_to
            and actor_id != task.assigned_to
        ):
            raise TaskNotAssignedToActor(task.id, actor_id)

    async def _check_instance(self, instance_id: str) -> None:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        if instance.status.is_terminal:
            raise InstanceTerminal(instance_id, instance.status.value)

    async def _lost_race(self, task_id: str) -> TaskAlreadyTerminal:
        current = await self.get_task(task_id)
        return TaskAlreadyTerminal(task_id, current.status.value)

    def _validate_output(self, task: Task, output: Any) -> Dict[str, Any]:
        if not isinstance(output, Mapping):
            raise OutputValidationFailed(
                task.id, [f"output must be an object, got {type(output).__name__}"]
            )
        descriptor = self.registry.get(task.function_code)
        errors = schema_errors(dict(output), descriptor.output_schema if descriptor else None)
        if errors:
            raise OutputValidationFailed(task.id, errors)
        return dict(output)

    async def start_task(self, task_id: str, actor_id: Optional[str] = None) -> Task:
        """Move a PENDING task to IN_PROGRESS; an IN_PROGRESS task is returned as is."""
        task = await self.get_task(task_id)
        self._check_actor(task, actor_id)
        if task.status == TaskStatus.IN_PROGRESS:
            return task
        if not task.status.is_open:
            raise TaskAlreadyTerminal(task_id, task.status.value)
        await self._check_instance(task.instance_id)

        started = await self.repository.transition_task(
            task_id, [TaskStatus.PENDING], TaskStatus.IN_PROGRESS
        )
        if started is None:
            current = await self.get_task(task_id)
            if current.status == TaskStatus.IN_PROGRESS:
                return current
            raise TaskAlreadyTerminal(task_id, current.status.value)
        await self.audit.record(
            task.instance_id,
            EventType.TASK_STARTED,
            node_id=task.node_id,
            task_id=task_id,
            actor_id=actor_id,
        )
        return started

    async def complete_task(
        self, task_id: str, output: Any, actor_id: Optional[str] = None
    ) -> TaskCompletion:
        """Complete an open task and queue the advancement of its instance.

        Calling again with the same output after a failure part way through
        finishes the interrupted completion instead of raising
        ``TaskAlreadyTerminal``.
        """
        task = await self.get_task(task_id)
        self._check_actor(task, actor_id)
        if task.status == TaskStatus.COMPLETED:
            if not await self._resumable(task, output):
                raise TaskAlreadyTerminal(task_id, task.status.value)
            logger.warning(f"Resuming interrupted completion of task {task_id}")
            context = await self.record_completion(task, actor_id)
            return TaskCompletion(
                task_id=task_id,
                instance_id=task.instance_id,
                context_version=context.version,
            )
        if not task.status.is_open:
            raise TaskAlreadyTerminal(task_id, task.status.value)
        await self._check_instance(task.instance_id)
        output_data = self._validate_output(task, output)

        completed = await self.repository.transition_task(
            task_id,
            OPEN_TASK_STATUSES,
            TaskStatus.COMPLETED,
            {"output_data": output_data},
        )
        if completed is None:
            raise await self._lost_race(task_id)

        context = await self.record_completion(completed, actor_id)
        logger.info(f"Task {task_id} completed by {actor_id}")
        return TaskCompletion(
            task_id=task_id,
            instance_id=task.instance_id,
            context_version=context.version,
        )

    async def completion_recorded(self, task: Task) -> bool:
        return await self.audit.has_task_event(
            task.instance_id, EventType.TASK_COMPLETED, task.id
        )

    async def _resumable(self, task: Task, output: Any) -> bool:
        if not isinstance(output, Mapping) or dict(output) != task.output_data:
            return False
        return not await self.completion_recorded(task)

    async def record_completion(
        self, task: Task, actor_id: Optional[str] = None, *, advance: bool = True
    ) -> ContextVersion:
        """Merge a COMPLETED task's output and log it; safe to repeat.

        ``TASK_COMPLETED`` is written last, so its presence means every
        earlier step took effect.
        """
        context = await self.context.merge_task_output(
            task.instance_id,
            task.node_id,
            task.output_data or {},
            task_id=task.id,
            actor_id=actor_id,
        )
        if advance:
            await self._enqueue_advance(task.instance_id)
        if not await self.completion_recorded(task):
            await self.audit.record(
                task.instance_id,
                EventType.TASK_COMPLETED,
                node_id=task.node_id,
                task_id=task.id,
                actor_id=actor_id,
                metadata={"context_version": context.version},
            )
        return context

    async def fail_task(
        self, task_id: str, error: str, actor_id: Optional[str] = None
    ) -> Task:
        task = await self.get_task(task_id)
        failed = await self.repository.transition_task(
            task_id,
            OPEN_TASK_STATUSES,
            TaskStatus.FAILED,
            {"error": error},
        )
        if failed is None:
            raise await self._lost_race(task_id)
        await self.audit.record(
            task.instance_id,
            EventType.TASK_FAILED,
            node_id=task.node_id,
            task_id=task_id,
            actor_id=actor_id,
            metadata={"error": error},
        )
        logger.warning(f"Task {task_id} failed: {error}")
        await self._enqueue_advance(task.instance_id)
        return failed

    async def skip_task(
        self,
        task_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Task:
        task = await self.get_task(task_id)
        skipped = await self.repository.transition_task(
            task_id,
            OPEN_TASK_STATUSES,
            TaskStatus.SKIPPED,
        )
        if skipped is None:
            raise await self._lost_race(task_id)
        await self.audit.record(
            task.instance_id,
            EventType.TASK_SKIPPED,
            node_id=task.node_id,
            task_id=task_id,
            actor_id=actor_id,
            metadata={"reason": reason} if reason else {},
        )
        logger.info(f"Task {task_id} skipped by {actor_id}")
        await self._enqueue_advance(task.instance_id)
        return skipped

    async def _enqueue_advance(self, instance_id: str) -> None:
        await self.queue.enqueue(
            QueueItemKind.ADVANCE_INSTANCE, {"instance_id": instance_id}, dedupe=True
        )
