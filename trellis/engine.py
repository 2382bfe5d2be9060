"""Instance state machine.

An instance occupies a multiset of node ids, its *frontier*. Advancing walks
every frontier node that is ready to depart, resolves its outgoing
transitions and places the arrivals:

* TASK nodes get a task and wait in the frontier until the task is closed,
* gateways are evaluated on arrival, except parallel joins which wait in the
  frontier until every incoming branch arrived,
* END nodes retire the branch.

The instance completes when the frontier is empty and at least one branch
reached an END node.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .audit import AuditTrail
from .conditions import resolve_path
from .constants import DEFAULT_MAX_GATEWAY_DEPTH, SYSTEM_ACTOR
from .context import ContextStore
from .contracts import Node, NodeType, WorkflowDefinition
from .errors import (
    ConditionSyntaxError,
    DefinitionNotFound,
    InstanceNotFound,
    InstanceTerminal,
    InvalidStateTransition,
    MaxDepthExceeded,
    NoMatchingTransition,
    StructuralError,
)
from .graph import resolve_transitions
from .persistence.models import (
    EventType,
    Instance,
    InstanceStatus,
    QueueItemKind,
    TaskStatus,
    utcnow,
)
from .persistence.repository import WorkflowRepository
from .queues.base import BaseWorkQueue
from .tasks import TaskManager

logger = logging.getLogger(__name__)

DEAD_END_REASON = "all branches reached dead ends"


class InstanceState(BaseModel):
    """Read-only snapshot returned by ``get_state``."""

    instance_id: str
    definition_id: str
    status: InstanceStatus
    frontier: List[str] = Field(default_factory=list)
    current_node_id: Optional[str] = None
    context_version: int
    open_task_ids: List[str] = Field(default_factory=list)
    ended_branches: int = 0
    failure_reason: Optional[str] = None


class InstanceStateMachine:
    def __init__(
        self,
        repository: WorkflowRepository,
        queue: BaseWorkQueue,
        audit: AuditTrail,
        context: ContextStore,
        tasks: TaskManager,
        max_gateway_depth: int = DEFAULT_MAX_GATEWAY_DEPTH,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.audit = audit
        self.context = context
        self.tasks = tasks
        self.max_gateway_depth = max_gateway_depth

    async def _load(self, instance_id: str) -> Instance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def _definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.repository.get_definition(definition_id)
        if definition is None:
            raise DefinitionNotFound(definition_id)
        return definition

    # ------------------------------------------------------------------
    async def create(
        self,
        definition: WorkflowDefinition,
        initial_context: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> Instance:
        """Start an instance at the START node and advance it once."""
        start = definition.start_node
        instance = Instance(definition_id=definition.id, frontier=[start.id])
        await self.repository.create_instance(instance)
        await self.context.initialize(instance.id, initial_context)
        await self.audit.record(
            instance.id,
            EventType.INSTANCE_STARTED,
            node_id=start.id,
            actor_id=actor_id,
            metadata={
                "definition_id": definition.id,
                "definition_key": definition.key,
                "definition_version": definition.version,
            },
        )
        logger.info(
            f"Started instance {instance.id} of {definition.key} v{definition.version}"
        )
        return await self.advance(instance.id)

    async def advance(self, instance_id: str) -> Instance:
        """Move every ready branch of the instance forward.

        Raises ``InstanceTerminal`` for COMPLETED/FAILED instances and does
        nothing for SUSPENDED ones.
        """
        instance = await self._load(instance_id)
        if instance.status.is_terminal:
            raise InstanceTerminal(instance_id, instance.status.value)
        if instance.status == InstanceStatus.SUSPENDED:
            logger.info(f"Instance {instance_id} is suspended, not advancing")
            return instance

        definition = await self._definition(instance.definition_id)
        await self._settle_completions(instance, definition)
        context = (await self.context.current(instance_id)).context_data
        try:
            return await self._advance(instance, definition, context)
        except (StructuralError, ConditionSyntaxError) as exc:
            logger.error(
                f"Structural failure advancing instance {instance_id} "
                f"(definition {definition.id}, frontier {instance.frontier}): {exc}"
            )
            return await self.fail(
                instance_id,
                exc.message,
                metadata={"error": exc.to_dict(), "frontier": instance.frontier},
            )

    async def _settle_completions(
        self, instance: Instance, definition: WorkflowDefinition
    ) -> None:
        """Finish completions interrupted after the task was marked COMPLETED."""
        for node_id in dict.fromkeys(instance.frontier):
            if definition.node(node_id).type != NodeType.TASK:
                continue
            if await self.repository.find_open_task(instance.id, node_id):
                continue
            task = await self.repository.latest_task(instance.id, node_id)
            if task is None or task.status != TaskStatus.COMPLETED:
                continue
            if not await self.tasks.completion_recorded(task):
                logger.warning(
                    f"Recording interrupted completion of task {task.id} "
                    f"for instance {instance.id}"
                )
                await self.tasks.record_completion(task, SYSTEM_ACTOR, advance=False)

    async def _advance(
        self,
        instance: Instance,
        definition: WorkflowDefinition,
        context: Dict[str, Any],
    ) -> Instance:
        frontier = list(instance.frontier)
        ended_before = instance.ended_branches

        # Arrivals can make other frontier nodes ready, e.g. the last branch
        # reaching a join, so repeat until a pass moves nothing.
        for _ in range(self.max_gateway_depth):
            departed = False
            for node_id in dict.fromkeys(frontier):
                if node_id not in frontier:
                    continue
                outcome = await self._departure(instance, definition, node_id, frontier)
                if outcome is None:
                    continue
                departed = True
                count, failed = outcome
                try:
                    targets = resolve_transitions(
                        definition, node_id, context, failed=failed
                    )
                except NoMatchingTransition:
                    if not failed:
                        raise
                    # No error branch applies: the task failure ends the instance.
                    task = await self.repository.latest_task(instance.id, node_id)
                    return await self.fail(
                        instance.id,
                        f"task {task.id} failed: {task.error}",
                        metadata={"node_id": node_id, "task_id": task.id},
                    )
                for _ in range(count):
                    frontier.remove(node_id)
                for target in targets:
                    await self._enter(
                        instance, definition, target, context, frontier, [node_id]
                    )
            if not departed:
                break
        else:
            raise MaxDepthExceeded(frontier, self.max_gateway_depth)

        fresh = await self._load(instance.id)
        if fresh.status != InstanceStatus.RUNNING:
            logger.info(
                f"Instance {instance.id} became {fresh.status.value} while advancing"
            )
            return fresh

        changed = frontier != instance.frontier or instance.ended_branches != ended_before
        instance.frontier = frontier
        if frontier:
            if changed:
                instance.updated_at = utcnow()
                await self.repository.update_instance(instance)
            return instance
        if instance.ended_branches == 0:
            await self.repository.update_instance(instance)
            return await self.fail(instance.id, DEAD_END_REASON)
        return await self._complete(instance)

    async def _departure(
        self,
        instance: Instance,
        definition: WorkflowDefinition,
        node_id: str,
        frontier: List[str],
    ) -> Optional[tuple[int, bool]]:
        """Return ``(occurrences, failed)`` when ``node_id`` departs, else ``None``."""
        node = definition.node(node_id)
        if node.type == NodeType.TASK:
            if await self.repository.find_open_task(instance.id, node_id):
                return None
            latest = await self.repository.latest_task(instance.id, node_id)
            return 1, latest.status == TaskStatus.FAILED
        if definition.is_join(node_id):
            needed = len(definition.incoming(node_id))
            if frontier.count(node_id) < needed:
                return None
            return needed, False
        return 1, False

    async def _enter(
        self,
        instance: Instance,
        definition: WorkflowDefinition,
        node_id: str,
        context: Dict[str, Any],
        frontier: List[str],
        path: List[str],
    ) -> None:
        if len(path) > self.max_gateway_depth:
            raise MaxDepthExceeded(path + [node_id], self.max_gateway_depth)
        node = definition.node(node_id)
        await self.audit.record(
            instance.id,
            EventType.NODE_ENTERED,
            node_id=node_id,
            actor_id=SYSTEM_ACTOR,
            metadata={"from_node_id": path[-1]},
        )

        if node.type == NodeType.TASK:
            orphan = None
            if node_id not in instance.frontier and node_id not in frontier:
                # Left by an earlier attempt that failed before saving the frontier.
                orphan = await self.repository.find_open_task(instance.id, node_id)
            if orphan is not None:
                await self.tasks.redispatch(orphan)
            else:
                await self._create_task(instance, node, context)
            frontier.append(node_id)
        elif node.type == NodeType.END:
            instance.ended_branches += 1
            logger.info(f"Instance {instance.id} branch reached end node {node_id}")
        elif node.type == NodeType.START or definition.is_join(node_id):
            frontier.append(node_id)
        else:
            targets = resolve_transitions(definition, node_id, context)
            await self.audit.record(
                instance.id,
                EventType.GATEWAY_EVALUATED,
                node_id=node_id,
                actor_id=SYSTEM_ACTOR,
                metadata={
                    "gateway_type": node.gateway_type.value,
                    "targets": targets,
                },
            )
            if not targets:
                logger.warning(
                    f"Gateway {node_id} of instance {instance.id} matched no transition"
                )
                await self.audit.record(
                    instance.id,
                    EventType.GATEWAY_DEAD_END,
                    node_id=node_id,
                    actor_id=SYSTEM_ACTOR,
                )
                return
            for target in targets:
                await self._enter(
                    instance, definition, target, context, frontier, path + [node_id]
                )

    async def _create_task(
        self, instance: Instance, node: Node, context: Dict[str, Any]
    ) -> None:
        if node.input_mapping:
            input_data = {
                key: resolve_path(path, context)
                for key, path in node.input_mapping.items()
            }
        else:
            input_data = dict(context)
        assignee = node.assignee
        if assignee and assignee.startswith("$."):
            value = resolve_path(assignee, context)
            assignee = str(value) if value is not None else None
        await self.tasks.create_task(
            instance.id,
            node.id,
            node.function_code,
            self.tasks.task_type_for(node),
            assignee,
            input_data,
        )

    async def _complete(self, instance: Instance) -> Instance:
        now = utcnow()
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = now
        instance.updated_at = now
        await self.repository.update_instance(instance)
        await self.audit.record(
            instance.id,
            EventType.INSTANCE_COMPLETED,
            actor_id=SYSTEM_ACTOR,
            metadata={"ended_branches": instance.ended_branches},
        )
        logger.info(f"Instance {instance.id} completed")
        return instance

    # ------------------------------------------------------------------
    async def fail(
        self,
        instance_id: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> Instance:
        """Move the instance to FAILED; a no-op for an already failed instance."""
        instance = await self._load(instance_id)
        if instance.status == InstanceStatus.FAILED:
            return instance
        if instance.status == InstanceStatus.COMPLETED:
            raise InstanceTerminal(instance_id, instance.status.value)

        now = utcnow()
        instance.status = InstanceStatus.FAILED
        instance.failure_reason = reason
        instance.completed_at = now
        instance.updated_at = now
        await self.repository.update_instance(instance)
        await self.audit.record(
            instance_id,
            EventType.INSTANCE_FAILED,
            actor_id=actor_id or SYSTEM_ACTOR,
            metadata={"reason": reason, **(metadata or {})},
        )
        logger.error(f"Instance {instance_id} failed: {reason}")
        return instance

    async def suspend(
        self, instance_id: str, actor_id: Optional[str] = None, reason: Optional[str] = None
    ) -> Instance:
        instance = await self._load(instance_id)
        if instance.status.is_terminal:
            raise InstanceTerminal(instance_id, instance.status.value)
        if instance.status != InstanceStatus.RUNNING:
            raise InvalidStateTransition(
                instance_id, instance.status.value, InstanceStatus.SUSPENDED.value
            )
        instance.status = InstanceStatus.SUSPENDED
        instance.updated_at = utcnow()
        await self.repository.update_instance(instance)
        await self.audit.record(
            instance_id,
            EventType.INSTANCE_SUSPENDED,
            actor_id=actor_id,
            metadata={"reason": reason} if reason else {},
        )
        logger.info(f"Instance {instance_id} suspended by {actor_id}")
        return instance

    async def resume(self, instance_id: str, actor_id: Optional[str] = None) -> Instance:
        instance = await self._load(instance_id)
        if instance.status.is_terminal:
            raise InstanceTerminal(instance_id, instance.status.value)
        if instance.status != InstanceStatus.SUSPENDED:
            raise InvalidStateTransition(
                instance_id, instance.status.value, InstanceStatus.RUNNING.value
            )
        instance.status = InstanceStatus.RUNNING
        instance.updated_at = utcnow()
        await self.repository.update_instance(instance)
        await self.audit.record(
            instance_id, EventType.INSTANCE_RESUMED, actor_id=actor_id
        )
        await self.queue.enqueue(
            QueueItemKind.ADVANCE_INSTANCE, {"instance_id": instance_id}, dedupe=True
        )
        logger.info(f"Instance {instance_id} resumed by {actor_id}")
        return instance

    async def get_state(self, instance_id: str) -> InstanceState:
        instance = await self._load(instance_id)
        context = await self.context.current(instance_id)
        open_tasks = [
            task.id
            for task in await self.repository.list_tasks(instance_id=instance_id)
            if task.status.is_open
        ]
        return InstanceState(
            instance_id=instance.id,
            definition_id=instance.definition_id,
            status=instance.status,
            frontier=list(instance.frontier),
            current_node_id=instance.current_node_id,
            context_version=context.version,
            open_task_ids=open_tasks,
            ended_branches=instance.ended_branches,
            failure_reason=instance.failure_reason,
        )
