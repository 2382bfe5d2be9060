"""Engine facade used by the CLI and by embedding applications."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from .agents import AgentRegistry, AgentTaskWorker
from .audit import AuditTrail
from .config import TrellisConfig, WorkerConfig, load_config
from .context import ContextStore
from .contracts import WorkflowDefinition
from .engine import InstanceState, InstanceStateMachine
from .errors import DefinitionInvalid, DefinitionNotFound, InstanceNotFound
from .graph import ValidationResult, validate
from .persistence import get_repository
from .persistence.models import (
    ContextVersion,
    EventType,
    HistoryEvent,
    Instance,
    InstanceStatus,
    QueueItem,
    QueueItemKind,
    QueueItemStatus,
    Task,
    TaskStatus,
)
from .persistence.repository import WorkflowRepository
from .queues import get_work_queue
from .queues.base import BaseWorkQueue
from .registry import FunctionRegistry
from .services import ServiceRegistry, ServiceTaskWorker
from .stats import InstanceStats, NodeStats, instance_stats, node_stats
from .tasks import TaskManager
from .worker import AdvanceHandler, ExecutionWorker, prune_queue

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Wires the engine components around one repository and one queue."""

    def __init__(
        self,
        repository: WorkflowRepository,
        queue: BaseWorkQueue,
        *,
        registry: Optional[FunctionRegistry] = None,
        services: Optional[ServiceRegistry] = None,
        agents: Optional[AgentRegistry] = None,
        worker_config: Optional[WorkerConfig] = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.worker_config = worker_config or WorkerConfig()
        self.services = services if services is not None else ServiceRegistry()
        self.agents = agents if agents is not None else AgentRegistry()

        self.audit = AuditTrail(repository)
        self.context = ContextStore(repository, self.audit)
        self.tasks = TaskManager(repository, queue, self.audit, self.context, registry)
        self.state_machine = InstanceStateMachine(
            repository,
            queue,
            self.audit,
            self.context,
            self.tasks,
            max_gateway_depth=self.worker_config.max_gateway_depth,
        )

    @property
    def registry(self) -> FunctionRegistry:
        return self.tasks.registry

    # ------------------------------------------------------------------
    # Definitions
    def validate_definition(self, definition: WorkflowDefinition) -> ValidationResult:
        return validate(definition)

    async def publish_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store ``definition`` as the next version of its key."""
        result = validate(definition)
        if not result.valid:
            raise DefinitionInvalid(result.errors)
        for warning in result.warnings:
            logger.warning(f"Definition {definition.key}: {warning}")
        version = await self.repository.latest_definition_version(definition.key) + 1
        published = definition.published(version)
        await self.repository.save_definition(published)
        logger.info(f"Published {published.key} v{version} as {published.id}")
        return published

    async def get_definition(self, reference: str) -> WorkflowDefinition:
        """Look up a definition by id, or the latest version of a key."""
        definition = await self.repository.get_definition(reference)
        if definition is not None:
            return definition
        versions = [
            d for d in await self.repository.list_definitions() if d.key == reference
        ]
        if not versions:
            raise DefinitionNotFound(reference)
        return max(versions, key=lambda d: d.version)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return await self.repository.list_definitions()

    # ------------------------------------------------------------------
    # Instances
    async def start_instance(
        self,
        definition: str,
        initial_context: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> Instance:
        published = await self.get_definition(definition)
        return await self.state_machine.create(published, initial_context, actor_id)

    async def get_instance(self, instance_id: str) -> Instance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[Instance]:
        return await self.repository.list_instances(status)

    async def advance_trigger(self, instance_id: str) -> QueueItem:
        """Request an advancement; repeated triggers share one pending item."""
        await self.get_instance(instance_id)
        return await self.queue.enqueue(
            QueueItemKind.ADVANCE_INSTANCE, {"instance_id": instance_id}, dedupe=True
        )

    async def instance_state(self, instance_id: str) -> InstanceState:
        return await self.state_machine.get_state(instance_id)

    async def suspend(
        self, instance_id: str, actor_id: Optional[str] = None, reason: Optional[str] = None
    ) -> Instance:
        return await self.state_machine.suspend(instance_id, actor_id, reason)

    async def resume(self, instance_id: str, actor_id: Optional[str] = None) -> Instance:
        return await self.state_machine.resume(instance_id, actor_id)

    async def fail_instance(
        self, instance_id: str, reason: str, actor_id: Optional[str] = None
    ) -> Instance:
        return await self.state_machine.fail(instance_id, reason, actor_id=actor_id)

    async def history(
        self, instance_id: str, event_types: Optional[Iterable[EventType]] = None
    ) -> list[HistoryEvent]:
        return await self.audit.history(instance_id, event_types)

    async def context_versions(self, instance_id: str) -> list[ContextVersion]:
        return await self.context.versions(instance_id)

    async def instance_stats(self, definition_key: Optional[str] = None) -> InstanceStats:
        return await instance_stats(self.repository, definition_key)

    async def node_stats(
        self, definition_key: Optional[str] = None, now: Optional[datetime] = None
    ) -> list[NodeStats]:
        """Per-node task durations, slowest first."""
        return await node_stats(self.repository, definition_key, now)

    # ------------------------------------------------------------------
    # Tasks
    async def get_task(self, task_id: str) -> Task:
        return await self.tasks.get_task(task_id)

    async def list_tasks(
        self,
        instance_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> list[Task]:
        return await self.tasks.list_tasks(instance_id, status, assigned_to)

    async def start_task(self, task_id: str, actor_id: Optional[str] = None) -> Task:
        return await self.tasks.start_task(task_id, actor_id)

    async def complete_task(
        self, task_id: str, output: Any, actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        completion = await self.tasks.complete_task(task_id, output, actor_id)
        return completion.model_dump()

    async def fail_task(
        self, task_id: str, error: str, actor_id: Optional[str] = None
    ) -> Task:
        return await self.tasks.fail_task(task_id, error, actor_id)

    async def skip_task(
        self, task_id: str, actor_id: Optional[str] = None, reason: Optional[str] = None
    ) -> Task:
        return await self.tasks.skip_task(task_id, actor_id, reason)

    # ------------------------------------------------------------------
    # Queue
    async def list_queue_items(
        self,
        status: Optional[QueueItemStatus] = None,
        kind: Optional[QueueItemKind] = None,
    ) -> list[QueueItem]:
        return await self.queue.list_items(status, kind)

    async def prune_queue(
        self, retention: Optional[timedelta] = None, now: Optional[datetime] = None
    ) -> int:
        if retention is None:
            retention = timedelta(hours=self.worker_config.retention_hours)
        return await prune_queue(self.queue, self.audit, retention, now)

    def worker(self, worker_id: Optional[str] = None, **overrides: Any) -> ExecutionWorker:
        """Create a queue worker using the configured retry policy."""
        settings = self.worker_config.model_copy(update=overrides)
        handlers = {
            QueueItemKind.ADVANCE_INSTANCE: AdvanceHandler(self.state_machine),
            QueueItemKind.INVOKE_SERVICE_TASK: ServiceTaskWorker(
                self.tasks, self.audit, self.services, settings.service_timeout
            ),
            QueueItemKind.INVOKE_AGENT_TASK: AgentTaskWorker(
                self.tasks, self.audit, self.agents, settings.service_timeout
            ),
        }
        return ExecutionWorker(
            self.queue,
            self.audit,
            handlers,
            worker_id=worker_id,
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
            lease_ttl=settings.lease_ttl,
            poll_interval=settings.poll_interval,
        )

    async def close(self) -> None:
        await self.queue.disconnect()


def build_engine(
    config: Optional[TrellisConfig] = None,
    *,
    database_url: Optional[str] = None,
    queue_backend: Optional[str] = None,
    registry: Optional[FunctionRegistry] = None,
    services: Optional[ServiceRegistry] = None,
    agents: Optional[AgentRegistry] = None,
) -> WorkflowEngine:
    """Create a :class:`WorkflowEngine` from configuration."""
    repository = get_repository(database_url, config)
    config = config or load_config()
    if database_url:
        config = config.model_copy(update={"database_url": database_url})
    queue = get_work_queue(queue_backend, config)
    return WorkflowEngine(
        repository,
        queue,
        registry=registry,
        services=services,
        agents=agents,
        worker_config=config.worker,
    )
