"""Read-only workflow statistics computed from instances and history events.

Durations are in seconds. Task time runs from ``TASK_CREATED`` to the task's
``TASK_COMPLETED`` or ``TASK_FAILED`` event; tasks without either are still
waiting and are reported by how long they have waited so far.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .persistence.models import EventType, InstanceStatus, TaskStatus, utcnow
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

_TASK_EVENTS = [EventType.TASK_CREATED, EventType.TASK_COMPLETED, EventType.TASK_FAILED]


class DurationSummary(BaseModel):
    count: int = 0
    average: float = 0.0
    median: float = 0.0
    p95: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0


class InstanceStats(BaseModel):
    total: int
    by_status: Dict[str, int]
    completion_rate: float
    pending_tasks: int
    cycle_time: DurationSummary


class NodeStats(BaseModel):
    definition_key: str
    node_id: str
    function_code: Optional[str] = None
    completed: int = 0
    failed: int = 0
    waiting: int = 0
    durations: DurationSummary = Field(default_factory=DurationSummary)
    longest_wait: float = 0.0

    @property
    def failure_rate(self) -> float:
        finished = self.completed + self.failed
        return round(self.failed / finished * 100, 2) if finished else 0.0


def percentile(values: List[float], pct: float) -> float:
    """Nearest-rank percentile; 0 for an empty list."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(pct / 100 * len(ordered)) - 1
    return ordered[max(0, index)]


def summarize(durations: List[float]) -> DurationSummary:
    if not durations:
        return DurationSummary()
    return DurationSummary(
        count=len(durations),
        average=sum(durations) / len(durations),
        median=percentile(durations, 50),
        p95=percentile(durations, 95),
        minimum=min(durations),
        maximum=max(durations),
    )


async def _definition_keys(repository: WorkflowRepository) -> Dict[str, str]:
    return {d.id: d.key for d in await repository.list_definitions()}


async def instance_stats(
    repository: WorkflowRepository, definition_key: Optional[str] = None
) -> InstanceStats:
    """Count instances by status and summarize the cycle time of completed ones."""
    keys = await _definition_keys(repository)
    instances = [
        i
        for i in await repository.list_instances()
        if definition_key is None or keys.get(i.definition_id) == definition_key
    ]
    counts = Counter(i.status for i in instances)
    settled = counts[InstanceStatus.COMPLETED] + counts[InstanceStatus.FAILED]
    cycle_times = [
        (i.completed_at - i.created_at).total_seconds()
        for i in instances
        if i.status == InstanceStatus.COMPLETED and i.completed_at is not None
    ]
    instance_ids = {i.id for i in instances}
    pending = [
        t
        for t in await repository.list_tasks(status=TaskStatus.PENDING)
        if t.instance_id in instance_ids
    ]
    return InstanceStats(
        total=len(instances),
        by_status={status.value: counts[status] for status in InstanceStatus},
        completion_rate=round(settled / len(instances) * 100, 2) if instances else 0.0,
        pending_tasks=len(pending),
        cycle_time=summarize(cycle_times),
    )


async def node_stats(
    repository: WorkflowRepository,
    definition_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[NodeStats]:
    """Per-node task durations, slowest average first."""
    now = now or utcnow()
    keys = await _definition_keys(repository)
    durations: Dict[tuple, List[float]] = {}
    waits: Dict[tuple, List[float]] = {}
    nodes: Dict[tuple, NodeStats] = {}

    for instance in await repository.list_instances():
        key = keys.get(instance.definition_id, instance.definition_id)
        if definition_key is not None and key != definition_key:
            continue
        created: Dict[str, tuple] = {}
        for event in await repository.list_events(instance.id, _TASK_EVENTS):
            if event.task_id is None or event.node_id is None:
                continue
            group = (key, event.node_id)
            stats = nodes.setdefault(
                group, NodeStats(definition_key=key, node_id=event.node_id)
            )
            if event.event_type == EventType.TASK_CREATED:
                stats.function_code = event.metadata.get("function_code")
                created[event.task_id] = (group, event.event_timestamp)
                continue
            started = created.pop(event.task_id, None)
            if started is None:
                continue
            if event.event_type == EventType.TASK_COMPLETED:
                stats.completed += 1
            else:
                stats.failed += 1
            elapsed = (event.event_timestamp - started[1]).total_seconds()
            durations.setdefault(group, []).append(elapsed)
        if instance.status.is_terminal:
            continue
        for group, timestamp in created.values():
            waits.setdefault(group, []).append((now - timestamp).total_seconds())

    for group, stats in nodes.items():
        stats.durations = summarize(durations.get(group, []))
        waiting = waits.get(group, [])
        stats.waiting = len(waiting)
        stats.longest_wait = max(waiting, default=0.0)
    logger.debug(f"Computed statistics for {len(nodes)} node(s)")
    return sorted(
        nodes.values(),
        key=lambda s: (-s.durations.average, -s.longest_wait, s.definition_key, s.node_id),
    )
