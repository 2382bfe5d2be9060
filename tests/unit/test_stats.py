"""Read-only statistics over instances and task history."""

from datetime import timedelta

import pytest

from trellis.persistence import InMemoryWorkflowRepository
from trellis.persistence.models import (
    EventType,
    HistoryEvent,
    Instance,
    InstanceStatus,
    Task,
    TaskStatus,
    utcnow,
)
from trellis.stats import instance_stats, node_stats, percentile, summarize

T0 = utcnow().replace(microsecond=0)


def _at(seconds):
    return T0 + timedelta(seconds=seconds)


async def _instance(repo, definition, status, ended_after=None):
    instance = Instance(definition_id=definition.id, status=status, created_at=T0)
    if ended_after is not None:
        instance.completed_at = _at(ended_after)
    await repo.create_instance(instance)
    return instance


async def _task_events(repo, instance, node_id, created, ended=None, outcome=None):
    task_id = f"{instance.id}-{node_id}"
    await repo.append_event(
        HistoryEvent(
            instance_id=instance.id,
            event_type=EventType.TASK_CREATED,
            node_id=node_id,
            task_id=task_id,
            metadata={"function_code": f"fn.{node_id}"},
            event_timestamp=_at(created),
        )
    )
    if ended is not None:
        await repo.append_event(
            HistoryEvent(
                instance_id=instance.id,
                event_type=outcome or EventType.TASK_COMPLETED,
                node_id=node_id,
                task_id=task_id,
                event_timestamp=_at(ended),
            )
        )


async def _repository(definition):
    repository = InMemoryWorkflowRepository()
    await repository.save_definition(definition)
    return repository


def test_percentile_uses_nearest_rank():
    values = [5.0, 1.0, 3.0, 2.0, 4.0]
    assert percentile(values, 50) == 3.0
    assert percentile(values, 95) == 5.0
    assert percentile(values, 0) == 1.0
    assert percentile([], 50) == 0.0

    summary = summarize(values)
    assert (summary.count, summary.average, summary.minimum, summary.maximum) == (5, 3.0, 1.0, 5.0)
    assert summarize([]).count == 0


@pytest.mark.asyncio
async def test_instance_counts_and_cycle_time(linear_definition):
    repo = await _repository(linear_definition)
    await _instance(repo, linear_definition, InstanceStatus.COMPLETED, ended_after=60)
    await _instance(repo, linear_definition, InstanceStatus.COMPLETED, ended_after=180)
    await _instance(repo, linear_definition, InstanceStatus.FAILED, ended_after=10)
    running = await _instance(repo, linear_definition, InstanceStatus.RUNNING)
    await repo.create_task(
        Task(instance_id=running.id, node_id="A", function_code="A", status=TaskStatus.PENDING)
    )

    stats = await instance_stats(repo)
    assert stats.total == 4
    assert stats.by_status == {"RUNNING": 1, "COMPLETED": 2, "FAILED": 1, "SUSPENDED": 0}
    assert stats.completion_rate == 75.0
    assert stats.pending_tasks == 1
    # failed instances are left out of the cycle time
    assert stats.cycle_time.count == 2
    assert stats.cycle_time.average == 120.0
    assert stats.cycle_time.maximum == 180.0

    other = await instance_stats(repo, definition_key="unknown")
    assert other.total == 0
    assert other.completion_rate == 0.0


@pytest.mark.asyncio
async def test_node_durations_slowest_first(linear_definition):
    repo = await _repository(linear_definition)
    first = await _instance(repo, linear_definition, InstanceStatus.COMPLETED, ended_after=400)
    await _task_events(repo, first, "A", created=0, ended=10)
    await _task_events(repo, first, "B", created=10, ended=310)

    second = await _instance(repo, linear_definition, InstanceStatus.RUNNING)
    await _task_events(repo, second, "A", created=0, ended=30, outcome=EventType.TASK_FAILED)
    await _task_events(repo, second, "B", created=30)

    nodes = await node_stats(repo, now=_at(130))
    assert [n.node_id for n in nodes] == ["B", "A"]

    b, a = nodes
    assert b.function_code == "fn.B"
    assert (b.completed, b.failed, b.waiting) == (1, 0, 1)
    assert b.durations.average == 300.0
    assert b.longest_wait == 100.0

    assert (a.completed, a.failed, a.waiting) == (1, 1, 0)
    assert a.durations.count == 2
    assert a.durations.average == 20.0
    assert a.failure_rate == 50.0


@pytest.mark.asyncio
async def test_open_tasks_of_ended_instances_are_not_waiting(linear_definition):
    repo = await _repository(linear_definition)
    failed = await _instance(repo, linear_definition, InstanceStatus.FAILED, ended_after=50)
    await _task_events(repo, failed, "A", created=0)

    (a,) = await node_stats(repo, now=_at(1000))
    assert a.waiting == 0
    assert a.longest_wait == 0.0
    assert a.durations.count == 0


@pytest.mark.asyncio
async def test_engine_reports_completed_run(engine, drain, linear_definition):
    await engine.publish_definition(linear_definition)
    instance = await engine.start_instance("linear")
    (task,) = await engine.list_tasks(instance.id)
    await engine.complete_task(task.id, {"ok": True})
    await drain(engine.worker())

    summary = await engine.instance_stats("linear")
    assert summary.by_status["COMPLETED"] == 1
    assert summary.cycle_time.count == 1
    assert summary.completion_rate == 100.0

    (a,) = await engine.node_stats("linear")
    assert (a.node_id, a.completed, a.waiting) == ("A", 1, 0)
    assert a.durations.average >= 0.0
