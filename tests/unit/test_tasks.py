"""Task lifecycle and context versioning."""

import asyncio

import pytest

from trellis.audit import AuditTrail
from trellis.context import ContextStore
from trellis.contracts import NodeType, TaskType, WorkflowDefinition
from trellis.errors import (
    ContextVersionConflict,
    DuplicateOpenTask,
    InstanceTerminal,
    OutputValidationFailed,
    TaskAlreadyTerminal,
    TaskNotAssignedToActor,
)
from trellis.persistence import InMemoryWorkflowRepository
from trellis.persistence.models import (
    EventType,
    QueueItemKind,
    QueueItemStatus,
    TaskStatus,
)
from trellis.registry import register_function


async def _start(engine, definition, context=None):
    await engine.publish_definition(definition)
    instance = await engine.start_instance(definition.key, context or {})
    tasks = await engine.list_tasks(instance.id)
    return instance, tasks


@pytest.mark.asyncio
async def test_complete_task_merges_output_and_queues_advance(engine, linear_definition):
    instance, tasks = await _start(engine, linear_definition, {"amount": 10})
    assert [t.node_id for t in tasks] == ["A"]
    task = tasks[0]
    assert task.task_type == TaskType.USER_TASK
    assert task.input_data == {"amount": 10}

    result = await engine.complete_task(task.id, {"approved": True}, "alice")
    assert result == {"task_id": task.id, "instance_id": instance.id, "context_version": 2}

    context = await engine.context.current(instance.id)
    assert context.context_data == {"amount": 10, "A": {"approved": True}}
    assert context.task_id == task.id
    assert [v.version for v in await engine.context_versions(instance.id)] == [1, 2]

    stored = await engine.get_task(task.id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.output_data == {"approved": True}
    assert stored.completed_at is not None

    advances = await engine.list_queue_items(QueueItemStatus.PENDING, QueueItemKind.ADVANCE_INSTANCE)
    assert [i.instance_id for i in advances] == [instance.id]

    events = [e.event_type for e in await engine.history(instance.id)]
    assert EventType.CONTEXT_UPDATED in events
    assert events[-1] == EventType.TASK_COMPLETED


@pytest.mark.asyncio
async def test_second_completion_is_rejected(engine, linear_definition):
    instance, tasks = await _start(engine, linear_definition)
    task = tasks[0]
    await engine.complete_task(task.id, {"n": 1})

    with pytest.raises(TaskAlreadyTerminal):
        await engine.complete_task(task.id, {"n": 2})
    context = await engine.context.current(instance.id)
    assert context.context_data == {"A": {"n": 1}}
    assert context.version == 2


@pytest.mark.asyncio
async def test_racing_completions_have_one_winner(engine, linear_definition):
    instance, tasks = await _start(engine, linear_definition)
    task = tasks[0]

    results = await asyncio.gather(
        engine.complete_task(task.id, {"by": "one"}),
        engine.complete_task(task.id, {"by": "two"}),
        return_exceptions=True,
    )
    winners = [r for r in results if isinstance(r, dict)]
    losers = [r for r in results if isinstance(r, TaskAlreadyTerminal)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert (await engine.context.current(instance.id)).version == 2


@pytest.mark.asyncio
async def test_assigned_task_checks_actor(engine, node, edge):
    definition = WorkflowDefinition(
        key="review",
        nodes=[
            node("start", NodeType.START),
            node("review", NodeType.TASK, assignee="$.owner"),
            node("end", NodeType.END),
        ],
        transitions=[edge("start", "review"), edge("review", "end")],
    )
    _, tasks = await _start(engine, definition, {"owner": "alice"})
    task = tasks[0]
    assert task.assigned_to == "alice"
    assert [t.id for t in await engine.list_tasks(assigned_to="alice")] == [task.id]

    with pytest.raises(TaskNotAssignedToActor):
        await engine.start_task(task.id, "bob")
    with pytest.raises(TaskNotAssignedToActor):
        await engine.complete_task(task.id, {"ok": True}, "bob")

    started = await engine.start_task(task.id, "alice")
    assert started.status == TaskStatus.IN_PROGRESS
    again = await engine.start_task(task.id, "alice")
    assert again.status == TaskStatus.IN_PROGRESS

    await engine.complete_task(task.id, {"ok": True}, "alice")
    with pytest.raises(TaskAlreadyTerminal):
        await engine.start_task(task.id, "alice")


@pytest.mark.asyncio
async def test_output_is_validated_against_schema(engine, linear_definition):
    register_function(
        "A",
        output_schema={
            "type": "object",
            "properties": {"approved": {"type": "boolean"}},
            "required": ["approved"],
        },
        registry=engine.registry,
    )
    instance, tasks = await _start(engine, linear_definition)
    task = tasks[0]

    with pytest.raises(OutputValidationFailed) as exc:
        await engine.complete_task(task.id, {"approved": "yes"})
    assert "'yes' is not of type 'boolean'" in exc.value.errors
    with pytest.raises(OutputValidationFailed):
        await engine.complete_task(task.id, ["not", "an", "object"])

    assert (await engine.get_task(task.id)).status == TaskStatus.PENDING
    assert (await engine.context.current(instance.id)).version == 1

    await engine.complete_task(task.id, {"approved": False})
    assert (await engine.get_task(task.id)).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_completion_on_terminal_instance(engine, linear_definition):
    instance, tasks = await _start(engine, linear_definition)
    await engine.fail_instance(instance.id, "cancelled by operator", "ops")

    with pytest.raises(InstanceTerminal):
        await engine.complete_task(tasks[0].id, {"late": True})
    assert (await engine.context.current(instance.id)).version == 1


@pytest.mark.asyncio
async def test_fail_and_skip_close_the_task(engine, parallel_definition):
    _, tasks = await _start(engine, parallel_definition)
    by_node = {t.node_id: t for t in tasks}

    failed = await engine.fail_task(by_node["A"].id, "rejected upstream", "alice")
    assert failed.status == TaskStatus.FAILED
    assert failed.error == "rejected upstream"

    skipped = await engine.skip_task(by_node["B"].id, "bob", "not needed")
    assert skipped.status == TaskStatus.SKIPPED

    with pytest.raises(TaskAlreadyTerminal):
        await engine.skip_task(by_node["A"].id)
    with pytest.raises(TaskAlreadyTerminal):
        await engine.fail_task(by_node["B"].id, "again")

    # both closures share the single untried advance item
    advances = await engine.list_queue_items(kind=QueueItemKind.ADVANCE_INSTANCE)
    assert len(advances) == 1


@pytest.mark.asyncio
async def test_create_task_rejects_second_open_task(engine, linear_definition):
    instance, tasks = await _start(engine, linear_definition)
    with pytest.raises(DuplicateOpenTask):
        await engine.tasks.create_task(instance.id, "A", "A", TaskType.USER_TASK)


@pytest.mark.asyncio
async def test_service_task_is_queued_for_invocation(engine, service_definition):
    register_function("payments.charge", TaskType.SERVICE_TASK, registry=engine.registry)
    _, tasks = await _start(engine, service_definition)
    assert tasks[0].task_type == TaskType.SERVICE_TASK

    invocations = await engine.list_queue_items(kind=QueueItemKind.INVOKE_SERVICE_TASK)
    assert [i.task_id for i in invocations] == [tasks[0].id]


class _ContendedRepository(InMemoryWorkflowRepository):
    """Loses the first ``conflicts`` context writes to a concurrent writer."""

    def __init__(self, conflicts):
        super().__init__()
        self.conflicts = conflicts

    async def insert_context_version(self, context):
        if context.version > 1 and self.conflicts:
            self.conflicts -= 1
            raise ContextVersionConflict(context.instance_id, context.version)
        await super().insert_context_version(context)


@pytest.mark.asyncio
async def test_context_update_retries_on_conflict():
    repo = _ContendedRepository(conflicts=2)
    store = ContextStore(repo, AuditTrail(repo), max_write_attempts=3)
    await store.initialize("i-1", {"a": 1})

    updated = await store.update("i-1", lambda data: {**data, "b": 2})
    assert updated.version == 2
    assert updated.context_data == {"a": 1, "b": 2}


@pytest.mark.asyncio
async def test_context_update_gives_up_after_max_attempts():
    repo = _ContendedRepository(conflicts=5)
    store = ContextStore(repo, AuditTrail(repo), max_write_attempts=3)
    await store.initialize("i-1")

    with pytest.raises(ContextVersionConflict):
        await store.update("i-1", lambda data: {**data, "b": 2})
    assert repo.conflicts == 2
    assert (await store.current("i-1")).version == 1
