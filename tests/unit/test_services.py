"""Service calls and the service task worker."""

import asyncio
import json

import httpx
import pytest

from trellis.contracts import TaskType
from trellis.errors import ServiceBusinessError, ServiceNotRegistered, ServiceUnavailable
from trellis.persistence.models import EventType, InstanceStatus, QueueItemStatus, TaskStatus
from trellis.registry import register_function
from trellis.services import CallableService, HttpServiceCall, ServiceRegistry


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_callable_service_accepts_sync_and_async_functions():
    def double(payload):
        return {"value": payload["value"] * 2}

    async def negate(payload):
        return {"value": -payload["value"]}

    assert await CallableService(double).invoke({"value": 4}, timeout=1) == {"value": 8}
    assert await CallableService(negate).invoke({"value": 4}, timeout=1) == {"value": -4}


@pytest.mark.asyncio
async def test_http_service_posts_input_as_json():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"charged": True})

    service = HttpServiceCall(
        "https://payments.test/charge",
        headers={"Authorization": "Bearer token"},
        client=_client(handler),
    )
    assert await service.invoke({"amount": 20}, timeout=5) == {"charged": True}
    assert seen == {"method": "POST", "body": {"amount": 20}, "auth": "Bearer token"}


@pytest.mark.asyncio
async def test_http_service_wraps_non_object_answers():
    service = HttpServiceCall(
        "https://svc.test", client=_client(lambda r: httpx.Response(200, json=[1, 2]))
    )
    assert await service.invoke({}, timeout=5) == {"result": [1, 2]}


@pytest.mark.asyncio
async def test_http_client_errors_are_business_failures():
    service = HttpServiceCall(
        "https://svc.test",
        client=_client(lambda r: httpx.Response(422, json={"reason": "limit"})),
    )
    with pytest.raises(ServiceBusinessError) as exc:
        await service.invoke({}, timeout=5)
    assert exc.value.payload == {"reason": "limit"}


@pytest.mark.asyncio
async def test_http_transport_failures_are_retryable():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request):
        raise httpx.ReadTimeout("too slow", request=request)

    for handler in (refuse, slow, lambda r: httpx.Response(503, text="busy")):
        service = HttpServiceCall("https://svc.test", client=_client(handler))
        with pytest.raises(ServiceUnavailable) as exc:
            await service.invoke({}, timeout=5)
        assert exc.value.retryable


def test_service_registry():
    registry = ServiceRegistry()

    @registry.service("math.double")
    def double(payload):
        return {"value": payload["value"] * 2}

    assert "math.double" in registry
    assert isinstance(registry.get("math.double"), CallableService)
    http = HttpServiceCall("https://svc.test")
    registry.register("remote", http)
    assert registry.get("remote") is http
    with pytest.raises(ServiceNotRegistered):
        registry.get("missing")


async def _start_charge(engine, service_definition, context=None, **descriptor):
    register_function(
        "payments.charge", TaskType.SERVICE_TASK, registry=engine.registry, **descriptor
    )
    await engine.publish_definition(service_definition)
    return await engine.start_instance("service", context or {"amount": 20})


@pytest.mark.asyncio
async def test_service_output_completes_task(engine, drain, service_definition):
    engine.services.register(
        "payments.charge",
        HttpServiceCall(
            "https://payments.test/charge",
            client=_client(lambda r: httpx.Response(200, json={"receipt": "R-1"})),
        ),
    )
    instance = await _start_charge(engine, service_definition)
    await drain(engine.worker())

    assert (await engine.get_instance(instance.id)).status == InstanceStatus.COMPLETED
    context = await engine.context.current(instance.id)
    assert context.context_data == {"amount": 20, "charge": {"receipt": "R-1"}}
    task = (await engine.list_tasks(instance.id))[0]
    assert task.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_unregistered_service_fails_task(engine, drain, service_definition):
    instance = await _start_charge(engine, service_definition)
    await drain(engine.worker())

    charge = [t for t in await engine.list_tasks(instance.id) if t.node_id == "charge"][0]
    assert charge.status == TaskStatus.FAILED
    assert "No implementation registered" in charge.error
    assert [t.node_id for t in await engine.list_tasks(instance.id) if t.status.is_open] == ["refund"]


@pytest.mark.asyncio
async def test_invalid_input_fails_task_without_call(engine, drain, service_definition):
    calls = []
    engine.services.register("payments.charge", lambda payload: calls.append(payload) or {})
    instance = await _start_charge(
        engine,
        service_definition,
        {"amount": "twenty"},
        input_schema={
            "type": "object",
            "properties": {"amount": {"type": "number"}},
            "required": ["amount"],
        },
    )
    await drain(engine.worker())

    charge = [t for t in await engine.list_tasks(instance.id) if t.node_id == "charge"][0]
    assert charge.status == TaskStatus.FAILED
    assert charge.error.startswith("invalid input:")
    assert calls == []


@pytest.mark.asyncio
async def test_invalid_output_fails_task(engine, drain, service_definition):
    engine.services.register("payments.charge", lambda payload: {"receipt": 42})
    instance = await _start_charge(
        engine,
        service_definition,
        output_schema={
            "type": "object",
            "properties": {"receipt": {"type": "string"}},
        },
    )
    await drain(engine.worker())

    charge = [t for t in await engine.list_tasks(instance.id) if t.node_id == "charge"][0]
    assert charge.status == TaskStatus.FAILED
    assert "failed validation" in charge.error


@pytest.mark.asyncio
async def test_slow_service_times_out_and_is_retried(engine, service_definition):
    async def hang(payload):
        await asyncio.sleep(5)
        return {}

    engine.services.register("payments.charge", hang)
    instance = await _start_charge(engine, service_definition, timeout=0.05)
    worker = engine.worker("w1")
    assert await worker.run_once()

    (item,) = await engine.list_queue_items()
    assert item.status == QueueItemStatus.PENDING
    assert item.attempt_count == 1
    (event,) = await engine.history(instance.id, [EventType.SERVICE_CALL_FAILED])
    assert event.metadata["error"] == "timed out after 0.05s"
