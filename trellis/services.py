"""Service task invocation.

A service task is executed by calling a registered :class:`ServiceCall` with
the task input. The call either answers (the task completes), declines with
``ServiceBusinessError`` (the task fails at once) or cannot be reached, in
which case the queue item is retried with backoff and the task fails with
"service unreachable" once the attempts are used up.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import httpx

from .audit import AuditTrail
from .constants import DEFAULT_SERVICE_TIMEOUT, SERVICE_WORKER_ACTOR
from .errors import (
    OutputValidationFailed,
    ServiceBusinessError,
    ServiceNotRegistered,
    ServiceUnavailable,
    TaskAlreadyTerminal,
)
from .persistence.models import EventType, QueueItem, Task, TaskStatus
from .tasks import TaskManager, schema_errors

logger = logging.getLogger(__name__)

SERVICE_UNREACHABLE = "service unreachable"

ServiceFunction = Callable[[Dict[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class ServiceCall(Protocol):
    """External call backing a SERVICE_TASK function."""

    async def invoke(self, input_data: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        ...


class CallableService:
    """Adapt a plain sync or async function to :class:`ServiceCall`."""

    def __init__(self, func: ServiceFunction) -> None:
        self.func = func

    async def invoke(self, input_data: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(input_data)
        return await asyncio.to_thread(self.func, input_data)


class HttpServiceCall:
    """POST the task input as JSON and use the JSON response as output.

    2xx answers complete the task, 4xx answers are business failures and
    anything else (5xx, timeouts, connection errors) is a transport failure.
    """

    def __init__(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.method = method
        self.headers = headers or {}
        self._client = client

    async def invoke(self, input_data: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.request(
                self.method,
                self.url,
                json=input_data,
                headers=self.headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise ServiceUnavailable(f"{self.url} timed out", url=self.url) from e
        except httpx.TransportError as e:
            raise ServiceUnavailable(f"{self.url} unreachable: {e}", url=self.url) from e
        finally:
            if self._client is None:
                await client.aclose()

        if 400 <= response.status_code < 500:
            raise ServiceBusinessError(
                f"HTTP {response.status_code}: {response.text}",
                payload=_json_or_text(response),
            )
        if response.status_code >= 500:
            raise ServiceUnavailable(
                f"HTTP {response.status_code} from {self.url}",
                url=self.url,
                status_code=response.status_code,
            )
        body = _json_or_text(response)
        return body if isinstance(body, dict) else {"result": body}


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"text": response.text}


class ServiceRegistry:
    """Maps ``function_code`` to the :class:`ServiceCall` that executes it."""

    def __init__(self) -> None:
        self._services: Dict[str, ServiceCall] = {}

    def register(
        self, function_code: str, service: Union[ServiceCall, ServiceFunction]
    ) -> None:
        if not hasattr(service, "invoke"):
            service = CallableService(service)
        self._services[function_code] = service

    def service(self, function_code: str) -> Callable[[ServiceFunction], ServiceFunction]:
        """Decorator registering a function as the service for ``function_code``."""

        def decorator(func: ServiceFunction) -> ServiceFunction:
            self.register(function_code, func)
            return func

        return decorator

    def get(self, function_code: str) -> ServiceCall:
        try:
            return self._services[function_code]
        except KeyError:
            raise ServiceNotRegistered(function_code) from None

    def __contains__(self, function_code: object) -> bool:
        return function_code in self._services


class ServiceTaskWorker:
    """Handles ``INVOKE_SERVICE_TASK`` queue items."""

    def __init__(
        self,
        tasks: TaskManager,
        audit: AuditTrail,
        services: ServiceRegistry,
        default_timeout: float = DEFAULT_SERVICE_TIMEOUT,
    ) -> None:
        self.tasks = tasks
        self.audit = audit
        self.services = services
        self.default_timeout = default_timeout

    def _timeout_for(self, task: Task) -> float:
        descriptor = self.tasks.registry.get(task.function_code)
        if descriptor is not None and descriptor.timeout:
            return descriptor.timeout
        return self.default_timeout

    async def handle(self, item: QueueItem) -> None:
        task = await self.tasks.get_task(item.task_id)
        if not task.status.is_open:
            logger.info(f"Task {task.id} already {task.status.value}, skipping invocation")
            return

        try:
            service = self.services.get(task.function_code)
        except ServiceNotRegistered as e:
            await self._fail(task, e.message)
            return

        descriptor = self.tasks.registry.get(task.function_code)
        input_errors = schema_errors(
            task.input_data, descriptor.input_schema if descriptor else None
        )
        if input_errors:
            await self._fail(task, f"invalid input: {'; '.join(input_errors)}")
            return

        if task.status == TaskStatus.PENDING:
            task = await self.tasks.start_task(task.id, SERVICE_WORKER_ACTOR)

        timeout = self._timeout_for(task)
        try:
            output = await asyncio.wait_for(
                service.invoke(dict(task.input_data), timeout), timeout
            )
        except ServiceBusinessError as e:
            logger.info(f"Service {task.function_code} declined task {task.id}: {e}")
            await self._fail(task, e.message)
            return
        except asyncio.TimeoutError as e:
            await self._record_call_failure(task, item, f"timed out after {timeout}s")
            raise ServiceUnavailable(
                f"{task.function_code} timed out", task_id=task.id
            ) from e
        except Exception as e:
            await self._record_call_failure(task, item, str(e))
            raise

        try:
            await self.tasks.complete_task(task.id, output, SERVICE_WORKER_ACTOR)
        except OutputValidationFailed as e:
            await self._fail(task, e.message)
        except TaskAlreadyTerminal:
            logger.info(f"Task {task.id} was closed while its service was running")

    async def exhausted(self, item: QueueItem, error: Exception) -> None:
        task = await self.tasks.get_task(item.task_id)
        if task.status.is_open:
            await self._fail(task, SERVICE_UNREACHABLE)

    async def _record_call_failure(self, task: Task, item: QueueItem, error: str) -> None:
        logger.warning(
            f"Service {task.function_code} failed for task {task.id} "
            f"(attempt {item.attempt_count + 1}): {error}"
        )
        await self.audit.record(
            task.instance_id,
            EventType.SERVICE_CALL_FAILED,
            node_id=task.node_id,
            task_id=task.id,
            actor_id=SERVICE_WORKER_ACTOR,
            metadata={
                "function_code": task.function_code,
                "attempt": item.attempt_count + 1,
                "error": error,
                "queue_item_id": item.id,
            },
        )

    async def _fail(self, task: Task, error: str) -> None:
        try:
            await self.tasks.fail_task(task.id, error, SERVICE_WORKER_ACTOR)
        except TaskAlreadyTerminal:
            logger.info(f"Task {task.id} was already closed")
