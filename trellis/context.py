"""Versioned instance context.

Context is never updated in place. Every change inserts a full snapshot with
the next version number; the store rejects a duplicate version so concurrent
writers surface as ``ContextVersionConflict`` and retry on the fresh state.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from .audit import AuditTrail
from .constants import DEFAULT_CONTEXT_WRITE_ATTEMPTS
from .errors import ContextVersionConflict, InstanceNotFound
from .persistence.models import ContextVersion, EventType
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

Updater = Callable[[Dict[str, Any]], Dict[str, Any]]


class ContextStore:
    def __init__(
        self,
        repository: WorkflowRepository,
        audit: AuditTrail,
        max_write_attempts: int = DEFAULT_CONTEXT_WRITE_ATTEMPTS,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.max_write_attempts = max_write_attempts

    async def initialize(
        self, instance_id: str, data: Optional[Dict[str, Any]] = None
    ) -> ContextVersion:
        """Store version 1 of an instance's context."""
        context = ContextVersion(
            instance_id=instance_id, version=1, context_data=dict(data or {})
        )
        await self.repository.insert_context_version(context)
        return context

    async def current(self, instance_id: str) -> ContextVersion:
        context = await self.repository.get_context(instance_id)
        if context is None:
            raise InstanceNotFound(instance_id)
        return context

    async def versions(self, instance_id: str) -> list[ContextVersion]:
        return await self.repository.list_context_versions(instance_id)

    async def version_for_task(
        self, instance_id: str, task_id: str
    ) -> Optional[ContextVersion]:
        for version in await self.repository.list_context_versions(instance_id):
            if version.task_id == task_id:
                return version
        return None

    async def update(
        self,
        instance_id: str,
        updater: Updater,
        *,
        task_id: Optional[str] = None,
        node_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> ContextVersion:
        """Apply ``updater`` to the latest snapshot and store the result.

        On a version collision the latest snapshot is re-read and ``updater``
        applied again, up to ``max_write_attempts`` times.
        """
        attempt = 0
        while True:
            attempt += 1
            if task_id is not None:
                # A task contributes exactly one version.
                written = await self.version_for_task(instance_id, task_id)
                if written is not None:
                    return written
            latest = await self.current(instance_id)
            candidate = ContextVersion(
                instance_id=instance_id,
                version=latest.version + 1,
                context_data=updater(dict(latest.context_data)),
                task_id=task_id,
            )
            try:
                await self.repository.insert_context_version(candidate)
            except ContextVersionConflict:
                if attempt >= self.max_write_attempts:
                    raise
                logger.warning(
                    f"Context version {candidate.version} of instance {instance_id} "
                    f"taken, retrying ({attempt}/{self.max_write_attempts})"
                )
                continue
            await self.audit.record(
                instance_id,
                EventType.CONTEXT_UPDATED,
                node_id=node_id,
                task_id=task_id,
                actor_id=actor_id,
                metadata={"version": candidate.version},
            )
            return candidate

    async def merge_task_output(
        self,
        instance_id: str,
        node_id: str,
        output: Dict[str, Any],
        *,
        task_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> ContextVersion:
        """Store ``output`` under the producing node's id in a new version."""
        return await self.update(
            instance_id,
            lambda data: {**data, node_id: output},
            task_id=task_id,
            node_id=node_id,
            actor_id=actor_id,
        )
