"""Exception taxonomy for the workflow engine.

Errors fall into five families. Validation errors are rejected synchronously
and leave state untouched. Conflict errors are reported to the immediate caller
which decides whether to retry. Transient errors are retried by the queue
worker. Structural errors indicate a definition or engine bug and move the
instance to FAILED.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class TrellisError(Exception):
    """Base class for all engine errors."""

    code = "TRELLIS_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


# ----------------------------------------------------------------------
# Validation
class ValidationError(TrellisError):
    code = "VALIDATION_ERROR"


class DefinitionInvalid(ValidationError):
    code = "DEFINITION_INVALID"

    def __init__(self, errors: List[str]) -> None:
        super().__init__(
            f"Workflow definition is invalid: {'; '.join(errors)}", errors=errors
        )
        self.errors = errors


class ConditionSyntaxError(ValidationError):
    code = "CONDITION_SYNTAX_ERROR"

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(
            f"Invalid condition {expression!r}: {reason}",
            expression=expression,
            reason=reason,
        )


class OutputValidationFailed(ValidationError):
    code = "OUTPUT_VALIDATION_FAILED"

    def __init__(self, task_id: str, errors: List[str]) -> None:
        super().__init__(
            f"Output for task {task_id} failed validation: {'; '.join(errors)}",
            task_id=task_id,
            errors=errors,
        )
        self.errors = errors


# ----------------------------------------------------------------------
# Lookups
class NotFound(TrellisError):
    code = "NOT_FOUND"


class DefinitionNotFound(NotFound):
    code = "DEFINITION_NOT_FOUND"

    def __init__(self, definition_id: str) -> None:
        super().__init__(
            f"Workflow definition not found: {definition_id}",
            definition_id=definition_id,
        )


class InstanceNotFound(NotFound):
    code = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str) -> None:
        super().__init__(
            f"Workflow instance not found: {instance_id}", instance_id=instance_id
        )


class TaskNotFound(NotFound):
    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", task_id=task_id)


# ----------------------------------------------------------------------
# Conflicts
class ConflictError(TrellisError):
    code = "CONFLICT"
    retryable = True


class TaskAlreadyTerminal(ConflictError):
    code = "TASK_ALREADY_TERMINAL"

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(
            f"Task {task_id} is already {status.lower()}",
            task_id=task_id,
            status=status,
        )


class InstanceTerminal(ConflictError):
    code = "INSTANCE_TERMINAL"

    def __init__(self, instance_id: str, status: str) -> None:
        super().__init__(
            f"Instance {instance_id} is {status.lower()} and can no longer change",
            instance_id=instance_id,
            status=status,
        )


class InvalidStateTransition(ConflictError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, instance_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Instance {instance_id} cannot go from {current} to {requested}",
            instance_id=instance_id,
            current=current,
            requested=requested,
        )


class ContextVersionConflict(ConflictError):
    code = "CONTEXT_VERSION_CONFLICT"

    def __init__(self, instance_id: str, version: int) -> None:
        super().__init__(
            f"Context version {version} already exists for instance {instance_id}",
            instance_id=instance_id,
            version=version,
        )


class TaskNotAssignedToActor(ConflictError):
    code = "TASK_NOT_ASSIGNED_TO_ACTOR"
    retryable = False

    def __init__(self, task_id: str, actor_id: Optional[str]) -> None:
        super().__init__(
            f"Task {task_id} is not assigned to {actor_id}",
            task_id=task_id,
            actor_id=actor_id,
        )


# ----------------------------------------------------------------------
# External calls
class TransientError(TrellisError):
    code = "TRANSIENT"
    retryable = True


class ServiceUnavailable(TransientError):
    code = "SERVICE_UNAVAILABLE"


class ServiceBusinessError(TrellisError):
    """Raised by a service call that answered with a declared failure."""

    code = "SERVICE_BUSINESS_ERROR"

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, payload=payload or {})
        self.payload = payload or {}


class ServiceNotRegistered(TrellisError):
    code = "SERVICE_NOT_REGISTERED"

    def __init__(self, function_code: str) -> None:
        super().__init__(
            f"No implementation registered for function {function_code}",
            function_code=function_code,
        )


# ----------------------------------------------------------------------
# Structural bugs
class StructuralError(TrellisError):
    code = "STRUCTURAL_ERROR"


class DuplicateOpenTask(StructuralError):
    code = "DUPLICATE_OPEN_TASK"

    def __init__(self, instance_id: str, node_id: str, existing_task_id: str) -> None:
        super().__init__(
            f"Node {node_id} of instance {instance_id} already has open task "
            f"{existing_task_id}",
            instance_id=instance_id,
            node_id=node_id,
            existing_task_id=existing_task_id,
        )


class NoMatchingTransition(StructuralError):
    code = "NO_MATCHING_TRANSITION"

    def __init__(self, node_id: str) -> None:
        super().__init__(
            f"No matching transition found leaving node {node_id}", node_id=node_id
        )


class UnknownNode(StructuralError):
    code = "UNKNOWN_NODE"

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node not found in definition: {node_id}", node_id=node_id)


class MaxDepthExceeded(StructuralError):
    code = "MAX_DEPTH_EXCEEDED"

    def __init__(self, path: List[str], max_depth: int) -> None:
        super().__init__(
            f"Gateway chain exceeded {max_depth} nodes: {' -> '.join(path)}",
            path=path,
            max_depth=max_depth,
        )
