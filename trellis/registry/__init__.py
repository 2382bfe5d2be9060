"""Registry of task functions."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..contracts import TaskType
from .models import FunctionDescriptor, FunctionRegistry

# Process-wide registry consulted when no explicit registry is passed to the
# engine. Replacing an existing ``function_code`` overwrites it.
REGISTRY = FunctionRegistry()


def register_function(
    function_code: str,
    task_type: TaskType = TaskType.USER_TASK,
    *,
    input_schema: Optional[Dict[str, Any]] = None,
    output_schema: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
    description: Optional[str] = None,
    prompt_template: Optional[str] = None,
    registry: Optional[FunctionRegistry] = None,
) -> FunctionDescriptor:
    """Add a descriptor for ``function_code`` to ``registry`` (default ``REGISTRY``)."""

    descriptor = FunctionDescriptor(
        function_code=function_code,
        task_type=task_type,
        input_schema=input_schema,
        output_schema=output_schema,
        timeout=timeout,
        description=description,
        prompt_template=prompt_template,
    )
    (registry if registry is not None else REGISTRY).register(descriptor)
    return descriptor


__all__ = [
    "FunctionDescriptor",
    "FunctionRegistry",
    "REGISTRY",
    "register_function",
]
