"""Pydantic models describing registered task functions."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from ..contracts import TaskType


class FunctionDescriptor(BaseModel):
    """Metadata for a ``function_code`` referenced by TASK nodes."""

    function_code: str
    task_type: TaskType = TaskType.USER_TASK
    description: Optional[str] = None

    # Contracts
    input_schema: Optional[Dict[str, Any]] = Field(
        default=None, description="JSON schema for the task input"
    )
    output_schema: Optional[Dict[str, Any]] = Field(
        default=None, description="JSON schema the task output must satisfy"
    )

    # Invocation
    timeout: Optional[float] = None
    prompt_template: Optional[str] = None

    @field_validator("function_code")
    @classmethod
    def _ensure_code(cls, v: str) -> str:
        if not v:
            raise ValueError("function_code must be a non-empty string")
        return v


class FunctionRegistry(BaseModel):
    """Lookup table of function descriptors keyed by ``function_code``."""

    functions: Dict[str, FunctionDescriptor] = Field(default_factory=dict)

    def register(self, descriptor: FunctionDescriptor) -> None:
        self.functions[descriptor.function_code] = descriptor

    def get(self, function_code: str) -> Optional[FunctionDescriptor]:
        return self.functions.get(function_code)

    def __contains__(self, function_code: object) -> bool:
        return function_code in self.functions
