# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Task records for long-running evaluation and optimization jobs."""
import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from promptagent.errors import InvalidTaskTransition, TaskAlreadyTerminal


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskType(str, Enum):
    EVALUATION = "evaluation"
    OPTIMIZATION = "optimization"


# pending -> failed covers cancellation before pickup
_ALLOWED = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.FAILED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
}


class TaskProgress(BaseModel):
    completed: int = 0
    total: int = 0


class TaskRecord(BaseModel):
    """One durable unit of work. Status only moves forward."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    progress: TaskProgress = Field(default_factory=TaskProgress)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    params: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def transition(self, status: TaskStatus, **updates) -> "TaskRecord":
        """Return a copy moved to ``status``; raises on a disallowed move."""
        if self.status.is_terminal:
            raise TaskAlreadyTerminal(
                "Task {} is already {}; cannot move to {}".format(
                    self.id, self.status.value, status.value,
                ),
            )
        if status not in _ALLOWED.get(self.status, set()):
            raise InvalidTaskTransition(
                "Task {}: {} -> {} is not allowed".format(self.id, self.status.value, status.value),
            )
        updates["status"] = status
        updates["updated_at"] = time.time()
        return self.model_copy(update=updates, deep=True)
