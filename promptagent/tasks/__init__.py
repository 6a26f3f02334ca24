# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
from promptagent.tasks.models import TaskProgress, TaskRecord, TaskStatus, TaskType
from promptagent.tasks.orchestrator import TaskOrchestrator
from promptagent.tasks.store import MemoryTaskStore, SQLiteTaskStore, TaskStore

__all__ = [
    "MemoryTaskStore", "SQLiteTaskStore", "TaskOrchestrator", "TaskProgress",
    "TaskRecord", "TaskStatus", "TaskStore", "TaskType",
]
