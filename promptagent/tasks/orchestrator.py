# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Task orchestrator — evaluation and optimization runs as pollable tasks.

Lifecycle:
  submit    -> pending (persisted)
  pickup    -> running, progress {0, N}
  progress  -> completed count only grows, written while running
  finish    -> completed with result, or failed with error

Cancellation marks the task failed in the store. Runs already in flight
drain, but their results are discarded once the task is no longer running.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from promptagent.errors import TaskNotFound
from promptagent.evolution.engine import EvolutionEngine
from promptagent.evolution.evaluator import DistributionalEvaluator
from promptagent.evolution.models import ChampionPrompt, EvolutionState
from promptagent.models import Epic
from promptagent.providers.base import PatchProposer
from promptagent.tasks.models import TaskProgress, TaskRecord, TaskStatus, TaskType
from promptagent.tasks.store import TaskStore

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted: process stopped before the task finished"

# job(report_progress, should_continue) -> result dict
Job = Callable[[Callable[[int, int], Awaitable[None]], Callable[[], bool]], Awaitable[Dict[str, Any]]]


class TaskOrchestrator:
    """Runs jobs in the background and keeps their TaskRecord current."""

    def __init__(
        self,
        store: TaskStore,
        evaluator: DistributionalEvaluator,
        proposer: Optional[PatchProposer] = None,
    ) -> None:
        self._store = store
        self._evaluator = evaluator
        self._proposer = proposer
        self._running: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cancelled: Set[str] = set()

    def _lock(self, task_id: str) -> asyncio.Lock:
        if task_id not in self._locks:
            self._locks[task_id] = asyncio.Lock()
        return self._locks[task_id]

    def _forget(self, task_id: str) -> None:
        self._running.pop(task_id, None)
        self._cancelled.discard(task_id)
        self._locks.pop(task_id, None)

    # ── Queries ───────────────────────────────────────────────

    async def get(self, task_id: str) -> TaskRecord:
        record = await self._store.get(task_id)
        if record is None:
            raise TaskNotFound(task_id)
        return record

    async def list(
        self,
        status: Optional[TaskStatus] = None,
        type: Optional[TaskType] = None,
    ) -> List[TaskRecord]:
        return await self._store.list(status=status, type=type)

    async def wait(self, task_id: str, timeout: Optional[float] = None) -> TaskRecord:
        """Wait for the background job (if any) and return the stored record."""
        task = self._running.get(task_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.get(task_id)

    # ── Submission ────────────────────────────────────────────

    async def submit_evaluation(
        self,
        prompt_text: str,
        epics: Sequence[Epic],
        prompt_id: Optional[str] = None,
        replicates: Optional[int] = None,
    ) -> TaskRecord:
        """Create an evaluation task and start it in the background."""
        r = replicates or self._evaluator.config.replicates
        record = TaskRecord(
            type=TaskType.EVALUATION,
            progress=TaskProgress(completed=0, total=len(epics) * r),
            params={
                "prompt_id": prompt_id or "prompt",
                "replicates": r,
                "epics": [e.model_dump() for e in epics],
            },
        )
        pid = record.params["prompt_id"]

        async def job(report, should_continue):
            result = await self._evaluator.evaluate(
                pid, prompt_text, epics, replicates=r,
                on_progress=report, should_continue=should_continue,
            )
            return result.model_dump(mode="json")

        return await self._submit(record, job)

    async def submit_optimization(
        self,
        base_prompt: str,
        epics: Sequence[Epic],
        patch: str = "",
        state: Optional[EvolutionState] = None,
        resumed_from: Optional[str] = None,
    ) -> TaskRecord:
        """Create an optimization task and start it in the background."""
        if self._proposer is None:
            raise ValueError("Optimization tasks need a patch proposer")
        engine = EvolutionEngine(self._evaluator, self._proposer, epics)
        champion = ChampionPrompt(base=base_prompt, patch=patch)
        record = TaskRecord(
            type=TaskType.OPTIMIZATION,
            progress=TaskProgress(completed=0, total=engine.planned_runs()),
            params={
                "base_prompt": base_prompt,
                "patch": patch,
                "epics": [e.model_dump() for e in epics],
                "resumed_from": resumed_from,
            },
        )
        task_id = record.id

        async def checkpoint(s: EvolutionState) -> None:
            async with self._lock(task_id):
                current = await self._store.get(task_id)
                if current is None or current.status != TaskStatus.RUNNING:
                    return
                await self._store.save_checkpoint(task_id, s.model_dump(mode="json"))

        async def job(report, should_continue):
            if state is not None:
                state.runs_completed = 0
            final = await engine.run(
                champion=champion, state=state, on_progress=report,
                on_checkpoint=checkpoint, should_continue=should_continue,
            )
            return {
                "session_id": final.session_id,
                "champion": final.champion.model_dump(mode="json"),
                "composed_prompt": final.champion.composed,
                "generations": final.generation,
                "stop_reason": final.stop_reason,
                "portfolio": [c.model_dump(mode="json") for c in final.portfolio],
                "history": [g.model_dump(mode="json") for g in final.history],
            }

        return await self._submit(record, job)

    async def resume_optimization(self, task_id: str) -> TaskRecord:
        """Start a new optimization task from another task's latest checkpoint."""
        old = await self.get(task_id)
        if old.type != TaskType.OPTIMIZATION:
            raise ValueError("Task {} is not an optimization task".format(task_id))
        snapshot = await self._store.latest_checkpoint(task_id)
        if snapshot is None:
            raise ValueError("Task {} has no checkpoint to resume from".format(task_id))
        state = EvolutionState.model_validate(snapshot)
        epics = [Epic(**e) for e in old.params.get("epics", [])]
        logger.info("Resuming session %s from task %s at generation %d",
                    state.session_id, task_id, state.generation)
        return await self.submit_optimization(
            old.params.get("base_prompt", state.champion.base), epics,
            state=state, resumed_from=task_id,
        )

    async def _submit(self, record: TaskRecord, job: Job) -> TaskRecord:
        await self._store.put(record)
        logger.info("Task %s created (%s)", record.id, record.type.value)
        self._running[record.id] = asyncio.create_task(self._execute(record.id, job))
        return record

    # ── Execution ─────────────────────────────────────────────

    async def _execute(self, task_id: str, job: Job) -> None:
        try:
            async with self._lock(task_id):
                record = await self.get(task_id)
                if record.status != TaskStatus.PENDING:
                    logger.info("Task %s was %s before pickup", task_id, record.status.value)
                    return
                record = record.transition(
                    TaskStatus.RUNNING,
                    progress=TaskProgress(completed=0, total=record.progress.total),
                )
                await self._store.put(record)
            logger.info("Task %s running", task_id)

            def should_continue() -> bool:
                return task_id not in self._cancelled

            async def report(completed: int, total: int) -> None:
                async with self._lock(task_id):
                    current = await self._store.get(task_id)
                    if current is None or current.status != TaskStatus.RUNNING:
                        self._cancelled.add(task_id)
                        return
                    if completed <= current.progress.completed:
                        return
                    current.progress = TaskProgress(
                        completed=min(completed, max(total, current.progress.total)),
                        total=max(total, current.progress.total),
                    )
                    current.updated_at = time.time()
                    await self._store.put(current)

            try:
                result = await job(report, should_continue)
            except Exception as e:
                logger.warning("Task %s failed: %s", task_id, e)
                await self._finish(task_id, TaskStatus.FAILED, error="{}: {}".format(type(e).__name__, e))
                return
            await self._finish(task_id, TaskStatus.COMPLETED, result=result)
        finally:
            self._forget(task_id)

    async def _finish(
        self,
        task_id: str,
        status: TaskStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._lock(task_id):
            current = await self._store.get(task_id)
            if current is None or current.status != TaskStatus.RUNNING:
                logger.info("Task %s no longer running; discarding its outcome", task_id)
                return
            updates: Dict[str, Any] = {}
            if status == TaskStatus.COMPLETED:
                updates["result"] = result
                updates["progress"] = TaskProgress(
                    completed=current.progress.total, total=current.progress.total,
                )
            else:
                updates["error"] = error
            await self._store.put(current.transition(status, **updates))
        logger.info("Task %s %s", task_id, status.value)

    # ── Control ───────────────────────────────────────────────

    async def cancel(self, task_id: str, reason: str = "cancelled") -> TaskRecord:
        """Mark a pending or running task failed; raises if already terminal."""
        try:
            async with self._lock(task_id):
                record = await self.get(task_id)
                record = record.transition(TaskStatus.FAILED, error=reason)
                await self._store.put(record)
        finally:
            if task_id not in self._running:
                self._locks.pop(task_id, None)
        if task_id in self._running:
            self._cancelled.add(task_id)
        logger.info("Task %s cancelled: %s", task_id, reason)
        return record

    async def recover(self) -> List[TaskRecord]:
        """Fail tasks left pending/running by a process that is gone.

        Tasks owned by this orchestrator are skipped. Progress is kept.
        """
        recovered: List[TaskRecord] = []
        for status in (TaskStatus.PENDING, TaskStatus.RUNNING):
            for record in await self._store.list(status=status):
                if record.id in self._running:
                    continue
                failed = record.transition(TaskStatus.FAILED, error=INTERRUPTED_ERROR)
                await self._store.put(failed)
                logger.warning("Recovered orphaned task %s (was %s)", record.id, status.value)
                recovered.append(failed)
        return recovered

    async def cleanup(self, older_than_s: float) -> int:
        """Delete old terminal tasks and drop locks of ids the store no longer has."""
        deleted = await self._store.cleanup(older_than_s)
        for task_id in list(self._locks):
            if task_id not in self._running and await self._store.get(task_id) is None:
                self._locks.pop(task_id, None)
        return deleted

    async def shutdown(self) -> None:
        """Cancel background jobs; their tasks stay as stored for recover()."""
        tasks = list(self._running.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()
