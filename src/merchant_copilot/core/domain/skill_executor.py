"""
Skill Executor

Runs an execution plan as batched topological execution:

1. Every pending task whose dependencies all have a result (successful or
   not) is ready.
2. All ready tasks run concurrently as one batch; the batch is awaited to
   completion before readiness is recomputed.
3. A task error becomes a failed SkillResult; it never aborts siblings or
   later batches. Dependents still run and see the failure in prior_results.
4. No ready task while tasks remain pending is fatal (CircularDependencyError).

The scheduler ignores task priority and defines no timeout of its own. Skills
enforce their own deadlines (see with_deadline). Tasks already started are
never cancelled.
"""

import asyncio
import inspect
import time
from typing import Any, Mapping, Optional

import structlog

from merchant_copilot.core.domain.errors import (
    CircularDependencyError,
    CopilotError,
    UnknownSkillError,
)
from merchant_copilot.core.domain.models import Entity, ExecutionPlan, SkillResult, Task
from merchant_copilot.core.interfaces.collaborators import SkillProtocol


class SkillExecutor:
    """
    Dispatches plan tasks to named skills.

    Args:
        skills: Mapping of action name to skill callable
        max_concurrency: Optional upper bound on tasks running at once within
            a batch. None runs every ready task at once.
    """

    def __init__(
        self,
        skills: Mapping[str, SkillProtocol],
        max_concurrency: Optional[int] = None,
    ):
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.skills = dict(skills)
        self.max_concurrency = max_concurrency
        self.logger = structlog.get_logger().bind(component="skill_executor")

    async def execute(
        self, plan: ExecutionPlan, subject: Optional[Entity]
    ) -> list[SkillResult]:
        results: dict[str, SkillResult] = {}
        pending: list[Task] = list(plan.tasks)
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        batch_number = 0

        self.logger.info(
            "plan.execution.started",
            subject=subject.id if subject else None,
            tasks=len(pending),
        )

        while pending:
            ready = [task for task in pending if task.depends_on.issubset(results)]
            if not ready:
                pending_ids = [task.id for task in pending]
                self.logger.error(
                    "plan.execution.blocked",
                    completed=list(results),
                    pending=pending_ids,
                )
                raise CircularDependencyError(list(results.values()), pending_ids)

            batch_number += 1
            self.logger.debug(
                "plan.batch.started",
                batch=batch_number,
                tasks=[task.id for task in ready],
            )

            # Prior results are snapshotted so siblings never observe each other.
            snapshot = dict(results)
            batch_results = await asyncio.gather(
                *(self._run_bounded(task, subject, snapshot, semaphore) for task in ready)
            )

            for result in batch_results:
                results[result.task_id] = result
            pending = [task for task in pending if task.id not in results]

        ordered = [results[task.id] for task in plan.tasks]
        stats = self.execution_stats(ordered)
        self.logger.info(
            "plan.execution.completed",
            subject=subject.id if subject else None,
            batches=batch_number,
            successful=stats["successful"],
            failed=stats["failed"],
        )
        return ordered

    async def _run_bounded(
        self,
        task: Task,
        subject: Optional[Entity],
        prior_results: Mapping[str, SkillResult],
        semaphore: Optional[asyncio.Semaphore],
    ) -> SkillResult:
        if semaphore is None:
            return await self.execute_task(task, subject, prior_results)
        async with semaphore:
            return await self.execute_task(task, subject, prior_results)

    async def execute_task(
        self,
        task: Task,
        subject: Optional[Entity],
        prior_results: Mapping[str, SkillResult],
    ) -> SkillResult:
        """Run one task; any exception becomes a failed result."""
        start = time.perf_counter()
        try:
            skill = self.skills.get(task.action)
            if skill is None:
                raise UnknownSkillError(f"Unknown task action: {task.action}")

            data = skill(subject, task.params, prior_results)
            if inspect.isawaitable(data):
                data = await data

            return SkillResult(
                task_id=task.id,
                success=True,
                data=data,
                execution_time_ms=_elapsed_ms(start),
            )
        except Exception as e:
            self.logger.warning(
                "skill.task.failed",
                task_id=task.id,
                action=task.action,
                error=str(e),
                error_type=type(e).__name__,
            )
            return SkillResult(
                task_id=task.id,
                success=False,
                error=str(e) or type(e).__name__,
                execution_time_ms=_elapsed_ms(start),
            )

    async def execute_parallel(self, tasks: list[Task], subject: Entity) -> list[SkillResult]:
        """Run independent tasks as a single batch, ignoring dependencies."""
        return list(
            await asyncio.gather(*(self.execute_task(task, subject, {}) for task in tasks))
        )

    async def execute_single(
        self, action: str, subject: Entity, additional_data: Any = None
    ) -> Any:
        """
        Run one skill directly and return its data.

        additional_data is passed to the skill as a successful prior result
        under the id "additional".

        Raises:
            CopilotError: If the skill fails
        """
        task = Task(id="single", action=action, params={"entity_id": subject.id})
        prior: dict[str, SkillResult] = {}
        if additional_data is not None:
            prior["additional"] = SkillResult(task_id="additional", success=True, data=additional_data)

        result = await self.execute_task(task, subject, prior)
        if not result.success:
            raise CopilotError(result.error or "Execution failed")
        return result.data

    @staticmethod
    def execution_stats(results: list[SkillResult]) -> dict[str, Any]:
        successful = sum(1 for r in results if r.success)
        total_time = sum(r.execution_time_ms for r in results)
        return {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "total_time_ms": total_time,
            "average_time_ms": total_time / len(results) if results else 0.0,
        }


def with_deadline(skill: SkillProtocol, seconds: float) -> SkillProtocol:
    """
    Wrap a skill so that it raises TimeoutError after `seconds`.

    The executor turns the timeout into a failed SkillResult. The skill is
    invoked in a worker thread so the deadline applies to sync skills too;
    an async skill's coroutine is awaited on the calling loop.
    """

    async def _invoke(
        subject: Entity, params: Mapping[str, Any], prior_results: Mapping[str, SkillResult]
    ) -> Any:
        data = await asyncio.to_thread(skill, subject, params, prior_results)
        if inspect.isawaitable(data):
            data = await data
        return data

    async def _bounded(
        subject: Entity, params: Mapping[str, Any], prior_results: Mapping[str, SkillResult]
    ) -> Any:
        try:
            return await asyncio.wait_for(_invoke(subject, params, prior_results), timeout=seconds)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Skill exceeded deadline of {seconds}s") from e

    return _bounded


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
