"""
Workflow orchestration logic.

Creates workflows per project type, executes their steps strictly in order
with progress tracking and error handling, persists after every step
transition, and resumes interrupted runs from the first unfinished step.
"""

import asyncio
from typing import Any, Dict, List, Optional
from uuid import uuid4

from shared.errors import PersistenceError, ValidationError, WorkflowNotFoundError
from shared.events import EventBus, EventType
from shared.logging import get_logger, set_workflow_id
from shared.models.workflow import Workflow, WorkflowStep, utcnow
from shared.repository import CachedRepository, InMemoryRepository, Repository
from shared.retry import call_with_retry
from workflow_engine.step_lists import (
    build_resume_steps,
    build_steps,
    build_thumbnail_steps,
)
from workflow_engine.steps import StepContext, StepServices, has_valid_asset, run_step

logger = get_logger("workflow_engine")

RESUMABLE_STATUSES = ("pending", "processing")


def workflow_progress(workflow: Workflow) -> int:
    """Overall progress percentage from step statuses and the running step's progress."""
    if not workflow.steps:
        return 0
    done = sum(1 for step in workflow.steps if step.status == "completed")
    current = workflow.current_step
    partial = current.progress / 100 if current is not None and current.status == "processing" else 0
    return min(100, int((done + partial) / len(workflow.steps) * 100))


class WorkflowOrchestrator:
    """Sequences workflow steps and persists every transition."""

    def __init__(
        self,
        services: StepServices,
        events: EventBus,
        repository: Optional[Repository[Workflow]] = None,
    ):
        """
        Args:
            services: Collaborators handed to step executors
            events: Event bus for workflow lifecycle events
            repository: Workflow storage (default: in-memory)
        """
        self.services = services
        self.events = events
        self.workflows: CachedRepository[Workflow] = CachedRepository(repository or InMemoryRepository())
        self._executing: set = set()
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_workflow(self, project_type: str, params: Dict[str, Any], start: bool = True) -> str:
        """
        Record a new workflow and schedule its execution.

        Args:
            project_type: standard, music-video or animation
            params: Workflow params; must include project_id
            start: Schedule execution immediately

        Returns:
            Workflow ID

        Raises:
            ValidationError: If project_id is missing or the project type is unknown
        """
        project_id = params.get("project_id")
        if not project_id:
            raise ValidationError("Workflow params must include project_id")
        steps = build_steps(project_type, params)
        return await self._create(project_type, project_id, params, steps, start)

    async def create_resume_workflow(self, project_id: str, start: bool = True) -> str:
        """
        Create a workflow that only runs the work a project is missing.

        Raises:
            ValidationError: If the project does not exist or nothing is missing
        """
        project = await call_with_retry(
            lambda: self.services.store.get_project(project_id),
            description=f"load project {project_id}",
        )
        if project is None:
            raise ValidationError(f"Project {project_id} not found", details={"project_id": project_id})
        scenes = await call_with_retry(
            lambda: self.services.store.get_scenes_by_project(project_id),
            description=f"load scenes for project {project_id}",
        )

        missing = []
        if project.audio_url and scenes and any(not scene.has_interval for scene in scenes):
            missing.append("process_timestamps")
        if scenes and any(not has_valid_asset(scene.image_url) for scene in scenes):
            missing.append("generate_images")
        if not has_valid_asset(project.thumbnail_url):
            missing.append("generate_thumbnail")

        steps = build_resume_steps(missing)
        logger.info(
            f"Resume workflow will run: {', '.join(step.id for step in steps[1:-1])}",
            extra={"project_id": project_id}
        )
        return await self._create("resume", project_id, {"project_id": project_id}, steps, start)

    async def create_thumbnail_workflow(
        self,
        project_id: str,
        thumbnail_config: Optional[Dict[str, Any]] = None,
        start: bool = True,
    ) -> str:
        params = {"project_id": project_id, "thumbnail_config": thumbnail_config or {}}
        return await self._create("thumbnail", project_id, params, build_thumbnail_steps(), start)

    async def _create(
        self,
        project_type: str,
        project_id: str,
        params: Dict[str, Any],
        steps: List[WorkflowStep],
        start: bool,
    ) -> str:
        steps[0].status = "completed"
        steps[0].progress = 100
        steps[0].result = {"projectId": project_id}
        workflow = Workflow(
            id=str(uuid4()),
            project_id=project_id,
            project_type=project_type,
            params=dict(params),
            steps=steps,
            current_step_index=1,
        )
        await self._save(workflow)
        logger.info(
            f"Workflow created: {project_type} with {len(steps)} steps",
            extra={"workflow_id": workflow.id, "project_id": project_id}
        )
        await self.events.publish(EventType.WORKFLOW_CREATED, self._workflow_event(workflow))
        if start:
            self.start(workflow.id)
        return workflow.id

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def start(self, workflow_id: str) -> asyncio.Task:
        """Schedule execute_workflow in the background; reuses a running task."""
        task = self._tasks.get(workflow_id)
        if task is None or task.done():
            task = asyncio.create_task(self.execute_workflow(workflow_id), name=f"workflow-{workflow_id}")
            self._tasks[workflow_id] = task
            task.add_done_callback(lambda done: self._task_done(workflow_id, done))
        return task

    def _task_done(self, workflow_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(workflow_id) is task:
            del self._tasks[workflow_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Workflow execution crashed",
                exc_info=task.exception(),
                extra={"workflow_id": workflow_id}
            )

    async def execute_workflow(self, workflow_id: str) -> Workflow:
        """
        Run a workflow's remaining steps in order.

        Returns immediately for a completed or failed workflow, or when the
        workflow is already executing. Otherwise resumes from the first step
        that is not completed.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.is_terminal:
            logger.info(f"Workflow already {workflow.status}", extra={"workflow_id": workflow_id})
            return workflow
        if workflow_id in self._executing:
            logger.info("Workflow is already executing", extra={"workflow_id": workflow_id})
            return workflow

        self._executing.add(workflow_id)
        set_workflow_id(workflow_id)
        try:
            return await self._execute(workflow)
        finally:
            self._executing.discard(workflow_id)
            set_workflow_id(None)

    async def _execute(self, workflow: Workflow) -> Workflow:
        index = next(
            (i for i, step in enumerate(workflow.steps) if step.status != "completed"),
            len(workflow.steps),
        )
        workflow.current_step_index = min(index, len(workflow.steps) - 1)
        workflow.status = "processing"
        try:
            await self._save(workflow)
        except PersistenceError as e:
            return await self._fail(workflow, workflow.steps[workflow.current_step_index], e)
        await self.events.publish(EventType.WORKFLOW_UPDATED, self._workflow_event(workflow))

        while index < len(workflow.steps):
            step = workflow.steps[index]
            try:
                step.status = "processing"
                step.progress = 0
                step.error = None
                await self._save(workflow)
                await self.events.publish(EventType.WORKFLOW_UPDATED, self._workflow_event(workflow))
                logger.info(f"Step {step.id} started", extra={"workflow_id": workflow.id, "step_id": step.id})

                ctx = StepContext(
                    workflow=workflow,
                    services=self.services,
                    report_progress=self._progress_reporter(workflow, step),
                )
                result = await run_step(step, ctx)

                step.status = "completed"
                step.progress = 100
                step.result = result
                if index + 1 < len(workflow.steps):
                    workflow.current_step_index = index + 1
                await self._save(workflow)
            except Exception as e:
                return await self._fail(workflow, step, e)
            index += 1
            logger.info(f"Step {step.id} completed", extra={"workflow_id": workflow.id, "step_id": step.id})
            await self.events.publish(EventType.WORKFLOW_UPDATED, self._workflow_event(workflow))

        workflow.status = "completed"
        workflow.completed_at = utcnow()
        try:
            await self._save(workflow)
        except PersistenceError as e:
            # the final step's outcome never reached the store
            return await self._fail(workflow, workflow.steps[-1], e)
        self.workflows.evict(workflow.id)
        logger.info("Workflow completed", extra={"workflow_id": workflow.id, "project_id": workflow.project_id})
        await self.events.publish(EventType.WORKFLOW_COMPLETED, self._workflow_event(workflow))
        return workflow

    async def _fail(self, workflow: Workflow, step: WorkflowStep, error: Exception) -> Workflow:
        """
        Mark the step and workflow failed, then persist and announce it.

        The failure is recorded in memory and published even when it cannot
        be persisted; the workflow then stays cached so reads see it.
        """
        message = str(error) or error.__class__.__name__
        step.status = "failed"
        step.error = message
        workflow.status = "failed"
        workflow.last_error = message
        workflow.failed_step_id = step.id
        workflow.completed_at = utcnow()
        logger.error(
            f"Step {step.id} failed, halting workflow",
            exc_info=error,
            extra={
                "workflow_id": workflow.id,
                "step_id": step.id,
                "error_code": getattr(error, "code", error.__class__.__name__),
            }
        )
        try:
            await self._save(workflow)
        except PersistenceError as e:
            logger.error(
                "Could not persist workflow failure",
                exc_info=e,
                extra={"workflow_id": workflow.id, "step_id": step.id}
            )
        else:
            self.workflows.evict(workflow.id)
        await self.events.publish(EventType.WORKFLOW_FAILED, self._workflow_event(workflow))
        return workflow

    def _progress_reporter(self, workflow: Workflow, step: WorkflowStep):
        async def report(progress: int) -> None:
            progress = max(0, min(int(progress), 100))
            if progress == step.progress:
                return
            step.progress = progress
            await self._save(workflow)
            await self.events.publish(EventType.WORKFLOW_UPDATED, self._workflow_event(workflow))
        return report

    # ------------------------------------------------------------------
    # Queries and recovery
    # ------------------------------------------------------------------

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """
        Cached workflow, loaded from the repository on a cache miss.

        Raises:
            WorkflowNotFoundError: If no workflow has that id
        """
        workflow = await call_with_retry(
            lambda: self.workflows.get(workflow_id),
            description=f"load workflow {workflow_id}",
        )
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found", details={"workflow_id": workflow_id})
        return workflow

    async def list_workflows_by_project(self, project_id: str) -> List[Workflow]:
        """Every run for a project, newest first."""
        workflows = [w for w in await self.workflows.list() if w.project_id == project_id]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    async def resume_interrupted_workflows(self) -> List[str]:
        """Restart every persisted workflow left pending or processing. Returns their ids."""
        resumed = []
        for workflow in await self.workflows.list():
            if workflow.status in RESUMABLE_STATUSES and workflow.id not in self._tasks:
                self.start(workflow.id)
                resumed.append(workflow.id)
        if resumed:
            logger.info(f"Resuming {len(resumed)} interrupted workflows", extra={"workflow_ids": resumed})
        return resumed

    async def wait_for_workflow(self, workflow_id: str, timeout: Optional[float] = None) -> Workflow:
        """Wait for a scheduled run to finish and return the workflow."""
        task = self._tasks.get(workflow_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_workflow(workflow_id)

    async def stop(self) -> None:
        """Cancel running workflow tasks; their state stays persisted for resume."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _save(self, workflow: Workflow) -> None:
        workflow.updated_at = utcnow()
        await call_with_retry(lambda: self.workflows.put(workflow), description=f"save workflow {workflow.id}")

    @staticmethod
    def _workflow_event(workflow: Workflow) -> Dict[str, Any]:
        current = workflow.current_step
        return {
            "workflowId": workflow.id,
            "projectId": workflow.project_id,
            "status": workflow.status,
            "currentStep": current.id if current else None,
            "currentStepIndex": workflow.current_step_index,
            "progress": workflow_progress(workflow),
            "steps": workflow.step_statuses(),
            "error": workflow.last_error,
            "failedStepId": workflow.failed_step_id,
        }
