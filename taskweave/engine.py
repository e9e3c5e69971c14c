"""The workflow engine: sequences steps of an execution onto the job queues."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from .config import EngineSettings, WatcherSettings
from .constants import DEFAULT_CONCURRENCY, DEFAULT_HISTORY_LIMIT
from .contracts import (
    TERMINAL_STATUSES,
    CronSchedule,
    DryRunResult,
    ExecutionOptions,
    ExecutionStatus,
    FileWatcherRegistration,
    FileWatchTrigger,
    LogEntry,
    Priority,
    ScheduledTrigger,
    ScheduleTrigger,
    StepDef,
    StepState,
    StepStatus,
    SystemMetrics,
    ValidationResult,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowInput,
    WorkflowMetrics,
    WorkflowResult,
    utcnow,
)
from .definitions import DefinitionRepository, InMemoryDefinitionStore
from .errors import (
    FileWatcherError,
    InvalidScheduleError,
    InvalidWorkflowError,
    TaskweaveError,
    WorkflowDisabledError,
    WorkflowExecutionError,
    WorkflowNotFoundError,
)
from .events import EventBus, Subscription
from .persistence import ExecutionRepository, InMemoryExecutionRepository
from .processors import JobProcessorRegistry
from .queue import JobData, JobOptions, JobStatus, QueueManager, default_queue_configs
from .triggers import FileWatcher, WorkflowScheduler
from .validation import topological_layers, validate_definition

logger = logging.getLogger(__name__)

_SETTLED = {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}


def new_execution_id() -> str:
    return f"exec_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def step_job_id(execution_id: str, step_id: str) -> str:
    return f"{execution_id}:{step_id}"


class WorkflowEngine:
    """Orchestrate workflow executions on top of a ``QueueManager``.

    The engine owns every ``WorkflowExecution``; the queue manager owns the
    jobs. A step becomes a job only once all of its dependencies completed,
    and job outcomes flow back through queue events. Executions beyond
    ``max_concurrent_workflows`` wait as ``pending`` until a slot frees.

    Example::

        async with WorkflowEngine(await create_queue_manager()) as engine:
            await engine.create_workflow(definition)
            result = await engine.execute_workflow(definition.id, WorkflowInput())
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        definitions: Optional[DefinitionRepository] = None,
        repository: Optional[ExecutionRepository] = None,
        registry: Optional[JobProcessorRegistry] = None,
        config: Optional[EngineSettings] = None,
        watcher: Optional[WatcherSettings] = None,
    ) -> None:
        self.queue_manager = queue_manager
        self.definitions = definitions or InMemoryDefinitionStore()
        self.repository = repository or InMemoryExecutionRepository()
        self.registry = registry or JobProcessorRegistry(queue_manager)
        self.config = (config or EngineSettings()).model_copy(deep=True)
        self.events = EventBus("engine")

        watcher = watcher or WatcherSettings()
        self.scheduler = WorkflowScheduler(self.execute_workflow_async)
        self.file_watcher = FileWatcher(
            self.execute_workflow_async,
            poll_interval=watcher.poll_interval,
            debounce=watcher.debounce,
            on_error=self._on_watcher_error,
        )

        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._execution_defs: Dict[str, WorkflowDefinition] = {}
        self._step_ranks: Dict[str, Dict[str, int]] = {}
        self._execution_options: Dict[str, ExecutionOptions] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._pending: Deque[str] = deque()
        self._subscriptions: List[Subscription] = []
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.queue_manager.initialize()
        for queue_config in default_queue_configs(DEFAULT_CONCURRENCY, self.config.retry_policy):
            if not self.queue_manager.has_queue(queue_config.name):
                self.queue_manager.create_queue(queue_config)
        self.registry.register_built_in_processors(replace=False)

        self._subscriptions = [
            self.queue_manager.on_job_completed(None, self._on_job_completed),
            self.queue_manager.on_job_failed(None, self._on_job_failed),
            self.queue_manager.on_job_retrying(None, self._on_job_retrying),
        ]

        for definition in await self.definitions.load():
            self._workflows[definition.id] = definition
        for definition in self._workflows.values():
            self._activate_triggers(definition)

        if not self.queue_manager.is_running:
            await self.queue_manager.start()
        logger.info(f"Workflow engine started with {len(self._workflows)} workflows")

    async def shutdown(self) -> None:
        if not self._started:
            return
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        await self.scheduler.shutdown()
        await self.file_watcher.shutdown()
        await self.queue_manager.shutdown()
        await self.events.drain()
        for future in self._waiters.values():
            if not future.done():
                future.cancel()
        self._waiters.clear()
        self._started = False
        logger.info("Workflow engine stopped")

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Workflow definitions
    def validate_workflow(
        self, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> ValidationResult:
        return validate_definition(definition)

    def _coerce_definition(
        self, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        result = self.validate_workflow(definition)
        if not result.valid:
            raise InvalidWorkflowError(result.errors)
        if isinstance(definition, WorkflowDefinition):
            return definition.model_copy(deep=True)
        try:
            return WorkflowDefinition.model_validate(definition)
        except ValidationError as exc:
            raise InvalidWorkflowError([str(exc)]) from exc

    async def create_workflow(
        self, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        """Validate, persist and activate a new workflow.

        Raises:
            InvalidWorkflowError: If validation fails or the id is taken.
        """
        workflow = self._coerce_definition(definition)
        if workflow.id in self._workflows:
            raise InvalidWorkflowError([f"Workflow already exists: {workflow.id}"])
        now = utcnow()
        workflow.created_at = now
        workflow.updated_at = now

        await self.definitions.save_one(workflow)
        self._workflows[workflow.id] = workflow
        if self._started:
            self._activate_triggers(workflow)
        logger.info(f"Created workflow {workflow.id}")
        return workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def update_workflow(
        self,
        workflow_id: str,
        updates: Union[WorkflowDefinition, Mapping[str, Any]],
    ) -> WorkflowDefinition:
        """Apply ``updates`` on top of the stored definition.

        Running executions keep the definition they started with.
        """
        current = self._workflows.get(workflow_id)
        if current is None:
            raise WorkflowNotFoundError(workflow_id)
        if isinstance(updates, WorkflowDefinition):
            changes = updates.model_dump(mode="json", by_alias=True)
        else:
            changes = dict(updates)
        merged = {**current.model_dump(mode="json", by_alias=True), **changes}
        merged["id"] = workflow_id
        merged["createdAt"] = current.created_at.isoformat()
        merged["updatedAt"] = utcnow().isoformat()
        merged.pop("created_at", None)
        merged.pop("updated_at", None)

        workflow = self._coerce_definition(merged)
        await self.definitions.save_one(workflow)
        self._workflows[workflow_id] = workflow
        if self._started:
            self._deactivate_triggers(workflow_id)
            self._activate_triggers(workflow)
        logger.info(f"Updated workflow {workflow_id}")
        return workflow.model_copy(deep=True)

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Remove a workflow, its triggers and any of its live executions."""
        if workflow_id not in self._workflows:
            return False
        self._deactivate_triggers(workflow_id)
        for execution in list(self._executions.values()):
            if execution.workflow_id == workflow_id and not execution.status.is_terminal:
                await self.cancel_workflow(execution.id)
        await self.definitions.delete(workflow_id)
        del self._workflows[workflow_id]
        logger.info(f"Deleted workflow {workflow_id}")
        return True

    async def list_workflows(
        self,
        enabled: Optional[bool] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> List[WorkflowDefinition]:
        wanted_tags = set(tags) if tags else None
        return [
            w.model_copy(deep=True)
            for w in self._workflows.values()
            if (enabled is None or w.enabled == enabled)
            and (wanted_tags is None or wanted_tags.intersection(w.tags))
        ]

    # ------------------------------------------------------------------
    # Triggers
    def _activate_triggers(self, workflow: WorkflowDefinition) -> None:
        if not workflow.enabled:
            return
        try:
            if workflow.schedule is not None:
                self.scheduler.schedule_workflow(workflow.id, workflow.schedule)
            for trigger in workflow.triggers:
                if isinstance(trigger, ScheduleTrigger):
                    self.scheduler.schedule_workflow(workflow.id, trigger.config)
                elif isinstance(trigger, FileWatchTrigger):
                    self.file_watcher.add_file_watcher(
                        workflow.id,
                        trigger.config.path,
                        recursive=trigger.config.recursive,
                        file_pattern=trigger.config.pattern,
                        ignore_pattern=trigger.config.ignore_pattern,
                    )
        except (InvalidScheduleError, FileWatcherError) as exc:
            logger.error(f"Could not activate triggers of workflow {workflow.id}: {exc}")

    def _deactivate_triggers(self, workflow_id: str) -> None:
        self.scheduler.unschedule_workflow(workflow_id)
        self.file_watcher.remove_watchers_for(workflow_id)

    def _on_watcher_error(self, registration: FileWatcherRegistration, error: Exception) -> None:
        logger.warning(f"Watcher {registration.id} for {registration.workflow_id} deactivated: {error}")
        self.events.publish("watcher_error", registration, error)

    async def schedule_workflow(self, workflow_id: str, schedule: Union[CronSchedule, str]) -> bool:
        if workflow_id not in self._workflows:
            raise WorkflowNotFoundError(workflow_id)
        return self.scheduler.schedule_workflow(workflow_id, schedule)

    async def unschedule_workflow(self, workflow_id: str) -> bool:
        return self.scheduler.unschedule_workflow(workflow_id)

    async def list_scheduled_workflows(self) -> List[ScheduledTrigger]:
        return self.scheduler.list_scheduled_workflows()

    async def add_file_watcher(
        self,
        workflow_id: str,
        path: str,
        recursive: bool = False,
        file_pattern: Optional[str] = None,
        ignore_pattern: Optional[str] = None,
    ) -> str:
        if workflow_id not in self._workflows:
            raise WorkflowNotFoundError(workflow_id)
        return self.file_watcher.add_file_watcher(
            workflow_id,
            path,
            recursive=recursive,
            file_pattern=file_pattern,
            ignore_pattern=ignore_pattern,
        )

    async def remove_file_watcher(self, watcher_id: str) -> bool:
        return self.file_watcher.remove_file_watcher(watcher_id)

    async def list_file_watchers(self) -> List[FileWatcherRegistration]:
        return self.file_watcher.list_file_watchers()

    # ------------------------------------------------------------------
    # Execution
    async def execute_workflow_async(
        self,
        workflow_id: str,
        input: Union[WorkflowInput, Mapping[str, Any], None] = None,
        options: Union[ExecutionOptions, Mapping[str, Any], None] = None,
    ) -> str:
        """Start an execution and return its id without waiting for it.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            WorkflowDisabledError: If the workflow is disabled.
        """
        return await self._start_execution(workflow_id, input, options)

    async def _start_execution(
        self,
        workflow_id: str,
        input: Union[WorkflowInput, Mapping[str, Any], None],
        options: Union[ExecutionOptions, Mapping[str, Any], None],
        retry_of: Optional[str] = None,
    ) -> str:
        await self.start()
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if not workflow.enabled:
            raise WorkflowDisabledError(workflow_id)

        if not isinstance(input, WorkflowInput):
            input = WorkflowInput.model_validate(input or {})
        if not isinstance(options, ExecutionOptions):
            options = ExecutionOptions.model_validate(options or {})

        execution = WorkflowExecution(
            id=new_execution_id(),
            workflow_id=workflow_id,
            input=input,
            step_states={s.id: StepState(step_id=s.id) for s in workflow.steps},
            retry_of=retry_of,
        )
        self._executions[execution.id] = execution
        self._execution_defs[execution.id] = workflow.model_copy(deep=True)
        layers = topological_layers({s.id: s.dependencies for s in workflow.steps})
        self._step_ranks[execution.id] = {
            step_id: depth for depth, layer in enumerate(layers) for step_id in layer
        }
        self._execution_options[execution.id] = options
        self._log(execution, "info", f"Execution of {workflow_id} created")

        if self._running_count() < self.config.max_concurrent_workflows:
            await self._begin(execution)
        else:
            self._pending.append(execution.id)
            self._log(execution, "info", "Waiting for a free execution slot")
            await self._persist(execution)
        return execution.id

    async def execute_workflow(
        self,
        workflow_id: str,
        input: Union[WorkflowInput, Mapping[str, Any], None] = None,
        options: Union[ExecutionOptions, Mapping[str, Any], None] = None,
    ) -> WorkflowResult:
        """Run a workflow and wait for it to finish.

        Raises:
            WorkflowExecutionError: If the execution fails or is cancelled.
        """
        if not isinstance(options, ExecutionOptions):
            options = ExecutionOptions.model_validate(options or {})
        execution_id = await self.execute_workflow_async(workflow_id, input, options)
        execution = await self.wait_for_execution(execution_id, timeout=options.wait_timeout)
        result = execution.result
        if execution.status is not ExecutionStatus.COMPLETED or result is None:
            errors = result.errors if result else []
            raise WorkflowExecutionError(execution_id, execution.status.value, errors)
        return result

    async def wait_for_execution(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> WorkflowExecution:
        """Wait until ``execution_id`` reaches a terminal state.

        Raises:
            KeyError: If the execution is unknown.
            asyncio.TimeoutError: If ``timeout`` seconds pass first.
        """
        execution = self._executions.get(execution_id)
        if execution is None:
            raise KeyError(execution_id)
        if not execution.status.is_terminal:
            future = self._waiters.get(execution_id)
            if future is None:
                future = asyncio.get_running_loop().create_future()
                self._waiters[execution_id] = future
            await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        return self._executions[execution_id].snapshot()

    def _running_count(self) -> int:
        return sum(
            1
            for e in self._executions.values()
            if e.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
        )

    async def _begin(self, execution: WorkflowExecution) -> None:
        now = utcnow()
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = now
        self._log(execution, "info", "Workflow execution started")
        self.events.publish("start", execution.snapshot())
        await self._advance(execution)

    def _ready_steps(self, execution: WorkflowExecution) -> List[StepDef]:
        """Pending steps whose dependencies all completed, shallowest first."""
        definition = self._execution_defs[execution.id]
        ranks = self._step_ranks[execution.id]
        states = execution.step_states
        ready = [
            step
            for step in definition.steps
            if states[step.id].status is StepStatus.PENDING
            and all(states[d].status is StepStatus.COMPLETED for d in step.dependencies)
        ]
        return sorted(ready, key=lambda step: ranks[step.id])

    def _all_settled(self, execution: WorkflowExecution) -> bool:
        return all(s.status in _SETTLED for s in execution.step_states.values())

    async def _advance(self, execution: WorkflowExecution) -> None:
        """Enqueue every ready step, or finish the execution if nothing is left."""
        if execution.status is not ExecutionStatus.RUNNING:
            return
        if self._all_settled(execution):
            await self._finalize(execution, ExecutionStatus.COMPLETED)
            return

        ready = self._ready_steps(execution)
        now = utcnow()
        for step in ready:
            state = execution.step_states[step.id]
            state.status = StepStatus.QUEUED
            state.job_id = step_job_id(execution.id, step.id)
            state.queued_at = now

        options = self._execution_options.get(execution.id) or ExecutionOptions()
        for step in ready:
            state = execution.step_states[step.id]
            # pause or cancel may land while an earlier add_job was awaited
            if execution.status is not ExecutionStatus.RUNNING:
                state.status = StepStatus.PENDING
                state.job_id = None
                state.queued_at = None
                continue
            job = JobData(
                id=state.job_id,
                type=step.type.value,
                payload=self._job_payload(execution, step),
                options=JobOptions(
                    priority=options.priority,
                    timeout=step.timeout or options.timeout or self.config.default_timeout,
                    retry_policy=step.retry_policy,
                ),
            )
            try:
                await self.queue_manager.add_job(step.queue_name.value, job)
            except TaskweaveError as exc:
                await self._fail(execution, f"Failed to enqueue step {step.id}: {exc}")
                return
            execution.current_step = step.id
            self._log(execution, "info", f"Step {step.id} queued on {step.queue_name.value}", step.id)
        await self._persist(execution)

    def _job_payload(self, execution: WorkflowExecution, step: StepDef) -> Dict[str, Any]:
        return {
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "step_id": step.id,
            "step_name": step.name,
            "step_type": step.type.value,
            "config": dict(step.config),
            "input": execution.input.model_dump(mode="json"),
            "dependencies": {
                dep: execution.step_states[dep].output for dep in step.dependencies
            },
        }

    def _locate(self, job: JobStatus) -> Optional[tuple[WorkflowExecution, StepState]]:
        execution = self._executions.get(job.payload.get("execution_id", ""))
        if execution is None:
            return None
        state = execution.step_states.get(job.payload.get("step_id", ""))
        if state is None or state.job_id != job.id:
            return None
        if execution.status.is_terminal:
            logger.debug(f"Discarding outcome of job {job.id}; execution {execution.id} is {execution.status.value}")
            return None
        if state.status in _SETTLED:
            return None
        return execution, state

    async def _on_job_completed(self, job: JobStatus, result: Any) -> None:
        located = self._locate(job)
        if located is None:
            return
        execution, state = located
        state.status = StepStatus.COMPLETED
        state.output = result
        state.error = None
        state.completed_at = utcnow()
        self._log(execution, "info", f"Step {state.step_id} completed", state.step_id)
        self._update_progress(execution)
        if execution.status is ExecutionStatus.PAUSED:
            await self._persist(execution)
            return
        await self._advance(execution)

    async def _on_job_failed(self, job: JobStatus, reason: str) -> None:
        located = self._locate(job)
        if located is None:
            return
        execution, state = located
        state.status = StepStatus.FAILED
        state.error = reason
        state.completed_at = utcnow()
        self._log(execution, "error", f"Step {state.step_id} failed: {reason}", state.step_id)

        step = self._execution_defs[execution.id].get_step(state.step_id)
        if step is None or not step.continue_on_failure:
            await self._fail(execution, f"Step {state.step_id} failed: {reason}")
            return

        for skipped in self._dependants(execution.id, state.step_id):
            dependant = execution.step_states[skipped]
            if dependant.status is StepStatus.PENDING:
                dependant.status = StepStatus.SKIPPED
                self._log(execution, "warn", f"Step {skipped} skipped after {state.step_id} failed", skipped)
        self._update_progress(execution)
        if execution.status is ExecutionStatus.PAUSED:
            await self._persist(execution)
            return
        await self._advance(execution)

    async def _on_job_retrying(self, job: JobStatus, reason: str, delay: int) -> None:
        located = self._locate(job)
        if located is None:
            return
        execution, state = located
        self._log(
            execution,
            "warn",
            f"Step {state.step_id} attempt {job.attempts} failed: {reason}; retrying in {delay}ms",
            state.step_id,
        )
        await self._persist(execution)

    def _dependants(self, execution_id: str, step_id: str) -> Set[str]:
        """Every step that depends on ``step_id``, directly or transitively."""
        steps = self._execution_defs[execution_id].steps
        found: Set[str] = set()
        frontier = [step_id]
        while frontier:
            current = frontier.pop()
            for step in steps:
                if current in step.dependencies and step.id not in found:
                    found.add(step.id)
                    frontier.append(step.id)
        return found

    def _update_progress(self, execution: WorkflowExecution) -> None:
        total = len(execution.step_states)
        settled = sum(1 for s in execution.step_states.values() if s.status in _SETTLED)
        execution.progress = int(100 * settled / total) if total else 100
        execution.updated_at = utcnow()
        self.events.publish("progress", execution.snapshot())

    async def _withdraw_waiting_jobs(self, execution: WorkflowExecution) -> None:
        for state in execution.step_states.values():
            if state.status is StepStatus.QUEUED and state.job_id:
                if await self.queue_manager.remove_job(state.job_id):
                    state.status = StepStatus.PENDING
                    state.job_id = None
                    state.queued_at = None

    async def _fail(self, execution: WorkflowExecution, reason: str) -> None:
        if execution.status.is_terminal:
            return
        execution.status = ExecutionStatus.FAILED
        await self._withdraw_waiting_jobs(execution)
        await self._finalize(execution, ExecutionStatus.FAILED, [reason])

    async def _finalize(
        self,
        execution: WorkflowExecution,
        status: ExecutionStatus,
        extra_errors: Iterable[str] = (),
    ) -> None:
        if execution.result is not None:
            return
        now = utcnow()
        execution.status = status
        execution.completed_at = now
        execution.updated_at = now
        if status is ExecutionStatus.COMPLETED:
            execution.progress = 100

        errors = list(extra_errors)
        for state in execution.step_states.values():
            if state.status is StepStatus.FAILED:
                message = f"Step {state.step_id} failed: {state.error}"
                if message not in errors:
                    errors.append(message)
        started = execution.started_at or execution.created_at
        execution.result = WorkflowResult(
            execution_id=execution.id,
            status=status,
            outputs={
                s.step_id: s.output
                for s in execution.step_states.values()
                if s.status is StepStatus.COMPLETED
            },
            errors=errors,
            started_at=execution.started_at,
            completed_at=now,
            duration=(now - started).total_seconds() * 1000,
        )
        level = "info" if status is ExecutionStatus.COMPLETED else "error"
        self._log(execution, level, f"Workflow execution {status.value}")
        await self._persist(execution)

        self._execution_options.pop(execution.id, None)
        future = self._waiters.pop(execution.id, None)
        if future is not None and not future.done():
            future.set_result(None)

        snapshot = execution.snapshot()
        if status is ExecutionStatus.COMPLETED:
            self.events.publish("complete", snapshot)
        else:
            error = WorkflowExecutionError(execution.id, status.value, errors)
            self.events.publish("error", snapshot, error)
        await self._release_slots()

    async def _release_slots(self) -> None:
        while self._pending and self._running_count() < self.config.max_concurrent_workflows:
            execution = self._executions.get(self._pending.popleft())
            if execution is not None and execution.status is ExecutionStatus.PENDING:
                await self._begin(execution)

    # ------------------------------------------------------------------
    # Execution control
    async def pause_workflow(self, execution_id: str) -> bool:
        """Stop enqueuing newly ready steps.

        Jobs already on a queue, including ones waiting out a retry backoff,
        keep running and their outcomes are recorded.
        """
        execution = self._executions.get(execution_id)
        if execution is None or execution.status is not ExecutionStatus.RUNNING:
            return False
        execution.status = ExecutionStatus.PAUSED
        self._log(execution, "info", "Workflow execution paused")
        await self._persist(execution)
        return True

    async def resume_workflow(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status is not ExecutionStatus.PAUSED:
            return False
        execution.status = ExecutionStatus.RUNNING
        self._log(execution, "info", "Workflow execution resumed")
        await self._advance(execution)
        return True

    async def cancel_workflow(self, execution_id: str) -> bool:
        """Cancel a live execution. Jobs already running are not interrupted."""
        execution = self._executions.get(execution_id)
        if execution is None or execution.status.is_terminal:
            return False
        if execution.status is ExecutionStatus.PENDING and execution_id in self._pending:
            self._pending.remove(execution_id)
        execution.status = ExecutionStatus.CANCELLED
        await self._withdraw_waiting_jobs(execution)
        await self._finalize(execution, ExecutionStatus.CANCELLED, ["Execution cancelled"])
        return True

    async def retry_workflow(self, execution_id: str) -> Optional[str]:
        """Start a fresh high-priority execution with the input of a failed one."""
        execution = await self.get_workflow_execution(execution_id)
        if execution is None or execution.status not in (
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        ):
            return None
        return await self._start_execution(
            execution.workflow_id,
            execution.input,
            ExecutionOptions(priority=Priority.HIGH),
            retry_of=execution_id,
        )

    # ------------------------------------------------------------------
    # Monitoring
    async def get_workflow_status(self, execution_id: str) -> Optional[ExecutionStatus]:
        execution = await self.get_workflow_execution(execution_id)
        return execution.status if execution else None

    async def get_workflow_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self._executions.get(execution_id)
        if execution is not None:
            return execution.snapshot()
        return await self.repository.get_execution(execution_id)

    async def list_active_workflows(self) -> List[WorkflowExecution]:
        return [
            e.snapshot()
            for e in self._executions.values()
            if e.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
        ]

    async def get_execution_history(
        self, workflow_id: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> List[WorkflowExecution]:
        merged: Dict[str, WorkflowExecution] = {
            e.id: e for e in await self.repository.list_executions(workflow_id)
        }
        for execution in self._executions.values():
            if workflow_id is None or execution.workflow_id == workflow_id:
                merged[execution.id] = execution.snapshot()
        history = sorted(merged.values(), key=lambda e: e.created_at, reverse=True)
        return history[:limit]

    async def get_workflow_metrics(self, workflow_id: str) -> WorkflowMetrics:
        executions = await self.get_execution_history(workflow_id, limit=2**31)
        total = len(executions)
        completed = [e for e in executions if e.status is ExecutionStatus.COMPLETED]
        failed = [e for e in executions if e.status is ExecutionStatus.FAILED]
        durations = [
            e.result.duration
            for e in completed
            if e.result is not None and e.result.duration
        ]
        return WorkflowMetrics(
            workflow_id=workflow_id,
            total_executions=total,
            success_rate=len(completed) / total if total else 0.0,
            error_rate=len(failed) / total if total else 0.0,
            average_duration=sum(durations) / len(durations) if durations else 0.0,
            last_execution=executions[0].created_at if executions else None,
        )

    async def get_system_metrics(self) -> SystemMetrics:
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        executions = list(self._executions.values())
        active = sum(1 for e in executions if e.status is ExecutionStatus.RUNNING)
        todays = [e for e in executions if e.created_at >= today]
        queue_stats = await self.queue_manager.get_system_stats()
        return SystemMetrics(
            active_workflows=active,
            pending_workflows=len(self._pending),
            queued_jobs=sum(q.waiting + q.delayed for q in queue_stats.queues.values()),
            active_jobs=queue_stats.total_active,
            completed_today=sum(1 for e in todays if e.status is ExecutionStatus.COMPLETED),
            failed_today=sum(1 for e in todays if e.status is ExecutionStatus.FAILED),
            system_load=active / self.config.max_concurrent_workflows,
        )

    # ------------------------------------------------------------------
    # Maintenance
    async def test_workflow(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        input: Union[WorkflowInput, Mapping[str, Any], None] = None,
    ) -> DryRunResult:
        """Run ``definition`` once under a temporary id, then remove it."""
        validation = self.validate_workflow(definition)
        if not validation.valid:
            return DryRunResult(success=False, errors=validation.errors)

        if isinstance(definition, WorkflowDefinition):
            data = definition.model_dump(mode="json", by_alias=True)
        else:
            data = dict(definition)
        data.update(
            id=f"test-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}",
            enabled=True,
            triggers=[],
            schedule=None,
        )
        try:
            await self.create_workflow(data)
            try:
                result = await self.execute_workflow(data["id"], input)
            finally:
                await self.delete_workflow(data["id"])
        except WorkflowExecutionError as exc:
            return DryRunResult(success=False, errors=exc.errors or [str(exc)])
        except InvalidWorkflowError as exc:
            return DryRunResult(success=False, errors=exc.errors)
        except TaskweaveError as exc:
            return DryRunResult(success=False, errors=[str(exc)])
        return DryRunResult(success=True, result=result)

    async def update_engine_config(self, **changes: Any) -> EngineSettings:
        self.config = EngineSettings.model_validate({**self.config.model_dump(), **changes})
        logger.info(f"Engine config updated: {changes}")
        await self._release_slots()
        return self.config.model_copy(deep=True)

    async def get_engine_config(self) -> EngineSettings:
        return self.config.model_copy(deep=True)

    async def _purge(self, predicate: Callable[[WorkflowExecution], bool]) -> int:
        candidates: Dict[str, WorkflowExecution] = {
            e.id: e for e in await self.repository.list_executions()
        }
        candidates.update(self._executions)
        doomed = [
            e.id
            for e in candidates.values()
            if e.status in TERMINAL_STATUSES and predicate(e)
        ]
        for execution_id in doomed:
            self._executions.pop(execution_id, None)
            self._execution_defs.pop(execution_id, None)
            self._step_ranks.pop(execution_id, None)
        await self.repository.delete_executions(doomed)
        return len(doomed)

    async def cleanup_completed_executions(self, older_than: datetime) -> int:
        """Forget finished executions last updated before ``older_than``."""
        removed = await self._purge(lambda e: e.updated_at < older_than)
        logger.info(f"Removed {removed} finished executions older than {older_than}")
        return removed

    async def archive_workflow_data(self, workflow_id: str, older_than: datetime) -> bool:
        removed = await self._purge(
            lambda e: e.workflow_id == workflow_id and e.updated_at < older_than
        )
        logger.info(f"Archived {removed} executions of {workflow_id}")
        return True

    # ------------------------------------------------------------------
    # Events
    def on_workflow_start(self, callback: Callable[[WorkflowExecution], Any]) -> Subscription:
        return self.events.subscribe("start", callback)

    def on_workflow_complete(self, callback: Callable[[WorkflowExecution], Any]) -> Subscription:
        return self.events.subscribe("complete", callback)

    def on_workflow_error(
        self, callback: Callable[[WorkflowExecution, Exception], Any]
    ) -> Subscription:
        return self.events.subscribe("error", callback)

    def on_workflow_progress(self, callback: Callable[[WorkflowExecution], Any]) -> Subscription:
        return self.events.subscribe("progress", callback)

    def on_watcher_error(
        self, callback: Callable[[FileWatcherRegistration, Exception], Any]
    ) -> Subscription:
        return self.events.subscribe("watcher_error", callback)

    # ------------------------------------------------------------------
    def _log(
        self,
        execution: WorkflowExecution,
        level: str,
        message: str,
        step_id: Optional[str] = None,
        data: Any = None,
    ) -> None:
        execution.logs.append(LogEntry(level=level, message=message, step_id=step_id, data=data))
        execution.updated_at = utcnow()
        log_level = {"warn": logging.WARNING}.get(level, logging.getLevelName(level.upper()))
        logger.log(log_level, f"[{execution.id}] {message}")

    async def _persist(self, execution: WorkflowExecution) -> None:
        try:
            await self.repository.save_execution(execution)
        except Exception:
            logger.exception(f"Failed to persist execution {execution.id}")
