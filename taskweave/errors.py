"""Exception types raised by taskweave."""

from __future__ import annotations

from typing import Iterable, Optional


class TaskweaveError(Exception):
    """Base class for all taskweave errors."""


class DefinitionLoadError(TaskweaveError):
    """The workflow definition file could not be read or parsed."""


class ConfigVersionError(DefinitionLoadError):
    """The definition file declares a version outside the supported set."""

    def __init__(self, version: Optional[str]) -> None:
        self.version = version
        super().__init__(f"Incompatible workflow config version: {version}")


class InvalidWorkflowError(TaskweaveError):
    """A workflow definition failed validation."""

    def __init__(self, errors: Iterable[str], message: str = "Invalid workflow") -> None:
        self.errors = list(errors)
        super().__init__(f"{message}: {', '.join(self.errors)}")


class WorkflowNotFoundError(TaskweaveError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class WorkflowDisabledError(TaskweaveError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow is disabled: {workflow_id}")


class WorkflowExecutionError(TaskweaveError):
    """An execution finished in a non-successful terminal state."""

    def __init__(self, execution_id: str, status: str, errors: Iterable[str] = ()) -> None:
        self.execution_id = execution_id
        self.status = status
        self.errors = list(errors)
        detail = ", ".join(self.errors) or "Unknown error"
        super().__init__(f"Workflow {status}: {detail}")


class InvalidScheduleError(TaskweaveError):
    def __init__(self, expression: str, reason: str = "") -> None:
        self.expression = expression
        message = f"Invalid cron expression: {expression}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class QueueNotFoundError(TaskweaveError):
    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"Queue not found: {queue_name}")


class ProcessorNotFoundError(TaskweaveError):
    def __init__(self, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(f"No processor registered for job type: {job_type}")


class JobTimeoutError(TaskweaveError):
    def __init__(self, job_id: str, timeout_ms: int) -> None:
        self.job_id = job_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Job {job_id} timed out after {timeout_ms}ms")


class FileWatcherError(TaskweaveError):
    """A file watcher could not be created."""


__all__ = [
    "TaskweaveError",
    "DefinitionLoadError",
    "ConfigVersionError",
    "InvalidWorkflowError",
    "WorkflowNotFoundError",
    "WorkflowDisabledError",
    "WorkflowExecutionError",
    "InvalidScheduleError",
    "QueueNotFoundError",
    "ProcessorNotFoundError",
    "JobTimeoutError",
    "FileWatcherError",
]
