"""taskweave: queue-backed workflow orchestration for document pipelines."""

from .config import load_config
from .contracts import (
    ExecutionOptions,
    ExecutionStatus,
    Priority,
    StepDef,
    StepType,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowInput,
    WorkflowResult,
)
from .definitions import get_definition_store
from .engine import WorkflowEngine
from .persistence import get_repository
from .processors import JobProcessorRegistry, ProcessorInfo
from .queue import QueueManager, create_queue_manager, get_job_store

__version__ = "0.1.0"
__all__ = [
    "ExecutionOptions",
    "ExecutionStatus",
    "JobProcessorRegistry",
    "Priority",
    "ProcessorInfo",
    "QueueManager",
    "StepDef",
    "StepType",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "WorkflowInput",
    "WorkflowResult",
    "create_queue_manager",
    "get_definition_store",
    "get_job_store",
    "get_repository",
    "load_config",
]
