"""Core data contracts for taskweave workflows."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic.alias_generators import to_camel

from .constants import (
    DEFAULT_CONCURRENCY,
    DEFAULT_INITIAL_DELAY_MS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_MS,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------------------------------------------------------
# Closed enumerations


class StepType(str, Enum):
    DOCUMENT_ANALYSIS = "document-analysis"
    REQUIREMENT_EXTRACTION = "requirement-extraction"
    ESTIMATION = "estimation"
    COMMUNICATION_GENERATION = "communication-generation"
    FILE_OPERATION = "file-operation"
    NOTIFICATION = "notification"


class QueueName(str, Enum):
    DOCUMENT_PROCESSING = "document-processing"
    AI_ANALYSIS = "ai-analysis"
    WORKFLOW_EXECUTION = "workflow-execution"
    FILE_OPERATIONS = "file-operations"
    NOTIFICATIONS = "notifications"


STEP_QUEUES: Dict[StepType, QueueName] = {
    StepType.DOCUMENT_ANALYSIS: QueueName.DOCUMENT_PROCESSING,
    StepType.REQUIREMENT_EXTRACTION: QueueName.AI_ANALYSIS,
    StepType.ESTIMATION: QueueName.AI_ANALYSIS,
    StepType.COMMUNICATION_GENERATION: QueueName.AI_ANALYSIS,
    StepType.FILE_OPERATION: QueueName.FILE_OPERATIONS,
    StepType.NOTIFICATION: QueueName.NOTIFICATIONS,
}


class Priority(str, Enum):
    """Queue priority tiers, highest first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is dequeued first."""
        return list(Priority).index(self)

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        if value is None:
            return cls.MEDIUM
        if isinstance(value, cls):
            return value
        normalized = str(value).lower()
        # "critical" existed as a fourth tier in older clients
        if normalized == "critical":
            return cls.HIGH
        return cls(normalized)


class BackoffStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# ----------------------------------------------------------------------
# Retry policy


class RetryPolicy(CamelModel):
    """How a failed job attempt is retried. Delays are in milliseconds."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: int = Field(default=DEFAULT_INITIAL_DELAY_MS, ge=0)
    max_delay: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)

    def compute_delay(self, attempt: int) -> int:
        """Return the delay before retry number ``attempt`` (1-based)."""
        attempt = max(1, attempt)
        if self.backoff_strategy is BackoffStrategy.LINEAR:
            delay = self.initial_delay * attempt
        else:
            delay = self.initial_delay * 2 ** (attempt - 1)
        return min(delay, self.max_delay)


# ----------------------------------------------------------------------
# Step configuration, one shape per step type


class _StepConfigBase(CamelModel):
    model_config = ConfigDict(extra="allow")


class DocumentAnalysisConfig(_StepConfigBase):
    kind: Literal["document-analysis"] = "document-analysis"
    document_path: Optional[str] = None
    extract_text: bool = True
    extract_images: bool = False
    preserve_formatting: bool = True
    identify_headers: bool = False
    extract_tables: bool = False
    find_key_points: bool = False


class RequirementExtractionConfig(_StepConfigBase):
    kind: Literal["requirement-extraction"] = "requirement-extraction"
    categorize: bool = False
    prioritize: bool = False
    categories: List[str] = Field(default_factory=list)


class EstimationConfig(_StepConfigBase):
    kind: Literal["estimation"] = "estimation"
    factors: List[str] = Field(default_factory=list)
    include_risk_factors: bool = False
    confidence_level: float = Field(default=0.8, ge=0.0, le=1.0)


class CommunicationGenerationConfig(_StepConfigBase):
    kind: Literal["communication-generation"] = "communication-generation"
    operation: str = "summarization"
    template: Optional[str] = None
    length: Optional[Literal["short", "medium", "long"]] = None
    include_breakdown: bool = False


class FileOperationConfig(_StepConfigBase):
    kind: Literal["file-operation"] = "file-operation"
    operation: Literal["copy", "move", "delete", "archive", "read", "write"]
    destination: Optional[str] = None
    overwrite: bool = False


class NotificationConfig(_StepConfigBase):
    kind: Literal["notification"] = "notification"
    channel: str = "log"
    recipient: Optional[str] = None
    message: Optional[str] = None
    severity: Literal["info", "warning", "error"] = "info"


StepConfig = Annotated[
    Union[
        DocumentAnalysisConfig,
        RequirementExtractionConfig,
        EstimationConfig,
        CommunicationGenerationConfig,
        FileOperationConfig,
        NotificationConfig,
    ],
    Field(discriminator="kind"),
]

_STEP_CONFIG_ADAPTER: TypeAdapter = TypeAdapter(StepConfig)


def parse_step_config(
    step_type: StepType | str, config: Optional[Mapping[str, Any]] = None
) -> StepConfig:
    """Validate ``config`` against the shape registered for ``step_type``.

    Raises:
        ValueError: If ``step_type`` is unknown.
        pydantic.ValidationError: If the configuration does not match.
    """
    data = dict(config or {})
    data["kind"] = StepType(step_type).value
    return _STEP_CONFIG_ADAPTER.validate_python(data)


# ----------------------------------------------------------------------
# Definitions


class StepDef(CamelModel):
    """One step of a workflow."""

    id: str
    name: str
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[int] = Field(default=None, ge=1)
    continue_on_failure: bool = False
    template: Optional[str] = None

    @property
    def queue_name(self) -> QueueName:
        return STEP_QUEUES[self.type]

    def typed_config(self) -> StepConfig:
        return parse_step_config(self.type, self.config)


class CronSchedule(CamelModel):
    expression: str = Field(
        validation_alias=AliasChoices("expression", "cron_expression", "cronExpression")
    )
    timezone: str = "UTC"


class FileWatchTriggerConfig(CamelModel):
    path: str
    pattern: Optional[str] = None
    ignore_pattern: Optional[str] = None
    recursive: bool = False


class ScheduleTriggerConfig(CamelModel):
    cron_expression: str = Field(
        validation_alias=AliasChoices("cron_expression", "cronExpression", "expression")
    )
    timezone: str = "UTC"


class ManualTrigger(CamelModel):
    type: Literal["manual"] = "manual"
    config: Dict[str, Any] = Field(default_factory=dict)


class FileWatchTrigger(CamelModel):
    type: Literal["file-watch"] = "file-watch"
    config: FileWatchTriggerConfig


class ScheduleTrigger(CamelModel):
    type: Literal["schedule"] = "schedule"
    config: ScheduleTriggerConfig


TriggerDef = Annotated[
    Union[ManualTrigger, FileWatchTrigger, ScheduleTrigger],
    Field(discriminator="type"),
]

TRIGGER_ADAPTER: TypeAdapter = TypeAdapter(TriggerDef)


class WorkflowDefinition(CamelModel):
    """Declarative description of a workflow and its step graph."""

    id: str
    name: str
    description: str = ""
    steps: List[StepDef] = Field(default_factory=list)
    triggers: List[TriggerDef] = Field(default_factory=list)
    schedule: Optional[CronSchedule] = None
    enabled: bool = True
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_step(self, step_id: str) -> Optional[StepDef]:
        return next((s for s in self.steps if s.id == step_id), None)

    @property
    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]


class DefinitionSettings(CamelModel):
    default_timeout: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    concurrency: int = DEFAULT_CONCURRENCY


class DefinitionFile(CamelModel):
    """On-disk layout of the versioned workflow definition file."""

    version: str
    workflows: List[Dict[str, Any]] = Field(default_factory=list)
    templates: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    settings: DefinitionSettings = Field(default_factory=DefinitionSettings)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Executions


class WorkflowInput(CamelModel):
    files: List[str] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class ExecutionOptions(CamelModel):
    """Per-execution knobs supplied by the caller."""

    priority: Priority = Priority.MEDIUM
    timeout: Optional[int] = Field(default=None, ge=1)
    wait_timeout: Optional[float] = Field(default=None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value: Any) -> Priority:
        return Priority.parse(value)


class LogEntry(CamelModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: Literal["debug", "info", "warn", "error"] = "info"
    message: str
    step_id: Optional[str] = None
    data: Any = None


class StepState(CamelModel):
    step_id: str
    status: StepStatus = StepStatus.PENDING
    job_id: Optional[str] = None
    output: Any = None
    error: Optional[str] = None
    queued_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowResult(CamelModel):
    execution_id: str
    status: ExecutionStatus
    outputs: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None


class WorkflowExecution(CamelModel):
    """Runtime record of one workflow run. Written only by the engine."""

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: WorkflowInput = Field(default_factory=WorkflowInput)
    current_step: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    logs: List[LogEntry] = Field(default_factory=list)
    result: Optional[WorkflowResult] = None
    step_states: Dict[str, StepState] = Field(default_factory=dict)
    retry_of: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> "WorkflowExecution":
        return self.model_copy(deep=True)


class DryRunResult(BaseModel):
    success: bool
    result: Optional[WorkflowResult] = None
    errors: List[str] = Field(default_factory=list)


class WorkflowMetrics(CamelModel):
    workflow_id: str
    total_executions: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    average_duration: float = 0.0
    last_execution: Optional[datetime] = None


class SystemMetrics(CamelModel):
    active_workflows: int = 0
    pending_workflows: int = 0
    queued_jobs: int = 0
    active_jobs: int = 0
    completed_today: int = 0
    failed_today: int = 0
    system_load: float = 0.0


# ----------------------------------------------------------------------
# Trigger registrations


class ScheduledTrigger(CamelModel):
    workflow_id: str
    cron_expression: str
    timezone: str = "UTC"
    next_run: Optional[datetime] = None
    enabled: bool = True

    @property
    def schedule(self) -> CronSchedule:
        return CronSchedule(expression=self.cron_expression, timezone=self.timezone)


class FileWatcherRegistration(CamelModel):
    id: str
    workflow_id: str
    path: str
    recursive: bool = False
    file_pattern: Optional[str] = None
    ignore_pattern: Optional[str] = None
    active: bool = True
    last_error: Optional[str] = None
