"""Core record contracts for the orgflow workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import AUTO_COMPLETING_STEP_TYPES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class StepType(str, Enum):
    APPROVAL = "approval"
    ACTION = "action"
    CONDITION = "condition"
    NOTIFICATION = "notification"
    PARALLEL = "parallel"
    WAIT = "wait"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.IN_PROGRESS)


class InstanceState(str, Enum):
    INITIALIZED = "INITIALIZED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class TriggerType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"
    EVENT = "event"


class DefinitionStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class ApprovalStrategy(str, Enum):
    ANY = "ANY"
    ALL = "ALL"
    THRESHOLD = "THRESHOLD"


class ApprovalDecision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ConditionExpression(BaseModel):
    """Single ``field operator value`` comparison."""

    field: str
    operator: str
    value: Any = None


class StepDefinition(BaseModel):
    """Defines one step of a workflow definition."""

    id: str
    name: str
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    # ``None`` continues with the following step in definition order; an
    # explicit empty list ends the branch.
    next_steps: Optional[List[str]] = None
    condition: Optional[ConditionExpression] = None
    allow_delegation: bool = False
    allow_escalation: bool = False
    timeout_seconds: Optional[int] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @property
    def auto_completes(self) -> bool:
        return self.type.value in AUTO_COMPLETING_STEP_TYPES

    @property
    def approval_strategy(self) -> ApprovalStrategy:
        raw = self.config.get("approval_strategy")
        if raw is None:
            # A required count above one implies a threshold
            if int(self.config.get("required_approvals", 1)) > 1:
                return ApprovalStrategy.THRESHOLD
            return ApprovalStrategy.ANY
        return ApprovalStrategy(str(raw).upper())

    @property
    def required_approvals(self) -> int:
        return int(self.config.get("required_approvals", 1))


class GatingConditions(BaseModel):
    """Predicates evaluated when a scheduled trigger fires.

    ``day_of_week`` uses cron numbering: 0 is Sunday, 6 is Saturday.
    """

    day_of_week: Optional[List[int]] = None
    business_days_only: bool = False


class TriggerConfig(BaseModel):
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    conditions: Optional[GatingConditions] = None
    default_data: Dict[str, Any] = Field(default_factory=dict)
    default_context: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    event_type: Optional[str] = None


class SlaConfig(BaseModel):
    response_hours: Optional[float] = None
    escalation_hours: Optional[float] = None
    max_duration_hours: Optional[float] = None


class WorkflowDefinition(BaseModel):
    """Administrator-authored workflow template."""

    id: str = Field(default_factory=new_id)
    name: str
    code: str
    description: Optional[str] = None
    category: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    sla_config: SlaConfig = Field(default_factory=SlaConfig)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: DefinitionStatus = DefinitionStatus.DRAFT
    is_template: bool = False
    version: int = 1
    created_by: Optional[str] = None
    modified_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == DefinitionStatus.ACTIVE and self.deleted_at is None

    def step(self, step_id: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.id == step_id), None)


class InstanceMetadata(BaseModel):
    tags: List[str] = Field(default_factory=list)
    priority: Priority = Priority.NORMAL
    parent_instance_id: Optional[str] = None
    cancellation_reason: Optional[str] = None


class WorkflowInstance(BaseModel):
    """One execution of a workflow definition."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    definition_version: int = 1
    workflow_name: str = ""
    initiator_id: str
    state: InstanceState = InstanceState.INITIALIZED
    data: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    metadata: InstanceMetadata = Field(default_factory=InstanceMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (
            InstanceState.COMPLETED,
            InstanceState.CANCELLED,
            InstanceState.FAILED,
        )

    def variables(self) -> Dict[str, Any]:
        """Business payload merged with context, context taking precedence."""
        return {**self.data, **self.context}


class StepInstance(BaseModel):
    """Runtime record of one step inside an instance."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_index: int
    definition: StepDefinition
    status: StepStatus = StepStatus.PENDING
    assignee_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Bumped by every compare-and-set write
    revision: int = 0

    @property
    def definition_id(self) -> str:
        return self.definition.id


class Delegation(BaseModel):
    id: str = Field(default_factory=new_id)
    instance_id: str
    step_instance_id: str
    from_user_id: str
    to_user_id: str
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Active and not past its expiry."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


class Escalation(BaseModel):
    id: str = Field(default_factory=new_id)
    instance_id: str
    step_instance_id: str
    from_user_id: Optional[str] = None
    to_user_id: str
    level: int = 1
    reason: Optional[str] = None
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)


class ApprovalRecord(BaseModel):
    """Individual approve/reject decision against an approval step."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_instance_id: str
    approver_id: str
    decision: ApprovalDecision
    comments: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class StepResult(BaseModel):
    """Outcome of processing an action against a step."""

    status: StepStatus
    data: Dict[str, Any] = Field(default_factory=dict)
    # Decision stored together with the step write
    approval: Optional[ApprovalRecord] = Field(default=None, exclude=True)
