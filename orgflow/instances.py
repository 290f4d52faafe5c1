"""Read-side queries over workflow instances."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .contracts import (
    ApprovalRecord,
    Delegation,
    Escalation,
    InstanceState,
    StepInstance,
    StepStatus,
    WorkflowInstance,
)
from .errors import InstanceNotFound
from .persistence import WorkflowRepository

USER_ROLES = ("initiator", "assignee", "participant", "all")


class InstanceDetail(BaseModel):
    """An instance with everything recorded against it."""

    instance: WorkflowInstance
    steps: List[StepInstance] = Field(default_factory=list)
    delegations: List[Delegation] = Field(default_factory=list)
    escalations: List[Escalation] = Field(default_factory=list)
    approvals: List[ApprovalRecord] = Field(default_factory=list)

    @property
    def current_steps(self) -> List[StepInstance]:
        return [s for s in self.steps if s.status == StepStatus.IN_PROGRESS]


class InstanceQueries:
    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def get(self, instance_id: str) -> WorkflowInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def detail(self, instance_id: str) -> InstanceDetail:
        instance = await self.get(instance_id)
        steps = await self._repository.list_steps(instance_id)
        approvals: List[ApprovalRecord] = []
        for step in steps:
            approvals.extend(await self._repository.list_approvals(step.id))
        return InstanceDetail(
            instance=instance,
            steps=steps,
            delegations=await self._repository.list_delegations(instance_id=instance_id),
            escalations=await self._repository.list_escalations(instance_id=instance_id),
            approvals=approvals,
        )

    async def list(
        self,
        definition_id: Optional[str] = None,
        state: Optional[InstanceState] = None,
        initiator_id: Optional[str] = None,
    ) -> List[WorkflowInstance]:
        """Instances matching the filters, newest first."""
        return await self._repository.list_instances(
            definition_id=definition_id,
            initiator_id=initiator_id,
            states=[state] if state is not None else None,
        )

    async def for_user(self, user_id: str, role: str = "all") -> List[WorkflowInstance]:
        """Instances a user is involved in.

        ``initiator`` started by the user; ``assignee`` with a pending or
        in-progress step assigned to the user; ``participant`` additionally
        counts past assignments, approvals and delegations; ``all`` is
        initiated or ever assigned.
        """
        if role not in USER_ROLES:
            raise ValueError(f"role must be one of {', '.join(USER_ROLES)}")

        result = []
        for instance in await self._repository.list_instances():
            if await self._involves(instance, user_id, role):
                result.append(instance)
        return result

    async def _involves(self, instance: WorkflowInstance, user_id: str, role: str) -> bool:
        initiated = instance.initiator_id == user_id
        if role == "initiator":
            return initiated
        if initiated and role != "assignee":
            return True

        steps = await self._repository.list_steps(instance.id)
        if role == "assignee":
            return any(
                s.assignee_id == user_id
                and s.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS)
                for s in steps
            )
        if any(s.assignee_id == user_id for s in steps):
            return True
        if role == "all":
            return False

        for step in steps:
            approvals = await self._repository.list_approvals(step.id)
            if any(a.approver_id == user_id for a in approvals):
                return True
        delegations = await self._repository.list_delegations(instance_id=instance.id)
        return any(user_id in (d.from_user_id, d.to_user_id) for d in delegations)

    async def statistics(
        self,
        definition_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        instances: Sequence[WorkflowInstance] = await self._repository.list_instances(
            definition_id=definition_id
        )
        if start is not None or end is not None:
            instances = [
                i
                for i in instances
                if i.started_at is not None
                and (start is None or i.started_at >= start)
                and (end is None or i.started_at <= end)
            ]

        durations = [
            (i.completed_at - i.started_at).total_seconds() / 3600
            for i in instances
            if i.completed_at is not None and i.started_at is not None
        ]
        return {
            "total": len(instances),
            "by_state": dict(Counter(i.state.value for i in instances)),
            "by_priority": dict(Counter(i.metadata.priority.value for i in instances)),
            "avg_duration_hours": sum(durations) / len(durations) if durations else 0.0,
        }
