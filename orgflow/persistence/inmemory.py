"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ..contracts import (
    ApprovalRecord,
    Delegation,
    Escalation,
    InstanceState,
    StepInstance,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._steps: Dict[str, StepInstance] = {}
        self._delegations: Dict[str, Delegation] = {}
        self._escalations: Dict[str, Escalation] = {}
        self._approvals: List[ApprovalRecord] = []

    # ------------------------------------------------------------------
    async def create_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def update_definition(self, definition: WorkflowDefinition) -> None:
        if definition.id in self._definitions:
            self._definitions[definition.id] = definition.model_copy(deep=True)

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(definition_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(
        self, include_deleted: bool = False
    ) -> list[WorkflowDefinition]:
        return [
            d.model_copy(deep=True)
            for d in reversed(list(self._definitions.values()))
            if include_deleted or d.deleted_at is None
        ]

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def update_instance(self, instance: WorkflowInstance) -> None:
        if instance.id in self._instances:
            self._instances[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        initiator_id: Optional[str] = None,
        states: Optional[Iterable[InstanceState]] = None,
    ) -> list[WorkflowInstance]:
        wanted = set(states) if states is not None else None
        results = []
        for instance in reversed(list(self._instances.values())):
            if definition_id and instance.definition_id != definition_id:
                continue
            if initiator_id and instance.initiator_id != initiator_id:
                continue
            if wanted is not None and instance.state not in wanted:
                continue
            results.append(instance.model_copy(deep=True))
        return results

    # ------------------------------------------------------------------
    async def create_steps(self, steps: list[StepInstance]) -> None:
        for step in steps:
            self._steps[step.id] = step.model_copy(deep=True)

    async def get_step(self, step_id: str) -> StepInstance | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, instance_id: str) -> list[StepInstance]:
        steps = [s for s in self._steps.values() if s.instance_id == instance_id]
        steps.sort(key=lambda s: s.step_index)
        return [s.model_copy(deep=True) for s in steps]

    async def update_step(self, step: StepInstance) -> None:
        if step.id in self._steps:
            self._steps[step.id] = step.model_copy(deep=True)

    async def transition_step(
        self,
        step: StepInstance,
        expected: StepStatus,
        approval: Optional[ApprovalRecord] = None,
    ) -> bool:
        # No await between the check and the write, so this is atomic on the loop
        current = self._steps.get(step.id)
        if current is None or current.status != expected or current.revision != step.revision:
            return False
        step.revision += 1
        self._steps[step.id] = step.model_copy(deep=True)
        if approval is not None:
            self._approvals.append(approval.model_copy(deep=True))
        return True

    # ------------------------------------------------------------------
    async def create_delegation(self, delegation: Delegation) -> None:
        self._delegations[delegation.id] = delegation.model_copy(deep=True)

    async def update_delegation(self, delegation: Delegation) -> None:
        if delegation.id in self._delegations:
            self._delegations[delegation.id] = delegation.model_copy(deep=True)

    async def get_delegation(self, delegation_id: str) -> Delegation | None:
        delegation = self._delegations.get(delegation_id)
        return delegation.model_copy(deep=True) if delegation else None

    async def list_delegations(
        self,
        step_instance_id: Optional[str] = None,
        from_user_id: Optional[str] = None,
        to_user_id: Optional[str] = None,
        active: Optional[bool] = None,
        instance_id: Optional[str] = None,
    ) -> list[Delegation]:
        results = []
        for d in reversed(list(self._delegations.values())):
            if step_instance_id and d.step_instance_id != step_instance_id:
                continue
            if from_user_id and d.from_user_id != from_user_id:
                continue
            if to_user_id and d.to_user_id != to_user_id:
                continue
            if active is not None and d.is_active != active:
                continue
            if instance_id and d.instance_id != instance_id:
                continue
            results.append(d.model_copy(deep=True))
        return results

    async def create_escalation(self, escalation: Escalation) -> None:
        self._escalations[escalation.id] = escalation.model_copy(deep=True)

    async def list_escalations(
        self,
        step_instance_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> list[Escalation]:
        return [
            e.model_copy(deep=True)
            for e in reversed(list(self._escalations.values()))
            if (not step_instance_id or e.step_instance_id == step_instance_id)
            and (not instance_id or e.instance_id == instance_id)
        ]

    # ------------------------------------------------------------------
    async def add_approval(self, approval: ApprovalRecord) -> None:
        self._approvals.append(approval.model_copy(deep=True))

    async def list_approvals(self, step_instance_id: str) -> list[ApprovalRecord]:
        return [
            a.model_copy(deep=True)
            for a in self._approvals
            if a.step_instance_id == step_instance_id
        ]
