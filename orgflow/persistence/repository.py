"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

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


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Getters return detached copies; callers persist changes explicitly.
    """

    # Definitions -------------------------------------------------------
    async def create_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a new workflow definition."""

    async def update_definition(self, definition: WorkflowDefinition) -> None:
        """Replace a stored workflow definition."""

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id, including soft-deleted ones."""

    async def list_definitions(
        self, include_deleted: bool = False
    ) -> list[WorkflowDefinition]:
        """Return definitions, newest first."""

    # Instances ---------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        """Persist a new workflow instance."""

    async def update_instance(self, instance: WorkflowInstance) -> None:
        """Replace a stored workflow instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve a workflow instance by id."""

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        initiator_id: Optional[str] = None,
        states: Optional[Iterable[InstanceState]] = None,
    ) -> list[WorkflowInstance]:
        """Return instances matching all given filters, newest first."""

    # Steps -------------------------------------------------------------
    async def create_steps(self, steps: list[StepInstance]) -> None:
        """Persist step instances in bulk."""

    async def get_step(self, step_id: str) -> StepInstance | None:
        """Retrieve a step instance by id."""

    async def list_steps(self, instance_id: str) -> list[StepInstance]:
        """Return the steps of an instance ordered by step index."""

    async def update_step(self, step: StepInstance) -> None:
        """Replace a stored step without checking its status."""

    async def transition_step(
        self,
        step: StepInstance,
        expected: StepStatus,
        approval: Optional[ApprovalRecord] = None,
    ) -> bool:
        """Store ``step`` only if the persisted record is the one it was read from.

        The write succeeds when the persisted status equals ``expected`` and
        the persisted revision equals ``step.revision``. On success the
        revision is bumped on both the stored record and ``step``, and
        ``approval`` (if given) is recorded in the same write. Returns
        ``False`` when another writer changed the step first.
        """

    # Delegations / escalations ----------------------------------------
    async def create_delegation(self, delegation: Delegation) -> None:
        """Persist a delegation record."""

    async def update_delegation(self, delegation: Delegation) -> None:
        """Replace a stored delegation record."""

    async def get_delegation(self, delegation_id: str) -> Delegation | None:
        """Retrieve a delegation by id."""

    async def list_delegations(
        self,
        step_instance_id: Optional[str] = None,
        from_user_id: Optional[str] = None,
        to_user_id: Optional[str] = None,
        active: Optional[bool] = None,
        instance_id: Optional[str] = None,
    ) -> list[Delegation]:
        """Return delegations matching all given filters, newest first."""

    async def create_escalation(self, escalation: Escalation) -> None:
        """Persist an escalation record."""

    async def list_escalations(
        self,
        step_instance_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> list[Escalation]:
        """Return escalations, newest first."""

    # Approvals ---------------------------------------------------------
    async def add_approval(self, approval: ApprovalRecord) -> None:
        """Persist an individual approval decision."""

    async def list_approvals(self, step_instance_id: str) -> list[ApprovalRecord]:
        """Return approval decisions for a step in recording order."""
