"""Validation rules applied before executing, processing and delegating."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence

from .constants import SYSTEM_USER
from .contracts import (
    InstanceState,
    StepDefinition,
    StepInstance,
    StepStatus,
    WorkflowDefinition,
    utcnow,
)
from .directory import Directory
from .errors import (
    DelegationNotAllowed,
    InvalidStepState,
    NotAssignee,
    NotAuthorized,
    TargetUserInvalid,
    ValidationFailed,
)
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

ACTIVE_INSTANCE_STATES = (
    InstanceState.INITIALIZED,
    InstanceState.IN_PROGRESS,
    InstanceState.WAITING,
)


class WorkflowValidator:
    """Checks permissions, required data and limits for engine operations."""

    def __init__(
        self,
        repository: WorkflowRepository,
        directory: Directory,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._clock = clock

    async def validate_execution(
        self,
        definition: WorkflowDefinition,
        data: Dict[str, Any],
        context: Dict[str, Any],
        user_id: str,
    ) -> None:
        """Raise ``ValidationFailed`` or ``NotAuthorized`` if ``user_id`` may not run it."""
        if user_id != SYSTEM_USER:
            allowed = await self._directory.can(
                user_id,
                "workflow.execute",
                {"workflow_id": definition.id, "category": definition.category},
            )
            if not allowed:
                raise NotAuthorized(
                    f"User {user_id} does not have permission to execute this workflow"
                )

        payload = {**data, **context}
        missing = [
            field
            for field in definition.metadata.get("required_fields", [])
            if payload.get(field) in (None, "")
        ]
        if missing:
            raise ValidationFailed(
                f"Required field missing: {', '.join(missing)}",
                [f"Required field missing: {field}" for field in missing],
            )

        limits = definition.metadata.get("execution_limits") or {}
        if limits.get("daily"):
            now = self._clock()
            start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
            instances = await self._repository.list_instances(
                definition_id=definition.id, initiator_id=user_id
            )
            today = [i for i in instances if i.created_at >= start_of_day]
            if len(today) >= int(limits["daily"]):
                raise ValidationFailed("Daily execution limit reached")

        if limits.get("concurrent"):
            running = await self._repository.list_instances(
                definition_id=definition.id,
                initiator_id=user_id,
                states=ACTIVE_INSTANCE_STATES,
            )
            if len(running) >= int(limits["concurrent"]):
                raise ValidationFailed("Concurrent execution limit reached")

    async def authorize_step(self, step: StepInstance, user_id: str) -> None:
        """Raise ``NotAuthorized`` unless ``user_id`` may act on ``step``.

        A user may act when they are the current assignee, an active
        delegate, or hold the role or position the step requires. Steps
        with no assignee and no role or position requirement are open.
        """
        if step.assignee_id and step.assignee_id == user_id:
            return

        delegations = await self._repository.list_delegations(
            step_instance_id=step.id, to_user_id=user_id, active=True
        )
        now = self._clock()
        if any(d.is_effective(now) for d in delegations):
            return

        config = step.definition.config
        required_role = config.get("required_role")
        required_position = config.get("required_position")
        if required_role and await self._directory.has_role(user_id, required_role):
            return
        if required_position and await self._directory.has_position(
            user_id, required_position
        ):
            return

        if not step.assignee_id and not required_role and not required_position:
            return

        raise NotAuthorized(f"User {user_id} is not allowed to process step {step.id}")

    async def validate_delegation(
        self, step: StepInstance, from_user_id: str, to_user_id: str
    ) -> None:
        if step.status not in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
            raise InvalidStepState(step.id, step.status.value)
        if not step.definition.allow_delegation:
            raise DelegationNotAllowed("Delegation is not allowed for this step")
        if step.assignee_id != from_user_id:
            raise NotAssignee(f"User {from_user_id} is not assigned to step {step.id}")
        if to_user_id == from_user_id:
            raise TargetUserInvalid("Cannot delegate a step to its current assignee")

        target = await self._directory.get_user(to_user_id)
        if target is None or not target.is_active:
            raise TargetUserInvalid(f"Target user {to_user_id} not found or inactive")

        required_permission = step.definition.config.get("required_permission")
        if required_permission and not await self._directory.can(
            to_user_id, required_permission, {"step_instance_id": step.id}
        ):
            raise TargetUserInvalid(
                f"Target user {to_user_id} lacks permission {required_permission}"
            )

        active = await self._repository.list_delegations(
            step_instance_id=step.id, active=True
        )
        if active:
            raise DelegationNotAllowed(
                f"Step {step.id} already has an active delegation {active[0].id}"
            )


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise ``ValidationFailed`` if the step graph is not runnable."""
    errors: List[str] = []
    steps = definition.steps
    if not steps:
        errors.append("Workflow must have at least one step")

    step_ids = [s.id for s in steps]
    duplicates = sorted({i for i in step_ids if step_ids.count(i) > 1})
    for step_id in duplicates:
        errors.append(f"Duplicate step id {step_id}")

    known = set(step_ids)
    targeted = set()
    for index, step in enumerate(steps):
        for next_id in successor_ids(steps, index):
            if next_id not in known:
                errors.append(f"Step {step.id} references non-existent step {next_id}")
            targeted.add(next_id)

    if steps and all(s.id in targeted for s in steps):
        errors.append("Workflow must have at least one start step")

    if errors:
        raise ValidationFailed(
            f"Workflow validation failed: {', '.join(errors)}", errors
        )


def successor_ids(steps: Sequence[StepDefinition], index: int) -> List[str]:
    """Step-definition ids that follow the step at ``index``."""
    step = steps[index]
    if step.next_steps is not None:
        return list(step.next_steps)
    if index + 1 < len(steps):
        return [steps[index + 1].id]
    return []
