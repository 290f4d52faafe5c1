"""Delegation and escalation of step responsibility."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .constants import SYSTEM_USER
from .contracts import Delegation, Escalation, StepInstance, StepStatus, utcnow
from .directory import Directory
from .errors import (
    AlreadyInactive,
    CannotResolveEscalationTarget,
    DelegationNotFound,
    EscalationNotAllowed,
    InstanceNotFound,
    InvalidStepState,
    NotOwner,
    StepNotFound,
    TargetUserInvalid,
)
from .notifications import WorkflowNotificationService
from .persistence import WorkflowRepository
from .validation import WorkflowValidator

logger = logging.getLogger(__name__)

DIRECTIONS = ("from", "to", "all")


class DelegationManager:
    """Reassigns step responsibility by delegation or escalation.

    Assignee changes are written with a compare-and-set on the step's
    current status so they cannot overwrite a concurrent completion.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        directory: Directory,
        validator: WorkflowValidator,
        notifications: WorkflowNotificationService,
        escalation_fallback_to_owner: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._validator = validator
        self._notifications = notifications
        self._fallback_to_owner = escalation_fallback_to_owner
        self._clock = clock

    async def _get_step(self, instance_id: str, step_id: str) -> StepInstance:
        if await self._repository.get_instance(instance_id) is None:
            raise InstanceNotFound(instance_id)
        step = await self._repository.get_step(step_id)
        if step is None or step.instance_id != instance_id:
            raise StepNotFound(step_id, instance_id)
        return step

    async def _reassign(self, step: StepInstance, assignee_id: Optional[str]) -> StepInstance:
        updated = step.model_copy(update={"assignee_id": assignee_id})
        if not await self._repository.transition_step(updated, step.status):
            current = await self._repository.get_step(step.id)
            raise InvalidStepState(step.id, current.status.value if current else "MISSING")
        return updated

    # ------------------------------------------------------------------
    # Delegation
    async def delegate(
        self,
        instance_id: str,
        step_id: str,
        from_user_id: str,
        to_user_id: str,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Delegation:
        step = await self._get_step(instance_id, step_id)
        await self._validator.validate_delegation(step, from_user_id, to_user_id)

        delegation = Delegation(
            instance_id=instance_id,
            step_instance_id=step.id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            reason=reason,
            expires_at=expires_at,
            created_at=self._clock(),
        )
        await self._reassign(step, to_user_id)
        await self._repository.create_delegation(delegation)
        logger.info(f"Step {step.id} delegated from {from_user_id} to {to_user_id}")
        await self._notifications.delegation_created(delegation)
        return delegation

    async def revoke_delegation(self, delegation_id: str, user_id: str) -> Delegation:
        delegation = await self._repository.get_delegation(delegation_id)
        if delegation is None:
            raise DelegationNotFound(delegation_id)
        if delegation.from_user_id != user_id:
            raise NotOwner("Only the delegator can revoke this delegation")
        if not delegation.is_active:
            raise AlreadyInactive(f"Delegation {delegation_id} is already inactive")

        await self._deactivate(delegation, user_id)
        logger.info(f"Delegation {delegation_id} revoked by {user_id}")
        return delegation

    async def _deactivate(self, delegation: Delegation, revoked_by: str) -> None:
        delegation.is_active = False
        delegation.revoked_at = self._clock()
        delegation.revoked_by = revoked_by
        await self._repository.update_delegation(delegation)

        step = await self._repository.get_step(delegation.step_instance_id)
        if step is None or step.status.is_terminal:
            return
        if step.assignee_id == delegation.to_user_id:
            await self._reassign(step, delegation.from_user_id)

    async def get_user_delegations(
        self, user_id: str, direction: str = "all", active_only: bool = True
    ) -> List[Delegation]:
        """Delegations given (``from``), received (``to``) or both, newest first."""
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {', '.join(DIRECTIONS)}")
        active = True if active_only else None
        found = {}
        if direction in ("from", "all"):
            for d in await self._repository.list_delegations(from_user_id=user_id, active=active):
                found[d.id] = d
        if direction in ("to", "all"):
            for d in await self._repository.list_delegations(to_user_id=user_id, active=active):
                found[d.id] = d
        return sorted(found.values(), key=lambda d: d.created_at, reverse=True)

    async def expire_delegations(self, now: Optional[datetime] = None) -> List[Delegation]:
        """Deactivate delegations past their expiry and hand steps back."""
        now = now or self._clock()
        expired = []
        for delegation in await self._repository.list_delegations(active=True):
            if delegation.expires_at is None or delegation.expires_at > now:
                continue
            await self._deactivate(delegation, SYSTEM_USER)
            expired.append(delegation)
            logger.info(f"Delegation {delegation.id} expired")
        return expired

    # ------------------------------------------------------------------
    # Escalation
    async def escalate(
        self,
        instance_id: str,
        step_id: str,
        escalation_level: int = 1,
        reason: Optional[str] = None,
        target_user_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Escalation:
        step = await self._get_step(instance_id, step_id)
        if step.status not in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
            raise InvalidStepState(step.id, step.status.value)
        if not step.definition.allow_escalation:
            raise EscalationNotAllowed("Escalation is not allowed for this step")
        if escalation_level < 1:
            raise EscalationNotAllowed("Escalation level must be at least 1")

        if target_user_id:
            target = await self._directory.get_user(target_user_id)
            if target is None or not target.is_active:
                raise TargetUserInvalid(f"Target user {target_user_id} not found or inactive")
        else:
            target_user_id = await self._resolve_target(step, escalation_level)

        previous = step.assignee_id
        escalation = Escalation(
            instance_id=instance_id,
            step_instance_id=step.id,
            from_user_id=previous,
            to_user_id=target_user_id,
            level=escalation_level,
            reason=reason,
            created_by=user_id or SYSTEM_USER,
            created_at=self._clock(),
        )
        updated = step.model_copy(
            update={
                "assignee_id": target_user_id,
                "metadata": {
                    **step.metadata,
                    "escalated": True,
                    "escalation_id": escalation.id,
                    "escalation_level": escalation_level,
                },
            }
        )
        if not await self._repository.transition_step(updated, step.status):
            current = await self._repository.get_step(step.id)
            raise InvalidStepState(step.id, current.status.value if current else "MISSING")
        await self._repository.create_escalation(escalation)

        # Escalation supersedes any delegation still in force on the step
        for delegation in await self._repository.list_delegations(
            step_instance_id=step.id, active=True
        ):
            delegation.is_active = False
            delegation.revoked_at = self._clock()
            delegation.revoked_by = escalation.created_by
            await self._repository.update_delegation(delegation)

        logger.info(
            f"Step {step.id} escalated from {previous} to {target_user_id} "
            f"(level {escalation_level})"
        )
        await self._notifications.escalation_created(escalation)
        return escalation

    async def _resolve_target(self, step: StepInstance, levels: int) -> str:
        if step.assignee_id:
            for position in await self._directory.positions_of(step.assignee_id):
                target = await self._walk_up(position, levels, step.assignee_id)
                if target:
                    return target

        if self._fallback_to_owner:
            instance = await self._repository.get_instance(step.instance_id)
            definition = (
                await self._repository.get_definition(instance.definition_id)
                if instance
                else None
            )
            if definition and definition.created_by and definition.created_by != step.assignee_id:
                logger.info(
                    f"No hierarchy target for step {step.id}; falling back to "
                    f"workflow owner {definition.created_by}"
                )
                return definition.created_by

        raise CannotResolveEscalationTarget(
            f"Cannot determine escalation target for step {step.id}"
        )

    async def _walk_up(self, position: str, levels: int, exclude: str) -> Optional[str]:
        current: Optional[str] = position
        for _ in range(levels):
            current = await self._directory.reports_to(current) if current else None
            if current is None:
                return None
        holders = [h for h in await self._directory.position_holders(current) if h != exclude]
        return holders[0] if holders else None
