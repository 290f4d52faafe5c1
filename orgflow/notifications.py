"""Best-effort notification delivery for workflow events."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from pydantic import BaseModel, Field

from .contracts import (
    Delegation,
    Escalation,
    StepInstance,
    WorkflowInstance,
)
from .directory import Directory

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Fire-and-forget delivery channel (email, push, in-app...)."""

    async def notify(
        self,
        recipient_ids: Set[str],
        type: str,
        title: str,
        body: str,
        metadata: Dict[str, Any],
    ) -> None:
        """Deliver a notification to every recipient."""


class Notification(BaseModel):
    recipient_ids: Set[str]
    type: str
    title: str
    body: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InMemoryNotifier(Notifier):
    """Collects notifications in a list. Used by tests and the CLI."""

    def __init__(self) -> None:
        self.sent: List[Notification] = []

    async def notify(
        self,
        recipient_ids: Set[str],
        type: str,
        title: str,
        body: str,
        metadata: Dict[str, Any],
    ) -> None:
        self.sent.append(
            Notification(
                recipient_ids=set(recipient_ids),
                type=type,
                title=title,
                body=body,
                metadata=dict(metadata),
            )
        )

    def of_type(self, type: str) -> List[Notification]:
        return [n for n in self.sent if n.type == type]


class LoggingNotifier(Notifier):
    """Writes notifications to the log instead of delivering them."""

    async def notify(
        self,
        recipient_ids: Set[str],
        type: str,
        title: str,
        body: str,
        metadata: Dict[str, Any],
    ) -> None:
        logger.info(f"[{type}] {title} -> {sorted(recipient_ids)}: {body}")


class WorkflowNotificationService:
    """Builds workflow notifications and delivers them without failing callers.

    Delivery errors are logged and swallowed: a state transition that has
    already been persisted is never rolled back because a notification
    could not be sent.
    """

    def __init__(self, notifier: Notifier, directory: Directory) -> None:
        self._notifier = notifier
        self._directory = directory

    async def _send(
        self,
        recipients: Iterable[Optional[str]],
        type: str,
        title: str,
        body: str,
        metadata: Dict[str, Any],
    ) -> bool:
        recipient_ids = {r for r in recipients if r}
        if not recipient_ids:
            return False
        try:
            await self._notifier.notify(recipient_ids, type, title, body, metadata)
        except Exception:
            logger.exception(f"Failed to deliver {type} notification to {sorted(recipient_ids)}")
            return False
        logger.debug(f"Sent {type} notification to {sorted(recipient_ids)}")
        return True

    async def _display_name(self, user_id: str) -> str:
        try:
            user = await self._directory.get_user(user_id)
        except Exception:
            logger.exception(f"Directory lookup failed for user {user_id}")
            return user_id
        return user.name if user and user.name else user_id

    @staticmethod
    def _instance_metadata(instance: WorkflowInstance) -> Dict[str, Any]:
        return {
            "instance_id": instance.id,
            "workflow_id": instance.definition_id,
            "workflow_name": instance.workflow_name,
        }

    # ------------------------------------------------------------------
    async def workflow_started(self, instance: WorkflowInstance) -> None:
        await self._send(
            [instance.initiator_id],
            "WORKFLOW_STARTED",
            "Workflow Started",
            f'Your workflow "{instance.workflow_name}" has been started.',
            self._instance_metadata(instance),
        )

    async def workflow_completed(self, instance: WorkflowInstance) -> None:
        await self._send(
            [instance.initiator_id],
            "WORKFLOW_COMPLETED",
            "Workflow Completed",
            f'Your workflow "{instance.workflow_name}" has been completed successfully.',
            self._instance_metadata(instance),
        )

    async def workflow_failed(self, instance: WorkflowInstance, error: str) -> None:
        await self._send(
            [instance.initiator_id],
            "WORKFLOW_FAILED",
            "Workflow Failed",
            f'Your workflow "{instance.workflow_name}" has failed: {error}',
            {**self._instance_metadata(instance), "error": error},
        )

    async def workflow_cancelled(
        self, instance: WorkflowInstance, reason: Optional[str] = None
    ) -> None:
        body = f'Your workflow "{instance.workflow_name}" has been cancelled.'
        if reason:
            body += f" Reason: {reason}"
        await self._send(
            [instance.initiator_id],
            "WORKFLOW_CANCELLED",
            "Workflow Cancelled",
            body,
            {**self._instance_metadata(instance), "cancellation_reason": reason},
        )

    async def step_assigned(self, instance: WorkflowInstance, step: StepInstance) -> None:
        if not step.assignee_id:
            return
        await self._send(
            [step.assignee_id],
            "STEP_ASSIGNED",
            "New Task Assigned",
            f'You have been assigned to "{step.definition.name}" in workflow '
            f'"{instance.workflow_name}".',
            {
                **self._instance_metadata(instance),
                "step_instance_id": step.id,
                "step_name": step.definition.name,
            },
        )

    async def step_notification(
        self, instance: WorkflowInstance, step: StepInstance
    ) -> Set[str]:
        """Send the custom notification configured on a notification step.

        Returns the computed recipient set.
        """
        config = step.definition.config
        try:
            recipients = await self.resolve_recipients(instance, config)
        except Exception:
            logger.exception(f"Failed to resolve notification recipients for step {step.id}")
            return set()
        await self._send(
            recipients,
            config.get("type", "WORKFLOW_NOTIFICATION"),
            config.get("title", "Workflow Notification"),
            config.get("content", "You have a workflow notification."),
            {
                "instance_id": instance.id,
                "step_instance_id": step.id,
                **config.get("metadata", {}),
            },
        )
        return recipients

    async def resolve_recipients(
        self, instance: WorkflowInstance, config: Dict[str, Any]
    ) -> Set[str]:
        recipients: Set[str] = set(config.get("user_ids", []))
        if config.get("roles"):
            recipients.update(await self._directory.users_with_roles(config["roles"]))
        if config.get("positions"):
            recipients.update(
                await self._directory.users_in_positions(config["positions"])
            )
        if config.get("include_initiator"):
            recipients.add(instance.initiator_id)
        return recipients

    async def delegation_created(self, delegation: Delegation) -> None:
        metadata = {
            "delegation_id": delegation.id,
            "instance_id": delegation.instance_id,
            "step_instance_id": delegation.step_instance_id,
        }
        from_name = await self._display_name(delegation.from_user_id)
        to_name = await self._display_name(delegation.to_user_id)
        body = f"{from_name} has delegated a task to you."
        if delegation.reason:
            body += f" Reason: {delegation.reason}"
        await self._send(
            [delegation.to_user_id], "TASK_DELEGATED", "Task Delegated to You", body, metadata
        )
        await self._send(
            [delegation.from_user_id],
            "DELEGATION_CONFIRMED",
            "Task Delegation Confirmed",
            f"Your task has been successfully delegated to {to_name}.",
            metadata,
        )

    async def escalation_created(self, escalation: Escalation) -> None:
        metadata = {
            "escalation_id": escalation.id,
            "instance_id": escalation.instance_id,
            "step_instance_id": escalation.step_instance_id,
            "escalation_level": escalation.level,
        }
        body = "A task has been escalated to you."
        if escalation.reason:
            body += f" Reason: {escalation.reason}"
        await self._send(
            [escalation.to_user_id], "TASK_ESCALATED", "Task Escalated to You", body, metadata
        )
        if escalation.from_user_id:
            to_name = await self._display_name(escalation.to_user_id)
            await self._send(
                [escalation.from_user_id],
                "ESCALATION_CONFIRMED",
                "Task Escalated",
                f"Your task has been escalated to {to_name}.",
                metadata,
            )
