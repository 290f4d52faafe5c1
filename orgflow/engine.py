"""Composition root wiring every engine component together."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import OrgflowConfig, load_config
from .contracts import (
    Delegation,
    Escalation,
    Priority,
    StepResult,
    WorkflowInstance,
    utcnow,
)
from .definitions import DefinitionService
from .delegation import DelegationManager
from .directory import Directory, InMemoryDirectory
from .execution import ExecutionCoordinator
from .instances import InstanceQueries
from .notifications import LoggingNotifier, Notifier, WorkflowNotificationService
from .persistence import WorkflowRepository, get_repository
from .scheduler import WorkflowScheduler
from .steps import ActionHandler, StepProcessor
from .validation import WorkflowValidator

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Facade over the workflow components sharing one repository."""

    def __init__(
        self,
        repository: WorkflowRepository,
        directory: Optional[Directory] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[OrgflowConfig] = None,
        action_handlers: Optional[Dict[str, ActionHandler]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or OrgflowConfig()
        self.repository = repository
        self.directory = directory if directory is not None else InMemoryDirectory()
        self.notifier = notifier if notifier is not None else LoggingNotifier()

        self.notifications = WorkflowNotificationService(self.notifier, self.directory)
        self.validator = WorkflowValidator(repository, self.directory, clock=clock)
        self.processor = StepProcessor(
            repository, self.notifications, action_handlers=action_handlers, clock=clock
        )
        self.coordinator = ExecutionCoordinator(
            repository,
            self.notifications,
            self.validator,
            self.processor,
            auto_complete_delay=self.config.engine.auto_complete_delay,
            clock=clock,
        )
        self.delegations = DelegationManager(
            repository,
            self.directory,
            self.validator,
            self.notifications,
            escalation_fallback_to_owner=self.config.engine.escalation_fallback_to_owner,
            clock=clock,
        )
        self.scheduler = WorkflowScheduler(
            repository,
            self.coordinator,
            default_timezone=self.config.scheduler.default_timezone,
            clock=clock,
        )
        self.definitions = DefinitionService(repository, clock=clock)
        self.instances = InstanceQueries(repository)

    @classmethod
    def from_config(
        cls,
        config: Optional[OrgflowConfig] = None,
        database_url: Optional[str] = None,
        **kwargs: Any,
    ) -> "WorkflowEngine":
        config = config or load_config()
        repository = get_repository(database_url=database_url, config=config)
        return cls(repository, config=config, **kwargs)

    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Resume stranded automatic steps, then start cron timers.

        Timers are kept in sync with definition changes while running.
        """
        await self.coordinator.recover()
        if not self.config.scheduler.enabled:
            logger.info("Scheduler disabled by configuration")
            return
        self.definitions.scheduler = self.scheduler
        await self.scheduler.start()

    async def shutdown(self) -> None:
        self.definitions.scheduler = None
        await self.scheduler.stop_all()
        await self.coordinator.shutdown()

    def register_action(self, name: str, handler: ActionHandler) -> None:
        self.processor.register_action(name, handler)

    # ------------------------------------------------------------------
    async def execute(
        self,
        workflow_id: str,
        initiator_id: str,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        priority: Priority = Priority.NORMAL,
        tags: Optional[List[str]] = None,
        skip_validation: bool = False,
    ) -> WorkflowInstance:
        return await self.coordinator.execute(
            workflow_id,
            initiator_id,
            data=data,
            context=context,
            priority=priority,
            tags=tags,
            skip_validation=skip_validation,
        )

    async def process_step(
        self,
        instance_id: str,
        step_id: str,
        action: str,
        user_id: str,
        data: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None,
    ) -> StepResult:
        return await self.coordinator.process_step(
            instance_id, step_id, action, user_id, data=data, comments=comments
        )

    async def pause(self, instance_id: str, user_id: Optional[str] = None) -> WorkflowInstance:
        return await self.coordinator.pause(instance_id, user_id)

    async def resume(self, instance_id: str, user_id: Optional[str] = None) -> WorkflowInstance:
        return await self.coordinator.resume(instance_id, user_id)

    async def cancel(
        self, instance_id: str, reason: Optional[str] = None, user_id: Optional[str] = None
    ) -> WorkflowInstance:
        return await self.coordinator.cancel(instance_id, reason, user_id)

    async def delegate(
        self,
        instance_id: str,
        step_id: str,
        from_user_id: str,
        to_user_id: str,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Delegation:
        return await self.delegations.delegate(
            instance_id, step_id, from_user_id, to_user_id, reason, expires_at
        )

    async def revoke_delegation(self, delegation_id: str, user_id: str) -> Delegation:
        return await self.delegations.revoke_delegation(delegation_id, user_id)

    async def escalate(
        self,
        instance_id: str,
        step_id: str,
        escalation_level: int = 1,
        reason: Optional[str] = None,
        target_user_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Escalation:
        return await self.delegations.escalate(
            instance_id, step_id, escalation_level, reason, target_user_id, user_id
        )

    async def get_user_delegations(
        self, user_id: str, direction: str = "all", active_only: bool = True
    ) -> List[Delegation]:
        return await self.delegations.get_user_delegations(user_id, direction, active_only)
