"""Cron-driven creation of workflow instances."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, tzinfo
from typing import Callable, Dict, List, Optional

import pytz
from croniter import croniter
from pydantic import BaseModel

from .constants import DEFAULT_TIMEZONE, SYSTEM_USER
from .contracts import GatingConditions, WorkflowDefinition, utcnow
from .execution import ExecutionCoordinator
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

SATURDAY = 6
SUNDAY = 0


class ScheduleStatus(BaseModel):
    """Registration and last-firing outcome for one scheduled definition."""

    definition_id: str
    scheduled: bool = False
    cron_expression: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    next_fire_at: Optional[datetime] = None
    last_fired_at: Optional[datetime] = None
    last_outcome: Optional[str] = None
    last_instance_id: Optional[str] = None
    last_error: Optional[str] = None


def cron_weekday(moment: datetime) -> int:
    """Day of week in cron numbering (0 is Sunday)."""
    return moment.isoweekday() % 7


def passes_gates(conditions: Optional[GatingConditions], moment: datetime) -> bool:
    if conditions is None:
        return True
    weekday = cron_weekday(moment)
    if conditions.business_days_only and weekday in (SATURDAY, SUNDAY):
        return False
    if conditions.day_of_week is not None and weekday not in conditions.day_of_week:
        return False
    return True


class WorkflowScheduler:
    """Owns one timer task per scheduled workflow definition.

    Timers live in ``self._timers`` keyed by definition id. A failing
    firing is logged and recorded in the definition's status; the timer
    keeps running until it is stopped or re-registered.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        coordinator: ExecutionCoordinator,
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._coordinator = coordinator
        self._default_timezone = default_timezone
        self._clock = clock
        self._timers: Dict[str, asyncio.Task] = {}
        self._status: Dict[str, ScheduleStatus] = {}

    # ------------------------------------------------------------------
    async def start(self) -> int:
        """Register a timer for every active definition with a cron expression."""
        count = 0
        for definition in await self._repository.list_definitions():
            if not definition.is_active or not definition.trigger_config.cron_expression:
                continue
            try:
                self.schedule_workflow(definition)
            except ValueError:
                logger.exception(f"Failed to schedule workflow {definition.id}")
                continue
            count += 1
        logger.info(f"Scheduler started with {count} scheduled workflows")
        return count

    def _timezone(self, definition: WorkflowDefinition) -> tzinfo:
        name = definition.trigger_config.timezone or self._default_timezone
        try:
            return pytz.timezone(name)
        except pytz.UnknownTimeZoneError as exc:
            raise ValueError(f"Unknown timezone {name!r}") from exc

    def schedule_workflow(self, definition: WorkflowDefinition) -> ScheduleStatus:
        """Register (or replace) the timer for ``definition``.

        The expression and timezone are validated before an existing timer
        is replaced, so a bad update leaves the previous schedule running.
        """
        expression = definition.trigger_config.cron_expression
        if not expression or not croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression {expression!r} for {definition.id}")
        tz = self._timezone(definition)

        self.stop(definition.id)
        status = ScheduleStatus(
            definition_id=definition.id,
            scheduled=True,
            cron_expression=expression,
            timezone=str(tz),
            next_fire_at=croniter(expression, datetime.now(tz)).get_next(datetime),
        )
        previous = self._status.get(definition.id)
        if previous is not None:
            status.last_fired_at = previous.last_fired_at
            status.last_outcome = previous.last_outcome
            status.last_instance_id = previous.last_instance_id
            status.last_error = previous.last_error
        self._status[definition.id] = status
        self._timers[definition.id] = asyncio.create_task(
            self._run(definition.id, expression, tz)
        )
        logger.info(
            f"Scheduled workflow {definition.id} with '{expression}' ({tz}); "
            f"next run at {status.next_fire_at}"
        )
        return status

    async def refresh(self, definition: WorkflowDefinition) -> None:
        """Re-register after a definition change, or stop when no longer scheduled."""
        if definition.is_active and definition.trigger_config.cron_expression:
            try:
                self.schedule_workflow(definition)
            except ValueError:
                logger.exception(f"Failed to schedule workflow {definition.id}")
        else:
            self.stop(definition.id)

    async def _run(self, definition_id: str, expression: str, tz: tzinfo) -> None:
        iterator = croniter(expression, datetime.now(tz))
        while True:
            fire_at = iterator.get_next(datetime)
            self._status[definition_id].next_fire_at = fire_at
            delay = (fire_at - datetime.now(tz)).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.fire(definition_id, now=fire_at)

    async def fire(self, definition_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """Run one firing for ``definition_id``; return the new instance id, if any."""
        status = self._status.setdefault(
            definition_id, ScheduleStatus(definition_id=definition_id)
        )
        now = now or self._clock()
        status.last_fired_at = now
        status.last_instance_id = None
        status.last_error = None

        try:
            definition = await self._repository.get_definition(definition_id)
            if definition is None or not definition.is_active:
                logger.info(f"Skipping scheduled run of {definition_id}: not active")
                status.last_outcome = "skipped"
                return None

            local_now = now.astimezone(self._timezone(definition))
            trigger = definition.trigger_config
            if not passes_gates(trigger.conditions, local_now):
                logger.info(
                    f"Skipping scheduled run of {definition_id}: gating conditions "
                    f"not met at {local_now.isoformat()}"
                )
                status.last_outcome = "skipped"
                return None

            instance = await self._coordinator.execute(
                definition.id,
                SYSTEM_USER,
                data=dict(trigger.default_data),
                context={**trigger.default_context, "triggered_by": "scheduler"},
                priority=trigger.priority,
                tags=["scheduled"],
            )
        except Exception as exc:
            logger.exception(f"Scheduled execution of workflow {definition_id} failed")
            status.last_outcome = "failed"
            status.last_error = str(exc)
            return None

        logger.info(f"Scheduled workflow {definition_id} started instance {instance.id}")
        status.last_outcome = "executed"
        status.last_instance_id = instance.id
        return instance.id

    # ------------------------------------------------------------------
    def stop(self, definition_id: str) -> bool:
        """Cancel the timer for ``definition_id``. Safe to call repeatedly."""
        task = self._timers.pop(definition_id, None)
        status = self._status.get(definition_id)
        if status is not None:
            status.scheduled = False
            status.next_fire_at = None
        if task is None:
            return False
        task.cancel()
        logger.info(f"Stopped schedule for workflow {definition_id}")
        return True

    async def stop_all(self) -> None:
        tasks = list(self._timers.values())
        for definition_id in list(self._timers):
            self.stop(definition_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_scheduled(self, definition_id: str) -> bool:
        return definition_id in self._timers

    def status(self, definition_id: str) -> Optional[ScheduleStatus]:
        return self._status.get(definition_id)

    def statuses(self) -> List[ScheduleStatus]:
        return list(self._status.values())
