"""Execution coordinator: owns the workflow instance lifecycle."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .conditions import evaluate_condition
from .constants import DEFAULT_AUTO_COMPLETE_DELAY, SYSTEM_USER
from .contracts import (
    InstanceMetadata,
    InstanceState,
    Priority,
    StepInstance,
    StepResult,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    utcnow,
)
from .errors import (
    DefinitionNotFound,
    InstanceNotFound,
    InvalidStepState,
    InvalidTransition,
    StepNotFound,
    WorkflowError,
)
from .notifications import WorkflowNotificationService
from .persistence import WorkflowRepository
from .steps import StepContext, StepProcessor
from .validation import WorkflowValidator, successor_ids

logger = logging.getLogger(__name__)

OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.IN_PROGRESS)
DONE_STEP_STATUSES = (StepStatus.COMPLETED, StepStatus.SKIPPED)


def evaluation_data(instance: WorkflowInstance, steps: Iterable[StepInstance]) -> Dict[str, Any]:
    """Data that conditions are evaluated against.

    Instance data merged with its context, plus the results of completed
    steps under ``steps`` keyed by step-definition id.
    """
    data = instance.variables()
    data["steps"] = {
        s.definition_id: s.result or {}
        for s in steps
        if s.status == StepStatus.COMPLETED
    }
    return data


class ExecutionCoordinator:
    """Starts instances, applies step actions and advances the step graph.

    Automatic step types are completed by the system after
    ``auto_complete_delay`` seconds. Each deferred completion is a task
    keyed by step id; it is cancelled when the step leaves ``IN_PROGRESS``
    for any other reason and re-checks the persisted status before acting.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        notifications: WorkflowNotificationService,
        validator: WorkflowValidator,
        processor: StepProcessor,
        auto_complete_delay: float = DEFAULT_AUTO_COMPLETE_DELAY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._notifications = notifications
        self._validator = validator
        self._processor = processor
        self._auto_complete_delay = auto_complete_delay
        self._clock = clock
        self._auto_tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Execution
    async def resolve_definition(self, workflow_id: str) -> WorkflowDefinition:
        """Return the active definition whose id, name or code is ``workflow_id``."""
        definition = await self._repository.get_definition(workflow_id)
        if definition is not None and definition.is_active:
            return definition
        for candidate in await self._repository.list_definitions():
            if candidate.is_active and workflow_id in (candidate.name, candidate.code):
                return candidate
        raise DefinitionNotFound(workflow_id)

    async def execute(
        self,
        workflow_id: str,
        initiator_id: str,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        priority: Priority = Priority.NORMAL,
        tags: Optional[List[str]] = None,
        skip_validation: bool = False,
        parent_instance_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create and start a new instance of ``workflow_id``."""
        logger.info(f"Executing workflow {workflow_id} for {initiator_id}")
        definition = await self.resolve_definition(workflow_id)
        data = dict(data or {})
        context = dict(context or {})

        if not skip_validation:
            await self._validator.validate_execution(definition, data, context, initiator_id)

        instance = WorkflowInstance(
            definition_id=definition.id,
            definition_version=definition.version,
            workflow_name=definition.name,
            initiator_id=initiator_id,
            data=data,
            context=context,
            metadata=InstanceMetadata(
                tags=list(tags or []),
                priority=Priority(priority),
                parent_instance_id=parent_instance_id,
            ),
            created_at=self._clock(),
        )
        await self._repository.create_instance(instance)

        steps = [
            StepInstance(
                instance_id=instance.id,
                step_index=index,
                definition=step_def.model_copy(deep=True),
                assignee_id=step_def.config.get("assignee_id"),
            )
            for index, step_def in enumerate(definition.steps)
        ]
        await self._repository.create_steps(steps)

        instance.state = InstanceState.IN_PROGRESS
        instance.started_at = self._clock()
        await self._repository.update_instance(instance)
        logger.info(f"Started workflow instance {instance.id} with {len(steps)} steps")
        await self._notifications.workflow_started(instance)

        if steps:
            await self._activate_step(instance, steps[0])
        await self._check_completion(instance.id)
        return await self._require_instance(instance.id)

    async def process_step(
        self,
        instance_id: str,
        step_id: str,
        action: str,
        user_id: str,
        data: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None,
    ) -> StepResult:
        """Apply ``action`` by ``user_id`` against an in-progress step."""
        logger.info(f"Processing step {step_id} in instance {instance_id}: {action} by {user_id}")
        return await self._process(
            instance_id, step_id, action, user_id, dict(data or {}), comments, authorize=True
        )

    async def _process(
        self,
        instance_id: str,
        step_id: str,
        action: str,
        user_id: str,
        data: Dict[str, Any],
        comments: Optional[str],
        authorize: bool,
    ) -> StepResult:
        step = await self._repository.get_step(step_id)
        if step is None or step.instance_id != instance_id:
            raise StepNotFound(step_id, instance_id)
        instance = await self._require_instance(instance_id)

        if step.status != StepStatus.IN_PROGRESS:
            raise InvalidStepState(step.id, step.status.value)
        if instance.state != InstanceState.IN_PROGRESS:
            raise InvalidTransition(
                f"Cannot process steps of instance {instance_id} in state {instance.state.value}"
            )
        if authorize:
            await self._validator.authorize_step(step, user_id)

        steps = await self._repository.list_steps(instance_id)
        ctx = StepContext(
            instance=instance,
            step=step,
            action=action,
            data=data,
            user_id=user_id,
            comments=comments,
            variables=evaluation_data(instance, steps),
        )
        try:
            result = await self._processor.process(ctx)
        except WorkflowError:
            raise
        except Exception as exc:
            await self._fail_step(instance, step, exc)
            raise

        step.result = result.data
        if result.status != StepStatus.IN_PROGRESS:
            step.status = result.status
            step.completed_at = self._clock()
        if not await self._repository.transition_step(
            step, StepStatus.IN_PROGRESS, approval=result.approval
        ):
            current = await self._repository.get_step(step.id)
            status = current.status.value if current else "MISSING"
            raise InvalidStepState(step.id, status)

        if step.status != StepStatus.IN_PROGRESS:
            self._cancel_auto_complete(step.id)
            logger.info(f"Step {step.id} of instance {instance_id} is now {step.status.value}")

        if step.status == StepStatus.COMPLETED:
            await self._advance(instance, step)
        await self._check_completion(instance_id)
        return result

    # ------------------------------------------------------------------
    # Step graph
    async def _activate_step(self, instance: WorkflowInstance, step: StepInstance) -> bool:
        activated = step.model_copy(
            update={"status": StepStatus.IN_PROGRESS, "started_at": self._clock()}
        )
        if not await self._repository.transition_step(activated, StepStatus.PENDING):
            logger.debug(f"Step {step.id} was already activated")
            return False
        logger.info(f"Activated step {step.definition.name} ({step.id}) of instance {instance.id}")
        await self._notifications.step_assigned(instance, activated)
        if activated.definition.auto_completes:
            self._schedule_auto_complete(instance.id, activated.id)
        return True

    async def _advance(self, instance: WorkflowInstance, completed: StepInstance) -> None:
        steps = await self._repository.list_steps(instance.id)
        definitions = [s.definition for s in steps]
        by_definition = {s.definition_id: s for s in steps}
        variables = evaluation_data(instance, steps)

        for next_id in successor_ids(definitions, completed.step_index):
            nxt = by_definition.get(next_id)
            if nxt is None:
                logger.warning(
                    f"Step {completed.definition_id} references unknown step {next_id}"
                )
                continue
            if nxt.status != StepStatus.PENDING:
                continue
            condition = nxt.definition.condition
            if (
                condition is not None
                and nxt.definition.type != StepType.CONDITION
                and not evaluate_condition(condition, variables)
            ):
                await self._skip_branch(instance, nxt, steps)
            else:
                await self._activate_step(instance, nxt)

    async def _skip_branch(
        self, instance: WorkflowInstance, start: StepInstance, steps: List[StepInstance]
    ) -> None:
        """Skip ``start`` and every descendant reachable only through skipped steps."""
        definitions = [s.definition for s in steps]
        by_definition = {s.definition_id: s for s in steps}
        predecessors: Dict[str, Set[str]] = {}
        for index, step_def in enumerate(definitions):
            for next_id in successor_ids(definitions, index):
                predecessors.setdefault(next_id, set()).add(step_def.id)

        queue = [start]
        while queue:
            step = queue.pop()
            skipped = step.model_copy(
                update={
                    "status": StepStatus.SKIPPED,
                    "completed_at": self._clock(),
                    "result": {"skipped": True, "reason": "condition not met"},
                }
            )
            if not await self._repository.transition_step(skipped, StepStatus.PENDING):
                continue
            by_definition[step.definition_id] = skipped
            logger.info(f"Skipped step {step.definition.name} ({step.id}) of instance {instance.id}")

            for next_id in successor_ids(definitions, step.step_index):
                nxt = by_definition.get(next_id)
                if nxt is None or nxt.status != StepStatus.PENDING:
                    continue
                if all(
                    by_definition[p].status == StepStatus.SKIPPED
                    for p in predecessors.get(next_id, ())
                    if p in by_definition
                ):
                    queue.append(nxt)

    async def _check_completion(self, instance_id: str) -> None:
        instance = await self._require_instance(instance_id)
        if instance.state != InstanceState.IN_PROGRESS:
            return
        steps = await self._repository.list_steps(instance_id)
        if not all(s.status in DONE_STEP_STATUSES for s in steps):
            return
        instance.state = InstanceState.COMPLETED
        instance.completed_at = self._clock()
        await self._repository.update_instance(instance)
        logger.info(f"Workflow instance completed: {instance_id}")
        await self._notifications.workflow_completed(instance)

    async def _fail_step(
        self, instance: WorkflowInstance, step: StepInstance, exc: Exception
    ) -> None:
        logger.exception(f"Step {step.id} of instance {instance.id} failed")
        failed = step.model_copy(
            update={
                "status": StepStatus.FAILED,
                "completed_at": self._clock(),
                "result": {"error": str(exc)},
            }
        )
        if not await self._repository.transition_step(failed, StepStatus.IN_PROGRESS):
            return
        current = await self._require_instance(instance.id)
        if current.is_terminal:
            return
        current.state = InstanceState.FAILED
        current.completed_at = self._clock()
        await self._repository.update_instance(current)
        self._cancel_instance_tasks(await self._repository.list_steps(instance.id))
        await self._notifications.workflow_failed(current, str(exc))

    # ------------------------------------------------------------------
    # Deferred auto-completion
    def _schedule_auto_complete(self, instance_id: str, step_id: str) -> None:
        if step_id in self._auto_tasks:
            return
        task = asyncio.create_task(self._auto_complete(instance_id, step_id))
        self._auto_tasks[step_id] = task
        task.add_done_callback(lambda t, sid=step_id: self._forget_task(sid, t))

    def _forget_task(self, step_id: str, task: asyncio.Task) -> None:
        if self._auto_tasks.get(step_id) is task:
            del self._auto_tasks[step_id]

    def _cancel_auto_complete(self, step_id: str) -> None:
        task = self._auto_tasks.get(step_id)
        if task is None or task is asyncio.current_task():
            return
        del self._auto_tasks[step_id]
        task.cancel()

    def _cancel_instance_tasks(self, steps: Iterable[StepInstance]) -> None:
        for step in steps:
            self._cancel_auto_complete(step.id)

    async def _auto_complete(self, instance_id: str, step_id: str) -> None:
        await asyncio.sleep(self._auto_complete_delay)
        step = await self._repository.get_step(step_id)
        instance = await self._repository.get_instance(instance_id)
        if step is None or instance is None:
            return
        if step.status != StepStatus.IN_PROGRESS or instance.state != InstanceState.IN_PROGRESS:
            logger.debug(
                f"Dropping auto-completion of step {step_id}: "
                f"step {step.status.value}, instance {instance.state.value}"
            )
            return
        try:
            await self._process(
                instance_id, step_id, "complete", SYSTEM_USER, {}, None, authorize=False
            )
        except WorkflowError as exc:
            logger.warning(f"Auto-completion of step {step_id} rejected: {exc}")
        except Exception:
            logger.exception(f"Auto-completion of step {step_id} failed")

    async def recover(self) -> int:
        """Re-arm auto-completion for automatic steps left open in storage.

        Deferred completions only live in memory, so a restart between a
        step's activation and its completion would otherwise strand it.
        """
        count = 0
        for instance in await self._repository.list_instances(
            states=[InstanceState.IN_PROGRESS]
        ):
            for step in await self._repository.list_steps(instance.id):
                if step.status == StepStatus.IN_PROGRESS and step.definition.auto_completes:
                    if step.id not in self._auto_tasks:
                        self._schedule_auto_complete(instance.id, step.id)
                        count += 1
        if count:
            logger.info(f"Re-armed {count} pending automatic steps")
        return count

    async def wait_idle(self) -> None:
        """Wait until no deferred auto-completions are pending."""
        while self._auto_tasks:
            await asyncio.gather(*list(self._auto_tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every pending auto-completion."""
        tasks = list(self._auto_tasks.values())
        self._auto_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def pending_auto_completions(self) -> Set[str]:
        return set(self._auto_tasks)

    # ------------------------------------------------------------------
    # Lifecycle control
    async def pause(self, instance_id: str, user_id: Optional[str] = None) -> WorkflowInstance:
        instance = await self._require_instance(instance_id)
        if instance.state != InstanceState.IN_PROGRESS:
            raise InvalidTransition(
                f"Can only pause running workflows; instance {instance_id} is {instance.state.value}"
            )
        instance.state = InstanceState.WAITING
        await self._repository.update_instance(instance)
        self._cancel_instance_tasks(await self._repository.list_steps(instance_id))
        logger.info(f"Workflow instance paused: {instance_id} by {user_id}")
        return instance

    async def resume(self, instance_id: str, user_id: Optional[str] = None) -> WorkflowInstance:
        instance = await self._require_instance(instance_id)
        if instance.state != InstanceState.WAITING:
            raise InvalidTransition(
                f"Can only resume paused workflows; instance {instance_id} is {instance.state.value}"
            )
        instance.state = InstanceState.IN_PROGRESS
        await self._repository.update_instance(instance)
        for step in await self._repository.list_steps(instance_id):
            if step.status == StepStatus.IN_PROGRESS and step.definition.auto_completes:
                self._schedule_auto_complete(instance_id, step.id)
        logger.info(f"Workflow instance resumed: {instance_id} by {user_id}")
        return instance

    async def cancel(
        self,
        instance_id: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> WorkflowInstance:
        instance = await self._require_instance(instance_id)
        if instance.state in (InstanceState.COMPLETED, InstanceState.CANCELLED):
            raise InvalidTransition(
                f"Cannot cancel {instance.state.value.lower()} workflow instance {instance_id}"
            )
        instance.state = InstanceState.CANCELLED
        instance.completed_at = self._clock()
        instance.metadata.cancellation_reason = reason
        await self._repository.update_instance(instance)

        for step in await self._repository.list_steps(instance_id):
            if step.status not in OPEN_STEP_STATUSES:
                continue
            self._cancel_auto_complete(step.id)
            expected = step.status
            step.status = StepStatus.CANCELLED
            step.completed_at = self._clock()
            if not await self._repository.transition_step(step, expected):
                logger.warning(f"Step {step.id} changed while cancelling instance {instance_id}")

        logger.info(f"Workflow instance cancelled: {instance_id} by {user_id}")
        await self._notifications.workflow_cancelled(instance, reason)
        return instance

    # ------------------------------------------------------------------
    async def _require_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance
