"""Step processing: computes the outcome of an action against one step."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .conditions import evaluate_condition
from .contracts import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalStrategy,
    StepInstance,
    StepResult,
    StepStatus,
    StepType,
    WorkflowInstance,
    utcnow,
)
from .errors import InvalidStepAction, InvalidStepState
from .notifications import WorkflowNotificationService
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

ActionHandler = Callable[[WorkflowInstance, StepInstance, Dict[str, Any]], Awaitable[Any]]


class StepContext:
    """Everything a step handler needs to compute a result."""

    def __init__(
        self,
        instance: WorkflowInstance,
        step: StepInstance,
        action: str,
        data: Dict[str, Any],
        user_id: str,
        comments: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.instance = instance
        self.step = step
        self.action = action
        self.data = data
        self.user_id = user_id
        self.comments = comments
        self.variables = variables if variables is not None else instance.variables()


class StepProcessor:
    """Computes ``StepResult`` values for each step type.

    The processor never advances the workflow; that is the coordinator's job
    once a step reports ``COMPLETED``.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        notifications: WorkflowNotificationService,
        action_handlers: Optional[Dict[str, ActionHandler]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._notifications = notifications
        self._action_handlers: Dict[str, ActionHandler] = dict(action_handlers or {})
        self._clock = clock
        self._handlers: Dict[StepType, Callable[[StepContext], Awaitable[StepResult]]] = {
            StepType.APPROVAL: self._process_approval,
            StepType.ACTION: self._process_action,
            StepType.CONDITION: self._process_condition,
            StepType.NOTIFICATION: self._process_notification,
            StepType.PARALLEL: self._process_parallel,
            StepType.WAIT: self._process_wait,
        }
        missing = set(StepType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for step types: {sorted(t.value for t in missing)}")

    def register_action(self, name: str, handler: ActionHandler) -> None:
        """Register the side effect run by action steps configured with ``name``."""
        self._action_handlers[name] = handler

    async def process(self, ctx: StepContext) -> StepResult:
        if ctx.step.status != StepStatus.IN_PROGRESS:
            raise InvalidStepState(ctx.step.id, ctx.step.status.value)
        handler = self._handlers[ctx.step.definition.type]
        return await handler(ctx)

    # ------------------------------------------------------------------
    async def _process_approval(self, ctx: StepContext) -> StepResult:
        step = ctx.step
        if ctx.action not in ("approve", "reject"):
            raise InvalidStepAction(step.definition.type.value, ctx.action)

        decision = (
            ApprovalDecision.APPROVED if ctx.action == "approve" else ApprovalDecision.REJECTED
        )
        # Stored by the coordinator together with the step write
        record = ApprovalRecord(
            instance_id=ctx.instance.id,
            step_instance_id=step.id,
            approver_id=ctx.user_id,
            decision=decision,
            comments=ctx.comments,
            data=ctx.data,
            created_at=self._clock(),
        )

        if decision == ApprovalDecision.REJECTED:
            # Rejection ends the step; routing on ``approved`` is left to the graph
            return StepResult(
                status=StepStatus.COMPLETED,
                data={"approved": False, **ctx.data},
                approval=record,
            )

        records = await self._repository.list_approvals(step.id)
        approvers = {
            r.approver_id for r in records if r.decision == ApprovalDecision.APPROVED
        }
        approvers.add(ctx.user_id)
        strategy = step.definition.approval_strategy
        required = step.definition.required_approvals

        if strategy == ApprovalStrategy.ANY:
            satisfied = True
        elif strategy == ApprovalStrategy.ALL:
            expected = set(step.definition.config.get("approvers") or [])
            if expected:
                satisfied = expected <= approvers
                required = len(expected)
            else:
                satisfied = len(approvers) >= required
        else:
            satisfied = len(approvers) >= required

        if satisfied:
            return StepResult(
                status=StepStatus.COMPLETED,
                data={"approved": True, **ctx.data},
                approval=record,
            )

        logger.info(
            f"Step {step.id} has {len(approvers)}/{required} approvals; waiting for more"
        )
        return StepResult(
            status=StepStatus.IN_PROGRESS,
            data={"approvals": len(approvers), "required": required},
            approval=record,
        )

    async def _process_action(self, ctx: StepContext) -> StepResult:
        action_name = ctx.step.definition.config.get("action")
        handler = self._action_handlers.get(action_name) if action_name else None
        logger.info(f"Executing action {action_name} for step {ctx.step.id}")
        result: Any = ctx.data
        if handler is not None:
            result = await handler(ctx.instance, ctx.step, ctx.data)
        return StepResult(
            status=StepStatus.COMPLETED,
            data={"action": action_name, "result": result},
        )

    async def _process_condition(self, ctx: StepContext) -> StepResult:
        condition_met = evaluate_condition(ctx.step.definition.condition, ctx.variables)
        return StepResult(
            status=StepStatus.COMPLETED,
            data={
                "condition_met": condition_met,
                "evaluated_at": self._clock().isoformat(),
            },
        )

    async def _process_notification(self, ctx: StepContext) -> StepResult:
        recipients = await self._notifications.step_notification(ctx.instance, ctx.step)
        return StepResult(
            status=StepStatus.COMPLETED,
            data={
                "notification_sent": True,
                "sent_at": self._clock().isoformat(),
                "recipients": sorted(recipients),
            },
        )

    async def _process_parallel(self, ctx: StepContext) -> StepResult:
        branches = list(ctx.step.definition.next_steps or [])
        return StepResult(status=StepStatus.COMPLETED, data={"branches": branches})

    async def _process_wait(self, ctx: StepContext) -> StepResult:
        if ctx.action != "complete":
            raise InvalidStepAction(ctx.step.definition.type.value, ctx.action)
        return StepResult(status=StepStatus.COMPLETED, data=dict(ctx.data))
