"""Exceptions raised by the workflow engine.

Every error is synchronous and carries enough context to render a
user-facing message. ``code`` mirrors the class name so API layers can map
errors without importing the hierarchy.
"""

from __future__ import annotations

from typing import Iterable, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    code = "WorkflowError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(WorkflowError):
    code = "NotFound"


class DefinitionNotFound(NotFoundError):
    code = "DefinitionNotFound"

    def __init__(self, definition_id: str) -> None:
        super().__init__(f"Active workflow {definition_id} not found")
        self.definition_id = definition_id


class InstanceNotFound(NotFoundError):
    code = "InstanceNotFound"

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Workflow instance {instance_id} not found")
        self.instance_id = instance_id


class StepNotFound(NotFoundError):
    code = "StepNotFound"

    def __init__(self, step_id: str, instance_id: Optional[str] = None) -> None:
        where = f" in instance {instance_id}" if instance_id else ""
        super().__init__(f"Step instance {step_id} not found{where}")
        self.step_id = step_id
        self.instance_id = instance_id


class DelegationNotFound(NotFoundError):
    code = "DelegationNotFound"

    def __init__(self, delegation_id: str) -> None:
        super().__init__(f"Delegation {delegation_id} not found")
        self.delegation_id = delegation_id


class InvalidStepState(WorkflowError):
    code = "InvalidStepState"

    def __init__(self, step_id: str, status: str) -> None:
        super().__init__(
            f"Step {step_id} is not in progress. Current status: {status}"
        )
        self.step_id = step_id
        self.status = status


class InvalidStepAction(WorkflowError):
    code = "InvalidStepAction"

    def __init__(self, step_type: str, action: str) -> None:
        super().__init__(f"Invalid action for {step_type} step: {action}")
        self.step_type = step_type
        self.action = action


class InvalidTransition(WorkflowError):
    code = "InvalidTransition"


class NotAuthorized(WorkflowError):
    code = "NotAuthorized"


class NotAssignee(WorkflowError):
    code = "NotAssignee"


class NotOwner(WorkflowError):
    code = "NotOwner"


class DelegationNotAllowed(WorkflowError):
    code = "DelegationNotAllowed"


class AlreadyInactive(WorkflowError):
    code = "AlreadyInactive"


class EscalationNotAllowed(WorkflowError):
    code = "EscalationNotAllowed"


class TargetUserInvalid(WorkflowError):
    code = "TargetUserInvalid"


class CannotResolveEscalationTarget(WorkflowError):
    code = "CannotResolveEscalationTarget"


class ValidationFailed(WorkflowError):
    code = "ValidationFailed"

    def __init__(self, message: str, errors: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class DuplicateCode(ValidationFailed):
    code = "DuplicateCode"

    def __init__(self, code_value: str) -> None:
        super().__init__(f"Workflow with code {code_value} already exists")
        self.code_value = code_value


__all__ = [
    "WorkflowError",
    "NotFoundError",
    "DefinitionNotFound",
    "InstanceNotFound",
    "StepNotFound",
    "DelegationNotFound",
    "InvalidStepState",
    "InvalidStepAction",
    "InvalidTransition",
    "NotAuthorized",
    "NotAssignee",
    "NotOwner",
    "DelegationNotAllowed",
    "AlreadyInactive",
    "EscalationNotAllowed",
    "TargetUserInvalid",
    "CannotResolveEscalationTarget",
    "ValidationFailed",
    "DuplicateCode",
]
