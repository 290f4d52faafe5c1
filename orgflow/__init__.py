"""orgflow: organisational approval workflows with delegation and escalation."""

from .contracts import (
    InstanceState,
    StepDefinition,
    StepInstance,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
)
from .directory import InMemoryDirectory
from .engine import WorkflowEngine
from .execution import ExecutionCoordinator
from .notifications import InMemoryNotifier
from .persistence import get_repository
from .scheduler import WorkflowScheduler

__version__ = "0.1.0"
__all__ = [
    "InstanceState",
    "StepDefinition",
    "StepInstance",
    "StepStatus",
    "StepType",
    "WorkflowDefinition",
    "WorkflowInstance",
    "InMemoryDirectory",
    "InMemoryNotifier",
    "WorkflowEngine",
    "ExecutionCoordinator",
    "WorkflowScheduler",
    "get_repository",
]
