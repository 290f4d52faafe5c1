import pytest

from orgflow.contracts import StepDefinition, WorkflowDefinition
from orgflow.errors import ValidationFailed
from orgflow.validation import successor_ids, validate_definition


def _steps(*specs):
    return [
        StepDefinition(id=step_id, name=step_id.title(), type="wait", next_steps=next_steps)
        for step_id, next_steps in specs
    ]


def test_successor_ids_defaults_to_definition_order():
    steps = _steps(("a", None), ("b", ["d"]), ("c", []), ("d", None))

    assert successor_ids(steps, 0) == ["b"]
    assert successor_ids(steps, 1) == ["d"]
    assert successor_ids(steps, 2) == []
    assert successor_ids(steps, 3) == []


def test_valid_graph_passes():
    definition = WorkflowDefinition(
        name="Branching", code="branching", steps=_steps(("a", ["b", "c"]), ("b", []), ("c", None))
    )
    validate_definition(definition)


def test_collects_every_error():
    definition = WorkflowDefinition(
        name="Broken",
        code="broken",
        steps=_steps(("a", ["b", "ghost"]), ("b", ["a"]), ("b", [])),
    )

    with pytest.raises(ValidationFailed) as exc_info:
        validate_definition(definition)

    errors = exc_info.value.errors
    assert "Duplicate step id b" in errors
    assert "Step a references non-existent step ghost" in errors
    assert "Workflow must have at least one start step" in errors


def test_step_type_is_case_insensitive():
    step = StepDefinition(id="x", name="X", type="APPROVAL")
    assert step.type.value == "approval"
    assert not step.auto_completes
    assert StepDefinition(id="y", name="Y", type="Action").auto_completes
