"""Workflow execution tests."""

import asyncio

import pytest

from orgflow.constants import SYSTEM_USER
from orgflow.contracts import InstanceState, StepStatus
from orgflow.engine import WorkflowEngine
from orgflow.errors import (
    DefinitionNotFound,
    InvalidStepAction,
    InvalidStepState,
    InvalidTransition,
    NotAuthorized,
    StepNotFound,
    ValidationFailed,
)
from orgflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository


def _approval(step_id, assignee=None, **extra):
    config = {"assignee_id": assignee} if assignee else {}
    config.update(extra.pop("config", {}))
    return {"id": step_id, "name": step_id.title(), "type": "approval", "config": config, **extra}


async def _deploy(engine, steps, code="leave_request", **fields):
    definition = await engine.definitions.create(
        {"name": fields.pop("name", code.replace("_", " ").title()), "code": code, "steps": steps, **fields},
        "admin",
    )
    return await engine.definitions.activate(definition.id, "admin")


async def _steps(engine, instance_id):
    return await engine.repository.list_steps(instance_id)


@pytest.mark.asyncio
async def test_execute_creates_one_step_per_definition(engine, notifier):
    definition = await _deploy(
        engine,
        [_approval("manager", "bob"), _approval("hr", "dave"), _approval("cto", "carol"), _approval("ceo", "carol")],
    )

    instance = await engine.execute(definition.id, "alice", data={"days": 3})
    steps = await _steps(engine, instance.id)

    assert instance.state == InstanceState.IN_PROGRESS
    assert instance.started_at is not None
    assert len(steps) == 4
    assert [s.status for s in steps] == [
        StepStatus.IN_PROGRESS,
        StepStatus.PENDING,
        StepStatus.PENDING,
        StepStatus.PENDING,
    ]
    assert steps[0].started_at is not None
    assert steps[0].assignee_id == "bob"
    assert notifier.of_type("WORKFLOW_STARTED")[0].recipient_ids == {"alice"}
    assert notifier.of_type("STEP_ASSIGNED")[0].recipient_ids == {"bob"}


@pytest.mark.asyncio
async def test_execute_resolves_definition_by_name_or_code(engine):
    definition = await _deploy(engine, [_approval("manager", "bob")], name="Leave Request")

    by_code = await engine.execute("leave_request", "alice")
    by_name = await engine.execute("Leave Request", "alice")

    assert by_code.definition_id == definition.id
    assert by_name.definition_id == definition.id


@pytest.mark.asyncio
async def test_execute_requires_active_definition(engine):
    draft = await engine.definitions.create(
        {"name": "Draft", "code": "draft", "steps": [_approval("a", "bob")]}, "admin"
    )

    with pytest.raises(DefinitionNotFound):
        await engine.execute(draft.id, "alice")
    with pytest.raises(DefinitionNotFound):
        await engine.execute("missing", "alice")


@pytest.mark.asyncio
async def test_linear_workflow_completes_only_after_last_step(engine, notifier):
    await _deploy(engine, [_approval("one", "bob"), _approval("two", "bob"), _approval("three", "bob")])
    instance = await engine.execute("leave_request", "alice")
    steps = await _steps(engine, instance.id)

    await engine.process_step(instance.id, steps[0].id, "approve", "bob")
    await engine.process_step(instance.id, steps[1].id, "approve", "bob")
    current = await engine.instances.get(instance.id)
    assert current.state == InstanceState.IN_PROGRESS
    assert current.completed_at is None

    await engine.process_step(instance.id, steps[2].id, "approve", "bob")
    current = await engine.instances.get(instance.id)
    assert current.state == InstanceState.COMPLETED
    assert current.completed_at is not None
    assert notifier.of_type("WORKFLOW_COMPLETED")[0].recipient_ids == {"alice"}


@pytest.mark.asyncio
async def test_processing_terminal_step_is_rejected_without_mutation(engine):
    await _deploy(engine, [_approval("manager", "bob")])
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]
    await engine.process_step(instance.id, step.id, "approve", "bob", data={"note": "ok"})
    before = await engine.repository.get_step(step.id)

    for _ in range(2):
        with pytest.raises(InvalidStepState) as exc_info:
            await engine.process_step(instance.id, step.id, "approve", "bob")
        assert exc_info.value.status == "COMPLETED"

    assert await engine.repository.get_step(step.id) == before


@pytest.mark.asyncio
async def test_any_strategy_completes_on_single_approval(engine):
    await _deploy(engine, [_approval("manager", "bob"), _approval("hr", "dave")])
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    result = await engine.process_step(instance.id, step.id, "approve", "bob", data={"note": "enjoy"})

    assert result.status == StepStatus.COMPLETED
    assert result.data == {"approved": True, "note": "enjoy"}
    steps = await _steps(engine, instance.id)
    assert steps[1].status == StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_threshold_requires_distinct_approvers(engine):
    await _deploy(
        engine,
        [_approval("board", config={"required_role": "approver", "required_approvals": 2})],
    )
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    first = await engine.process_step(instance.id, step.id, "approve", "bob")
    assert first.status == StepStatus.IN_PROGRESS
    assert first.data == {"approvals": 1, "required": 2}

    repeat = await engine.process_step(instance.id, step.id, "approve", "bob")
    assert repeat.status == StepStatus.IN_PROGRESS
    assert (await engine.repository.get_step(step.id)).status == StepStatus.IN_PROGRESS

    second = await engine.process_step(instance.id, step.id, "approve", "dave")
    assert second.status == StepStatus.COMPLETED
    assert second.data["approved"] is True
    assert (await engine.instances.get(instance.id)).state == InstanceState.COMPLETED


@pytest.mark.asyncio
async def test_all_strategy_waits_for_every_listed_approver(engine):
    await _deploy(
        engine,
        [
            _approval(
                "committee",
                config={"approval_strategy": "all", "approvers": ["bob", "dave"], "required_role": "approver"},
            )
        ],
    )
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    assert (await engine.process_step(instance.id, step.id, "approve", "dave")).status == StepStatus.IN_PROGRESS
    assert (await engine.process_step(instance.id, step.id, "approve", "bob")).status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_reject_completes_step_and_records_decision(engine):
    await _deploy(engine, [_approval("manager", "bob")])
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    result = await engine.process_step(instance.id, step.id, "reject", "bob", comments="busy week")

    assert result.status == StepStatus.COMPLETED
    assert result.data == {"approved": False}
    detail = await engine.instances.detail(instance.id)
    assert [(a.approver_id, a.decision.value, a.comments) for a in detail.approvals] == [
        ("bob", "REJECTED", "busy week")
    ]


@pytest.mark.asyncio
async def test_unknown_action_for_step_type(engine):
    await _deploy(engine, [_approval("manager", "bob")])
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    with pytest.raises(InvalidStepAction):
        await engine.process_step(instance.id, step.id, "complete", "bob")
    assert (await engine.repository.get_step(step.id)).status == StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_step_must_belong_to_instance(engine):
    await _deploy(engine, [_approval("manager", "bob")])
    first = await engine.execute("leave_request", "alice")
    second = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, first.id))[0]

    with pytest.raises(StepNotFound):
        await engine.process_step(second.id, step.id, "approve", "bob")


@pytest.mark.asyncio
async def test_only_assignee_or_required_role_may_act(engine):
    await _deploy(
        engine,
        [_approval("manager", "bob"), _approval("finance", config={"required_role": "approver"})],
    )
    instance = await engine.execute("leave_request", "alice")
    steps = await _steps(engine, instance.id)

    with pytest.raises(NotAuthorized):
        await engine.process_step(instance.id, steps[0].id, "approve", "alice")
    await engine.process_step(instance.id, steps[0].id, "approve", "bob")

    with pytest.raises(NotAuthorized):
        await engine.process_step(instance.id, steps[1].id, "approve", "carol")
    result = await engine.process_step(instance.id, steps[1].id, "approve", "dave")
    assert result.status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_processing_of_one_step_succeeds_once(engine):
    await _deploy(engine, [_approval("manager", "bob"), _approval("hr", "dave")])
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    results = await asyncio.gather(
        engine.process_step(instance.id, step.id, "approve", "bob"),
        engine.process_step(instance.id, step.id, "approve", "bob"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, InvalidStepState)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    steps = await _steps(engine, instance.id)
    assert [s.status for s in steps] == [StepStatus.COMPLETED, StepStatus.IN_PROGRESS]


@pytest.mark.asyncio
async def test_losing_decision_leaves_no_approval_record(make_engine, racing_repository):
    engine = make_engine(repository=racing_repository)
    await _deploy(
        engine,
        [_approval("finance", config={"required_role": "approver"}), _approval("hr", "carol")],
    )
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    results = await asyncio.gather(
        engine.process_step(instance.id, step.id, "approve", "bob"),
        engine.process_step(instance.id, step.id, "reject", "dave"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, InvalidStepState)) == 1
    winner, approved = ("bob", True) if not isinstance(results[0], Exception) else ("dave", False)
    records = await engine.repository.list_approvals(step.id)
    assert [r.approver_id for r in records] == [winner]
    stored = await engine.repository.get_step(step.id)
    assert stored.status == StepStatus.COMPLETED
    assert stored.result["approved"] is approved


# ----------------------------------------------------------------------
# Automatic steps


@pytest.mark.asyncio
async def test_action_step_completes_automatically_with_handler_result(engine):
    calls = []

    async def book_leave(instance, step, data):
        calls.append(instance.data["days"])
        return {"booking": 42}

    engine.register_action("book_leave", book_leave)
    await _deploy(
        engine,
        [
            {"id": "book", "name": "Book", "type": "ACTION", "config": {"action": "book_leave"}},
            _approval("confirm", "bob"),
        ],
    )

    instance = await engine.execute("leave_request", "alice", data={"days": 2})
    assert (await _steps(engine, instance.id))[0].status == StepStatus.IN_PROGRESS
    await engine.coordinator.wait_idle()

    steps = await _steps(engine, instance.id)
    assert calls == [2]
    assert steps[0].status == StepStatus.COMPLETED
    assert steps[0].result == {"action": "book_leave", "result": {"booking": 42}}
    assert steps[1].status == StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_failing_action_fails_step_and_instance(engine, notifier):
    async def broken(instance, step, data):
        raise RuntimeError("calendar unavailable")

    engine.register_action("book_leave", broken)
    await _deploy(
        engine,
        [
            {"id": "book", "name": "Book", "type": "action", "config": {"action": "book_leave"}},
            _approval("confirm", "bob"),
        ],
    )

    instance = await engine.execute("leave_request", "alice")
    await engine.coordinator.wait_idle()

    steps = await _steps(engine, instance.id)
    current = await engine.instances.get(instance.id)
    assert steps[0].status == StepStatus.FAILED
    assert steps[0].result == {"error": "calendar unavailable"}
    assert steps[1].status == StepStatus.PENDING
    assert current.state == InstanceState.FAILED
    assert notifier.of_type("WORKFLOW_FAILED")[0].metadata["error"] == "calendar unavailable"


@pytest.mark.asyncio
async def test_failing_action_propagates_to_human_caller(engine):
    async def broken(instance, step, data):
        raise RuntimeError("boom")

    engine.register_action("explode", broken)
    await _deploy(
        engine,
        [
            {"id": "wait", "name": "Wait", "type": "wait"},
            {"id": "explode", "name": "Explode", "type": "action", "config": {"action": "explode"}},
        ],
    )
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]
    await engine.process_step(instance.id, step.id, "complete", "alice")

    # The action runs in the deferred path; drive it by hand instead
    await engine.coordinator.shutdown()
    action_step = (await _steps(engine, instance.id))[1]
    with pytest.raises(RuntimeError):
        await engine.process_step(instance.id, action_step.id, "complete", "alice")
    assert (await engine.instances.get(instance.id)).state == InstanceState.FAILED


@pytest.mark.asyncio
async def test_cancel_drops_pending_auto_completion(make_engine):
    engine = make_engine(auto_complete_delay=60)
    await _deploy(engine, [{"id": "book", "name": "Book", "type": "action"}])
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]
    assert engine.coordinator.pending_auto_completions == {step.id}

    await engine.cancel(instance.id, "no longer needed", "alice")
    await engine.coordinator.wait_idle()

    assert engine.coordinator.pending_auto_completions == set()
    assert (await engine.repository.get_step(step.id)).status == StepStatus.CANCELLED


# ----------------------------------------------------------------------
# Lifecycle control


@pytest.mark.asyncio
async def test_cancel_marks_open_steps_cancelled(engine, notifier):
    await _deploy(engine, [_approval("manager", "bob"), _approval("hr", "dave")])
    instance = await engine.execute("leave_request", "alice")

    cancelled = await engine.cancel(instance.id, "plans changed", "alice")

    assert cancelled.state == InstanceState.CANCELLED
    assert cancelled.metadata.cancellation_reason == "plans changed"
    steps = await _steps(engine, instance.id)
    assert [s.status for s in steps] == [StepStatus.CANCELLED, StepStatus.CANCELLED]
    assert all(s.completed_at is not None for s in steps)
    for step in steps:
        with pytest.raises(InvalidStepState):
            await engine.process_step(instance.id, step.id, "approve", "bob")
    assert "plans changed" in notifier.of_type("WORKFLOW_CANCELLED")[0].body

    with pytest.raises(InvalidTransition):
        await engine.cancel(instance.id)


@pytest.mark.asyncio
async def test_pause_blocks_processing_until_resumed(engine):
    await _deploy(engine, [_approval("manager", "bob")])
    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]

    paused = await engine.pause(instance.id, "alice")
    assert paused.state == InstanceState.WAITING
    with pytest.raises(InvalidTransition):
        await engine.pause(instance.id)
    with pytest.raises(InvalidTransition):
        await engine.process_step(instance.id, step.id, "approve", "bob")

    await engine.resume(instance.id, "alice")
    with pytest.raises(InvalidTransition):
        await engine.resume(instance.id)
    await engine.process_step(instance.id, step.id, "approve", "bob")
    assert (await engine.instances.get(instance.id)).state == InstanceState.COMPLETED


@pytest.mark.asyncio
async def test_resume_rearms_automatic_steps(engine):
    await _deploy(engine, [{"id": "book", "name": "Book", "type": "action"}])
    instance = await engine.execute("leave_request", "alice")

    await engine.pause(instance.id)
    assert engine.coordinator.pending_auto_completions == set()
    step = (await _steps(engine, instance.id))[0]
    assert step.status == StepStatus.IN_PROGRESS

    await engine.resume(instance.id)
    await engine.coordinator.wait_idle()
    assert (await engine.instances.get(instance.id)).state == InstanceState.COMPLETED


@pytest.mark.asyncio
async def test_start_completes_automatic_steps_left_by_previous_process(make_engine, tmp_path):
    path = tmp_path / "restart.db"
    before = make_engine(auto_complete_delay=60, repository=SQLiteWorkflowRepository(path))
    await _deploy(before, [{"id": "book", "name": "Book", "type": "action"}])
    running = await before.execute("leave_request", "alice")
    paused = await before.execute("leave_request", "alice")
    await before.pause(paused.id)
    await before.shutdown()
    assert (await _steps(before, running.id))[0].status == StepStatus.IN_PROGRESS

    after = make_engine(repository=SQLiteWorkflowRepository(path))
    await after.start()
    await after.coordinator.wait_idle()
    try:
        assert (await after.instances.get(running.id)).state == InstanceState.COMPLETED
        assert (await _steps(after, running.id))[0].status == StepStatus.COMPLETED
        assert (await after.instances.get(paused.id)).state == InstanceState.WAITING
        assert (await _steps(after, paused.id))[0].status == StepStatus.IN_PROGRESS
        assert await after.coordinator.recover() == 0
    finally:
        await after.shutdown()


# ----------------------------------------------------------------------
# Routing


@pytest.mark.asyncio
async def test_conditional_next_steps_are_skipped_with_their_branch(engine, notifier):
    await _deploy(
        engine,
        [
            _approval("review", "bob", next_steps=["fast_track", "hr_review"]),
            {
                "id": "fast_track",
                "name": "Fast track",
                "type": "wait",
                "condition": {"field": "days", "operator": "lessThan", "value": 3},
                "next_steps": ["notify"],
            },
            _approval(
                "hr_review",
                "dave",
                condition={"field": "days", "operator": "greaterThan", "value": 2},
                next_steps=["archive"],
            ),
            {"id": "archive", "name": "Archive", "type": "wait", "next_steps": []},
            {
                "id": "notify",
                "name": "Notify",
                "type": "notification",
                "config": {"user_ids": ["carol"], "include_initiator": True, "type": "LEAVE_BOOKED"},
                "next_steps": [],
            },
        ],
    )
    instance = await engine.execute("leave_request", "alice", data={"days": 1})
    steps = {s.definition_id: s for s in await _steps(engine, instance.id)}

    await engine.process_step(instance.id, steps["review"].id, "approve", "bob")
    steps = {s.definition_id: s for s in await _steps(engine, instance.id)}
    assert steps["fast_track"].status == StepStatus.IN_PROGRESS
    assert steps["hr_review"].status == StepStatus.SKIPPED
    assert steps["archive"].status == StepStatus.SKIPPED
    assert steps["notify"].status == StepStatus.PENDING

    await engine.process_step(instance.id, steps["fast_track"].id, "complete", "alice")
    await engine.coordinator.wait_idle()

    steps = {s.definition_id: s for s in await _steps(engine, instance.id)}
    assert steps["notify"].status == StepStatus.COMPLETED
    assert steps["notify"].result["notification_sent"] is True
    assert steps["notify"].result["recipients"] == ["alice", "carol"]
    assert notifier.of_type("LEAVE_BOOKED")[0].recipient_ids == {"alice", "carol"}
    assert (await engine.instances.get(instance.id)).state == InstanceState.COMPLETED


@pytest.mark.parametrize(
    "amount, cfo_status",
    [(5000, StepStatus.IN_PROGRESS), (10, StepStatus.SKIPPED)],
)
@pytest.mark.asyncio
async def test_condition_step_result_drives_routing(engine, amount, cfo_status):
    await _deploy(
        engine,
        [
            _approval("manager", "bob"),
            {
                "id": "check",
                "name": "Large amount?",
                "type": "condition",
                "condition": {"field": "amount", "operator": "greaterThan", "value": 1000},
            },
            _approval(
                "cfo",
                "carol",
                condition={"field": "steps.check.condition_met", "operator": "equals", "value": True},
            ),
        ],
        code="expense",
    )
    instance = await engine.execute("expense", "alice", data={"amount": amount})
    first = (await _steps(engine, instance.id))[0]

    await engine.process_step(instance.id, first.id, "approve", "bob")
    await engine.coordinator.wait_idle()

    steps = {s.definition_id: s for s in await _steps(engine, instance.id)}
    assert steps["check"].result["condition_met"] is (amount > 1000)
    assert steps["cfo"].status == cfo_status


@pytest.mark.asyncio
async def test_parallel_step_fans_out(engine):
    await _deploy(
        engine,
        [
            {"id": "split", "name": "Split", "type": "parallel", "next_steps": ["legal", "finance"]},
            _approval("legal", "bob", next_steps=[]),
            _approval("finance", "dave", next_steps=[]),
        ],
        code="contract",
    )
    instance = await engine.execute("contract", "alice")
    await engine.coordinator.wait_idle()

    steps = {s.definition_id: s for s in await _steps(engine, instance.id)}
    assert steps["split"].result == {"branches": ["legal", "finance"]}
    assert steps["legal"].status == StepStatus.IN_PROGRESS
    assert steps["finance"].status == StepStatus.IN_PROGRESS

    await asyncio.gather(
        engine.process_step(instance.id, steps["legal"].id, "approve", "bob"),
        engine.process_step(instance.id, steps["finance"].id, "approve", "dave"),
    )
    assert (await engine.instances.get(instance.id)).state == InstanceState.COMPLETED


# ----------------------------------------------------------------------
# Validation and notifications


@pytest.mark.asyncio
async def test_required_fields_and_concurrency_limit(engine):
    await _deploy(
        engine,
        [_approval("manager", "bob")],
        metadata={"required_fields": ["days"], "execution_limits": {"concurrent": 1}},
    )

    with pytest.raises(ValidationFailed) as exc_info:
        await engine.execute("leave_request", "alice")
    assert exc_info.value.errors == ["Required field missing: days"]

    await engine.execute("leave_request", "alice", context={"days": 2})
    with pytest.raises(ValidationFailed):
        await engine.execute("leave_request", "alice", data={"days": 1})
    await engine.execute("leave_request", "dave", data={"days": 1})
    await engine.execute("leave_request", "alice", skip_validation=True)


@pytest.mark.asyncio
async def test_execute_permission_is_checked_except_for_system(engine, directory):
    await _deploy(engine, [_approval("manager", "bob")])
    directory.grant("alice", "workflow.execute")

    await engine.execute("leave_request", "alice")
    await engine.execute("leave_request", SYSTEM_USER)
    with pytest.raises(NotAuthorized):
        await engine.execute("leave_request", "dave")


class ExplodingNotifier:
    async def notify(self, recipient_ids, type, title, body, metadata):
        raise ConnectionError("smtp down")


@pytest.mark.asyncio
async def test_notification_failures_do_not_roll_back(directory):
    engine = WorkflowEngine(
        InMemoryWorkflowRepository(), directory=directory, notifier=ExplodingNotifier()
    )
    await _deploy(engine, [_approval("manager", "bob")])

    instance = await engine.execute("leave_request", "alice")
    step = (await _steps(engine, instance.id))[0]
    await engine.process_step(instance.id, step.id, "approve", "bob")

    assert (await engine.instances.get(instance.id)).state == InstanceState.COMPLETED
