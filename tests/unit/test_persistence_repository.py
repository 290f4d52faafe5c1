import pytest

import orgflow.persistence as persistence
from orgflow.config import OrgflowConfig
from orgflow.contracts import (
    ApprovalDecision,
    ApprovalRecord,
    Delegation,
    Escalation,
    InstanceState,
    StepDefinition,
    StepInstance,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from orgflow.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "wf.db")
    return InMemoryWorkflowRepository()


def _definition(code="travel"):
    return WorkflowDefinition(
        name=code.title(),
        code=code,
        steps=[StepDefinition(id="approve", name="Approve", type="approval")],
    )


async def _instance_with_steps(repo, initiator="alice"):
    definition = _definition()
    await repo.create_definition(definition)
    instance = WorkflowInstance(definition_id=definition.id, initiator_id=initiator)
    await repo.create_instance(instance)
    steps = [
        StepInstance(instance_id=instance.id, step_index=i, definition=d)
        for i, d in enumerate(
            [
                StepDefinition(id="first", name="First", type="approval"),
                StepDefinition(id="second", name="Second", type="wait"),
            ]
        )
    ]
    await repo.create_steps(steps)
    return instance, steps


@pytest.mark.asyncio
async def test_definition_crud_and_soft_delete(repo):
    first = _definition("travel")
    second = _definition("expenses")
    await repo.create_definition(first)
    await repo.create_definition(second)

    second.description = "updated"
    await repo.update_definition(second)
    stored = await repo.get_definition(second.id)
    assert stored.description == "updated"
    assert stored.steps[0].type.value == "approval"

    assert [d.id for d in await repo.list_definitions()] == [second.id, first.id]

    first.deleted_at = first.updated_at
    await repo.update_definition(first)
    assert [d.id for d in await repo.list_definitions()] == [second.id]
    assert len(await repo.list_definitions(include_deleted=True)) == 2
    assert await repo.get_definition("missing") is None


@pytest.mark.asyncio
async def test_instance_filters(repo):
    a = WorkflowInstance(definition_id="d1", initiator_id="alice")
    b = WorkflowInstance(definition_id="d1", initiator_id="bob", state=InstanceState.IN_PROGRESS)
    c = WorkflowInstance(definition_id="d2", initiator_id="alice", state=InstanceState.IN_PROGRESS)
    for instance in (a, b, c):
        await repo.create_instance(instance)

    c.state = InstanceState.COMPLETED
    await repo.update_instance(c)

    assert [i.id for i in await repo.list_instances()] == [c.id, b.id, a.id]
    assert [i.id for i in await repo.list_instances(definition_id="d1")] == [b.id, a.id]
    assert [i.id for i in await repo.list_instances(initiator_id="alice")] == [c.id, a.id]
    assert [
        i.id for i in await repo.list_instances(states=[InstanceState.IN_PROGRESS])
    ] == [b.id]
    assert await repo.list_instances(states=[]) == []
    assert (await repo.get_instance(c.id)).state == InstanceState.COMPLETED


@pytest.mark.asyncio
async def test_steps_are_listed_in_index_order(repo):
    instance, steps = await _instance_with_steps(repo)

    listed = await repo.list_steps(instance.id)
    assert [s.id for s in listed] == [s.id for s in steps]
    assert listed[1].definition.type.value == "wait"
    assert await repo.list_steps("other") == []


@pytest.mark.asyncio
async def test_transition_step_is_compare_and_set(repo):
    instance, steps = await _instance_with_steps(repo)
    step = steps[0]

    step.status = StepStatus.IN_PROGRESS
    assert await repo.transition_step(step, StepStatus.PENDING) is True

    stale = step.model_copy(update={"status": StepStatus.CANCELLED})
    assert await repo.transition_step(stale, StepStatus.PENDING) is False
    assert (await repo.get_step(step.id)).status == StepStatus.IN_PROGRESS

    step.status = StepStatus.COMPLETED
    step.result = {"approved": True}
    assert await repo.transition_step(step, StepStatus.IN_PROGRESS) is True
    assert await repo.transition_step(step, StepStatus.IN_PROGRESS) is False
    stored = await repo.get_step(step.id)
    assert stored.status == StepStatus.COMPLETED
    assert stored.result == {"approved": True}

    missing = StepInstance(instance_id=instance.id, step_index=9, definition=step.definition)
    assert await repo.transition_step(missing, StepStatus.PENDING) is False


@pytest.mark.asyncio
async def test_stale_step_copy_cannot_overwrite_reassignment(repo):
    instance, steps = await _instance_with_steps(repo)
    step = steps[0]
    step.status = StepStatus.IN_PROGRESS
    step.assignee_id = "alice"
    await repo.transition_step(step, StepStatus.PENDING)

    reader = await repo.get_step(step.id)
    escalated = await repo.get_step(step.id)
    escalated.assignee_id = "bob"
    escalated.metadata["escalated"] = True
    assert await repo.transition_step(escalated, StepStatus.IN_PROGRESS) is True

    # Same status as stored, but read before the reassignment
    reader.result = {"approvals": 1}
    record = ApprovalRecord(
        instance_id=instance.id,
        step_instance_id=step.id,
        approver_id="alice",
        decision=ApprovalDecision.APPROVED,
    )
    assert await repo.transition_step(reader, StepStatus.IN_PROGRESS, approval=record) is False

    stored = await repo.get_step(step.id)
    assert stored.assignee_id == "bob"
    assert stored.metadata["escalated"] is True
    assert stored.result is None
    assert stored.revision == escalated.revision
    assert await repo.list_approvals(step.id) == []

    fresh = await repo.get_step(step.id)
    fresh.result = {"approvals": 1}
    record.approver_id = "bob"
    assert await repo.transition_step(fresh, StepStatus.IN_PROGRESS, approval=record) is True
    assert [a.approver_id for a in await repo.list_approvals(step.id)] == ["bob"]


@pytest.mark.asyncio
async def test_delegation_queries(repo):
    instance, steps = await _instance_with_steps(repo)
    first = Delegation(
        instance_id=instance.id, step_instance_id=steps[0].id, from_user_id="alice", to_user_id="bob"
    )
    second = Delegation(
        instance_id=instance.id, step_instance_id=steps[1].id, from_user_id="bob", to_user_id="carol"
    )
    await repo.create_delegation(first)
    await repo.create_delegation(second)

    first.is_active = False
    await repo.update_delegation(first)

    assert [d.id for d in await repo.list_delegations()] == [second.id, first.id]
    assert [d.id for d in await repo.list_delegations(active=True)] == [second.id]
    assert [d.id for d in await repo.list_delegations(from_user_id="alice")] == [first.id]
    assert [d.id for d in await repo.list_delegations(to_user_id="carol")] == [second.id]
    assert [
        d.id for d in await repo.list_delegations(step_instance_id=steps[0].id, active=False)
    ] == [first.id]
    assert len(await repo.list_delegations(instance_id=instance.id)) == 2
    assert (await repo.get_delegation(first.id)).is_active is False


@pytest.mark.asyncio
async def test_escalations_and_approvals(repo):
    instance, steps = await _instance_with_steps(repo)
    escalation = Escalation(
        instance_id=instance.id,
        step_instance_id=steps[0].id,
        from_user_id="alice",
        to_user_id="bob",
        created_by="system",
    )
    await repo.create_escalation(escalation)
    for approver in ("bob", "carol"):
        await repo.add_approval(
            ApprovalRecord(
                instance_id=instance.id,
                step_instance_id=steps[0].id,
                approver_id=approver,
                decision=ApprovalDecision.APPROVED,
            )
        )

    assert [e.id for e in await repo.list_escalations(instance_id=instance.id)] == [escalation.id]
    assert await repo.list_escalations(step_instance_id=steps[1].id) == []
    assert [a.approver_id for a in await repo.list_approvals(steps[0].id)] == ["bob", "carol"]
    assert await repo.list_approvals(steps[1].id) == []


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("ORGFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)

    memory = get_repository(config=OrgflowConfig())
    assert isinstance(memory, InMemoryWorkflowRepository)
    assert get_repository() is memory

    sqlite = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(sqlite, SQLiteWorkflowRepository)

    monkeypatch.setenv("ORGFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    from_env = get_repository(config=OrgflowConfig())
    assert isinstance(from_env, SQLiteWorkflowRepository)
    assert from_env.db_path.endswith("env.db")

    with pytest.raises(ValueError, match="sqlite://<path>"):
        get_repository("postgresql://localhost/orgflow")
