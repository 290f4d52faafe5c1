"""Command line interface for administering and running orgflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import typer
import yaml

from .config import load_config
from .constants import SYSTEM_USER
from .contracts import DefinitionStatus, InstanceState, Priority
from .engine import WorkflowEngine
from .errors import WorkflowError
from .persistence import get_repository

T = TypeVar("T")

app = typer.Typer(help="CLI for orgflow workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for running workflow instances")
step_app = typer.Typer(help="Commands for acting on steps")
delegation_app = typer.Typer(help="Commands for managing delegations")
scheduler_app = typer.Typer(help="Commands for the cron scheduler")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(step_app, name="step")
app.add_typer(delegation_app, name="delegation")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for engine output"),
) -> None:
    """orgflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    return WorkflowEngine(get_repository(), config=load_config())


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except WorkflowError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{option} must be valid JSON: {exc}")
    if not isinstance(parsed, dict):
        raise typer.BadParameter(f"{option} must be a JSON object")
    return parsed


# ----------------------------------------------------------------------
# Definitions
@definition_app.command("list")
def definition_list(
    status: Optional[DefinitionStatus] = typer.Option(None, help="Filter by status"),
    category: Optional[str] = typer.Option(None, help="Filter by category"),
    search: Optional[str] = typer.Option(None, help="Match name, code or description"),
) -> None:
    """
    List workflow definitions, newest first.

    Example:
        orgflow definition list --status ACTIVE
    """
    engine = _engine()
    definitions = _run(engine.definitions.list(status=status, category=category, search=search))
    if not definitions:
        typer.echo("No workflow definitions found")
        return
    for d in definitions:
        typer.echo(f"{d.id}\t{d.code}\t{d.status.value}\tv{d.version}\t{d.name}")


@definition_app.command("show")
def definition_show(definition: str) -> None:
    """Show a definition (by id or code) and its steps."""
    engine = _engine()
    d = _run(engine.definitions.find(definition))
    typer.echo(f"Workflow {d.name} ({d.code}): {d.status.value} v{d.version}")
    if d.description:
        typer.echo(f"Description: {d.description}")
    typer.echo(f"Trigger: {d.trigger_type.value}")
    if d.trigger_config.cron_expression:
        tz = d.trigger_config.timezone or engine.config.scheduler.default_timezone
        typer.echo(f"Schedule: {d.trigger_config.cron_expression} ({tz})")
    for step in d.steps:
        nxt = "" if step.next_steps is None else f" -> {', '.join(step.next_steps) or 'end'}"
        typer.echo(f"- {step.id}: {step.name} [{step.type.value}]{nxt}")


@definition_app.command("import")
def definition_import(
    path: Path,
    user: str = typer.Option(SYSTEM_USER, help="User recorded as creator"),
    activate: bool = typer.Option(False, help="Activate after import"),
) -> None:
    """
    Create a workflow definition from a YAML or JSON file.

    Example:
        orgflow definition import leave_request.yaml --activate
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    async def _import():
        engine = _engine()
        definition = await engine.definitions.create(data, user)
        if activate:
            definition = await engine.definitions.activate(definition.id, user)
        return definition

    definition = _run(_import())
    typer.echo(f"Imported {definition.code} as {definition.id} ({definition.status.value})")


def _definition_transition(method: str, definition: str, user: str) -> None:
    async def _apply():
        engine = _engine()
        target = await engine.definitions.find(definition)
        return await getattr(engine.definitions, method)(target.id, user)

    updated = _run(_apply())
    typer.echo(f"Workflow {updated.code}: {updated.status.value}")


@definition_app.command("activate")
def definition_activate(definition: str, user: str = typer.Option(SYSTEM_USER)) -> None:
    """Validate and activate a definition."""
    _definition_transition("activate", definition, user)


@definition_app.command("deactivate")
def definition_deactivate(definition: str, user: str = typer.Option(SYSTEM_USER)) -> None:
    """Deactivate a definition with no running instances."""
    _definition_transition("deactivate", definition, user)


@definition_app.command("archive")
def definition_archive(definition: str, user: str = typer.Option(SYSTEM_USER)) -> None:
    """Archive a definition."""
    _definition_transition("archive", definition, user)


@definition_app.command("clone")
def definition_clone(definition: str, user: str = typer.Option(SYSTEM_USER)) -> None:
    """Copy a definition into a new draft."""
    _definition_transition("clone", definition, user)


# ----------------------------------------------------------------------
# Instances
@instance_app.command("list")
def instance_list(
    definition: Optional[str] = typer.Option(None, help="Filter by definition id"),
    state: Optional[InstanceState] = typer.Option(None, help="Filter by state"),
    user: Optional[str] = typer.Option(None, help="Only instances involving this user"),
    role: str = typer.Option("all", help="initiator, assignee, participant or all"),
) -> None:
    """List workflow instances, newest first."""
    engine = _engine()
    if user:
        instances = _run(engine.instances.for_user(user, role))
        if definition:
            instances = [i for i in instances if i.definition_id == definition]
        if state:
            instances = [i for i in instances if i.state == state]
    else:
        instances = _run(engine.instances.list(definition_id=definition, state=state))
    if not instances:
        typer.echo("No workflow instances found")
        return
    for i in instances:
        typer.echo(f"{i.id}\t{i.workflow_name}\t{i.state.value}\t{i.initiator_id}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its steps, delegations and escalations.

    Example:
        orgflow instance show 0b1e...
        # Output: Instance 0b1e... (Leave request): IN_PROGRESS
        #         - [0] manager_approval (approval): IN_PROGRESS assignee=alice
    """
    engine = _engine()
    detail = _run(engine.instances.detail(instance_id))
    instance = detail.instance
    typer.echo(f"Instance {instance.id} ({instance.workflow_name}): {instance.state.value}")
    typer.echo(f"Initiator: {instance.initiator_id}")
    if instance.data:
        typer.echo(f"Data: {json.dumps(instance.data, default=str)}")
    if instance.metadata.cancellation_reason:
        typer.echo(f"Cancellation reason: {instance.metadata.cancellation_reason}")
    for step in detail.steps:
        line = (
            f"- [{step.step_index}] {step.definition.name} ({step.definition.type.value}): "
            f"{step.status.value}"
        )
        if step.assignee_id:
            line += f" assignee={step.assignee_id}"
        typer.echo(line + f" id={step.id}")
    for d in detail.delegations:
        active = "active" if d.is_active else "inactive"
        typer.echo(f"Delegation {d.id}: {d.from_user_id} -> {d.to_user_id} ({active})")
    for e in detail.escalations:
        typer.echo(f"Escalation {e.id}: {e.from_user_id} -> {e.to_user_id} (level {e.level})")


@instance_app.command("execute")
def instance_execute(
    workflow: str,
    user: str = typer.Option(..., help="Initiating user"),
    data: Optional[str] = typer.Option(None, help="Instance data as a JSON object"),
    context: Optional[str] = typer.Option(None, help="Instance context as a JSON object"),
    priority: Priority = typer.Option(Priority.NORMAL),
    tag: Optional[List[str]] = typer.Option(None, help="Tag, may be repeated"),
    skip_validation: bool = typer.Option(False),
    wait: bool = typer.Option(True, help="Wait for automatic steps before exiting"),
) -> None:
    """
    Start a new instance of an active workflow (by id, name or code).

    Example:
        orgflow instance execute leave_request --user bob --data '{"days": 3}'
    """
    payload = _parse_json(data, "--data")
    ctx = _parse_json(context, "--context")

    async def _execute():
        engine = _engine()
        instance = await engine.execute(
            workflow,
            user,
            data=payload,
            context=ctx,
            priority=priority,
            tags=tag,
            skip_validation=skip_validation,
        )
        if wait:
            await engine.coordinator.wait_idle()
        else:
            await engine.coordinator.shutdown()
        return await engine.instances.get(instance.id)

    instance = _run(_execute())
    typer.echo(f"Started instance {instance.id}: {instance.state.value}")


@instance_app.command("pause")
def instance_pause(instance_id: str, user: Optional[str] = typer.Option(None)) -> None:
    """Pause a running instance."""
    instance = _run(_engine().pause(instance_id, user))
    typer.echo(f"Instance {instance.id}: {instance.state.value}")


@instance_app.command("resume")
def instance_resume(instance_id: str, user: Optional[str] = typer.Option(None)) -> None:
    """Resume a paused instance."""

    async def _resume():
        engine = _engine()
        instance = await engine.resume(instance_id, user)
        await engine.coordinator.wait_idle()
        return await engine.instances.get(instance.id)

    instance = _run(_resume())
    typer.echo(f"Instance {instance.id}: {instance.state.value}")


@instance_app.command("cancel")
def instance_cancel(
    instance_id: str,
    reason: Optional[str] = typer.Option(None),
    user: Optional[str] = typer.Option(None),
) -> None:
    """Cancel an instance and all of its open steps."""
    instance = _run(_engine().cancel(instance_id, reason, user))
    typer.echo(f"Instance {instance.id}: {instance.state.value}")


# ----------------------------------------------------------------------
# Steps
@step_app.command("process")
def step_process(
    instance_id: str,
    step_id: str,
    action: str,
    user: str = typer.Option(..., help="Acting user"),
    data: Optional[str] = typer.Option(None, help="Submitted data as a JSON object"),
    comments: Optional[str] = typer.Option(None),
) -> None:
    """
    Submit an action (approve, reject, complete) against an in-progress step.

    Example:
        orgflow step process <instance> <step> approve --user alice
    """
    payload = _parse_json(data, "--data")

    async def _process():
        engine = _engine()
        result = await engine.process_step(
            instance_id, step_id, action, user, data=payload, comments=comments
        )
        await engine.coordinator.wait_idle()
        return result

    result = _run(_process())
    typer.echo(f"Step {step_id}: {result.status.value}")
    if result.data:
        typer.echo(f"Result: {json.dumps(result.data, default=str)}")


# ----------------------------------------------------------------------
# Delegations
@delegation_app.command("list")
def delegation_list(
    user: str,
    direction: str = typer.Option("all", help="from, to or all"),
    include_inactive: bool = typer.Option(False, help="Include revoked and expired"),
) -> None:
    """List a user's delegations, newest first."""
    engine = _engine()
    try:
        delegations = _run(
            engine.get_user_delegations(user, direction, active_only=not include_inactive)
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    if not delegations:
        typer.echo("No delegations found")
        return
    for d in delegations:
        active = "active" if d.is_active else "inactive"
        typer.echo(
            f"{d.id}\t{d.from_user_id} -> {d.to_user_id}\t{active}\tstep={d.step_instance_id}"
        )


@delegation_app.command("expire")
def delegation_expire() -> None:
    """Deactivate delegations past their expiry date."""
    expired = _run(_engine().delegations.expire_delegations())
    typer.echo(f"Expired {len(expired)} delegations")


# ----------------------------------------------------------------------
# Scheduler
@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run cron timers for every active scheduled workflow.

    Example:
        orgflow scheduler run --lifespan 3600
    """

    async def _serve():
        engine = _engine()
        await engine.start()
        for status in engine.scheduler.statuses():
            typer.echo(f"{status.definition_id}\t{status.cron_expression}\tnext={status.next_fire_at}")
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await engine.shutdown()

    typer.echo("Starting scheduler")
    _run(_serve())
