"""Command line interface for operating stageline pipelines."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Optional, TypeVar

import typer
import yaml

from .config import load_config
from .errors import PipelineError
from .lead_service import HttpLeadServiceClient, UnconfiguredLeadService
from .models import ApprovalStatus, InstanceStatus, PipelineCreate, PipelineStatus
from .orchestrator import PipelineOrchestrator, build_orchestrator
from .persistence import get_store
from .seed import seed_default_pipeline
from .sweep import TimeoutSweeper
from .transports import get_transport
from .worker import EventWorker

T = TypeVar("T")

app = typer.Typer(help="CLI for stageline pipelines")

# Command groups
pipeline_app = typer.Typer(help="Commands for managing pipeline definitions")
instance_app = typer.Typer(help="Commands for inspecting and steering instances")
approval_app = typer.Typer(help="Commands for approval requests")
event_app = typer.Typer(help="Commands for feeding domain events")

app.add_typer(pipeline_app, name="pipeline")
app.add_typer(instance_app, name="instance")
app.add_typer(approval_app, name="approval")
app.add_typer(event_app, name="event")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
) -> None:
    """stageline CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def _orchestrator(transport=None) -> AsyncIterator[PipelineOrchestrator]:
    config = load_config()
    lead_service = (
        HttpLeadServiceClient.from_config(config.lead_service)
        if config.lead_service.base_url
        else UnconfiguredLeadService()
    )
    try:
        yield build_orchestrator(
            config,
            store=get_store(config.database_url),
            transport=transport,
            lead_service=lead_service,
        )
    finally:
        await lead_service.aclose()


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except PipelineError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _dump(model) -> None:
    typer.echo(model.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Pipelines
@pipeline_app.command("list")
def pipeline_list(
    line_of_business: Optional[str] = typer.Option(None, "--lob"),
    status: Optional[PipelineStatus] = typer.Option(None),
) -> None:
    """
    List pipeline definitions (latest version of each).

    Example:
        stageline pipeline list --lob medical
        # Output: 3f2a...    v2    active    medical    Individual Health Insurance Pipeline
    """

    async def go():
        async with _orchestrator() as orch:
            return await orch.pipelines.list_pipelines(line_of_business, status)

    definitions = _run(go())
    if not definitions:
        typer.echo("No pipelines found")
        return
    for d in definitions:
        default = " (default)" if d.is_default else ""
        typer.echo(
            f"{d.pipeline_id}\tv{d.version}\t{d.status.value}\t{d.line_of_business}\t{d.name}{default}"
        )


@pipeline_app.command("show")
def pipeline_show(
    pipeline_id: str, version: Optional[int] = typer.Option(None)
) -> None:
    """Show a pipeline definition with its steps."""

    async def go():
        async with _orchestrator() as orch:
            if version is not None:
                return await orch.pipelines.get_pipeline_version(pipeline_id, version)
            return await orch.pipelines.get_pipeline(pipeline_id)

    d = _run(go())
    typer.echo(f"Pipeline {d.pipeline_id} v{d.version}: {d.name} [{d.status.value}]")
    typer.echo(f"Scope: {d.line_of_business}/{d.business_type or '*'}/{d.organization_id or '*'}")
    for step in d.steps:
        marker = "*" if step.id == d.entry_step_id else " "
        state = "" if step.enabled else " (disabled)"
        typer.echo(f"{marker} {step.order:>3} {step.type:<12} {step.id}  {step.display_name}{state}")


@pipeline_app.command("create")
def pipeline_create(
    path: Path,
    created_by: str = typer.Option("cli", "--by"),
    activate: bool = typer.Option(False, help="Activate right after creating"),
) -> None:
    """
    Create a pipeline from a YAML or JSON file.

    The file holds the fields of a pipeline create request: name,
    line_of_business, optional business_type / organization_id / is_default and
    a list of steps.
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    request = PipelineCreate.model_validate(yaml.safe_load(path.read_text()) or {})

    async def go():
        async with _orchestrator() as orch:
            definition = await orch.pipelines.create_pipeline(request, created_by)
            if activate:
                definition = await orch.activate_pipeline(definition.pipeline_id, created_by)
            return definition

    d = _run(go())
    typer.echo(f"Created pipeline {d.pipeline_id} ({d.status.value})")


@pipeline_app.command("seed-default")
def pipeline_seed_default(
    created_by: str = typer.Option("system-seeder", "--by"),
    activate: bool = typer.Option(True, help="Activate the seeded pipeline"),
) -> None:
    """Create the default Individual Health Insurance pipeline if missing."""

    async def go():
        async with _orchestrator() as orch:
            return await seed_default_pipeline(orch.pipelines, created_by, activate)

    definition, created = _run(go())
    if created:
        typer.echo(
            f"Seeded pipeline {definition.pipeline_id} with {len(definition.steps)} steps "
            f"({definition.status.value})"
        )
    else:
        typer.echo(f"Default pipeline already exists: {definition.pipeline_id}")


@pipeline_app.command("activate")
def pipeline_activate(
    pipeline_id: str,
    activated_by: str = typer.Option("cli", "--by"),
    version: Optional[int] = typer.Option(None),
) -> None:
    """Validate and activate a pipeline version."""

    async def go():
        async with _orchestrator() as orch:
            return await orch.activate_pipeline(pipeline_id, activated_by, version)

    d = _run(go())
    typer.echo(f"Activated pipeline {d.pipeline_id} v{d.version}")


@pipeline_app.command("deactivate")
def pipeline_deactivate(
    pipeline_id: str, deactivated_by: str = typer.Option("cli", "--by")
) -> None:
    async def go():
        async with _orchestrator() as orch:
            return await orch.deactivate_pipeline(pipeline_id, deactivated_by)

    d = _run(go())
    typer.echo(f"Deactivated pipeline {d.pipeline_id}")


@pipeline_app.command("delete")
def pipeline_delete(
    pipeline_id: str, deleted_by: str = typer.Option("cli", "--by")
) -> None:
    """Soft-delete a pipeline (every version becomes deprecated)."""

    async def go():
        async with _orchestrator() as orch:
            await orch.pipelines.delete_pipeline(pipeline_id, deleted_by)

    _run(go())
    typer.echo(f"Deleted pipeline {pipeline_id}")


# ---------------------------------------------------------------------------
# Instances
@instance_app.command("list")
def instance_list(
    status: Optional[InstanceStatus] = typer.Option(None),
    pipeline_id: Optional[str] = typer.Option(None, "--pipeline"),
    entity_id: Optional[str] = typer.Option(None, "--entity"),
) -> None:
    """
    List pipeline instances with their status and current step.

    Example:
        stageline instance list --status waiting_event
    """

    async def go():
        async with _orchestrator() as orch:
            return await orch.instances.list_instances(
                status=status, pipeline_id=pipeline_id, entity_id=entity_id
            )

    instances = _run(go())
    if not instances:
        typer.echo("No instances found")
        return
    for i in instances:
        typer.echo(
            f"{i.instance_id}\t{i.entity_id}\t{i.status.value}\t"
            f"{i.current_stage_name or i.current_step_id}\t{i.progress_percent}%"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show an instance and its step history."""

    async def go():
        async with _orchestrator() as orch:
            return await orch.instances.get_instance(instance_id)

    i = _run(go())
    typer.echo(f"Instance {i.instance_id}: {i.status.value} ({i.progress_percent}%)")
    typer.echo(f"Pipeline: {i.pipeline_name} v{i.pipeline_version}, entity {i.entity_id}")
    if i.waiting_for_event:
        typer.echo(f"Waiting for event: {i.waiting_for_event}")
    if i.waiting_for_approval_id:
        typer.echo(f"Waiting for approval: {i.waiting_for_approval_id}")
    if i.last_error:
        typer.echo(f"Last error at {i.last_error.step_id}: {i.last_error.message}")
    for entry in i.step_history:
        label = entry.stage_name or entry.step_type
        outcome = entry.outcome.value if entry.outcome else "open"
        typer.echo(f"- {entry.step_id} ({label}): {outcome} [{entry.triggered_by}]")


@instance_app.command("next-step")
def instance_next_step(entity_id: str) -> None:
    """Where the entity's active pipeline is and what comes next."""

    async def go():
        async with _orchestrator() as orch:
            return await orch.get_next_step_info(entity_id)

    _dump(_run(go()))


@instance_app.command("advance")
def instance_advance(
    instance_id: str,
    advanced_by: str = typer.Option("cli", "--by"),
    comment: Optional[str] = typer.Option(None),
) -> None:
    """Release an instance waiting on a manual-advance step."""

    async def go():
        async with _orchestrator() as orch:
            return await orch.manual_advance(instance_id, advanced_by, comment)

    result = _run(go())
    if not result.processed:
        typer.secho(f"Not advanced: {result.error or result.action}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Instance {instance_id}: {result.action}")


@instance_app.command("cancel")
def instance_cancel(
    instance_id: str,
    cancelled_by: str = typer.Option("cli", "--by"),
    reason: Optional[str] = typer.Option(None),
    close_approval: bool = typer.Option(
        False, help="Also close the instance's pending approval"
    ),
) -> None:
    async def go():
        async with _orchestrator() as orch:
            return await orch.cancel_instance(instance_id, cancelled_by, reason, close_approval)

    _run(go())
    typer.echo(f"Cancelled instance {instance_id}")


# ---------------------------------------------------------------------------
# Approvals
@approval_app.command("list")
def approval_list(
    role: Optional[str] = typer.Option(None),
    status: ApprovalStatus = typer.Option(ApprovalStatus.PENDING),
) -> None:
    """List approval requests (pending by default)."""

    async def go():
        async with _orchestrator() as orch:
            if status == ApprovalStatus.PENDING:
                return await orch.approvals.list_pending_approvals(approver_role=role)
            approvals = await orch.approvals.list_approvals_by_status(status)
            return [a for a in approvals if role is None or a.approver_role == role]

    approvals = _run(go())
    if not approvals:
        typer.echo("No approvals found")
        return
    for a in approvals:
        expires = a.expires_at.isoformat() if a.expires_at else "never"
        typer.echo(
            f"{a.approval_id}\t{a.entity_id}\t{a.approver_role}\t{a.status.value}\t{expires}"
        )


@approval_app.command("decide")
def approval_decide(
    approval_id: str,
    decision: str = typer.Argument(..., help="approved or rejected"),
    decided_by: str = typer.Option("cli", "--by"),
    comment: Optional[str] = typer.Option(None),
) -> None:
    async def go():
        async with _orchestrator() as orch:
            return await orch.handle_approval_decision(
                approval_id, decision, decided_by, comment=comment
            )

    result = _run(go())
    typer.echo(f"Approval {approval_id} {decision}: {result.action or result.error}")


@approval_app.command("escalate")
def approval_escalate(
    approval_id: str, role: Optional[str] = typer.Option(None, help="Defaults to the escalation role")
) -> None:
    async def go():
        async with _orchestrator() as orch:
            return await orch.escalate_approval(approval_id, role)

    approval = _run(go())
    typer.echo(f"Approval {approval_id} escalated to {approval.approver_role}")


# ---------------------------------------------------------------------------
# Events and drivers
@event_app.command("process")
def event_process(
    event_type: str,
    data: Optional[str] = typer.Option(None, help="JSON object with the event data"),
    entity_id: Optional[str] = typer.Option(None, "--entity"),
    line_of_business: Optional[str] = typer.Option(None, "--lob"),
) -> None:
    """
    Apply one domain event immediately.

    Example:
        stageline event process lead.created --entity lead-1 --lob medical
        stageline event process plans.fetching --data '{"entityId": "lead-1"}'
    """
    payload = json.loads(data) if data else {}
    if entity_id:
        payload["entity_id"] = entity_id
    if line_of_business:
        payload["line_of_business"] = line_of_business

    async def go():
        async with _orchestrator() as orch:
            return await orch.process_event(event_type, payload)

    _dump(_run(go()))


@app.command("sweep")
def sweep() -> None:
    """Escalate or expire overdue approvals and time out overdue waits."""

    async def go():
        async with _orchestrator() as orch:
            return await TimeoutSweeper(orch).run_once()

    report = _run(go())
    typer.echo(
        f"Escalated: {len(report.escalated)}, expired: {len(report.expired)}, "
        f"wait timeouts: {len(report.wait_timeouts)}"
    )


@app.command("worker")
def worker(
    topic: Optional[str] = typer.Option(None, help="Inbound topic (default from config)"),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a worker that consumes domain events from the transport.

    Example:
        stageline worker --lifespan 300
    """
    config = load_config()
    transport = get_transport(config=config)
    inbound = topic or config.transport.inbound_topic

    async def go():
        await transport.connect()
        try:
            async with _orchestrator(transport) as orch:
                await EventWorker(transport, orch, inbound).start(lifespan=lifespan)
        finally:
            await transport.disconnect()

    typer.echo(f"Starting worker on topic: {inbound}")
    _run(go())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
