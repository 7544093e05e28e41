"""Command line interface for the orchestration core."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from quorum import Orchestrator, load_config
from quorum.errors import QuorumError
from quorum.machine import load_definitions_from_path

app = typer.Typer(help="CLI for the quorum orchestration core")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
machine_app = typer.Typer(help="Commands for managing machine instances")
decision_app = typer.Typer(help="Commands for governance decisions")
escalation_app = typer.Typer(help="Commands for human escalations")

app.add_typer(definition_app, name="definition")
app.add_typer(machine_app, name="machine")
app.add_typer(decision_app, name="decision")
app.add_typer(escalation_app, name="escalation")


def _orchestrator(ctx: typer.Context) -> Orchestrator:
    return Orchestrator.from_config(load_config((ctx.obj or {}).get("config")))


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(None, help="Logging level (default from config)"),
    config: Optional[str] = typer.Option(None, help="Path to the YAML configuration file"),
) -> None:
    """quorum CLI entry point."""
    ctx.obj = {"config": config}
    level = log_level or load_config(config).log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("run")
def run(ctx: typer.Context, lifespan: Optional[float] = None) -> None:
    """
    Run the orchestrator: bus consumers, state machine engine and scheduler.

    Example:
        quorum run
        quorum run --lifespan 600
    """
    orchestrator = _orchestrator(ctx)
    typer.echo("Starting orchestrator")
    try:
        asyncio.run(orchestrator.run(lifespan=lifespan))
    except KeyboardInterrupt:
        typer.echo("Interrupted")


@app.command("health")
def health(ctx: typer.Context) -> None:
    """Print the system health snapshot as JSON."""
    orchestrator = _orchestrator(ctx)
    snapshot = asyncio.run(orchestrator.health.get_system_health())
    typer.echo(snapshot.model_dump_json(indent=2))
    if snapshot.status == "unhealthy":
        raise typer.Exit(code=1)


@definition_app.command("load")
def definition_load(ctx: typer.Context, path: Path) -> None:
    """Validate and persist YAML workflow definitions from a file or directory."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    orchestrator = _orchestrator(ctx)
    try:
        definitions = load_definitions_from_path(path)
    except QuorumError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _save() -> None:
        for definition in definitions:
            await orchestrator.definitions.save(definition)

    asyncio.run(_save())
    for definition in definitions:
        typer.echo(f"Loaded {definition.type} ({len(definition.states)} states)")


@definition_app.command("list")
def definition_list(ctx: typer.Context) -> None:
    """List active workflow definitions."""
    orchestrator = _orchestrator(ctx)
    definitions = asyncio.run(orchestrator.repository.list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        typer.echo(f"{d.type}\t{d.agent_type}\tv{d.version}\t{d.initial_state}")


@machine_app.command("create")
def machine_create(
    ctx: typer.Context,
    definition_type: str,
    context: Optional[str] = typer.Option(None, help="Initial context as a JSON object"),
    priority: int = 50,
    start: bool = typer.Option(False, help="Start the machine immediately"),
) -> None:
    """
    Create a machine instance for a workflow definition.

    Example:
        quorum machine create cto_feature --context '{"githubIssue": 42}' --start
    """
    orchestrator = _orchestrator(ctx)
    initial_context = json.loads(context) if context else {}

    async def _create():
        await orchestrator.definitions.load()
        machine = await orchestrator.engine.create_machine(
            definition_type, initial_context, priority=priority
        )
        if start:
            machine = await orchestrator.engine.start_machine(machine.id)
        return machine

    try:
        machine = asyncio.run(_create())
    except QuorumError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"{machine.id}\t{machine.status}\t{machine.current_state}")


@machine_app.command("list")
def machine_list(ctx: typer.Context, status: Optional[str] = None) -> None:
    """List machine instances ordered by priority."""
    orchestrator = _orchestrator(ctx)
    machines = asyncio.run(
        orchestrator.engine.list_machines(statuses=[status] if status else None)
    )
    if not machines:
        typer.echo("No machines found")
        return
    for m in machines:
        typer.echo(f"{m.id}\t{m.definition_type}\t{m.status}\t{m.current_state}")


@machine_app.command("show")
def machine_show(ctx: typer.Context, machine_id: str) -> None:
    """Show a machine instance and its transition history."""
    orchestrator = _orchestrator(ctx)

    async def _load():
        machine = await orchestrator.engine.get_machine(machine_id)
        transitions = await orchestrator.engine.get_transitions(machine_id)
        return machine, transitions

    machine, transitions = asyncio.run(_load())
    if machine is None:
        typer.echo("Machine not found")
        raise typer.Exit(code=1)
    typer.echo(f"Machine {machine.id}: {machine.status} at {machine.current_state}")
    if machine.error_message:
        typer.echo(f"Error: {machine.error_message}")
    typer.echo(f"Context: {json.dumps(machine.context.as_dict())}")
    for t in transitions:
        outcome = "ok" if t.success else f"failed ({t.error_message})"
        typer.echo(f"- {t.from_state or '-'} -> {t.to_state}: {outcome} attempt {t.attempt_number}")


@machine_app.command("cancel")
def machine_cancel(ctx: typer.Context, machine_id: str, reason: Optional[str] = None) -> None:
    """Cancel a machine that has not finished."""
    orchestrator = _orchestrator(ctx)
    try:
        machine = asyncio.run(orchestrator.engine.cancel_machine(machine_id, reason))
    except QuorumError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"{machine.id}\t{machine.status}")


@decision_app.command("list")
def decision_list(ctx: typer.Context, status: Optional[str] = None) -> None:
    """List governance decisions."""
    orchestrator = _orchestrator(ctx)
    decisions = asyncio.run(orchestrator.repository.list_decisions(status))
    if not decisions:
        typer.echo("No decisions found")
        return
    for d in decisions:
        typer.echo(f"{d.id}\t{d.tier}\t{d.status}\tround {d.veto_round}\t{d.title}")


@escalation_app.command("respond")
def escalation_respond(ctx: typer.Context, escalation_id: str, response: str) -> None:
    """Record a human response to an escalation."""
    orchestrator = _orchestrator(ctx)
    escalation = asyncio.run(
        orchestrator.decisions.respond_to_escalation(escalation_id, response)
    )
    if escalation is None:
        typer.echo("Escalation not found")
        raise typer.Exit(code=1)
    typer.echo(f"{escalation.id}\t{escalation.status}\t{escalation.human_response}")
