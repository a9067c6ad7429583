"""Command line interface for the production workflow."""

import asyncio
import logging
import sys
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from bookflow.context import get_default_settings
from bookflow.error_handling import GenerationErrorCategory, WorkflowError
from bookflow.models import Phase
from bookflow.workflow import state_machine
from bookflow.workflow.service import WorkflowService, create_workflow_service

console = Console()

logger = logging.getLogger(__name__)

# Events that can be checked offline, by name
_EVENT_FACTORIES = {
    "intake-completed": lambda phase, **kw: state_machine.IntakeCompleted(),
    "review-submitted": lambda phase, **kw: state_machine.CharacterReviewSubmitted(
        characters_missing_images=kw["missing_images"],
        has_unresolved_feedback=kw["unresolved"],
    ),
    "generation-started": lambda phase, **kw: state_machine.GenerationStarted(phase),
    "batch-completed": lambda phase, **kw: state_machine.GenerationBatchCompleted(
        phase, kw["succeeded"], kw["failed"], kw["send_count"]
    ),
    "material-sent": lambda phase, **kw: state_machine.MaterialSent(phase),
    "customer-approved": lambda phase, **kw: state_machine.CustomerApproved(phase),
    "revision-requested": lambda phase, **kw: state_machine.RevisionRequested(phase),
    "artifact-regenerated": lambda phase, **kw: state_machine.ArtifactRegenerated(phase, kw["send_count"]),
    "project-completed": lambda phase, **kw: state_machine.ProjectCompleted(),
}


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )


def _build_service() -> WorkflowService:
    return create_workflow_service(get_default_settings())


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """Bookflow - production workflow for AI-illustrated children's books."""
    setup_logging(verbose)
    ctx.ensure_object(dict)


@cli.command()
@click.argument("project_id")
def status(project_id: str):
    """Show a project's status, characters and pages."""
    service = _build_service()
    overview = service.get_project_overview(project_id)
    project = overview["project"]
    phase = state_machine.phase_of(project["status"])

    console.print(Panel.fit(
        f"[bold]{project['book_title'] or project_id}[/bold]\n"
        f"Status: [cyan]{project['status']}[/cyan] (canonical: {overview['canonical_status']})\n"
        f"Phase: {phase.value if phase else '-'}\n"
        f"Character sends: {project['character_send_count']}  "
        f"Illustration sends: {project['illustration_send_count']}",
        title="Project",
    ))

    characters = Table(title="Characters")
    characters.add_column("Name")
    characters.add_column("Main")
    characters.add_column("Pages")
    characters.add_column("Image")
    characters.add_column("Error")
    for character in overview["characters"]:
        error = character.get("generation_error")
        characters.add_row(
            character.get("name") or character.get("role") or "-",
            "yes" if character["is_main"] else "",
            ", ".join(character["appears_in"]),
            "yes" if character.get("image_url") else "[red]missing[/red]",
            GenerationErrorCategory.from_message(error).value if error else "",
        )
    console.print(characters)

    pages = Table(title="Pages")
    pages.add_column("#", justify="right")
    pages.add_column("Characters", justify="right")
    pages.add_column("Illustration")
    pages.add_column("Sketch")
    pages.add_column("Feedback")
    for page in overview["pages"]:
        pages.add_row(
            str(page["page_number"]),
            str(len(page["character_ids"])),
            "yes" if page.get("illustration_url") else "-",
            "yes" if page.get("sketch_url") else "-",
            "open" if page.get("feedback_notes") and not page.get("is_resolved") else "",
        )
    console.print(pages)


@cli.command()
@click.argument("project_id")
def extract(project_id: str):
    """Extract secondary characters from the manuscript."""
    service = _build_service()
    summary = asyncio.run(service.run_extraction(project_id))

    table = Table(title=f"Extraction for {project_id}")
    table.add_column("Outcome")
    table.add_column("Count", justify="right")
    for key, value in summary.counts.items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)

    for character in summary.created:
        console.print(f"[green]+[/green] {character.display_name} (pages {', '.join(character.appears_in)})")
    if summary.main_appearance_fallback:
        console.print("[yellow]Main character appearances were missing; assumed every page[/yellow]")


@cli.command()
@click.argument("status_value")
@click.argument("event", type=click.Choice(sorted(_EVENT_FACTORIES)))
@click.option("--phase", type=click.Choice([p.value for p in Phase]), default=Phase.CHARACTER.value)
@click.option("--missing-images", is_flag=True, help="Review submitted with characters lacking images")
@click.option("--unresolved", is_flag=True, help="Review submitted with unresolved feedback")
@click.option("--succeeded", type=int, default=0)
@click.option("--failed", type=int, default=0)
@click.option("--send-count", type=int, default=0)
def transition(status_value: str, event: str, phase: str, **event_fields):
    """Check offline which status EVENT produces from STATUS_VALUE."""
    workflow_event = _EVENT_FACTORIES[event](Phase(phase), **event_fields)
    try:
        result = state_machine.next_status(status_value, workflow_event)
    except WorkflowError as exc:
        console.print(f"[red]Rejected:[/red] {exc}")
        sys.exit(1)

    canonical = state_machine.resolve_status(status_value)
    note = f" (legacy alias of {canonical.value})" if state_machine.is_legacy_status(status_value) else ""
    console.print(f"{status_value}{note} --{workflow_event.name}--> [green]{result.value}[/green]")


async def _run_and_wait(service: WorkflowService, dispatch) -> None:
    console.print(f"Generating {len(dispatch.entity_ids)} item(s)...")
    await service.orchestrator.wait_for_idle()


@cli.command("generate-characters")
@click.argument("project_id")
@click.option("--character", "character_ids", multiple=True, help="Restrict to these character ids")
def generate_characters(project_id: str, character_ids: Tuple[str, ...]):
    """Generate character reference images and their sketches."""
    service = _build_service()

    async def _run():
        dispatch = service.generate_characters(project_id, list(character_ids) or None)
        await _run_and_wait(service, dispatch)

    asyncio.run(_run())
    console.print(f"Project status: [cyan]{service.store.get_project_status(project_id)}[/cyan]")


@cli.command()
@click.argument("project_id")
@click.option("--page", "page_ids", multiple=True, help="Restrict to these page ids")
def sketches(project_id: str, page_ids: Tuple[str, ...]):
    """Generate page illustrations (page 1 first) and their sketches."""
    service = _build_service()

    async def _run():
        dispatch = service.start_sketches(project_id, list(page_ids) or None)
        await _run_and_wait(service, dispatch)

    asyncio.run(_run())
    console.print(f"Project status: [cyan]{service.store.get_project_status(project_id)}[/cyan]")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8000, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str, port: int, reload: bool):
    """Run the workflow API server."""
    from bookflow.web.app import run_server

    console.print(f"[bold]Starting Bookflow API[/bold] on http://{host}:{port}")
    run_server(host=host, port=port, reload=reload)


def main(argv: Optional[list] = None):
    try:
        cli(args=argv, standalone_mode=True)
    except WorkflowError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
