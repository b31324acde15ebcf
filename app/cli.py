from __future__ import annotations

from pathlib import Path
from typing import Optional

import orjson
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from adapters.filesystem.flow_repository import FileSystemFlowRepository
from app.config import AppSettings, load_settings
from app.editor_wiring import build_editor, resolve_flow_path
from domain.errors import FunnelFlowError
from domain.models import FunnelFlow, FunnelMeta, MerchantType
from domain.services.connection_editor import PendingDelete
from domain.services.flow_mutations import create_minimal_flow
from domain.services.flow_validation import (
    DraftStatus,
    FlowHighlights,
    compute_draft_status,
    compute_highlights,
)

app = typer.Typer(no_args_is_help=True)
console = Console()

ConfigOption = typer.Option(None, "--config", help="YAML settings file.")


def _settings(config_path: Optional[Path]) -> AppSettings:
    return load_settings(config_path)


def _load_flow(repository: FileSystemFlowRepository, path: Path) -> FunnelFlow:
    if not path.exists():
        console.print(f"[red]File not found:[/] {path}")
        raise typer.Exit(code=1)
    try:
        return repository.load(path)
    except (ValidationError, orjson.JSONDecodeError) as exc:
        console.print(f"[red]Invalid funnel flow:[/] {exc}")
        raise typer.Exit(code=1) from exc


def _print_highlights(highlights: FlowHighlights) -> None:
    if highlights.is_clean:
        console.print("[green]No orphaned, broken or invalid connections.[/]")
        return
    table = Table("Issue", "Block", "Detail")
    for block_id in highlights.orphaned_block_ids:
        table.add_row("orphaned", block_id, "no link from the previous stage")
    for block_id in highlights.broken_block_ids:
        table.add_row("broken", block_id, "no path to the next stage")
    for invalid in highlights.invalid_options:
        detail = f"#{invalid.option_index}: {invalid.reason}"
        table.add_row("invalid option", invalid.block_id, detail)
    console.print(table)


def _print_draft_status(status: DraftStatus) -> None:
    if status.is_draft:
        console.print(f"[yellow]Draft:[/] {status.reason}")
    else:
        console.print("[green]Live-ready[/]")


@app.command("new")
def new_flow(
    path: Path = typer.Argument(..., help="Where to write the new funnel flow."),
    force: bool = typer.Option(False, help="Overwrite an existing file."),
    config: Optional[Path] = ConfigOption,
) -> None:
    target = resolve_flow_path(_settings(config), path)
    if target.exists() and not force:
        console.print(f"[red]Refusing to overwrite:[/] {target}")
        raise typer.Exit(code=1)
    FileSystemFlowRepository().save(create_minimal_flow(), target)
    console.print(f"[green]Wrote[/] {target}")


@app.command("check")
def check_flow(
    path: Path = typer.Argument(..., help="Funnel flow JSON file."),
    membership_trigger: Optional[str] = typer.Option(None, help="Membership trigger type."),
    app_trigger: Optional[str] = typer.Option(None, help="App trigger type."),
    merchant_type: Optional[str] = typer.Option(None, help="qualification or upsell."),
    strict: bool = typer.Option(False, help="Exit with code 1 when the funnel is a draft."),
    config: Optional[Path] = ConfigOption,
) -> None:
    settings = _settings(config)
    flow = _load_flow(FileSystemFlowRepository(), resolve_flow_path(settings, path))
    meta = _build_meta(settings, membership_trigger, app_trigger, merchant_type)

    _print_highlights(compute_highlights(flow))
    status = compute_draft_status(flow, meta, settings.editor.placeholder_prefix)
    _print_draft_status(status)
    if strict and status.is_draft:
        raise typer.Exit(code=1)


@app.command("repair")
def repair_flow(
    input_path: Path = typer.Argument(..., help="Raw funnel flow payload."),
    output_path: Path = typer.Argument(..., help="Where to write the repaired flow."),
) -> None:
    repository = FileSystemFlowRepository()
    if not input_path.exists():
        console.print(f"[red]File not found:[/] {input_path}")
        raise typer.Exit(code=1)
    try:
        flow = repository.load_repaired(input_path)
    except orjson.JSONDecodeError as exc:
        console.print(f"[red]Not a JSON document:[/] {exc}")
        raise typer.Exit(code=1) from exc
    if flow is None:
        console.print(f"[red]Nothing salvageable in[/] {input_path}")
        raise typer.Exit(code=1)
    repository.save(flow, output_path)
    console.print(
        f"[green]Wrote[/] {output_path} ({len(flow.stages)} stages, {len(flow.blocks)} blocks)"
    )


@app.command("delete-block")
def delete_block(
    path: Path = typer.Argument(..., help="Funnel flow JSON file."),
    block_id: str = typer.Argument(..., help="Block to delete."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    config: Optional[Path] = ConfigOption,
) -> None:
    settings = _settings(config)
    flow_path = resolve_flow_path(settings, path)
    flow = _load_flow(FileSystemFlowRepository(), flow_path)
    editor = build_editor(settings, flow, flow_path)

    try:
        state = editor.delete_block(block_id)
    except FunnelFlowError as exc:
        console.print(f"[red]Cannot delete:[/] {exc}")
        raise typer.Exit(code=1) from exc
    if not isinstance(state, PendingDelete):
        raise typer.Exit(code=1)

    impact = state.impact
    console.print(f"Deleting [bold]{block_id}[/] disconnects:")
    for ref in impact.affected_options:
        console.print(f"  option #{ref.option_index} of {ref.block_id}")
    for link in impact.affected_cross_links:
        console.print(f"  {link.kind} link of {link.block_id}")
    if impact.outgoing_targets:
        console.print(f"  outgoing links to {', '.join(impact.outgoing_targets)}")
    _print_highlights(impact.projected)

    if not yes and not typer.confirm("Delete this block?"):
        editor.cancel()
        console.print("[yellow]Cancelled[/]")
        raise typer.Exit(code=0)

    editor.confirm_delete()
    console.print(f"[green]Deleted[/] {block_id} from {flow_path}")
    _print_draft_status(editor.draft_status)


def _build_meta(
    settings: AppSettings,
    membership_trigger: Optional[str],
    app_trigger: Optional[str],
    merchant_type: Optional[str],
) -> FunnelMeta:
    resolved: MerchantType = settings.editor.default_merchant_type
    if merchant_type is not None:
        if merchant_type not in ("qualification", "upsell"):
            console.print(f"[red]Unknown merchant type:[/] {merchant_type}")
            raise typer.Exit(code=2)
        resolved = "upsell" if merchant_type == "upsell" else "qualification"
    return FunnelMeta(
        membership_trigger_type=membership_trigger,
        app_trigger_type=app_trigger,
        merchant_type=resolved,
    )


if __name__ == "__main__":
    app()
