"""Main Typer app definition and commands.

Commands:
    fix      - Run the selected pass(es) for an issue and push a branch
    analyze  - Show which mode(s) an issue would get, and why
    mode     - Resolve a `/mode <token>` command
    modes    - List the mode catalog
    logs     - Show a run's event log
"""
from __future__ import annotations

import json
from typing import Optional

import typer
from rich.panel import Panel
from rich.table import Table

from patch_swarm import __version__
from patch_swarm.cli.common import get_config_or_default, get_console, set_config_path

app = typer.Typer(
    name="patch-swarm",
    help="Supervised, mode-sequenced issue fixing with an AI coding agent",
    add_completion=False,
)

console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"patch-swarm version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to patch-swarm.yaml (default: ./patch-swarm.yaml, built-in defaults if absent)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Patch Swarm - drive an AI coding agent through issues, pass by pass.
    """
    set_config_path(config)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


def _load_config():
    from patch_swarm.errors import ConfigError

    try:
        return get_config_or_default()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def _build_selector(config):
    from patch_swarm.errors import ConfigError
    from patch_swarm.mode_selector import ModeSelector, SelectorSettings
    from patch_swarm.modes import ModeCatalog

    try:
        catalog = ModeCatalog.load(config.modes_path)
    except ConfigError as e:
        console.print(f"[red]Mode overrides error:[/red] {e}")
        raise typer.Exit(1)
    return ModeSelector(catalog, SelectorSettings.from_config(config))


def _describe_selection(selection) -> str:
    if selection.needs_sequencing:
        return f"{selection.primary_mode} → {selection.secondary_mode}"
    return selection.primary_mode


@app.command("fix")
def fix(
    issue: Optional[int] = typer.Option(
        None,
        "--issue",
        "-i",
        help="GitHub issue number. Title, body and labels are fetched with gh unless given.",
    ),
    repo_url: Optional[str] = typer.Option(
        None,
        "--repo-url",
        "-r",
        help="Repository to clone. Defaults to github.repo from config.",
    ),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Issue title."),
    body: str = typer.Option("", "--body", "-b", help="Issue body."),
    labels: Optional[list[str]] = typer.Option(
        None,
        "--label",
        "-l",
        help="Issue label (repeatable). Used for mode selection.",
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        "-m",
        help="Mode token as in `/mode <token>`, e.g. patcher or architect+patcher.",
    ),
    auto: bool = typer.Option(
        False,
        "--auto",
        help="Fall back to content heuristics when labels select nothing.",
    ),
    branch_hint: Optional[str] = typer.Option(
        None,
        "--branch-hint",
        help="Base for branch names (default: issue-<n>).",
    ),
    comment: bool = typer.Option(
        True,
        "--comment/--no-comment",
        help="Post a progress comment on the issue between passes.",
    ),
    show_output: bool = typer.Option(
        False,
        "--show-output",
        help="Stream the agent's output to the console.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
) -> None:
    """
    Fix an issue: clone, run the agent per selected mode, push a branch.
    """
    from patch_swarm.errors import AgentInitError, ConfigError, get_user_action_message
    from patch_swarm.github_client import GitHubIssueClient
    from patch_swarm.logger import RunLogger
    from patch_swarm.progress import ConsoleProgressRenderer
    from patch_swarm.sequencer import PassSequencer

    config = _load_config()
    selector = _build_selector(config)
    labels = list(labels or [])

    client = GitHubIssueClient(config, issue) if issue is not None else None

    if title is None:
        if client is None:
            console.print("[red]Error:[/red] Provide --title or --issue.")
            raise typer.Exit(1)
        details = client.get_issue()
        if details is None:
            console.print(f"[red]Error:[/red] Could not fetch issue #{issue} (is gh installed and authenticated?)")
            raise typer.Exit(1)
        title = details.title
        body = body or details.body
        labels = labels or details.labels

    if repo_url is None:
        if config.github.repo:
            repo_url = f"https://github.com/{config.github.repo}.git"
        elif client is not None:
            repo_url = client.get_clone_url()
    if not repo_url:
        console.print("[red]Error:[/red] Provide --repo-url or set github.repo in config.")
        raise typer.Exit(1)

    selection = None
    if mode:
        selection = selector.select_from_command(f"/mode {mode}")
        if selection is None:
            console.print(f"[red]Error:[/red] Unknown mode '{mode}'.")
            console.print(f"Valid modes: {', '.join(selector.valid_mode_tokens())}")
            raise typer.Exit(1)
    elif auto:
        selection = selector.analyze_issue(title, body, labels)

    hint = branch_hint or (f"issue-{issue}" if issue is not None else "issue")
    run_key = f"issue-{issue}" if issue is not None else "manual"

    sequencer = PassSequencer(config, selector, logger=RunLogger(run_key, config))
    renderer = ConsoleProgressRenderer(console, show_output=show_output)

    try:
        result = sequencer.run(
            repo_url,
            title,
            body,
            labels,
            hint,
            commenter=client if comment else None,
            credential=config.github.get_token(),
            on_progress=renderer,
            selection=selection,
        )
    except (AgentInitError, ConfigError) as e:
        console.print(f"[red]Error:[/red] {get_user_action_message(e)}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        lines = [
            f"[bold]Modes:[/bold] {' → '.join(result.modes_used)}",
            f"[bold]Branch:[/bold] {result.final_branch or '-'}",
            f"[bold]Files:[/bold] {len(result.touched_files)}",
        ]
        lines += [f"  {path}" for path in result.touched_files]
        lines.append(f"\n{result.message}")
        console.print(Panel(
            "\n".join(lines),
            title="[green]Fixed[/green]" if result.success else "[red]Failed[/red]",
            border_style="green" if result.success else "red",
        ))

    raise typer.Exit(0 if result.success else 1)


@app.command("analyze")
def analyze(
    title: str = typer.Option(..., "--title", "-t", help="Issue title."),
    body: str = typer.Option("", "--body", "-b", help="Issue body."),
    labels: Optional[list[str]] = typer.Option(None, "--label", "-l", help="Issue label (repeatable)."),
) -> None:
    """
    Show the mode recommendation for an issue.
    """
    config = _load_config()
    selector = _build_selector(config)

    label_selection = selector.select_from_labels(labels or [])
    selection = selector.analyze_issue(title, body, labels or [])
    score = selector.score_content(title, body)

    table = Table(title="Mode Analysis", show_header=True, header_style="bold")
    table.add_column("Signal", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Architectural score", str(score.architect))
    table.add_row("Localized score", str(score.patcher))
    table.add_row("Code blocks", str(score.code_blocks))
    table.add_row("Selected by", "labels" if label_selection else "content")
    console.print(table)

    console.print(f"\n[bold]Recommendation:[/bold] {_describe_selection(selection)}")


@app.command("mode")
def mode_command(
    token: str = typer.Argument(..., help="Mode token, e.g. architect, multipass, architect+patcher."),
) -> None:
    """
    Resolve a `/mode <token>` command.
    """
    config = _load_config()
    selector = _build_selector(config)

    selection = selector.select_from_command(f"/mode {token}")
    if selection is None:
        console.print(f"[red]Unknown mode:[/red] {token}")
        console.print(f"Valid modes: {', '.join(selector.valid_mode_tokens())}")
        raise typer.Exit(1)

    console.print(f"[bold]Modes:[/bold] {_describe_selection(selection)}")
    if selection.directive:
        console.print(Panel(selection.directive, title="Directive", border_style="dim"))


@app.command("modes")
def list_modes() -> None:
    """
    List the available modes in label-matching order.
    """
    config = _load_config()
    selector = _build_selector(config)

    table = Table(title="Modes", show_header=True, header_style="bold")
    table.add_column("Mode", style="cyan", no_wrap=True)
    table.add_column("Labels")
    table.add_column("Args", style="dim")
    table.add_column("Structural", justify="center")
    table.add_column("Model")

    for item in selector.catalog:
        table.add_row(
            item.name,
            ", ".join(item.labels),
            " ".join(item.default_args) or "-",
            "yes" if item.structural else "",
            selector.model_for_mode(item.name) or config.agent.model,
        )
    console.print(table)


@app.command("logs")
def show_logs(
    run_key: str = typer.Argument(..., help="Run key, e.g. issue-42 or manual."),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Day to read (YYYY-MM-DD, default today)."),
    level: Optional[str] = typer.Option(None, "--level", help="Only entries at this level."),
    event_type: Optional[str] = typer.Option(None, "--event", "-e", help="Only this event type."),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Show at most this many entries."),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON entries."),
) -> None:
    """
    Show a run's event log.
    """
    from patch_swarm.logger import LEVELS, RunLogger

    if level is not None and level not in LEVELS:
        console.print(f"[red]Error:[/red] Unknown level '{level}'. Use one of: {', '.join(LEVELS)}")
        raise typer.Exit(1)

    config = _load_config()
    entries = RunLogger(run_key, config).read_logs(
        date=date, level=level, event_type=event_type, limit=limit
    )

    if as_json:
        console.print_json(json.dumps(entries))
        return
    if not entries:
        console.print(f"[dim]No log entries for {run_key}.[/dim]")
        return

    table = Table(title=f"Run log: {run_key}", show_header=True, header_style="bold")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Level")
    table.add_column("Pass", style="cyan")
    table.add_column("Event")
    table.add_column("Data", overflow="fold")
    for entry in entries:
        table.add_row(
            entry.get("timestamp", "")[11:19],
            entry.get("level", ""),
            entry.get("pass", ""),
            entry.get("event_type", ""),
            json.dumps(entry.get("data", {}), default=str),
        )
    console.print(table)


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
