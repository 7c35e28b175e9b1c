import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import mirror
from .config import Config
from .constants import APP_NAME, CONFIG_FILE, LOG_FILE
from .errors import SetupFailure
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)
console = Console()

_OUTCOME_STYLES = {
    mirror.Outcome.UNCHANGED: "dim",
    mirror.Outcome.UPDATED: "green",
    mirror.Outcome.OVERLAID: "cyan",
    mirror.Outcome.FAILED: "bold red",
}


def _short(sha: str | None) -> str:
    return sha[:12] if sha else "-"


def build_config(args: argparse.Namespace) -> Config:
    """Loads layered configuration and applies command-line overrides.

    Args:
        args (argparse.Namespace): Parsed arguments of `sync` or `branches`.

    Returns:
        Config: The effective configuration for this invocation.
    """
    config = Config.load(args.path)

    if getattr(args, "upstream", None):
        config.upstream.url = args.upstream
    if getattr(args, "protect", None):
        config.add_protected_paths(args.protect)
    if getattr(args, "branch", None):
        config.sync.branches = list(args.branch)
    if getattr(args, "exclude", None):
        config.sync.exclude_branches.extend(args.exclude)

    return config


def show_results(results: list[mirror.BranchResult], dry_run: bool = False) -> None:
    """Renders the per-branch results of a run as a table."""
    if not results:
        console.print("[yellow]No branches were processed.[/yellow]")
        return

    table = Table(title="Mirror Results" + (" (dry run)" if dry_run else ""))
    table.add_column("Branch", style="cyan")
    table.add_column("State", style="dim")
    table.add_column("Outcome")
    table.add_column("Commit", style="yellow")
    table.add_column("Pushed")
    table.add_column("Error", style="red")

    for r in results:
        style = _OUTCOME_STYLES[r.outcome]
        table.add_row(
            r.branch,
            r.state.value if r.state else "-",
            f"[{style}]{r.outcome.value}[/{style}]",
            _short(r.commit),
            "✔" if r.published else "",
            str(r.error.__cause__ or r.error) if r.error else "",
        )

    console.print(table)

    failed = sum(1 for r in results if not r.ok)
    if failed:
        console.print(
            f"[bold yellow]⚠ {failed} of {len(results)} branches failed. "
            "See the log above.[/bold yellow]"
        )
    else:
        console.print(f"[bold green]✔ {len(results)} branches synced.[/bold green]")


def run_sync(args: argparse.Namespace) -> None:
    """Runs a mirror pass over the repository at `args.path`.

    Exits with status 1 only when setup fails.
    """
    config = build_config(args)
    mirror.setup_logging(interactive=True, config=config)

    try:
        results = mirror.run_mirror(args.path, config, dry_run=args.dry_run)
    except SetupFailure as e:
        console.print(f"[bold red]SETUP FAILED:[/bold red] {e}")
        sys.exit(1)

    show_results(results, dry_run=args.dry_run)


def list_branches(args: argparse.Namespace) -> None:
    """Fetches upstream and shows the branches a run would process."""
    config = build_config(args)

    try:
        repo = GitRepo(args.path, timeout=config.limits.git_timeout)
    except ValueError:
        console.print("[bold red]Not a git repository.[/bold red]")
        sys.exit(1)

    try:
        with console.status("Fetching upstream...", spinner="dots"):
            mirror.prepare_upstream(repo, config)
    except SetupFailure as e:
        console.print(f"[bold red]SETUP FAILED:[/bold red] {e}")
        sys.exit(1)

    refs = mirror.describe_branches(repo, config)
    if not refs:
        console.print("[yellow]No upstream branches matched the filters.[/yellow]")
        return

    table = Table(title=f"Branches of '{config.upstream.remote}'")
    table.add_column("Branch", style="cyan")
    table.add_column("Upstream", style="yellow")
    table.add_column("Local", style="yellow")
    table.add_column("State")

    for ref in refs:
        in_sync = ref.local_commit == ref.upstream_commit
        state = ref.state.value + (" (in sync)" if in_sync else "")
        table.add_row(
            ref.name, _short(ref.upstream_commit), _short(ref.local_commit), state
        )

    console.print(table)
    console.print(
        f"[dim]Protected paths: {', '.join(config.sync.protected_paths) or 'none'}[/dim]"
    )


def open_config() -> None:
    """Opens the global configuration file in the system default editor."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# fork-sync Configuration\n\n"
                "[upstream]\n"
                '# url = "https://github.com/owner/project.git"\n\n'
                "[sync]\n"
                '# protected_paths = [".github/workflows/"]\n'
            )

    editor = os.environ.get("EDITOR")
    if not editor:
        if sys.platform == "darwin":
            editor = "open"
        else:
            editor = "nano"

    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")

    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except Exception as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def tail_log() -> None:
    """Follows the log file written by headless runs."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "20", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="fork-sync Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    # Upstream Settings
    table.add_row(
        "upstream",
        "url",
        "str",
        "None",
        "Repository to mirror from. Optional if the remote already exists.",
    )
    table.add_row(
        "", "remote", "str", '"upstream"', "The git remote name used for upstream."
    )

    # Fork Settings
    table.add_row(
        "fork", "remote", "str", '"origin"', "The remote synchronized branches go to."
    )
    table.add_row(
        "",
        "force_push",
        "bool",
        "true",
        "Allow publishing to overwrite the fork's branch history.",
    )

    # Sync Settings
    table.add_row(
        "sync",
        "protected_paths",
        "list",
        '[".github/workflows/"]',
        "Paths that keep the fork's content. Appended across config layers.",
    )
    table.add_row(
        "",
        "commit_message",
        "str",
        '"Exclude changes to .github/workflows"',
        "Message of the commit re-applying protected paths.",
    )
    table.add_row(
        "", "branches", "list", '["*"]', "Glob patterns of upstream branches to sync."
    )
    table.add_row(
        "", "exclude_branches", "list", "[]", "Glob patterns of branches to skip."
    )

    # Limits Settings
    table.add_row(
        "limits",
        "max_log_size",
        "int | str",
        '"5mb"',
        "Max size for log files before rotation (e.g., '5mb', '1gb').",
    )
    table.add_row(
        "",
        "git_timeout",
        "int | str",
        '"10m"',
        "Max duration of a single git command (e.g., '90s', '10m', 600).",
    )

    console.print(table)


class ForkSyncHelpFormatter(argparse.HelpFormatter):
    """Groups the subcommands into categories in the help output."""

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []

            groups = {
                "Mirroring": ["sync", "branches"],
                "Maintenance": ["config", "log"],
                "General": ["help"],
            }

            subactions = list(self._iter_indented_subactions(action))

            for group_name, commands in groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue

                parts.append(f"\n  {group_name}:\n")

                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


def _add_target_arguments(sub: argparse.ArgumentParser) -> None:
    """Arguments shared by commands that operate on a repository."""
    sub.add_argument(
        "--path",
        type=Path,
        default=Path.cwd(),
        help="Fork clone to operate on (default: current directory)",
    )
    sub.add_argument("--upstream", metavar="URL", help="Upstream repository URL")
    sub.add_argument(
        "--branch",
        action="append",
        metavar="GLOB",
        help="Only sync branches matching this pattern (repeatable)",
    )
    sub.add_argument(
        "--exclude",
        action="append",
        metavar="GLOB",
        help="Skip branches matching this pattern (repeatable)",
    )
    sub.add_argument(
        "--protect",
        action="append",
        metavar="PATH",
        help="Additional path to keep from the fork (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Builds the argument parser for the fork-sync CLI."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        usage=argparse.SUPPRESS,
        formatter_class=ForkSyncHelpFormatter,
        add_help=False,  # Disable the default help injection
    )

    # Manually re-add the help flags but suppress them from the visual output
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        default=argparse.SUPPRESS,
        help=argparse.SUPPRESS,
    )

    subparsers = parser.add_subparsers(dest="command")

    sync_parser = subparsers.add_parser(
        "sync", help="Mirror upstream branches into the fork (default)"
    )
    _add_target_arguments(sync_parser)
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Update local branches but do not push",
    )

    branches_parser = subparsers.add_parser(
        "branches", help="List upstream branches a sync would process"
    )
    _add_target_arguments(branches_parser)

    config_parser = subparsers.add_parser(
        "config", help="Open global config file or view options"
    )
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )

    subparsers.add_parser("log", help="Tail the log file")
    subparsers.add_parser("help", help="Show this help message")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the fork-sync CLI."""
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    # Bare sync flags (e.g. `fork-sync --dry-run`) imply the default command.
    if not argv or (argv[0].startswith("-") and argv[0] not in ("-h", "--help")):
        argv = ["sync", *argv]
    args = parser.parse_args(argv)

    if args.command == "help":
        parser.print_help()
        return
    elif args.command == "branches":
        list_branches(args)
        return
    elif args.command == "config":
        if getattr(args, "list", False):
            show_config_reference()
        else:
            open_config()
        return
    elif args.command == "log":
        tail_log()
        return
    elif args.command == "sync":
        run_sync(args)


if __name__ == "__main__":
    main()
