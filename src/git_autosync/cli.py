import argparse
import logging
from collections.abc import Iterable
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import daemon, ops
from .config import CONFIG_FILE, Config
from .constants import APP_NAME, GIT_DIR_NAME
from .git_wrapper import GitError, GitRepo

logger = logging.getLogger(APP_NAME)
console = Console()


def _candidate_paths(paths: Iterable[str]) -> list[Path]:
    """Combines configured and command-line paths, preserving order."""
    conf = Config.load()
    merged = [*conf.watch.paths, *paths]
    return [Path(p).expanduser().resolve() for p in dict.fromkeys(merged)]


def describe_repo(path: Path) -> tuple[str, str]:
    """Summarizes the sync state of a single path.

    Args:
        path (Path): A configured repository root.

    Returns:
        tuple[str, str]: (status text, rich style).
    """
    if not path.exists():
        return "Missing", "red"

    repo = GitRepo.open(path)
    if repo is None:
        return "Not a repository", "bold red"

    if reason := ops.is_repo_busy(repo):
        return reason, "bold yellow"

    try:
        if ops.is_modified(repo):
            return f"Modified ({len(repo.status())} files)", "yellow"
    except GitError as e:
        logger.debug(f"Status failed for {path}: {e}")
        return "Error", "bold red"

    return "Clean", "green"


def show_status(paths: Iterable[str] = ()) -> None:
    """Lists the watched repositories and their pending state."""
    candidates = _candidate_paths(paths)
    if not candidates:
        console.print(
            "[yellow]No repositories configured.[/yellow] "
            f"Add paths under \\[watch] in {CONFIG_FILE}."
        )
        return

    conf = Config.load()
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Status")
    table.add_column("Last Commit", justify="right", style="dim")

    for path in candidates:
        display_path = str(path).replace(str(Path.home()), "~")
        status_text, status_style = describe_repo(path)

        last_commit = "-"
        if (path / GIT_DIR_NAME).exists():
            try:
                last_commit = GitRepo(path)._run(["log", "-1", "--format=%cr"])
            except GitError as e:
                logger.debug(f"Failed to read last commit for {path}: {e}")

        table.add_row(
            display_path, f"[{status_style}]{status_text}[/{status_style}]", last_commit
        )

    console.print(table)
    console.print(
        f"[dim]Syncing with {conf.core.remote_name}/{conf.core.branch}.[/dim]"
    )


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="git-autosync Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    table.add_row(
        "core", "remote_name", "str", '"origin"', "Remote to fetch from and push to."
    )
    table.add_row(
        "", "branch", "str", '"master"', "Branch pushed as refs/heads/<branch>."
    )
    table.add_row(
        "",
        "remote_url",
        "str",
        '""',
        "URL used to create the remote when it does not exist.",
    )
    table.add_row(
        "watch", "paths", "list", "[]", "Repository roots to watch for changes."
    )
    table.add_row(
        "",
        "debounce",
        "float | str",
        '"1s"',
        "Quiet period before a change triggers a sync (e.g., '500ms', '2s').",
    )
    table.add_row(
        "limits",
        "max_log_size",
        "int | str",
        '"5mb"',
        "Max size for log files before rotation (e.g., '5mb', '1gb').",
    )

    console.print(table)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the git-autosync CLI."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Automatically commit, merge and push changes in git checkouts.",
    )
    subparsers = parser.add_subparsers(dest="command")

    watch_parser = subparsers.add_parser(
        "watch", help="Watch repositories and sync on every change (default)"
    )
    watch_parser.add_argument("paths", nargs="*", help="Extra repository roots")

    now_parser = subparsers.add_parser("now", help="Commit and sync every repository once")
    now_parser.add_argument("paths", nargs="*", help="Extra repository roots")

    status_parser = subparsers.add_parser("status", help="Show repository status")
    status_parser.add_argument("paths", nargs="*", help="Extra repository roots")

    config_parser = subparsers.add_parser(
        "config", help="Show config file location or available options"
    )
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )

    args = parser.parse_args(argv)

    if args.command == "now":
        daemon.main(args.paths, interactive=True)
        return
    elif args.command == "status":
        show_status(args.paths)
        return
    elif args.command == "config":
        if args.list:
            show_config_reference()
        else:
            state = "exists" if CONFIG_FILE.exists() else "not created yet"
            console.print(f"Config file: [cyan]{CONFIG_FILE}[/cyan] ({state})")
        return

    # Default Action: watch.
    daemon.main(getattr(args, "paths", []))


if __name__ == "__main__":
    main()
