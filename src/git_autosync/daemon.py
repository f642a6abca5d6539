import atexit
import logging
import os
import queue
import signal
import sys
from collections.abc import Iterable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from rich.console import Console

from . import ops
from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .errors import AutoSyncError, MergeConflict, NotifierError, PushFailed
from .git_wrapper import GitRepo
from .registry import RepositoryRegistry
from .router import ChangeRouter
from .sync import SyncEngine, SyncReport
from .system import get_system
from .watcher import ChangeEvent, ChangeNotifier

SYSTEM = get_system()

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

console = Console()
err_console = Console(stderr=True)


def build_engine(config: Config) -> SyncEngine:
    """Creates the sync engine from the [core] configuration section."""
    return SyncEngine(
        remote_name=config.core.remote_name,
        branch=config.core.branch,
        remote_url=config.core.remote_url,
    )


def run_cycle(repo: GitRepo, engine: SyncEngine) -> SyncReport | None:
    """Runs the commit -> sync -> push pipeline once for a repository.

    Args:
        repo (GitRepo): The repository that changed.
        engine (SyncEngine): The engine that merges and pushes.

    Returns:
        SyncReport | None: The sync result, or None if nothing was committed.

    Raises:
        AutoSyncError: Any commit or sync failure, for the caller to report.
    """
    if reason := ops.is_repo_busy(repo):
        logger.info(f"SKIPPED {repo.path.name}: {reason}")
        return None

    if not ops.is_modified(repo):
        logger.debug(f"CLEAN {repo.path.name}: nothing to commit.")
        return None

    ops.commit_all(repo, ops.auto_commit_message())
    return engine.sync(repo)


def attempt(
    repo: GitRepo, engine: SyncEngine, interactive: bool = False
) -> SyncReport | None:
    """Runs a cycle and reports, rather than raises, operation errors.

    Merge conflicts are reported distinctly since they need a human; push
    failures keep the local commit and are retried by the next cycle.
    """
    name = repo.path.name
    try:
        report = run_cycle(repo, engine)
    except MergeConflict as e:
        logger.error(f"CONFLICT {name}: {e}. Resolve and commit to resume syncing.")
        if interactive:
            console.print(f"[bold red]CONFLICT:[/bold red] {name}: {e}")
        else:
            SYSTEM.notify("Merge Conflict", f"{name}: manual resolution required")
        return None
    except PushFailed as e:
        logger.warning(f"PUSH FAILED {name}: {e}. Local commit retained.")
        if interactive:
            console.print(f"[bold yellow]PUSH FAILED:[/bold yellow] {name}: {e}")
        else:
            SYSTEM.notify("Push Failed", f"{name}: will retry on the next change")
        return None
    except AutoSyncError as e:
        logger.error(f"ERROR {name}: {e}")
        if interactive:
            console.print(f"[bold red]ERROR:[/bold red] {name}: {e}")
        return None
    except Exception:
        logger.exception(f"LOOP ERROR {name}")
        return None

    if interactive:
        if report is None:
            console.print(f"[dim]{name}: nothing to sync.[/dim]")
        else:
            console.print(
                f"[bold green]SUCCESS:[/bold green] {name}: "
                f"{report.analysis.value}, pushed."
            )
    return report


def process_event(
    event: ChangeEvent, router: ChangeRouter, engine: SyncEngine
) -> SyncReport | None:
    """Routes one change event and runs the pipeline on its repository."""
    repo = router.route(event)
    if repo is None:
        logger.debug(f"IGNORED {event.path}")
        return None
    logger.debug(f"EVENT {repo.path.name}: {event.kind.value} {event.path}")
    return attempt(repo, engine)


def serve(
    events: "queue.Queue[ChangeEvent | None]",
    router: ChangeRouter,
    engine: SyncEngine,
) -> None:
    """Consumes events one at a time until a None sentinel is received.

    All git work happens on the calling thread, so operations never overlap,
    even across repositories.
    """
    while True:
        event = events.get()
        try:
            if event is None:
                return
            process_event(event, router, engine)
        finally:
            events.task_done()


def run_once(
    registry: RepositoryRegistry, engine: SyncEngine, interactive: bool = False
) -> list[SyncReport]:
    """Runs the pipeline over every registered repository.

    Returns:
        list[SyncReport]: Reports of the repositories that were synced.
    """
    reports = []
    for entry in registry:
        if report := attempt(entry.repo, engine, interactive=interactive):
            reports.append(report)
    return reports


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr
                            and to a rotating log file.
        max_log_size (int): Max bytes of the log file before rotation.
    """
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to a stream (stderr is captured by systemd/launchd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def _write_pid_file() -> None:
    try:
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def main(paths: Iterable[str | Path] = (), interactive: bool = False) -> None:
    """Entry point of the daemon.

    Builds the registry from the configured and given paths. Interactive mode
    runs a single pass over all repositories; otherwise the roots are watched
    and every change event drives one pipeline run until the process is stopped.

    Args:
        paths (Iterable[str | Path]): Extra repository roots to watch.
        interactive (bool, optional): Run one pass with console output and exit.
                                      Defaults to False.
    """
    config = Config.load()
    setup_logging(interactive, config.limits.max_log_size)

    registry = RepositoryRegistry.from_paths([*config.watch.paths, *paths])
    engine = build_engine(config)

    if not len(registry):
        logger.warning("No repositories to watch. Add paths under [watch] in the config.")
        if interactive:
            console.print("[yellow]No repositories to sync.[/yellow]")
        return

    if interactive:
        run_once(registry, engine, interactive=True)
        return

    _write_pid_file()

    events: queue.Queue[ChangeEvent | None] = queue.Queue()
    notifier = ChangeNotifier(registry.roots(), events, debounce=config.watch.debounce)
    try:
        notifier.start()
    except NotifierError as e:
        logger.critical(f"FATAL: {e}")
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        sys.exit(1)

    def stop_handler(_signum: int, _frame: FrameType | None) -> None:
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, stop_handler)

    logger.info(f"Watching {len(registry)} repositories.")
    try:
        # Catch up on changes made while the daemon was not running.
        run_once(registry, engine)
        serve(events, ChangeRouter(registry), engine)
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    finally:
        notifier.stop()


if __name__ == "__main__":
    main()
