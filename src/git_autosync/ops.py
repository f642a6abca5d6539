import datetime
import logging
import time

from .constants import APP_NAME, COMMIT_MESSAGE_PREFIX, TIMESTAMP_FORMAT
from .errors import IdentityMissing, NoParent, ObjectWriteFailure
from .git_wrapper import GitError, GitRepo

logger = logging.getLogger(APP_NAME)

STALE_LOCK_SECONDS = 24 * 3600


def auto_commit_message(now: datetime.datetime | None = None) -> str:
    """Builds the automatic commit message for the given local time.

    Args:
        now (datetime.datetime | None): The timestamp to embed. Defaults to now.

    Returns:
        str: A message of the form 'Auto-Commit at: YYYY-MM-DD HH:MM:SS'.
    """
    now = now or datetime.datetime.now()
    return f"{COMMIT_MESSAGE_PREFIX}{now.strftime(TIMESTAMP_FORMAT)}"


def is_modified(repo: GitRepo) -> bool:
    """Determines whether the working tree has any pending change.

    Untracked files count as changes; submodules are ignored.

    Args:
        repo (GitRepo): The repository to inspect.

    Returns:
        bool: True if `git status` reports anything.
    """
    return bool(repo.status())


def is_repo_busy(repo: GitRepo) -> str | None:
    """Determines if a repository is currently locked by another git operation.

    Args:
        repo (GitRepo): The repository to inspect.

    Returns:
        str | None: A human-readable reason if the repository is busy, else None.
    """
    # 1. Operational state (e.g., MERGE_HEAD left by a conflicted sync).
    if marker := repo.operation_in_progress():
        if marker == "MERGE_HEAD":
            return "Merge in progress"
        return f"Git operation in progress ({marker})"

    # 2. index.lock held by a concurrent git process.
    lock_file = repo.git_dir / "index.lock"
    if lock_file.exists():
        try:
            age = time.time() - lock_file.stat().st_mtime
        except OSError:
            return None  # Lock vanished (race resolved).
        if age > STALE_LOCK_SECONDS:
            logger.warning(
                f"Stale lock detected in {repo.path.name} ({age / 3600:.1f}h old). "
                f"Run 'rm {lock_file}' to fix."
            )
        return "Index locked"

    return None


def commit_all(repo: GitRepo, message: str) -> str:
    """Stages every change in the working tree and commits it on top of HEAD.

    Uses git plumbing so the resulting commit has exactly one parent, the
    current HEAD, and HEAD's branch is advanced atomically.

    Args:
        repo (GitRepo): The repository to commit in.
        message (str): The commit message.

    Returns:
        str: The SHA-1 of the new commit.

    Raises:
        IdentityMissing: If user.name or user.email is not configured.
        NoParent: If HEAD does not resolve to a commit (empty repository).
        ObjectWriteFailure: If staging or writing objects/refs fails.
    """
    if repo.identity() is None:
        raise IdentityMissing(
            f"{repo.path.name}: set user.name and user.email to allow commits"
        )

    try:
        repo.add_all()
        tree_oid = repo.write_tree()
    except GitError as e:
        raise ObjectWriteFailure(str(e)) from e

    parent = repo.rev_parse("HEAD^{commit}")
    if not parent:
        raise NoParent(f"{repo.path.name}: HEAD does not point at a commit")

    try:
        commit_oid = repo.commit_tree(tree_oid, [parent], message)
        repo.update_ref("HEAD", commit_oid, parent, reason=message)
    except GitError as e:
        raise ObjectWriteFailure(str(e)) from e

    logger.info(f"COMMITTED {repo.path.name}: {commit_oid[:8]} ({message})")
    return commit_oid
