"""Fetch, merge and push protocol run after every automatic commit.

A sync attempt moves through the states of `SyncState`:

    idle -> fetching -> analyzing -> fast_forwarding -> pushing -> pushed | push_failed
                                  -> merging -> merged -> pushing -> ...
                                             -> conflicted

`conflicted` is terminal: the working tree is left mid-merge with conflict
markers and later calls refuse to proceed until the merge is resolved outside
the daemon. `push_failed` keeps the local commits; the next sync pushes them.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from .constants import APP_NAME, DEFAULT_BRANCH, DEFAULT_REMOTE
from .errors import (
    BranchMismatch,
    MergeConflict,
    MergeFailed,
    NetworkError,
    NonFastForwardRejected,
    PushNetworkError,
    RemoteMisconfigured,
    SyncState,
    UnmergeableHistory,
)
from .git_wrapper import GitError, GitRepo

logger = logging.getLogger(APP_NAME)

_MISSING_REF_MARKERS = ("couldn't find remote ref", "could not find remote ref")
_REJECTED_MARKERS = ("non-fast-forward", "[rejected]", "fetch first", "stale info")


class MergeAnalysis(Enum):
    """Relationship between local HEAD and the fetched remote tip."""

    UP_TO_DATE = "up_to_date"
    FAST_FORWARD = "fast_forward"
    NORMAL = "normal"
    UNMERGEABLE = "unmergeable"


@dataclass
class MergeOutcome:
    """Result of a three-way merge attempt.

    Attributes:
        committed (str | None): The merge commit, when the merge was clean.
        conflicted_paths (list[str]): Paths left conflicted otherwise.
    """

    committed: str | None = None
    conflicted_paths: list[str] = field(default_factory=list)

    @property
    def conflict(self) -> bool:
        return self.committed is None


@dataclass
class SyncReport:
    """Summary of a completed sync attempt.

    Attributes:
        analysis (MergeAnalysis): How local and remote related after the fetch.
        head (str | None): Local HEAD after the merge step.
        state (SyncState): The terminal state reached.
    """

    analysis: MergeAnalysis
    head: str | None
    state: SyncState = SyncState.PUSHED


def merge_message(remote: str, local: str) -> str:
    """Message for a two-parent merge commit."""
    return f"Merge: {remote} into {local}"


class SyncEngine:
    """Keeps a repository's branch in step with a single remote branch.

    The remote and branch are fixed per engine rather than derived from the
    repository's tracking configuration.

    Attributes:
        remote_name (str): The remote to fetch from and push to.
        branch (str): The branch name on both sides of the push refspec.
        remote_url (str): URL used to create the remote when it is missing.
    """

    def __init__(
        self,
        remote_name: str = DEFAULT_REMOTE,
        branch: str = DEFAULT_BRANCH,
        remote_url: str = "",
    ):
        self.remote_name = remote_name
        self.branch = branch
        self.remote_url = remote_url

    @property
    def tracking_ref(self) -> str:
        """str: Local ref holding the last fetched remote tip."""
        return f"refs/remotes/{self.remote_name}/{self.branch}"

    @property
    def push_refspec(self) -> str:
        """str: Explicit refspec pushing the local branch to the same-named remote branch."""
        return f"refs/heads/{self.branch}:refs/heads/{self.branch}"

    def _enter(self, repo: GitRepo, state: SyncState) -> None:
        logger.debug(f"SYNC {repo.path.name}: {state.value}")

    def sync(self, repo: GitRepo) -> SyncReport:
        """Fetches, merges the remote branch into HEAD and pushes the result.

        Args:
            repo (GitRepo): A repository whose changes were just committed.

        Returns:
            SyncReport: The analysis and resulting HEAD, in state `pushed`.

        Raises:
            MergeConflict: A merge is (or now is) waiting for manual resolution.
            RemoteMisconfigured: The remote is missing and no URL is configured.
            NetworkError: The fetch failed.
            BranchMismatch: HEAD is not on the configured branch.
            UnmergeableHistory: Local and remote share no history.
            MergeFailed: Git failed while analyzing or updating HEAD.
            PushFailed: The push failed; local commits are retained.
        """
        self._enter(repo, SyncState.IDLE)
        if repo.merge_in_progress():
            raise MergeConflict(repo.unmerged_paths())

        self.check_branch(repo)
        self.ensure_remote(repo)

        self._enter(repo, SyncState.FETCHING)
        remote_tip = self.fetch(repo)

        self._enter(repo, SyncState.ANALYZING)
        analysis = self.merge_analysis(repo, remote_tip)
        logger.debug(f"SYNC {repo.path.name}: analysis {analysis.value}")

        if analysis is MergeAnalysis.UNMERGEABLE:
            raise UnmergeableHistory(
                f"{repo.path.name}: no common history with {self.tracking_ref}"
            )

        local = repo.rev_parse("HEAD")
        if analysis is MergeAnalysis.FAST_FORWARD:
            self._enter(repo, SyncState.FAST_FORWARDING)
            self.fast_forward(repo, local, remote_tip)
            logger.info(f"FAST-FORWARD {repo.path.name}: now at {remote_tip[:8]}")
        elif analysis is MergeAnalysis.NORMAL:
            self._enter(repo, SyncState.MERGING)
            outcome = self.merge(repo, local, remote_tip)
            if outcome.conflict:
                self._enter(repo, SyncState.CONFLICTED)
                raise MergeConflict(outcome.conflicted_paths)
            self._enter(repo, SyncState.MERGED)
            logger.info(f"MERGED {repo.path.name}: {outcome.committed[:8]}")

        self._enter(repo, SyncState.PUSHING)
        self.push(repo)
        self._enter(repo, SyncState.PUSHED)

        return SyncReport(analysis=analysis, head=repo.rev_parse("HEAD"))

    def check_branch(self, repo: GitRepo) -> None:
        """Requires HEAD to be on the configured branch.

        Raises:
            BranchMismatch: If another branch (or a detached HEAD) is checked out.
        """
        try:
            current = repo.current_branch()
        except GitError as e:
            raise BranchMismatch(f"{repo.path.name}: cannot read branch: {e}") from e
        if current != self.branch:
            raise BranchMismatch(
                f"{repo.path.name}: on '{current or 'detached HEAD'}', "
                f"but syncing '{self.branch}'"
            )

    def ensure_remote(self, repo: GitRepo) -> None:
        """Creates the configured remote from `remote_url` if it does not exist.

        Raises:
            RemoteMisconfigured: If the remote is missing and the URL is empty,
                                 or git refuses to add it.
        """
        try:
            if self.remote_name in repo.remotes():
                return
            if not self.remote_url:
                raise RemoteMisconfigured(
                    f"{repo.path.name}: remote '{self.remote_name}' does not exist "
                    "and no remote_url is configured"
                )
            repo.add_remote(self.remote_name, self.remote_url)
        except GitError as e:
            raise RemoteMisconfigured(f"{repo.path.name}: {e}") from e
        logger.info(
            f"REMOTE {repo.path.name}: added '{self.remote_name}' -> {self.remote_url}"
        )

    def fetch(self, repo: GitRepo) -> str | None:
        """Fetches the remote branch into its tracking ref.

        Returns:
            str | None: The remote tip, or None if the remote has no such branch yet.

        Raises:
            NetworkError: If the fetch fails for any other reason.
        """
        refspec = f"+refs/heads/{self.branch}:{self.tracking_ref}"
        try:
            repo.fetch(self.remote_name, refspec)
        except GitError as e:
            if any(m in e.stderr.lower() for m in _MISSING_REF_MARKERS):
                logger.info(
                    f"FETCH {repo.path.name}: '{self.branch}' not on "
                    f"'{self.remote_name}' yet."
                )
                return None
            raise NetworkError(f"{repo.path.name}: fetch failed: {e}") from e
        return repo.rev_parse(self.tracking_ref)

    def merge_analysis(self, repo: GitRepo, remote_tip: str | None) -> MergeAnalysis:
        """Classifies how HEAD relates to the remote tip.

        Args:
            repo (GitRepo): The repository.
            remote_tip (str | None): The fetched remote commit, if any.

        Returns:
            MergeAnalysis: The relationship between the two commits.
        """
        local = repo.rev_parse("HEAD")
        if remote_tip is None or remote_tip == local:
            return MergeAnalysis.UP_TO_DATE
        if local is None:
            return MergeAnalysis.UNMERGEABLE
        try:
            if repo.is_ancestor(remote_tip, local):
                return MergeAnalysis.UP_TO_DATE
            if repo.is_ancestor(local, remote_tip):
                return MergeAnalysis.FAST_FORWARD
            if repo.merge_base(local, remote_tip):
                return MergeAnalysis.NORMAL
        except GitError as e:
            raise MergeFailed(
                f"{repo.path.name}: analysis failed: {e}", SyncState.ANALYZING
            ) from e
        return MergeAnalysis.UNMERGEABLE

    def fast_forward(self, repo: GitRepo, local: str, remote_tip: str) -> None:
        """Checks out the remote tip and moves HEAD's branch to it. No commit is made.

        Raises:
            MergeFailed: If the working tree or HEAD cannot be updated.
        """
        try:
            repo.read_tree(local, remote_tip)
            repo.update_ref(
                "HEAD", remote_tip, local, reason=f"{self.remote_name}: fast-forward"
            )
        except GitError as e:
            raise MergeFailed(
                f"{repo.path.name}: fast-forward failed: {e}",
                SyncState.FAST_FORWARDING,
            ) from e

    def merge(self, repo: GitRepo, local: str, remote: str) -> MergeOutcome:
        """Three-way merges `remote` into `local`.

        A clean merge is committed with parents (local, remote) and checked out.
        A conflicted merge creates no commit; the conflicts are written to the
        working tree and the merge is left in progress.

        Returns:
            MergeOutcome: The merge commit, or the conflicted paths.

        Raises:
            MergeFailed: If git fails to compute, apply or commit the merge.
        """
        message = merge_message(remote, local)
        try:
            tree, conflicts = repo.merge_tree(local, remote)
            if not conflicts:
                commit = repo.commit_tree(tree, [local, remote], message)
                repo.read_tree(local, commit)
                repo.update_ref("HEAD", commit, local, reason=message)
                return MergeOutcome(committed=commit)

            logger.warning(
                f"CONFLICT {repo.path.name}: {len(conflicts)} path(s) conflict "
                f"with {self.tracking_ref}"
            )
            if not repo.merge_no_commit(remote):
                return MergeOutcome(conflicted_paths=repo.unmerged_paths() or conflicts)

            # merge-tree and the working-tree merge disagree; the index now
            # holds a clean result, so commit it and drop the pending merge.
            logger.warning(
                f"MERGE {repo.path.name}: working-tree merge applied cleanly, "
                "committing it."
            )
            commit = repo.commit_tree(repo.write_tree(), [local, remote], message)
            repo.update_ref("HEAD", commit, local, reason=message)
            repo.merge_quit()
            return MergeOutcome(committed=commit)
        except GitError as e:
            raise MergeFailed(f"{repo.path.name}: merge failed: {e}") from e

    def push(self, repo: GitRepo) -> None:
        """Pushes the configured branch to the remote.

        Raises:
            NonFastForwardRejected: If the remote refused a non-fast-forward update.
            PushNetworkError: For any other push failure.
        """
        try:
            repo.push(self.remote_name, self.push_refspec)
        except GitError as e:
            if any(m in e.stderr.lower() for m in _REJECTED_MARKERS):
                raise NonFastForwardRejected(
                    f"{repo.path.name}: push rejected: {e}"
                ) from e
            raise PushNetworkError(f"{repo.path.name}: push failed: {e}") from e
        logger.info(
            f"PUSHED {repo.path.name}: {self.branch} -> {self.remote_name}/{self.branch}"
        )
