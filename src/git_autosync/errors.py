"""Typed error taxonomy for the commit and sync pipeline.

Every failure the orchestrator may see derives from `AutoSyncError`, so the
main loop can log and continue on any of them while still telling a merge
conflict (needs a human) apart from a transient push failure (retried on the
next change).
"""

from enum import Enum


class SyncState(Enum):
    """States a single sync attempt moves through."""

    IDLE = "idle"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    FAST_FORWARDING = "fast_forwarding"
    MERGING = "merging"
    MERGED = "merged"
    CONFLICTED = "conflicted"
    PUSHING = "pushing"
    PUSHED = "pushed"
    PUSH_FAILED = "push_failed"


class AutoSyncError(Exception):
    """Base class for all pipeline errors."""


class CommitError(AutoSyncError):
    """The local auto-commit could not be created."""


class IdentityMissing(CommitError):
    """No committer identity (user.name / user.email) is configured."""


class NoParent(CommitError):
    """HEAD does not resolve to an existing commit."""


class ObjectWriteFailure(CommitError):
    """Git failed while staging or writing objects and refs."""


class SyncError(AutoSyncError):
    """Base class for failures after the local commit succeeded.

    Attributes:
        state (SyncState): The state the sync attempt stopped in.
    """

    state = SyncState.IDLE


class NetworkError(SyncError):
    """The remote could not be reached while fetching."""

    state = SyncState.FETCHING


class RemoteMisconfigured(SyncError):
    """The remote is missing and cannot be created from the configured URL."""


class BranchMismatch(SyncError):
    """HEAD is not on the branch the engine synchronizes."""


class UnmergeableHistory(SyncError):
    """Local and remote histories share no common ancestor."""

    state = SyncState.ANALYZING


class MergeConflict(SyncError):
    """A three-way merge left conflicts in the working tree.

    Attributes:
        paths (list[str]): The conflicted paths, relative to the repository root.
    """

    state = SyncState.CONFLICTED

    def __init__(self, paths: list[str]):
        self.paths = list(paths)
        super().__init__(f"Merge conflict in: {', '.join(self.paths) or '(unknown)'}")


class MergeFailed(SyncError):
    """Git failed while analyzing, fast-forwarding or merging.

    Attributes:
        state (SyncState): The step that failed.
    """

    state = SyncState.MERGING

    def __init__(self, message: str, state: SyncState = SyncState.MERGING):
        super().__init__(message)
        self.state = state


class PushFailed(SyncError):
    """The push was refused or could not be delivered. Local history is kept."""

    state = SyncState.PUSH_FAILED


class NonFastForwardRejected(PushFailed):
    """The remote rejected the push because it is not a fast-forward."""


class PushNetworkError(PushFailed, NetworkError):
    """The remote could not be reached while pushing."""

    state = SyncState.PUSH_FAILED


class NotifierError(AutoSyncError):
    """The filesystem change notifier could not be started."""
