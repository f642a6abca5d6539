"""Tests for the fetch / merge / push protocol."""

from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import commit_file, git, requires_git

from git_autosync import ops
from git_autosync.errors import (
    BranchMismatch,
    MergeConflict,
    MergeFailed,
    NetworkError,
    NonFastForwardRejected,
    PushFailed,
    PushNetworkError,
    RemoteMisconfigured,
    SyncError,
    SyncState,
    UnmergeableHistory,
)
from git_autosync.git_wrapper import GitError, GitRepo
from git_autosync.sync import MergeAnalysis, SyncEngine, merge_message


@pytest.fixture
def repo() -> MagicMock:
    """A mocked repository with an 'origin' remote and HEAD at 'local'."""
    mock = MagicMock()
    mock.path = Path("/work/notes")
    mock.merge_in_progress.return_value = False
    mock.current_branch.return_value = "master"
    mock.remotes.return_value = ["origin"]
    mock.rev_parse.return_value = "local"
    return mock


# Unit tests against a mocked repository


def test_push_refspec_and_tracking_ref_use_fixed_defaults() -> None:
    engine = SyncEngine()
    assert engine.push_refspec == "refs/heads/master:refs/heads/master"
    assert engine.tracking_ref == "refs/remotes/origin/master"


@pytest.mark.parametrize(
    ("remote_tip", "ancestry", "base", "expected"),
    [
        (None, {}, None, MergeAnalysis.UP_TO_DATE),
        ("local", {}, None, MergeAnalysis.UP_TO_DATE),
        ("remote", {("remote", "local"): True}, None, MergeAnalysis.UP_TO_DATE),
        ("remote", {("local", "remote"): True}, None, MergeAnalysis.FAST_FORWARD),
        ("remote", {}, "base", MergeAnalysis.NORMAL),
        ("remote", {}, None, MergeAnalysis.UNMERGEABLE),
    ],
)
def test_merge_analysis(
    repo: MagicMock,
    remote_tip: str | None,
    ancestry: dict[tuple[str, str], bool],
    base: str | None,
    expected: MergeAnalysis,
) -> None:
    """Verifies the classification of local HEAD against the remote tip."""
    repo.is_ancestor.side_effect = lambda a, b: ancestry.get((a, b), False)
    repo.merge_base.return_value = base

    assert SyncEngine().merge_analysis(repo, remote_tip) is expected


def test_missing_remote_without_url_is_misconfigured(repo: MagicMock) -> None:
    """Verifies that an empty URL fails loudly instead of silently succeeding."""
    repo.remotes.return_value = []

    with pytest.raises(RemoteMisconfigured, match="no remote_url"):
        SyncEngine(remote_url="").sync(repo)

    repo.fetch.assert_not_called()
    repo.push.assert_not_called()


def test_missing_remote_is_created_from_url(repo: MagicMock) -> None:
    """Verifies that the remote is added from the configured URL."""
    repo.remotes.return_value = []

    SyncEngine(remote_name="upstream", remote_url="/srv/notes.git").ensure_remote(repo)

    repo.add_remote.assert_called_once_with("upstream", "/srv/notes.git")


def test_fetch_of_unknown_branch_returns_none(repo: MagicMock) -> None:
    """Verifies that a remote without the branch yet is not a network error."""
    repo.fetch.side_effect = GitError(
        ["fetch"], 128, "fatal: couldn't find remote ref refs/heads/master"
    )

    assert SyncEngine().fetch(repo) is None


def test_fetch_failure_is_network_error(repo: MagicMock) -> None:
    repo.fetch.side_effect = GitError(["fetch"], 128, "Could not resolve host")

    with pytest.raises(NetworkError) as exc_info:
        SyncEngine().sync(repo)

    assert exc_info.value.state is SyncState.FETCHING
    repo.push.assert_not_called()


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        (" ! [rejected]  master -> master (non-fast-forward)", NonFastForwardRejected),
        (" ! [rejected]  master -> master (fetch first)", NonFastForwardRejected),
        ("fatal: unable to access: Could not resolve host", PushNetworkError),
    ],
)
def test_push_failures_are_classified(
    repo: MagicMock, stderr: str, expected: type[PushFailed]
) -> None:
    """Verifies that push failures are typed and leave local history alone."""
    repo.fetch.return_value = None
    repo.rev_parse.side_effect = lambda rev: "local"
    repo.push.side_effect = GitError(["push"], 1, stderr)

    with pytest.raises(expected) as exc_info:
        SyncEngine().sync(repo)

    assert exc_info.value.state is SyncState.PUSH_FAILED
    repo.update_ref.assert_not_called()


def test_push_network_error_is_also_a_network_error() -> None:
    assert issubclass(PushNetworkError, NetworkError)
    assert issubclass(PushNetworkError, PushFailed)


def test_pending_merge_blocks_sync(repo: MagicMock) -> None:
    """Verifies that an unresolved conflict is reported instead of re-merged."""
    repo.merge_in_progress.return_value = True
    repo.unmerged_paths.return_value = ["a.txt"]

    with pytest.raises(MergeConflict) as exc_info:
        SyncEngine().sync(repo)

    assert exc_info.value.paths == ["a.txt"]
    repo.fetch.assert_not_called()
    repo.push.assert_not_called()


def test_unrelated_histories_are_unmergeable(repo: MagicMock) -> None:
    repo.rev_parse.side_effect = lambda rev: "remote" if "remotes" in rev else "local"
    repo.is_ancestor.return_value = False
    repo.merge_base.return_value = None

    with pytest.raises(UnmergeableHistory):
        SyncEngine().sync(repo)

    repo.push.assert_not_called()


def test_conflicted_merge_creates_no_commit(repo: MagicMock) -> None:
    """Verifies that conflicts are applied to the tree but never committed."""
    repo.merge_tree.return_value = ("tree", ["a.txt"])
    repo.unmerged_paths.return_value = ["a.txt"]
    repo.merge_no_commit.return_value = False

    outcome = SyncEngine().merge(repo, "local", "remote")

    assert outcome.conflict
    assert outcome.conflicted_paths == ["a.txt"]
    repo.merge_no_commit.assert_called_once_with("remote")
    repo.commit_tree.assert_not_called()
    repo.update_ref.assert_not_called()


def test_clean_merge_commits_with_two_parents(repo: MagicMock) -> None:
    repo.merge_tree.return_value = ("tree", [])
    repo.commit_tree.return_value = "merge_sha"

    outcome = SyncEngine().merge(repo, "local", "remote")

    assert outcome.committed == "merge_sha"
    repo.commit_tree.assert_called_once_with(
        "tree", ["local", "remote"], "Merge: remote into local"
    )
    repo.read_tree.assert_called_once_with("local", "merge_sha")
    repo.update_ref.assert_called_once_with(
        "HEAD", "merge_sha", "local", reason=merge_message("remote", "local")
    )


@pytest.mark.parametrize("current", ["feature", ""])
def test_other_branch_is_refused_before_fetch(repo: MagicMock, current: str) -> None:
    """Verifies that only the configured branch is ever merged into or pushed."""
    repo.current_branch.return_value = current

    with pytest.raises(BranchMismatch, match="syncing 'master'"):
        SyncEngine().sync(repo)

    repo.fetch.assert_not_called()
    repo.push.assert_not_called()


@pytest.mark.parametrize(
    ("analysis_setup", "expected_state"),
    [
        ("fast_forward", SyncState.FAST_FORWARDING),
        ("normal", SyncState.MERGING),
        ("analysis", SyncState.ANALYZING),
    ],
)
def test_git_failures_during_merge_are_typed(
    repo: MagicMock, analysis_setup: str, expected_state: SyncState
) -> None:
    """Verifies that git failures after the fetch carry the state they stopped in."""
    repo.rev_parse.side_effect = lambda rev: "remote" if "remotes" in rev else "local"
    failure = GitError(["git"], 128, "Entry 'x' not uptodate. Cannot merge.")
    if analysis_setup == "analysis":
        repo.is_ancestor.side_effect = failure
    else:
        repo.is_ancestor.side_effect = lambda a, b: (
            analysis_setup == "fast_forward" and (a, b) == ("local", "remote")
        )
        repo.merge_base.return_value = "base"
        repo.read_tree.side_effect = failure
        repo.merge_tree.side_effect = failure

    with pytest.raises(MergeFailed, match="not uptodate") as exc_info:
        SyncEngine().sync(repo)

    assert isinstance(exc_info.value, SyncError)
    assert exc_info.value.state is expected_state
    repo.push.assert_not_called()


def test_refused_working_tree_merge_is_typed(repo: MagicMock) -> None:
    """Verifies that a merge git refuses to start (dirty tree) is a MergeFailed."""
    repo.merge_tree.return_value = ("tree", ["a.txt"])
    repo.merge_no_commit.side_effect = GitError(
        ["merge"], 2, "Your local changes would be overwritten by merge."
    )

    with pytest.raises(MergeFailed) as exc_info:
        SyncEngine().merge(repo, "local", "remote")

    assert exc_info.value.state is SyncState.MERGING


def test_clean_working_tree_merge_after_reported_conflict(repo: MagicMock) -> None:
    """Verifies that a merge git applies cleanly is committed, not left pending."""
    repo.merge_tree.return_value = ("tree", ["a.txt"])
    repo.merge_no_commit.return_value = True
    repo.write_tree.return_value = "index_tree"
    repo.commit_tree.return_value = "merge_sha"

    outcome = SyncEngine().merge(repo, "local", "remote")

    assert not outcome.conflict
    assert outcome.committed == "merge_sha"
    repo.commit_tree.assert_called_once_with(
        "index_tree", ["local", "remote"], "Merge: remote into local"
    )
    repo.update_ref.assert_called_once_with(
        "HEAD", "merge_sha", "local", reason="Merge: remote into local"
    )
    repo.merge_quit.assert_called_once()


# Integration tests against real git repositories


@requires_git
def test_fast_forward(make_clone: Callable[[str], Path]) -> None:
    """Local HEAD behind the remote: HEAD moves to the remote tip, no merge commit."""
    mine, theirs = make_clone("mine"), make_clone("theirs")
    remote_tip = commit_file(theirs, "b.txt", "from theirs\n", "theirs adds b")
    git(theirs, "push", "-q", "origin", "master")

    repo = GitRepo(mine)
    engine = SyncEngine()
    assert engine.merge_analysis(repo, engine.fetch(repo)) is MergeAnalysis.FAST_FORWARD

    report = engine.sync(repo)

    assert report.analysis is MergeAnalysis.FAST_FORWARD
    assert report.state is SyncState.PUSHED
    assert git(mine, "rev-parse", "HEAD") == remote_tip
    assert (mine / "b.txt").read_text() == "from theirs\n"
    assert git(mine, "status", "--porcelain") == ""
    assert git(mine, "rev-list", "--merges", "HEAD") == ""


@requires_git
def test_normal_merge_combines_both_sides(
    make_clone: Callable[[str], Path], origin: Path
) -> None:
    """Diverged histories with disjoint edits: a two-parent merge holding both changes."""
    mine, theirs = make_clone("mine"), make_clone("theirs")
    remote_tip = commit_file(theirs, "b.txt", "from theirs\n", "theirs adds b")
    git(theirs, "push", "-q", "origin", "master")

    (mine / "c.txt").write_text("from mine\n")
    repo = GitRepo(mine)
    local = ops.commit_all(repo, ops.auto_commit_message())

    engine = SyncEngine()
    assert engine.merge_analysis(repo, engine.fetch(repo)) is MergeAnalysis.NORMAL

    report = engine.sync(repo)

    head = git(mine, "rev-parse", "HEAD")
    assert report.analysis is MergeAnalysis.NORMAL
    assert report.head == head
    assert git(mine, "rev-list", "--parents", "-n", "1", "HEAD").split() == [
        head,
        local,
        remote_tip,
    ]
    assert git(mine, "log", "-1", "--format=%s") == f"Merge: {remote_tip} into {local}"
    assert (mine / "b.txt").read_text() == "from theirs\n"
    assert (mine / "c.txt").read_text() == "from mine\n"
    assert git(mine, "status", "--porcelain") == ""
    assert git(origin, "rev-parse", "refs/heads/master") == head


@requires_git
def test_conflicting_edits_stop_before_push(
    make_clone: Callable[[str], Path], origin: Path
) -> None:
    """Overlapping edits: no commit, conflict markers in the tree, nothing pushed."""
    mine, theirs = make_clone("mine"), make_clone("theirs")
    remote_tip = commit_file(theirs, "a.txt", "theirs\n", "theirs edits a")
    git(theirs, "push", "-q", "origin", "master")

    (mine / "a.txt").write_text("mine\n")
    repo = GitRepo(mine)
    local = ops.commit_all(repo, ops.auto_commit_message())

    engine = SyncEngine()
    with pytest.raises(MergeConflict) as exc_info:
        engine.sync(repo)

    assert exc_info.value.paths == ["a.txt"]
    assert exc_info.value.state is SyncState.CONFLICTED
    assert git(mine, "rev-parse", "HEAD") == local
    content = (mine / "a.txt").read_text()
    assert "<<<<<<<" in content and ">>>>>>>" in content
    assert repo.merge_in_progress()
    assert git(origin, "rev-parse", "refs/heads/master") == remote_tip

    # A later call refuses to touch the pending merge.
    with pytest.raises(MergeConflict):
        engine.sync(repo)
    assert git(mine, "rev-parse", "HEAD") == local


@requires_git
def test_push_failure_keeps_commit_and_recovers(
    make_clone: Callable[[str], Path], origin: Path
) -> None:
    """A push failure leaves the local commit intact; the next sync pushes it."""
    mine = make_clone("mine")
    (mine / "a.txt").write_text("2\n")
    repo = GitRepo(mine)
    local = ops.commit_all(repo, ops.auto_commit_message())
    engine = SyncEngine()

    offline = GitError(["push"], 128, "fatal: Could not resolve host: example.com")
    with patch.object(repo, "push", side_effect=offline):
        with pytest.raises(PushFailed) as exc_info:
            engine.sync(repo)

    assert exc_info.value.state is SyncState.PUSH_FAILED
    assert git(mine, "rev-parse", "HEAD") == local
    assert git(origin, "rev-parse", "refs/heads/master") != local

    report = engine.sync(repo)

    assert report.state is SyncState.PUSHED
    assert git(origin, "rev-parse", "refs/heads/master") == local


@requires_git
def test_sync_creates_remote_and_branch(tmp_path: Path, origin: Path) -> None:
    """A repository without the remote gets it from the URL and pushes a new branch."""
    path = tmp_path / "standalone"
    path.mkdir()
    git(path, "init", "-q", "--initial-branch=master")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")
    head = commit_file(path, "x.txt", "x\n", "standalone")

    engine = SyncEngine(remote_name="backup", branch="master", remote_url=str(origin))
    git(origin, "update-ref", "-d", "refs/heads/master")

    report = engine.sync(GitRepo(path))

    assert report.analysis is MergeAnalysis.UP_TO_DATE
    assert "backup" in git(path, "remote").splitlines()
    assert git(origin, "rev-parse", "refs/heads/master") == head


@requires_git
def test_feature_branch_is_not_synced(
    make_clone: Callable[[str], Path], origin: Path
) -> None:
    """A checkout on another branch is refused; nothing is merged or pushed."""
    mine = make_clone("mine")
    git(mine, "checkout", "-q", "-b", "feature")
    (mine / "c.txt").write_text("feature work\n")
    repo = GitRepo(mine)
    local = ops.commit_all(repo, ops.auto_commit_message())
    remote_before = git(origin, "rev-parse", "refs/heads/master")

    with pytest.raises(BranchMismatch, match="on 'feature'"):
        SyncEngine().sync(repo)

    assert git(mine, "rev-parse", "HEAD") == local
    assert git(origin, "rev-parse", "refs/heads/master") == remote_before
    assert git(origin, "branch", "--list", "feature") == ""
