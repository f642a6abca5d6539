import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME, GIT_DIR_NAME, GIT_LOCK_FILES

logger = logging.getLogger(APP_NAME)


class GitError(RuntimeError):
    """A git subprocess exited unsuccessfully.

    Attributes:
        args_list (list[str]): The git arguments that were executed.
        returncode (int): The exit status of the git process.
        stderr (str): The captured standard error, stripped.
    """

    def __init__(self, args_list: list[str], returncode: int, stderr: str):
        self.args_list = args_list
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Git error ({' '.join(args_list[:2])}): {stderr or returncode}")


class GitRepo:
    """A wrapper around the git command-line interface for a specific repository.

    This is the narrow capability surface the commit and sync pipeline is written
    against: status, staging, plumbing-level object and ref writes, ancestry
    queries, fetch, merge and push. Every method shells out to `git` through
    `subprocess`; failures surface as `GitError`.

    Attributes:
        path (Path): The file system path to the repository root.
    """

    def __init__(self, path: Path):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.

        Raises:
            ValueError: If the specified path does not contain a .git entry.
        """
        self.path = path
        if not (self.path / GIT_DIR_NAME).exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def open(cls, path: Path) -> "GitRepo | None":
        """Opens a repository, returning None instead of raising.

        The path must exist, carry a .git entry, and be accepted by git itself.

        Args:
            path (Path): The candidate repository root.

        Returns:
            GitRepo | None: The opened repository, or None if it cannot be opened.
        """
        try:
            repo = cls(path)
            repo._run(["rev-parse", "--git-dir"])
            return repo
        except (ValueError, GitError, OSError) as e:
            logger.debug(f"Cannot open repository at {path}: {e}")
            return None

    @property
    def git_dir(self) -> Path:
        """Path: The metadata directory of the repository."""
        return self.path / GIT_DIR_NAME

    def _exec(
        self, args: list[str], env: dict | None = None
    ) -> subprocess.CompletedProcess:
        """Executes a git command and returns the completed process unchecked."""
        return subprocess.run(
            ["git", *args],
            cwd=self.path,
            capture_output=True,
            text=True,
            env=env,
        )

    def _run(
        self, args: list[str], capture: bool = True, env: dict | None = None
    ) -> str:
        """Executes a git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to return stdout.
                                        Defaults to True.
            env (Optional[dict], optional): Environment variables to pass to the
                                            subprocess. Defaults to None.

        Returns:
            str:    The stripped stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            GitError: If the git command returns a non-zero exit code.
        """
        res = self._exec(args, env=env)
        if res.returncode != 0:
            raise GitError(args, res.returncode, (res.stderr or res.stdout).strip())
        return res.stdout.strip() if capture else ""

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch."""
        return self._run(["branch", "--show-current"])

    def status(self) -> list[str]:
        """Returns the working tree status.

        Untracked files are listed individually (untracked directories are
        recursed) and submodules are excluded.

        Returns:
            list[str]: Porcelain status lines; empty when nothing is pending.
        """
        output = self._run(
            [
                "status",
                "--porcelain",
                "--untracked-files=all",
                "--ignore-submodules=all",
            ]
        )
        return output.splitlines() if output else []

    def identity(self) -> tuple[str, str] | None:
        """Reads the configured committer identity.

        Returns:
            tuple[str, str] | None: (name, email), or None if either is unset.
        """
        values = []
        for key in ("user.name", "user.email"):
            res = self._exec(["config", "--get", key])
            value = res.stdout.strip()
            if res.returncode != 0 or not value:
                return None
            values.append(value)
        return values[0], values[1]

    def add_all(self) -> None:
        """Stages all changes (modified, deleted and untracked files) and writes the index."""
        self._run(["add", "--all", "."], capture=False)

    def write_tree(self) -> str:
        """Creates a tree object from the current index.

        Returns:
            str: The SHA-1 hash of the created tree object.
        """
        return self._run(["write-tree"])

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'refs/remotes/origin/master').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except GitError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def commit_tree(self, tree: str, parents: list[str], message: str) -> str:
        """Creates a commit object from a tree object.

        Args:
            tree (str): The tree SHA-1 to commit.
            parents (list[str]): A list of parent commit SHA-1s, in order.
            message (str): The commit message.

        Returns:
            str: The SHA-1 hash of the new commit.
        """
        cmd = ["commit-tree", tree, "-m", message]
        for p in parents:
            cmd.extend(["-p", p])
        return self._run(cmd)

    def update_ref(
        self, ref: str, new_oid: str, old_oid: str | None = None, reason: str = ""
    ) -> None:
        """Safely updates a reference to a new object ID.

        Updating 'HEAD' moves the branch HEAD points at.

        Args:
            ref (str): The reference to update (e.g., 'HEAD').
            new_oid (str): The new SHA-1 hash.
            old_oid (Optional[str], optional): The expected old SHA-1 hash. If provided,
                                               the update fails if the current ref
                                               does not match this value.
            reason (str, optional): The reflog message.
        """
        cmd = ["update-ref", "-m", reason or APP_NAME, ref, new_oid]
        if old_oid:
            cmd.append(old_oid)
        self._run(cmd)

    def read_tree(self, old: str, new: str) -> None:
        """Moves the index and working tree from one commit to another.

        Performs a two-tree `read-tree -m -u` merge, which refuses to overwrite
        local modifications to paths that change between the two commits.

        Args:
            old (str): The commit currently checked out.
            new (str): The commit to check out.
        """
        self._run(["read-tree", "-m", "-u", old, new], capture=False)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Checks whether `ancestor` is reachable from `descendant`.

        Returns:
            bool: True if ancestor equals or precedes descendant.
        """
        res = self._exec(["merge-base", "--is-ancestor", ancestor, descendant])
        if res.returncode in (0, 1):
            return res.returncode == 0
        raise GitError(
            ["merge-base", "--is-ancestor"], res.returncode, res.stderr.strip()
        )

    def merge_base(self, a: str, b: str) -> str | None:
        """Finds the nearest common ancestor of two commits.

        Returns:
            str | None: The merge base SHA-1, or None for unrelated histories.
        """
        res = self._exec(["merge-base", a, b])
        if res.returncode == 0:
            return res.stdout.strip() or None
        if res.returncode == 1:
            return None
        raise GitError(["merge-base", a, b], res.returncode, res.stderr.strip())

    def merge_tree(self, ours: str, theirs: str) -> tuple[str, list[str]]:
        """Performs an in-memory three-way merge of two commits.

        Uses `git merge-tree --write-tree` (git >= 2.38), which merges against the
        merge base without touching the index or working tree.

        Args:
            ours (str): The local commit.
            theirs (str): The incoming commit.

        Returns:
            tuple[str, list[str]]: The merged tree SHA-1 and the conflicted paths
                                   (empty for a clean merge).
        """
        args = ["merge-tree", "--write-tree", "--name-only", "--no-messages", ours, theirs]
        res = self._exec(args)
        if res.returncode not in (0, 1):
            raise GitError(args, res.returncode, res.stderr.strip())

        lines = [line for line in res.stdout.splitlines() if line.strip()]
        if not lines:
            raise GitError(args, res.returncode, "merge-tree produced no tree")

        tree, conflicts = lines[0].strip(), lines[1:]
        if res.returncode == 1 and not conflicts:
            conflicts = ["(unknown)"]
        return tree, conflicts

    def merge_no_commit(self, rev: str) -> bool:
        """Starts a merge of `rev` into HEAD without committing.

        On conflicts the working tree is left with conflict markers and a
        merge in progress (MERGE_HEAD) for external resolution.

        Returns:
            bool: True if the merge applied cleanly, False on conflicts.
        """
        args = ["merge", "--no-ff", "--no-commit", "--no-edit", rev]
        res = self._exec(args)
        if res.returncode == 0:
            return True
        if (self.git_dir / "MERGE_HEAD").exists():
            return False
        raise GitError(args, res.returncode, (res.stderr or res.stdout).strip())

    def merge_quit(self) -> None:
        """Forgets an in-progress merge, leaving the index and working tree as they are."""
        self._run(["merge", "--quit"])

    def unmerged_paths(self) -> list[str]:
        """Lists paths with unresolved conflicts in the index."""
        output = self._run(["diff", "--name-only", "--diff-filter=U"])
        return sorted(set(output.splitlines())) if output else []

    def merge_in_progress(self) -> bool:
        """Checks whether a merge is waiting for external resolution."""
        return (self.git_dir / "MERGE_HEAD").exists()

    def operation_in_progress(self) -> str | None:
        """Returns the marker file of an active merge/rebase/cherry-pick/bisect, if any."""
        for f in GIT_LOCK_FILES:
            if (self.git_dir / f).exists():
                return f
        return None

    def remotes(self) -> list[str]:
        """Lists the configured remote names."""
        output = self._run(["remote"])
        return output.splitlines() if output else []

    def add_remote(self, name: str, url: str) -> None:
        """Registers a new remote."""
        self._run(["remote", "add", name, url], capture=False)

    def fetch(self, remote: str, refspec: str) -> None:
        """Fetches a refspec from a remote without prompting for credentials."""
        self._run(["fetch", "--no-tags", remote, refspec], env=_batch_env())

    def push(self, remote: str, refspec: str) -> None:
        """Pushes a refspec to a remote without prompting for credentials."""
        self._run(["push", remote, refspec], env=_batch_env())


def _batch_env() -> dict[str, str]:
    """Environment that makes network operations fail instead of prompting."""
    env = os.environ.copy()
    env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env
