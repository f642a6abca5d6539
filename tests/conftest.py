"""Shared fixtures: config isolation and throwaway git repositories."""

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from git_autosync.config import Config

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd: Path, *args: str) -> str:
    """Runs a git command for test setup and returns its stripped stdout."""
    res = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return res.stdout.strip()


def configure_identity(path: Path) -> None:
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    """Writes a file, commits it with plain git, and returns the new HEAD."""
    target = repo / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory: pytest.TempPathFactory, mocker: Any) -> Any:
    """Keeps tests away from the user's config file and git configuration."""
    Config._global_cache = None
    cfg_dir = tmp_path_factory.mktemp("cfg")
    mocker.patch("git_autosync.config.CONFIG_FILE", cfg_dir / "config.toml")
    mocker.patch.dict(
        "os.environ",
        {
            "GIT_CONFIG_GLOBAL": str(cfg_dir / "gitconfig"),
            "GIT_CONFIG_NOSYSTEM": "1",
        },
    )
    yield
    Config._global_cache = None


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    """A bare remote whose master branch holds a single commit (a.txt = '1')."""
    remote = tmp_path / "origin.git"
    remote.mkdir()
    git(remote, "init", "-q", "--bare", "--initial-branch=master")

    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init", "-q", "--initial-branch=master")
    configure_identity(seed)
    commit_file(seed, "a.txt", "1\n", "initial")
    git(seed, "remote", "add", "origin", str(remote))
    git(seed, "push", "-q", "origin", "master")
    return remote


@pytest.fixture
def make_clone(tmp_path: Path, origin: Path) -> Callable[[str], Path]:
    """Factory for working clones of `origin` with an identity configured."""

    def _make(name: str) -> Path:
        target = tmp_path / name
        git(tmp_path, "clone", "-q", str(origin), str(target))
        configure_identity(target)
        return target

    return _make
