import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class WatchedRepository:
    """A registered repository root and its open handle."""

    root: Path
    repo: GitRepo


class RepositoryRegistry:
    """The set of watched repository roots.

    Built once at startup and passed explicitly to the router and daemon loop.
    Roots are stored resolved; iteration follows registration order.
    """

    def __init__(self) -> None:
        self._entries: dict[Path, WatchedRepository] = {}

    @classmethod
    def from_paths(
        cls,
        paths: Iterable[str | Path],
        opener: Callable[[Path], GitRepo | None] = GitRepo.open,
    ) -> "RepositoryRegistry":
        """Builds a registry from candidate paths, dropping unusable ones.

        Args:
            paths (Iterable[str | Path]): Candidate repository roots.
            opener (Callable): Opens a root, returning None on failure.

        Returns:
            RepositoryRegistry: The registry of roots that opened successfully.
        """
        registry = cls()
        for p in paths:
            registry.register(p, opener)
        return registry

    def register(
        self,
        path: str | Path,
        opener: Callable[[Path], GitRepo | None] = GitRepo.open,
    ) -> GitRepo | None:
        """Opens and registers a single root. Registering a root twice is a no-op.

        Returns:
            GitRepo | None: The handle, or None if the path was dropped.
        """
        root = Path(path).expanduser().resolve()
        if existing := self._entries.get(root):
            return existing.repo

        if not root.is_dir():
            logger.warning(f"SKIPPED {root}: path does not exist.")
            return None

        repo = opener(root)
        if repo is None:
            logger.warning(f"SKIPPED {root}: not a git repository.")
            return None

        self._entries[root] = WatchedRepository(root, repo)
        logger.debug(f"Registered {root}")
        return repo

    def get(self, root: str | Path) -> GitRepo | None:
        """Looks up the handle registered for a root path."""
        entry = self._entries.get(Path(root).expanduser().resolve())
        return entry.repo if entry else None

    def roots(self) -> list[Path]:
        """Returns all registered roots in registration order."""
        return list(self._entries)

    def __iter__(self) -> Iterator[WatchedRepository]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, root: object) -> bool:
        if not isinstance(root, (str, Path)):
            return False
        return Path(root).expanduser().resolve() in self._entries
