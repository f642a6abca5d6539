import logging
from pathlib import Path

from .constants import APP_NAME, GIT_DIR_NAME
from .git_wrapper import GitRepo
from .registry import RepositoryRegistry
from .watcher import ChangeEvent

logger = logging.getLogger(APP_NAME)


def is_metadata_path(path: Path) -> bool:
    """True if any component of the path is the git metadata directory."""
    return GIT_DIR_NAME in path.parts


class ChangeRouter:
    """Maps change events to the repository that owns them."""

    def __init__(self, registry: RepositoryRegistry):
        self.registry = registry

    def owner(self, path: Path) -> Path | None:
        """Finds the most specific registered root containing `path`.

        Roots are compared component-wise, so '/a/bc' is not inside '/a/b'.
        The first registered of equally long roots wins.
        """
        best: Path | None = None
        for root in self.registry.roots():
            if path == root or path.is_relative_to(root):
                if best is None or len(root.parts) > len(best.parts):
                    best = root
        return best

    def route(self, event: ChangeEvent) -> GitRepo | None:
        """Resolves the repository a change event belongs to.

        Events inside a .git directory never route anywhere; a commit writing
        into .git would otherwise trigger another sync cycle.

        Args:
            event (ChangeEvent): The raw change.

        Returns:
            GitRepo | None: The owning repository, or None if the event is ignored.
        """
        path = Path(event.path)
        if is_metadata_path(path):
            return None

        if not path.is_absolute():
            path = Path.cwd() / path

        root = self.owner(path)
        if root is None:
            logger.debug(f"Unrouted change: {event.kind.value} {event.path}")
            return None
        return self.registry.get(root)
