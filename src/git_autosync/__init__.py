"""git-autosync: keep git checkouts committed, merged and pushed unattended.

This package provides the command-line interface, the watching daemon and the
commit/merge/push pipeline it drives for every detected change.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    errors,
    git_wrapper,
    ops,
    registry,
    router,
    sync,
    system,
    watcher,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "git_wrapper",
    "ops",
    "registry",
    "router",
    "sync",
    "system",
    "watcher",
]
