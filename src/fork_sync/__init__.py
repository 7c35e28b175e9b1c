"""fork-sync: Mirror every upstream branch into a fork, keeping protected paths.

This package provides the command-line interface, the headless runner, and
the core synchronization logic that force-updates each fork branch to its
upstream counterpart while re-applying the fork's own copy of a set of
protected paths (by default `.github/workflows/`).
"""

from . import (
    cli,
    config,
    constants,
    errors,
    git_wrapper,
    mirror,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "errors",
    "git_wrapper",
    "mirror",
]
