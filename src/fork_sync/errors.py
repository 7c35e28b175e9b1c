"""Typed failures raised while mirroring upstream branches into a fork."""


class ForkSyncError(Exception):
    """Base class for all mirroring failures."""


class SetupFailure(ForkSyncError):
    """The run cannot start (remote missing, fetch failed, repository busy).

    This is the only error kind that ends the process with a non-zero status.
    """


class BranchSyncFailure(ForkSyncError):
    """A single branch could not be synchronized.

    Attributes:
        branch (str): The name of the affected branch.
    """

    def __init__(self, branch: str, message: str):
        super().__init__(message)
        self.branch = branch

    def __str__(self) -> str:
        return f"{self.branch}: {super().__str__()}"


class PublishFailure(BranchSyncFailure):
    """The fork remote rejected the push of a synchronized branch."""
