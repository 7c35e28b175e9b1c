import logging
import sys
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console

from .config import Config
from .constants import APP_NAME, GIT_LOCK_FILES, LOG_FILE
from .errors import BranchSyncFailure, PublishFailure, SetupFailure
from .git_wrapper import GitError, GitRepo

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

console = Console()


class BranchState(Enum):
    """Whether a local branch existed before the run or had to be created."""

    EXISTING = "existing"
    NEW = "new"


class Outcome(Enum):
    """What a sync did to a single branch."""

    UNCHANGED = "unchanged"
    """Local branch already matched upstream plus protected paths."""
    UPDATED = "updated"
    """Local branch now points at the upstream commit itself."""
    OVERLAID = "overlaid"
    """A commit restoring protected paths was created on top of upstream."""
    FAILED = "failed"


@dataclass
class BranchRef:
    """A branch as seen from both sides of the mirror.

    Attributes:
        name (str): The short branch name.
        upstream_commit (str | None): The upstream remote-tracking commit.
        local_commit (str | None): The local branch commit, None if absent.
    """

    name: str
    upstream_commit: str | None
    local_commit: str | None

    @property
    def state(self) -> BranchState:
        return BranchState.EXISTING if self.local_commit else BranchState.NEW


@dataclass
class BranchResult:
    """The per-branch record collected by a run.

    Attributes:
        branch (str): The short branch name.
        state (BranchState | None): Set once the local branch is resolved.
        outcome (Outcome): What happened to the branch.
        published (bool): True if the branch was pushed to the fork.
        commit (str | None): The resulting local commit.
        error (BranchSyncFailure | None): The failure, if the branch was skipped.
    """

    branch: str
    state: BranchState | None = None
    outcome: Outcome = Outcome.FAILED
    published: bool = False
    commit: str | None = None
    error: BranchSyncFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def check_repo_state(repo: GitRepo) -> None:
    """Refuses to run while git is mid-operation or tracked files are modified.

    Args:
        repo (GitRepo): The repository instance.

    Raises:
        SetupFailure: If a merge/rebase is in progress, the index is locked, or
            the working tree has uncommitted changes to tracked files.
    """
    try:
        # Linked worktrees and submodules keep their state outside `.git`.
        git_dir = repo.git_dir()
    except GitError as e:
        raise SetupFailure(f"Cannot locate git directory: {e}") from e

    for f in [*GIT_LOCK_FILES, "index.lock"]:
        if (git_dir / f).exists():
            raise SetupFailure(
                f"Repository is busy ({f} present). Finish or abort it first."
            )

    try:
        dirty = [line for line in repo.status_porcelain() if not line.startswith("??")]
    except GitError as e:
        raise SetupFailure(f"Cannot read repository status: {e}") from e
    if dirty:
        raise SetupFailure(
            f"Working tree has {len(dirty)} uncommitted change(s). "
            "Commit or stash them first."
        )


def prepare_upstream(repo: GitRepo, config: Config) -> None:
    """Ensures the upstream remote exists with the configured URL, then fetches it.

    Args:
        repo (GitRepo): The repository instance.
        config (Config): The run configuration.

    Raises:
        SetupFailure: If the remote cannot be added or fetched.
    """
    remote = config.upstream.remote
    url = config.upstream.url
    current_url = repo.get_remote_url(remote)

    try:
        if current_url is None:
            if not url:
                raise SetupFailure(
                    f"Remote '{remote}' is not configured and no upstream URL was given."
                )
            logger.info(f"SETUP: Adding remote {remote} -> {url}")
            repo.add_remote(remote, url)
        elif url and current_url != url:
            logger.info(f"SETUP: Updating remote {remote} -> {url}")
            repo.set_remote_url(remote, url)

        logger.info(f"SETUP: Fetching {remote}...")
        repo.fetch(remote, prune=True)
    except GitError as e:
        raise SetupFailure(f"Cannot prepare remote '{remote}': {e}") from e


def prepare_fork(repo: GitRepo, config: Config, dry_run: bool = False) -> None:
    """Refreshes the fork's remote-tracking refs so publishing can skip no-ops.

    Args:
        repo (GitRepo): The repository instance.
        config (Config): The run configuration.
        dry_run (bool, optional): A missing fork remote is only a warning when
                                  nothing will be pushed. Defaults to False.

    Raises:
        SetupFailure: If the fork remote is missing or cannot be fetched.
    """
    remote = config.fork.remote
    if repo.get_remote_url(remote) is None:
        if dry_run:
            logger.warning(f"SETUP: Fork remote '{remote}' is not configured.")
            return
        raise SetupFailure(f"Fork remote '{remote}' is not configured.")

    try:
        repo.fetch(remote, prune=True)
    except GitError as e:
        raise SetupFailure(f"Cannot fetch fork remote '{remote}': {e}") from e


def select_branches(
    names: list[str], include: list[str], exclude: list[str]
) -> list[str]:
    """Filters upstream branch names by glob patterns, preserving order.

    The symbolic 'HEAD' entry of a remote-tracking namespace is never selected.

    Args:
        names (list[str]): Upstream branch names.
        include (list[str]): Patterns a branch must match at least one of.
        exclude (list[str]): Patterns that drop a branch.

    Returns:
        list[str]: The de-duplicated selection.
    """
    selected = []
    for name in dict.fromkeys(names):
        if name == "HEAD":
            continue
        if not any(fnmatchcase(name, pattern) for pattern in include):
            continue
        if any(fnmatchcase(name, pattern) for pattern in exclude):
            continue
        selected.append(name)
    return selected


def describe_branches(repo: GitRepo, config: Config) -> list[BranchRef]:
    """Pairs every selected upstream branch with its local counterpart.

    Args:
        repo (GitRepo): The repository instance (upstream already fetched).
        config (Config): The run configuration.

    Returns:
        list[BranchRef]: One entry per branch a run would process.
    """
    remote = config.upstream.remote
    names = select_branches(
        repo.list_remote_branches(remote),
        config.sync.branches,
        config.sync.exclude_branches,
    )
    return [
        BranchRef(
            name=name,
            upstream_commit=repo.rev_parse(f"refs/remotes/{remote}/{name}"),
            local_commit=repo.rev_parse(f"refs/heads/{name}"),
        )
        for name in names
    ]


def resolve_branch(
    repo: GitRepo, branch: str, config: Config, fallback: str | None
) -> BranchState:
    """Checks out the local branch, creating it when absent.

    A new branch starts from the fork remote's copy of it when there is one,
    otherwise from `fallback`, otherwise from upstream itself.

    Args:
        repo (GitRepo): The repository instance.
        branch (str): The branch name.
        config (Config): The run configuration.
        fallback (str | None): The commit checked out when the run began.

    Returns:
        BranchState: EXISTING or NEW.
    """
    if repo.branch_exists(branch):
        repo.checkout(branch, force=True)
        return BranchState.EXISTING

    start = (
        repo.rev_parse(f"refs/remotes/{config.fork.remote}/{branch}")
        or fallback
        or f"refs/remotes/{config.upstream.remote}/{branch}"
    )
    repo.checkout(branch, force=True, start_point=start)
    return BranchState.NEW


def restore_protected(repo: GitRepo, base: str | None, paths: list[str]) -> None:
    """Makes every protected path in index and working tree match `base`.

    A path missing from `base` (or every path, when `base` is None) ends up
    removed, so upstream content never leaks into a protected location.

    Args:
        repo (GitRepo): The repository instance.
        base (str | None): The pre-overwrite commit.
        paths (list[str]): The protected paths.
    """
    for path in paths:
        repo.remove_path(path)
        if base and repo.path_exists(base, path):
            repo.checkout(base, file=path)


def _roll_back(repo: GitRepo, branch: str, base: str | None) -> None:
    """Returns a half-synced branch to its pre-run commit.

    Left on the bare upstream commit, the next run would take upstream's own
    protected paths as the fork's prior state.
    """
    if not base:
        return
    try:
        repo.reset_hard(base)
        logger.info(f"ROLLED BACK {branch}: restored {base[:12]}.")
    except GitError as e:
        logger.warning(f"ROLLBACK ERROR {branch}: {e}")


def _publish(repo: GitRepo, branch: str, config: Config, commit: str) -> bool:
    """Pushes a branch to the fork unless the fork already points at `commit`.

    Returns:
        bool: True if a push happened.

    Raises:
        PublishFailure: If the fork rejects the push.
    """
    remote = config.fork.remote
    if repo.rev_parse(f"refs/remotes/{remote}/{branch}") == commit:
        logger.info(f"UP TO DATE {branch}: {remote} already at {commit[:12]}.")
        return False

    try:
        repo.push(
            remote,
            f"refs/heads/{branch}:refs/heads/{branch}",
            force=config.fork.force_push,
        )
    except GitError as e:
        raise PublishFailure(branch, str(e)) from e
    logger.info(f"PUSHED {branch}: {remote} -> {commit[:12]}.")
    return True


def sync_branch(
    repo: GitRepo,
    branch: str,
    config: Config,
    fallback: str | None = None,
    dry_run: bool = False,
) -> BranchResult:
    """Overwrites one local branch with upstream, keeping protected paths.

    Steps:
    1. Resolves (or creates) the local branch.
    2. Fetches the upstream branch.
    3. Hard-resets the local branch to upstream.
    4. Restores protected paths from the pre-overwrite commit.
    5. Commits the restored delta, reusing the previous commit when identical.
    6. Publishes the branch to the fork.

    Failures are logged and recorded on the result, never raised.

    Args:
        repo (GitRepo): The repository instance.
        branch (str): The branch name.
        config (Config): The run configuration.
        fallback (str | None, optional): Start point for new branches.
        dry_run (bool, optional): Skip publishing. Defaults to False.

    Returns:
        BranchResult: The record of what happened.
    """
    result = BranchResult(branch=branch)
    base = None
    upstream = config.upstream.remote
    upstream_ref = f"refs/remotes/{upstream}/{branch}"

    try:
        try:
            result.state = resolve_branch(repo, branch, config, fallback)
            base = repo.rev_parse("HEAD")

            repo.fetch(upstream, f"+refs/heads/{branch}:{upstream_ref}")
            upstream_commit = repo.rev_parse(upstream_ref)
            if not upstream_commit:
                raise BranchSyncFailure(branch, f"{upstream_ref} could not be resolved")

            repo.reset_hard(upstream_commit)
            restore_protected(repo, base, config.sync.protected_paths)

            if repo.staged_files():
                # Reuse the previous overlay commit if it is byte-for-byte the same.
                tree = repo.write_tree()
                if (
                    base
                    and repo.rev_parse(f"{base}^{{tree}}") == tree
                    and repo.rev_parse(f"{base}^") == upstream_commit
                ):
                    repo.reset_hard(base)
                    result.outcome = Outcome.UNCHANGED
                else:
                    repo.commit(config.sync.commit_message, no_verify=True)
                    result.outcome = Outcome.OVERLAID
            elif base == upstream_commit:
                result.outcome = Outcome.UNCHANGED
            else:
                result.outcome = Outcome.UPDATED

            result.commit = repo.rev_parse("HEAD")
        except GitError as e:
            _roll_back(repo, branch, base)
            raise BranchSyncFailure(branch, str(e)) from e

        if result.outcome is Outcome.OVERLAID:
            files, _, _ = repo.diff_shortstat(upstream_commit, "HEAD")
            logger.info(f"SYNCED {branch}: {files} protected file(s) kept over upstream.")
        else:
            logger.info(f"SYNCED {branch}: {result.outcome.value}.")

        if dry_run:
            logger.info(f"DRY RUN {branch}: Push skipped.")
        elif result.commit:
            result.published = _publish(repo, branch, config, result.commit)

    except PublishFailure as e:
        result.error = e
        result.outcome = Outcome.FAILED
        logger.error(f"PUSH ERROR {branch}: {e.__cause__ or e}")
    except BranchSyncFailure as e:
        result.error = e
        result.outcome = Outcome.FAILED
        logger.error(f"FAILED {branch}: {e.__cause__ or e}")

    return result


def run_mirror(
    repo_path: Path, config: Config, dry_run: bool = False
) -> list[BranchResult]:
    """Mirrors every selected upstream branch into the repository at `repo_path`.

    Branches are processed one at a time; a failing branch never stops the
    loop. The originally checked-out branch is restored afterwards.

    Args:
        repo_path (Path): The fork's local clone.
        config (Config): The run configuration.
        dry_run (bool, optional): Skip publishing. Defaults to False.

    Returns:
        list[BranchResult]: One result per processed branch.

    Raises:
        SetupFailure: If the repository or its remotes are unusable.
    """
    try:
        repo = GitRepo(repo_path, timeout=config.limits.git_timeout)
    except ValueError as e:
        raise SetupFailure(str(e)) from e

    check_repo_state(repo)
    prepare_upstream(repo, config)
    prepare_fork(repo, config, dry_run)

    try:
        original_branch = repo.current_branch()
    except GitError as e:
        raise SetupFailure(f"Cannot read current branch: {e}") from e
    fallback = repo.rev_parse("HEAD")

    branches = select_branches(
        repo.list_remote_branches(config.upstream.remote),
        config.sync.branches,
        config.sync.exclude_branches,
    )
    if not branches:
        logger.warning(f"No branches of '{config.upstream.remote}' matched the filters.")

    results = [
        sync_branch(repo, branch, config, fallback=fallback, dry_run=dry_run)
        for branch in branches
    ]

    # Leave the clone on the branch the run started from.
    target = original_branch or fallback
    if target:
        try:
            repo.checkout(target, force=True)
        except GitError as e:
            logger.warning(f"Could not return to {target}: {e}")

    failed = [r.branch for r in results if not r.ok]
    logger.info(
        f"DONE: {len(results) - len(failed)}/{len(results)} branches synced."
        + (f" Failed: {', '.join(failed)}" if failed else "")
    )
    return results


def setup_logging(interactive: bool, config: Config | None = None) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            a rotating log file.
        config (Config | None, optional): Supplies the log rotation size.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Repeated calls (e.g. several CLI invocations in one process) replace handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        max_bytes = (config or Config()).limits.max_log_size
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_bytes,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def main(interactive: bool = False) -> None:
    """Headless entry point: one mirror run over the current directory.

    Exits with status 1 only when setup fails; per-branch failures are logged.

    Args:
        interactive (bool, optional): Log to stdout instead of stderr and the log
                                      file. Defaults to False.
    """
    repo_path = Path.cwd()
    config = Config.load(repo_path)
    setup_logging(interactive, config)

    try:
        run_mirror(repo_path, config)
    except SetupFailure as e:
        logger.critical(f"SETUP FAILED: {e}")
        if interactive:
            console.print(f"[bold red]SETUP FAILED:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
