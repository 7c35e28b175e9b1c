import logging
import re
import subprocess
from pathlib import Path

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class GitError(RuntimeError):
    """Raised when a git command exits non-zero or exceeds its timeout.

    Attributes:
        args_list (list[str]): The git arguments that failed.
        stderr (str): The captured error output, if any.
    """

    def __init__(self, args_list: list[str], stderr: str = ""):
        self.args_list = args_list
        self.stderr = stderr.strip()
        detail = self.stderr or "command failed"
        super().__init__(f"Git error (git {' '.join(args_list)}): {detail}")


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    This class provides methods to execute the Git operations a mirror run needs
    using `subprocess`, abstracting away the command construction and output
    handling.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float | None): Seconds before a single git command is aborted.
    """

    def __init__(self, path: Path, timeout: float | None = None):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            timeout (float | None, optional): Per-command timeout in seconds.
                                              Defaults to None (no limit).

        Raises:
            ValueError: If the specified path does not contain a .git entry.
        """
        self.path = path
        self.timeout = timeout
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    def _run(self, args: list[str], capture: bool = True) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to return stdout.
                                        Defaults to True.

        Returns:
            str:    The stripped stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            GitError: If the git command returns a non-zero exit code or times out.
        """
        try:
            # stderr is always captured so failures can be reported per branch.
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
            return res.stdout.strip() if capture else ""
        except subprocess.CalledProcessError as e:
            raise GitError(args, e.stderr or str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise GitError(args, f"timed out after {e.timeout}s") from e

    def git_dir(self) -> Path:
        """Resolves the directory holding git's state (HEAD, index, lock files).

        Returns:
            Path: The absolute git directory, which differs from `path / ".git"`
                  in linked worktrees and submodules.
        """
        return Path(self._run(["rev-parse", "--absolute-git-dir"]))

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The name of the current branch, empty when HEAD is detached.
        """
        return self._run(["branch", "--show-current"])

    def status_porcelain(self) -> list[str]:
        """Returns the porcelain (machine-readable) status of the repository.

        Returns:
            list[str]: A list of status lines returned by `git status --porcelain`.
        """
        output = self._run(["status", "--porcelain"])
        return output.splitlines() if output else []

    def checkout(
        self,
        branch: str,
        file: str | None = None,
        force: bool = False,
        start_point: str | None = None,
    ) -> None:
        """Checks out a branch, creates one, or restores a path from a revision.

        Args:
            branch (str): The target branch name or commit hash.
            file (Optional[str], optional): A specific path to checkout from
                                            `branch`. Defaults to None.
            force (bool, optional): Whether to force the checkout (discarding changes).
                                    Defaults to False.
            start_point (Optional[str], optional): When given, create `branch`
                                                   at this revision (`-b`).
                                                   Defaults to None.
        """
        cmd = ["checkout"]
        if force:
            cmd.append("-f")
        if start_point:
            cmd.extend(["-b", branch, start_point])
        else:
            cmd.append(branch)
        if file:
            cmd.extend(["--", file])
        self._run(cmd, capture=False)

    def commit(self, message: str, no_verify: bool = False) -> None:
        """Creates a new commit with the provided message.

        Args:
            message (str): The commit message.
            no_verify (bool, optional): Whether to bypass pre-commit hooks
                                        (`--no-verify`). Defaults to False.
        """
        cmd = ["commit", "-m", message]
        if no_verify:
            cmd.append("--no-verify")
        self._run(cmd, capture=False)

    def staged_files(self) -> list[str]:
        """Lists paths whose staged content differs from HEAD.

        Untracked files are ignored, unlike `status_porcelain`.

        Returns:
            list[str]: The staged file paths.
        """
        output = self._run(["diff", "--cached", "--name-only"])
        return output.splitlines() if output else []

    def reset_hard(self, target: str) -> None:
        """Points the current branch at `target`, overwriting index and working tree.

        Args:
            target (str): The commit SHA or reference to reset to.
        """
        self._run(["reset", "--hard", target], capture=False)

    def remove_path(self, path: str) -> None:
        """Deletes a path from the index and working tree, if tracked.

        Args:
            path (str): The file or directory to remove.
        """
        self._run(["rm", "-r", "-q", "--ignore-unmatch", "--", path], capture=False)

    def path_exists(self, rev: str, path: str) -> bool:
        """Checks whether a path is present in the tree of a revision.

        Args:
            rev (str): The revision whose tree is inspected.
            path (str): The file or directory path, relative to the repository root.

        Returns:
            bool: True if the tree contains the path.
        """
        return bool(self._run(["ls-tree", "--name-only", rev, "--", path]))

    def branch_exists(self, branch: str) -> bool:
        """Checks whether a local branch exists.

        Args:
            branch (str): The short branch name.

        Returns:
            bool: True if `refs/heads/<branch>` resolves.
        """
        return self.rev_parse(f"refs/heads/{branch}") is not None

    def list_refs(self, pattern: str) -> list[str]:
        """Lists references matching a specific pattern.

        Args:
            pattern (str): The glob pattern to match (e.g., 'refs/remotes/upstream').

        Returns:
            list[str]: A list of matching reference names.
        """
        try:
            output = self._run(["for-each-ref", "--format=%(refname)", pattern])
            return output.splitlines() if output else []
        except Exception as e:
            logger.warning(f"Git error listing refs for {pattern}: {e}")
            return []

    def list_remote_branches(self, remote: str) -> list[str]:
        """Lists the branch names a remote-tracking namespace holds.

        Args:
            remote (str): The remote name (e.g., 'upstream').

        Returns:
            list[str]: Short branch names, including any symbolic 'HEAD' entry.
        """
        prefix = f"refs/remotes/{remote}/"
        return [
            ref[len(prefix) :]
            for ref in self.list_refs(prefix.rstrip("/"))
            if ref.startswith(prefix)
        ]

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'master').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except Exception as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def write_tree(self) -> str:
        """Creates a tree object from the current index.

        Returns:
            str: The SHA-1 hash of the created tree object.
        """
        return self._run(["write-tree"])

    def get_remote_url(self, remote: str) -> str | None:
        """Returns the URL of a remote, or None if the remote is not configured."""
        try:
            return self._run(["remote", "get-url", remote])
        except GitError:
            return None

    def add_remote(self, remote: str, url: str) -> None:
        """Registers a new remote."""
        self._run(["remote", "add", remote, url], capture=False)

    def set_remote_url(self, remote: str, url: str) -> None:
        """Changes the URL of an existing remote."""
        self._run(["remote", "set-url", remote, url], capture=False)

    def fetch(
        self, remote: str, refspec: str | None = None, prune: bool = False
    ) -> None:
        """Downloads objects and refs from a remote.

        Args:
            remote (str): The remote to fetch from.
            refspec (str | None, optional): A single branch or refspec. Defaults to
                                            None (the remote's configured refspecs).
            prune (bool, optional): Whether to drop remote-tracking refs that no
                                    longer exist on the remote. Defaults to False.
        """
        cmd = ["fetch"]
        if prune:
            cmd.append("--prune")
        cmd.append(remote)
        if refspec:
            cmd.append(refspec)
        self._run(cmd)

    def push(self, remote: str, refspec: str, force: bool = False) -> None:
        """Publishes a ref to a remote.

        Args:
            remote (str): The remote to push to.
            refspec (str): The refspec to push (e.g., 'main:main').
            force (bool, optional): Whether to overwrite remote history.
                                    Defaults to False.
        """
        cmd = ["push"]
        if force:
            cmd.append("--force")
        cmd.extend([remote, refspec])
        # capture=True suppresses verbose "Enumerating objects..." output.
        self._run(cmd, capture=True)

    def diff_shortstat(self, target: str, source: str) -> tuple[int, int, int]:
        """Retrieves the shortstat differences between two references.

        Executes `git diff --shortstat target...source` to determine the
        number of files changed, insertions, and deletions present in the
        source reference that are not in the target.

        Args:
            target (str): The base reference (e.g., 'upstream/main').
            source (str): The branch or commit to compare (e.g., 'main').

        Returns:
            tuple[int, int, int]: A tuple containing (files_changed, insertions, deletions).
                                  Returns (0, 0, 0) if there are no differences or parsing fails.
        """
        try:
            output = self._run(["diff", "--shortstat", f"{target}...{source}"])
            if not output:
                return 0, 0, 0

            files_match = re.search(r"(\d+)\s+file", output)
            insertions_match = re.search(r"(\d+)\s+insertion", output)
            deletions_match = re.search(r"(\d+)\s+deletion", output)

            files = int(files_match.group(1)) if files_match else 0
            insertions = int(insertions_match.group(1)) if insertions_match else 0
            deletions = int(deletions_match.group(1)) if deletions_match else 0

            return files, insertions, deletions
        except Exception as e:
            logger.warning(f"Failed to parse shortstat for {target}...{source}: {e}")
            return 0, 0, 0
