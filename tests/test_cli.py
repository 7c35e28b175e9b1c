"""Tests for the Command Line Interface (CLI) module."""

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from fork_sync import cli, mirror
from fork_sync.config import Config
from fork_sync.errors import BranchSyncFailure, SetupFailure


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, mocker: MagicMock) -> Any:
    """Keeps the user's real global config out of CLI tests."""
    mocker.patch("fork_sync.config.CONFIG_FILE", tmp_path / "missing.toml")
    mocker.patch("fork_sync.cli.mirror.setup_logging")
    # Wide enough that result tables never wrap commit ids.
    mocker.patch("fork_sync.cli.console", Console(width=200))
    Config._global_cache = None
    yield
    Config._global_cache = None


def test_sync_applies_command_line_overrides(
    tmp_path: Path, mocker: MagicMock
) -> None:
    """Verifies that flags layer on top of the loaded configuration."""
    run = mocker.patch("fork_sync.cli.mirror.run_mirror", return_value=[])

    cli.main(
        [
            "sync",
            "--path",
            str(tmp_path),
            "--upstream",
            "https://example.com/upstream.git",
            "--protect",
            "./.github/actions/",
            "--branch",
            "release-*",
            "--exclude",
            "release-old*",
            "--dry-run",
        ]
    )

    path, config = run.call_args.args
    assert path == tmp_path
    assert run.call_args.kwargs == {"dry_run": True}
    assert config.upstream.url == "https://example.com/upstream.git"
    assert config.sync.protected_paths == [".github/workflows/", ".github/actions/"]
    assert config.sync.branches == ["release-*"]
    assert config.sync.exclude_branches == ["release-old*"]


def test_sync_exits_nonzero_on_setup_failure(
    tmp_path: Path, capsys: pytest.CaptureFixture, mocker: MagicMock
) -> None:
    mocker.patch(
        "fork_sync.cli.mirror.run_mirror",
        side_effect=SetupFailure("Remote 'upstream' is not configured"),
    )

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["sync", "--path", str(tmp_path)])

    assert excinfo.value.code == 1
    assert "SETUP FAILED" in capsys.readouterr().out


def test_sync_reports_branch_failures_without_failing(
    tmp_path: Path, capsys: pytest.CaptureFixture, mocker: MagicMock
) -> None:
    """Verifies that per-branch failures are shown but keep a zero exit status."""
    results = [
        mirror.BranchResult(
            branch="main",
            state=mirror.BranchState.EXISTING,
            outcome=mirror.Outcome.OVERLAID,
            published=True,
            commit="0123456789abcdef",
        ),
        mirror.BranchResult(
            branch="dev",
            state=mirror.BranchState.NEW,
            error=BranchSyncFailure("dev", "fetch failed"),
        ),
    ]
    mocker.patch("fork_sync.cli.mirror.run_mirror", return_value=results)

    cli.main(["sync", "--path", str(tmp_path)])

    out = capsys.readouterr().out
    assert "Mirror Results" in out
    assert "overlaid" in out
    assert "0123456789ab" in out
    assert "1 of 2 branches failed" in out


def test_default_command_runs_sync(mocker: MagicMock) -> None:
    run_sync = mocker.patch("fork_sync.cli.run_sync")

    cli.main([])

    args = run_sync.call_args.args[0]
    assert args.command == "sync"
    assert args.dry_run is False


def test_sync_flags_without_subcommand_run_sync(
    tmp_path: Path, mocker: MagicMock
) -> None:
    run_sync = mocker.patch("fork_sync.cli.run_sync")

    cli.main(["--dry-run", "--path", str(tmp_path), "--branch", "main"])

    args = run_sync.call_args.args[0]
    assert args.command == "sync"
    assert args.dry_run is True
    assert args.path == tmp_path
    assert args.branch == ["main"]


def test_help_flag_is_not_treated_as_sync(mocker: MagicMock) -> None:
    run_sync = mocker.patch("fork_sync.cli.run_sync")

    with pytest.raises(SystemExit) as exc:
        cli.main(["--help"])

    assert exc.value.code == 0
    run_sync.assert_not_called()


def test_branches_lists_plan(
    tmp_path: Path, capsys: pytest.CaptureFixture, mocker: MagicMock
) -> None:
    (tmp_path / ".git").mkdir()
    prepare = mocker.patch("fork_sync.cli.mirror.prepare_upstream")
    mocker.patch(
        "fork_sync.cli.mirror.describe_branches",
        return_value=[
            mirror.BranchRef("main", "aaaaaaaaaaaaaaaa", "bbbbbbbbbbbbbbbb"),
            mirror.BranchRef("dev", "cccccccccccccccc", None),
        ],
    )

    cli.main(["branches", "--path", str(tmp_path)])

    prepare.assert_called_once()
    out = capsys.readouterr().out
    assert "existing" in out
    assert "new" in out
    assert "Protected paths: .github/workflows/" in out


def test_branches_outside_repository(
    tmp_path: Path, capsys: pytest.CaptureFixture
) -> None:
    with pytest.raises(SystemExit):
        cli.main(["branches", "--path", str(tmp_path)])

    assert "Not a git repository" in capsys.readouterr().out


def test_config_list_shows_reference(capsys: pytest.CaptureFixture) -> None:
    cli.main(["config", "--list"])

    out = capsys.readouterr().out
    assert "Configuration Schema" in out
    assert "protected_paths" in out


def test_help_groups_commands(capsys: pytest.CaptureFixture) -> None:
    cli.main(["help"])

    out = capsys.readouterr().out
    assert "Mirroring:" in out
    assert "branches" in out
    assert "Maintenance:" in out
