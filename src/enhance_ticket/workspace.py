"""Workspace resolution and inspection.

Two concerns live here:

- mapping an issue to the configured workspace (repository checkout) it
  belongs to, by team and project;
- inspecting a checkout after a run to find the files the agent changed,
  for runs where the agent itself reported none.
"""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from enhance_ticket.config import WorkspaceConfig
from enhance_ticket.logging import get_logger

logger = get_logger(__name__)

GIT_TIMEOUT_SECONDS = 30


class WorkspaceResolutionError(Exception):
    """Raised when an issue cannot be mapped to exactly one workspace."""

    pass


def resolve_workspace_for_issue(
    workspaces: Sequence[WorkspaceConfig],
    team_id: str | None,
    project_id: str | None = None,
) -> WorkspaceConfig:
    """Pick the workspace an issue belongs to.

    Candidates are the workspaces of the issue's team. A workspace listing
    the issue's project wins; otherwise the single candidate without a
    project filter is used.

    Args:
        workspaces: Configured workspaces.
        team_id: The issue's team id.
        project_id: The issue's project id, if any.

    Returns:
        The matching workspace.

    Raises:
        WorkspaceResolutionError: If no workspace or more than one matches.
    """
    if not team_id:
        raise WorkspaceResolutionError("Issue team id is required for workspace resolution")

    candidates = [w for w in workspaces if w.team_id == team_id]
    if not candidates:
        raise WorkspaceResolutionError(f"No workspace configured for team {team_id}")

    if project_id:
        project_matches = [w for w in candidates if project_id in w.project_ids]
        if len(project_matches) == 1:
            return project_matches[0]
        if len(project_matches) > 1:
            raise WorkspaceResolutionError(f"Multiple workspaces match project {project_id}")

    fallback = [w for w in candidates if not w.project_ids]
    if len(fallback) == 1:
        return fallback[0]
    if len(fallback) > 1:
        raise WorkspaceResolutionError(
            f"Multiple workspaces match team {team_id} with no project filter"
        )
    raise WorkspaceResolutionError(
        f"No workspace configured for team {team_id} with project {project_id or 'none'}"
    )


def parse_porcelain_status(output: str) -> list[str]:
    """Extract paths from ``git status --porcelain`` output.

    Each line is a two-letter status, a space, then the path. Renames are
    shown as ``old -> new``; the new path is reported.

    Returns:
        Unique paths in output order.
    """
    files: list[str] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        path_part = line[3:].strip()
        if not path_part:
            continue
        if " -> " in path_part:
            path_part = path_part.rsplit(" -> ", 1)[1]
        path = path_part.strip('"')
        if path and path not in files:
            files.append(path)
    return files


class WorkspaceInspector(Protocol):
    """Reads the state of a workspace checkout.

    Methods are blocking; async callers run them via ``asyncio.to_thread``.
    """

    def uncommitted_changes(self, path: Path) -> list[str]:
        """Paths with uncommitted changes (staged, unstaged or untracked)."""
        ...

    def changes_against_upstream(self, path: Path) -> list[str]:
        """Paths changed on the current branch relative to the upstream default branch."""
        ...


class GitWorkspaceInspector:
    """:class:`WorkspaceInspector` backed by the ``git`` command line."""

    def __init__(self, git_path: str = "git", timeout_seconds: float = GIT_TIMEOUT_SECONDS) -> None:
        self._git = git_path
        self._timeout = timeout_seconds

    def _run(self, path: Path, *args: str) -> str:
        result = subprocess.run(
            [self._git, *args],
            cwd=path,
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=True,
        )
        return result.stdout

    def uncommitted_changes(self, path: Path) -> list[str]:
        return parse_porcelain_status(self._run(path, "status", "--porcelain"))

    def upstream_default_branch(self, path: Path) -> str | None:
        """The remote default branch as ``origin/<name>``, or None if unknown."""
        try:
            ref = self._run(path, "symbolic-ref", "refs/remotes/origin/HEAD").strip()
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
            return None
        branch = ref.removeprefix("refs/remotes/origin/")
        return f"origin/{branch}" if branch else None

    def changes_against_upstream(self, path: Path) -> list[str]:
        base = self.upstream_default_branch(path)
        if base is None:
            return []
        output = self._run(path, "diff", "--name-only", f"{base}...HEAD")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def diff_against_upstream(self, path: Path) -> tuple[str, str]:
        """``git diff --stat`` and full diff of the branch against upstream.

        Returns:
            ``(stat, diff)``; both empty when no upstream is known.
        """
        base = self.upstream_default_branch(path)
        if base is None:
            return "", ""
        stat = self._run(path, "diff", "--stat", f"{base}...HEAD")
        diff = self._run(path, "diff", f"{base}...HEAD")
        return stat.strip(), diff
