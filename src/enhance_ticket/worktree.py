"""Git worktrees for isolated per-issue work.

Each issue gets its own worktree and branch next to the workspace
checkout, so concurrent runs on different issues never share a working
tree. Paths and branch names come from templates such as
``{WORKSPACE_PATH}-worktrees/{ISSUE_ID}`` and ``fix/{ISSUE_ID}``.

All methods block; async callers run them via ``asyncio.to_thread``.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from enhance_ticket.config import WorkspaceConfig, WorktreeConfig
from enhance_ticket.logging import get_logger

logger = get_logger(__name__)

GIT_TIMEOUT_SECONDS = 120
POST_CREATE_TIMEOUT_SECONDS = 900

_TEMPLATE_VARIABLE = re.compile(r"\{(\w+)\}")


class WorktreeError(Exception):
    """Raised when a worktree cannot be created or inspected."""

    pass


@dataclass(frozen=True)
class WorktreeSpec:
    """Where an issue's worktree lives.

    Attributes:
        path: Absolute worktree path.
        branch: Branch checked out in the worktree.
        issue_id: Normalized issue identifier used in the templates.
    """

    path: Path
    branch: str
    issue_id: str


def normalize_issue_identifier(identifier: str) -> str:
    """Lower-case an identifier and replace path-unsafe runs with ``-``."""
    return re.sub(r"[^a-z0-9._-]+", "-", identifier.lower())


def render_template(template: str, variables: dict[str, str]) -> str:
    """Substitute ``{NAME}`` placeholders; unknown names render empty."""
    return _TEMPLATE_VARIABLE.sub(lambda m: variables.get(m.group(1), ""), template)


def issue_id_from_branch(branch: str, branch_template: str) -> str | None:
    """Recover the issue id from a branch named by ``branch_template``.

    Returns:
        The id, or None when the template has no ``{ISSUE_ID}`` or the
        branch does not match it.
    """
    if "{ISSUE_ID}" not in branch_template:
        return None
    prefix, _, suffix = branch_template.partition("{ISSUE_ID}")
    match = re.fullmatch(f"{re.escape(prefix)}(.+?){re.escape(suffix)}", branch)
    if match is None:
        return None
    return match.group(1).strip() or None


def worktree_spec(
    workspace: WorkspaceConfig, issue_identifier: str, config: WorktreeConfig
) -> WorktreeSpec:
    """Compute the worktree path and branch for an issue."""
    issue_id = normalize_issue_identifier(issue_identifier)
    variables = {
        "ISSUE_ID": issue_id,
        "WORKSPACE_PATH": str(workspace.local_path),
        "WORKSPACE_NAME": workspace.name,
    }
    branch = render_template(config.branch_template, variables)
    raw_path = Path(render_template(config.name_template, variables))
    path = raw_path if raw_path.is_absolute() else workspace.local_path / raw_path
    return WorktreeSpec(path=path, branch=branch, issue_id=issue_id)


class GitWorktreeManager:
    """Creates and removes issue worktrees with the ``git`` command line."""

    def __init__(
        self,
        config: WorktreeConfig,
        git_path: str = "git",
        timeout_seconds: float = GIT_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self._git = git_path
        self._timeout = timeout_seconds

    def _git_run(self, cwd: Path, *args: str) -> str:
        try:
            result = subprocess.run(
                [self._git, *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise WorktreeError(f"git {' '.join(args)} failed: {stderr or e}") from e
        except subprocess.TimeoutExpired as e:
            raise WorktreeError(f"git {' '.join(args)} timed out after {self._timeout}s") from e
        return result.stdout

    def spec_for(self, workspace: WorkspaceConfig, issue_identifier: str) -> WorktreeSpec:
        return worktree_spec(workspace, issue_identifier, self._config)

    def default_branch(self, repo_path: Path) -> str:
        """Name of the remote default branch (``origin/HEAD``).

        Raises:
            WorktreeError: If ``origin/HEAD`` is not set.
        """
        ref = self._git_run(repo_path, "symbolic-ref", "refs/remotes/origin/HEAD").strip()
        prefix = "refs/remotes/origin/"
        if not ref.startswith(prefix):
            raise WorktreeError(f"Unexpected origin/HEAD ref: {ref!r}")
        return ref.removeprefix(prefix)

    def is_worktree(self, path: Path) -> bool:
        """Whether ``path`` is inside a git working tree."""
        if not path.is_dir():
            return False
        try:
            output = self._git_run(path, "rev-parse", "--is-inside-work-tree")
        except WorktreeError:
            return False
        return output.strip() == "true"

    def is_dirty(self, path: Path) -> bool:
        return bool(self._git_run(path, "status", "--porcelain").strip())

    def create(self, workspace: WorkspaceConfig, issue_identifier: str) -> WorktreeSpec:
        """Create (or recreate) the worktree for an issue.

        An existing worktree at the same path is removed first, and the
        branch is reset to the remote default branch.

        Raises:
            WorktreeError: If git fails or the post-create script fails. A
                worktree whose post-create script failed is removed.
        """
        spec = self.spec_for(workspace, issue_identifier)
        repo = workspace.local_path
        spec.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._git_run(repo, "worktree", "remove", str(spec.path), "--force")
        except WorktreeError:
            pass  # not registered
        shutil.rmtree(spec.path, ignore_errors=True)
        try:
            self._git_run(repo, "worktree", "prune")
        except WorktreeError as e:
            logger.debug("git worktree prune failed: %s", e)

        base = self.default_branch(repo)
        self._git_run(repo, "worktree", "add", "-B", spec.branch, str(spec.path), base)

        if self._config.post_create_script:
            self._run_post_create_script(workspace, spec, self._config.post_create_script)

        logger.info("Created worktree at %s on branch %s", spec.path, spec.branch)
        return spec

    def _run_post_create_script(
        self, workspace: WorkspaceConfig, spec: WorktreeSpec, script_template: str
    ) -> None:
        env_vars = {
            "WORKTREE_PATH": str(spec.path),
            "WORKSPACE_PATH": str(workspace.local_path),
            "WORKSPACE_NAME": workspace.name,
            "ISSUE_ID": spec.issue_id,
        }
        script = Path(render_template(script_template, env_vars))
        if not script.is_absolute():
            script = spec.path / script
        if not script.is_file():
            self.remove(workspace.local_path, spec.path)
            raise WorktreeError(f"Post-create script not found: {script}")

        logger.info("Running post-create script: %s", script)
        try:
            subprocess.run(
                ["bash", str(script)],
                cwd=spec.path,
                env={**os.environ, **env_vars},
                capture_output=True,
                text=True,
                timeout=POST_CREATE_TIMEOUT_SECONDS,
                check=True,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            stderr = e.stderr if isinstance(e.stderr, str) else ""
            logger.error("Post-create script failed: %s", script)
            self.remove(workspace.local_path, spec.path)
            raise WorktreeError(
                f"Post-create script failed: {script}: {stderr.strip() or e}"
            ) from e

    def remove(self, repo_path: Path, worktree_path: Path) -> None:
        """Remove a worktree; failures are logged."""
        try:
            self._git_run(repo_path, "worktree", "remove", str(worktree_path), "--force")
            logger.info("Removed worktree at %s", worktree_path)
        except WorktreeError as e:
            logger.error("Failed to remove worktree %s: %s", worktree_path, e)

    def is_registered(self, repo_path: Path, worktree_path: Path) -> bool:
        """Whether git lists ``worktree_path`` among the repo's worktrees."""
        output = self._git_run(repo_path, "worktree", "list", "--porcelain")
        wanted = worktree_path.resolve()
        for line in output.splitlines():
            if line.startswith("worktree "):
                if Path(line.removeprefix("worktree ").strip()).resolve() == wanted:
                    return True
        return False

    def delete_remote_branch(self, repo_path: Path, remote: str, branch: str) -> None:
        """Delete a branch on the remote; failures are logged."""
        try:
            self._git_run(repo_path, "push", remote, "--delete", branch)
            logger.info("Deleted remote branch %s/%s", remote, branch)
        except WorktreeError as e:
            logger.warning("Failed to delete remote branch %s/%s: %s", remote, branch, e)
