"""Publishing a worktree branch as a GitHub pull request.

Uses ``git push`` and the GitHub CLI (``gh``), which must be installed and
authenticated on the host. An open pull request for the same branch is
reused rather than duplicated.
"""

from __future__ import annotations

import json
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from enhance_ticket.config import GitHubRepoConfig
from enhance_ticket.linear import IssueDetails
from enhance_ticket.logging import get_logger
from enhance_ticket.worktree import render_template

logger = get_logger(__name__)

COMMAND_TIMEOUT_SECONDS = 120

_URL_PATTERN = re.compile(r"https?://\S+")


class PublishError(Exception):
    """Raised when pushing the branch or opening the pull request fails."""

    pass


@dataclass(frozen=True)
class PublishedPullRequest:
    url: str
    branch: str
    base: str
    created: bool


def extract_first_url(text: str) -> str | None:
    match = _URL_PATTERN.search(text)
    return match.group(0) if match else None


def build_pr_title(repo: GitHubRepoConfig, issue: IssueDetails) -> str:
    return render_template(
        repo.title_template,
        {"ISSUE_IDENTIFIER": issue.identifier, "ISSUE_TITLE": issue.title},
    ).strip()


def build_pr_body(issue: IssueDetails) -> str:
    return (
        f"Automated PR for Linear issue **{issue.identifier}**.\n\n"
        f"Issue: {issue.url or '(no url)'}\n\n"
        f"### Summary\n{issue.title}\n\n"
        f"### Description\n{issue.description or '(no description)'}\n"
    )


class PullRequestPublisher:
    """Pushes branches and opens pull requests with ``git`` and ``gh``.

    Methods block; async callers run them via ``asyncio.to_thread``.
    """

    def __init__(
        self,
        git_path: str = "git",
        gh_path: str = "gh",
        timeout_seconds: float = COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._git = git_path
        self._gh = gh_path
        self._timeout = timeout_seconds

    def _run(self, args: list[str], cwd: Path | None = None) -> str:
        try:
            result = subprocess.run(
                args,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=True,
            )
        except FileNotFoundError as e:
            raise PublishError(f"Command not found: {args[0]}") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise PublishError(f"{' '.join(args[:3])} failed: {stderr or e}") from e
        except subprocess.TimeoutExpired as e:
            raise PublishError(f"{' '.join(args[:3])} timed out after {self._timeout}s") from e
        return result.stdout

    def check_cli(self) -> None:
        """Raise :class:`PublishError` if ``gh`` cannot be run."""
        self._run([self._gh, "--version"])

    def find_open_pull_request(self, repo: str, branch: str) -> str | None:
        output = self._run(
            [
                self._gh, "pr", "list",
                "--repo", repo,
                "--head", branch,
                "--state", "open",
                "--json", "url,number",
            ]
        )
        try:
            items = json.loads(output or "[]")
        except json.JSONDecodeError:
            logger.warning("Unparseable output from gh pr list: %s", output[:200])
            return None
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("url"), str) and item["url"]:
                return str(item["url"])
        return None

    def publish(
        self,
        worktree_path: Path,
        branch: str,
        repo: GitHubRepoConfig,
        base: str,
        title: str,
        body: str,
    ) -> PublishedPullRequest:
        """Push ``branch`` and return its open pull request, creating one if needed.

        Raises:
            PublishError: If a command fails or the PR URL cannot be found.
        """
        self._run([self._git, "push", "-u", repo.remote, branch], cwd=worktree_path)

        existing = self.find_open_pull_request(repo.repo, branch)
        if existing:
            logger.info("Reusing open pull request %s for %s", existing, branch)
            return PublishedPullRequest(url=existing, branch=branch, base=base, created=False)

        args = [
            self._gh, "pr", "create",
            "--repo", repo.repo,
            "--head", branch,
            "--base", base,
            "--title", title,
            "--body", body,
        ]
        if repo.draft:
            args.append("--draft")
        output = self._run(args, cwd=worktree_path)
        url = extract_first_url(output)
        if url is None:
            raise PublishError(f"Unable to parse PR URL from gh output:\n{output}")
        logger.info("Opened pull request %s for %s", url, branch)
        return PublishedPullRequest(url=url, branch=branch, base=base, created=True)
