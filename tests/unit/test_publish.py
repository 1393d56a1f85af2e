"""Tests for pull request publishing."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from enhance_ticket.config import GitHubRepoConfig
from enhance_ticket.publish import (
    PublishedPullRequest,
    PublishError,
    PullRequestPublisher,
    build_pr_body,
    build_pr_title,
    extract_first_url,
)
from tests.helpers import make_issue

REPO = GitHubRepoConfig(workspace="main", repo="acme/app")
WORKTREE = Path("/w/eng-1")


def completed(stdout: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr="")


def publish(run: MagicMock, repo: GitHubRepoConfig = REPO) -> PublishedPullRequest:
    with patch("subprocess.run", run):
        return PullRequestPublisher().publish(
            WORKTREE, "fix/eng-1", repo, "main", "ENG-1: Fix", "Body"
        )


class TestHelpers:
    def test_extract_first_url(self) -> None:
        output = "Creating pull request\nhttps://github.com/acme/app/pull/7\nhttps://other"
        assert extract_first_url(output) == "https://github.com/acme/app/pull/7"
        assert extract_first_url("no url here") is None

    def test_title_template(self) -> None:
        assert build_pr_title(REPO, make_issue()) == "ENG-1: Fix the login redirect"
        custom = GitHubRepoConfig("main", "acme/app", title_template="[{ISSUE_IDENTIFIER}]")
        assert build_pr_title(custom, make_issue()) == "[ENG-1]"

    def test_body(self) -> None:
        body = build_pr_body(make_issue(description=""))
        assert "Automated PR for Linear issue **ENG-1**." in body
        assert "Issue: https://linear.app/acme/issue/ENG-1" in body
        assert "### Description\n(no description)" in body


class TestPullRequestPublisher:
    """Tests for PullRequestPublisher with subprocess.run mocked."""

    def test_creates_draft_pull_request(self) -> None:
        created = completed("https://github.com/acme/app/pull/7\n")
        run = MagicMock(side_effect=[completed(), completed("[]"), created])

        pr = publish(run)

        assert pr.url == "https://github.com/acme/app/pull/7"
        assert pr.created is True
        push, pr_list, pr_create = (c.args[0] for c in run.call_args_list)
        assert push == ["git", "push", "-u", "origin", "fix/eng-1"]
        assert pr_list[:3] == ["gh", "pr", "list"]
        assert ["--head", "fix/eng-1"] == pr_list[5:7]
        assert pr_create[:3] == ["gh", "pr", "create"]
        assert pr_create[-1] == "--draft"
        assert run.call_args_list[0].kwargs["cwd"] == WORKTREE

    def test_reuses_open_pull_request(self) -> None:
        existing = '[{"url": "https://github.com/acme/app/pull/3", "number": 3}]'
        run = MagicMock(side_effect=[completed(), completed(existing)])

        pr = publish(run)

        assert pr.url == "https://github.com/acme/app/pull/3"
        assert pr.created is False
        assert run.call_count == 2

    def test_ready_for_review(self) -> None:
        repo = GitHubRepoConfig("main", "acme/app", draft=False)
        run = MagicMock(side_effect=[completed(), completed("[]"), completed("https://x/pull/1")])
        publish(run, repo)
        assert "--draft" not in run.call_args_list[2].args[0]

    def test_unparseable_pr_list_creates_new(self) -> None:
        run = MagicMock(side_effect=[completed(), completed("oops"), completed("https://x/pull/2")])
        assert publish(run).url == "https://x/pull/2"

    def test_missing_url_in_output(self) -> None:
        run = MagicMock(side_effect=[completed(), completed("[]"), completed("done")])
        with pytest.raises(PublishError, match="Unable to parse PR URL"):
            publish(run)

    def test_push_failure(self) -> None:
        error = subprocess.CalledProcessError(1, ["git"], stderr="rejected")
        with pytest.raises(PublishError, match="git push -u failed: rejected"):
            publish(MagicMock(side_effect=error))

    def test_check_cli(self) -> None:
        with patch("subprocess.run", side_effect=FileNotFoundError("gh")):
            with pytest.raises(PublishError, match="Command not found: gh"):
                PullRequestPublisher().check_cli()
        with patch("subprocess.run", return_value=completed("gh version 2.60.0")) as run:
            PullRequestPublisher().check_cli()
        assert run.call_args.args[0] == ["gh", "--version"]
