"""Tests for workflow execution."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from enhance_ticket.config import ReplyConfig
from enhance_ticket.dispatch import DispatchDecision
from enhance_ticket.events import ChangeEvent
from enhance_ticket.metrics import Metrics
from enhance_ticket.triggers import TriggerRule
from enhance_ticket.types import (
    AgentName,
    MatchKind,
    PermissionMode,
    PermissionPolicy,
    TerminationReason,
    TriggerAction,
)
from enhance_ticket.workflows import WorkflowExecutor
from enhance_ticket.worktree import WorktreeError
from tests.helpers import (
    make_comment_event,
    make_config,
    make_issue,
    make_label_event,
    make_result,
)
from tests.mocks import FakeInspector, FakePublisher, FakeRunner, FakeTracker, FakeWorktrees


def decision(
    action: TriggerAction,
    value: str | None = None,
    kind: MatchKind = MatchKind.LABEL,
    agent: AgentName | None = None,
) -> DispatchDecision:
    rule = TriggerRule(kind, value or str(action), action, forced_agent=agent)
    return DispatchDecision(rule=rule, action=action)


def mention(value: str = "@claude") -> DispatchDecision:
    return decision(TriggerAction.REPLY, value, MatchKind.MENTION, AgentName.CLAUDE)


class Harness:
    """An executor wired to fakes, rooted in a temporary directory."""

    def __init__(
        self,
        tmp_path: Path,
        runner: FakeRunner | None = None,
        tracker: FakeTracker | None = None,
        worktrees: FakeWorktrees | None = None,
        inspector: FakeInspector | None = None,
        publisher: FakePublisher | None = None,
        metrics: Metrics | None = None,
        **config: Any,
    ) -> None:
        self.tmp_path = tmp_path
        self.dead_letter_path = tmp_path / "dead-letter.jsonl"
        self.runner = runner or FakeRunner(make_result())
        self.tracker = tracker or FakeTracker(issues={"issue-1": make_issue()})
        self.worktrees = worktrees or FakeWorktrees(tmp_path / "worktrees")
        self.inspector = inspector or FakeInspector()
        self.publisher = publisher or FakePublisher()
        self.executor = WorkflowExecutor(
            make_config(workspace_path=tmp_path, dead_letter_path=self.dead_letter_path, **config),
            self.tracker,
            self.runner,  # type: ignore[arg-type]
            self.worktrees,  # type: ignore[arg-type]
            self.inspector,  # type: ignore[arg-type]
            self.publisher,  # type: ignore[arg-type]
            metrics,
        )

    def run(self, dispatch: DispatchDecision, event: ChangeEvent | None = None) -> None:
        asyncio.run(self.executor.execute(event or make_label_event(["code"]), dispatch))

    @property
    def ack(self) -> str:
        return self.tracker.last_update("comment-1")

    @property
    def result_comment(self) -> str:
        assert len(self.tracker.created) == 2, self.tracker.created
        return self.tracker.created[1][1]


class TestCodeWorkflow:
    """Tests for the quick and full code workflows."""

    def test_quick_success(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, runner=FakeRunner(make_result(files=("src/login.py",))))

        harness.run(decision(TriggerAction.QUICK, "code"))

        assert harness.tracker.created[0] == ("issue-1", "🚀 **Sandbox provisioning...**")
        assert harness.tracker.issue_requests == [("issue-1", False)]
        assert harness.worktrees.created == ["ENG-1"]

        (request,) = harness.runner.requests
        assert request.session_id.startswith("quick-eng-1-")
        assert request.working_directory == tmp_path / "worktrees" / "eng-1"
        assert request.permission_mode == PermissionMode.DEFAULT
        assert request.permission_policy == PermissionPolicy.DEFAULT
        assert request.detect_file_changes is True
        assert request.prompt.startswith("# Ticket Implementation Request")
        assert "## Comments" not in request.prompt

        assert harness.result_comment.startswith("## Code Bot - Ready for Review")
        assert "- `src/login.py`" in harness.result_comment
        assert harness.ack == (
            "✅ **Completed** for **ENG-1**.\n\nSee the latest comment for details."
        )

    def test_run_outcome_is_recorded(self, tmp_path: Path) -> None:
        metrics = Metrics()
        harness = Harness(tmp_path, runner=FakeRunner(make_result(success=False)), metrics=metrics)

        harness.run(decision(TriggerAction.QUICK, "code"))

        labels = {"action": "quick", "outcome": "failure"}
        registry = metrics.registry
        assert registry.get_sample_value("enhance_ticket_agent_runs_total", labels) == 1
        count = registry.get_sample_value("enhance_ticket_agent_run_duration_seconds_count", labels)
        assert count == 1

    def test_progress_messages(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, runner=FakeRunner(make_result(), progress=["Running: Bash"]))

        harness.run(decision(TriggerAction.QUICK, "code"))

        bodies = [body for _, body in harness.tracker.updated]
        assert bodies[0].startswith("🚀 **Sandbox provisioning...**\n\nCreating worktree")
        assert bodies[1].startswith("✅ **Sandbox created**\n\nAgent: `claude`")
        assert bodies[2].startswith("🤖 **Agent working...**")
        assert bodies[2].endswith("**Current:** Running: Bash")

    def test_full_includes_comments(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path)
        harness.run(decision(TriggerAction.FULL, "implement"))
        assert harness.tracker.issue_requests == [("issue-1", True)]
        assert "## Comments" in harness.runner.requests[0].prompt

    def test_forced_agent(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path)
        harness.run(decision(TriggerAction.QUICK, "codex", agent=AgentName.CODEX))
        assert harness.runner.requests[0].agent == AgentName.CODEX

    def test_failed_run(self, tmp_path: Path) -> None:
        result = make_result(
            success=False, error="Timeout after 60s - session terminated",
            reason=TerminationReason.TIMEOUT,
        )
        harness = Harness(tmp_path, runner=FakeRunner(result))

        harness.run(decision(TriggerAction.QUICK, "code"))

        assert harness.result_comment.startswith("## Code Bot - Failed")
        assert harness.ack.startswith("## Code Bot\n\n**Issue:** ENG-1\n\nAgent run failed.")
        assert "Timeout after 60s - session terminated" in harness.ack

    def test_missing_description(self, tmp_path: Path) -> None:
        tracker = FakeTracker(issues={"issue-1": make_issue(title=" ", description="")})
        harness = Harness(tmp_path, tracker=tracker)

        harness.run(decision(TriggerAction.QUICK, "code"))

        assert "No issue description provided." in harness.ack
        assert harness.runner.requests == []

    def test_worktree_creation_failure(self, tmp_path: Path) -> None:
        worktrees = FakeWorktrees(tmp_path, create_error=WorktreeError("branch exists"))
        harness = Harness(tmp_path, worktrees=worktrees)

        harness.run(decision(TriggerAction.QUICK, "code"))

        assert "Worktree creation failed." in harness.ack
        assert "branch exists" in harness.ack
        assert harness.runner.requests == []

    def test_progress_edit_failure_does_not_fail_run(self, tmp_path: Path) -> None:
        tracker = FakeTracker(issues={"issue-1": make_issue()}, fail_update=True)
        runner = FakeRunner(make_result(), progress=["x"])
        harness = Harness(tmp_path, tracker=tracker, runner=runner)

        harness.run(decision(TriggerAction.QUICK, "code"))

        assert len(tracker.created) == 2
        assert not harness.dead_letter_path.exists()


class TestDiscoveryWorkflows:
    @pytest.mark.parametrize(
        ("action", "prompt_heading", "heading", "done"),
        [
            (TriggerAction.CONTEXT, "# Context Discovery Request", "## Context", "Context created"),
            (TriggerAction.PLAN, "# Implementation Plan Request", "## Plan", "Plan created"),
        ],
    )
    def test_read_only_run(
        self, tmp_path: Path, action: TriggerAction, prompt_heading: str, heading: str, done: str
    ) -> None:
        harness = Harness(tmp_path, runner=FakeRunner(make_result(answer="  Findings  ")))

        harness.run(decision(action))

        (request,) = harness.runner.requests
        assert request.working_directory == tmp_path
        assert request.permission_mode == PermissionMode.PLAN
        assert request.permission_policy == PermissionPolicy.READ_ONLY_REVIEW
        assert request.detect_file_changes is False
        assert request.prompt.startswith(prompt_heading)
        assert harness.result_comment.startswith(f"{heading}\n\n**Issue:** ENG-1")
        assert "\nFindings\n" in harness.result_comment
        assert harness.ack.startswith(f"✅ **{done}** for **ENG-1**.")

    def test_answer_is_truncated(self, tmp_path: Path) -> None:
        harness = Harness(
            tmp_path,
            runner=FakeRunner(make_result(answer="y" * 50)),
            reply=ReplyConfig(max_answer_chars=10),
        )
        harness.run(decision(TriggerAction.PLAN))
        assert "y" * 10 + "\n\n... (truncated)" in harness.result_comment
        assert "y" * 11 not in harness.result_comment


class TestReplyWorkflow:
    """Tests for mention replies."""

    def test_answers_question(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, runner=FakeRunner(make_result(answer="Because of X.")))

        harness.run(mention(), make_comment_event("@claude why does login fail?"))

        assert harness.tracker.created[0] == ("issue-1", "Starting reply with @claude...")
        assert harness.tracker.issue_requests == [("issue-1", True)]
        (request,) = harness.runner.requests
        assert request.permission_policy == PermissionPolicy.RESTRICTED_REPLY
        assert request.permission_mode == PermissionMode.PLAN
        assert request.session_id.startswith("reply-eng-1-")
        assert "## Question\nwhy does login fail?" in request.prompt

        comment = harness.result_comment
        assert comment.startswith("## @claude Reply")
        assert "**Question:**\n> why does login fail?" in comment
        assert "Because of X." in comment
        assert harness.ack.startswith("✅ **Reply posted** for **ENG-1**.")

    def test_bare_mention_asks_for_question(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path)

        harness.run(mention("@codex"), make_comment_event("@codex  "))

        assert harness.ack.startswith("## @codex Reply\n\nNo question found after the mention.")
        assert harness.runner.requests == []
        assert len(harness.tracker.created) == 1


class TestReviewWorkflow:
    def test_reviews_diff(self, tmp_path: Path) -> None:
        inspector = FakeInspector(diff=("a.py | 2 +-", "diff --git a/a.py b/a.py"))
        runner = FakeRunner(make_result(answer="LGTM"))
        harness = Harness(tmp_path, inspector=inspector, runner=runner)

        harness.run(decision(TriggerAction.REVIEW))

        (request,) = harness.runner.requests
        assert request.working_directory == tmp_path / "worktrees" / "eng-1"
        assert request.permission_policy == PermissionPolicy.READ_ONLY_REVIEW
        assert "diff --git a/a.py b/a.py" in request.prompt
        assert "## Recent Comments" in request.prompt
        assert harness.result_comment.startswith("## Code Review")
        assert "**Base:** `origin/main`" in harness.result_comment
        assert harness.ack.startswith("✅ **Review completed** for **ENG-1**.")

    def test_no_worktree(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, worktrees=FakeWorktrees(tmp_path, exists=False))
        harness.run(decision(TriggerAction.REVIEW))
        assert harness.ack.startswith("## Review Bot")
        assert "No worktree found for **ENG-1**." in harness.ack
        assert "re-apply the `review` label" in harness.ack

    def test_unresolved_base(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, inspector=FakeInspector(base=None))
        harness.run(decision(TriggerAction.REVIEW))
        assert "Unable to resolve the base branch" in harness.ack

    def test_no_diff(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, inspector=FakeInspector(diff=("", "  ")))
        harness.run(decision(TriggerAction.REVIEW))
        assert "No diff detected for **ENG-1**" in harness.ack
        assert harness.runner.requests == []


class TestGitHubWorkflow:
    """Tests for pull request publishing."""

    def test_publishes_pull_request(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, github_enabled=True, github_repo="acme/app")

        harness.run(decision(TriggerAction.GITHUB))

        (published,) = harness.publisher.published
        assert published["repo"] == "acme/app"
        assert published["branch"] == "fix/eng-1"
        assert published["base"] == "main"
        assert published["title"] == "ENG-1: Fix the login redirect"
        assert harness.result_comment.startswith(
            "## GitHub PR\n\nPR: https://github.com/acme/app/pull/7"
        )
        assert harness.ack == (
            "✅ **PR published** for **ENG-1**.\n\nhttps://github.com/acme/app/pull/7"
        )
        assert harness.runner.requests == []

    def test_disabled(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, github_repo="acme/app")
        harness.run(decision(TriggerAction.GITHUB))
        assert "GitHub integration is disabled (`github.enabled=false`)." in harness.ack
        assert harness.publisher.published == []

    def test_repo_not_configured(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, github_enabled=True)
        harness.run(decision(TriggerAction.GITHUB))
        assert "No GitHub repo configured for workspace: `main`." in harness.ack

    def test_cli_unavailable(self, tmp_path: Path) -> None:
        harness = Harness(
            tmp_path, publisher=FakePublisher(cli_ok=False), github_enabled=True, github_repo="a/b"
        )
        harness.run(decision(TriggerAction.GITHUB))
        assert "GitHub CLI (`gh`) is not available" in harness.ack

    def test_dirty_worktree(self, tmp_path: Path) -> None:
        harness = Harness(
            tmp_path,
            worktrees=FakeWorktrees(tmp_path, dirty=True),
            github_enabled=True,
            github_repo="a/b",
        )
        harness.run(decision(TriggerAction.GITHUB))
        assert "Worktree has uncommitted changes." in harness.ack
        assert harness.publisher.published == []

    def test_unresolved_default_branch(self, tmp_path: Path) -> None:
        harness = Harness(
            tmp_path,
            worktrees=FakeWorktrees(tmp_path, default_branch=None),
            github_enabled=True,
            github_repo="a/b",
        )
        harness.run(decision(TriggerAction.GITHUB))
        assert "Unable to resolve the base branch" in harness.ack
        assert "origin/HEAD is not set" in harness.ack


class TestExecutorErrors:
    """Tests for errors outside the individual workflows."""

    def test_ack_failure_stops_early(self, tmp_path: Path) -> None:
        tracker = FakeTracker(issues={"issue-1": make_issue()}, fail_create=True)
        harness = Harness(tmp_path, tracker=tracker)

        harness.run(decision(TriggerAction.QUICK, "code"))

        assert tracker.issue_requests == []
        assert harness.runner.requests == []

    def test_unknown_workspace(self, tmp_path: Path) -> None:
        tracker = FakeTracker(issues={"issue-1": make_issue(team_id="team-9")})
        harness = Harness(tmp_path, tracker=tracker)

        harness.run(decision(TriggerAction.QUICK, "code"), make_label_event(["code"], team_id=None))

        assert "No workspace is configured for this issue." in harness.ack
        assert "team-9" in harness.ack

    def test_unexpected_error_is_dead_lettered(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, runner=FakeRunner(error=RuntimeError("kaboom")))

        harness.run(decision(TriggerAction.QUICK, "code"))

        assert "Unhandled error while running the quick workflow." in harness.ack
        (line,) = harness.dead_letter_path.read_text(encoding="utf-8").splitlines()
        entry = json.loads(line)
        assert (entry["issue_id"], entry["workflow"], entry["error"]) == (
            "issue-1",
            "quick",
            "kaboom",
        )

    def test_issue_fetch_failure_is_dead_lettered(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, tracker=FakeTracker())

        harness.run(decision(TriggerAction.PLAN))

        assert "Unhandled error while running the plan workflow." in harness.ack
        assert "Issue not found: issue-1" in harness.ack
        assert harness.dead_letter_path.exists()
