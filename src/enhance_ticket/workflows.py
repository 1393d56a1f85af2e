"""Workflow execution for matched triggers.

A matched trigger becomes one workflow run:

1. post an acknowledgement comment on the issue;
2. fetch the issue and resolve the workspace it belongs to;
3. run the action-specific workflow (agent run, review, PR publishing);
4. post the result and settle the acknowledgement comment.

Failures the user can act on are raised as :class:`WorkflowFailure` and
rendered into the acknowledgement comment. Any other error is also
appended to the dead-letter log.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from enhance_ticket.comments import (
    ack_message,
    format_answer_comment,
    format_code_result_comment,
    format_completion_ack,
    format_pr_comment,
    format_progress_comment,
)
from enhance_ticket.config import Config, SandboxSettings, WorkspaceConfig
from enhance_ticket.dead_letter import DeadLetterEntry, write_dead_letter
from enhance_ticket.dispatch import DispatchDecision
from enhance_ticket.events import ChangeEvent
from enhance_ticket.linear import IssueDetails, LinearClientError
from enhance_ticket.logging import ContextAdapter, get_logger, log_run_summary
from enhance_ticket.metrics import Metrics
from enhance_ticket.progress import ProgressUpdate
from enhance_ticket.prompts import (
    build_context_prompt,
    build_implementation_prompt,
    build_plan_prompt,
    build_reply_prompt,
    build_review_prompt,
    extract_mention_question,
    format_recent_comments,
    truncate_text,
)
from enhance_ticket.publish import (
    PublishError,
    PullRequestPublisher,
    build_pr_body,
    build_pr_title,
)
from enhance_ticket.runner import AgentRunRequest, AgentRunResult, AgentSessionRunner
from enhance_ticket.types import PermissionMode, PermissionPolicy, TriggerAction
from enhance_ticket.workflow_errors import (
    FailureCode,
    WorkflowBot,
    WorkflowFailure,
    format_failure_ack,
)
from enhance_ticket.workspace import (
    GitWorkspaceInspector,
    WorkspaceResolutionError,
    resolve_workspace_for_issue,
)
from enhance_ticket.worktree import GitWorktreeManager, WorktreeError, normalize_issue_identifier

logger = get_logger(__name__)

AGENT_HEADING = "🤖 **Agent working...**"

BOT_FOR_ACTION: dict[TriggerAction, WorkflowBot] = {
    TriggerAction.QUICK: WorkflowBot.CODE,
    TriggerAction.FULL: WorkflowBot.CODE,
    TriggerAction.CONTEXT: WorkflowBot.CONTEXT,
    TriggerAction.PLAN: WorkflowBot.PLAN,
    TriggerAction.REPLY: WorkflowBot.REPLY,
    TriggerAction.REVIEW: WorkflowBot.REVIEW,
    TriggerAction.GITHUB: WorkflowBot.GITHUB,
}

# Actions whose prompt includes the issue's comments.
_ACTIONS_WITH_COMMENTS = frozenset(
    {TriggerAction.FULL, TriggerAction.REPLY, TriggerAction.REVIEW}
)


class Tracker(Protocol):
    """The tracker operations workflows use; :class:`LinearClient` provides them."""

    async def get_issue(self, issue_id: str, include_comments: bool = False) -> IssueDetails: ...

    async def create_comment(self, issue_id: str, body: str) -> str: ...

    async def update_comment(self, comment_id: str, body: str) -> None: ...


class CommentProgressSink:
    """Progress sink that rewrites the acknowledgement comment.

    Edit failures are logged and dropped; a missed progress update must
    never fail the run.
    """

    def __init__(
        self,
        tracker: Tracker,
        comment_id: str,
        render: Callable[[str], str],
        log: ContextAdapter | None = None,
    ) -> None:
        self._tracker = tracker
        self._comment_id = comment_id
        self._render = render
        self._log = log or logger.with_context()

    async def __call__(self, update: ProgressUpdate) -> None:
        try:
            await self._tracker.update_comment(self._comment_id, self._render(update.message))
        except LinearClientError as e:
            self._log.warning("Failed to post %s progress update: %s", update.kind, e)


@dataclass(frozen=True)
class _Job:
    """Everything a workflow step needs about the run in flight."""

    event: ChangeEvent
    decision: DispatchDecision
    ack_id: str
    issue: IssueDetails
    workspace: WorkspaceConfig
    settings: SandboxSettings
    log: ContextAdapter

    @property
    def issue_ref(self) -> str:
        return self.issue.identifier or self.issue.id

    @property
    def action(self) -> TriggerAction:
        return self.decision.action


def _has_task_description(issue: IssueDetails) -> bool:
    return bool(issue.title.strip() or issue.description.strip())


def _no_description_failure() -> WorkflowFailure:
    return WorkflowFailure(
        FailureCode.NO_TASK_DESCRIPTION,
        "No issue description provided.",
        ["Add a description to the issue and retry the workflow."],
    )


def _no_worktree_failure(issue_ref: str, label: str) -> WorkflowFailure:
    return WorkflowFailure(
        FailureCode.NO_WORKTREE,
        f"No worktree found for **{issue_ref}**.",
        [f"Run the `code` workflow first, then re-apply the `{label}` label."],
    )


def _origin_head_failure(details: str | None = None) -> WorkflowFailure:
    return WorkflowFailure(
        FailureCode.ORIGIN_HEAD_UNRESOLVED,
        "Unable to resolve the base branch from `origin/HEAD`.",
        [
            "Ensure the repo has a remote `origin` with a default branch.",
            "Run `git remote set-head origin --auto` in the main repo checkout.",
            "Then retry the workflow.",
        ],
        details,
    )


class WorkflowExecutor:
    """Runs the workflow for a dispatched trigger.

    Usage:
        executor = WorkflowExecutor(config, linear, AgentSessionRunner(runtime, inspector))
        await executor.execute(event, decision)
    """

    def __init__(
        self,
        config: Config,
        tracker: Tracker,
        runner: AgentSessionRunner,
        worktrees: GitWorktreeManager | None = None,
        inspector: GitWorkspaceInspector | None = None,
        publisher: PullRequestPublisher | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            config: Application configuration.
            tracker: Tracker client used for issues and comments.
            runner: Agent session runner.
            worktrees: Worktree manager. Defaults to one built from ``config.worktree``.
            inspector: Workspace inspector used for review diffs.
            publisher: Pull request publisher for the github workflow.
            metrics: Metrics recording agent run outcomes and durations.
        """
        self._config = config
        self._tracker = tracker
        self._runner = runner
        self._worktrees = worktrees or GitWorktreeManager(config.worktree)
        self._inspector = inspector or GitWorkspaceInspector()
        self._publisher = publisher or PullRequestPublisher()
        self._metrics = metrics
        self._handlers: Mapping[TriggerAction, Callable[[_Job], Awaitable[None]]] = {
            TriggerAction.QUICK: self._run_code,
            TriggerAction.FULL: self._run_code,
            TriggerAction.CONTEXT: self._run_discovery,
            TriggerAction.PLAN: self._run_discovery,
            TriggerAction.REPLY: self._run_reply,
            TriggerAction.REVIEW: self._run_review,
            TriggerAction.GITHUB: self._run_github,
        }

    async def execute(self, event: ChangeEvent, decision: DispatchDecision) -> None:
        """Run the workflow for one dispatched event.

        Never raises for workflow errors: they are reported on the issue,
        logged, and (for unexpected errors) written to the dead-letter log.
        """
        action = decision.action
        log = logger.with_context(issue_key=event.issue_key, action=str(action))
        bot = BOT_FOR_ACTION[action]

        try:
            ack_id = await self._tracker.create_comment(
                event.issue_id, ack_message(action, decision.rule.match_value)
            )
        except LinearClientError as e:
            log.error("Failed to post acknowledgement: %s", e)
            return

        issue_ref = event.issue_key
        try:
            job = await self._prepare(event, decision, ack_id, log)
            issue_ref = job.issue_ref
            await self._handlers[action](job)
        except WorkflowFailure as failure:
            log.warning("Workflow %s stopped: %s", action, failure)
            await self._update_ack(ack_id, format_failure_ack(bot, failure, issue_ref), log)
        except Exception as e:
            log.exception("Workflow %s failed for %s", action, issue_ref)
            await asyncio.to_thread(
                write_dead_letter,
                self._config.advanced.dead_letter_path,
                DeadLetterEntry(issue_id=event.issue_id, workflow=str(action), error=str(e)),
            )
            failure = WorkflowFailure(
                FailureCode.UNKNOWN,
                f"Unhandled error while running the {action} workflow.",
                details=str(e),
            )
            await self._update_ack(ack_id, format_failure_ack(bot, failure, issue_ref), log)

    async def _prepare(
        self,
        event: ChangeEvent,
        decision: DispatchDecision,
        ack_id: str,
        log: ContextAdapter,
    ) -> _Job:
        issue = await self._tracker.get_issue(
            event.issue_id, include_comments=decision.action in _ACTIONS_WITH_COMMENTS
        )
        log.info("Fetched issue %s - %s", issue.identifier, issue.title)
        try:
            workspace = resolve_workspace_for_issue(
                self._config.linear.workspaces,
                issue.team_id or event.team_id,
                issue.project_id or event.project_id,
            )
        except WorkspaceResolutionError as e:
            raise WorkflowFailure(
                FailureCode.WORKSPACE_NOT_CONFIGURED,
                "No workspace is configured for this issue.",
                ["Add a matching entry to `linear.workspaces`, then retry."],
                str(e),
            ) from e

        settings = self._config.sandbox.settings_for(workspace.name, decision.rule.forced_agent)
        return _Job(
            event=event,
            decision=decision,
            ack_id=ack_id,
            issue=issue,
            workspace=workspace,
            settings=settings,
            log=log,
        )

    async def _update_ack(self, ack_id: str, body: str, log: ContextAdapter) -> None:
        try:
            await self._tracker.update_comment(ack_id, body)
        except LinearClientError as e:
            log.error("Failed to update acknowledgement comment: %s", e)

    async def _run_agent(
        self,
        job: _Job,
        prompt: str,
        working_directory: Path,
        policy: PermissionPolicy,
        details: Sequence[tuple[str, str]],
        detect_file_changes: bool,
    ) -> AgentRunResult:
        settings = job.settings
        session_id = (
            f"{job.action}-{normalize_issue_identifier(job.issue_ref)}-{uuid.uuid4().hex[:8]}"
        )
        # Read-only policies rely on the agent asking before every tool call.
        permission_mode = (
            settings.permission_mode if policy == PermissionPolicy.DEFAULT else PermissionMode.PLAN
        )
        request = AgentRunRequest(
            session_id=session_id,
            prompt=prompt,
            working_directory=working_directory,
            agent=settings.agent,
            permission_mode=permission_mode,
            timeout_seconds=settings.timeout_seconds,
            progress_interval_seconds=settings.progress_interval_seconds,
            agent_mode=settings.agent_mode,
            permission_policy=policy,
            include_tool_calls=self._config.progress.include_tool_calls,
            detect_file_changes=detect_file_changes,
            issue_key=job.issue_ref,
        )
        sink = CommentProgressSink(
            self._tracker,
            job.ack_id,
            lambda message: format_progress_comment(AGENT_HEADING, job.issue_ref, message, details),
            job.log,
        )
        started = time.monotonic()
        try:
            result = await self._runner.run(request, on_progress=sink)
        except Exception:
            self._record_run(job, False, started)
            raise
        self._record_run(job, result.success, started)
        log_run_summary(
            logger,
            issue_key=job.issue_ref,
            action=str(job.action),
            session_id=result.session_id,
            termination_reason=str(result.termination_reason),
            files_modified=len(result.files_modified),
            summary=result.summary,
        )
        return result

    def _record_run(self, job: _Job, success: bool, started: float) -> None:
        if self._metrics is not None:
            self._metrics.record_agent_run(str(job.action), success, time.monotonic() - started)

    async def _finish(self, job: _Job, what: str, result: AgentRunResult, failed: str) -> None:
        if result.success:
            await self._update_ack(job.ack_id, format_completion_ack(job.issue_ref, what), job.log)
            return
        raise WorkflowFailure(FailureCode.UNKNOWN, failed, details=result.error)

    async def _run_code(self, job: _Job) -> None:
        if not _has_task_description(job.issue):
            raise _no_description_failure()

        await self._update_ack(
            job.ack_id,
            f"🚀 **Sandbox provisioning...**\n\nCreating worktree for **{job.issue_ref}**",
            job.log,
        )
        try:
            spec = await asyncio.to_thread(self._worktrees.create, job.workspace, job.issue_ref)
        except WorktreeError as e:
            raise WorkflowFailure(
                FailureCode.UNKNOWN,
                "Worktree creation failed.",
                ["Check server logs for details and retry the workflow."],
                str(e),
            ) from e

        await self._update_ack(
            job.ack_id,
            f"✅ **Sandbox created**\n\nAgent: `{job.settings.agent}`\n"
            f"Worktree: `{spec.path}`\nBranch: `{spec.branch}`\n\n⏳ **Agent starting...**",
            job.log,
        )
        prompt = build_implementation_prompt(
            job.issue, job.settings, include_comments=job.action == TriggerAction.FULL
        )
        result = await self._run_agent(
            job,
            prompt,
            spec.path,
            PermissionPolicy.DEFAULT,
            details=(("Worktree", str(spec.path)),),
            detect_file_changes=True,
        )
        await self._tracker.create_comment(
            job.issue.id,
            format_code_result_comment(
                job.issue_ref,
                result,
                str(spec.path),
                spec.branch,
                self._config.progress.include_file_changes,
            ),
        )
        await self._finish(
            job, "Completed", result, "Agent run failed. See the latest comment for details."
        )

    async def _run_discovery(self, job: _Job) -> None:
        if not _has_task_description(job.issue):
            raise _no_description_failure()

        if job.action == TriggerAction.PLAN:
            prompt = build_plan_prompt(job.issue, job.settings)
            heading, what = "Plan", "Plan created"
        else:
            prompt = build_context_prompt(job.issue, job.settings)
            heading, what = "Context", "Context created"

        result = await self._run_agent(
            job,
            prompt,
            job.workspace.local_path,
            PermissionPolicy.READ_ONLY_REVIEW,
            details=(("Workspace", str(job.workspace.local_path)),),
            detect_file_changes=False,
        )
        answer = truncate_text((result.answer or "").strip(), self._config.reply.max_answer_chars)
        await self._tracker.create_comment(
            job.issue.id, format_answer_comment(heading, job.issue_ref, answer, result)
        )
        await self._finish(
            job, what, result, f"{heading} run failed. See the latest comment for details."
        )

    async def _run_reply(self, job: _Job) -> None:
        mention = job.decision.rule.match_value.strip()
        reply_config = self._config.reply
        body = job.event.comment_body or ""
        question = extract_mention_question(body, mention, reply_config.strip_mention)
        if not question:
            await self._update_ack(
                job.ack_id,
                f"## {mention} Reply\n\nNo question found after the mention. "
                f"Please write your question after {mention}.",
                job.log,
            )
            return

        exclude = {job.ack_id} | ({job.event.comment_id} if job.event.comment_id else set())
        recent = format_recent_comments(
            job.issue.comments, exclude, reply_config.max_context_comments
        )
        prompt = build_reply_prompt(
            mention,
            job.issue,
            body,
            question,
            str(job.workspace.local_path),
            recent,
            job.settings,
        )
        result = await self._run_agent(
            job,
            prompt,
            job.workspace.local_path,
            PermissionPolicy.RESTRICTED_REPLY,
            details=(("Agent", str(job.settings.agent)),),
            detect_file_changes=False,
        )
        answer = truncate_text((result.answer or "").strip(), reply_config.max_answer_chars)
        await self._tracker.create_comment(
            job.issue.id,
            format_answer_comment(
                f"{mention} Reply", job.issue_ref, answer, result, question=question
            ),
        )
        await self._finish(
            job, "Reply posted", result, "Reply run failed. See the latest comment for details."
        )

    async def _run_review(self, job: _Job) -> None:
        spec = self._worktrees.spec_for(job.workspace, job.issue_ref)
        if not await asyncio.to_thread(self._worktrees.is_worktree, spec.path):
            raise _no_worktree_failure(job.issue_ref, "review")

        base = await asyncio.to_thread(self._inspector.upstream_default_branch, spec.path)
        if base is None:
            raise _origin_head_failure()

        diff_stat, diff = await asyncio.to_thread(self._inspector.diff_against_upstream, spec.path)
        if not diff.strip():
            raise WorkflowFailure(
                FailureCode.NO_DIFF,
                f"No diff detected for **{job.issue_ref}** "
                f"(branch is identical to `{base}`).",
                ["Run the `code` workflow or commit changes in the worktree, then retry."],
            )

        review_config = self._config.review
        details = (("Branch", spec.branch), ("Base", base))
        await self._update_ack(
            job.ack_id,
            f"Reviewing changes..\n\nIssue: **{job.issue_ref}**\n"
            f"Branch: `{spec.branch}`\nBase: `{base}`",
            job.log,
        )
        recent = format_recent_comments(
            job.issue.comments, {job.ack_id}, review_config.max_context_comments
        )
        prompt = build_review_prompt(
            job.issue,
            diff_stat,
            truncate_text(diff, review_config.max_diff_chars),
            recent,
            job.settings,
        )
        result = await self._run_agent(
            job,
            prompt,
            spec.path,
            PermissionPolicy.READ_ONLY_REVIEW,
            details=details,
            detect_file_changes=False,
        )
        review = truncate_text((result.answer or "").strip(), review_config.max_comment_chars)
        await self._tracker.create_comment(
            job.issue.id,
            format_answer_comment("Code Review", job.issue_ref, review, result, extra=details),
        )
        await self._finish(
            job,
            "Review completed",
            result,
            "Review run failed. See the latest comment for details.",
        )

    async def _run_github(self, job: _Job) -> None:
        github = self._config.github
        if not github.enabled:
            raise WorkflowFailure(
                FailureCode.GITHUB_DISABLED,
                "GitHub integration is disabled (`github.enabled=false`).",
                ["Enable `github.enabled` and configure `github.repos`, then retry."],
            )
        repo = github.repo_for(job.workspace.name)
        if repo is None:
            raise WorkflowFailure(
                FailureCode.GITHUB_REPO_NOT_CONFIGURED,
                f"No GitHub repo configured for workspace: `{job.workspace.name}`.",
                ["Add a matching entry to `github.repos`, then retry."],
            )

        spec = self._worktrees.spec_for(job.workspace, job.issue_ref)
        if not await asyncio.to_thread(self._worktrees.is_worktree, spec.path):
            raise _no_worktree_failure(job.issue_ref, "github")

        await self._update_ack(
            job.ack_id,
            f"Publishing PR..\n\nIssue: **{job.issue_ref}**\n"
            f"Branch: `{spec.branch}`\nRepo: `{repo.repo}`",
            job.log,
        )

        try:
            await asyncio.to_thread(self._publisher.check_cli)
        except PublishError as e:
            raise WorkflowFailure(
                FailureCode.UNKNOWN,
                "GitHub CLI (`gh`) is not available or not authenticated.",
                [
                    "Install `gh` and authenticate it on the host running this service.",
                    "Then retry the `github` workflow.",
                ],
                str(e),
            ) from e

        if await asyncio.to_thread(self._worktrees.is_dirty, spec.path):
            raise WorkflowFailure(
                FailureCode.WORKTREE_DIRTY,
                "Worktree has uncommitted changes.",
                ["Commit the changes in the worktree, then retry."],
                f"Worktree: {spec.path}",
            )

        base = repo.base_branch
        if base is None:
            try:
                base = await asyncio.to_thread(
                    self._worktrees.default_branch, job.workspace.local_path
                )
            except WorktreeError as e:
                raise _origin_head_failure(str(e)) from e

        try:
            pr = await asyncio.to_thread(
                self._publisher.publish,
                spec.path,
                spec.branch,
                repo,
                base,
                build_pr_title(repo, job.issue),
                build_pr_body(job.issue),
            )
        except PublishError as e:
            raise WorkflowFailure(
                FailureCode.UNKNOWN,
                "Failed to publish the pull request.",
                ["Check that the branch can be pushed and `gh` is authenticated, then retry."],
                str(e),
            ) from e
        await self._tracker.create_comment(
            job.issue.id, format_pr_comment(job.issue_ref, pr.url, repo.repo, spec.branch, base)
        )
        await self._update_ack(
            job.ack_id, f"✅ **PR published** for **{job.issue_ref}**.\n\n{pr.url}", job.log
        )
