"""Agent session runner.

Drives one agent run from session creation to a final
:class:`AgentRunResult`. The runner:

- submits the prompt once and consumes the session's event stream;
- falls back to polling events by offset when the stream drops, without
  re-submitting the turn or re-processing consumed events;
- answers permission requests through the policy engine and declines
  questions (runs are unattended);
- reports throttled progress to a sink;
- bounds the whole run with a single deadline, asking the runtime to
  terminate the session when it expires;
- reconciles the list of modified files from the workspace when the agent
  reported none.

States::

    CREATED -> STREAMING -> POLLING -> ENDED
                    \\______________/
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Mapping
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from enhance_ticket.agent_runtime.base import (
    ITEM_COMPLETED,
    PERMISSION_REQUESTED,
    QUESTION_REQUESTED,
    SESSION_ENDED,
    SESSION_STARTED,
    AgentRuntime,
    AgentRuntimeError,
    AgentSessionClosedError,
    RuntimeEvent,
    is_transient_stream_error,
)
from enhance_ticket.logging import ContextAdapter, get_logger
from enhance_ticket.permissions import PermissionRequest, decide_permission, extract_tool_names
from enhance_ticket.progress import (
    ProgressSink,
    ProgressThrottle,
    ProgressUpdate,
    null_progress_sink,
)
from enhance_ticket.types import (
    AgentName,
    PermissionMode,
    PermissionPolicy,
    PermissionReply,
    ProgressKind,
    TerminationReason,
)
from enhance_ticket.workspace import WorkspaceInspector

logger = get_logger(__name__)

DEFAULT_POLL_PAGE_SIZE = 100
DEFAULT_RETRY_BACKOFF_SECONDS = 1.0
TERMINATE_TIMEOUT_SECONDS = 10.0

FILE_WRITE_ACTIONS = frozenset({"write", "patch"})

FAILED_ITEM_ERROR = "Agent reported a failed item"
UNEXPECTED_END_SUMMARY = "Session ended unexpectedly"


class RunState(StrEnum):
    """Lifecycle state of a single run."""

    CREATED = "created"
    STREAMING = "streaming"
    POLLING = "polling"
    ENDED = "ended"


@dataclass(frozen=True)
class AgentRunRequest:
    """Everything needed to run one agent session.

    Attributes:
        session_id: Unique id for the runtime session.
        prompt: The task prompt.
        working_directory: Checkout the agent must work in.
        agent: Agent to run.
        permission_mode: Permission mode requested at session creation.
        timeout_seconds: Deadline for the whole run, session creation included.
        progress_interval_seconds: Minimum spacing of throttled progress updates.
        agent_mode: Runtime-specific agent mode.
        permission_policy: Policy applied to permission requests.
        include_tool_calls: Emit "Running: <tool>" progress updates.
        detect_file_changes: Inspect the workspace when the agent reports
            no modified files.
        issue_key: Issue identifier, used for log context only.
    """

    session_id: str
    prompt: str
    working_directory: Path
    agent: AgentName = AgentName.CLAUDE
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    timeout_seconds: float = 1800.0
    progress_interval_seconds: float = 60.0
    agent_mode: str | None = None
    permission_policy: PermissionPolicy = PermissionPolicy.DEFAULT
    include_tool_calls: bool = True
    detect_file_changes: bool = True
    issue_key: str | None = None


@dataclass(frozen=True)
class AgentRunResult:
    """Outcome of an agent run.

    Attributes:
        success: True only when the session completed normally.
        session_id: The runtime session id.
        termination_reason: completed, error, timeout or terminated.
        files_modified: Modified paths, in first-seen order, without duplicates.
        summary: One-line human-readable summary.
        answer: The agent's last non-empty assistant message.
        error: Failure description when ``success`` is False.
    """

    success: bool
    session_id: str
    termination_reason: TerminationReason
    files_modified: tuple[str, ...] = ()
    summary: str = ""
    answer: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert the result to a dictionary for logging and dead letters."""
        return {
            "success": self.success,
            "session_id": self.session_id,
            "termination_reason": str(self.termination_reason),
            "files_modified": list(self.files_modified),
            "summary": self.summary,
            "answer": self.answer,
            "error": self.error,
        }


def build_summary(files: list[str] | tuple[str, ...]) -> str:
    """Summarize a list of modified files."""
    if not files:
        return "No files were modified."
    return f"Modified {len(files)} file(s): {', '.join(files)}"


def build_session_prompt(working_directory: Path | str, prompt: str) -> str:
    """Prefix a prompt with the instruction to enter the working directory.

    The session is created without a working directory, so the agent's first
    action is to ``cd`` into it. The path is shell-quoted.
    """
    quoted = shlex.quote(str(working_directory))
    return f"IMPORTANT: First, change to the working directory: cd {quoted}\n\n{prompt}"


def _text_of(item: Mapping[str, Any]) -> str:
    content = item.get("content")
    if not isinstance(content, list):
        return ""
    return "".join(
        part.get("text", "")
        for part in content
        if isinstance(part, Mapping)
        and part.get("type") == "text"
        and isinstance(part.get("text"), str)
    )


@dataclass
class _Outcome:
    success: bool
    reason: TerminationReason
    error: str | None = None
    summary: str | None = None


@dataclass
class _Run:
    """Mutable state owned by one run."""

    request: AgentRunRequest
    on_progress: ProgressSink
    throttle: ProgressThrottle
    log: ContextAdapter
    state: RunState = RunState.CREATED
    offset: int = 0
    session_created: bool = False
    turn_sent: bool = False
    files_modified: list[str] = field(default_factory=list)
    answer: str | None = None
    saw_failed: bool = False
    saw_completed: bool = False

    def transition(self, state: RunState) -> None:
        if state != self.state:
            self.log.debug(
                "Run state %s -> %s", self.state, state, extra={"diagnostic_tag": "runner"}
            )
            self.state = state


class AgentSessionRunner:
    """Runs agent sessions against an :class:`AgentRuntime`.

    One runner can serve many concurrent runs: all per-run state lives in a
    private object created by :meth:`run`.

    Usage:
        runner = AgentSessionRunner(runtime, GitWorkspaceInspector())
        result = await runner.run(request, on_progress=sink)
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        inspector: WorkspaceInspector | None = None,
        *,
        poll_page_size: int = DEFAULT_POLL_PAGE_SIZE,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        terminate_timeout_seconds: float = TERMINATE_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the runner.

        Args:
            runtime: Agent runtime client.
            inspector: Workspace inspector used for file-change reconciliation.
                Without one, reconciliation is skipped.
            poll_page_size: Maximum events requested per poll.
            retry_backoff_seconds: Pause between polling rounds that found no
                terminal condition.
            terminate_timeout_seconds: Bound on the termination request sent
                after the deadline expires.
        """
        self._runtime = runtime
        self._inspector = inspector
        self._poll_page_size = poll_page_size
        self._retry_backoff = retry_backoff_seconds
        self._terminate_timeout = terminate_timeout_seconds

    async def run(
        self, request: AgentRunRequest, on_progress: ProgressSink = null_progress_sink
    ) -> AgentRunResult:
        """Run an agent session to completion.

        Args:
            request: The run request.
            on_progress: Sink for progress updates. Failures in the sink are
                logged and otherwise ignored.

        Returns:
            The run result. Failures, timeouts and early termination are
            reported in the result, not raised.

        Raises:
            AgentRuntimeError: For non-transient runtime failures (e.g. the
                session cannot be created). A session that was already
                created is asked to terminate first.
        """
        context: dict[str, Any] = {"session_id": request.session_id}
        if request.issue_key:
            context["issue_key"] = request.issue_key
        run = _Run(
            request=request,
            on_progress=on_progress,
            throttle=ProgressThrottle(request.progress_interval_seconds),
            log=logger.with_context(**context),
        )

        try:
            outcome = await asyncio.wait_for(self._drive(run), timeout=request.timeout_seconds)
        except TimeoutError:
            outcome = await self._on_timeout(run)
        except Exception:
            if run.session_created:
                await self._terminate(run, "after a runtime failure")
            raise

        return await self._finalize(run, outcome)

    async def _drive(self, run: _Run) -> _Outcome:
        request = run.request
        await self._runtime.create_session(
            request.session_id,
            request.agent,
            request.permission_mode,
            request.agent_mode,
        )
        run.session_created = True
        run.log.info("Agent session created (agent=%s)", request.agent)
        prompt = build_session_prompt(request.working_directory, request.prompt)

        while True:
            if not run.turn_sent:
                run.turn_sent = True
                run.transition(RunState.STREAMING)
                try:
                    async with aclosing(
                        self._runtime.stream_turn(request.session_id, prompt)
                    ) as stream:
                        async for event in stream:
                            outcome = await self._handle_event(run, event)
                            if outcome is not None:
                                return outcome
                except AgentSessionClosedError:
                    return self._closed(run)
                except Exception as e:
                    if not is_transient_stream_error(e):
                        raise
                    run.log.warning(
                        "Event stream dropped at offset %d, falling back to polling: %s",
                        run.offset,
                        e,
                    )

            run.transition(RunState.POLLING)
            try:
                outcome = await self._poll(run)
            except AgentSessionClosedError:
                return self._closed(run)
            if outcome is not None:
                return outcome

            if run.saw_failed:
                return _Outcome(False, TerminationReason.ERROR, error=FAILED_ITEM_ERROR)
            if run.saw_completed:
                return _Outcome(True, TerminationReason.COMPLETED)

            await asyncio.sleep(self._retry_backoff)

    async def _poll(self, run: _Run) -> _Outcome | None:
        """Run one polling round.

        A transient failure, whether reading events or answering one, ends
        the round. The offset has not moved past the failed event, so the
        next round reads it again.
        """
        try:
            return await self._drain(run)
        except AgentSessionClosedError:
            raise
        except Exception as e:
            if not is_transient_stream_error(e):
                raise
            run.log.debug(
                "Polling at offset %d failed: %s",
                run.offset,
                e,
                extra={"diagnostic_tag": "polling"},
            )
            return None

    async def _drain(self, run: _Run) -> _Outcome | None:
        """Handle events from the current offset until none are left."""
        has_more = True
        while has_more:
            page = await self._runtime.get_events(
                run.request.session_id, run.offset, self._poll_page_size
            )
            for event in page.events:
                outcome = await self._handle_event(run, event)
                if outcome is not None:
                    return outcome
            has_more = page.has_more
            if not page.events:
                break
        return None

    async def _handle_event(self, run: _Run, event: RuntimeEvent) -> _Outcome | None:
        # The offset only advances once an event is fully handled, so an
        # event interrupted by a dropped stream is re-read by polling.
        outcome: _Outcome | None = None
        if event.type == SESSION_STARTED:
            await self._emit(run, ProgressKind.STATUS, "Agent session started", throttled=False)
        elif event.type == ITEM_COMPLETED:
            await self._on_item_completed(run, event.data)
        elif event.type == PERMISSION_REQUESTED:
            await self._on_permission(run, event.data)
        elif event.type == QUESTION_REQUESTED:
            await self._on_question(run, event.data)
        elif event.type == SESSION_ENDED:
            outcome = self._on_session_ended(event.data)
        run.offset += 1
        return outcome

    async def _on_item_completed(self, run: _Run, data: Mapping[str, Any]) -> None:
        item = data.get("item")
        if not isinstance(item, Mapping):
            return

        content = item.get("content")
        if isinstance(content, list):
            for part in content:
                if not isinstance(part, Mapping):
                    continue
                part_type = part.get("type")
                if part_type == "file_ref" and part.get("action") in FILE_WRITE_ACTIONS:
                    path = part.get("path")
                    if isinstance(path, str) and path and path not in run.files_modified:
                        run.files_modified.append(path)
                elif part_type == "tool_call" and run.request.include_tool_calls:
                    name = part.get("name") or "tool"
                    await self._emit(run, ProgressKind.TOOL, f"Running: {name}", throttled=True)

        status = item.get("status")
        if status == "failed":
            run.saw_failed = True
        elif status == "completed":
            run.saw_completed = True

        if item.get("kind") == "message" and item.get("role") == "assistant":
            text = _text_of(item).strip()
            if text:
                run.answer = text

    async def _on_permission(self, run: _Run, data: Mapping[str, Any]) -> None:
        request = PermissionRequest.from_event_data(data)
        reply = decide_permission(request, run.request.permission_policy)
        if reply == PermissionReply.REJECT:
            run.log.warning(
                "Permission %s rejected by %s policy (action=%s, tools=%s)",
                request.action_id,
                run.request.permission_policy,
                request.action,
                ", ".join(extract_tool_names(request.metadata)) or "none",
            )
        if not request.action_id:
            run.log.warning("Permission request without an id, not replying")
            return
        try:
            await self._runtime.reply_permission(run.request.session_id, request.action_id, reply)
        except AgentRuntimeError as e:
            if isinstance(e, AgentSessionClosedError) or is_transient_stream_error(e):
                raise
            run.log.warning("Reply to permission %s was refused: %s", request.action_id, e)

    async def _on_question(self, run: _Run, data: Mapping[str, Any]) -> None:
        question_id = str(data.get("question_id") or data.get("questionId") or "")
        if not question_id:
            run.log.warning("Question without an id, not declining")
            return
        run.log.info("Declining question %s from agent", question_id)
        try:
            await self._runtime.reject_question(run.request.session_id, question_id)
        except AgentRuntimeError as e:
            if isinstance(e, AgentSessionClosedError) or is_transient_stream_error(e):
                raise
            run.log.warning("Declining question %s was refused: %s", question_id, e)

    @staticmethod
    def _on_session_ended(data: Mapping[str, Any]) -> _Outcome:
        raw_reason = data.get("reason")
        if isinstance(raw_reason, str) and TerminationReason.is_valid(raw_reason):
            reason = TerminationReason(raw_reason)
        else:
            reason = TerminationReason.ERROR
        message = data.get("message")
        success = reason == TerminationReason.COMPLETED
        error = message if isinstance(message, str) and message else None
        if not success and error is None:
            error = f"Session ended with reason '{raw_reason}'"
        return _Outcome(success, reason, error=error)

    @staticmethod
    def _closed(run: _Run) -> _Outcome:
        run.log.warning("Agent session closed before reporting an end state")
        return _Outcome(
            False,
            TerminationReason.TERMINATED,
            error=UNEXPECTED_END_SUMMARY,
            summary=UNEXPECTED_END_SUMMARY,
        )

    async def _on_timeout(self, run: _Run) -> _Outcome:
        timeout = run.request.timeout_seconds
        run.log.warning("Timeout after %ss, terminating session", f"{timeout:g}")
        await self._terminate(run, "after timeout")
        return _Outcome(
            False,
            TerminationReason.TIMEOUT,
            error=f"Timeout after {timeout:g}s - session terminated",
        )

    async def _terminate(self, run: _Run, when: str) -> None:
        """Ask the runtime to stop the session, once and with a bounded wait."""
        try:
            await asyncio.wait_for(
                self._runtime.terminate_session(run.request.session_id),
                timeout=self._terminate_timeout,
            )
        except Exception as e:
            run.log.error("Failed to terminate session %s: %s", when, e)

    async def _emit(self, run: _Run, kind: ProgressKind, message: str, *, throttled: bool) -> None:
        if throttled:
            if not run.throttle.allow():
                return
        else:
            run.throttle.mark()
        try:
            await run.on_progress(ProgressUpdate(kind=kind, message=message))
        except Exception as e:
            run.log.warning("Progress sink failed for %s update: %s", kind, e)

    async def _reconcile_files(self, run: _Run) -> list[str]:
        files = list(run.files_modified)
        if files or not run.request.detect_file_changes or self._inspector is None:
            return files

        path = Path(run.request.working_directory)
        try:
            found = await asyncio.to_thread(self._inspector.uncommitted_changes, path)
            if not found:
                found = await asyncio.to_thread(self._inspector.changes_against_upstream, path)
        except Exception as e:
            run.log.warning("Could not inspect workspace %s for changes: %s", path, e)
            return files
        if found:
            run.log.info("Detected %d modified file(s) from the workspace", len(found))
        return list(dict.fromkeys(found))

    async def _finalize(self, run: _Run, outcome: _Outcome) -> AgentRunResult:
        files = await self._reconcile_files(run)
        result = AgentRunResult(
            success=outcome.success,
            session_id=run.request.session_id,
            termination_reason=outcome.reason,
            files_modified=tuple(files),
            summary=outcome.summary or build_summary(files),
            answer=run.answer,
            error=None if outcome.success else outcome.error,
        )
        run.transition(RunState.ENDED)

        message = result.summary
        if not result.success and result.error and result.error != result.summary:
            message = f"{result.error}. {result.summary}"
        await self._emit(run, ProgressKind.RESULT, message, throttled=False)
        run.log.info(
            "Agent run finished: %s (%d file(s) modified)",
            result.termination_reason,
            len(result.files_modified),
        )
        return result
