"""Linear GraphQL client.

Fetches issue details and creates/edits comments. All calls go through a
single ``httpx.AsyncClient`` so connections are pooled across concurrent
runs.

Implements exponential backoff with jitter for rate limiting (HTTP 429) and
transient server errors (502, 503, 504).
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Self

import httpx

from enhance_ticket.config import DEFAULT_LINEAR_API_URL
from enhance_ticket.logging import get_logger

logger = get_logger(__name__)

# Default timeout for HTTP requests (connect, read, write, pool)
DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

COMMENT_PAGE_SIZE = 50


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3).
        initial_delay: Initial delay in seconds before first retry (default: 0.5).
        max_delay: Maximum delay in seconds between retries (default: 10.0).
        jitter_min: Minimum jitter multiplier (default: 0.7).
        jitter_max: Maximum jitter multiplier (default: 1.3).
    """

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    jitter_min: float = 0.7
    jitter_max: float = 1.3


DEFAULT_RETRY_CONFIG = RetryConfig()


class LinearClientError(Exception):
    """Raised when a Linear API call fails."""

    pass


@dataclass(frozen=True)
class IssueComment:
    id: str
    body: str
    created_at: str = ""


@dataclass(frozen=True)
class IssueDetails:
    """Issue fields the workflows need.

    Attributes:
        id: Issue id.
        identifier: Human-readable key (e.g. ``ENG-42``).
        title: Issue title.
        description: Issue description (markdown), empty when unset.
        url: Issue URL.
        team_id: Owning team id.
        project_id: Owning project id, if any.
        comments: Comments in chronological order, when requested.
    """

    id: str
    identifier: str
    title: str
    description: str = ""
    url: str | None = None
    team_id: str | None = None
    project_id: str | None = None
    comments: tuple[IssueComment, ...] = field(default_factory=tuple)


_ISSUE_FIELDS = """
    id
    identifier
    title
    description
    url
    team { id }
    project { id }
"""

ISSUE_QUERY = f"""
query Issue($id: String!) {{
  issue(id: $id) {{ {_ISSUE_FIELDS} }}
}}
"""

ISSUE_WITH_COMMENTS_QUERY = f"""
query IssueWithComments($id: String!, $first: Int!, $after: String) {{
  issue(id: $id) {{
    {_ISSUE_FIELDS}
    comments(first: $first, after: $after) {{
      nodes {{ id body createdAt }}
      pageInfo {{ hasNextPage endCursor }}
    }}
  }}
}}
"""

CREATE_COMMENT_MUTATION = """
mutation CreateComment($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) {
    success
    comment { id }
  }
}
"""

UPDATE_COMMENT_MUTATION = """
mutation UpdateComment($id: String!, $body: String!) {
  commentUpdate(id: $id, input: { body: $body }) {
    success
  }
}
"""


def _calculate_backoff_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
) -> float:
    """Calculate the delay before the next retry attempt.

    Args:
        attempt: Current retry attempt number (0-indexed).
        config: Retry configuration.
        retry_after: Optional Retry-After header value in seconds.

    Returns:
        Delay in seconds before next retry.
    """
    if retry_after is not None:
        base_delay = retry_after
    else:
        base_delay = min(config.initial_delay * (2**attempt), config.max_delay)
    return base_delay * random.uniform(config.jitter_min, config.jitter_max)


def _get_retry_after(response: httpx.Response) -> float | None:
    retry_after = response.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return float(retry_after)
        except ValueError:
            logger.warning("Invalid Retry-After header value: %s", retry_after)
    return None


def _parse_issue(raw: dict[str, Any], comments: tuple[IssueComment, ...] = ()) -> IssueDetails:
    team = raw.get("team") or {}
    project = raw.get("project") or {}
    return IssueDetails(
        id=raw["id"],
        identifier=raw.get("identifier") or raw["id"],
        title=raw.get("title") or "",
        description=raw.get("description") or "",
        url=raw.get("url"),
        team_id=team.get("id"),
        project_id=project.get("id"),
        comments=comments,
    )


class LinearClient:
    """Async client for the Linear GraphQL API.

    Usage:
        async with LinearClient(api_key) as linear:
            issue = await linear.get_issue("ENG-42")
            comment_id = await linear.create_comment(issue.id, "Working on it")
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_LINEAR_API_URL,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        retry_config: RetryConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Linear API key (sent as the Authorization header).
            api_url: GraphQL endpoint.
            timeout: Request timeout configuration.
            retry_config: Retry configuration for rate limits and 5xx responses.
            http_client: Optional pre-built client; the caller then owns it.
        """
        self._api_url = api_url
        self._retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": api_key, "Content-Type": "application/json"}

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a GraphQL operation with retries.

        Returns:
            The ``data`` member of the response.

        Raises:
            LinearClientError: On HTTP errors after retries, or GraphQL errors.
        """
        config = self._retry_config
        for attempt in range(config.max_retries + 1):
            try:
                response = await self._client.post(
                    self._api_url,
                    json={"query": query, "variables": variables},
                    headers=self._headers,
                )
            except httpx.TimeoutException as e:
                if attempt >= config.max_retries:
                    raise LinearClientError(f"Linear request timed out: {e}") from e
                delay = _calculate_backoff_delay(attempt, config)
                logger.warning("Linear request timed out, retrying in %.2fs", delay)
                await asyncio.sleep(delay)
                continue
            except httpx.HTTPError as e:
                raise LinearClientError(f"Linear request failed: {e}") from e

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < config.max_retries:
                delay = _calculate_backoff_delay(attempt, config, _get_retry_after(response))
                logger.warning(
                    "Linear returned HTTP %s (attempt %s/%s). Retrying in %.2fs",
                    response.status_code,
                    attempt + 1,
                    config.max_retries + 1,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            if response.is_error:
                raise LinearClientError(
                    f"Linear API error: HTTP {response.status_code} {response.text[:500]}"
                )

            try:
                body = response.json()
            except ValueError as e:
                raise LinearClientError(f"Invalid JSON from Linear: {e}") from e

            errors = body.get("errors")
            if errors:
                messages = "; ".join(str(err.get("message", err)) for err in errors)
                raise LinearClientError(f"Linear GraphQL error: {messages}")
            data = body.get("data")
            if not isinstance(data, dict):
                raise LinearClientError("Linear response has no data")
            return data

        raise LinearClientError("Linear request failed after retries")

    async def get_issue(self, issue_id: str, include_comments: bool = False) -> IssueDetails:
        """Fetch an issue by id or identifier.

        Args:
            issue_id: Issue id or identifier (e.g. ``ENG-42``).
            include_comments: Also fetch every comment, oldest first.

        Returns:
            The issue details.

        Raises:
            LinearClientError: If the issue cannot be fetched.
        """
        if not include_comments:
            data = await self._execute(ISSUE_QUERY, {"id": issue_id})
            raw = data.get("issue")
            if not raw:
                raise LinearClientError(f"Issue not found: {issue_id}")
            return _parse_issue(raw)

        comments: list[IssueComment] = []
        after: str | None = None
        raw_issue: dict[str, Any] | None = None
        while True:
            data = await self._execute(
                ISSUE_WITH_COMMENTS_QUERY,
                {"id": issue_id, "first": COMMENT_PAGE_SIZE, "after": after},
            )
            raw_issue = data.get("issue")
            if not raw_issue:
                raise LinearClientError(f"Issue not found: {issue_id}")
            connection = raw_issue.get("comments") or {}
            for node in connection.get("nodes") or []:
                comments.append(
                    IssueComment(
                        id=node["id"],
                        body=node.get("body") or "",
                        created_at=node.get("createdAt") or "",
                    )
                )
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            after = page_info.get("endCursor")

        comments.sort(key=lambda c: c.created_at)
        return _parse_issue(raw_issue, tuple(comments))

    async def create_comment(self, issue_id: str, body: str) -> str:
        """Post a comment on an issue.

        Returns:
            The new comment's id.
        """
        data = await self._execute(CREATE_COMMENT_MUTATION, {"issueId": issue_id, "body": body})
        result = data.get("commentCreate") or {}
        comment = result.get("comment") or {}
        if not result.get("success") or not comment.get("id"):
            raise LinearClientError(f"Failed to create comment on {issue_id}")
        return str(comment["id"])

    async def update_comment(self, comment_id: str, body: str) -> None:
        """Replace the body of an existing comment."""
        data = await self._execute(UPDATE_COMMENT_MUTATION, {"id": comment_id, "body": body})
        if not (data.get("commentUpdate") or {}).get("success"):
            raise LinearClientError(f"Failed to update comment {comment_id}")
