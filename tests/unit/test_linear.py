"""Tests for the Linear GraphQL client."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from enhance_ticket.linear import (
    LinearClient,
    LinearClientError,
    RetryConfig,
    _calculate_backoff_delay,
    _get_retry_after,
)

API_URL = "https://linear.test/graphql"
NO_DELAY = RetryConfig(max_retries=2, initial_delay=0.0)


def make_client(
    handler: Callable[[httpx.Request], httpx.Response], retry_config: RetryConfig = NO_DELAY
) -> LinearClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LinearClient(
        "lin_api_test", API_URL, retry_config=retry_config, http_client=http_client
    )


def graphql(data: dict[str, Any]) -> httpx.Response:
    return httpx.Response(200, json={"data": data})


def variables(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content)["variables"]


ISSUE = {
    "id": "issue-1",
    "identifier": "ENG-1",
    "title": "Fix the login redirect",
    "description": None,
    "url": "https://linear.app/acme/issue/ENG-1",
    "team": {"id": "team-1"},
    "project": None,
}


class TestGetIssue:
    """Tests for LinearClient.get_issue."""

    def test_without_comments(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return graphql({"issue": ISSUE})

        issue = asyncio.run(make_client(handler).get_issue("ENG-1"))

        assert issue.identifier == "ENG-1"
        assert issue.description == ""
        assert issue.team_id == "team-1"
        assert issue.project_id is None
        assert issue.comments == ()
        assert requests[0].headers["Authorization"] == "lin_api_test"
        assert variables(requests[0]) == {"id": "ENG-1"}

    def test_comments_are_paginated_and_sorted(self) -> None:
        pages = [
            {
                "nodes": [
                    {"id": "c-2", "body": "second", "createdAt": "2026-10-02T00:00:00Z"},
                    {"id": "c-3", "body": None, "createdAt": "2026-10-03T00:00:00Z"},
                ],
                "pageInfo": {"hasNextPage": True, "endCursor": "cursor-1"},
            },
            {
                "nodes": [{"id": "c-1", "body": "first", "createdAt": "2026-10-01T00:00:00Z"}],
                "pageInfo": {"hasNextPage": False, "endCursor": None},
            },
        ]
        cursors: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            cursors.append(variables(request)["after"])
            return graphql({"issue": {**ISSUE, "comments": pages[len(cursors) - 1]}})

        issue = asyncio.run(make_client(handler).get_issue("issue-1", include_comments=True))

        assert cursors == [None, "cursor-1"]
        assert [c.id for c in issue.comments] == ["c-1", "c-2", "c-3"]
        assert issue.comments[2].body == ""

    def test_missing_issue(self) -> None:
        client = make_client(lambda request: graphql({"issue": None}))
        with pytest.raises(LinearClientError, match="Issue not found: ENG-404"):
            asyncio.run(client.get_issue("ENG-404"))


class TestComments:
    def test_create_comment(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return graphql({"commentCreate": {"success": True, "comment": {"id": "c-9"}}})

        comment_id = asyncio.run(make_client(handler).create_comment("issue-1", "On it"))

        assert comment_id == "c-9"
        assert variables(requests[0]) == {"issueId": "issue-1", "body": "On it"}

    def test_create_comment_unsuccessful(self) -> None:
        client = make_client(lambda request: graphql({"commentCreate": {"success": False}}))
        with pytest.raises(LinearClientError, match="Failed to create comment"):
            asyncio.run(client.create_comment("issue-1", "x"))

    def test_update_comment(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return graphql({"commentUpdate": {"success": True}})

        asyncio.run(make_client(handler).update_comment("c-9", "Done"))
        assert variables(requests[0]) == {"id": "c-9", "body": "Done"}

    def test_update_comment_unsuccessful(self) -> None:
        client = make_client(lambda request: graphql({"commentUpdate": None}))
        with pytest.raises(LinearClientError, match="Failed to update comment c-9"):
            asyncio.run(client.update_comment("c-9", "x"))


class TestErrorsAndRetries:
    """Tests for error mapping and retry behavior."""

    def test_graphql_errors(self) -> None:
        response = httpx.Response(200, json={"errors": [{"message": "Entity not found"}]})
        client = make_client(lambda request: response)
        with pytest.raises(LinearClientError, match="Entity not found"):
            asyncio.run(client.get_issue("x"))

    def test_client_error_is_not_retried(self) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(401, text="unauthorized")

        with pytest.raises(LinearClientError, match="HTTP 401"):
            asyncio.run(make_client(handler).get_issue("x"))
        assert len(calls) == 1

    def test_rate_limit_is_retried(self) -> None:
        responses = [httpx.Response(429), httpx.Response(503), graphql({"issue": ISSUE})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        issue = asyncio.run(make_client(handler).get_issue("ENG-1"))
        assert issue.id == "issue-1"
        assert responses == []

    def test_gives_up_after_max_retries(self) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(LinearClientError, match="HTTP 502"):
            asyncio.run(make_client(handler).get_issue("x"))
        assert len(calls) == 3

    def test_timeouts_are_retried(self) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return graphql({"issue": ISSUE})

        asyncio.run(make_client(handler).get_issue("ENG-1"))
        assert len(calls) == 2

    def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LinearClientError, match="Linear request failed"):
            asyncio.run(make_client(handler).get_issue("x"))

    def test_invalid_json(self) -> None:
        client = make_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(LinearClientError, match="Invalid JSON"):
            asyncio.run(client.get_issue("x"))


class TestBackoff:
    def test_delay_grows_and_is_capped(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=3.0, jitter_min=1.0, jitter_max=1.0)
        delays = [_calculate_backoff_delay(attempt, config) for attempt in range(4)]
        assert delays == [1.0, 2.0, 3.0, 3.0]

    def test_retry_after_wins(self) -> None:
        config = RetryConfig(jitter_min=1.0, jitter_max=1.0)
        assert _calculate_backoff_delay(0, config, retry_after=7.0) == 7.0

    def test_retry_after_header(self) -> None:
        assert _get_retry_after(httpx.Response(429, headers={"Retry-After": "2"})) == 2.0
        assert _get_retry_after(httpx.Response(429, headers={"Retry-After": "soon"})) is None
        assert _get_retry_after(httpx.Response(429)) is None
