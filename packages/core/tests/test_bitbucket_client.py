"""Tests for the Bitbucket REST client, driven through httpx.MockTransport."""

import json

import httpx
import pytest

from bbpipe_core.bitbucket.client import BitbucketAPIError, BitbucketClient
from bbpipe_core.models import InlineAnchor

PR_PATH = "/2.0/repositories/acme/widgets/pullrequests/7"


def _client(handler=None, token="tok", env=None, **kwargs):
    def _unreachable(request):
        raise AssertionError(f"unexpected request: {request.method} {request.url}")

    return BitbucketClient(
        "acme",
        "widgets",
        token=token,
        env=env or {},
        transport=httpx.MockTransport(handler or _unreachable),
        **kwargs,
    )


def _pr_payload():
    return {
        "id": 7,
        "title": "Add retry logic",
        "description": "Retries failed uploads",
        "source": {"branch": {"name": "feature/retry"}},
        "destination": {"branch": {"name": "develop"}},
        "author": {"display_name": "Ada Lovelace"},
        "state": "OPEN",
        "created_on": "2025-01-01T00:00:00+00:00",
        "updated_on": "2025-01-02T00:00:00+00:00",
    }


# ---------------------------------------------------------------------------
# Unauthenticated fallbacks
# ---------------------------------------------------------------------------


class TestWithoutCredentials:
    @pytest.mark.asyncio
    async def test_get_pull_request_returns_fallback(self):
        async with _client(token=None) as client:
            pr = await client.get_pull_request(7)
        assert pr.id == 7
        assert pr.title == "Pull Request"

    @pytest.mark.asyncio
    async def test_fallback_uses_pipeline_variables(self):
        env = {"BITBUCKET_PR_TITLE": "From env", "BITBUCKET_BRANCH": "feature/x"}
        async with _client(token=None, env=env) as client:
            pr = await client.get_pull_request(7)
        assert pr.title == "From env"
        assert pr.source_branch == "feature/x"

    @pytest.mark.asyncio
    async def test_reads_do_not_touch_network(self):
        async with _client(token=None) as client:
            assert client.has_credentials is False
            assert await client.get_pull_request_diff(7) == ""
            assert await client.get_pull_request_comments(7) == []
            assert await client.create_pull_request_comment(7, "hi") is None

    def test_basic_auth_counts_as_credentials(self):
        client = BitbucketClient("acme", "widgets", username="u", app_password="p", env={})
        assert client.has_credentials is True


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_pull_request_parses_snapshot(self):
        def handler(request):
            assert request.url.path == PR_PATH
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(200, json=_pr_payload())

        async with _client(handler) as client:
            pr = await client.get_pull_request(7)

        assert pr.title == "Add retry logic"
        assert pr.source_branch == "feature/retry"
        assert pr.destination_branch == "develop"
        assert pr.author == "Ada Lovelace"

    @pytest.mark.asyncio
    async def test_get_pull_request_falls_back_on_http_error(self):
        async with _client(lambda request: httpx.Response(500)) as client:
            pr = await client.get_pull_request(7)
        assert pr.id == 7
        assert pr.title == "Pull Request"

    @pytest.mark.asyncio
    async def test_get_diff(self):
        def handler(request):
            assert request.url.path == f"{PR_PATH}/diff"
            return httpx.Response(200, text="diff --git a/x b/x\n")

        async with _client(handler) as client:
            assert await client.get_pull_request_diff(7) == "diff --git a/x b/x\n"

    @pytest.mark.asyncio
    async def test_get_diff_raises_on_failure(self):
        async with _client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(BitbucketAPIError):
                await client.get_pull_request_diff(7)

    @pytest.mark.asyncio
    async def test_comments_follow_pagination_and_skip_deleted(self):
        next_url = f"https://api.bitbucket.org{PR_PATH}/comments?page=2&pagelen=100"

        def handler(request):
            if request.url.params.get("page") == "2":
                return httpx.Response(
                    200,
                    json={
                        "values": [
                            {
                                "id": 3,
                                "user": {"display_name": "Ada"},
                                "content": {"raw": "@claude fix line 4"},
                                "inline": {"path": "src/app.py", "from": None, "to": 4},
                            }
                        ]
                    },
                )
            return httpx.Response(
                200,
                json={
                    "values": [
                        {"id": 1, "user": {"nickname": "bob"}, "content": {"raw": "first"}},
                        {"id": 2, "deleted": True, "content": {"raw": "gone"}},
                    ],
                    "next": next_url,
                },
            )

        async with _client(handler) as client:
            comments = await client.get_pull_request_comments(7)

        assert [c.id for c in comments] == ["1", "3"]
        assert comments[0].author == "bob"
        assert comments[1].inline == InlineAnchor(path="src/app.py", from_line=None, to_line=4)

    @pytest.mark.asyncio
    async def test_comments_raise_on_failure(self):
        async with _client(lambda request: httpx.Response(503)) as client:
            with pytest.raises(BitbucketAPIError):
                await client.get_pull_request_comments(7)

    @pytest.mark.asyncio
    async def test_get_repository(self):
        payload = {"name": "widgets", "full_name": "acme/widgets", "mainbranch": {"name": "trunk"}, "language": "python"}
        async with _client(lambda request: httpx.Response(200, json=payload)) as client:
            repo = await client.get_repository()
        assert repo.default_branch == "trunk"
        assert repo.language == "python"


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    @pytest.mark.asyncio
    async def test_top_level_comment(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 555})

        async with _client(handler) as client:
            comment_id = await client.create_pull_request_comment(7, "**hello**")

        assert comment_id == "555"
        assert seen["path"] == f"{PR_PATH}/comments"
        assert seen["body"] == {"content": {"raw": "**hello**", "markup": "markdown"}}

    @pytest.mark.asyncio
    async def test_inline_threaded_reply(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 556})

        async with _client(handler) as client:
            await client.create_pull_request_comment(
                7, "reply", inline=InlineAnchor(path="src/app.py", from_line=3, to_line=5), parent_id="42"
            )

        assert seen["body"]["inline"] == {"path": "src/app.py", "from": 3, "to": 5}
        assert seen["body"]["parent"] == {"id": 42}

    @pytest.mark.asyncio
    async def test_comment_failure_returns_none(self):
        async with _client(lambda request: httpx.Response(429)) as client:
            assert await client.create_pull_request_comment(7, "hi") is None

    @pytest.mark.asyncio
    async def test_create_pull_request(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 12})

        async with _client(handler) as client:
            pr_id = await client.create_pull_request("Title", "Body", "claude/fix", "main")

        assert pr_id == 12
        assert seen["body"]["source"] == {"branch": {"name": "claude/fix"}}

    @pytest.mark.asyncio
    async def test_create_branch_failure_returns_none(self):
        async with _client(lambda request: httpx.Response(400)) as client:
            assert await client.create_branch("claude/fix", "abc123") is None


class TestConstructors:
    def test_from_config(self):
        from bbpipe_core.config import PipeConfig

        config = PipeConfig(workspace="acme", repo_slug="widgets", bitbucket_access_token="tok")
        client = BitbucketClient.from_config(config, env={})
        assert client.has_credentials is True
        assert client.workspace == "acme"

    def test_from_env(self):
        client = BitbucketClient.from_env(
            {"BITBUCKET_WORKSPACE": "acme", "BITBUCKET_REPO_SLUG": "widgets", "BITBUCKET_ACCESS_TOKEN": ""}
        )
        assert client.repo_slug == "widgets"
        assert client.has_credentials is False
