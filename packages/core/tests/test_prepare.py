"""Tests for trigger context building, the prepare stage and the orchestrator."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from bbpipe_core.config import PipeConfig
from bbpipe_core.models import ConversationTurn, ExecutionResult, PullRequestComment, PullRequestSnapshot
from bbpipe_core.pipe import report_failure, run_pipe
from bbpipe_core.prepare import prepare
from bbpipe_core.trigger import build_trigger_context, detect_event_type


def _config(**overrides):
    values = {"workspace": "acme", "repo_slug": "widgets", "anthropic_api_key": "k"}
    values.update(overrides)
    return PipeConfig(**values)


def _client(has_credentials=False, comments=()):
    client = MagicMock()
    client.has_credentials = has_credentials
    client.get_pull_request = AsyncMock(
        return_value=PullRequestSnapshot(
            id=7,
            title="From API",
            description="",
            source_branch="feature/api",
            destination_branch="main",
            author="Ada",
        )
    )
    client.get_pull_request_comments = AsyncMock(return_value=list(comments))
    client.get_pull_request_diff = AsyncMock(return_value="")
    client.create_pull_request_comment = AsyncMock(return_value="c1")
    return client


# ---------------------------------------------------------------------------
# Trigger context
# ---------------------------------------------------------------------------


class TestDetectEventType:
    @pytest.mark.parametrize(
        "trigger, expected",
        [
            ("PULL_REQUEST", "pullrequest:created"),
            ("PUSH", "push"),
            ("TAG", "tag:created"),
            ("MANUAL", "custom:manual"),
            ("SCHEDULE", "custom:schedule"),
        ],
    )
    def test_trigger_types(self, trigger, expected):
        assert detect_event_type({"BITBUCKET_PIPELINE_TRIGGER_TYPE": trigger}) == expected

    def test_pr_id_alone_means_update(self):
        assert detect_event_type({"BITBUCKET_PR_ID": "7"}) == "pullrequest:updated"

    def test_unknown(self):
        assert detect_event_type({}) == "unknown"


class TestBuildTriggerContext:
    @pytest.mark.asyncio
    async def test_environment_fallback_without_credentials(self):
        env = {"BITBUCKET_PR_ID": "7", "BITBUCKET_BRANCH": "feature/env", "BITBUCKET_COMMIT": "abc123"}
        client = _client()
        context = await build_trigger_context(_config(), client, env)

        assert context.pull_request.id == 7
        assert context.pull_request.title == "Pull Request"
        assert context.pull_request.source_branch == "feature/env"
        assert context.commit.hash == "abc123"
        assert context.repository.full_name == "acme/widgets"
        client.get_pull_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_api_snapshot_with_credentials(self):
        client = _client(has_credentials=True)
        context = await build_trigger_context(_config(pr_id=7), client, {})
        assert context.pull_request.title == "From API"

    @pytest.mark.asyncio
    async def test_no_pull_request(self):
        context = await build_trigger_context(_config(), _client(), {"BITBUCKET_PIPELINE_TRIGGER_TYPE": "SCHEDULE"})
        assert context.pull_request is None
        assert context.event_type == "custom:schedule"


# ---------------------------------------------------------------------------
# Prepare stage
# ---------------------------------------------------------------------------


class TestPrepare:
    @pytest.mark.asyncio
    async def test_review_mode_declines_non_pr_events(self):
        prepared = await prepare(_config(mode="review"), _client(), {"BITBUCKET_PIPELINE_TRIGGER_TYPE": "PUSH"})
        assert prepared.should_run is False
        assert prepared.prompt == ""

    @pytest.mark.asyncio
    async def test_review_mode_declines_pr_event_without_pr_id(self):
        env = {"BITBUCKET_PIPELINE_TRIGGER_TYPE": "PULL_REQUEST"}
        prepared = await prepare(_config(mode="review"), _client(), env)
        assert prepared.should_run is False
        assert prepared.context.pull_request is None

    @pytest.mark.asyncio
    async def test_tag_mode_comment_flows_through(self):
        comments = [PullRequestComment(id="42", author="Ada", raw="@claude please fix the null check on line 42")]
        client = _client(has_credentials=True, comments=comments)

        prepared = await prepare(_config(pr_id=7), client, {})

        assert prepared.should_run is True
        assert prepared.trigger_source == "comment"
        assert prepared.comment_id == "42"
        assert prepared.parent_comment_id == "42"
        assert prepared.comment_type == "top-level"
        assert "Edit" in prepared.allowed_tools
        assert "Computer" in prepared.blocked_tools


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def _runner(result):
    runner = MagicMock()
    runner.run = AsyncMock(return_value=result)
    return runner


class TestRunPipe:
    @pytest.mark.asyncio
    async def test_skipped_event_never_runs(self):
        runner = _runner(None)
        outcome = await run_pipe(
            _config(mode="review"), _client(), runner=runner, env={"BITBUCKET_PIPELINE_TRIGGER_TYPE": "PUSH"}
        )
        assert outcome.result is None
        runner.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_prepared_values_passed_to_runner(self):
        result = ExecutionResult(status="success", turns=(ConversationTurn(role="assistant", content="ok"),))
        runner = _runner(result)

        outcome = await run_pipe(_config(pr_id=7), _client(), runner=runner, env={})

        assert outcome.result is result
        assert outcome.pr_id == 7
        kwargs = runner.run.await_args.kwargs
        assert kwargs["pr_id"] == 7
        assert kwargs["allowed_tools"] is not None

    @pytest.mark.asyncio
    async def test_turns_printed_without_pull_request(self, mocker):
        mock_print = mocker.patch("bbpipe_core.pipe.console.print")
        result = ExecutionResult(status="success", turns=(ConversationTurn(role="assistant", content="All good"),))

        await run_pipe(_config(mode="agent"), _client(), runner=_runner(result), env={})

        printed = "\n".join(str(c.args[0]) for c in mock_print.call_args_list if c.args)
        assert "### Turn 1" in printed
        assert "All good" in printed


class TestReportFailure:
    @pytest.mark.asyncio
    async def test_posts_error_comment(self):
        client = _client(has_credentials=True)
        await report_failure(client, 7, RuntimeError("boom"))
        body = client.create_pull_request_comment.await_args.args[1]
        assert "boom" in body
        assert "*Status: Failed*" in body

    @pytest.mark.asyncio
    async def test_never_raises(self):
        client = _client(has_credentials=True)
        client.create_pull_request_comment.side_effect = RuntimeError("network down")
        await report_failure(client, 7, RuntimeError("boom"))

    @pytest.mark.asyncio
    async def test_skipped_without_pull_request_or_credentials(self):
        client = _client(has_credentials=False)
        await report_failure(client, 7, RuntimeError("boom"))
        await report_failure(_client(has_credentials=True), None, RuntimeError("boom"))
        client.create_pull_request_comment.assert_not_called()
