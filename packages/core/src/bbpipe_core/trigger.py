"""Build the trigger context from Bitbucket Pipelines variables and the API.

Bitbucket exposes enough about the running pipeline through BITBUCKET_*
variables to describe the event without any API call. When the pipe has
write credentials, the pull request snapshot is refreshed from the API and
merged over the environment-derived fallback.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Mapping, Optional

from bbpipe_core.models import CommitSnapshot, PullRequestSnapshot, RepositorySnapshot, TriggerContext

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.config import PipeConfig

logger = logging.getLogger(__name__)

_TRIGGER_EVENTS = {
    "PULL_REQUEST": "pullrequest:created",
    "PUSH": "push",
    "TAG": "tag:created",
    "MANUAL": "custom:manual",
    "SCHEDULE": "custom:schedule",
}


def detect_event_type(env: Mapping[str, str]) -> str:
    """Map the pipeline trigger type onto a webhook-style event name."""
    event = _TRIGGER_EVENTS.get(env.get("BITBUCKET_PIPELINE_TRIGGER_TYPE", ""))
    if event:
        return event
    if env.get("BITBUCKET_PR_ID"):
        return "pullrequest:updated"
    return "unknown"


def fallback_actor(env: Mapping[str, str]) -> str:
    return env.get("BITBUCKET_STEP_TRIGGERER_UUID") or "unknown"


def fallback_pull_request(pr_id: int, env: Mapping[str, str]) -> PullRequestSnapshot:
    return PullRequestSnapshot(
        id=pr_id,
        title=env.get("BITBUCKET_PR_TITLE") or "Pull Request",
        description=env.get("BITBUCKET_PR_DESCRIPTION") or "",
        source_branch=env.get("BITBUCKET_BRANCH") or "unknown",
        destination_branch=env.get("BITBUCKET_PR_DESTINATION_BRANCH") or "main",
        author=fallback_actor(env),
    )


def fallback_commit(commit_hash: str, env: Mapping[str, str]) -> CommitSnapshot:
    return CommitSnapshot(
        hash=commit_hash,
        message=env.get("BITBUCKET_COMMIT_MESSAGE") or "Commit",
        author=fallback_actor(env),
    )


def fallback_repository(workspace: str, repo_slug: str, env: Mapping[str, str]) -> RepositorySnapshot:
    return RepositorySnapshot(
        name=repo_slug,
        full_name=f"{workspace}/{repo_slug}",
        default_branch=env.get("BITBUCKET_DEFAULT_BRANCH") or "main",
        language=env.get("BITBUCKET_PROJECT_LANGUAGE") or "unknown",
    )


def _resolve_pr_id(config: PipeConfig, env: Mapping[str, str]) -> Optional[int]:
    if config.pr_id:
        return config.pr_id
    raw = env.get("BITBUCKET_PR_ID", "").strip()
    return int(raw) if raw.isdigit() else None


async def build_trigger_context(
    config: PipeConfig,
    client: Optional[BitbucketClient],
    env: Mapping[str, str],
) -> TriggerContext:
    """Describe the current event, preferring API data over environment data."""
    pull_request = None
    pr_id = _resolve_pr_id(config, env)
    if pr_id is not None:
        if client is not None and client.has_credentials:
            # get_pull_request already degrades to the fallback snapshot on failure.
            pull_request = await client.get_pull_request(pr_id)
        else:
            pull_request = fallback_pull_request(pr_id, env)

    commit = None
    commit_hash = config.commit_hash or env.get("BITBUCKET_COMMIT")
    if commit_hash:
        commit = fallback_commit(commit_hash, env)

    context = TriggerContext(
        event_type=detect_event_type(env),
        actor=fallback_actor(env),
        repository=fallback_repository(config.workspace, config.repo_slug, env),
        pull_request=pull_request,
        commit=commit,
        branch=config.branch or env.get("BITBUCKET_BRANCH"),
    )
    logger.debug(
        "Trigger context: event=%s pr=%s commit=%s",
        context.event_type,
        pull_request.id if pull_request else None,
        commit.hash[:7] if commit else None,
    )
    return context
