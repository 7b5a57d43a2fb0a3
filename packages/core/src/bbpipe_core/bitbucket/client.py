"""Thin async client for the Bitbucket Cloud REST API (v2.0).

Reads degrade instead of failing: without credentials nothing touches the
network and callers get environment-derived fallbacks. Writes never raise;
a failed comment is logged and reported as ``None``.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Mapping, Optional

import httpx

from bbpipe_core.models import InlineAnchor, PullRequestComment, PullRequestSnapshot, RepositorySnapshot
from bbpipe_core.trigger import fallback_pull_request, fallback_repository

if TYPE_CHECKING:
    from bbpipe_core.config import PipeConfig

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.bitbucket.org/2.0"
_TIMEOUT_SECONDS = 30.0
# Comment listings are paginated; a long-lived PR rarely needs more than this.
_MAX_COMMENT_PAGES = 20


class BitbucketAPIError(Exception):
    """A Bitbucket API request failed."""


class BitbucketClient:
    def __init__(
        self,
        workspace: str,
        repo_slug: str,
        token: Optional[str] = None,
        username: Optional[str] = None,
        app_password: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = API_BASE_URL,
    ):
        self.workspace = workspace
        self.repo_slug = repo_slug
        self._env = os.environ if env is None else env

        headers = {"Accept": "application/json"}
        auth = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif username and app_password:
            auth = httpx.BasicAuth(username, app_password)
        self.has_credentials = bool(token or auth)
        if not self.has_credentials:
            logger.warning("No Bitbucket credentials provided. The pipe cannot read or post PR comments.")

        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            auth=auth,
            timeout=_TIMEOUT_SECONDS,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: PipeConfig, **kwargs) -> BitbucketClient:
        return cls(
            workspace=config.workspace,
            repo_slug=config.repo_slug,
            token=config.bitbucket_access_token,
            username=config.bitbucket_username,
            app_password=config.bitbucket_app_password,
            **kwargs,
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **kwargs) -> BitbucketClient:
        env = os.environ if env is None else env
        return cls(
            workspace=env.get("BITBUCKET_WORKSPACE", ""),
            repo_slug=env.get("BITBUCKET_REPO_SLUG", ""),
            token=env.get("BITBUCKET_ACCESS_TOKEN") or None,
            username=env.get("BITBUCKET_USERNAME") or None,
            app_password=env.get("BITBUCKET_APP_PASSWORD") or None,
            env=env,
            **kwargs,
        )

    async def __aenter__(self) -> BitbucketClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def _repo_path(self) -> str:
        return f"/repositories/{self.workspace}/{self.repo_slug}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise BitbucketAPIError(f"{method} {url} failed: {e}") from e
        logger.debug("API %s %s -> %d", method, url, response.status_code)
        return response

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    async def get_pull_request(self, pr_id: int) -> PullRequestSnapshot:
        """Return the PR snapshot, or the environment fallback when unavailable."""
        if not self.has_credentials:
            return fallback_pull_request(pr_id, self._env)
        try:
            response = await self._request("GET", f"{self._repo_path}/pullrequests/{pr_id}")
            return _parse_pull_request(response.json(), pr_id)
        except (BitbucketAPIError, ValueError) as e:
            logger.warning("Failed to fetch PR #%d, using pipeline variables instead: %s", pr_id, e)
            return fallback_pull_request(pr_id, self._env)

    async def get_pull_request_diff(self, pr_id: int) -> str:
        if not self.has_credentials:
            return ""
        response = await self._request(
            "GET",
            f"{self._repo_path}/pullrequests/{pr_id}/diff",
            headers={"Accept": "text/plain"},
            follow_redirects=True,
        )
        return response.text

    async def get_pull_request_comments(self, pr_id: int) -> list[PullRequestComment]:
        """Return the PR's comments, oldest first."""
        if not self.has_credentials:
            return []
        comments: list[PullRequestComment] = []
        url: Optional[str] = f"{self._repo_path}/pullrequests/{pr_id}/comments"
        params: Optional[dict] = {"pagelen": 100}
        for _ in range(_MAX_COMMENT_PAGES):
            if not url:
                break
            data = (await self._request("GET", url, params=params)).json()
            for raw in data.get("values", []):
                if raw.get("deleted"):
                    continue
                comments.append(_parse_comment(raw))
            # The "next" link already carries the query string.
            url, params = data.get("next"), None
        return comments

    async def get_repository(self) -> RepositorySnapshot:
        fallback = fallback_repository(self.workspace, self.repo_slug, self._env)
        if not self.has_credentials:
            return fallback
        try:
            data = (await self._request("GET", self._repo_path)).json()
        except (BitbucketAPIError, ValueError) as e:
            logger.warning("Failed to fetch repository, using pipeline variables instead: %s", e)
            return fallback
        return RepositorySnapshot(
            name=data.get("name") or fallback.name,
            full_name=data.get("full_name") or fallback.full_name,
            default_branch=(data.get("mainbranch") or {}).get("name") or fallback.default_branch,
            is_private=data.get("is_private", True),
            language=data.get("language") or fallback.language,
        )

    # ------------------------------------------------------------------ #
    # Writes never raise                                                   #
    # ------------------------------------------------------------------ #

    async def create_pull_request_comment(
        self,
        pr_id: int,
        content: str,
        inline: Optional[InlineAnchor] = None,
        parent_id: Optional[str] = None,
    ) -> Optional[str]:
        """Post a Markdown comment and return its id, or None on failure."""
        if not self.has_credentials:
            logger.debug("Skipping PR comment: no Bitbucket credentials.")
            return None
        body: dict[str, Any] = {"content": {"raw": content, "markup": "markdown"}}
        if inline is not None:
            anchor: dict[str, Any] = {"path": inline.path}
            if inline.from_line is not None:
                anchor["from"] = inline.from_line
            anchor["to"] = inline.to_line if inline.to_line is not None else inline.from_line
            body["inline"] = anchor
        if parent_id:
            body["parent"] = {"id": int(parent_id) if str(parent_id).isdigit() else parent_id}
        try:
            response = await self._request("POST", f"{self._repo_path}/pullrequests/{pr_id}/comments", json=body)
            comment_id = response.json().get("id")
        except (BitbucketAPIError, ValueError) as e:
            logger.warning("Failed to create comment on PR #%d: %s", pr_id, e)
            return None
        return str(comment_id) if comment_id is not None else None

    async def create_branch(self, name: str, target_hash: str) -> Optional[dict]:
        try:
            response = await self._request(
                "POST",
                f"{self._repo_path}/refs/branches",
                json={"name": name, "target": {"hash": target_hash}},
            )
            return response.json()
        except (BitbucketAPIError, ValueError) as e:
            logger.warning("Failed to create branch %s: %s", name, e)
            return None

    async def create_pull_request(
        self,
        title: str,
        description: str,
        source_branch: str,
        destination_branch: str = "main",
    ) -> Optional[int]:
        """Open a pull request and return its id, or None on failure."""
        body = {
            "title": title,
            "description": description,
            "source": {"branch": {"name": source_branch}},
            "destination": {"branch": {"name": destination_branch}},
            "close_source_branch": True,
        }
        try:
            response = await self._request("POST", f"{self._repo_path}/pullrequests", json=body)
            return response.json().get("id")
        except (BitbucketAPIError, ValueError) as e:
            logger.warning("Failed to create pull request from %s: %s", source_branch, e)
            return None


def _display_name(user: Optional[dict]) -> str:
    if not user:
        return "unknown"
    return user.get("display_name") or user.get("nickname") or user.get("uuid") or "unknown"


def _parse_pull_request(data: dict, pr_id: int) -> PullRequestSnapshot:
    return PullRequestSnapshot(
        id=data.get("id", pr_id),
        title=data.get("title") or "",
        description=data.get("description") or "",
        source_branch=((data.get("source") or {}).get("branch") or {}).get("name") or "unknown",
        destination_branch=((data.get("destination") or {}).get("branch") or {}).get("name") or "main",
        author=_display_name(data.get("author")),
        state=data.get("state") or "OPEN",
        created_on=data.get("created_on") or "",
        updated_on=data.get("updated_on") or "",
    )


def _parse_comment(data: dict) -> PullRequestComment:
    inline = None
    raw_inline = data.get("inline")
    if raw_inline and raw_inline.get("path"):
        inline = InlineAnchor(
            path=raw_inline["path"],
            from_line=raw_inline.get("from"),
            to_line=raw_inline.get("to") if raw_inline.get("to") is not None else raw_inline.get("from"),
        )
    return PullRequestComment(
        id=str(data.get("id", "")),
        author=_display_name(data.get("user")),
        raw=(data.get("content") or {}).get("raw") or "",
        inline=inline,
    )
