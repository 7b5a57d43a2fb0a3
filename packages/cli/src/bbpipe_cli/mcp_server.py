"""Bitbucket Pipe MCP server.

Exposes tools Claude can call while it runs inside the pipe:

Bitbucket:
- bitbucket_comment: comment on a pull request
- bitbucket_create_pr: open a pull request
- bitbucket_get_pr: pull request details
- bitbucket_get_diff: pull request diff

Pipeline:
- pipeline_set_output: output variable for later steps
- pipeline_save_state: state shared between steps

Tool failures come back as "Error: ..." text so Claude can react to them;
they are never raised into the protocol layer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import click
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from bbpipe_core.bitbucket.client import BitbucketAPIError, BitbucketClient

if TYPE_CHECKING:
    from bbpipe_store.base import BaseStore

logger = logging.getLogger(__name__)

SERVER_NAME = "bitbucket-pipe"

_PR_ID_SCHEMA = {"type": "integer", "description": "Pull request ID"}

TOOLS = [
    Tool(
        name="bitbucket_comment",
        description="Create a comment on a Bitbucket pull request.",
        inputSchema={
            "type": "object",
            "properties": {
                "pr_id": _PR_ID_SCHEMA,
                "content": {"type": "string", "description": "Comment content in Markdown"},
            },
            "required": ["pr_id", "content"],
        },
    ),
    Tool(
        name="bitbucket_create_pr",
        description="Create a new pull request in Bitbucket.",
        inputSchema={
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "PR title"},
                "description": {"type": "string", "description": "PR description"},
                "source_branch": {"type": "string", "description": "Source branch name"},
                "destination_branch": {
                    "type": "string",
                    "description": "Destination branch name (default: main)",
                    "default": "main",
                },
            },
            "required": ["title", "description", "source_branch"],
        },
    ),
    Tool(
        name="bitbucket_get_pr",
        description="Get pull request details.",
        inputSchema={"type": "object", "properties": {"pr_id": _PR_ID_SCHEMA}, "required": ["pr_id"]},
    ),
    Tool(
        name="bitbucket_get_diff",
        description="Get the diff of a pull request.",
        inputSchema={"type": "object", "properties": {"pr_id": _PR_ID_SCHEMA}, "required": ["pr_id"]},
    ),
    Tool(
        name="pipeline_set_output",
        description="Set an output variable for the pipeline.",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Output variable name"},
                "value": {"type": "string", "description": "Output value"},
            },
            "required": ["name", "value"],
        },
    ),
    Tool(
        name="pipeline_save_state",
        description="Save state for sharing between pipeline steps.",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "State variable name"},
                "value": {"type": "string", "description": "State value"},
            },
            "required": ["name", "value"],
        },
    ),
]


class PipeTools:
    """Implements the tools against a Bitbucket client and a pipeline store."""

    def __init__(self, client: BitbucketClient, store: BaseStore):
        self.client = client
        self.store = store
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[str]]] = {
            "bitbucket_comment": self.comment,
            "bitbucket_create_pr": self.create_pr,
            "bitbucket_get_pr": self.get_pr,
            "bitbucket_get_diff": self.get_diff,
            "pipeline_set_output": self.set_output,
            "pipeline_save_state": self.save_state,
        }

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> str:
        logger.info("Tool called: %s", name)
        handler = self._handlers.get(name)
        if handler is None:
            return f"Error: Unknown tool: {name}"
        try:
            return await handler(arguments)
        except KeyError as e:
            return f"Error: missing required argument {e}"
        except (BitbucketAPIError, ValueError, TypeError, OSError) as e:
            logger.warning("Tool %s failed: %s", name, e)
            return f"Error: {e}"

    async def comment(self, arguments: dict[str, Any]) -> str:
        pr_id = int(arguments["pr_id"])
        comment_id = await self.client.create_pull_request_comment(pr_id, arguments["content"])
        if comment_id is None:
            return f"Error: could not create a comment on PR #{pr_id}"
        return f"Comment created on PR #{pr_id} (id {comment_id})"

    async def create_pr(self, arguments: dict[str, Any]) -> str:
        pr_id = await self.client.create_pull_request(
            title=arguments["title"],
            description=arguments["description"],
            source_branch=arguments["source_branch"],
            destination_branch=arguments.get("destination_branch") or "main",
        )
        if pr_id is None:
            return f"Error: could not create a pull request from {arguments['source_branch']}"
        return f"Pull request #{pr_id} created"

    async def get_pr(self, arguments: dict[str, Any]) -> str:
        snapshot = await self.client.get_pull_request(int(arguments["pr_id"]))
        return json.dumps(asdict(snapshot), indent=2)

    async def get_diff(self, arguments: dict[str, Any]) -> str:
        pr_id = int(arguments["pr_id"])
        if not self.client.has_credentials:
            return "Error: no Bitbucket credentials configured"
        return await self.client.get_pull_request_diff(pr_id) or f"PR #{pr_id} has an empty diff"

    async def set_output(self, arguments: dict[str, Any]) -> str:
        name = arguments["name"]
        self.store.set_output(name, str(arguments["value"]))
        return f"Output {name} set"

    async def save_state(self, arguments: dict[str, Any]) -> str:
        name = arguments["name"]
        self.store.save_state(name, arguments["value"])
        return f"State {name} saved"


def build_server(tools: PipeTools) -> Server:
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return list(TOOLS)

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        text = await tools.dispatch(name, arguments or {})
        return [TextContent(type="text", text=text)]

    return server


async def serve(client: BitbucketClient, store: BaseStore) -> None:
    server = build_server(PipeTools(client, store))
    logger.info("Starting %s MCP server for %s/%s", SERVER_NAME, client.workspace, client.repo_slug)
    async with client, stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


@click.command("mcp-server")
def mcp_server_cmd():
    """Serve the Bitbucket and pipeline tools over stdio (started by Claude)."""
    from bbpipe_cli.cli import build_store

    store = build_store(os.environ.get("BITBUCKET_PIPE_STORAGE_DIR"))
    try:
        asyncio.run(serve(BitbucketClient.from_env(), store))
    finally:
        store.close()
