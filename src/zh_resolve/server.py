"""
MCP server exposing ZenHub identifier resolution backed by the local cache.
"""

from __future__ import annotations

import atexit
import logging
import os
from collections.abc import Callable
from typing import Any

from mcp.server.fastmcp import FastMCP

from . import resolvers
from .api import GitHubClient, ZenhubClient
from .cache import CacheStore
from .config import Settings
from .entities import to_dict
from .errors import ResolveError, UsageError

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "oh-my-zenhub",
    instructions=(
        "Resolves human-friendly ZenHub identifiers (names, substrings, aliases, "
        "owner/repo#number references, 'current'/'next'/'previous' sprints) to "
        "canonical IDs. Listings are cached on disk and refreshed from the "
        "ZenHub API only when a lookup misses."
    ),
)

_settings: Settings | None = None
_client: ZenhubClient | None = None
_github: GitHubClient | None = None
_github_loaded = False
_store: CacheStore | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        try:
            _settings = Settings.from_env()
        except ValueError as exc:
            raise UsageError(str(exc)) from exc
    return _settings


def get_client() -> ZenhubClient:
    global _client
    if _client is None:
        try:
            _client = ZenhubClient.from_config(get_settings())
        except ValueError as exc:
            raise UsageError(str(exc)) from exc
    return _client


def get_github() -> GitHubClient | None:
    global _github, _github_loaded
    if not _github_loaded:
        try:
            _github = GitHubClient.from_config(get_settings())
        except ValueError as exc:
            raise UsageError(str(exc)) from exc
        _github_loaded = True
    return _github


def get_store() -> CacheStore:
    global _store
    if _store is None:
        _store = CacheStore()
    return _store


def _shutdown() -> None:
    if _client is not None:
        _client.close()
    if _github is not None:
        _github.close()


atexit.register(_shutdown)


def _workspace(workspace: str | None) -> str:
    workspace_id = workspace or get_settings().workspace_id
    if not workspace_id:
        raise UsageError("no workspace configured; set ZH_WORKSPACE or pass workspace")
    return workspace_id


def _call(fn: Callable[[], Any]) -> dict[str, Any]:
    try:
        result = fn()
    except ResolveError as err:
        logger.debug("Resolution failed: %s", err)
        return {"error": err.to_dict()}
    if isinstance(result, list):
        return {"results": [to_dict(r) for r in result]}
    return to_dict(result)


@mcp.tool()
def resolve_pipeline(identifier: str, workspace: str | None = None) -> dict[str, Any]:
    """Resolve a pipeline to its ID.

    Args:
        identifier: Pipeline ID, exact name, unique name substring, or configured alias.
        workspace: Workspace ID. Defaults to ZH_WORKSPACE.

    Returns:
        dict with "id" and "name", or "error" with code, exitCode and message.
    """
    return _call(
        lambda: resolvers.pipeline(
            get_client(),
            _workspace(workspace),
            identifier,
            get_settings().pipeline_aliases,
            store=get_store(),
        )
    )


@mcp.tool()
def resolve_epic(identifier: str, workspace: str | None = None) -> dict[str, Any]:
    """Resolve an epic to its ID.

    Args:
        identifier: Epic ID, title, unique title substring, alias, or
            owner/repo#number for legacy issue-backed epics.
        workspace: Workspace ID. Defaults to ZH_WORKSPACE.

    Returns:
        dict with "id", "title" and "type" ("zenhub" or "legacy").
    """
    return _call(
        lambda: resolvers.epic(
            get_client(),
            _workspace(workspace),
            identifier,
            get_settings().epic_aliases,
            store=get_store(),
        )
    )


@mcp.tool()
def resolve_issue(
    identifier: str,
    repo: str | None = None,
    workspace: str | None = None,
) -> dict[str, Any]:
    """Resolve an issue or pull request to its ZenHub ID.

    Args:
        identifier: owner/repo#number, repo#number, ZenHub node ID, a bare
            number (requires repo), or a branch name (requires repo and
            GitHub access via ZH_GITHUB_METHOD).
        repo: Repository as "name" or "owner/name" for bare numbers and branches.
        workspace: Workspace ID. Defaults to ZH_WORKSPACE.

    Returns:
        dict with "id", "number", "repo_gh_id", "repo_owner", "repo_name",
        "ref" and "full_ref".
    """

    def run():
        options = resolvers.IssueOptions(repo=repo or "", github=get_github())
        return resolvers.issue(
            get_client(), _workspace(workspace), identifier, options, store=get_store()
        )

    return _call(run)


@mcp.tool()
def resolve_label(name: str, workspace: str | None = None) -> dict[str, Any]:
    """Resolve a repository label by ID or exact name (case-insensitive)."""
    return _call(
        lambda: resolvers.label(get_client(), _workspace(workspace), name, store=get_store())
    )


@mcp.tool()
def resolve_labels(names: list[str], workspace: str | None = None) -> dict[str, Any]:
    """Resolve several repository labels at once.

    Returns:
        dict with "results" (list of {id, name, color}); any unknown names are
        reported together in a single not_found error.
    """
    return _call(
        lambda: resolvers.labels(get_client(), _workspace(workspace), names, store=get_store())
    )


@mcp.tool()
def resolve_priority(identifier: str, workspace: str | None = None) -> dict[str, Any]:
    """Resolve a priority by ID, exact name, or unique name substring."""
    return _call(
        lambda: resolvers.priority(
            get_client(), _workspace(workspace), identifier, store=get_store()
        )
    )


@mcp.tool()
def resolve_sprint(identifier: str, workspace: str | None = None) -> dict[str, Any]:
    """Resolve a sprint to its ID.

    Args:
        identifier: Sprint ID, name, generated name, unique substring, or one
            of "current", "next", "previous".
        workspace: Workspace ID. Defaults to ZH_WORKSPACE.
    """
    return _call(
        lambda: resolvers.sprint(
            get_client(), _workspace(workspace), identifier, store=get_store()
        )
    )


@mcp.tool()
def resolve_user(identifier: str, workspace: str | None = None) -> dict[str, Any]:
    """Resolve a workspace user by ID, GitHub login (optionally "@login"), or name."""
    return _call(
        lambda: resolvers.user(get_client(), _workspace(workspace), identifier, store=get_store())
    )


@mcp.tool()
def resolve_users(identifiers: list[str], workspace: str | None = None) -> dict[str, Any]:
    """Resolve several workspace users at once."""
    return _call(
        lambda: resolvers.users(
            get_client(), _workspace(workspace), identifiers, store=get_store()
        )
    )


@mcp.tool()
def resolve_zenhub_label(name: str, workspace: str | None = None) -> dict[str, Any]:
    """Resolve an organization-level ZenHub label (used on ZenHub epics)."""
    return _call(
        lambda: resolvers.zenhub_label(
            get_client(), _workspace(workspace), name, store=get_store()
        )
    )


@mcp.tool()
def resolve_zenhub_labels(names: list[str], workspace: str | None = None) -> dict[str, Any]:
    """Resolve several ZenHub labels at once."""
    return _call(
        lambda: resolvers.zenhub_labels(
            get_client(), _workspace(workspace), names, store=get_store()
        )
    )


@mcp.tool()
def clear_cache(workspace_only: bool = False, workspace: str | None = None) -> dict[str, Any]:
    """Remove cached listings.

    Args:
        workspace_only: Only remove files scoped to the workspace.
        workspace: Workspace ID. Defaults to ZH_WORKSPACE.

    Returns:
        dict with "removed" (number of files deleted).
    """
    try:
        if workspace_only:
            removed = get_store().clear_scope(_workspace(workspace))
        else:
            removed = get_store().clear_all()
    except ResolveError as err:
        return {"error": err.to_dict()}
    logger.info("Cleared %d cache file(s)", removed)
    return {"removed": removed}


@mcp.tool()
def cache_status() -> dict[str, Any]:
    """Return the cache directory and the cache files currently present."""
    store = get_store()
    return {"directory": str(store.root), "files": store.list_keys()}


def main() -> None:
    level_name = os.getenv("ZH_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    main()
