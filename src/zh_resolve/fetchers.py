"""
Fetchers paging through the ZenHub API and normalizing results into the
cached entry shapes.

Fetchers never touch the cache themselves; the invalidate-on-miss
controller persists what they return. Any API failure or malformed payload
is raised as ``UpstreamError`` naming the operation in flight.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import Any

from .api import ApiError, GraphQLExecutor
from .entities import (
    EPIC_TYPE_LEGACY,
    EPIC_TYPE_ZENHUB,
    CachedEpic,
    CachedLabel,
    CachedPipeline,
    CachedPriority,
    CachedRepo,
    CachedSprint,
    CachedUser,
    CachedZenhubLabel,
    SprintAccessors,
    SprintListing,
)
from .errors import UpstreamError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

LIST_PIPELINES_QUERY = """query ListPipelines($workspaceId: ID!) {
  workspace(id: $workspaceId) {
    pipelinesConnection(first: 50) {
      nodes {
        id
        name
      }
    }
  }
}"""

LIST_PRIORITIES_QUERY = """query GetWorkspacePriorities($workspaceId: ID!) {
  workspace(id: $workspaceId) {
    prioritiesConnection {
      nodes {
        id
        name
        color
        description
      }
    }
  }
}"""

LIST_LABELS_QUERY = """query GetWorkspaceLabels($workspaceId: ID!) {
  workspace(id: $workspaceId) {
    repositoriesConnection(first: 100) {
      nodes {
        labels(first: 100) {
          nodes {
            id
            name
            color
          }
        }
      }
    }
  }
}"""

LIST_REPOS_QUERY = """query ListRepos($workspaceId: ID!, $first: Int!, $after: String) {
  workspace(id: $workspaceId) {
    repositoriesConnection(first: $first, after: $after) {
      totalCount
      pageInfo {
        hasNextPage
        endCursor
      }
      nodes {
        id
        ghId
        name
        ownerName
      }
    }
  }
}"""

LIST_ZENHUB_EPICS_QUERY = """query ListZenhubEpics($workspaceId: ID!, $first: Int!, $after: String) {
  workspace(id: $workspaceId) {
    zenhubEpics(first: $first, after: $after) {
      pageInfo {
        hasNextPage
        endCursor
      }
      nodes {
        id
        title
      }
    }
  }
}"""

LIST_ROADMAP_EPICS_QUERY = """query ListRoadmapEpics($workspaceId: ID!, $first: Int!, $after: String) {
  workspace(id: $workspaceId) {
    roadmap {
      items(first: $first, after: $after) {
        pageInfo {
          hasNextPage
          endCursor
        }
        nodes {
          __typename
          ... on ZenhubEpic {
            id
            title
          }
          ... on Epic {
            id
            issue {
              title
              number
              repository {
                name
                ownerName
              }
            }
          }
        }
      }
    }
  }
}"""

LIST_SPRINTS_QUERY = """query ListSprints($workspaceId: ID!, $first: Int!, $after: String) {
  workspace(id: $workspaceId) {
    sprints(first: $first, after: $after, orderBy: {field: START_AT, direction: DESC}) {
      totalCount
      pageInfo {
        hasNextPage
        endCursor
      }
      nodes {
        id
        name
        generatedName
        state
        startAt
        endAt
      }
    }
    activeSprint {
      id
    }
    upcomingSprint {
      id
    }
    previousSprint {
      id
    }
  }
}"""

LIST_USERS_QUERY = """query ListZenhubUsers($workspaceId: ID!, $first: Int!, $after: String) {
  workspace(id: $workspaceId) {
    zenhubUsers(first: $first, after: $after) {
      totalCount
      pageInfo {
        hasNextPage
        endCursor
      }
      nodes {
        id
        name
        githubUser { login }
      }
    }
  }
}"""

LIST_ZENHUB_LABELS_QUERY = """query ListZenhubLabels($workspaceId: ID!, $first: Int!, $after: String) {
  workspace(id: $workspaceId) {
    zenhubLabels(first: $first, after: $after) {
      totalCount
      pageInfo {
        hasNextPage
        endCursor
      }
      nodes {
        id
        name
        color
      }
    }
  }
}"""


class MalformedResponse(ValueError):
    """A response did not have the expected shape."""


def _execute(
    client: GraphQLExecutor, query: str, variables: dict[str, Any], operation: str
) -> dict[str, Any]:
    try:
        return client.execute(query, variables)
    except ApiError as exc:
        raise UpstreamError(f"fetching {operation}", exc) from exc


def _dig(data: Any, path: Sequence[str]) -> Any:
    node = data
    for key in path:
        if not isinstance(node, dict) or key not in node:
            raise MalformedResponse(f"missing '{'.'.join(path)}'")
        node = node[key]
    return node


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _nodes(connection: Any) -> list[dict[str, Any]]:
    if not isinstance(connection, dict):
        raise MalformedResponse("connection is not an object")
    nodes = connection.get("nodes") or []
    if not isinstance(nodes, list):
        raise MalformedResponse("connection nodes is not a list")
    return [n for n in nodes if isinstance(n, dict)]


def paginate(
    client: GraphQLExecutor,
    query: str,
    variables: dict[str, Any],
    path: Sequence[str],
    operation: str,
) -> Iterator[dict[str, Any]]:
    """Yield each page's response data, following ``pageInfo`` cursors in order.

    ``path`` locates the paginated connection inside the response data.
    """
    cursor: str | None = None
    page = 0
    while True:
        page_vars = {**variables, "first": PAGE_SIZE}
        if cursor is not None:
            page_vars["after"] = cursor

        data = _execute(client, query, page_vars, operation)
        try:
            page_info = _dig(data, [*path, "pageInfo"])
            has_next = bool(page_info.get("hasNextPage"))
            cursor = page_info.get("endCursor")
        except (MalformedResponse, AttributeError) as exc:
            raise UpstreamError(f"parsing {operation} response", exc) from exc

        page += 1
        logger.debug("Fetched %s page %d (hasNextPage=%s)", operation, page, has_next)
        yield data

        if not has_next or not cursor:
            break


def _parse(operation: str, fn: Any, *args: Any) -> Any:
    try:
        return fn(*args)
    except (MalformedResponse, KeyError, TypeError, ValueError) as exc:
        raise UpstreamError(f"parsing {operation} response", exc) from exc


def fetch_pipelines(client: GraphQLExecutor, workspace_id: str) -> list[CachedPipeline]:
    data = _execute(client, LIST_PIPELINES_QUERY, {"workspaceId": workspace_id}, "pipelines")

    def parse(payload: dict[str, Any]) -> list[CachedPipeline]:
        conn = _dig(payload, ["workspace", "pipelinesConnection"])
        return [CachedPipeline(id=_str(n["id"]), name=_str(n.get("name"))) for n in _nodes(conn)]

    return _parse("pipelines", parse, data)


def fetch_priorities(client: GraphQLExecutor, workspace_id: str) -> list[CachedPriority]:
    data = _execute(client, LIST_PRIORITIES_QUERY, {"workspaceId": workspace_id}, "priorities")

    def parse(payload: dict[str, Any]) -> list[CachedPriority]:
        conn = _dig(payload, ["workspace", "prioritiesConnection"])
        return [
            CachedPriority(
                id=_str(n["id"]),
                name=_str(n.get("name")),
                color=_str(n.get("color")),
                description=_str(n.get("description")),
            )
            for n in _nodes(conn)
        ]

    return _parse("priorities", parse, data)


def fetch_labels(client: GraphQLExecutor, workspace_id: str) -> list[CachedLabel]:
    """Fetch labels across all workspace repos.

    Labels sharing a name across repos are equivalent, so the list is
    deduplicated by case-insensitive name, keeping the first occurrence.
    """
    data = _execute(client, LIST_LABELS_QUERY, {"workspaceId": workspace_id}, "labels")

    def parse(payload: dict[str, Any]) -> list[CachedLabel]:
        repos = _dig(payload, ["workspace", "repositoriesConnection"])
        seen: set[str] = set()
        labels: list[CachedLabel] = []
        for repo in _nodes(repos):
            for n in _nodes(repo.get("labels") or {}):
                name = _str(n.get("name"))
                if name.lower() in seen:
                    continue
                seen.add(name.lower())
                labels.append(CachedLabel(id=_str(n["id"]), name=name, color=_str(n.get("color"))))
        return labels

    return _parse("labels", parse, data)


def fetch_repos(client: GraphQLExecutor, workspace_id: str) -> list[CachedRepo]:
    path = ["workspace", "repositoriesConnection"]
    repos: list[CachedRepo] = []
    for data in paginate(client, LIST_REPOS_QUERY, {"workspaceId": workspace_id}, path, "repos"):
        repos.extend(
            _parse(
                "repos",
                lambda d: [
                    CachedRepo(
                        id=_str(n["id"]),
                        gh_id=int(n.get("ghId") or 0),
                        name=_str(n.get("name")),
                        owner_name=_str(n.get("ownerName")),
                    )
                    for n in _nodes(_dig(d, path))
                ],
                data,
            )
        )
    return repos


def _parse_roadmap_item(node: dict[str, Any]) -> CachedEpic | None:
    """Turn one roadmap item into an epic, or None when it is not an epic."""
    typename = node.get("__typename")
    if typename == "ZenhubEpic":
        return CachedEpic(id=_str(node["id"]), title=_str(node.get("title")), type=EPIC_TYPE_ZENHUB)
    if typename == "Epic":
        issue = node.get("issue") or {}
        repo = issue.get("repository") or {}
        return CachedEpic(
            id=_str(node["id"]),
            title=_str(issue.get("title")),
            type=EPIC_TYPE_LEGACY,
            issue_number=int(issue.get("number") or 0),
            repo_name=_str(repo.get("name")),
            repo_owner=_str(repo.get("ownerName")),
        )
    return None


def _fetch_zenhub_epics(client: GraphQLExecutor, workspace_id: str) -> list[CachedEpic]:
    path = ["workspace", "zenhubEpics"]
    epics: list[CachedEpic] = []
    variables = {"workspaceId": workspace_id}
    for data in paginate(client, LIST_ZENHUB_EPICS_QUERY, variables, path, "zenhub epics"):
        epics.extend(
            _parse(
                "zenhub epics",
                lambda d: [
                    CachedEpic(id=_str(n["id"]), title=_str(n.get("title")), type=EPIC_TYPE_ZENHUB)
                    for n in _nodes(_dig(d, path))
                ],
                data,
            )
        )
    return epics


def _fetch_roadmap_epics(client: GraphQLExecutor, workspace_id: str) -> list[CachedEpic]:
    path = ["workspace", "roadmap", "items"]
    epics: list[CachedEpic] = []
    variables = {"workspaceId": workspace_id}
    for data in paginate(client, LIST_ROADMAP_EPICS_QUERY, variables, path, "roadmap epics"):
        items = _parse("roadmap epics", lambda d: _nodes(_dig(d, path)), data)
        for node in items:
            epic = _parse("roadmap epics", _parse_roadmap_item, node)
            if epic is not None:
                epics.append(epic)
    return epics


def fetch_epics(client: GraphQLExecutor, workspace_id: str) -> list[CachedEpic]:
    """Fetch every epic in the workspace from both epic sources.

    The dedicated ZenHub epic listing covers all standalone epics; the
    roadmap is the only place legacy (issue-backed) epics show up, and it
    repeats ZenHub epics already seen. Epics are merged by ID, keeping the
    first source's version and ordering.
    """
    seen: set[str] = set()
    merged: list[CachedEpic] = []
    for source in (_fetch_zenhub_epics, _fetch_roadmap_epics):
        for epic in source(client, workspace_id):
            if epic.id in seen:
                continue
            seen.add(epic.id)
            merged.append(epic)
    return merged


def _accessor_id(workspace: dict[str, Any], field_name: str) -> str:
    value = workspace.get(field_name)
    if isinstance(value, dict):
        return _str(value.get("id"))
    return ""


def fetch_sprints(client: GraphQLExecutor, workspace_id: str) -> SprintListing:
    path = ["workspace", "sprints"]
    sprints: list[CachedSprint] = []
    accessors: SprintAccessors | None = None

    def parse(d: dict[str, Any]) -> list[CachedSprint]:
        return [
            CachedSprint(
                id=_str(n["id"]),
                name=_str(n.get("name")),
                generated_name=_str(n.get("generatedName")),
                state=_str(n.get("state")),
                start_at=_str(n.get("startAt")),
                end_at=_str(n.get("endAt")),
            )
            for n in _nodes(_dig(d, path))
        ]

    for data in paginate(client, LIST_SPRINTS_QUERY, {"workspaceId": workspace_id}, path, "sprints"):
        sprints.extend(_parse("sprints", parse, data))

        # Accessors are only taken from the first page.
        if accessors is None:
            workspace = data["workspace"]
            accessors = SprintAccessors(
                active_id=_accessor_id(workspace, "activeSprint"),
                upcoming_id=_accessor_id(workspace, "upcomingSprint"),
                previous_id=_accessor_id(workspace, "previousSprint"),
            )

    return SprintListing(sprints=sprints, accessors=accessors or SprintAccessors())


def fetch_users(client: GraphQLExecutor, workspace_id: str) -> list[CachedUser]:
    path = ["workspace", "zenhubUsers"]
    users: list[CachedUser] = []

    def parse(d: dict[str, Any]) -> list[CachedUser]:
        result = []
        for n in _nodes(_dig(d, path)):
            github = n.get("githubUser") or {}
            result.append(
                CachedUser(
                    id=_str(n["id"]),
                    name=_str(n.get("name")),
                    github_login=github.get("login") or None,
                )
            )
        return result

    variables = {"workspaceId": workspace_id}
    for data in paginate(client, LIST_USERS_QUERY, variables, path, "workspace users"):
        users.extend(_parse("users", parse, data))
    return users


def fetch_zenhub_labels(client: GraphQLExecutor, workspace_id: str) -> list[CachedZenhubLabel]:
    path = ["workspace", "zenhubLabels"]
    labels: list[CachedZenhubLabel] = []
    variables = {"workspaceId": workspace_id}
    for data in paginate(client, LIST_ZENHUB_LABELS_QUERY, variables, path, "ZenHub labels"):
        labels.extend(
            _parse(
                "ZenHub labels",
                lambda d: [
                    CachedZenhubLabel(
                        id=_str(n["id"]), name=_str(n.get("name")), color=_str(n.get("color"))
                    )
                    for n in _nodes(_dig(d, path))
                ],
                data,
            )
        )
    return labels
