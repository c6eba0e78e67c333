"""
Public resolution operations: one per entity kind.

Each resolver takes the ZenHub client, a workspace scope and the raw
identifier typed by the user, and returns a minimal result or raises a
classified ``ResolveError``. Cached listings are trusted until a lookup
misses; then they are refreshed once from the API.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from .api import ApiError, GraphQLExecutor
from .cache import CacheKey, CacheStore, resolve_with_refresh, store_quietly
from .entities import (
    SPRINT_STATE_OPEN,
    CachedEpic,
    CachedLabel,
    CachedPipeline,
    CachedPriority,
    CachedRepo,
    CachedSprint,
    CachedUser,
    CachedZenhubLabel,
    EpicResult,
    IssueResult,
    LabelResult,
    PipelineResult,
    PriorityResult,
    SprintAccessors,
    SprintResult,
    UserResult,
    ZenhubLabelResult,
    decode_accessors,
    encode_entries,
    entry_decoder,
)
from .errors import AmbiguousError, NotFoundError, UpstreamError, UsageError
from .fetchers import (
    fetch_epics,
    fetch_labels,
    fetch_pipelines,
    fetch_priorities,
    fetch_repos,
    fetch_sprints,
    fetch_users,
    fetch_zenhub_labels,
)
from .issue_ref import parse_issue_ref
from .matching import (
    MatchKind,
    MatchResult,
    apply_alias,
    lookup_repo,
    match_epic,
    match_label,
    match_pipeline,
    match_priority,
    match_sprint,
    match_user,
    match_zenhub_label,
)

logger = logging.getLogger(__name__)

RELATIVE_SPRINTS = ("current", "next", "previous")


def pipeline_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("pipelines", workspace_id)


def epic_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("epics", workspace_id)


def repo_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("repos", workspace_id)


def label_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("labels", workspace_id)


def priority_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("priorities", workspace_id)


def sprint_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("sprints", workspace_id)


def sprint_accessors_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("sprint-accessors", workspace_id)


def user_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("users", workspace_id)


def zenhub_label_cache_key(workspace_id: str) -> CacheKey:
    return CacheKey.scoped("zenhub-labels", workspace_id)


@dataclass(frozen=True)
class _Kind:
    """Wording used in errors for one entity kind."""

    singular: str
    plural: str
    scope: str = ""
    hint: str = ""

    def not_found(self, identifier: str) -> NotFoundError:
        return NotFoundError(f'{self.singular} "{identifier}" not found{self.scope}{self.hint}')

    def not_found_many(self, identifiers: Sequence[str]) -> NotFoundError:
        return NotFoundError(
            f"{self.singular}(s) not found: {', '.join(identifiers)}{self.hint}"
        )

    def ambiguous(
        self, identifier: str, candidates: Sequence[tuple[str, str]], hint: str | None = None
    ) -> AmbiguousError:
        lines = [
            f'{self.singular} "{identifier}" is ambiguous, '
            f"matches {len(candidates)} {self.plural}:"
        ]
        lines.extend(f"  - {name} [{ident}]" for name, ident in candidates)
        lines.append("")
        lines.append(hint or f"Use a more specific name or the {self.singular} ID.")
        return AmbiguousError("\n".join(lines), list(candidates))


PIPELINE = _Kind(
    "pipeline", "pipelines", hint="; run 'zh pipeline list' to see available pipelines"
)
EPIC = _Kind("epic", "epics", hint="; run 'zh epic list' to see available epics")
LABEL = _Kind("label", "labels", hint="; run 'zh label list' to see available labels")
PRIORITY = _Kind(
    "priority", "priorities", hint="; run 'zh priority list' to see available priorities"
)
SPRINT = _Kind("sprint", "sprints", hint="; run 'zh sprint list' to see available sprints")
USER = _Kind("user", "users", scope=" in workspace")
ZENHUB_LABEL = _Kind("label", "labels", scope=" in workspace")
REPO = _Kind(
    "repository",
    "repos",
    scope=" in workspace",
    hint="; run 'zh workspace repos' to see connected repos",
)


def _store(store: CacheStore | None) -> CacheStore:
    return store if store is not None else CacheStore()


def _expect(
    result: MatchResult,
    kind: _Kind,
    identifier: str,
    describe: Callable[[Any], str],
) -> Any:
    if result.kind is MatchKind.MATCHED:
        return result.entry
    if result.kind is MatchKind.AMBIGUOUS:
        raise kind.ambiguous(identifier, [(describe(e), e.id) for e in result.candidates])
    raise kind.not_found(identifier)


def _resolve_listing(
    store: CacheStore,
    key: CacheKey,
    refresh: Callable[[], list[Any]],
    match: Callable[[Sequence[Any], str], MatchResult],
    entry_type: type,
    identifier: str,
) -> MatchResult:
    return resolve_with_refresh(
        store,
        key,
        refresh,
        lambda entries: match(entries, identifier),
        decode=entry_decoder(entry_type),
        encode=encode_entries,
    )


def _resolve_many(
    store: CacheStore,
    key: CacheKey,
    refresh: Callable[[], list[Any]],
    match: Callable[[Sequence[Any], str], MatchResult],
    entry_type: type,
    identifiers: Sequence[str],
    kind: _Kind,
    describe: Callable[[Any], str],
) -> list[Any]:
    """Resolve several identifiers against one listing with at most one refresh.

    Identifiers missing from cached data trigger a single refresh; whatever
    still misses afterwards is reported in one not-found error.
    """
    entries, found = store.get(key, entry_decoder(entry_type))
    fresh = not found
    if fresh:
        entries = refresh()
        store_quietly(store, key, entries, encode_entries)

    def attempt(pending: Sequence[str]) -> tuple[list[Any], list[str]]:
        hits: list[Any] = []
        misses: list[str] = []
        for ident in pending:
            result = match(entries, ident)
            if result.kind is MatchKind.AMBIGUOUS:
                _expect(result, kind, ident, describe)
            if result.found:
                hits.append(result.entry)
            else:
                misses.append(ident)
        return hits, misses

    results, missing = attempt(identifiers)
    if missing and not fresh:
        logger.debug("Refreshing %s for %d unresolved identifier(s)", key.filename, len(missing))
        entries = refresh()
        store_quietly(store, key, entries, encode_entries)
        retried, missing = attempt(missing)
        results.extend(retried)

    if missing:
        raise kind.not_found_many(missing)
    return results


def pipeline(
    client: GraphQLExecutor,
    workspace_id: str,
    identifier: str,
    aliases: dict[str, str] | None = None,
    *,
    store: CacheStore | None = None,
) -> PipelineResult:
    """Resolve a pipeline by alias, ID, exact name, or unique name substring."""
    identifier = apply_alias(identifier, aliases)
    result = _resolve_listing(
        _store(store),
        pipeline_cache_key(workspace_id),
        lambda: fetch_pipelines(client, workspace_id),
        match_pipeline,
        CachedPipeline,
        identifier,
    )
    entry = _expect(result, PIPELINE, identifier, lambda p: p.name)
    return PipelineResult(id=entry.id, name=entry.name)


def epic(
    client: GraphQLExecutor,
    workspace_id: str,
    identifier: str,
    aliases: dict[str, str] | None = None,
    *,
    store: CacheStore | None = None,
) -> EpicResult:
    """Resolve an epic by alias, ID, owner/repo#number (legacy epics), or title."""
    identifier = apply_alias(identifier, aliases)
    result = _resolve_listing(
        _store(store),
        epic_cache_key(workspace_id),
        lambda: fetch_epics(client, workspace_id),
        match_epic,
        CachedEpic,
        identifier,
    )
    entry = _expect(result, EPIC, identifier, lambda e: e.title)
    return EpicResult(id=entry.id, title=entry.title, type=entry.type)


def priority(
    client: GraphQLExecutor,
    workspace_id: str,
    identifier: str,
    *,
    store: CacheStore | None = None,
) -> PriorityResult:
    result = _resolve_listing(
        _store(store),
        priority_cache_key(workspace_id),
        lambda: fetch_priorities(client, workspace_id),
        match_priority,
        CachedPriority,
        identifier,
    )
    entry = _expect(result, PRIORITY, identifier, lambda p: p.name)
    return PriorityResult(id=entry.id, name=entry.name, color=entry.color)


def label(
    client: GraphQLExecutor,
    workspace_id: str,
    name: str,
    *,
    store: CacheStore | None = None,
) -> LabelResult:
    """Resolve a repository label by ID or exact (case-insensitive) name."""
    result = _resolve_listing(
        _store(store),
        label_cache_key(workspace_id),
        lambda: fetch_labels(client, workspace_id),
        match_label,
        CachedLabel,
        name,
    )
    entry = _expect(result, LABEL, name, lambda entry: entry.name)
    return LabelResult(id=entry.id, name=entry.name, color=entry.color)


def labels(
    client: GraphQLExecutor,
    workspace_id: str,
    names: Sequence[str],
    *,
    store: CacheStore | None = None,
) -> list[LabelResult]:
    entries = _resolve_many(
        _store(store),
        label_cache_key(workspace_id),
        lambda: fetch_labels(client, workspace_id),
        match_label,
        CachedLabel,
        names,
        LABEL,
        lambda entry: entry.name,
    )
    return [LabelResult(id=e.id, name=e.name, color=e.color) for e in entries]


def zenhub_label(
    client: GraphQLExecutor,
    workspace_id: str,
    name: str,
    *,
    store: CacheStore | None = None,
) -> ZenhubLabelResult:
    """Resolve an organization-scoped ZenHub label by ID or exact name."""
    result = _resolve_listing(
        _store(store),
        zenhub_label_cache_key(workspace_id),
        lambda: fetch_zenhub_labels(client, workspace_id),
        match_zenhub_label,
        CachedZenhubLabel,
        name,
    )
    entry = _expect(result, ZENHUB_LABEL, name, lambda entry: entry.name)
    return ZenhubLabelResult(id=entry.id, name=entry.name, color=entry.color)


def zenhub_labels(
    client: GraphQLExecutor,
    workspace_id: str,
    names: Sequence[str],
    *,
    store: CacheStore | None = None,
) -> list[ZenhubLabelResult]:
    entries = _resolve_many(
        _store(store),
        zenhub_label_cache_key(workspace_id),
        lambda: fetch_zenhub_labels(client, workspace_id),
        match_zenhub_label,
        CachedZenhubLabel,
        names,
        ZENHUB_LABEL,
        lambda entry: entry.name,
    )
    return [ZenhubLabelResult(id=e.id, name=e.name, color=e.color) for e in entries]


def _user_result(entry: CachedUser) -> UserResult:
    return UserResult(id=entry.id, name=entry.name, login=entry.github_login or "")


def _describe_user(entry: CachedUser) -> str:
    return f"{entry.name} (@{entry.github_login})" if entry.github_login else entry.name


def user(
    client: GraphQLExecutor,
    workspace_id: str,
    identifier: str,
    *,
    store: CacheStore | None = None,
) -> UserResult:
    """Resolve a user by ID, GitHub login, or name; a leading "@" is ignored."""
    result = _resolve_listing(
        _store(store),
        user_cache_key(workspace_id),
        lambda: fetch_users(client, workspace_id),
        match_user,
        CachedUser,
        identifier,
    )
    return _user_result(_expect(result, USER, identifier, _describe_user))


def users(
    client: GraphQLExecutor,
    workspace_id: str,
    identifiers: Sequence[str],
    *,
    store: CacheStore | None = None,
) -> list[UserResult]:
    entries = _resolve_many(
        _store(store),
        user_cache_key(workspace_id),
        lambda: fetch_users(client, workspace_id),
        match_user,
        CachedUser,
        identifiers,
        USER,
        _describe_user,
    )
    return [_user_result(e) for e in entries]


def _refresh_sprints(client: GraphQLExecutor, workspace_id: str, store: CacheStore):
    listing = fetch_sprints(client, workspace_id)
    store_quietly(store, sprint_accessors_cache_key(workspace_id), listing.accessors, asdict)
    return listing


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def active_sprint_by_date(sprints: Sequence[CachedSprint], now: datetime) -> str:
    """ID of the first open sprint whose [start, end) range contains ``now``, or ""."""
    for entry in sprints:
        if entry.state != SPRINT_STATE_OPEN:
            continue
        try:
            start = _parse_timestamp(entry.start_at)
            end = _parse_timestamp(entry.end_at)
        except ValueError:
            continue
        if start <= now < end:
            return entry.id
    return ""


def _relative_sprint(
    client: GraphQLExecutor,
    workspace_id: str,
    relative: str,
    now: datetime,
    store: CacheStore,
) -> SprintResult:
    accessors, have_accessors = store.get(sprint_accessors_cache_key(workspace_id), decode_accessors)
    sprints, have_sprints = store.get(
        sprint_cache_key(workspace_id), entry_decoder(CachedSprint)
    )

    if not (have_accessors and have_sprints):
        listing = _refresh_sprints(client, workspace_id, store)
        store_quietly(store, sprint_cache_key(workspace_id), listing.sprints, encode_entries)
        accessors, sprints = listing.accessors, listing.sprints

    accessors = accessors or SprintAccessors()
    if relative == "current":
        target = accessors.active_id or active_sprint_by_date(sprints, now)
        if not target:
            raise NotFoundError(
                "no active sprint: the workspace may not have sprints configured, "
                "or no sprint is currently in progress"
            )
    elif relative == "next":
        target = accessors.upcoming_id
        if not target:
            raise NotFoundError("no upcoming sprint found")
    else:
        target = accessors.previous_id
        if not target:
            raise NotFoundError("no previous sprint found")

    for entry in sprints:
        if entry.id == target:
            return SprintResult(id=entry.id, name=entry.display_name)
    raise NotFoundError(f'sprint "{relative}" not found in cached sprint list')


def sprint(
    client: GraphQLExecutor,
    workspace_id: str,
    identifier: str,
    *,
    now: datetime | None = None,
    store: CacheStore | None = None,
) -> SprintResult:
    """Resolve a sprint by ID, name, generated name, or "current"/"next"/"previous"."""
    cache_store = _store(store)
    relative = identifier.lower()
    if relative in RELATIVE_SPRINTS:
        return _relative_sprint(
            client, workspace_id, relative, now or datetime.now(timezone.utc), cache_store
        )

    result = _resolve_listing(
        cache_store,
        sprint_cache_key(workspace_id),
        lambda: _refresh_sprints(client, workspace_id, cache_store).sprints,
        match_sprint,
        CachedSprint,
        identifier,
    )
    entry = _expect(result, SPRINT, identifier, lambda s: s.display_name)
    return SprintResult(id=entry.id, name=entry.display_name)


def lookup_repo_with_refresh(
    client: GraphQLExecutor,
    workspace_id: str,
    identifier: str,
    *,
    store: CacheStore | None = None,
) -> CachedRepo:
    """Resolve "repo" or "owner/repo" against the workspace's connected repos."""
    result = _resolve_listing(
        _store(store),
        repo_cache_key(workspace_id),
        lambda: fetch_repos(client, workspace_id),
        lookup_repo,
        CachedRepo,
        identifier,
    )
    if result.kind is MatchKind.AMBIGUOUS:
        candidates = [(r.full_name, r.id) for r in result.candidates]
        lines = [
            f'repository "{identifier}" is ambiguous, matches {len(candidates)} repos:',
            *(f"  - {name}" for name, _ in candidates),
            "",
            "Use the full owner/repo format.",
        ]
        raise AmbiguousError("\n".join(lines), candidates)
    return _expect(result, REPO, identifier, lambda r: r.full_name)


@dataclass(frozen=True)
class IssueOptions:
    """Extra context for issue resolution.

    ``repo`` supplies the repository ("repo" or "owner/repo") for bare
    numbers and branch names; ``github`` enables branch-name lookup.
    """

    repo: str = ""
    github: GraphQLExecutor | None = None


ISSUE_BY_INFO_QUERY = """query IssueByInfo($repositoryGhId: Int!, $issueNumber: Int!) {
  issueByInfo(repositoryGhId: $repositoryGhId, issueNumber: $issueNumber) {
    id
    number
    repository {
      ghId
      name
      ownerName
    }
  }
}"""

ISSUE_BY_NODE_QUERY = """query IssueByNode($id: ID!) {
  node(id: $id) {
    ... on Issue {
      id
      number
      repository {
        ghId
        name
        ownerName
      }
    }
  }
}"""

GITHUB_PR_BY_BRANCH_QUERY = """query PRByBranch($owner: String!, $repo: String!, $head: String!) {
  repository(owner: $owner, name: $repo) {
    pullRequests(headRefName: $head, first: 1, states: [OPEN, CLOSED, MERGED],
                 orderBy: {field: CREATED_AT, direction: DESC}) {
      nodes {
        number
      }
    }
  }
}"""


def _issue_from_node(node: dict[str, Any]) -> IssueResult:
    repo = node["repository"]
    return IssueResult(
        id=str(node["id"]),
        number=int(node["number"]),
        repo_gh_id=int(repo.get("ghId") or 0),
        repo_owner=str(repo.get("ownerName") or ""),
        repo_name=str(repo.get("name") or ""),
    )


def _query(client: GraphQLExecutor, query: str, variables: dict[str, Any], operation: str):
    try:
        return client.execute(query, variables)
    except ApiError as exc:
        raise UpstreamError(operation, exc) from exc


def _issue_by_number(client: GraphQLExecutor, repo: CachedRepo, number: int) -> IssueResult:
    data = _query(
        client,
        ISSUE_BY_INFO_QUERY,
        {"repositoryGhId": repo.gh_id, "issueNumber": number},
        "fetching issue details",
    )
    node = data.get("issueByInfo")
    if not node:
        raise NotFoundError(f"issue {repo.full_name}#{number} not found")
    try:
        return _issue_from_node(node)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise UpstreamError("parsing issue response", exc) from exc


def _issue_by_node(client: GraphQLExecutor, zenhub_id: str) -> IssueResult:
    data = _query(client, ISSUE_BY_NODE_QUERY, {"id": zenhub_id}, "fetching issue by ID")
    node = data.get("node")
    if not node or not node.get("repository"):
        raise NotFoundError(f'issue "{zenhub_id}" not found')
    try:
        return _issue_from_node(node)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise UpstreamError("parsing issue response", exc) from exc


def _issue_by_branch(
    client: GraphQLExecutor,
    workspace_id: str,
    branch: str,
    options: IssueOptions,
    store: CacheStore,
) -> IssueResult:
    repo = lookup_repo_with_refresh(client, workspace_id, options.repo, store=store)
    data = _query(
        options.github,
        GITHUB_PR_BY_BRANCH_QUERY,
        {"owner": repo.owner_name, "repo": repo.name, "head": branch},
        "looking up PR by branch name",
    )
    try:
        prs = ((data.get("repository") or {}).get("pullRequests") or {}).get("nodes") or []
    except AttributeError as exc:
        raise UpstreamError("parsing GitHub PR response", exc) from exc
    if not prs:
        raise NotFoundError(f'no PR found for branch "{branch}" in {repo.full_name}')
    return _issue_by_number(client, repo, int(prs[0]["number"]))


def issue(
    client: GraphQLExecutor,
    workspace_id: str,
    identifier: str,
    options: IssueOptions | None = None,
    *,
    store: CacheStore | None = None,
) -> IssueResult:
    """Resolve an issue or PR from any supported identifier.

    Supports ZenHub node IDs, owner/repo#number, repo#number, bare numbers
    (with ``options.repo``) and branch names (with ``options.repo`` and a
    GitHub client).
    """
    opts = options or IssueOptions()
    cache_store = _store(store)

    try:
        parsed = parse_issue_ref(identifier)
    except UsageError:
        if opts.repo and opts.github is not None:
            return _issue_by_branch(client, workspace_id, identifier, opts, cache_store)
        raise

    if parsed.zenhub_id:
        return _issue_by_node(client, parsed.zenhub_id)

    if parsed.is_bare_number:
        if not opts.repo:
            raise UsageError(
                f"bare issue number {parsed.number} requires a repository (--repo)"
            )
        repo = lookup_repo_with_refresh(client, workspace_id, opts.repo, store=cache_store)
        return _issue_by_number(client, repo, parsed.number)

    repo = lookup_repo_with_refresh(
        client, workspace_id, parsed.repo_identifier, store=cache_store
    )
    return _issue_by_number(client, repo, parsed.number)


def store_pipelines(
    entries: list[CachedPipeline], workspace_id: str, *, store: CacheStore | None = None
) -> None:
    """Cache a pipeline listing a caller already fetched."""
    _store(store).set(pipeline_cache_key(workspace_id), entries, encode_entries)


def store_epics(
    entries: list[CachedEpic], workspace_id: str, *, store: CacheStore | None = None
) -> None:
    _store(store).set(epic_cache_key(workspace_id), entries, encode_entries)


def store_repos(
    entries: list[CachedRepo], workspace_id: str, *, store: CacheStore | None = None
) -> None:
    _store(store).set(repo_cache_key(workspace_id), entries, encode_entries)


def store_sprints(
    entries: list[CachedSprint], workspace_id: str, *, store: CacheStore | None = None
) -> None:
    _store(store).set(sprint_cache_key(workspace_id), entries, encode_entries)
