from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from zh_resolve import resolvers
from zh_resolve.cache import CacheStore
from zh_resolve.entities import (
    EPIC_TYPE_ZENHUB,
    CachedEpic,
    CachedPipeline,
    CachedRepo,
    CachedSprint,
    PipelineResult,
)
from zh_resolve.errors import AmbiguousError, ExitCode, NotFoundError, UsageError
from zh_resolve.fetchers import (
    LIST_LABELS_QUERY,
    LIST_PIPELINES_QUERY,
    LIST_PRIORITIES_QUERY,
    LIST_REPOS_QUERY,
    LIST_ROADMAP_EPICS_QUERY,
    LIST_SPRINTS_QUERY,
    LIST_USERS_QUERY,
    LIST_ZENHUB_EPICS_QUERY,
    LIST_ZENHUB_LABELS_QUERY,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeZenhub:
    """Answers each query from a fixed table, recording every call."""

    def __init__(self, responses: dict[str, Any] | None = None):
        self.responses: dict[str, Any] = dict(responses or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        args = dict(variables or {})
        self.calls.append((query, args))
        response = self.responses[query]
        if callable(response):
            return response(args)
        return response

    def count(self, query: str) -> int:
        return sum(1 for q, _ in self.calls if q == query)


def _single_page(path: list[str], nodes: list[dict[str, Any]], **workspace_extra: Any):
    payload: dict[str, Any] = {
        "pageInfo": {"hasNextPage": False, "endCursor": None},
        "nodes": nodes,
    }
    for key in reversed(path):
        payload = {key: payload}
    payload["workspace"].update(workspace_extra)
    return payload


def _pipelines(*names: str) -> dict[str, Any]:
    nodes = [{"id": f"p{i}", "name": name} for i, name in enumerate(names, start=1)]
    return {"workspace": {"pipelinesConnection": {"nodes": nodes}}}


def _labels(*names: str) -> dict[str, Any]:
    nodes = [{"id": f"l-{name}", "name": name, "color": "ccc"} for name in names]
    return {"workspace": {"repositoriesConnection": {"nodes": [{"labels": {"nodes": nodes}}]}}}


REPO_NODES = [
    {"id": "r1", "ghId": 101, "name": "api", "ownerName": "acme"},
    {"id": "r2", "ghId": 102, "name": "web", "ownerName": "acme"},
]


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "zh")


def test_pipeline_end_to_end_scenario(store: CacheStore):
    client = FakeZenhub(
        {LIST_PIPELINES_QUERY: _pipelines("New Issues", "In Development", "Code Review")}
    )

    assert resolvers.pipeline(client, "ws1", "develop", store=store) == PipelineResult(
        "p2", "In Development"
    )
    assert client.count(LIST_PIPELINES_QUERY) == 1

    assert resolvers.pipeline(client, "ws1", "Review", store=store).id == "p3"
    assert resolvers.pipeline(client, "ws1", "p2", store=store).name == "In Development"
    assert resolvers.pipeline(client, "ws1", "in", store=store).id == "p2"
    assert client.count(LIST_PIPELINES_QUERY) == 1

    # Renamed upstream: the stale cache misses once and is refreshed.
    client.responses[LIST_PIPELINES_QUERY] = _pipelines("New Issues", "Doing", "Code Review")
    assert resolvers.pipeline(client, "ws1", "doing", store=store).id == "p2"
    assert client.count(LIST_PIPELINES_QUERY) == 2

    # Other workspaces keep their own cache file.
    resolvers.pipeline(client, "ws2", "Doing", store=store)
    assert client.count(LIST_PIPELINES_QUERY) == 3
    assert store.list_keys() == ["pipelines-ws1.json", "pipelines-ws2.json"]


def test_pipeline_alias(store: CacheStore):
    client = FakeZenhub({LIST_PIPELINES_QUERY: _pipelines("Backlog", "In Development")})
    result = resolvers.pipeline(client, "ws1", "dev", {"dev": "In Development"}, store=store)
    assert result.id == "p2"


def test_pipeline_ambiguity_lists_candidates(store: CacheStore):
    resolvers.store_pipelines(
        [CachedPipeline("p1", "New Issues"), CachedPipeline("p2", "In Development")],
        "ws1",
        store=store,
    )
    client = FakeZenhub()

    with pytest.raises(AmbiguousError) as excinfo:
        resolvers.pipeline(client, "ws1", "n", store=store)

    err = excinfo.value
    assert err.exit_code == ExitCode.USAGE
    assert err.candidates == [("New Issues", "p1"), ("In Development", "p2")]
    assert err.message == (
        'pipeline "n" is ambiguous, matches 2 pipelines:\n'
        "  - New Issues [p1]\n"
        "  - In Development [p2]\n"
        "\n"
        "Use a more specific name or the pipeline ID."
    )
    assert client.calls == []


def test_pipeline_not_found_after_single_refresh(store: CacheStore):
    resolvers.store_pipelines([CachedPipeline("p1", "Backlog")], "ws1", store=store)
    client = FakeZenhub({LIST_PIPELINES_QUERY: _pipelines("Backlog")})

    with pytest.raises(NotFoundError) as excinfo:
        resolvers.pipeline(client, "ws1", "Shipped", store=store)

    assert str(excinfo.value) == (
        "pipeline \"Shipped\" not found; run 'zh pipeline list' to see available pipelines"
    )
    assert excinfo.value.exit_code == ExitCode.NOT_FOUND
    assert client.count(LIST_PIPELINES_QUERY) == 1


def test_epic_by_legacy_issue_reference(store: CacheStore):
    client = FakeZenhub(
        {
            LIST_ZENHUB_EPICS_QUERY: _single_page(
                ["workspace", "zenhubEpics"], [{"id": "e1", "title": "Q1 Roadmap"}]
            ),
            LIST_ROADMAP_EPICS_QUERY: _single_page(
                ["workspace", "roadmap", "items"],
                [
                    {
                        "__typename": "Epic",
                        "id": "e2",
                        "issue": {
                            "title": "Payments",
                            "number": 42,
                            "repository": {"name": "api", "ownerName": "acme"},
                        },
                    }
                ],
            ),
        }
    )

    result = resolvers.epic(client, "ws1", "acme/api#42", store=store)
    assert (result.id, result.title, result.type) == ("e2", "Payments", "legacy")

    assert resolvers.epic(client, "ws1", "roadmap", store=store).id == "e1"
    assert client.count(LIST_ZENHUB_EPICS_QUERY) == 1


def test_labels_batch_refreshes_once_and_reports_all_misses(store: CacheStore):
    client = FakeZenhub({LIST_LABELS_QUERY: _labels("bug")})
    resolvers.label(client, "ws1", "bug", store=store)
    client.responses[LIST_LABELS_QUERY] = _labels("bug", "docs")

    with pytest.raises(NotFoundError) as excinfo:
        resolvers.labels(client, "ws1", ["bug", "nope", "docs", "missing"], store=store)

    assert excinfo.value.message == (
        "label(s) not found: nope, missing; run 'zh label list' to see available labels"
    )
    assert client.count(LIST_LABELS_QUERY) == 2


def test_labels_batch_orders_first_pass_hits_first(store: CacheStore):
    client = FakeZenhub({LIST_LABELS_QUERY: _labels("bug")})
    resolvers.label(client, "ws1", "bug", store=store)
    client.responses[LIST_LABELS_QUERY] = _labels("bug", "docs")

    results = resolvers.labels(client, "ws1", ["docs", "BUG"], store=store)

    assert [r.name for r in results] == ["bug", "docs"]


def test_labels_batch_on_empty_cache_fetches_once(store: CacheStore):
    client = FakeZenhub({LIST_LABELS_QUERY: _labels("bug")})

    with pytest.raises(NotFoundError):
        resolvers.labels(client, "ws1", ["bug", "nope"], store=store)

    assert client.count(LIST_LABELS_QUERY) == 1


def test_users_batch_and_single(store: CacheStore):
    client = FakeZenhub(
        {
            LIST_USERS_QUERY: _single_page(
                ["workspace", "zenhubUsers"],
                [
                    {"id": "u1", "name": "Alice Smith", "githubUser": {"login": "alice"}},
                    {"id": "u2", "name": "Bob", "githubUser": None},
                ],
            )
        }
    )

    single = resolvers.user(client, "ws1", "@alice", store=store)
    assert (single.id, single.login, single.display_name) == ("u1", "alice", "@alice")

    batch = resolvers.users(client, "ws1", ["bob", "alice"], store=store)
    assert [u.id for u in batch] == ["u2", "u1"]
    assert batch[0].display_name == "Bob"

    with pytest.raises(NotFoundError) as excinfo:
        resolvers.users(client, "ws1", ["carol", "dave"], store=store)
    assert excinfo.value.message == "user(s) not found: carol, dave"


def _sprint_node(sprint_id: str, state: str, start: str, end: str, name: str = "") -> dict:
    return {
        "id": sprint_id,
        "name": name,
        "generatedName": f"Sprint {sprint_id}",
        "state": state,
        "startAt": start,
        "endAt": end,
    }


SPRINT_NODES = [
    _sprint_node("s3", "OPEN", "2026-10-26T00:00:00Z", "2026-11-09T00:00:00Z"),
    _sprint_node("s2", "OPEN", "2026-10-12T00:00:00Z", "2026-10-26T00:00:00Z", "Launch"),
    _sprint_node("s1", "CLOSED", "2026-09-28T00:00:00Z", "2026-10-12T00:00:00Z"),
]


def _sprints(active=None, upcoming=None, previous=None) -> dict[str, Any]:
    return _single_page(
        ["workspace", "sprints"],
        SPRINT_NODES,
        activeSprint=active,
        upcomingSprint=upcoming,
        previousSprint=previous,
    )


def test_sprint_relative_uses_accessors(store: CacheStore):
    client = FakeZenhub(
        {LIST_SPRINTS_QUERY: _sprints({"id": "s2"}, {"id": "s3"}, {"id": "s1"})}
    )

    assert resolvers.sprint(client, "ws1", "current", now=NOW, store=store).name == "Launch"
    assert resolvers.sprint(client, "ws1", "NEXT", now=NOW, store=store).id == "s3"
    assert resolvers.sprint(client, "ws1", "previous", now=NOW, store=store).name == "Sprint s1"
    assert client.count(LIST_SPRINTS_QUERY) == 1


def test_sprint_current_falls_back_to_dates(store: CacheStore):
    client = FakeZenhub({LIST_SPRINTS_QUERY: _sprints()})

    result = resolvers.sprint(client, "ws1", "current", now=NOW, store=store)

    assert result.id == "s2"


def test_sprint_relative_without_accessor_is_not_found(store: CacheStore):
    client = FakeZenhub({LIST_SPRINTS_QUERY: _sprints()})

    with pytest.raises(NotFoundError, match="no upcoming sprint found"):
        resolvers.sprint(client, "ws1", "next", now=NOW, store=store)
    with pytest.raises(NotFoundError, match="no previous sprint found"):
        resolvers.sprint(client, "ws1", "previous", now=NOW, store=store)

    late = datetime(2027, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(NotFoundError, match="no active sprint"):
        resolvers.sprint(client, "ws1", "current", now=late, store=store)


def test_active_sprint_by_date_skips_unparsable_and_closed():
    sprints = [
        CachedSprint("bad", "", "Bad", "OPEN", "not a date", "2026-10-26T00:00:00Z"),
        CachedSprint("closed", "", "Closed", "CLOSED", "2026-10-12T00:00:00Z", "2026-10-26T00:00:00Z"),
        CachedSprint("naive", "", "Naive", "OPEN", "2026-10-12T00:00:00", "2026-10-26T00:00:00"),
    ]
    assert resolvers.active_sprint_by_date(sprints, NOW) == "naive"
    assert resolvers.active_sprint_by_date(sprints[:2], NOW) == ""


def test_sprint_by_name(store: CacheStore):
    client = FakeZenhub({LIST_SPRINTS_QUERY: _sprints()})
    assert resolvers.sprint(client, "ws1", "launch", store=store).id == "s2"
    assert resolvers.sprint(client, "ws1", "Sprint s2", store=store).id == "s2"


CACHED_SPRINTS = [
    CachedSprint("s2", "Launch", "Sprint s2", "OPEN", "2026-10-12T00:00:00Z", "2026-10-26T00:00:00Z"),
    CachedSprint("s3", "", "Sprint s3", "OPEN", "2026-10-26T00:00:00Z", "2026-11-09T00:00:00Z"),
]


def test_sprint_relative_with_only_list_cached_refetches(store: CacheStore):
    resolvers.store_sprints(CACHED_SPRINTS, "ws1", store=store)
    client = FakeZenhub({LIST_SPRINTS_QUERY: _sprints({"id": "s2"}, {"id": "s3"})})

    assert resolvers.sprint(client, "ws1", "current", now=NOW, store=store).id == "s2"
    assert client.count(LIST_SPRINTS_QUERY) == 1
    assert store.list_keys() == ["sprint-accessors-ws1.json", "sprints-ws1.json"]

    assert resolvers.sprint(client, "ws1", "next", now=NOW, store=store).id == "s3"
    assert client.count(LIST_SPRINTS_QUERY) == 1


def test_sprint_relative_with_only_accessors_cached_refetches(store: CacheStore):
    store.set(
        resolvers.sprint_accessors_cache_key("ws1"),
        {"active_id": "s2", "upcoming_id": "", "previous_id": ""},
    )
    client = FakeZenhub({LIST_SPRINTS_QUERY: _sprints({"id": "s2"})})

    assert resolvers.sprint(client, "ws1", "current", now=NOW, store=store).name == "Launch"
    assert client.count(LIST_SPRINTS_QUERY) == 1
    assert store.list_keys() == ["sprint-accessors-ws1.json", "sprints-ws1.json"]


def test_sprint_relative_refetches_over_mistyped_cache(store: CacheStore):
    store.set(
        resolvers.sprint_cache_key("ws1"),
        [
            {
                "id": "s2",
                "name": "Launch",
                "generated_name": "Sprint s2",
                "state": "OPEN",
                "start_at": 1,
                "end_at": 2,
            }
        ],
    )
    store.set(
        resolvers.sprint_accessors_cache_key("ws1"),
        {"active_id": "", "upcoming_id": "", "previous_id": ""},
    )
    client = FakeZenhub({LIST_SPRINTS_QUERY: _sprints()})

    assert resolvers.sprint(client, "ws1", "current", now=NOW, store=store).id == "s2"
    assert client.count(LIST_SPRINTS_QUERY) == 1


def test_pipeline_refetches_over_mistyped_cache(store: CacheStore):
    store.set(resolvers.pipeline_cache_key("ws1"), [{"id": "p1", "name": 5}])
    client = FakeZenhub({LIST_PIPELINES_QUERY: _pipelines("Backlog")})

    assert resolvers.pipeline(client, "ws1", "backlog", store=store).id == "p1"
    assert client.count(LIST_PIPELINES_QUERY) == 1


def test_sprint_ambiguity_does_not_refresh(store: CacheStore):
    resolvers.store_sprints(CACHED_SPRINTS, "ws1", store=store)
    client = FakeZenhub()

    with pytest.raises(AmbiguousError) as excinfo:
        resolvers.sprint(client, "ws1", "sprint s", store=store)

    assert [c[1] for c in excinfo.value.candidates] == ["s2", "s3"]
    assert client.calls == []


def test_epic_alias(store: CacheStore):
    client = FakeZenhub(
        {
            LIST_ZENHUB_EPICS_QUERY: _single_page(
                ["workspace", "zenhubEpics"], [{"id": "e1", "title": "Q1 Roadmap"}]
            ),
            LIST_ROADMAP_EPICS_QUERY: _single_page(["workspace", "roadmap", "items"], []),
        }
    )

    result = resolvers.epic(client, "ws1", "q1", {"q1": "Q1 Roadmap"}, store=store)

    assert (result.id, result.title) == ("e1", "Q1 Roadmap")


def test_epic_ambiguity_does_not_refresh(store: CacheStore):
    resolvers.store_epics(
        [
            CachedEpic("e1", "Payments revamp", EPIC_TYPE_ZENHUB),
            CachedEpic("e2", "Payments cleanup", EPIC_TYPE_ZENHUB),
        ],
        "ws1",
        store=store,
    )
    client = FakeZenhub()

    with pytest.raises(AmbiguousError) as excinfo:
        resolvers.epic(client, "ws1", "payments", store=store)

    assert excinfo.value.candidates == [("Payments revamp", "e1"), ("Payments cleanup", "e2")]
    assert client.calls == []


ISSUE_NODE = {
    "id": "Z2lkOi8vcmFwdG9yL0lzc3VlLzEyMzQ1",
    "number": 12,
    "repository": {"ghId": 101, "name": "api", "ownerName": "acme"},
}


def _issue_client(issue: dict[str, Any] | None = ISSUE_NODE) -> FakeZenhub:
    return FakeZenhub(
        {
            LIST_REPOS_QUERY: _single_page(["workspace", "repositoriesConnection"], REPO_NODES),
            resolvers.ISSUE_BY_INFO_QUERY: {"issueByInfo": issue},
            resolvers.ISSUE_BY_NODE_QUERY: {"node": issue},
        }
    )


def test_issue_by_reference(store: CacheStore):
    client = _issue_client()

    result = resolvers.issue(client, "ws1", "acme/api#12", store=store)

    assert result.id == ISSUE_NODE["id"]
    assert result.full_ref == "acme/api#12"
    assert result.ref == "api#12"
    assert client.calls[-1] == (
        resolvers.ISSUE_BY_INFO_QUERY,
        {"repositoryGhId": 101, "issueNumber": 12},
    )


def test_issue_bare_number_needs_repo(store: CacheStore):
    client = _issue_client()

    with pytest.raises(UsageError, match="bare issue number 12"):
        resolvers.issue(client, "ws1", "12", store=store)

    options = resolvers.IssueOptions(repo="api")
    assert resolvers.issue(client, "ws1", "12", options, store=store).number == 12


def test_issue_by_zenhub_id(store: CacheStore):
    client = _issue_client()
    result = resolvers.issue(client, "ws1", ISSUE_NODE["id"], store=store)
    assert result.repo_gh_id == 101
    assert client.count(LIST_REPOS_QUERY) == 0

    missing = _issue_client(issue=None)
    with pytest.raises(NotFoundError, match="not found"):
        resolvers.issue(missing, "ws1", ISSUE_NODE["id"], store=store)


def test_issue_missing_in_repository(store: CacheStore):
    client = _issue_client(issue=None)
    with pytest.raises(NotFoundError) as excinfo:
        resolvers.issue(client, "ws1", "api#99", store=store)
    assert excinfo.value.message == "issue acme/api#99 not found"


def test_issue_unknown_repo(store: CacheStore):
    client = _issue_client()
    with pytest.raises(NotFoundError, match='repository "mobile" not found in workspace'):
        resolvers.issue(client, "ws1", "mobile#1", store=store)
    # One initial fetch; the miss on fresh data is final.
    assert client.count(LIST_REPOS_QUERY) == 1


def test_issue_ambiguous_repo_name(store: CacheStore):
    resolvers.store_repos(
        [CachedRepo("r1", 101, "api", "acme"), CachedRepo("r3", 103, "api", "forks")],
        "ws1",
        store=store,
    )
    client = _issue_client()

    with pytest.raises(AmbiguousError) as excinfo:
        resolvers.issue(client, "ws1", "api#12", store=store)

    assert "  - acme/api\n  - forks/api" in excinfo.value.message
    assert excinfo.value.message.endswith("Use the full owner/repo format.")
    assert client.calls == []


class FakeGitHub:
    def __init__(self, numbers: list[int]):
        self.numbers = numbers
        self.calls: list[dict[str, Any]] = []

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append(dict(variables or {}))
        nodes = [{"number": n} for n in self.numbers]
        return {"repository": {"pullRequests": {"nodes": nodes}}}


def test_issue_by_branch_name(store: CacheStore):
    client = _issue_client()
    github = FakeGitHub([12])
    options = resolvers.IssueOptions(repo="acme/api", github=github)

    result = resolvers.issue(client, "ws1", "feature/login-form", options, store=store)

    assert result.number == 12
    assert github.calls == [{"owner": "acme", "repo": "api", "head": "feature/login-form"}]


def test_issue_branch_without_pr(store: CacheStore):
    client = _issue_client()
    options = resolvers.IssueOptions(repo="api", github=FakeGitHub([]))

    with pytest.raises(NotFoundError) as excinfo:
        resolvers.issue(client, "ws1", "feature/x", options, store=store)

    assert excinfo.value.message == 'no PR found for branch "feature/x" in acme/api'


def test_branch_name_without_github_is_usage_error(store: CacheStore):
    client = _issue_client()
    with pytest.raises(UsageError, match="invalid issue identifier"):
        resolvers.issue(client, "ws1", "feature/x", resolvers.IssueOptions(repo="api"), store=store)


def test_priority_by_substring(store: CacheStore):
    nodes = [
        {"id": "pr1", "name": "High priority", "color": "red", "description": ""},
        {"id": "pr2", "name": "Low priority", "color": "grey", "description": None},
    ]
    client = FakeZenhub(
        {LIST_PRIORITIES_QUERY: {"workspace": {"prioritiesConnection": {"nodes": nodes}}}}
    )

    result = resolvers.priority(client, "ws1", "high", store=store)

    assert (result.id, result.name, result.color) == ("pr1", "High priority", "red")
    with pytest.raises(AmbiguousError):
        resolvers.priority(client, "ws1", "priority", store=store)


def test_zenhub_labels(store: CacheStore):
    client = FakeZenhub(
        {
            LIST_ZENHUB_LABELS_QUERY: _single_page(
                ["workspace", "zenhubLabels"],
                [{"id": "z1", "name": "platform", "color": "00f"}],
            )
        }
    )

    assert resolvers.zenhub_label(client, "ws1", "Platform", store=store).id == "z1"
    assert [r.id for r in resolvers.zenhub_labels(client, "ws1", ["z1"], store=store)] == ["z1"]
    with pytest.raises(NotFoundError, match='label "infra" not found in workspace'):
        resolvers.zenhub_label(client, "ws1", "infra", store=store)
