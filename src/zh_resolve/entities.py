"""
Cached entry shapes and the resolved results handed back to callers.

Cached entries mirror what is stored on disk; results are the minimal
projections resolvers return, so the storage format can change without
touching callers.
"""

from __future__ import annotations

import functools
from dataclasses import asdict, dataclass, field
from typing import Any

from pydantic import TypeAdapter

EPIC_TYPE_ZENHUB = "zenhub"
EPIC_TYPE_LEGACY = "legacy"
SPRINT_STATE_OPEN = "OPEN"


@dataclass(frozen=True)
class CachedPipeline:
    id: str
    name: str


@dataclass(frozen=True)
class CachedEpic:
    id: str
    title: str
    type: str
    # Legacy epics are backed by a GitHub issue.
    issue_number: int = 0
    repo_name: str = ""
    repo_owner: str = ""


@dataclass(frozen=True)
class CachedRepo:
    id: str
    gh_id: int
    name: str
    owner_name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner_name}/{self.name}"


@dataclass(frozen=True)
class CachedLabel:
    id: str
    name: str
    color: str = ""


@dataclass(frozen=True)
class CachedPriority:
    id: str
    name: str
    color: str = ""
    description: str = ""


@dataclass(frozen=True)
class CachedSprint:
    id: str
    name: str
    generated_name: str
    state: str
    start_at: str
    end_at: str

    @property
    def display_name(self) -> str:
        return self.name or self.generated_name


@dataclass(frozen=True)
class SprintAccessors:
    """Which sprints the API designated active/upcoming/previous at fetch time."""

    active_id: str = ""
    upcoming_id: str = ""
    previous_id: str = ""


@dataclass(frozen=True)
class SprintListing:
    sprints: list[CachedSprint] = field(default_factory=list)
    accessors: SprintAccessors = field(default_factory=SprintAccessors)


@dataclass(frozen=True)
class CachedUser:
    id: str
    name: str
    github_login: str | None = None


@dataclass(frozen=True)
class CachedZenhubLabel:
    """Organization-scoped label used on ZenHub epics."""

    id: str
    name: str
    color: str = ""


@dataclass(frozen=True)
class PipelineResult:
    id: str
    name: str


@dataclass(frozen=True)
class EpicResult:
    id: str
    title: str
    type: str


@dataclass(frozen=True)
class LabelResult:
    id: str
    name: str
    color: str


@dataclass(frozen=True)
class PriorityResult:
    id: str
    name: str
    color: str


@dataclass(frozen=True)
class SprintResult:
    id: str
    name: str


@dataclass(frozen=True)
class UserResult:
    id: str
    name: str
    login: str = ""

    @property
    def display_name(self) -> str:
        if self.login:
            return f"@{self.login}"
        return self.name or self.id


@dataclass(frozen=True)
class ZenhubLabelResult:
    id: str
    name: str
    color: str


@dataclass(frozen=True)
class IssueResult:
    id: str
    number: int
    repo_gh_id: int
    repo_owner: str
    repo_name: str

    @property
    def ref(self) -> str:
        return f"{self.repo_name}#{self.number}"

    @property
    def full_ref(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}#{self.number}"


def encode_entries(entries: list[Any]) -> list[dict[str, Any]]:
    return [asdict(e) for e in entries]


@functools.lru_cache(maxsize=None)
def _adapter(target: Any) -> TypeAdapter:
    return TypeAdapter(target)


def entry_decoder(cls: type) -> Any:
    """Build a decode callable turning a cached JSON list back into ``cls`` entries.

    Field types are validated, so a file with the right keys but wrong value
    types raises ``pydantic.ValidationError`` (a ``ValueError``) and reads as
    a cache miss.
    """

    def decode(raw: Any) -> list[Any]:
        if not isinstance(raw, list):
            raise TypeError(f"expected a list of {cls.__name__}, got {type(raw).__name__}")
        return _adapter(list[cls]).validate_python(raw)

    return decode


def decode_accessors(raw: Any) -> SprintAccessors:
    if not isinstance(raw, dict):
        raise TypeError("expected a sprint accessor object")
    return _adapter(SprintAccessors).validate_python(raw)


def to_dict(result: Any) -> dict[str, Any]:
    """Plain-dict form of a resolved result, including derived names."""
    data = asdict(result)
    for attr in ("display_name", "ref", "full_ref"):
        if hasattr(result, attr):
            data[attr] = getattr(result, attr)
    return data
