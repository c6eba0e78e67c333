"""
Ordered matching strategies turning human input into a single cached entry.

Each strategy returns a three-way ``MatchResult``: matched, no match, or
ambiguous with the full candidate list. Strategies run in order and the
first result that is not ``NO_MATCH`` wins, so an exact ID always beats a
name or substring match.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .entities import (
    EPIC_TYPE_LEGACY,
    CachedEpic,
    CachedRepo,
    CachedSprint,
    CachedUser,
)
from .issue_ref import ISSUE_REF_PATTERN


class MatchKind(enum.Enum):
    MATCHED = "hit"
    NO_MATCH = "miss"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchResult:
    kind: MatchKind
    entry: Any = None
    candidates: tuple[Any, ...] = field(default_factory=tuple)

    @classmethod
    def matched(cls, entry: Any) -> MatchResult:
        return cls(MatchKind.MATCHED, entry)

    @classmethod
    def no_match(cls) -> MatchResult:
        return cls(MatchKind.NO_MATCH)

    @classmethod
    def ambiguous(cls, candidates: Iterable[Any]) -> MatchResult:
        return cls(MatchKind.AMBIGUOUS, candidates=tuple(candidates))

    @property
    def found(self) -> bool:
        return self.kind is MatchKind.MATCHED


Strategy = Callable[[Sequence[Any], str], MatchResult]
NamesFn = Callable[[Any], Iterable[str]]


def apply_alias(identifier: str, aliases: dict[str, str] | None) -> str:
    """Substitute a user-defined alias once; the target is matched normally."""
    if aliases and identifier in aliases:
        return aliases[identifier]
    return identifier


def run_strategies(
    entries: Sequence[Any], identifier: str, strategies: Sequence[Strategy]
) -> MatchResult:
    for strategy in strategies:
        result = strategy(entries, identifier)
        if result.kind is not MatchKind.NO_MATCH:
            return result
    return MatchResult.no_match()


def by_id(entries: Sequence[Any], identifier: str) -> MatchResult:
    # IDs are unique within a listing, so the first hit is the only hit.
    for entry in entries:
        if entry.id == identifier:
            return MatchResult.matched(entry)
    return MatchResult.no_match()


def _from_candidates(candidates: list[Any]) -> MatchResult:
    if len(candidates) == 1:
        return MatchResult.matched(candidates[0])
    if len(candidates) > 1:
        return MatchResult.ambiguous(candidates)
    return MatchResult.no_match()


def by_exact_name(names: NamesFn) -> Strategy:
    """Case-insensitive equality against any of the entry's names."""

    def strategy(entries: Sequence[Any], identifier: str) -> MatchResult:
        wanted = identifier.lower()
        candidates = [e for e in entries if any(n.lower() == wanted for n in names(e) if n)]
        return _from_candidates(candidates)

    return strategy


def by_unique_substring(names: NamesFn) -> Strategy:
    """Case-insensitive containment against any of the entry's names."""

    def strategy(entries: Sequence[Any], identifier: str) -> MatchResult:
        wanted = identifier.lower()
        candidates = [e for e in entries if any(wanted in n.lower() for n in names(e) if n)]
        return _from_candidates(candidates)

    return strategy


def by_issue_ref(entries: Sequence[Any], identifier: str) -> MatchResult:
    """Match ``owner/repo#number`` or ``repo#number`` against legacy epics."""
    m = ISSUE_REF_PATTERN.fullmatch(identifier)
    if m is None:
        return MatchResult.no_match()

    owner, repo, number = m.group(1), m.group(2), int(m.group(3))
    for entry in entries:
        if entry.type != EPIC_TYPE_LEGACY:
            continue
        if entry.issue_number != number or entry.repo_name.lower() != repo.lower():
            continue
        if owner and entry.repo_owner.lower() != owner.lower():
            continue
        return MatchResult.matched(entry)
    return MatchResult.no_match()


def _name(entry: Any) -> list[str]:
    return [entry.name]


def _epic_title(entry: CachedEpic) -> list[str]:
    return [entry.title]


def _sprint_names(entry: CachedSprint) -> list[str]:
    # With a custom name set, the generated name still identifies the sprint.
    if entry.name:
        return [entry.name, entry.generated_name]
    return [entry.generated_name]


def _github_login(entry: CachedUser) -> list[str]:
    return [entry.github_login] if entry.github_login else []


PIPELINE_STRATEGIES: list[Strategy] = [
    by_id,
    by_exact_name(_name),
    by_unique_substring(_name),
]
PRIORITY_STRATEGIES = PIPELINE_STRATEGIES
EPIC_STRATEGIES: list[Strategy] = [
    by_id,
    by_issue_ref,
    by_exact_name(_epic_title),
    by_unique_substring(_epic_title),
]
LABEL_STRATEGIES: list[Strategy] = [by_id, by_exact_name(_name)]
ZENHUB_LABEL_STRATEGIES = LABEL_STRATEGIES
USER_STRATEGIES: list[Strategy] = [
    by_id,
    by_exact_name(_github_login),
    by_exact_name(_name),
]
SPRINT_STRATEGIES: list[Strategy] = [
    by_id,
    by_exact_name(_sprint_names),
    by_unique_substring(_sprint_names),
]


def match_pipeline(entries: Sequence[Any], identifier: str) -> MatchResult:
    return run_strategies(entries, identifier, PIPELINE_STRATEGIES)


def match_priority(entries: Sequence[Any], identifier: str) -> MatchResult:
    return run_strategies(entries, identifier, PRIORITY_STRATEGIES)


def match_epic(entries: Sequence[Any], identifier: str) -> MatchResult:
    return run_strategies(entries, identifier, EPIC_STRATEGIES)


def match_label(entries: Sequence[Any], name: str) -> MatchResult:
    return run_strategies(entries, name, LABEL_STRATEGIES)


def match_zenhub_label(entries: Sequence[Any], name: str) -> MatchResult:
    return run_strategies(entries, name, ZENHUB_LABEL_STRATEGIES)


def match_user(entries: Sequence[Any], identifier: str) -> MatchResult:
    if identifier.startswith("@"):
        identifier = identifier[1:]
    return run_strategies(entries, identifier, USER_STRATEGIES)


def match_sprint(entries: Sequence[Any], identifier: str) -> MatchResult:
    return run_strategies(entries, identifier, SPRINT_STRATEGIES)


def lookup_repo(repos: Sequence[CachedRepo], identifier: str) -> MatchResult:
    """Find a repository by ``owner/name`` or bare ``name``.

    The long form must match both fields; the short form is ambiguous when
    the same name is connected under several owners.
    """
    if "/" in identifier:
        owner, name = identifier.split("/", 1)
        for repo in repos:
            if repo.owner_name.lower() == owner.lower() and repo.name.lower() == name.lower():
                return MatchResult.matched(repo)
        return MatchResult.no_match()

    wanted = identifier.lower()
    return _from_candidates([r for r in repos if r.name.lower() == wanted])


def repo_names_ambiguous(repos: Sequence[CachedRepo]) -> bool:
    """Whether any repo name is connected under two different owners."""
    owners: dict[str, str] = {}
    for repo in repos:
        previous = owners.setdefault(repo.name, repo.owner_name)
        if previous != repo.owner_name:
            return True
    return False
