"""
Parsing of free-form issue identifiers.

Accepted formats, tried in order:
  - owner/repo#number or repo#number
  - a bare positive number (needs repository context from the caller)
  - a ZenHub node ID (base64-like string)
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import UsageError

ISSUE_REF_PATTERN = re.compile(r"^(?:([^/#]+)/)?([^/#]+)#([0-9]+)$")
BARE_NUMBER_PATTERN = re.compile(r"^[0-9]+$")

ZENHUB_ID_MIN_LENGTH = 10
_ZENHUB_ID_PATTERN = re.compile(r"^[A-Za-z0-9/+=]+$")


@dataclass(frozen=True)
class ParsedIssueRef:
    zenhub_id: str = ""
    owner: str = ""
    repo: str = ""
    number: int = 0

    @property
    def is_bare_number(self) -> bool:
        return not self.zenhub_id and not self.repo and self.number > 0

    @property
    def repo_identifier(self) -> str:
        """The repository part in the form accepted by repository lookup."""
        if self.owner:
            return f"{self.owner}/{self.repo}"
        return self.repo


def looks_like_zenhub_id(value: str) -> bool:
    """Whether ``value`` lexically resembles a base64-encoded node ID."""
    return len(value) >= ZENHUB_ID_MIN_LENGTH and _ZENHUB_ID_PATTERN.fullmatch(value) is not None


def parse_issue_ref(identifier: str) -> ParsedIssueRef:
    m = ISSUE_REF_PATTERN.fullmatch(identifier)
    if m:
        return ParsedIssueRef(owner=m.group(1) or "", repo=m.group(2), number=int(m.group(3)))

    if BARE_NUMBER_PATTERN.fullmatch(identifier) and int(identifier) > 0:
        return ParsedIssueRef(number=int(identifier))

    if looks_like_zenhub_id(identifier):
        return ParsedIssueRef(zenhub_id=identifier)

    raise UsageError(
        f'invalid issue identifier "{identifier}": '
        "expected repo#number, owner/repo#number, or ZenHub ID"
    )
