"""
Environment-driven settings for oh-my-zenhub.

Settings are read once per process and passed explicitly to clients and
resolvers; nothing here is cached at module level.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_API_ENDPOINT = "https://api.zenhub.com/public/graphql"
DEFAULT_TIMEOUT_SECONDS = 30.0
GITHUB_METHODS = {"none", "gh", "pat"}


def _parse_alias_env(var_name: str) -> dict[str, str]:
    raw = os.getenv(var_name)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items()}
    except Exception:
        pass
    logger.warning("Ignoring invalid %s value; expected a JSON object", var_name)
    return {}


def _parse_float_env(var_name: str, default: float) -> float:
    raw = os.getenv(var_name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r", var_name, raw)
        return default


@dataclass
class Settings:
    """Resolved configuration for one process."""

    api_key: str = ""
    workspace_id: str = ""
    endpoint: str = DEFAULT_API_ENDPOINT
    github_method: str = "none"
    github_token: str | None = None
    pipeline_aliases: dict[str, str] = field(default_factory=dict)
    epic_aliases: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> Settings:
        token = os.getenv("ZH_GITHUB_TOKEN") or None
        method = (os.getenv("ZH_GITHUB_METHOD") or "").strip().lower()
        if not method:
            # A token on its own implies a personal access token.
            method = "pat" if token else "none"
        if method not in GITHUB_METHODS:
            raise ValueError("ZH_GITHUB_METHOD must be one of: none, gh, pat")

        return cls(
            api_key=os.getenv("ZH_API_KEY", ""),
            workspace_id=os.getenv("ZH_WORKSPACE", ""),
            endpoint=os.getenv("ZH_API_ENDPOINT") or DEFAULT_API_ENDPOINT,
            github_method=method,
            github_token=token,
            pipeline_aliases=_parse_alias_env("ZH_PIPELINE_ALIASES"),
            epic_aliases=_parse_alias_env("ZH_EPIC_ALIASES"),
            timeout_seconds=_parse_float_env("ZH_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
        )
