"""
GraphQL clients for the ZenHub API and (optionally) the GitHub API.

Both clients expose one synchronous ``execute(query, variables)`` returning
the ``data`` payload of the response, and raise ``ApiError`` with a short
code classifying the failure so resolvers never inspect transport details.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any, Protocol

import httpx

from .config import DEFAULT_API_ENDPOINT, DEFAULT_TIMEOUT_SECONDS, Settings

logger = logging.getLogger(__name__)

GITHUB_GRAPHQL_ENDPOINT = "https://api.github.com/graphql"
USER_AGENT = "oh-my-zenhub"
LOG_BODY_LIMIT = 2000


class ApiError(RuntimeError):
    """Raised when a remote GraphQL call fails.

    Codes: ``not_found``, ``auth_failed``, ``rate_limited``, ``api_error``,
    ``transport_error``.
    """

    def __init__(self, code: str, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retry_after = retry_after


class GraphQLExecutor(Protocol):
    def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]: ...


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _extract_data(payload: Any, source: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ApiError("api_error", f"{source} returned a non-object response")

    errors = payload.get("errors") or []
    if errors:
        messages = [str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors]
        if len(messages) == 1:
            raise ApiError("api_error", messages[0])
        raise ApiError(
            "api_error",
            f"{len(messages)} GraphQL errors:" + "".join(f"\n  - {m}" for m in messages),
        )

    data = payload.get("data")
    if not isinstance(data, dict):
        raise ApiError("api_error", f"{source} response has no data")
    return data


class _HttpGraphQLClient:
    """Shared HTTP plumbing for bearer-token GraphQL endpoints."""

    source = "API"

    def __init__(
        self,
        token: str,
        endpoint: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ):
        self._endpoint = endpoint
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def __enter__(self):
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables

        logger.debug("-> POST %s", self._endpoint)
        logger.debug("-> Query: %s", query)
        if variables:
            logger.debug("-> Variables: %s", json.dumps(variables))

        try:
            resp = self._http.post(self._endpoint, json=body, headers=self._headers)
        except httpx.HTTPError as exc:
            raise ApiError(
                "transport_error", f"{self.source} request failed: {exc}"
            ) from exc

        logger.debug("<- %d %s", resp.status_code, resp.reason_phrase)
        logger.debug("<- Body: %s", _truncate(resp.text, LOG_BODY_LIMIT))

        self._raise_for_status(resp)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise ApiError("api_error", f"parsing {self.source} response: {exc}") from exc
        return _extract_data(payload, self.source)

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if status == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            if retry_after is not None:
                message = f"rate limited, retry after {retry_after} seconds"
            else:
                message = "rate limited, try again later"
            raise ApiError("rate_limited", message, retry_after=retry_after)
        if status in (401, 403):
            raise ApiError(
                "auth_failed", f"{self.source} authentication failed, check your credentials"
            )
        if status == 404:
            raise ApiError("not_found", f"{self.source} endpoint not found: {self._endpoint}")
        if status < 200 or status >= 300:
            raise ApiError(
                "api_error",
                f"{self.source} returned HTTP {status}: {_truncate(resp.text, 200)}",
            )


class ZenhubClient(_HttpGraphQLClient):
    """ZenHub GraphQL API client."""

    source = "ZenHub API"

    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_API_ENDPOINT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(api_key, endpoint, timeout_seconds, http_client)

    @classmethod
    def from_config(cls, settings: Settings) -> ZenhubClient:
        if not settings.api_key:
            raise ValueError("ZH_API_KEY is not set")
        return cls(settings.api_key, settings.endpoint, settings.timeout_seconds)


class GitHubClient(_HttpGraphQLClient):
    """GitHub GraphQL access through a personal access token or the gh CLI."""

    source = "GitHub API"

    def __init__(
        self,
        method: str,
        token: str | None = None,
        endpoint: str = GITHUB_GRAPHQL_ENDPOINT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
        gh_command: str = "gh",
    ):
        if method not in {"gh", "pat"}:
            raise ValueError("GitHub method must be one of: gh, pat")
        if method == "pat" and not token:
            raise ValueError("a GitHub token is required for method 'pat'")
        super().__init__(token or "", endpoint, timeout_seconds, http_client)
        self._method = method
        self._gh_command = gh_command
        self._timeout_seconds = timeout_seconds

    @property
    def method(self) -> str:
        return self._method

    @classmethod
    def from_config(cls, settings: Settings) -> GitHubClient | None:
        if settings.github_method in ("", "none"):
            return None
        return cls(
            settings.github_method,
            settings.github_token,
            timeout_seconds=settings.timeout_seconds,
        )

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._method == "gh":
            return self._execute_via_gh(query, variables)
        return super().execute(query, variables)

    def _execute_via_gh(self, query: str, variables: dict[str, Any] | None) -> dict[str, Any]:
        # Body goes through stdin so "$" in GraphQL variables needs no escaping.
        body = json.dumps({"query": query, "variables": variables or {}})
        args = [self._gh_command, "api", "graphql", "--input", "-"]
        logger.debug("-> %s", " ".join(args))

        try:
            proc = subprocess.run(
                args,
                input=body,
                capture_output=True,
                text=True,
                timeout=self._timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ApiError("transport_error", f"gh CLI failed: {exc}") from exc

        if proc.returncode != 0:
            message = proc.stderr.strip() or f"exit status {proc.returncode}"
            raise ApiError("api_error", f"gh CLI error: {message}")

        logger.debug("<- gh response: %d bytes", len(proc.stdout))
        try:
            payload = json.loads(proc.stdout)
        except ValueError as exc:
            raise ApiError("api_error", f"parsing gh CLI response: {exc}") from exc
        return _extract_data(payload, self.source)
