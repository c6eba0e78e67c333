"""
File-backed JSON cache with XDG-compliant paths.

Cache files live at $XDG_CACHE_HOME/zh/ (default ~/.cache/zh/), one JSON
document per key. Workspace-scoped resources are stored as
"<resource>-<workspace_id>.json" so a whole workspace can be cleared by
filename suffix.

Invalidation follows the invalidate-on-miss pattern: cached listings are
trusted until a lookup against them fails, then refreshed once from the API.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import CacheWriteError, UsageError
from .matching import MatchKind, MatchResult

logger = logging.getLogger(__name__)

APP_NAME = "zh"
DIR_MODE = 0o700
FILE_MODE = 0o600

# Raised by decode callables when a cached file has an incompatible shape.
DECODE_ERRORS = (TypeError, KeyError, ValueError, AttributeError)


def check_workspace_id(workspace_id: str) -> str:
    """Reject workspace IDs that would escape the flat cache directory."""
    if "/" in workspace_id or "\\" in workspace_id or workspace_id in (".", ".."):
        raise UsageError(f'invalid workspace ID "{workspace_id}"')
    return workspace_id


def cache_dir() -> Path:
    """Return the cache root for zh."""
    xdg = os.getenv("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".cache" / APP_NAME


@dataclass(frozen=True)
class CacheKey:
    """Identifies one cache file: a resource name plus optional workspace scope."""

    resource: str
    workspace_id: str = ""

    def __post_init__(self) -> None:
        check_workspace_id(self.workspace_id)

    @classmethod
    def unscoped(cls, resource: str) -> CacheKey:
        return cls(resource)

    @classmethod
    def scoped(cls, resource: str, workspace_id: str) -> CacheKey:
        return cls(resource, workspace_id)

    @property
    def filename(self) -> str:
        if self.workspace_id:
            return f"{self.resource}-{self.workspace_id}.json"
        return f"{self.resource}.json"


class CacheStore:
    """Key/value persistence, one pretty-printed JSON file per key."""

    def __init__(self, root: Path | str | None = None):
        self._root = Path(root) if root is not None else cache_dir()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: CacheKey) -> Path:
        return self._root / key.filename

    def get(
        self,
        key: CacheKey,
        decode: Callable[[Any], Any] | None = None,
    ) -> tuple[Any, bool]:
        """Read a cached value.

        A missing file, unreadable file, invalid JSON, or a payload that
        ``decode`` rejects all read as a miss: ``(None, False)``.
        """
        path = self.path_for(key)
        try:
            raw = json.loads(path.read_text())
        except (OSError, ValueError):
            return None, False

        if decode is None:
            return raw, True
        try:
            return decode(raw), True
        except DECODE_ERRORS as exc:
            logger.debug("Treating incompatible cache file %s as a miss: %s", path, exc)
            return None, False

    def set(
        self,
        key: CacheKey,
        value: Any,
        encode: Callable[[Any], Any] | None = None,
    ) -> None:
        """Serialize ``value`` and overwrite the file for ``key``."""
        path = self.path_for(key)
        payload = encode(value) if encode is not None else value
        try:
            data = json.dumps(payload, indent=2)
        except (TypeError, ValueError) as exc:
            raise CacheWriteError(path, exc) from exc

        try:
            self._root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            self._write_atomically(path, data)
        except OSError as exc:
            raise CacheWriteError(path, exc) from exc

    def _write_atomically(self, path: Path, data: str) -> None:
        # mkstemp creates the file owner-only; readers see the old file or the new one.
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(data)
            os.chmod(tmp_name, FILE_MODE)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self, key: CacheKey) -> None:
        path = self.path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise CacheWriteError(path, exc) from exc

    def clear_all(self) -> int:
        """Remove every cache file. Returns the number of files removed."""
        return self._remove_matching(".json")

    def clear_scope(self, workspace_id: str) -> int:
        """Remove every cache file scoped to ``workspace_id``."""
        return self._remove_matching(f"-{check_workspace_id(workspace_id)}.json")

    def list_keys(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(p.name for p in self._root.iterdir() if p.is_file() and p.suffix == ".json")

    def _remove_matching(self, suffix: str) -> int:
        if not self._root.is_dir():
            return 0

        removed = 0
        for path in sorted(self._root.iterdir()):
            if not path.is_file() or not path.name.endswith(suffix):
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise CacheWriteError(path, exc) from exc
            removed += 1
        return removed


def store_quietly(
    store: CacheStore,
    key: CacheKey,
    value: Any,
    encode: Callable[[Any], Any] | None = None,
) -> bool:
    """Persist freshly fetched data; a write failure is logged, not raised."""
    try:
        store.set(key, value, encode)
    except CacheWriteError as exc:
        logger.warning("Could not update cache, continuing with fresh data: %s", exc)
        return False
    return True


def resolve_with_refresh(
    store: CacheStore,
    key: CacheKey,
    refresh: Callable[[], Any],
    lookup: Callable[[Any], MatchResult],
    *,
    decode: Callable[[Any], Any] | None = None,
    encode: Callable[[Any], Any] | None = None,
) -> MatchResult:
    """Look up against the cache, refreshing once from the source on a miss.

    An ambiguous result against cached data is returned as-is: refreshing
    cannot narrow it down. Errors from ``refresh`` propagate unchanged.
    """
    cached, found = store.get(key, decode)
    if found:
        result = lookup(cached)
        if result.kind is not MatchKind.NO_MATCH:
            logger.debug("Cache %s for %s", result.kind.value, key.filename)
            return result
        logger.debug("Cache lookup missed for %s, refreshing", key.filename)
    else:
        logger.debug("No cached data for %s, fetching", key.filename)

    fresh = refresh()
    store_quietly(store, key, fresh, encode)
    return lookup(fresh)
