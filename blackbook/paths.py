"""Path resolution for source entries, instance targets and XDG directories."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Mapping, Optional

APP_DIRNAME = "blackbook"

_URL_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def is_url(raw: str) -> bool:
    """Return True when ``raw`` carries a URL scheme (``https://`` and friends)."""
    return bool(_URL_PATTERN.match(raw))


def expand_path(raw: str) -> str:
    """Expand a leading ``~`` to the current user's home directory."""
    if raw == "~":
        return str(Path.home())
    if raw.startswith("~/"):
        return str(Path.home() / raw[2:])
    if raw.startswith("~"):
        # ~otheruser/... style paths
        return os.path.expanduser(raw)
    return raw


def resolve_source_path(raw: str, source_repo: Optional[str] = None) -> str:
    """Resolve a source entry into a concrete path.

    URLs pass through untouched so a fetch-capable caller can handle them,
    home-relative and absolute paths are expanded, and anything else is taken
    relative to ``source_repo``. Resolution is lexical; nothing is checked on
    disk.
    """
    if is_url(raw):
        return raw
    if raw.startswith("~") or os.path.isabs(raw):
        return expand_path(raw)
    if source_repo:
        return os.path.join(resolve_source_path(source_repo), raw)
    return raw


def resolve_target_path(raw: str, config_dir: str) -> str:
    """Resolve a target entry against an instance's config directory."""
    if raw.startswith("~") or os.path.isabs(raw):
        return expand_path(raw)
    return os.path.join(expand_path(config_dir), raw)


def get_config_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    env_source = os.environ if env is None else env
    base = env_source.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_DIRNAME


def get_cache_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    env_source = os.environ if env is None else env
    base = env_source.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(base) / APP_DIRNAME


__all__ = [
    "APP_DIRNAME",
    "expand_path",
    "get_cache_dir",
    "get_config_dir",
    "is_url",
    "resolve_source_path",
    "resolve_target_path",
]
