"""Layered configuration loading, merging and saving for Blackbook."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from io import StringIO
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Sequence, Tuple

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.error import YAMLError as RoundTripYAMLError

from .errors import ConfigInvalid
from .fs_utils import atomic_write, file_lock
from .paths import get_config_dir

logger = logging.getLogger("blackbook.configuration")

CONFIG_FILENAME = "config.yaml"
LOCAL_CONFIG_FILENAME = "config.local.yaml"
CONFIG_ENV_VAR = "BLACKBOOK_CONFIG"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]
AssetKind = Literal["file", "directory"]

SchemaSpec = Dict[str, Any]

CONFIG_SECTIONS: Tuple[str, ...] = ("settings", "marketplaces", "tools", "files", "configs", "plugins")
MERGE_KEY_CANDIDATES: Tuple[str, ...] = ("id", "name")
ASSET_KINDS: Tuple[str, ...] = ("file", "directory", "glob")
DRIFT_POLICIES: Tuple[str, ...] = ("prompt", "auto-forward")


CONFIG_SCHEMA: SchemaSpec = {
    "settings": {
        "type": dict,
        "schema": {
            "source_repo": {"type": str},
            "backup_retention": {"type": int, "default": 3, "min": 1, "max": 100},
            "config_management": {"type": bool, "default": False},
            "drift_policy": {"type": str, "default": "prompt", "choices": DRIFT_POLICIES},
            "log_level": {"type": str, "default": "WARNING"},
            "package_manager": {"type": str, "default": "npm", "choices": ("npm", "pnpm", "bun")},
            "disabled_marketplaces": {"type": list, "item_type": str, "default_factory": list},
        },
        "default": {},
    },
    "marketplaces": {"type": dict, "default": {}},
    "tools": {"type": dict, "default": {}},
    "files": {"type": list, "item_type": dict, "default_factory": list},
    "configs": {"type": list, "item_type": dict, "default_factory": list},
    "plugins": {"type": dict, "default": {}},
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """The effective configuration plus where it came from."""

    config_path: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    layers: List[Dict[str, Any]] = field(default_factory=list)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def settings(self) -> "Settings":
        return Settings.from_config(self.merged)

    @property
    def errors(self) -> List[Diagnostic]:
        return [diag for diag in self.diagnostics if diag.level == "error"]


@dataclass
class Settings:
    """Typed view over the ``settings`` section."""

    source_repo: Optional[str] = None
    backup_retention: int = 3
    config_management: bool = False
    drift_policy: str = "prompt"
    log_level: str = "WARNING"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "Settings":
        raw = config.get("settings", {}) if config else {}
        source_repo = raw.get("source_repo")
        return cls(
            source_repo=str(source_repo) if source_repo else None,
            backup_retention=int(raw.get("backup_retention", 3)),
            config_management=bool(raw.get("config_management", False)),
            drift_policy=str(raw.get("drift_policy", "prompt")),
            log_level=str(raw.get("log_level", "WARNING")),
        )


@dataclass(frozen=True)
class ToolInstance:
    """One installation of a tool that assets can be synced into."""

    tool_id: str
    instance_id: str
    name: str
    config_dir: str
    enabled: bool = True

    @property
    def key(self) -> str:
        return f"{self.tool_id}:{self.instance_id}"


@dataclass(frozen=True)
class AssetSpec:
    """A named source-to-target sync declaration."""

    name: str
    source: str
    target: str
    overrides: Mapping[str, str] = field(default_factory=dict)
    tools: Optional[Tuple[str, ...]] = None
    kind: Optional[AssetKind] = None

    def applies_to(self, instance: ToolInstance) -> bool:
        return self.tools is None or instance.tool_id in self.tools

    def target_for(self, instance: ToolInstance) -> str:
        """Target path for ``instance``: a per-instance override, else the default."""
        for key in (instance.key, instance.tool_id):
            if key in self.overrides:
                return self.overrides[key]
        return self.target


# ---------------------------------------------------------------------------
# Merge engine
# ---------------------------------------------------------------------------


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` onto ``base`` and return a new mapping.

    - ``None`` in the override deletes the key.
    - Mappings merge recursively.
    - Lists of mappings that all carry an ``id`` (or else ``name``) merge by
      that key, keeping base order and appending new override entries.
    - Any other list is replaced wholesale; scalars and type mismatches take
      the override value.

    Neither input is modified.
    """
    result: Dict[str, Any] = {key: deepcopy(value) for key, value in base.items()}

    for key, value in override.items():
        if value is None:
            result.pop(key, None)
            continue

        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            result[key] = _merge_lists(current, value)
        else:
            result[key] = _strip_nulls(value)

    return result


def merge_layers(*layers: Mapping[str, Any]) -> Dict[str, Any]:
    """Fold configuration layers in order into one effective mapping."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        merged = deep_merge(merged, layer)
    return merged


def _find_merge_key(items: Sequence[Any]) -> Optional[str]:
    if not items:
        return None
    for candidate in MERGE_KEY_CANDIDATES:
        if all(
            isinstance(item, Mapping) and isinstance(item.get(candidate), str)
            for item in items
        ):
            return candidate
    return None


def _merge_lists(base: List[Any], override: List[Any]) -> List[Any]:
    merge_key = _find_merge_key(base + override)
    if merge_key is None:
        return [_strip_nulls(item) for item in override]

    result = list(base)
    positions = {item[merge_key]: index for index, item in enumerate(result)}
    for item in override:
        existing = positions.get(item[merge_key])
        if existing is None:
            positions[item[merge_key]] = len(result)
            result.append(_strip_nulls(item))
        else:
            result[existing] = deep_merge(result[existing], item)
    return result


def _strip_nulls(value: Any) -> Any:
    if isinstance(value, Mapping):
        return deep_merge({}, value)
    return deepcopy(value)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def get_config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    """Primary config file: ``$BLACKBOOK_CONFIG`` or ``<config dir>/config.yaml``."""
    env_source = os.environ if env is None else env
    explicit = env_source.get(CONFIG_ENV_VAR)
    if explicit:
        return Path(explicit).expanduser()
    return get_config_dir(env_source) / CONFIG_FILENAME


def load_configuration(
    config_path: Optional[Path] = None,
    local_path: Optional[Path] = None,
) -> ConfigurationBundle:
    """Load the primary config and its local override layer.

    When no explicit ``config_path`` is given, ``config.local.yaml`` beside the
    primary file is layered on top. Problems are reported as diagnostics and
    the bundle falls back to schema defaults.
    """
    primary = Path(config_path) if config_path else get_config_path()
    if local_path is None and config_path is None:
        local_path = primary.with_name(LOCAL_CONFIG_FILENAME)

    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []
    layers: List[Dict[str, Any]] = []
    status: ConfigurationStatus = "ready"

    if not primary.exists():
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No configuration file at '{primary}'; using defaults.",
                source=primary,
            )
        )
        status = "missing"
    else:
        with file_lock(primary):
            data = _load_yaml_file(primary, diagnostics)
        if data is not None:
            layers.append(data)
            files_loaded.append(primary)

    if local_path is not None and Path(local_path).exists():
        data = _load_yaml_file(Path(local_path), diagnostics)
        if data is not None:
            layers.append(data)
            files_loaded.append(Path(local_path))

    merged = merge_layers(*layers)
    _validate_schema(merged, diagnostics)

    if any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    logger.debug("Loaded configuration from %s (%d layers)", primary, len(layers))
    return ConfigurationBundle(
        config_path=primary,
        status=status,
        merged=merged,
        layers=layers,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_yaml_file(path: Path, diagnostics: List[Diagnostic]) -> Optional[Dict[str, Any]]:
    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Failed to parse '{path}': {exc}",
                source=path,
            )
        )
        return None

    if content is None:
        return {}

    if not isinstance(content, MutableMapping):
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"'{path}' must contain a YAML mapping, not a scalar or sequence.",
                source=path,
            )
        )
        return None

    return dict(content)


def load_instances(bundle: ConfigurationBundle) -> List[ToolInstance]:
    """Build tool instances from the ``tools`` section."""
    instances: List[ToolInstance] = []
    tools = bundle.merged.get("tools", {})

    for tool_id, entries in tools.items():
        if not isinstance(entries, list):
            bundle.diagnostics.append(
                Diagnostic(level="error", message=f"'tools.{tool_id}' must be a list of instances.")
            )
            continue
        for index, entry in enumerate(entries):
            if not isinstance(entry, Mapping) or not entry.get("config_dir"):
                bundle.diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'tools.{tool_id}[{index}]' needs a 'config_dir'.",
                    )
                )
                continue
            instance_id = str(entry.get("id") or "").strip() or (
                "default" if index == 0 else f"{tool_id}-{index + 1}"
            )
            instances.append(
                ToolInstance(
                    tool_id=str(tool_id),
                    instance_id=instance_id,
                    name=str(entry.get("name") or tool_id),
                    config_dir=str(entry["config_dir"]),
                    enabled=bool(entry.get("enabled", True)),
                )
            )

    return instances


def load_assets(bundle: ConfigurationBundle) -> List[AssetSpec]:
    """Build asset declarations from ``files`` (and ``configs`` when enabled)."""
    sections = ["files"]
    if bundle.settings.config_management:
        sections.append("configs")

    assets: List[AssetSpec] = []
    seen: set = set()
    for section in sections:
        for index, entry in enumerate(bundle.merged.get(section, [])):
            asset = _parse_asset(entry, f"{section}[{index}]", bundle.diagnostics)
            if asset is None:
                continue
            if asset.name in seen:
                bundle.diagnostics.append(
                    Diagnostic(
                        level="warning",
                        message=f"Duplicate asset name '{asset.name}' in '{section}[{index}]' ignored.",
                    )
                )
                continue
            seen.add(asset.name)
            assets.append(asset)
    return assets


def _parse_asset(entry: Any, where: str, diagnostics: List[Diagnostic]) -> Optional[AssetSpec]:
    if not isinstance(entry, Mapping):
        diagnostics.append(Diagnostic(level="error", message=f"'{where}' must be a mapping."))
        return None

    target = entry.get("target") or entry.get("default_target")
    missing = [key for key, value in (("name", entry.get("name")), ("source", entry.get("source")), ("target", target)) if not value]
    if missing:
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"'{where}' is missing required field(s): {', '.join(missing)}.",
            )
        )
        return None

    kind = entry.get("kind")
    if kind is not None and kind not in ASSET_KINDS:
        diagnostics.append(
            Diagnostic(level="error", message=f"'{where}.kind' must be one of {', '.join(ASSET_KINDS)}.")
        )
        return None

    overrides = entry.get("overrides") or {}
    tools = entry.get("tools")
    return AssetSpec(
        name=str(entry["name"]),
        source=str(entry["source"]),
        target=str(target),
        overrides={str(key): str(value) for key, value in overrides.items()},
        tools=tuple(str(tool) for tool in tools) if tools else None,
        kind=kind,
    )


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------


def save_configuration(config: Mapping[str, Any], config_path: Optional[Path] = None) -> Path:
    """Write the known sections of ``config`` into the primary config file.

    The file is patched in place through a round-trip document, so comments,
    key order and top-level keys Blackbook does not manage survive the save.
    """
    path = Path(config_path) if config_path else get_config_path()
    round_trip = _round_trip_yaml()

    with file_lock(path):
        document: Any = None
        if path.exists():
            try:
                document = round_trip.load(path.read_text(encoding="utf-8"))
            except RoundTripYAMLError as exc:
                raise ConfigInvalid(path, str(exc)) from exc
        if not isinstance(document, CommentedMap):
            document = CommentedMap()

        for section in CONFIG_SECTIONS:
            if section not in config:
                continue
            value = config[section]
            if not value and section not in document and section != "settings":
                continue
            _patch_node(document, section, deepcopy(value))

        stream = StringIO()
        round_trip.dump(document, stream)
        atomic_write(path, stream.getvalue())

    logger.info("Saved configuration to %s", path)
    return path


def _round_trip_yaml() -> YAML:
    round_trip = YAML()
    round_trip.preserve_quotes = True
    round_trip.default_flow_style = False
    round_trip.indent(mapping=2, sequence=4, offset=2)
    return round_trip


def _patch_node(parent: MutableMapping[str, Any], key: str, value: Any) -> None:
    # Mappings are updated key by key so comments on nested keys stay put.
    current = parent.get(key)
    if isinstance(current, CommentedMap) and isinstance(value, Mapping):
        for stale in [k for k in current if k not in value]:
            del current[stale]
        for child_key, child_value in value.items():
            _patch_node(current, child_key, child_value)
        return
    if current == value:
        return
    parent[key] = value


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    for key in list(target.keys()):
        if key not in schema:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Unknown configuration key '{path}.{key}'.",
                )
            )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            if "default" in spec or "default_factory" in spec:
                target[key] = _default_from_spec(spec)
            # Freshly defaulted sections still need their nested defaults.
            if key not in target or "schema" not in spec:
                continue

        value = target[key]
        expected_type = spec.get("type")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a mapping.",
                    )
                )
                target[key] = _default_from_spec(spec) or {}
                continue
            if "schema" in spec:
                _validate_section(value, spec["schema"], child_path, diagnostics)
        elif expected_type is list:
            if not isinstance(value, list):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a list.",
                    )
                )
                target[key] = _default_from_spec(spec) or []
                continue
            item_type = spec.get("item_type")
            if item_type is not None:
                filtered: List[Any] = []
                for idx, item in enumerate(value):
                    if isinstance(item, item_type):
                        filtered.append(item)
                    else:
                        diagnostics.append(
                            Diagnostic(
                                level="error",
                                message=(
                                    f"'{child_path}[{idx}]' must be of type "
                                    f"{item_type.__name__}."
                                ),
                            )
                        )
                target[key] = filtered
        elif expected_type and (
            not isinstance(value, expected_type)
            or (expected_type is int and isinstance(value, bool))
        ):
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {expected_type.__name__}.",
                )
            )
            _reset_to_default(target, key, spec)
        elif "choices" in spec and value not in spec["choices"]:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be one of {', '.join(spec['choices'])}.",
                )
            )
            _reset_to_default(target, key, spec)
        elif ("min" in spec and value < spec["min"]) or ("max" in spec and value > spec["max"]):
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be between {spec['min']} and {spec['max']}.",
                )
            )
            _reset_to_default(target, key, spec)


def _reset_to_default(target: Dict[str, Any], key: str, spec: SchemaSpec) -> None:
    if "default" in spec or "default_factory" in spec:
        target[key] = _default_from_spec(spec)
    else:
        target.pop(key, None)


__all__ = [
    "AssetSpec",
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "Diagnostic",
    "Settings",
    "ToolInstance",
    "deep_merge",
    "get_config_path",
    "load_assets",
    "load_configuration",
    "load_instances",
    "merge_layers",
    "save_configuration",
]
