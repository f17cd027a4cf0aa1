"""Tests for config merging, layered loading and saving."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path

import pytest
import yaml

from blackbook import configuration
from blackbook.configuration import AssetSpec, ToolInstance, deep_merge, merge_layers
from blackbook.errors import ConfigInvalid


BASE = {
    "settings": {"source_repo": "~/dotfiles", "backup_retention": 3},
    "files": [
        {"name": "A", "source": "a.md", "target": "a.md"},
        {"name": "B", "source": "b.md", "target": "b.md"},
    ],
    "tags": ["a", "b", "c"],
}


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


# -- merge engine ------------------------------------------------------------


def test_merge_with_empty_is_identity():
    assert deep_merge(BASE, {}) == BASE
    assert deep_merge({}, BASE) == BASE
    assert deep_merge({}, {}) == {}


def test_merge_does_not_mutate_inputs():
    base = deepcopy(BASE)
    override = {"settings": {"backup_retention": 5}, "files": [{"name": "A", "target": "x.md"}]}
    snapshot = deepcopy(override)

    merged = deep_merge(base, override)
    merged["settings"]["source_repo"] = "changed"
    merged["files"][1]["source"] = "changed"

    assert base == BASE
    assert override == snapshot


def test_null_override_deletes_key():
    merged = deep_merge(BASE, {"tags": None, "settings": {"source_repo": None}})

    assert "tags" not in merged
    assert merged["settings"] == {"backup_retention": 3}


def test_nulls_never_survive_in_new_values():
    merged = deep_merge({}, {"plugins": {"x": {"enabled": None, "name": "x"}}})
    assert merged == {"plugins": {"x": {"name": "x"}}}


def test_files_merge_by_name():
    override = {
        "files": [
            {"name": "A", "target": "custom.md"},
            {"name": "C", "source": "c.md", "target": "c.md"},
        ]
    }

    merged = deep_merge(BASE, override)

    assert merged["files"] == [
        {"name": "A", "source": "a.md", "target": "custom.md"},
        {"name": "B", "source": "b.md", "target": "b.md"},
        {"name": "C", "source": "c.md", "target": "c.md"},
    ]


def test_id_key_takes_precedence_over_name():
    base = {"tools": [{"id": "one", "name": "Claude", "config_dir": "~/.claude"}]}
    override = {"tools": [{"id": "one", "name": "Renamed"}, {"id": "two", "name": "Claude", "config_dir": "~/.c2"}]}

    merged = deep_merge(base, override)

    assert merged["tools"] == [
        {"id": "one", "name": "Renamed", "config_dir": "~/.claude"},
        {"id": "two", "name": "Claude", "config_dir": "~/.c2"},
    ]


def test_keyed_merge_never_duplicates_entries():
    override = {"files": [{"name": "B", "target": "b2.md"}, {"name": "B", "source": "b2.md"}]}

    merged = deep_merge(BASE, override)

    names = [entry["name"] for entry in merged["files"]]
    assert names == ["A", "B"]
    assert merged["files"][1] == {"name": "B", "source": "b2.md", "target": "b2.md"}


def test_scalar_list_override_replaces():
    assert deep_merge(BASE, {"tags": ["x", "y"]})["tags"] == ["x", "y"]


def test_lists_without_reconciliation_key_replace():
    base = {"items": [{"path": "a"}, {"path": "b"}]}
    override = {"items": [{"path": "c"}]}
    assert deep_merge(base, override)["items"] == [{"path": "c"}]

    mixed = {"items": [{"name": "a"}, "plain"]}
    assert deep_merge(mixed, {"items": [{"name": "a", "x": 1}]})["items"] == [{"name": "a", "x": 1}]


def test_type_mismatch_takes_override():
    assert deep_merge({"settings": {"a": 1}}, {"settings": "flat"}) == {"settings": "flat"}
    assert deep_merge({"value": [1, 2]}, {"value": {"k": 1}}) == {"value": {"k": 1}}


def test_merge_layers_folds_in_order():
    merged = merge_layers({"a": 1, "b": 1}, {"b": 2}, {"c": 3, "a": None})
    assert merged == {"b": 2, "c": 3}


# -- loading -----------------------------------------------------------------


def test_missing_config_uses_defaults(tmp_path: Path):
    bundle = configuration.load_configuration(tmp_path / "config.yaml")

    assert bundle.status == "missing"
    assert bundle.merged["files"] == []
    assert bundle.merged["settings"]["backup_retention"] == 3
    assert bundle.settings.drift_policy == "prompt"


def test_local_layer_overrides_primary(tmp_path: Path):
    primary = _write(
        tmp_path / "config.yaml",
        "settings:\n  source_repo: ~/dotfiles\n"
        "files:\n"
        "  - name: AGENTS\n    source: AGENTS.md\n    target: AGENTS.md\n"
        "  - name: Dev\n    source: DEV.md\n    target: DEV.md\n",
    )
    local = _write(
        tmp_path / "config.local.yaml",
        "settings:\n  source_repo: /work/dotfiles\n"
        "files:\n"
        "  - name: AGENTS\n    target: CLAUDE.md\n"
        "  - name: Dev\n",
    )

    bundle = configuration.load_configuration(primary, local_path=local)

    assert bundle.status == "ready"
    assert bundle.files_loaded == [primary, local]
    assert bundle.settings.source_repo == "/work/dotfiles"
    assert bundle.merged["files"][0] == {"name": "AGENTS", "source": "AGENTS.md", "target": "CLAUDE.md"}
    assert len(bundle.merged["files"]) == 2


def test_default_path_discovers_local_layer(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(configuration.CONFIG_ENV_VAR, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    config_dir = tmp_path / "blackbook"
    _write(config_dir / "config.yaml", "settings:\n  backup_retention: 4\n")
    _write(config_dir / "config.local.yaml", "settings:\n  backup_retention: 7\n")

    bundle = configuration.load_configuration()

    assert bundle.config_path == config_dir / "config.yaml"
    assert bundle.settings.backup_retention == 7


def test_env_var_selects_config_file(tmp_path: Path):
    path = tmp_path / "custom.yaml"
    assert configuration.get_config_path({configuration.CONFIG_ENV_VAR: str(path)}) == path


def test_bad_yaml_is_reported(tmp_path: Path):
    primary = _write(tmp_path / "config.yaml", "files: [\n")

    bundle = configuration.load_configuration(primary)

    assert bundle.status == "invalid"
    assert any("Failed to parse" in diag.message for diag in bundle.errors)
    assert bundle.merged["files"] == []


def test_non_mapping_document_is_reported(tmp_path: Path):
    primary = _write(tmp_path / "config.yaml", "- just\n- a list\n")

    bundle = configuration.load_configuration(primary)

    assert bundle.status == "invalid"
    assert any("must contain a YAML mapping" in diag.message for diag in bundle.diagnostics)


def test_invalid_setting_types_raise_diagnostics(tmp_path: Path):
    primary = _write(
        tmp_path / "config.yaml",
        "settings:\n  backup_retention: lots\n  drift_policy: yolo\n  config_management: true\n",
    )

    bundle = configuration.load_configuration(primary)

    assert bundle.status == "invalid"
    messages = " ".join(diag.message for diag in bundle.errors)
    assert "backup_retention" in messages
    assert "drift_policy" in messages
    assert bundle.settings.backup_retention == 3
    assert bundle.settings.drift_policy == "prompt"
    assert bundle.settings.config_management is True


def test_unknown_keys_warn(tmp_path: Path):
    primary = _write(tmp_path / "config.yaml", "mystery:\n  value: 1\n")

    bundle = configuration.load_configuration(primary)

    assert bundle.status == "ready"
    assert any("Unknown configuration key" in diag.message for diag in bundle.diagnostics)


def test_load_instances_and_assets(tmp_path: Path):
    primary = _write(
        tmp_path / "config.yaml",
        "tools:\n"
        "  claude-code:\n"
        "    - id: default\n      name: Claude\n      config_dir: ~/.claude\n"
        "    - name: Claude Work\n      config_dir: ~/.claude-work\n      enabled: false\n"
        "  opencode:\n"
        "    - name: OpenCode\n"
        "files:\n"
        "  - name: AGENTS\n    source: AGENTS.md\n    target: AGENTS.md\n"
        "    overrides:\n      claude-code:default: CLAUDE.md\n"
        "  - name: skills\n    source: skills/\n    target: skills\n    tools: [claude-code]\n    kind: directory\n"
        "  - name: broken\n    source: x.md\n"
        "configs:\n"
        "  - name: settings\n    source: settings.json\n    target: settings.json\n",
    )

    bundle = configuration.load_configuration(primary)
    instances = configuration.load_instances(bundle)
    assets = configuration.load_assets(bundle)

    assert [inst.key for inst in instances] == ["claude-code:default", "claude-code:claude-code-2"]
    assert instances[1].enabled is False
    assert any("config_dir" in diag.message for diag in bundle.errors)

    assert [asset.name for asset in assets] == ["AGENTS", "skills"]
    assert assets[0].target_for(instances[0]) == "CLAUDE.md"
    assert assets[0].target_for(instances[1]) == "AGENTS.md"
    assert assets[1].tools == ("claude-code",)
    assert assets[1].kind == "directory"
    assert any("'files[2]' is missing required field(s): target" in diag.message for diag in bundle.errors)


def test_configs_section_requires_config_management(tmp_path: Path):
    primary = _write(
        tmp_path / "config.yaml",
        "settings:\n  config_management: true\n"
        "configs:\n  - name: settings\n    source: settings.json\n    target: settings.json\n",
    )

    assets = configuration.load_assets(configuration.load_configuration(primary))

    assert [asset.name for asset in assets] == ["settings"]


def test_asset_override_falls_back_to_tool_id():
    asset = AssetSpec(name="A", source="a.md", target="a.md", overrides={"opencode": "AGENTS.md"})
    instance = ToolInstance(tool_id="opencode", instance_id="default", name="OpenCode", config_dir="/x")
    assert asset.target_for(instance) == "AGENTS.md"


# -- saving ------------------------------------------------------------------


def test_save_preserves_unrelated_keys_and_order(tmp_path: Path):
    primary = _write(
        tmp_path / "config.yaml",
        "custom_section:\n  keep: me\n"
        "files:\n  - name: old\n    source: old.md\n    target: old.md\n"
        "settings:\n  source_repo: ~/dotfiles\n",
    )

    bundle = configuration.load_configuration(primary)
    updated = deepcopy(bundle.merged)
    updated["files"] = [{"name": "new", "source": "new.md", "target": "new.md"}]

    configuration.save_configuration(updated, primary)

    document = yaml.safe_load(primary.read_text(encoding="utf-8"))
    assert list(document.keys())[:3] == ["custom_section", "files", "settings"]
    assert document["custom_section"] == {"keep": "me"}
    assert document["files"] == [{"name": "new", "source": "new.md", "target": "new.md"}]
    assert not (tmp_path / "config.yaml.lock").exists()


def test_save_keeps_comments(tmp_path: Path):
    primary = _write(
        tmp_path / "config.yaml",
        "# my notes\n"
        "settings:\n"
        "  # where the dotfiles live\n"
        "  source_repo: ~/dotfiles\n"
        "  backup_retention: 3  # keep a few\n"
        "files: []  # none yet\n",
    )

    configuration.save_configuration(
        {"settings": {"source_repo": "~/other", "backup_retention": 3}},
        primary,
    )

    text = primary.read_text(encoding="utf-8")
    assert "# my notes" in text
    assert "# where the dotfiles live" in text
    assert "# keep a few" in text
    assert "# none yet" in text
    assert yaml.safe_load(text)["settings"] == {"source_repo": "~/other", "backup_retention": 3}


def test_save_fresh_file_omits_empty_sections(tmp_path: Path):
    primary = tmp_path / "nested" / "config.yaml"

    configuration.save_configuration(
        {"settings": {"backup_retention": 3}, "files": [], "tools": {}, "plugins": {}},
        primary,
    )

    document = yaml.safe_load(primary.read_text(encoding="utf-8"))
    assert document == {"settings": {"backup_retention": 3}}


def test_save_refuses_to_overwrite_unparseable_file(tmp_path: Path):
    primary = _write(tmp_path / "config.yaml", "files: [\n")

    with pytest.raises(ConfigInvalid):
        configuration.save_configuration({"settings": {}}, primary)

    assert primary.read_text(encoding="utf-8") == "files: [\n"
