# tests/test_config.py
"""
Tests for fhir_map_tool.config
"""

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest
import yaml

from fhir_map_tool.config import DEFAULT_INSTALL_TYPES, AppConfig, PackageRef, load_config


def test_load_config_defaults_when_path_is_none():
    cfg = load_config(None)
    assert isinstance(cfg, AppConfig)
    assert cfg.default_output_dir == Path("outputs")
    assert cfg.max_recursion_depth == 256
    assert cfg.cache_ttl_seconds == 1.0
    assert cfg.install_resource_types == DEFAULT_INSTALL_TYPES
    assert cfg.strict_parsing is True


def test_load_config_reads_default_output_dir(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("default_output_dir: custom_out\n")
    cfg = load_config(p)
    assert cfg.default_output_dir == Path("custom_out")


def test_load_config_empty_file_uses_defaults(tmp_path):
    p = tmp_path / "empty.yaml"
    p.write_text("")
    cfg = load_config(p)
    assert cfg.default_output_dir == Path("outputs")


def test_load_config_reads_all_known_keys(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text(
        "definition_dirs:\n"
        "  - defs/cda\n"
        "  - defs/fhir\n"
        "packages:\n"
        "  - name: ch.fhir.ig.cda-fhir-maps\n"
        "    version: 0.3.0\n"
        "    url: packages/maps.tgz\n"
        "install_resource_types: [StructureMap, ConceptMap]\n"
        "cache_ttl_seconds: 5\n"
        "negative_cache_ttl_seconds: 0.5\n"
        "cache_capacity: 42\n"
        "max_recursion_depth: 16\n"
        "strict_parsing: false\n"
        "something_else: 1\n"
    )
    cfg = load_config(p)
    assert cfg.definition_dirs == (Path("defs/cda"), Path("defs/fhir"))
    assert cfg.packages == (
        PackageRef(name="ch.fhir.ig.cda-fhir-maps", version="0.3.0", url="packages/maps.tgz"),
    )
    assert cfg.install_resource_types == ("StructureMap", "ConceptMap")
    assert cfg.cache_ttl_seconds == 5.0
    assert cfg.negative_cache_ttl_seconds == 0.5
    assert cfg.cache_capacity == 42
    assert cfg.max_recursion_depth == 16
    assert cfg.strict_parsing is False
    assert cfg.extra == {"something_else": 1}


def test_load_config_package_version_defaults_to_current(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("packages:\n  - name: x\n    url: x.tgz\n")
    cfg = load_config(p)
    assert cfg.packages[0].version == "current"


def test_load_config_package_without_url_raises_type_error(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("packages:\n  - name: x\n")
    with pytest.raises(TypeError, match=r"^Package entry is missing key 'url'"):
        load_config(p)


def test_load_config_list_key_with_scalar_raises_type_error(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("definition_dirs: defs\n")
    with pytest.raises(TypeError, match=r"^Config key 'definition_dirs' must be a list"):
        load_config(p)


def test_load_config_non_mapping_raises_type_error(tmp_path):
    p = tmp_path / "bad.yaml"
    # YAML list at top level, not a mapping/dict
    p.write_text("- item1\n- item2\n")
    with pytest.raises(
        TypeError, match=r"^Config file must contain a mapping at top level"
    ):
        load_config(p)


def test_load_config_invalid_yaml_raises_yaml_error(tmp_path):
    p = tmp_path / "invalid.yaml"
    p.write_text("default_output_dir: [unclosed_list\n")
    with pytest.raises(yaml.YAMLError, match=r"^while parsing a flow sequence"):
        load_config(p)


def test_appconfig_is_immutable():
    cfg = AppConfig()
    with pytest.raises(FrozenInstanceError, match=r"^cannot assign to field"):
        cfg.default_output_dir = Path("cannot_assign")
