# tests/test_cli.py
"""
Tests for fhir_map_tool/cli.
"""

import json as _json
import os
from pathlib import Path

import pytest

from fhir_map_tool import __version__, cli


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

PATIENT_XML = (
    '<Patient xmlns="http://hl7.org/fhir">'
    '<id value="p1"/><active value="true"/><gender value="male"/>'
    "</Patient>"
)

PATIENT_JSON = {"resourceType": "Patient", "id": "p1", "gender": "male"}


@pytest.fixture
def defs_dir(tmp_path, kit) -> Path:
    d = tmp_path / "defs"
    d.mkdir()
    for i, sd in enumerate(kit.fhir_kit() + kit.cda_kit()):
        (d / f"{i:02d}-{sd['name']}.json").write_text(_json.dumps(sd), encoding="utf-8")
    return d


def write_file(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def write_map(tmp_path: Path, kit, name: str = "map.json") -> Path:
    sm = {
        "resourceType": "StructureMap",
        "url": "http://example.org/fhir/StructureMap/PatientGender",
        "name": "PatientGender",
        "status": "draft",
        "structure": [
            {"url": kit.sd("Patient", [])["url"], "mode": "source", "alias": "Src"},
            {"url": kit.sd("Patient", [])["url"], "mode": "target", "alias": "Tgt"},
        ],
        "group": [
            kit.group(
                "main",
                [
                    kit.rule(
                        "gender",
                        [kit.source("src", "gender", "g")],
                        [kit.target("tgt", "gender", None, "copy", kit.var("g"))],
                    )
                ],
            )
        ],
    }
    return write_file(tmp_path, name, _json.dumps(sm))


# ------------------------------------------------------------------------------
# Happy paths
# ------------------------------------------------------------------------------


def test_parse_xml_prints_json(tmp_path, defs_dir, capsys):
    x = write_file(tmp_path, "patient.xml", PATIENT_XML)
    code = cli.main(["--definitions", str(defs_dir), "parse", str(x)])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert _json.loads(out) == {
        "resourceType": "Patient",
        "id": "p1",
        "active": True,
        "gender": "male",
    }


def test_parse_json_prints_compact_xml(tmp_path, defs_dir, capsys):
    j = write_file(tmp_path, "patient.json", _json.dumps(PATIENT_JSON))
    code = cli.main(
        ["--definitions", str(defs_dir), "parse", str(j), "--to", "xml", "--compact"]
    )
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert '<Patient xmlns="http://hl7.org/fhir">' in out
    assert '<gender value="male"/>' in out


def test_transform_writes_opposite_format_to_output_dir(tmp_path, defs_dir, kit):
    src = write_file(tmp_path, "patient.json", _json.dumps(PATIENT_JSON))
    m = write_map(tmp_path, kit)
    out_dir = tmp_path / "out"
    code = cli.main(
        [
            "--definitions",
            str(defs_dir),
            "transform",
            str(src),
            "--map-file",
            str(m),
            "-o",
            str(out_dir),
        ]
    )
    assert code == cli.EXIT_OK
    written = out_dir / "patient.xml"
    assert written.exists()
    text = written.read_text(encoding="utf-8")
    assert '<gender value="male"/>' in text
    assert "p1" not in text


def test_transform_stdout_json(tmp_path, defs_dir, kit, capsys):
    src = write_file(tmp_path, "patient.xml", PATIENT_XML)
    m = write_map(tmp_path, kit)
    code = cli.main(
        [
            "--definitions",
            str(defs_dir),
            "transform",
            str(src),
            "--map-file",
            str(m),
            "--stdout",
        ]
    )
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert _json.loads(out) == {"resourceType": "Patient", "gender": "male"}


def test_transform_list_prints_registered_transforms(capsys):
    code = cli.main(["transform", "--list"])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert "Registered StructureMap transforms:" in out
    assert "    translate" in out
    assert "    create" in out


def test_install_prints_outcome(tmp_path, kit, capsys):
    human_name = next(sd for sd in kit.fhir_kit() if sd["name"] == "HumanName")
    pkg = kit.write_package(
        tmp_path / "demo.tgz",
        {
            "package/package.json": {"name": "demo", "version": "1.0.0"},
            "package/StructureDefinition-HumanName.json": human_name,
        },
    )
    code = cli.main(["install", str(pkg), "--name", "demo", "--pkg-version", "1.0.0"])
    out, _ = capsys.readouterr()
    assert code == cli.EXIT_OK
    outcome = _json.loads(out)
    assert outcome["resources_installed"] == {"StructureDefinition": 1}
    assert "Read 1 resources from package demo#1.0.0" in outcome["messages"]


def test_version_flag_prints_version(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--version"])
    out, _ = capsys.readouterr()
    assert exc.value.code == 0
    assert f"fhir-map-tool (cli) {__version__}" in out


# ------------------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------------------


def test_parse_file_not_found(tmp_path, defs_dir, capsys):
    missing = tmp_path / "nope.xml"
    code = cli.main(["--definitions", str(defs_dir), "parse", str(missing)])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "File not found" in err


def test_parse_path_is_directory(tmp_path):
    d = tmp_path / "adir.xml"
    d.mkdir()
    code = cli.main(["parse", str(d)])
    assert code == cli.EXIT_ERR


def test_parse_not_readable(tmp_path, monkeypatch):
    p = write_file(tmp_path, "patient.xml", PATIENT_XML)
    real_access = os.access
    # force unreadable
    monkeypatch.setattr(
        os,
        "access",
        lambda path, mode: (
            False if Path(path) == p and (mode & os.R_OK) else real_access(path, mode)
        ),
    )
    code = cli.main(["parse", str(p)])
    assert code == cli.EXIT_ERR


def test_parse_unknown_suffix(tmp_path, capsys):
    p = write_file(tmp_path, "patient.txt", PATIENT_XML)
    code = cli.main(["parse", str(p)])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "Cannot tell the format of patient.txt" in err


def test_parse_without_definitions_fails(tmp_path, capsys):
    p = write_file(tmp_path, "patient.xml", PATIENT_XML)
    code = cli.main(["parse", str(p)])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "does not appear to be a FHIR resource" in err


def test_parse_lenient_skips_unknown_elements(tmp_path, defs_dir, capsys):
    p = write_file(
        tmp_path,
        "patient.xml",
        '<Patient xmlns="http://hl7.org/fhir"><id value="p1"/><bogus value="x"/></Patient>',
    )
    strict = cli.main(["--definitions", str(defs_dir), "parse", str(p)])
    capsys.readouterr()
    lenient = cli.main(["--definitions", str(defs_dir), "--lenient", "parse", str(p)])
    out, err = capsys.readouterr()
    assert strict == cli.EXIT_ERR
    assert lenient == cli.EXIT_OK
    assert _json.loads(out) == {"resourceType": "Patient", "id": "p1"}
    assert "Undefined element 'bogus'" in err


def test_transform_without_map_is_usage_error(tmp_path, capsys):
    p = write_file(tmp_path, "patient.xml", PATIENT_XML)
    code = cli.main(["transform", str(p)])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_CLI
    assert "needs a PATH and one of --map or --map-file" in err


def test_transform_map_and_map_file_are_exclusive(tmp_path):
    p = write_file(tmp_path, "patient.xml", PATIENT_XML)
    with pytest.raises(SystemExit) as exc:
        cli.main(["transform", str(p), "--map", "http://x", "--map-file", "m.json"])
    assert exc.value.code == 2


def test_transform_unknown_map_url_reports_code(tmp_path, defs_dir, capsys):
    p = write_file(tmp_path, "patient.xml", PATIENT_XML)
    code = cli.main(
        [
            "--definitions",
            str(defs_dir),
            "transform",
            str(p),
            "--map",
            "http://example.org/fhir/StructureMap/Missing",
            "--stdout",
        ]
    )
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "[map-not-found]" in err


def test_transform_output_dir_not_writable(tmp_path, defs_dir, kit, monkeypatch):
    src = write_file(tmp_path, "patient.json", _json.dumps(PATIENT_JSON))
    m = write_map(tmp_path, kit)
    out_dir = tmp_path / "locked"
    real_access = os.access
    monkeypatch.setattr(
        os,
        "access",
        lambda path, mode: (
            False
            if Path(path) == out_dir and (mode & os.W_OK)
            else real_access(path, mode)
        ),
    )
    code = cli.main(
        [
            "--definitions",
            str(defs_dir),
            "transform",
            str(src),
            "--map-file",
            str(m),
            "-o",
            str(out_dir),
        ]
    )
    assert code == cli.EXIT_ERR


def test_invalid_config_file(tmp_path, capsys):
    cfg = write_file(tmp_path, "config.yaml", "- not\n- a mapping\n")
    code = cli.main(["--config", str(cfg), "transform", "--list"])
    _, err = capsys.readouterr()
    assert code == cli.EXIT_ERR
    assert "Invalid config file" in err


def test_missing_subcommand_is_usage_error():
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 2


def test_keyboard_interrupt_returns_error(tmp_path, monkeypatch):
    def _boom(*args, **kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "_cmd_transform", _boom)
    code = cli.main(["transform", "--list"])
    assert code == cli.EXIT_ERR


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def test_effective_config_merges_command_line_sources(tmp_path):
    cfg = cli._load_app_config(None)
    merged = cli._effective_config(
        cfg, [tmp_path / "defs"], [tmp_path / "ig.tgz"], lenient=True
    )
    assert merged.definition_dirs == (tmp_path / "defs",)
    assert merged.packages[0].name == "ig"
    assert merged.packages[0].url == str(tmp_path / "ig.tgz")
    assert merged.strict_parsing is False
