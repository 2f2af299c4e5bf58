# tests/test_interpreter.py
"""
Tests for fhir_map_tool.transform.interpreter.
"""

import json
import logging

import pytest

from fhir_map_tool import codec
from fhir_map_tool.codec.json_composer import to_object
from fhir_map_tool.exceptions import BadMap, TransformCancelled, TransformRecursionLimit
from fhir_map_tool.model.factory import create_type
from fhir_map_tool.transform import CancellationToken, StructureMapInterpreter
from fhir_map_tool.transform.variables import Variables, VariableMode

MAP_BASE = "http://example.org/fhir/StructureMap/"


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------


@pytest.fixture
def patient(resolver, patient_json):
    return codec.parse(json.dumps(patient_json), "json", resolver)


def make_map(kit, name, groups, **extra):
    data = {"url": MAP_BASE + name, "group": groups}
    data.update(extra)
    return kit.structure_map(data)


def run(resolver, sm, source, target_type="Patient", **kwargs):
    target = create_type(resolver, target_type)
    interpreter = StructureMapInterpreter(resolver, **kwargs)
    interpreter.transform(source, sm, target)
    return to_object(target), interpreter


def copy_rule(kit, name, element, **source_extra):
    return kit.rule(
        name,
        [kit.source("src", element, "v", **source_extra)],
        [kit.target("tgt", element, None, "copy", kit.var("v"))],
    )


# ------------------------------------------------------------------------------
# Simple copies
# ------------------------------------------------------------------------------


def test_copy_primitives(kit, resolver, patient):
    sm = make_map(
        kit,
        "copy",
        [kit.group("main", [copy_rule(kit, "id", "id"), copy_rule(kit, "gender", "gender")])],
    )
    out, interpreter = run(resolver, sm, patient)
    assert out == {"resourceType": "Patient", "id": "p1", "gender": "male"}
    assert interpreter.warnings == []


def test_output_children_follow_definition_order(kit, resolver, patient):
    # rules fire gender first, the output still lists id before gender
    sm = make_map(
        kit,
        "order",
        [kit.group("main", [copy_rule(kit, "gender", "gender"), copy_rule(kit, "id", "id")])],
    )
    out, _ = run(resolver, sm, patient)
    assert list(out) == ["resourceType", "id", "gender"]


def test_nested_rules_build_repeating_elements(kit, resolver, patient):
    sm = make_map(
        kit,
        "names",
        [
            kit.group(
                "main",
                [
                    kit.rule(
                        "name",
                        [kit.source("src", "name", "sn")],
                        [kit.target("tgt", "name", "tn")],
                        rule=[
                            kit.rule(
                                "family",
                                [kit.source("sn", "family", "f")],
                                [kit.target("tn", "family", None, "copy", kit.var("f"))],
                            ),
                            kit.rule(
                                "given",
                                [kit.source("sn", "given", "g")],
                                [kit.target("tn", "given", None, "copy", kit.var("g"))],
                            ),
                        ],
                    )
                ],
            )
        ],
    )
    out, _ = run(resolver, sm, patient)
    assert out["name"] == [{"family": "Doe", "given": ["John", "Q"]}, {"family": "Roe"}]


def test_condition_filters_source_items(kit, resolver, patient):
    male = make_map(
        kit,
        "male",
        [kit.group("main", [copy_rule(kit, "gender", "gender", condition="$this = 'male'")])],
    )
    female = make_map(
        kit,
        "female",
        [kit.group("main", [copy_rule(kit, "gender", "gender", condition="$this = 'female'")])],
    )
    assert run(resolver, male, patient)[0] == {"resourceType": "Patient", "gender": "male"}
    assert run(resolver, female, patient)[0] == {"resourceType": "Patient"}


def test_list_mode_first_keeps_one_item(kit, resolver, patient):
    rule = kit.rule(
        "name",
        [kit.source("src", "name", "sn", listMode="first")],
        [kit.target("tgt", "name", "tn")],
        rule=[
            kit.rule(
                "family",
                [kit.source("sn", "family", "f")],
                [kit.target("tn", "family", None, "copy", kit.var("f"))],
            )
        ],
    )
    sm = make_map(kit, "first", [kit.group("main", [rule])])
    out, _ = run(resolver, sm, patient)
    assert out["name"] == [{"family": "Doe"}]


def test_list_mode_only_one_fails_on_many(kit, resolver, patient):
    sm = make_map(
        kit,
        "onlyone",
        [kit.group("main", [copy_rule(kit, "name", "name", listMode="only_one")])],
    )
    with pytest.raises(BadMap, match=r"more than one item"):
        run(resolver, sm, patient)


@pytest.mark.parametrize("list_mode,expected", [(None, 2), ("share", 1)])
def test_shared_source_is_bound_once_across_combinations(
    kit, resolver, patient, list_mode, expected
):
    identifier = kit.source("src", "identifier", "i", **({"listMode": list_mode} if list_mode else {}))
    rule = kit.rule(
        "pairs",
        [kit.source("src", "name", "n"), identifier],
        [kit.target("tgt", "identifier", None, "copy", kit.var("i"))],
    )
    sm = make_map(kit, "pairs", [kit.group("main", [rule])])
    out, _ = run(resolver, sm, patient)
    assert len(out["identifier"]) == expected
    assert out["identifier"][0] == {"system": "urn:oid:2.16.756.5.30", "value": "1234"}


def _names_rule(kit, **target_extra):
    return kit.rule(
        "name",
        [kit.source("src", "name", "sn")],
        [kit.target("tgt", "name", "tn", **target_extra)],
        rule=[
            kit.rule(
                "family",
                [kit.source("sn", "family", "f")],
                [kit.target("tn", "given", None, "copy", kit.var("f"))],
            )
        ],
    )


def test_shared_target_is_reused_across_iterations(kit, resolver, patient):
    separate = make_map(kit, "separate", [kit.group("main", [_names_rule(kit)])])
    shared = make_map(
        kit,
        "shared",
        [kit.group("main", [_names_rule(kit, listMode=["share"], listRuleId="names")])],
    )
    assert run(resolver, separate, patient)[0]["name"] == [{"given": ["Doe"]}, {"given": ["Roe"]}]
    assert run(resolver, shared, patient)[0]["name"] == [{"given": ["Doe", "Roe"]}]


def test_extended_group_runs_first(kit, resolver, patient):
    def tag(name, value):
        return kit.rule(
            name,
            [kit.source("src")],
            [
                kit.target("tgt", "identifier", "i"),
                kit.target("i", "value", None, "copy", kit.lit(value)),
            ],
        )

    sm = make_map(
        kit,
        "extends",
        [
            kit.group("main", [tag("own", "from-main")], extends="base"),
            kit.group("base", [tag("inherited", "from-base")]),
        ],
    )
    out, _ = run(resolver, sm, patient)
    assert out["identifier"] == [{"value": "from-base"}, {"value": "from-main"}]


def test_default_value_used_when_source_is_missing(kit, resolver, patient_json):
    del patient_json["gender"]
    source = codec.parse(json.dumps(patient_json), "json", resolver)
    sm = make_map(
        kit,
        "default",
        [
            kit.group(
                "main",
                [copy_rule(kit, "gender", "gender", defaultValueString="unknown")],
            )
        ],
    )
    out, _ = run(resolver, sm, source)
    assert out["gender"] == "unknown"


def test_check_failure_raises_bad_map(kit, resolver, patient):
    sm = make_map(
        kit,
        "check",
        [kit.group("main", [copy_rule(kit, "gender", "gender", check="$this = 'female'")])],
    )
    with pytest.raises(BadMap, match=r"Check condition failed"):
        run(resolver, sm, patient)


def test_log_message_is_logged(kit, resolver, patient, caplog):
    caplog.set_level(logging.INFO, logger="fhir_map_tool.transform.interpreter")
    sm = make_map(
        kit,
        "log",
        [kit.group("main", [copy_rule(kit, "gender", "gender", logMessage="'gender is ' & $this")])],
    )
    run(resolver, sm, patient)
    assert "gender is male" in caplog.text


# ------------------------------------------------------------------------------
# Transforms on targets
# ------------------------------------------------------------------------------


def test_evaluate_transform_with_focus(kit, resolver, patient):
    rule = kit.rule(
        "active",
        [kit.source("src")],
        [
            kit.target(
                "tgt", "active", None, "evaluate", kit.var("src"), kit.lit("gender = 'male'")
            )
        ],
    )
    sm = make_map(kit, "evaluate", [kit.group("main", [rule])])
    out, _ = run(resolver, sm, patient)
    assert out["active"] is True


def test_create_resource_and_reference_it(kit, resolver, patient):
    rule = kit.rule(
        "org",
        [kit.source("src")],
        [
            kit.target("tgt", "contained", "o", "create", kit.lit("Organization")),
            kit.target("o", "name", None, "copy", kit.lit("Acme")),
            kit.target("tgt", "managingOrganization", "mo"),
            kit.target("mo", "reference", None, "reference", kit.var("o")),
        ],
    )
    sm = make_map(kit, "org", [kit.group("main", [rule])])
    out, _ = run(resolver, sm, patient)
    org = out["contained"][0]
    assert org["resourceType"] == "Organization"
    assert org["name"] == "Acme"
    assert out["managingOrganization"] == {"reference": f"Organization/{org['id']}"}


def test_unknown_transform_raises_bad_map(kit, resolver, patient):
    rule = kit.rule(
        "x",
        [kit.source("src", "gender", "g")],
        [kit.target("tgt", "gender", None, "frobnicate", kit.var("g"))],
    )
    sm = make_map(kit, "unknown", [kit.group("main", [rule])])
    with pytest.raises(BadMap, match=r"Transform Unknown: frobnicate"):
        run(resolver, sm, patient)


def test_unknown_source_variable_raises_bad_map(kit, resolver, patient):
    rule = kit.rule(
        "x",
        [kit.source("nope", "gender", "g")],
        [kit.target("tgt", "gender", None, "copy", kit.var("g"))],
    )
    sm = make_map(kit, "unbound", [kit.group("main", [rule])])
    with pytest.raises(BadMap, match=r"Unknown input variable nope"):
        run(resolver, sm, patient)


def test_unknown_target_property_raises_bad_map(kit, resolver, patient):
    rule = kit.rule(
        "x",
        [kit.source("src", "gender", "g")],
        [kit.target("tgt", "sex", None, "copy", kit.var("g"))],
    )
    sm = make_map(kit, "badprop", [kit.group("main", [rule])])
    with pytest.raises(BadMap, match=r"Unrecognised name sex"):
        run(resolver, sm, patient)


# ------------------------------------------------------------------------------
# Group invocation
# ------------------------------------------------------------------------------


def _family_group(kit, name, type_mode="none", types=None):
    s_type, t_type = types or (None, None)
    inputs = [{"name": "s", "mode": "source"}, {"name": "t", "mode": "target"}]
    if s_type:
        inputs[0]["type"] = s_type
        inputs[1]["type"] = t_type
    return kit.group(
        name,
        [
            kit.rule(
                "family",
                [kit.source("s", "family", "f")],
                [kit.target("t", "family", None, "copy", kit.var("f"))],
            )
        ],
        inputs=inputs,
        typeMode=type_mode,
    )


def test_dependent_group_receives_bound_variables(kit, resolver, patient):
    rule = kit.rule(
        "name",
        [kit.source("src", "name", "sn")],
        [kit.target("tgt", "name", "tn")],
        dependent=[{"name": "NameFamily", "variable": ["sn", "tn"]}],
    )
    sm = make_map(
        kit, "dependent", [kit.group("main", [rule]), _family_group(kit, "NameFamily")]
    )
    out, _ = run(resolver, sm, patient)
    assert out["name"] == [{"family": "Doe"}, {"family": "Roe"}]


def test_dependent_with_wrong_arity_raises_bad_map(kit, resolver, patient):
    rule = kit.rule(
        "name",
        [kit.source("src", "name", "sn")],
        dependent=[{"name": "NameFamily", "variable": ["sn"]}],
    )
    sm = make_map(
        kit, "arity", [kit.group("main", [rule]), _family_group(kit, "NameFamily")]
    )
    with pytest.raises(BadMap, match=r"has 2 inputs but the invocation has 1 variables"):
        run(resolver, sm, patient)


def test_unknown_dependent_group_raises_bad_map(kit, resolver, patient):
    rule = kit.rule(
        "name",
        [kit.source("src", "name", "sn")],
        dependent=[{"name": "Missing", "variable": ["sn", "tgt"]}],
    )
    sm = make_map(kit, "missing", [kit.group("main", [rule])])
    with pytest.raises(BadMap, match=r"No matches found for rule 'Missing'"):
        run(resolver, sm, patient)


def test_simple_create_rule_invokes_group_for_types(kit, resolver, patient):
    rule = kit.rule(
        "name",
        [kit.source("src", "name", "sn")],
        [kit.target("tgt", "name", "tn", "create")],
    )
    sm = make_map(
        kit,
        "bytypes",
        [
            kit.group("main", [rule]),
            _family_group(kit, "HumanNames", "types", ("HumanName", "HumanName")),
        ],
    )
    out, _ = run(resolver, sm, patient)
    assert out["name"] == [{"family": "Doe"}, {"family": "Roe"}]


def test_simple_create_rule_without_type_group_raises(kit, resolver, patient):
    rule = kit.rule(
        "name",
        [kit.source("src", "name", "sn")],
        [kit.target("tgt", "name", "tn", "create")],
    )
    sm = make_map(kit, "notypes", [kit.group("main", [rule])])
    with pytest.raises(BadMap, match=r"No matches found for default rule for 'HumanName'"):
        run(resolver, sm, patient)


def test_imported_map_supplies_group(kit, resolver, store, patient):
    lib = make_map(kit, "lib", [_family_group(kit, "NameFamily")])
    store.add(lib)
    rule = kit.rule(
        "name",
        [kit.source("src", "name", "sn")],
        [kit.target("tgt", "name", "tn")],
        dependent=[{"name": "NameFamily", "variable": ["sn", "tn"]}],
    )
    sm = make_map(kit, "importer", [kit.group("main", [rule])], **{"import": [MAP_BASE + "*"]})
    out, _ = run(resolver, sm, patient)
    assert out["name"] == [{"family": "Doe"}, {"family": "Roe"}]


def test_recursion_limit(kit, resolver, patient):
    rule = kit.rule(
        "loop",
        [kit.source("src")],
        dependent=[{"name": "main", "variable": ["src", "tgt"]}],
    )
    sm = make_map(kit, "loop", [kit.group("main", [rule])])
    with pytest.raises(TransformRecursionLimit, match=r"maximum nesting depth of 5"):
        run(resolver, sm, patient, max_recursion_depth=5)


def test_cancelled_token_stops_transform(kit, resolver, patient):
    sm = make_map(kit, "cancel", [kit.group("main", [copy_rule(kit, "id", "id")])])
    token = CancellationToken()
    token.cancel()
    with pytest.raises(TransformCancelled):
        run(resolver, sm, patient, cancel=token)


def test_map_without_groups_is_rejected(kit, resolver, patient):
    sm = make_map(kit, "nogroups", [kit.group("main", [copy_rule(kit, "id", "id")])])
    sm = sm.model_copy(update={"group": []})
    with pytest.raises(BadMap, match=r"has no groups"):
        run(resolver, sm, patient)


# ------------------------------------------------------------------------------
# Variables
# ------------------------------------------------------------------------------


def test_variables_copy_does_not_leak():
    outer = Variables()
    outer.add(VariableMode.SOURCE, "a", "1")
    inner = outer.copy()
    inner.add(VariableMode.TARGET, "b", "2")
    inner.add(VariableMode.SOURCE, "a", "3")
    assert outer.lookup("b") is None
    assert outer.lookup("a") == "1"
    assert inner.lookup("a") == "3"
    assert len(inner) == 2


def test_variables_lookup_prefers_source():
    v = Variables()
    v.add(VariableMode.TARGET, "x", "target")
    v.add(VariableMode.SOURCE, "x", "source")
    assert v.lookup("x") == "source"
    assert v.names(VariableMode.TARGET) == ["x"]
    assert "source: x: str" in v.summary()
