# tests/test_snapshot.py
"""
Tests for fhir_map_tool.resolver.snapshot.
"""

from typing import Any, Dict, List, Optional

import pytest

from fhir_map_tool.exceptions import DefinitionError
from fhir_map_tool.model.definitions import has_snapshot, parse_resource, snapshot_elements
from fhir_map_tool.resolver.snapshot import generate_snapshot

FHIR_SD = "http://hl7.org/fhir/StructureDefinition/"
EX_SD = "http://example.org/fhir/StructureDefinition/"


def differential(
    name: str,
    elements: List[Dict[str, Any]],
    base: Optional[str] = "Patient",
    derivation: str = "constraint",
    kind: str = "resource",
):
    data: Dict[str, Any] = {
        "resourceType": "StructureDefinition",
        "url": EX_SD + name,
        "name": name,
        "status": "active",
        "kind": kind,
        "abstract": False,
        "type": base or name,
        "derivation": derivation,
        "differential": {"element": elements},
    }
    if base:
        data["baseDefinition"] = FHIR_SD + base
    return parse_resource(data)


def ids(sd) -> List[str]:
    return [e.id for e in snapshot_elements(sd)]


def element(sd, eid: str):
    for e in snapshot_elements(sd):
        if e.id == eid:
            return e
    raise KeyError(eid)


# ------------------------------------------------------------------------------
# overlay and unfolding
# ------------------------------------------------------------------------------


def test_constraint_overlays_base(kit, resolver):
    sd = differential("RequiredGender", [kit.ed("Patient"), kit.ed("Patient.gender", min=1)])
    result = generate_snapshot(sd, resolver)

    assert has_snapshot(result)
    assert not has_snapshot(sd)
    base_ids = ids(resolver.fetch_structure(FHIR_SD + "Patient"))
    assert ids(result) == base_ids
    assert element(result, "Patient.gender").min == 1
    assert element(result, "Patient.gender").type[0].code == "code"
    assert element(result, "Patient.active").min == 0


def test_datatype_children_are_unfolded(kit, resolver):
    sd = differential(
        "IdentifiedPatient",
        [kit.ed("Patient"), kit.ed("Patient.identifier.system", min=1)],
    )
    result = generate_snapshot(sd, resolver)
    got = ids(result)
    start = got.index("Patient.identifier")
    assert got[start : start + 5] == [
        "Patient.identifier",
        "Patient.identifier.type",
        "Patient.identifier.system",
        "Patient.identifier.value",
        "Patient.active",
    ]
    system = element(result, "Patient.identifier.system")
    assert system.min == 1
    assert system.path == "Patient.identifier.system"
    assert system.type[0].code == "uri"


def test_slices_follow_the_sliced_element(kit, resolver):
    sd = differential(
        "MrnPatient",
        [
            kit.ed("Patient"),
            kit.ed("Patient.identifier", id="Patient.identifier:mrn", sliceName="mrn", min=1),
            kit.ed("Patient.identifier.system", id="Patient.identifier:mrn.system", min=1),
        ],
    )
    result = generate_snapshot(sd, resolver)
    got = ids(result)
    start = got.index("Patient.identifier")
    assert got[start : start + 9] == [
        "Patient.identifier",
        "Patient.identifier.type",
        "Patient.identifier.system",
        "Patient.identifier.value",
        "Patient.identifier:mrn",
        "Patient.identifier:mrn.type",
        "Patient.identifier:mrn.system",
        "Patient.identifier:mrn.value",
        "Patient.active",
    ]
    assert element(result, "Patient.identifier:mrn").sliceName == "mrn"
    assert element(result, "Patient.identifier:mrn").min == 1
    assert element(result, "Patient.identifier:mrn.system").min == 1
    assert element(result, "Patient.identifier.system").min == 0


def test_specialization_without_base(kit, resolver):
    sd = differential(
        "Widget",
        [kit.ed("Widget"), kit.ed("Widget.size", "integer"), kit.ed("Widget.label", "string")],
        base=None,
        derivation="specialization",
        kind="logical",
    )
    result = generate_snapshot(sd, resolver)
    assert ids(result) == ["Widget", "Widget.size", "Widget.label"]


def test_new_element_appended_under_its_parent(kit, resolver):
    sd = differential(
        "ExtendedOrganization",
        [kit.ed("Organization"), kit.ed("Organization.alias", "string", max="*")],
        base="Organization",
        derivation="specialization",
    )
    result = generate_snapshot(sd, resolver)
    assert ids(result) == [
        "Organization",
        "Organization.id",
        "Organization.name",
        "Organization.alias",
    ]


# ------------------------------------------------------------------------------
# errors
# ------------------------------------------------------------------------------


def test_constraint_without_base(kit, resolver):
    sd = differential("Orphan", [kit.ed("Patient")], base=None)
    with pytest.raises(DefinitionError, match=r"Constraint .*Orphan has no baseDefinition"):
        generate_snapshot(sd, resolver)


def test_unresolvable_base(kit, resolver):
    sd = differential("Lost", [kit.ed("Encounter")], base="Encounter")
    with pytest.raises(DefinitionError, match=r"Unable to resolve base definition .*Encounter"):
        generate_snapshot(sd, resolver)


def test_element_without_parent(kit, resolver):
    sd = differential("Broken", [kit.ed("Patient"), kit.ed("Patient.nope.x", "string")])
    with pytest.raises(DefinitionError, match=r"Element Patient.nope.x has no parent Patient.nope"):
        generate_snapshot(sd, resolver)


def test_resolver_generates_missing_snapshots(kit, store, resolver):
    store.add(differential("RequiredGender", [kit.ed("Patient"), kit.ed("Patient.gender", min=1)]))
    sd = resolver.fetch_structure(EX_SD + "RequiredGender")
    assert has_snapshot(sd)
    assert element(sd, "Patient.gender").min == 1
    assert resolver.fetch_structure(EX_SD + "RequiredGender") is sd


def test_resolver_drops_definitions_that_fail(kit, store, resolver, caplog):
    store.add(differential("Orphan", [kit.ed("Patient")], base=None))
    assert resolver.fetch_structure(EX_SD + "Orphan") is None
    assert "Snapshot generation failed" in caplog.text


def test_circular_base_chain_is_reported(kit, store, resolver, caplog):
    a = differential("CycleA", [kit.ed("Patient")], base=None)
    b = differential("CycleB", [kit.ed("Patient")], base=None)
    store.add(a.model_copy(update={"baseDefinition": EX_SD + "CycleB"}))
    store.add(b.model_copy(update={"baseDefinition": EX_SD + "CycleA"}))
    assert resolver.fetch_structure(EX_SD + "CycleA") is None
    assert "Circular baseDefinition chain" in caplog.text
