# tests/test_element.py
"""
Tests for fhir_map_tool.model (element tree, factory and sorter).
"""

import json

import pytest

from fhir_map_tool import codec
from fhir_map_tool.exceptions import BadMap, DefinitionError
from fhir_map_tool.model.element import SpecialElement, elements_equal
from fhir_map_tool.model.factory import create_type, find_type
from fhir_map_tool.model.sorter import sort_element

FHIR_SD = "http://hl7.org/fhir/StructureDefinition/"


@pytest.fixture
def patient(resolver, patient_json):
    return codec.parse(json.dumps(patient_json), "json", resolver)


# ------------------------------------------------------------------------------
# factory
# ------------------------------------------------------------------------------


def test_create_type_allocates_empty_root(resolver):
    p = create_type(resolver, "Patient")
    assert p.name == "Patient"
    assert p.fhir_type == "Patient"
    assert p.is_resource()
    assert p.children == []


def test_create_type_for_datatype(resolver):
    q = create_type(resolver, "Quantity")
    assert q.fhir_type == "Quantity"
    assert not q.is_resource()
    assert not q.is_primitive()


def test_create_type_unknown(resolver):
    with pytest.raises(DefinitionError, match=r"Unable to find a definition for type 'Nope'"):
        create_type(resolver, "Nope")


def test_find_type_by_url_and_name(resolver):
    assert str(find_type(resolver, FHIR_SD + "Patient").url) == FHIR_SD + "Patient"
    assert str(find_type(resolver, "Patient").url) == FHIR_SD + "Patient"
    cda = find_type(resolver, "ClinicalDocument")
    assert str(cda.url).endswith("/ClinicalDocument")


# ------------------------------------------------------------------------------
# reading
# ------------------------------------------------------------------------------


def test_paths_are_numbered(patient):
    names = patient.get_children_by_name("name")
    assert [n.path for n in names] == ["Patient.name[0]", "Patient.name[1]"]
    assert names[1].get_named_child("family").path == "Patient.name[1].family"
    assert patient.get_named_child("gender").path == "Patient.gender"


def test_choice_children_match_base_name(resolver):
    obs = codec.parse('{"resourceType": "Observation", "valueString": "x"}', "json", resolver)
    [value] = obs.get_children_by_name("value")
    assert value.name == "valueString"
    assert obs.get_named_child_value("value") == "x"


def test_iter_tree_is_document_order(patient):
    names = [e.name for e in patient.iter_tree()][:4]
    assert names == ["Patient", "id", "identifier", "system"]


# ------------------------------------------------------------------------------
# writing
# ------------------------------------------------------------------------------


def test_make_property_reuses_single_and_appends_repeats(resolver):
    p = create_type(resolver, "Patient")
    assert p.make_property("gender") is p.make_property("gender")
    first = p.make_property("name")
    second = p.make_property("name")
    assert first is not second
    assert [c.name for c in p.children] == ["name", "name", "gender"]


def test_make_property_inserts_in_definition_order(resolver):
    p = create_type(resolver, "Patient")
    p.make_property("gender")
    p.make_property("id")
    p.make_property("active")
    assert [c.name for c in p.children] == ["id", "active", "gender"]


def test_make_property_unknown_name(resolver):
    p = create_type(resolver, "Patient")
    with pytest.raises(BadMap, match=r"Unrecognised name colour on Patient \(Patient\)"):
        p.make_property("colour")


def test_set_property_with_python_values(resolver):
    p = create_type(resolver, "Patient")
    p.set_property("active", False)
    p.set_property("gender", "female")
    assert p.get_named_child_value("active") == "false"
    assert p.get_named_child_value("gender") == "female"
    p.set_property("gender", "male")
    assert p.get_named_child_value("gender") == "male"
    assert len(p.get_children_by_name("gender")) == 1


def test_set_property_names_choice_after_value_type(resolver):
    obs = create_type(resolver, "Observation")
    child = obs.set_property("value", "high")
    assert child.name == "valueString"
    assert child.fhir_type == "string"

    obs2 = create_type(resolver, "Observation")
    qty = create_type(resolver, "Quantity")
    qty.set_property("value", "5")
    child = obs2.set_property("value", qty)
    assert child.name == "valueQuantity"
    assert child.get_named_child_value("value") == "5"


def test_set_property_copies_the_value_subtree(resolver):
    p = create_type(resolver, "Patient")
    name = create_type(resolver, "HumanName")
    name.set_property("family", "Doe")
    child = p.set_property("name", name)
    name.set_property("family", "Changed")
    assert child.get_named_child_value("family") == "Doe"


def test_set_property_on_primitive_sets_its_value(resolver):
    s = create_type(resolver, "string")
    assert s.is_primitive()
    assert s.set_property("value", "abc") is s
    assert s.value == "abc"


def test_resources_nested_as_entry_or_contained(resolver):
    org = create_type(resolver, "Organization")
    org.set_property("name", "Acme")

    bundle = create_type(resolver, "Bundle")
    entry = bundle.make_property("entry")
    held = entry.set_property("resource", org)
    assert held.special == SpecialElement.BUNDLE_ENTRY
    assert held.fhir_type == "Organization"
    assert held.is_resource()

    patient = create_type(resolver, "Patient")
    held = patient.set_property("contained", org)
    assert held.special == SpecialElement.CONTAINED
    assert held.element_property.name == "contained"


def test_remove_child(patient):
    patient.remove_child("name")
    assert patient.get_children_by_name("name") == []


def test_deep_copy_is_independent(patient):
    dup = patient.deep_copy()
    assert elements_equal(patient, dup)
    assert patient.deep_equals(dup)
    dup.get_named_child("gender").value = "female"
    assert not elements_equal(patient, dup)
    assert patient.get_named_child_value("gender") == "male"


def test_elements_equal_handles_none(patient):
    assert elements_equal(None, None)
    assert not elements_equal(patient, None)


# ------------------------------------------------------------------------------
# sorter
# ------------------------------------------------------------------------------


def test_sort_element_orders_by_definition_and_is_stable(resolver, patient):
    patient.children.reverse()
    for name in patient.get_children_by_name("name"):
        name.children.reverse()
    sort_element(patient)
    assert [c.name for c in patient.children] == [
        "id",
        "identifier",
        "active",
        "name",
        "name",
        "gender",
        "birthDate",
    ]
    # repeats keep their (reversed) relative order
    families = [n.get_named_child_value("family") for n in patient.get_children_by_name("name")]
    assert families == ["Roe", "Doe"]
    first = patient.get_children_by_name("name")[1]
    assert [c.name for c in first.children] == ["family", "given", "given"]
    assert [c.value for c in first.get_children_by_name("given")] == ["Q", "John"]
