# tests/conftest.py
"""
Shared fixtures: a compact in-memory definition kit.

The kit holds just enough FHIR (primitives, a handful of datatypes and
resources) and a tiny CDA logical model in ``urn:hl7-org:v3`` to exercise the
codecs, the resolver and the interpreter without network access or real
implementation guide packages.
"""

import copy
import io
import json
import tarfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from fhir_map_tool.model.definitions import parse_resource
from fhir_map_tool.resolver import DefinitionResolver, InMemoryResolver
from fhir_map_tool.transform import registry

FHIR_SD = "http://hl7.org/fhir/StructureDefinition/"
CDA_SD = "http://hl7.org/cda/stds/core/StructureDefinition/"
V3 = "urn:hl7-org:v3"
SYSTEM_STRING = "http://hl7.org/fhirpath/System.String"
EXT_NAMESPACE = "http://hl7.org/fhir/StructureDefinition/elementdefinition-namespace"
EXT_DATE_FORMAT = (
    "http://www.healthintersections.com.au/fhir/StructureDefinition/"
    "elementdefinition-dateformat"
)
EXT_DEFAULT_TYPE = "http://hl7.org/fhir/StructureDefinition/elementdefinition-defaulttype"

PRIMITIVES = (
    "boolean",
    "integer",
    "decimal",
    "string",
    "uri",
    "code",
    "id",
    "date",
    "dateTime",
    "markdown",
    "positiveInt",
)


# ------------------------------------------------------------------------------
# definition builders
# ------------------------------------------------------------------------------


def ed(path: str, *types: str, min: int = 0, max: str = "1", **extra: Any) -> Dict[str, Any]:
    """ElementDefinition JSON for a snapshot."""
    out: Dict[str, Any] = {"id": path, "path": path, "min": min, "max": max}
    if types:
        out["type"] = [{"code": t} for t in types]
    out.update(extra)
    return out


def attr(path: str, type_code: str = "string", **extra: Any) -> Dict[str, Any]:
    return ed(path, type_code, representation=["xmlAttr"], **extra)


def sd(
    name: str,
    elements: List[Dict[str, Any]],
    kind: str = "complex-type",
    url: Optional[str] = None,
    type_: Optional[str] = None,
    namespace: Optional[str] = None,
) -> Dict[str, Any]:
    """StructureDefinition JSON with a snapshot."""
    out: Dict[str, Any] = {
        "resourceType": "StructureDefinition",
        "url": url or FHIR_SD + name,
        "name": name,
        "status": "active",
        "kind": kind,
        "abstract": False,
        "type": type_ or name,
        "derivation": "specialization",
        "snapshot": {"element": elements},
    }
    if namespace:
        out["extension"] = [{"url": EXT_NAMESPACE, "valueUri": namespace}]
    return out


def primitive_sd(name: str) -> Dict[str, Any]:
    return sd(
        name,
        [ed(name), attr(f"{name}.id", SYSTEM_STRING), attr(f"{name}.value", SYSTEM_STRING)],
        kind="primitive-type",
    )


def cda_sd(name: str, elements: List[Dict[str, Any]]) -> Dict[str, Any]:
    return sd(
        name,
        elements,
        kind="logical",
        url=CDA_SD + name,
        type_=CDA_SD + name,
        namespace=V3,
    )


def fhir_kit() -> List[Dict[str, Any]]:
    defs = [primitive_sd(p) for p in PRIMITIVES]
    defs += [
        sd(
            "Coding",
            [
                ed("Coding"),
                ed("Coding.system", "uri"),
                ed("Coding.code", "code"),
                ed("Coding.display", "string"),
            ],
        ),
        sd(
            "CodeableConcept",
            [
                ed("CodeableConcept"),
                ed("CodeableConcept.coding", "Coding", max="*"),
                ed("CodeableConcept.text", "string"),
            ],
        ),
        sd(
            "Quantity",
            [
                ed("Quantity"),
                ed("Quantity.value", "decimal"),
                ed("Quantity.comparator", "code"),
                ed("Quantity.unit", "string"),
                ed("Quantity.system", "uri"),
                ed("Quantity.code", "code"),
            ],
        ),
        sd(
            "Identifier",
            [
                ed("Identifier"),
                ed("Identifier.type", "CodeableConcept"),
                ed("Identifier.system", "uri"),
                ed("Identifier.value", "string"),
            ],
        ),
        sd(
            "ContactPoint",
            [
                ed("ContactPoint"),
                ed("ContactPoint.system", "code"),
                ed("ContactPoint.value", "string"),
            ],
        ),
        sd(
            "HumanName",
            [
                ed("HumanName"),
                ed("HumanName.family", "string"),
                ed("HumanName.given", "string", max="*"),
            ],
        ),
        sd(
            "Reference",
            [
                ed("Reference"),
                ed("Reference.reference", "string"),
                ed("Reference.display", "string"),
            ],
        ),
        sd(
            "Narrative",
            [
                ed("Narrative"),
                ed("Narrative.status", "code"),
                ed("Narrative.div", "xhtml"),
            ],
        ),
        sd(
            "Patient",
            [
                ed("Patient"),
                ed("Patient.id", "id"),
                ed("Patient.text", "Narrative"),
                ed("Patient.contained", "Resource", max="*"),
                ed("Patient.identifier", "Identifier", max="*"),
                ed("Patient.active", "boolean"),
                ed("Patient.name", "HumanName", max="*"),
                ed("Patient.telecom", "ContactPoint", max="*"),
                ed("Patient.gender", "code"),
                ed("Patient.birthDate", "date"),
                ed("Patient.generalPractitioner", "Reference", max="*"),
                ed("Patient.managingOrganization", "Reference"),
            ],
            kind="resource",
        ),
        sd(
            "Organization",
            [
                ed("Organization"),
                ed("Organization.id", "id"),
                ed("Organization.name", "string"),
            ],
            kind="resource",
        ),
        sd(
            "Observation",
            [
                ed("Observation"),
                ed("Observation.id", "id"),
                ed("Observation.status", "code"),
                ed("Observation.code", "CodeableConcept"),
                ed("Observation.subject", "Reference"),
                ed("Observation.value[x]", "Quantity", "string", "CodeableConcept"),
            ],
            kind="resource",
        ),
        sd(
            "Bundle",
            [
                ed("Bundle"),
                ed("Bundle.id", "id"),
                ed("Bundle.type", "code"),
                ed("Bundle.entry", "BackboneElement", max="*"),
                ed("Bundle.entry.fullUrl", "uri"),
                ed("Bundle.entry.resource", "Resource"),
            ],
            kind="resource",
        ),
    ]
    return defs


def cda_kit() -> List[Dict[str, Any]]:
    return [
        cda_sd(
            "ClinicalDocument",
            [
                ed("ClinicalDocument"),
                ed("ClinicalDocument.id", "II"),
                ed("ClinicalDocument.code", "CE"),
                ed("ClinicalDocument.title", "ST"),
                ed("ClinicalDocument.effectiveTime", "TS"),
                ed("ClinicalDocument.component", "Section", max="*"),
            ],
        ),
        cda_sd("II", [ed("II"), attr("II.root"), attr("II.extension")]),
        cda_sd(
            "CE",
            [ed("CE"), attr("CE.code"), attr("CE.codeSystem"), attr("CE.displayName")],
        ),
        cda_sd("ST", [ed("ST"), ed("ST.value", "string", representation=["xmlText"])]),
        cda_sd(
            "TS",
            [
                ed("TS"),
                attr(
                    "TS.value",
                    "dateTime",
                    extension=[{"url": EXT_DATE_FORMAT, "valueString": "v3"}],
                ),
            ],
        ),
        cda_sd(
            "Section",
            [
                ed("Section"),
                ed("Section.title", "ST"),
                ed("Section.text", "xhtml", representation=["cdaText"]),
            ],
        ),
        cda_sd("ANY", [ed("ANY"), attr("ANY.nullFlavor", "code")]),
        cda_sd(
            "PQ",
            [
                ed("PQ"),
                attr("PQ.nullFlavor", "code"),
                attr("PQ.value", "decimal"),
                attr("PQ.unit"),
            ],
        ),
        # typeAttr elements declared with the abstract ANY type
        cda_sd(
            "LabObservation",
            [
                ed("LabObservation"),
                ed("LabObservation.code", "CE"),
                ed(
                    "LabObservation.effectiveTime",
                    "ANY",
                    representation=["typeAttr"],
                    extension=[{"url": EXT_DEFAULT_TYPE, "valueUri": "TS"}],
                ),
                ed("LabObservation.value", "ANY", max="*", representation=["typeAttr"]),
            ],
        ),
    ]


def structure_map(data: Dict[str, Any]):
    """Validate a StructureMap dict, filling in the mandatory header fields."""
    payload = {"resourceType": "StructureMap", "status": "draft"}
    payload.update(copy.deepcopy(data))
    payload.setdefault("name", payload["url"].rsplit("/", 1)[-1])
    return parse_resource(payload)


def group(name: str, rules: List[Dict[str, Any]], inputs=None, **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "name": name,
        "typeMode": "none",
        "input": inputs
        or [{"name": "src", "mode": "source"}, {"name": "tgt", "mode": "target"}],
        "rule": rules,
    }
    out.update(extra)
    return out


def source(context: str, element: Optional[str] = None, variable: Optional[str] = None, **extra: Any):
    out: Dict[str, Any] = {"context": context}
    if element:
        out["element"] = element
    if variable:
        out["variable"] = variable
    out.update(extra)
    return out


def target(
    context: Optional[str] = None,
    element: Optional[str] = None,
    variable: Optional[str] = None,
    transform: Optional[str] = None,
    *params: Dict[str, Any],
    **extra: Any,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if context:
        out["context"] = context
        out["contextType"] = "variable"
    if element:
        out["element"] = element
    if variable:
        out["variable"] = variable
    if transform:
        out["transform"] = transform
    if params:
        out["parameter"] = list(params)
    out.update(extra)
    return out


def rule(name: str, sources, targets=None, **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": name, "source": sources}
    if targets:
        out["target"] = targets
    out.update(extra)
    return out


def var(name: str) -> Dict[str, Any]:
    return {"valueId": name}


def lit(value: str) -> Dict[str, Any]:
    return {"valueString": value}


def write_package(path: Path, files: Dict[str, Any]) -> Path:
    """Write an NPM style ``.tgz`` with the given ``member name -> JSON`` files."""
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            raw = json.dumps(content).encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(raw)
            tar.addfile(info, io.BytesIO(raw))
    return path


# ------------------------------------------------------------------------------
# fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def kit() -> SimpleNamespace:
    """Kit helpers, for tests that build their own maps and definitions."""
    return SimpleNamespace(
        ed=ed,
        attr=attr,
        sd=sd,
        structure_map=structure_map,
        group=group,
        source=source,
        target=target,
        rule=rule,
        var=var,
        lit=lit,
        write_package=write_package,
        fhir_kit=fhir_kit,
        cda_kit=cda_kit,
    )


@pytest.fixture
def store() -> InMemoryResolver:
    s = InMemoryResolver()
    for data in fhir_kit() + cda_kit():
        s.add(parse_resource(data))
    return s


@pytest.fixture
def resolver(store) -> DefinitionResolver:
    return DefinitionResolver(store, ttl=60.0)


@pytest.fixture
def patient_json() -> Dict[str, Any]:
    return {
        "resourceType": "Patient",
        "id": "p1",
        "identifier": [{"system": "urn:oid:2.16.756.5.30", "value": "1234"}],
        "active": True,
        "name": [{"family": "Doe", "given": ["John", "Q"]}, {"family": "Roe"}],
        "gender": "male",
        "birthDate": "1970-01-01",
    }


CDA_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<ClinicalDocument xmlns="urn:hl7-org:v3">
  <id root="2.16.756.5.30" extension="1234"/>
  <code code="34133-9" codeSystem="2.16.840.1.113883.6.1" displayName="Summary"/>
  <title>Discharge summary</title>
  <effectiveTime value="20231130143000+0100"/>
  <component>
    <title>Medication</title>
    <text><paragraph>Take <content styleCode="Bold">two</content> daily</paragraph></text>
  </component>
</ClinicalDocument>
"""


@pytest.fixture
def cda_xml() -> bytes:
    return CDA_XML


@pytest.fixture(autouse=True)
def _restore_transform_registry():
    """Tests may register extra transforms; put the built-in set back afterwards."""
    snap = dict(registry._REGISTRY)
    try:
        yield
    finally:
        registry._REGISTRY.clear()
        registry._REGISTRY.update(snap)
