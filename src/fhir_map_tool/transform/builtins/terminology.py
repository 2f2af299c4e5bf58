# src/fhir_map_tool/transform/builtins/terminology.py
"""
The translate transform.

``translate(source, map, output)`` looks the source code up in a ConceptMap
and returns the mapped ``code``, ``system``, ``display``, ``Coding`` (the
default) or ``CodeableConcept``. The map is named by:

- ``#id``: a ConceptMap contained in the running StructureMap,
- ``mapUrl#id``: a ConceptMap contained in another StructureMap,
- a ConceptMap canonical URL,
- ``http://hl7.org/fhir/ConceptMap/special-oid2uri`` (OID to URI, output
  ``uri``).

A code the map cannot translate is not an error: a warning is recorded and
the target stays unset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple

from fhir.resources.R4B.conceptmap import ConceptMap
from fhir.resources.R4B.structuremap import StructureMap
from pydantic import ValidationError

from ...model.element import Element
from ..base import TransformCall
from ..expression import to_text
from ..registry import register
from ._support import new_element, typed_value
from .datatypes import build_coding, fill_coding

logger = logging.getLogger(__name__)

SPECIAL_OID2URI = "http://hl7.org/fhir/ConceptMap/special-oid2uri"

# Equivalences (R4) and relationships (R5) that count as a translation.
ACCEPTED_EQUIVALENCE = frozenset(
    {
        "equivalent",
        "equal",
        "relatedto",
        "wider",
        "subsumes",
        "source-is-narrower-than-target",
    }
)

CDA_CODED_TYPES = frozenset({"CD", "CE", "CV", "CO", "CS"})


@dataclass(frozen=True)
class SourceCode:
    system: Optional[str]
    code: Optional[str]


@dataclass(frozen=True)
class Translation:
    system: Optional[str]
    code: Optional[str]
    display: Optional[str] = None


# ------------------------------------------------------------------------------
# map lookup
# ------------------------------------------------------------------------------


def _as_concept_map(resource: Any) -> Optional[ConceptMap]:
    if isinstance(resource, ConceptMap):
        return resource
    if isinstance(resource, dict) and resource.get("resourceType") == "ConceptMap":
        try:
            return ConceptMap.model_validate(resource)
        except ValidationError:
            logger.warning("Ignoring invalid contained ConceptMap %s", resource.get("id"))
    return None


def contained_concept_maps(sm: Optional[StructureMap]) -> Iterator[ConceptMap]:
    for resource in getattr(sm, "contained", None) or []:
        cm = _as_concept_map(resource)
        if cm is not None:
            yield cm


def _contained(sm: Optional[StructureMap], cm_id: str) -> Optional[ConceptMap]:
    for cm in contained_concept_maps(sm):
        if (cm.id or "").lstrip("#") == cm_id:
            return cm
    return None


def find_concept_map(call: TransformCall, url: str) -> Tuple[Optional[ConceptMap], str]:
    """Return the ConceptMap a translate call names and its display URL."""
    if url.startswith("#"):
        sm = call.structure_map
        return _contained(sm, url[1:]), f"{sm.url}{url}"
    if "#" in url:
        map_url, cm_id = url.split("#", 1)
        cm = _contained(call.resolver.get_transform(map_url), cm_id)
        if cm is not None:
            return cm, url
    return call.resolver.fetch_concept_map(url), url


# ------------------------------------------------------------------------------
# translation
# ------------------------------------------------------------------------------


def source_code(call: TransformCall, source: Any) -> SourceCode:
    if not isinstance(source, Element) or source.is_primitive():
        return SourceCode(None, to_text(source))
    t = source.fhir_type
    if t == "Coding":
        return SourceCode(
            source.get_named_child_value("system"), source.get_named_child_value("code")
        )
    if t in CDA_CODED_TYPES:
        return SourceCode(
            source.get_named_child_value("codeSystem"), source.get_named_child_value("code")
        )
    raise call.fail(f"Unable to translate source {t}")


def _matches(group: Any, src: SourceCode) -> bool:
    return not src.system or src.system == group.source


def _unmapped(call: TransformCall, cm: ConceptMap, src: SourceCode, depth: int) -> Optional[Translation]:
    for group in cm.group or []:
        if not _matches(group, src) or group.unmapped is None:
            continue
        mode = group.unmapped.mode
        if mode == "provided":
            return Translation(group.target or src.system, src.code)
        if mode == "fixed":
            return Translation(group.target, group.unmapped.code, group.unmapped.display)
        if mode == "other-map" and group.unmapped.url and depth < 8:
            other, label = find_concept_map(call, str(group.unmapped.url))
            if other is None:
                raise call.fail(f"Unable to translate - cannot find map {group.unmapped.url}")
            return translate_code(call, other, label, src, depth + 1)
    return None


def translate_code(
    call: TransformCall, cm: ConceptMap, label: str, src: SourceCode, depth: int = 0
) -> Optional[Translation]:
    """
    Translate one code; None (after a warning) when the map has no answer.
    """
    matches: List[Tuple[Any, Any]] = []
    for group in cm.group or []:
        if not _matches(group, src):
            continue
        for element in group.element or []:
            if element.code == src.code:
                matches.append((group, element))
    if not matches:
        found = _unmapped(call, cm, src, depth)
        if found is None:
            call.warn(f"Concept map {label} has no mapping for {src.code}")
        return found

    group, element = matches[0]
    targets = element.target or []
    if not targets:
        call.warn(f"Concept map {label} found no translation for {src.code}")
        return None
    outcome: Optional[Translation] = None
    for target in targets:
        equivalence = getattr(target, "equivalence", None) or "equivalent"
        if equivalence not in ACCEPTED_EQUIVALENCE:
            continue
        if outcome is not None:
            call.warn(f"Concept map {label} found multiple matches for {src.code}")
            return None
        outcome = Translation(group.target, target.code, target.display)
    if outcome is None:
        call.warn(f"Concept map {label} found no usable translation for {src.code}")
    return outcome


@register("translate")
class TranslateTransform:
    """``translate(source, map[, output])``"""

    def apply(self, call: TransformCall) -> Any:
        source = call.param(0)
        url = call.param_string_required(1)
        field = call.param_string(2) if len(call.parameters) > 2 else None
        src = source_code(call, source)
        if src.code is None:
            return None

        if url == SPECIAL_OID2URI:
            if field != "uri":
                raise call.fail(f"Translate with {SPECIAL_OID2URI} needs output 'uri', got {field!r}")
            uri = call.resolver.oid_to_uri(src.code) or "urn:oid:" + src.code
            return typed_value(call, "uri", uri)

        cm, label = find_concept_map(call, url)
        if cm is None:
            raise call.fail(f"Unable to translate - cannot find map {url}")
        outcome = translate_code(call, cm, label, src)
        if outcome is None:
            return None
        return self._output(call, outcome, field)

    def _output(self, call: TransformCall, outcome: Translation, field: Optional[str]) -> Any:
        if field == "code":
            return typed_value(call, "code", outcome.code) if outcome.code else None
        if field == "system":
            return typed_value(call, "uri", outcome.system) if outcome.system else None
        if field == "display":
            return outcome.display
        if field in (None, "", "coding", "Coding"):
            return build_coding(call, outcome.system, outcome.code, outcome.display)
        if field in ("cc", "CodeableConcept"):
            cc = new_element(call, "CodeableConcept")
            fill_coding(cc.make_property("coding"), outcome.system, outcome.code, outcome.display)
            return cc
        raise call.fail(f"Unknown translate output {field!r}")
