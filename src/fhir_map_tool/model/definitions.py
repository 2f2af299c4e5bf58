# src/fhir_map_tool/model/definitions.py
"""
Conformance resource loading and small accessors over fhir.resources models.

StructureDefinition, StructureMap and ConceptMap are validated into the R4B
models from ``fhir.resources``; every other canonical resource (ValueSet,
CodeSystem, NamingSystem, ImplementationGuide, ...) is kept as a lightweight
CanonicalResource wrapper around its JSON payload.

Resolved definitions are treated as immutable. Code that needs a changed
definition (snapshot generation, map fix-up) builds a fresh model instead of
mutating a shared one.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from fhir.resources.R4B.conceptmap import ConceptMap
from fhir.resources.R4B.elementdefinition import ElementDefinition
from fhir.resources.R4B.structuredefinition import (
    StructureDefinition,
    StructureDefinitionSnapshot,
)
from fhir.resources.R4B.structuremap import StructureMap
from pydantic import ValidationError

from ..exceptions import DefinitionError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

FHIR_NS = "http://hl7.org/fhir"
XHTML_NS = "http://www.w3.org/1999/xhtml"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
V3_NS = "urn:hl7-org:v3"

FHIR_SD_BASE = "http://hl7.org/fhir/StructureDefinition/"
FHIRPATH_SYSTEM_PREFIX = "http://hl7.org/fhirpath/System."

EXT_NAMESPACE = "http://hl7.org/fhir/StructureDefinition/elementdefinition-namespace"
EXT_XML_NAME = "http://hl7.org/fhir/StructureDefinition/elementdefinition-xml-name"
EXT_DEFAULT_TYPE = (
    "http://hl7.org/fhir/StructureDefinition/elementdefinition-defaulttype"
)
EXT_REGEX = "http://hl7.org/fhir/StructureDefinition/regex"
EXT_DATE_FORMAT = (
    "http://www.healthintersections.com.au/fhir/StructureDefinition/"
    "elementdefinition-dateformat"
)

REP_XML_ATTR = "xmlAttr"
REP_XML_TEXT = "xmlText"
REP_TYPE_ATTR = "typeAttr"
REP_CDA_TEXT = "cdaText"

# Types the FHIR core treats as primitives without needing a definition lookup.
PRIMITIVE_TYPES = frozenset(
    {
        "boolean",
        "integer",
        "integer64",
        "string",
        "decimal",
        "uri",
        "url",
        "canonical",
        "base64Binary",
        "instant",
        "date",
        "dateTime",
        "time",
        "code",
        "oid",
        "id",
        "markdown",
        "unsignedInt",
        "positiveInt",
        "uuid",
        "xhtml",
    }
)

DefinitionModel = Union[StructureDefinition, StructureMap, ConceptMap]

_MODEL_CLASSES: Dict[str, Any] = {
    "StructureDefinition": StructureDefinition,
    "StructureMap": StructureMap,
    "ConceptMap": ConceptMap,
}


# ------------------------------------------------------------------------------
# generic canonical resources
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class CanonicalResource:
    """
    A canonical resource of a kind that has no dedicated model here.

    Attributes
    ----------
    resource_type : str
        FHIR resource type, e.g. ``ValueSet``.
    url : str or None
        Canonical URL.
    version : str or None
        Business version.
    status : str or None
        Publication status, kept opaque.
    id : str or None
        Logical id.
    name : str or None
        Computer friendly name.
    data : Mapping
        The full JSON payload.
    """

    resource_type: str
    url: Optional[str] = None
    version: Optional[str] = None
    status: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "CanonicalResource":
        return cls(
            resource_type=str(data.get("resourceType")),
            url=data.get("url"),
            version=data.get("version"),
            status=data.get("status"),
            id=data.get("id"),
            name=data.get("name"),
            data=dict(data),
        )


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _sanitize_structure_definition(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill in ``base.min``, ``base.max`` and ``base.path`` where a snapshot or
    differential element carries an incomplete ``base``; the R4B model
    requires all three once ``base`` is present.
    """
    for part in ("snapshot", "differential"):
        for el in (data.get(part) or {}).get("element", []) or []:
            base = el.get("base")
            if base is None:
                continue
            if base.get("path") is None:
                base["path"] = el.get("path") or str(el.get("id", "")).split(":")[0]
            if base.get("min") is None:
                base["min"] = int(el.get("min", 0) or 0)
            if base.get("max") is None:
                base["max"] = str(el.get("max", "*"))
    return data


def _fix_map(data: Dict[str, Any]) -> Dict[str, Any]:
    """Strip a leading '#' from the ids of resources contained in a map."""
    for res in data.get("contained", []) or []:
        rid = res.get("id")
        if isinstance(rid, str) and rid.startswith("#"):
            res["id"] = rid[1:]
    return data


def parse_resource(data: Mapping[str, Any]) -> Any:
    """
    Validate a JSON canonical resource into its model.

    Parameters
    ----------
    data : Mapping
        Parsed JSON object with a ``resourceType`` member.

    Returns
    -------
    StructureDefinition, StructureMap, ConceptMap or CanonicalResource
        A fhir.resources model for the three kinds the engine executes,
        otherwise a CanonicalResource wrapper.

    Raises
    ------
    DefinitionError
        If the payload has no resourceType or fails model validation.
    """
    if not isinstance(data, Mapping):
        raise DefinitionError(
            f"Canonical resource must be a JSON object, got {type(data).__name__}"
        )
    rtype = data.get("resourceType")
    if not rtype:
        raise DefinitionError("Canonical resource has no resourceType")

    cls = _MODEL_CLASSES.get(str(rtype))
    if cls is None:
        return CanonicalResource.from_json(data)

    payload = copy.deepcopy(dict(data))
    if rtype == "StructureDefinition":
        payload = _sanitize_structure_definition(payload)
    elif rtype == "StructureMap":
        payload = _fix_map(payload)
    try:
        return cls.model_validate(payload)
    except ValidationError as e:
        raise DefinitionError(
            f"Invalid {rtype} {data.get('url') or data.get('id')}: {e}"
        ) from e


def parse_resource_json(text: Union[str, bytes]) -> Any:
    """Parse JSON text and validate it with parse_resource()."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DefinitionError(f"invalid JSON: {e}") from e
    return parse_resource(data)


def resource_type_of(resource: Any) -> str:
    """Return the FHIR resource type name of a loaded canonical resource."""
    if isinstance(resource, CanonicalResource):
        return resource.resource_type
    for name, cls in _MODEL_CLASSES.items():
        if isinstance(resource, cls):
            return name
    return type(resource).__name__


def canonical_url(resource: Any) -> Optional[str]:
    return getattr(resource, "url", None)


def last_updated(resource: Any) -> str:
    """Return a sortable 'last updated' stamp (meta.lastUpdated, then date)."""
    meta = getattr(resource, "meta", None)
    stamp = getattr(meta, "lastUpdated", None) if meta is not None else None
    if stamp is None:
        stamp = getattr(resource, "date", None)
    if stamp is None:
        return ""
    return stamp.isoformat() if hasattr(stamp, "isoformat") else str(stamp)


# ------------------------------------------------------------------------------
# extensions and choice values
# ------------------------------------------------------------------------------


def choice_value(obj: Any, prefix: str) -> Tuple[Optional[str], Any]:
    """
    Return ``(type_suffix, value)`` of a populated ``prefix[x]`` member.

    Parameters
    ----------
    obj : pydantic model
        A fhir.resources model instance.
    prefix : str
        Choice stem, e.g. ``value`` or ``defaultValue``.

    Returns
    -------
    tuple
        ``("String", "abc")`` style pair, or ``(None, None)`` when unset.
    """
    if obj is None:
        return None, None
    for name in type(obj).model_fields:
        if not name.startswith(prefix) or name.endswith("__ext"):
            continue
        suffix = name[len(prefix) :]
        if not suffix or not suffix[0].isupper():
            continue
        value = getattr(obj, name, None)
        if value is not None:
            return suffix, value
    return None, None


def extension_value(obj: Any, url: str) -> Any:
    """Return the value of the first extension with the given url, or None."""
    for ext in getattr(obj, "extension", None) or []:
        if getattr(ext, "url", None) == url:
            _, value = choice_value(ext, "value")
            return value
    return None


def has_extension(obj: Any, url: str) -> bool:
    return any(
        getattr(ext, "url", None) == url
        for ext in getattr(obj, "extension", None) or []
    )


# ------------------------------------------------------------------------------
# StructureDefinition accessors
# ------------------------------------------------------------------------------


def snapshot_elements(sd: StructureDefinition) -> List[ElementDefinition]:
    snapshot = getattr(sd, "snapshot", None)
    return list(getattr(snapshot, "element", None) or [])


def differential_elements(sd: StructureDefinition) -> List[ElementDefinition]:
    differential = getattr(sd, "differential", None)
    return list(getattr(differential, "element", None) or [])


def has_snapshot(sd: StructureDefinition) -> bool:
    return bool(snapshot_elements(sd))


def with_snapshot(
    sd: StructureDefinition, elements: Iterable[ElementDefinition]
) -> StructureDefinition:
    """Return a copy of ``sd`` whose snapshot holds ``elements``."""
    snapshot = StructureDefinitionSnapshot(element=list(elements))
    return sd.model_copy(update={"snapshot": snapshot})


def has_representation(ed: ElementDefinition, representation: str) -> bool:
    return representation in (getattr(ed, "representation", None) or [])


def type_codes(ed: ElementDefinition) -> List[str]:
    """Return the type codes of an element in declared order (duplicates kept)."""
    return [t.code for t in getattr(ed, "type", None) or [] if getattr(t, "code", None)]


def element_regex(ed: ElementDefinition) -> Optional[str]:
    """Return the regex of a primitive value element, if declared."""
    for t in getattr(ed, "type", None) or []:
        value = extension_value(t, EXT_REGEX)
        if value:
            return str(value)
    value = extension_value(ed, EXT_REGEX)
    return str(value) if value else None


def structure_namespace(sd: StructureDefinition) -> Optional[str]:
    value = extension_value(sd, EXT_NAMESPACE)
    return str(value) if value else None


def sd_type_name(sd: StructureDefinition) -> str:
    """Return the type of a definition stripped of any URL prefix."""
    t = str(getattr(sd, "type", "") or "")
    if "/" in t:
        return t.rsplit("/", 1)[1]
    return t


def is_absolute_url(value: Optional[str]) -> bool:
    return bool(value) and (
        value.startswith("http:")
        or value.startswith("https:")
        or value.startswith("urn:")
    )


def tail(path: str) -> str:
    """Return the last segment of a dotted element path."""
    return path.rsplit(".", 1)[-1]
