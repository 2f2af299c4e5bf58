# src/fhir_map_tool/transform/builtins/references.py
"""
Reference transforms: reference and pointer.

Both point at a resource held by a variable. A resource without an id gets
a fresh lowercase UUID on first use, so later references agree.
"""

from __future__ import annotations

import uuid

from ...model.element import Element
from ..base import TransformCall
from ..registry import register


def ensure_id(resource: Element) -> str:
    rid = resource.get_id_base()
    if not rid:
        rid = str(uuid.uuid4()).lower()
        resource.set_id_base(rid)
    return rid


def _resource(call: TransformCall) -> Element:
    value = call.param(0)
    if not isinstance(value, Element) or not value.is_resource():
        kind = value.fhir_type if isinstance(value, Element) else type(value).__name__
        raise call.fail(f"Transform engine cannot point at an element of type {kind}")
    return value


@register("reference")
class ReferenceTransform:
    """``reference(resource)`` -> ``Type/id``"""

    def apply(self, call: TransformCall) -> str:
        resource = _resource(call)
        return f"{resource.fhir_type}/{ensure_id(resource)}"


@register("pointer")
class PointerTransform:
    """``pointer(resource)`` -> ``urn:uuid:id``"""

    def apply(self, call: TransformCall) -> str:
        return "urn:uuid:" + ensure_id(_resource(call))
