# src/fhir_map_tool/codec/json_parser.py
"""
Definition-driven JSON reader.

Objects become composite elements, arrays become repeated children, and a
primitive ``name`` is paired with its ``_name`` companion object (which holds
the primitive's ``id`` and ``extension``). Choice elements are recognised by
their type suffix (``valueQuantity``); nested resources by ``resourceType``.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Set, Union

from lxml import etree

from ..exceptions import DefinitionError, SourceParseError
from ..model.definitions import FHIR_SD_BASE, is_absolute_url, snapshot_elements
from ..model.element import Element, SpecialElement, primitive_string
from ..model.property import Property, capitalize, tail_type
from .xml_parser import secure_parser

logger = logging.getLogger(__name__)

IGNORED_KEYS = frozenset({"resourceType", "fhir_comments"})


def load_json(data: Union[str, bytes]) -> Any:
    """
    Decode JSON keeping decimals exact.

    Raises
    ------
    SourceParseError
        If the text is not valid JSON.
    """
    try:
        return json.loads(data, parse_float=Decimal)
    except json.JSONDecodeError as e:
        raise SourceParseError(f"Malformed JSON: {e.msg}", e.lineno, e.colno) from e


class JsonParser:
    """
    Parse JSON documents into element trees.

    Parameters
    ----------
    resolver : DefinitionResolver
        Supplies StructureDefinitions by resource type.
    strict : bool, default=True
        Raise SourceParseError on structural problems; otherwise log them and
        collect them in ``issues``.
    """

    def __init__(self, resolver: Any, strict: bool = True) -> None:
        self.resolver = resolver
        self.strict = strict
        self.issues: List[str] = []

    def _error(self, msg: str) -> None:
        if self.strict:
            raise SourceParseError(msg)
        self.issues.append(msg)
        logger.warning("%s", msg)

    def _definition(self, resource_type: str):
        if is_absolute_url(resource_type):
            return self.resolver.fetch_structure(resource_type)
        return self.resolver.fetch_structure(
            FHIR_SD_BASE + resource_type
        ) or self.resolver.fetch_type_definition(resource_type)

    # --------------------------------------------------------------------------
    # entry points
    # --------------------------------------------------------------------------

    def parse(self, data: Union[str, bytes, Mapping[str, Any]]) -> Element:
        """
        Parse a JSON document (text or an already decoded object).

        Returns
        -------
        Element
            Root of the element tree, with paths numbered.

        Raises
        ------
        SourceParseError
            If the document is malformed, has no ``resourceType`` or names an
            unknown type, and (strict mode) on any structural problem.
        """
        obj = data if isinstance(data, Mapping) else load_json(data)
        if not isinstance(obj, Mapping):
            raise SourceParseError("JSON document must be an object")
        rtype = obj.get("resourceType")
        if not rtype:
            raise SourceParseError("Unable to find resourceType property")
        sd = self._definition(str(rtype))
        if sd is None:
            raise SourceParseError(f"Unable to find definition of resource type {rtype}")
        elements = snapshot_elements(sd)
        name = elements[0].path
        result = Element(name, Property(self.resolver, elements[0], sd))
        result.type = name
        result.path = name
        self._parse_children(result, obj)
        result.number_children()
        return result

    # --------------------------------------------------------------------------
    # recursion
    # --------------------------------------------------------------------------

    def _parse_children(self, element: Element, obj: Mapping[str, Any]) -> None:
        try:
            properties = element.child_properties()
        except DefinitionError as e:
            raise SourceParseError(str(e)) from e
        processed: Set[str] = set(IGNORED_KEYS)
        for prop in properties:
            if prop.name.endswith("[x]"):
                for code in dict.fromkeys(prop.types):
                    name = prop.base_name + capitalize(tail_type(code))
                    if name in obj or "_" + name in obj:
                        self._parse_property(element, prop, name, code, obj, processed)
            elif prop.name in obj or "_" + prop.name in obj:
                self._parse_property(element, prop, prop.name, None, obj, processed)
        for key in obj:
            if key not in processed:
                self._error(f"Unrecognised property '{key}' on {element.name}")

    def _parse_property(
        self,
        parent: Element,
        prop: Property,
        name: str,
        type_code: Optional[str],
        obj: Mapping[str, Any],
        processed: Set[str],
    ) -> None:
        processed.add(name)
        processed.add("_" + name)
        value = obj.get(name)
        ext = obj.get("_" + name)
        if prop.is_list:
            values = self._as_array(value, name)
            exts = self._as_array(ext, "_" + name)
            for i in range(max(len(values), len(exts))):
                v = values[i] if i < len(values) else None
                e = exts[i] if i < len(exts) else None
                self._parse_item(parent, prop, name, type_code, v, e)
            return
        if isinstance(value, list) or isinstance(ext, list):
            self._error(f"Property '{name}' on {parent.name} must not be an array")
            return
        self._parse_item(parent, prop, name, type_code, value, ext)

    def _as_array(self, value: Any, name: str) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            self._error(f"Property '{name}' must be an array")
            return [value]
        return value

    def _parse_item(
        self,
        parent: Element,
        prop: Property,
        name: str,
        type_code: Optional[str],
        value: Any,
        ext: Any,
    ) -> None:
        try:
            code = type_code or prop.get_type(name)
        except DefinitionError as e:
            self._error(str(e))
            return
        if prop.is_primitive_type(code):
            if value is None and ext is None:
                return
            if isinstance(value, (Mapping, list)):
                self._error(f"Property '{name}' must be a primitive value")
                return
            n = Element(name, prop, type_code)
            if value is not None:
                n.value = primitive_string(value)
            if tail_type(code or "") == "xhtml" and n.value:
                try:
                    n.xhtml = etree.fromstring(n.value.encode("utf-8"), secure_parser())
                except etree.XMLSyntaxError as e:
                    self._error(f"Invalid XHTML in '{name}': {e.msg}")
            parent.children.append(n)
            if ext is not None:
                if not isinstance(ext, Mapping):
                    self._error(f"Property '_{name}' must be an object")
                    return
                self._parse_children(n, ext)
            return

        if value is None:
            return
        if not isinstance(value, Mapping):
            self._error(f"Property '{name}' must be an object")
            return
        n = Element(name, prop, type_code)
        parent.children.append(n)
        if prop.is_resource:
            self._parse_resource(value, n, prop)
        else:
            self._parse_children(n, value)

    def _parse_resource(self, obj: Mapping[str, Any], element: Element, slot: Property) -> None:
        rtype = obj.get("resourceType")
        if not rtype:
            raise SourceParseError(f"Unable to find resourceType in '{element.name}'")
        sd = self._definition(str(rtype))
        if sd is None:
            raise SourceParseError(f"Unable to find definition of resource type {rtype}")
        element.element_property = slot
        element.property = Property(self.resolver, snapshot_elements(sd)[0], sd)
        element.special = SpecialElement.from_property(slot)
        element.type = str(rtype)
        self._parse_children(element, obj)
