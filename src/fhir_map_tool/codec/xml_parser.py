# src/fhir_map_tool/codec/xml_parser.py
"""
Definition-driven XML reader.

Every XML element is matched against the child properties of its parent's
Property; nothing here knows about particular resources. The root element's
definition is looked up by ``namespace|localName`` so CDA documents (namespace
``urn:hl7-org:v3``) and FHIR resources share one code path.

The underlying lxml parser never loads DTDs, never resolves entities and never
touches the network. A document with a DOCTYPE is rejected outright.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, List, Optional, Union

from lxml import etree

from ..exceptions import DefinitionError, SourceParseError
from ..model.definitions import (
    FHIR_NS,
    FHIR_SD_BASE,
    XSI_NS,
    snapshot_elements,
)
from ..model.element import Element, SpecialElement
from ..model.property import Property
from .dates import from_external
from .narrative import cda_to_xhtml

logger = logging.getLogger(__name__)


def secure_parser() -> etree.XMLParser:
    """Return an lxml parser with DTDs, entities and network access disabled."""
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        dtd_validation=False,
        huge_tree=False,
        remove_comments=False,
        remove_blank_text=False,
        strip_cdata=False,
    )


def _qname(node: etree._Element):
    q = etree.QName(node)
    return q.namespace, q.localname


def _direct_text(node: etree._Element) -> str:
    parts = [node.text or ""]
    for child in node:
        parts.append(child.tail or "")
    return "".join(parts)


def _is_data_property(prop: Property) -> bool:
    ed = prop.definition
    if ed.id == "ED.data[x]":
        return True
    base = getattr(ed, "base", None)
    return base is not None and base.path == "ED.data[x]"


class XmlParser:
    """
    Parse XML documents into element trees.

    Parameters
    ----------
    resolver : DefinitionResolver
        Supplies StructureDefinitions by namespace and name.
    strict : bool, default=True
        Raise SourceParseError on structural problems (unknown elements or
        attributes, stray text, CDATA). When False, they are logged and
        collected in ``issues`` and the offending node is skipped.
    """

    def __init__(self, resolver: Any, strict: bool = True) -> None:
        self.resolver = resolver
        self.strict = strict
        self.issues: List[str] = []

    # --------------------------------------------------------------------------
    # errors
    # --------------------------------------------------------------------------

    def _error(self, msg: str, line: Optional[int] = None) -> None:
        if self.strict:
            raise SourceParseError(msg, line)
        where = f" (line {line})" if line is not None else ""
        self.issues.append(msg + where)
        logger.warning("%s%s", msg, where)

    # --------------------------------------------------------------------------
    # entry points
    # --------------------------------------------------------------------------

    def parse(self, data: Union[str, bytes]) -> Element:
        """
        Parse an XML document.

        Parameters
        ----------
        data : str or bytes
            The document; text is encoded as UTF-8 first.

        Returns
        -------
        Element
            Root of the element tree, with paths numbered.

        Raises
        ------
        SourceParseError
            If the document is malformed, declares a DOCTYPE or has a root
            element with no known definition, and (strict mode) on any
            structural problem.
        """
        raw = data.encode("utf-8") if isinstance(data, str) else data
        try:
            root = etree.fromstring(raw, secure_parser())
        except etree.XMLSyntaxError as e:
            line, col = e.position if e.position else (None, None)
            raise SourceParseError(f"Malformed XML: {e.msg}", line, col) from e
        doctype = root.getroottree().docinfo.doctype
        if doctype:
            raise SourceParseError(f"DOCTYPE is not allowed: {doctype}", 1)
        marker = raw.find(b"<![CDATA[")
        if marker >= 0:
            self._error("CDATA is not allowed", raw[:marker].count(b"\n") + 1)
        return self.parse_element(root)

    def parse_element(self, node: etree._Element) -> Element:
        """Parse an already loaded lxml element as a document root."""
        ns, name = _qname(node)
        sd = self.resolver.fetch_type_definition(name, namespace=ns or "noNamespace")
        if sd is None:
            raise SourceParseError(
                f"This does not appear to be a FHIR resource "
                f"(unknown namespace/name '{ns or 'noNamespace'}::{name}')",
                node.sourceline,
            )
        elements = snapshot_elements(sd)
        result = Element(name, Property(self.resolver, elements[0], sd))
        result.path = name
        result.type = name
        result.mark_location(node.sourceline, None)
        self._reap_comments(node, result)
        self._parse_children(node, result)
        result.number_children()
        return result

    # --------------------------------------------------------------------------
    # recursion
    # --------------------------------------------------------------------------

    def _reap_comments(self, node: etree._Element, element: Element) -> None:
        for sib in node.itersiblings(preceding=True):
            if not isinstance(sib, etree._Comment):
                if isinstance(sib.tag, str):
                    break
                continue
            element.comments.insert(0, sib.text or "")
        trailing: List[str] = []
        for child in reversed(node):
            if isinstance(child.tag, str):
                break
            if isinstance(child, etree._Comment):
                trailing.insert(0, child.text or "")
        element.comments.extend(trailing)

    def _properties(self, node: etree._Element, element: Element) -> List[Property]:
        xsi_type = node.get(f"{{{XSI_NS}}}type")
        try:
            return element.property.child_properties(element.name, xsi_type or element.type)
        except DefinitionError as e:
            raise SourceParseError(str(e), node.sourceline) from e

    def _parse_children(self, node: etree._Element, element: Element) -> None:
        properties = self._properties(node, element)
        self._parse_text(node, element, properties)
        self._parse_attributes(node, element, properties)

        for child in node:
            if isinstance(child, etree._Comment):
                continue
            if not isinstance(child.tag, str):
                self._error(
                    f"Node type {type(child).__name__} is not allowed", child.sourceline
                )
                continue
            ns, local = _qname(child)
            prop = self._element_property(properties, local, ns)
            if prop is None:
                self._error(f"Undefined element '{local}'", child.sourceline)
                continue
            if not prop.is_choice and prop.types == ["xhtml"]:
                self._parse_xhtml(child, element, prop)
                continue

            name = local if prop.name.endswith("[x]") else prop.name
            n = Element(name, prop).mark_location(child.sourceline, None)
            ok = True
            xsi_type = child.get(f"{{{XSI_NS}}}type") if prop.is_type_attr else None
            if xsi_type:
                if ":" in xsi_type:
                    xsi_type = xsi_type.split(":", 1)[1]
                n.type = xsi_type
                n.explicit_type = xsi_type
            elif prop.is_type_attr and prop.default_type:
                n.type = prop.default_type
            elif prop.is_choice:
                if prop.is_type_attr:
                    self._error(f"No type found on '{local}'", child.sourceline)
                    ok = False
                else:
                    try:
                        n.type = prop.get_type(name)
                    except DefinitionError as e:
                        self._error(str(e), child.sourceline)
                        ok = False
            if not ok:
                continue
            element.children.append(n)
            self._reap_comments(child, n)
            if prop.is_resource:
                self._parse_resource(child, n, prop)
            else:
                self._parse_children(child, n)

    def _parse_text(
        self, node: etree._Element, element: Element, properties: List[Property]
    ) -> None:
        text = _direct_text(node).strip()
        if not text:
            return
        prop = next((p for p in properties if p.is_xml_text), None)
        if prop is None:
            self._error(f"Text should not be present ('{text[:40]}')", node.sourceline)
            return
        if _is_data_property(prop):
            if node.get("representation") == "B64":
                n = Element("dataBase64Binary", prop, "base64Binary", text)
            else:
                n = Element("dataString", prop, "string", text)
        else:
            n = Element(prop.name, prop, prop.get_type(), text)
        element.children.append(n.mark_location(node.sourceline, None))

    def _parse_attributes(
        self, node: etree._Element, element: Element, properties: List[Property]
    ) -> None:
        node_ns, node_name = _qname(node)
        for key, value in node.attrib.items():
            q = etree.QName(key)
            prop = self._attr_property(properties, q.localname, q.namespace)
            if prop is not None:
                if prop.date_format:
                    value = from_external(prop.date_format, value)
                if prop.name == "value" and element.is_primitive():
                    element.value = value
                else:
                    n = Element(prop.name, prop, prop.get_type(), value)
                    element.children.append(n.mark_location(node.sourceline, None))
                continue
            ok = node_ns != FHIR_NS and q.localname == "schemaLocation"
            ok = ok or (
                element.slot_property.is_type_attr
                and q.localname == "type"
                and q.namespace == XSI_NS
            )
            if not ok:
                self._error(
                    f"Undefined attribute '@{q.localname}' on {node_name} "
                    f"for type {element.fhir_type}",
                    node.sourceline,
                )

    def _parse_xhtml(self, child: etree._Element, element: Element, prop: Property) -> None:
        if prop.is_cda_text:
            xhtml = cda_to_xhtml(child)
        else:
            xhtml = copy.deepcopy(child)
            xhtml.tail = None
        value = etree.tostring(xhtml, encoding="unicode", with_tail=False)
        n = Element(prop.name, prop, "xhtml", value).mark_location(child.sourceline, None)
        n.xhtml = xhtml
        element.children.append(n)

    def _parse_resource(self, container: etree._Element, parent: Element, slot: Property) -> None:
        res = next((c for c in container if isinstance(c.tag, str)), None)
        if res is None:
            self._error(f"Element '{parent.name}' contains no resource", container.sourceline)
            return
        _, name = _qname(res)
        sd = self.resolver.fetch_structure(FHIR_SD_BASE + name)
        if sd is None:
            raise SourceParseError(
                f"Contained resource does not appear to be a FHIR resource "
                f"(unknown name '{name}')",
                res.sourceline,
            )
        parent.element_property = slot
        parent.property = Property(self.resolver, snapshot_elements(sd)[0], sd)
        parent.special = SpecialElement.from_property(slot)
        parent.type = name
        self._parse_children(res, parent)

    # --------------------------------------------------------------------------
    # property matching
    # --------------------------------------------------------------------------

    @staticmethod
    def _element_property(
        properties: List[Property], name: str, namespace: Optional[str]
    ) -> Optional[Property]:
        candidates = sorted(
            (p for p in properties if not (p.is_xml_attr or p.is_xml_text)),
            key=lambda p: len(p.name),
            reverse=True,
        )
        for p in candidates:
            if p.xml_name == name and p.xml_namespace == namespace:
                return p
        for p in candidates:
            if p.xml_name == name:
                return p
            stem = p.name[:-3]
            if p.name.endswith("[x]") and len(name) > len(stem) and name.startswith(stem):
                return p
        return None

    @staticmethod
    def _attr_property(
        properties: List[Property], name: str, namespace: Optional[str]
    ) -> Optional[Property]:
        for p in properties:
            if p.is_xml_attr and p.xml_name == name and p.xml_namespace == namespace:
                return p
        if namespace is None:
            for p in properties:
                if p.is_xml_attr and p.xml_name == name:
                    return p
        return None
