# src/fhir_map_tool/codec/xml_composer.py
"""
XML writer driven by the serialization event stream.

Namespace declarations all go on the root: the root element's namespace is
the default namespace, ``xsi`` follows when any element carries an
``xsi:type``, and every other namespace used in the tree is declared in
first-use (preorder) order. Well-known namespaces get their customary
prefixes (``sdtc``, ``pharm``, ...), others ``ns1``, ``ns2``...
"""

from __future__ import annotations

import copy
from typing import Dict, List, Optional

from lxml import etree

from ..model.definitions import FHIR_NS, V3_NS, XHTML_NS, XSI_NS
from ..model.element import Element
from .dates import to_external
from .events import (
    Attr,
    Comment,
    EndElement,
    StartElement,
    Text,
    Value,
    Xhtml,
    element_events,
    xml_name,
    xsi_type_of,
)
from .narrative import xhtml_to_cda
from .xml_parser import secure_parser

KNOWN_PREFIXES: Dict[str, str] = {
    FHIR_NS: "f",
    XHTML_NS: "h",
    V3_NS: "v3",
    "urn:hl7-org:sdtc": "sdtc",
    "urn:ihe:pharm": "pharm",
}

NO_NAMESPACE = "noNamespace"


def _has_ns(ns: Optional[str]) -> bool:
    return bool(ns) and ns != NO_NAMESPACE


def _needs_xsi(element: Element) -> bool:
    for e in element.iter_tree():
        if e.explicit_type and e.is_empty():
            return True
        if xsi_type_of(e):
            return True
    return False


def namespace_map(element: Element) -> Dict[Optional[str], str]:
    """
    Compute the namespace declarations for a document rooted at ``element``.

    Returns
    -------
    dict
        lxml ``nsmap``: ``None`` maps to the default namespace.
    """
    nsmap: Dict[Optional[str], str] = {}
    root_ns = element.property.xml_namespace
    if _has_ns(root_ns):
        nsmap[None] = root_ns
    if _needs_xsi(element):
        nsmap["xsi"] = XSI_NS
    seen = set(nsmap.values())
    counter = 0

    def _declare(ns: Optional[str]) -> None:
        nonlocal counter
        if not _has_ns(ns) or ns in seen:
            return
        prefix = KNOWN_PREFIXES.get(ns)
        if prefix is None or prefix in nsmap:
            counter += 1
            prefix = f"ns{counter}"
        nsmap[prefix] = ns
        seen.add(ns)

    for e in element.iter_tree():
        if e.fhir_type == "xhtml":
            continue
        prop = e.slot_property
        if prop.is_xml_attr:
            if e.property.xml_namespace not in (root_ns, FHIR_NS):
                _declare(e.property.xml_namespace)
            continue
        _declare(e.property.xml_namespace)
    return nsmap


def _tag(ns: Optional[str], name: str) -> str:
    return f"{{{ns}}}{name}" if _has_ns(ns) else name


def _append_text(container: etree._Element, text: str) -> None:
    if len(container):
        last = container[-1]
        last.tail = (last.tail or "") + text
    else:
        container.text = (container.text or "") + text


def _xhtml_node(element: Element) -> Optional[etree._Element]:
    if element.xhtml is not None:
        return copy.deepcopy(element.xhtml)
    if element.value:
        return etree.fromstring(element.value.encode("utf-8"), secure_parser())
    return None


class XmlComposer:
    """
    Serialize element trees to XML.

    Parameters
    ----------
    pretty : bool, default=True
        Indent the output.
    """

    def __init__(self, pretty: bool = True) -> None:
        self.pretty = pretty

    def build(self, element: Element) -> etree._ElementTree:
        """Return the lxml tree for ``element``."""
        nsmap = namespace_map(element)
        # (outer node, node children are written into)
        stack: List[tuple] = []
        leading: List[str] = []
        root: Optional[etree._Element] = None

        for ev in element_events(element):
            if isinstance(ev, Comment):
                if stack:
                    stack[-1][1].append(etree.Comment(ev.text))
                else:
                    leading.append(ev.text)
            elif isinstance(ev, StartElement):
                tag = _tag(ev.namespace, ev.name)
                if not stack:
                    node = etree.Element(tag, nsmap=nsmap)
                    root = node
                else:
                    node = etree.SubElement(stack[-1][1], tag)
                if ev.xsi_type:
                    node.set(f"{{{XSI_NS}}}type", ev.xsi_type)
                inner = node
                if ev.resource_type:
                    inner = etree.SubElement(node, _tag(ev.namespace, ev.resource_type))
                stack.append((node, inner))
            elif isinstance(ev, Attr):
                owner = stack[-1][0]
                value = ev.value
                fmt = ev.element.slot_property.date_format
                if fmt:
                    value = to_external(fmt, value)
                owner_ns = etree.QName(owner).namespace
                if _has_ns(ev.namespace) and ev.namespace not in (owner_ns, FHIR_NS):
                    owner.set(f"{{{ev.namespace}}}{ev.name}", value)
                else:
                    owner.set(ev.name, value)
            elif isinstance(ev, Value):
                stack[-1][0].set("value", ev.value)
            elif isinstance(ev, Text):
                _append_text(stack[-1][1], ev.value)
            elif isinstance(ev, Xhtml):
                if not stack:
                    continue
                div = _xhtml_node(ev.element)
                if div is None:
                    continue
                if ev.element.slot_property.is_cda_text:
                    xhtml_to_cda(
                        div,
                        stack[-1][1],
                        name=xml_name(ev.element),
                        namespace=ev.element.property.xml_namespace,
                    )
                else:
                    div.tail = None
                    stack[-1][1].append(div)
            elif isinstance(ev, EndElement):
                stack.pop()

        if root is None:
            raise ValueError("Element produced no XML")
        for text in leading:
            root.addprevious(etree.Comment(text))
        return root.getroottree()

    def compose(self, element: Element) -> bytes:
        """
        Serialize ``element`` as a UTF-8 XML document.

        Returns
        -------
        bytes
            The document, with an XML declaration.
        """
        tree = self.build(element)
        return etree.tostring(
            tree, xml_declaration=True, encoding="UTF-8", pretty_print=self.pretty
        )
