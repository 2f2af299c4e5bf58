# src/fhir_map_tool/codec/narrative.py
"""
CDA narrative block <-> XHTML conversion.

A CDA section ``<text>`` uses its own narrative vocabulary (``paragraph``,
``content``, ``list``/``item``, ``linkHtml``, ``styleCode`` ...). The element
tree keeps narrative as an XHTML ``div`` either way, so CDA and FHIR narrative
can be copied into each other by a map.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from lxml import etree

from ..model.definitions import V3_NS, XHTML_NS

logger = logging.getLogger(__name__)

# CDA local name -> XHTML local name. Table tags are the same in both.
_CDA_TO_XHTML: Dict[str, str] = {
    "paragraph": "p",
    "content": "span",
    "item": "li",
    "linkHtml": "a",
    "br": "br",
    "sub": "sub",
    "sup": "sup",
    "caption": "caption",
    "footnote": "span",
    "footnoteRef": "span",
    "renderMultiMedia": "span",
}
_TABLE_TAGS = ("table", "thead", "tbody", "tfoot", "tr", "th", "td", "col", "colgroup")
_XHTML_TO_CDA: Dict[str, str] = {
    "p": "paragraph",
    "span": "content",
    "li": "item",
    "a": "linkHtml",
    "br": "br",
    "sub": "sub",
    "sup": "sup",
    "caption": "caption",
    "div": "paragraph",
    "b": "content",
    "i": "content",
}

_CDA_ATTRS = {"ID": "id", "styleCode": "class", "language": "lang"}
_XHTML_ATTRS = {v: k for k, v in _CDA_ATTRS.items()}


def _local(tag: str) -> str:
    """Return the local (namespace-stripped) tag name."""
    return tag.split("}", 1)[1] if "}" in tag else tag


def _copy_attrs(src: etree._Element, dst: etree._Element, mapping: Dict[str, str]) -> None:
    for name, value in src.attrib.items():
        local = _local(name)
        if name.startswith("{"):
            # namespaced attributes (xsi, sdtc) have no narrative counterpart
            continue
        dst.set(mapping.get(local, local), value)


# ------------------------------------------------------------------------------
# CDA -> XHTML
# ------------------------------------------------------------------------------


def _to_xhtml(src: etree._Element, parent: Optional[etree._Element]) -> etree._Element:
    local = _local(src.tag)
    if local == "list":
        name = "ol" if src.get("listType") == "ordered" else "ul"
    elif local in _TABLE_TAGS:
        name = local
    else:
        name = _CDA_TO_XHTML.get(local)
        if name is None:
            logger.warning("Unknown CDA narrative element %s rendered as span", local)
            name = "span"
    tag = f"{{{XHTML_NS}}}{name}"
    dst = etree.SubElement(parent, tag) if parent is not None else etree.Element(tag)
    _copy_attrs(src, dst, _CDA_ATTRS)
    if local == "list":
        dst.attrib.pop("listType", None)
    dst.text = src.text
    for child in src:
        if not isinstance(child.tag, str):
            continue
        converted = _to_xhtml(child, dst)
        converted.tail = child.tail
    return dst


def cda_to_xhtml(node: etree._Element) -> etree._Element:
    """
    Convert a CDA narrative block to an XHTML ``div``.

    Parameters
    ----------
    node : lxml element
        The CDA ``text`` element (any name is accepted).

    Returns
    -------
    lxml element
        A detached ``div`` in the XHTML namespace.
    """
    div = etree.Element(f"{{{XHTML_NS}}}div", nsmap={None: XHTML_NS})
    _copy_attrs(node, div, _CDA_ATTRS)
    div.text = node.text
    for child in node:
        if not isinstance(child.tag, str):
            continue
        converted = _to_xhtml(child, div)
        converted.tail = child.tail
    return div


# ------------------------------------------------------------------------------
# XHTML -> CDA
# ------------------------------------------------------------------------------


def _to_cda(src: etree._Element, parent: etree._Element, namespace: str) -> etree._Element:
    local = _local(src.tag)
    attrs = {}
    if local in ("ul", "ol"):
        name = "list"
        if local == "ol":
            attrs["listType"] = "ordered"
    elif local in _TABLE_TAGS:
        name = local
    else:
        name = _XHTML_TO_CDA.get(local)
        if name is None:
            logger.warning("Unknown XHTML element %s rendered as content", local)
            name = "content"
    dst = etree.SubElement(parent, f"{{{namespace}}}{name}")
    _copy_attrs(src, dst, _XHTML_ATTRS)
    for k, v in attrs.items():
        dst.set(k, v)
    if local == "b":
        dst.set("styleCode", "Bold")
    elif local == "i":
        dst.set("styleCode", "Italics")
    dst.text = src.text
    for child in src:
        if not isinstance(child.tag, str):
            continue
        converted = _to_cda(child, dst, namespace)
        converted.tail = child.tail
    return dst


def xhtml_to_cda(
    div: etree._Element, parent: etree._Element, name: str = "text", namespace: str = V3_NS
) -> etree._Element:
    """
    Append the CDA rendering of an XHTML ``div`` to ``parent``.

    Parameters
    ----------
    div : lxml element
        XHTML narrative.
    parent : lxml element
        Element the CDA block is appended to.
    name : str, default="text"
        Local name of the CDA block.
    namespace : str, default=V3_NS
        Namespace of the CDA block.

    Returns
    -------
    lxml element
        The appended CDA element.
    """
    text = etree.SubElement(parent, f"{{{namespace}}}{name}")
    _copy_attrs(div, text, _XHTML_ATTRS)
    text.text = div.text
    for child in div:
        if not isinstance(child.tag, str):
            continue
        converted = _to_cda(child, text, namespace)
        converted.tail = child.tail
    return text
