# src/fhir_map_tool/codec/events.py
"""
Serialization event stream.

``element_events`` walks an element tree once and yields events in XML
document order: attribute children come right after their element's start,
then text, then child elements. Both writers consume this stream; the XML
writer maps it onto lxml nodes, the JSON writer folds it back into objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Union

from ..model.element import Element


@dataclass(frozen=True)
class StartElement:
    element: Element
    name: str
    namespace: str
    xsi_type: Optional[str] = None
    # type name of the wrapper tag of a nested resource (``<resource><Patient>``)
    resource_type: Optional[str] = None


@dataclass(frozen=True)
class Attr:
    element: Element
    name: str
    namespace: str
    value: str


@dataclass(frozen=True)
class Value:
    element: Element
    value: str


@dataclass(frozen=True)
class Text:
    element: Element
    value: str


@dataclass(frozen=True)
class Xhtml:
    element: Element


@dataclass(frozen=True)
class Comment:
    text: str


@dataclass(frozen=True)
class EndElement:
    element: Element


Event = Union[StartElement, Attr, Value, Text, Xhtml, Comment, EndElement]


def xml_name(element: Element) -> str:
    """Tag name of ``element``: its XML name, or its own name for ``[x]`` choices."""
    prop = element.slot_property
    if prop.is_root:
        return element.name
    if prop.name.endswith("[x]"):
        return element.name
    return prop.xml_name


def xsi_type_of(element: Element) -> Optional[str]:
    """
    The ``xsi:type`` to write on ``element``, if any.

    Only ``typeAttr`` properties carry one. A type read from an explicit
    ``xsi:type`` is always written back; the property's default type is not.
    """
    prop = element.slot_property
    if not prop.is_type_attr or not element.type:
        return None
    if element.explicit_type:
        return element.explicit_type
    t = element.type
    if t == prop.default_type:
        return None
    return t.rsplit("/", 1)[1] if "/" in t else t


def element_events(element: Element, root: bool = True) -> Iterator[Event]:
    """
    Yield the serialization events of ``element`` and its subtree.

    Parameters
    ----------
    element : Element
        Subtree to serialize.
    root : bool, default=True
        Whether ``element`` is the document root (roots never get a
        resource wrapper tag).
    """
    for c in element.comments:
        yield Comment(c)
    name = xml_name(element)
    ns = element.property.xml_namespace

    if element.fhir_type == "xhtml" or (element.xhtml is not None and element.is_primitive()):
        yield Xhtml(element)
        return

    if element.is_empty():
        yield StartElement(element, name, ns, xsi_type=element.explicit_type or xsi_type_of(element))
        yield EndElement(element)
        return

    if element.is_primitive():
        yield StartElement(element, name, ns, xsi_type=xsi_type_of(element))
        if element.has_value():
            yield Value(element, element.value)
        for child in element.children:
            if child.slot_property.is_xml_attr and child.value is not None:
                yield Attr(child, xml_name(child), child.property.xml_namespace, child.value)
            else:
                yield from element_events(child, root=False)
        yield EndElement(element)
        return

    wrapper = element.fhir_type if (not root and element.special is not None) else None
    yield StartElement(element, name, ns, xsi_type=xsi_type_of(element), resource_type=wrapper)
    for child in element.children:
        if child.slot_property.is_xml_attr and child.value is not None:
            yield Attr(child, xml_name(child), child.property.xml_namespace, child.value)
    for child in element.children:
        prop = child.slot_property
        if prop.is_xml_text:
            if child.value is not None:
                yield Text(child, child.value)
        elif not (prop.is_xml_attr and child.value is not None):
            yield from element_events(child, root=False)
    yield EndElement(element)
