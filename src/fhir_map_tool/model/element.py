# src/fhir_map_tool/model/element.py
"""
Generic, definition-driven element tree.

One Element class represents every node of every resource, datatype and
logical model. Behavior comes from the node's Property (and through it the
StructureDefinition), never from per-type classes.

Invariants
----------
- A primitive element carries its value as a string in ``value``; its
  children may only be ``id``/``extension`` carriers.
- A composite element has no ``value``.
- An element exclusively owns its ``children``; trees never share nodes.
"""

from __future__ import annotations

import copy
import logging
import re
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, List, Optional

from ..exceptions import BadMap, DefinitionError
from .property import Property, capitalize, tail_type

logger = logging.getLogger(__name__)


class SpecialElement(str, Enum):
    """Why a resource is nested inside another element."""

    CONTAINED = "contained"
    BUNDLE_ENTRY = "bundleEntry"
    PARAMETER = "parameter"

    @classmethod
    def from_property(cls, prop: Optional[Property]) -> Optional["SpecialElement"]:
        if prop is None:
            return None
        path = prop.definition.path
        if prop.name == "contained":
            return cls.CONTAINED
        if path.startswith("Parameters."):
            return cls.PARAMETER
        return cls.BUNDLE_ENTRY


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def primitive_string(value: Any) -> str:
    """Render a Python scalar the way FHIR writes primitive values."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return str(value)
    return str(value)


def python_fhir_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (float, Decimal)):
        return "decimal"
    return "string"


# ------------------------------------------------------------------------------
# Element
# ------------------------------------------------------------------------------


class Element:
    """
    A node of the generic element tree.

    Parameters
    ----------
    name : str
        Element name as it appears in the document (``valueString`` for a
        chosen ``value[x]``).
    prop : Property
        Descriptor of the element; shared, never owned.
    type : str or None
        Concrete type. Needed for choices and resources; otherwise derived.
    value : str or None
        Primitive value.
    """

    def __init__(
        self,
        name: str,
        prop: Property,
        type: Optional[str] = None,
        value: Optional[str] = None,
    ) -> None:
        self.name = name
        self.property = prop
        # Slot a nested resource occupies in its parent (e.g. Bundle.entry.resource)
        self.element_property: Optional[Property] = None
        self.type = type
        self.explicit_type: Optional[str] = None
        self.value = value
        self.children: List[Element] = []
        self.path: Optional[str] = None
        self.xhtml: Any = None
        self.comments: List[str] = []
        self.special: Optional[SpecialElement] = None
        self.line: Optional[int] = None
        self.col: Optional[int] = None

    def __repr__(self) -> str:
        if self.value is not None:
            return f"Element({self.name}={self.value!r})"
        return f"Element({self.name}: {self.fhir_type}, {len(self.children)} children)"

    # --------------------------------------------------------------------------
    # type information
    # --------------------------------------------------------------------------

    @property
    def type_code(self) -> Optional[str]:
        """Declared type code, possibly a URL."""
        if self.type:
            return self.type
        try:
            return self.property.get_type(self.name)
        except DefinitionError:
            return None

    @property
    def fhir_type(self) -> str:
        """Type name without any URL prefix (e.g. ``II`` or ``Patient``)."""
        code = self.type_code
        return tail_type(code) if code else ""

    @property
    def slot_property(self) -> Property:
        """The property that places this element in its parent."""
        return self.element_property or self.property

    def is_primitive(self) -> bool:
        return self.property.is_primitive_type(self.type_code)

    def is_resource(self) -> bool:
        return self.property.is_root and self.property.is_resource

    def is_list(self) -> bool:
        return self.slot_property.is_list

    def has_children(self) -> bool:
        return bool(self.children)

    def has_value(self) -> bool:
        return self.value is not None and self.value != ""

    def is_empty(self) -> bool:
        return not self.has_value() and not self.children and self.xhtml is None

    def child_properties(self) -> List[Property]:
        return self.property.child_properties(self.name, self.type)

    def mark_location(self, line: Optional[int], col: Optional[int]) -> "Element":
        self.line = line
        self.col = col
        return self

    # --------------------------------------------------------------------------
    # reading
    # --------------------------------------------------------------------------

    def _matches(self, child: "Element", name: str) -> bool:
        if child.name == name:
            return True
        prop = child.slot_property
        return prop.name.endswith("[x]") and prop.base_name == name and child.name.startswith(name)

    def get_children_by_name(self, name: str) -> List["Element"]:
        """Return children named ``name``; ``value`` also finds ``valueString``."""
        return [c for c in self.children if self._matches(c, name)]

    def get_named_child(self, name: str) -> Optional["Element"]:
        for c in self.children:
            if self._matches(c, name):
                return c
        return None

    def get_named_child_value(self, name: str) -> Optional[str]:
        child = self.get_named_child(name)
        return child.value if child is not None else None

    def iter_tree(self) -> Iterator["Element"]:
        """Yield this element and all descendants in document order."""
        yield self
        for c in self.children:
            yield from c.iter_tree()

    def get_id_base(self) -> Optional[str]:
        return self.get_named_child_value("id")

    def primitive_value(self) -> Optional[str]:
        return self.value

    # --------------------------------------------------------------------------
    # writing
    # --------------------------------------------------------------------------

    def _insert_position(self, prop: Property) -> int:
        """Index after the last child whose property is declared before ``prop``."""
        order = {p.name: i for i, p in enumerate(self.child_properties())}
        rank = order.get(prop.name, len(order))
        pos = 0
        for i, c in enumerate(self.children):
            if order.get(c.slot_property.name, len(order)) <= rank:
                pos = i + 1
        return pos

    def _new_child(self, name: str) -> "Element":
        prop = self.property.get_child(name, self.name, self.type)
        if prop is None:
            raise BadMap(f"Unrecognised name {name} on {self.name} ({self.fhir_type})")
        child = Element(name, prop)
        self.children.insert(self._insert_position(prop), child)
        return child

    def _child_for(self, name: str) -> "Element":
        for c in self.children:
            if self._matches(c, name):
                if not c.is_list():
                    return c
                ne = Element(name, c.slot_property)
                pos = max(i for i, x in enumerate(self.children) if self._matches(x, name))
                self.children.insert(pos + 1, ne)
                return ne
        return self._new_child(name)

    def make_property(self, name: str) -> "Element":
        """
        Create (or, for a single-valued property, reuse) a child element.

        Parameters
        ----------
        name : str
            Property name on this element.

        Returns
        -------
        Element
            The child to write into.

        Raises
        ------
        BadMap
            If this element has no property called ``name``.
        """
        return self._child_for(name)

    def set_property(self, name: str, value: Any) -> "Element":
        """
        Assign ``value`` to the property ``name``.

        A single-valued property is replaced; a repeating one gets a new
        entry. A choice child is renamed after the value's type
        (``value`` + ``Quantity``). A resource value keeps its own property and
        is marked as a bundle entry or contained resource.

        Parameters
        ----------
        name : str
            Property name.
        value : Element or str or bool or int or Decimal
            The value to assign.

        Returns
        -------
        Element
            The child that now holds the value (``self`` when setting the value
            of a primitive).
        """
        if name == "value" and self.fhir_type == "xhtml":
            self.value = value.value if isinstance(value, Element) else primitive_string(value)
            self.xhtml = value.xhtml if isinstance(value, Element) else None
            return self
        if name == "value" and self.is_primitive():
            self.value = value.value if isinstance(value, Element) else primitive_string(value)
            return self

        target = self._child_for(name)
        prop = target.slot_property
        if not isinstance(value, Element):
            if prop.name.endswith("[x]"):
                target.name = name + capitalize(python_fhir_type(value))
                target.type = python_fhir_type(value)
            target.value = primitive_string(value)
            target.children = []
            _check_regex(target)
            return target

        if value.is_primitive():
            if prop.name.endswith("[x]"):
                target.name = name + capitalize(value.fhir_type)
                target.type = value.fhir_type
            elif prop.is_choice:
                target.type = value.fhir_type
            target.value = value.value
            target.children = [c.deep_copy() for c in value.children]
            _check_regex(target)
            return target

        target.type = value.type_code
        if prop.name.endswith("[x]"):
            target.name = name + capitalize(value.fhir_type)
        elif value.is_resource():
            if target.element_property is None:
                target.element_property = target.property
            target.property = value.property
            target.special = SpecialElement.from_property(target.element_property)
        target.value = None
        target.xhtml = value.xhtml
        target.children = [c.deep_copy() for c in value.children]
        return target

    def remove_child(self, name: str) -> None:
        self.children = [c for c in self.children if not self._matches(c, name)]

    def set_id_base(self, value: str) -> None:
        self.set_property("id", value)

    def number_children(self) -> None:
        """Recompute ``path`` (with ``[n]`` for repeats) for the whole subtree."""
        if self.path is None:
            self.path = self.name
        counts: dict = {}
        for c in self.children:
            key = c.slot_property.name
            if c.is_list():
                idx = counts.get(key, 0)
                counts[key] = idx + 1
                c.path = f"{self.path}.{c.slot_property.base_name}[{idx}]"
            else:
                c.path = f"{self.path}.{c.slot_property.base_name}"
            c.number_children()

    def deep_copy(self) -> "Element":
        """Copy this subtree; properties stay shared."""
        dup = Element(self.name, self.property, self.type, self.value)
        dup.element_property = self.element_property
        dup.explicit_type = self.explicit_type
        dup.path = self.path
        dup.xhtml = copy.deepcopy(self.xhtml) if self.xhtml is not None else None
        dup.comments = list(self.comments)
        dup.special = self.special
        dup.line, dup.col = self.line, self.col
        dup.children = [c.deep_copy() for c in self.children]
        return dup

    def deep_equals(self, other: "Element") -> bool:
        return elements_equal(self, other)


def _check_regex(element: Element) -> None:
    """Warn when a primitive value does not match its type's regex."""
    if element.value is None:
        return
    try:
        pattern = _value_regex(element)
    except DefinitionError:
        return
    if pattern and not re.fullmatch(pattern, element.value):
        logger.warning(
            "Value %r of %s does not match the %s regex %s",
            element.value,
            element.name,
            element.fhir_type,
            pattern,
        )


def _value_regex(element: Element) -> Optional[str]:
    for p in element.property.child_properties(element.name, element.type):
        if p.name == "value":
            return p.regex
    return element.property.regex


def elements_equal(a: Optional[Element], b: Optional[Element]) -> bool:
    """
    Structural equality of two trees.

    Compares names, concrete types, values, narrative text and children in
    order. Paths, comments and source locations are ignored.
    """
    if a is None or b is None:
        return a is b
    if a.name != b.name or a.fhir_type != b.fhir_type or a.value != b.value:
        return False
    if (a.xhtml is None) != (b.xhtml is None):
        return False
    if len(a.children) != len(b.children):
        return False
    return all(elements_equal(x, y) for x, y in zip(a.children, b.children))
