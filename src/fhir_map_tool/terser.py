# src/fhir_map_tool/terser.py
"""
Tree walking helpers over element trees.

``visit`` is a depth-first preorder walk with a callback. It follows local
references (``#id``, or a bare ``#`` for the container) into the resource they
point at. It never follows references to resources stored elsewhere, and
does not descend into the resources of bundle entries. An identity set guards
against visiting any node twice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from .model.element import Element, SpecialElement
from .model.property import Property
from .path_engine import evaluate, parse_path

Visitor = Callable[
    [Element, Element, List[str], Optional[Property], Property], None
]


# ------------------------------------------------------------------------------
# visiting
# ------------------------------------------------------------------------------


def _contained_by_id(resource: Element) -> Dict[str, Element]:
    out: Dict[str, Element] = {}
    for c in resource.get_children_by_name("contained"):
        cid = c.get_id_base()
        if cid:
            out[cid.lstrip("#")] = c
    return out


def resolve_local_reference(container: Element, reference: Element) -> Optional[Element]:
    """
    Return the resource a local reference points at, or None.

    ``#id`` names a contained resource of ``container``; an empty reference
    or a bare ``#`` is the container itself. Anything else is not local.
    """
    ref = reference.get_named_child_value("reference")
    if ref is None:
        return None
    if ref in ("", "#"):
        return container
    if not ref.startswith("#"):
        return None
    return _contained_by_id(container).get(ref[1:])


def _is_reference(element: Element) -> bool:
    return element.fhir_type == "Reference"


def visit(root: Element, callback: Visitor) -> None:
    """
    Walk ``root`` depth first and call ``callback`` for every element.

    Parameters
    ----------
    root : Element
        Resource (or any element) to walk.
    callback : callable
        Called as ``callback(owning_resource, element, path, child_def,
        element_def)`` where ``path`` is the list of element names from the
        owning resource, ``child_def`` the property placing the element in its
        parent (None for the root) and ``element_def`` its own property.
    """
    seen: Set[int] = set()
    _visit(seen, root, root, root, [], None, callback)


def _visit(
    seen: Set[int],
    container: Element,
    resource: Element,
    element: Element,
    path: List[str],
    child_def: Optional[Property],
    callback: Visitor,
) -> None:
    if id(element) in seen:
        return
    seen.add(id(element))
    callback(resource, element, path, child_def, element.property)

    if _is_reference(element):
        target = resolve_local_reference(container, element)
        if target is not None:
            _visit(seen, container, target, target, path, None, callback)

    for child in element.children:
        if child.is_empty():
            continue
        child_path = path + [child.slot_property.base_name]
        if child.special == SpecialElement.BUNDLE_ENTRY:
            callback(resource, child, child_path, child.slot_property, child.property)
            continue
        owner = child if child.special == SpecialElement.CONTAINED else resource
        _visit(seen, container, owner, child, child_path, child.slot_property, callback)


def get_all_populated_child_elements_of_type(
    root: Element, type_name: str
) -> List[Element]:
    """Return every non-empty element below ``root`` whose type is ``type_name``."""
    found: List[Element] = []

    def _accept(resource, element, path, child_def, element_def) -> None:
        if element.fhir_type == type_name and not element.is_empty():
            found.append(element)

    visit(root, _accept)
    return found


# ------------------------------------------------------------------------------
# path lookups
# ------------------------------------------------------------------------------


def get_values(
    element: Element, path: str, type_name: Optional[str] = None
) -> List[Element]:
    """
    Return the elements at ``path`` below ``element``.

    When ``type_name`` is given, elements of any other type are dropped, so a
    mismatch yields an empty list.
    """
    values = evaluate(element, parse_path(path, element.name))
    if type_name is None:
        return values
    return [v for v in values if v.fhir_type == type_name]


def get_single_value(
    element: Element, path: str, type_name: Optional[str] = None
) -> Optional[Element]:
    """
    Return the only element at ``path``, or None.

    Raises
    ------
    ValueError
        If more than one element matches.
    """
    values = get_values(element, path, type_name)
    if len(values) > 1:
        raise ValueError(f"Multiple values for single field {path} on {element.name}")
    return values[0] if values else None


def get_single_primitive_value(element: Element, path: str) -> Optional[str]:
    value = get_single_value(element, path)
    return value.value if value is not None else None


# ------------------------------------------------------------------------------
# contained resources
# ------------------------------------------------------------------------------


@dataclass
class ContainedResources:
    """Contained resources of one resource and the ``#n`` ids they carry."""

    resources: List[Element] = field(default_factory=list)
    ids: Dict[int, str] = field(default_factory=dict)
    next_id: int = 1

    def add(self, resource: Element) -> str:
        existing = self.ids.get(id(resource))
        if existing is not None:
            return existing
        current = resource.get_id_base()
        if not current:
            new_id = f"#{self.next_id}"
            self.next_id += 1
        else:
            new_id = current if current.startswith("#") else "#" + current
        self.ids[id(resource)] = new_id
        self.resources.append(resource)
        return new_id

    def id_of(self, resource: Element) -> Optional[str]:
        return self.ids.get(id(resource))


def contain_resources(root: Element, modify: bool = False) -> ContainedResources:
    """
    Assign ``#n`` ids to the contained resources of ``root``.

    Only resources already held in ``contained`` are numbered; nothing is moved
    there from elsewhere in the tree.

    Numbering starts above the largest numeric id already in use, so a
    resource holding ``#3`` gets ``#4`` and ``#5`` for two new entries.

    Parameters
    ----------
    root : Element
        The containing resource.
    modify : bool, default=False
        Write new ids onto the contained resources and rewrite references
        that used the bare id into local ``#id`` form.

    Returns
    -------
    ContainedResources
        Resources in document order with their ids.
    """
    contained = root.get_children_by_name("contained")
    result = ContainedResources()
    for c in contained:
        cid = (c.get_id_base() or "").lstrip("#")
        if cid.isdigit():
            result.next_id = max(result.next_id, int(cid) + 1)

    renamed: Dict[str, str] = {}
    for c in contained:
        before = c.get_id_base()
        new_id = result.add(c)
        if not modify:
            continue
        if before != new_id.lstrip("#"):
            c.set_id_base(new_id.lstrip("#"))
        if before:
            renamed[before] = new_id

    if modify and renamed:
        for e in root.iter_tree():
            if not _is_reference(e):
                continue
            ref = e.get_named_child("reference")
            if ref is not None and ref.value in renamed:
                ref.value = renamed[ref.value]
    return result
