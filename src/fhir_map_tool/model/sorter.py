# src/fhir_map_tool/model/sorter.py
"""
Re-order element children into definition order.

The interpreter appends children in the order rules fire. Before
serialization every subtree is sorted by the position of each child's
property in its parent's child property list. Repeats of one property keep
their relative order (the sort is stable).
"""

from __future__ import annotations

import logging

from ..exceptions import DefinitionError
from .element import Element

logger = logging.getLogger(__name__)


def sort_element(element: Element) -> None:
    """Sort ``element`` and its descendants in place."""
    if element.children:
        try:
            props = element.child_properties()
        except DefinitionError as e:
            logger.debug("Not sorting %s: %s", element.name, e)
            props = []
        order = {p.name: i for i, p in enumerate(props)}
        last = len(order)
        element.children.sort(key=lambda c: order.get(c.slot_property.name, last))
    for child in element.children:
        sort_element(child)
