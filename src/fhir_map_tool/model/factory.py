# src/fhir_map_tool/model/factory.py
"""
Allocation of empty element trees from StructureDefinitions.
"""

from __future__ import annotations

from typing import Optional

from fhir.resources.R4B.structuredefinition import StructureDefinition

from ..exceptions import DefinitionError
from .definitions import FHIR_SD_BASE, is_absolute_url, snapshot_elements
from .element import Element
from .property import Property, TypeContext


def build(context: TypeContext, sd: StructureDefinition) -> Element:
    """
    Allocate an empty root element for a StructureDefinition.

    Parameters
    ----------
    context : TypeContext
        Resolver used by the element's properties to look up datatypes.
    sd : StructureDefinition
        Definition with a snapshot.

    Returns
    -------
    Element
        A root element named after the definition's root path.

    Raises
    ------
    DefinitionError
        If the definition has no snapshot.
    """
    elements = snapshot_elements(sd)
    if not elements:
        raise DefinitionError(f"StructureDefinition {sd.url} has no snapshot")
    root = elements[0]
    element = Element(root.path, Property(context, root, sd), type=root.path)
    element.path = root.path
    return element


def find_type(context: TypeContext, type_name: str) -> Optional[StructureDefinition]:
    """Look up a type by URL, FHIR core name, or bare type name."""
    if is_absolute_url(type_name):
        return context.fetch_structure(type_name)
    sd = context.fetch_structure(FHIR_SD_BASE + type_name)
    if sd is None:
        sd = context.fetch_type_definition(type_name)
    return sd


def create_type(context: TypeContext, type_name: str) -> Element:
    """
    Allocate a detached element of the given datatype or resource type.

    Raises
    ------
    DefinitionError
        If the type cannot be resolved.
    """
    sd = find_type(context, type_name)
    if sd is None:
        raise DefinitionError(f"Unable to find a definition for type {type_name!r}")
    return build(context, sd)
