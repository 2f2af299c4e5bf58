# src/fhir_map_tool/transform/builtins/_support.py
"""
Helpers shared by the built-in transforms.
"""

from __future__ import annotations

from typing import Any, Optional

from ...exceptions import DefinitionError
from ...model.element import Element
from ...model.factory import create_type, find_type
from ..base import TransformCall


def new_element(call: TransformCall, type_name: str) -> Element:
    """Allocate a detached element of ``type_name`` or fail the rule."""
    try:
        return create_type(call.resolver, type_name)
    except DefinitionError as e:
        raise call.fail(f"Unable to create {type_name}: {e}") from e


def typed_value(call: TransformCall, type_name: str, value: str) -> Any:
    """
    Wrap ``value`` as a primitive of ``type_name``.

    Returns the plain string when the resolver does not know the type, as
    happens for logical-model-only definition sets.
    """
    if find_type(call.resolver, type_name) is None:
        return value
    element = new_element(call, type_name)
    element.value = value
    return element


def set_text(element: Element, name: str, value: Optional[str]) -> None:
    if value is not None and value != "":
        element.set_property(name, value)
