# src/fhir_map_tool/transform/builtins/datatypes.py
"""
Datatype constructors: c, cc, qty, id and cp.
"""

from __future__ import annotations

import re
from typing import Optional

from ...model.element import Element
from ..base import TransformCall
from ..registry import register
from ._support import new_element, set_text

UCUM = "http://unitsofmeasure.org"
_QUANTITY = re.compile(r"^\s*(<=|>=|<|>)?\s*([+-]?\d+(?:\.\d+)?)\s*(.*?)\s*$")


def build_coding(
    call: TransformCall, system: Optional[str], code: Optional[str], display: Optional[str] = None
) -> Element:
    coding = new_element(call, "Coding")
    fill_coding(coding, system, code, display)
    return coding


def fill_coding(
    coding: Element, system: Optional[str], code: Optional[str], display: Optional[str] = None
) -> None:
    set_text(coding, "system", system)
    set_text(coding, "code", code)
    set_text(coding, "display", display)


def _optional(call: TransformCall, index: int) -> Optional[str]:
    return call.param_string(index) if len(call.parameters) > index else None


@register("c")
class CodingTransform:
    """``c(system, code[, display])``"""

    def apply(self, call: TransformCall) -> Element:
        return build_coding(
            call,
            call.param_string_required(0),
            call.param_string_required(1),
            _optional(call, 2),
        )


@register("cc")
class CodeableConceptTransform:
    """``cc(text)`` or ``cc(system, code[, display])``"""

    def apply(self, call: TransformCall) -> Element:
        call.require(1)
        cc = new_element(call, "CodeableConcept")
        if len(call.parameters) == 1:
            set_text(cc, "text", call.param_string_required(0))
            return cc
        coding = cc.make_property("coding")
        fill_coding(
            coding,
            call.param_string_required(0),
            call.param_string_required(1),
            _optional(call, 2),
        )
        return cc


@register("qty")
class QuantityTransform:
    """
    ``qty(text)`` with text like ``<=12.5 mg``, or
    ``qty(value, unit[, system[, code]])``.

    A unit given in text form is taken to be a UCUM code.
    """

    def apply(self, call: TransformCall) -> Optional[Element]:
        call.require(1)
        qty = new_element(call, "Quantity")
        if len(call.parameters) == 1:
            text = call.param_string(0)
            if text is None:
                return None
            m = _QUANTITY.match(text)
            if not m:
                raise call.fail(f"Unable to read a quantity from {text!r}")
            comparator, value, unit = m.groups()
            qty.set_property("value", value)
            set_text(qty, "comparator", comparator)
            if unit:
                qty.set_property("unit", unit)
                qty.set_property("system", UCUM)
                qty.set_property("code", unit)
            return qty
        value = call.param_string_required(0)
        if not re.fullmatch(r"[+-]?\d+(?:\.\d+)?", value):
            raise call.fail(f"Quantity value {value!r} is not a decimal")
        qty.set_property("value", value)
        set_text(qty, "unit", call.param_string(1))
        set_text(qty, "system", _optional(call, 2))
        set_text(qty, "code", _optional(call, 3))
        return qty


@register("id")
class IdentifierTransform:
    """``id(system, value[, type])``; ``type`` becomes ``type.text``."""

    def apply(self, call: TransformCall) -> Element:
        identifier = new_element(call, "Identifier")
        set_text(identifier, "system", call.param_string(0))
        set_text(identifier, "value", call.param_string_required(1))
        type_text = _optional(call, 2)
        if type_text:
            identifier.make_property("type").set_property("text", type_text)
        return identifier


def guess_contact_system(value: str) -> str:
    if value.startswith("mailto:") or re.fullmatch(r"[^@\s]+@[^@\s]+", value):
        return "email"
    if re.match(r"https?://", value):
        return "url"
    if value.startswith("fax:"):
        return "fax"
    return "phone"


@register("cp")
class ContactPointTransform:
    """``cp(value)`` or ``cp(system, value)``; a bare value's system is guessed."""

    def apply(self, call: TransformCall) -> Element:
        call.require(1)
        if len(call.parameters) == 1:
            value = call.param_string_required(0)
            system = guess_contact_system(value)
        else:
            system = call.param_string_required(0)
            value = call.param_string_required(1)
        for prefix in ("mailto:", "tel:", "fax:"):
            if value.startswith(prefix):
                value = value[len(prefix) :]
        cp = new_element(call, "ContactPoint")
        cp.set_property("system", system)
        cp.set_property("value", value)
        return cp
