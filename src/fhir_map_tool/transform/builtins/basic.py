# src/fhir_map_tool/transform/builtins/basic.py
"""
Value transforms: create, copy, evaluate, truncate, escape, cast, append,
uuid and dateOp.
"""

from __future__ import annotations

import calendar
import html
import json
import re
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple
from urllib.parse import quote, unquote

from ...model.element import Element
from ..base import TransformCall
from ..expression import evaluate
from ..registry import register
from ..variables import VariableMode
from ._support import new_element, typed_value

CAST_TYPES = frozenset(
    {
        "boolean",
        "integer",
        "integer64",
        "string",
        "decimal",
        "uri",
        "base64Binary",
        "instant",
        "date",
        "dateTime",
        "time",
        "code",
        "oid",
        "id",
        "markdown",
        "unsignedInt",
        "positiveInt",
        "uuid",
        "url",
        "canonical",
    }
)


@register("create")
class CreateTransform:
    """Allocate a new element of the named (or inferred) type."""

    def apply(self, call: TransformCall) -> Element:
        if call.parameters:
            type_name = call.param_string_required(0)
            type_name = call.interpreter.structure_url(call.structure_map, type_name)
        else:
            type_name = self._implicit_type(call)
        return new_element(call, type_name)

    def _implicit_type(self, call: TransformCall) -> str:
        types: List[str] = []
        if call.dest is not None and call.element_name:
            prop = call.dest.property.get_child(call.element_name, call.dest.name, call.dest.type)
            if prop is not None:
                types = list(dict.fromkeys(prop.types))
        if len(types) == 1 and types[0] not in ("*", "Resource"):
            return types[0]
        if call.source_var is None:
            raise call.fail(
                "Cannot determine type implicitly because there is no single input variable"
            )
        source = call.variables.get(VariableMode.SOURCE, call.source_var)
        if source is None:
            raise call.fail(f"Source variable {call.source_var} is not bound")
        return call.interpreter.type_from_source(call.structure_map, source)


@register("copy")
class CopyTransform:
    def apply(self, call: TransformCall) -> Any:
        return call.param(0)


@register("evaluate")
class EvaluateTransform:
    """
    ``evaluate(expr)`` or ``evaluate(focus, expr)``.

    An empty result leaves the target unset; more than one result fails the
    rule.
    """

    def apply(self, call: TransformCall) -> Any:
        call.require(1)
        if len(call.parameters) >= 2:
            focus = call.param(0)
            expression = call.param_string_required(1)
        else:
            focus = None
            expression = call.param_string_required(0)
        values = evaluate(expression, focus, call.variables)
        if not values:
            return None
        if len(values) > 1:
            raise call.fail(f"Evaluation of {expression} returned {len(values)} objects")
        return values[0]


@register("truncate")
class TruncateTransform:
    def apply(self, call: TransformCall) -> Optional[str]:
        text = call.param_string(0)
        length = call.param_string_required(1)
        if text is not None and length.isdigit() and len(text) > int(length):
            text = text[: int(length)]
        return text


@register("append")
class AppendTransform:
    def apply(self, call: TransformCall) -> str:
        call.require(1)
        parts = [call.param_string(i) for i in range(len(call.parameters))]
        return "".join(p for p in parts if p is not None)


@register("uuid")
class UuidTransform:
    def apply(self, call: TransformCall) -> Any:
        return typed_value(call, "id", str(uuid.uuid4()))


# ------------------------------------------------------------------------------
# cast
# ------------------------------------------------------------------------------


def _check_cast(type_name: str, text: str) -> bool:
    if type_name == "boolean":
        return text in ("true", "false")
    if type_name in ("integer", "integer64", "unsignedInt", "positiveInt"):
        if not re.fullmatch(r"[+-]?\d+", text):
            return False
        n = int(text)
        return not (type_name == "unsignedInt" and n < 0 or type_name == "positiveInt" and n < 1)
    if type_name == "decimal":
        try:
            Decimal(text)
        except InvalidOperation:
            return False
    return True


@register("cast")
class CastTransform:
    """``cast(value, type)``: re-type a primitive value."""

    def apply(self, call: TransformCall) -> Any:
        text = call.param_string(0)
        if len(call.parameters) == 1:
            raise call.fail("Implicit type parameters on cast not yet supported")
        type_name = call.param_string_required(1)
        if type_name not in CAST_TYPES:
            raise call.fail(f"cast to {type_name} not yet supported")
        if text is None:
            return None
        if not _check_cast(type_name, text):
            raise call.fail(f"Cannot cast {text!r} to {type_name}")
        return typed_value(call, type_name, text)


# ------------------------------------------------------------------------------
# escape
# ------------------------------------------------------------------------------


def _unescape(fmt: str, text: str) -> str:
    if fmt in ("html", "xml"):
        return html.unescape(text)
    if fmt == "json":
        return json.loads(f'"{text}"')
    if fmt == "url":
        return unquote(text)
    return text


def _escape(fmt: str, text: str) -> str:
    if fmt in ("html", "xml"):
        return html.escape(text, quote=True)
    if fmt == "json":
        return json.dumps(text, ensure_ascii=False)[1:-1]
    if fmt == "url":
        return quote(text, safe="")
    return text


ESCAPE_FORMATS = frozenset({"html", "xml", "json", "url", "none", "text", "plain"})


@register("escape")
class EscapeTransform:
    """``escape(value, from, to)``; with two arguments ``from`` is plain text."""

    def apply(self, call: TransformCall) -> Optional[str]:
        call.require(2)
        text = call.param_string(0)
        if len(call.parameters) >= 3:
            source_fmt = call.param_string_required(1).lower()
            target_fmt = call.param_string_required(2).lower()
        else:
            source_fmt, target_fmt = "none", call.param_string_required(1).lower()
        for fmt in (source_fmt, target_fmt):
            if fmt not in ESCAPE_FORMATS:
                raise call.fail(f"Unknown escape format {fmt!r}")
        if text is None:
            return None
        try:
            return _escape(target_fmt, _unescape(source_fmt, text))
        except ValueError as e:
            raise call.fail(f"Cannot unescape {text!r} as {source_fmt}: {e}") from e


# ------------------------------------------------------------------------------
# dateOp
# ------------------------------------------------------------------------------

_UNITS = {
    "a": "years",
    "year": "years",
    "years": "years",
    "mo": "months",
    "month": "months",
    "months": "months",
    "wk": "weeks",
    "week": "weeks",
    "weeks": "weeks",
    "d": "days",
    "day": "days",
    "days": "days",
    "h": "hours",
    "hour": "hours",
    "hours": "hours",
    "min": "minutes",
    "minute": "minutes",
    "minutes": "minutes",
    "s": "seconds",
    "second": "seconds",
    "seconds": "seconds",
}


def _amount(text: str) -> Tuple[int, str]:
    m = re.fullmatch(r"\s*([+-]?\d+)\s*'?([A-Za-z]*)'?\s*", text)
    if not m:
        raise ValueError(f"Unrecognised duration {text!r}")
    unit = _UNITS.get(m.group(2) or "days")
    if unit is None:
        raise ValueError(f"Unrecognised duration unit {m.group(2)!r}")
    return int(m.group(1)), unit


def _add_months(d: date, months: int) -> date:
    total = d.year * 12 + d.month - 1 + months
    year, month = divmod(total, 12)
    day = min(d.day, calendar.monthrange(year, month + 1)[1])
    return d.replace(year=year, month=month + 1, day=day)


def shift_date(value: str, amount: int, unit: str) -> str:
    """
    Shift a FHIR date or dateTime, keeping its precision.

    Raises
    ------
    ValueError
        If ``value`` is not a date/dateTime or the unit needs more precision
        than the value carries.
    """
    if re.fullmatch(r"\d{4}", value):
        if unit != "years":
            raise ValueError(f"Cannot shift {value!r} by {unit}")
        return f"{int(value) + amount:04d}"
    if re.fullmatch(r"\d{4}-\d{2}", value):
        months = amount * 12 if unit == "years" else amount
        if unit not in ("years", "months"):
            raise ValueError(f"Cannot shift {value!r} by {unit}")
        d = _add_months(date(int(value[:4]), int(value[5:7]), 1), months)
        return d.strftime("%Y-%m")
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
        d = date.fromisoformat(value)
        if unit in ("years", "months"):
            return _add_months(d, amount * 12 if unit == "years" else amount).isoformat()
        if unit in ("weeks", "days"):
            return (d + timedelta(**{unit: amount})).isoformat()
        raise ValueError(f"Cannot shift {value!r} by {unit}")
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if unit in ("years", "months"):
        shifted = _add_months(dt.date(), amount * 12 if unit == "years" else amount)
        dt = dt.replace(year=shifted.year, month=shifted.month, day=shifted.day)
    else:
        dt = dt + timedelta(**{unit: amount})
    text = dt.isoformat()
    if value.endswith("Z") and text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


@register("dateOp")
class DateOpTransform:
    """``dateOp(date, op, amount)`` with op ``add`` or ``subtract``."""

    def apply(self, call: TransformCall) -> Any:
        value = call.param_string(0)
        op = call.param_string_required(1)
        if op not in ("add", "subtract", "+", "-"):
            raise call.fail(f"Unknown date operation {op!r}")
        if value is None:
            return None
        try:
            amount, unit = _amount(call.param_string_required(2))
            if op in ("subtract", "-"):
                amount = -amount
            result = shift_date(value, amount, unit)
        except ValueError as e:
            raise call.fail(str(e)) from e
        return typed_value(call, "dateTime" if "T" in result else "date", result)
