# src/fhir_map_tool/codec/json_composer.py
"""
JSON writer driven by the serialization event stream.

Events are folded back into nested objects. Primitives are written with their
JSON type (``true``, ``12``, ``1.50``) and their ``id``/``extension`` go into
the ``_name`` companion; repeated primitives keep the companion array aligned
with ``null`` placeholders.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from lxml import etree

from ..model.element import Element
from .events import Attr, EndElement, StartElement, Text, Value, Xhtml, element_events

INTEGER_TYPES = frozenset({"integer", "positiveInt", "unsignedInt"})
_NUMBER = re.compile(r"^-?(0|[1-9]\d*)(\.\d+)?([eE][+-]?\d+)?$")


@dataclass
class _Frame:
    element: Element
    obj: Dict[str, Any] = field(default_factory=dict)
    value: Optional[str] = None


def _json_value(element: Element, value: Optional[str]) -> Any:
    if value is None:
        return None
    t = element.fhir_type
    if t == "boolean" and value in ("true", "false"):
        return value == "true"
    if t in INTEGER_TYPES:
        try:
            return int(value)
        except ValueError:
            return value
    if t == "decimal" and _NUMBER.match(value):
        return Decimal(value)
    return value


def _put(frame: _Frame, element: Element, value: Any, ext: Optional[Dict[str, Any]]) -> None:
    name = element.name
    if element.is_list():
        values = frame.obj.setdefault(name, [])
        values.append(value)
        key = "_" + name
        if ext:
            exts = frame.obj.setdefault(key, [])
            exts.extend([None] * (len(values) - 1 - len(exts)))
            exts.append(ext)
        elif key in frame.obj:
            frame.obj[key].append(None)
        return
    if value is not None:
        frame.obj[name] = value
    if ext:
        frame.obj["_" + name] = ext


def _with_resource_type(element: Element, obj: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {"resourceType": element.type_code}
    out.update(obj)
    return out


def to_object(element: Element) -> Dict[str, Any]:
    """
    Fold ``element`` into a JSON-ready dict.

    Decimal values come back as ``decimal.Decimal`` so that ``dumps`` writes
    them as bare numbers with the digits they were read with.
    """
    stack: List[_Frame] = []
    result: Dict[str, Any] = {}
    for ev in element_events(element):
        if isinstance(ev, StartElement):
            stack.append(_Frame(ev.element))
        elif isinstance(ev, Value):
            stack[-1].value = ev.value
        elif isinstance(ev, (Attr, Text)):
            _put(stack[-1], ev.element, _json_value(ev.element, ev.value), None)
        elif isinstance(ev, Xhtml):
            e = ev.element
            text = e.value
            if text is None and e.xhtml is not None:
                text = etree.tostring(e.xhtml, encoding="unicode", with_tail=False)
            if text is not None and stack:
                _put(stack[-1], e, text, None)
        elif isinstance(ev, EndElement):
            frame = stack.pop()
            e = frame.element
            if not stack:
                result = _with_resource_type(e, frame.obj)
                continue
            if e.is_primitive():
                if frame.value is None and not frame.obj:
                    continue
                _put(stack[-1], e, _json_value(e, frame.value), frame.obj or None)
            else:
                obj = frame.obj
                if e.special is not None:
                    obj = _with_resource_type(e, obj)
                elif not obj:
                    continue
                _put(stack[-1], e, obj, None)
    return result


class FhirJsonEncoder(json.JSONEncoder):
    """
    JSON encoder that writes ``Decimal`` values as bare JSON numbers.

    The standard encoder only knows ``float``, which would lose trailing zeros
    (``1.50``). Containers are walked here; every other value is delegated to
    the standard encoder.
    """

    def iterencode(self, o: Any, _one_shot: bool = False) -> Iterator[str]:
        return self._iter(o, 0)

    def _iter(self, o: Any, level: int) -> Iterator[str]:
        if isinstance(o, Decimal):
            yield str(o)
            return
        if isinstance(o, dict):
            if not o:
                yield "{}"
                return
            opening, closing = "{", "}"
            items = [(self._key(k), v) for k, v in o.items()]
        elif isinstance(o, (list, tuple)):
            if not o:
                yield "[]"
                return
            opening, closing = "[", "]"
            items = [(None, v) for v in o]
        else:
            yield from json.JSONEncoder.iterencode(self, o)
            return

        if self.indent is None:
            inner = outer = ""
        else:
            step = self.indent if isinstance(self.indent, str) else " " * self.indent
            inner = "\n" + step * (level + 1)
            outer = "\n" + step * level
        yield opening
        for i, (key, value) in enumerate(items):
            yield (self.item_separator if i else "") + inner
            if key is not None:
                yield key + self.key_separator
            yield from self._iter(value, level + 1)
        yield outer + closing

    def _key(self, key: Any) -> str:
        return json.dumps(str(key), ensure_ascii=self.ensure_ascii)


def dumps(obj: Dict[str, Any], pretty: bool = True) -> str:
    """Serialize a folded object, writing decimals exactly as stored."""
    if pretty:
        return json.dumps(obj, cls=FhirJsonEncoder, indent=2, ensure_ascii=False)
    return json.dumps(obj, cls=FhirJsonEncoder, separators=(",", ":"), ensure_ascii=False)


class JsonComposer:
    """
    Serialize element trees to JSON.

    Parameters
    ----------
    pretty : bool, default=True
        Indent with two spaces; otherwise write compactly.
    """

    def __init__(self, pretty: bool = True) -> None:
        self.pretty = pretty

    def compose(self, element: Element) -> bytes:
        return dumps(to_object(element), self.pretty).encode("utf-8")
