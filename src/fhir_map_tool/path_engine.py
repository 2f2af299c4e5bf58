# src/fhir_map_tool/path_engine.py
"""
Dotted path evaluation over element trees.

A path is ``segment(.segment)*``. A segment is an element name, a filtered
name ``name('literal')`` (children whose primitive value equals the literal)
or a ``where(expression)`` filter. Dots inside single quotes or parentheses
do not split segments.

The engine only reads; it never creates children.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from .exceptions import BadMap
from .model.element import Element

_FILTERED = re.compile(r"^([A-Za-z_][\w\-]*(?:\[x\])?)\('((?:[^'\\]|\\.)*)'\)$")


@dataclass(frozen=True)
class Segment:
    """
    One parsed path step.

    Attributes
    ----------
    name : str
        Element name, or ``where`` for an expression filter.
    literal : str or None
        Required primitive value for ``name('literal')``.
    expression : str or None
        Filter expression for ``where(...)``.
    """

    name: str
    literal: Optional[str] = None
    expression: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "Segment":
        if text.startswith("where(") and text.endswith(")"):
            return cls("where", expression=text[len("where(") : -1])
        m = _FILTERED.match(text)
        if m:
            return cls(m.group(1), literal=m.group(2).replace("\\'", "'"))
        return cls(text)


# ------------------------------------------------------------------------------
# parsing
# ------------------------------------------------------------------------------


def split_path(path: str) -> List[str]:
    """
    Split ``path`` on dots outside single quotes and parentheses.

    Raises
    ------
    BadMap
        If quotes or parentheses are unbalanced.
    """
    parts: List[str] = []
    buf: List[str] = []
    quoted = False
    depth = 0
    i = 0
    while i < len(path):
        ch = path[i]
        if quoted:
            buf.append(ch)
            if ch == "\\" and i + 1 < len(path):
                buf.append(path[i + 1])
                i += 1
            elif ch == "'":
                quoted = False
        elif ch == "'":
            quoted = True
            buf.append(ch)
        elif ch == "(":
            depth += 1
            buf.append(ch)
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise BadMap(f"Unbalanced parenthesis in path {path!r}")
            buf.append(ch)
        elif ch == "." and depth == 0:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    if quoted or depth:
        raise BadMap(f"Unterminated quote or parenthesis in path {path!r}")
    parts.append("".join(buf))
    return parts


def parse_path(path: str, root_name: Optional[str] = None) -> List[str]:
    """
    Split a dotted path into segments.

    Parameters
    ----------
    path : str
        Path such as ``Patient.name.given`` or
        ``code.coding.where(system='urn:oid:2.16')``.
    root_name : str or None
        Name of the root element; a leading segment equal to it is dropped.

    Returns
    -------
    list of str
        The raw segments.

    Raises
    ------
    BadMap
        If the path is empty or contains an empty segment.
    """
    if path is None or not path.strip():
        raise BadMap("Empty path")
    segments = split_path(path.strip())
    if any(not s for s in segments):
        raise BadMap(f"Empty segment in path {path!r}")
    if root_name is not None and segments[0] == root_name:
        segments = segments[1:]
    return segments


def join_path(segments: Sequence[str]) -> str:
    return ".".join(segments)


# ------------------------------------------------------------------------------
# evaluation
# ------------------------------------------------------------------------------


def _step(focus: List[Element], segment: Segment, variables=None) -> List[Element]:
    if segment.expression is not None:
        from .transform.expression import evaluate_boolean

        return [
            e for e in focus if evaluate_boolean(segment.expression, e, variables)
        ]
    out: List[Element] = []
    for e in focus:
        for child in e.get_children_by_name(segment.name):
            if segment.literal is None or child.value == segment.literal:
                out.append(child)
    return out


def evaluate(
    roots: Union[Element, Iterable[Element]],
    path: Union[str, Sequence[str]],
    variables=None,
) -> List[Element]:
    """
    Return the elements reached from ``roots`` along ``path``.

    Parameters
    ----------
    roots : Element or iterable of Element
        Starting focus.
    path : str or sequence of str
        Dotted path or pre-split segments. A leading segment equal to the
        (single) root's name is dropped when a string is given.
    variables : Variables or None
        Passed to ``where(...)`` filters.

    Returns
    -------
    list of Element
        Matches in document order; empty if nothing matches.
    """
    focus = [roots] if isinstance(roots, Element) else list(roots)
    if isinstance(path, str):
        root_name = focus[0].name if len(focus) == 1 else None
        segments = parse_path(path, root_name)
    else:
        segments = list(path)
    for raw in segments:
        focus = _step(focus, Segment.parse(raw), variables)
        if not focus:
            break
    return focus
