# src/fhir_map_tool/codec/__init__.py
"""
Element codec: format dispatch and file loading.

Provides:
- parse(data, fmt, resolver) and compose(element, fmt) for ``xml``/``json``,
- load_document(path, resolver), picking the format from the file suffix.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Union

from ..exceptions import IoError, ParseError
from ..model.element import Element
from .json_composer import JsonComposer
from .json_parser import JsonParser
from .xml_composer import XmlComposer
from .xml_parser import XmlParser

FORMATS = ("xml", "json")


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _ensure_file(path: Path) -> None:
    """Validate that a path exists and is a file; raise IoError if not."""
    if not isinstance(path, Path):
        raise IoError(f"path must be pathlib.Path, got {type(path).__name__}")
    if not path.exists():
        raise IoError(f"file does not exist: {path}")
    if not path.is_file():
        raise IoError(f"not a file: {path}")


def _check_format(fmt: str) -> str:
    fmt = (fmt or "").lower()
    if fmt not in FORMATS:
        raise ParseError(f"Unsupported format {fmt!r}; expected one of {FORMATS}")
    return fmt


def format_from_suffix(path: Path) -> str:
    """Return ``xml`` or ``json`` for a file name."""
    suffix = path.suffix.lower().lstrip(".")
    if suffix not in FORMATS:
        raise ParseError(f"Cannot tell the format of {path.name}; use .xml or .json")
    return suffix


# ------------------------------------------------------------------------------
# public api
# ------------------------------------------------------------------------------


def make_parser(fmt: str, resolver: Any, strict: bool = True):
    """Return an XmlParser or JsonParser for ``fmt``."""
    if _check_format(fmt) == "xml":
        return XmlParser(resolver, strict=strict)
    return JsonParser(resolver, strict=strict)


def parse(
    data: Union[str, bytes], fmt: str, resolver: Any, strict: bool = True
) -> Element:
    """
    Parse a document into an element tree.

    Parameters
    ----------
    data : str or bytes
        Document text.
    fmt : {"xml", "json"}
        Document format.
    resolver : DefinitionResolver
        Definition lookup.
    strict : bool, default=True
        Whether structural problems raise.

    Returns
    -------
    Element
        The root element.

    Raises
    ------
    SourceParseError
        If the document cannot be parsed.
    ParseError
        If ``fmt`` is not supported.
    """
    return make_parser(fmt, resolver, strict).parse(data)


def compose(element: Element, fmt: str, pretty: bool = True) -> bytes:
    """Serialize an element tree as UTF-8 ``xml`` or ``json``."""
    if _check_format(fmt) == "xml":
        return XmlComposer(pretty).compose(element)
    return JsonComposer(pretty).compose(element)


def load_document(path: Path, resolver: Any, strict: bool = True) -> Element:
    """
    Load and parse a document file; the format comes from the suffix.

    Raises
    ------
    IoError
        If the path is missing or not a file.
    """
    _ensure_file(path)
    fmt = format_from_suffix(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise IoError(f"Unable to read {path}: {e}") from e
    return parse(data, fmt, resolver, strict)


__all__ = [
    "FORMATS",
    "compose",
    "format_from_suffix",
    "load_document",
    "make_parser",
    "parse",
]
