# src/fhir_map_tool/exceptions.py
"""
Custom exceptions for fhir_map_tool.

All exceptions inherit from FhirMapToolError so that callers can catch
tool-specific errors without grabbing unrelated built-in exceptions.

Each class carries a short ``code`` tag. TransformService converts raised
errors into a TransformOutcome using that tag, so nothing propagates past the
public transform entry point.
"""

from __future__ import annotations

from typing import Optional


class FhirMapToolError(Exception):
    """Base class for all fhir_map_tool exceptions."""

    code = "error"


class ParseError(FhirMapToolError):
    """Raised when a document or a definition cannot be parsed correctly."""

    code = "parse"


class SourceParseError(ParseError):
    """
    Raised when a source document is structurally invalid.

    Parameters
    ----------
    msg : str
        Human readable message.
    line : int or None
        1-based line number in the source, when known.
    col : int or None
        1-based column number in the source, when known.
    """

    code = "source-parse-error"

    def __init__(
        self, msg: str, line: Optional[int] = None, col: Optional[int] = None
    ) -> None:
        self.msg = msg
        self.line = line
        self.col = col
        if line is not None:
            super().__init__(f"{msg} (line {line}, col {col or 0})")
        else:
            super().__init__(msg)


class DefinitionError(FhirMapToolError):
    """Raised when a StructureDefinition or its snapshot is unusable."""

    code = "definition"


class MapNotFound(FhirMapToolError):
    """Raised when a StructureMap canonical URL cannot be resolved."""

    code = "map-not-found"

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Unable to find StructureMap with url {url}")


class TargetTypeUnresolvable(FhirMapToolError):
    """Raised when the target StructureDefinition of a map cannot be found."""

    code = "target-type-unresolvable"


class BadMap(FhirMapToolError):
    """Raised when a StructureMap is malformed or cannot be executed."""

    code = "bad-map"


class TransformRecursionLimit(FhirMapToolError):
    """Raised when group invocation nests deeper than the configured limit."""

    code = "recursion-limit"


class TransformCancelled(FhirMapToolError):
    """Raised when a cancellation token is set while a transform runs."""

    code = "cancelled"


class ResolverTimeout(FhirMapToolError):
    """Raised when waiting on a definition load exceeds the caller's timeout."""

    code = "resolver-timeout"


class IoError(FhirMapToolError):
    """Raised when reading or writing a file or archive fails."""

    code = "io"
