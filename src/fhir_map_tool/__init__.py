# src/fhir_map_tool/__init__.py
"""
fhir_map_tool: model-driven FHIR/CDA document transformation.

This package provides:
- A generic, definition-driven element model with XML and JSON codecs.
- A StructureMap interpreter that maps source element trees to targets.
- A caching definition resolver with snapshot generation.
- A CLI for parsing, transforming, and installing definition packages.
"""

from __future__ import annotations

__version__ = "0.1.0"
__all__ = [
    "__version__",
]
