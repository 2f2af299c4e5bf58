# src/fhir_map_tool/model/__init__.py
"""
Canonical model: conformance resource access, property descriptors and the
generic element tree.
"""

from __future__ import annotations

from .element import Element, SpecialElement, elements_equal
from .property import Property

__all__ = ["Element", "Property", "SpecialElement", "elements_equal"]
