# src/fhir_map_tool/transform/__init__.py
"""
Transform package initializer.

Automatically imports all built-in transform modules so their
@register(...) decorators run and populate the registry.
"""

from __future__ import annotations

from .builtins import load_builtins
from .bundle import remove_bundle_entry_ids
from .cancellation import CancellationToken
from .interpreter import StructureMapInterpreter

# Idempotent; the registry is filled once per process.
load_builtins()

__all__ = ["CancellationToken", "StructureMapInterpreter", "remove_bundle_entry_ids"]
