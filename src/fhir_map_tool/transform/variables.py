# src/fhir_map_tool/transform/variables.py
"""
Variable scopes of a running transform.

A scope binds names to values in one of three modes: ``source`` (read-only
inputs and source iteration variables), ``target`` (elements being written)
and ``shared`` (target elements reused across iterations of one rule through
``listRuleId``). Nested rules work on copies, so bindings made inside a rule
never leak into its siblings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from ..model.element import Element


class VariableMode(str, Enum):
    SOURCE = "source"
    TARGET = "target"
    SHARED = "shared"


@dataclass
class Binding:
    mode: VariableMode
    name: str
    value: Any


class Variables:
    """An ordered set of bindings; re-adding a name replaces its value."""

    def __init__(self) -> None:
        self._bindings: List[Binding] = []

    def add(self, mode: VariableMode, name: str, value: Any) -> "Variables":
        for b in self._bindings:
            if b.mode == mode and b.name == name:
                b.value = value
                return self
        self._bindings.append(Binding(mode, name, value))
        return self

    def get(self, mode: VariableMode, name: str) -> Optional[Any]:
        for b in self._bindings:
            if b.mode == mode and b.name == name:
                return b.value
        return None

    def lookup(self, name: str) -> Optional[Any]:
        """Source binding of ``name``, else its target binding."""
        value = self.get(VariableMode.SOURCE, name)
        if value is None:
            value = self.get(VariableMode.TARGET, name)
        return value

    def copy(self) -> "Variables":
        dup = Variables()
        dup._bindings = [Binding(b.mode, b.name, b.value) for b in self._bindings]
        return dup

    def names(self, mode: VariableMode) -> List[str]:
        return [b.name for b in self._bindings if b.mode == mode]

    def summary(self) -> str:
        """One line listing the bound names per mode, for log messages."""
        parts = []
        for mode in VariableMode:
            items = [
                f"{b.name}: {_describe(b.value)}"
                for b in self._bindings
                if b.mode == mode
            ]
            parts.append(f"{mode.value}: {', '.join(items)}")
        return "; ".join(parts)

    def __len__(self) -> int:
        return len(self._bindings)


def _describe(value: Any) -> str:
    if isinstance(value, Element):
        return value.fhir_type or value.name
    return type(value).__name__
