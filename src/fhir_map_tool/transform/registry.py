# src/fhir_map_tool/transform/registry.py
"""
Registry for StructureMap target transforms.

Provides:
- a @register(name) decorator to bind transform keywords to handler classes,
- lookup by keyword,
- listing of available transforms.
"""

from __future__ import annotations

from typing import Dict, List, Type

from .base import TransformHandler

# Map a transform keyword (e.g., "copy") to a handler class.
_REGISTRY: Dict[str, Type[TransformHandler]] = {}


def register(name: str):
    """
    Decorator to register a TransformHandler class for a transform keyword.

    Parameters
    ----------
    name : str
        Transform keyword as it appears in a map, e.g., "translate".

    Raises
    ------
    ValueError
        If the keyword is already registered.

    Returns
    -------
    callable
        A class decorator that registers the handler.
    """

    def _wrap(cls: Type[TransformHandler]) -> Type[TransformHandler]:
        if name in _REGISTRY:
            raise ValueError(f"Transform already registered for keyword {name!r}")
        if not isinstance(cls, type):
            raise TypeError(
                f"Only classes can be registered as transforms, got {type(cls)}"
            )
        if not callable(getattr(cls, "apply", None)):
            raise TypeError(
                f"Class {cls.__name__} does not implement TransformHandler protocol"
            )

        cls.name = name
        _REGISTRY[name] = cls
        return cls

    return _wrap


def available_transforms() -> List[str]:
    """
    List all registered transform keywords.

    Returns
    -------
    List[str]
        Sorted list of keywords (e.g., ["append", "c", "cast", ...]).
    """
    return sorted(_REGISTRY.keys())


def get_handler(name: str) -> TransformHandler | None:
    """
    Look up and instantiate the handler for a transform keyword.

    Returns
    -------
    TransformHandler or None
        A handler instance, or None if the keyword is unknown.
    """
    cls = _REGISTRY.get(name)
    return cls() if cls else None
