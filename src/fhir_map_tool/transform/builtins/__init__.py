# src/fhir_map_tool/transform/builtins/__init__.py
"""
Built-in StructureMap target transforms.

Each module here groups related transform keywords (``basic`` for value
transforms, ``datatypes`` for the datatype builders, ``references`` for
``reference``/``pointer`` and ``terminology`` for ``translate``). Importing a
module runs its ``@register`` decorators; ``load_builtins`` imports them all.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from typing import List

from ..registry import available_transforms

logger = logging.getLogger(__name__)

_LOADED: List[str] = []


def builtin_modules() -> List[str]:
    """Names of the transform modules in this package, private helpers excluded."""
    return sorted(
        info.name
        for info in pkgutil.iter_modules(__path__)
        if not info.ispkg and not info.name.startswith("_")
    )


def load_builtins() -> List[str]:
    """
    Import every built-in transform module once.

    Returns
    -------
    List[str]
        Transform keywords registered after loading.
    """
    for short in builtin_modules():
        if short in _LOADED:
            continue
        importlib.import_module(f"{__name__}.{short}")
        _LOADED.append(short)
    names = available_transforms()
    logger.debug("Built-in transforms from %s: %s", ", ".join(_LOADED), ", ".join(names))
    return names


__all__ = ["builtin_modules", "load_builtins"]
