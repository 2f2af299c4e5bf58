# src/fhir_map_tool/resolver/__init__.py
"""Definition lookup: storage port, cache, snapshots and package installs."""

from .cache import TTLCache
from .ports import ANY_KIND, InMemoryResolver, ResolverPort
from .resolver import DefinitionResolver, ResourceKey

__all__ = [
    "ANY_KIND",
    "DefinitionResolver",
    "InMemoryResolver",
    "ResolverPort",
    "ResourceKey",
    "TTLCache",
]
