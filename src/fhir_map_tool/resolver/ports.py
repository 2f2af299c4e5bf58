# src/fhir_map_tool/resolver/ports.py
"""
Storage port for canonical resources, plus an in-memory implementation.

The engine only ever reaches storage through ResolverPort. The in-memory
store backs the CLI, the package installer and the tests; a database-backed
store would implement the same three (optionally four) methods.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from fhir.resources.R4B.structuredefinition import StructureDefinition

from ..exceptions import DefinitionError, IoError
from ..model.definitions import (
    FHIR_NS,
    parse_resource,
    resource_type_of,
    sd_type_name,
    structure_namespace,
)

__all__ = ["ResolverPort", "InMemoryResolver", "ANY_KIND", "split_canonical"]

logger = logging.getLogger(__name__)

ANY_KIND = "Resource"


@runtime_checkable
class ResolverPort(Protocol):
    """
    Interface to wherever canonical resources live.

    Implementations may be in memory, backed by a database, or backed by
    package archives. Every method may block.
    """

    def resolve(self, kind: str, canonical_url: str) -> Optional[Any]:
        """
        Return the resource of ``kind`` with ``canonical_url``, or None.

        ``kind`` ``"Resource"`` matches any kind. The URL may carry a
        ``|version`` suffix.
        """
        ...

    def resolve_by_type(
        self, type_name: str, namespace: Optional[str] = None
    ) -> Optional[StructureDefinition]:
        """Return a StructureDefinition whose type (or name) is ``type_name``."""
        ...

    def list_all_structure_definitions(self) -> Iterator[StructureDefinition]:
        """Iterate over every stored StructureDefinition."""
        ...


def split_canonical(url: str) -> Tuple[str, Optional[str]]:
    """Split ``url|version`` into its parts."""
    if "|" in url:
        base, version = url.split("|", 1)
        return base, version or None
    return url, None


def _namespace_matches(sd: StructureDefinition, namespace: Optional[str]) -> bool:
    if namespace is None:
        return True
    ns = structure_namespace(sd)
    if namespace in (FHIR_NS, "noNamespace"):
        return ns is None or ns == FHIR_NS
    return ns == namespace


# ------------------------------------------------------------------------------
# InMemoryResolver
# ------------------------------------------------------------------------------


class InMemoryResolver:
    """
    Thread-safe in-memory store of canonical resources.

    Resources are indexed by ``(resourceType, url)``; several versions of one
    URL may coexist and an unversioned lookup returns the one added last.
    """

    def __init__(self, resources: Optional[Iterable[Any]] = None) -> None:
        self._lock = threading.RLock()
        self._by_kind: Dict[str, Dict[str, List[Any]]] = {}
        for r in resources or []:
            self.add(r)

    # --------------------------------------------------------------------------
    # writing
    # --------------------------------------------------------------------------

    def add(self, resource: Any) -> bool:
        """
        Store a resource, replacing an existing one with the same version.

        Returns
        -------
        bool
            True when the resource was new, False when it replaced one.
        """
        kind = resource_type_of(resource)
        url = getattr(resource, "url", None) or getattr(resource, "id", None)
        if not url:
            raise DefinitionError(f"Cannot store a {kind} without url or id")
        version = getattr(resource, "version", None)
        with self._lock:
            versions = self._by_kind.setdefault(kind, {}).setdefault(url, [])
            for i, existing in enumerate(versions):
                if getattr(existing, "version", None) == version:
                    versions[i] = resource
                    # move to the end: most recently stored wins
                    versions.append(versions.pop(i))
                    return False
            versions.append(resource)
            return True

    def add_json(self, data: Any) -> int:
        """Store a canonical resource (or every canonical entry of a Bundle)."""
        if isinstance(data, dict) and data.get("resourceType") == "Bundle":
            count = 0
            for entry in data.get("entry", []) or []:
                res = entry.get("resource") if isinstance(entry, dict) else None
                if res and res.get("url"):
                    self.add(parse_resource(res))
                    count += 1
            return count
        self.add(parse_resource(data))
        return 1

    def remove(self, kind: str, url: str) -> None:
        with self._lock:
            self._by_kind.get(kind, {}).pop(url, None)

    def load_directory(self, path: Path) -> int:
        """
        Load every ``*.json`` canonical resource below ``path``.

        Files that are not canonical resources (no ``url``) are skipped;
        definitions that fail validation are logged and skipped.

        Returns
        -------
        int
            Number of resources stored.

        Raises
        ------
        IoError
            If ``path`` is not a directory.
        """
        if not path.is_dir():
            raise IoError(f"Not a directory: {path}")
        count = 0
        for file in sorted(path.rglob("*.json")):
            try:
                data = json.loads(file.read_text(encoding="utf-8-sig"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping %s: %s", file, e)
                continue
            if not isinstance(data, dict):
                continue
            if data.get("resourceType") != "Bundle" and not data.get("url"):
                continue
            try:
                count += self.add_json(data)
            except DefinitionError as e:
                logger.warning("Skipping %s: %s", file, e)
        logger.info("Loaded %d canonical resources from %s", count, path)
        return count

    # --------------------------------------------------------------------------
    # ResolverPort
    # --------------------------------------------------------------------------

    def resolve(self, kind: str, canonical_url: str) -> Optional[Any]:
        url, version = split_canonical(canonical_url)
        with self._lock:
            if kind == ANY_KIND:
                tables = list(self._by_kind.values())
            else:
                tables = [self._by_kind.get(kind, {})]
            for table in tables:
                versions = table.get(url)
                if not versions:
                    continue
                if version is None:
                    return versions[-1]
                for r in reversed(versions):
                    if getattr(r, "version", None) == version:
                        return r
        return None

    def resolve_by_type(
        self, type_name: str, namespace: Optional[str] = None
    ) -> Optional[StructureDefinition]:
        found = None
        for sd in self.list_all_structure_definitions():
            if not _namespace_matches(sd, namespace):
                continue
            if sd_type_name(sd) == type_name or sd.name == type_name:
                found = sd
        return found

    def list_all_structure_definitions(self) -> Iterator[StructureDefinition]:
        yield from self.list_resources("StructureDefinition")

    def list_resources(self, kind: str) -> Iterator[Any]:
        """Iterate over the stored resources of one kind (all versions)."""
        with self._lock:
            snapshot = [r for versions in self._by_kind.get(kind, {}).values() for r in versions]
        yield from snapshot

    def __len__(self) -> int:
        with self._lock:
            return sum(
                len(v) for table in self._by_kind.values() for v in table.values()
            )
