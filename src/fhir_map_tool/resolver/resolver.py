# src/fhir_map_tool/resolver/resolver.py
"""
Caching definition resolver.

DefinitionResolver sits between the engine and a ResolverPort. It caches
every lookup by ResourceKey in a TTLCache, generates missing snapshots before
a StructureDefinition enters the cache, picks the best definition for a type
name, and provides the map and ConceptMap lookups the interpreter needs.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from fhir.resources.R4B.conceptmap import ConceptMap
from fhir.resources.R4B.structuredefinition import StructureDefinition
from fhir.resources.R4B.structuremap import StructureMap

from ..config import AppConfig
from ..exceptions import DefinitionError
from ..model.definitions import (
    CanonicalResource,
    has_snapshot,
    is_absolute_url,
    last_updated,
    sd_type_name,
)
from .cache import TTLCache
from .ports import ANY_KIND, ResolverPort, _namespace_matches

logger = logging.getLogger(__name__)

DATA_ELEMENT_PREFIX = "http://hl7.org/fhir/StructureDefinition/de-"
_TYPE_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")


def _is_type_name(value: str) -> bool:
    return bool(_TYPE_NAME.fullmatch(value))


@dataclass(frozen=True)
class ResourceKey:
    """
    Cache key of a resolver lookup.

    Attributes
    ----------
    kind : str
        Resource type; ``"Resource"`` means any kind.
    url : str
        Canonical URL, optionally with ``|version``.
    """

    kind: str
    url: str


class DefinitionResolver:
    """
    Resolve canonical resources by URL with caching and snapshot generation.

    Parameters
    ----------
    port : ResolverPort
        Backing store.
    cache : TTLCache or None
        Shared cache; a new one is created from the keyword settings if None.
    ttl, negative_ttl, capacity
        Settings for a newly created cache.
    fetch_timeout : float or None
        How long a caller waits on another caller's load of the same key.
    """

    def __init__(
        self,
        port: ResolverPort,
        cache: Optional[TTLCache] = None,
        *,
        ttl: float = 1.0,
        negative_ttl: float = 0.25,
        capacity: int = 10000,
        fetch_timeout: Optional[float] = None,
    ) -> None:
        if not isinstance(port, ResolverPort):
            raise TypeError(f"port must implement ResolverPort, got {type(port).__name__}")
        self.port = port
        self.cache = cache or TTLCache(
            ttl=ttl, capacity=capacity, negative_ttl=negative_ttl
        )
        self.fetch_timeout = fetch_timeout
        self._generating = threading.local()

    @classmethod
    def from_config(cls, port: ResolverPort, cfg: AppConfig) -> "DefinitionResolver":
        return cls(
            port,
            ttl=cfg.cache_ttl_seconds,
            negative_ttl=cfg.negative_cache_ttl_seconds,
            capacity=cfg.cache_capacity,
        )

    # --------------------------------------------------------------------------
    # generic lookups
    # --------------------------------------------------------------------------

    def fetch(self, kind: str, url: str) -> Optional[Any]:
        """
        Return the resource of ``kind`` at ``url``, or None.

        Parameters
        ----------
        kind : str
            Resource type, or ``"Resource"`` for any.
        url : str
            Canonical URL, optionally ``url|version``.

        Returns
        -------
        object or None
            A fhir.resources model or CanonicalResource. StructureDefinitions
            always come back with a snapshot.
        """
        if not url:
            return None
        key = ResourceKey(kind, url)
        return self.cache.get_or_load(
            key, lambda: self._load(key), timeout=self.fetch_timeout
        )

    def _load(self, key: ResourceKey) -> Optional[Any]:
        res = self.port.resolve(key.kind, key.url)
        if res is None:
            logger.debug("No %s found for %s", key.kind, key.url)
            return None
        if isinstance(res, StructureDefinition) and not has_snapshot(res):
            try:
                res = self.generate_snapshot(res)
            except DefinitionError as e:
                logger.warning("Snapshot generation failed for %s: %s", key.url, e)
                return None
        return res

    def fetch_structure(self, url: str) -> Optional[StructureDefinition]:
        res = self.fetch("StructureDefinition", url)
        return res if isinstance(res, StructureDefinition) else None

    def fetch_type_definition(
        self, type_name: str, namespace: Optional[str] = None
    ) -> Optional[StructureDefinition]:
        """
        Return the definition of a named type.

        Parameters
        ----------
        type_name : str
            ``Patient``, ``urn:hl7-org:v3|ClinicalDocument`` (namespace
            restricted), or an absolute definition URL (optionally
            ``|version``).
        namespace : str or None
            XML namespace the definition must declare; ``http://hl7.org/fhir``
            and ``noNamespace`` match definitions without one.

        Returns
        -------
        StructureDefinition or None
            Best match: specializations over constraints, real types over
            ``de-`` data element aliases, exact type over name matches, most
            recently updated last.
        """
        if not type_name:
            return None
        name = type_name
        if namespace is None and "|" in type_name:
            prefix, rest = type_name.split("|", 1)
            if _is_type_name(rest) and "/StructureDefinition/" not in prefix:
                namespace, name = prefix, rest
        if is_absolute_url(name):
            return self.fetch_structure(name)
        key = ResourceKey("type", f"{namespace}|{name}" if namespace else name)
        return self.cache.get_or_load(
            key,
            lambda: self._load_type(name, namespace),
            timeout=self.fetch_timeout,
        )

    def _load_type(
        self, name: str, namespace: Optional[str]
    ) -> Optional[StructureDefinition]:
        candidates: List[tuple] = []
        for index, sd in enumerate(self.port.list_all_structure_definitions()):
            if not _namespace_matches(sd, namespace):
                continue
            exact = sd_type_name(sd) == name
            if not exact and sd.name != name:
                continue
            rank = (
                getattr(sd, "derivation", None) != "constraint",
                not str(sd.url or "").startswith(DATA_ELEMENT_PREFIX),
                exact,
                last_updated(sd),
                index,
            )
            candidates.append((rank, sd))
        if candidates:
            best = max(candidates, key=lambda c: c[0])[1]
        else:
            best = self.port.resolve_by_type(name, namespace)
        if best is None:
            return None
        if not has_snapshot(best):
            try:
                best = self.generate_snapshot(best)
            except DefinitionError as e:
                logger.warning("Snapshot generation failed for %s: %s", best.url, e)
                return None
        return best

    def all_structures(self) -> List[StructureDefinition]:
        """Return every StructureDefinition known to the backing store."""
        return list(self.port.list_all_structure_definitions())

    def list_resources(self, kind: str) -> Iterable[Any]:
        """List stored resources of one kind when the port supports it."""
        lister = getattr(self.port, "list_resources", None)
        if not callable(lister):
            return []
        return list(lister(kind))

    # --------------------------------------------------------------------------
    # snapshots
    # --------------------------------------------------------------------------

    def generate_snapshot(self, sd: StructureDefinition) -> StructureDefinition:
        """
        Return a copy of ``sd`` with a populated snapshot.

        Raises
        ------
        DefinitionError
            If the base chain cannot be resolved or loops.
        """
        from .snapshot import generate_snapshot

        active = getattr(self._generating, "urls", None)
        if active is None:
            active = self._generating.urls = set()
        url = str(sd.url)
        if url in active:
            raise DefinitionError(f"Circular baseDefinition chain at {url}")
        active.add(url)
        try:
            result = generate_snapshot(sd, self)
        finally:
            active.discard(url)
        logger.info("Generated snapshot for %s (%d elements)", url, len(result.snapshot.element))
        return result

    # --------------------------------------------------------------------------
    # maps and terminology
    # --------------------------------------------------------------------------

    def get_transform(self, url: str) -> Optional[StructureMap]:
        res = self.fetch("StructureMap", url)
        return res if isinstance(res, StructureMap) else None

    def fetch_concept_map(self, url: str) -> Optional[ConceptMap]:
        res = self.fetch("ConceptMap", url)
        return res if isinstance(res, ConceptMap) else None

    def find_matching_maps(self, value: str) -> List[StructureMap]:
        """Return the maps an ``import`` names; ``*`` acts as a wildcard."""
        if "*" not in value:
            sm = self.get_transform(value)
            return [sm] if sm is not None else []
        pattern = re.compile(".*".join(re.escape(p) for p in value.split("*")) + r"\Z")
        return [
            sm
            for sm in self.list_resources("StructureMap")
            if isinstance(sm, StructureMap) and sm.url and pattern.match(sm.url)
        ]

    def oid_to_uri(self, oid: str) -> Optional[str]:
        """Map an OID to a URI using stored NamingSystems."""
        for ns in self.list_resources("NamingSystem"):
            data = ns.data if isinstance(ns, CanonicalResource) else {}
            ids = data.get("uniqueId", []) or []
            if not any(u.get("type") == "oid" and u.get("value") == oid for u in ids):
                continue
            for u in ids:
                if u.get("type") == "uri":
                    return u.get("value")
        return None

    def invalidate(self) -> None:
        self.cache.invalidate()


__all__ = ["DefinitionResolver", "ResourceKey", "ANY_KIND"]
