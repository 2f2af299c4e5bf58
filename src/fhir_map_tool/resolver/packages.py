# src/fhir_map_tool/resolver/packages.py
"""
Implementation guide package installer.

Reads an NPM style FHIR package archive (``.tgz``), picks up the conformance
resources it ships in ``package/`` and ``package/example/`` and stores them in
an InMemoryResolver. Only resources with no status, ``active`` or ``draft`` are
installed. NamingSystems are de-duplicated by their unique id value, every
other kind by canonical URL.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import tarfile
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, Field

from ..config import DEFAULT_INSTALL_TYPES
from ..exceptions import DefinitionError, IoError
from ..model.definitions import CanonicalResource, parse_resource, resource_type_of
from .ports import InMemoryResolver

logger = logging.getLogger(__name__)

SKIPPED_FILES = frozenset(
    {"package.json", ".index.json", "validation-summary.json", "validation-oo.json"}
)
ACCEPTED_STATUS = (None, "active", "draft")

InstallMode = Literal["store", "storeAndInstall", "cacheOnly"]


class PackageInstallationSpec(BaseModel):
    """
    What to install.

    Attributes
    ----------
    package_url : str
        Local path or ``file:`` URL of the archive.
    name, version : str
        Package coordinates, used to key the installer's package registry.
    resource_types : list of str
        Resource types to pick up; empty means the default install types.
    install_mode : {"store", "storeAndInstall", "cacheOnly"}
        ``cacheOnly`` parses the archive, ``store`` also records it in the
        package registry, ``storeAndInstall`` also writes the resources into
        the backing store.
    """

    package_url: str
    name: str
    version: str = "current"
    resource_types: List[str] = Field(default_factory=list)
    install_mode: InstallMode = "storeAndInstall"


class PackageInstallOutcome(BaseModel):
    """Result of one install: log messages and per-type counts."""

    messages: List[str] = Field(default_factory=list)
    resources_installed: Dict[str, int] = Field(default_factory=dict)
    created: Dict[str, int] = Field(default_factory=dict)
    updated: Dict[str, int] = Field(default_factory=dict)


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _archive_path(package_url: str) -> Path:
    parsed = urlparse(package_url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme in ("http", "https"):
        raise IoError(f"Only local package archives are supported, got {package_url}")
    return Path(package_url)


def _in_package_folder(member_name: str) -> bool:
    """True for ``package/x.json``, ``package/example/x.json`` and ``example/x.json``."""
    parts = member_name.split("/")
    if parts[0] == "package":
        parts = parts[1:]
    elif parts[0] != "example":
        return False
    if len(parts) == 1:
        return True
    return len(parts) == 2 and parts[0] == "example"


def naming_system_unique_id(resource: Any) -> str:
    """
    Return the first ``uniqueId.value`` of a NamingSystem.

    Raises
    ------
    DefinitionError
        If the NamingSystem has no unique id.
    """
    data = resource.data if isinstance(resource, CanonicalResource) else {}
    for unique in data.get("uniqueId", []) or []:
        value = unique.get("value") if isinstance(unique, dict) else None
        if value:
            return str(value)
    raise DefinitionError("NamingSystem does not have uniqueId component.")


def read_package(
    path: Path, resource_types: Sequence[str]
) -> Tuple[List[Any], List[str]]:
    """
    Read the conformance resources of a package archive.

    Parameters
    ----------
    path : Path
        The ``.tgz`` file.
    resource_types : sequence of str
        Resource types to keep.

    Returns
    -------
    tuple
        ``(resources, messages)``; unreadable or invalid entries are skipped
        and reported in ``messages``.

    Raises
    ------
    IoError
        If the file does not exist or is not a gzip tar archive.
    """
    if not path.is_file():
        raise IoError(f"Package archive does not exist: {path}")
    wanted = set(resource_types)
    resources: List[Any] = []
    messages: List[str] = []
    try:
        with tarfile.open(path, "r:gz") as tar:
            for member in tar.getmembers():
                name = member.name
                if not (member.isfile() and name.lower().endswith(".json")):
                    continue
                if not _in_package_folder(name):
                    continue
                if name.rsplit("/", 1)[-1] in SKIPPED_FILES:
                    continue
                fileobj = tar.extractfile(member)
                if fileobj is None:
                    continue
                try:
                    data = json.loads(fileobj.read().decode("utf-8-sig"))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    messages.append(f"Skipping {name}: {e}")
                    logger.warning("Skipping %s in %s: %s", name, path, e)
                    continue
                if not isinstance(data, dict) or data.get("resourceType") not in wanted:
                    continue
                try:
                    resources.append(parse_resource(data))
                except DefinitionError as e:
                    messages.append(f"Skipping {name}: {e}")
                    logger.warning("Skipping %s in %s: %s", name, path, e)
    except tarfile.TarError as e:
        raise IoError(f"Unable to read package archive {path}: {e}") from e
    return resources, messages


# ------------------------------------------------------------------------------
# installer
# ------------------------------------------------------------------------------


class PackageInstaller:
    """
    Install package archives into an InMemoryResolver.

    Parameters
    ----------
    store : InMemoryResolver
        Where installed resources go.
    resolver : DefinitionResolver or None
        Its cache is invalidated after each install so new definitions are
        visible immediately.
    default_types : sequence of str
        Resource types installed when a spec names none.
    """

    def __init__(
        self,
        store: InMemoryResolver,
        resolver: Optional[Any] = None,
        default_types: Sequence[str] = DEFAULT_INSTALL_TYPES,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.default_types = tuple(default_types)
        self.packages: Dict[Tuple[str, str], List[Any]] = {}
        self.registry: Dict[Tuple[str, str], Path] = {}

    def install(self, spec: PackageInstallationSpec) -> PackageInstallOutcome:
        """
        Install one package.

        Parameters
        ----------
        spec : PackageInstallationSpec
            Archive location, coordinates, types and mode.

        Returns
        -------
        PackageInstallOutcome
            Messages plus created and updated counts per resource type.

        Raises
        ------
        IoError
            If the archive cannot be read.
        """
        types = list(spec.resource_types) or list(self.default_types)
        path = _archive_path(spec.package_url)
        resources, messages = read_package(path, types)
        outcome = PackageInstallOutcome(messages=messages)
        key = (spec.name, spec.version)
        self.packages[key] = resources
        outcome.messages.append(
            f"Read {len(resources)} resources from package {spec.name}#{spec.version}"
        )
        if spec.install_mode == "cacheOnly":
            return outcome

        self.registry[key] = path
        if spec.install_mode != "storeAndInstall":
            return outcome

        for kind in types:
            for res in resources:
                if resource_type_of(res) != kind:
                    continue
                if not self._is_installable(res, outcome):
                    continue
                try:
                    created = self._create(res)
                except DefinitionError as e:
                    outcome.messages.append(f"Skipping {kind}: {e}")
                    logger.warning("Skipping %s from %s: %s", kind, spec.name, e)
                    continue
                counts = outcome.created if created else outcome.updated
                counts[kind] = counts.get(kind, 0) + 1
                outcome.resources_installed[kind] = (
                    outcome.resources_installed.get(kind, 0) + 1
                )
            count = outcome.resources_installed.get(kind, 0)
            if count:
                msg = f"-- Created or updated {count} resources of type {kind}"
                outcome.messages.append(msg)
                logger.info(msg)

        if self.resolver is not None:
            self.resolver.invalidate()
        return outcome

    def _is_installable(self, resource: Any, outcome: PackageInstallOutcome) -> bool:
        status = getattr(resource, "status", None)
        if status not in ACCEPTED_STATUS:
            ident = getattr(resource, "url", None) or getattr(resource, "id", None)
            outcome.messages.append(
                f"Skipping {resource_type_of(resource)} {ident}: status {status}"
            )
            return False
        return True

    def _create(self, resource: Any) -> bool:
        """Store ``resource``; return True when it was new, False on update."""
        if resource_type_of(resource) != "NamingSystem":
            return self.store.add(resource)
        unique = naming_system_unique_id(resource)
        created = True
        for existing in self.store.list_resources("NamingSystem"):
            try:
                existing_id = naming_system_unique_id(existing)
            except DefinitionError:
                continue
            if existing_id == unique:
                self.store.remove("NamingSystem", existing.url or existing.id)
                created = False
        if not resource.url and not resource.id:
            resource = dataclasses.replace(resource, id=unique)
        self.store.add(resource)
        return created
