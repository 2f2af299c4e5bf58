# src/fhir_map_tool/config.py
"""
Configuration utilities for fhir_map_tool.

Provides a simple dataclass-based configuration object and a loader that reads
YAML configuration files when present.

Example
-------
.. code-block:: yaml

    default_output_dir: out
    definition_dirs:
      - definitions/cda-core
    packages:
      - name: ch.fhir.ig.cda-fhir-maps
        version: 0.3.0
        url: packages/ch.fhir.ig.cda-fhir-maps.tgz
    cache_ttl_seconds: 1.0
    max_recursion_depth: 256
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

import yaml

DEFAULT_INSTALL_TYPES: Tuple[str, ...] = (
    "NamingSystem",
    "CodeSystem",
    "ValueSet",
    "StructureDefinition",
    "ConceptMap",
    "StructureMap",
    "ImplementationGuide",
)


@dataclass(frozen=True)
class PackageRef:
    """
    An implementation guide archive to install at startup.

    Attributes
    ----------
    name : str
        NPM package name, e.g. ``hl7.fhir.r4.core``.
    version : str
        Package version.
    url : str
        Local path (or ``file:`` URL) of the ``.tgz`` archive.
    """

    name: str
    version: str
    url: str


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Attributes
    ----------
    default_output_dir : Path
        Directory where transformed documents are written.
    definition_dirs : tuple of Path
        Directories of JSON canonical resources loaded into the resolver.
    packages : tuple of PackageRef
        Implementation guide archives installed into the resolver.
    install_resource_types : tuple of str
        Resource types the package installer picks up.
    cache_ttl_seconds : float
        Time to live of a positive resolver cache entry.
    negative_cache_ttl_seconds : float
        Time to live of a "not found" resolver cache entry.
    cache_capacity : int
        Maximum number of resolver cache entries.
    max_recursion_depth : int
        Maximum nesting of group invocations during one transform.
    strict_parsing : bool
        Whether structural problems in source documents are errors (True) or
        warnings (False).
    """

    default_output_dir: Path = Path("outputs")
    definition_dirs: Tuple[Path, ...] = ()
    packages: Tuple[PackageRef, ...] = ()
    install_resource_types: Tuple[str, ...] = DEFAULT_INSTALL_TYPES
    cache_ttl_seconds: float = 1.0
    negative_cache_ttl_seconds: float = 0.25
    cache_capacity: int = 10000
    max_recursion_depth: int = 256
    strict_parsing: bool = True
    extra: Mapping[str, Any] = field(default_factory=dict)


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def _as_list(value: Any, key: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"Config key {key!r} must be a list, got {type(value).__name__}")
    return value


def _package_ref(item: Any) -> PackageRef:
    if not isinstance(item, Mapping):
        raise TypeError(f"Package entry must be a mapping, got {type(item).__name__}")
    try:
        return PackageRef(
            name=str(item["name"]),
            version=str(item.get("version", "current")),
            url=str(item["url"]),
        )
    except KeyError as e:
        raise TypeError(f"Package entry is missing key {e.args[0]!r}") from e


def load_config(path: Optional[Path]) -> AppConfig:
    """
    Load application configuration from a YAML file.

    Parameters
    ----------
    path : Path or None
        Path to a YAML config file. If None, defaults are used.

    Returns
    -------
    AppConfig
        The loaded configuration. Unknown keys are kept in ``extra``.

    Raises
    ------
    TypeError
        If the YAML file does not parse to a mapping at the top level, or if a
        key has the wrong shape.
    yaml.YAMLError
        If the file is not valid YAML.
    """
    if path is None:
        return AppConfig()

    data: Any = yaml.safe_load(path.read_text())

    if data is None:
        return AppConfig()

    if not isinstance(data, Mapping):
        raise TypeError(
            f"Config file must contain a mapping at top level, "
            f"got {type(data).__name__}. "
            f"Config file: {path}"
        )

    defaults = AppConfig()
    known = {
        "default_output_dir",
        "definition_dirs",
        "packages",
        "install_resource_types",
        "cache_ttl_seconds",
        "negative_cache_ttl_seconds",
        "cache_capacity",
        "max_recursion_depth",
        "strict_parsing",
    }

    types = data.get("install_resource_types")
    return AppConfig(
        default_output_dir=Path(data.get("default_output_dir", "outputs")),
        definition_dirs=tuple(
            Path(p) for p in _as_list(data.get("definition_dirs"), "definition_dirs")
        ),
        packages=tuple(
            _package_ref(p) for p in _as_list(data.get("packages"), "packages")
        ),
        install_resource_types=(
            tuple(str(t) for t in _as_list(types, "install_resource_types"))
            if types is not None
            else defaults.install_resource_types
        ),
        cache_ttl_seconds=float(
            data.get("cache_ttl_seconds", defaults.cache_ttl_seconds)
        ),
        negative_cache_ttl_seconds=float(
            data.get("negative_cache_ttl_seconds", defaults.negative_cache_ttl_seconds)
        ),
        cache_capacity=int(data.get("cache_capacity", defaults.cache_capacity)),
        max_recursion_depth=int(
            data.get("max_recursion_depth", defaults.max_recursion_depth)
        ),
        strict_parsing=bool(data.get("strict_parsing", defaults.strict_parsing)),
        extra={k: v for k, v in data.items() if k not in known},
    )
