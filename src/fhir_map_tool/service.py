# src/fhir_map_tool/service.py
"""
Transform orchestration.

TransformService ties the pieces together: it parses the source document,
finds the StructureMap and the StructureDefinition of its target, allocates
the target root, runs the interpreter, cleans up document bundles and
serializes the result.

``transform_document`` is the public boundary: every FhirMapToolError raised
below it is turned into a failed TransformOutcome, so callers get a value
back instead of an exception.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

from fhir.resources.R4B.structuredefinition import StructureDefinition
from fhir.resources.R4B.structuremap import StructureMap
from pydantic import BaseModel, ConfigDict, Field

from . import codec
from .config import AppConfig
from .exceptions import (
    BadMap,
    DefinitionError,
    FhirMapToolError,
    MapNotFound,
    SourceParseError,
    TargetTypeUnresolvable,
)
from .model import factory
from .model.definitions import parse_resource_json
from .model.element import Element
from .resolver import DefinitionResolver, InMemoryResolver
from .resolver.packages import PackageInstallationSpec, PackageInstaller
from .transform import CancellationToken, StructureMapInterpreter
from .transform.bundle import is_document_bundle, remove_bundle_entry_ids

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# results
# ------------------------------------------------------------------------------


class TransformError(BaseModel):
    """
    A failure reported at the service boundary.

    Attributes
    ----------
    code : str
        Stable tag of the error kind (``map-not-found``, ``bad-map``, ...).
    message : str
        Human readable description.
    line, col : int or None
        Source position, for ``source-parse-error``.
    """

    code: str
    message: str
    line: Optional[int] = None
    col: Optional[int] = None

    @classmethod
    def from_exception(cls, exc: FhirMapToolError) -> "TransformError":
        if isinstance(exc, SourceParseError):
            return cls(code=exc.code, message=exc.msg, line=exc.line, col=exc.col)
        return cls(code=exc.code, message=str(exc))


class TransformOutcome(BaseModel):
    """
    Result of ``transform_document``.

    Exactly one of ``output`` and ``error`` is set: a failed transform
    returns no partial output.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool
    output: Optional[bytes] = None
    output_format: Optional[str] = None
    target: Optional[Element] = Field(default=None, exclude=True)
    error: Optional[TransformError] = None
    warnings: List[str] = Field(default_factory=list)


def opposite_format(fmt: str) -> str:
    return "json" if fmt == "xml" else "xml"


# ------------------------------------------------------------------------------
# service
# ------------------------------------------------------------------------------


class TransformService:
    """
    Parse, transform and serialize documents.

    Parameters
    ----------
    resolver : DefinitionResolver
        Shared definition lookup; safe to share between threads.
    max_recursion_depth : int, default=256
        Passed to every interpreter.
    strict : bool, default=True
        Parser strictness for source documents.
    """

    def __init__(
        self,
        resolver: DefinitionResolver,
        *,
        max_recursion_depth: int = 256,
        strict: bool = True,
    ) -> None:
        self.resolver = resolver
        self.max_recursion_depth = max_recursion_depth
        self.strict = strict

    @classmethod
    def from_config(
        cls, cfg: AppConfig, store: Optional[InMemoryResolver] = None
    ) -> "TransformService":
        """
        Build a service from configuration.

        Loads every ``definition_dirs`` directory and installs every
        configured package into ``store`` (a new InMemoryResolver if None).

        Raises
        ------
        IoError
            If a definition directory or package archive cannot be read.
        """
        store = store if store is not None else InMemoryResolver()
        for directory in cfg.definition_dirs:
            store.load_directory(directory)
        resolver = DefinitionResolver.from_config(store, cfg)
        installer = PackageInstaller(store, resolver, cfg.install_resource_types)
        for ref in cfg.packages:
            outcome = installer.install(
                PackageInstallationSpec(package_url=ref.url, name=ref.name, version=ref.version)
            )
            for msg in outcome.messages:
                logger.debug("%s", msg)
        return cls(
            resolver,
            max_recursion_depth=cfg.max_recursion_depth,
            strict=cfg.strict_parsing,
        )

    # --------------------------------------------------------------------------
    # documents
    # --------------------------------------------------------------------------

    def parse_document(self, data: Union[str, bytes], fmt: str) -> Element:
        """Parse ``data`` (``xml`` or ``json``) into an element tree."""
        return codec.parse(data, fmt, self.resolver, self.strict)

    def compose_document(self, element: Element, fmt: str, pretty: bool = True) -> bytes:
        """Serialize an element tree as ``xml`` or ``json``."""
        return codec.compose(element, fmt, pretty)

    # --------------------------------------------------------------------------
    # maps
    # --------------------------------------------------------------------------

    def load_map(
        self, map_url: Optional[str] = None, map_data: Optional[Union[str, bytes]] = None
    ) -> StructureMap:
        """
        Return the StructureMap named by ``map_url`` or given as JSON.

        Raises
        ------
        MapNotFound
            If ``map_url`` does not resolve.
        BadMap
            If ``map_data`` is not a valid StructureMap, or neither argument
            is given.
        """
        if map_data is not None:
            try:
                sm = parse_resource_json(map_data)
            except DefinitionError as e:
                raise BadMap(f"Inline map is invalid: {e}") from e
            if not isinstance(sm, StructureMap):
                raise BadMap("Inline map is not a StructureMap")
            return sm
        if not map_url:
            raise BadMap("No StructureMap given")
        sm = self.resolver.get_transform(map_url)
        if sm is None:
            raise MapNotFound(map_url)
        return sm

    def target_definition(self, sm: StructureMap) -> StructureDefinition:
        """
        Find the StructureDefinition of the map's target.

        The first structure declared with mode ``target`` wins; otherwise
        the type of the first group's target input (resolved through the
        structure aliases).

        Raises
        ------
        TargetTypeUnresolvable
            If no definition can be found.
        """
        url = next(
            (str(s.url) for s in sm.structure or [] if s.mode == "target" and s.url),
            None,
        )
        if url is None:
            groups = sm.group or []
            inputs = (groups[0].input or []) if groups else []
            stated = next((i.type for i in inputs if i.mode == "target" and i.type), None)
            if stated:
                url = next(
                    (str(s.url) for s in sm.structure or [] if s.alias == stated and s.url),
                    stated,
                )
        if url is None:
            raise TargetTypeUnresolvable(f"StructureMap {sm.url} declares no target type")
        sd = factory.find_type(self.resolver, url)
        if sd is None:
            raise TargetTypeUnresolvable(
                f"Unable to find the target StructureDefinition {url} of map {sm.url}"
            )
        return sd

    # --------------------------------------------------------------------------
    # transforms
    # --------------------------------------------------------------------------

    def transform(
        self,
        source: Element,
        sm: StructureMap,
        cancel: Optional[CancellationToken] = None,
        warnings: Optional[List[str]] = None,
    ) -> Element:
        """
        Run ``sm`` over ``source`` and return the new target root.

        Raises
        ------
        FhirMapToolError
            Any failure of the transform.
        """
        target = factory.build(self.resolver, self.target_definition(sm))
        interpreter = StructureMapInterpreter(
            self.resolver, max_recursion_depth=self.max_recursion_depth, cancel=cancel
        )
        try:
            interpreter.transform(source, sm, target)
        finally:
            if warnings is not None:
                warnings.extend(interpreter.warnings)
        if is_document_bundle(target):
            remove_bundle_entry_ids(target)
        return target

    def transform_document(
        self,
        source: Union[str, bytes, Element],
        source_format: Optional[str] = None,
        map_url: Optional[str] = None,
        map_data: Optional[Union[str, bytes]] = None,
        output_format: Optional[str] = None,
        pretty: bool = True,
        cancel: Optional[Any] = None,
    ) -> TransformOutcome:
        """
        Parse, transform and serialize one document.

        Parameters
        ----------
        source : str, bytes or Element
            The source document, or an already parsed tree.
        source_format : {"xml", "json"} or None
            Format of ``source``; required unless ``source`` is an Element.
        map_url : str or None
            Canonical URL of the StructureMap.
        map_data : str or bytes or None
            A StructureMap as JSON, used instead of ``map_url``.
        output_format : {"xml", "json"} or None
            Defaults to the other format than the source's (``json`` for an
            Element source).
        pretty : bool, default=True
            Indent the output.
        cancel : CancellationToken or None
            Token to stop the transform from another thread.

        Returns
        -------
        TransformOutcome
            ``ok`` with ``output`` and ``target``, or ``error``. Warnings
            (such as untranslatable codes) are reported either way.
        """
        warnings: List[str] = []
        try:
            if isinstance(source, Element):
                root = source
                out_fmt = output_format or "json"
            else:
                if not source_format:
                    raise BadMap("source_format is required for a serialized source")
                root = self.parse_document(source, source_format)
                out_fmt = output_format or opposite_format(source_format.lower())
            sm = self.load_map(map_url, map_data)
            target = self.transform(root, sm, cancel, warnings)
            output = self.compose_document(target, out_fmt, pretty)
        except FhirMapToolError as e:
            logger.error("Transform failed: %s", e)
            return TransformOutcome(
                ok=False, error=TransformError.from_exception(e), warnings=warnings
            )
        return TransformOutcome(
            ok=True, output=output, output_format=out_fmt, target=target, warnings=warnings
        )


__all__ = ["TransformError", "TransformOutcome", "TransformService", "opposite_format"]
