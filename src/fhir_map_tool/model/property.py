# src/fhir_map_tool/model/property.py
"""
Runtime property descriptors.

A Property pairs one ElementDefinition with the StructureDefinition it came
from and answers the questions the codecs and the interpreter ask about it:
its XML name and namespace, whether it repeats, whether it is a choice,
which concrete type an element name or ``xsi:type`` selects, and which child
properties apply for that type.

Child properties are computed lazily and memoized per ``(element name, stated
type)`` pair, so repeated walks over large documents only resolve each type
once.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol, Tuple

from fhir.resources.R4B.elementdefinition import ElementDefinition
from fhir.resources.R4B.structuredefinition import StructureDefinition

from ..exceptions import DefinitionError
from .definitions import (
    EXT_DATE_FORMAT,
    EXT_DEFAULT_TYPE,
    EXT_NAMESPACE,
    EXT_XML_NAME,
    FHIR_NS,
    FHIR_SD_BASE,
    FHIRPATH_SYSTEM_PREFIX,
    PRIMITIVE_TYPES,
    REP_CDA_TEXT,
    REP_TYPE_ATTR,
    REP_XML_ATTR,
    REP_XML_TEXT,
    element_regex,
    extension_value,
    is_absolute_url,
    sd_type_name,
    snapshot_elements,
    structure_namespace,
    tail,
)


class TypeContext(Protocol):
    """What a Property needs from the definition resolver."""

    def fetch_structure(self, url: str) -> Optional[StructureDefinition]: ...

    def fetch_type_definition(
        self, type_name: str, namespace: Optional[str] = None
    ) -> Optional[StructureDefinition]: ...


# ------------------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------------------


def low_first(s: str) -> str:
    return s[:1].lower() + s[1:] if s else s


def capitalize(s: str) -> str:
    return s[:1].upper() + s[1:] if s else s


def _child_map(
    sd: StructureDefinition, ed: ElementDefinition
) -> List[ElementDefinition]:
    """
    Return the direct children of ``ed`` in the snapshot of ``sd``.

    A ``contentReference`` element takes its children from the element it
    points at. Slices are skipped; they share the path of the sliced element.
    """
    elements = snapshot_elements(sd)
    target = ed
    ref = getattr(ed, "contentReference", None)
    if ref:
        ref_id = ref.split("#", 1)[1] if "#" in ref else ref
        for candidate in elements:
            if candidate.id == ref_id or (
                candidate.path == ref_id and not candidate.sliceName
            ):
                target = candidate
                break
        else:
            raise DefinitionError(
                f"Unable to resolve contentReference {ref} in {sd.url}"
            )

    prefix = target.path + "."
    out: List[ElementDefinition] = []
    for candidate in elements:
        if getattr(candidate, "sliceName", None):
            continue
        path = candidate.path
        if path.startswith(prefix) and "." not in path[len(prefix) :]:
            out.append(candidate)
    return out


# ------------------------------------------------------------------------------
# Property
# ------------------------------------------------------------------------------


class Property:
    """
    Descriptor for one element of a StructureDefinition snapshot.

    Parameters
    ----------
    context : TypeContext
        Resolver used to look up the definitions of datatypes.
    definition : ElementDefinition
        The element this property describes.
    structure : StructureDefinition
        The definition the element belongs to.
    """

    def __init__(
        self,
        context: TypeContext,
        definition: ElementDefinition,
        structure: StructureDefinition,
    ) -> None:
        self.context = context
        self.definition = definition
        self.structure = structure
        self._children: Dict[Tuple[Optional[str], Optional[str]], List[Property]] = {}
        self._primitive: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Property({self.definition.path!r})"

    # --------------------------------------------------------------------------
    # naming
    # --------------------------------------------------------------------------

    @property
    def name(self) -> str:
        """Last path segment, including any ``[x]`` suffix."""
        return tail(self.definition.path)

    @property
    def base_name(self) -> str:
        """Name with the ``[x]`` choice suffix removed."""
        n = self.name
        return n[:-3] if n.endswith("[x]") else n

    @property
    def xml_name(self) -> str:
        value = extension_value(self.definition, EXT_XML_NAME)
        return str(value) if value else self.base_name

    @property
    def xml_namespace(self) -> str:
        value = extension_value(self.definition, EXT_NAMESPACE)
        if value:
            return str(value)
        return structure_namespace(self.structure) or FHIR_NS

    # --------------------------------------------------------------------------
    # shape
    # --------------------------------------------------------------------------

    @property
    def is_root(self) -> bool:
        return "." not in self.definition.path

    @property
    def is_list(self) -> bool:
        return not self.is_root and str(self.definition.max or "1") != "1"

    @property
    def max(self) -> str:
        return str(self.definition.max or "*")

    @property
    def types(self) -> List[str]:
        return [t.code for t in self.definition.type or [] if t.code]

    @property
    def is_choice(self) -> bool:
        if self.name.endswith("[x]"):
            return True
        return len(set(self.types)) > 1

    def has_representation(self, representation: str) -> bool:
        return representation in (self.definition.representation or [])

    @property
    def representation(self) -> frozenset:
        return frozenset(self.definition.representation or [])

    @property
    def is_xml_attr(self) -> bool:
        return self.has_representation(REP_XML_ATTR)

    @property
    def is_xml_text(self) -> bool:
        return self.has_representation(REP_XML_TEXT)

    @property
    def is_type_attr(self) -> bool:
        return self.has_representation(REP_TYPE_ATTR)

    @property
    def is_cda_text(self) -> bool:
        return self.has_representation(REP_CDA_TEXT)

    @property
    def default_type(self) -> Optional[str]:
        value = extension_value(self.definition, EXT_DEFAULT_TYPE)
        return str(value) if value else None

    @property
    def date_format(self) -> Optional[str]:
        value = extension_value(self.definition, EXT_DATE_FORMAT)
        return str(value) if value else None

    @property
    def regex(self) -> Optional[str]:
        return element_regex(self.definition)

    @property
    def is_resource(self) -> bool:
        types = self.types
        if types:
            return len(types) == 1 and types[0] in ("Resource", "DomainResource")
        return self.is_root and getattr(self.structure, "kind", None) == "resource"

    # --------------------------------------------------------------------------
    # types
    # --------------------------------------------------------------------------

    def get_type(self, element_name: Optional[str] = None) -> Optional[str]:
        """
        Return the type code that applies to an element of this property.

        Parameters
        ----------
        element_name : str or None
            Concrete element name, e.g. ``valueQuantity`` for ``value[x]``.

        Returns
        -------
        str or None
            The type code, the root path for root elements, or None when the
            element declares no type.

        Raises
        ------
        DefinitionError
            If a polymorphic element cannot be narrowed to one type.
        """
        if self.is_root:
            return self.definition.path
        types = self.types
        if not types:
            if getattr(self.definition, "contentReference", None):
                return "Element"
            return None
        if len(set(types)) == 1:
            return types[0]
        stem = self.base_name
        if element_name and element_name.startswith(stem) and len(element_name) > len(stem):
            t = element_name[len(stem) :]
            return low_first(t) if self.is_primitive_type(low_first(t)) else t
        default = self.default_type
        if default:
            return default
        raise DefinitionError(
            f"Cannot determine the type of {element_name or self.name} "
            f"on {self.definition.path}"
        )

    def _type_ref(self, code: str):
        for t in self.definition.type or []:
            if t.code == code:
                return t
        return None

    def resolve_type(self, code: str) -> Optional[StructureDefinition]:
        """
        Find the StructureDefinition of a type code used by this property.

        Absolute codes are fetched as is. Relative codes are tried next to the
        owning definition (logical models keep their types together), then in
        the FHIR core namespace, then by type name.
        """
        ref = self._type_ref(code)
        profiles = list(getattr(ref, "profile", None) or []) if ref is not None else []
        candidates: List[str] = [str(p) for p in profiles]
        if is_absolute_url(code):
            candidates.append(code)
        else:
            url = str(getattr(self.structure, "url", "") or "")
            if "/" in url and not url.startswith(FHIR_SD_BASE):
                candidates.append(url.rsplit("/", 1)[0] + "/" + code)
            candidates.append(FHIR_SD_BASE + code)
        for url in candidates:
            sd = self.context.fetch_structure(url)
            if sd is not None:
                return sd
        if is_absolute_url(code):
            return None
        return self.context.fetch_type_definition(code)

    def is_primitive_type(self, code: Optional[str]) -> bool:
        """Return True if ``code`` names a primitive type."""
        if not code:
            return False
        if code in PRIMITIVE_TYPES:
            return True
        if code.startswith(FHIRPATH_SYSTEM_PREFIX) or code.startswith("System."):
            return True
        cached = self._primitive.get(code)
        if cached is not None:
            return cached
        sd = self.resolve_type(code) if "." not in code or is_absolute_url(code) else None
        result = sd is not None and getattr(sd, "kind", None) == "primitive-type"
        self._primitive[code] = result
        return result

    def is_primitive(self, element_name: Optional[str] = None) -> bool:
        try:
            return self.is_primitive_type(self.get_type(element_name))
        except DefinitionError:
            return False

    def _child_type(
        self, element_name: Optional[str], stated_type: Optional[str]
    ) -> Optional[str]:
        types = self.types
        if not types:
            return None
        if self.is_type_attr:
            wanted = stated_type or self.default_type
            if wanted:
                return self._stated_type(element_name, wanted)
        if len(set(types)) == 1:
            return types[0]
        if self.is_type_attr:
            raise DefinitionError(
                f"No xsi:type for polymorphic element {self.definition.path}"
            )
        if stated_type and stated_type in types:
            return stated_type
        return self.get_type(element_name)

    def _stated_type(self, element_name: Optional[str], wanted: str) -> str:
        """
        Match an ``xsi:type`` against the declared types.

        A type that is not declared is accepted when it resolves, so that a
        subtype can stand in for an abstract declared type (``PQ`` for
        ``ANY``).
        """
        if ":" in wanted and not is_absolute_url(wanted):
            wanted = wanted.split(":", 1)[1]
        for code in self.types:
            if code == wanted or tail_type(code) == wanted:
                return code
            if is_absolute_url(code):
                sd = self.context.fetch_structure(code)
                if sd is not None and sd_type_name(sd) == wanted:
                    return code
        if self.resolve_type(wanted) is not None:
            return wanted
        raise DefinitionError(
            f"Type {wanted!r} is not an acceptable type for "
            f"{element_name or self.name} on {self.definition.path}"
        )

    # --------------------------------------------------------------------------
    # children
    # --------------------------------------------------------------------------

    def child_properties(
        self, element_name: Optional[str] = None, stated_type: Optional[str] = None
    ) -> List["Property"]:
        """
        Return the properties of the children of an element of this property.

        Parameters
        ----------
        element_name : str or None
            Concrete element name (selects the type of ``[x]`` choices).
        stated_type : str or None
            Explicit type, from ``xsi:type`` or an element's chosen type.

        Returns
        -------
        list of Property
            Child properties in declaration order. Empty for ``xhtml``.

        Raises
        ------
        DefinitionError
            If the element's type cannot be determined or resolved.
        """
        key = (element_name, stated_type)
        cached = self._children.get(key)
        if cached is not None:
            return cached

        sd = self.structure
        children = _child_map(sd, self.definition)
        if not children:
            t = self._child_type(element_name, stated_type)
            if t is not None and t != "xhtml" and not t.startswith(FHIRPATH_SYSTEM_PREFIX):
                type_sd = self.resolve_type(t)
                if type_sd is None:
                    raise DefinitionError(
                        f"Unable to find type {t!r} for {element_name or self.name} "
                        f"on {self.definition.path}"
                    )
                sd = type_sd
                elements = snapshot_elements(sd)
                children = _child_map(sd, elements[0]) if elements else []

        props = [Property(self.context, child, sd) for child in children]
        with self._lock:
            self._children.setdefault(key, props)
            return self._children[key]

    def get_child(
        self,
        name: str,
        element_name: Optional[str] = None,
        stated_type: Optional[str] = None,
    ) -> Optional["Property"]:
        """Return the child property matching ``name`` (choice aware)."""
        for p in self.child_properties(element_name, stated_type):
            if p.name == name or p.name == name + "[x]":
                return p
        for p in self.child_properties(element_name, stated_type):
            if p.is_choice and name.startswith(p.base_name) and p.name.endswith("[x]"):
                return p
        return None


def tail_type(code: str) -> str:
    """Return a type code stripped of any URL prefix."""
    return code.rsplit("/", 1)[1] if "/" in code else code
