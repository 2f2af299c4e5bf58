# src/fhir_map_tool/transform/expression.py
"""
FHIRPath evaluation for map rules.

Rule conditions, ``check`` and ``logMessage`` expressions, ``where(...)`` path
filters and the ``evaluate`` transform all run through ``fhirpathpy``. Elements
are projected to their JSON form (``json_composer.to_object``) before
evaluation, and the running rule's variables become ``%name`` environment
entries. Complex results are mapped back to the element they were projected
from, so a rule can copy them like any other source item.

Evaluation always returns a list. A list is *truthy* when it is non-empty
and every member is truthy. Evaluation never modifies its input.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import fhirpathpy
from fhirpathpy.models import models

from ..codec.json_composer import dumps, to_object
from ..exceptions import BadMap
from ..model.element import Element, primitive_string
from .variables import VariableMode

logger = logging.getLogger(__name__)

INTEGER_TYPES = frozenset({"integer", "positiveInt", "unsignedInt", "integer64"})

# Type information for choice navigation (``Observation.value``) and ``is``/``as``.
FHIR_MODEL = models["r4"]

CONSTANTS: Dict[str, str] = {
    "ucum": "http://unitsofmeasure.org",
    "sct": "http://snomed.info/sct",
    "loinc": "http://loinc.org",
}


# ------------------------------------------------------------------------------
# values
# ------------------------------------------------------------------------------


def scalar(item: Any) -> Any:
    """Python value of a primitive element; other items are returned as is."""
    if not isinstance(item, Element):
        return item
    if not item.is_primitive():
        return item
    value = item.value
    if value is None:
        return None
    t = item.fhir_type
    if t == "boolean":
        return value == "true"
    if t in INTEGER_TYPES:
        try:
            return int(value)
        except ValueError:
            return value
    if t == "decimal":
        try:
            return Decimal(value)
        except InvalidOperation:
            return value
    return value


def to_text(item: Any) -> Optional[str]:
    """String form of a primitive item, or None for composites and nulls."""
    v = scalar(item)
    if v is None or isinstance(v, (Element, dict, list)):
        return None
    return primitive_string(v)


def is_truthy(values: List[Any]) -> bool:
    """Non-empty and every member truthy."""
    if not values:
        return False
    for v in values:
        s = scalar(v)
        if isinstance(s, bool):
            if not s:
                return False
        elif s is None:
            return False
    return True


# ------------------------------------------------------------------------------
# Element <-> JSON
# ------------------------------------------------------------------------------


def project(item: Any) -> Any:
    """
    JSON form of ``item`` as FHIRPath sees it.

    Primitive elements become their Python value, complex elements a dict
    (``resourceType`` only on resources) and lists are projected item by item.
    Anything else is already JSON and passes through.
    """
    if isinstance(item, list):
        return [p for p in (project(i) for i in item) if p is not None]
    if not isinstance(item, Element):
        return item
    if item.is_primitive():
        return scalar(item)
    obj = to_object(item)
    if not item.is_resource():
        obj.pop("resourceType", None)
    return obj


def _environment(expression: str, variables: Any, focus: Any) -> Dict[str, Any]:
    env: Dict[str, Any] = dict(CONSTANTS)
    env["resource"] = env["rootResource"] = focus
    if variables is None:
        return env
    # only variables the expression mentions are projected
    # source bindings shadow target bindings of the same name
    for mode in (VariableMode.TARGET, VariableMode.SOURCE):
        for name in variables.names(mode):
            if "%" + name not in expression:
                continue
            value = variables.get(mode, name)
            if value is not None:
                env[name] = project(value)
    return env


def _roots(focus: Any, variables: Any) -> List[Element]:
    items = focus if isinstance(focus, list) else [focus]
    roots = [i for i in items if isinstance(i, Element)]
    if variables is not None:
        for mode in VariableMode:
            for name in variables.names(mode):
                value = variables.get(mode, name)
                if isinstance(value, Element):
                    roots.append(value)
    return roots


def _element_for(value: Dict[str, Any], roots: List[Element]) -> Optional[Element]:
    for root in roots:
        for e in root.iter_tree():
            if not e.is_primitive() and project(e) == value:
                return e
    return None


def _from_json(expression: str, value: Any, roots: List[Element]) -> Any:
    if isinstance(value, dict):
        found = _element_for(value, roots)
        if found is None:
            raise BadMap(f"Evaluation of {expression} returned an object not found in its input")
        return found
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, (bool, int, str, Decimal)):
        return value
    # dates, times and quantities come back as FHIRPath values
    return str(value)


# ------------------------------------------------------------------------------
# public api
# ------------------------------------------------------------------------------


def evaluate_json(expression: str, focus: Any, variables: Any = None) -> List[Any]:
    """
    Evaluate ``expression`` and return fhirpathpy's JSON results unchanged.

    Raises
    ------
    BadMap
        If the expression cannot be parsed or evaluated.
    """
    data = project(focus)
    if data is None:
        data = []
    try:
        result = fhirpathpy.evaluate(
            data, expression, _environment(expression, variables, data), FHIR_MODEL
        )
    except Exception as e:
        logger.debug("FHIRPath evaluation of %r failed: %s", expression, e)
        raise BadMap(f"Unable to evaluate {expression!r}: {e}") from e
    return result if isinstance(result, list) else [result]


def evaluate(expression: str, focus: Any, variables: Any = None) -> List[Any]:
    """
    Evaluate ``expression`` against ``focus``.

    Parameters
    ----------
    expression : str
        FHIRPath expression.
    focus : Element, scalar, list or None
        Input collection; None means empty.
    variables : Variables or None
        Source and target variables of the running rule, visible as ``%name``.

    Returns
    -------
    list
        Elements (for complex results) and Python scalars (str, bool, int,
        Decimal).

    Raises
    ------
    BadMap
        If the expression cannot be parsed or evaluated.
    """
    roots = _roots(focus, variables)
    return [_from_json(expression, v, roots) for v in evaluate_json(expression, focus, variables)]


def evaluate_boolean(expression: str, focus: Any, variables: Any = None) -> bool:
    return is_truthy(evaluate_json(expression, focus, variables))


def evaluate_string(expression: str, focus: Any, variables: Any = None) -> str:
    """Evaluate and join the string forms of the results with ``,``."""
    parts = []
    for v in evaluate_json(expression, focus, variables):
        if isinstance(v, dict):
            parts.append(dumps(v, pretty=False))
        elif isinstance(v, (bool, int, str, Decimal)):
            parts.append(primitive_string(v))
        else:
            parts.append(str(v))
    return ",".join(parts)


__all__ = [
    "evaluate",
    "evaluate_boolean",
    "evaluate_json",
    "evaluate_string",
    "is_truthy",
    "project",
    "scalar",
    "to_text",
]
