# src/fhir_map_tool/transform/base.py
"""
Transform handler protocol for StructureMap target transforms.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, runtime_checkable

from fhir.resources.R4B.structuremap import StructureMap

from ..exceptions import BadMap
from ..model.definitions import choice_value
from ..model.element import Element
from .expression import to_text
from .variables import Variables

__all__ = ["TransformCall", "TransformHandler", "parameter_value"]


def parameter_value(variables: Variables, parameter: Any) -> Any:
    """
    Resolve one target parameter.

    An ``id`` parameter names a variable (source first, then target); any
    other parameter is a literal and is returned as its Python value.

    Raises
    ------
    BadMap
        If the parameter is empty or names an unbound variable.
    """
    suffix, value = choice_value(parameter, "value")
    if suffix is None:
        raise BadMap("Transform parameter has no value")
    if suffix != "Id":
        return value
    bound = variables.lookup(value)
    if bound is None:
        raise BadMap(f"Variable {value} not found ({variables.summary()})")
    return bound


@dataclass
class TransformCall:
    """
    Everything a handler may use while running one target transform.

    Attributes
    ----------
    rule_id : str
        ``map|group|rule`` label for messages.
    target : StructureMapGroupRuleTarget
        The rule target being executed.
    variables : Variables
        Bindings visible to the rule.
    interpreter : StructureMapInterpreter
        The running interpreter (resolver, warnings, group lookup).
    structure_map : StructureMap
        Map that owns the rule.
    group : StructureMapGroup
        Group that owns the rule.
    dest : Element or None
        Target context element, if the target has a context.
    source_var : str or None
        Variable of the rule's single source.
    """

    rule_id: str
    target: Any
    variables: Variables
    interpreter: Any
    structure_map: StructureMap
    group: Any = None
    dest: Optional[Element] = None
    source_var: Optional[str] = None

    @property
    def name(self) -> str:
        return str(self.target.transform)

    @property
    def element_name(self) -> Optional[str]:
        return self.target.element

    @property
    def parameters(self) -> List[Any]:
        return list(self.target.parameter or [])

    @property
    def resolver(self) -> Any:
        return self.interpreter.resolver

    def fail(self, msg: str) -> BadMap:
        return BadMap(f'Rule "{self.rule_id}": {msg}')

    def require(self, count: int) -> None:
        if len(self.parameters) < count:
            raise self.fail(
                f"Transform {self.name} needs at least {count} parameter(s), "
                f"got {len(self.parameters)}"
            )

    def param(self, index: int) -> Any:
        self.require(index + 1)
        return parameter_value(self.variables, self.parameters[index])

    def param_string(self, index: int) -> Optional[str]:
        return to_text(self.param(index))

    def param_string_required(self, index: int) -> str:
        text = self.param_string(index)
        if text is None:
            raise self.fail(f"Parameter {index + 1} of {self.name} has no value")
        return text

    def warn(self, msg: str) -> None:
        self.interpreter.warn(f'Rule "{self.rule_id}": {msg}')


@runtime_checkable
class TransformHandler(Protocol):
    """
    Interface for target transforms.

    Implementations declare the transform keyword they handle (e.g.
    ``"copy"``) and compute the value a rule target receives.
    """

    name: str  # e.g., "copy"

    def apply(self, call: TransformCall) -> Any:
        """
        Compute the value of a target.

        Parameters
        ----------
        call : TransformCall
            Rule, variables and parameters of the target.

        Returns
        -------
        Element, str, bool, int, Decimal or None
            The value to assign to the target element; None leaves it unset.
        """
        ...
