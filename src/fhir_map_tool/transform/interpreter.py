# src/fhir_map_tool/transform/interpreter.py
"""
StructureMap interpreter.

Runs the groups and rules of a StructureMap over a source element tree and
writes into a pre-allocated target tree. For every rule:

1. each source is read from its context variable (``context.element``),
   filtered by type and ``condition``, checked, logged and narrowed by its
   list mode; several sources iterate as a product;
2. for every binding the targets are created or located on their context
   and their transform is applied;
3. nested rules and dependent groups run with the new bindings; a rule with
   neither that copies one source into one freshly created target invokes
   the group registered for the pair of types.

Group calls nest at most ``max_recursion_depth`` deep. The cancellation
token is polled before every rule and every iteration.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from fhir.resources.R4B.structuremap import StructureMap

from ..exceptions import BadMap, TransformRecursionLimit
from ..model.definitions import choice_value, is_absolute_url
from ..model.element import Element
from ..model.sorter import sort_element
from .base import TransformCall
from .cancellation import CancellationToken
from .expression import evaluate_boolean, evaluate_string
from .registry import get_handler
from .variables import Variables, VariableMode

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 256
TYPE_MODES = ("types", "type-and-types")


class ResolvedGroup(NamedTuple):
    structure_map: StructureMap
    group: Any


def _input_name(group: Any, mode: str, default: Optional[str]) -> Optional[str]:
    for inp in group.input or []:
        if inp.mode == mode:
            return inp.name
    return default


def _is_share(mode: Optional[str]) -> bool:
    return bool(mode) and str(mode) == "share"


def _item_type(item: Any) -> str:
    if isinstance(item, Element):
        return item.fhir_type
    if isinstance(item, bool):
        return "boolean"
    if isinstance(item, int):
        return "integer"
    return "string"


class StructureMapInterpreter:
    """
    Execute StructureMaps.

    One interpreter runs one transform at a time; create a new instance per
    concurrent transform. The resolver is the only shared state.

    Parameters
    ----------
    resolver : DefinitionResolver
        Supplies StructureDefinitions, imported maps and ConceptMaps.
    max_recursion_depth : int, default=256
        Deepest allowed nesting of group invocations.
    cancel : CancellationToken or None
        Token polled at rule boundaries.
    """

    def __init__(
        self,
        resolver: Any,
        max_recursion_depth: int = DEFAULT_MAX_DEPTH,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.resolver = resolver
        self.max_recursion_depth = max_recursion_depth
        self.cancel = cancel or CancellationToken()
        self.warnings: List[str] = []
        self._depth = 0
        self._group_refs: Dict[Tuple[str, str], ResolvedGroup] = {}
        self._type_groups: Dict[Tuple[str, str, str], ResolvedGroup] = {}

    def warn(self, msg: str) -> None:
        logger.warning("%s", msg)
        self.warnings.append(msg)

    # --------------------------------------------------------------------------
    # entry point
    # --------------------------------------------------------------------------

    def transform(self, source: Any, structure_map: StructureMap, target: Element) -> Element:
        """
        Run the first group of ``structure_map``.

        Parameters
        ----------
        source : Element
            Source root, bound to the group's source input.
        structure_map : StructureMap
            The map to run.
        target : Element
            Empty target root, bound to the group's target input. Its
            children are sorted into declaration order afterwards.

        Returns
        -------
        Element
            ``target``.

        Raises
        ------
        BadMap
            If the map cannot be executed.
        TransformRecursionLimit
            If group calls nest too deeply.
        TransformCancelled
            If the cancellation token is set.
        """
        groups = structure_map.group or []
        if not groups:
            raise BadMap(f"StructureMap {structure_map.url} has no groups")
        group = groups[0]
        logger.debug("Start transform %s", structure_map.url)
        variables = Variables()
        inputs = group.input or []
        if inputs:
            variables.add(VariableMode.SOURCE, _input_name(group, "source", "source"), source)
        if len(inputs) > 1:
            variables.add(VariableMode.TARGET, _input_name(group, "target", "target"), target)
        self._execute_group(structure_map, variables, group)
        sort_element(target)
        return target

    # --------------------------------------------------------------------------
    # groups and rules
    # --------------------------------------------------------------------------

    def _execute_group(self, sm: StructureMap, variables: Variables, group: Any) -> None:
        self._depth += 1
        try:
            if self._depth > self.max_recursion_depth:
                raise TransformRecursionLimit(
                    f"Group {group.name!r} exceeds the maximum nesting depth of "
                    f"{self.max_recursion_depth}"
                )
            logger.debug("Group: %s; vars = %s", group.name, variables.summary())
            if group.extends:
                base = self.resolve_group_reference(sm, group.extends)
                self._execute_group(base.structure_map, variables, base.group)
            for rule in group.rule or []:
                self._execute_rule(sm, variables, group, rule)
        finally:
            self._depth -= 1

    def _execute_rule(self, sm: StructureMap, variables: Variables, group: Any, rule: Any) -> None:
        self.cancel.raise_if_cancelled()
        logger.debug("Rule: %s; vars = %s", rule.name, variables.summary())
        rule_id = f"{sm.name}|{group.name}|{rule.name}"
        sources = rule.source or []
        if not sources:
            raise BadMap(f'Rule "{rule_id}": no source')
        source_var = sources[0].variable if len(sources) == 1 else None

        for bound in self._process_sources(rule_id, variables.copy(), sources, sm.url):
            self.cancel.raise_if_cancelled()
            for target in rule.target or []:
                self._process_target(rule_id, bound, sm, group, target, source_var, variables)
            for child in rule.rule or []:
                self._execute_rule(sm, bound, group, child)
            for dependent in rule.dependent or []:
                self._execute_dependency(sm, bound, dependent)
            if not rule.rule and not rule.dependent and self._is_simple(rule):
                self._execute_by_types(rule_id, sm, bound, rule)

    @staticmethod
    def _is_simple(rule: Any) -> bool:
        sources = rule.source or []
        targets = rule.target or []
        return (
            len(sources) == 1
            and bool(sources[0].variable)
            and len(targets) == 1
            and bool(targets[0].variable)
            and targets[0].transform == "create"
            and not targets[0].parameter
        )

    def _execute_by_types(
        self, rule_id: str, sm: StructureMap, variables: Variables, rule: Any
    ) -> None:
        src = variables.get(VariableMode.SOURCE, rule.source[0].variable)
        tgt = variables.get(VariableMode.TARGET, rule.target[0].variable)
        if not isinstance(src, Element) or not isinstance(tgt, Element):
            return
        rg = self.resolve_group_by_types(sm, rule_id, src.fhir_type, tgt.fhir_type)
        inputs = rg.group.input
        scope = Variables()
        scope.add(VariableMode.SOURCE, inputs[0].name, src)
        scope.add(VariableMode.TARGET, inputs[1].name, tgt)
        self._execute_group(rg.structure_map, scope, rg.group)

    def _execute_dependency(self, sm: StructureMap, variables: Variables, dependent: Any) -> None:
        rg = self.resolve_group_reference(sm, dependent.name)
        inputs = rg.group.input or []
        names = list(dependent.variable or [])
        if len(inputs) != len(names):
            raise BadMap(
                f"Rule '{dependent.name}' has {len(inputs)} inputs but the "
                f"invocation has {len(names)} variables"
            )
        scope = Variables()
        for inp, var in zip(inputs, names):
            mode = VariableMode.SOURCE if inp.mode == "source" else VariableMode.TARGET
            value = variables.get(mode, var)
            if value is None and mode == VariableMode.SOURCE:
                value = variables.get(VariableMode.TARGET, var)
            if value is None:
                raise BadMap(
                    f"Rule '{dependent.name}' {mode.value} variable '{inp.name}' named "
                    f"as '{var}' has no value (vars = {variables.summary()})"
                )
            scope.add(mode, inp.name, value)
        self._execute_group(rg.structure_map, scope, rg.group)

    # --------------------------------------------------------------------------
    # sources
    # --------------------------------------------------------------------------

    def _process_sources(
        self, rule_id: str, variables: Variables, sources: List[Any], map_url: Optional[str]
    ) -> List[Variables]:
        results = [variables]
        for src in sources:
            nxt: List[Variables] = []
            # items a "share" source already bound for an earlier combination
            seen: List[Any] = []
            for scope in results:
                nxt.extend(self._process_source(rule_id, scope, src, map_url, seen))
            results = nxt
        return results

    def _source_items(self, variables: Variables, src: Any, rule_id: str, map_url) -> List[Any]:
        base = variables.get(VariableMode.SOURCE, src.context)
        if base is None:
            base = variables.get(VariableMode.TARGET, src.context)
        if base is None:
            raise BadMap(
                f"Unknown input variable {src.context} in {map_url} rule {rule_id} "
                f"(vars = {variables.summary()})"
            )
        if not src.element:
            return [base]
        items = self._children(base, src.element)
        if not items:
            suffix, default = choice_value(src, "defaultValue")
            if suffix is not None:
                items = [default]
        return items

    @staticmethod
    def _children(base: Any, name: str) -> List[Any]:
        if not isinstance(base, Element):
            return []
        items = base.get_children_by_name(name)
        if not items and name == "value" and base.is_primitive() and base.value is not None:
            return [base]
        return items

    def _scope(self, variables: Variables, src: Any, item: Any) -> Variables:
        scope = variables.copy()
        if src.variable:
            scope.add(VariableMode.SOURCE, src.variable, item)
        return scope

    def _process_source(
        self,
        rule_id: str,
        variables: Variables,
        src: Any,
        map_url: Optional[str],
        seen: Optional[List[Any]] = None,
    ) -> List[Variables]:
        items = self._source_items(variables, src, rule_id, map_url)

        if src.type:
            items = [i for i in items if self._is_type(i, src.type)]
        if src.condition:
            kept = []
            for item in items:
                ok = evaluate_boolean(src.condition, item, self._scope(variables, src, item))
                logger.debug("  condition [%s] for %s : %s", src.condition, item, ok)
                if ok:
                    kept.append(item)
            items = kept
        if src.check:
            for item in items:
                if not evaluate_boolean(src.check, item, self._scope(variables, src, item)):
                    raise BadMap(f'Rule "{rule_id}": Check condition failed')
        if src.logMessage:
            for item in items:
                logger.info(
                    "%s", evaluate_string(src.logMessage, item, self._scope(variables, src, item))
                )
        items = self._apply_list_mode(rule_id, src.listMode, items)
        if seen is not None and _is_share(src.listMode):
            items = [i for i in items if not any(i is s for s in seen)]
            seen.extend(items)
        return [self._scope(variables, src, item) for item in items]

    @staticmethod
    def _apply_list_mode(rule_id: str, mode: Optional[str], items: List[Any]) -> List[Any]:
        if not mode or not items:
            return items
        mode = mode.replace("-", "_")
        if mode == "first":
            return items[:1]
        if mode == "not_first":
            return items[1:]
        if mode == "last":
            return items[-1:]
        if mode == "not_last":
            return items[:-1]
        if mode == "only_one":
            if len(items) > 1:
                raise BadMap(
                    f'Rule "{rule_id}": Check condition failed: the collection has '
                    f"more than one item"
                )
            return items
        if mode == "share":
            unique: List[Any] = []
            for item in items:
                if not any(item is u for u in unique):
                    unique.append(item)
            return unique
        raise BadMap(f'Rule "{rule_id}": unknown source list mode {mode!r}')

    @staticmethod
    def _is_type(item: Any, type_name: str) -> bool:
        actual = _item_type(item)
        return actual == type_name or actual == type_name.rsplit("/", 1)[-1]

    # --------------------------------------------------------------------------
    # targets
    # --------------------------------------------------------------------------

    def _process_target(
        self,
        rule_id: str,
        variables: Variables,
        sm: StructureMap,
        group: Any,
        tgt: Any,
        source_var: Optional[str],
        shared: Variables,
    ) -> None:
        dest: Optional[Element] = None
        if tgt.context:
            dest = variables.get(VariableMode.TARGET, tgt.context)
            if dest is None:
                raise BadMap(f'Rule "{rule_id}": target context not known: {tgt.context}')
            if not isinstance(dest, Element):
                raise BadMap(f'Rule "{rule_id}": target context {tgt.context} is not an element')
            if not tgt.element:
                raise BadMap(f'Rule "{rule_id}": target has a context but no element')

        value: Any = None
        if tgt.transform:
            handler = get_handler(str(tgt.transform))
            if handler is None:
                raise BadMap(f'Rule "{rule_id}": Transform Unknown: {tgt.transform}')
            call = TransformCall(
                rule_id=rule_id,
                target=tgt,
                variables=variables,
                interpreter=self,
                structure_map=sm,
                group=group,
                dest=dest,
                source_var=source_var,
            )
            value = handler.apply(call)
            if value is not None and dest is not None:
                value = dest.set_property(tgt.element, value)
        elif dest is not None:
            list_modes = tgt.listMode or []
            if "share" in list_modes and tgt.listRuleId:
                value = shared.get(VariableMode.SHARED, tgt.listRuleId)
                if value is None:
                    value = dest.make_property(tgt.element)
                    shared.add(VariableMode.SHARED, tgt.listRuleId, value)
            else:
                value = dest.make_property(tgt.element)

        if tgt.variable and value is not None:
            variables.add(VariableMode.TARGET, tgt.variable, value)

    # --------------------------------------------------------------------------
    # group resolution
    # --------------------------------------------------------------------------

    def _imported_maps(self, sm: StructureMap) -> List[StructureMap]:
        maps: List[StructureMap] = []
        for imp in sm.import_fhir or []:
            found = self.resolver.find_matching_maps(str(imp))
            if not found:
                raise BadMap(f"Unable to find map(s) for {imp}")
            maps.extend(m for m in found if m.url != sm.url)
        return maps

    def resolve_group_reference(self, sm: StructureMap, name: str) -> ResolvedGroup:
        """
        Find the group called ``name`` in ``sm``, else in its imports.

        Raises
        ------
        BadMap
            If no group or more than one group matches.
        """
        key = (str(sm.url), name)
        cached = self._group_refs.get(key)
        if cached is not None:
            return cached
        found: Optional[ResolvedGroup] = None
        for g in sm.group or []:
            if g.name == name:
                if found is not None:
                    raise BadMap(f"Multiple possible matches for rule '{name}'")
                found = ResolvedGroup(sm, g)
        if found is None:
            for imported in self._imported_maps(sm):
                for g in imported.group or []:
                    if g.name != name:
                        continue
                    if found is not None:
                        raise BadMap(
                            f"Multiple possible matches for rule group '{name}' in "
                            f"{found.structure_map.url}#{found.group.name} and "
                            f"{imported.url}#{g.name}"
                        )
                    found = ResolvedGroup(imported, g)
        if found is None:
            raise BadMap(f"No matches found for rule '{name}'. Reference found in {sm.url}")
        self._group_refs[key] = found
        return found

    def structure_url(self, sm: StructureMap, type_name: str) -> str:
        """Resolve a structure alias of ``sm`` to its URL."""
        for s in sm.structure or []:
            if s.alias and s.alias == type_name:
                return str(s.url)
        return type_name

    def _matches_type(self, sm: StructureMap, actual: str, stated: Optional[str]) -> bool:
        if not stated:
            return False
        if is_absolute_url(stated):
            return stated.rsplit("/", 1)[-1] == actual
        for s in sm.structure or []:
            if s.alias == stated and s.url:
                sd = self.resolver.fetch_structure(str(s.url))
                if sd is not None and str(sd.type).rsplit("/", 1)[-1] == actual:
                    return True
                return str(s.url).rsplit("/", 1)[-1] == actual
        return stated == actual

    def _matches_by_type(self, sm: StructureMap, group: Any, source_type: str) -> bool:
        if group.typeMode not in TYPE_MODES:
            return False
        inputs = group.input or []
        if len(inputs) != 2 or inputs[0].mode != "source":
            return False
        return self._matches_type(sm, source_type, inputs[0].type)

    def _matches_by_types(self, sm: StructureMap, group: Any, source_type: str, target_type: str) -> bool:
        if not self._matches_by_type(sm, group, source_type):
            return False
        inputs = group.input
        return inputs[1].mode == "target" and self._matches_type(sm, target_type, inputs[1].type)

    def _search(self, sm: StructureMap, accept, what: str) -> Optional[ResolvedGroup]:
        found: Optional[ResolvedGroup] = None
        for candidate in [sm] + self._imported_maps(sm):
            for g in candidate.group or []:
                if accept(candidate, g):
                    if found is not None and found.structure_map is candidate:
                        raise BadMap(f"Multiple possible matches looking for {what}")
                    if found is None:
                        found = ResolvedGroup(candidate, g)
            if found is not None:
                return found
        return None

    def resolve_group_by_types(
        self, sm: StructureMap, rule_id: str, source_type: str, target_type: str
    ) -> ResolvedGroup:
        """
        Find the group registered for a ``(source type, target type)`` pair.

        Raises
        ------
        BadMap
            If none (or, within one map, more than one) is found.
        """
        key = (str(sm.url), source_type, target_type)
        cached = self._type_groups.get(key)
        if cached is not None:
            return cached
        found = self._search(
            sm,
            lambda m, g: self._matches_by_types(m, g, source_type, target_type),
            f"rule for '{source_type}' to '{target_type}'",
        )
        if found is None:
            raise BadMap(
                f'Rule "{rule_id}": No matches found for default rule for '
                f"'{source_type}' to '{target_type}' from {sm.url}"
            )
        self._type_groups[key] = found
        return found

    def type_from_source(self, sm: StructureMap, source: Any) -> str:
        """
        Infer the type to create from the group registered for the source type.

        Raises
        ------
        BadMap
            If no group takes the source type.
        """
        source_type = _item_type(source)
        found = self._search(
            sm,
            lambda m, g: self._matches_by_type(m, g, source_type),
            f"default rule for '{source_type}'",
        )
        if found is None:
            raise BadMap(f"No matches found for default rule for '{source_type}' from {sm.url}")
        return self.structure_url(found.structure_map, found.group.input[1].type)

