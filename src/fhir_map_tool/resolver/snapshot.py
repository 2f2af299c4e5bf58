# src/fhir_map_tool/resolver/snapshot.py
"""
Snapshot generation for differential-only StructureDefinitions.

The snapshot starts as a copy of the base definition's snapshot, re-rooted at
the derived type. Each differential element is then laid over its match:

- an element with the same id is overlaid field by field;
- an element below a datatype the base does not expand yet unfolds that
  datatype's children first;
- a new slice is inserted after the sliced element and its existing slices,
  and its children are copied from the unsliced element on demand;
- an element without any match (specializations adding new elements) is
  appended at the end of its parent's subtree.

The result keeps element ids unique and paths in tree order.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from fhir.resources.R4B.elementdefinition import ElementDefinition
from fhir.resources.R4B.structuredefinition import StructureDefinition

from ..exceptions import DefinitionError
from ..model.definitions import (
    FHIR_SD_BASE,
    differential_elements,
    is_absolute_url,
    snapshot_elements,
    with_snapshot,
)

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# id helpers
# ------------------------------------------------------------------------------


def _eid(ed: ElementDefinition) -> str:
    if ed.id:
        return ed.id
    if ed.sliceName:
        return f"{ed.path}:{ed.sliceName}"
    return ed.path


def _split_id(eid: str) -> List[str]:
    """Split an element id into segments; slice names never contain dots."""
    return eid.split(".")


def _parent_id(eid: str) -> Optional[str]:
    parts = _split_id(eid)
    if len(parts) < 2:
        return None
    return ".".join(parts[:-1])


def _strip_slices(eid: str) -> str:
    return ".".join(p.split(":", 1)[0] for p in _split_id(eid))


def _rebase(ed: ElementDefinition, old: str, new: str, old_id: str, new_id: str) -> ElementDefinition:
    path = ed.path
    if path == old or path.startswith(old + "."):
        path = new + path[len(old) :]
    eid = _eid(ed)
    if eid == old_id or eid.startswith(old_id + ".") or eid.startswith(old_id + ":"):
        eid = new_id + eid[len(old_id) :]
    return ed.model_copy(update={"path": path, "id": eid}, deep=True)


def _find(snapshot: List[ElementDefinition], eid: str) -> Optional[int]:
    for i, ed in enumerate(snapshot):
        if _eid(ed) == eid:
            return i
    return None


def _subtree_end(snapshot: List[ElementDefinition], idx: int) -> int:
    """Index just past the subtree (and slices) of ``snapshot[idx]``."""
    eid = _eid(snapshot[idx])
    i = idx + 1
    while i < len(snapshot):
        other = _eid(snapshot[i])
        if other.startswith(eid + ".") or other.startswith(eid + ":"):
            i += 1
            continue
        break
    return i


def _has_children(snapshot: List[ElementDefinition], idx: int) -> bool:
    eid = _eid(snapshot[idx])
    return idx + 1 < len(snapshot) and _eid(snapshot[idx + 1]).startswith(eid + ".")


# ------------------------------------------------------------------------------
# overlay
# ------------------------------------------------------------------------------


def _merge_extensions(base: List[Any], diff: List[Any]) -> List[Any]:
    out = list(base)
    for ext in diff:
        for i, existing in enumerate(out):
            if existing.url == ext.url:
                out[i] = ext
                break
        else:
            out.append(ext)
    return out


def _overlay(base: ElementDefinition, diff: ElementDefinition) -> ElementDefinition:
    updates = {}
    for name in diff.model_fields_set:
        if name in ("id", "path"):
            continue
        value = getattr(diff, name, None)
        if value is None:
            continue
        if name == "extension":
            value = _merge_extensions(base.extension or [], value)
        updates[name] = value
    return base.model_copy(update=updates, deep=True)


# ------------------------------------------------------------------------------
# unfolding
# ------------------------------------------------------------------------------


def _type_definition(resolver: Any, ed: ElementDefinition, owner_url: str) -> Optional[StructureDefinition]:
    types = ed.type or []
    codes = {t.code for t in types}
    if len(codes) != 1:
        return None
    t = types[0]
    for profile in t.profile or []:
        sd = resolver.fetch_structure(str(profile))
        if sd is not None:
            return sd
    code = t.code
    if is_absolute_url(code):
        return resolver.fetch_structure(code)
    if "/" in owner_url and not owner_url.startswith(FHIR_SD_BASE):
        sd = resolver.fetch_structure(owner_url.rsplit("/", 1)[0] + "/" + code)
        if sd is not None:
            return sd
    return resolver.fetch_structure(FHIR_SD_BASE + code) or resolver.fetch_type_definition(code)


def _unfold(snapshot: List[ElementDefinition], idx: int, resolver: Any, owner_url: str) -> bool:
    """Insert the children of ``snapshot[idx]`` taken from its datatype or unsliced twin."""
    parent = snapshot[idx]
    pid = _eid(parent)
    last = _split_id(pid)[-1]
    if ":" in last:
        twin_id = _strip_slices(pid)
        tidx = _find(snapshot, twin_id)
        if tidx is None:
            return False
        if not _has_children(snapshot, tidx) and not _unfold(snapshot, tidx, resolver, owner_url):
            return False
        tidx = _find(snapshot, twin_id)
        idx = _find(snapshot, pid)
        end = _subtree_end(snapshot, tidx)
        copies = [
            _rebase(ed, parent.path, parent.path, twin_id, pid)
            for ed in snapshot[tidx + 1 : end]
            if _eid(ed).startswith(twin_id + ".") and ":" not in _eid(ed)[len(twin_id) :]
        ]
        snapshot[idx + 1 : idx + 1] = copies
        return bool(copies)

    type_sd = _type_definition(resolver, parent, owner_url)
    if type_sd is None:
        return False
    type_elements = snapshot_elements(type_sd)
    if len(type_elements) < 2:
        return False
    root = type_elements[0]
    copies = [
        _rebase(ed, root.path, parent.path, _eid(root), pid) for ed in type_elements[1:]
    ]
    snapshot[idx + 1 : idx + 1] = copies
    return True


def _ensure(snapshot: List[ElementDefinition], eid: str, resolver: Any, owner_url: str) -> Optional[int]:
    """Return the index of ``eid``, unfolding ancestors as needed."""
    idx = _find(snapshot, eid)
    if idx is not None:
        return idx
    parent = _parent_id(eid)
    if parent is None:
        return None
    pidx = _ensure(snapshot, parent, resolver, owner_url)
    if pidx is None:
        return None
    if not _has_children(snapshot, pidx):
        _unfold(snapshot, pidx, resolver, owner_url)
    return _find(snapshot, eid)


# ------------------------------------------------------------------------------
# main entry point
# ------------------------------------------------------------------------------


def _apply(snapshot: List[ElementDefinition], diff: ElementDefinition, resolver: Any, owner_url: str) -> None:
    did = _eid(diff)
    idx = _ensure(snapshot, did, resolver, owner_url)
    if idx is not None:
        snapshot[idx] = _overlay(snapshot[idx], diff)
        return

    last = _split_id(did)[-1]
    if diff.sliceName and ":" in last:
        sliced = did.rsplit(":", 1)[0]
        sidx = _ensure(snapshot, sliced, resolver, owner_url)
        if sidx is None:
            raise DefinitionError(f"Slice {did} has no sliced element {sliced}")
        template = snapshot[sidx].model_copy(update={"id": did, "sliceName": diff.sliceName}, deep=True)
        snapshot.insert(_subtree_end(snapshot, sidx), _overlay(template, diff))
        return

    parent = _parent_id(did)
    if parent is None:
        raise DefinitionError(f"Differential root {did} does not match the base")
    pidx = _ensure(snapshot, parent, resolver, owner_url)
    if pidx is None:
        raise DefinitionError(f"Element {did} has no parent {parent} in the snapshot")
    twin = _find(snapshot, _strip_slices(did))
    if twin is not None:
        new = _overlay(snapshot[twin].model_copy(update={"id": did}, deep=True), diff)
    else:
        new = diff.model_copy(update={"id": did}, deep=True)
    snapshot.insert(_subtree_end(snapshot, pidx), new)


def _check(snapshot: List[ElementDefinition], url: str) -> None:
    seen = set()
    paths = set()
    for i, ed in enumerate(snapshot):
        eid = _eid(ed)
        if eid in seen:
            raise DefinitionError(f"Duplicate element id {eid} in snapshot of {url}")
        seen.add(eid)
        if i > 0:
            parent = ed.path.rsplit(".", 1)[0]
            if parent not in paths:
                raise DefinitionError(
                    f"Element {eid} appears before its parent {parent} in {url}"
                )
        paths.add(ed.path)


def generate_snapshot(sd: StructureDefinition, resolver: Any) -> StructureDefinition:
    """
    Build the snapshot of ``sd`` from its base and its differential.

    Parameters
    ----------
    sd : StructureDefinition
        Definition with an empty snapshot.
    resolver : DefinitionResolver
        Used to fetch the base definition and datatypes.

    Returns
    -------
    StructureDefinition
        A new definition; ``sd`` itself is not modified.

    Raises
    ------
    DefinitionError
        If the base cannot be resolved or the differential does not fit it.
    """
    url = str(sd.url)
    diff = differential_elements(sd)
    base_url = getattr(sd, "baseDefinition", None)

    base_elements: List[ElementDefinition] = []
    if base_url:
        base = resolver.fetch_structure(str(base_url))
        if base is None:
            raise DefinitionError(f"Unable to resolve base definition {base_url} of {url}")
        base_elements = snapshot_elements(base)
        if not base_elements:
            raise DefinitionError(f"Base definition {base_url} of {url} has no snapshot")
    elif getattr(sd, "derivation", None) == "constraint":
        raise DefinitionError(f"Constraint {url} has no baseDefinition")

    if diff:
        root = diff[0].path.split(".", 1)[0]
    elif base_elements:
        root = base_elements[0].path
    else:
        raise DefinitionError(f"{url} has neither a base nor a differential")

    snapshot: List[ElementDefinition] = []
    if base_elements:
        base_root = base_elements[0]
        snapshot = [
            _rebase(ed, base_root.path, root, _eid(base_root), root) for ed in base_elements
        ]
    for ed in diff:
        if not snapshot:
            snapshot.append(ed.model_copy(update={"id": _eid(ed)}, deep=True))
            continue
        _apply(snapshot, ed, resolver, url)

    _check(snapshot, url)
    return with_snapshot(sd, snapshot)
