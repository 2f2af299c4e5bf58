# src/fhir_map_tool/transform/bundle.py
"""
Post-processing of document bundles produced by a transform.
"""

from __future__ import annotations

from ..model.element import Element

UUID_PREFIX = "urn:uuid:"


def is_document_bundle(element: Element) -> bool:
    return element.fhir_type == "Bundle" and element.get_named_child_value("type") == "document"


def remove_bundle_entry_ids(bundle: Element) -> None:
    """
    Strip ``id`` from a document bundle and from its ``urn:uuid:`` entries.

    In a document bundle an entry resource is identified by its ``fullUrl``;
    the bundle's own ``id`` is dropped too. Entries with any other kind of
    ``fullUrl`` keep their ids. Calling it twice changes nothing.

    Parameters
    ----------
    bundle : Element
        A Bundle element. Bundles of other types are left alone.
    """
    if not is_document_bundle(bundle):
        return
    bundle.remove_child("id")
    for entry in bundle.get_children_by_name("entry"):
        full_url = entry.get_named_child_value("fullUrl")
        if not full_url or not full_url.startswith(UUID_PREFIX):
            continue
        for resource in entry.get_children_by_name("resource"):
            resource.remove_child("id")
