# src/fhir_map_tool/transform/cancellation.py
"""
Cooperative cancellation for running transforms.
"""

from __future__ import annotations

import threading

from ..exceptions import TransformCancelled


class CancellationToken:
    """
    A flag another thread can set to stop a transform.

    The interpreter polls it at every rule boundary and between the
    iterations of a rule, so a cancelled transform stops with
    TransformCancelled and no output.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransformCancelled("Transform was cancelled")
