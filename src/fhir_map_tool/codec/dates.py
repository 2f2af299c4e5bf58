# src/fhir_map_tool/codec/dates.py
"""
HL7 v3 timestamp conversion.

CDA attributes tagged with the ``elementdefinition-dateformat`` extension
(value ``v3``) carry timestamps like ``20231130143000.000+0100``. The element
tree stores them as FHIR dateTime strings (``2023-11-30T14:30:00.000+01:00``);
the XML codec converts on the way in and out.
"""

from __future__ import annotations

import logging
import re

from ..exceptions import DefinitionError

logger = logging.getLogger(__name__)

_V3 = re.compile(
    r"^(?P<year>\d{4})(?P<month>\d{2})?(?P<day>\d{2})?"
    r"(?P<hour>\d{2})?(?P<minute>\d{2})?(?P<second>\d{2})?"
    r"(?P<fraction>\.\d+)?(?P<tz>[+-]\d{4}|Z)?$"
)
_FHIR = re.compile(
    r"^(?P<year>\d{4})(?:-(?P<month>\d{2})(?:-(?P<day>\d{2})"
    r"(?:T(?P<hour>\d{2}):(?P<minute>\d{2})(?::(?P<second>\d{2})(?P<fraction>\.\d+)?)?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?)?)?)?$"
)


def v3_to_fhir(value: str) -> str:
    """
    Convert a v3 timestamp to FHIR dateTime form.

    Values that do not look like a v3 timestamp are returned unchanged.
    A timestamp with hours but no minutes is read as minute precision.
    """
    m = _V3.match(value.strip())
    if not m:
        return value
    g = m.groupdict()
    out = g["year"]
    if g["month"]:
        out += "-" + g["month"]
    if g["day"]:
        out += "-" + g["day"]
    if g["hour"]:
        out += f"T{g['hour']}:{g['minute'] or '00'}"
        if g["second"]:
            out += ":" + g["second"] + (g["fraction"] or "")
        tz = g["tz"]
        if tz == "Z":
            out += "Z"
        elif tz:
            out += f"{tz[:3]}:{tz[3:]}"
    return out


def fhir_to_v3(value: str) -> str:
    """Convert a FHIR date or dateTime to a v3 timestamp; unknown input is returned as is."""
    m = _FHIR.match(value.strip())
    if not m:
        logger.warning("Cannot convert %r to a v3 timestamp", value)
        return value
    g = m.groupdict()
    out = g["year"] + (g["month"] or "") + (g["day"] or "")
    if g["hour"]:
        out += g["hour"] + g["minute"] + (g["second"] or "") + (g["fraction"] or "")
        tz = g["tz"]
        if tz == "Z":
            out += "+0000"
        elif tz:
            out += tz.replace(":", "")
    return out


def from_external(fmt: str, value: str) -> str:
    """Convert an attribute value read from XML in date format ``fmt``."""
    if fmt == "v3":
        return v3_to_fhir(value)
    raise DefinitionError(f"Unknown date format {fmt!r}")


def to_external(fmt: str, value: str) -> str:
    """Convert a stored value to date format ``fmt`` for writing to XML."""
    if fmt == "v3":
        return fhir_to_v3(value)
    raise DefinitionError(f"Unknown date format {fmt!r}")
