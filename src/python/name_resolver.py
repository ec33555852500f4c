"""Name resolver — maps opaque footprint/symbol UUIDs to human-readable titles."""

import json
import logging
from typing import Optional

from models import DeviceRecord, ResolvedNames

logger = logging.getLogger(__name__)

TITLE_KEYS = ("title", "display_title", "displayTitle", "name")


def _title_of(entry) -> Optional[str]:
    if not isinstance(entry, dict):
        return None
    for key in TITLE_KEYS:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _collect(table: dict[str, str], section) -> None:
    if not isinstance(section, dict):
        return
    for uuid, entry in section.items():
        title = _title_of(entry)
        if title:
            table.setdefault(uuid, title)


def build_title_table(descriptor: dict, footprint_manifest: Optional[str] = None) -> dict[str, str]:
    """Collect UUID -> title from the descriptor and the optional footprint manifest.

    Descriptor entries win over manifest entries for the same UUID. An
    unparseable manifest is ignored.
    """
    table: dict[str, str] = {}
    _collect(table, descriptor.get("footprints"))
    _collect(table, descriptor.get("symbols"))
    if footprint_manifest:
        try:
            manifest = json.loads(footprint_manifest)
        except json.JSONDecodeError:
            logger.debug("Ignoring unparseable footprint manifest")
        else:
            _collect(table, manifest)
    return table


def resolve_title(uuid: str, explicit_title: Optional[str], table: dict[str, str]) -> str:
    """Best available title for ``uuid``. Never fails, never returns empty for a non-empty UUID."""
    if explicit_title and explicit_title.strip():
        return explicit_title.strip()
    if uuid in table:
        return table[uuid]
    first = uuid.split('|')[0].strip()
    if first in table:
        return table[first]
    for key, title in table.items():
        if key.split('|')[0].strip() == first:
            return title
    return uuid


def resolve_names(device: DeviceRecord, table: dict[str, str]) -> ResolvedNames:
    titles = {}
    if device.footprint_uuid:
        titles[device.footprint_uuid] = resolve_title(
            device.footprint_uuid, device.footprint_title, table)
    for index, uuid in enumerate(device.symbol_uuids):
        explicit = device.symbol_title if index == 0 else None
        titles[uuid] = resolve_title(uuid, explicit, table)
    return ResolvedNames(titles=titles)
