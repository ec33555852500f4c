"""Device descriptor parsing — turns ``device.json``/``device2.json`` into DeviceRecords.

Descriptor schemas vary between exporter versions, so every field is looked
up through an ordered list of candidate keys, first on the device object and
then on its ``attributes`` map.
"""

import json
import logging
import re
from typing import Optional

from errors import MalformedRecord
from models import DeviceRecord

logger = logging.getLogger(__name__)

COMPONENT_ID_RE = re.compile(r'\bC\d{3,}\b')
_HEX_UUID_RE = re.compile(r'^[0-9a-fA-F]{32}$')
_DASHED_UUID_RE = re.compile(
    r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'
)

_MAX_NAME_LENGTH = 100

# Identifier keys, in preference order
_ID_KEYS = ("product_code", "productCode", "code", "lcsc", "partNumber", "part_number")
_ID_ATTR_KEYS = ("product_code", "Product Code", "LCSC", "LCSC Part",
                 "LCSC Part #", "Part Number", "Code")
_NAME_KEYS = ("display_title", "title", "name", "product_name")
_PART_TITLE_KEYS = ("display_title", "displayTitle", "title", "name", "package_name")
_MANUFACTURER_KEYS = ("manufacturer", "Manufacturer", "brand", "Brand", "mfr",
                      "vendor", "supplier")
_MANUFACTURER_ATTR_KEYS = ("Manufacturer", "Brand", "Supplier", "Vendor")
_DESCRIPTION_KEYS = ("description", "Description", "comment", "Comment")
_DESCRIPTION_ATTR_KEYS = ("Description", "Comment", "Value")
_CATEGORY_KEYS = ("category", "Category", "classification")
_MODEL_TITLE_KEYS = ("3D Model Title", "Model Title")


def first_non_empty(value, keys) -> Optional[str]:
    """Return the first key of ``value`` holding a non-blank string."""
    if not isinstance(value, dict):
        return None
    for key in keys:
        v = value.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def looks_like_uuid(value: str) -> bool:
    """True for a 32-hex or dashed 36-char UUID, optionally followed by ``|...``."""
    first = value.strip().split('|')[0]
    return bool(_HEX_UUID_RE.match(first) or _DASHED_UUID_RE.match(first))


def split_uuid_first(value) -> Optional[str]:
    """``"uuid|library"`` -> ``"uuid"``; None for anything blank or non-string."""
    if not isinstance(value, str):
        return None
    first = value.split('|')[0].strip()
    return first or None


def normalize_component_token(value: str) -> Optional[str]:
    """Normalise a candidate identifier: ``c1234`` -> ``C1234``, UUIDs verbatim."""
    token = value.strip().strip('"\'').strip()
    if not token:
        return None
    upper = token.upper()
    if len(upper) > 1 and upper[0] == 'C' and upper[1:].isdigit():
        return upper
    if _HEX_UUID_RE.match(token) or _DASHED_UUID_RE.match(token):
        return token
    return None


def load_descriptor(text: str, source: str = "") -> dict:
    """Parse descriptor text into a dict.

    Raises:
        MalformedRecord: the descriptor is not a JSON object.
    """
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedRecord(f"Descriptor is not valid JSON: {e}",
                              context={"file": source}) from e
    if not isinstance(doc, dict):
        raise MalformedRecord("Descriptor is not a JSON object", context={"file": source})
    return doc


def preferred_identifier(device: dict) -> Optional[str]:
    """Pick the identifier a device is known by.

    Explicit C-code keys win, then any C-code anywhere in the device JSON,
    then a UUID-style ``id``/``uuid``.
    """
    attrs = device.get("attributes")
    if not isinstance(attrs, dict):
        attrs = device

    direct = first_non_empty(device, _ID_KEYS) or first_non_empty(attrs, _ID_ATTR_KEYS)
    if direct:
        token = normalize_component_token(direct)
        if token and token.startswith('C'):
            return token

    m = COMPONENT_ID_RE.search(json.dumps(device, ensure_ascii=False))
    if m:
        token = normalize_component_token(m.group(0))
        if token:
            return token

    fallback = first_non_empty(device, ("id", "uuid")) or first_non_empty(attrs, ("uuid",))
    return normalize_component_token(fallback) if fallback else None


def _symbol_uuids(value) -> tuple[str, ...]:
    if isinstance(value, str):
        candidates = [value]
    elif isinstance(value, list):
        candidates = value
    else:
        return ()
    uuids = []
    for candidate in candidates:
        uuid = split_uuid_first(candidate)
        if uuid and uuid not in uuids:
            uuids.append(uuid)
    return tuple(uuids)


def _part_title(device: dict, key: str) -> Optional[str]:
    part = device.get(key)
    title = first_non_empty(part, _PART_TITLE_KEYS)
    if title and not looks_like_uuid(title):
        return title
    return None


def _display_name(raw: Optional[str], identifier: str, package: Optional[str]) -> str:
    candidate = (raw or "").strip()
    if not candidate or looks_like_uuid(candidate) or len(candidate) > _MAX_NAME_LENGTH:
        if package and not looks_like_uuid(package):
            return package
        return identifier
    return candidate


def parse_device(device: dict) -> Optional[DeviceRecord]:
    """Build one DeviceRecord, or None if the device has no usable identifier."""
    identifier = preferred_identifier(device)
    if not identifier:
        return None

    attrs = device.get("attributes")
    if not isinstance(attrs, dict):
        attrs = device

    footprint_title = _part_title(device, "footprint")
    return DeviceRecord(
        identifier=identifier,
        name=_display_name(first_non_empty(device, _NAME_KEYS), identifier, footprint_title),
        footprint_uuid=split_uuid_first(attrs.get("Footprint")),
        symbol_uuids=_symbol_uuids(attrs.get("Symbol")),
        footprint_title=footprint_title,
        symbol_title=_part_title(device, "symbol"),
        manufacturer=(first_non_empty(device, _MANUFACTURER_KEYS)
                      or first_non_empty(attrs, _MANUFACTURER_ATTR_KEYS)),
        category=first_non_empty(device, _CATEGORY_KEYS) or first_non_empty(attrs, _CATEGORY_KEYS),
        description=(first_non_empty(device, _DESCRIPTION_KEYS)
                     or first_non_empty(attrs, _DESCRIPTION_ATTR_KEYS)),
        model_title=first_non_empty(attrs, _MODEL_TITLE_KEYS),
    )


def parse_devices(doc: dict) -> tuple[list[DeviceRecord], list[str]]:
    """Return the descriptor's devices in key order, plus warnings for skipped ones."""
    devices = doc.get("devices")
    if isinstance(devices, list):
        entries = [(str(i), d) for i, d in enumerate(devices)]
    elif isinstance(devices, dict):
        entries = sorted(devices.items())
    else:
        entries = []

    records: list[DeviceRecord] = []
    warnings: list[str] = []
    seen = set()
    for key, device in entries:
        if not isinstance(device, dict):
            warnings.append(f"Device entry {key} is not an object, skipped")
            continue
        record = parse_device(device)
        if record is None:
            warnings.append(f"Device entry {key} has no identifier, skipped")
            continue
        if record.identifier in seen:
            warnings.append(f"Device {record.identifier} listed twice, keeping the first")
            continue
        seen.add(record.identifier)
        records.append(record)

    for w in warnings:
        logger.warning(w)
    return records, warnings


def symbol_prefixes(doc: dict) -> dict[str, str]:
    """UUID -> reference prefix from the descriptor's ``symbols`` map."""
    prefixes = {}
    symbols = doc.get("symbols")
    if not isinstance(symbols, dict):
        return prefixes
    for uuid, symbol in symbols.items():
        if not isinstance(symbol, dict):
            continue
        head = symbol.get("head")
        c_para = head.get("c_para") if isinstance(head, dict) else None
        pre = c_para.get("pre") if isinstance(c_para, dict) else None
        if isinstance(pre, str) and pre.strip():
            prefixes[uuid] = pre.strip()
    return prefixes
