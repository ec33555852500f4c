"""Plain-text descriptor scan — component identifiers from json/txt/csv/... files."""

import json
import logging
import os

from descriptor import COMPONENT_ID_RE, normalize_component_token

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = (".txt", ".csv", ".tsv", ".list", ".eda", ".lcsc")
DESCRIPTOR_EXTENSIONS = (".json",) + TEXT_EXTENSIONS

# JSON keys whose string value is taken as an identifier candidate
_ID_KEYS = {
    "component_id", "lcsc", "product_code", "productcode", "code",
    "partnumber", "part_number", "id", "uuid", "component_uuid",
}


def ids_from_text(content: str) -> set[str]:
    ids = set()
    for m in COMPONENT_ID_RE.finditer(content):
        token = normalize_component_token(m.group(0))
        if token:
            ids.add(token)
    return ids


def ids_from_json(value) -> set[str]:
    """Walk a JSON value collecting C-codes anywhere and UUIDs under id-like keys."""
    ids = set()
    if isinstance(value, str):
        token = normalize_component_token(value)
        if token:
            ids.add(token)
        ids |= ids_from_text(value)
    elif isinstance(value, list):
        for item in value:
            ids |= ids_from_json(item)
    elif isinstance(value, dict):
        for key, item in value.items():
            if key.lower() in _ID_KEYS and isinstance(item, str):
                token = normalize_component_token(item)
                if token:
                    ids.add(token)
            ids |= ids_from_json(item)
    return ids


def scan_file(path: str) -> set[str]:
    """Identifiers found in one descriptor file. Unreadable files yield nothing."""
    ext = os.path.splitext(path)[1].lower()
    if ext not in DESCRIPTOR_EXTENSIONS:
        return set()
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            content = f.read()
    except OSError as e:
        logger.warning("Cannot read %s: %s", path, e)
        return set()

    if ext == ".json":
        ids = ids_from_text(content)
        try:
            ids |= ids_from_json(json.loads(content))
        except json.JSONDecodeError:
            logger.debug("%s is not valid JSON, scanned as text", path)
        return ids

    ids = ids_from_text(content)
    if not ids:
        stem = os.path.splitext(os.path.basename(path))[0]
        token = normalize_component_token(stem)
        if token:
            ids.add(token)
    return ids


def prefer_component_codes(ids: set[str]) -> set[str]:
    """Keep only C-codes when any are present; UUIDs are a fallback."""
    codes = {i for i in ids if i.upper().startswith('C') and i[1:].isdigit()}
    return codes if codes else set(ids)


def collect_identifiers(paths) -> set[str]:
    ids = set()
    for path in paths:
        ids |= scan_file(path)
    return prefer_component_codes(ids)
