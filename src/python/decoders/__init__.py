"""Graphic decoders — each turns archive members into ComponentGraphics."""

import logging

from models import Archive, ComponentGraphic, GraphicRole
from decoders.legacy import decode_payload
from decoders.event_stream import reconstruct_logs

logger = logging.getLogger(__name__)


def decode_archive(archive: Archive) -> tuple[dict[str, ComponentGraphic], list[str]]:
    """Decode every symbol and footprint graphic of an archive.

    Legacy payloads are decoded first; event logs then fill in any UUID the
    payloads did not provide (older ``.elibz`` bundles sometimes ship only
    ``.elibu`` members).

    Returns (graphics keyed by UUID, archive-level warnings).

    Raises:
        MalformedRecord: an SVGNODE record does not carry valid JSON.
    """
    graphics: dict[str, ComponentGraphic] = {}
    for uuid, text in sorted(archive.footprint_payloads.items()):
        graphics[uuid] = decode_payload(text, GraphicRole.FOOTPRINT, uuid)
    for uuid, text in sorted(archive.symbol_payloads.items()):
        graphics[uuid] = decode_payload(text, GraphicRole.SYMBOL, uuid)

    warnings: list[str] = []
    if archive.event_logs:
        replayed, warnings = reconstruct_logs(archive.event_logs)
        for uuid, graphic in replayed.items():
            graphics.setdefault(uuid, graphic)

    logger.debug("Decoded %d graphics from %s", len(graphics), archive.path)
    return graphics, warnings


def find_graphic(graphics: dict[str, ComponentGraphic], uuid: str,
                 role: GraphicRole) -> ComponentGraphic | None:
    """Look a graphic up by UUID, tolerating ``uuid|library`` references."""
    short = uuid.split('|')[0].strip()
    for key in (uuid, short):
        graphic = graphics.get(key)
        if graphic is not None and graphic.role is role:
            return graphic
    for key, graphic in graphics.items():
        if key.split('|')[0] == short and graphic.role is role:
            return graphic
    return None
