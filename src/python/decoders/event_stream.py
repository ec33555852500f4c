"""Event-stream reconstructor for ``.elibu`` logs (``.elibz2`` archives).

A log is an append-only sequence of records, one per line::

    {"type": "PIN", "id": "e12"}||{"x": 10, "y": -20, "rotation": 180}|

The header names the opcode; the payload is the opcode's field table. Line
framing makes every record self-describing, so an opcode this module does
not know is skipped by consuming exactly its own line and the rest of the
stream stays in sync.

``DOCHEAD`` opens a unit context (a symbol or a footprint document);
``ATTR`` annotates an earlier pin of the current unit. The six primitive
opcodes map onto primitives; any other opcode becomes an ``Unknown``
placeholder. Fields omitted by an event inherit the last value set in the
current unit (see ``INHERITED_FIELDS``).
"""

import json
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from errors import MalformedEvent
from models import (
    ComponentGraphic, Ellipse, Fill, GraphicRole, Pad, Pin, Polygon,
    PrimitiveEvent, Rect, Unknown,
)

logger = logging.getLogger(__name__)

RECORD_DELIMITER = "||"

INHERITED_FIELDS = ("layerId", "width")


class Opcode(Enum):
    DOCHEAD = "DOCHEAD"
    ATTR = "ATTR"
    PIN = "PIN"
    RECT = "RECT"
    ELLIPSE = "ELLIPSE"
    POLY = "POLY"
    PAD = "PAD"
    FILL = "FILL"


class ReducerState(Enum):
    START = "start"
    READING = "reading"
    DONE = "done"


_DOC_ROLES = {
    "SYMBOL": GraphicRole.SYMBOL,
    "FOOTPRINT": GraphicRole.FOOTPRINT,
}

_PIN_TYPES = {
    "input": "input",
    "output": "output",
    "bidirectional": "bidirectional",
    "power": "power_in",
    "power_in": "power_in",
}


def _finite(value: Any) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"non-finite number {value!r}")
    return number


def _number(payload: dict, key: str, default: Optional[float]) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"field {key!r} is not numeric: {value!r}")
    return _finite(value)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _path_numbers(path: Any) -> list[float]:
    """Numbers of a path array, flattening nested segments, skipping commands."""
    out: list[float] = []
    if not isinstance(path, list):
        return out
    for item in path:
        if isinstance(item, list):
            out.extend(_path_numbers(item))
        elif isinstance(item, (int, float)) and not isinstance(item, bool):
            out.append(_finite(item))
        elif isinstance(item, str):
            try:
                number = float(item)
            except ValueError:
                continue
            out.append(_finite(number))
    return out


def _path_points(path: Any, minimum: int) -> tuple[tuple[float, float], ...]:
    numbers = _path_numbers(path)
    points = tuple(zip(numbers[0::2], numbers[1::2]))
    if len(points) < minimum:
        raise ValueError(f"path needs {minimum} points, got {len(points)}")
    return points


@dataclass
class _PinDraft:
    x: float
    y: float
    rotation: float
    length: Optional[float]
    number: str = ""
    name: str = ""
    electrical: str = "unspecified"

    def freeze(self) -> Pin:
        return Pin(
            number=self.number or "0",
            name=self.name,
            x=self.x,
            y=self.y,
            rotation=self.rotation,
            electrical=self.electrical,
            length=self.length,
        )


class _UnitContext:
    """Mutable state of the unit currently being read."""

    def __init__(self, role: Optional[GraphicRole], uuid: str):
        self.role = role
        self.uuid = uuid
        self.items: list = []
        self.pins: dict[str, _PinDraft] = {}
        self.last: dict[str, Any] = {}
        self.warnings: list[str] = []

    def field(self, payload: dict, key: str) -> Any:
        """Read ``key`` from the payload, falling back to the unit's last value."""
        if key in payload and payload[key] is not None:
            if key in INHERITED_FIELDS:
                self.last[key] = payload[key]
            return payload[key]
        return self.last.get(key)

    def freeze(self) -> Optional[ComponentGraphic]:
        if self.role is None or not self.uuid:
            return None
        primitives = tuple(
            item.freeze() if isinstance(item, _PinDraft) else item
            for item in self.items
        )
        return ComponentGraphic(
            role=self.role,
            uuid=self.uuid,
            primitives=primitives,
            warnings=tuple(self.warnings),
        )


class EventStreamReducer:
    """Streaming reducer: feed lines in order, then ``finish()``."""

    def __init__(self, source: str = "<log>"):
        self.source = source
        self.state = ReducerState.START
        self.graphics: dict[str, ComponentGraphic] = {}
        self.warnings: list[str] = []
        self._ctx: Optional[_UnitContext] = None

    # ── public API ──────────────────────────────────────────────────────────

    def feed(self, text: str) -> None:
        for lineno, line in enumerate(text.splitlines(), start=1):
            self.feed_line(line, lineno)

    def feed_line(self, line: str, lineno: int = 0) -> None:
        if self.state is ReducerState.DONE:
            raise RuntimeError("event stream already finished")
        line = line.strip()
        if not line:
            return
        if RECORD_DELIMITER not in line:
            self._warn(f"line {lineno}: unframed record skipped")
            return

        left, right = line.split(RECORD_DELIMITER, 1)
        left = left.strip().rstrip('|')
        right = right.strip().rstrip('|')

        try:
            header = json.loads(left)
            if not isinstance(header, dict) or not isinstance(header.get("type"), str):
                raise ValueError("header has no opcode")
        except ValueError as e:
            self._malformed(lineno, "", line, f"bad header: {e}")
            return
        tag = header["type"]

        try:
            payload = json.loads(right) if right else None
        except ValueError as e:
            payload_error = f"bad payload: {e}"
            payload = None
        else:
            payload_error = None

        if tag == Opcode.DOCHEAD.value:
            self._open_unit(payload, lineno)
            return

        if self.state is ReducerState.START:
            self._warn(f"line {lineno}: {tag} event before any DOCHEAD dropped")
            return

        try:
            opcode = Opcode(tag)
        except ValueError:
            logger.debug("%s line %d: unrecognized opcode %s", self.source, lineno, tag)
            self._ctx.items.append(Unknown(tag=tag, payload=right))
            return

        if payload_error or not isinstance(payload, dict):
            self._malformed(lineno, tag, right, payload_error or "payload is not an object")
            return

        if opcode is Opcode.ATTR:
            self._apply_attr(payload)
            return

        try:
            self._apply_primitive(opcode, header, payload)
        except (ValueError, TypeError) as e:
            self._malformed(lineno, tag, right, str(e))

    def finish(self) -> dict[str, ComponentGraphic]:
        """Close the open unit (if any) and return graphics keyed by UUID."""
        if self.state is not ReducerState.DONE:
            self._close_unit()
            self.state = ReducerState.DONE
        return self.graphics

    # ── internals ───────────────────────────────────────────────────────────

    def _warn(self, message: str) -> None:
        message = f"{self.source}: {message}"
        logger.warning(message)
        if self._ctx is not None and self.state is ReducerState.READING:
            self._ctx.warnings.append(message)
        else:
            self.warnings.append(message)

    def _malformed(self, lineno: int, tag: str, payload: str, reason: str) -> None:
        error = MalformedEvent(reason, context={"line": lineno, "opcode": tag or "?"})
        self._warn(str(error))
        if self.state is ReducerState.READING:
            self._ctx.items.append(Unknown(tag=tag, payload=payload))

    def _open_unit(self, payload: Any, lineno: int) -> None:
        self._close_unit()
        self.state = ReducerState.READING
        if not isinstance(payload, dict):
            self._ctx = _UnitContext(None, "")
            self._warn(f"line {lineno}: DOCHEAD without a valid payload, unit ignored")
            return
        doc_type = str(payload.get("docType") or "").upper()
        uuid = _text(payload.get("uuid")) or ""
        role = _DOC_ROLES.get(doc_type)
        if role is None:
            logger.debug("%s line %d: skipping %s document", self.source, lineno, doc_type or "untyped")
        self._ctx = _UnitContext(role, uuid)

    def _close_unit(self) -> None:
        ctx, self._ctx = self._ctx, None
        if ctx is None:
            return
        graphic = ctx.freeze()
        if graphic is None:
            self.warnings.extend(ctx.warnings)
            return
        if graphic.uuid in self.graphics:
            self._warn(f"duplicate {graphic.role.value} {graphic.uuid}, keeping the first")
            return
        self.graphics[graphic.uuid] = graphic

    def _apply_attr(self, payload: dict) -> None:
        pin = self._ctx.pins.get(_text(payload.get("parentId")) or "")
        if pin is None:
            return
        key = payload.get("key")
        value = _text(payload.get("value")) or ""
        if key == "Pin Name":
            pin.name = value
        elif key == "Pin Number":
            pin.number = value
        elif key == "Pin Type":
            pin.electrical = _PIN_TYPES.get(value.lower(), "unspecified")

    def _apply_primitive(self, opcode: Opcode, header: dict, payload: dict) -> None:
        ctx = self._ctx
        primitive: Optional[PrimitiveEvent] = None

        if opcode is Opcode.PIN:
            pin = _PinDraft(
                x=_number(payload, "x", 0.0),
                y=_number(payload, "y", 0.0),
                rotation=_number(payload, "rotation", 0.0),
                length=_number(payload, "length", None),
            )
            event_id = _text(header.get("id"))
            if event_id:
                ctx.pins[event_id] = pin
            ctx.items.append(pin)
            return

        if opcode is Opcode.RECT:
            x1 = _number(payload, "dotX1", 0.0)
            y1 = _number(payload, "dotY1", 0.0)
            x2 = _number(payload, "dotX2", x1)
            y2 = _number(payload, "dotY2", y1)
            primitive = Rect(x=x1, y=y1, width=x2 - x1, height=y2 - y1,
                             layer=_text(ctx.field(payload, "layerId")))

        elif opcode is Opcode.ELLIPSE:
            rx = abs(_number(payload, "radiusX", 0.0))
            ry = abs(_number(payload, "radiusY", 0.0))
            primitive = Ellipse(
                cx=_number(payload, "centerX", 0.0),
                cy=_number(payload, "centerY", 0.0),
                rx=rx or ry,
                ry=ry or rx,
                layer=_text(ctx.field(payload, "layerId")),
            )

        elif opcode in (Opcode.POLY, Opcode.FILL):
            layer = _text(ctx.field(payload, "layerId"))
            width = ctx.field(payload, "width")
            width = _finite(width) if width is not None else None
            path = payload.get("path")
            if (isinstance(path, list) and len(path) >= 4
                    and path[0] == "CIRCLE"):
                r = abs(_finite(path[3]))
                primitive = Ellipse(cx=_finite(path[1]), cy=_finite(path[2]),
                                    rx=r, ry=r, layer=layer, stroke_width=width)
            elif opcode is Opcode.POLY:
                primitive = Polygon(points=_path_points(path, 2),
                                    layer=layer, stroke_width=width)
            else:
                primitive = Fill(points=_path_points(path, 3), layer=layer)

        elif opcode is Opcode.PAD:
            default_pad = payload.get("defaultPad")
            if not isinstance(default_pad, dict):
                default_pad = payload
            layer = _text(ctx.field(payload, "layerId")) or "1"
            drill = 0.0
            hole = payload.get("hole")
            if isinstance(hole, dict):
                radius = _number(hole, "radius", None)
                if radius is not None:
                    drill = radius * 2
                else:
                    drill = _number(hole, "diameter", None) or _number(hole, "width", 0.0)
                if drill > 0:
                    layer = "11"
            rotation = _number(payload, "padAngle", None)
            if rotation is None:
                rotation = _number(payload, "relativeAngle", 0.0)
            primitive = Pad(
                number=_text(payload.get("num")) or "1",
                shape=_text(default_pad.get("padType")) or "OVAL",
                x=_number(payload, "centerX", 0.0),
                y=_number(payload, "centerY", 0.0),
                width=_number(default_pad, "width", 1.0),
                height=_number(default_pad, "height", 1.0),
                layer=layer,
                drill=abs(drill),
                rotation=rotation,
            )

        ctx.items.append(primitive)


def reconstruct(text: str, source: str = "<log>") -> tuple[dict[str, ComponentGraphic], list[str]]:
    """Replay one event log. Returns (graphics by UUID, stream-level warnings)."""
    reducer = EventStreamReducer(source)
    reducer.feed(text)
    graphics = reducer.finish()
    return graphics, reducer.warnings


def reconstruct_logs(logs: dict[str, str]) -> tuple[dict[str, ComponentGraphic], list[str]]:
    """Replay several logs of one archive; the first graphic per UUID wins."""
    merged: dict[str, ComponentGraphic] = {}
    warnings: list[str] = []
    for name in sorted(logs):
        graphics, stream_warnings = reconstruct(logs[name], source=name)
        warnings.extend(stream_warnings)
        for uuid, graphic in graphics.items():
            if uuid in merged:
                warnings.append(f"{name}: duplicate {graphic.role.value} {uuid}, keeping the first")
                continue
            merged[uuid] = graphic
    return merged, warnings
