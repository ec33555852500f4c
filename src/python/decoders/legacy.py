"""Legacy primitive decoder for ``.efoo``/``.esym`` payloads.

A payload is JSON carrying ``dataStr``: a ``head`` (origin, reference
prefix) and a ``shape`` list of records. Each record is a ``~``-separated
field list whose first field is a short type code. Fields are positional,
so empty fields are kept.

Record codes form a closed set (``RecordCode``). Anything else becomes an
``Unknown`` primitive. A record whose fields do not parse is dropped with a
warning, except ``SVGNODE``: it carries the 3D model UUID the footprint is
looked up by, so its failure is raised.
"""

import json
import logging
import math
import re
from enum import Enum
from typing import Optional

from errors import MalformedRecord
from models import (
    ComponentGraphic, Ellipse, Fill, GraphicRole, Hole, Pad, Pin, Polygon,
    PrimitiveEvent, Rect, Text, Unknown,
)

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "~"
RECORD_SEPARATOR = "#@$"

_NUMBER_RE = re.compile(r'-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?')

PIN_TYPE_CODES = {
    "0": "unspecified",
    "1": "input",
    "2": "output",
    "3": "bidirectional",
    "4": "power_in",
}


class RecordCode(Enum):
    # symbol records
    PIN = "P"
    RECT = "R"
    ELLIPSE = "E"
    POLYLINE = "PL"
    POLYGON = "PG"
    TEXT = "T"
    # footprint records
    PAD = "PAD"
    TRACK = "TRACK"
    CIRCLE = "CIRCLE"
    FP_RECT = "RECT"
    HOLE = "HOLE"
    SOLID_REGION = "SOLIDREGION"
    FP_TEXT = "TEXT"
    SVG_NODE = "SVGNODE"


def _num(value: str) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"non-finite number {value!r}")
    return number


def _opt_num(args: list[str], index: int, default: float) -> float:
    if index >= len(args) or not args[index].strip():
        return default
    try:
        number = float(args[index])
    except ValueError:
        return default
    if not math.isfinite(number):
        raise ValueError(f"non-finite number {args[index]!r}")
    return number


def _opt_str(args: list[str], index: int, default: str = "") -> str:
    return args[index] if index < len(args) else default


def _require(args: list[str], count: int, code: RecordCode) -> None:
    if len(args) < count:
        raise ValueError(f"{code.value} needs {count} fields, got {len(args)}")


def _points(text: str, minimum: int = 2) -> tuple[tuple[float, float], ...]:
    numbers = [_num(n) for n in _NUMBER_RE.findall(text)]
    points = tuple(zip(numbers[0::2], numbers[1::2]))
    if len(points) < minimum:
        raise ValueError(f"expected at least {minimum} points, got {len(points)}")
    return points


def split_records(text: str) -> list[str]:
    records = []
    for chunk in text.replace(RECORD_SEPARATOR, "\n").splitlines():
        chunk = chunk.strip()
        if chunk:
            records.append(chunk)
    return records


def split_fields(record: str) -> list[str]:
    return record.split(FIELD_SEPARATOR)


def parse_record(fields: list[str]) -> PrimitiveEvent:
    """Turn one split record into a primitive.

    Raises:
        MalformedRecord: the code is known but its fields do not parse.
    """
    tag = fields[0]
    try:
        code = RecordCode(tag)
    except ValueError:
        return Unknown(tag=tag, payload=FIELD_SEPARATOR.join(fields))

    args = fields[1:]
    try:
        if code is RecordCode.PIN:
            _require(args, 14, code)
            return Pin(
                number=args[2],
                name=args[13],
                x=_num(args[3]),
                y=_num(args[4]),
                rotation=_opt_num(args, 5, 0.0),
                electrical=PIN_TYPE_CODES.get(args[1], "unspecified"),
            )
        if code is RecordCode.RECT:
            _require(args, 6, code)
            return Rect(x=_num(args[0]), y=_num(args[1]),
                        width=_num(args[4]), height=_num(args[5]))
        if code is RecordCode.ELLIPSE:
            _require(args, 3, code)
            rx = abs(_num(args[2]))
            return Ellipse(cx=_num(args[0]), cy=_num(args[1]),
                           rx=rx, ry=abs(_opt_num(args, 3, rx)))
        if code in (RecordCode.POLYLINE, RecordCode.POLYGON):
            _require(args, 1, code)
            return Polygon(points=_points(args[0]),
                           closed=code is RecordCode.POLYGON)
        if code in (RecordCode.TEXT, RecordCode.FP_TEXT):
            _require(args, 12, code)
            rotation = _opt_num(args, 3, 0.0) if code is RecordCode.TEXT else 0.0
            return Text(text=args[11], x=_num(args[1]), y=_num(args[2]),
                        rotation=rotation)
        if code is RecordCode.PAD:
            _require(args, 9, code)
            return Pad(
                number=args[7],
                shape=args[0],
                x=_num(args[1]),
                y=_num(args[2]),
                width=_num(args[3]),
                height=_num(args[4]),
                layer=args[5],
                drill=_opt_num(args, 8, 0.0) * 2,
                rotation=_opt_num(args, 10, 0.0),
            )
        if code is RecordCode.TRACK:
            _require(args, 4, code)
            return Polygon(points=_points(args[3]), layer=args[1],
                           stroke_width=_num(args[0]))
        if code is RecordCode.CIRCLE:
            _require(args, 4, code)
            r = abs(_num(args[2]))
            return Ellipse(cx=_num(args[0]), cy=_num(args[1]), rx=r, ry=r,
                           layer=_opt_str(args, 4, "3"),
                           stroke_width=_num(args[3]))
        if code is RecordCode.FP_RECT:
            _require(args, 8, code)
            return Rect(x=_num(args[0]), y=_num(args[1]),
                        width=_num(args[2]), height=_num(args[3]),
                        layer=args[4], stroke_width=_opt_num(args, 7, 0.0))
        if code is RecordCode.HOLE:
            _require(args, 3, code)
            return Hole(x=_num(args[0]), y=_num(args[1]),
                        diameter=abs(_num(args[2])) * 2)
        if code is RecordCode.SOLID_REGION:
            _require(args, 3, code)
            return Fill(points=_points(args[2], minimum=3), layer=args[0])
    except ValueError as e:
        raise MalformedRecord(str(e), context={"code": tag}) from e

    # SVG_NODE is metadata, handled by decode_payload
    return Unknown(tag=tag, payload=FIELD_SEPARATOR.join(fields))


def _svg_node_model_uuid(fields: list[str], uuid: str, index: int) -> Optional[str]:
    try:
        node = json.loads(fields[1])
    except (IndexError, json.JSONDecodeError) as e:
        raise MalformedRecord(
            "SVGNODE record does not carry valid JSON",
            context={"uuid": uuid, "record": index},
        ) from e
    attrs = node.get("attrs") if isinstance(node, dict) else None
    if not isinstance(attrs, dict):
        return None
    model_uuid = attrs.get("uuid")
    return model_uuid if isinstance(model_uuid, str) and model_uuid else None


def _as_float(value, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def load_data_str(text: str) -> tuple[list[str], tuple[float, float], Optional[str]]:
    """Extract (records, origin, reference prefix) from a payload blob."""
    try:
        doc = json.loads(text)
    except json.JSONDecodeError:
        doc = None

    data = doc.get("dataStr", doc) if isinstance(doc, dict) else None
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return split_records(data), (0.0, 0.0), None

    if isinstance(data, dict) and "shape" in data:
        shape = data.get("shape") or []
        if isinstance(shape, str):
            shape = [shape]
        records = []
        for item in shape:
            if isinstance(item, str):
                records.extend(split_records(item))
        head = data.get("head") if isinstance(data.get("head"), dict) else {}
        origin = (_as_float(head.get("x")), _as_float(head.get("y")))
        c_para = head.get("c_para") if isinstance(head.get("c_para"), dict) else {}
        prefix = c_para.get("pre") if isinstance(c_para.get("pre"), str) else None
        return records, origin, prefix

    if doc is not None:
        return [], (0.0, 0.0), None
    return [r for r in split_records(text) if FIELD_SEPARATOR in r], (0.0, 0.0), None


def decode_payload(text: str, role: GraphicRole, uuid: str) -> ComponentGraphic:
    """Decode one legacy payload into a graphic, in record order."""
    records, origin, prefix = load_data_str(text)
    primitives: list[PrimitiveEvent] = []
    warnings: list[str] = []
    model_uuid = None

    for index, record in enumerate(records):
        fields = split_fields(record)
        if fields[0] == RecordCode.SVG_NODE.value:
            found = _svg_node_model_uuid(fields, uuid, index)
            model_uuid = model_uuid or found
            continue
        try:
            primitives.append(parse_record(fields))
        except MalformedRecord as e:
            message = f"{role.value} {uuid}: record {index} skipped: {e}"
            logger.warning(message)
            warnings.append(message)

    return ComponentGraphic(
        role=role,
        uuid=uuid,
        primitives=tuple(primitives),
        origin=origin,
        prefix=prefix,
        model_uuid=model_uuid,
        warnings=tuple(warnings),
    )
