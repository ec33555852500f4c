"""Exporter — builds kiutils symbols and footprints from decoded graphics.

Handles:
- Part naming (symbol entry names, footprint names, filesystem-safe names)
- Symbol units with pins, rectangles, circles, polylines and texts
- Footprints with pads, holes, lines, circles, rects, filled zones and texts
- Standard properties (Reference, Value, Footprint, Datasheet, LCSC, Manufacturer)
- 3D model lookup and copy, referenced through ``${<model_env_var>}``
"""

import logging
import math
import os
import re
import shutil
from collections import Counter
from typing import Optional

from kiutils.symbol import Symbol, SymbolPin
from kiutils.footprint import Footprint, Model, Pad as FpPad, DrillDefinition
from kiutils.items.common import Effects, Fill, Font, Position, Property, Stroke
from kiutils.items.syitems import SyCircle, SyPolyLine, SyRect, SyText
from kiutils.items.fpitems import FpCircle, FpLine, FpPoly, FpRect, FpText

from config import ConversionConfig
from errors import UnsupportedGraphic, WriteFailure
from geometry import (
    MULTI_LAYER, PAD_HELPER_LAYER, CoordinateTransform, footprint_transform,
    kicad_layer, pad_layers, pad_rotation, pad_shape, pin_orientation,
    symbol_transform, text_rotation,
)
from models import (
    ComponentGraphic, DeviceRecord, GraphicRole, PrimitiveKind, ResolvedNames,
)

logger = logging.getLogger(__name__)

# Characters not allowed in file names
_SANITIZE_RE = re.compile(r'[/\\:*?"<>|]')

_SYMBOL_NAME_REPLACEMENTS = [
    (" ", "_"),
    (".", "_"),
    ("/", "{slash}"),
    ("\\", "{backslash}"),
    ("<", "{lt}"),
    (">", "{gt}"),
    (":", "{colon}"),
    ('"', "{dblquote}"),
]

_FOOTPRINT_NAME_RE = re.compile(r'[ /()]')

MODEL_EXTENSIONS = (".step", ".stp", ".wrl")

PIN_LENGTH_MM = 2.54
DEFAULT_LINE_WIDTH_MM = 0.12
_ELLIPSE_SEGMENTS = 36

SYMBOL_KINDS = (PrimitiveKind.PIN, PrimitiveKind.RECT, PrimitiveKind.ELLIPSE,
                PrimitiveKind.POLYGON, PrimitiveKind.FILL, PrimitiveKind.TEXT)
FOOTPRINT_KINDS = (PrimitiveKind.PAD, PrimitiveKind.RECT, PrimitiveKind.ELLIPSE,
                   PrimitiveKind.POLYGON, PrimitiveKind.FILL, PrimitiveKind.TEXT,
                   PrimitiveKind.HOLE)


# ── Naming ───────────────────────────────────────────────────────────────────

def sanitize_name(name: str) -> str:
    """Replace filesystem-unsafe characters with underscores."""
    return _SANITIZE_RE.sub('_', name)


def sanitize_symbol_name(name: str) -> str:
    for old, new in _SYMBOL_NAME_REPLACEMENTS:
        name = name.replace(old, new)
    return name


def sanitize_footprint_name(name: str) -> str:
    return sanitize_name(_FOOTPRINT_NAME_RE.sub('_', name.strip()))


def symbol_name(device: DeviceRecord, names: ResolvedNames) -> str:
    """``<symbol title>_<identifier>``, e.g. ``NE555_C7593``."""
    first = device.symbol_uuids[0] if device.symbol_uuids else None
    title = names.title_for(first, device.name)
    return sanitize_symbol_name(f"{title}_{device.identifier}")


def footprint_name(device: DeviceRecord, names: ResolvedNames) -> str:
    return sanitize_footprint_name(names.title_for(device.footprint_uuid, device.name))


def _reference_prefix(graphics: list[ComponentGraphic], fallback: Optional[str]) -> str:
    for candidate in [g.prefix for g in graphics] + [fallback]:
        if candidate:
            cleaned = candidate.replace('?', '').strip()
            if cleaned:
                return cleaned
    return "U"


def _set_property(symbol, key: str, value: str, hide: bool = False) -> None:
    """Set or update a property on a symbol."""
    for prop in symbol.properties:
        if prop.key == key:
            prop.value = value
            return
    new_id = max((p.id for p in symbol.properties if p.id is not None), default=-1) + 1
    symbol.properties.append(
        Property(key=key, value=value, id=new_id, effects=Effects(hide=hide))
    )


# ── Warnings ─────────────────────────────────────────────────────────────────

def export_warnings(graphic: ComponentGraphic) -> list[str]:
    """Decoder warnings plus one aggregated line per undrawable primitive kind."""
    warnings = list(graphic.warnings)
    usable = SYMBOL_KINDS if graphic.role is GraphicRole.SYMBOL else FOOTPRINT_KINDS

    unknown = Counter(p.tag for p in graphic.of_kind(PrimitiveKind.UNKNOWN))
    for tag, count in sorted(unknown.items()):
        warnings.append(f"{graphic.role.value} {graphic.uuid}: {count} unsupported '{tag}' record(s) skipped")

    foreign = Counter(p.kind.value for p in graphic.primitives
                      if p.kind not in usable and p.kind is not PrimitiveKind.UNKNOWN)
    for kind, count in sorted(foreign.items()):
        warnings.append(f"{graphic.role.value} {graphic.uuid}: {count} {kind} primitive(s) "
                        f"have no {graphic.role.value} equivalent")
    return warnings


_SYMBOL_DRAWABLE = tuple(k for k in SYMBOL_KINDS if k is not PrimitiveKind.TEXT)
_FOOTPRINT_OUTLINES = (PrimitiveKind.RECT, PrimitiveKind.ELLIPSE,
                       PrimitiveKind.POLYGON, PrimitiveKind.FILL)


def _is_drawable(graphic: ComponentGraphic) -> bool:
    """Texts alone, or pad-helper outlines alone, do not make a part."""
    if graphic.role is GraphicRole.SYMBOL:
        return bool(graphic.of_kind(*_SYMBOL_DRAWABLE))
    if graphic.of_kind(PrimitiveKind.PAD, PrimitiveKind.HOLE):
        return True
    return any(getattr(p, "layer", None) != PAD_HELPER_LAYER
               for p in graphic.of_kind(*_FOOTPRINT_OUTLINES))


def _require_usable(graphic: ComponentGraphic) -> None:
    if not _is_drawable(graphic):
        raise UnsupportedGraphic(
            f"No drawable {graphic.role.value} primitives",
            context={"uuid": graphic.uuid},
        )


# ── Shared geometry helpers ──────────────────────────────────────────────────

def _ellipse_points(cx, cy, rx, ry, segments=_ELLIPSE_SEGMENTS):
    points = []
    for i in range(segments + 1):
        a = 2 * math.pi * i / segments
        points.append((cx + rx * math.cos(a), cy + ry * math.sin(a)))
    return points


def _is_circle(rx: float, ry: float) -> bool:
    return math.isclose(rx, ry, rel_tol=1e-6, abs_tol=1e-9)


def _pos(t: CoordinateTransform, x: float, y: float, angle=None) -> Position:
    px, py = t.point(x, y)
    return Position(X=px, Y=py, angle=angle)


def _closed(points):
    points = list(points)
    if points and points[0] != points[-1]:
        points.append(points[0])
    return points


# ── Symbols ──────────────────────────────────────────────────────────────────

def _symbol_stroke() -> Stroke:
    return Stroke(width=0, type="default")


def _add_symbol_primitive(unit: Symbol, primitive, t: CoordinateTransform) -> None:
    kind = primitive.kind
    if kind is PrimitiveKind.PIN:
        position = _pos(t, primitive.x, primitive.y, pin_orientation(primitive.rotation))
        length = t.length(primitive.length) if primitive.length else PIN_LENGTH_MM
        unit.pins.append(SymbolPin(
            electricalType=primitive.electrical,
            graphicalStyle="line",
            position=position,
            length=length,
            name=primitive.name,
            number=primitive.number,
            nameEffects=Effects(font=Font(height=1.0, width=1.0)),
            numberEffects=Effects(font=Font(height=1.0, width=1.0)),
        ))
    elif kind is PrimitiveKind.RECT:
        unit.graphicItems.append(SyRect(
            start=_pos(t, primitive.x, primitive.y),
            end=_pos(t, primitive.x + primitive.width, primitive.y + primitive.height),
            stroke=_symbol_stroke(),
            fill=Fill(type="background"),
        ))
    elif kind is PrimitiveKind.ELLIPSE:
        if _is_circle(primitive.rx, primitive.ry):
            unit.graphicItems.append(SyCircle(
                center=_pos(t, primitive.cx, primitive.cy),
                radius=t.length(primitive.rx),
                stroke=_symbol_stroke(),
                fill=Fill(type="background"),
            ))
        else:
            points = _ellipse_points(primitive.cx, primitive.cy, primitive.rx, primitive.ry)
            unit.graphicItems.append(SyPolyLine(
                points=[_pos(t, x, y) for x, y in points],
                stroke=_symbol_stroke(),
                fill=Fill(type="background"),
            ))
    elif kind is PrimitiveKind.POLYGON:
        points = _closed(primitive.points) if primitive.closed else primitive.points
        unit.graphicItems.append(SyPolyLine(
            points=[_pos(t, x, y) for x, y in points],
            stroke=_symbol_stroke(),
            fill=Fill(type="none"),
        ))
    elif kind is PrimitiveKind.FILL:
        unit.graphicItems.append(SyPolyLine(
            points=[_pos(t, x, y) for x, y in _closed(primitive.points)],
            stroke=_symbol_stroke(),
            fill=Fill(type="outline"),
        ))
    elif kind is PrimitiveKind.TEXT:
        # Symbol-library text angles are in tenths of a degree.
        angle = text_rotation(primitive.rotation) * 10
        unit.graphicItems.append(SyText(
            text=primitive.text,
            position=_pos(t, primitive.x, primitive.y, angle),
            effects=Effects(font=Font(height=1.0, width=1.0)),
        ))


def build_symbol(device: DeviceRecord, names: ResolvedNames,
                 graphics: list[ComponentGraphic], config: ConversionConfig,
                 prefix: Optional[str] = None) -> Symbol:
    """Build one multi-unit symbol for ``device``; each graphic becomes one unit.

    Raises:
        UnsupportedGraphic: no graphics, or a graphic with nothing drawable.
    """
    if not graphics:
        raise UnsupportedGraphic("No symbol graphics", context={"device": device.identifier})
    for graphic in graphics:
        _require_usable(graphic)

    name = symbol_name(device, names)
    value = names.title_for(device.symbol_uuids[0] if device.symbol_uuids else None, device.name)
    fp_ref = ""
    if config.create_footprint and device.footprint_uuid:
        fp_ref = f"{config.footprint_lib}:{footprint_name(device, names)}"

    symbol = Symbol.create_new(
        id=name,
        reference=_reference_prefix(graphics, prefix),
        value=value,
        footprint=fp_ref,
        datasheet="",
    )
    _set_property(symbol, "LCSC", device.identifier, hide=True)
    if device.manufacturer:
        _set_property(symbol, "Manufacturer", device.manufacturer, hide=True)
    if device.description:
        _set_property(symbol, "Description", device.description, hide=True)

    for graphic in sorted(graphics, key=lambda g: g.unit):
        unit = Symbol()
        unit.libId = f"{name}_{graphic.unit}_1"
        t = symbol_transform(graphic.origin, graphic.mirrored)
        for primitive in graphic.of_kind(*SYMBOL_KINDS):
            _add_symbol_primitive(unit, primitive, t)
        symbol.units.append(unit)

    logger.debug("Built symbol %s with %d unit(s)", name, len(symbol.units))
    return symbol


# ── Footprints ───────────────────────────────────────────────────────────────

def _line_width(t: CoordinateTransform, stroke_width) -> float:
    if stroke_width:
        return t.length(stroke_width)
    return DEFAULT_LINE_WIDTH_MM


def _footprint_items(primitive, t: CoordinateTransform) -> tuple[list, list]:
    """Return (pads, graphic items) for one footprint primitive."""
    kind = primitive.kind
    if kind is PrimitiveKind.PAD:
        through_hole = primitive.layer == MULTI_LAYER
        w, h = t.length(primitive.width), t.length(primitive.height)
        pad = FpPad(
            number=primitive.number,
            type="thru_hole" if through_hole else "smd",
            shape=pad_shape(primitive.shape),
            position=_pos(t, primitive.x, primitive.y, pad_rotation(primitive.rotation)),
            size=Position(X=w, Y=h),
            layers=pad_layers(primitive.layer),
        )
        if through_hole and primitive.drill > 0:
            pad.drill = DrillDefinition(diameter=t.length(primitive.drill))
        return [pad], []
    if kind is PrimitiveKind.HOLE:
        d = t.length(primitive.diameter)
        return [FpPad(
            number="",
            type="np_thru_hole",
            shape="circle",
            position=_pos(t, primitive.x, primitive.y),
            size=Position(X=d, Y=d),
            drill=DrillDefinition(diameter=d),
            layers=["*.Cu", "*.Mask"],
        )], []

    layer = kicad_layer(getattr(primitive, "layer", None))
    if kind is PrimitiveKind.POLYGON:
        width = _line_width(t, primitive.stroke_width)
        points = _closed(primitive.points) if primitive.closed else list(primitive.points)
        return [], [
            FpLine(start=_pos(t, *a), end=_pos(t, *b), layer=layer, width=width)
            for a, b in zip(points, points[1:])
        ]
    if kind is PrimitiveKind.ELLIPSE:
        if primitive.layer == PAD_HELPER_LAYER:
            return [], []
        width = _line_width(t, primitive.stroke_width)
        if _is_circle(primitive.rx, primitive.ry):
            return [], [FpCircle(
                center=_pos(t, primitive.cx, primitive.cy),
                end=_pos(t, primitive.cx + primitive.rx, primitive.cy),
                layer=layer,
                width=width,
            )]
        points = _ellipse_points(primitive.cx, primitive.cy, primitive.rx, primitive.ry)
        return [], [
            FpLine(start=_pos(t, *a), end=_pos(t, *b), layer=layer, width=width)
            for a, b in zip(points, points[1:])
        ]
    if kind is PrimitiveKind.RECT:
        return [], [FpRect(
            start=_pos(t, primitive.x, primitive.y),
            end=_pos(t, primitive.x + primitive.width, primitive.y + primitive.height),
            layer=layer,
            width=_line_width(t, primitive.stroke_width),
        )]
    if kind is PrimitiveKind.FILL:
        return [], [FpPoly(
            layer=layer,
            coordinates=[_pos(t, x, y) for x, y in primitive.points],
            width=0,
            fill="solid",
        )]
    if kind is PrimitiveKind.TEXT:
        return [], [FpText(
            type="user",
            text=primitive.text,
            position=_pos(t, primitive.x, primitive.y, text_rotation(primitive.rotation)),
            layer=layer,
            effects=Effects(font=Font(height=1.0, width=1.0, thickness=0.15)),
        )]
    return [], []


def _bounds(pads, items) -> tuple[float, float, float, float]:
    xs, ys = [], []
    for pad in pads:
        xs.append(pad.position.X)
        ys.append(pad.position.Y)
    for item in items:
        for attr in ("start", "end", "center"):
            pos = getattr(item, attr, None)
            if isinstance(pos, Position):
                xs.append(pos.X)
                ys.append(pos.Y)
    if not xs:
        return 0.0, 0.0, 0.0, 0.0
    return min(xs), min(ys), max(xs), max(ys)


def _place_field_texts(fp: Footprint, bounds, name: str) -> None:
    min_x, min_y, max_x, max_y = bounds
    cx = round((min_x + max_x) / 2, 6)
    cy = round((min_y + max_y) / 2, 6)
    for item in fp.graphicItems:
        if not isinstance(item, FpText):
            continue
        if item.type == "reference":
            item.position = Position(X=cx, Y=round(min_y - 2.0, 6), angle=0)
        elif item.type == "value":
            item.text = name
            item.position = Position(X=cx, Y=round(max_y + 2.0, 6), angle=0)
    fp.graphicItems.append(FpText(
        type="user",
        text="${REFERENCE}",
        position=Position(X=cx, Y=cy, angle=0),
        layer="F.Fab",
        effects=Effects(font=Font(height=0.5, width=0.5, thickness=0.08)),
    ))


def build_footprint(device: DeviceRecord, names: ResolvedNames,
                    graphic: ComponentGraphic, config: ConversionConfig,
                    model_filename: Optional[str] = None) -> Footprint:
    """Build a footprint for ``device``.

    ``model_filename`` is the name the 3D model has (or will have) in the
    model directory; it is referenced through ``${<model_env_var>}``.

    Raises:
        UnsupportedGraphic: the graphic has nothing drawable as a footprint.
    """
    _require_usable(graphic)
    name = footprint_name(device, names)
    t = footprint_transform(graphic.origin, graphic.mirrored)

    pads, items = [], []
    for primitive in graphic.of_kind(*FOOTPRINT_KINDS):
        p, i = _footprint_items(primitive, t)
        pads.extend(p)
        items.extend(i)

    through_hole = any(p.type == "thru_hole" for p in pads)
    fp = Footprint.create_new(
        library_id=name,
        value=name,
        type="through_hole" if through_hole else "smd",
    )
    fp.generator = "elibconv"
    if device.description:
        fp.description = device.description
    fp.graphicItems.extend(items)
    fp.pads.extend(pads)
    _place_field_texts(fp, _bounds(pads, items), name)

    if model_filename:
        fp.models = [Model(path=f"${{{config.model_env_var}}}/{model_filename}")]
    else:
        fp.models = []

    logger.debug("Built footprint %s: %d pads, %d items", name, len(pads), len(items))
    return fp


# ── 3D models ────────────────────────────────────────────────────────────────

def index_models(paths) -> dict[str, str]:
    """Lower-case file stem -> path for every STEP/STP/WRL file, first one wins."""
    index = {}
    for path in sorted(paths):
        stem, ext = os.path.splitext(os.path.basename(path))
        if ext.lower() in MODEL_EXTENSIONS:
            index.setdefault(stem.lower(), path)
    return index


def model_candidates(device: DeviceRecord, fp_name: str) -> list[str]:
    candidates = [device.identifier, fp_name]
    if device.model_title:
        candidates.append(device.model_title)
    return candidates


def find_model(index: dict[str, str], candidates) -> Optional[str]:
    for candidate in candidates:
        if candidate:
            path = index.get(candidate.lower())
            if path:
                return path
    return None


def model_filename(source: str, fp_name: str) -> str:
    ext = os.path.splitext(source)[1].lower().lstrip('.')
    if ext == "stp":
        ext = "step"
    return f"{fp_name}.{ext}"


def copy_model(source: str, model_dir: str, fp_name: str) -> str:
    """Copy a model file to ``model_dir/<footprint>.<ext>`` and return the destination.

    Raises:
        WriteFailure: the model could not be copied.
    """
    dest = os.path.join(model_dir, model_filename(source, fp_name))
    try:
        os.makedirs(model_dir, exist_ok=True)
        shutil.copy2(source, dest)
    except OSError as e:
        raise WriteFailure(f"Cannot copy 3D model: {e}",
                           context={"source": source, "dest": dest}) from e
    return dest
