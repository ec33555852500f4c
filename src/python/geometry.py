"""Unit, coordinate and orientation conversion from the archive grid to KiCad.

The archive grid unit is 10 mil. KiCad libraries are in millimetres. Symbol
space is flipped vertically (KiCad symbols are Y-up, the archive is Y-down);
footprint space is Y-down on both sides and is only translated.
"""

from dataclasses import dataclass

# 1 native unit = 10 mil = 0.254 mm exactly.
MM_PER_UNIT = 0.254
_PRECISION = 6


def to_mm(value: float) -> float:
    """Convert a native-grid length or coordinate to millimetres."""
    return round(value * MM_PER_UNIT, _PRECISION)


def to_native(value_mm: float) -> float:
    """Inverse of :func:`to_mm`."""
    return round(value_mm / MM_PER_UNIT, _PRECISION)


@dataclass(frozen=True)
class CoordinateTransform:
    origin_x: float = 0.0
    origin_y: float = 0.0
    flip_y: bool = False
    mirror_x: bool = False

    def point(self, x: float, y: float) -> tuple[float, float]:
        tx = to_mm(x - self.origin_x)
        ty = to_mm(y - self.origin_y)
        if self.mirror_x:
            tx = -tx
        if self.flip_y:
            ty = -ty
        # Avoid emitting "-0.0"
        return tx + 0.0, ty + 0.0

    def length(self, value: float) -> float:
        return abs(to_mm(value))


def symbol_transform(origin: tuple[float, float], mirrored: bool = False) -> CoordinateTransform:
    return CoordinateTransform(origin[0], origin[1], flip_y=True, mirror_x=mirrored)


def footprint_transform(origin: tuple[float, float], mirrored: bool = False) -> CoordinateTransform:
    return CoordinateTransform(origin[0], origin[1], flip_y=False, mirror_x=mirrored)


# ── Orientation tables ───────────────────────────────────────────────────────

# Vendor pin angle points away from the body; KiCad's points into it.
PIN_ORIENTATION = {0: 180, 90: 270, 180: 0, 270: 90}

# Pads share the Y-down convention, quarter turns map onto themselves.
PAD_ORIENTATION = {0: 0, 90: 90, 180: 180, 270: 270}


def _quarter_turn(angle: float) -> int:
    return int(round(angle / 90.0)) * 90 % 360


def pin_orientation(angle: float) -> int:
    """Map a vendor pin rotation to a KiCad pin angle (total over all inputs)."""
    return PIN_ORIENTATION[_quarter_turn(angle)]


def pad_rotation(angle: float) -> float:
    """Map a vendor pad rotation to a KiCad pad angle in [0, 360)."""
    normalized = round(angle % 360.0, _PRECISION) % 360.0
    if normalized % 90 == 0:
        return float(PAD_ORIENTATION[int(normalized)])
    return normalized


def text_rotation(angle: float) -> int:
    return _quarter_turn(angle)


# ── Layer and pin-type tables ────────────────────────────────────────────────

LAYER_MAP = {
    "1": "F.Cu",
    "2": "B.Cu",
    "3": "F.SilkS",
    "4": "B.SilkS",
    "5": "F.Paste",
    "6": "B.Paste",
    "7": "F.Mask",
    "8": "B.Mask",
    "10": "Edge.Cuts",
    "11": "F.Fab",
    "12": "F.Fab",
    "99": "F.Fab",
    "100": "F.Fab",
    "101": "F.Fab",
}

DEFAULT_LAYER = "F.SilkS"

# Layer id "100" marks pad-shape helper outlines that KiCad draws itself.
PAD_HELPER_LAYER = "100"

# Layer id "11" on a pad means "all copper layers" (through hole).
MULTI_LAYER = "11"


def kicad_layer(layer_id) -> str:
    if layer_id is None:
        return DEFAULT_LAYER
    return LAYER_MAP.get(str(layer_id), DEFAULT_LAYER)


def pad_layers(layer_id: str) -> list[str]:
    if layer_id == MULTI_LAYER:
        return ["*.Cu", "*.Mask"]
    if layer_id == "2":
        return ["B.Cu", "B.Paste", "B.Mask"]
    return ["F.Cu", "F.Paste", "F.Mask"]


PAD_SHAPES = {
    "OVAL": "oval",
    "RECT": "rect",
    "ELLIPSE": "circle",
    "CIRCLE": "circle",
}


def pad_shape(shape: str) -> str:
    return PAD_SHAPES.get(shape.upper(), "oval")
