"""Data models for the elibconv pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Union


class ArchiveFormat(Enum):
    LEGACY = "elibz"        # device.json + .efoo/.esym payloads
    EVENT_LOG = "elibz2"    # device2.json + .elibu event logs


class GraphicRole(Enum):
    SYMBOL = "symbol"
    FOOTPRINT = "footprint"


class PrimitiveKind(Enum):
    PIN = "pin"
    RECT = "rect"
    ELLIPSE = "ellipse"
    POLYGON = "polygon"
    PAD = "pad"
    FILL = "fill"
    TEXT = "text"
    HOLE = "hole"
    UNKNOWN = "unknown"


class Outcome(Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial"
    FAILURE = "error"


@dataclass
class Archive:
    """One opened input container, fully read into memory."""
    path: str
    format: ArchiveFormat
    descriptor: str
    footprint_payloads: dict[str, str] = field(default_factory=dict)
    symbol_payloads: dict[str, str] = field(default_factory=dict)
    event_logs: dict[str, str] = field(default_factory=dict)
    footprint_manifest: Optional[str] = None


@dataclass(frozen=True)
class DeviceRecord:
    """One device entry of an archive descriptor."""
    identifier: str
    name: str
    footprint_uuid: Optional[str] = None
    symbol_uuids: tuple[str, ...] = ()
    footprint_title: Optional[str] = None
    symbol_title: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    model_title: Optional[str] = None

    def __post_init__(self):
        if not self.identifier:
            raise ValueError("DeviceRecord identifier must not be empty")


# ── Primitives ───────────────────────────────────────────────────────────────
# All coordinates are in the archive's native grid (10 mil per unit).

Point = tuple[float, float]


@dataclass(frozen=True)
class Pin:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.PIN
    number: str
    name: str
    x: float
    y: float
    rotation: float = 0.0
    electrical: str = "unspecified"
    length: Optional[float] = None


@dataclass(frozen=True)
class Rect:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.RECT
    x: float
    y: float
    width: float
    height: float
    layer: Optional[str] = None
    stroke_width: Optional[float] = None


@dataclass(frozen=True)
class Ellipse:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.ELLIPSE
    cx: float
    cy: float
    rx: float
    ry: float
    layer: Optional[str] = None
    stroke_width: Optional[float] = None


@dataclass(frozen=True)
class Polygon:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.POLYGON
    points: tuple[Point, ...]
    closed: bool = False
    layer: Optional[str] = None
    stroke_width: Optional[float] = None


@dataclass(frozen=True)
class Pad:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.PAD
    number: str
    shape: str
    x: float
    y: float
    width: float
    height: float
    layer: str = "1"
    drill: float = 0.0          # diameter
    rotation: float = 0.0


@dataclass(frozen=True)
class Fill:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.FILL
    points: tuple[Point, ...]
    layer: Optional[str] = None


@dataclass(frozen=True)
class Text:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.TEXT
    text: str
    x: float
    y: float
    rotation: float = 0.0
    layer: Optional[str] = None


@dataclass(frozen=True)
class Hole:
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.HOLE
    x: float
    y: float
    diameter: float


@dataclass(frozen=True)
class Unknown:
    """A record or event this decoder does not understand, kept for diagnostics."""
    kind: ClassVar[PrimitiveKind] = PrimitiveKind.UNKNOWN
    tag: str
    payload: str


PrimitiveEvent = Union[Pin, Rect, Ellipse, Polygon, Pad, Fill, Text, Hole, Unknown]


@dataclass(frozen=True)
class ComponentGraphic:
    """Ordered primitives of one symbol unit or one footprint."""
    role: GraphicRole
    uuid: str
    primitives: tuple[PrimitiveEvent, ...] = ()
    origin: Point = (0.0, 0.0)
    mirrored: bool = False
    unit: int = 1
    prefix: Optional[str] = None
    model_uuid: Optional[str] = None
    warnings: tuple[str, ...] = ()

    def of_kind(self, *kinds: PrimitiveKind) -> list[PrimitiveEvent]:
        return [p for p in self.primitives if p.kind in kinds]


@dataclass(frozen=True)
class ResolvedNames:
    """UUID -> best available human title. Display and filenames only."""
    titles: dict[str, str] = field(default_factory=dict)

    def title_for(self, uuid: Optional[str], default: str) -> str:
        if not uuid:
            return default
        return self.titles.get(uuid, default)


@dataclass
class ConversionReport:
    """Outcome of converting one device (or one unreadable archive)."""
    identifier: str
    source: str
    outcome: Outcome = Outcome.SUCCESS
    warnings: list[str] = field(default_factory=list)
    reason: Optional[str] = None
    artifacts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "source": self.source,
            "status": self.outcome.value,
            "warnings": list(self.warnings),
            "error": self.reason,
            "artifacts": list(self.artifacts),
        }


@dataclass
class BatchResult:
    reports: list[ConversionReport] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> list[ConversionReport]:
        return [r for r in self.reports if r.outcome is Outcome.FAILURE]
