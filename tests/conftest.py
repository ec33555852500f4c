import json
import sys
import os
import zipfile
import pytest

# Add src/python to the path so tests can import modules directly
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src', 'python'))

from config import ConversionConfig  # noqa: E402


# A small 8-pin symbol body: two pins, one rectangle
SYMBOL_SHAPE = [
    "R~380~280~0~0~40~60~#880000~1~0~none~gge1~0",
    "P~show~1~1~370~290~180~gge2~0~0~0~0~0~0~TRIG",
    "P~show~4~8~420~290~0~gge3~0~0~0~0~0~0~VCC",
]

# Two SMD pads, a silkscreen track and a pad-helper circle
FOOTPRINT_SHAPE = [
    "PAD~RECT~395~300~6~4~1~GND~1~0~~0~gge10~0",
    "PAD~OVAL~405~300~6~4~1~VCC~2~0~~90~gge11~0",
    "TRACK~1~3~~390 295 410 295~gge12~0",
    "CIRCLE~400~300~2~0.5~100~gge13~0",
]


def legacy_payload(shape, x=400, y=300, prefix=None, as_string=True, extra=None):
    head = {"x": x, "y": y}
    if prefix:
        head["c_para"] = {"pre": prefix}
    data = {"head": head, "shape": list(shape) + list(extra or [])}
    return json.dumps({"dataStr": json.dumps(data) if as_string else data})


def device_descriptor(code, title="NE555", fp_uuid=None, sym_uuids=None,
                      fp_title="SOIC-8", manufacturer="TI"):
    fp_uuid = fp_uuid or f"fp{code.lower()}"
    sym_uuids = sym_uuids or [f"sym{code.lower()}"]
    symbol_attr = sym_uuids[0] + "|lib" if len(sym_uuids) == 1 else sym_uuids
    return {
        "devices": {
            f"dev-{code}": {
                "display_title": title,
                "product_code": code,
                "attributes": {
                    "Footprint": f"{fp_uuid}|lib",
                    "Symbol": symbol_attr,
                    "Manufacturer": manufacturer,
                },
            }
        },
        "footprints": {fp_uuid: {"title": fp_title}},
        "symbols": {u: {"title": title} for u in sym_uuids},
    }


def write_zip(path, members):
    with zipfile.ZipFile(path, 'w') as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return str(path)


@pytest.fixture
def make_legacy_archive(tmp_path):
    """Build a legacy ``.elibz`` with one device; returns the archive path."""
    def build(code="C7593", title="NE555", fp_title="SOIC-8", directory=None,
              symbol_shape=SYMBOL_SHAPE, footprint_shape=FOOTPRINT_SHAPE, **kwargs):
        directory = directory or tmp_path
        descriptor = device_descriptor(code, title=title, fp_title=fp_title, **kwargs)
        fp_uuid = next(iter(descriptor["footprints"]))
        members = {
            "device.json": json.dumps(descriptor),
            f"FOOTPRINT/{fp_uuid}.efoo": legacy_payload(footprint_shape),
        }
        for uuid in descriptor["symbols"]:
            members[f"SYMBOL/{uuid}.esym"] = legacy_payload(symbol_shape, prefix="U?")
        return write_zip(os.path.join(directory, f"{code}.elibz"), members)
    return build


def event_line(opcode, payload, event_id="e0"):
    return json.dumps({"type": opcode, "id": event_id}) + "||" + json.dumps(payload) + "|"


SYMBOL_EVENTS = [
    ("PIN", {"x": -20, "y": 10, "rotation": 0}, "p1"),
    ("ATTR", {"parentId": "p1", "key": "Pin Number", "value": "1"}, "a1"),
    ("ATTR", {"parentId": "p1", "key": "Pin Name", "value": "IN"}, "a2"),
    ("ATTR", {"parentId": "p1", "key": "Pin Type", "value": "input"}, "a3"),
    ("RECT", {"dotX1": -10, "dotY1": -10, "dotX2": 10, "dotY2": 10}, "r1"),
]

FOOTPRINT_EVENTS = [
    ("PAD", {"centerX": -5, "centerY": 0, "num": "1", "layerId": 1,
             "defaultPad": {"padType": "RECT", "width": 6, "height": 4}}, "d1"),
    ("PAD", {"centerX": 5, "centerY": 0, "num": "2",
             "defaultPad": {"padType": "OVAL", "width": 6, "height": 4}}, "d2"),
    ("POLY", {"path": [-10, -5, 10, -5], "layerId": 3, "width": 1}, "l1"),
]


def event_log(sym_uuid, fp_uuid, symbol_events=SYMBOL_EVENTS, footprint_events=FOOTPRINT_EVENTS):
    lines = [event_line("DOCHEAD", {"docType": "SYMBOL", "uuid": sym_uuid}, "h1")]
    lines += [event_line(op, payload, eid) for op, payload, eid in symbol_events]
    lines.append(event_line("DOCHEAD", {"docType": "FOOTPRINT", "uuid": fp_uuid}, "h2"))
    lines += [event_line(op, payload, eid) for op, payload, eid in footprint_events]
    return "\n".join(lines) + "\n"


@pytest.fixture
def make_event_archive(tmp_path):
    """Build an ``.elibz2`` with one device whose graphics live in an event log."""
    def build(code="C1002", title="LM358", fp_title="SOP-8", directory=None):
        directory = directory or tmp_path
        descriptor = device_descriptor(code, title=title, fp_title=fp_title)
        fp_uuid = next(iter(descriptor["footprints"]))
        sym_uuid = next(iter(descriptor["symbols"]))
        members = {
            "device2.json": json.dumps(descriptor),
            "library.elibu": event_log(sym_uuid, fp_uuid),
        }
        return write_zip(os.path.join(directory, f"{code}.elibz2"), members)
    return build


@pytest.fixture
def output_config(tmp_path):
    """A config writing into ``tmp_path/out`` with a single worker."""
    return ConversionConfig(output_dir=str(tmp_path / "out"), workers=1)
