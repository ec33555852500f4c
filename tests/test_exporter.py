"""Tests for the exporter module."""

import os
import pytest
from kiutils.symbol import SymbolLib
from kiutils.footprint import Footprint
from kiutils.items.fpitems import FpCircle, FpLine, FpText

from config import ConversionConfig
from decoders.legacy import decode_payload
from errors import UnsupportedGraphic, WriteFailure
from exporter import (
    build_footprint, build_symbol, copy_model, export_warnings, find_model,
    footprint_name, index_models, model_candidates, model_filename,
    sanitize_footprint_name, sanitize_name, sanitize_symbol_name, symbol_name,
)
from models import (
    ComponentGraphic, DeviceRecord, Ellipse, GraphicRole, Pin, ResolvedNames, Text, Unknown,
)

from conftest import FOOTPRINT_SHAPE, SYMBOL_SHAPE, legacy_payload

DEVICE = DeviceRecord(
    identifier="C7593",
    name="NE555",
    footprint_uuid="fp1",
    symbol_uuids=("sym1",),
    manufacturer="TI",
    description="Timer",
)
NAMES = ResolvedNames(titles={"fp1": "SOIC-8", "sym1": "NE555"})


@pytest.fixture
def symbol_graphic():
    return decode_payload(legacy_payload(SYMBOL_SHAPE, prefix="U?"), GraphicRole.SYMBOL, "sym1")


@pytest.fixture
def footprint_graphic():
    return decode_payload(legacy_payload(FOOTPRINT_SHAPE), GraphicRole.FOOTPRINT, "fp1")


class TestNaming:
    def test_sanitize_name(self):
        assert sanitize_name('A:B*C?"D<E>F|G') == "A_B_C__D_E_F_G"
        assert sanitize_name("STM32F4-LQFP.100") == "STM32F4-LQFP.100"

    def test_sanitize_symbol_name(self):
        assert sanitize_symbol_name("LM 358/A.1") == "LM_358{slash}A_1"

    def test_sanitize_footprint_name(self):
        assert sanitize_footprint_name(" SOT-23 (3L)/x ") == "SOT-23__3L__x"

    def test_symbol_name(self):
        assert symbol_name(DEVICE, NAMES) == "NE555_C7593"

    def test_symbol_name_falls_back_to_device_name(self):
        assert symbol_name(DEVICE, ResolvedNames()) == "NE555_C7593"

    def test_footprint_name(self):
        assert footprint_name(DEVICE, NAMES) == "SOIC-8"


class TestBuildSymbol:
    def test_kiutils_round_trip(self, symbol_graphic, tmp_path):
        sym = build_symbol(DEVICE, NAMES, [symbol_graphic], ConversionConfig())
        lib = SymbolLib(version="20211014", generator="elibconv")
        lib.symbols.append(sym)
        path = str(tmp_path / "test.kicad_sym")
        lib.to_file(path)

        loaded = SymbolLib.from_file(path)
        assert len(loaded.symbols) == 1
        sym = loaded.symbols[0]
        assert sym.entryName == "NE555_C7593"

        props = {p.key: p.value for p in sym.properties}
        assert props["Reference"] == "U"
        assert props["Value"] == "NE555"
        assert props["Footprint"] == "elibconv:SOIC-8"
        assert props["LCSC"] == "C7593"
        assert props["Manufacturer"] == "TI"
        assert props["Description"] == "Timer"

        assert len(sym.units) == 1
        pins = sym.units[0].pins
        assert [p.number for p in pins] == ["1", "8"]
        assert sym.units[0].graphicItems[0].fill.type == "background"

    def test_pin_geometry(self, symbol_graphic):
        sym = build_symbol(DEVICE, NAMES, [symbol_graphic], ConversionConfig())
        trig, vcc = sym.units[0].pins
        assert trig.name == "TRIG"
        assert trig.electricalType == "input"
        assert (trig.position.X, trig.position.Y) == pytest.approx((-7.62, 2.54))
        assert trig.position.angle == 0
        assert vcc.position.angle == 180
        assert vcc.electricalType == "power_in"
        assert trig.length == 2.54

    def test_rect_flipped(self, symbol_graphic):
        sym = build_symbol(DEVICE, NAMES, [symbol_graphic], ConversionConfig())
        rect = sym.units[0].graphicItems[0]
        assert (rect.start.X, rect.start.Y) == pytest.approx((-5.08, 5.08))
        assert (rect.end.X, rect.end.Y) == pytest.approx((5.08, -10.16))

    def test_one_unit_per_graphic(self, symbol_graphic):
        second = ComponentGraphic(role=GraphicRole.SYMBOL, uuid="sym2", unit=2,
                                  primitives=(Pin(number="9", name="X", x=0, y=0),))
        sym = build_symbol(DEVICE, NAMES, [second, symbol_graphic], ConversionConfig())
        assert [u.unitId for u in sym.units] == [1, 2]
        assert sym.units[1].pins[0].number == "9"

    def test_no_footprint_reference_when_disabled(self, symbol_graphic):
        config = ConversionConfig(create_footprint=False)
        sym = build_symbol(DEVICE, NAMES, [symbol_graphic], config)
        props = {p.key: p.value for p in sym.properties}
        assert props["Footprint"] == ""

    def test_default_reference(self):
        graphic = ComponentGraphic(role=GraphicRole.SYMBOL, uuid="s",
                                   primitives=(Pin(number="1", name="A", x=0, y=0),))
        sym = build_symbol(DEVICE, NAMES, [graphic], ConversionConfig())
        props = {p.key: p.value for p in sym.properties}
        assert props["Reference"] == "U"

    def test_nothing_drawable(self):
        graphic = ComponentGraphic(role=GraphicRole.SYMBOL, uuid="s",
                                   primitives=(Unknown(tag="ARC", payload=""),))
        with pytest.raises(UnsupportedGraphic):
            build_symbol(DEVICE, NAMES, [graphic], ConversionConfig())

    def test_no_graphics(self):
        with pytest.raises(UnsupportedGraphic):
            build_symbol(DEVICE, NAMES, [], ConversionConfig())

    def test_text_only(self):
        graphic = ComponentGraphic(role=GraphicRole.SYMBOL, uuid="s",
                                   primitives=(Text("NE555", 0, 0),))
        with pytest.raises(UnsupportedGraphic):
            build_symbol(DEVICE, NAMES, [graphic], ConversionConfig())


class TestBuildFootprint:
    def test_kiutils_round_trip(self, footprint_graphic, tmp_path):
        fp = build_footprint(DEVICE, NAMES, footprint_graphic, ConversionConfig(),
                             model_filename="SOIC-8.step")
        path = str(tmp_path / "SOIC-8.kicad_mod")
        fp.to_file(path)

        loaded = Footprint.from_file(path)
        assert loaded.entryName == "SOIC-8"
        assert [p.number for p in loaded.pads] == ["1", "2"]
        assert len(loaded.models) == 1
        assert loaded.models[0].path == "${ELIBCONV_3DMODELS}/SOIC-8.step"

    def test_pads(self, footprint_graphic):
        fp = build_footprint(DEVICE, NAMES, footprint_graphic, ConversionConfig())
        first, second = fp.pads
        assert first.type == "smd"
        assert first.shape == "rect"
        assert (first.position.X, first.position.Y) == pytest.approx((-1.27, 0.0))
        assert (first.size.X, first.size.Y) == pytest.approx((1.524, 1.016))
        assert first.layers == ["F.Cu", "F.Paste", "F.Mask"]
        assert second.shape == "oval"
        assert second.position.angle == 90

    def test_track_becomes_silk_line(self, footprint_graphic):
        fp = build_footprint(DEVICE, NAMES, footprint_graphic, ConversionConfig())
        lines = [i for i in fp.graphicItems if isinstance(i, FpLine)]
        assert len(lines) == 1
        assert lines[0].layer == "F.SilkS"
        assert (lines[0].start.X, lines[0].start.Y) == pytest.approx((-2.54, -1.27))
        assert lines[0].width == pytest.approx(0.254)

    def test_pad_helper_circle_skipped(self, footprint_graphic):
        fp = build_footprint(DEVICE, NAMES, footprint_graphic, ConversionConfig())
        assert not [i for i in fp.graphicItems if isinstance(i, FpCircle)]

    def test_field_texts(self, footprint_graphic):
        fp = build_footprint(DEVICE, NAMES, footprint_graphic, ConversionConfig())
        texts = {t.type: t for t in fp.graphicItems if isinstance(t, FpText) and t.type != "user"}
        assert texts["value"].text == "SOIC-8"
        user = [t for t in fp.graphicItems if isinstance(t, FpText) and t.type == "user"]
        assert user[-1].text == "${REFERENCE}"

    def test_through_hole(self):
        payload = legacy_payload(["PAD~ELLIPSE~400~300~6~6~11~~1~1.5~~0"])
        graphic = decode_payload(payload, GraphicRole.FOOTPRINT, "fp1")
        fp = build_footprint(DEVICE, NAMES, graphic, ConversionConfig())
        pad = fp.pads[0]
        assert pad.type == "thru_hole"
        assert pad.layers == ["*.Cu", "*.Mask"]
        assert pad.drill.diameter == pytest.approx(0.762)

    def test_mounting_hole(self):
        payload = legacy_payload(["HOLE~400~300~2~gge1~0"])
        graphic = decode_payload(payload, GraphicRole.FOOTPRINT, "fp1")
        fp = build_footprint(DEVICE, NAMES, graphic, ConversionConfig())
        assert fp.pads[0].type == "np_thru_hole"

    def test_no_model(self, footprint_graphic):
        fp = build_footprint(DEVICE, NAMES, footprint_graphic, ConversionConfig())
        assert fp.models == []

    def test_custom_model_variable(self, footprint_graphic):
        config = ConversionConfig(model_env_var="MY_MODELS")
        fp = build_footprint(DEVICE, NAMES, footprint_graphic, config, model_filename="x.wrl")
        assert fp.models[0].path == "${MY_MODELS}/x.wrl"

    def test_symbol_primitives_only(self):
        graphic = ComponentGraphic(role=GraphicRole.FOOTPRINT, uuid="fp1",
                                   primitives=(Pin(number="1", name="A", x=0, y=0),))
        with pytest.raises(UnsupportedGraphic):
            build_footprint(DEVICE, NAMES, graphic, ConversionConfig())

    def test_text_only(self):
        graphic = ComponentGraphic(role=GraphicRole.FOOTPRINT, uuid="fp1",
                                   primitives=(Text("REF", 0, 0),))
        with pytest.raises(UnsupportedGraphic):
            build_footprint(DEVICE, NAMES, graphic, ConversionConfig())

    def test_pad_helper_only(self):
        graphic = ComponentGraphic(
            role=GraphicRole.FOOTPRINT, uuid="fp1",
            primitives=(Ellipse(cx=0, cy=0, rx=2, ry=2, layer="100"),
                        Text("REF", 0, 0)),
        )
        with pytest.raises(UnsupportedGraphic):
            build_footprint(DEVICE, NAMES, graphic, ConversionConfig())

    def test_outline_without_pads(self):
        graphic = ComponentGraphic(
            role=GraphicRole.FOOTPRINT, uuid="fp1",
            primitives=(Ellipse(cx=0, cy=0, rx=2, ry=2, layer="3"),),
        )
        fp = build_footprint(DEVICE, NAMES, graphic, ConversionConfig())
        assert fp.pads == []
        assert [i for i in fp.graphicItems if isinstance(i, FpCircle)]


class TestExportWarnings:
    def test_aggregates_unknown_and_foreign(self):
        graphic = ComponentGraphic(
            role=GraphicRole.FOOTPRINT, uuid="fp1",
            primitives=(Unknown(tag="ARC", payload=""), Unknown(tag="ARC", payload=""),
                        Pin(number="1", name="A", x=0, y=0)),
            warnings=("decoder said so",),
        )
        warnings = export_warnings(graphic)
        assert warnings[0] == "decoder said so"
        assert "2 unsupported 'ARC'" in warnings[1]
        assert "pin" in warnings[2]

    def test_clean_graphic(self, footprint_graphic):
        assert export_warnings(footprint_graphic) == []


class TestModels:
    def test_index_and_find(self, tmp_path):
        paths = [str(tmp_path / n) for n in ("C7593.STEP", "readme.txt", "SOIC-8.wrl")]
        index = index_models(paths)
        assert set(index) == {"c7593", "soic-8"}
        assert find_model(index, model_candidates(DEVICE, "SOIC-8")) == paths[0]
        assert find_model(index, ["nothing"]) is None

    def test_model_title_candidate(self):
        device = DeviceRecord(identifier="C1", name="x", model_title="Body3D")
        assert model_candidates(device, "FP") == ["C1", "FP", "Body3D"]

    def test_model_filename(self):
        assert model_filename("/a/b/C1.stp", "SOIC-8") == "SOIC-8.step"
        assert model_filename("C1.WRL", "SOIC-8") == "SOIC-8.wrl"

    def test_copy_model(self, tmp_path):
        src = tmp_path / "C7593.step"
        src.write_text("ISO-10303-21;")
        dest = copy_model(str(src), str(tmp_path / "models"), "SOIC-8")
        assert dest == os.path.join(str(tmp_path / "models"), "SOIC-8.step")
        assert os.path.exists(dest)

    def test_copy_missing_model(self, tmp_path):
        with pytest.raises(WriteFailure):
            copy_model(str(tmp_path / "missing.step"), str(tmp_path / "models"), "X")
