"""Tests for conversion settings."""

import json
import os
import pytest

from config import ConversionConfig


class TestDefaults:
    def test_paths(self):
        config = ConversionConfig(output_dir="out")
        assert config.symbol_lib_path == os.path.join("out", "symbols", "elibconv.kicad_sym")
        assert config.footprint_lib_path == os.path.join("out", "elibconv.pretty")
        assert config.model_path == os.path.join("out", "3dmodels")

    def test_defaults(self):
        config = ConversionConfig()
        assert config.merge_mode == "item"
        assert config.model_env_var == "ELIBCONV_3DMODELS"
        assert config.create_symbol and config.create_footprint


class TestValidation:
    def test_bad_merge_mode(self):
        with pytest.raises(ValueError):
            ConversionConfig(merge_mode="sometimes")

    def test_bad_workers(self):
        with pytest.raises(ValueError):
            ConversionConfig(workers=0)

    def test_nothing_to_do(self):
        with pytest.raises(ValueError):
            ConversionConfig(create_symbol=False, create_footprint=False)


class TestLoading:
    def test_from_file(self, tmp_path):
        path = tmp_path / "elibconv.json"
        path.write_text(json.dumps({"symbol_lib": "parts", "workers": 2}))
        config = ConversionConfig.from_file(str(path))
        assert config.symbol_lib == "parts"
        assert config.workers == 2

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="colour"):
            ConversionConfig.from_dict({"colour": "red"})

    def test_non_object_file(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("[]")
        with pytest.raises(ValueError):
            ConversionConfig.from_file(str(path))

    def test_overrides_skip_none(self):
        config = ConversionConfig().with_overrides(output_dir="x", symbol_lib=None)
        assert config.output_dir == "x"
        assert config.symbol_lib == "elibconv"

    def test_overrides_validate(self):
        with pytest.raises(ValueError):
            ConversionConfig().with_overrides(merge_mode="bad")
