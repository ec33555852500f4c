"""Tests for KiCad library registration."""

import json
import os

from config import ConversionConfig
from library_tables import (
    ensure_lib_table_entry, register_libraries, registered_uri,
    setup_environment_variable,
)

OTHER_ENTRY = ('(sym_lib_table\n  (lib (name "other")(type "KiCad")'
               '(uri "/other.kicad_sym")(options "")(descr ""))\n)\n')


class TestLibTableEntry:
    def test_creates_new_table(self, tmp_path):
        table_path = str(tmp_path / "config" / "sym-lib-table")
        assert ensure_lib_table_entry(table_path, "sym_lib_table", "elibconv",
                                      "/libs/elibconv.kicad_sym", "converted")
        content = open(table_path).read()
        assert content.startswith("(sym_lib_table")
        assert '(name "elibconv")' in content
        assert '(type "KiCad")' in content

    def test_appends_to_existing(self, tmp_path):
        table_path = tmp_path / "sym-lib-table"
        table_path.write_text(OTHER_ENTRY)
        ensure_lib_table_entry(str(table_path), "sym_lib_table", "elibconv", "/x.kicad_sym", "")
        content = table_path.read_text()
        assert '(name "other")' in content
        assert '(name "elibconv")' in content
        assert content.rstrip().endswith(")")

    def test_idempotent(self, tmp_path):
        table_path = str(tmp_path / "fp-lib-table")
        assert ensure_lib_table_entry(table_path, "fp_lib_table", "elibconv", "/a.pretty", "")
        assert not ensure_lib_table_entry(table_path, "fp_lib_table", "elibconv", "/a.pretty", "")
        assert open(table_path).read().count('(name "elibconv")') == 1

    def test_updates_uri_when_different(self, tmp_path):
        table_path = str(tmp_path / "fp-lib-table")
        ensure_lib_table_entry(table_path, "fp_lib_table", "elibconv", "/old/elibconv.pretty", "")
        assert ensure_lib_table_entry(table_path, "fp_lib_table", "elibconv",
                                      "/new/elibconv.pretty", "")
        content = open(table_path).read()
        assert "/new/elibconv.pretty" in content
        assert "/old/" not in content
        assert content.count('(name "elibconv")') == 1


class TestRegisteredUri:
    def test_missing_table(self, tmp_path):
        assert registered_uri(str(tmp_path / "sym-lib-table"), "elibconv") is None

    def test_other_entries_only(self, tmp_path):
        table_path = tmp_path / "sym-lib-table"
        table_path.write_text(OTHER_ENTRY)
        assert registered_uri(str(table_path), "elibconv") is None
        assert registered_uri(str(table_path), "other") == "/other.kicad_sym"


class TestSetupEnvironmentVariable:
    def test_creates_new_config(self, tmp_path):
        config_dir = str(tmp_path / "config")
        setup_environment_variable(config_dir, "ELIBCONV_3DMODELS", "/models")
        config = json.load(open(os.path.join(config_dir, "kicad_common.json")))
        assert config["environment"]["vars"]["ELIBCONV_3DMODELS"] == "/models"

    def test_handles_null_vars(self, tmp_path):
        config_path = tmp_path / "kicad_common.json"
        config_path.write_text(json.dumps({"environment": {"vars": None}}))
        setup_environment_variable(str(tmp_path), "ELIBCONV_3DMODELS", "/models")
        config = json.loads(config_path.read_text())
        assert config["environment"]["vars"] == {"ELIBCONV_3DMODELS": "/models"}

    def test_preserves_existing_vars(self, tmp_path):
        config_path = tmp_path / "kicad_common.json"
        config_path.write_text(json.dumps({"environment": {"vars": {"EXISTING_VAR": "/some/path"}},
                                           "appearance": {"theme": "dark"}}))
        setup_environment_variable(str(tmp_path), "ELIBCONV_3DMODELS", "/models")
        config = json.loads(config_path.read_text())
        assert config["environment"]["vars"]["EXISTING_VAR"] == "/some/path"
        assert config["appearance"] == {"theme": "dark"}


class TestRegisterLibraries:
    def test_registers_both_tables_and_variable(self, tmp_path):
        kicad_dir = str(tmp_path / "kicad")
        config = ConversionConfig(output_dir=str(tmp_path / "out"), kicad_config_dir=kicad_dir)
        assert register_libraries(config) == kicad_dir
        sym_table = os.path.join(kicad_dir, "sym-lib-table")
        fp_table = os.path.join(kicad_dir, "fp-lib-table")
        assert registered_uri(sym_table, "elibconv") == os.path.abspath(config.symbol_lib_path)
        assert registered_uri(fp_table, "elibconv") == os.path.abspath(config.footprint_lib_path)
        common = json.load(open(os.path.join(kicad_dir, "kicad_common.json")))
        assert common["environment"]["vars"]["ELIBCONV_3DMODELS"] == os.path.abspath(config.model_path)

    def test_symbols_only(self, tmp_path):
        kicad_dir = str(tmp_path / "kicad")
        config = ConversionConfig(output_dir=str(tmp_path / "out"), kicad_config_dir=kicad_dir,
                                  create_footprint=False)
        register_libraries(config)
        assert os.path.exists(os.path.join(kicad_dir, "sym-lib-table"))
        assert not os.path.exists(os.path.join(kicad_dir, "fp-lib-table"))
