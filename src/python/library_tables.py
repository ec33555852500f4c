"""Library registration — adds the output libraries to KiCad's global lib tables."""

import json
import logging
import os
import re
import sys

from config import ConversionConfig

logger = logging.getLogger(__name__)

SYM_TABLE = "sym-lib-table"
FP_TABLE = "fp-lib-table"


def get_kicad_config_dir(version: str = "9.0") -> str:
    """Get the KiCad configuration directory for the given version."""
    if sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Preferences/kicad")
    elif sys.platform == "win32":
        base = os.path.join(os.environ.get("APPDATA", ""), "kicad")
    else:  # Linux
        base = os.path.expanduser("~/.config/kicad")
    return os.path.join(base, version)


def _read_lib_table(path: str) -> str:
    """Read a lib-table file, or return empty template if missing."""
    if os.path.exists(path):
        with open(path, 'r') as f:
            return f.read()
    return ""


def _write(path: str, content: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(content)


def _entry_pattern(lib_name: str) -> str:
    return rf'\(lib\s+\(name\s+"{re.escape(lib_name)}"\)'


def registered_uri(table_path: str, lib_name: str) -> str | None:
    """URI of ``lib_name`` in a lib-table, or None if it is not registered."""
    content = _read_lib_table(table_path)
    m = re.search(_entry_pattern(lib_name) + r'.*?\(uri\s+"([^"]+)"\)', content)
    return m.group(1) if m else None


def ensure_lib_table_entry(table_path: str, table_kind: str, lib_name: str,
                           uri: str, descr: str) -> bool:
    """Register ``lib_name`` -> ``uri`` in a lib-table. Returns True if the file changed.

    An existing entry pointing elsewhere gets its URI updated.
    """
    content = _read_lib_table(table_path)

    if re.search(_entry_pattern(lib_name), content):
        if registered_uri(table_path, lib_name) == uri:
            return False
        pattern = _entry_pattern(lib_name) + r'(\s*\(type\s+"[^"]*"\)\s*\(uri\s+")[^"]*(")'
        content = re.sub(pattern,
                         lambda m: f'(lib (name "{lib_name}"){m.group(1)}{uri}{m.group(2)}',
                         content)
        _write(table_path, content)
        logger.info("Updated %s entry in %s -> %s", lib_name, table_path, uri)
        return True

    entry = f'  (lib (name "{lib_name}")(type "KiCad")(uri "{uri}")(options "")(descr "{descr}"))\n'
    if content.strip():
        # Insert before closing paren
        content = content.rstrip()
        if content.endswith(')'):
            content = content[:-1] + entry + ')\n'
        else:
            content += '\n' + entry
    else:
        content = f'({table_kind}\n{entry})\n'

    _write(table_path, content)
    logger.info("Registered %s in %s", lib_name, table_path)
    return True


def setup_environment_variable(config_dir: str, var_name: str, models_dir: str) -> None:
    """Set the 3D models environment variable in kicad_common.json.

    Handles the case where "environment.vars" is null.
    """
    common_path = os.path.join(config_dir, "kicad_common.json")

    if os.path.exists(common_path):
        with open(common_path, 'r') as f:
            settings = json.load(f)
    else:
        settings = {}

    env = settings.get("environment")
    if not isinstance(env, dict):
        env = settings["environment"] = {}
    if not isinstance(env.get("vars"), dict):
        env["vars"] = {}
    env["vars"][var_name] = models_dir

    os.makedirs(os.path.dirname(common_path), exist_ok=True)
    with open(common_path, 'w') as f:
        json.dump(settings, f, indent=2)


def register_libraries(config: ConversionConfig) -> str:
    """Register the configured output libraries and model variable with KiCad.

    Returns the KiCad config directory that was updated.
    """
    config_dir = config.kicad_config_dir or get_kicad_config_dir(config.kicad_version)
    if config.create_symbol:
        ensure_lib_table_entry(
            os.path.join(config_dir, SYM_TABLE), "sym_lib_table", config.symbol_lib,
            os.path.abspath(config.symbol_lib_path), "elibconv converted symbols")
    if config.create_footprint:
        ensure_lib_table_entry(
            os.path.join(config_dir, FP_TABLE), "fp_lib_table", config.footprint_lib,
            os.path.abspath(config.footprint_lib_path), "elibconv converted footprints")
        setup_environment_variable(config_dir, config.model_env_var,
                                   os.path.abspath(config.model_path))
    return config_dir
