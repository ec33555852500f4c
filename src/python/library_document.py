"""Library documents — in-memory pending parts merged into on-disk KiCad libraries.

A ``SymbolLibraryDocument`` is one ``.kicad_sym`` file; a
``FootprintLibraryDocument`` is one ``.pretty`` directory holding a
``.kicad_mod`` file per footprint. Parts added during a run overwrite each
other by name; ``flush()`` merges them into whatever is already on disk, so
parts written by earlier runs survive.

Flushes take a process-wide lock per library path. Files are written to a
temporary sibling and moved into place with ``os.replace``.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from kiutils.symbol import SymbolLib
from kiutils.footprint import Footprint

from errors import BatchAborted, WriteFailure

logger = logging.getLogger(__name__)

SYMBOL_LIB_VERSION = "20211014"
GENERATOR = "elibconv"

_KICAD_CLI_PATHS = [
    "/Applications/KiCad/KiCad.app/Contents/MacOS/kicad-cli",
    shutil.which("kicad-cli") or "",
]

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def path_lock(path: str) -> threading.Lock:
    """The process-wide lock guarding one library path."""
    key = os.path.abspath(path)
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


@contextmanager
def locked_path(path: str, timeout: float):
    """Hold the lock for ``path``.

    Raises:
        BatchAborted: the lock was not acquired within ``timeout`` seconds.
    """
    lock = path_lock(path)
    if not lock.acquire(timeout=timeout):
        raise BatchAborted("Timed out waiting for library lock",
                           context={"path": path, "timeout": timeout})
    try:
        yield
    finally:
        lock.release()


def atomic_write(path: str, write: Callable[[str], None]) -> None:
    """Call ``write(tmp_path)`` and move the result over ``path``.

    Raises:
        WriteFailure: the directory, temp file or final rename failed.
    """
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
        os.close(fd)
        write(tmp_path)
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise WriteFailure(f"Cannot write library file: {e}", context={"path": path}) from e


def _find_kicad_cli() -> str | None:
    """Find the kicad-cli binary."""
    for path in _KICAD_CLI_PATHS:
        if path and os.path.isfile(path) and os.access(path, os.X_OK):
            return path
    return None


def upgrade_symbol_lib(lib_path: str) -> bool:
    """Upgrade a symbol library to the installed KiCad's format via kicad-cli.

    Non-fatal: returns False when kicad-cli is missing or the upgrade fails.
    """
    cli = _find_kicad_cli()
    if not cli:
        logger.info("kicad-cli not found, leaving %s in kiutils format", lib_path)
        return False
    result = subprocess.run(
        [cli, "sym", "upgrade", lib_path, "--force"],
        capture_output=True, text=True
    )
    if result.returncode != 0:
        logger.warning("kicad-cli sym upgrade failed: %s", result.stderr.strip())
        return False
    return True


class SymbolLibraryDocument:
    """One ``.kicad_sym`` library file."""

    def __init__(self, path: str, lock_timeout: float = 10.0,
                 upgrade_with_kicad_cli: bool = False):
        self.path = path
        self.lock_timeout = lock_timeout
        self.upgrade_with_kicad_cli = upgrade_with_kicad_cli
        self._pending = {}

    def add(self, name: str, symbol) -> None:
        """Queue ``symbol`` under ``name``; a later add with the same name wins."""
        symbol.entryName = name
        self._pending.pop(name, None)
        self._pending[name] = symbol

    def discard(self, name: str) -> None:
        """Drop a pending part without touching what is on disk."""
        self._pending.pop(name, None)

    @property
    def dirty(self) -> bool:
        return bool(self._pending)

    def _load(self) -> SymbolLib:
        if not os.path.exists(self.path):
            return SymbolLib(version=SYMBOL_LIB_VERSION, generator=GENERATOR)
        try:
            lib = SymbolLib.from_file(self.path)
        except Exception as e:
            raise WriteFailure(f"Cannot read existing symbol library: {e}",
                               context={"path": self.path}) from e
        if not lib.generator:
            lib.generator = GENERATOR
        return lib

    def part_names(self) -> list[str]:
        """Names currently on disk, in file order."""
        if not os.path.exists(self.path):
            return []
        return [s.entryName for s in self._load().symbols]

    def flush(self) -> Optional[str]:
        """Merge pending parts into the file. Returns the path, or None if idle.

        Raises:
            BatchAborted: the library lock timed out.
            WriteFailure: the library could not be read or written.
        """
        if not self.dirty:
            return None
        with locked_path(self.path, self.lock_timeout):
            lib = self._load()
            lib.symbols = [s for s in lib.symbols if s.entryName not in self._pending]
            lib.symbols.extend(self._pending.values())
            atomic_write(self.path, lib.to_file)
            logger.info("Wrote %d symbol(s) to %s (%d total)",
                        len(self._pending), self.path, len(lib.symbols))
            self._pending.clear()
            if self.upgrade_with_kicad_cli:
                upgrade_symbol_lib(self.path)
        return self.path


class FootprintLibraryDocument:
    """One ``.pretty`` footprint library directory."""

    def __init__(self, path: str, lock_timeout: float = 10.0):
        self.path = path
        self.lock_timeout = lock_timeout
        self._pending = {}

    def add(self, name: str, footprint: Footprint) -> None:
        footprint.entryName = name
        self._pending.pop(name, None)
        self._pending[name] = footprint

    def discard(self, name: str) -> None:
        """Drop a pending part without touching what is on disk."""
        self._pending.pop(name, None)

    @property
    def dirty(self) -> bool:
        return bool(self._pending)

    def file_for(self, name: str) -> str:
        return os.path.join(self.path, f"{name}.kicad_mod")

    def part_names(self) -> list[str]:
        if not os.path.isdir(self.path):
            return []
        return sorted(
            os.path.splitext(f)[0] for f in os.listdir(self.path)
            if f.endswith(".kicad_mod")
        )

    def flush(self) -> list[str]:
        """Write pending footprints. Returns written paths.

        Footprint files not touched by this run are left alone.

        Raises:
            BatchAborted: the library lock timed out.
            WriteFailure: a footprint could not be written.
        """
        if not self.dirty:
            return []
        written = []
        with locked_path(self.path, self.lock_timeout):
            for name, footprint in self._pending.items():
                target = self.file_for(name)
                atomic_write(target, footprint.to_file)
                written.append(target)
            logger.info("Wrote %d footprint(s) to %s", len(written), self.path)
            self._pending.clear()
        return written
