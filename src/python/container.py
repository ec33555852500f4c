"""Container reader — classifies an archive by its descriptor and loads its members."""

import logging
import os
import zipfile
import zlib

from errors import CorruptArchive, UnrecognizedContainer
from models import Archive, ArchiveFormat

logger = logging.getLogger(__name__)

# Descriptor member names, checked in order. A container carrying both is
# treated as legacy.
_DESCRIPTORS = [
    ("device.json", ArchiveFormat.LEGACY),
    ("device2.json", ArchiveFormat.EVENT_LOG),
]

ARCHIVE_EXTENSIONS = (".elibz", ".elibz2")

_FOOTPRINT_SUFFIX = ".efoo"
_SYMBOL_SUFFIX = ".esym"
_EVENT_LOG_SUFFIX = ".elibu"
_FOOTPRINT_MANIFEST = "footprint.json"


def classify_archive(zf: zipfile.ZipFile) -> tuple[ArchiveFormat, str]:
    """Return the format variant and descriptor member name of an open zip."""
    names = set(zf.namelist())
    for descriptor, fmt in _DESCRIPTORS:
        if descriptor in names:
            return fmt, descriptor
    raise UnrecognizedContainer(
        "No device descriptor found",
        context={"expected": " or ".join(d for d, _ in _DESCRIPTORS)},
    )


def _member_stem(name: str) -> str:
    return os.path.splitext(os.path.basename(name))[0]


def _read_text(zf: zipfile.ZipFile, name: str) -> str:
    return zf.read(name).decode("utf-8", errors="replace")


def open_archive(path: str) -> Archive:
    """Open ``path`` and read every member needed downstream into memory.

    Raises:
        CorruptArchive: the file is missing, unreadable or not a valid zip.
        UnrecognizedContainer: the zip carries neither known descriptor.
    """
    try:
        with zipfile.ZipFile(path, 'r') as zf:
            fmt, descriptor_name = classify_archive(zf)
            archive = Archive(
                path=path,
                format=fmt,
                descriptor=_read_text(zf, descriptor_name),
            )
            for name in zf.namelist():
                if name.endswith('/'):
                    continue
                lower = name.lower()
                if lower.endswith(_FOOTPRINT_SUFFIX):
                    stem = _member_stem(name)
                    if stem:
                        archive.footprint_payloads[stem] = _read_text(zf, name)
                elif lower.endswith(_SYMBOL_SUFFIX):
                    stem = _member_stem(name)
                    if stem:
                        archive.symbol_payloads[stem] = _read_text(zf, name)
                elif lower.endswith(_EVENT_LOG_SUFFIX):
                    archive.event_logs[name] = _read_text(zf, name)
                elif os.path.basename(name) == _FOOTPRINT_MANIFEST:
                    archive.footprint_manifest = _read_text(zf, name)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError, OSError) as e:
        raise CorruptArchive(f"Cannot read archive: {e}", context={"file": path}) from e

    logger.debug(
        "Opened %s as %s: %d footprint, %d symbol, %d event-log members",
        path, fmt.value, len(archive.footprint_payloads),
        len(archive.symbol_payloads), len(archive.event_logs),
    )
    return archive
