"""Batch coordinator — converts a file or folder of archives into shared KiCad libraries.

Pipeline per archive: open -> parse descriptor -> decode graphics -> resolve
names -> build parts. Archives are decoded in a thread pool; finished items
go through a bounded queue to a single writer thread which owns the library
documents and is the only code that touches the output directory.
"""

import dataclasses
import json
import logging
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from config import ConversionConfig
from container import ARCHIVE_EXTENSIONS, open_archive
from decoders import decode_archive, find_graphic
from descriptor import load_descriptor, parse_devices, symbol_prefixes
from descriptors import DESCRIPTOR_EXTENSIONS, collect_identifiers
from errors import BatchAborted, ElibConvError, UnsupportedGraphic, WriteFailure
from exporter import (
    MODEL_EXTENSIONS, build_footprint, build_symbol, copy_model, export_warnings,
    find_model, footprint_name, index_models, model_candidates, model_filename,
    symbol_name,
)
from library_document import FootprintLibraryDocument, SymbolLibraryDocument
from library_tables import register_libraries
from models import (
    BatchResult, ConversionReport, DeviceRecord, GraphicRole, Outcome,
)
from name_resolver import build_title_table, resolve_names

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str], None]

_STOP = object()


@dataclass
class BatchInputs:
    archives: list[str] = field(default_factory=list)
    descriptors: list[str] = field(default_factory=list)
    models: dict[str, str] = field(default_factory=dict)


@dataclass
class ItemResult:
    """Everything the writer needs to apply one device."""
    report: ConversionReport
    symbol: Optional[tuple] = None          # (name, kiutils Symbol)
    footprint: Optional[tuple] = None       # (name, kiutils Footprint)
    model_source: Optional[str] = None


# ── Discovery ────────────────────────────────────────────────────────────────

def gather_input_files(path: str) -> list[str]:
    """A single file, or every file below a folder (sorted).

    Raises:
        BatchAborted: the path does not exist.
    """
    if os.path.isfile(path):
        return [path]
    if not os.path.isdir(path):
        raise BatchAborted("Input path does not exist", context={"path": path})
    files = []
    for root, dirs, names in os.walk(path):
        dirs.sort()
        for name in sorted(names):
            files.append(os.path.join(root, name))
    return files


def discover_inputs(path: str) -> BatchInputs:
    inputs = BatchInputs()
    model_files = []
    for f in gather_input_files(path):
        ext = os.path.splitext(f)[1].lower()
        if ext in ARCHIVE_EXTENSIONS:
            inputs.archives.append(f)
        elif ext in DESCRIPTOR_EXTENSIONS:
            inputs.descriptors.append(f)
        elif ext in MODEL_EXTENSIONS:
            model_files.append(f)
    inputs.models = index_models(model_files)
    logger.info("Found %d archive(s), %d descriptor file(s), %d model(s) under %s",
                len(inputs.archives), len(inputs.descriptors), len(inputs.models), path)
    return inputs


# ── Decode stage (worker threads) ────────────────────────────────────────────

def _finish(report: ConversionReport, errors: list[str], produced: bool) -> ConversionReport:
    if not produced:
        report.outcome = Outcome.FAILURE
        report.reason = "; ".join(errors) or "nothing to export"
    elif errors or report.warnings:
        report.outcome = Outcome.PARTIAL_SUCCESS
        report.warnings.extend(errors)
    else:
        report.outcome = Outcome.SUCCESS
    for w in report.warnings:
        logger.warning("%s: %s", report.identifier, w)
    return report


def convert_device(device: DeviceRecord, source: str, graphics: dict, table: dict,
                   prefixes: dict, config: ConversionConfig, model_index: dict,
                   archive_warnings=()) -> ItemResult:
    """Build the symbol and footprint of one device. Never raises for per-item errors."""
    report = ConversionReport(identifier=device.identifier, source=source,
                              warnings=list(archive_warnings))
    item = ItemResult(report=report)
    names = resolve_names(device, table)
    errors = []

    if config.create_symbol:
        units = []
        for uuid in device.symbol_uuids:
            graphic = find_graphic(graphics, uuid, GraphicRole.SYMBOL)
            if graphic is None:
                errors.append(f"symbol data {uuid} missing from archive")
                continue
            units.append(dataclasses.replace(graphic, unit=len(units) + 1))
            report.warnings.extend(export_warnings(graphic))
        if not device.symbol_uuids:
            errors.append("device has no symbol UUID")
        elif units:
            first = device.symbol_uuids[0].split('|')[0]
            try:
                symbol = build_symbol(device, names, units, config, prefix=prefixes.get(first))
                item.symbol = (symbol_name(device, names), symbol)
            except UnsupportedGraphic as e:
                errors.append(str(e))

    if config.create_footprint:
        graphic = None
        if not device.footprint_uuid:
            errors.append("device has no footprint UUID")
        else:
            graphic = find_graphic(graphics, device.footprint_uuid, GraphicRole.FOOTPRINT)
            if graphic is None:
                errors.append(f"footprint data {device.footprint_uuid} missing from archive")
        if graphic is not None:
            report.warnings.extend(export_warnings(graphic))
            fp_name = footprint_name(device, names)
            model = None
            if config.copy_models:
                model = find_model(model_index, model_candidates(device, fp_name))
            try:
                footprint = build_footprint(
                    device, names, graphic, config,
                    model_filename=model_filename(model, fp_name) if model else None,
                )
                item.footprint = (fp_name, footprint)
                item.model_source = model
            except UnsupportedGraphic as e:
                errors.append(str(e))

    _finish(report, errors, produced=bool(item.symbol or item.footprint))
    return item


def _failure(identifier: str, source: str, reason: str) -> ItemResult:
    logger.error("%s: %s", identifier, reason)
    return ItemResult(report=ConversionReport(
        identifier=identifier, source=source, outcome=Outcome.FAILURE, reason=reason,
    ))


def convert_archive(path: str, config: ConversionConfig,
                    model_index: dict) -> list[ItemResult]:
    """Decode one archive into one ItemResult per device.

    An archive that cannot be read at all yields a single failed item named
    after the file.
    """
    label = os.path.basename(path)
    try:
        archive = open_archive(path)
        doc = load_descriptor(archive.descriptor, source=path)
        devices, descriptor_warnings = parse_devices(doc)
        if not devices:
            return [_failure(label, path, "no devices in descriptor")]
        graphics, decode_warnings = decode_archive(archive)
        table = build_title_table(doc, archive.footprint_manifest)
        prefixes = symbol_prefixes(doc)
    except ElibConvError as e:
        return [_failure(label, path, str(e))]

    archive_warnings = descriptor_warnings + decode_warnings
    items = []
    for device in devices:
        try:
            items.append(convert_device(device, path, graphics, table, prefixes,
                                        config, model_index, archive_warnings))
        except Exception as e:
            logger.exception("Conversion of %s failed", device.identifier)
            items.append(_failure(device.identifier, path, str(e)))
    return items


# ── Write stage (single writer thread) ───────────────────────────────────────

class LibraryWriter(threading.Thread):
    """Owns both library documents; applies items in the order they arrive."""

    def __init__(self, items: queue.Queue, config: ConversionConfig,
                 result: BatchResult, progress: Optional[ProgressSink] = None):
        super().__init__(name="elibconv-writer", daemon=True)
        self.items = items
        self.config = config
        self.result = result
        self.progress = progress
        self.symbols = SymbolLibraryDocument(
            config.symbol_lib_path, config.lock_timeout, config.upgrade_with_kicad_cli)
        self.footprints = FootprintLibraryDocument(config.footprint_lib_path, config.lock_timeout)
        self.aborted: Optional[BatchAborted] = None
        self._written = set()
        self._deferred: list[ItemResult] = []

    def run(self):
        while True:
            batch = self.items.get()
            try:
                if batch is _STOP:
                    if self.aborted is None and self.config.merge_mode == "batch":
                        try:
                            self._flush_deferred()
                        except Exception as e:
                            logger.exception("Writer failed flushing deferred items")
                            for item in self._deferred:
                                if not self._reported(item):
                                    item.report.outcome = Outcome.FAILURE
                                    item.report.reason = str(e)
                                    self._report(item)
                    return
                for item in batch:
                    try:
                        self._apply(item)
                    except Exception as e:
                        logger.exception("Writer failed on %s", item.report.identifier)
                        self._discard(item)
                        item.report.outcome = Outcome.FAILURE
                        item.report.reason = str(e)
                        if not self._reported(item):
                            self._report(item)
            finally:
                self.items.task_done()

    def _reported(self, item: ItemResult) -> bool:
        return any(r is item.report for r in self.result.reports)

    def _report(self, item: ItemResult) -> None:
        self.result.reports.append(item.report)
        if self.progress is None:
            return
        try:
            self.progress(f"{item.report.identifier}: {item.report.outcome.value}")
        except Exception:
            logger.exception("Progress sink failed on %s", item.report.identifier)

    def _apply(self, item: ItemResult) -> None:
        report = item.report
        if self.aborted is not None:
            report.outcome = Outcome.FAILURE
            report.reason = f"batch aborted: {self.aborted.message}"
            self._report(item)
            return
        if report.outcome is Outcome.FAILURE:
            self._report(item)
            return

        if item.model_source:
            try:
                report.artifacts.append(
                    copy_model(item.model_source, self.config.model_path, item.footprint[0]))
            except WriteFailure as e:
                report.warnings.append(str(e))
                report.outcome = Outcome.PARTIAL_SUCCESS

        if item.symbol:
            self.symbols.add(*item.symbol)
        if item.footprint:
            self.footprints.add(*item.footprint)

        if self.config.merge_mode == "batch":
            self._deferred.append(item)
            return
        try:
            self._flush_item(item)
        except BatchAborted as e:
            self._discard(item)
            self.aborted = e
            report.outcome = Outcome.FAILURE
            report.reason = str(e)
        self._report(item)

    def _discard(self, item: ItemResult) -> None:
        if item.symbol:
            self.symbols.discard(item.symbol[0])
        if item.footprint:
            self.footprints.discard(item.footprint[0])

    def _flush_item(self, item: ItemResult) -> None:
        report = item.report
        failures = []
        if item.symbol:
            try:
                path = self.symbols.flush()
                report.artifacts.append(path)
                self._written.add(path)
            except WriteFailure as e:
                self.symbols.discard(item.symbol[0])
                failures.append(str(e))
        if item.footprint:
            try:
                for path in self.footprints.flush():
                    report.artifacts.append(path)
                self._written.add(self.footprints.path)
            except WriteFailure as e:
                self.footprints.discard(item.footprint[0])
                failures.append(str(e))
        self._record_write_failures(report, failures,
                                    wanted=bool(item.symbol) + bool(item.footprint))

    def _record_write_failures(self, report, failures, wanted) -> None:
        if not failures:
            return
        if len(failures) >= wanted:
            report.outcome = Outcome.FAILURE
            report.reason = "; ".join(failures)
        else:
            report.outcome = Outcome.PARTIAL_SUCCESS
            report.warnings.extend(failures)

    def _flush_deferred(self) -> None:
        failures = {"symbol": None, "footprint": None}
        try:
            try:
                path = self.symbols.flush()
                if path:
                    self._written.add(path)
            except WriteFailure as e:
                failures["symbol"] = str(e)
            try:
                if self.footprints.flush():
                    self._written.add(self.footprints.path)
            except WriteFailure as e:
                failures["footprint"] = str(e)
        except BatchAborted as e:
            self.aborted = e
        for item in self._deferred:
            if self.aborted is not None:
                item.report.outcome = Outcome.FAILURE
                item.report.reason = str(self.aborted)
            else:
                self._finish_deferred(item, failures)
            self._report(item)

    def _finish_deferred(self, item: ItemResult, failures: dict) -> None:
        report = item.report
        errors = []
        if item.symbol:
            if failures["symbol"]:
                errors.append(failures["symbol"])
            else:
                report.artifacts.append(self.symbols.path)
        if item.footprint:
            if failures["footprint"]:
                errors.append(failures["footprint"])
            else:
                report.artifacts.append(self.footprints.file_for(item.footprint[0]))
        self._record_write_failures(report, errors,
                                    wanted=bool(item.symbol) + bool(item.footprint))

    @property
    def written(self) -> list[str]:
        return sorted(self._written)


# ── Entry point ──────────────────────────────────────────────────────────────

def _prepare_output(config: ConversionConfig) -> None:
    dirs = [config.output_dir]
    if config.create_symbol:
        dirs.append(os.path.dirname(config.symbol_lib_path))
    if config.create_footprint:
        dirs.append(config.footprint_lib_path)
    try:
        for d in dirs:
            os.makedirs(d, exist_ok=True)
    except OSError as e:
        raise BatchAborted(f"Cannot create output directory: {e}",
                           context={"output_dir": config.output_dir}) from e


def run_batch(path: str, config: Optional[ConversionConfig] = None,
              progress: Optional[ProgressSink] = None,
              cancel=None) -> BatchResult:
    """Convert every archive under ``path`` into the configured libraries.

    ``progress`` receives one line per finished device. ``cancel`` is any
    object with ``is_set()``; it is checked before each archive starts.

    Raises:
        BatchAborted: the input is missing, the output directory cannot be
            created, or a library lock timed out.
    """
    config = config or ConversionConfig()
    inputs = discover_inputs(path)
    _prepare_output(config)

    result = BatchResult()
    items: queue.Queue = queue.Queue(maxsize=config.queue_size)
    writer = LibraryWriter(items, config, result, progress)
    writer.start()
    converted_ids = set()
    ids_guard = threading.Lock()

    def task(archive_path: str) -> None:
        if cancel is not None and cancel.is_set():
            result.cancelled = True
            batch = [_failure(os.path.basename(archive_path), archive_path, "cancelled")]
        else:
            try:
                batch = convert_archive(archive_path, config, inputs.models)
            except Exception as e:
                logger.exception("Unexpected error converting %s", archive_path)
                batch = [_failure(os.path.basename(archive_path), archive_path, str(e))]
            with ids_guard:
                converted_ids.update(item.report.identifier for item in batch)
        items.put(batch)

    try:
        with ThreadPoolExecutor(max_workers=config.workers) as pool:
            for future in [pool.submit(task, a) for a in inputs.archives]:
                future.result()
    finally:
        items.put(_STOP)
        writer.join()

    if writer.aborted is not None:
        raise writer.aborted

    missing = set() if result.cancelled else collect_identifiers(inputs.descriptors) - converted_ids
    for identifier in sorted(missing):
        result.reports.append(ConversionReport(
            identifier=identifier, source=path, outcome=Outcome.FAILURE,
            reason="no offline payload",
        ))

    result.written = writer.written
    if config.register_libraries and result.written:
        try:
            register_libraries(config)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not register libraries with KiCad: %s", e)
    logger.info("Batch done: %d report(s), %d failed%s", len(result.reports),
                len(result.failed), " (cancelled)" if result.cancelled else "")
    return result


def scan_inputs(path: str) -> list[dict]:
    """List the devices and identifiers under ``path`` without converting anything."""
    inputs = discover_inputs(path)
    entries = []
    seen = set()
    for archive_path in inputs.archives:
        try:
            archive = open_archive(archive_path)
            doc = load_descriptor(archive.descriptor, source=archive_path)
            devices, _ = parse_devices(doc)
        except ElibConvError as e:
            entries.append({"id": None, "source": archive_path, "error": str(e)})
            continue
        table = build_title_table(doc, archive.footprint_manifest)
        for device in devices:
            seen.add(device.identifier)
            names = resolve_names(device, table)
            entries.append({
                "id": device.identifier,
                "name": device.name,
                "package": names.title_for(device.footprint_uuid, None),
                "manufacturer": device.manufacturer,
                "description": device.description,
                "format": archive.format.value,
                "source": archive_path,
            })
    for identifier in sorted(collect_identifiers(inputs.descriptors) - seen):
        entries.append({"id": identifier, "name": identifier, "format": None, "source": path})
    return entries
