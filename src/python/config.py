"""Conversion settings — defaults, JSON config file, CLI overrides."""

import json
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

MERGE_MODES = ("item", "batch")


@dataclass(frozen=True)
class ConversionConfig:
    output_dir: str = "kicad_out"
    symbol_dir: str = "symbols"
    symbol_lib: str = "elibconv"
    footprint_lib: str = "elibconv"
    model_dir: str = "3dmodels"
    model_env_var: str = "ELIBCONV_3DMODELS"

    create_symbol: bool = True
    create_footprint: bool = True
    copy_models: bool = True

    merge_mode: str = "item"
    workers: int = 4
    queue_size: int = 8
    lock_timeout: float = 10.0

    upgrade_with_kicad_cli: bool = False
    register_libraries: bool = False
    kicad_config_dir: Optional[str] = None
    kicad_version: str = "9.0"

    def __post_init__(self):
        if self.merge_mode not in MERGE_MODES:
            raise ValueError(f"merge_mode must be one of {MERGE_MODES}, got {self.merge_mode!r}")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        if not (self.create_symbol or self.create_footprint):
            raise ValueError("Nothing to do: both create_symbol and create_footprint are off")

    # ── Derived paths ────────────────────────────────────────────────────────

    @property
    def symbol_lib_path(self) -> str:
        return os.path.join(self.output_dir, self.symbol_dir, f"{self.symbol_lib}.kicad_sym")

    @property
    def footprint_lib_path(self) -> str:
        return os.path.join(self.output_dir, f"{self.footprint_lib}.pretty")

    @property
    def model_path(self) -> str:
        return os.path.join(self.output_dir, self.model_dir)

    # ── Loading ──────────────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversionConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: str) -> "ConversionConfig":
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(data)

    def with_overrides(self, **overrides) -> "ConversionConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self
