"""Configuration for scanning and tracing sessions."""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

# --- Configuration ---
POINTER_WIDTH = 8
VTABLE_HEADER_SLOTS = 3          # drop/cleanup fn, type size, type align
VTABLE_HEADER_SIZE = VTABLE_HEADER_SLOTS * POINTER_WIDTH
MAX_VTABLE_SLOTS = 1024
MAX_VTABLE_SIZE = VTABLE_HEADER_SIZE + MAX_VTABLE_SLOTS * POINTER_WIDTH
MAX_HEADER_TYPE_SIZE = 0x100000
MAX_HEADER_ALIGN = 4096
LAST_VTABLE_MAX_SIZE = 0x200     # upper bound for the last candidate in a region scan
DEFAULT_BASE_REGISTER = "rax"
PROGRESS_INTERVAL = 10000
# --- End Configuration ---


@dataclass
class TraceConfig:
    """Settings shared by the static scanner, the tracer and the synthesizer."""

    base_register: str = DEFAULT_BASE_REGISTER
    pointer_width: int = POINTER_WIDTH
    header_slots: int = VTABLE_HEADER_SLOTS
    max_vtable_slots: int = MAX_VTABLE_SLOTS
    max_header_type_size: int = MAX_HEADER_TYPE_SIZE
    max_header_align: int = MAX_HEADER_ALIGN

    scan_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    progress_interval: int = PROGRESS_INTERVAL

    # Trace loop budgets; None means run until the debuggee exits.
    max_iterations: Optional[int] = None
    time_budget: Optional[float] = None

    resolve_targets: bool = True
    annotate: bool = True

    lifter: str = "lldb"
    disassembly_flavor: str = "intel"
    lldb_python_path: Optional[str] = None
    launch_args: List[str] = field(default_factory=list)
    working_directory: Optional[str] = None

    debug: bool = False

    @property
    def header_size(self):
        return self.header_slots * self.pointer_width

    @property
    def max_scan_bytes(self):
        return self.header_size + self.max_vtable_slots * self.pointer_width

    def validate(self):
        if self.pointer_width not in (4, 8):
            raise ConfigError(f"pointer_width must be 4 or 8, got {self.pointer_width}")
        if self.header_slots < 0:
            raise ConfigError("header_slots must not be negative")
        if self.max_vtable_slots <= 0:
            raise ConfigError("max_vtable_slots must be positive; unbounded vtable scans are not allowed")
        if self.scan_workers <= 0:
            raise ConfigError("scan_workers must be positive")
        if self.max_iterations is not None and self.max_iterations <= 0:
            raise ConfigError("max_iterations must be positive when set")
        if self.time_budget is not None and self.time_budget <= 0:
            raise ConfigError("time_budget must be positive when set")
        if self.lifter not in ("lldb", "ghidra"):
            raise ConfigError(f"unknown lifter '{self.lifter}'")
        if not self.base_register:
            raise ConfigError("base_register must be set")
        return self


def load_config(config_path=None, **overrides):
    """Load configuration from a JSON file, then apply keyword overrides.

    Overrides whose value is None are ignored so CLI flags that were not
    given do not clobber values from the file.
    """
    config = TraceConfig()
    known = {f.name for f in fields(TraceConfig)}

    if config_path:
        path = Path(config_path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except OSError as e:
            raise ConfigError(f"Could not read config {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Malformed config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a JSON object")

        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key '{key}' in {path}")
                continue
            setattr(config, key, value)
        logger.debug(f"Loaded config from: {path}")

    for key, value in overrides.items():
        if value is None:
            continue
        if key not in known:
            raise ConfigError(f"Unknown config override '{key}'")
        setattr(config, key, value)

    return config.validate()
