"""Turn trace observations into named vtable struct types."""

import logging
from dataclasses import dataclass

from .config import TraceConfig
from .errors import SequencingError, TypeRegistrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VtableLayout:
    call_site: int
    method_count: int
    name: str
    status: str = ""


def vtable_type_name(call_site_addr):
    return f"VTable_{call_site_addr:x}"


def generate_vtable_type_def(call_site_addr, method_count, pointer_width=8):
    int_type = "uint64_t" if pointer_width == 8 else "uint32_t"
    lines = [f"struct {vtable_type_name(call_site_addr)} {{",
             "    void* drop;",
             f"    {int_type} size;",
             f"    {int_type} align;"]
    for i in range(method_count):
        lines.append(f"    void* method{i + 1};")
    lines.append("};")
    return "\n".join(lines) + "\n"


def format_targets(targets):
    return "{" + ", ".join(f"0x{t:x}" for t in targets) + "}"


def format_annotation(record):
    vtables = ", ".join(f"0x{o.vtable_ptr:x}({o.method_count} methods)" for o in record.observations)
    text = f"VTables: {vtables}"
    targets = record.targets
    if targets:
        text += f"\nTargets: {format_targets(targets)}"
    return text


class LayoutSynthesizer:
    """Registers one vtable struct per traced call site.

    Must only run once the debug session that produced the records has been
    released; the store is never mutated while a session is live.
    """

    def __init__(self, store, config=None):
        self.store = store
        self.config = config or TraceConfig()
        self.failed = []

    def synthesize(self, records, controller=None):
        if controller is not None and not controller.released:
            raise SequencingError("debug session still holds the image; release it before defining types")

        logger.info("=== DEFINING VTABLE TYPES ===")
        layouts = []
        for file_addr, record in sorted(records.items()):
            if not record.observations:
                continue
            max_methods = record.max_methods
            if max_methods == 0:
                logger.debug(f"0x{file_addr:x}: no methods observed, skipping")
                continue

            name = vtable_type_name(file_addr)
            source = generate_vtable_type_def(file_addr, max_methods, self.config.pointer_width)
            try:
                status = self.store.define_type(name, source)
            except TypeRegistrationError as e:
                logger.error(f"parse error: {e}")
                self.failed.append(file_addr)
                continue

            if status == "unchanged":
                logger.info(f"{name} already defined with >= {max_methods} methods")
            else:
                logger.info(f"defined {name} with {max_methods} methods")

            if self.config.annotate:
                self.store.set_annotation(file_addr, format_annotation(record))
            layouts.append(VtableLayout(file_addr, max_methods, name, status))
        return layouts
