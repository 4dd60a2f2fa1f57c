import json
import logging
import time

from .errors import StoreError

logger = logging.getLogger(__name__)

SUMMARY_PREVIEW_ITEMS = 5


def build_dump(binary_path, call_sites, controller=None, layouts=()):
    records = controller.records if controller is not None else {}
    dump = {
        "binary": str(binary_path),
        "generated_at": time.strftime('%Y-%m-%d %H:%M:%S'),
        "call_sites": [
            {"address": hex(c.address), "offset": c.offset, "base_register": c.base_register,
             "discovery_index": c.discovery_index}
            for c in sorted(call_sites, key=lambda c: c.address)
        ],
        "observations": {
            hex(addr): [
                {"vtable": hex(o.vtable_ptr), "method_count": o.method_count,
                 "target": hex(o.target) if o.target else None, "hits": o.hits}
                for o in record.observations
            ]
            for addr, record in sorted(records.items())
        },
        "layouts": [
            {"call_site": hex(l.call_site), "name": l.name, "method_count": l.method_count, "status": l.status}
            for l in layouts
        ],
    }
    if controller is not None:
        dump["session"] = {
            "state": controller.state.value,
            "exit_code": controller.exit_code,
            "rebase_offset": controller.rebase.offset if controller.rebase else None,
            "iterations": controller.iterations,
            "breakpoints": len(controller.breakpoints),
            "failed_breakpoints": [hex(a) for a in controller.failed_breakpoints],
        }
    return dump


def write_dump(dump, output_path):
    logger.info(f"Attempting to write analysis data to '{output_path}'...")
    try:
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(dump, f, indent=4, ensure_ascii=False)
    except OSError as e:
        raise StoreError(f"Could not write analysis data to {output_path}: {e}") from e
    logger.info(f"Successfully wrote analysis data to {output_path}")


def log_summary(controller):
    records = controller.records
    logger.info("=== SUMMARY ===")
    logger.info(f"call sites: {len(records)}")
    logger.info(f"observations: {controller.observation_count}")

    for count, (addr, record) in enumerate(sorted(records.items())):
        if count >= SUMMARY_PREVIEW_ITEMS:
            logger.info(f"  ... and {len(records) - SUMMARY_PREVIEW_ITEMS} more call sites.")
            break
        vtables = ", ".join(f"0x{o.vtable_ptr:x}({o.method_count})" for o in record.observations)
        logger.info(f"  0x{addr:x}: max_methods={record.max_methods} vtables=[{vtables}]")
