"""``vcall-tracer`` command line."""

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .config import load_config
from .controller import LiveCorrelationController
from .errors import (LaunchError, ConfigError, ImageLoadError, LldbUnavailableError,
                     SessionLostError, StoreError)
from .log import setup_logging
from .report import build_dump, log_summary, write_dump
from .scanner import StaticCallSiteScanner
from .store import TypeStore
from .synthesis import LayoutSynthesizer
from .vtable import find_vtables_in_relro

logger = logging.getLogger(__name__)


def _auto_int(text):
    return int(text, 0)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="vcall-tracer",
        description="Recover vtable layouts for indirect call [reg + off] sites by tracing the binary.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="JSON config file")
    parser.add_argument("--debug", action="store_true", default=None, help="verbose output")
    parser.add_argument("--lldb-python-path", dest="lldb_python_path",
                        help="directory holding LLDB's Python module (see 'lldb -P')")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_scan_options(p):
        p.add_argument("binary", type=Path)
        p.add_argument("--base-register", dest="base_register")
        p.add_argument("--workers", dest="scan_workers", type=int)
        p.add_argument("--lifter", choices=("lldb", "ghidra"))
        p.add_argument("--flavor", dest="disassembly_flavor", choices=("intel", "att"))

    scan = sub.add_parser("scan", help="list call [reg...] sites")
    add_scan_options(scan)

    vtables = sub.add_parser("vtables", help="scan .data.rel.ro for vtables")
    vtables.add_argument("binary", type=Path)

    trace = sub.add_parser("trace", help="trace call sites in a live process and define vtable types",
                           usage="%(prog)s [options] binary [-- program args...]")
    add_scan_options(trace)
    trace.add_argument("--max-iterations", dest="max_iterations", type=int)
    trace.add_argument("--time-budget", dest="time_budget", type=float, help="seconds")
    trace.add_argument("--max-slots", dest="max_vtable_slots", type=_auto_int)
    trace.add_argument("--cwd", dest="working_directory")
    trace.add_argument("--output", type=Path, help="JSON dump of the session")
    trace.add_argument("--store", type=Path, help="type store (default: <binary>.vtable.json)")
    trace.add_argument("--no-annotate", dest="annotate", action="store_false", default=None)
    trace.add_argument("--no-targets", dest="resolve_targets", action="store_false", default=None)
    return parser


def parse_args(argv=None):
    """Parse ``argv``; anything after the first ``--`` is passed to the traced program."""
    argv = list(sys.argv[1:] if argv is None else argv)
    launch_args = []
    if "--" in argv:
        split = argv.index("--")
        argv, launch_args = argv[:split], argv[split + 1:]

    parser = build_parser()
    args = parser.parse_args(argv)
    if launch_args and args.command != "trace":
        parser.error("program arguments after '--' are only accepted by trace")
    args.launch_args = launch_args
    return args


def _config_from_args(args):
    overrides = {}
    for key in ("debug", "lldb_python_path", "base_register", "scan_workers", "lifter",
                "disassembly_flavor", "max_iterations", "time_budget", "max_vtable_slots",
                "working_directory", "annotate", "resolve_targets"):
        overrides[key] = getattr(args, key, None)
    if getattr(args, "launch_args", None):
        overrides["launch_args"] = args.launch_args
    return load_config(args.config, **overrides)


def find_call_sites(config, image):
    if config.lifter == "ghidra":
        from .backends.ghidra_pcode import GhidraPcodeProvider
        provider = GhidraPcodeProvider(image.binary_path).open(image.header_address)
        workers = 1
    else:
        provider = image
        workers = config.scan_workers

    try:
        logger.info(f"scanning for call [{config.base_register}...] sites...")
        scanner = StaticCallSiteScanner(provider, config.base_register, workers, config.progress_interval)
        call_sites = scanner.scan()
    finally:
        if provider is not image:
            provider.close()

    print(f"found {len(call_sites)} call [{config.base_register}...] sites:")
    for call in sorted(call_sites, key=lambda c: c.address):
        print(f"  {call.describe()}")
    return call_sites


def cmd_scan(args, config):
    from .backends.lldb_image import LldbImage

    with LldbImage(args.binary, config.disassembly_flavor, config.lldb_python_path, config.pointer_width) as image:
        print(f"loaded: base=0x{image.header_address:x} ep=0x{image.static_entry:x}")
        find_call_sites(config, image)
    return 0


def cmd_vtables(args, config):
    from .backends.lldb_image import LldbImage

    with LldbImage(args.binary, lldb_python_path=config.lldb_python_path,
                   pointer_width=config.pointer_width) as image:
        print(f"scanning {args.binary} for vtables...")
        vtables = find_vtables_in_relro(image.memory())

    if not vtables:
        print("no vtables found in .data.rel.ro")
        return 0

    print(f"found {len(vtables)} vtables:\n")
    for vt in vtables:
        print(f"vtable @ 0x{vt.address:x}")
        print(f"  size:    {vt.size} bytes ({vt.method_count} methods)")
        print(f"  type:    size={vt.type_size}, align={vt.type_align}")
        if vt.has_drop():
            print(f"  drop:    0x{vt.drop_fn:x}")
        else:
            print("  drop:    (none)")
        for i, method in enumerate(vt.methods):
            print(f"  [{i}]:     0x{method:x}")
        print()
    return 0


def cmd_trace(args, config):
    from .backends.lldb_debugger import LldbDebugger
    from .backends.lldb_image import LldbImage

    binary = args.binary
    with LldbImage(binary, config.disassembly_flavor, config.lldb_python_path, config.pointer_width) as image:
        static_entry = image.static_entry
        print(f"loaded: base=0x{image.header_address:x} ep=0x{static_entry:x}")
        call_sites = find_call_sites(config, image)

    if not call_sites:
        print(f"no {config.base_register} deref calls found, exiting")
        return 0

    status = 0
    logger.info("setting up debugger...")
    debugger = LldbDebugger(binary, config.launch_args, config.working_directory, config.lldb_python_path)
    controller = LiveCorrelationController(debugger, call_sites, static_entry, config)
    try:
        controller.run()
    except LaunchError as e:
        logger.error(f"launch failed: {e}")
        return 1
    except SessionLostError as e:
        logger.error(f"lost control of the debuggee, trace aborted: {e}")
        status = 1
    finally:
        controller.release()

    layouts = []
    if controller.records:
        # fresh handle, only after the debug session is gone
        store_path = args.store or Path(f"{binary}.vtable.json")
        logger.info(f"opening type store {store_path}...")
        store = TypeStore.load(store_path, config.pointer_width)
        synthesizer = LayoutSynthesizer(store, config)
        layouts = synthesizer.synthesize(controller.records, controller)
        logger.info(f"saving to {store_path}...")
        store.save(store_path)
        logger.info("saved")
    else:
        print("no vtable hits recorded")

    log_summary(controller)
    if args.output:
        write_dump(build_dump(binary, call_sites, controller, layouts), args.output)
    return status


COMMANDS = {
    "scan": cmd_scan,
    "vtables": cmd_vtables,
    "trace": cmd_trace,
}


def main(argv=None):
    args = parse_args(argv)
    setup_logging(bool(args.debug))

    try:
        config = _config_from_args(args)
        return COMMANDS[args.command](args, config)
    except (ConfigError, ImageLoadError, LldbUnavailableError, StoreError) as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("User interrupt (Ctrl+C). Exiting.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
