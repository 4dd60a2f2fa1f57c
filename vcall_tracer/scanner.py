"""Static discovery of ``call [base]`` / ``call [base + const]`` sites.

Functions are scanned independently on a thread pool. The result order
follows completion order, not address order, so discovery numbering is
only meaningful within one run.
"""

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .config import DEFAULT_BASE_REGISTER, PROGRESS_INTERVAL
from .lifting import Add, Const, Load, Reg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallSite:
    address: int
    offset: int = 0
    base_register: str = DEFAULT_BASE_REGISTER
    discovery_index: int = 0

    def describe(self):
        if self.offset == 0:
            return f"0x{self.address:x}: call [{self.base_register}]"
        sign = "-" if self.offset < 0 else "+"
        return f"0x{self.address:x}: call [{self.base_register} {sign} 0x{abs(self.offset):x}]"


def _is_base_register(expr, base_register):
    return isinstance(expr, Reg) and expr.name.lower() == base_register.lower()


def match_base_offset(address_expr, base_register):
    """Offset if ``address_expr`` is ``base`` or ``base + const``, else None."""
    if _is_base_register(address_expr, base_register):
        return 0
    if isinstance(address_expr, Add):
        # left must be the register, right a literal constant
        if _is_base_register(address_expr.left, base_register) and isinstance(address_expr.right, Const):
            return address_expr.right.value
    return None


def match_call_target(target, base_register):
    if not isinstance(target, Load):
        return None
    return match_base_offset(target.source, base_register)


def scan_blocks(blocks, base_register):
    found = []
    for block in blocks:
        for insn in block:
            if not insn.is_call or insn.target is None:
                continue
            offset = match_call_target(insn.target, base_register)
            if offset is not None:
                found.append((insn.address, offset))
    return found


class StaticCallSiteScanner:

    def __init__(self, provider, base_register=DEFAULT_BASE_REGISTER, workers=1,
                 progress_interval=PROGRESS_INTERVAL):
        self.provider = provider
        self.base_register = base_register
        self.workers = max(1, workers)
        self.progress_interval = progress_interval
        self.skipped_functions = 0

        self._processed = itertools.count()
        self._last_report = 0
        self._lock = threading.Lock()
        self._results = []
        self._seen = set()

    def _scan_function(self, function, total):
        current = next(self._processed)
        # Progress is informational only; the counter may be sampled out of order.
        if self.progress_interval and current % self.progress_interval == 0 and current > self._last_report:
            self._last_report = current
            logger.info(f"  {current}/{total} functions scanned...")

        blocks = self.provider.lift(function)
        if blocks is None:
            with self._lock:
                self.skipped_functions += 1
            return

        matches = scan_blocks(blocks, self.base_register)
        if not matches:
            return
        with self._lock:
            for address, offset in matches:
                # overlapping function ranges can yield the same instruction twice
                if address in self._seen:
                    continue
                self._seen.add(address)
                self._results.append(CallSite(address, offset, self.base_register, len(self._results)))

    def scan(self, functions=None):
        if functions is None:
            functions = self.provider.functions()
        functions = list(functions)
        total = len(functions)
        logger.info(f"  scanning {total} functions...")

        self._results = []
        self._seen = set()
        self.skipped_functions = 0
        if self.workers == 1:
            for function in functions:
                self._scan_function(function, total)
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                # list() surfaces worker exceptions
                list(pool.map(lambda f: self._scan_function(f, total), functions))

        if self.skipped_functions:
            logger.debug(f"{self.skipped_functions} functions could not be lifted and were skipped")
        return list(self._results)


def find_call_sites(provider, base_register=DEFAULT_BASE_REGISTER, workers=1,
                    progress_interval=PROGRESS_INTERVAL):
    scanner = StaticCallSiteScanner(provider, base_register, workers, progress_interval)
    return scanner.scan()
