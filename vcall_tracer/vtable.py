"""Vtable boundary estimation and static vtable discovery.

Layout assumed for every vtable (Rust trait objects, and close enough for
single-inheritance C++ with a fixed header)::

    +0x00  drop / cleanup fn pointer (or null)
    +0x08  type size
    +0x10  type alignment
    +0x18  method pointers ...

Boundaries are found heuristically: the table ends at the first slot that
is not a code pointer. A slot that cannot be read ends the table as well;
the count does not distinguish the two cases.
"""

import logging
from dataclasses import dataclass, field
from typing import List

import numpy as np

from .config import (VTABLE_HEADER_SLOTS, MAX_VTABLE_SIZE, MAX_HEADER_TYPE_SIZE,
                     MAX_HEADER_ALIGN, LAST_VTABLE_MAX_SIZE)
from .memory import wrap_address
from .regions import is_code_pointer

logger = logging.getLogger(__name__)

_WORD_DTYPES = {4: '<u4', 8: '<u8'}


@dataclass
class VtableInfo:
    address: int
    size: int
    drop_fn: int
    type_size: int
    type_align: int
    method_count: int
    methods: List[int] = field(default_factory=list)

    def has_drop(self):
        return self.drop_fn != 0

    def is_zst(self):
        return self.type_size == 0


def header_size_for(source, header_slots=VTABLE_HEADER_SLOTS):
    return header_slots * source.pointer_width


def _scan_methods(base_ptr, max_scan_bytes, source, header_size):
    width = source.pointer_width
    methods = []
    offset = header_size
    while offset < max_scan_bytes:
        ptr = source.read_pointer(wrap_address(base_ptr + offset))
        if ptr is None:
            logger.debug(f"Vtable 0x{base_ptr:x}: slot +0x{offset:x} unreadable, ending scan")
            break
        if not is_code_pointer(ptr, source.regions):
            break
        methods.append(ptr)
        offset += width
    return methods


def estimate_method_count(base_ptr, max_scan_bytes, source, header_size=None):
    """Count consecutive code pointers following the header at ``base_ptr``.

    Returns 0 when the first slot after the header is not a code pointer
    (or cannot be read). ``max_scan_bytes`` bounds the scan and must be
    finite.
    """
    if header_size is None:
        header_size = header_size_for(source)
    return len(_scan_methods(base_ptr, max_scan_bytes, source, header_size))


def _is_power_of_two(value):
    return value != 0 and (value & (value - 1)) == 0


def validate_header_values(drop_fn, type_size, type_align, regions,
                           max_type_size=MAX_HEADER_TYPE_SIZE, max_align=MAX_HEADER_ALIGN):
    # drop_fn must be null or a valid code pointer
    if drop_fn != 0 and not is_code_pointer(drop_fn, regions):
        return False
    if type_size > max_type_size:
        return False
    if not _is_power_of_two(type_align) or type_align > max_align:
        return False
    return True


def read_header(addr, source):
    width = source.pointer_width
    values = []
    for slot in range(VTABLE_HEADER_SLOTS):
        value = source.read_pointer(wrap_address(addr + slot * width))
        if value is None:
            return None
        values.append(value)
    return tuple(values)


def is_valid_vtable_header(addr, source, max_type_size=MAX_HEADER_TYPE_SIZE, max_align=MAX_HEADER_ALIGN):
    header = read_header(addr, source)
    if header is None:
        return False
    return validate_header_values(*header, source.regions, max_type_size, max_align)


def parse_vtable(addr, source, max_size=MAX_VTABLE_SIZE,
                 max_type_size=MAX_HEADER_TYPE_SIZE, max_align=MAX_HEADER_ALIGN):
    """Parse the vtable at ``addr``; None if the header is implausible."""
    header = read_header(addr, source)
    if header is None:
        return None
    drop_fn, type_size, type_align = header
    if not validate_header_values(drop_fn, type_size, type_align, source.regions, max_type_size, max_align):
        return None

    header_size = header_size_for(source)
    methods = _scan_methods(addr, max_size, source, header_size)
    return VtableInfo(
        address=addr,
        size=header_size + len(methods) * source.pointer_width,
        drop_fn=drop_fn,
        type_size=type_size,
        type_align=type_align,
        method_count=len(methods),
        methods=methods,
    )


def compute_vtable_sizes(addrs, source):
    """Parse each candidate, bounding it by the next candidate's address."""
    if not addrs:
        return []

    ordered = sorted(addrs)
    results = []
    for i, addr in enumerate(ordered):
        if i + 1 < len(ordered):
            max_size = ordered[i + 1] - addr
        else:
            max_size = LAST_VTABLE_MAX_SIZE
        info = parse_vtable(addr, source, max_size)
        if info is not None:
            results.append(info)
    return results


def _header_candidates(words, regions, max_type_size, max_align):
    """Indices of ``words`` where a plausible header is followed by a code pointer."""
    n = len(words) - VTABLE_HEADER_SLOTS
    if n <= 0:
        return np.zeros(0, dtype=np.int64)

    is_code = regions.code_pointer_mask(words)
    drop = words[:n]
    size = words[1:n + 1]
    align = words[2:n + 2]

    drop_ok = (drop == 0) | is_code[:n]
    size_ok = size <= np.uint64(max_type_size)
    align_ok = (align != 0) & ((align & (align - np.uint64(1))) == 0) & (align <= np.uint64(max_align))
    first_method_ok = is_code[VTABLE_HEADER_SLOTS:VTABLE_HEADER_SLOTS + n]
    return np.flatnonzero(drop_ok & size_ok & align_ok & first_method_ok)


def scan_for_vtables(start, end, source, max_type_size=MAX_HEADER_TYPE_SIZE, max_align=MAX_HEADER_ALIGN):
    """Find pointer-aligned addresses in [start, end) that look like vtables."""
    width = source.pointer_width
    addr = (start + width - 1) & ~(width - 1)
    if addr >= end:
        return []

    data = source.read(addr, end - addr)
    if data is None:
        logger.debug(f"Could not bulk read 0x{addr:x}-0x{end:x}, scanning slot by slot")
        return _scan_for_vtables_slow(addr, end, source, max_type_size, max_align)

    usable = len(data) - len(data) % width
    words = np.frombuffer(data[:usable], dtype=_WORD_DTYPES[width]).astype(np.uint64)
    hits = _header_candidates(words, source.regions, max_type_size, max_align)

    candidates = []
    next_allowed = 0
    for idx in hits:
        idx = int(idx)
        if idx < next_allowed:
            continue
        candidates.append(addr + idx * width)
        # skip past this vtable's header to avoid overlapping matches
        next_allowed = idx + VTABLE_HEADER_SLOTS
    return candidates


def _scan_for_vtables_slow(addr, end, source, max_type_size, max_align):
    width = source.pointer_width
    header_size = header_size_for(source)
    candidates = []
    while addr + header_size <= end:
        if is_valid_vtable_header(addr, source, max_type_size, max_align):
            first_method = source.read_pointer(addr + header_size)
            if first_method is not None and is_code_pointer(first_method, source.regions):
                candidates.append(addr)
                addr += header_size
                continue
        addr += width
    return candidates


def find_vtables_in_relro(source):
    """Discover and size vtables inside the ``.data.rel.ro`` section."""
    section = source.regions.by_name(".data.rel.ro")
    if section is None:
        logger.info("No .data.rel.ro section found")
        return []

    candidates = scan_for_vtables(section.start, section.end, source)
    logger.debug(f"{len(candidates)} vtable candidates in {section.name}")
    return compute_vtable_sizes(candidates, source)
