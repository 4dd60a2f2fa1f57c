"""Section/region table and the code-pointer heuristic."""

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

SEMANTICS_CODE = "code"          # executable and not writable
SEMANTICS_DATA = "data"
SEMANTICS_READONLY_DATA = "rodata"
SEMANTICS_UNKNOWN = "unknown"

PERM_READ = 0x2
PERM_WRITE = 0x1
PERM_EXECUTE = 0x4


def semantics_from_permissions(permissions):
    if permissions & PERM_EXECUTE and not permissions & PERM_WRITE:
        return SEMANTICS_CODE
    if permissions & PERM_WRITE:
        return SEMANTICS_DATA
    if permissions & PERM_READ:
        return SEMANTICS_READONLY_DATA
    return SEMANTICS_UNKNOWN


@dataclass(frozen=True)
class Region:
    start: int
    size: int
    semantics: str = SEMANTICS_UNKNOWN
    name: str = ""

    @property
    def end(self):
        return self.start + self.size

    def contains(self, address):
        return self.start <= address < self.end


class RegionTable:
    """Address lookup over a fixed set of regions.

    Lookups go through ``np.searchsorted`` on the sorted region starts.
    When regions overlap the first region in insertion order wins, which
    needs a linear scan.
    """

    def __init__(self, regions=()):
        self.regions = [r for r in regions if r.size > 0]
        ordered = sorted(self.regions, key=lambda r: r.start)
        self._sorted = ordered
        self._starts = np.array([r.start for r in ordered], dtype=np.uint64)
        self._ends = np.array([r.end for r in ordered], dtype=np.uint64)
        self._code = np.array([r.semantics == SEMANTICS_CODE for r in ordered], dtype=bool)
        self._overlapping = bool(len(ordered) > 1 and np.any(self._starts[1:] < self._ends[:-1]))
        if self._overlapping:
            logger.debug("Region table has overlapping regions; using first-match lookup")

    def __len__(self):
        return len(self.regions)

    def __iter__(self):
        return iter(self.regions)

    def find(self, address):
        if address < 0 or address >= 1 << 64 or not self.regions:
            return None
        if self._overlapping:
            for region in self.regions:
                if region.contains(address):
                    return region
            return None
        idx = int(np.searchsorted(self._starts, np.uint64(address), side='right')) - 1
        if idx < 0:
            return None
        region = self._sorted[idx]
        return region if region.contains(address) else None

    def by_name(self, name):
        for region in self.regions:
            if region.name == name:
                return region
        return None

    def code_pointer_mask(self, values):
        """Vectorised ``is_code_pointer`` over an array of pointer values."""
        values = np.asarray(values, dtype=np.uint64)
        if not self.regions or values.size == 0:
            return np.zeros(values.shape, dtype=bool)
        if self._overlapping:
            return np.array([is_code_pointer(int(v), self) for v in values], dtype=bool)
        idx = np.searchsorted(self._starts, values, side='right') - 1
        valid = idx >= 0
        safe_idx = np.where(valid, idx, 0)
        inside = valid & (values < self._ends[safe_idx])
        return inside & self._code[safe_idx] & (values != 0)


def is_code_pointer(ptr, regions):
    """True if ``ptr`` lies inside an executable, non-writable region.

    Conservative: pointers outside every known region (trampolines, JIT
    pages) are rejected.
    """
    if not ptr:
        return False
    region = regions.find(ptr)
    if region is None:
        return False
    return region.semantics == SEMANTICS_CODE
