"""Fallible memory read sources.

Every read returns None on failure instead of raising; callers treat a
failed read as a scan terminator.
"""

import logging
import struct

from .regions import RegionTable

logger = logging.getLogger(__name__)

ADDRESS_MASK = (1 << 64) - 1

_POINTER_FORMATS = {4: '<I', 8: '<Q'}


def wrap_address(address):
    return address & ADDRESS_MASK


class ReadSource:
    """Memory plus the region table used to classify pointers read from it."""

    def __init__(self, regions=None, pointer_width=8):
        self.regions = regions if regions is not None else RegionTable()
        self.pointer_width = pointer_width
        self._pointer_format = _POINTER_FORMATS[pointer_width]

    def read(self, address, size):
        raise NotImplementedError

    def read_pointer(self, address):
        data = self.read(wrap_address(address), self.pointer_width)
        if data is None or len(data) != self.pointer_width:
            return None
        return struct.unpack(self._pointer_format, data)[0]


class MappedMemory(ReadSource):
    """Memory made of discrete mapped chunks; anything else is unreadable."""

    def __init__(self, chunks=None, regions=None, pointer_width=8):
        super().__init__(regions, pointer_width)
        self._chunks = []
        if isinstance(chunks, dict):
            chunks = chunks.items()
        for base, data in chunks or ():
            self.map(base, data)

    def map(self, base, data):
        self._chunks.append((base, bytes(data)))
        self._chunks.sort(key=lambda c: c[0])

    def read(self, address, size):
        for base, data in self._chunks:
            if base <= address and address + size <= base + len(data):
                offset = address - base
                return data[offset:offset + size]
        return None


class ProcessMemory(ReadSource):
    """Live process memory read through a debug back end."""

    def __init__(self, debugger, regions=None, pointer_width=8):
        super().__init__(regions, pointer_width)
        self.debugger = debugger
        self.failed_reads = 0

    def read(self, address, size):
        data = self.debugger.read_memory(address, size)
        if data is None or len(data) != size:
            self.failed_reads += 1
            logger.debug(f"Memory read failed at 0x{address:x} ({size} bytes)")
            return None
        return bytes(data)
