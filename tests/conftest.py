import struct

import pytest

from vcall_tracer.controller import DebugBackend, StopEvent, StopReason
from vcall_tracer.errors import LaunchError
from vcall_tracer.lifting import BasicBlock, FunctionRef, InstructionStreamProvider
from vcall_tracer.memory import MappedMemory
from vcall_tracer.regions import (Region, RegionTable, SEMANTICS_CODE, SEMANTICS_DATA,
                                  SEMANTICS_READONLY_DATA)

TEXT_START = 0x401000
TEXT_SIZE = 0x10000
DATA_START = 0x600000
DATA_SIZE = 0x1000
GARBAGE = 0x4141414141414141


def pack_words(*words):
    return b"".join(struct.pack("<Q", w) for w in words)


def vtable_bytes(method_count, tail=(), header=(0, 8, 8)):
    methods = [TEXT_START + 0x10 * (i + 1) for i in range(method_count)]
    return pack_words(*header, *methods, *tail)


class FakeDebugger(DebugBackend):
    """Scripted debuggee: a list of (StopEvent, registers) pairs replayed by resume()."""

    def __init__(self, stops=(), entry=TEXT_START, memory=None, regions=None,
                 exit_code=0, launch_error=None, exit_at_launch=False):
        self.stops = list(stops)
        self.entry = entry
        self.memory = memory or MappedMemory()
        self._regions = regions if regions is not None else RegionTable()
        self._exit_code = exit_code
        self.launch_error = launch_error
        self.exit_at_launch = exit_at_launch

        self.breakpoints = []
        self.registers = {}
        self._ip = 0
        self.resumes = 0
        self.quit_called = False
        self.closed = False

    def launch(self):
        if self.launch_error:
            raise LaunchError(self.launch_error)
        if self.exit_at_launch:
            return StopEvent(StopReason.EXITED)
        self._ip = self.entry
        return StopEvent(StopReason.ENTRY, self.entry)

    def resume(self):
        self.resumes += 1
        if not self.stops:
            return StopEvent(StopReason.EXITED)
        event, registers = self.stops.pop(0)
        self.registers = dict(registers)
        self._ip = event.address
        return event

    def add_breakpoint(self, address):
        self.breakpoints.append(address)
        return True

    def read_register(self, name):
        return self.registers.get(name)

    def read_memory(self, address, size):
        return self.memory.read(address, size)

    @property
    def ip(self):
        return self._ip

    def exit_code(self):
        return self._exit_code

    def regions(self):
        return self._regions

    def quit(self):
        self.quit_called = True

    def close(self):
        self.closed = True


class FakeProvider(InstructionStreamProvider):

    def __init__(self, functions):
        # {FunctionRef: [Instruction, ...] or None}
        self._functions = functions

    def functions(self):
        return list(self._functions)

    def lift(self, function):
        instructions = self._functions[function]
        if instructions is None:
            return None
        return [BasicBlock(function.start, list(instructions))]


@pytest.fixture
def regions():
    return RegionTable([
        Region(0x400000, 0x1000, SEMANTICS_READONLY_DATA, ".rodata"),
        Region(TEXT_START, TEXT_SIZE, SEMANTICS_CODE, ".text"),
        Region(DATA_START, DATA_SIZE, SEMANTICS_DATA, ".data"),
    ])


@pytest.fixture
def make_memory(regions):
    def make(chunks=None):
        return MappedMemory(chunks or {}, regions)
    return make


@pytest.fixture
def breakpoint_stop():
    def make(address, **registers):
        return StopEvent(StopReason.BREAKPOINT, address), registers
    return make


@pytest.fixture
def fake_debugger_cls():
    return FakeDebugger


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def function_ref():
    def make(start, name=None, size=0x100):
        return FunctionRef(name or f"sub_{start:x}", start, start + size)
    return make
