"""Static view of a binary through LLDB: functions, sections, memory, disassembly.

No process is started here. Addresses are file addresses, i.e. the ones the
call-site scanner records and the rebase offset is later applied to.
"""

import logging
import re
import threading

from ..errors import ImageLoadError
from ..lifting import (Add, Const, FunctionRef, Instruction, InstructionStreamProvider,
                       Load, Reg, Unknown, split_blocks)
from ..memory import ReadSource
from ..regions import Region, RegionTable, semantics_from_permissions
from .lldb_support import import_lldb

logger = logging.getLogger(__name__)

_SIZE_KEYWORDS = {"byte": 1, "word": 2, "dword": 4, "qword": 8, "tbyte": 10, "xmmword": 16}

_INTEL_MEMORY = re.compile(
    r"^(?:(?P<size>[a-z]+)\s+ptr\s+)?(?:[a-z]{2}:)?\[(?P<inner>[^\]]+)\]$", re.IGNORECASE)
_ATT_MEMORY = re.compile(
    r"^\*?(?:%[a-z]{2}:)?(?P<disp>-?(?:0x[0-9a-f]+|\d+))?\((?P<inner>[^)]*)\)$", re.IGNORECASE)
_NUMBER = re.compile(r"^-?(?:0x[0-9a-f]+|\d+)$", re.IGNORECASE)
_REGISTER = re.compile(r"^%?[a-z][a-z0-9]*$", re.IGNORECASE)


def _parse_number(text):
    return int(text, 0)


def _intel_address(inner):
    """``rax``, ``rax + 0x18`` or ``rax - 0x8``; anything else is Unknown."""
    terms = re.findall(r"([+-]?)\s*([^+\-\s]+)", inner.strip())
    if not terms or terms[0][0] == "-":
        return Unknown(inner)
    base_text = terms[0][1]
    if not _REGISTER.match(base_text) or _NUMBER.match(base_text) or "*" in base_text:
        return Unknown(inner)
    base = Reg(base_text.lower())
    if len(terms) == 1:
        return base
    if len(terms) == 2 and _NUMBER.match(terms[1][1]):
        value = _parse_number(terms[1][1])
        return Add(base, Const(-value if terms[1][0] == "-" else value))
    return Unknown(inner)


def _att_address(disp, inner):
    parts = [p.strip() for p in inner.split(",")]
    if len(parts) != 1 or not parts[0].startswith("%"):
        return Unknown(f"{disp or ''}({inner})")
    base = Reg(parts[0][1:].lower())
    if not disp:
        return base
    return Add(base, Const(_parse_number(disp)))


def parse_operand(text):
    """Translate a disassembled call operand into a lifted expression.

    Handles Intel (``qword ptr [rax + 0x18]``) and AT&T (``*0x18(%rax)``)
    syntax. Memory operands become ``Load``; bare registers ``Reg``;
    immediates ``Const``.
    """
    text = text.strip()
    if not text:
        return Unknown(text)

    m = _INTEL_MEMORY.match(text)
    if m:
        size = _SIZE_KEYWORDS.get((m.group("size") or "qword").lower(), 8)
        return Load(_intel_address(m.group("inner")), size)

    m = _ATT_MEMORY.match(text)
    if m:
        return Load(_att_address(m.group("disp"), m.group("inner")))

    stripped = text.lstrip("*")
    if _NUMBER.match(stripped):
        return Const(_parse_number(stripped))
    if _REGISTER.match(stripped):
        return Reg(stripped.lstrip("%").lower())
    return Unknown(text)


def is_call_mnemonic(mnemonic):
    mnemonic = mnemonic.lower()
    return mnemonic.startswith("call") or mnemonic in ("bl", "blr")


def collect_regions(lldb, target, modules=None, load_addresses=False):
    """Leaf sections of ``modules`` as Regions.

    ``load_addresses`` selects runtime addresses (live process) instead of
    file addresses (static image).
    """
    regions = []

    def visit(section):
        if not section.IsValid():
            return
        if section.GetNumSubSections() > 0:
            for i in range(section.GetNumSubSections()):
                visit(section.GetSubSectionAtIndex(i))
            return
        if load_addresses:
            start = section.GetLoadAddress(target)
            if start == lldb.LLDB_INVALID_ADDRESS:
                return
        else:
            start = section.GetFileAddress()
        size = section.GetByteSize()
        if size == 0:
            return
        regions.append(Region(start, size, semantics_from_permissions(section.GetPermissions()),
                              section.GetName() or ""))

    if modules is None:
        modules = [target.GetModuleAtIndex(i) for i in range(target.GetNumModules())]
    for module in modules:
        if not module or not module.IsValid():
            continue
        for i in range(module.GetNumSections()):
            visit(module.GetSectionAtIndex(i))
    return RegionTable(regions)


class ImageMemory(ReadSource):
    """Reads from the object file's sections via a process-less target."""

    def __init__(self, image, regions, pointer_width=8):
        super().__init__(regions, pointer_width)
        self.image = image

    def read(self, address, size):
        return self.image.read(address, size)


class LldbImage(InstructionStreamProvider):
    """A binary opened with LLDB but not running.

    Also serves as the LLDB disassembly instruction-stream provider. SB API
    calls are serialised with a lock so scanner workers can share it.
    """

    def __init__(self, binary_path, flavor="intel", lldb_python_path=None, pointer_width=8):
        self.lldb = import_lldb(lldb_python_path)
        self.binary_path = str(binary_path)
        self.flavor = flavor
        self.pointer_width = pointer_width
        self._lock = threading.Lock()

        self.debugger = self.lldb.SBDebugger.Create()
        self.debugger.SetAsync(False)
        error = self.lldb.SBError()
        self.target = self.debugger.CreateTarget(self.binary_path, None, None, False, error)
        if not self.target or not self.target.IsValid():
            self.close()
            raise ImageLoadError(binary_path, error.GetCString() if error.Fail() else None)
        self.module = self.target.GetModuleAtIndex(0)
        self._regions = None

    @property
    def static_entry(self):
        return self.module.GetObjectFileEntryPointAddress().GetFileAddress()

    @property
    def header_address(self):
        return self.module.GetObjectFileHeaderAddress().GetFileAddress()

    def regions(self):
        if self._regions is None:
            self._regions = collect_regions(self.lldb, self.target, [self.module])
        return self._regions

    def memory(self):
        return ImageMemory(self, self.regions(), self.pointer_width)

    def read(self, address, size):
        with self._lock:
            sb_address = self.target.ResolveFileAddress(address)
            if not sb_address.IsValid() or not sb_address.GetSection().IsValid():
                return None
            error = self.lldb.SBError()
            data = self.target.ReadMemory(sb_address, size, error)
        if not error.Success() or data is None or len(data) != size:
            return None
        return bytes(data)

    def functions(self):
        functions = {}
        lldb = self.lldb
        with self._lock:
            for i in range(self.module.GetNumSymbols()):
                symbol = self.module.GetSymbolAtIndex(i)
                if not symbol.IsValid() or symbol.GetType() != lldb.eSymbolTypeCode:
                    continue
                start = symbol.GetStartAddress()
                end = symbol.GetEndAddress()
                if not start.IsValid() or not end.IsValid():
                    continue
                start_addr = start.GetFileAddress()
                end_addr = end.GetFileAddress()
                if end_addr <= start_addr or start_addr in functions:
                    continue
                name = symbol.GetName() or f"sub_{start_addr:x}"
                functions[start_addr] = FunctionRef(name, start_addr, end_addr)
        return [functions[k] for k in sorted(functions)]

    def lift(self, function):
        code = self.read(function.start, function.end - function.start)
        if code is None:
            return None

        instructions = []
        branch_ends = []
        with self._lock:
            sb_instructions = self.target.GetInstructionsWithFlavor(function.start, self.flavor, code)
            if not sb_instructions or sb_instructions.GetSize() == 0:
                return None
            for idx in range(sb_instructions.GetSize()):
                insn = sb_instructions.GetInstructionAtIndex(idx)
                if not insn or not insn.IsValid():
                    continue
                address = insn.GetAddress().GetFileAddress()
                mnemonic = insn.GetMnemonic(self.target) or ""
                operands = insn.GetOperands(self.target) or ""
                does_branch = insn.DoesBranch()
                instructions.append((address, mnemonic, operands, does_branch))

        lifted = []
        for address, mnemonic, operands, does_branch in instructions:
            is_call = is_call_mnemonic(mnemonic)
            target = parse_operand(operands) if is_call else None
            lifted.append(Instruction(address, is_call, target, f"{mnemonic} {operands}".strip()))
            if does_branch and not is_call:
                branch_ends.append(address)
        return split_blocks(lifted, tuple(branch_ends))

    def close(self):
        if getattr(self, "debugger", None) is not None:
            self.lldb.SBDebugger.Destroy(self.debugger)
            self.debugger = None
            self.target = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
