"""Lifted instruction model consumed by the call-site scanner.

Lifters (LLDB disassembly, Ghidra P-code) translate native instructions into
this small expression tree. Only the shapes the scanner cares about are
modelled; everything else becomes ``Unknown``.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


class Expr:
    pass


@dataclass(frozen=True)
class Reg(Expr):
    name: str


@dataclass(frozen=True)
class Const(Expr):
    value: int


@dataclass(frozen=True)
class Add(Expr):
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Load(Expr):
    source: Expr
    size: int = 8


@dataclass(frozen=True)
class Unknown(Expr):
    text: str = ""


@dataclass(frozen=True)
class Instruction:
    address: int
    is_call: bool = False
    target: Optional[Expr] = None
    text: str = ""


@dataclass
class BasicBlock:
    start: int
    instructions: List[Instruction] = field(default_factory=list)

    def __iter__(self):
        return iter(self.instructions)


@dataclass(frozen=True)
class FunctionRef:
    """Handle for a function known to an instruction-stream provider."""
    name: str
    start: int
    end: int


class InstructionStreamProvider:
    """Yields functions and their lifted basic blocks.

    ``lift`` returns None when a function cannot be lifted; callers skip it.
    """

    def functions(self) -> List[FunctionRef]:
        raise NotImplementedError

    def lift(self, function: FunctionRef) -> Optional[List[BasicBlock]]:
        raise NotImplementedError


def split_blocks(instructions: List[Instruction], branch_addresses: Tuple[int, ...] = ()) -> List[BasicBlock]:
    """Group a linear instruction list into blocks, ending a block after each branch."""
    blocks = []
    current = None
    ends = set(branch_addresses)
    for insn in instructions:
        if current is None:
            current = BasicBlock(insn.address)
        current.instructions.append(insn)
        if insn.address in ends:
            blocks.append(current)
            current = None
    if current is not None:
        blocks.append(current)
    return blocks
