"""Instruction-stream provider built on Ghidra's raw P-code (via pyghidra).

Each native instruction's P-code is folded into one expression per CALL /
CALLIND: unique temporaries are replaced by the expression that defined
them, so ``CALL qword ptr [RAX + 0x18]`` becomes
``Load(Add(Reg('rax'), Const(0x18)))``.

Ghidra may load a binary at a different image base than its file addresses
(PIE ELF images land at 0x100000). ``address_bias`` is added to every
address so call sites line up with the file addresses used for rebasing.
"""

import contextlib
import logging

from ..lifting import (Add, BasicBlock, Const, FunctionRef, Instruction,
                       InstructionStreamProvider, Load, Reg, Unknown)

logger = logging.getLogger(__name__)


def _signed(value, size):
    bits = size * 8
    value &= (1 << bits) - 1
    if value >> (bits - 1):
        value -= 1 << bits
    return value


class GhidraPcodeProvider(InstructionStreamProvider):

    def __init__(self, binary_path, address_bias=None, analyze=True, project_location=None):
        self.binary_path = str(binary_path)
        self.address_bias = address_bias
        self.analyze = analyze
        self.project_location = project_location
        self.program = None
        self._functions = {}
        self._stack = contextlib.ExitStack()

    def open(self, file_header_address=None):
        import pyghidra

        pyghidra.start()
        kwargs = {"analyze": self.analyze}
        if self.project_location:
            kwargs["project_location"] = self.project_location
        flat_api = self._stack.enter_context(pyghidra.open_program(self.binary_path, **kwargs))
        self.program = flat_api.getCurrentProgram()

        if self.address_bias is None:
            image_base = self.program.getImageBase().getOffset()
            self.address_bias = (file_header_address or 0) - image_base
        logger.debug(f"Ghidra image base bias: {self.address_bias:#x}")

        from ghidra.program.model.pcode import PcodeOp
        from ghidra.program.model.block import BasicBlockModel
        from ghidra.util.task import ConsoleTaskMonitor
        self._PcodeOp = PcodeOp
        self._block_model = BasicBlockModel(self.program)
        self._monitor = ConsoleTaskMonitor()
        return self

    def close(self):
        self._stack.close()
        self.program = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _addr(self, ghidra_address):
        return ghidra_address.getOffset() + self.address_bias

    def functions(self):
        refs = []
        for func in self.program.getFunctionManager().getFunctions(True):
            if func.isExternal() or func.isThunk():
                continue
            body = func.getBody()
            start = self._addr(func.getEntryPoint())
            ref = FunctionRef(func.getName(), start, self._addr(body.getMaxAddress()) + 1)
            self._functions[start] = func
            refs.append(ref)
        return refs

    def _varnode_expr(self, vn, defs):
        if vn is None:
            return Unknown()
        if vn.isRegister():
            reg = self.program.getRegister(vn.getAddress(), vn.getSize())
            return Reg(reg.getName().lower()) if reg is not None else Unknown(str(vn))
        if vn.isConstant():
            return Const(_signed(vn.getOffset(), vn.getSize()))
        if vn.isUnique():
            return defs.get(vn.getOffset(), Unknown(str(vn)))
        return Unknown(str(vn))

    def _lift_instruction(self, insn):
        PcodeOp = self._PcodeOp
        defs = {}
        call = None
        for op in insn.getPcode():
            opcode = op.getOpcode()
            if opcode == PcodeOp.CALLIND:
                call = self._varnode_expr(op.getInput(0), defs)
                continue
            if opcode == PcodeOp.CALL:
                call = Const(self._addr(op.getInput(0).getAddress()))
                continue

            out = op.getOutput()
            if out is None or not out.isUnique():
                continue
            if opcode == PcodeOp.COPY:
                expr = self._varnode_expr(op.getInput(0), defs)
            elif opcode == PcodeOp.LOAD:
                expr = Load(self._varnode_expr(op.getInput(1), defs), out.getSize())
            elif opcode == PcodeOp.INT_ADD:
                expr = Add(self._varnode_expr(op.getInput(0), defs), self._varnode_expr(op.getInput(1), defs))
            elif opcode == PcodeOp.INT_SUB and op.getInput(1).isConstant():
                value = _signed(op.getInput(1).getOffset(), op.getInput(1).getSize())
                expr = Add(self._varnode_expr(op.getInput(0), defs), Const(-value))
            else:
                expr = Unknown(op.getMnemonic())
            defs[out.getOffset()] = expr

        address = self._addr(insn.getAddress())
        if call is None:
            return Instruction(address, text=str(insn))
        return Instruction(address, True, call, str(insn))

    def lift(self, function):
        func = self._functions.get(function.start)
        if func is None:
            return None
        listing = self.program.getListing()
        blocks = []
        try:
            block_iter = self._block_model.getCodeBlocksContaining(func.getBody(), self._monitor)
            while block_iter.hasNext():
                code_block = block_iter.next()
                block = BasicBlock(self._addr(code_block.getFirstStartAddress()))
                for insn in listing.getInstructions(code_block, True):
                    block.instructions.append(self._lift_instruction(insn))
                blocks.append(block)
        except Exception as e:
            logger.debug(f"Could not lift {function.name}: {e}")
            return None
        return blocks
