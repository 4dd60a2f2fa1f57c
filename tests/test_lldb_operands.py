import pytest

from vcall_tracer.backends.lldb_image import is_call_mnemonic, parse_operand
from vcall_tracer.lifting import Add, Const, Load, Reg, Unknown
from vcall_tracer.scanner import match_call_target


@pytest.mark.parametrize("text, expected", [
    ("qword ptr [rax]", Load(Reg("rax"))),
    ("qword ptr [rax + 0x18]", Load(Add(Reg("rax"), Const(0x18)))),
    ("qword ptr [rax - 0x8]", Load(Add(Reg("rax"), Const(-8)))),
    ("[rdi+16]", Load(Add(Reg("rdi"), Const(16)))),
    ("dword ptr [eax + 0x4]", Load(Add(Reg("eax"), Const(4)), 4)),
    ("*(%rax)", Load(Reg("rax"))),
    ("*0x18(%rax)", Load(Add(Reg("rax"), Const(0x18)))),
    ("*-0x8(%rax)", Load(Add(Reg("rax"), Const(-8)))),
    ("rax", Reg("rax")),
    ("*%rax", Reg("rax")),
    ("0x401000", Const(0x401000)),
])
def test_parse_operand(text, expected):
    assert parse_operand(text) == expected


@pytest.mark.parametrize("text", [
    "qword ptr [rax + 8*rcx]",
    "qword ptr [rax + rcx + 0x8]",
    "qword ptr [rip + 0x2000]",
    "*0x8(%rax,%rcx,8)",
])
def test_operands_that_are_not_call_sites(text):
    assert match_call_target(parse_operand(text), "rax") is None


def test_index_addressing_is_unknown():
    assert isinstance(parse_operand("qword ptr [rax + 8*rcx]").source, Unknown)


def test_call_mnemonics():
    assert is_call_mnemonic("call")
    assert is_call_mnemonic("callq")
    assert is_call_mnemonic("blr")
    assert not is_call_mnemonic("jmp")
    assert not is_call_mnemonic("ret")
